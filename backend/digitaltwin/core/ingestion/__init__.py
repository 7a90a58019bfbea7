"""
Upload intake, sync/async routing, the upload state machine, batch
coordination and the background upload worker logic.
"""
