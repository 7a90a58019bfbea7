"""
Digital Twin Assets: asset ingestion and access-control pipeline.
"""

__version__ = "1.0.0"
