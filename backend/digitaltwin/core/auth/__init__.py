"""
Identity providers, authentication policy and the access-control evaluator.
"""

from .access_control import Action, Caller, can_read, check_access, check_read, check_write, filter_visible
from .auth_policy import AuthPolicy, CallerResolver
from .identity import Identity, IdentityProvider, create_identity_provider

__all__ = [
    "Action",
    "AuthPolicy",
    "Caller",
    "CallerResolver",
    "Identity",
    "IdentityProvider",
    "can_read",
    "check_access",
    "check_read",
    "check_write",
    "create_identity_provider",
    "filter_visible",
]
