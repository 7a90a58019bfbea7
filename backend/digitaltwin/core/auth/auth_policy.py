"""
Authentication policy and caller resolution.

``AuthPolicy`` is an explicit value injected into every manager. It bundles
the identity provider with the admin role name; its anonymous variant
replaces a process-wide "auth disabled" switch, so two managers in the same
process can run under different policies (and tests never touch globals).

``CallerResolver`` turns request headers into a ``Caller`` for the access
evaluator, looking up (or creating) the numeric user id on the way. It has
three entry points because the pipeline treats identity failures differently
per path:

- ``require``: upload, update, delete. Missing or invalid credentials are 401,
  a user-store failure is 500.
- ``optional``: list views. Any failure is logged and the request continues
  as anonymous (header roles still grant the admin bypass).
- ``for_private_read``: fetching a private record. Any failure is 401.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from digitaltwin.core.auth.access_control import Caller
from digitaltwin.core.auth.identity import (
    AnonymousIdentityProvider,
    GatewayIdentityProvider,
    Identity,
    IdentityProvider,
    create_identity_provider,
)
from digitaltwin.core.errors import InternalError, UnauthorizedError

logger = logging.getLogger("digitaltwin.auth")


@dataclass(frozen=True)
class AuthPolicy:
    provider: IdentityProvider = field(default_factory=GatewayIdentityProvider)
    admin_role: str = "admin"

    @property
    def anonymous(self) -> bool:
        return isinstance(self.provider, AnonymousIdentityProvider)

    @classmethod
    def gateway(cls, admin_role: str = "admin") -> "AuthPolicy":
        return cls(provider=GatewayIdentityProvider(admin_role), admin_role=admin_role)

    @classmethod
    def anonymous_policy(cls, anonymous_user_id: str = "anonymous", admin_role: str = "admin") -> "AuthPolicy":
        return cls(provider=AnonymousIdentityProvider(anonymous_user_id, admin_role), admin_role=admin_role)

    @classmethod
    def from_settings(cls, settings) -> "AuthPolicy":
        return cls(provider=create_identity_provider(settings), admin_role=settings.auth_admin_role)

    def identify(self, headers: Mapping[str, str]) -> Optional[Identity]:
        return self.provider.parse_request(headers)

    def has_credentials(self, headers: Mapping[str, str]) -> bool:
        return self.provider.has_valid_auth(headers)


class CallerResolver:
    def __init__(self, policy: AuthPolicy, users):
        self.policy = policy
        self.users = users

    @property
    def admin_role(self) -> str:
        return self.policy.admin_role

    async def _lookup(self, identity: Identity) -> Caller:
        user = await self.users.find_or_create_user(identity)
        if user is None or user.id is None:
            raise InternalError("Failed to retrieve user information")
        return Caller(user_id=user.id, roles=identity.roles, authenticated=True)

    async def require(self, headers: Mapping[str, str]) -> Caller:
        """
        Raises:
            UnauthorizedError: No credentials, or credentials that do not parse
            InternalError: The user store failed
        """
        if not self.policy.has_credentials(headers):
            raise UnauthorizedError("Authentication required")

        identity = self.policy.identify(headers)
        if identity is None:
            raise UnauthorizedError("Invalid authentication headers")

        try:
            return await self._lookup(identity)
        except InternalError:
            raise
        except Exception as e:
            logger.error(f"User lookup failed for {identity.id}: {e}", exc_info=True)
            raise InternalError("Failed to retrieve user information")

    async def optional(self, headers: Mapping[str, str]) -> Caller:
        """Best-effort identity for list views; never raises."""
        roles = self.policy.provider.get_roles(headers)
        if not self.policy.has_credentials(headers):
            return Caller.anonymous(roles)

        identity = self.policy.identify(headers)
        if identity is None:
            return Caller.anonymous(roles)

        try:
            return await self._lookup(identity)
        except Exception as e:
            logger.warning(f"Continuing as anonymous, user lookup failed for {identity.id}: {e}")
            return Caller.anonymous(identity.roles)

    async def for_private_read(self, headers: Mapping[str, str]) -> Caller:
        """
        Raises:
            UnauthorizedError: On any identity or user-store failure
        """
        roles = self.policy.provider.get_roles(headers)
        if self.policy.admin_role in roles:
            return Caller.anonymous(roles)

        if not self.policy.has_credentials(headers):
            raise UnauthorizedError("Authentication required for private assets")
        identity = self.policy.identify(headers)
        if identity is None:
            raise UnauthorizedError("Invalid authentication headers")

        try:
            return await self._lookup(identity)
        except Exception as e:
            logger.warning(f"User lookup failed on private read for {identity.id}: {e}")
            raise UnauthorizedError("Authentication required for private assets")
