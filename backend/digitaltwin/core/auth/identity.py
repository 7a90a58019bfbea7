"""
Identity providers.

An identity provider turns request headers into an ``Identity`` (external
user id plus roles). Three modes are supported, selected by ``AUTH_MODE``:

- ``gateway``: an upstream API gateway has already authenticated the caller
  and forwards ``x-user-id`` and ``x-user-roles`` (comma separated)
- ``jwt``: the service verifies an ``Authorization: Bearer`` token itself
- ``none``: every request is the configured anonymous user

Providers never raise on bad credentials; ``parse_request`` returns None and
the caller resolver decides which HTTP error that becomes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

import jwt

logger = logging.getLogger("digitaltwin.auth")

USER_ID_HEADER = "x-user-id"
USER_ROLES_HEADER = "x-user-roles"
ANONYMOUS_ROLE = "anonymous"


@dataclass(frozen=True)
class Identity:
    """Authenticated subject as reported by the identity provider."""
    id: str
    roles: Tuple[str, ...] = ()

    def has_role(self, role: str) -> bool:
        return role in self.roles


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts too."""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_roles(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(role.strip() for role in raw.split(",") if role.strip())


class IdentityProvider(ABC):
    def __init__(self, admin_role: str = "admin"):
        self.admin_role = admin_role

    @abstractmethod
    def parse_request(self, headers: Mapping[str, str]) -> Optional[Identity]:
        """Identity carried by the headers, or None when absent or invalid."""

    @abstractmethod
    def has_valid_auth(self, headers: Mapping[str, str]) -> bool:
        """Whether the request carries credentials at all."""

    def get_roles(self, headers: Mapping[str, str]) -> Tuple[str, ...]:
        identity = self.parse_request(headers)
        return identity.roles if identity else ()

    def is_admin(self, headers: Mapping[str, str]) -> bool:
        return self.admin_role in self.get_roles(headers)


class GatewayIdentityProvider(IdentityProvider):
    """Trusts identity headers injected by the API gateway."""

    def parse_request(self, headers: Mapping[str, str]) -> Optional[Identity]:
        user_id = get_header(headers, USER_ID_HEADER)
        if not user_id:
            return None
        return Identity(id=user_id, roles=parse_roles(get_header(headers, USER_ROLES_HEADER)))

    def has_valid_auth(self, headers: Mapping[str, str]) -> bool:
        return get_header(headers, USER_ID_HEADER) is not None

    def get_roles(self, headers: Mapping[str, str]) -> Tuple[str, ...]:
        # Roles are honoured even without a user id (admin service accounts)
        return parse_roles(get_header(headers, USER_ROLES_HEADER))


class JWTIdentityProvider(IdentityProvider):
    """
    Verifies bearer tokens with PyJWT.

    Roles come from ``roles_claim`` (dotted paths allowed), falling back to
    the Keycloak ``realm_access.roles`` layout.
    """

    def __init__(
        self,
        key: str,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        user_id_claim: str = "sub",
        roles_claim: str = "roles",
        admin_role: str = "admin",
    ):
        super().__init__(admin_role)
        if not key:
            raise ValueError("JWT secret or public key required for JWT auth mode")
        self.key = key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.user_id_claim = user_id_claim
        self.roles_claim = roles_claim

    @staticmethod
    def extract_token(headers: Mapping[str, str]) -> Optional[str]:
        auth_header = get_header(headers, "authorization")
        if not auth_header:
            return None
        parts = auth_header.split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            return None
        return parts[1]

    @staticmethod
    def extract_claim(payload: Mapping[str, Any], path: str) -> Any:
        current: Any = payload
        for part in path.split("."):
            if not isinstance(current, Mapping):
                return None
            current = current.get(part)
        return current

    def _extract_roles(self, payload: Mapping[str, Any]) -> Tuple[str, ...]:
        roles = self.extract_claim(payload, self.roles_claim)
        if isinstance(roles, list):
            return tuple(r for r in roles if isinstance(r, str))
        realm_roles = self.extract_claim(payload, "realm_access.roles")
        if isinstance(realm_roles, list):
            return tuple(r for r in realm_roles if isinstance(r, str))
        return ()

    def parse_request(self, headers: Mapping[str, str]) -> Optional[Identity]:
        token = self.extract_token(headers)
        if not token:
            return None

        try:
            payload = jwt.decode(
                token,
                self.key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired bearer token")
            return None
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected invalid bearer token: {e}")
            return None

        user_id = self.extract_claim(payload, self.user_id_claim)
        if not isinstance(user_id, str) or not user_id:
            return None
        return Identity(id=user_id, roles=self._extract_roles(payload))

    def has_valid_auth(self, headers: Mapping[str, str]) -> bool:
        return self.extract_token(headers) is not None


class AnonymousIdentityProvider(IdentityProvider):
    """Auth disabled: every request is the same anonymous, non-admin user."""

    def __init__(self, anonymous_user_id: str = "anonymous", admin_role: str = "admin"):
        super().__init__(admin_role)
        self.identity = Identity(id=anonymous_user_id, roles=(ANONYMOUS_ROLE,))

    def parse_request(self, headers: Mapping[str, str]) -> Optional[Identity]:
        return self.identity

    def has_valid_auth(self, headers: Mapping[str, str]) -> bool:
        return True

    def is_admin(self, headers: Mapping[str, str]) -> bool:
        return False


def _load_jwt_key(settings) -> str:
    if settings.jwt_public_key:
        return settings.jwt_public_key
    if settings.jwt_public_key_file:
        return Path(settings.jwt_public_key_file).read_text()
    if settings.jwt_secret:
        return settings.jwt_secret
    raise ValueError("JWT_SECRET, JWT_PUBLIC_KEY or JWT_PUBLIC_KEY_FILE required for AUTH_MODE=jwt")


def create_identity_provider(settings) -> IdentityProvider:
    """
    Build the identity provider for the configured auth mode.

    Raises:
        ValueError: Unknown mode or incomplete JWT configuration
    """
    mode = settings.effective_auth_mode
    admin_role = settings.auth_admin_role

    if mode == "none":
        logger.warning("Authentication disabled: all requests run as the anonymous user")
        return AnonymousIdentityProvider(settings.anonymous_user_id, admin_role)
    if mode == "gateway":
        return GatewayIdentityProvider(admin_role)
    if mode == "jwt":
        return JWTIdentityProvider(
            key=_load_jwt_key(settings),
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            user_id_claim=settings.jwt_user_id_claim,
            roles_claim=settings.jwt_roles_claim,
            admin_role=admin_role,
        )

    supported: List[str] = ["gateway", "jwt", "none"]
    raise ValueError(f"Unknown AUTH_MODE '{settings.auth_mode}'. Expected one of: {', '.join(supported)}")
