"""
Access-control evaluator for asset records.

Pure decisions over a ``Caller`` and a record, no I/O. Rules, in order:

1. A caller holding the admin role may do anything.
2. Reading a public record is allowed for everyone, anonymous included.
3. Reading a private record requires an authenticated caller who owns it.
   Anonymous callers get 401, other users get 403.
4. Writing (update, delete) requires an authenticated caller; it is allowed
   when the record has no owner (legacy rows) or the caller owns it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Protocol, Tuple

from digitaltwin.core.errors import ForbiddenError, UnauthorizedError

DEFAULT_ADMIN_ROLE = "admin"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"


class OwnedRecord(Protocol):
    owner_id: Optional[int]
    is_public: Optional[bool]


@dataclass(frozen=True)
class Caller:
    """
    The party performing a request.

    ``user_id`` is the numeric owner id from the user store. An
    unauthenticated caller may still carry roles (gateway service accounts),
    which are honoured for the admin bypass only.
    """
    user_id: Optional[int] = None
    roles: Tuple[str, ...] = ()
    authenticated: bool = False

    @classmethod
    def anonymous(cls, roles: Iterable[str] = ()) -> "Caller":
        return cls(user_id=None, roles=tuple(roles), authenticated=False)

    def has_role(self, role: str) -> bool:
        return role in self.roles


def is_admin(caller: Optional[Caller], admin_role: str = DEFAULT_ADMIN_ROLE) -> bool:
    return caller is not None and caller.has_role(admin_role)


def _is_public(record: OwnedRecord) -> bool:
    # NULL visibility predates the column and means public
    return record.is_public is None or bool(record.is_public)


def _owns(caller: Optional[Caller], record: OwnedRecord) -> bool:
    return (
        caller is not None
        and caller.authenticated
        and caller.user_id is not None
        and record.owner_id == caller.user_id
    )


def check_read(caller: Optional[Caller], record: OwnedRecord, admin_role: str = DEFAULT_ADMIN_ROLE) -> None:
    """
    Raises:
        UnauthorizedError: Private record and no authenticated caller
        ForbiddenError: Private record owned by someone else
    """
    if is_admin(caller, admin_role) or _is_public(record):
        return
    if caller is None or not caller.authenticated:
        raise UnauthorizedError("Authentication required for private assets")
    if not _owns(caller, record):
        raise ForbiddenError("This asset is private")


def check_write(
    caller: Optional[Caller],
    record: OwnedRecord,
    admin_role: str = DEFAULT_ADMIN_ROLE,
    verb: str = "modify",
) -> None:
    """
    Raises:
        UnauthorizedError: No authenticated caller
        ForbiddenError: Record owned by someone else (message uses ``verb``)
    """
    if is_admin(caller, admin_role):
        return
    if caller is None or not caller.authenticated:
        raise UnauthorizedError("Authentication required")
    if record.owner_id is None or _owns(caller, record):
        return
    raise ForbiddenError(f"You can only {verb} your own assets")


def check_access(
    caller: Optional[Caller],
    record: OwnedRecord,
    action: Action,
    admin_role: str = DEFAULT_ADMIN_ROLE,
    verb: str = "modify",
) -> None:
    """Dispatch to the read or write rules; ``verb`` only shapes write denials."""
    if action == Action.READ:
        check_read(caller, record, admin_role)
    else:
        check_write(caller, record, admin_role, verb=verb)


def can_read(caller: Optional[Caller], record: OwnedRecord, admin_role: str = DEFAULT_ADMIN_ROLE) -> bool:
    return is_admin(caller, admin_role) or _is_public(record) or _owns(caller, record)


def filter_visible(
    caller: Optional[Caller],
    records: Iterable[OwnedRecord],
    admin_role: str = DEFAULT_ADMIN_ROLE,
) -> List[OwnedRecord]:
    """Records the caller may see in a list view, order preserved."""
    return [record for record in records if can_read(caller, record, admin_role)]
