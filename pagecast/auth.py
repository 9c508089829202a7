"""Principals and authorization decisions.

Identity itself is provided by an upstream auth gateway; this module only
reads the principal it forwards and decides what that principal may do.
Every mutating pipeline operation goes through :func:`authorize` exactly
once and gets back an explicit :class:`Decision`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import AuthorizationError

ROLES = ("user", "admin")

# Actions that change a book or its pipeline.
CREATE_BOOK = "create_book"
REGENERATE = "regenerate"
DELETE_BOOK = "delete"
SET_VISIBILITY = "set_visibility"
REQUEST_NEXT_CHUNK = "request_next_chunk"
LIKE = "like"
READ = "read"


@dataclass(frozen=True)
class Principal:
    id: str
    verified: bool = False
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    status_code: int = 403

    def __bool__(self) -> bool:
        return self.allowed

    def enforce(self) -> None:
        """Raise :class:`AuthorizationError` if the decision is a denial."""
        if not self.allowed:
            raise AuthorizationError(self.reason or "Forbidden", status_code=self.status_code)


ALLOW = Decision(True)


def _deny(reason: str, status_code: int = 403) -> Decision:
    return Decision(False, reason, status_code)


def authorize(principal: Optional[Principal], action: str,
              book: Optional[Dict[str, Any]] = None) -> Decision:
    """Decide whether ``principal`` may perform ``action`` on ``book``.

    Public books can be read (and their next chunk requested) by anyone.
    Uploading requires a verified account unless the principal is an
    administrator. Every other mutation is reserved for the owner of the
    book or an administrator.
    """
    if action in (READ, REQUEST_NEXT_CHUNK):
        if book is None:
            return ALLOW
        if book.get("is_public"):
            return ALLOW
        if principal is None:
            return _deny("Authentication required", 401)
        if principal.is_admin or principal.id == book.get("user_id"):
            return ALLOW
        return _deny("This book is private")

    if principal is None:
        return _deny("Authentication required", 401)

    if action == CREATE_BOOK:
        if not principal.verified and not principal.is_admin:
            return _deny("Please verify your email before uploading books")
        return ALLOW

    if action == LIKE:
        return authorize(principal, READ, book)

    if action in (REGENERATE, DELETE_BOOK, SET_VISIBILITY):
        if book is None:
            return _deny("Unknown book")
        if principal.is_admin or principal.id == book.get("user_id"):
            return ALLOW
        return _deny("Only the owner of this book can do that")

    return _deny(f"Unknown action {action!r}")


class HeaderAuthProvider:
    """Read the principal forwarded by a trusted gateway in request headers.

    ``X-User-Id`` carries the user id, ``X-User-Verified`` a boolean flag
    and ``X-User-Role`` the role. ``superadmin`` is accepted as an alias of
    ``admin``. Requests without a user id are anonymous.
    """

    id_header = "x-user-id"
    verified_header = "x-user-verified"
    role_header = "x-user-role"

    def current_principal(self, headers: Mapping[str, str]) -> Optional[Principal]:
        user_id = (headers.get(self.id_header) or "").strip()
        if not user_id:
            return None
        verified = (headers.get(self.verified_header) or "").strip().lower() in {"1", "true", "yes"}
        role = (headers.get(self.role_header) or "user").strip().lower()
        if role == "superadmin":
            role = "admin"
        if role not in ROLES:
            role = "user"
        return Principal(id=user_id, verified=verified, role=role)
