"""Authenticated caller.

Authentication itself happens upstream; requests arrive with the caller's id
and role in ``X-User-Id`` / ``X-User-Role`` headers.
"""

from dataclasses import dataclass
from enum import Enum

from fastapi import Header

from shared.exceptions import ForbiddenError, UnauthorizedError


class Role(Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns(self, user_id: str) -> bool:
        return self.user_id == user_id

    def require_admin(self) -> None:
        if not self.is_admin:
            raise ForbiddenError("Admin access required")


SYSTEM = Principal(user_id="system", role=Role.ADMIN)


def current_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    """FastAPI dependency resolving the caller from request headers."""
    if not x_user_id:
        raise UnauthorizedError("Authentication required")
    try:
        role = Role((x_user_role or Role.CUSTOMER.value).lower())
    except ValueError as exc:
        raise UnauthorizedError(f"Unknown role: {x_user_role}") from exc
    return Principal(user_id=x_user_id, role=role)
