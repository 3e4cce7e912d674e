"""
Permission checking utilities
"""
from typing import FrozenSet, Iterable, Optional, Protocol, runtime_checkable

from starlette.requests import HTTPConnection


class Permission:
    """Permission constants"""
    # Grants every permission a flag unit may require
    ADMIN_ALL = "admin:all"
    # Needed to read the flag catalog through the API
    CATALOG_VIEW = "record_flags:catalog_view"


@runtime_checkable
class AuthorizationContext(Protocol):
    """Permission check consulted by the catalog filter; must be total and side-effect free"""

    def has_permission(self, name: str) -> bool:
        ...


class UserContext:
    """Authorization context backed by a fixed set of permission names"""

    def __init__(self, user_id: Optional[str] = None, permissions: Iterable[str] = ()):
        self.user_id = user_id
        self.permissions: FrozenSet[str] = frozenset(p.strip() for p in permissions if p and p.strip())

    def has_permission(self, name: str) -> bool:
        """
        Check if the user holds a permission

        Args:
            name: Permission string (e.g., "case:view_escalations")

        Returns:
            True if user has permission, False otherwise
        """
        if Permission.ADMIN_ALL in self.permissions:
            return True
        return name in self.permissions

    def __repr__(self) -> str:
        return f"UserContext(user_id={self.user_id!r}, permissions={sorted(self.permissions)!r})"


ANONYMOUS = UserContext()


def parse_permission_header(value: Optional[str]) -> FrozenSet[str]:
    """Parse a comma-separated permission header"""
    if not value:
        return frozenset()
    return frozenset(p.strip() for p in value.split(",") if p.strip())


async def get_user_context(connection: HTTPConnection) -> UserContext:
    """
    FastAPI dependency resolving the caller's authorization context

    User id and permissions are forwarded by the host page in the
    X-User-Id and X-User-Permissions headers.
    """
    return UserContext(
        user_id=connection.headers.get("x-user-id"),
        permissions=parse_permission_header(connection.headers.get("x-user-permissions")),
    )
