"""Role based document permissions."""

from enum import Enum
from typing import Dict, FrozenSet

from docvault.core.exceptions import PermissionDeniedError
from docvault.schemas.vault import Actor


class Permission(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    SHARE = "share"
    ADMIN = "admin"


_ALL = frozenset(Permission)

ROLE_PERMISSIONS: Dict[str, FrozenSet[Permission]] = {
    "admin": _ALL,
    "lender": _ALL,
    "broker": frozenset({Permission.VIEW, Permission.EDIT, Permission.SHARE}),
    "vendor": frozenset({Permission.VIEW, Permission.EDIT}),
    "borrower": frozenset({Permission.VIEW}),
}

DEFAULT_PERMISSIONS: FrozenSet[Permission] = frozenset({Permission.VIEW})


def permissions_for(role: str) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS.get(role.lower(), DEFAULT_PERMISSIONS)


def has_permission(actor: Actor, permission: Permission) -> bool:
    return permission in permissions_for(actor.role)


def require_permission(actor: Actor, permission: Permission) -> None:
    """Raise ``PermissionDeniedError`` unless the actor's role grants the permission."""
    if not has_permission(actor, permission):
        raise PermissionDeniedError(
            f"{actor.id} ({actor.role}) lacks {permission.value} permission"
        )
