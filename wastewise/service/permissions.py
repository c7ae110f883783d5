"""Role and permission gate.

The role table is a read-only constant; every check receives the acting
account explicitly instead of reading it from request state.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Tuple

from wastewise.logging import get_logger
from wastewise.service.errors import ForbiddenError, ValidationError
from wastewise.storage.models import ROLES, Account

logger = get_logger(__name__)

_USER_PERMISSIONS: Tuple[str, ...] = (
    "inventory:read",
    "inventory:write",
    "waste:read",
    "waste:write",
)
_MANAGER_PERMISSIONS: Tuple[str, ...] = _USER_PERMISSIONS + (
    "inventory:delete",
    "waste:delete",
    "analytics:read",
    "users:read",
)
_ADMIN_PERMISSIONS: Tuple[str, ...] = _MANAGER_PERMISSIONS + (
    "users:write",
    "users:delete",
    "settings:write",
)

# Ordered per role for display
ROLE_PERMISSION_ORDER: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {
        "user": _USER_PERMISSIONS,
        "manager": _MANAGER_PERMISSIONS,
        "admin": _ADMIN_PERMISSIONS,
    }
)

ROLE_PERMISSIONS: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {role: frozenset(perms) for role, perms in ROLE_PERMISSION_ORDER.items()}
)

AVAILABLE_PERMISSIONS: Tuple[Tuple[str, str], ...] = (
    ("inventory:read", "View Inventory"),
    ("inventory:write", "Add/Edit Inventory"),
    ("inventory:delete", "Delete Inventory"),
    ("waste:read", "View Waste Logs"),
    ("waste:write", "Add/Edit Waste Logs"),
    ("waste:delete", "Delete Waste Logs"),
    ("users:read", "View Users"),
    ("users:write", "Manage Users"),
    ("users:delete", "Delete Users"),
    ("analytics:read", "View Analytics"),
    ("settings:write", "Manage Settings"),
)

KNOWN_PERMISSIONS: FrozenSet[str] = frozenset(key for key, _ in AVAILABLE_PERMISSIONS)


def effective_permissions(account: Account) -> FrozenSet[str]:
    """Role-derived permissions united with the account's custom grants."""
    return ROLE_PERMISSIONS.get(account.role, frozenset()) | frozenset(account.permissions)


def has_permission(account: Account, required: str) -> bool:
    return required in effective_permissions(account)


def check_permission(account: Account, required: str) -> None:
    if has_permission(account, required):
        return
    logger.warning(
        "permission_denied",
        user_id=account.id,
        role=account.role,
        required=required,
    )
    raise ForbiddenError("insufficient permissions", required=required, role=account.role)


def check_role(account: Account, allowed_roles: Iterable[str]) -> None:
    allowed = frozenset(allowed_roles)
    if account.role in allowed:
        return
    logger.warning(
        "role_denied",
        user_id=account.id,
        role=account.role,
        required=sorted(allowed),
    )
    raise ForbiddenError("insufficient role permissions", required=allowed, role=account.role)


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError("invalid role", detail={"role": role, "allowed": list(ROLES)})
    return role


def validate_permissions(permissions: Iterable[str]) -> FrozenSet[str]:
    requested = frozenset(permissions)
    unknown = requested - KNOWN_PERMISSIONS
    if unknown:
        raise ValidationError(
            "unknown permissions", detail={"permissions": sorted(unknown)}
        )
    return requested


def ensure_not_self_demotion(actor: Account, target_id: str, new_role: str | None) -> None:
    if (
        new_role is not None
        and actor.id == target_id
        and actor.role == "admin"
        and new_role != "admin"
    ):
        raise ValidationError("cannot change your own admin role")


def ensure_not_self_delete(actor: Account, target_id: str) -> None:
    if actor.id == target_id:
        raise ValidationError("cannot delete your own account")


__all__ = [
    "AVAILABLE_PERMISSIONS",
    "KNOWN_PERMISSIONS",
    "ROLE_PERMISSIONS",
    "ROLE_PERMISSION_ORDER",
    "check_permission",
    "check_role",
    "effective_permissions",
    "ensure_not_self_delete",
    "ensure_not_self_demotion",
    "has_permission",
    "validate_permissions",
    "validate_role",
]
