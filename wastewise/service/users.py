from __future__ import annotations

from typing import Iterable, List, Optional

from wastewise.logging import get_logger
from wastewise.service.auth import AuthService
from wastewise.service.errors import NotFoundError, ValidationError
from wastewise.service.permissions import (
    AVAILABLE_PERMISSIONS,
    check_permission,
    check_role,
    ensure_not_self_delete,
    ensure_not_self_demotion,
    validate_permissions,
    validate_role,
)
from wastewise.storage.models import Account

logger = get_logger(__name__)


class UserAdminService:
    """Account administration for admins and managers.

    Listing needs ``users:read``; every mutation is limited to the admin role
    and runs the self-protection checks before touching the store.
    """

    def __init__(self, store, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def list_users(self, actor: Account) -> List[Account]:
        check_permission(actor, "users:read")
        return self.store.list_accounts()

    async def create_user(
        self,
        actor: Account,
        *,
        name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        role: str = "user",
        permissions: Iterable[str] = (),
    ) -> Account:
        check_role(actor, ["admin"])
        account = await self.auth.admin_create_user(
            name, email, password, role=role, permissions=permissions
        )
        logger.info("user_created", actor_id=actor.id, user_id=account.id, role=account.role)
        return account

    def available_permissions(self, actor: Account) -> list[dict]:
        check_role(actor, ["admin"])
        return [{"key": key, "label": label} for key, label in AVAILABLE_PERMISSIONS]

    def update_role(
        self,
        actor: Account,
        target_id: str,
        *,
        role: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
    ) -> Account:
        check_role(actor, ["admin"])
        if role is None and permissions is None:
            raise ValidationError("provide a role or permissions to update")
        if role is not None:
            validate_role(role)
        grants = validate_permissions(permissions) if permissions is not None else None
        ensure_not_self_demotion(actor, target_id, role)

        if self.store.get_account(target_id) is None:
            raise NotFoundError("user not found", detail={"user_id": target_id})
        fields = {}
        if role is not None:
            fields["role"] = role
        if grants is not None:
            fields["permissions"] = grants
        updated = self.store.update_account(target_id, **fields)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": target_id})
        logger.info(
            "user_role_updated",
            actor_id=actor.id,
            user_id=target_id,
            role=updated.role,
            permissions=sorted(updated.permissions),
        )
        return updated

    def delete_user(self, actor: Account, target_id: str) -> None:
        check_role(actor, ["admin"])
        ensure_not_self_delete(actor, target_id)
        if not self.store.delete_account(target_id):
            raise NotFoundError("user not found", detail={"user_id": target_id})
        logger.info("user_deleted", actor_id=actor.id, user_id=target_id)
