from __future__ import annotations

from datetime import date, timedelta
from typing import List, Optional

from wastewise.logging import get_logger
from wastewise.service.errors import NotFoundError, ValidationError
from wastewise.service.permissions import check_permission, check_role
from wastewise.storage.models import (
    CATEGORIES,
    ITEM_STATUSES,
    UNITS,
    Account,
    InventoryItem,
)

logger = get_logger(__name__)

MAX_ITEM_NAME_LENGTH = 100


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("item name is required", detail={"field": "name"})
    if len(cleaned) > MAX_ITEM_NAME_LENGTH:
        raise ValidationError(
            f"item name cannot exceed {MAX_ITEM_NAME_LENGTH} characters",
            detail={"field": "name"},
        )
    return cleaned


def _check_choice(value: str, allowed: tuple, field: str) -> str:
    if value not in allowed:
        raise ValidationError(
            f"invalid {field}", detail={"field": field, "allowed": list(allowed)}
        )
    return value


def _check_quantity(quantity: float) -> float:
    if quantity is None or quantity < 0:
        raise ValidationError("quantity cannot be negative", detail={"field": "quantity"})
    return float(quantity)


class InventoryService:
    def __init__(self, store, *, alert_days: int = 3) -> None:
        self.store = store
        self.alert_days = alert_days

    def list_items(self, actor: Account, *, include_all: bool = False) -> List[InventoryItem]:
        check_permission(actor, "inventory:read")
        if include_all:
            check_role(actor, ["admin"])
            return self.store.list_items()
        return self.store.list_items(actor.id)

    def create_item(
        self,
        actor: Account,
        *,
        name: str,
        quantity: float,
        unit: str,
        expiry_date: date,
        category: str,
    ) -> InventoryItem:
        check_permission(actor, "inventory:write")
        item = self.store.create_item(
            actor.id,
            name=_clean_name(name),
            quantity=_check_quantity(quantity),
            unit=_check_choice(unit, UNITS, "unit"),
            expiry_date=expiry_date,
            category=_check_choice(category, CATEGORIES, "category"),
        )
        logger.info("inventory_item_created", user_id=actor.id, item_id=item.id)
        return item

    def _owned_item(self, actor: Account, item_id: str) -> InventoryItem:
        item = self.store.get_item(item_id)
        # Foreign items look missing rather than forbidden
        if item is None or item.user_id != actor.id:
            raise NotFoundError("item not found", detail={"item_id": item_id})
        return item

    def update_item(self, actor: Account, item_id: str, **changes) -> InventoryItem:
        check_permission(actor, "inventory:write")
        self._owned_item(actor, item_id)
        fields = {key: value for key, value in changes.items() if value is not None}
        if "name" in fields:
            fields["name"] = _clean_name(fields["name"])
        if "quantity" in fields:
            fields["quantity"] = _check_quantity(fields["quantity"])
        if "unit" in fields:
            _check_choice(fields["unit"], UNITS, "unit")
        if "category" in fields:
            _check_choice(fields["category"], CATEGORIES, "category")
        if "status" in fields:
            _check_choice(fields["status"], ITEM_STATUSES, "status")
        if not fields:
            raise ValidationError("no fields to update")
        updated = self.store.update_item(item_id, **fields)
        if updated is None:
            raise NotFoundError("item not found", detail={"item_id": item_id})
        logger.info(
            "inventory_item_updated", user_id=actor.id, item_id=item_id, fields=sorted(fields)
        )
        return updated

    def delete_item(self, actor: Account, item_id: str) -> None:
        check_permission(actor, "inventory:delete")
        self._owned_item(actor, item_id)
        self.store.delete_item(item_id)
        logger.info("inventory_item_deleted", user_id=actor.id, item_id=item_id)

    def expiry_alerts(
        self, actor: Account, *, days: Optional[int] = None, today: Optional[date] = None
    ) -> List[InventoryItem]:
        """Active items expiring on or before ``today + days``, soonest first."""
        check_permission(actor, "inventory:read")
        window = self.alert_days if days is None else days
        if window < 0:
            raise ValidationError("days cannot be negative", detail={"field": "days"})
        cutoff = (today or date.today()) + timedelta(days=window)
        items = [
            item
            for item in self.store.list_items(actor.id, statuses=["active"])
            if item.expiry_date <= cutoff
        ]
        return sorted(items, key=lambda item: item.expiry_date)

    def mark_expired(self, today: Optional[date] = None) -> int:
        changed = self.store.mark_expired_items(today or date.today())
        if changed:
            logger.info("inventory_items_expired", count=changed)
        return changed
