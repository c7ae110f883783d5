from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import FrozenSet, Optional

ROLES = ("user", "manager", "admin")
CODE_TYPES = ("login", "enable_2fa", "disable_2fa")
UNITS = ("kg", "g", "lb", "oz", "l", "ml", "pcs", "boxes")
CATEGORIES = (
    "vegetables",
    "fruits",
    "meat",
    "dairy",
    "grains",
    "beverages",
    "spices",
    "other",
)
ITEM_STATUSES = ("active", "expired", "consumed")
WASTE_REASONS = (
    "expired",
    "spoiled",
    "damaged",
    "overstock",
    "preparation_waste",
    "customer_return",
    "other",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    name: str
    email: str
    role: str = "user"
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    two_factor_enabled: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OneTimeCode:
    id: str
    user_id: str
    code: str
    type: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        code: str,
        code_type: str,
        *,
        ttl_minutes: int = 10,
        now: Optional[datetime] = None,
    ) -> "OneTimeCode":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            code=code,
            type=code_type,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
        )

    def is_valid_at(self, moment: datetime) -> bool:
        return not self.is_used and moment < self.expires_at


@dataclass
class InventoryItem:
    id: str
    user_id: str
    name: str
    quantity: float
    unit: str
    expiry_date: date
    category: str
    status: str = "active"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WasteLog:
    id: str
    user_id: str
    item_name: str
    quantity: float
    unit: str
    reason: str
    photo_url: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
