from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wastewise.logging import get_correlation_id
from wastewise.service.permissions import effective_permissions
from wastewise.storage.models import Account, InventoryItem, WasteLog

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_code",
    "conflict",
    "server_error",
    "notification_failed",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    # Matches the X-Request-ID echoed by the correlation middleware
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


# Request bodies leave required fields optional so the services can report
# missing values with their own messages.


class RegisterRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=256)
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)
    two_factor_code: Optional[str] = Field(
        default=None, alias="twoFactorCode", max_length=16
    )


class TwoFactorRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=16)


class CreateUserRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=256)
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)
    role: str = "user"
    permissions: List[str] = Field(default_factory=list, max_length=32)


class UpdateRoleRequest(BaseModel):
    role: Optional[str] = None
    permissions: Optional[List[str]] = Field(default=None, max_length=32)


class InventoryCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    quantity: float
    unit: str
    expiry_date: date = Field(alias="expiryDate")
    category: str


class InventoryUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    expiry_date: Optional[date] = Field(default=None, alias="expiryDate")
    category: Optional[str] = None
    status: Optional[str] = None


class WasteCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_name: Optional[str] = Field(default=None, alias="itemName")
    quantity: Optional[float] = None
    unit: Optional[str] = None
    reason: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoUrl", max_length=2048)
    notes: Optional[str] = None


class AISearchRequest(BaseModel):
    query: Optional[str] = Field(default=None, max_length=2000)


class AccountResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    permissions: List[str]
    effective_permissions: List[str]
    two_factor_enabled: bool
    last_login: Optional[datetime] = None
    created_at: datetime


class AuthResponse(BaseModel):
    account: AccountResponse
    token: str


class TwoFactorChallengeResponse(BaseModel):
    requires_two_factor: bool = True
    message: str


class CodeSentResponse(BaseModel):
    code_sent: bool = True
    message: str


class TwoFactorStatusResponse(BaseModel):
    two_factor_enabled: bool
    message: str
    account: AccountResponse


class UserListResponse(BaseModel):
    items: List[AccountResponse]


class PermissionCatalogResponse(BaseModel):
    items: List[Dict[str, str]]


class InventoryItemResponse(BaseModel):
    id: str
    user_id: str
    name: str
    quantity: float
    unit: str
    expiry_date: date
    category: str
    status: str
    created_at: datetime
    updated_at: datetime


class InventoryListResponse(BaseModel):
    items: List[InventoryItemResponse]


class WasteLogResponse(BaseModel):
    id: str
    user_id: str
    item_name: str
    quantity: float
    unit: str
    reason: str
    photo_url: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class WasteLogListResponse(BaseModel):
    items: List[WasteLogResponse]


def account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        name=account.name,
        email=account.email,
        role=account.role,
        permissions=sorted(account.permissions),
        effective_permissions=sorted(effective_permissions(account)),
        two_factor_enabled=account.two_factor_enabled,
        last_login=account.last_login,
        created_at=account.created_at,
    )


def item_to_response(item: InventoryItem) -> InventoryItemResponse:
    return InventoryItemResponse(
        id=item.id,
        user_id=item.user_id,
        name=item.name,
        quantity=item.quantity,
        unit=item.unit,
        expiry_date=item.expiry_date,
        category=item.category,
        status=item.status,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


def waste_log_to_response(log: WasteLog) -> WasteLogResponse:
    return WasteLogResponse(
        id=log.id,
        user_id=log.user_id,
        item_name=log.item_name,
        quantity=log.quantity,
        unit=log.unit,
        reason=log.reason,
        photo_url=log.photo_url,
        notes=log.notes,
        created_at=log.created_at,
    )
