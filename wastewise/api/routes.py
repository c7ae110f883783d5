from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from wastewise.api.schemas import (
    AISearchRequest,
    AuthResponse,
    CodeSentResponse,
    CreateUserRequest,
    Envelope,
    InventoryCreateRequest,
    InventoryListResponse,
    InventoryUpdateRequest,
    LoginRequest,
    PermissionCatalogResponse,
    RegisterRequest,
    TwoFactorChallengeResponse,
    TwoFactorRequest,
    TwoFactorStatusResponse,
    UpdateRoleRequest,
    UserListResponse,
    WasteCreateRequest,
    WasteLogListResponse,
    account_to_response,
    item_to_response,
    waste_log_to_response,
)
from wastewise.logging import get_logger
from wastewise.service.otp import NeedCode
from wastewise.service.permissions import check_permission, check_role
from wastewise.service.runtime import check_rate_limit, get_runtime
from wastewise.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

# Per-IP budgets allow several accounts behind one address
_IP_LIMIT_MULTIPLIER = 5


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token bucket limit and optionally apply headers to the response.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise _http_error(
            "rate_limited",
            "too many requests, please try again later",
            status_code=429,
            details={"retry_after_seconds": info.reset_seconds},
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _limit_credentials(request: Request, endpoint: str, email: Optional[str]) -> None:
    runtime = get_runtime()
    limit = runtime.settings.login_rate_limit_per_minute
    await _enforce_rate_limit(
        runtime, f"{endpoint}:ip:{_client_ip(request)}", limit * _IP_LIMIT_MULTIPLIER, 60
    )
    if email and email.strip():
        await _enforce_rate_limit(runtime, f"{endpoint}:email:{email.strip()}", limit, 60)


async def _limit_codes(account: Account, flow: str) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"code:{flow}:{account.id}",
        runtime.settings.code_rate_limit_per_minute,
        60,
    )


# -- dependencies -----------------------------------------------------------


async def get_current_account(authorization: Optional[str] = Header(None)) -> Account:
    return get_runtime().auth.resolve_token(authorization)


def require_permission(permission: str):
    async def _dependency(account: Account = Depends(get_current_account)) -> Account:
        check_permission(account, permission)
        return account

    return _dependency


def require_role(*roles: str):
    async def _dependency(account: Account = Depends(get_current_account)) -> Account:
        check_role(account, roles)
        return account

    return _dependency


# -- health -----------------------------------------------------------------


@router.get("/health", tags=["health"])
async def health():
    return {"message": "WasteWise API is running!"}


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a new account with the default ``user`` role and return a session token.

    Raises:
        400: Missing fields, malformed email, bad password length, or signup disabled
        409: An account with this email already exists
        429: Rate limit exceeded
    """
    runtime = get_runtime()
    await _limit_credentials(request, "register", body.email)
    result = await runtime.auth.register(body.name, body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(account=account_to_response(result.account), token=result.token),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Accounts with two-factor authentication answer the first attempt with
    ``requires_two_factor`` after emailing a code; repeating the request with
    ``two_factor_code`` completes the login.

    Raises:
        400: Missing fields or an invalid/expired code
        401: Invalid email or password
        429: Rate limit exceeded
        502: The verification email could not be sent
    """
    runtime = get_runtime()
    await _limit_credentials(request, "login", body.email)
    outcome = await runtime.auth.authenticate(body.email, body.password, body.two_factor_code)
    if isinstance(outcome, NeedCode):
        return Envelope(
            status="ok",
            data=TwoFactorChallengeResponse(message=outcome.message),
        )
    return Envelope(
        status="ok",
        data=AuthResponse(account=account_to_response(outcome.account), token=outcome.token),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def me(account: Account = Depends(get_current_account)):
    return Envelope(status="ok", data=account_to_response(account))


async def _toggle_two_factor(account: Account, code: Optional[str], *, enable: bool) -> Envelope:
    runtime = get_runtime()
    flow = "enable_2fa" if enable else "disable_2fa"
    await _limit_codes(account, flow)
    if enable:
        outcome = await runtime.codes.enable_two_factor(account, code)
    else:
        outcome = await runtime.codes.disable_two_factor(account, code)
    if isinstance(outcome, NeedCode):
        return Envelope(status="ok", data=CodeSentResponse(message=outcome.message))
    state = "enabled" if enable else "disabled"
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            two_factor_enabled=outcome.two_factor_enabled,
            message=f"Two-factor authentication {state} successfully",
            account=account_to_response(outcome),
        ),
    )


@router.post("/auth/enable-2fa", response_model=Envelope, tags=["auth"])
async def enable_two_factor(
    body: Optional[TwoFactorRequest] = None,
    account: Account = Depends(get_current_account),
):
    return await _toggle_two_factor(account, body.code if body else None, enable=True)


@router.post("/auth/disable-2fa", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: Optional[TwoFactorRequest] = None,
    account: Account = Depends(get_current_account),
):
    return await _toggle_two_factor(account, body.code if body else None, enable=False)


# -- users ------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(account: Account = Depends(require_permission("users:read"))):
    users = get_runtime().users.list_users(account)
    return Envelope(
        status="ok", data=UserListResponse(items=[account_to_response(u) for u in users])
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateUserRequest, account: Account = Depends(require_role("admin"))
):
    created = await get_runtime().users.create_user(
        account,
        name=body.name,
        email=body.email,
        password=body.password,
        role=body.role,
        permissions=body.permissions,
    )
    return Envelope(status="ok", data=account_to_response(created))


@router.get("/users/permissions", response_model=Envelope, tags=["users"])
async def list_permissions(account: Account = Depends(require_role("admin"))):
    items = get_runtime().users.available_permissions(account)
    return Envelope(status="ok", data=PermissionCatalogResponse(items=items))


@router.put("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    user_id: str,
    body: UpdateRoleRequest,
    account: Account = Depends(require_role("admin")),
):
    updated = get_runtime().users.update_role(
        account, user_id, role=body.role, permissions=body.permissions
    )
    return Envelope(status="ok", data=account_to_response(updated))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, account: Account = Depends(require_role("admin"))):
    get_runtime().users.delete_user(account, user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


# -- inventory --------------------------------------------------------------


@router.get("/inventory", response_model=Envelope, tags=["inventory"])
async def list_inventory(
    include_all: bool = Query(False, alias="all"),
    account: Account = Depends(require_permission("inventory:read")),
):
    items = get_runtime().inventory.list_items(account, include_all=include_all)
    return Envelope(
        status="ok", data=InventoryListResponse(items=[item_to_response(i) for i in items])
    )


@router.get("/inventory/alerts", response_model=Envelope, tags=["inventory"])
async def inventory_alerts(
    days: Optional[int] = Query(None, ge=0, le=365),
    account: Account = Depends(require_permission("inventory:read")),
):
    items = get_runtime().inventory.expiry_alerts(account, days=days)
    return Envelope(
        status="ok", data=InventoryListResponse(items=[item_to_response(i) for i in items])
    )


@router.post("/inventory", response_model=Envelope, status_code=201, tags=["inventory"])
async def create_inventory_item(
    body: InventoryCreateRequest,
    account: Account = Depends(require_permission("inventory:write")),
):
    item = get_runtime().inventory.create_item(
        account,
        name=body.name,
        quantity=body.quantity,
        unit=body.unit,
        expiry_date=body.expiry_date,
        category=body.category,
    )
    return Envelope(status="ok", data=item_to_response(item))


@router.put("/inventory/{item_id}", response_model=Envelope, tags=["inventory"])
async def update_inventory_item(
    item_id: str,
    body: InventoryUpdateRequest,
    account: Account = Depends(require_permission("inventory:write")),
):
    item = get_runtime().inventory.update_item(account, item_id, **body.model_dump())
    return Envelope(status="ok", data=item_to_response(item))


@router.delete("/inventory/{item_id}", response_model=Envelope, tags=["inventory"])
async def delete_inventory_item(
    item_id: str, account: Account = Depends(require_permission("inventory:delete"))
):
    get_runtime().inventory.delete_item(account, item_id)
    return Envelope(status="ok", data={"deleted": True, "item_id": item_id})


# -- waste ------------------------------------------------------------------


@router.get("/waste", response_model=Envelope, tags=["waste"])
async def list_waste_logs(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    account: Account = Depends(require_permission("waste:read")),
):
    logs = get_runtime().waste.list_logs(account, limit=limit)
    return Envelope(
        status="ok", data=WasteLogListResponse(items=[waste_log_to_response(log) for log in logs])
    )


@router.post("/waste", response_model=Envelope, status_code=201, tags=["waste"])
async def create_waste_log(
    body: WasteCreateRequest, account: Account = Depends(require_permission("waste:write"))
):
    log = get_runtime().waste.create_log(
        account,
        item_name=body.item_name,
        quantity=body.quantity,
        unit=body.unit,
        reason=body.reason,
        photo_url=body.photo_url,
        notes=body.notes,
    )
    return Envelope(status="ok", data=waste_log_to_response(log))


@router.get("/waste/report", response_model=Envelope, tags=["waste"])
async def waste_report(
    month: Optional[str] = Query(None, max_length=7),
    account: Account = Depends(require_permission("waste:read")),
):
    report = get_runtime().waste.monthly_report(account, month)
    return Envelope(status="ok", data=report)


@router.get("/waste/report.csv", tags=["waste"])
async def waste_report_csv(
    month: Optional[str] = Query(None, max_length=7),
    account: Account = Depends(require_permission("waste:read")),
):
    body = get_runtime().waste.export_csv(account, month)
    filename = f"waste-report-{month}.csv" if month else "waste-report.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.delete("/waste/{log_id}", response_model=Envelope, tags=["waste"])
async def delete_waste_log(
    log_id: str, account: Account = Depends(require_permission("waste:delete"))
):
    get_runtime().waste.delete_log(account, log_id)
    return Envelope(status="ok", data={"deleted": True, "log_id": log_id})


# -- AI advisor -------------------------------------------------------------


@router.post("/ai/search", response_model=Envelope, tags=["ai"])
async def ai_search(
    body: AISearchRequest, account: Account = Depends(require_permission("analytics:read"))
):
    result = await get_runtime().advisor.search(account, body.query)
    return Envelope(status="ok", data=result)


@router.get("/ai/suggestions", response_model=Envelope, tags=["ai"])
async def ai_suggestions(account: Account = Depends(require_permission("analytics:read"))):
    result = await get_runtime().advisor.suggestions(account)
    return Envelope(status="ok", data=result)


@router.get("/ai/expiry-analysis", response_model=Envelope, tags=["ai"])
async def ai_expiry_analysis(
    account: Account = Depends(require_permission("analytics:read")),
):
    result = await get_runtime().advisor.expiry_analysis(account)
    return Envelope(status="ok", data=result)
