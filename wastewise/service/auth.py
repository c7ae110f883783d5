from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import re
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from wastewise.config import Settings
from wastewise.logging import get_logger
from wastewise.service.errors import (
    AuthenticationError,
    DuplicateAccountError,
    InvalidCredentialsError,
    ValidationError,
)
from wastewise.service.otp import CodeBroker, NeedCode
from wastewise.service.permissions import validate_permissions, validate_role
from wastewise.storage.errors import ConstraintViolation
from wastewise.storage.models import Account, OneTimeCode

logger = get_logger(__name__)

MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 100

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthStore(Protocol):
    def create_account(
        self,
        name: str,
        email: str,
        *,
        role: str = "user",
        permissions: Iterable[str] = (),
        two_factor_enabled: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(self, limit: int = 500) -> List[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def record_login(
        self, account_id: str, when: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def delete_account(self, account_id: str) -> bool: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def create_code(self, record: OneTimeCode) -> OneTimeCode: ...

    def consume_code(
        self,
        user_id: str,
        code: str,
        code_type: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[OneTimeCode]: ...

    def purge_expired_codes(self, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class Authenticated:
    """Terminal login outcome: the account and a freshly signed session token."""

    account: Account
    token: str


class TokenSigner:
    """HS256 session tokens with a fixed validity window and no revocation list."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.ttl = timedelta(days=settings.session_token_ttl_days)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        # Bytes comparison; header values may carry non-ASCII characters
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def sign(self, account: Account, *, now: Optional[datetime] = None) -> str:
        issued = now or datetime.now(timezone.utc)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "role": account.role,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def verify(self, token: str) -> Optional[str]:
        """Return the account id a valid token binds, or None."""
        payload = self._decode_jwt(token)
        if not payload:
            return None
        sub = payload.get("sub")
        return sub if isinstance(sub, str) and sub else None


class AuthService:
    """Registration, password login with optional email step-up, and token resolution."""

    def __init__(
        self,
        store: AuthStore,
        codes: CodeBroker,
        settings: Settings,
        *,
        signer: Optional[TokenSigner] = None,
    ) -> None:
        self.store: AuthStore = store
        self.codes = codes
        self.settings = settings
        self.signer = signer or TokenSigner(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()
        self.logger = logger

    # -- passwords ----------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _get_dummy_hash(self) -> str:
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
            return self._dummy_hash

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown emails cost as much as bad passwords."""
        try:
            self._pwd_hasher.verify(self._get_dummy_hash(), password)
        except VerificationError:
            pass

    def verify_password(self, account_id: str, password: str) -> bool:
        """Verify an account's password against the stored hash."""
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=account_id)
            self._burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=account_id)
            return False

    # -- input checks -------------------------------------------------------

    @staticmethod
    def _require(**fields: Optional[str]) -> None:
        missing = [
            name for name, value in fields.items() if value is None or not str(value).strip()
        ]
        if missing:
            raise ValidationError(
                "please provide all required fields", detail={"missing": missing}
            )

    @staticmethod
    def _normalize_email(email: str) -> str:
        normalized = email.strip()
        if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        return normalized

    @staticmethod
    def _check_password(password: str) -> None:
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at most {MAX_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    @staticmethod
    def _normalize_name(name: str) -> str:
        normalized = name.strip()
        if len(normalized) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"name must be at most {MAX_NAME_LENGTH} characters", detail={"field": "name"}
            )
        return normalized

    # -- account creation ---------------------------------------------------

    async def _create_account(
        self,
        name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        *,
        role: str = "user",
        permissions: Iterable[str] = (),
    ) -> Account:
        self._require(name=name, email=email, password=password)
        clean_name = self._normalize_name(name)
        clean_email = self._normalize_email(email)
        self._check_password(password)
        validate_role(role)
        grants = validate_permissions(permissions)

        if self.store.get_account_by_email(clean_email):
            raise DuplicateAccountError()
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            account = self.store.create_account(
                clean_name, clean_email, role=role, permissions=grants
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            raise DuplicateAccountError(detail=exc.detail) from exc
        self.store.save_password(account.id, pwd_hash, algo)
        return account

    async def register(
        self, name: Optional[str], email: Optional[str], password: Optional[str]
    ) -> Authenticated:
        if not self.settings.allow_signup:
            raise ValidationError("registration is disabled")
        account = await self._create_account(name, email, password)
        self.logger.info("account_registered", user_id=account.id)
        return Authenticated(account=account, token=self.signer.sign(account))

    async def admin_create_user(
        self,
        name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        *,
        role: str = "user",
        permissions: Iterable[str] = (),
    ) -> Account:
        account = await self._create_account(
            name, email, password, role=role, permissions=permissions
        )
        self.logger.info("account_created_by_admin", user_id=account.id, role=role)
        return account

    # -- login --------------------------------------------------------------

    async def authenticate(
        self,
        email: Optional[str],
        password: Optional[str],
        code: Optional[str] = None,
    ) -> Union[NeedCode, Authenticated]:
        """Check credentials, then run the login step-up when 2FA is on.

        A missing or malformed email or password raises ``ValidationError``
        before any lookup. Returns ``NeedCode`` when a code was just sent, otherwise
        ``Authenticated``. Raises ``InvalidCredentialsError`` for an unknown
        email or a wrong password alike, and ``InvalidOrExpiredCodeError`` for a
        rejected code.
        """
        self._require(email=email, password=password)
        lookup_email = self._normalize_email(email)
        account = self.store.get_account_by_email(lookup_email)
        if account is None:
            await asyncio.to_thread(self._burn_verification, password)
            self.logger.info("login_failed", reason="credentials")
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(self.verify_password, account.id, password):
            self.logger.info("login_failed", user_id=account.id, reason="credentials")
            raise InvalidCredentialsError()

        if account.two_factor_enabled:
            state = self.codes.state_for("login", code)
            outcome = await self.codes.advance(account, state)
            if isinstance(outcome, NeedCode):
                self.logger.info("login_step_up_required", user_id=account.id)
                return outcome

        account = self.store.record_login(account.id) or account
        self.logger.info("login_succeeded", user_id=account.id)
        return Authenticated(account=account, token=self.signer.sign(account))

    # -- tokens -------------------------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def resolve_token(self, authorization: Optional[str]) -> Account:
        """Map an Authorization header to the live account it names."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("not authorized, no token")
        account_id = self.signer.verify(token)
        if not account_id:
            raise AuthenticationError("not authorized, token failed")
        account = self.store.get_account(account_id)
        if account is None:
            raise AuthenticationError("not authorized, user not found")
        return account
