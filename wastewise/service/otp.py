"""Email one-time codes for login step-up and two-factor setting changes.

Each verification attempt moves through an explicit state variant:

    NeedCode -> AwaitingVerification -> Verified

``NeedCode`` issues and delivers a fresh code, ``AwaitingVerification``
consumes a submitted code atomically in the store, and ``Verified`` is
terminal. A failed verification leaves the attempt awaiting; asking for a new
code starts an independent ``NeedCode`` cycle, and earlier codes stay valid
until they are used or expire.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Union

from wastewise.logging import get_logger
from wastewise.service.errors import (
    InvalidOrExpiredCodeError,
    NotificationError,
    ValidationError,
)
from wastewise.storage.models import CODE_TYPES, Account, OneTimeCode, utcnow

logger = get_logger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999

CODE_SENT_MESSAGES = {
    "login": "Two-factor authentication code sent to your email",
    "enable_2fa": "Verification code sent to your email",
    "disable_2fa": "Verification code sent to your email",
}


class Notifier(Protocol):
    def send(self, email: str, code: str, flow: str) -> bool: ...


@dataclass(frozen=True)
class NeedCode:
    """No code submitted yet; once returned from ``advance`` a code was sent."""

    flow: str
    message: str = ""


@dataclass(frozen=True)
class AwaitingVerification:
    flow: str
    code: str


@dataclass(frozen=True)
class Verified:
    flow: str


CodeState = Union[NeedCode, AwaitingVerification, Verified]


def generate_code() -> str:
    """Uniform 6-digit code over [100000, 999999] from the OS CSPRNG."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


class CodeBroker:
    def __init__(self, store, notifier: Notifier, *, ttl_minutes: int = 10) -> None:
        self.store = store
        self.notifier = notifier
        self.ttl_minutes = ttl_minutes

    @staticmethod
    def _check_flow(flow: str) -> None:
        if flow not in CODE_TYPES:
            raise ValueError(f"unknown verification flow: {flow}")

    def state_for(self, flow: str, code: Optional[str]) -> CodeState:
        self._check_flow(flow)
        if code is None or not str(code).strip():
            return NeedCode(flow)
        return AwaitingVerification(flow, str(code).strip())

    async def request_code(
        self, account: Account, flow: str, *, now: Optional[datetime] = None
    ) -> NeedCode:
        self._check_flow(flow)
        record = OneTimeCode.new(
            account.id, generate_code(), flow, ttl_minutes=self.ttl_minutes, now=now
        )
        self.store.create_code(record)
        sent = await asyncio.to_thread(self.notifier.send, account.email, record.code, flow)
        if not sent:
            logger.error("verification_code_send_failed", user_id=account.id, flow=flow)
            raise NotificationError()
        logger.info(
            "verification_code_issued",
            user_id=account.id,
            flow=flow,
            expires_at=record.expires_at.isoformat(),
        )
        return NeedCode(flow, CODE_SENT_MESSAGES[flow])

    def verify_code(
        self,
        account: Account,
        flow: str,
        code: str,
        *,
        now: Optional[datetime] = None,
    ) -> Verified:
        self._check_flow(flow)
        candidate = (code or "").strip()
        if len(candidate) != 6 or not candidate.isdigit():
            logger.info("verification_code_rejected", user_id=account.id, flow=flow)
            raise InvalidOrExpiredCodeError()
        consumed = self.store.consume_code(account.id, candidate, flow, now=now or utcnow())
        if consumed is None:
            logger.info("verification_code_rejected", user_id=account.id, flow=flow)
            raise InvalidOrExpiredCodeError()
        logger.info("verification_code_accepted", user_id=account.id, flow=flow)
        return Verified(flow)

    async def advance(self, account: Account, state: CodeState) -> CodeState:
        """Run one transition of the attempt's state machine."""
        if isinstance(state, NeedCode):
            return await self.request_code(account, state.flow)
        if isinstance(state, AwaitingVerification):
            return self.verify_code(account, state.flow, state.code)
        return state

    async def _toggle_two_factor(
        self, account: Account, code: Optional[str], *, enable: bool
    ) -> Union[NeedCode, Account]:
        flow = "enable_2fa" if enable else "disable_2fa"
        if account.two_factor_enabled == enable:
            raise ValidationError(
                "two-factor authentication is already "
                + ("enabled" if enable else "disabled")
            )
        outcome = await self.advance(account, self.state_for(flow, code))
        if isinstance(outcome, NeedCode):
            return outcome
        updated = self.store.update_account(account.id, two_factor_enabled=enable)
        logger.info("two_factor_toggled", user_id=account.id, enabled=enable)
        return updated or account

    async def enable_two_factor(
        self, account: Account, code: Optional[str] = None
    ) -> Union[NeedCode, Account]:
        return await self._toggle_two_factor(account, code, enable=True)

    async def disable_two_factor(
        self, account: Account, code: Optional[str] = None
    ) -> Union[NeedCode, Account]:
        return await self._toggle_two_factor(account, code, enable=False)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        purged = self.store.purge_expired_codes(now or utcnow())
        if purged:
            logger.info("verification_codes_purged", count=purged)
        return purged
