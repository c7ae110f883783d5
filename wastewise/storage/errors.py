from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a unique email or an owner reference is violated in storage."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(RuntimeError):
    """Raised when the backing database is unreachable or missing its schema."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
