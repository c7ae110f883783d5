from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from wastewise.logging import get_logger
from wastewise.storage.errors import ConstraintViolation
from wastewise.storage.models import (
    Account,
    InventoryItem,
    OneTimeCode,
    WasteLog,
    utcnow,
)

_UNSET = object()


class MemoryStore:
    """In-process backing store with an optional JSON snapshot on disk.

    Every read and write happens under one re-entrant lock, so the
    match-and-mark step of ``consume_code`` is indivisible across threads.
    """

    def __init__(self, fs_root: str = "/tmp/wastewise", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.codes: Dict[str, OneTimeCode] = {}
        self.inventory: Dict[str, InventoryItem] = {}
        self.waste_logs: Dict[str, WasteLog] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        name: str,
        email: str,
        *,
        role: str = "user",
        permissions: Iterable[str] = (),
        two_factor_enabled: bool = False,
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                role=role,
                permissions=frozenset(permissions),
                two_factor_enabled=two_factor_enabled,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return replace(account) if account else None

    def list_accounts(self, limit: int = 500) -> List[Account]:
        with self._data_lock:
            results = sorted(self.accounts.values(), key=lambda a: a.created_at, reverse=True)
            return [replace(a) for a in results[:limit]]

    def update_account(
        self,
        account_id: str,
        *,
        name=_UNSET,
        role=_UNSET,
        permissions=_UNSET,
        two_factor_enabled=_UNSET,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if name is not _UNSET:
                account.name = name
            if role is not _UNSET:
                account.role = role
            if permissions is not _UNSET:
                account.permissions = frozenset(permissions)
            if two_factor_enabled is not _UNSET:
                account.two_factor_enabled = bool(two_factor_enabled)
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    def record_login(self, account_id: str, when: Optional[datetime] = None) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.last_login = when or utcnow()
            self._persist_state()
            return replace(account)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self.credentials.pop(account_id, None)
            for code_id, record in list(self.codes.items()):
                if record.user_id == account_id:
                    self.codes.pop(code_id, None)
            for item_id, item in list(self.inventory.items()):
                if item.user_id == account_id:
                    self.inventory.pop(item_id, None)
            for log_id, log in list(self.waste_logs.items()):
                if log.user_id == account_id:
                    self.waste_logs.pop(log_id, None)
            self._persist_state()
            return True

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # -- one-time codes -----------------------------------------------------

    def create_code(self, record: OneTimeCode) -> OneTimeCode:
        with self._data_lock:
            if record.user_id not in self.accounts:
                raise ConstraintViolation(
                    "user not found for code", {"user_id": record.user_id}
                )
            self.codes[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def consume_code(
        self,
        user_id: str,
        code: str,
        code_type: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[OneTimeCode]:
        """Mark the newest matching unused, unexpired code as used and return it."""
        moment = now or utcnow()
        with self._data_lock:
            candidates = [
                record
                for record in self.codes.values()
                if record.user_id == user_id
                and record.code == code
                and record.type == code_type
                and record.is_valid_at(moment)
            ]
            if not candidates:
                return None
            match = max(candidates, key=lambda r: r.created_at)
            match.is_used = True
            self._persist_state()
            return replace(match)

    def list_codes(self, user_id: str, code_type: Optional[str] = None) -> List[OneTimeCode]:
        with self._data_lock:
            results = [
                replace(r)
                for r in self.codes.values()
                if r.user_id == user_id and (code_type is None or r.type == code_type)
            ]
            return sorted(results, key=lambda r: r.created_at)

    def purge_expired_codes(self, now: Optional[datetime] = None) -> int:
        moment = now or utcnow()
        with self._data_lock:
            expired = [cid for cid, r in self.codes.items() if r.expires_at <= moment]
            for cid in expired:
                self.codes.pop(cid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- inventory ----------------------------------------------------------

    def create_item(
        self,
        user_id: str,
        *,
        name: str,
        quantity: float,
        unit: str,
        expiry_date: date,
        category: str,
        status: str = "active",
    ) -> InventoryItem:
        with self._data_lock:
            if user_id not in self.accounts:
                raise ConstraintViolation("user not found for item", {"user_id": user_id})
            item = InventoryItem(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                quantity=quantity,
                unit=unit,
                expiry_date=expiry_date,
                category=category,
                status=status,
            )
            self.inventory[item.id] = item
            self._persist_state()
            return replace(item)

    def get_item(self, item_id: str) -> Optional[InventoryItem]:
        with self._data_lock:
            item = self.inventory.get(item_id)
            return replace(item) if item else None

    def list_items(
        self,
        user_id: Optional[str] = None,
        *,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[InventoryItem]:
        wanted = set(statuses) if statuses else None
        with self._data_lock:
            results = [
                replace(item)
                for item in self.inventory.values()
                if (user_id is None or item.user_id == user_id)
                and (wanted is None or item.status in wanted)
            ]
            return sorted(results, key=lambda i: i.created_at, reverse=True)

    def update_item(self, item_id: str, **fields) -> Optional[InventoryItem]:
        allowed = {"name", "quantity", "unit", "expiry_date", "category", "status"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"unknown inventory fields: {sorted(unknown)}")
        with self._data_lock:
            item = self.inventory.get(item_id)
            if not item:
                return None
            for key, value in fields.items():
                setattr(item, key, value)
            item.updated_at = utcnow()
            self._persist_state()
            return replace(item)

    def delete_item(self, item_id: str) -> bool:
        with self._data_lock:
            if self.inventory.pop(item_id, None) is None:
                return False
            self._persist_state()
            return True

    def mark_expired_items(self, today: date) -> int:
        with self._data_lock:
            changed = 0
            for item in self.inventory.values():
                if item.status == "active" and item.expiry_date < today:
                    item.status = "expired"
                    item.updated_at = utcnow()
                    changed += 1
            if changed:
                self._persist_state()
            return changed

    # -- waste logs ---------------------------------------------------------

    def create_waste_log(
        self,
        user_id: str,
        *,
        item_name: str,
        quantity: float,
        unit: str,
        reason: str,
        photo_url: Optional[str] = None,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> WasteLog:
        with self._data_lock:
            if user_id not in self.accounts:
                raise ConstraintViolation("user not found for waste log", {"user_id": user_id})
            log = WasteLog(
                id=str(uuid.uuid4()),
                user_id=user_id,
                item_name=item_name,
                quantity=quantity,
                unit=unit,
                reason=reason,
                photo_url=photo_url,
                notes=notes,
                created_at=created_at or utcnow(),
            )
            self.waste_logs[log.id] = log
            self._persist_state()
            return replace(log)

    def get_waste_log(self, log_id: str) -> Optional[WasteLog]:
        with self._data_lock:
            log = self.waste_logs.get(log_id)
            return replace(log) if log else None

    def list_waste_logs(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[WasteLog]:
        with self._data_lock:
            results = [
                replace(log)
                for log in self.waste_logs.values()
                if log.user_id == user_id
                and (since is None or log.created_at >= since)
                and (until is None or log.created_at < until)
            ]
        results.sort(key=lambda log: log.created_at, reverse=True)
        return results[:limit] if limit else results

    def delete_waste_log(self, log_id: str) -> bool:
        with self._data_lock:
            if self.waste_logs.pop(log_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- snapshot -----------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "codes": [self._serialize_code(c) for c in self.codes.values()],
            "inventory": [self._serialize_item(i) for i in self.inventory.values()],
            "waste_logs": [self._serialize_waste_log(w) for w in self.waste_logs.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.codes = {c["id"]: self._deserialize_code(c) for c in data.get("codes", [])}
        self.inventory = {
            i["id"]: self._deserialize_item(i) for i in data.get("inventory", [])
        }
        self.waste_logs = {
            w["id"]: self._deserialize_waste_log(w) for w in data.get("waste_logs", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            inventory=len(self.inventory),
            waste_logs=len(self.waste_logs),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "name": account.name,
            "email": account.email,
            "role": account.role,
            "permissions": sorted(account.permissions),
            "two_factor_enabled": account.two_factor_enabled,
            "last_login": self._serialize_datetime(account.last_login),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            role=data.get("role", "user"),
            permissions=frozenset(data.get("permissions") or ()),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_code(self, record: OneTimeCode) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "code": record.code,
            "type": record.type,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_used": record.is_used,
        }

    def _deserialize_code(self, data: dict) -> OneTimeCode:
        return OneTimeCode(
            id=data["id"],
            user_id=data["user_id"],
            code=data["code"],
            type=data["type"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_used=bool(data.get("is_used", False)),
        )

    def _serialize_item(self, item: InventoryItem) -> dict:
        return {
            "id": item.id,
            "user_id": item.user_id,
            "name": item.name,
            "quantity": item.quantity,
            "unit": item.unit,
            "expiry_date": item.expiry_date.isoformat(),
            "category": item.category,
            "status": item.status,
            "created_at": self._serialize_datetime(item.created_at),
            "updated_at": self._serialize_datetime(item.updated_at),
        }

    def _deserialize_item(self, data: dict) -> InventoryItem:
        return InventoryItem(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            quantity=float(data["quantity"]),
            unit=data["unit"],
            expiry_date=date.fromisoformat(data["expiry_date"]),
            category=data["category"],
            status=data.get("status", "active"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_waste_log(self, log: WasteLog) -> dict:
        return {
            "id": log.id,
            "user_id": log.user_id,
            "item_name": log.item_name,
            "quantity": log.quantity,
            "unit": log.unit,
            "reason": log.reason,
            "photo_url": log.photo_url,
            "notes": log.notes,
            "created_at": self._serialize_datetime(log.created_at),
        }

    def _deserialize_waste_log(self, data: dict) -> WasteLog:
        return WasteLog(
            id=data["id"],
            user_id=data["user_id"],
            item_name=data["item_name"],
            quantity=float(data["quantity"]),
            unit=data["unit"],
            reason=data["reason"],
            photo_url=data.get("photo_url"),
            notes=data.get("notes"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
