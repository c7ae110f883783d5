from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from wastewise.logging import get_logger
from wastewise.storage.errors import ConstraintViolation, StoreUnavailable
from wastewise.storage.models import (
    Account,
    InventoryItem,
    OneTimeCode,
    WasteLog,
    utcnow,
)

_UNSET = object()

_ITEM_COLUMNS = ("name", "quantity", "unit", "expiry_date", "category", "status")


class PostgresStore:
    """Thin Postgres-backed store for accounts, codes, inventory and waste logs."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the tables exist before serving requests."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "one_time_code",
            "inventory_item",
            "waste_log",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Apply sql/001_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            role=row.get("role", "user"),
            permissions=frozenset(row.get("permissions") or ()),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _code_from_row(row: dict) -> OneTimeCode:
        return OneTimeCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code=row["code"],
            type=row["type"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            is_used=bool(row["is_used"]),
        )

    @staticmethod
    def _item_from_row(row: dict) -> InventoryItem:
        return InventoryItem(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            quantity=float(row["quantity"]),
            unit=row["unit"],
            expiry_date=row["expiry_date"],
            category=row["category"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _waste_from_row(row: dict) -> WasteLog:
        return WasteLog(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            item_name=row["item_name"],
            quantity=float(row["quantity"]),
            unit=row["unit"],
            reason=row["reason"],
            photo_url=row.get("photo_url"),
            notes=row.get("notes"),
            created_at=row["created_at"],
        )

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, role, permissions, two_factor_enabled)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, name, email, role, sorted(set(permissions)), two_factor_enabled),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(self, limit: int = 500) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def update_account(
        self,
        account_id: str,
        *,
        name=_UNSET,
        role=_UNSET,
        permissions=_UNSET,
        two_factor_enabled=_UNSET,
    ) -> Optional[Account]:
        assignments: list[str] = []
        params: list = []
        if name is not _UNSET:
            assignments.append("name = %s")
            params.append(name)
        if role is not _UNSET:
            assignments.append("role = %s")
            params.append(role)
        if permissions is not _UNSET:
            assignments.append("permissions = %s")
            params.append(sorted(set(permissions)))
        if two_factor_enabled is not _UNSET:
            assignments.append("two_factor_enabled = %s")
            params.append(bool(two_factor_enabled))
        assignments.append("updated_at = now()")
        if self.get_account(account_id) is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                (*params, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login(self, account_id: str, when: Optional[datetime] = None) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s RETURNING *",
                (when or utcnow(), account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        if self.get_account(account_id) is None:
            return False
        # Credentials, codes, inventory and waste rows cascade
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM app_user WHERE id = %s", (account_id,)
            ).rowcount
        return bool(deleted)

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # -- one-time codes -----------------------------------------------------

    def create_code(self, record: OneTimeCode) -> OneTimeCode:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO one_time_code (id, user_id, code, type, is_used, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.code,
                        record.type,
                        record.is_used,
                        record.created_at,
                        record.expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for code", {"user_id": record.user_id})
        return self._code_from_row(row)

    def consume_code(
        self,
        user_id: str,
        code: str,
        code_type: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[OneTimeCode]:
        """Mark the newest matching unused, unexpired code as used and return it.

        Select and update run as one statement; SKIP LOCKED makes a concurrent
        caller racing for the same row see no match instead of waiting.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_code SET is_used = TRUE
                WHERE id = (
                    SELECT id FROM one_time_code
                    WHERE user_id = %s AND code = %s AND type = %s
                      AND NOT is_used AND expires_at > %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                AND NOT is_used
                RETURNING *
                """,
                (user_id, code, code_type, now or utcnow()),
            ).fetchone()
        return self._code_from_row(row) if row else None

    def list_codes(self, user_id: str, code_type: Optional[str] = None) -> List[OneTimeCode]:
        with self._connect() as conn:
            if code_type:
                rows = conn.execute(
                    "SELECT * FROM one_time_code WHERE user_id = %s AND type = %s ORDER BY created_at",
                    (user_id, code_type),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM one_time_code WHERE user_id = %s ORDER BY created_at",
                    (user_id,),
                ).fetchall()
        return [self._code_from_row(row) for row in rows]

    def purge_expired_codes(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM one_time_code WHERE expires_at <= %s", (now or utcnow(),)
            ).rowcount

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO inventory_item (id, user_id, name, quantity, unit, expiry_date, category, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, name, quantity, unit, expiry_date, category, status),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for item", {"user_id": user_id})
        return self._item_from_row(row)

    def get_item(self, item_id: str) -> Optional[InventoryItem]:
        try:
            uuid.UUID(str(item_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM inventory_item WHERE id = %s", (item_id,)
            ).fetchone()
        return self._item_from_row(row) if row else None

    def list_items(
        self,
        user_id: Optional[str] = None,
        *,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[InventoryItem]:
        clauses: list[str] = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if statuses:
            clauses.append("status = ANY(%s)")
            params.append(list(statuses))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM inventory_item {where} ORDER BY created_at DESC",
                tuple(params),
            ).fetchall()
        return [self._item_from_row(row) for row in rows]

    def update_item(self, item_id: str, **fields) -> Optional[InventoryItem]:
        unknown = set(fields) - set(_ITEM_COLUMNS)
        if unknown:
            raise ValueError(f"unknown inventory fields: {sorted(unknown)}")
        if self.get_item(item_id) is None:
            return None
        assignments = [f"{column} = %s" for column in fields] + ["updated_at = now()"]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE inventory_item SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                (*fields.values(), item_id),
            ).fetchone()
        return self._item_from_row(row) if row else None

    def delete_item(self, item_id: str) -> bool:
        if self.get_item(item_id) is None:
            return False
        with self._connect() as conn:
            return bool(
                conn.execute("DELETE FROM inventory_item WHERE id = %s", (item_id,)).rowcount
            )

    def mark_expired_items(self, today: date) -> int:
        with self._connect() as conn:
            return conn.execute(
                """
                UPDATE inventory_item SET status = 'expired', updated_at = now()
                WHERE status = 'active' AND expiry_date < %s
                """,
                (today,),
            ).rowcount

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO waste_log (id, user_id, item_name, quantity, unit, reason, photo_url, notes, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        item_name,
                        quantity,
                        unit,
                        reason,
                        photo_url,
                        notes,
                        created_at or utcnow(),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for waste log", {"user_id": user_id})
        return self._waste_from_row(row)

    def get_waste_log(self, log_id: str) -> Optional[WasteLog]:
        try:
            uuid.UUID(str(log_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM waste_log WHERE id = %s", (log_id,)).fetchone()
        return self._waste_from_row(row) if row else None

    def list_waste_logs(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[WasteLog]:
        clauses = ["user_id = %s"]
        params: list = [user_id]
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at < %s")
            params.append(until)
        sql = f"SELECT * FROM waste_log WHERE {' AND '.join(clauses)} ORDER BY created_at DESC"
        if limit:
            sql += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._waste_from_row(row) for row in rows]

    def delete_waste_log(self, log_id: str) -> bool:
        if self.get_waste_log(log_id) is None:
            return False
        with self._connect() as conn:
            return bool(conn.execute("DELETE FROM waste_log WHERE id = %s", (log_id,)).rowcount)
