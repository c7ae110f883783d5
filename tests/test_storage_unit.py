"""Unit tests for the in-memory store.

Tests for:
- Account CRUD and unique emails
- One-time code consumption
- Inventory and waste log queries
- Cascading account deletion
- JSON snapshot persistence
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from wastewise.storage.errors import ConstraintViolation
from wastewise.storage.memory import MemoryStore
from wastewise.storage.models import OneTimeCode, utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def test_account(memory_store):
    """Create a test account."""
    return memory_store.create_account("Alice", "alice@example.com")


class TestAccounts:
    def test_create_account_defaults(self, test_account):
        assert test_account.role == "user"
        assert test_account.permissions == frozenset()
        assert test_account.two_factor_enabled is False
        assert test_account.last_login is None

    def test_duplicate_email_violates_constraint(self, memory_store, test_account):
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("Other Alice", "alice@example.com")

    def test_emails_differing_in_case_are_distinct(self, memory_store, test_account):
        other = memory_store.create_account("Alice Upper", "Alice@example.com")

        assert other.id != test_account.id
        assert memory_store.get_account_by_email("Alice@example.com").id == other.id

    def test_returned_records_are_copies(self, memory_store, test_account):
        """Mutating a returned record does not touch the stored one."""
        test_account.role = "admin"

        assert memory_store.get_account(test_account.id).role == "user"

    def test_update_account_fields(self, memory_store, test_account):
        updated = memory_store.update_account(
            test_account.id, role="manager", permissions=["analytics:read"]
        )

        assert updated.role == "manager"
        assert updated.permissions == frozenset({"analytics:read"})
        assert updated.name == "Alice"

    def test_update_missing_account(self, memory_store):
        assert memory_store.update_account("missing", role="admin") is None

    def test_list_accounts(self, memory_store, test_account):
        other = memory_store.create_account("Bob", "bob@example.com")

        ids = [account.id for account in memory_store.list_accounts()]

        assert sorted(ids) == sorted([test_account.id, other.id])
        assert len(memory_store.list_accounts(limit=1)) == 1

    def test_delete_account_cascades(self, memory_store, test_account):
        memory_store.save_password(test_account.id, "hash", "argon2id")
        memory_store.create_code(OneTimeCode.new(test_account.id, "123456", "login"))
        memory_store.create_item(
            test_account.id,
            name="Milk",
            quantity=2,
            unit="l",
            expiry_date=date.today(),
            category="dairy",
        )
        memory_store.create_waste_log(
            test_account.id, item_name="Milk", quantity=1, unit="l", reason="spoiled"
        )

        assert memory_store.delete_account(test_account.id) is True

        assert memory_store.get_password_record(test_account.id) is None
        assert memory_store.list_codes(test_account.id) == []
        assert memory_store.list_items(test_account.id) == []
        assert memory_store.list_waste_logs(test_account.id) == []
        assert memory_store.delete_account(test_account.id) is False


class TestCodes:
    def test_code_requires_existing_account(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_code(OneTimeCode.new("ghost", "123456", "login"))

    def test_consume_marks_code_used(self, memory_store, test_account):
        memory_store.create_code(OneTimeCode.new(test_account.id, "123456", "login"))

        consumed = memory_store.consume_code(test_account.id, "123456", "login")

        assert consumed is not None and consumed.is_used is True
        assert memory_store.consume_code(test_account.id, "123456", "login") is None

    def test_consume_prefers_newest_match(self, memory_store, test_account):
        now = utcnow()
        older = memory_store.create_code(
            OneTimeCode.new(test_account.id, "654321", "login", now=now - timedelta(minutes=5))
        )
        newer = memory_store.create_code(OneTimeCode.new(test_account.id, "654321", "login", now=now))

        first = memory_store.consume_code(test_account.id, "654321", "login", now=now)
        second = memory_store.consume_code(test_account.id, "654321", "login", now=now)

        assert first.id == newer.id
        assert second.id == older.id

    def test_consume_ignores_expired(self, memory_store, test_account):
        issued = utcnow() - timedelta(minutes=20)
        memory_store.create_code(OneTimeCode.new(test_account.id, "111111", "login", now=issued))

        assert memory_store.consume_code(test_account.id, "111111", "login") is None


class TestInventory:
    def _item(self, store, account, name, expiry, status="active"):
        return store.create_item(
            account.id,
            name=name,
            quantity=1,
            unit="kg",
            expiry_date=expiry,
            category="vegetables",
            status=status,
        )

    def test_list_filters_by_owner_and_status(self, memory_store, test_account):
        other = memory_store.create_account("Bob", "bob@example.com")
        self._item(memory_store, test_account, "Carrots", date.today())
        self._item(memory_store, test_account, "Leeks", date.today(), status="consumed")
        self._item(memory_store, other, "Onions", date.today())

        active = memory_store.list_items(test_account.id, statuses=["active"])

        assert [item.name for item in active] == ["Carrots"]
        assert len(memory_store.list_items()) == 3

    def test_update_item_rejects_unknown_fields(self, memory_store, test_account):
        item = self._item(memory_store, test_account, "Carrots", date.today())

        with pytest.raises(ValueError):
            memory_store.update_item(item.id, user_id="someone-else")

    def test_mark_expired_items(self, memory_store, test_account):
        today = date(2024, 5, 10)
        stale = self._item(memory_store, test_account, "Old", today - timedelta(days=1))
        fresh = self._item(memory_store, test_account, "Today", today)
        eaten = self._item(
            memory_store, test_account, "Eaten", today - timedelta(days=3), status="consumed"
        )

        assert memory_store.mark_expired_items(today) == 1

        assert memory_store.get_item(stale.id).status == "expired"
        assert memory_store.get_item(fresh.id).status == "active"
        assert memory_store.get_item(eaten.id).status == "consumed"


class TestWasteLogs:
    def test_list_window_and_limit(self, memory_store, test_account):
        may = datetime(2024, 5, 15, tzinfo=timezone.utc)
        june = datetime(2024, 6, 2, tzinfo=timezone.utc)
        for created in (may, may + timedelta(days=1), june):
            memory_store.create_waste_log(
                test_account.id,
                item_name="Bread",
                quantity=1,
                unit="pcs",
                reason="expired",
                created_at=created,
            )

        in_may = memory_store.list_waste_logs(
            test_account.id,
            since=datetime(2024, 5, 1, tzinfo=timezone.utc),
            until=datetime(2024, 6, 1, tzinfo=timezone.utc),
        )

        assert [log.created_at for log in in_may] == [may + timedelta(days=1), may]
        assert len(memory_store.list_waste_logs(test_account.id, limit=1)) == 1


class TestPersistence:
    def test_snapshot_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account("Alice", "alice@example.com", permissions=["analytics:read"])
        store.save_password(account.id, "hash", "argon2id")
        store.create_item(
            account.id,
            name="Rice",
            quantity=5,
            unit="kg",
            expiry_date=date(2030, 1, 1),
            category="grains",
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_account_by_email("alice@example.com")
        assert restored.permissions == frozenset({"analytics:read"})
        assert reloaded.get_password_record(account.id) == ("hash", "argon2id")
        [item] = reloaded.list_items(account.id)
        assert item.expiry_date == date(2030, 1, 1)

    def test_non_persistent_store_writes_nothing(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "volatile"), persist=False)
        store.create_account("Alice", "alice@example.com")

        assert not (tmp_path / "volatile" / "state").exists()
