"""Tests for inventory tracking and expiry alerts."""

from datetime import date, timedelta

import pytest

from wastewise.service.errors import ForbiddenError, NotFoundError, ValidationError
from wastewise.service.inventory import InventoryService
from wastewise.storage.memory import MemoryStore

TODAY = date(2024, 5, 10)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def service(memory_store):
    return InventoryService(memory_store, alert_days=3)


@pytest.fixture
def cook(memory_store):
    return memory_store.create_account("Cook", "cook@example.com")


@pytest.fixture
def manager(memory_store):
    return memory_store.create_account("Manager", "manager@example.com", role="manager")


def _add(service, actor, name="Tomatoes", expiry=TODAY, **overrides):
    fields = {"quantity": 4, "unit": "kg", "category": "vegetables"}
    fields.update(overrides)
    return service.create_item(actor, name=name, expiry_date=expiry, **fields)


class TestCreateItem:
    def test_create_item_trims_name(self, service, cook):
        item = _add(service, cook, name="  Basil  ")

        assert item.name == "Basil"
        assert item.status == "active"
        assert item.user_id == cook.id

    def test_zero_quantity_allowed(self, service, cook):
        assert _add(service, cook, quantity=0).quantity == 0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": "   "},
            {"name": "x" * 101},
            {"quantity": -1},
            {"unit": "crates"},
            {"category": "snacks"},
        ],
    )
    def test_invalid_fields_rejected(self, service, cook, overrides):
        with pytest.raises(ValidationError):
            _add(service, cook, **overrides)


class TestOwnership:
    def test_list_returns_only_own_items(self, service, cook, manager):
        _add(service, cook, name="Mine")
        _add(service, manager, name="Theirs")

        assert [item.name for item in service.list_items(cook)] == ["Mine"]

    def test_include_all_requires_admin(self, service, manager, memory_store):
        admin = memory_store.create_account("Admin", "admin@example.com", role="admin")
        _add(service, manager, name="Flour")

        with pytest.raises(ForbiddenError):
            service.list_items(manager, include_all=True)
        assert len(service.list_items(admin, include_all=True)) == 1

    def test_foreign_item_looks_missing(self, service, cook, manager):
        """Other users' items answer 404, never 403."""
        item = _add(service, cook)

        with pytest.raises(NotFoundError):
            service.update_item(manager, item.id, quantity=1)
        with pytest.raises(NotFoundError):
            service.delete_item(manager, item.id)


class TestUpdateAndDelete:
    def test_update_changes_only_given_fields(self, service, cook):
        item = _add(service, cook)

        updated = service.update_item(cook, item.id, quantity=2, name=None, status="consumed")

        assert updated.quantity == 2
        assert updated.name == "Tomatoes"
        assert updated.status == "consumed"

    def test_update_without_fields(self, service, cook):
        item = _add(service, cook)

        with pytest.raises(ValidationError) as exc_info:
            service.update_item(cook, item.id)

        assert exc_info.value.message == "no fields to update"

    def test_update_rejects_unknown_status(self, service, cook):
        item = _add(service, cook)

        with pytest.raises(ValidationError):
            service.update_item(cook, item.id, status="eaten")

    def test_user_cannot_delete(self, service, cook):
        """Deleting stock needs inventory:delete, which basic users lack."""
        item = _add(service, cook)

        with pytest.raises(ForbiddenError) as exc_info:
            service.delete_item(cook, item.id)

        assert exc_info.value.detail == {"required": "inventory:delete", "role": "user"}

    def test_manager_deletes_own_item(self, service, manager, memory_store):
        item = _add(service, manager)

        service.delete_item(manager, item.id)

        assert memory_store.get_item(item.id) is None


class TestExpiryAlerts:
    def test_alert_window_is_inclusive_and_sorted(self, service, cook):
        _add(service, cook, name="Edge", expiry=TODAY + timedelta(days=3))
        _add(service, cook, name="Soon", expiry=TODAY + timedelta(days=1))
        _add(service, cook, name="Later", expiry=TODAY + timedelta(days=4))
        _add(service, cook, name="Overdue", expiry=TODAY - timedelta(days=2))

        names = [item.name for item in service.expiry_alerts(cook, today=TODAY)]

        assert names == ["Overdue", "Soon", "Edge"]

    def test_custom_window(self, service, cook):
        _add(service, cook, name="Week", expiry=TODAY + timedelta(days=7))

        assert service.expiry_alerts(cook, days=0, today=TODAY) == []
        assert len(service.expiry_alerts(cook, days=7, today=TODAY)) == 1

    def test_only_active_items_alert(self, service, cook):
        item = _add(service, cook, expiry=TODAY)
        service.update_item(cook, item.id, status="consumed")

        assert service.expiry_alerts(cook, today=TODAY) == []

    def test_negative_window_rejected(self, service, cook):
        with pytest.raises(ValidationError):
            service.expiry_alerts(cook, days=-1, today=TODAY)


class TestMarkExpired:
    def test_sweep_flips_past_dated_items(self, service, cook, memory_store):
        stale = _add(service, cook, expiry=TODAY - timedelta(days=1))
        fresh = _add(service, cook, expiry=TODAY)

        assert service.mark_expired(TODAY) == 1
        assert memory_store.get_item(stale.id).status == "expired"
        assert memory_store.get_item(fresh.id).status == "active"
        assert service.mark_expired(TODAY) == 0
