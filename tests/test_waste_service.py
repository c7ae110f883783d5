"""Tests for waste logging, monthly reports and CSV export."""

import csv
import io
from datetime import datetime, timezone

import pytest

from wastewise.service.errors import ForbiddenError, NotFoundError, ValidationError
from wastewise.service.waste import WasteService, _month_bounds
from wastewise.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def service(memory_store):
    return WasteService(memory_store)


@pytest.fixture
def cook(memory_store):
    return memory_store.create_account("Cook", "cook@example.com")


def _log_at(store, account, when, item_name="Bread", quantity=1.0, reason="expired", notes=None):
    return store.create_waste_log(
        account.id,
        item_name=item_name,
        quantity=quantity,
        unit="kg",
        reason=reason,
        notes=notes,
        created_at=when,
    )


def _may(day, hour=12):
    return datetime(2024, 5, day, hour, tzinfo=timezone.utc)


class TestCreateLog:
    def test_create_log(self, service, cook):
        log = service.create_log(
            cook, item_name=" Lettuce ", quantity=1.5, unit="kg", reason="spoiled", notes=""
        )

        assert log.item_name == "Lettuce"
        assert log.quantity == 1.5
        assert log.notes is None
        assert log.photo_url is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"item_name": ""},
            {"item_name": "x" * 101},
            {"quantity": -0.5},
            {"quantity": None},
            {"unit": "bushel"},
            {"reason": "dropped"},
            {"notes": "n" * 501},
        ],
    )
    def test_invalid_fields_rejected(self, service, cook, overrides):
        fields = {"item_name": "Milk", "quantity": 1, "unit": "l", "reason": "expired"}
        fields.update(overrides)

        with pytest.raises(ValidationError):
            service.create_log(cook, **fields)

    def test_item_name_at_limit_accepted(self, service, cook):
        log = service.create_log(cook, item_name="x" * 100, quantity=1, unit="l", reason="expired")

        assert len(log.item_name) == 100

    def test_long_item_name_message(self, service, cook):
        with pytest.raises(ValidationError) as exc_info:
            service.create_log(cook, item_name="x" * 101, quantity=1, unit="l", reason="expired")

        assert exc_info.value.detail == {"field": "item_name"}

    def test_notes_at_limit_accepted(self, service, cook):
        log = service.create_log(
            cook, item_name="Milk", quantity=1, unit="l", reason="expired", notes="n" * 500
        )

        assert len(log.notes) == 500


class TestListAndDelete:
    def test_list_newest_first_with_limit(self, service, cook, memory_store):
        _log_at(memory_store, cook, _may(1), item_name="Old")
        _log_at(memory_store, cook, _may(2), item_name="New")

        assert [log.item_name for log in service.list_logs(cook)] == ["New", "Old"]
        assert len(service.list_logs(cook, limit=1)) == 1

    def test_user_cannot_delete_logs(self, service, cook, memory_store):
        log = _log_at(memory_store, cook, _may(1))

        with pytest.raises(ForbiddenError):
            service.delete_log(cook, log.id)

    def test_manager_cannot_delete_foreign_log(self, service, cook, memory_store):
        manager = memory_store.create_account("Manager", "m@example.com", role="manager")
        log = _log_at(memory_store, cook, _may(1))

        with pytest.raises(NotFoundError):
            service.delete_log(manager, log.id)
        assert memory_store.get_waste_log(log.id) is not None


class TestMonthBounds:
    def test_december_rolls_into_next_year(self):
        label, start, end = _month_bounds("2023-12")

        assert label == "2023-12"
        assert start == datetime(2023, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("month", ["2024-13", "May 2024", "2024/05"])
    def test_bad_month_rejected(self, month):
        with pytest.raises(ValidationError) as exc_info:
            _month_bounds(month)

        assert exc_info.value.message == "month must use the YYYY-MM format"


class TestMonthlyReport:
    def test_report_aggregates_one_month(self, service, cook, memory_store):
        _log_at(memory_store, cook, _may(3), item_name="Bread", quantity=2, reason="expired")
        _log_at(memory_store, cook, _may(3, 18), item_name="Milk", quantity=1, reason="spoiled")
        _log_at(memory_store, cook, _may(20), item_name="Bread", quantity=3, reason="expired")
        _log_at(memory_store, cook, datetime(2024, 6, 1, tzinfo=timezone.utc), quantity=9)
        _log_at(memory_store, cook, datetime(2024, 4, 30, 23, 59, tzinfo=timezone.utc), quantity=9)

        report = service.monthly_report(cook, "2024-05")

        assert report["month"] == "2024-05"
        assert report["total_entries"] == 3
        assert report["total_quantity"] == 6
        assert report["by_reason"] == {
            "expired": {"count": 2, "quantity": 5.0},
            "spoiled": {"count": 1, "quantity": 1.0},
        }
        assert report["top_items"] == [
            {"item_name": "Bread", "quantity": 5.0, "count": 2},
            {"item_name": "Milk", "quantity": 1.0, "count": 1},
        ]
        assert report["daily"] == {"2024-05-03": 3.0, "2024-05-20": 3.0}

    def test_top_items_capped_at_five(self, service, cook, memory_store):
        for index, name in enumerate("ABCDEFG"):
            _log_at(memory_store, cook, _may(1 + index), item_name=name, quantity=index + 1)

        top = service.monthly_report(cook, "2024-05")["top_items"]

        assert [row["item_name"] for row in top] == ["G", "F", "E", "D", "C"]

    def test_empty_month(self, service, cook):
        report = service.monthly_report(cook, "2020-01")

        assert report["total_entries"] == 0
        assert report["total_quantity"] == 0
        assert report["top_items"] == []

    def test_reports_are_per_user(self, service, cook, memory_store):
        other = memory_store.create_account("Other", "other@example.com")
        _log_at(memory_store, other, _may(4))

        assert service.monthly_report(cook, "2024-05")["total_entries"] == 0


class TestCsvExport:
    def test_csv_rows(self, service, cook, memory_store):
        _log_at(memory_store, cook, _may(2), item_name="Eggs, free range", quantity=12, notes="cracked")
        _log_at(memory_store, cook, _may(5), item_name="Milk", quantity=0.5)

        rows = list(csv.reader(io.StringIO(service.export_csv(cook, "2024-05"))))

        assert rows[0] == ["Date", "Item", "Quantity", "Unit", "Reason", "Notes"]
        assert rows[1] == ["2024-05-05", "Milk", "0.5", "kg", "expired", ""]
        assert rows[2] == ["2024-05-02", "Eggs, free range", "12", "kg", "expired", "cracked"]

    def test_csv_without_month_exports_everything(self, service, cook, memory_store):
        _log_at(memory_store, cook, _may(2))
        _log_at(memory_store, cook, datetime(2023, 1, 1, tzinfo=timezone.utc))

        rows = list(csv.reader(io.StringIO(service.export_csv(cook))))

        assert len(rows) == 3
