"""Tests for the periodic maintenance sweep and the admin bootstrap script."""

from datetime import date, timedelta

from scripts.bootstrap_admin import bootstrap_admin, validate_password
from wastewise.service.runtime import get_runtime
from wastewise.storage.models import OneTimeCode, utcnow


class TestRunMaintenance:
    def test_sweep_purges_codes_and_expires_items(self):
        runtime = get_runtime()
        account = runtime.store.create_account("Cook", "cook@example.com")
        runtime.store.create_code(
            OneTimeCode.new(account.id, "123456", "login", now=utcnow() - timedelta(hours=1))
        )
        runtime.store.create_code(OneTimeCode.new(account.id, "654321", "login"))
        today = date(2024, 5, 10)
        runtime.store.create_item(
            account.id,
            name="Yogurt",
            quantity=1,
            unit="l",
            expiry_date=today - timedelta(days=1),
            category="dairy",
        )

        summary = runtime.run_maintenance(today=today)

        assert summary == {"codes_purged": 1, "items_expired": 1}
        assert [c.code for c in runtime.store.list_codes(account.id)] == ["654321"]
        assert runtime.run_maintenance(today=today) == {"codes_purged": 0, "items_expired": 0}


class TestBootstrapAdmin:
    def test_password_policy(self):
        assert validate_password("Sufficiently-Long1")
        assert not validate_password("Short1!")
        assert not validate_password("alllowercaseletters")

    async def test_creates_admin(self):
        result = await bootstrap_admin("Head Chef", "chef@example.com", "Sufficiently-Long1")

        assert result["status"] == "created"
        account = get_runtime().store.get_account_by_email("chef@example.com")
        assert account.role == "admin"
        assert get_runtime().auth.signer.verify(result["token"]) == account.id

    async def test_promotes_existing_account(self):
        store = get_runtime().store
        existing = store.create_account("Cook", "cook@example.com")

        result = await bootstrap_admin("Cook", "cook@example.com", "Sufficiently-Long1")

        assert result == {"user_id": existing.id, "email": "cook@example.com", "status": "promoted"}
        assert store.get_account(existing.id).role == "admin"

        again = await bootstrap_admin("Cook", "cook@example.com", "Sufficiently-Long1")
        assert again["status"] == "already_admin"

    async def test_dry_run_changes_nothing(self):
        result = await bootstrap_admin(
            "Head Chef", "chef@example.com", "Sufficiently-Long1", dry_run=True
        )

        assert result["status"] == "dry_run"
        assert get_runtime().store.get_account_by_email("chef@example.com") is None
