from __future__ import annotations

import csv
import io
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import List, Optional

from wastewise.logging import get_logger
from wastewise.service.errors import NotFoundError, ValidationError
from wastewise.service.permissions import check_permission
from wastewise.storage.models import UNITS, WASTE_REASONS, Account, WasteLog, utcnow

logger = get_logger(__name__)

MAX_ITEM_NAME_LENGTH = 100
MAX_NOTES_LENGTH = 500
TOP_ITEMS_LIMIT = 5
CSV_COLUMNS = ("Date", "Item", "Quantity", "Unit", "Reason", "Notes")


def _month_bounds(month: Optional[str]) -> tuple[str, datetime, datetime]:
    """Return the normalised ``YYYY-MM`` label and its UTC [start, end) window."""
    if month:
        try:
            start = datetime.strptime(month, "%Y-%m").replace(tzinfo=timezone.utc)
        except ValueError as exc:
            raise ValidationError(
                "month must use the YYYY-MM format", detail={"field": "month"}
            ) from exc
    else:
        now = utcnow()
        start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start.strftime("%Y-%m"), start, end


class WasteService:
    def __init__(self, store) -> None:
        self.store = store

    def list_logs(self, actor: Account, *, limit: Optional[int] = None) -> List[WasteLog]:
        check_permission(actor, "waste:read")
        return self.store.list_waste_logs(actor.id, limit=limit)

    def create_log(
        self,
        actor: Account,
        *,
        item_name: Optional[str],
        quantity: Optional[float],
        unit: Optional[str],
        reason: Optional[str],
        photo_url: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> WasteLog:
        check_permission(actor, "waste:write")
        name = (item_name or "").strip()
        if not name:
            raise ValidationError("item name is required", detail={"field": "item_name"})
        if len(name) > MAX_ITEM_NAME_LENGTH:
            raise ValidationError(
                f"item name cannot exceed {MAX_ITEM_NAME_LENGTH} characters",
                detail={"field": "item_name"},
            )
        if quantity is None or quantity < 0:
            raise ValidationError("quantity cannot be negative", detail={"field": "quantity"})
        if unit not in UNITS:
            raise ValidationError("invalid unit", detail={"field": "unit", "allowed": list(UNITS)})
        if reason not in WASTE_REASONS:
            raise ValidationError(
                "invalid reason", detail={"field": "reason", "allowed": list(WASTE_REASONS)}
            )
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(
                f"notes cannot exceed {MAX_NOTES_LENGTH} characters", detail={"field": "notes"}
            )
        log = self.store.create_waste_log(
            actor.id,
            item_name=name,
            quantity=float(quantity),
            unit=unit,
            reason=reason,
            photo_url=photo_url or None,
            notes=notes or None,
        )
        logger.info("waste_logged", user_id=actor.id, log_id=log.id, reason=reason)
        return log

    def delete_log(self, actor: Account, log_id: str) -> None:
        check_permission(actor, "waste:delete")
        log = self.store.get_waste_log(log_id)
        if log is None or log.user_id != actor.id:
            raise NotFoundError("waste log not found", detail={"log_id": log_id})
        self.store.delete_waste_log(log_id)
        logger.info("waste_log_deleted", user_id=actor.id, log_id=log_id)

    def monthly_report(self, actor: Account, month: Optional[str] = None) -> dict:
        """Aggregate one calendar month of waste logs.

        Totals are reported overall, per reason, per day, and for the five item
        names with the largest wasted quantity.
        """
        check_permission(actor, "waste:read")
        label, start, end = _month_bounds(month)
        logs = self.store.list_waste_logs(actor.id, since=start, until=end)

        by_reason: dict[str, dict] = {}
        item_totals: Counter = Counter()
        item_counts: Counter = Counter()
        daily: dict[str, float] = defaultdict(float)
        for log in logs:
            bucket = by_reason.setdefault(log.reason, {"count": 0, "quantity": 0.0})
            bucket["count"] += 1
            bucket["quantity"] += log.quantity
            item_totals[log.item_name] += log.quantity
            item_counts[log.item_name] += 1
            daily[log.created_at.date().isoformat()] += log.quantity

        top_items = [
            {"item_name": name, "quantity": quantity, "count": item_counts[name]}
            for name, quantity in sorted(item_totals.items(), key=lambda kv: (-kv[1], kv[0]))[
                :TOP_ITEMS_LIMIT
            ]
        ]
        return {
            "month": label,
            "total_entries": len(logs),
            "total_quantity": sum(log.quantity for log in logs),
            "by_reason": by_reason,
            "top_items": top_items,
            "daily": {day: daily[day] for day in sorted(daily)},
        }

    def export_csv(self, actor: Account, month: Optional[str] = None) -> str:
        check_permission(actor, "waste:read")
        if month:
            _, start, end = _month_bounds(month)
            logs = self.store.list_waste_logs(actor.id, since=start, until=end)
        else:
            logs = self.store.list_waste_logs(actor.id)
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for log in logs:
            writer.writerow(
                [
                    log.created_at.date().isoformat(),
                    log.item_name,
                    f"{log.quantity:g}",
                    log.unit,
                    log.reason,
                    log.notes or "",
                ]
            )
        logger.info("waste_report_exported", user_id=actor.id, rows=len(logs))
        return buffer.getvalue()
