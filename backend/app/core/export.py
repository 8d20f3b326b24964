# app/core/export.py
"""Flat row/column exports (CSV, JSONL) of assignment, referral, payout and revenue tables."""
from __future__ import annotations

import csv
import enum
import io
import json
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, List, Literal, Optional, Sequence, TextIO, Union

from pydantic import BaseModel

from app.core.commission import utcnow
from app.core.errors import ValidationError
from app.core.logging import get_logger
from app.schemas.assignment import AssignmentRecord
from app.schemas.payout import CommissionPayout
from app.schemas.referral import ReferralRecord, ReferrerProfile
from app.schemas.revenue import RevenueSnapshot

logger = get_logger(__name__)

ExportFormat = Literal["csv", "jsonl"]
FILENAME_PREFIX = "cura"

# (key, header) in output order
ASSIGNMENT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("id", "Assignment ID"),
    ("pharmacy_name", "Pharmacy"),
    ("city_name", "City"),
    ("governorate_name", "Governorate"),
    ("is_primary", "Primary"),
    ("is_active", "Active"),
    ("delivery_radius_km", "Delivery Radius (km)"),
    ("estimated_delivery_time", "Estimated Delivery Time"),
    ("delivery_fee", "Delivery Fee (EGP)"),
    ("minimum_order_amount", "Minimum Order (EGP)"),
    ("rate_type", "Commission Type"),
    ("commission_rate", "Commission Rate (%)"),
    ("coverage_areas", "Coverage Areas"),
    ("updated_at", "Last Updated"),
)

REFERRAL_COLUMNS: tuple[tuple[str, str], ...] = (
    ("id", "Referral ID"),
    ("referrer_name", "Doctor"),
    ("referral_code", "Referral Code"),
    ("customer_name", "Customer"),
    ("customer_phone", "Customer Phone"),
    ("source", "Source"),
    ("status", "Status"),
    ("order_id", "Order ID"),
    ("order_value", "Order Value (EGP)"),
    ("commission_rate_snapshot", "Commission Rate (%)"),
    ("commission_amount", "Commission (EGP)"),
    ("created_at", "Created"),
    ("expires_at", "Expires"),
    ("converted_at", "Converted"),
)

REFERRER_COLUMNS: tuple[tuple[str, str], ...] = (
    ("id", "Doctor ID"),
    ("name", "Name"),
    ("status", "Status"),
    ("referral_code", "Referral Code"),
    ("total_referrals", "Total Referrals"),
    ("successful_referrals", "Successful Referrals"),
    ("total_commission_earned", "Total Earnings (EGP)"),
    ("commission_rate", "Commission Rate (%)"),
    ("conversion_rate", "Conversion Rate (%)"),
    ("created_at", "Joined Date"),
)

PERFORMER_COLUMNS: tuple[tuple[str, str], ...] = (
    ("rank", "Rank"),
    ("id", "ID"),
    ("name", "Name"),
    ("revenue", "Revenue (EGP)"),
    ("orders", "Orders"),
    ("commission", "Commission (EGP)"),
)

PAYOUT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("id", "Payout ID"),
    ("referrer_name", "Doctor"),
    ("period", "Period"),
    ("referrals_count", "Referrals"),
    ("total_order_value", "Order Value (EGP)"),
    ("amount", "Amount (EGP)"),
    ("commission_rate", "Effective Rate (%)"),
    ("status", "Status"),
    ("due_date", "Due Date"),
    ("payment_method", "Payment Method"),
    ("transaction_id", "Transaction ID"),
    ("paid_at", "Paid"),
)

CATEGORY_COLUMNS: tuple[tuple[str, str], ...] = (
    ("category", "Category"),
    ("total_revenue", "Revenue (EGP)"),
    ("total_orders", "Orders"),
    ("average_order_value", "Average Order (EGP)"),
    ("growth_pct", "Growth (%)"),
)

RevenueTable = Literal["pharmacies", "cities", "categories"]


class TableExport(BaseModel):
    """A table-shaped result set with stable column order."""

    kind: str
    columns: List[str]
    headers: List[str]
    rows: List[List[str]]

    def as_dicts(self) -> list[dict[str, str]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, enum.Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return "; ".join(format_cell(v) for v in value)
    return str(value)


def _table(kind: str, layout: Sequence[tuple[str, str]], records: Iterable[dict[str, Any]]) -> TableExport:
    columns = [key for key, _ in layout]
    return TableExport(
        kind=kind,
        columns=columns,
        headers=[header for _, header in layout],
        rows=[[format_cell(record.get(key)) for key in columns] for record in records],
    )


# -----------------------------
# Row builders
# -----------------------------
def assignment_rows(assignments: Iterable[AssignmentRecord]) -> TableExport:
    def flatten(a: AssignmentRecord) -> dict[str, Any]:
        return {
            **a.model_dump(),
            "rate_type": a.commission_policy.rate_type,
            "commission_rate": a.commission_policy.base_rate,
        }

    return _table("assignments", ASSIGNMENT_COLUMNS, (flatten(a) for a in assignments))


def referral_rows(referrals: Iterable[ReferralRecord], *, now: Optional[datetime] = None) -> TableExport:
    """Status column shows the effective status as of `now`."""
    now = now or utcnow()
    return _table("referrals", REFERRAL_COLUMNS, (r.as_of(now).model_dump() for r in referrals))


def referrer_rows(referrers: Iterable[ReferrerProfile]) -> TableExport:
    def flatten(r: ReferrerProfile) -> dict[str, Any]:
        policy = r.commission_policy
        return {**r.model_dump(), "commission_rate": policy.base_rate if policy is not None else None}

    return _table("doctors", REFERRER_COLUMNS, (flatten(r) for r in referrers))


def payout_rows(payouts: Iterable[CommissionPayout]) -> TableExport:
    return _table("doctor_payments", PAYOUT_COLUMNS, (p.model_dump() for p in payouts))


def revenue_rows(snapshot: RevenueSnapshot, table: RevenueTable = "pharmacies") -> TableExport:
    if table == "categories":
        return _table("revenue_categories", CATEGORY_COLUMNS, (c.model_dump() for c in snapshot.by_category))

    if table == "pharmacies":
        performers = snapshot.top_pharmacies
    elif table == "cities":
        performers = snapshot.top_cities
    else:
        raise ValidationError(f"Unknown revenue table {table!r}.")

    return _table(
        f"revenue_{table}",
        PERFORMER_COLUMNS,
        ({"rank": rank, **p.model_dump()} for rank, p in enumerate(performers, start=1)),
    )


# -----------------------------
# Writers
# -----------------------------
Destination = Union[TextIO, str, Path]


def _write(table: TableExport, destination: Destination, fmt: ExportFormat, emit) -> None:
    if isinstance(destination, (str, Path)):
        with open(destination, "w", newline="", encoding="utf-8") as f:
            emit(f)
    else:
        emit(destination)
    logger.info(f"{fmt}_exported", kind=table.kind, count=len(table.rows))


def write_csv(table: TableExport, destination: Destination) -> None:
    """Header row uses the display headers; one row per record."""

    def emit(f: TextIO) -> None:
        writer = csv.writer(f)
        writer.writerow(table.headers)
        writer.writerows(table.rows)

    _write(table, destination, "csv", emit)


def write_jsonl(table: TableExport, destination: Destination) -> None:
    def emit(f: TextIO) -> None:
        for record in table.as_dicts():
            f.write(json.dumps(record, ensure_ascii=False) + "\n")

    _write(table, destination, "jsonl", emit)


def render(table: TableExport, fmt: ExportFormat = "csv") -> str:
    buf = io.StringIO(newline="")
    if fmt == "csv":
        write_csv(table, buf)
    elif fmt == "jsonl":
        write_jsonl(table, buf)
    else:
        raise ValidationError(f"Unsupported format: {fmt}")
    return buf.getvalue()


def export_filename(kind: str, fmt: ExportFormat = "csv", on: Optional[date] = None) -> str:
    if fmt not in ("csv", "jsonl"):
        raise ValidationError(f"Unsupported format: {fmt}")
    day = on or utcnow().date()
    if isinstance(day, datetime):
        day = day.date()
    return f"{FILENAME_PREFIX}_{kind}_{day.isoformat()}.{fmt}"
