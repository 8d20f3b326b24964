# app/schemas/payout.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.enums import PayoutStatus

# monthly payout periods, e.g. "2024-01"
PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
PERIOD_RE = re.compile(PERIOD_PATTERN)


def period_bounds(period: str) -> tuple[datetime, datetime]:
    """[first instant of the month, first instant of the next month), UTC."""
    if not PERIOD_RE.match(period or ""):
        raise ValueError(f"Invalid payout period {period!r}; expected YYYY-MM.")
    year, month = (int(part) for part in period.split("-"))
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year + month // 12, month % 12 + 1, 1, tzinfo=timezone.utc)
    return start, end


class CommissionPayout(BaseModel):
    """
    One payment to a doctor covering the referrals converted in a month.

    referral_ids lists what this payout covers; a failed payout releases
    them for a later one.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    referrer_id: str
    referrer_name: str

    period: str
    period_start: datetime
    period_end: datetime

    referral_ids: List[str] = Field(default_factory=list)
    referrals_count: int
    total_order_value: Decimal
    amount: Decimal
    commission_rate: Decimal  # effective: amount / total_order_value * 100

    status: PayoutStatus = PayoutStatus.PENDING
    due_date: datetime
    payment_method: str
    transaction_id: Optional[str] = None
    notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None

    version: int = 0


class PayoutFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    referrer_id: Optional[str] = None
    status: Optional[PayoutStatus] = None
    period: Optional[str] = Field(default=None, pattern=PERIOD_PATTERN)

