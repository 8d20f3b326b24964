from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import JSONType, UTCDateTime


class CommissionPayout(Base):
    """Monthly commission payment to a referring doctor."""

    __tablename__ = "commission_payouts"
    __table_args__ = (
        Index("ix_commission_payouts_referrer_period", "referrer_id", "period"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    referrer_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("referrer_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    referrer_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # YYYY-MM
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # ids of the referrals this payout covers
    referral_ids: Mapped[list[Any]] = mapped_column(JSONType, nullable=False)
    referrals_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_order_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    # pending | processing | paid | failed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(60), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
