from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import JSONType, UTCDateTime


class Referral(Base):
    """
    Doctor -> customer attribution.

    NOTE:
      - status stores pending/converted/cancelled; "expired" is derived at read
        time from expires_at and is only stored if a caller writes it.
      - policy_snapshot keeps the referrer's policy as it was at creation.
    """

    __tablename__ = "referrals"
    __table_args__ = (
        Index("ix_referrals_customer_sequence", "customer_id", "sequence"),
        Index("ix_referrals_referrer_created", "referrer_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)

    referrer_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("referrer_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    referrer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(6), nullable=False)

    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False)

    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    prescription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # qr_code | link | direct
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    commission_rate_snapshot: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    policy_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    order_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    commission_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    converted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
