from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import JSONType, UTCDateTime


class ReferrerProfile(Base):
    """Referring doctor: referral code, commission policy and performance counters."""

    __tablename__ = "referrer_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # active | inactive | pending | suspended | rejected
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    referral_code: Mapped[str] = mapped_column(String(6), nullable=False, unique=True, index=True)
    referral_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # CommissionPolicy as JSON; NULL means the doctor has no policy yet
    commission_policy: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    total_referrals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_referrals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversion_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    total_commission_earned: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __mapper_args__ = {"version_id_col": version}
