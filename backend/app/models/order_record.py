from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import JSONType, UTCDateTime


class OrderRecord(Base):
    """
    Read-only copy of completed/placed orders, written by the order subsystem.
    Used for revenue rollups only.
    """

    __tablename__ = "order_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    pharmacy_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    pharmacy_name: Mapped[str] = mapped_column(String(200), nullable=False)
    city_id: Mapped[str] = mapped_column(String(64), nullable=False)
    city_name: Mapped[str] = mapped_column(String(200), nullable=False)
    governorate_id: Mapped[str] = mapped_column(String(64), nullable=False)

    category: Mapped[str] = mapped_column(String(60), nullable=False, default="general")

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # pending | processing | shipped | delivered | cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    placed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    referral_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # CommissionPolicy as JSON, captured at intake
    commission_policy: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
