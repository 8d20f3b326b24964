from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import JSONType, UTCDateTime


class PharmacyCityAssignment(Base):
    __tablename__ = "pharmacy_city_assignments"
    __table_args__ = (
        Index("ix_assignments_pharmacy_city", "pharmacy_id", "city_id"),
        Index("ix_assignments_governorate", "governorate_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    pharmacy_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    pharmacy_name: Mapped[str] = mapped_column(String(200), nullable=False)
    city_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    city_name: Mapped[str] = mapped_column(String(200), nullable=False)
    governorate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    governorate_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # at most one ACTIVE primary per pharmacy+city (enforced by the registry)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    delivery_radius_km: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    estimated_delivery_time: Mapped[str] = mapped_column(String(40), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    minimum_order_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    coverage_areas: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    commission_policy: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
