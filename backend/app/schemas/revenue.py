# app/schemas/revenue.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.enums import OrderStatus, Timeframe
from app.schemas.commission import CommissionPolicy


class OrderRecord(BaseModel):
    """Read model fed by the order subsystem; the core never mutates orders."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str

    pharmacy_id: str
    pharmacy_name: str
    city_id: str
    city_name: str
    governorate_id: str

    category: str = "general"

    subtotal: Decimal = Field(ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(ge=0)

    status: OrderStatus
    placed_at: datetime
    referral_id: Optional[str] = None

    # pharmacy+city policy captured when the order was recorded; prices the
    # order from then on, whatever later happens to the assignment
    commission_policy: Optional[CommissionPolicy] = None


class CommissionBreakdown(BaseModel):
    """platform_share + pharmacy_commission + doctor_commission == total_commission"""

    platform_share: Decimal
    pharmacy_commission: Decimal
    doctor_commission: Decimal
    total_commission: Decimal


class CategoryRevenue(BaseModel):
    category: str
    total_revenue: Decimal
    total_orders: int
    average_order_value: Decimal
    growth_pct: Decimal


class PerformerRow(BaseModel):
    id: str
    name: str
    revenue: Decimal
    orders: int
    commission: Decimal


class DoctorPerformerRow(BaseModel):
    id: str
    name: str
    conversions: int
    referred_revenue: Decimal
    commission: Decimal


class TimeSeriesPoint(BaseModel):
    day: date
    revenue: Decimal
    orders: int
    commission: Decimal


class RevenueSnapshot(BaseModel):
    timeframe: Timeframe
    window_start: datetime
    window_end: datetime

    total_revenue: Decimal
    total_orders: int
    average_order_value: Decimal
    previous_revenue: Decimal
    growth_pct: Decimal

    commission_breakdown: CommissionBreakdown
    by_category: List[CategoryRevenue]
    top_pharmacies: List[PerformerRow]
    top_cities: List[PerformerRow]
    top_doctors: List[DoctorPerformerRow]
    time_series: List[TimeSeriesPoint]


class TimeframeOption(BaseModel):
    value: Timeframe
    label: str
    days: int
