# app/schemas/assignment.py
from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.commission import CommissionPolicy

# "30-45 min", "20 min", "45-60min"
DELIVERY_TIME_PATTERN = r"(?i)^\s*(\d+)\s*(?:-\s*(\d+))?\s*min\s*$"
DELIVERY_TIME_RE = re.compile(DELIVERY_TIME_PATTERN)


def delivery_minutes(estimated_delivery_time: str) -> int:
    """Lower bound of an estimated delivery window, in minutes."""
    m = DELIVERY_TIME_RE.match(estimated_delivery_time or "")
    if not m:
        raise ValueError(f"Unrecognised delivery time {estimated_delivery_time!r}; expected e.g. '30-45 min'.")
    return int(m.group(1))


class DeliveryParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delivery_radius_km: Decimal = Field(ge=0)
    estimated_delivery_time: str = Field(pattern=DELIVERY_TIME_PATTERN)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    minimum_order_amount: Decimal = Field(default=Decimal("0"), ge=0)
    coverage_areas: List[str] = Field(default_factory=list)


class AssignmentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str

    pharmacy_id: str
    pharmacy_name: str
    city_id: str
    city_name: str
    governorate_id: str
    governorate_name: str

    is_primary: bool
    is_active: bool = True

    # delivery parameters
    delivery_radius_km: Decimal
    estimated_delivery_time: str
    delivery_fee: Decimal
    minimum_order_amount: Decimal
    coverage_areas: List[str] = Field(default_factory=list)

    commission_policy: CommissionPolicy

    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    version: int = 0

    @property
    def delivery_minutes(self) -> int:
        return delivery_minutes(self.estimated_delivery_time)


class AssignmentUpdate(BaseModel):
    """Partial update; only the fields that are set are applied."""

    model_config = ConfigDict(extra="forbid")

    is_primary: Optional[bool] = None
    delivery_radius_km: Optional[Decimal] = Field(default=None, ge=0)
    estimated_delivery_time: Optional[str] = Field(default=None, pattern=DELIVERY_TIME_PATTERN)
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)
    minimum_order_amount: Optional[Decimal] = Field(default=None, ge=0)
    coverage_areas: Optional[List[str]] = None
    commission_policy: Optional[CommissionPolicy] = None


AssignmentSortField = Literal["pharmacy", "city", "commission", "delivery_time", "created_at"]


class AssignmentFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pharmacy_id: Optional[str] = None
    city_id: Optional[str] = None
    governorate_id: Optional[str] = None
    status: Literal["active", "inactive", "all"] = "all"
    is_primary: Optional[bool] = None
    search: Optional[str] = Field(default=None, max_length=100)
    sort_by: Optional[AssignmentSortField] = None
    sort_order: Literal["asc", "desc"] = "asc"


# -----------------------------
# Directory entries (supplied by the pharmacy/city directory)
# -----------------------------
class PharmacyRef(BaseModel):
    id: str
    name: str
    is_active: bool = True


class CityRef(BaseModel):
    id: str
    name: str
    governorate_id: str
    governorate_name: str
    is_enabled: bool = True


# -----------------------------
# Coverage statistics (derived)
# -----------------------------
class CityCoverage(BaseModel):
    city_id: str
    city_name: str
    pharmacy_count: int
    average_commission: Decimal
    total_orders: int
    revenue: Decimal


class GovernorateCoverage(BaseModel):
    governorate_id: str
    governorate_name: str
    pharmacy_count: int
    city_count: int
    average_commission: Decimal
    total_revenue: Decimal


class CoverageStats(BaseModel):
    total_assignments: int
    active_assignments: int
    active_cities: int
    total_coverage_area_km2: Decimal
    average_delivery_time_min: Decimal
    average_commission_rate: Decimal
    by_city: List[CityCoverage]
    by_governorate: List[GovernorateCoverage]


class PharmacyCoverageSummary(BaseModel):
    pharmacy_id: str
    total_cities: int
    active_cities: int
    total_coverage_area_km2: Decimal
    average_commission: Decimal
    primary_city: Optional[str] = None


class CityCoverageSummary(BaseModel):
    city_id: str
    total_pharmacies: int
    active_pharmacies: int
    average_delivery_time_min: Decimal
    average_commission: Decimal
    coverage_areas: List[str]
