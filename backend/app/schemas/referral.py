# app/schemas/referral.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, constr, model_validator

from app.core.enums import ReferralSource, ReferralStatus, ReferrerStatus
from app.schemas.commission import CommissionPolicy

ReferralCode = constr(pattern=r"^[A-Z0-9]{6}$")  # exactly 6 chars A–Z0–9


class ReferrerCreate(BaseModel):
    """
    Register a referring doctor.
    referral_code is optional; one is allocated when omitted.
    """

    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    status: ReferrerStatus = ReferrerStatus.ACTIVE
    referral_code: Optional[str] = None
    referral_active: bool = True
    commission_policy: Optional[CommissionPolicy] = None


class ReferrerProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    status: ReferrerStatus
    referral_code: ReferralCode
    referral_active: bool
    commission_policy: Optional[CommissionPolicy] = None

    # performance counters, updated together with referral transitions
    total_referrals: int = 0
    successful_referrals: int = 0
    conversion_rate: Decimal = Decimal("0")
    total_commission_earned: Decimal = Decimal("0.00")

    version: int = 0
    created_at: datetime
    updated_at: datetime

    def issuance_blocker(self) -> Optional[str]:
        """Why this referrer cannot issue referrals right now, or None."""
        if self.status != ReferrerStatus.ACTIVE:
            return f"is {self.status.value}"
        if self.commission_policy is None:
            return "has no commission policy"
        if not self.referral_active:
            return "has referral issuance disabled"
        return None

    def can_issue_referrals(self) -> bool:
        return self.issuance_blocker() is None


class CustomerContact(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    phone: str = Field(min_length=3, max_length=32)


class ReferralRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sequence: int

    referrer_id: str
    referrer_name: str
    referral_code: str

    customer_id: str
    customer_name: str
    customer_phone: str

    order_id: Optional[str] = None
    prescription_id: Optional[str] = None

    source: ReferralSource
    status: ReferralStatus = ReferralStatus.PENDING

    # rate + policy as they were when the referral was issued
    commission_rate_snapshot: Decimal
    policy_snapshot: CommissionPolicy

    # only set once converted
    order_value: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None

    created_at: datetime
    expires_at: datetime
    converted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None

    version: int = 0

    def effective_status(self, now: datetime) -> ReferralStatus:
        """Stored status, except a pending referral past expires_at reads as expired."""
        if self.status == ReferralStatus.PENDING and now > self.expires_at:
            return ReferralStatus.EXPIRED
        return self.status

    def is_live(self, now: datetime) -> bool:
        return self.effective_status(now) == ReferralStatus.PENDING

    def as_of(self, now: datetime) -> "ReferralRecord":
        """Copy with the derived status applied (stored record untouched)."""
        status = self.effective_status(now)
        if status == self.status:
            return self
        return self.model_copy(update={"status": status})


class ReferralFilter(BaseModel):
    """Explicit filter struct for referral listings; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    referrer_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[ReferralStatus] = None
    source: Optional[ReferralSource] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


class ReferrerFilter(BaseModel):
    """Doctor directory filter; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    status: Optional[ReferrerStatus] = None
    referral_active: Optional[bool] = None
    # inclusive range on the policy base rate; doctors without a policy never match
    min_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    max_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    search: Optional[str] = None

    @model_validator(mode="after")
    def _check_range(self) -> "ReferrerFilter":
        if self.min_rate is not None and self.max_rate is not None and self.min_rate > self.max_rate:
            raise ValueError("min_rate must not exceed max_rate")
        return self


class ReferrerPerformer(BaseModel):
    referrer_id: str
    name: str
    total_referrals: int
    successful_referrals: int
    conversion_rate: Decimal
    commission_earned: Decimal


class ReferrerStats(BaseModel):
    total: int
    by_status: dict[str, int]
    average_commission_rate: Decimal
    total_commission_paid: Decimal
    total_referrals: int
    successful_referrals: int
    average_conversion_rate: Decimal
    top_performers: List[ReferrerPerformer]
