# app/schemas/commission.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.core.enums import RateType
from app.schemas.base import parse_model


class CommissionTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    threshold_amount: Decimal = Field(ge=0)
    rate: Decimal = Field(ge=0, le=100)


class CommissionPolicy(BaseModel):
    """
    Fixed or tiered commission rule.

    - fixed: base_rate applies to the whole order value
    - tiered: rate of the highest threshold <= order value, else base_rate
    - tiers=None on a tiered policy is allowed (always base_rate);
      an explicit empty list is rejected.
    """

    model_config = ConfigDict(frozen=True)

    rate_type: RateType = RateType.FIXED
    base_rate: Decimal = Field(ge=0, le=100)
    minimum_eligible_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tiers: Optional[List[CommissionTier]] = None

    @model_validator(mode="after")
    def _check_tiers(self) -> "CommissionPolicy":
        if self.rate_type == RateType.FIXED and self.tiers is not None:
            raise ValueError("tiers are only allowed on a tiered policy")
        if self.rate_type == RateType.TIERED and self.tiers is not None and len(self.tiers) == 0:
            raise ValueError("tiered policy declares an empty tier list")
        return self

    def with_base_rate(self, rate: Any) -> "CommissionPolicy":
        return build_policy({**self.model_dump(), "base_rate": rate})


PolicyInput = Union[CommissionPolicy, Mapping[str, Any]]


def build_policy(data: PolicyInput) -> CommissionPolicy:
    """
    Boundary parser: mapping (or already-built policy) -> validated policy.
    Policies created with model_construct() are re-validated here too.
    """
    return parse_model(CommissionPolicy, data, what="commission policy")
