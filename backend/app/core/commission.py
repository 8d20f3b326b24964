# app/core/commission.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from app.core.enums import RateType
from app.core.errors import ValidationError
from app.schemas.commission import CommissionPolicy, CommissionTier

REFERRAL_RE = re.compile(r"^[A-Z0-9]{6}$")

_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def normalize_referral_code(code: str | None) -> str | None:
    if not code:
        return None
    c = code.strip().upper()
    return c if REFERRAL_RE.match(c) else None


def to_decimal(value: Any, *, field: str = "amount") -> Decimal:
    """Money input -> Decimal. Floats go through str so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        return value
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"Missing or invalid {field}.")
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid decimal for {field}: {value!r}.") from exc


def round_money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def select_tier(order_value: Decimal, tiers: list[CommissionTier] | None) -> Optional[CommissionTier]:
    """
    Highest threshold not exceeding the order value.
    Tiers are scanned in declared order with `>=`, so on equal thresholds
    the later-defined tier wins.
    """
    chosen: Optional[CommissionTier] = None
    for tier in tiers or ():
        if tier.threshold_amount > order_value:
            continue
        if chosen is None or tier.threshold_amount >= chosen.threshold_amount:
            chosen = tier
    return chosen


def resolve_rate(order_value: Any, policy: CommissionPolicy) -> Decimal:
    """
    The percentage that applies to `order_value` under `policy`
    (0 below the eligibility floor).
    """
    amount = to_decimal(order_value, field="order_value")
    if amount < 0:
        raise ValidationError("order_value must be >= 0.")

    if amount < policy.minimum_eligible_amount:
        return Decimal("0")

    if policy.rate_type == RateType.TIERED:
        tier = select_tier(amount, policy.tiers)
        return tier.rate if tier is not None else policy.base_rate

    return policy.base_rate


def compute_commission(order_value: Any, policy: CommissionPolicy) -> Decimal:
    """
    Central policy.
    Whole-amount rate selection (not marginal/bracket taxation), rounded to cents.
    """
    amount = to_decimal(order_value, field="order_value")
    rate = resolve_rate(amount, policy)
    if rate == 0:
        return ZERO
    return round_money(amount * rate / _HUNDRED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
