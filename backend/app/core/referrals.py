# app/core/referrals.py
from __future__ import annotations

import secrets
import uuid
from collections import Counter
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Mapping, Optional, Union

from app.core.commission import ZERO, compute_commission, normalize_referral_code, round_money, to_decimal, utcnow
from app.core.config import settings
from app.core.enums import PayoutStatus, ReferralSource, ReferralStatus, ReferrerStatus
from app.core.errors import (
    CommissionCoreError,
    InvalidReferrerError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.logging import get_logger
from app.crud.base import CommissionStore
from app.schemas.base import parse_model
from app.schemas.commission import PolicyInput, build_policy
from app.schemas.payout import CommissionPayout, PayoutFilter, period_bounds
from app.schemas.referral import (
    CustomerContact,
    ReferralFilter,
    ReferralRecord,
    ReferrerCreate,
    ReferrerFilter,
    ReferrerPerformer,
    ReferrerProfile,
    ReferrerStats,
)

logger = get_logger(__name__)

MAX_CODE_RETRIES = 30
ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

_PERCENT = Decimal("0.01")

DEFAULT_PAYMENT_METHOD = "Bank Transfer"
# payouts fall due a few days into the month after the period closes
PAYOUT_DUE_AFTER = timedelta(days=4)

PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING, PayoutStatus.PAID, PayoutStatus.FAILED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.PAID, PayoutStatus.FAILED}),
    PayoutStatus.PAID: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}


def generate_referral_code() -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(6))


def conversion_rate(successful: int, total: int) -> Decimal:
    if total <= 0:
        return Decimal("0")
    return (Decimal(successful) / Decimal(total) * 100).quantize(_PERCENT, rounding=ROUND_HALF_UP)


class ReferralLedger:
    """
    Doctor referral lifecycle: pending -> converted | cancelled, with
    `expired` derived lazily from expires_at.

    Every mutation runs inside one store transaction together with the
    referrer counter update it implies.
    """

    def __init__(
        self,
        store: CommissionStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        expiry_days: Optional[int] = None,
        code_factory: Callable[[], str] = generate_referral_code,
        top_n: Optional[int] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._expiry = timedelta(days=expiry_days if expiry_days is not None else settings.REFERRAL_EXPIRY_DAYS)
        self._code_factory = code_factory
        self._top_n = top_n if top_n is not None else settings.TOP_PERFORMERS_LIMIT

    # -----------------------------
    # Referrers
    # -----------------------------
    def _allocate_unique_referral_code(self) -> str:
        """
        Collision-safe allocator.
        Pre-checks the store; the store still rejects a duplicate on insert.
        """
        for _ in range(MAX_CODE_RETRIES):
            code = self._code_factory()
            if self._store.get_referrer_by_code(code) is None:
                return code
        raise CommissionCoreError("Could not allocate unique referral code")

    def _require_referrer(self, referrer_id: str) -> ReferrerProfile:
        referrer = self._store.get_referrer(referrer_id)
        if referrer is None:
            raise NotFoundError("Referrer", referrer_id)
        return referrer

    def register_referrer(self, data: Union[ReferrerCreate, Mapping[str, Any]]) -> ReferrerProfile:
        payload = parse_model(ReferrerCreate, data, what="referrer")
        now = self._clock()

        with self._store.transaction():
            if payload.referral_code is not None:
                code = normalize_referral_code(payload.referral_code)
                if code is None:
                    raise ValidationError(f"Invalid referral code {payload.referral_code!r}; expected 6 chars A-Z0-9.")
                if self._store.get_referrer_by_code(code) is not None:
                    raise ValidationError(f"Referral code {code!r} is already in use.")
            else:
                code = self._allocate_unique_referral_code()

            referrer = self._store.add_referrer(
                ReferrerProfile(
                    id=payload.id or str(uuid.uuid4()),
                    name=payload.name.strip(),
                    status=payload.status,
                    referral_code=code,
                    referral_active=payload.referral_active,
                    commission_policy=payload.commission_policy,
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info("referrer_registered", referrer_id=referrer.id, referral_code=referrer.referral_code)
        return referrer

    def get_referrer(self, referrer_id: str) -> ReferrerProfile:
        return self._require_referrer(referrer_id)

    def list_referrers(self, filters: Union[ReferrerFilter, Mapping[str, Any], None] = None) -> list[ReferrerProfile]:
        f = parse_model(ReferrerFilter, filters or {}, what="referrer filter")
        needle = f.search.strip().lower() if f.search else None

        out: list[ReferrerProfile] = []
        for referrer in self._store.list_referrers():
            if f.status is not None and referrer.status != f.status:
                continue
            if f.referral_active is not None and referrer.referral_active != f.referral_active:
                continue
            if f.min_rate is not None or f.max_rate is not None:
                policy = referrer.commission_policy
                if policy is None:
                    continue
                if f.min_rate is not None and policy.base_rate < f.min_rate:
                    continue
                if f.max_rate is not None and policy.base_rate > f.max_rate:
                    continue
            if needle and needle not in referrer.name.lower() and needle not in referrer.referral_code.lower():
                continue
            out.append(referrer)
        return out

    def update_referrer_policy(self, referrer_id: str, policy: Optional[PolicyInput]) -> ReferrerProfile:
        """Existing referrals keep the policy they snapshotted; only new ones see this."""
        new_policy = build_policy(policy) if policy is not None else None
        with self._store.transaction():
            referrer = self._require_referrer(referrer_id)
            referrer.commission_policy = new_policy
            referrer.updated_at = self._clock()
            saved = self._store.save_referrer(referrer)

        logger.info(
            "referrer_policy_updated",
            referrer_id=referrer_id,
            base_rate=str(new_policy.base_rate) if new_policy else None,
        )
        return saved

    def toggle_referral_issuance(self, referrer_id: str) -> ReferrerProfile:
        with self._store.transaction():
            referrer = self._require_referrer(referrer_id)
            referrer.referral_active = not referrer.referral_active
            referrer.updated_at = self._clock()
            saved = self._store.save_referrer(referrer)

        logger.info("referral_issuance_toggled", referrer_id=referrer_id, referral_active=saved.referral_active)
        return saved

    def set_referrer_status(self, referrer_id: str, status: Union[ReferrerStatus, str]) -> ReferrerProfile:
        """
        Approving a doctor enables referral issuance; suspending or rejecting
        disables it. Other statuses leave the issuance flag alone.
        """
        try:
            new_status = ReferrerStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown referrer status {status!r}.") from exc

        with self._store.transaction():
            referrer = self._require_referrer(referrer_id)
            referrer.status = new_status
            if new_status == ReferrerStatus.ACTIVE:
                referrer.referral_active = True
            elif new_status in (ReferrerStatus.SUSPENDED, ReferrerStatus.REJECTED):
                referrer.referral_active = False
            referrer.updated_at = self._clock()
            saved = self._store.save_referrer(referrer)

        logger.info("referrer_status_changed", referrer_id=referrer_id, status=new_status.value)
        return saved

    def rotate_referral_code(self, referrer_id: str) -> ReferrerProfile:
        """New code for QR/link attribution; referrals already issued keep the old one."""
        with self._store.transaction():
            referrer = self._require_referrer(referrer_id)
            old_code = referrer.referral_code
            referrer.referral_code = self._allocate_unique_referral_code()
            referrer.updated_at = self._clock()
            saved = self._store.save_referrer(referrer)

        logger.info("referral_code_rotated", referrer_id=referrer_id, old_code=old_code, new_code=saved.referral_code)
        return saved

    # -----------------------------
    # Referrals
    # -----------------------------
    def create(
        self,
        referrer_id: str,
        customer_id: str,
        customer: Union[CustomerContact, Mapping[str, Any]],
        source: Union[ReferralSource, str],
        *,
        prescription_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReferralRecord:
        contact = parse_model(CustomerContact, customer, what="customer contact")
        if not customer_id:
            raise ValidationError("customer_id is required.")
        try:
            referral_source = ReferralSource(source)
        except ValueError as exc:
            raise ValidationError(f"Unknown referral source {source!r}.") from exc

        now = self._clock()
        with self._store.transaction():
            referrer = self._require_referrer(referrer_id)
            if not referrer.can_issue_referrals():
                raise InvalidReferrerError(f"Referrer {referrer_id!r} {referrer.issuance_blocker()}.")

            policy = referrer.commission_policy
            referral = self._store.add_referral(
                ReferralRecord(
                    id=str(uuid.uuid4()),
                    sequence=self._store.next_referral_sequence(),
                    referrer_id=referrer.id,
                    referrer_name=referrer.name,
                    referral_code=referrer.referral_code,
                    customer_id=customer_id,
                    customer_name=contact.name,
                    customer_phone=contact.phone,
                    prescription_id=prescription_id,
                    source=referral_source,
                    status=ReferralStatus.PENDING,
                    commission_rate_snapshot=policy.base_rate,
                    policy_snapshot=policy,
                    created_at=now,
                    expires_at=now + self._expiry,
                    notes=notes,
                )
            )

            referrer.total_referrals += 1
            referrer.conversion_rate = conversion_rate(referrer.successful_referrals, referrer.total_referrals)
            referrer.updated_at = now
            self._store.save_referrer(referrer)

        logger.info(
            "referral_created",
            referral_id=referral.id,
            referrer_id=referrer_id,
            customer_id=customer_id,
            source=referral_source.value,
        )
        return referral

    def create_from_code(
        self,
        referral_code: str,
        customer_id: str,
        customer: Union[CustomerContact, Mapping[str, Any]],
        source: Union[ReferralSource, str] = ReferralSource.QR_CODE,
        **kwargs: Any,
    ) -> ReferralRecord:
        code = normalize_referral_code(referral_code)
        if code is None:
            raise ValidationError(f"Invalid referral code {referral_code!r}.")
        referrer = self._store.get_referrer_by_code(code)
        if referrer is None:
            raise NotFoundError("Referral code", code)
        return self.create(referrer.id, customer_id, customer, source, **kwargs)

    def _require_referral(self, referral_id: str) -> ReferralRecord:
        referral = self._store.get_referral(referral_id)
        if referral is None:
            raise NotFoundError("Referral", referral_id)
        return referral

    def convert(self, referral_id: str, order_id: str, order_value: Any) -> ReferralRecord:
        if not order_id:
            raise ValidationError("order_id is required.")
        value = round_money(to_decimal(order_value, field="order_value"))
        if value < 0:
            raise ValidationError("order_value must be >= 0.")

        now = self._clock()
        with self._store.transaction():
            referral = self._require_referral(referral_id)
            current = referral.effective_status(now)
            if current != ReferralStatus.PENDING:
                raise InvalidStateTransitionError(referral_id, current.value, "convert")

            # first created wins: an older live referral for this customer takes the order
            for other in self._store.list_referrals(customer_id=referral.customer_id):
                if other.sequence < referral.sequence and other.is_live(now):
                    raise InvalidStateTransitionError(
                        referral_id,
                        current.value,
                        "convert",
                        f"Referral {other.id!r} was created earlier for this customer and is still pending.",
                    )

            credited = self._store.find_referral_by_order(order_id)
            if credited is not None and credited.id != referral_id:
                raise InvalidStateTransitionError(
                    referral_id,
                    current.value,
                    "convert",
                    f"Order {order_id!r} is already credited to referral {credited.id!r}.",
                )

            amount = compute_commission(value, referral.policy_snapshot)
            referral.status = ReferralStatus.CONVERTED
            referral.order_id = order_id
            referral.order_value = value
            referral.commission_amount = amount
            referral.converted_at = now
            saved = self._store.save_referral(referral)

            referrer = self._require_referrer(referral.referrer_id)
            referrer.successful_referrals += 1
            referrer.total_commission_earned = round_money(referrer.total_commission_earned + amount)
            referrer.conversion_rate = conversion_rate(referrer.successful_referrals, referrer.total_referrals)
            referrer.updated_at = now
            self._store.save_referrer(referrer)

        logger.info(
            "referral_converted",
            referral_id=referral_id,
            referrer_id=saved.referrer_id,
            order_id=order_id,
            commission_amount=str(amount),
        )
        return saved

    def attribute_order(self, customer_id: str, order_id: str, order_value: Any) -> Optional[ReferralRecord]:
        """
        Completion hook for the order subsystem: credit the order to the
        customer's earliest live referral. None when there is nothing to credit.
        """
        now = self._clock()
        with self._store.transaction():
            for referral in self._store.list_referrals(customer_id=customer_id):
                if referral.is_live(now):
                    return self.convert(referral.id, order_id, order_value)
        logger.debug("order_not_attributed", customer_id=customer_id, order_id=order_id)
        return None

    def cancel(self, referral_id: str, reason: Optional[str] = None) -> ReferralRecord:
        now = self._clock()
        with self._store.transaction():
            referral = self._require_referral(referral_id)
            current = referral.effective_status(now)
            if current != ReferralStatus.PENDING:
                raise InvalidStateTransitionError(referral_id, current.value, "cancel")

            referral.status = ReferralStatus.CANCELLED
            referral.cancelled_at = now
            if reason:
                referral.notes = reason
            saved = self._store.save_referral(referral)

        logger.info("referral_cancelled", referral_id=referral_id)
        return saved

    def get(self, referral_id: str) -> ReferralRecord:
        return self._require_referral(referral_id).as_of(self._clock())

    def list(self, filters: Union[ReferralFilter, Mapping[str, Any], None] = None) -> list[ReferralRecord]:
        f = parse_model(ReferralFilter, filters or {}, what="referral filter")
        now = self._clock()

        out: list[ReferralRecord] = []
        for referral in self._store.list_referrals(referrer_id=f.referrer_id, customer_id=f.customer_id):
            referral = referral.as_of(now)
            if f.status is not None and referral.status != f.status:
                continue
            if f.source is not None and referral.source != f.source:
                continue
            if f.created_from is not None and referral.created_at < f.created_from:
                continue
            if f.created_to is not None and referral.created_at > f.created_to:
                continue
            out.append(referral)
        return out

    # -----------------------------
    # Statistics
    # -----------------------------
    def referrer_stats(self) -> ReferrerStats:
        referrers = self._store.list_referrers()
        by_status = Counter(r.status.value for r in referrers)

        rates = [r.commission_policy.base_rate for r in referrers if r.commission_policy is not None]
        avg_rate = (sum(rates, Decimal("0")) / len(rates)).quantize(_PERCENT, rounding=ROUND_HALF_UP) if rates else Decimal("0")

        conversion_rates = [r.conversion_rate for r in referrers]
        avg_conversion = (
            (sum(conversion_rates, Decimal("0")) / len(conversion_rates)).quantize(_PERCENT, rounding=ROUND_HALF_UP)
            if conversion_rates
            else Decimal("0")
        )

        ranked = sorted(referrers, key=lambda r: (-r.total_commission_earned, r.name))
        top = [
            ReferrerPerformer(
                referrer_id=r.id,
                name=r.name,
                total_referrals=r.total_referrals,
                successful_referrals=r.successful_referrals,
                conversion_rate=r.conversion_rate,
                commission_earned=r.total_commission_earned,
            )
            for r in ranked[: self._top_n]
        ]

        return ReferrerStats(
            total=len(referrers),
            by_status={s.value: by_status.get(s.value, 0) for s in ReferrerStatus},
            average_commission_rate=avg_rate,
            total_commission_paid=round_money(sum((r.total_commission_earned for r in referrers), ZERO)),
            total_referrals=sum(r.total_referrals for r in referrers),
            successful_referrals=sum(r.successful_referrals for r in referrers),
            average_conversion_rate=avg_conversion,
            top_performers=top,
        )

    # -----------------------------
    # Payouts
    # -----------------------------
    def _require_payout(self, payout_id: str) -> CommissionPayout:
        payout = self._store.get_payout(payout_id)
        if payout is None:
            raise NotFoundError("Payout", payout_id)
        return payout

    def create_payout(
        self,
        referrer_id: str,
        period: str,
        *,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
        notes: Optional[str] = None,
    ) -> CommissionPayout:
        """
        Roll a doctor's converted referrals for a closed month into one
        pending payout. Referrals already covered by a payout that has not
        failed are skipped.
        """
        try:
            start, end = period_bounds(period)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        now = self._clock()
        if end > now:
            raise ValidationError(f"Payout period {period} has not closed yet.")

        with self._store.transaction():
            referrer = self._require_referrer(referrer_id)

            claimed = {
                referral_id
                for p in self._store.list_payouts(referrer_id=referrer_id)
                if p.status != PayoutStatus.FAILED
                for referral_id in p.referral_ids
            }
            covered = [
                r
                for r in self._store.list_referrals(referrer_id=referrer_id)
                if r.status == ReferralStatus.CONVERTED
                and r.converted_at is not None
                and start <= r.converted_at < end
                and r.id not in claimed
            ]
            if not covered:
                raise ValidationError(f"Referrer {referrer_id!r} has no unpaid commission for {period}.")

            amount = round_money(sum((r.commission_amount or ZERO for r in covered), ZERO))
            order_value = round_money(sum((r.order_value or ZERO for r in covered), ZERO))
            effective_rate = (
                (amount / order_value * 100).quantize(_PERCENT, rounding=ROUND_HALF_UP) if order_value else Decimal("0")
            )

            payout = self._store.add_payout(
                CommissionPayout(
                    id=str(uuid.uuid4()),
                    referrer_id=referrer.id,
                    referrer_name=referrer.name,
                    period=period,
                    period_start=start,
                    period_end=end,
                    referral_ids=[r.id for r in covered],
                    referrals_count=len(covered),
                    total_order_value=order_value,
                    amount=amount,
                    commission_rate=effective_rate,
                    status=PayoutStatus.PENDING,
                    due_date=end + PAYOUT_DUE_AFTER,
                    payment_method=payment_method,
                    notes=notes,
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info(
            "commission_payout_created",
            payout_id=payout.id,
            referrer_id=referrer_id,
            period=period,
            amount=str(amount),
            referrals=len(covered),
        )
        return payout

    def process_payout(
        self,
        payout_id: str,
        status: Union[PayoutStatus, str],
        *,
        transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CommissionPayout:
        """pending -> processing -> paid | failed; paid and failed are final."""
        try:
            target = PayoutStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown payout status {status!r}.") from exc

        now = self._clock()
        with self._store.transaction():
            payout = self._require_payout(payout_id)
            if target not in PAYOUT_TRANSITIONS[payout.status]:
                raise InvalidStateTransitionError(
                    payout_id, payout.status.value, f"mark {target.value}", entity="payout"
                )

            payout.status = target
            if transaction_id is not None:
                payout.transaction_id = transaction_id
            if notes:
                payout.notes = notes
            if target == PayoutStatus.PAID:
                payout.paid_at = now
            payout.updated_at = now
            saved = self._store.save_payout(payout)

        logger.info("commission_payout_processed", payout_id=payout_id, status=target.value)
        return saved

    def get_payout(self, payout_id: str) -> CommissionPayout:
        return self._require_payout(payout_id)

    def list_payouts(self, filters: Union[PayoutFilter, Mapping[str, Any], None] = None) -> list[CommissionPayout]:
        f = parse_model(PayoutFilter, filters or {}, what="payout filter")
        return [
            p
            for p in self._store.list_payouts(referrer_id=f.referrer_id)
            if (f.status is None or p.status == f.status) and (f.period is None or p.period == f.period)
        ]
