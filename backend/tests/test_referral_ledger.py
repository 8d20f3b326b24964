# tests/test_referral_ledger.py
from __future__ import annotations

import itertools
from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.commission import REFERRAL_RE
from app.core.enums import PayoutStatus, ReferralSource, ReferralStatus, ReferrerStatus
from app.core.errors import (
    CommissionCoreError,
    InvalidReferrerError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.referrals import ReferralLedger

CONTACT = {"name": "Mona Saleh", "phone": "+20 100 000 0000"}


# ---------------------------------------------------------
# Referrers
# ---------------------------------------------------------
def test_register_allocates_unique_code(make_referrer):
    a = make_referrer("Dr. A")
    b = make_referrer("Dr. B")

    assert REFERRAL_RE.match(a.referral_code)
    assert REFERRAL_RE.match(b.referral_code)
    assert a.referral_code != b.referral_code
    assert a.version == 1


def test_register_normalises_explicit_code(make_referrer):
    doctor = make_referrer(referral_code=" dr2024 ")
    assert doctor.referral_code == "DR2024"


def test_register_rejects_taken_or_malformed_code(make_referrer):
    make_referrer(referral_code="DR2024")
    with pytest.raises(ValidationError):
        make_referrer("Dr. Copy", referral_code="dr2024")
    with pytest.raises(ValidationError):
        make_referrer("Dr. Short", referral_code="AB1")


def test_register_rejects_unknown_fields(ledger):
    with pytest.raises(ValidationError):
        ledger.register_referrer({"name": "Dr. X", "specialisation": "GP"})


def test_allocator_retries_on_collision(store, clock, make_referrer):
    make_referrer(referral_code="AAAAAA")
    codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
    ledger = ReferralLedger(store, clock=clock, code_factory=lambda: next(codes))

    doctor = ledger.register_referrer({"name": "Dr. Retry"})
    assert doctor.referral_code == "BBBBBB"


def test_allocator_gives_up_after_bounded_retries(store, clock, make_referrer):
    make_referrer(referral_code="AAAAAA")
    ledger = ReferralLedger(store, clock=clock, code_factory=lambda: "AAAAAA")

    with pytest.raises(CommissionCoreError):
        ledger.register_referrer({"name": "Dr. Unlucky"})
    assert len(store.list_referrers()) == 1


def test_rotate_code_keeps_old_code_on_existing_referrals(store, clock, make_referral):
    codes = itertools.cycle(["CODE01", "CODE02"])
    ledger = ReferralLedger(store, clock=clock, code_factory=lambda: next(codes))
    doctor = ledger.register_referrer({"name": "Dr. Rotate", "commission_policy": {"base_rate": "10"}})
    referral = ledger.create(doctor.id, "cust-1", CONTACT, "link")

    rotated = ledger.rotate_referral_code(doctor.id)

    assert doctor.referral_code == "CODE01"
    assert rotated.referral_code == "CODE02"
    assert ledger.get(referral.id).referral_code == "CODE01"


def test_status_changes_drive_issuance_flag(ledger, make_referrer):
    doctor = make_referrer()

    suspended = ledger.set_referrer_status(doctor.id, "suspended")
    assert suspended.status == ReferrerStatus.SUSPENDED
    assert suspended.referral_active is False

    active = ledger.set_referrer_status(doctor.id, ReferrerStatus.ACTIVE)
    assert active.referral_active is True

    with pytest.raises(ValidationError):
        ledger.set_referrer_status(doctor.id, "retired")


# ---------------------------------------------------------
# Create
# ---------------------------------------------------------
def test_create_snapshots_policy_and_sets_expiry(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer(rate="12.5")
    referral = make_referral(doctor.id, prescription_id="rx-1")

    assert referral.status == ReferralStatus.PENDING
    assert referral.commission_rate_snapshot == Decimal("12.5")
    assert referral.policy_snapshot.base_rate == Decimal("12.5")
    assert referral.created_at == clock()
    assert referral.expires_at == clock() + timedelta(days=30)
    assert referral.source == ReferralSource.QR_CODE
    assert referral.referral_code == doctor.referral_code
    assert referral.order_value is None
    assert referral.commission_amount is None

    doctor = ledger.get_referrer(doctor.id)
    assert doctor.total_referrals == 1
    assert doctor.conversion_rate == Decimal("0")


def test_create_for_unknown_referrer(make_referral):
    with pytest.raises(NotFoundError):
        make_referral("nobody")


def test_create_requires_active_referrer(ledger, make_referrer, make_referral):
    doctor = make_referrer(status="pending")
    with pytest.raises(InvalidReferrerError):
        make_referral(doctor.id)


def test_create_requires_policy(ledger, make_referral):
    doctor = ledger.register_referrer({"name": "Dr. No Policy"})
    with pytest.raises(InvalidReferrerError):
        make_referral(doctor.id)


def test_create_requires_issuance_enabled(ledger, make_referrer, make_referral):
    doctor = make_referrer()
    ledger.toggle_referral_issuance(doctor.id)

    with pytest.raises(InvalidReferrerError):
        make_referral(doctor.id)
    assert ledger.get_referrer(doctor.id).total_referrals == 0

    ledger.toggle_referral_issuance(doctor.id)
    assert make_referral(doctor.id).status == ReferralStatus.PENDING


def test_failed_create_leaves_counters_untouched(ledger, make_referrer):
    doctor = make_referrer()
    with pytest.raises(ValidationError):
        ledger.create(doctor.id, "cust-1", {"name": "", "phone": "1"}, "qr_code")
    with pytest.raises(ValidationError):
        ledger.create(doctor.id, "cust-1", CONTACT, "billboard")

    assert ledger.get_referrer(doctor.id).total_referrals == 0
    assert ledger.list() == []


def test_create_from_code_resolves_referrer(ledger, make_referrer):
    doctor = make_referrer(referral_code="QR2024")
    referral = ledger.create_from_code("qr2024", "cust-9", CONTACT)

    assert referral.referrer_id == doctor.id
    assert referral.source == ReferralSource.QR_CODE

    with pytest.raises(NotFoundError):
        ledger.create_from_code("ZZZZZZ", "cust-9", CONTACT)
    with pytest.raises(ValidationError):
        ledger.create_from_code("not a code", "cust-9", CONTACT)


# ---------------------------------------------------------
# Convert
# ---------------------------------------------------------
def test_convert_uses_snapshot_rate_not_live_rate(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    old = make_referral(doctor.id, customer_id="cust-1")

    ledger.update_referrer_policy(doctor.id, {"rate_type": "fixed", "base_rate": "20"})
    new = make_referral(doctor.id, customer_id="cust-2")

    clock.advance(days=1)
    converted = ledger.convert(old.id, "ord-1", "500")

    assert converted.status == ReferralStatus.CONVERTED
    assert converted.commission_amount == Decimal("50.00")
    assert converted.order_value == Decimal("500.00")
    assert converted.order_id == "ord-1"
    assert converted.converted_at == clock()
    assert new.commission_rate_snapshot == Decimal("20")


def test_convert_with_tiered_snapshot(ledger, make_referrer, make_referral):
    doctor = make_referrer(
        commission_policy={
            "rate_type": "tiered",
            "base_rate": "12",
            "tiers": [
                {"threshold_amount": "500", "rate": "12"},
                {"threshold_amount": "2000", "rate": "10"},
            ],
        }
    )
    referral = make_referral(doctor.id)

    assert ledger.convert(referral.id, "ord-1", 3000).commission_amount == Decimal("300.00")


def test_convert_exactly_once(ledger, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    referral = make_referral(doctor.id)
    first = ledger.convert(referral.id, "ord-1", "200")

    with pytest.raises(InvalidStateTransitionError) as exc:
        ledger.convert(referral.id, "ord-2", "900")

    assert exc.value.current == "converted"
    again = ledger.get(referral.id)
    assert again.commission_amount == first.commission_amount == Decimal("20.00")
    assert again.order_id == "ord-1"
    assert ledger.get_referrer(doctor.id).successful_referrals == 1


def test_convert_updates_referrer_counters(ledger, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    r1 = make_referral(doctor.id, customer_id="cust-1")
    make_referral(doctor.id, customer_id="cust-2")
    make_referral(doctor.id, customer_id="cust-3")

    ledger.convert(r1.id, "ord-1", "150")

    doctor = ledger.get_referrer(doctor.id)
    assert doctor.total_referrals == 3
    assert doctor.successful_referrals == 1
    assert doctor.total_commission_earned == Decimal("15.00")
    assert doctor.conversion_rate == Decimal("33.33")


def test_convert_rejects_negative_value_and_keeps_pending(ledger, make_referrer, make_referral):
    doctor = make_referrer()
    referral = make_referral(doctor.id)

    with pytest.raises(ValidationError):
        ledger.convert(referral.id, "ord-1", "-10")
    assert ledger.get(referral.id).status == ReferralStatus.PENDING


def test_convert_unknown_referral(ledger):
    with pytest.raises(NotFoundError):
        ledger.convert("missing", "ord-1", "10")


def test_order_cannot_be_credited_twice(ledger, make_referrer, make_referral):
    doctor = make_referrer()
    a = make_referral(doctor.id, customer_id="cust-1")
    b = make_referral(doctor.id, customer_id="cust-2")

    ledger.convert(a.id, "ord-1", "100")
    with pytest.raises(InvalidStateTransitionError):
        ledger.convert(b.id, "ord-1", "100")
    assert ledger.get(b.id).status == ReferralStatus.PENDING


# ---------------------------------------------------------
# Expiry (lazy)
# ---------------------------------------------------------
def test_pending_referral_reads_as_expired_after_window(ledger, store, clock, make_referrer, make_referral):
    doctor = make_referrer()
    referral = make_referral(doctor.id)

    clock.advance(days=30, seconds=1)

    assert ledger.get(referral.id).status == ReferralStatus.EXPIRED
    # the stored record is not rewritten by reads
    assert store.get_referral(referral.id).status == ReferralStatus.PENDING

    with pytest.raises(InvalidStateTransitionError) as exc:
        ledger.convert(referral.id, "ord-1", "100")
    assert exc.value.current == "expired"

    with pytest.raises(InvalidStateTransitionError):
        ledger.cancel(referral.id)


def test_referral_still_convertible_at_exact_expiry(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer()
    referral = make_referral(doctor.id)

    clock.advance(days=30)
    assert ledger.convert(referral.id, "ord-1", "100").status == ReferralStatus.CONVERTED


# ---------------------------------------------------------
# Attribution order
# ---------------------------------------------------------
def test_first_created_referral_wins_attribution(ledger, clock, make_referrer, make_referral):
    first_doc = make_referrer("Dr. First")
    second_doc = make_referrer("Dr. Second")

    first = make_referral(first_doc.id, customer_id="cust-7")
    clock.advance(hours=2)
    second = make_referral(second_doc.id, customer_id="cust-7")

    with pytest.raises(InvalidStateTransitionError):
        ledger.convert(second.id, "ord-1", "100")

    credited = ledger.attribute_order("cust-7", "ord-1", "100")

    assert credited.id == first.id
    assert ledger.get(second.id).status == ReferralStatus.PENDING
    assert ledger.get_referrer(second_doc.id).successful_referrals == 0

    clock.advance(days=31)
    assert ledger.get(second.id).status == ReferralStatus.EXPIRED


def test_attribute_order_skips_expired_referrals(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer()
    old = make_referral(doctor.id, customer_id="cust-7")
    clock.advance(days=20)
    fresh = make_referral(doctor.id, customer_id="cust-7")
    clock.advance(days=15)

    credited = ledger.attribute_order("cust-7", "ord-1", "100")

    assert credited.id == fresh.id
    assert ledger.get(old.id).status == ReferralStatus.EXPIRED


def test_attribute_order_without_referral_returns_none(ledger):
    assert ledger.attribute_order("cust-unknown", "ord-1", "100") is None


# ---------------------------------------------------------
# Cancel
# ---------------------------------------------------------
def test_cancel_only_from_pending(ledger, make_referrer, make_referral):
    doctor = make_referrer()
    referral = make_referral(doctor.id)

    cancelled = ledger.cancel(referral.id, reason="customer declined")
    assert cancelled.status == ReferralStatus.CANCELLED
    assert cancelled.notes == "customer declined"
    assert cancelled.commission_amount is None

    with pytest.raises(InvalidStateTransitionError):
        ledger.cancel(referral.id)
    with pytest.raises(InvalidStateTransitionError):
        ledger.convert(referral.id, "ord-1", "100")


def test_cancelled_referral_no_longer_blocks_later_ones(ledger, make_referrer, make_referral):
    doctor = make_referrer()
    first = make_referral(doctor.id, customer_id="cust-1")
    second = make_referral(doctor.id, customer_id="cust-1")

    ledger.cancel(first.id)
    assert ledger.convert(second.id, "ord-1", "100").status == ReferralStatus.CONVERTED


# ---------------------------------------------------------
# Listing & stats
# ---------------------------------------------------------
def test_list_filters_on_effective_status(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer()
    other = make_referrer("Dr. Other")
    a = make_referral(doctor.id, customer_id="cust-1")
    clock.advance(days=10)
    b = make_referral(doctor.id, customer_id="cust-2", source="link")
    c = make_referral(other.id, customer_id="cust-3")
    clock.advance(days=25)

    assert [r.id for r in ledger.list({"status": "expired"})] == [a.id]
    assert [r.id for r in ledger.list({"status": "pending", "referrer_id": doctor.id})] == [b.id]
    assert [r.id for r in ledger.list({"source": "link"})] == [b.id]
    assert [r.id for r in ledger.list()] == [a.id, b.id, c.id]


def test_list_rejects_unknown_filter_fields(ledger):
    with pytest.raises(ValidationError):
        ledger.list({"doctor": "x"})


def test_referrer_stats(ledger, make_referrer, make_referral):
    alpha = make_referrer("Dr. Alpha", rate="10")
    beta = make_referrer("Dr. Beta", rate="20")
    make_referrer("Dr. Pending", rate="15", status="pending")

    a = make_referral(alpha.id, customer_id="cust-1")
    b = make_referral(beta.id, customer_id="cust-2")
    ledger.convert(a.id, "ord-1", "200")  # 20.00
    ledger.convert(b.id, "ord-2", "100")  # 20.00

    stats = ledger.referrer_stats()

    assert stats.total == 3
    assert stats.by_status["active"] == 2
    assert stats.by_status["pending"] == 1
    assert stats.by_status["suspended"] == 0
    assert stats.average_commission_rate == Decimal("15.00")
    assert stats.total_commission_paid == Decimal("40.00")
    assert stats.total_referrals == 2
    assert stats.successful_referrals == 2
    # equal commission: name breaks the tie
    assert [p.name for p in stats.top_performers[:2]] == ["Dr. Alpha", "Dr. Beta"]


def test_issuance_blocker_names_the_first_obstacle(ledger, make_referrer):
    pending = make_referrer("Dr. Pending", status="pending")
    unpriced = make_referrer("Dr. Unpriced", commission_policy=None)
    paused = ledger.toggle_referral_issuance(make_referrer("Dr. Paused").id)
    ready = make_referrer("Dr. Ready")

    assert pending.issuance_blocker() == "is pending"
    assert unpriced.issuance_blocker() == "has no commission policy"
    assert paused.issuance_blocker() == "has referral issuance disabled"
    assert ready.issuance_blocker() is None
    assert [r.can_issue_referrals() for r in (pending, unpriced, paused, ready)] == [False, False, False, True]


def test_create_reports_issuance_blocker(ledger, make_referrer, make_referral):
    doctor = make_referrer(commission_policy=None)

    with pytest.raises(InvalidReferrerError) as exc:
        make_referral(doctor.id)
    assert "has no commission policy" in str(exc.value)


# ---------------------------------------------------------
# Order value rounding
# ---------------------------------------------------------
def test_convert_rounds_order_value_before_commission(ledger, make_referrer, make_referral):
    doctor = make_referrer(rate="50")
    referral = make_referral(doctor.id)

    converted = ledger.convert(referral.id, "ord-1", "100.005")

    # 100.005 -> 100.01, then 50% -> 50.005 -> 50.01
    assert converted.order_value == Decimal("100.01")
    assert converted.commission_amount == Decimal("50.01")
    assert ledger.get_referrer(doctor.id).total_commission_earned == Decimal("50.01")


# ---------------------------------------------------------
# Referrer directory
# ---------------------------------------------------------
def test_list_referrers_filters(ledger, make_referrer):
    low = make_referrer("Dr. Low", rate="5", referral_code="LOW001")
    mid = make_referrer("Dr. Mid", rate="12")
    high = make_referrer("Dr. High", rate="25")
    make_referrer("Dr. Pending", rate="12", status="pending")
    make_referrer("Dr. Unpriced", commission_policy=None)
    ledger.toggle_referral_issuance(high.id)

    assert len(ledger.list_referrers()) == 5
    assert {r.name for r in ledger.list_referrers({"status": "pending"})} == {"Dr. Pending"}
    assert {r.id for r in ledger.list_referrers({"status": "active", "min_rate": "10"})} == {mid.id, high.id}
    assert {r.id for r in ledger.list_referrers({"min_rate": "5", "max_rate": "12", "status": "active"})} == {
        low.id,
        mid.id,
    }
    assert [r.id for r in ledger.list_referrers({"referral_active": False})] == [high.id]

    # search covers name and referral code, case-insensitive
    assert [r.id for r in ledger.list_referrers({"search": "dr. mid"})] == [mid.id]
    assert [r.id for r in ledger.list_referrers({"search": "low0"})] == [low.id]


def test_rate_range_excludes_referrers_without_policy(ledger, make_referrer):
    make_referrer("Dr. Unpriced", commission_policy=None)
    assert ledger.list_referrers({"max_rate": "100"}) == []


@pytest.mark.parametrize(
    "filters",
    [
        {"doctor": "x"},
        {"status": "retired"},
        {"min_rate": "-1"},
        {"max_rate": "101"},
        {"min_rate": "20", "max_rate": "10"},
    ],
)
def test_list_referrers_rejects_bad_filters(ledger, filters):
    with pytest.raises(ValidationError):
        ledger.list_referrers(filters)


# ---------------------------------------------------------
# Payouts
# ---------------------------------------------------------
def converted_in_february(ledger, clock, make_referral, doctor, values):
    """Convert one referral per value on 2025-02-19, then return to T0."""
    clock.advance(days=-10)
    referrals = []
    for i, value in enumerate(values):
        referral = make_referral(doctor.id, customer_id=f"cust-{doctor.referral_code}-{i}")
        referrals.append(ledger.convert(referral.id, f"ord-{doctor.referral_code}-{i}", value))
    clock.advance(days=10)
    return referrals


def test_payout_rolls_up_closed_month(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    february = converted_in_february(ledger, clock, make_referral, doctor, ["200", "350"])

    march = make_referral(doctor.id, customer_id="cust-mar")
    ledger.convert(march.id, "ord-mar", "1000")
    make_referral(doctor.id, customer_id="cust-open")

    payout = ledger.create_payout(doctor.id, "2025-02")

    assert payout.status == PayoutStatus.PENDING
    assert payout.referrer_name == doctor.name
    assert sorted(payout.referral_ids) == sorted(r.id for r in february)
    assert payout.referrals_count == 2
    assert payout.total_order_value == Decimal("550.00")
    assert payout.amount == Decimal("55.00")
    assert payout.commission_rate == Decimal("10.00")
    assert payout.payment_method == "Bank Transfer"
    assert payout.period_start.isoformat() == "2025-02-01T00:00:00+00:00"
    assert payout.period_end.isoformat() == "2025-03-01T00:00:00+00:00"
    assert payout.due_date.isoformat() == "2025-03-05T00:00:00+00:00"
    assert ledger.get_payout(payout.id) == payout


def test_referrals_are_paid_out_once(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    converted_in_february(ledger, clock, make_referral, doctor, ["200"])
    ledger.create_payout(doctor.id, "2025-02")

    with pytest.raises(ValidationError):
        ledger.create_payout(doctor.id, "2025-02")


def test_failed_payout_releases_its_referrals(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    converted_in_february(ledger, clock, make_referral, doctor, ["200"])
    first = ledger.create_payout(doctor.id, "2025-02")

    failed = ledger.process_payout(first.id, "failed", notes="IBAN rejected")
    assert failed.status == PayoutStatus.FAILED
    assert failed.notes == "IBAN rejected"

    retry = ledger.create_payout(doctor.id, "2025-02", payment_method="Vodafone Cash")
    assert retry.referral_ids == first.referral_ids
    assert retry.amount == Decimal("20.00")


def test_payout_status_flow(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    converted_in_february(ledger, clock, make_referral, doctor, ["200"])
    payout = ledger.create_payout(doctor.id, "2025-02")

    processing = ledger.process_payout(payout.id, PayoutStatus.PROCESSING)
    assert processing.paid_at is None

    clock.advance(days=2)
    paid = ledger.process_payout(payout.id, "paid", transaction_id="TX-881")
    assert paid.status == PayoutStatus.PAID
    assert paid.paid_at == clock()
    assert paid.transaction_id == "TX-881"

    with pytest.raises(InvalidStateTransitionError) as exc:
        ledger.process_payout(payout.id, "failed")
    assert exc.value.entity == "payout"
    assert exc.value.current == "paid"

    with pytest.raises(ValidationError):
        ledger.process_payout(payout.id, "refunded")


def test_payout_cannot_return_to_pending(ledger, clock, make_referrer, make_referral):
    doctor = make_referrer(rate="10")
    converted_in_february(ledger, clock, make_referral, doctor, ["200"])
    payout = ledger.create_payout(doctor.id, "2025-02")

    with pytest.raises(InvalidStateTransitionError):
        ledger.process_payout(payout.id, "pending")


@pytest.mark.parametrize("period", ["2025-03", "2025-13", "25-02", "2025/02"])
def test_payout_rejects_open_or_malformed_period(ledger, make_referrer, period):
    doctor = make_referrer()
    with pytest.raises(ValidationError):
        ledger.create_payout(doctor.id, period)


def test_payout_needs_unpaid_commission(ledger, make_referrer):
    doctor = make_referrer()
    with pytest.raises(ValidationError):
        ledger.create_payout(doctor.id, "2025-01")
    with pytest.raises(NotFoundError):
        ledger.create_payout("missing", "2025-01")
    with pytest.raises(NotFoundError):
        ledger.get_payout("missing")


def test_list_payouts_filters(ledger, clock, make_referrer, make_referral):
    alpha = make_referrer("Dr. Alpha", rate="10")
    beta = make_referrer("Dr. Beta", rate="10")
    converted_in_february(ledger, clock, make_referral, alpha, ["100"])
    converted_in_february(ledger, clock, make_referral, beta, ["100"])
    a = ledger.create_payout(alpha.id, "2025-02")
    b = ledger.create_payout(beta.id, "2025-02")
    ledger.process_payout(b.id, "paid")

    assert [p.id for p in ledger.list_payouts({"referrer_id": alpha.id})] == [a.id]
    assert [p.id for p in ledger.list_payouts({"status": "paid"})] == [b.id]
    assert len(ledger.list_payouts({"period": "2025-02"})) == 2
    with pytest.raises(ValidationError):
        ledger.list_payouts({"period": "Feb"})
