# app/core/revenue.py
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Union

from app.core.commission import ZERO, compute_commission, round_money, utcnow
from app.core.config import settings
from app.core.enums import OrderStatus, ReferralStatus, Timeframe
from app.core.errors import NotFoundError, ValidationError
from app.core.logging import get_logger
from app.crud.base import CommissionStore
from app.schemas.assignment import AssignmentRecord
from app.schemas.referral import ReferralRecord
from app.schemas.revenue import (
    CategoryRevenue,
    CommissionBreakdown,
    DoctorPerformerRow,
    OrderRecord,
    PerformerRow,
    RevenueSnapshot,
    TimeframeOption,
    TimeSeriesPoint,
)

logger = get_logger(__name__)

_PERCENT = Decimal("0.01")


def growth_pct(current: Decimal, previous: Decimal) -> Decimal:
    """(current - previous) / previous * 100; 0 when there is no previous value."""
    if previous == 0:
        return Decimal("0.00")
    return ((current - previous) / previous * 100).quantize(_PERCENT, rounding=ROUND_HALF_UP)


def _average(total: Decimal, count: int) -> Decimal:
    return round_money(total / count) if count else ZERO


@dataclass
class _Bucket:
    name: str
    revenue: Decimal = ZERO
    orders: int = 0
    commission: Decimal = ZERO


@dataclass
class _DoctorBucket:
    name: str
    conversions: int = 0
    referred_revenue: Decimal = ZERO
    commission: Decimal = ZERO


@dataclass
class _DayBucket:
    revenue: Decimal = ZERO
    orders: int = 0
    commission: Decimal = ZERO


@dataclass
class _Window:
    orders: list[OrderRecord] = field(default_factory=list)

    @property
    def revenue(self) -> Decimal:
        return round_money(sum((o.total for o in self.orders), ZERO))


class RevenueAggregator:
    """
    Time-windowed revenue/commission rollups over delivered orders,
    converted referrals and assignment policies.

    Nothing here is persisted; every call recomputes from the store.
    """

    def __init__(
        self,
        store: CommissionStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        top_n: Optional[int] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._top_n = top_n if top_n is not None else settings.TOP_PERFORMERS_LIMIT

    @staticmethod
    def timeframes() -> list[TimeframeOption]:
        return [TimeframeOption(value=tf, label=tf.label, days=tf.days) for tf in Timeframe]

    # -----------------------------
    # Policy lookup
    # -----------------------------
    def _assignment_index(self) -> dict[tuple[str, str], AssignmentRecord]:
        """
        One assignment per pharmacy+city for commission purposes:
        active primary, else any active, else the oldest inactive one.
        """
        index: dict[tuple[str, str], AssignmentRecord] = {}

        def rank(a: AssignmentRecord) -> int:
            if a.is_active and a.is_primary:
                return 0
            return 1 if a.is_active else 2

        for a in self._store.list_assignments():
            key = (a.pharmacy_id, a.city_id)
            current = index.get(key)
            if current is None or rank(a) < rank(current):
                index[key] = a
        return index

    def _pharmacy_commission(self, order: OrderRecord, index: dict[tuple[str, str], AssignmentRecord]) -> Decimal:
        if order.commission_policy is not None:
            return compute_commission(order.subtotal, order.commission_policy)
        assignment = index.get((order.pharmacy_id, order.city_id))
        if assignment is None:
            raise NotFoundError("Assignment", f"{order.pharmacy_id}/{order.city_id}")
        return compute_commission(order.subtotal, assignment.commission_policy)

    def _order_referral(self, order: OrderRecord) -> Optional[ReferralRecord]:
        """The converted referral credited with this order, if any."""
        referral = self._store.get_referral(order.referral_id) if order.referral_id else None
        if referral is None or referral.order_id != order.id:
            referral = self._store.find_referral_by_order(order.id)
        if referral is None or referral.status != ReferralStatus.CONVERTED:
            return None
        return referral

    # -----------------------------
    # Intake
    # -----------------------------
    def record_order(self, order: OrderRecord) -> OrderRecord:
        """
        Store an order from the order subsystem with its pharmacy+city policy
        captured, so deleting or re-rating the assignment later does not
        change what the order earned.

        A delivered order with no assignment raises NotFoundError.
        """
        if order.commission_policy is None:
            assignment = self._assignment_index().get((order.pharmacy_id, order.city_id))
            if assignment is not None:
                order = order.model_copy(update={"commission_policy": assignment.commission_policy})
            elif order.status == OrderStatus.DELIVERED:
                raise NotFoundError("Assignment", f"{order.pharmacy_id}/{order.city_id}")

        with self._store.transaction():
            saved = self._store.add_order(order)

        logger.info(
            "order_recorded",
            order_id=saved.id,
            pharmacy_id=saved.pharmacy_id,
            city_id=saved.city_id,
            status=saved.status.value,
        )
        return saved

    # -----------------------------
    # Summary
    # -----------------------------
    def summarize(self, timeframe: Union[Timeframe, str], now: Optional[datetime] = None) -> RevenueSnapshot:
        try:
            tf = Timeframe(timeframe)
        except ValueError as exc:
            allowed = ", ".join(t.value for t in Timeframe)
            raise ValidationError(f"Unsupported timeframe {timeframe!r}; expected one of {allowed}.") from exc

        now = now or self._clock()
        span = timedelta(days=tf.days)
        start = now - span
        previous_start = start - span

        current, previous = _Window(), _Window()
        for order in self._store.list_orders(previous_start, now):
            if order.status != OrderStatus.DELIVERED:
                continue
            (current if order.placed_at >= start else previous).orders.append(order)

        index = self._assignment_index()

        # orders
        pharmacies: dict[str, _Bucket] = {}
        cities: dict[str, _Bucket] = {}
        doctors: dict[str, _DoctorBucket] = {}
        days: dict[date, _DayBucket] = defaultdict(_DayBucket)
        commissionable = ZERO
        pharmacy_commission = ZERO
        doctor_commission = ZERO

        for order in current.orders:
            commission = self._pharmacy_commission(order, index)
            commissionable += order.subtotal
            pharmacy_commission += commission

            # the doctor share comes out of this order's own subtotal
            referral = self._order_referral(order)
            doctor_share = ZERO
            if referral is not None:
                credited = referral.commission_amount or ZERO
                doctor_share = min(credited, max(order.subtotal - commission, ZERO))
                if doctor_share < credited:
                    logger.warning(
                        "doctor_commission_capped",
                        order_id=order.id,
                        referral_id=referral.id,
                        credited=str(credited),
                        counted=str(doctor_share),
                    )
                doctor_commission += doctor_share

                doc = doctors.setdefault(referral.referrer_id, _DoctorBucket(referral.referrer_name))
                doc.conversions += 1
                doc.referred_revenue += order.subtotal
                doc.commission += doctor_share

            p = pharmacies.setdefault(order.pharmacy_id, _Bucket(order.pharmacy_name))
            p.revenue += order.total
            p.orders += 1
            p.commission += commission

            c = cities.setdefault(order.city_id, _Bucket(order.city_name))
            c.revenue += order.total
            c.orders += 1
            c.commission += commission

            d = days[order.placed_at.date()]
            d.revenue += order.total
            d.orders += 1
            d.commission += commission + doctor_share

        total_commission = round_money(commissionable)
        pharmacy_commission = round_money(pharmacy_commission)
        doctor_commission = round_money(doctor_commission)
        breakdown = CommissionBreakdown(
            platform_share=total_commission - pharmacy_commission - doctor_commission,
            pharmacy_commission=pharmacy_commission,
            doctor_commission=doctor_commission,
            total_commission=total_commission,
        )

        total_revenue = current.revenue
        previous_revenue = previous.revenue

        snapshot = RevenueSnapshot(
            timeframe=tf,
            window_start=start,
            window_end=now,
            total_revenue=total_revenue,
            total_orders=len(current.orders),
            average_order_value=_average(total_revenue, len(current.orders)),
            previous_revenue=previous_revenue,
            growth_pct=growth_pct(total_revenue, previous_revenue),
            commission_breakdown=breakdown,
            by_category=self._by_category(current, previous),
            top_pharmacies=self._top(pharmacies),
            top_cities=self._top(cities),
            top_doctors=self._top_doctors(doctors),
            time_series=self._time_series(start, now, days),
        )

        logger.debug(
            "revenue_summarized",
            timeframe=tf.value,
            total_orders=snapshot.total_orders,
            total_revenue=str(total_revenue),
        )
        return snapshot

    # -----------------------------
    # Sections
    # -----------------------------
    @staticmethod
    def _by_category(current: _Window, previous: _Window) -> list[CategoryRevenue]:
        now_rev: dict[str, Decimal] = defaultdict(lambda: ZERO)
        now_count: dict[str, int] = defaultdict(int)
        prev_rev: dict[str, Decimal] = defaultdict(lambda: ZERO)

        for o in current.orders:
            now_rev[o.category] += o.total
            now_count[o.category] += 1
        for o in previous.orders:
            prev_rev[o.category] += o.total

        rows = [
            CategoryRevenue(
                category=category,
                total_revenue=round_money(now_rev[category]),
                total_orders=now_count[category],
                average_order_value=_average(now_rev[category], now_count[category]),
                growth_pct=growth_pct(now_rev[category], prev_rev[category]),
            )
            for category in set(now_rev) | set(prev_rev)
        ]
        rows.sort(key=lambda r: (-r.total_revenue, r.category))
        return rows

    def _top(self, buckets: dict[str, _Bucket]) -> list[PerformerRow]:
        rows = [
            PerformerRow(
                id=key,
                name=b.name,
                revenue=round_money(b.revenue),
                orders=b.orders,
                commission=round_money(b.commission),
            )
            for key, b in buckets.items()
        ]
        rows.sort(key=lambda r: (-r.revenue, r.name, r.id))
        return rows[: self._top_n]

    def _top_doctors(self, buckets: dict[str, _DoctorBucket]) -> list[DoctorPerformerRow]:
        rows = [
            DoctorPerformerRow(
                id=key,
                name=b.name,
                conversions=b.conversions,
                referred_revenue=round_money(b.referred_revenue),
                commission=round_money(b.commission),
            )
            for key, b in buckets.items()
        ]
        rows.sort(key=lambda r: (-r.commission, r.name, r.id))
        return rows[: self._top_n]

    @staticmethod
    def _time_series(start: datetime, end: datetime, days: dict[date, _DayBucket]) -> list[TimeSeriesPoint]:
        points: list[TimeSeriesPoint] = []
        day = start.date()
        while day <= end.date():
            bucket = days.get(day) or _DayBucket()
            points.append(
                TimeSeriesPoint(
                    day=day,
                    revenue=round_money(bucket.revenue),
                    orders=bucket.orders,
                    commission=round_money(bucket.commission),
                )
            )
            day += timedelta(days=1)
        return points
