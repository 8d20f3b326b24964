# app/core/assignments.py
from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from app.core.commission import to_decimal, utcnow
from app.core.enums import OrderStatus
from app.core.errors import DuplicatePrimaryError, NotFoundError, PartialUpdateError, ValidationError
from app.core.logging import get_logger
from app.crud.base import CommissionStore, Directory
from app.schemas.assignment import (
    AssignmentFilter,
    AssignmentRecord,
    AssignmentUpdate,
    CityCoverage,
    CityCoverageSummary,
    CoverageStats,
    DeliveryParams,
    GovernorateCoverage,
    PharmacyCoverageSummary,
)
from app.schemas.base import parse_model
from app.schemas.commission import PolicyInput, build_policy

logger = get_logger(__name__)

PI = Decimal("3.14159265358979323846")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_CENT = Decimal("0.01")


def _q(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _mean(values: list[Decimal]) -> Decimal:
    if not values:
        return Decimal("0.00")
    return _q(sum(values, Decimal("0")) / len(values))


def _coverage_area(assignments: Iterable[AssignmentRecord]) -> Decimal:
    return _q(sum((PI * a.delivery_radius_km * a.delivery_radius_km for a in assignments), Decimal("0")))


SORT_KEYS: dict[str, Callable[[AssignmentRecord], Any]] = {
    "pharmacy": lambda a: a.pharmacy_name.lower(),
    "city": lambda a: a.city_name.lower(),
    "commission": lambda a: a.commission_policy.base_rate,
    "delivery_time": lambda a: a.delivery_minutes,
    "created_at": lambda a: a.created_at,
}


class AssignmentRegistry:
    """
    Pharmacy <-> city coverage with per-assignment delivery terms and
    commission policy.

    Invariant: at most one ACTIVE primary assignment per pharmacy+city.
    """

    def __init__(
        self,
        store: CommissionStore,
        *,
        directory: Optional[Directory] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._directory = directory
        self._clock = clock

    # -----------------------------
    # Helpers
    # -----------------------------
    def _require(self, assignment_id: str) -> AssignmentRecord:
        assignment = self._store.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment", assignment_id)
        return assignment

    def _active_primary(
        self,
        pharmacy_id: str,
        city_id: str,
        *,
        exclude_id: Optional[str] = None,
    ) -> Optional[AssignmentRecord]:
        for a in self._store.list_assignments(pharmacy_id=pharmacy_id, city_id=city_id):
            if a.id != exclude_id and a.is_primary and a.is_active:
                return a
        return None

    def _check_primary(self, record: AssignmentRecord) -> None:
        if not (record.is_primary and record.is_active):
            return
        existing = self._active_primary(record.pharmacy_id, record.city_id, exclude_id=record.id)
        if existing is not None:
            raise DuplicatePrimaryError(record.pharmacy_id, record.city_id, existing.id)

    def _resolve_names(
        self,
        pharmacy_id: str,
        city_id: str,
        governorate_id: str,
        names: Mapping[str, Optional[str]],
    ) -> dict[str, str]:
        """Directory names when a directory is configured, else caller-supplied names (or the ids)."""
        if self._directory is None:
            return {
                "pharmacy_name": names.get("pharmacy_name") or pharmacy_id,
                "city_name": names.get("city_name") or city_id,
                "governorate_name": names.get("governorate_name") or governorate_id,
            }

        pharmacy = self._directory.get_pharmacy(pharmacy_id)
        if pharmacy is None:
            raise NotFoundError("Pharmacy", pharmacy_id)
        if not pharmacy.is_active:
            raise ValidationError(f"Pharmacy {pharmacy_id!r} is inactive.")

        city = self._directory.get_city(city_id)
        if city is None:
            raise NotFoundError("City", city_id)
        if not city.is_enabled:
            raise ValidationError(f"City {city_id!r} is not enabled for delivery.")
        if city.governorate_id != governorate_id:
            raise ValidationError(
                f"City {city_id!r} belongs to governorate {city.governorate_id!r}, not {governorate_id!r}."
            )

        return {
            "pharmacy_name": pharmacy.name,
            "city_name": city.name,
            "governorate_name": city.governorate_name,
        }

    # -----------------------------
    # Commands
    # -----------------------------
    def create(
        self,
        pharmacy_id: str,
        city_id: str,
        governorate_id: str,
        is_primary: bool,
        delivery: Union[DeliveryParams, Mapping[str, Any]],
        policy: PolicyInput,
        *,
        pharmacy_name: Optional[str] = None,
        city_name: Optional[str] = None,
        governorate_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> AssignmentRecord:
        if not (pharmacy_id and city_id and governorate_id):
            raise ValidationError("pharmacy_id, city_id and governorate_id are required.")
        params = parse_model(DeliveryParams, delivery, what="delivery parameters")
        commission_policy = build_policy(policy)

        names = self._resolve_names(
            pharmacy_id,
            city_id,
            governorate_id,
            {"pharmacy_name": pharmacy_name, "city_name": city_name, "governorate_name": governorate_name},
        )

        now = self._clock()
        with self._store.transaction():
            record = AssignmentRecord(
                id=str(uuid.uuid4()),
                pharmacy_id=pharmacy_id,
                city_id=city_id,
                governorate_id=governorate_id,
                is_primary=bool(is_primary),
                is_active=True,
                commission_policy=commission_policy,
                created_by=created_by,
                created_at=now,
                updated_at=now,
                **names,
                **params.model_dump(),
            )
            self._check_primary(record)
            saved = self._store.add_assignment(record)

        logger.info(
            "assignment_created",
            assignment_id=saved.id,
            pharmacy_id=pharmacy_id,
            city_id=city_id,
            is_primary=saved.is_primary,
        )
        return saved

    def update(self, assignment_id: str, changes: Union[AssignmentUpdate, Mapping[str, Any]]) -> AssignmentRecord:
        update = parse_model(AssignmentUpdate, changes, what="assignment update")

        with self._store.transaction():
            record = self._require(assignment_id)
            for name in AssignmentUpdate.model_fields:
                value = getattr(update, name)
                if value is not None:
                    setattr(record, name, value)
            record.updated_at = self._clock()
            self._check_primary(record)
            saved = self._store.save_assignment(record)

        logger.info("assignment_updated", assignment_id=assignment_id)
        return saved

    def toggle_active(self, assignment_id: str) -> AssignmentRecord:
        with self._store.transaction():
            record = self._require(assignment_id)
            record.is_active = not record.is_active
            record.updated_at = self._clock()
            self._check_primary(record)
            saved = self._store.save_assignment(record)

        logger.info("assignment_toggled", assignment_id=assignment_id, is_active=saved.is_active)
        return saved

    def bulk_update_commission(
        self,
        assignment_ids: Iterable[str],
        new_rate: Any,
        apply_to_governorate: bool = False,
    ) -> list[AssignmentRecord]:
        """
        Set commission_policy.base_rate on every listed assignment.

        With apply_to_governorate the update CASCADES to every assignment in
        the governorates of the listed ones, active or not, including records
        that were never selected.

        All or nothing: an unknown id raises PartialUpdateError (first bad id)
        and nothing is written.
        """
        rate = to_decimal(new_rate, field="new_rate")
        if rate < 0 or rate > 100:
            raise ValidationError(f"Commission rate must be between 0 and 100, got {rate}.")

        ids = list(dict.fromkeys(assignment_ids))
        now = self._clock()

        with self._store.transaction():
            targets: list[AssignmentRecord] = []
            for assignment_id in ids:
                record = self._store.get_assignment(assignment_id)
                if record is None:
                    raise PartialUpdateError(assignment_id)
                targets.append(record)

            selected = {t.id for t in targets}
            if apply_to_governorate and targets:
                governorates = {t.governorate_id for t in targets}
                targets.extend(
                    a
                    for a in self._store.list_assignments(governorate_ids=governorates)
                    if a.id not in selected
                )

            updated: list[AssignmentRecord] = []
            for record in targets:
                record.commission_policy = record.commission_policy.with_base_rate(rate)
                record.updated_at = now
                updated.append(self._store.save_assignment(record))

        logger.info(
            "assignment_commission_bulk_updated",
            new_rate=str(rate),
            selected=len(selected),
            cascaded=len(updated) - len(selected),
            apply_to_governorate=apply_to_governorate,
        )
        return updated

    def delete(self, assignment_id: str) -> None:
        """
        Hard removal. Refused while delivered orders without a captured policy
        still price through this pharmacy+city and no other assignment for
        the pair remains.
        """
        with self._store.transaction():
            record = self._require(assignment_id)
            siblings = [
                a
                for a in self._store.list_assignments(pharmacy_id=record.pharmacy_id, city_id=record.city_id)
                if a.id != assignment_id
            ]
            if not siblings:
                unpriced = [
                    o.id
                    for o in self._delivered_orders(None)
                    if o.pharmacy_id == record.pharmacy_id
                    and o.city_id == record.city_id
                    and o.commission_policy is None
                ]
                if unpriced:
                    raise ValidationError(
                        f"Assignment {assignment_id!r} still prices {len(unpriced)} delivered order(s) "
                        f"(first: {unpriced[0]!r}); deactivate it instead."
                    )
            self._store.delete_assignment(assignment_id)
        logger.info("assignment_deleted", assignment_id=assignment_id)

    # -----------------------------
    # Queries
    # -----------------------------
    def get(self, assignment_id: str) -> AssignmentRecord:
        return self._require(assignment_id)

    def list(self, filters: Union[AssignmentFilter, Mapping[str, Any], None] = None) -> list[AssignmentRecord]:
        f = parse_model(AssignmentFilter, filters or {}, what="assignment filter")

        rows = self._store.list_assignments(
            pharmacy_id=f.pharmacy_id,
            city_id=f.city_id,
            governorate_ids=[f.governorate_id] if f.governorate_id is not None else None,
        )

        if f.status != "all":
            wanted = f.status == "active"
            rows = [a for a in rows if a.is_active == wanted]
        if f.is_primary is not None:
            rows = [a for a in rows if a.is_primary == f.is_primary]
        if f.search:
            needle = f.search.strip().lower()
            rows = [
                a
                for a in rows
                if needle in a.pharmacy_name.lower()
                or needle in a.city_name.lower()
                or needle in a.governorate_name.lower()
            ]

        if f.sort_by is not None:
            rows.sort(key=SORT_KEYS[f.sort_by], reverse=f.sort_order == "desc")
        return rows

    def _delivered_orders(self, since: Optional[datetime]) -> list:
        orders = self._store.list_orders(since or EPOCH, self._clock())
        return [o for o in orders if o.status == OrderStatus.DELIVERED]

    def coverage_stats(self, *, since: Optional[datetime] = None) -> CoverageStats:
        """
        Computed on every call from the current registry state.
        City/governorate revenue counts delivered orders placed since `since`
        (all history by default).
        """
        assignments = self._store.list_assignments()
        active = [a for a in assignments if a.is_active]

        city_orders: dict[str, int] = defaultdict(int)
        city_revenue: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        governorate_revenue: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for order in self._delivered_orders(since):
            city_orders[order.city_id] += 1
            city_revenue[order.city_id] += order.total
            governorate_revenue[order.governorate_id] += order.total

        by_city: dict[str, list[AssignmentRecord]] = defaultdict(list)
        by_governorate: dict[str, list[AssignmentRecord]] = defaultdict(list)
        for a in active:
            by_city[a.city_id].append(a)
            by_governorate[a.governorate_id].append(a)

        cities = [
            CityCoverage(
                city_id=city_id,
                city_name=group[0].city_name,
                pharmacy_count=len({a.pharmacy_id for a in group}),
                average_commission=_mean([a.commission_policy.base_rate for a in group]),
                total_orders=city_orders[city_id],
                revenue=_q(city_revenue[city_id]),
            )
            for city_id, group in by_city.items()
        ]
        cities.sort(key=lambda c: (c.city_name, c.city_id))

        governorates = [
            GovernorateCoverage(
                governorate_id=governorate_id,
                governorate_name=group[0].governorate_name,
                pharmacy_count=len({a.pharmacy_id for a in group}),
                city_count=len({a.city_id for a in group}),
                average_commission=_mean([a.commission_policy.base_rate for a in group]),
                total_revenue=_q(governorate_revenue[governorate_id]),
            )
            for governorate_id, group in by_governorate.items()
        ]
        governorates.sort(key=lambda g: (g.governorate_name, g.governorate_id))

        return CoverageStats(
            total_assignments=len(assignments),
            active_assignments=len(active),
            active_cities=len(by_city),
            total_coverage_area_km2=_coverage_area(active),
            average_delivery_time_min=_mean([Decimal(a.delivery_minutes) for a in active]),
            average_commission_rate=_mean([a.commission_policy.base_rate for a in active]),
            by_city=cities,
            by_governorate=governorates,
        )

    def pharmacy_coverage_summary(self, pharmacy_id: str) -> PharmacyCoverageSummary:
        assignments = self._store.list_assignments(pharmacy_id=pharmacy_id)
        active = [a for a in assignments if a.is_active]
        primary = next((a for a in assignments if a.is_primary and a.is_active), None)

        return PharmacyCoverageSummary(
            pharmacy_id=pharmacy_id,
            total_cities=len({a.city_id for a in assignments}),
            active_cities=len({a.city_id for a in active}),
            total_coverage_area_km2=_coverage_area(active),
            average_commission=_mean([a.commission_policy.base_rate for a in active]),
            primary_city=primary.city_name if primary is not None else None,
        )

    def city_coverage_summary(self, city_id: str) -> CityCoverageSummary:
        assignments = self._store.list_assignments(city_id=city_id)

        areas: list[str] = []
        for a in assignments:
            for area in a.coverage_areas:
                if area not in areas:
                    areas.append(area)

        return CityCoverageSummary(
            city_id=city_id,
            total_pharmacies=len({a.pharmacy_id for a in assignments}),
            active_pharmacies=len({a.pharmacy_id for a in assignments if a.is_active}),
            average_delivery_time_min=_mean([Decimal(a.delivery_minutes) for a in assignments]),
            average_commission=_mean([a.commission_policy.base_rate for a in assignments]),
            coverage_areas=areas,
        )
