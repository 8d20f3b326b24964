# app/crud/memory.py
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional, TypeVar

from pydantic import BaseModel

from app.core.errors import ConcurrentModificationError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.schemas.assignment import AssignmentRecord, CityRef, PharmacyRef
from app.schemas.payout import CommissionPayout
from app.schemas.referral import ReferralRecord, ReferrerProfile
from app.schemas.revenue import OrderRecord

logger = get_logger(__name__)

R = TypeVar("R", bound=BaseModel)


class InMemoryStore:
    """
    Dict-backed store keyed by id.

    One re-entrant lock serialises writers. The outermost transaction takes a
    snapshot of every table and restores it if an exception escapes, which is
    what gives bulk operations their all-or-nothing behaviour.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[tuple] = None

        self._referrers: dict[str, ReferrerProfile] = {}
        self._referrals: dict[str, ReferralRecord] = {}
        self._payouts: dict[str, CommissionPayout] = {}
        self._assignments: dict[str, AssignmentRecord] = {}
        self._orders: dict[str, OrderRecord] = {}
        self._referral_sequence = 0

    # -----------------------------
    # Transactions
    # -----------------------------
    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._snapshot = self._capture()
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._restore(self._snapshot)
                    logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._depth -= 1
                if outermost:
                    self._snapshot = None

    def _capture(self) -> tuple:
        # records are replaced on save, never mutated in place, so shallow copies suffice
        return (
            dict(self._referrers),
            dict(self._referrals),
            dict(self._payouts),
            dict(self._assignments),
            dict(self._orders),
            self._referral_sequence,
        )

    def _restore(self, snapshot: tuple) -> None:
        (
            self._referrers,
            self._referrals,
            self._payouts,
            self._assignments,
            self._orders,
            self._referral_sequence,
        ) = snapshot

    # -----------------------------
    # Generic helpers
    # -----------------------------
    def _add(self, table: dict[str, R], record: R, entity: str) -> R:
        with self._lock:
            if record.id in table:
                raise ValidationError(f"{entity} {record.id!r} already exists.")
            stored = record.model_copy(deep=True)
            if "version" in type(record).model_fields:
                stored.version = 1  # same first version the SQL store's version column assigns
            table[record.id] = stored
            return stored.model_copy(deep=True)

    def _get(self, table: dict[str, R], record_id: str) -> Optional[R]:
        with self._lock:
            record = table.get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def _save(self, table: dict[str, R], record: R, entity: str) -> R:
        with self._lock:
            current = table.get(record.id)
            if current is None:
                raise NotFoundError(entity, record.id)
            if current.version != record.version:
                raise ConcurrentModificationError(entity, record.id)
            stored = record.model_copy(update={"version": record.version + 1}, deep=True)
            table[record.id] = stored
            return stored.model_copy(deep=True)

    # -----------------------------
    # Referrers
    # -----------------------------
    def add_referrer(self, referrer: ReferrerProfile) -> ReferrerProfile:
        return self._add(self._referrers, referrer, "Referrer")

    def get_referrer(self, referrer_id: str) -> Optional[ReferrerProfile]:
        return self._get(self._referrers, referrer_id)

    def get_referrer_by_code(self, referral_code: str) -> Optional[ReferrerProfile]:
        with self._lock:
            for referrer in self._referrers.values():
                if referrer.referral_code == referral_code:
                    return referrer.model_copy(deep=True)
        return None

    def save_referrer(self, referrer: ReferrerProfile) -> ReferrerProfile:
        return self._save(self._referrers, referrer, "Referrer")

    def list_referrers(self) -> list[ReferrerProfile]:
        with self._lock:
            rows = sorted(self._referrers.values(), key=lambda r: (r.created_at, r.id))
            return [r.model_copy(deep=True) for r in rows]

    # -----------------------------
    # Referrals
    # -----------------------------
    def next_referral_sequence(self) -> int:
        with self._lock:
            self._referral_sequence += 1
            return self._referral_sequence

    def add_referral(self, referral: ReferralRecord) -> ReferralRecord:
        return self._add(self._referrals, referral, "Referral")

    def get_referral(self, referral_id: str) -> Optional[ReferralRecord]:
        return self._get(self._referrals, referral_id)

    def save_referral(self, referral: ReferralRecord) -> ReferralRecord:
        return self._save(self._referrals, referral, "Referral")

    def find_referral_by_order(self, order_id: str) -> Optional[ReferralRecord]:
        with self._lock:
            for referral in self._referrals.values():
                if referral.order_id == order_id:
                    return referral.model_copy(deep=True)
        return None

    def list_referrals(
        self,
        *,
        referrer_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> list[ReferralRecord]:
        with self._lock:
            rows = [
                r
                for r in self._referrals.values()
                if (referrer_id is None or r.referrer_id == referrer_id)
                and (customer_id is None or r.customer_id == customer_id)
            ]
            rows.sort(key=lambda r: r.sequence)
            return [r.model_copy(deep=True) for r in rows]

    # -----------------------------
    # Payouts
    # -----------------------------
    def add_payout(self, payout: CommissionPayout) -> CommissionPayout:
        return self._add(self._payouts, payout, "Payout")

    def get_payout(self, payout_id: str) -> Optional[CommissionPayout]:
        return self._get(self._payouts, payout_id)

    def save_payout(self, payout: CommissionPayout) -> CommissionPayout:
        return self._save(self._payouts, payout, "Payout")

    def list_payouts(self, *, referrer_id: Optional[str] = None) -> list[CommissionPayout]:
        with self._lock:
            rows = [p for p in self._payouts.values() if referrer_id is None or p.referrer_id == referrer_id]
            rows.sort(key=lambda p: (p.period, p.created_at, p.id))
            return [p.model_copy(deep=True) for p in rows]

    # -----------------------------
    # Assignments
    # -----------------------------
    def add_assignment(self, assignment: AssignmentRecord) -> AssignmentRecord:
        return self._add(self._assignments, assignment, "Assignment")

    def get_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        return self._get(self._assignments, assignment_id)

    def save_assignment(self, assignment: AssignmentRecord) -> AssignmentRecord:
        return self._save(self._assignments, assignment, "Assignment")

    def delete_assignment(self, assignment_id: str) -> bool:
        with self._lock:
            return self._assignments.pop(assignment_id, None) is not None

    def list_assignments(
        self,
        *,
        pharmacy_id: Optional[str] = None,
        city_id: Optional[str] = None,
        governorate_ids: Optional[Iterable[str]] = None,
    ) -> list[AssignmentRecord]:
        governorates = set(governorate_ids) if governorate_ids is not None else None
        with self._lock:
            rows = [
                a
                for a in self._assignments.values()
                if (pharmacy_id is None or a.pharmacy_id == pharmacy_id)
                and (city_id is None or a.city_id == city_id)
                and (governorates is None or a.governorate_id in governorates)
            ]
            rows.sort(key=lambda a: (a.created_at, a.id))
            return [a.model_copy(deep=True) for a in rows]

    # -----------------------------
    # Orders (read model)
    # -----------------------------
    def add_order(self, order: OrderRecord) -> OrderRecord:
        return self._add(self._orders, order, "Order")

    def list_orders(self, start: datetime, end: datetime) -> list[OrderRecord]:
        with self._lock:
            rows = [o for o in self._orders.values() if start <= o.placed_at <= end]
            rows.sort(key=lambda o: (o.placed_at, o.id))
            return [o.model_copy(deep=True) for o in rows]


class StaticDirectory:
    """Pharmacy/city directory held in memory."""

    def __init__(
        self,
        pharmacies: Iterable[PharmacyRef] = (),
        cities: Iterable[CityRef] = (),
    ) -> None:
        self._pharmacies = {p.id: p for p in pharmacies}
        self._cities = {c.id: c for c in cities}

    def add_pharmacy(self, pharmacy: PharmacyRef) -> None:
        self._pharmacies[pharmacy.id] = pharmacy

    def add_city(self, city: CityRef) -> None:
        self._cities[city.id] = city

    def get_pharmacy(self, pharmacy_id: str) -> Optional[PharmacyRef]:
        return self._pharmacies.get(pharmacy_id)

    def get_city(self, city_id: str) -> Optional[CityRef]:
        return self._cities.get(city_id)
