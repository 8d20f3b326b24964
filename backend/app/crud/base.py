# app/crud/base.py
"""
Repository interfaces the core services are written against.

Two implementations exist:
  - InMemoryStore (app/crud/memory.py): dicts keyed by id, for tests and demos
  - SqlStore (app/crud/sql.py): SQLAlchemy rows on a transactional database

Contract shared by both:
  - get_* returns a detached copy (or None); mutating it changes nothing
    until it is passed back to save_*/add_*.
  - save_* checks record.version against the stored version and raises
    ConcurrentModificationError on mismatch; the returned copy carries the
    new version.
  - transaction() is re-entrant; only the outermost block commits, and any
    exception escaping it rolls every change in the block back.
"""
from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable, Optional, Protocol

from app.schemas.assignment import AssignmentRecord, CityRef, PharmacyRef
from app.schemas.payout import CommissionPayout
from app.schemas.referral import ReferralRecord, ReferrerProfile
from app.schemas.revenue import OrderRecord


class ReferrerRepository(Protocol):
    def add_referrer(self, referrer: ReferrerProfile) -> ReferrerProfile: ...

    def get_referrer(self, referrer_id: str) -> Optional[ReferrerProfile]: ...

    def get_referrer_by_code(self, referral_code: str) -> Optional[ReferrerProfile]: ...

    def save_referrer(self, referrer: ReferrerProfile) -> ReferrerProfile: ...

    def list_referrers(self) -> list[ReferrerProfile]: ...


class ReferralRepository(Protocol):
    def next_referral_sequence(self) -> int: ...

    def add_referral(self, referral: ReferralRecord) -> ReferralRecord: ...

    def get_referral(self, referral_id: str) -> Optional[ReferralRecord]: ...

    def save_referral(self, referral: ReferralRecord) -> ReferralRecord: ...

    def find_referral_by_order(self, order_id: str) -> Optional[ReferralRecord]: ...

    def list_referrals(
        self,
        *,
        referrer_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> list[ReferralRecord]:
        """Ordered by creation sequence (oldest first)."""
        ...


class PayoutRepository(Protocol):
    def add_payout(self, payout: CommissionPayout) -> CommissionPayout: ...

    def get_payout(self, payout_id: str) -> Optional[CommissionPayout]: ...

    def save_payout(self, payout: CommissionPayout) -> CommissionPayout: ...

    def list_payouts(self, *, referrer_id: Optional[str] = None) -> list[CommissionPayout]:
        """Ordered by period, then created_at, then id."""
        ...


class AssignmentRepository(Protocol):
    def add_assignment(self, assignment: AssignmentRecord) -> AssignmentRecord: ...

    def get_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]: ...

    def save_assignment(self, assignment: AssignmentRecord) -> AssignmentRecord: ...

    def delete_assignment(self, assignment_id: str) -> bool: ...

    def list_assignments(
        self,
        *,
        pharmacy_id: Optional[str] = None,
        city_id: Optional[str] = None,
        governorate_ids: Optional[Iterable[str]] = None,
    ) -> list[AssignmentRecord]:
        """Ordered by created_at, then id."""
        ...


class OrderRepository(Protocol):
    def add_order(self, order: OrderRecord) -> OrderRecord: ...

    def list_orders(self, start: datetime, end: datetime) -> list[OrderRecord]:
        """Orders with start <= placed_at <= end, oldest first."""
        ...


class CommissionStore(
    ReferrerRepository,
    ReferralRepository,
    PayoutRepository,
    AssignmentRepository,
    OrderRepository,
    Protocol,
):
    def transaction(self) -> AbstractContextManager["CommissionStore"]: ...


class Directory(Protocol):
    """Pharmacy/city identity lookups owned by the surrounding application."""

    def get_pharmacy(self, pharmacy_id: str) -> Optional[PharmacyRef]: ...

    def get_city(self, city_id: str) -> Optional[CityRef]: ...
