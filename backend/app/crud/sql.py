# app/crud/sql.py
from __future__ import annotations

import enum
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import ConcurrentModificationError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.models.commission_payout import CommissionPayout as PayoutRow
from app.models.order_record import OrderRecord as OrderRow
from app.models.pharmacy_city_assignment import PharmacyCityAssignment
from app.models.referral import Referral
from app.models.referrer_profile import ReferrerProfile as ReferrerRow
from app.schemas.assignment import AssignmentRecord
from app.schemas.payout import CommissionPayout
from app.schemas.referral import ReferralRecord, ReferrerProfile
from app.schemas.revenue import OrderRecord

logger = get_logger(__name__)

S = TypeVar("S", bound=BaseModel)

# columns stored as JSON; dumped in json mode so Decimals survive as strings
JSON_FIELDS = {"commission_policy", "policy_snapshot", "coverage_areas", "referral_ids"}


def _column_values(record: BaseModel) -> dict[str, Any]:
    data = record.model_dump(exclude={"version"})
    for key, value in data.items():
        if isinstance(value, enum.Enum):
            data[key] = value.value
    json_keys = JSON_FIELDS & data.keys()
    if json_keys:
        data.update(record.model_dump(mode="json", include=json_keys))
    return data


def _sequence_taken(exc: IntegrityError) -> bool:
    return "sequence" in str(exc.orig).lower()


class SqlStore:
    """
    SQLAlchemy-backed store on one sync Session.

    Rows carry a version column (mapper version_id_col), so every UPDATE is
    issued as `... WHERE id = ? AND version = ?`; a concurrent writer makes
    the flush fail and surfaces as ConcurrentModificationError.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._depth = 0

    @property
    def session(self) -> Session:
        return self._session

    # -----------------------------
    # Transactions
    # -----------------------------
    @contextmanager
    def transaction(self) -> Iterator["SqlStore"]:
        outermost = self._depth == 0
        self._depth += 1
        try:
            yield self
            if outermost:
                self._session.commit()
        except StaleDataError as exc:
            if outermost:
                self._session.rollback()
            raise ConcurrentModificationError("Record", "unknown") from exc
        except BaseException:
            if outermost:
                self._session.rollback()
                logger.debug("sql_transaction_rolled_back")
            raise
        finally:
            self._depth -= 1

    # -----------------------------
    # Generic helpers
    # -----------------------------
    def _add(
        self,
        model: Type[Any],
        schema: Type[S],
        record: S,
        entity: str,
        *,
        raced: Optional[Callable[[IntegrityError], bool]] = None,
    ) -> S:
        if self._session.get(model, record.id) is not None:
            raise ValidationError(f"{entity} {record.id!r} already exists.")
        row = model(**_column_values(record))
        self._session.add(row)
        try:
            self._session.flush()
        except IntegrityError as exc:
            if raced is not None and raced(exc):
                raise ConcurrentModificationError(entity, record.id) from exc
            raise ValidationError(f"{entity} {record.id!r} conflicts with an existing record.") from exc
        return schema.model_validate(row)

    def _get(self, model: Type[Any], schema: Type[S], record_id: str) -> Optional[S]:
        row = self._session.get(model, record_id)
        return schema.model_validate(row) if row is not None else None

    def _save(self, model: Type[Any], schema: Type[S], record: S, entity: str) -> S:
        row = self._session.get(model, record.id)
        if row is None:
            raise NotFoundError(entity, record.id)
        if row.version != record.version:
            raise ConcurrentModificationError(entity, record.id)

        for key, value in _column_values(record).items():
            if key != "id":
                setattr(row, key, value)
        try:
            self._session.flush()
        except StaleDataError as exc:
            raise ConcurrentModificationError(entity, record.id) from exc
        except IntegrityError as exc:
            raise ValidationError(f"{entity} {record.id!r} conflicts with an existing record.") from exc
        return schema.model_validate(row)

    # -----------------------------
    # Referrers
    # -----------------------------
    def add_referrer(self, referrer: ReferrerProfile) -> ReferrerProfile:
        return self._add(ReferrerRow, ReferrerProfile, referrer, "Referrer")

    def get_referrer(self, referrer_id: str) -> Optional[ReferrerProfile]:
        return self._get(ReferrerRow, ReferrerProfile, referrer_id)

    def get_referrer_by_code(self, referral_code: str) -> Optional[ReferrerProfile]:
        row = self._session.execute(
            select(ReferrerRow).where(ReferrerRow.referral_code == referral_code)
        ).scalar_one_or_none()
        return ReferrerProfile.model_validate(row) if row is not None else None

    def save_referrer(self, referrer: ReferrerProfile) -> ReferrerProfile:
        return self._save(ReferrerRow, ReferrerProfile, referrer, "Referrer")

    def list_referrers(self) -> list[ReferrerProfile]:
        rows = self._session.execute(
            select(ReferrerRow).order_by(ReferrerRow.created_at, ReferrerRow.id)
        ).scalars().all()
        return [ReferrerProfile.model_validate(r) for r in rows]

    # -----------------------------
    # Referrals
    # -----------------------------
    def next_referral_sequence(self) -> int:
        current = self._session.scalar(select(func.max(Referral.sequence)))
        return int(current or 0) + 1

    def add_referral(self, referral: ReferralRecord) -> ReferralRecord:
        # sequence is max+1 read outside any lock; a concurrent create can take it first
        return self._add(Referral, ReferralRecord, referral, "Referral", raced=_sequence_taken)

    def get_referral(self, referral_id: str) -> Optional[ReferralRecord]:
        return self._get(Referral, ReferralRecord, referral_id)

    def save_referral(self, referral: ReferralRecord) -> ReferralRecord:
        return self._save(Referral, ReferralRecord, referral, "Referral")

    def find_referral_by_order(self, order_id: str) -> Optional[ReferralRecord]:
        row = self._session.execute(
            select(Referral).where(Referral.order_id == order_id)
        ).scalar_one_or_none()
        return ReferralRecord.model_validate(row) if row is not None else None

    def list_referrals(
        self,
        *,
        referrer_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> list[ReferralRecord]:
        stmt = select(Referral)
        if referrer_id is not None:
            stmt = stmt.where(Referral.referrer_id == referrer_id)
        if customer_id is not None:
            stmt = stmt.where(Referral.customer_id == customer_id)
        rows = self._session.execute(stmt.order_by(Referral.sequence)).scalars().all()
        return [ReferralRecord.model_validate(r) for r in rows]

    # -----------------------------
    # Payouts
    # -----------------------------
    def add_payout(self, payout: CommissionPayout) -> CommissionPayout:
        return self._add(PayoutRow, CommissionPayout, payout, "Payout")

    def get_payout(self, payout_id: str) -> Optional[CommissionPayout]:
        return self._get(PayoutRow, CommissionPayout, payout_id)

    def save_payout(self, payout: CommissionPayout) -> CommissionPayout:
        return self._save(PayoutRow, CommissionPayout, payout, "Payout")

    def list_payouts(self, *, referrer_id: Optional[str] = None) -> list[CommissionPayout]:
        stmt = select(PayoutRow)
        if referrer_id is not None:
            stmt = stmt.where(PayoutRow.referrer_id == referrer_id)
        stmt = stmt.order_by(PayoutRow.period, PayoutRow.created_at, PayoutRow.id)
        rows = self._session.execute(stmt).scalars().all()
        return [CommissionPayout.model_validate(r) for r in rows]

    # -----------------------------
    # Assignments
    # -----------------------------
    def add_assignment(self, assignment: AssignmentRecord) -> AssignmentRecord:
        return self._add(PharmacyCityAssignment, AssignmentRecord, assignment, "Assignment")

    def get_assignment(self, assignment_id: str) -> Optional[AssignmentRecord]:
        return self._get(PharmacyCityAssignment, AssignmentRecord, assignment_id)

    def save_assignment(self, assignment: AssignmentRecord) -> AssignmentRecord:
        return self._save(PharmacyCityAssignment, AssignmentRecord, assignment, "Assignment")

    def delete_assignment(self, assignment_id: str) -> bool:
        row = self._session.get(PharmacyCityAssignment, assignment_id)
        if row is None:
            return False
        self._session.delete(row)
        self._session.flush()
        return True

    def list_assignments(
        self,
        *,
        pharmacy_id: Optional[str] = None,
        city_id: Optional[str] = None,
        governorate_ids: Optional[Iterable[str]] = None,
    ) -> list[AssignmentRecord]:
        stmt = select(PharmacyCityAssignment)
        if pharmacy_id is not None:
            stmt = stmt.where(PharmacyCityAssignment.pharmacy_id == pharmacy_id)
        if city_id is not None:
            stmt = stmt.where(PharmacyCityAssignment.city_id == city_id)
        if governorate_ids is not None:
            stmt = stmt.where(PharmacyCityAssignment.governorate_id.in_(list(governorate_ids)))
        stmt = stmt.order_by(PharmacyCityAssignment.created_at, PharmacyCityAssignment.id)
        rows = self._session.execute(stmt).scalars().all()
        return [AssignmentRecord.model_validate(r) for r in rows]

    # -----------------------------
    # Orders (read model)
    # -----------------------------
    def add_order(self, order: OrderRecord) -> OrderRecord:
        if self._session.get(OrderRow, order.id) is not None:
            raise ValidationError(f"Order {order.id!r} already exists.")
        row = OrderRow(**_column_values(order))
        self._session.add(row)
        self._session.flush()
        return OrderRecord.model_validate(row)

    def list_orders(self, start: datetime, end: datetime) -> list[OrderRecord]:
        stmt = (
            select(OrderRow)
            .where(OrderRow.placed_at >= start)
            .where(OrderRow.placed_at <= end)
            .order_by(OrderRow.placed_at, OrderRow.id)
        )
        rows = self._session.execute(stmt).scalars().all()
        return [OrderRecord.model_validate(r) for r in rows]
