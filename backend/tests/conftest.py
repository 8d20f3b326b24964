from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool

from app.core.assignments import AssignmentRegistry
from app.core.logging import configure_logging
from app.core.referrals import ReferralLedger
from app.core.revenue import RevenueAggregator
from app.crud.memory import InMemoryStore, StaticDirectory
from app.crud.sql import SqlStore
from app.db.session import build_engine, build_sessionmaker, create_tables
from app.schemas.assignment import CityRef, PharmacyRef
from app.schemas.revenue import OrderRecord

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def _logging():
    configure_logging(level="WARNING", log_format="console")


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


# ---------------------------------------------------------
# Stores (fresh state per test)
# ---------------------------------------------------------
@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def sql_engine():
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def sql_sessionmaker(sql_engine):
    return build_sessionmaker(sql_engine)


@pytest.fixture()
def sql_store(sql_sessionmaker):
    session = sql_sessionmaker()
    try:
        yield SqlStore(session)
    finally:
        session.close()


@pytest.fixture()
def directory() -> StaticDirectory:
    return StaticDirectory(
        pharmacies=[
            PharmacyRef(id="healthplus", name="HealthPlus Pharmacy"),
            PharmacyRef(id="medicare", name="MediCare Pharmacy"),
            PharmacyRef(id="closed", name="Closed Pharmacy", is_active=False),
        ],
        cities=[
            CityRef(id="ismailia", name="Ismailia", governorate_id="gov-ismailia", governorate_name="Ismailia"),
            CityRef(id="fayed", name="Fayed", governorate_id="gov-ismailia", governorate_name="Ismailia"),
            CityRef(id="downtown", name="Downtown Cairo", governorate_id="gov-cairo", governorate_name="Cairo"),
            CityRef(
                id="siwa",
                name="Siwa",
                governorate_id="gov-matrouh",
                governorate_name="Matrouh",
                is_enabled=False,
            ),
        ],
    )


# ---------------------------------------------------------
# Services
# ---------------------------------------------------------
@pytest.fixture()
def ledger(store, clock) -> ReferralLedger:
    return ReferralLedger(store, clock=clock, expiry_days=30, top_n=5)


@pytest.fixture()
def registry(store, clock) -> AssignmentRegistry:
    return AssignmentRegistry(store, clock=clock)


@pytest.fixture()
def aggregator(store, clock) -> RevenueAggregator:
    return RevenueAggregator(store, clock=clock, top_n=5)


# ---------------------------------------------------------
# Factories
# ---------------------------------------------------------
@pytest.fixture()
def make_referrer(ledger):
    def _make(name: str = "Dr. Ahmed Hassan", rate: str = "10", **overrides):
        data = {
            "name": name,
            "commission_policy": {"rate_type": "fixed", "base_rate": rate},
        }
        data.update(overrides)
        return ledger.register_referrer(data)

    return _make


CONTACT = {"name": "Mona Saleh", "phone": "+20 100 000 0000"}


@pytest.fixture()
def make_referral(ledger):
    def _make(referrer_id: str, customer_id: str = "cust-1", source: str = "qr_code", **kwargs):
        return ledger.create(referrer_id, customer_id, CONTACT, source, **kwargs)

    return _make


def delivery(radius: str = "5", delivery_time: str = "30-45 min", areas=("Downtown",)) -> dict:
    return {
        "delivery_radius_km": radius,
        "estimated_delivery_time": delivery_time,
        "delivery_fee": "15",
        "minimum_order_amount": "50",
        "coverage_areas": list(areas),
    }


@pytest.fixture()
def make_assignment(registry):
    def _make(
        pharmacy_id: str = "healthplus",
        city_id: str = "ismailia",
        governorate_id: str = "gov-ismailia",
        *,
        is_primary: bool = False,
        rate: str = "10",
        radius: str = "5",
        delivery_time: str = "30-45 min",
        areas=("Downtown",),
        policy: dict | None = None,
        **names,
    ):
        return registry.create(
            pharmacy_id,
            city_id,
            governorate_id,
            is_primary,
            delivery(radius, delivery_time, areas),
            policy or {"rate_type": "fixed", "base_rate": rate},
            **names,
        )

    return _make


@pytest.fixture()
def add_order(store, clock):
    def _add(
        order_id: str,
        *,
        total: str = "100",
        subtotal: str | None = None,
        status: str = "delivered",
        placed_at: datetime | None = None,
        pharmacy_id: str = "healthplus",
        pharmacy_name: str = "HealthPlus Pharmacy",
        city_id: str = "ismailia",
        city_name: str = "Ismailia",
        governorate_id: str = "gov-ismailia",
        category: str = "general",
        customer_id: str = "cust-1",
        referral_id: str | None = None,
        intake: bool = False,
    ) -> OrderRecord:
        # intake=True goes through RevenueAggregator.record_order (policy captured)
        sink = RevenueAggregator(store, clock=clock).record_order if intake else store.add_order
        return sink(
            OrderRecord(
                id=order_id,
                customer_id=customer_id,
                pharmacy_id=pharmacy_id,
                pharmacy_name=pharmacy_name,
                city_id=city_id,
                city_name=city_name,
                governorate_id=governorate_id,
                category=category,
                subtotal=Decimal(subtotal if subtotal is not None else total),
                total=Decimal(total),
                status=status,
                placed_at=placed_at or clock(),
                referral_id=referral_id,
            )
        )

    return _add
