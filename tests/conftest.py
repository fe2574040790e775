from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from yachtbook.database import build_engine
from yachtbook.db import session
from yachtbook.ledger import CashbackLedger
from yachtbook.models import Addon, Bookable, PricingRuleRow, PromoCode
from yachtbook.quotes import AddonRequest, QuoteRequest
from yachtbook.service import BookingService

# Monday. Bookings in the tests are for Saturday 2026-04-04 (33 days ahead).
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TRIP_DATE = date(2026, 4, 4)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    eng = build_engine("sqlite+pysqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def svc(engine, clock):
    return BookingService(engine, clock=clock)


def seed_catalog(engine) -> dict:
    with session(engine) as s:
        tour = Bookable(kind="tour", name="Phi Phi Islands", category="island", base_price=Decimal("500"), child_price=Decimal("250"))
        vessel = Bookable(kind="vessel", name="Ocean Pearl", category="catamaran", base_price=Decimal("5000"), min_hours=Decimal("4"))
        s.add_all([tour, vessel])
        s.add_all(
            [
                Addon(code="photo", name="Photographer", unit_price=Decimal("200"), pricing_type="per_person"),
                Addon(code="lunch", name="Seafood lunch", unit_price=Decimal("1500"), pricing_type="fixed"),
                Addon(code="jetski", name="Jet ski", unit_price=Decimal("1000"), pricing_type="per_hour", applies_to="vessels"),
                Addon(code="snorkel", name="Snorkel set", unit_price=Decimal("150"), pricing_type="per_item"),
            ]
        )
        s.commit()
        return {"tour": tour.id, "vessel": vessel.id}


@pytest.fixture
def catalog(engine):
    return seed_catalog(engine)


def add_rule(engine, **fields) -> int:
    fields.setdefault("applies_to", "all")
    fields.setdefault("priority", 0)
    fields.setdefault("is_stackable", False)
    with session(engine) as s:
        row = PricingRuleRow(**fields)
        s.add(row)
        s.commit()
        return row.id


def add_promo(engine, code: str = "SUMMER15", **fields) -> int:
    fields.setdefault("discount_type", "percentage")
    fields.setdefault("discount_value", Decimal("15"))
    fields.setdefault("max_uses_per_user", 1)
    with session(engine) as s:
        row = PromoCode(code=code, **fields)
        s.add(row)
        s.commit()
        return row.id


def grant_cashback(engine, owner: str, amount: str) -> None:
    with session(engine) as s:
        CashbackLedger(s).credit(owner, Decimal(amount), reason="welcome bonus", type="adjust")
        s.commit()


def tour_request(catalog, **overrides) -> QuoteRequest:
    fields = dict(
        bookable_kind="tour",
        bookable_id=catalog["tour"],
        booking_date=TRIP_DATE,
        adults=2,
        addons=(AddonRequest("photo"),),
    )
    fields.update(overrides)
    return QuoteRequest(**fields)


def book(svc, catalog, user_id: str = "u-1", **overrides):
    """Quote and confirm a tour booking; returns the booking."""
    quote = svc.quote(tour_request(catalog, **overrides), user_id)
    return svc.confirm(quote, user_id).booking
