from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import NOW, add_promo
from yachtbook.db import session
from yachtbook.errors import PromoCodeError
from yachtbook.models import PromoCode, PromoCodeUsage
from yachtbook.pricing import BookableRef
from yachtbook.promos import PromoCandidate, PromoCodeValidator

TOUR = BookableRef(kind="tour", id=1)
VESSEL = BookableRef(kind="vessel", id=2)


def validate(engine, code, amount="1400", item=TOUR, user_id="u-1", now=NOW):
    with session(engine) as s:
        return PromoCodeValidator(s).validate(code, PromoCandidate(item, Decimal(amount)), user_id, now)


def test_percentage_discount_is_case_insensitive(engine):
    add_promo(engine, "SUMMER15")
    v = validate(engine, "  summer15 ")
    assert v.ok
    assert v.discount == Decimal("210.00")


def test_discount_is_capped(engine):
    add_promo(engine, "BIG", discount_value=Decimal("50"), max_discount_thb=Decimal("300"))
    assert validate(engine, "BIG").discount == Decimal("300.00")


def test_fixed_discount_never_exceeds_order(engine):
    add_promo(engine, "FLAT", discount_type="fixed", discount_value=Decimal("2000"))
    assert validate(engine, "FLAT", amount="1500").discount == Decimal("1500.00")


@pytest.mark.parametrize(
    "fields,amount,item,error",
    [
        ({"is_active": False}, "1400", TOUR, "not_found"),
        ({"valid_from": NOW + timedelta(days=1)}, "1400", TOUR, "not_started"),
        ({"valid_until": NOW - timedelta(seconds=1)}, "1400", TOUR, "expired"),
        ({"min_order_thb": Decimal("2000")}, "1400", TOUR, "min_order"),
        ({"applies_to": "vessels"}, "1400", TOUR, "scope"),
        ({"vessel_ids": [99]}, "1400", VESSEL, "scope"),
        ({"usage_limit": 5, "usage_count": 5}, "1400", TOUR, "usage_limit"),
    ],
)
def test_rejections(engine, fields, amount, item, error):
    add_promo(engine, "CODE", **fields)
    v = validate(engine, "CODE", amount=amount, item=item)
    assert v.error == error
    assert v.discount == Decimal("0.00")
    with pytest.raises(PromoCodeError) as exc:
        v.raise_for_error()
    assert exc.value.context["reason"] == error


def test_unknown_code(engine):
    assert validate(engine, "NOPE").error == "not_found"


def test_checks_run_in_order(engine):
    # Expired and over the limit: the window check comes first.
    add_promo(engine, "OLD", valid_until=NOW - timedelta(days=1), usage_limit=1, usage_count=1)
    assert validate(engine, "OLD").error == "expired"


def test_validate_does_not_touch_counters(engine):
    add_promo(engine, "SUMMER15", usage_limit=10)
    for _ in range(3):
        assert validate(engine, "SUMMER15").ok
    with session(engine) as s:
        assert s.query(PromoCode).one().usage_count == 0


def test_consume_records_usage_and_enforces_per_user_limit(engine):
    add_promo(engine, "SUMMER15", usage_limit=10, max_uses_per_user=1)
    with session(engine) as s:
        v = PromoCodeValidator(s).consume("summer15", PromoCandidate(TOUR, Decimal("1400")), "u-1", booking_id=1, now=NOW)
        s.commit()
    assert v.discount == Decimal("210.00")

    with session(engine) as s:
        promo = s.query(PromoCode).one()
        assert promo.usage_count == 1
        assert s.query(PromoCodeUsage).count() == 1

    assert validate(engine, "SUMMER15", user_id="u-1").error == "user_limit"
    assert validate(engine, "SUMMER15", user_id="u-2").ok


def test_one_usage_row_per_booking(engine):
    promo_id = add_promo(engine, "SUMMER15", max_uses_per_user=5)
    with session(engine) as s:
        s.add(PromoCodeUsage(promo_code_id=promo_id, booking_id=1, user_id="u-1", discount_amount=Decimal("10")))
        s.add(PromoCodeUsage(promo_code_id=promo_id, booking_id=1, user_id="u-1", discount_amount=Decimal("10")))
        with pytest.raises(IntegrityError):
            s.flush()
