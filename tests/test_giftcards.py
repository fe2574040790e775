import re
from datetime import date
from decimal import Decimal

import pytest

from yachtbook.db import session
from yachtbook.errors import GiftCardError, InsufficientBalance, ValidationError
from yachtbook.giftcards import GiftCardRedeemer, add_months, expire_gift_cards, issue_gift_card
from yachtbook.ledger import GiftCardLedger
from yachtbook.models import GiftCard
from yachtbook.pricing import BookableRef

TODAY = date(2026, 3, 2)
TOUR = BookableRef(kind="tour", id=1)
VESSEL = BookableRef(kind="vessel", id=2)


def issue(engine, amount="1000", **kw) -> str:
    with session(engine) as s:
        card = issue_gift_card(s, Decimal(amount), today=TODAY, **kw)
        s.commit()
        return card.code


def test_issue_writes_the_opening_ledger_row(engine):
    code = issue(engine, "1000", valid_months=6)

    assert re.fullmatch(r"[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}", code)
    with session(engine) as s:
        card = s.query(GiftCard).filter(GiftCard.code == code).one()
        assert card.status == "active"
        assert card.balance == Decimal("1000.00")
        assert card.valid_until == date(2026, 9, 2)
        (row,) = GiftCardLedger(s).history(code)
        assert (row.type, row.reason, row.amount, row.resulting_balance) == ("adjust", "issued", Decimal("1000.00"), Decimal("1000.00"))


def test_issue_rejects_bad_amounts(engine):
    with session(engine) as s:
        with pytest.raises(ValidationError):
            issue_gift_card(s, Decimal("0"), today=TODAY)


def test_quote_covers_at_most_the_balance(engine):
    code = issue(engine, "1000")
    with session(engine) as s:
        r = GiftCardRedeemer(s)
        assert r.quote(code.lower(), Decimal("400"), TOUR, TODAY).amount == Decimal("400.00")
        assert r.quote(code, Decimal("1500"), TOUR, TODAY).amount == Decimal("1000.00")


@pytest.mark.parametrize(
    "kw,item,today,error",
    [
        ({}, TOUR, date(2027, 3, 3), "expired"),
        ({"applies_to": "vessels"}, TOUR, TODAY, "scope"),
        ({"min_order": Decimal("5000")}, VESSEL, TODAY, "min_order"),
    ],
)
def test_quote_rejections(engine, kw, item, today, error):
    code = issue(engine, "1000", **kw)
    with session(engine) as s:
        r = GiftCardRedeemer(s).quote(code, Decimal("1500"), item, today)
    assert r.error == error
    with pytest.raises(GiftCardError):
        r.raise_for_error()


def test_redeem_past_balance_is_rejected_and_balance_unchanged(engine):
    code = issue(engine, "1000")
    with session(engine) as s:
        with pytest.raises(InsufficientBalance):
            GiftCardRedeemer(s).redeem(code, Decimal("1000.01"), Decimal("2000"), TOUR, TODAY, "YB-2026-AAAAAA")
        s.rollback()

    with session(engine) as s:
        assert GiftCardLedger(s).balance_of(code) == Decimal("1000.00")
        assert s.query(GiftCard).one().balance == Decimal("1000.00")


def test_spending_everything_marks_the_card_used(engine):
    code = issue(engine, "500")
    with session(engine) as s:
        GiftCardRedeemer(s).redeem(code, Decimal("500"), Decimal("800"), TOUR, TODAY, "YB-2026-AAAAAA")
        s.commit()

    with session(engine) as s:
        card = s.query(GiftCard).one()
        assert card.status == "used"
        assert card.balance == Decimal("0.00")
        assert GiftCardRedeemer(s).quote(code, Decimal("100"), TOUR, TODAY).error == "used"


def test_expire_job_moves_remaining_balance_out(engine):
    code = issue(engine, "800", valid_months=1)
    with session(engine) as s:
        GiftCardRedeemer(s).redeem(code, Decimal("300"), Decimal("300"), TOUR, TODAY, "YB-2026-AAAAAA")
        s.commit()

    with session(engine) as s:
        assert expire_gift_cards(s, date(2026, 4, 3)) == [code]
        s.commit()

    with session(engine) as s:
        ledger = GiftCardLedger(s)
        card = s.query(GiftCard).one()
        assert card.status == "expired"
        assert ledger.balance_of(code) == Decimal("0.00")
        assert ledger.history(code)[-1].type == "expire"
        assert ledger.history(code)[-1].amount == Decimal("-500.00")
        assert ledger.verify(code)
        assert Decimal(card.initial_amount) - sum(-r.amount for r in ledger.history(code)[1:]) == card.balance


def test_add_months_clamps_to_month_end():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)
