from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import TRIP_DATE, add_promo, add_rule, book, grant_cashback, tour_request
from yachtbook.db import session
from yachtbook.errors import NotFound, PromoCodeError, QuoteChanged, ValidationError
from yachtbook.giftcards import issue_gift_card
from yachtbook.ledger import CashbackLedger, GiftCardLedger
from yachtbook.lifecycle import Actor, BookingStatus
from yachtbook.models import Booking, BookingStatusHistory, GiftCard, PromoCode, PromoCodeUsage
from yachtbook.quotes import AddonRequest, QuoteRequest
from yachtbook.state_machine import BookingStateMachine


def weekend_and_early_bird(engine):
    add_rule(engine, name="Weekend", type="day_of_week", days_of_week=["saturday", "sunday"], adjustment_type="percentage", adjustment_value=Decimal("10"), is_stackable=True)
    add_rule(engine, name="Early bird", type="early_bird", min_days_ahead=30, adjustment_type="percentage", adjustment_value=Decimal("-10"), is_stackable=True)


def test_quote_matches_the_worked_example(engine, svc, catalog):
    weekend_and_early_bird(engine)
    add_promo(engine, "SUMMER15")

    q = svc.quote(tour_request(catalog, promo_code="summer15"), None)

    b = q.breakdown
    assert (b.base, b.addons_total, b.dynamic_adjustment, b.subtotal) == (
        Decimal("1000.00"),
        Decimal("400.00"),
        Decimal("0.00"),
        Decimal("1400.00"),
    )
    assert b.promo_discount == Decimal("210.00")
    assert b.final_total == Decimal("1190.00")
    assert b.loyalty_tier is None
    assert b.cashback_earned == Decimal("0.00")


def test_quote_then_confirm_round_trip(engine, svc, catalog):
    weekend_and_early_bird(engine)
    q = svc.quote(tour_request(catalog), "u-1")

    result = svc.confirm(q, "u-1")

    booking = result.booking
    assert result.changed
    assert booking.status == BookingStatus.PENDING
    assert booking.reference.startswith("YB-2026-")
    assert len(booking.reference) == len("YB-2026-") + 6
    for name in ("base", "addons_total", "dynamic_adjustment", "promo_discount", "gift_card_amount", "loyalty_discount", "cashback_spent", "cashback_earned", "final_total"):
        assert getattr(booking, name) == getattr(q.breakdown, name), name
    assert booking.applied_rule_ids == list(q.breakdown.applied_rule_ids)
    assert [e.routing_key for e in result.events] == ["booking.created"]

    history = svc.history_of(booking.reference)
    assert [(h.old_status, h.new_status, h.actor_type, h.actor_id) for h in history] == [
        (None, BookingStatus.PENDING, Actor.USER, "u-1")
    ]


def test_confirming_twice_returns_the_same_booking(engine, svc, catalog):
    q = svc.quote(tour_request(catalog), "u-1")

    first = svc.confirm(q, "u-1")
    second = svc.confirm(q, "u-1")

    assert not second.changed
    assert second.booking.reference == first.booking.reference
    with session(engine) as s:
        assert s.query(Booking).count() == 1
        assert s.query(BookingStatusHistory).count() == 1


def test_quote_issued_to_another_user_is_rejected(svc, catalog):
    q = svc.quote(tour_request(catalog), "u-1")
    with pytest.raises(ValidationError):
        svc.confirm(q, "u-2")


def test_anonymous_quote_cannot_be_confirmed(engine, svc, catalog):
    q = svc.quote(tour_request(catalog), None)

    with pytest.raises(ValidationError) as exc:
        svc.confirm(q, "u-1")

    assert not isinstance(exc.value, QuoteChanged)
    assert exc.value.context["field"] == "quote_id"
    with session(engine) as s:
        assert s.query(Booking).count() == 0


def test_concurrent_confirm_of_one_quote_returns_the_first_booking(engine, svc, catalog, monkeypatch):
    q = svc.quote(tour_request(catalog), "u-1")
    first = svc.confirm(q, "u-1").booking

    # Both confirms pass the early lookup before either commits; the loser collides on insert.
    lookup = BookingStateMachine._already_opened
    calls = []

    def late_lookup(self, quote_id, user_id):
        calls.append(quote_id)
        return None if len(calls) == 1 else lookup(self, quote_id, user_id)

    monkeypatch.setattr(BookingStateMachine, "_already_opened", late_lookup)
    second = svc.confirm(q, "u-1")

    assert len(calls) == 2
    assert not second.changed
    assert second.booking.reference == first.reference
    with session(engine) as s:
        assert s.query(Booking).count() == 1
        assert s.query(BookingStatusHistory).count() == 1


def test_price_change_between_quote_and_confirm(engine, svc, catalog):
    q = svc.quote(tour_request(catalog), "u-1")
    add_rule(engine, name="Songkran", type="special_date", start_date=TRIP_DATE, end_date=TRIP_DATE, adjustment_type="percentage", adjustment_value=Decimal("25"))

    with pytest.raises(QuoteChanged) as exc:
        svc.confirm(q, "u-1")

    assert exc.value.context["quoted_total"] == "1400.00"
    assert exc.value.context["current_total"] == "1750.00"
    with session(engine) as s:
        assert s.query(Booking).count() == 0


def test_confirm_consumes_promo_cashback_and_gift_card(engine, svc, catalog):
    add_promo(engine, "SUMMER15", usage_limit=10)
    grant_cashback(engine, "u-1", "300")
    with session(engine) as s:
        card_code = issue_gift_card(s, Decimal("500"), today=date(2026, 3, 1)).code
        s.commit()

    q = svc.quote(tour_request(catalog, promo_code="SUMMER15", use_cashback=Decimal("1000"), gift_card_code=card_code), "u-1")
    b = q.breakdown
    # 1400 - 210 promo = 1190; cashback capped by the 300 balance; gift card covers up to 500
    assert b.promo_discount == Decimal("210.00")
    assert b.cashback_spent == Decimal("300.00")
    assert b.gift_card_amount == Decimal("500.00")
    assert b.final_total == Decimal("390.00")
    assert b.cashback_earned == Decimal("19.50")

    booking = svc.confirm(q, "u-1").booking

    with session(engine) as s:
        promo = s.query(PromoCode).one()
        assert promo.usage_count == 1
        usage = s.query(PromoCodeUsage).one()
        assert (usage.booking_id, usage.user_id, usage.discount_amount) == (booking.id, "u-1", Decimal("210.00"))
        assert CashbackLedger(s).balance_of("u-1") == Decimal("0.00")
        assert GiftCardLedger(s).balance_of(card_code) == Decimal("0.00")
        assert s.query(GiftCard).one().status == "used"


def test_cashback_is_limited_to_half_of_the_order(engine, svc, catalog):
    grant_cashback(engine, "u-1", "5000")
    q = svc.quote(tour_request(catalog, use_cashback=Decimal("5000")), "u-1")
    assert q.breakdown.cashback_spent == Decimal("700.00")
    assert q.breakdown.final_total == Decimal("700.00")


def test_cashback_needs_a_user(svc, catalog):
    with pytest.raises(ValidationError):
        svc.quote(tour_request(catalog, use_cashback=Decimal("10")), None)


def test_cancelling_before_payment_returns_cashback_and_gift_card(engine, svc, catalog):
    grant_cashback(engine, "u-1", "200")
    with session(engine) as s:
        card_code = issue_gift_card(s, Decimal("300"), today=date(2026, 3, 1)).code
        s.commit()
    b = book(svc, catalog, use_cashback=Decimal("200"), gift_card_code=card_code)

    svc.transition(b.reference, BookingStatus.CANCELLED, Actor.USER, actor_id="u-1", reason="change of plans")

    with session(engine) as s:
        cashback, cards = CashbackLedger(s), GiftCardLedger(s)
        assert cashback.balance_of("u-1") == Decimal("200.00")
        assert cards.balance_of(card_code) == Decimal("300.00")
        assert s.query(GiftCard).one().status == "active"
        assert cashback.verify("u-1") and cards.verify(card_code)
        assert [r.type for r in cashback.history("u-1")] == ["adjust", "spend", "refund"]


def test_refund_onto_a_lapsed_gift_card_expires_again(engine, svc, catalog, clock):
    with session(engine) as s:
        card_code = issue_gift_card(s, Decimal("500"), valid_months=1, today=date(2026, 3, 1)).code
        s.commit()
    b = book(svc, catalog, gift_card_code=card_code)
    assert svc.expire_gift_cards(date(2026, 4, 11)) == [card_code]

    clock.now = datetime(2026, 4, 11, 9, 0, tzinfo=timezone.utc)
    svc.transition(b.reference, BookingStatus.CANCELLED, Actor.USER, actor_id="u-1", reason="missed the boat")

    with session(engine) as s:
        cards = GiftCardLedger(s)
        card = s.query(GiftCard).one()
        assert (card.status, card.balance) == ("expired", Decimal("0.00"))
        assert [r.type for r in cards.history(card_code)] == ["adjust", "spend", "refund", "expire"]
        assert cards.verify(card_code)


def test_refund_reactivates_an_expired_card_still_in_its_window(engine, svc, catalog):
    with session(engine) as s:
        card_code = issue_gift_card(s, Decimal("500"), today=date(2026, 3, 1)).code
        s.commit()
    b = book(svc, catalog, gift_card_code=card_code)
    with session(engine) as s:
        s.query(GiftCard).one().status = "expired"
        s.commit()

    svc.transition(b.reference, BookingStatus.CANCELLED, Actor.USER, actor_id="u-1", reason="change of plans")

    with session(engine) as s:
        card = s.query(GiftCard).one()
        assert (card.status, card.balance) == ("active", Decimal("500.00"))
        assert GiftCardLedger(s).balance_of(card_code) == Decimal("500.00")


def test_broken_rule_row_is_a_server_fault(engine, svc, catalog):
    add_rule(engine, name="Early bird", type="early_bird", adjustment_type="percentage", adjustment_value=Decimal("-5"))

    with pytest.raises(ValueError, match="min_days_ahead"):
        svc.quote(tour_request(catalog), "u-1")


def test_unknown_promo_fails_the_quote(svc, catalog):
    with pytest.raises(PromoCodeError):
        svc.quote(tour_request(catalog, promo_code="NOPE"), "u-1")


def test_quote_validation(svc, catalog):
    with pytest.raises(ValidationError):
        svc.quote(tour_request(catalog, booking_date=date(2026, 3, 1)), "u-1")
    with pytest.raises(ValidationError):
        svc.quote(tour_request(catalog, addons=(AddonRequest("caviar"),)), "u-1")
    with pytest.raises(ValidationError):
        svc.quote(tour_request(catalog, addons=(AddonRequest("jetski"),)), "u-1")
    with pytest.raises(NotFound):
        svc.quote(tour_request(catalog, bookable_id=999), "u-1")


def test_vessel_is_priced_per_hour_with_minimum(svc, catalog):
    req = QuoteRequest(
        bookable_kind="vessel",
        bookable_id=catalog["vessel"],
        booking_date=TRIP_DATE,
        adults=4,
        duration_hours=Decimal("3"),
        addons=(AddonRequest("jetski", quantity=2), AddonRequest("snorkel", quantity=4)),
    )
    b = svc.quote(req, None).breakdown
    assert b.base == Decimal("20000.00")  # 4h minimum
    assert b.addons_total == Decimal("6600.00")  # 1000 x 3h x 2 + 150 x 4

    with pytest.raises(ValidationError):
        svc.quote(QuoteRequest(bookable_kind="vessel", bookable_id=catalog["vessel"], booking_date=TRIP_DATE), None)


def test_loyalty_tier_follows_booking_history(engine, svc, catalog):
    for _ in range(3):
        b = book(svc, catalog, user_id="u-9")
        svc.transition(b.reference, BookingStatus.PAID, Actor.SYSTEM)
    assert svc.loyalty_of("u-9").tier.slug == "bronze"  # 3 bookings but only 4200 spent

    with session(engine) as s:
        for b in s.query(Booking).filter(Booking.user_id == "u-9"):
            b.final_total = Decimal("20000")
        s.commit()

    standing = svc.loyalty_of("u-9")
    assert standing.tier.slug == "silver"
    q = svc.quote(tour_request(catalog), "u-9")
    assert q.breakdown.loyalty_discount == Decimal("28.00")
    assert q.breakdown.cashback_earned == Decimal("96.04")


def test_free_cancellation_window_follows_tier(svc, catalog):
    b = book(svc, catalog, start_time=datetime(2026, 4, 4, 9, 0).time())
    assert b.free_cancellation_until == datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc)


def test_payment_webhook_is_applied_once(engine, svc, catalog):
    b = book(svc, catalog)
    svc.transition(b.reference, BookingStatus.CONFIRMED, Actor.ADMIN, actor_id="staff-1")

    first = svc.handle_payment_event("evt_1", b.reference, "succeeded", payment_method="card", payment_reference="ch_1")
    again = svc.handle_payment_event("evt_1", b.reference, "succeeded")
    replay = svc.handle_payment_event("evt_2", b.reference, "succeeded")

    assert not first.duplicate and first.result.changed
    assert again.duplicate and again.result is None
    assert not replay.duplicate and not replay.result.changed
    booking = svc.get_booking(b.reference)
    assert (booking.status, booking.payment_method, booking.payment_reference) == (BookingStatus.PAID, "card", "ch_1")
    assert svc.balance_of("u-1") == booking.cashback_earned


def test_auto_complete_past_paid_bookings(engine, svc, catalog, clock):
    b = book(svc, catalog)
    svc.transition(b.reference, BookingStatus.PAID, Actor.SYSTEM)
    assert svc.auto_complete_bookings() == []

    clock.now = datetime(2026, 4, 5, 8, 0, tzinfo=timezone.utc)
    svc.auto_complete_bookings()

    booking = svc.get_booking(b.reference)
    assert booking.status == BookingStatus.COMPLETED
    assert svc.history_of(b.reference)[-1].actor_type == Actor.SYSTEM


def test_admin_notes_are_appended(svc, catalog, clock):
    b = book(svc, catalog)
    svc.add_note(b.reference, "Guest is vegetarian", author="staff-1")
    clock.now += timedelta(minutes=5)
    booking = svc.add_note(b.reference, "Pickup moved to 8:30", author="staff-2")

    assert [(n["text"], n["author"]) for n in booking.admin_notes] == [
        ("Guest is vegetarian", "staff-1"),
        ("Pickup moved to 8:30", "staff-2"),
    ]
    assert booking.status == BookingStatus.PENDING
    assert len(svc.history_of(b.reference)) == 1


def test_allowed_transitions_for_a_booking(svc, catalog):
    b = book(svc, catalog)
    assert svc.allowed_transitions(b.reference, Actor.USER, "u-1") == [{"status": "cancelled", "requires_reason": True}]
    with pytest.raises(NotFound):
        svc.allowed_transitions(b.reference, Actor.USER, "u-2")
