"""
Core facade: one unit of work per call.

Each method opens its own session on the injected engine, commits on
success and returns detached values (sessions never expire on commit). Any
exception leaves the store untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from . import giftcards, pricing
from .db import session
from .errors import NotFound, ValidationError
from .ledger import CashbackLedger, GiftCardLedger
from .lifecycle import Actor, BookingStatus, allowed_targets
from .loyalty import LoyaltyStanding, standing_of
from .models import Booking, BookingStatusHistory, GiftCard, PaymentEvent, utcnow
from .persistence import active_rules, bookable_ref, get_bookable
from .quotes import Quote, QuoteRequest, base_rate_for, make_quote
from .state_machine import BookingStateMachine, OutboundEvent, TransitionResult

logger = logging.getLogger(__name__)

# Gateway payment statuses that move a booking.
PAYMENT_STATUS_MAP = {
    "paid": BookingStatus.PAID,
    "succeeded": BookingStatus.PAID,
    "refunded": BookingStatus.REFUNDED,
}


@dataclass(frozen=True)
class PaymentOutcome:
    duplicate: bool
    result: TransitionResult | None = None


class BookingService:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    # -- pricing -----------------------------------------------------------

    def quote(self, req: QuoteRequest, user_id: str | None) -> Quote:
        with session(self.engine) as s:
            return make_quote(s, req, user_id, self.clock())

    def price_calendar(
        self,
        kind: str,
        bookable_id: int,
        year: int,
        month: int,
        party_size: int = 1,
        duration_hours: Decimal | None = None,
    ) -> list[pricing.CalendarDay]:
        if not 1 <= month <= 12:
            raise ValidationError("month must be between 1 and 12", field="month")
        if party_size < 1:
            raise ValidationError("party_size must be >= 1", field="party_size")
        with session(self.engine) as s:
            bookable = get_bookable(s, kind, bookable_id)
            if bookable is None:
                raise NotFound("Bookable not found", bookable_kind=kind, bookable_id=bookable_id)
            if kind == "vessel" and duration_hours is None:
                duration_hours = Decimal(bookable.min_hours or 1)
            today = self.clock().date()
            req = QuoteRequest(
                bookable_kind=kind,
                bookable_id=bookable_id,
                booking_date=today,
                adults=party_size,
                duration_hours=duration_hours,
            )
            return pricing.price_calendar(
                base_rate_for(bookable, req),
                bookable_ref(bookable),
                year,
                month,
                active_rules(s),
                today=today,
                party_size=party_size,
                duration_hours=duration_hours,
            )

    # -- lifecycle ---------------------------------------------------------

    def confirm(self, quote: Quote, user_id: str) -> TransitionResult:
        with session(self.engine) as s:
            result = BookingStateMachine(s, self.clock).open(quote, user_id)
            s.commit()
            return result

    def transition(
        self,
        reference: str,
        new_status: BookingStatus | str,
        actor: Actor | str,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        with session(self.engine) as s:
            result = BookingStateMachine(s, self.clock).transition(reference, new_status, actor, actor_id, reason)
            s.commit()
            return result

    def handle_payment_event(
        self,
        event_id: str,
        reference: str,
        status: str,
        payment_method: str | None = None,
        payment_reference: str | None = None,
    ) -> PaymentOutcome:
        """Apply one gateway delivery at most once, keyed by the gateway event id."""
        with session(self.engine) as s:
            if s.get(PaymentEvent, event_id) is not None:
                logger.info("Duplicate payment event %s ignored", event_id)
                return PaymentOutcome(duplicate=True)
            try:
                with s.begin_nested():
                    s.add(PaymentEvent(event_id=event_id, booking_reference=reference, status=status, received_at=self.clock()))
            except IntegrityError:
                logger.info("Duplicate payment event %s ignored", event_id)
                return PaymentOutcome(duplicate=True)

            target = PAYMENT_STATUS_MAP.get(status.strip().lower())
            if target is None:
                s.commit()
                logger.info("Payment event %s (%s) recorded without a status change", event_id, status)
                return PaymentOutcome(duplicate=False)

            sm = BookingStateMachine(s, self.clock)
            b = sm.lock(reference)
            if payment_method and b.payment_method is None:
                b.payment_method = payment_method
            if payment_reference and b.payment_reference is None:
                b.payment_reference = payment_reference
            reason = "refunded by payment gateway" if target == BookingStatus.REFUNDED else None
            result = sm.transition(reference, target, Actor.SYSTEM, actor_id=f"gateway:{event_id}", reason=reason)
            s.commit()
            return PaymentOutcome(duplicate=False, result=result)

    # -- reads -------------------------------------------------------------

    def _visible(self, s, reference: str, actor: Actor, actor_id: str | None) -> Booking:
        b = s.query(Booking).filter(Booking.reference == reference).first()
        if b is None or (actor == Actor.USER and b.user_id != actor_id):
            raise NotFound("Booking not found", reference=reference)
        return b

    def get_booking(self, reference: str, actor: Actor = Actor.ADMIN, actor_id: str | None = None) -> Booking:
        with session(self.engine) as s:
            return self._visible(s, reference, Actor(actor), actor_id)

    def history_of(
        self, reference: str, actor: Actor = Actor.ADMIN, actor_id: str | None = None
    ) -> list[BookingStatusHistory]:
        with session(self.engine) as s:
            b = self._visible(s, reference, Actor(actor), actor_id)
            return (
                s.query(BookingStatusHistory)
                .filter(BookingStatusHistory.booking_id == b.id)
                .order_by(BookingStatusHistory.id.asc())
                .all()
            )

    def allowed_transitions(self, reference: str, actor: Actor, actor_id: str | None = None) -> list[dict]:
        actor = Actor(actor)
        with session(self.engine) as s:
            b = self._visible(s, reference, actor, actor_id)
            return [
                {"status": new.value, "requires_reason": rule.requires_reason}
                for new, rule in allowed_targets(b.status, actor)
            ]

    def add_note(self, reference: str, text: str, author: str) -> Booking:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Note text is required", field="text")
        with session(self.engine) as s:
            b = BookingStateMachine(s, self.clock).lock(reference)
            now = self.clock()
            # reassign so the JSON column is flagged dirty
            b.admin_notes = [*(b.admin_notes or []), {"text": text, "author": author, "time": now.isoformat()}]
            b.updated_at = now
            s.commit()
            return b

    def loyalty_of(self, user_id: str) -> LoyaltyStanding:
        with session(self.engine) as s:
            return standing_of(s, user_id)

    # -- balances ----------------------------------------------------------

    def balance_of(self, owner: str) -> Decimal:
        with session(self.engine) as s:
            return CashbackLedger(s).balance_of(owner)

    def cashback_history(self, owner: str) -> list:
        with session(self.engine) as s:
            return CashbackLedger(s).history(owner)

    def gift_card(self, code: str) -> tuple[GiftCard, Decimal]:
        code = giftcards.normalize_code(code)
        with session(self.engine) as s:
            card = s.query(GiftCard).filter(GiftCard.code == code).first()
            if card is None:
                raise NotFound("Gift card not found", code=code)
            return card, GiftCardLedger(s).balance_of(code)

    def issue_gift_card(
        self,
        amount: Decimal,
        valid_months: int = 12,
        applies_to: str = "all",
        min_order: Decimal | None = None,
        recipient_email: str | None = None,
    ) -> GiftCard:
        with session(self.engine) as s:
            card = giftcards.issue_gift_card(
                s,
                amount,
                valid_months=valid_months,
                applies_to=applies_to,
                min_order=min_order,
                recipient_email=recipient_email,
                today=self.clock().date(),
            )
            s.commit()
            return card

    # -- scheduled jobs ----------------------------------------------------

    def auto_complete_bookings(self, today: date | None = None) -> list[OutboundEvent]:
        """Complete paid bookings whose date has passed."""
        today = today or self.clock().date()
        events: list[OutboundEvent] = []
        with session(self.engine) as s:
            refs = [
                r
                for (r,) in s.query(Booking.reference)
                .filter(Booking.status == BookingStatus.PAID, Booking.booking_date < today)
                .order_by(Booking.id.asc())
                .all()
            ]
            sm = BookingStateMachine(s, self.clock)
            for ref in refs:
                result = sm.transition(ref, BookingStatus.COMPLETED, Actor.SYSTEM, actor_id="scheduler")
                events.extend(result.events)
            s.commit()
        if refs:
            logger.info("Auto-completed %s booking(s)", len(refs))
        return events

    def expire_gift_cards(self, today: date | None = None) -> list[str]:
        with session(self.engine) as s:
            codes = giftcards.expire_gift_cards(s, today or self.clock().date())
            s.commit()
            return codes
