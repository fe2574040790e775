"""
BookingStateMachine: the only writer of booking status, ledgers and promo
usage counters.

Every call runs inside the caller's session and leaves committing to the
caller; nothing is published from here. Outward notifications come back as
`OutboundEvent` values for the caller to publish once the commit succeeded.
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import InvalidTransition, NotFound, QuoteChanged, ReasonRequired, ValidationError
from .giftcards import GiftCardRedeemer
from .ledger import CashbackLedger
from .lifecycle import MILESTONES, TRANSITIONS, Actor, BookingStatus, Effect
from .loyalty import load_tiers
from .models import Booking, BookableStats, BookingStatusHistory, utcnow
from .persistence import bookable_ref, get_bookable
from .pricing import ZERO, money
from .promos import PromoCandidate, PromoCodeValidator
from .quotes import Quote, price_request

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class OutboundEvent:
    routing_key: str
    audience: str  # user|admin|gateway
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransitionResult:
    booking: Booking
    events: tuple[OutboundEvent, ...] = ()
    changed: bool = True


class BookingStateMachine:
    def __init__(self, s: Session, clock: Callable[[], datetime] = utcnow):
        self.s = s
        self.clock = clock
        self.cashback = CashbackLedger(s)

    # -- helpers -----------------------------------------------------------

    def lock(self, reference: str) -> Booking:
        b = (
            self.s.query(Booking)
            .filter(Booking.reference == reference)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if b is None:
            raise NotFound("Booking not found", reference=reference)
        return b

    def _new_reference(self, now: datetime) -> str:
        while True:
            ref = f"YB-{now.year}-" + "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(6))
            if self.s.query(Booking.id).filter(Booking.reference == ref).first() is None:
                return ref

    def _history(self, b: Booking, old: BookingStatus | None, actor: Actor, actor_id: str | None, reason: str | None, now: datetime) -> None:
        self.s.add(
            BookingStatusHistory(
                booking_id=b.id,
                old_status=old,
                new_status=b.status,
                actor_type=actor,
                actor_id=actor_id,
                reason=reason,
                created_at=now,
            )
        )

    @staticmethod
    def _status_payload(b: Booking, old: BookingStatus | None, reason: str | None) -> dict[str, Any]:
        return {
            "reference": b.reference,
            "user_id": b.user_id,
            "bookable_kind": b.bookable_kind,
            "bookable_id": b.bookable_id,
            "booking_date": b.booking_date.isoformat(),
            "old_status": old.value if old is not None else None,
            "new_status": b.status.value,
            "final_total": str(b.final_total),
            "currency": b.currency,
            "reason": reason,
        }

    # -- opening -----------------------------------------------------------

    def open(self, quote: Quote, user_id: str, actor: Actor = Actor.USER) -> TransitionResult:
        """
        Persist a quote as a `pending` booking.

        Confirming the same quote again returns the booking created the
        first time. The quote is re-priced here and must match exactly.
        """
        replay = self._already_opened(quote.quote_id, user_id)
        if replay is not None:
            return replay

        if quote.user_id is None:
            raise ValidationError("Quote was requested without signing in; request a new quote while signed in", field="quote_id")
        if quote.user_id != user_id:
            raise ValidationError("Quote was issued to another user", field="quote_id")

        now = self.clock()
        req = quote.request
        current = price_request(self.s, req, user_id, now)
        if current.amounts() != quote.breakdown.amounts():
            raise QuoteChanged(
                "Prices changed since the quote was issued; request a new quote",
                quote_id=quote.quote_id,
                quoted_total=quote.breakdown.final_total,
                current_total=current.final_total,
            )

        b = Booking(
            reference=self._new_reference(now),
            quote_id=quote.quote_id,
            user_id=user_id,
            bookable_kind=req.bookable_kind,
            bookable_id=req.bookable_id,
            booking_date=req.booking_date,
            start_time=req.start_time,
            duration_hours=req.duration_hours,
            adults=req.adults,
            children=req.children,
            currency=current.currency,
            base=current.base,
            addons_total=current.addons_total,
            dynamic_adjustment=current.dynamic_adjustment,
            promo_discount=current.promo_discount,
            gift_card_amount=current.gift_card_amount,
            loyalty_discount=current.loyalty_discount,
            cashback_spent=current.cashback_spent,
            cashback_earned=current.cashback_earned,
            final_total=current.final_total,
            cashback_status="pending" if current.cashback_earned > 0 else "none",
            addons=[{"code": a.code, "quantity": a.quantity} for a in req.addons],
            price_lines=[{"code": l.code, "description": l.description, "amount": str(l.amount)} for l in current.lines],
            applied_rule_ids=list(current.applied_rule_ids),
            promo_code_id=current.promo_code_id,
            gift_card_code=req.gift_card_code.strip().upper() if req.gift_card_code else None,
            loyalty_tier=current.loyalty_tier,
            status=BookingStatus.PENDING,
            free_cancellation_until=self._free_cancellation_until(req.booking_date, req.start_time, current.loyalty_tier),
            admin_notes=[],
            created_at=now,
            updated_at=now,
        )
        try:
            with self.s.begin_nested():
                self.s.add(b)
        except IntegrityError:
            # A concurrent confirm of the same quote committed first.
            replay = self._already_opened(quote.quote_id, user_id)
            if replay is None:
                raise
            return replay

        item = bookable_ref(get_bookable(self.s, req.bookable_kind, req.bookable_id))
        if req.promo_code:
            PromoCodeValidator(self.s).consume(req.promo_code, PromoCandidate(item, current.subtotal), user_id, b.id, now)
        if current.cashback_spent > 0:
            self.cashback.debit(user_id, current.cashback_spent, booking_reference=b.reference, reason="applied to booking", type="spend")
        if current.gift_card_amount > 0:
            GiftCardRedeemer(self.s).redeem(
                req.gift_card_code,
                current.gift_card_amount,
                order_amount=current.final_total + current.gift_card_amount,
                item=item,
                today=now.date(),
                booking_reference=b.reference,
            )

        self._history(b, None, actor, user_id, None, now)
        self.s.flush()
        logger.info("Booking %s opened for user %s total=%s %s", b.reference, user_id, b.final_total, b.currency)
        return TransitionResult(
            booking=b,
            events=(OutboundEvent("booking.created", "admin", self._status_payload(b, None, None)),),
            changed=True,
        )

    def _already_opened(self, quote_id: str, user_id: str) -> TransitionResult | None:
        existing = self.s.query(Booking).filter(Booking.quote_id == quote_id).first()
        if existing is None:
            return None
        if existing.user_id != user_id:
            raise ValidationError("Quote was issued to another user", field="quote_id")
        return TransitionResult(booking=existing, events=(), changed=False)

    def _free_cancellation_until(self, booking_date, start_time: time | None, tier_slug: str | None) -> datetime | None:
        if tier_slug is None:
            return None
        tier = next((t for t in load_tiers(self.s) if t.slug == tier_slug), None)
        if tier is None:
            return None
        starts = datetime.combine(booking_date, start_time or time(0, 0), tzinfo=timezone.utc)
        return starts - timedelta(hours=tier.free_cancellation_hours)

    # -- transitions -------------------------------------------------------

    def transition(
        self,
        reference: str,
        new_status: BookingStatus | str,
        actor: Actor | str,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        new_status = BookingStatus(new_status)
        actor = Actor(actor)
        b = self.lock(reference)
        if actor == Actor.USER and b.user_id != actor_id:
            raise NotFound("Booking not found", reference=reference)

        old = b.status
        if old == new_status:
            return TransitionResult(booking=b, events=(), changed=False)

        rule = TRANSITIONS.get((old, new_status))
        if rule is None:
            raise InvalidTransition(old, new_status)
        if actor not in rule.actors:
            raise InvalidTransition(old, new_status, actor)
        reason = (reason or "").strip() or None
        if rule.requires_reason and reason is None:
            raise ReasonRequired(old, new_status)

        now = self.clock()
        b.status = new_status
        events: list[OutboundEvent] = []
        for effect in rule.effects:
            events.extend(self._apply(effect, b, old, reason, now))

        stamp = MILESTONES.get(new_status)
        if stamp is not None and getattr(b, stamp) is None:
            setattr(b, stamp, now)
        if new_status == BookingStatus.CANCELLED:
            b.cancellation_reason = reason
        b.updated_at = now

        self._history(b, old, actor, actor_id, reason, now)
        self.s.flush()
        logger.info("Booking %s %s -> %s by %s", b.reference, old.value, new_status.value, actor.value)
        return TransitionResult(booking=b, events=tuple(events), changed=True)

    # -- side effects ------------------------------------------------------

    def _apply(self, effect: Effect, b: Booking, old: BookingStatus, reason: str | None, now: datetime) -> list[OutboundEvent]:
        if effect == Effect.NOTIFY_USER:
            return [OutboundEvent(f"booking.{b.status.value}", "user", self._status_payload(b, old, reason))]
        if effect == Effect.NOTIFY_ADMIN:
            return [OutboundEvent(f"booking.{b.status.value}", "admin", self._status_payload(b, old, reason))]
        if effect == Effect.REFUND_SPENT_CASHBACK:
            self._return_spent(b, reason, now)
            return []
        if effect == Effect.PROCESS_REFUND:
            self._return_spent(b, reason, now)
            b.refund_amount = money(b.final_total)
            if b.final_total <= 0:
                return []
            return [
                OutboundEvent(
                    "payment.refund_requested",
                    "gateway",
                    {
                        "reference": b.reference,
                        "amount": str(b.final_total),
                        "currency": b.currency,
                        "payment_method": b.payment_method,
                        "payment_reference": b.payment_reference,
                        "reason": reason,
                    },
                )
            ]
        if effect == Effect.CREDIT_EARNED_CASHBACK:
            if b.cashback_status == "pending" and b.cashback_earned > 0:
                self.cashback.credit(b.user_id, b.cashback_earned, booking_reference=b.reference, reason="booking paid", type="earn")
                b.cashback_status = "credited"
            return []
        if effect == Effect.DEDUCT_EARNED_CASHBACK:
            if b.cashback_status == "credited":
                self.cashback.debit(
                    b.user_id, b.cashback_earned, booking_reference=b.reference, reason="earned cashback reversed", type="adjust"
                )
                b.cashback_status = "deducted"
            elif b.cashback_status == "pending":
                b.cashback_status = "void"
            return []
        if effect == Effect.UPDATE_STATS:
            self._update_stats(b)
            return []
        raise AssertionError(f"unhandled effect {effect}")

    def _return_spent(self, b: Booking, reason: str | None, now: datetime) -> None:
        note = reason or f"booking {b.status.value}"
        if b.cashback_spent > 0:
            self.cashback.credit(b.user_id, b.cashback_spent, booking_reference=b.reference, reason=note, type="refund")
        if b.gift_card_amount > 0 and b.gift_card_code:
            GiftCardRedeemer(self.s).refund(b.gift_card_code, b.gift_card_amount, b.reference, note, now.date())
        if b.cashback_status == "pending":
            b.cashback_status = "void"

    def _update_stats(self, b: Booking) -> None:
        stats = (
            self.s.query(BookableStats)
            .filter(BookableStats.bookable_kind == b.bookable_kind, BookableStats.bookable_id == b.bookable_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if stats is None:
            stats = BookableStats(
                bookable_kind=b.bookable_kind, bookable_id=b.bookable_id, completed_count=0, no_show_count=0, revenue=ZERO
            )
            self.s.add(stats)
        if b.status == BookingStatus.COMPLETED:
            stats.completed_count += 1
            stats.revenue = money(Decimal(stats.revenue) + b.final_total)
        elif b.status == BookingStatus.NO_SHOW:
            stats.no_show_count += 1
