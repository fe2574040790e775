from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import events
from .database import get_engine
from .errors import BookingError, NotFound, StateConflict, ValidationError
from .lifecycle import Actor, BookingStatus
from .models import Booking
from .pricing import PriceLine
from .quotes import AddonRequest, PriceBreakdown, Quote, QuoteRequest
from .security import Principal, get_principal, get_principal_optional, issue_token, require_roles
from .service import BookingService

app = FastAPI(
    title="Yacht & Tour Booking Service",
    version="0.1.0",
    description="Quotes, booking confirmation and the booking status lifecycle with cashback, gift-card and promo bookkeeping.",
)


def get_service(engine=Depends(get_engine)) -> BookingService:
    return BookingService(engine)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_CODES: list[tuple[type[BookingError], int]] = [
    (ValidationError, 400),
    (NotFound, 404),
    (StateConflict, 409),
]


@app.exception_handler(BookingError)
async def _booking_error(_request: Request, exc: BookingError):
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status_code, content=exc.as_dict())


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class AddonIn(BaseModel):
    code: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)


class QuoteIn(BaseModel):
    bookable_kind: Literal["vessel", "tour"]
    bookable_id: int
    booking_date: date
    adults: int = Field(default=1, ge=1)
    children: int = Field(default=0, ge=0)
    duration_hours: Decimal | None = Field(default=None, gt=0)
    start_time: time | None = None
    addons: list[AddonIn] = Field(default_factory=list)
    promo_code: str | None = None
    gift_card_code: str | None = None
    use_cashback: Decimal = Field(default=Decimal("0"), ge=0)

    def to_request(self) -> QuoteRequest:
        return QuoteRequest(
            bookable_kind=self.bookable_kind,
            bookable_id=self.bookable_id,
            booking_date=self.booking_date,
            adults=self.adults,
            children=self.children,
            duration_hours=self.duration_hours,
            start_time=self.start_time,
            addons=tuple(AddonRequest(code=a.code, quantity=a.quantity) for a in self.addons),
            promo_code=self.promo_code or None,
            gift_card_code=self.gift_card_code or None,
            use_cashback=self.use_cashback,
        )


class LineOut(BaseModel):
    code: str
    description: str
    amount: Decimal


class BreakdownOut(BaseModel):
    currency: str
    base: Decimal
    addons_total: Decimal
    dynamic_adjustment: Decimal
    subtotal: Decimal
    promo_discount: Decimal
    loyalty_discount: Decimal
    cashback_spent: Decimal
    gift_card_amount: Decimal
    final_total: Decimal
    cashback_earned: Decimal
    loyalty_tier: str | None = None
    promo_code_id: int | None = None
    applied_rule_ids: list[int] = Field(default_factory=list)
    lines: list[LineOut] = Field(default_factory=list)

    @classmethod
    def of(cls, b: PriceBreakdown) -> "BreakdownOut":
        return cls(
            currency=b.currency,
            base=b.base,
            addons_total=b.addons_total,
            dynamic_adjustment=b.dynamic_adjustment,
            subtotal=b.subtotal,
            promo_discount=b.promo_discount,
            loyalty_discount=b.loyalty_discount,
            cashback_spent=b.cashback_spent,
            gift_card_amount=b.gift_card_amount,
            final_total=b.final_total,
            cashback_earned=b.cashback_earned,
            loyalty_tier=b.loyalty_tier,
            promo_code_id=b.promo_code_id,
            applied_rule_ids=list(b.applied_rule_ids),
            lines=[LineOut(code=l.code, description=l.description, amount=l.amount) for l in b.lines],
        )

    def to_breakdown(self) -> PriceBreakdown:
        return PriceBreakdown(
            base=self.base,
            addons_total=self.addons_total,
            dynamic_adjustment=self.dynamic_adjustment,
            subtotal=self.subtotal,
            promo_discount=self.promo_discount,
            loyalty_discount=self.loyalty_discount,
            cashback_spent=self.cashback_spent,
            gift_card_amount=self.gift_card_amount,
            final_total=self.final_total,
            cashback_earned=self.cashback_earned,
            currency=self.currency,
            loyalty_tier=self.loyalty_tier,
            promo_code_id=self.promo_code_id,
            applied_rule_ids=tuple(self.applied_rule_ids),
            lines=tuple(PriceLine(code=l.code, description=l.description, amount=l.amount) for l in self.lines),
        )


class QuoteOut(BaseModel):
    quote_id: str
    user_id: str | None = None
    request: QuoteIn
    breakdown: BreakdownOut
    created_at: datetime


class ConfirmIn(QuoteOut):
    pass


class NoteOut(BaseModel):
    text: str
    author: str
    time: datetime


class BookingOut(BaseModel):
    reference: str
    quote_id: str
    user_id: str
    status: BookingStatus
    bookable_kind: str
    bookable_id: int
    booking_date: date
    start_time: time | None
    duration_hours: Decimal | None
    adults: int
    children: int
    currency: str
    base: Decimal
    addons_total: Decimal
    dynamic_adjustment: Decimal
    promo_discount: Decimal
    gift_card_amount: Decimal
    loyalty_discount: Decimal
    cashback_spent: Decimal
    cashback_earned: Decimal
    final_total: Decimal
    cashback_status: str
    loyalty_tier: str | None
    gift_card_code: str | None
    payment_method: str | None
    payment_reference: str | None
    refund_amount: Decimal | None
    cancellation_reason: str | None
    free_cancellation_until: datetime | None
    created_at: datetime
    updated_at: datetime
    confirmed_at: datetime | None
    paid_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    refunded_at: datetime | None
    no_show_at: datetime | None
    lines: list[LineOut] = Field(default_factory=list)
    admin_notes: list[NoteOut] = Field(default_factory=list)


class TransitionIn(BaseModel):
    status: BookingStatus
    reason: str | None = None


class TransitionOut(BaseModel):
    changed: bool
    booking: BookingOut


class HistoryOut(BaseModel):
    old_status: BookingStatus | None
    new_status: BookingStatus
    actor_type: Actor
    actor_id: str | None
    reason: str | None
    created_at: datetime


class AllowedTransitionOut(BaseModel):
    status: BookingStatus
    requires_reason: bool


class NoteIn(BaseModel):
    text: str = Field(min_length=1, max_length=4000)


class BalanceOut(BaseModel):
    owner: str
    balance: Decimal
    currency: str = "THB"


class GiftCardIn(BaseModel):
    amount: Decimal = Field(gt=0)
    valid_months: int = Field(default=12, ge=1, le=60)
    applies_to: Literal["all", "vessels", "tours"] = "all"
    min_order: Decimal | None = Field(default=None, ge=0)
    recipient_email: str | None = None


class GiftCardOut(BaseModel):
    code: str
    status: str
    initial_amount: Decimal
    balance: Decimal
    valid_from: date
    valid_until: date
    applies_to: str


class CalendarDayOut(BaseModel):
    day: date
    subtotal: Decimal
    adjustment: Decimal
    rules_applied: int


class PaymentWebhookIn(BaseModel):
    event_id: str = Field(min_length=1)
    reference: str = Field(min_length=1)
    status: str = Field(min_length=1)
    payment_method: str | None = None
    payment_reference: str | None = None


class PaymentWebhookOut(BaseModel):
    duplicate: bool
    changed: bool
    status: BookingStatus | None = None


class DevTokenIn(BaseModel):
    sub: str = Field(min_length=1)
    role: Actor = Actor.USER


def _booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        reference=b.reference,
        quote_id=b.quote_id,
        user_id=b.user_id,
        status=b.status,
        bookable_kind=b.bookable_kind,
        bookable_id=b.bookable_id,
        booking_date=b.booking_date,
        start_time=b.start_time,
        duration_hours=b.duration_hours,
        adults=b.adults,
        children=b.children,
        currency=b.currency,
        base=b.base,
        addons_total=b.addons_total,
        dynamic_adjustment=b.dynamic_adjustment,
        promo_discount=b.promo_discount,
        gift_card_amount=b.gift_card_amount,
        loyalty_discount=b.loyalty_discount,
        cashback_spent=b.cashback_spent,
        cashback_earned=b.cashback_earned,
        final_total=b.final_total,
        cashback_status=b.cashback_status,
        loyalty_tier=b.loyalty_tier,
        gift_card_code=b.gift_card_code,
        payment_method=b.payment_method,
        payment_reference=b.payment_reference,
        refund_amount=b.refund_amount,
        cancellation_reason=b.cancellation_reason,
        free_cancellation_until=b.free_cancellation_until,
        created_at=b.created_at,
        updated_at=b.updated_at,
        confirmed_at=b.confirmed_at,
        paid_at=b.paid_at,
        completed_at=b.completed_at,
        cancelled_at=b.cancelled_at,
        refunded_at=b.refunded_at,
        no_show_at=b.no_show_at,
        lines=[LineOut(**l) for l in (b.price_lines or [])],
        admin_notes=[NoteOut(**n) for n in (b.admin_notes or [])],
    )


def _user_scope(principal: Principal) -> tuple[Actor, str]:
    return principal.actor, principal.sub


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/dev/token")
def dev_token(payload: DevTokenIn):
    return {"access_token": issue_token(sub=payload.sub, role=payload.role), "token_type": "bearer"}


@app.post("/quote", response_model=QuoteOut)
def create_quote(
    payload: QuoteIn,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Optional[Principal], Depends(get_principal_optional)] = None,
):
    user_id = principal.sub if principal is not None and principal.actor == Actor.USER else None
    q = svc.quote(payload.to_request(), user_id)
    return QuoteOut(
        quote_id=q.quote_id,
        user_id=q.user_id,
        request=payload,
        breakdown=BreakdownOut.of(q.breakdown),
        created_at=q.created_at,
    )


@app.post("/bookings", response_model=BookingOut)
async def confirm_booking(
    payload: ConfirmIn,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Principal, Depends(require_roles(Actor.USER))],
):
    quote = Quote(
        quote_id=payload.quote_id,
        user_id=payload.user_id,
        request=payload.request.to_request(),
        breakdown=payload.breakdown.to_breakdown(),
        created_at=payload.created_at,
    )
    result = svc.confirm(quote, principal.sub)
    await events.publish_all(result.events)
    return _booking_out(result.booking)


@app.get("/bookings/{reference}", response_model=BookingOut)
def get_booking(
    reference: str,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Principal, Depends(get_principal)],
):
    actor, actor_id = _user_scope(principal)
    return _booking_out(svc.get_booking(reference, actor, actor_id))


@app.post("/bookings/{reference}/transitions", response_model=TransitionOut)
async def transition_booking(
    reference: str,
    payload: TransitionIn,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Principal, Depends(get_principal)],
):
    actor, actor_id = _user_scope(principal)
    result = svc.transition(reference, payload.status, actor, actor_id=actor_id, reason=payload.reason)
    await events.publish_all(result.events)
    return TransitionOut(changed=result.changed, booking=_booking_out(result.booking))


@app.get("/bookings/{reference}/history", response_model=list[HistoryOut])
def booking_history(
    reference: str,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Principal, Depends(get_principal)],
):
    actor, actor_id = _user_scope(principal)
    return [
        HistoryOut(
            old_status=h.old_status,
            new_status=h.new_status,
            actor_type=h.actor_type,
            actor_id=h.actor_id,
            reason=h.reason,
            created_at=h.created_at,
        )
        for h in svc.history_of(reference, actor, actor_id)
    ]


@app.get("/bookings/{reference}/allowed-transitions", response_model=list[AllowedTransitionOut])
def booking_allowed_transitions(
    reference: str,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Principal, Depends(get_principal)],
):
    actor, actor_id = _user_scope(principal)
    return svc.allowed_transitions(reference, actor, actor_id)


@app.post("/bookings/{reference}/notes", response_model=BookingOut)
def add_booking_note(
    reference: str,
    payload: NoteIn,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Principal, Depends(require_roles(Actor.ADMIN, Actor.VENDOR))],
):
    return _booking_out(svc.add_note(reference, payload.text, author=principal.sub))


@app.get("/cashback/{owner}/balance", response_model=BalanceOut)
def cashback_balance(
    owner: str,
    svc: Annotated[BookingService, Depends(get_service)],
    principal: Annotated[Principal, Depends(get_principal)],
):
    actor, actor_id = _user_scope(principal)
    if actor == Actor.USER and owner != actor_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return BalanceOut(owner=owner, balance=svc.balance_of(owner))


@app.get("/gift-cards/{code}", response_model=GiftCardOut)
def get_gift_card(code: str, svc: Annotated[BookingService, Depends(get_service)]):
    card, balance = svc.gift_card(code)
    return GiftCardOut(
        code=card.code,
        status=card.status,
        initial_amount=card.initial_amount,
        balance=balance,
        valid_from=card.valid_from,
        valid_until=card.valid_until,
        applies_to=card.applies_to,
    )


@app.post("/gift-cards", response_model=GiftCardOut)
def create_gift_card(
    payload: GiftCardIn,
    svc: Annotated[BookingService, Depends(get_service)],
    _principal: Annotated[Principal, Depends(require_roles(Actor.ADMIN))],
):
    card = svc.issue_gift_card(
        payload.amount,
        valid_months=payload.valid_months,
        applies_to=payload.applies_to,
        min_order=payload.min_order,
        recipient_email=payload.recipient_email,
    )
    return GiftCardOut(
        code=card.code,
        status=card.status,
        initial_amount=card.initial_amount,
        balance=card.balance,
        valid_from=card.valid_from,
        valid_until=card.valid_until,
        applies_to=card.applies_to,
    )


@app.get("/bookables/{kind}/{bookable_id}/calendar", response_model=list[CalendarDayOut])
def price_calendar(
    kind: Literal["vessel", "tour"],
    bookable_id: int,
    year: int,
    month: int,
    svc: Annotated[BookingService, Depends(get_service)],
    party_size: int = 1,
    duration_hours: Decimal | None = None,
):
    days = svc.price_calendar(kind, bookable_id, year, month, party_size=party_size, duration_hours=duration_hours)
    return [CalendarDayOut(day=d.day, subtotal=d.subtotal, adjustment=d.adjustment, rules_applied=d.rules_applied) for d in days]


@app.post("/webhooks/payments", response_model=PaymentWebhookOut)
async def payment_webhook(
    payload: PaymentWebhookIn,
    svc: Annotated[BookingService, Depends(get_service)],
    _principal: Annotated[Principal, Depends(require_roles(Actor.SYSTEM))],
):
    outcome = svc.handle_payment_event(
        payload.event_id,
        payload.reference,
        payload.status,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
    )
    if outcome.result is None:
        return PaymentWebhookOut(duplicate=outcome.duplicate, changed=False)
    await events.publish_all(outcome.result.events)
    return PaymentWebhookOut(duplicate=False, changed=outcome.result.changed, status=outcome.result.booking.status)
