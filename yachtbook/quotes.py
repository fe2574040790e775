"""
Quote composition: catalog lookup, the pricing engine, then discounts.

Discounts apply in a fixed order, each on what is left after the previous
one: promo code, loyalty extra discount, spent cashback, gift card. Nothing
here writes to the store.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from . import pricing
from .errors import NotFound, ValidationError
from .giftcards import GiftCardRedeemer
from .ledger import CashbackLedger
from .loyalty import LoyaltyTier, standing_of
from .models import Bookable
from .persistence import active_rules, addons_by_code, bookable_ref, get_bookable
from .pricing import ZERO, AddonSelection, PriceLine, PricingContext, money, percent_of
from .promos import PromoCandidate, PromoCodeValidator

CURRENCY = os.getenv("CURRENCY", "THB")
CASHBACK_MAX_SHARE = Decimal(os.getenv("CASHBACK_MAX_SHARE", "0.5"))


@dataclass(frozen=True)
class AddonRequest:
    code: str
    quantity: int = 1


@dataclass(frozen=True)
class QuoteRequest:
    bookable_kind: str
    bookable_id: int
    booking_date: date
    adults: int = 1
    children: int = 0
    duration_hours: Decimal | None = None
    start_time: time | None = None
    addons: tuple[AddonRequest, ...] = ()
    promo_code: str | None = None
    gift_card_code: str | None = None
    use_cashback: Decimal = ZERO

    @property
    def party_size(self) -> int:
        return self.adults + self.children


@dataclass(frozen=True)
class PriceBreakdown:
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
    currency: str = CURRENCY
    loyalty_tier: str | None = None
    promo_code_id: int | None = None
    applied_rule_ids: tuple[int, ...] = ()
    lines: tuple[PriceLine, ...] = ()

    def amounts(self) -> tuple:
        """Everything a confirmation must reproduce exactly."""
        return (
            self.base,
            self.addons_total,
            self.dynamic_adjustment,
            self.promo_discount,
            self.loyalty_discount,
            self.cashback_spent,
            self.gift_card_amount,
            self.final_total,
            self.cashback_earned,
            self.currency,
            self.loyalty_tier,
            tuple(self.applied_rule_ids),
        )


@dataclass(frozen=True)
class Quote:
    quote_id: str
    user_id: str | None
    request: QuoteRequest
    breakdown: PriceBreakdown
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


def base_rate_for(bookable: Bookable, req: QuoteRequest) -> Decimal:
    if bookable.kind == "vessel":
        if req.duration_hours is None or req.duration_hours <= 0:
            raise ValidationError("Vessel bookings need a positive duration_hours", field="duration_hours")
        hours = max(Decimal(req.duration_hours), Decimal(bookable.min_hours or 0))
        return money(Decimal(bookable.base_price) * hours)

    child_price = bookable.child_price if bookable.child_price is not None else bookable.base_price
    return money(Decimal(bookable.base_price) * req.adults + Decimal(child_price) * req.children)


def _validate_request(req: QuoteRequest, today: date) -> None:
    if req.bookable_kind not in ("vessel", "tour"):
        raise ValidationError("bookable_kind must be vessel or tour", field="bookable_kind")
    if req.adults < 1:
        raise ValidationError("At least one adult is required", field="adults")
    if req.children < 0:
        raise ValidationError("children must be >= 0", field="children")
    if req.booking_date < today:
        raise ValidationError("Booking date is in the past", field="booking_date")
    if req.use_cashback < 0:
        raise ValidationError("use_cashback must be >= 0", field="use_cashback")
    for a in req.addons:
        if a.quantity < 1:
            raise ValidationError(f"Add-on {a.code}: quantity must be >= 1", field="addons")


def _addon_selections(s: Session, req: QuoteRequest, item: pricing.BookableRef) -> list[AddonSelection]:
    catalog = addons_by_code(s, [a.code for a in req.addons])
    out: list[AddonSelection] = []
    for a in req.addons:
        row = catalog.get(a.code)
        if row is None:
            raise ValidationError(f"Unknown add-on {a.code}", field="addons", addon=a.code)
        if row.applies_to not in ("all", item.scope):
            raise ValidationError(f"Add-on {a.code} is not available for this booking", field="addons", addon=a.code)
        out.append(
            AddonSelection(
                code=row.code,
                name=row.name,
                unit_price=Decimal(row.unit_price),
                pricing_type=row.pricing_type,
                quantity=a.quantity,
            )
        )
    return out


def price_request(s: Session, req: QuoteRequest, user_id: str | None, now: datetime) -> PriceBreakdown:
    today = now.date()
    _validate_request(req, today)

    bookable = get_bookable(s, req.bookable_kind, req.bookable_id)
    if bookable is None:
        raise NotFound(f"{req.bookable_kind.capitalize()} not found", bookable_kind=req.bookable_kind, bookable_id=req.bookable_id)
    item = bookable_ref(bookable)

    ctx = PricingContext(
        item=item,
        booking_date=req.booking_date,
        today=today,
        party_size=req.party_size,
        duration_hours=req.duration_hours,
    )
    # Malformed rule rows surface as server errors, not as bad input.
    rules = active_rules(s)
    base_rate = base_rate_for(bookable, req)
    addons = _addon_selections(s, req, item)
    try:
        result = pricing.price(base_rate, addons, ctx, rules)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    lines = list(result.lines)
    remaining = result.subtotal

    promo_discount, promo_id = ZERO, None
    if req.promo_code:
        v = PromoCodeValidator(s).validate(req.promo_code, PromoCandidate(item, result.subtotal), user_id or "", now)
        v.raise_for_error()
        promo_discount, promo_id = v.discount, v.promo_id
        remaining -= promo_discount
        lines.append(PriceLine(code="promo", description=f"Promo code {v.code}", amount=-promo_discount))

    tier: LoyaltyTier | None = standing_of(s, user_id).tier if user_id else None
    loyalty_discount = ZERO
    if tier is not None and tier.extra_discount_percent > 0:
        loyalty_discount = percent_of(remaining, tier.extra_discount_percent)
        remaining -= loyalty_discount
        lines.append(PriceLine(code="loyalty", description=f"{tier.name} member discount", amount=-loyalty_discount))

    cashback_spent = ZERO
    requested = money(req.use_cashback)
    if requested > 0:
        if not user_id:
            raise ValidationError("Sign in to spend cashback", field="use_cashback")
        cap = money(remaining * CASHBACK_MAX_SHARE)
        cashback_spent = min(requested, CashbackLedger(s).balance_of(user_id), cap)
        if cashback_spent > 0:
            remaining -= cashback_spent
            lines.append(PriceLine(code="cashback", description="Cashback applied", amount=-cashback_spent))

    gift_card_amount = ZERO
    if req.gift_card_code:
        r = GiftCardRedeemer(s).quote(req.gift_card_code, remaining, item, today)
        r.raise_for_error()
        gift_card_amount = r.amount
        remaining -= gift_card_amount
        lines.append(PriceLine(code="gift_card", description=f"Gift card {r.code}", amount=-gift_card_amount))

    final_total = remaining
    cashback_earned = percent_of(final_total, tier.cashback_percent) if tier is not None else ZERO

    breakdown = PriceBreakdown(
        base=result.base,
        addons_total=result.addons_total,
        dynamic_adjustment=result.dynamic_adjustment,
        subtotal=result.subtotal,
        promo_discount=promo_discount,
        loyalty_discount=loyalty_discount,
        cashback_spent=cashback_spent,
        gift_card_amount=gift_card_amount,
        final_total=final_total,
        cashback_earned=cashback_earned,
        currency=CURRENCY,
        loyalty_tier=tier.slug if tier is not None else None,
        promo_code_id=promo_id,
        applied_rule_ids=tuple(r.rule_id for r in result.applied_rules),
        lines=tuple(lines),
    )
    _check_totals(breakdown)
    return breakdown


def _check_totals(b: PriceBreakdown) -> None:
    expected = (
        b.base
        + b.addons_total
        + b.dynamic_adjustment
        - b.promo_discount
        - b.gift_card_amount
        - b.loyalty_discount
        - b.cashback_spent
    )
    if b.final_total != expected or b.final_total < 0:
        raise AssertionError(f"price breakdown does not add up: {b.final_total} != {expected}")


def make_quote(s: Session, req: QuoteRequest, user_id: str | None, now: datetime | None = None) -> Quote:
    now = now or datetime.now(tz=timezone.utc)
    return Quote(
        quote_id=uuid.uuid4().hex,
        user_id=user_id,
        request=req,
        breakdown=price_request(s, req, user_id, now),
        created_at=now,
    )
