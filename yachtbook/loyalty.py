from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from .lifecycle import BookingStatus
from .models import Booking, LoyaltyTierRow
from .pricing import money

# Bookings that count towards a tier.
QUALIFYING_STATUSES = (BookingStatus.PAID, BookingStatus.COMPLETED)


@dataclass(frozen=True)
class LoyaltyTier:
    slug: str
    name: str
    min_bookings: int
    min_spent: Decimal
    cashback_percent: Decimal
    extra_discount_percent: Decimal
    free_cancellation_hours: int


DEFAULT_TIERS: tuple[LoyaltyTier, ...] = (
    LoyaltyTier("bronze", "Bronze", 0, Decimal("0"), Decimal("5"), Decimal("0"), 48),
    LoyaltyTier("silver", "Silver", 3, Decimal("50000"), Decimal("7"), Decimal("2"), 72),
    LoyaltyTier("gold", "Gold", 7, Decimal("150000"), Decimal("10"), Decimal("5"), 96),
    LoyaltyTier("platinum", "Platinum", 15, Decimal("500000"), Decimal("15"), Decimal("10"), 168),
)


@dataclass(frozen=True)
class LoyaltyStanding:
    tier: LoyaltyTier
    bookings: int
    spent: Decimal


def tier_for(bookings: int, spent: Decimal, tiers: tuple[LoyaltyTier, ...] = DEFAULT_TIERS) -> LoyaltyTier:
    """Highest tier whose booking-count and spend thresholds are both met."""
    ordered = sorted(tiers, key=lambda t: (t.min_bookings, t.min_spent))
    best = ordered[0]
    for t in ordered:
        if bookings >= t.min_bookings and spent >= t.min_spent:
            best = t
    return best


def load_tiers(s: Session) -> tuple[LoyaltyTier, ...]:
    rows = (
        s.query(LoyaltyTierRow)
        .filter(LoyaltyTierRow.is_active.is_(True))
        .order_by(LoyaltyTierRow.sort_order.asc(), LoyaltyTierRow.id.asc())
        .all()
    )
    if not rows:
        return DEFAULT_TIERS
    return tuple(
        LoyaltyTier(
            slug=r.slug,
            name=r.name,
            min_bookings=r.min_bookings,
            min_spent=Decimal(r.min_spent),
            cashback_percent=Decimal(r.cashback_percent),
            extra_discount_percent=Decimal(r.extra_discount_percent),
            free_cancellation_hours=r.free_cancellation_hours,
        )
        for r in rows
    )


def standing_of(s: Session, user_id: str) -> LoyaltyStanding:
    """Recomputed from the user's booking history on every call."""
    count, spent = (
        s.query(func.count(Booking.id), func.coalesce(func.sum(Booking.final_total), 0))
        .filter(Booking.user_id == user_id, Booking.status.in_(QUALIFYING_STATUSES))
        .one()
    )
    spent = money(str(spent))
    return LoyaltyStanding(tier=tier_for(int(count), spent, load_tiers(s)), bookings=int(count), spent=spent)
