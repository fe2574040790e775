from decimal import Decimal

import pytest

from yachtbook.db import session
from yachtbook.loyalty import DEFAULT_TIERS, load_tiers, standing_of, tier_for
from yachtbook.models import LoyaltyTierRow


@pytest.mark.parametrize(
    "bookings,spent,slug",
    [
        (0, "0", "bronze"),
        (10, "49999.99", "bronze"),
        (2, "80000", "bronze"),
        (3, "50000", "silver"),
        (7, "150000", "gold"),
        (6, "900000", "silver"),
        (15, "500000", "platinum"),
    ],
)
def test_tier_needs_both_thresholds(bookings, spent, slug):
    assert tier_for(bookings, Decimal(spent)).slug == slug


def test_defaults_when_no_tiers_are_configured(engine):
    with session(engine) as s:
        assert load_tiers(s) == DEFAULT_TIERS
        standing = standing_of(s, "nobody")
    assert (standing.tier.slug, standing.bookings, standing.spent) == ("bronze", 0, Decimal("0.00"))


def test_configured_tiers_replace_defaults(engine):
    with session(engine) as s:
        s.add(LoyaltyTierRow(slug="crew", name="Crew", sort_order=0, cashback_percent=Decimal("3")))
        s.add(LoyaltyTierRow(slug="captain", name="Captain", min_bookings=1, min_spent=Decimal("100"), cashback_percent=Decimal("12"), sort_order=1))
        s.add(LoyaltyTierRow(slug="retired", name="Retired", is_active=False, sort_order=2))
        s.commit()

    with session(engine) as s:
        tiers = load_tiers(s)
    assert [t.slug for t in tiers] == ["crew", "captain"]
    assert tier_for(1, Decimal("100"), tiers).cashback_percent == Decimal("12")
    assert tier_for(0, Decimal("0"), tiers).slug == "crew"
