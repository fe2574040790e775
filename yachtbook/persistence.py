from __future__ import annotations

from decimal import Decimal

from sqlalchemy.orm import Session

from .models import Addon, Bookable, PricingRuleRow, PromoCode
from .pricing import (
    RULE_TYPES,
    BookableRef,
    DayOfWeekRule,
    DurationRule,
    EarlyBirdRule,
    GroupSizeRule,
    LastMinuteRule,
    PricingRule,
    Scope,
    SeasonRule,
)


def _lower_set(values) -> frozenset[str]:
    return frozenset(str(v).strip().lower() for v in (values or []) if str(v).strip())


def _int_set(values) -> frozenset[int]:
    return frozenset(int(v) for v in (values or []))


def scope_from_row(row: PricingRuleRow | PromoCode) -> Scope:
    return Scope(
        applies_to=row.applies_to or "all",
        vessel_types=_lower_set(getattr(row, "vessel_types", None)),
        tour_categories=_lower_set(getattr(row, "tour_categories", None)),
        vessel_ids=_int_set(row.vessel_ids),
        tour_ids=_int_set(row.tour_ids),
    )


def _required(row: PricingRuleRow, *fields: str) -> None:
    missing = [f for f in fields if getattr(row, f) is None]
    if missing:
        raise ValueError(f"Pricing rule {row.id} ({row.type}) is missing {', '.join(missing)}")


def rule_from_row(row: PricingRuleRow) -> PricingRule:
    """Turn a stored rule into its typed variant; unknown types are rejected."""
    if row.type not in RULE_TYPES:
        raise ValueError(f"Pricing rule {row.id} has unknown type {row.type!r}")

    common = dict(
        id=row.id,
        name=row.name,
        adjustment_type=row.adjustment_type,
        adjustment_value=Decimal(row.adjustment_value),
        priority=row.priority or 0,
        stackable=bool(row.is_stackable),
        scope=scope_from_row(row),
    )
    cls = RULE_TYPES[row.type]

    if issubclass(cls, SeasonRule):
        _required(row, "start_date", "end_date")
        return cls(start_date=row.start_date, end_date=row.end_date, **common)
    if cls is DayOfWeekRule:
        return cls(weekdays=_lower_set(row.days_of_week), **common)
    if cls is EarlyBirdRule:
        _required(row, "min_days_ahead")
        return cls(min_days_ahead=row.min_days_ahead, **common)
    if cls is LastMinuteRule:
        _required(row, "max_days_ahead")
        return cls(max_days_ahead=row.max_days_ahead, **common)
    if cls is GroupSizeRule:
        return cls(min_guests=row.min_guests, max_guests=row.max_guests, **common)
    if cls is DurationRule:
        return cls(min_hours=row.min_duration_hours, max_hours=row.max_duration_hours, **common)
    raise AssertionError(f"unhandled rule type {row.type}")


def active_rules(s: Session) -> list[PricingRule]:
    rows = s.query(PricingRuleRow).filter(PricingRuleRow.is_active.is_(True)).order_by(PricingRuleRow.id.asc()).all()
    return [rule_from_row(r) for r in rows]


def bookable_ref(row: Bookable) -> BookableRef:
    return BookableRef(kind=row.kind, id=row.id, category=row.category)


def get_bookable(s: Session, kind: str, bookable_id: int) -> Bookable | None:
    row = s.get(Bookable, bookable_id)
    if row is None or row.kind != kind or not row.is_active:
        return None
    return row


def addons_by_code(s: Session, codes: list[str]) -> dict[str, Addon]:
    if not codes:
        return {}
    rows = s.query(Addon).filter(Addon.code.in_(codes), Addon.is_active.is_(True)).all()
    return {r.code: r for r in rows}
