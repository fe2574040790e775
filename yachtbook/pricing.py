from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import ClassVar, Iterable, Literal

BookableKind = Literal["vessel", "tour"]
AppliesTo = Literal["all", "vessels", "tours"]
AddonPricing = Literal["fixed", "per_person", "per_hour", "per_item"]
AdjustmentType = Literal["percentage", "fixed"]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def money(value: Decimal | int | str) -> Decimal:
    """Normalize an amount to 2 fractional digits. Floats are rejected."""
    if isinstance(value, float):
        raise TypeError("Currency amounts must be Decimal, int or str, not float")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal | int | str) -> Decimal:
    """`percent`% of `amount`, half-up to the nearest 0.01 (sign preserved)."""
    return (Decimal(amount) * Decimal(str(percent)) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BookableRef:
    kind: BookableKind
    id: int
    # vessel type (yacht, catamaran, speedboat...) or tour category
    category: str | None = None

    @property
    def scope(self) -> AppliesTo:
        return "vessels" if self.kind == "vessel" else "tours"


@dataclass(frozen=True)
class Scope:
    """
    Applicability of a rule, promo code or add-on.

    An empty category/id set means "no narrowing" for that bookable kind.
    """

    applies_to: AppliesTo = "all"
    vessel_types: frozenset[str] = frozenset()
    tour_categories: frozenset[str] = frozenset()
    vessel_ids: frozenset[int] = frozenset()
    tour_ids: frozenset[int] = frozenset()

    def covers(self, item: BookableRef) -> bool:
        if self.applies_to not in ("all", item.scope):
            return False
        if item.kind == "vessel":
            categories, ids = self.vessel_types, self.vessel_ids
        else:
            categories, ids = self.tour_categories, self.tour_ids
        if categories and (item.category or "").strip().lower() not in categories:
            return False
        if ids and item.id not in ids:
            return False
        return True


@dataclass(frozen=True)
class PricingContext:
    item: BookableRef
    booking_date: date
    today: date
    party_size: int
    duration_hours: Decimal | None = None

    @property
    def lead_days(self) -> int:
        return (self.booking_date - self.today).days

    @property
    def weekday(self) -> str:
        return WEEKDAYS[self.booking_date.weekday()]


# ---------------------------------------------------------------------------
# Pricing rules: one variant per rule type, each carrying only its own fields.
# ---------------------------------------------------------------------------


@dataclass(frozen=True, kw_only=True)
class PricingRule:
    id: int
    name: str
    adjustment_type: AdjustmentType
    adjustment_value: Decimal
    priority: int = 0
    stackable: bool = False
    scope: Scope = field(default_factory=Scope)

    rule_type: ClassVar[str] = ""

    def __post_init__(self):
        if self.adjustment_type not in ("percentage", "fixed"):
            raise ValueError(f"Unknown adjustment_type: {self.adjustment_type}")

    def matches(self, ctx: PricingContext) -> bool:
        return self.scope.covers(ctx.item) and self.condition_holds(ctx)

    def condition_holds(self, ctx: PricingContext) -> bool:
        raise NotImplementedError

    def adjustment_for(self, amount: Decimal) -> Decimal:
        if self.adjustment_type == "percentage":
            return percent_of(amount, self.adjustment_value)
        return money(self.adjustment_value)


@dataclass(frozen=True, kw_only=True)
class SeasonRule(PricingRule):
    start_date: date
    end_date: date

    rule_type: ClassVar[str] = "season"

    def __post_init__(self):
        super().__post_init__()
        if self.end_date < self.start_date:
            raise ValueError(f"{self.rule_type} rule '{self.name}': end_date is before start_date")

    def condition_holds(self, ctx: PricingContext) -> bool:
        return self.start_date <= ctx.booking_date <= self.end_date


@dataclass(frozen=True, kw_only=True)
class SpecialDateRule(SeasonRule):
    rule_type: ClassVar[str] = "special_date"


@dataclass(frozen=True, kw_only=True)
class DayOfWeekRule(PricingRule):
    weekdays: frozenset[str]

    rule_type: ClassVar[str] = "day_of_week"

    def __post_init__(self):
        super().__post_init__()
        unknown = set(self.weekdays) - set(WEEKDAYS)
        if not self.weekdays or unknown:
            raise ValueError(f"day_of_week rule '{self.name}': invalid weekdays {sorted(unknown) or '[]'}")

    def condition_holds(self, ctx: PricingContext) -> bool:
        return ctx.weekday in self.weekdays


@dataclass(frozen=True, kw_only=True)
class EarlyBirdRule(PricingRule):
    min_days_ahead: int

    rule_type: ClassVar[str] = "early_bird"

    def condition_holds(self, ctx: PricingContext) -> bool:
        return ctx.lead_days >= self.min_days_ahead


@dataclass(frozen=True, kw_only=True)
class LastMinuteRule(PricingRule):
    max_days_ahead: int

    rule_type: ClassVar[str] = "last_minute"

    def condition_holds(self, ctx: PricingContext) -> bool:
        return 0 <= ctx.lead_days <= self.max_days_ahead


@dataclass(frozen=True, kw_only=True)
class GroupSizeRule(PricingRule):
    min_guests: int | None = None
    max_guests: int | None = None

    rule_type: ClassVar[str] = "group_size"

    def __post_init__(self):
        super().__post_init__()
        if self.min_guests is None and self.max_guests is None:
            raise ValueError(f"group_size rule '{self.name}' needs min_guests or max_guests")

    def condition_holds(self, ctx: PricingContext) -> bool:
        if self.min_guests is not None and ctx.party_size < self.min_guests:
            return False
        if self.max_guests is not None and ctx.party_size > self.max_guests:
            return False
        return True


@dataclass(frozen=True, kw_only=True)
class DurationRule(PricingRule):
    min_hours: Decimal | None = None
    max_hours: Decimal | None = None

    rule_type: ClassVar[str] = "duration"

    def __post_init__(self):
        super().__post_init__()
        if self.min_hours is None and self.max_hours is None:
            raise ValueError(f"duration rule '{self.name}' needs min_hours or max_hours")

    def condition_holds(self, ctx: PricingContext) -> bool:
        if ctx.duration_hours is None:
            return False
        if self.min_hours is not None and ctx.duration_hours < self.min_hours:
            return False
        if self.max_hours is not None and ctx.duration_hours > self.max_hours:
            return False
        return True


RULE_TYPES: dict[str, type[PricingRule]] = {
    cls.rule_type: cls
    for cls in (SeasonRule, SpecialDateRule, DayOfWeekRule, EarlyBirdRule, LastMinuteRule, GroupSizeRule, DurationRule)
}


# ---------------------------------------------------------------------------
# Computation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AddonSelection:
    code: str
    name: str
    unit_price: Decimal
    pricing_type: AddonPricing = "fixed"
    quantity: int = 1


@dataclass(frozen=True)
class PriceLine:
    code: str
    description: str
    amount: Decimal


@dataclass(frozen=True)
class AppliedRule:
    rule_id: int
    name: str
    rule_type: str
    amount: Decimal


@dataclass(frozen=True)
class PricingResult:
    base: Decimal
    addons_total: Decimal
    dynamic_adjustment: Decimal
    subtotal: Decimal
    applied_rules: tuple[AppliedRule, ...]
    lines: tuple[PriceLine, ...]


def addon_amount(addon: AddonSelection, ctx: PricingContext) -> Decimal:
    if addon.quantity < 1:
        raise ValueError(f"Add-on {addon.code}: quantity must be >= 1")
    unit = money(addon.unit_price)
    if unit < 0:
        raise ValueError(f"Add-on {addon.code}: unit price must be >= 0")

    if addon.pricing_type == "per_person":
        return money(unit * ctx.party_size)
    if addon.pricing_type == "per_hour":
        if ctx.duration_hours is None:
            raise ValueError(f"Add-on {addon.code} is priced per hour but the booking has no duration")
        return money(unit * ctx.duration_hours * addon.quantity)
    if addon.pricing_type == "per_item":
        return money(unit * addon.quantity)
    if addon.pricing_type == "fixed":
        return unit
    raise ValueError(f"Add-on {addon.code}: unknown pricing type {addon.pricing_type}")


def select_rules(rules: Iterable[PricingRule], ctx: PricingContext) -> list[PricingRule]:
    """
    Matching rules in application order.

    At most one non-stackable rule wins: highest priority, ties going to the
    most recently created rule (largest id). Every matching stackable rule
    follows.
    """
    matched = [r for r in rules if r.matches(ctx)]

    chosen: list[PricingRule] = []
    exclusive = [r for r in matched if not r.stackable]
    if exclusive:
        chosen.append(max(exclusive, key=lambda r: (r.priority, r.id)))
    chosen.extend(sorted((r for r in matched if r.stackable), key=lambda r: (-r.priority, r.id)))
    return chosen


def price(
    base_rate: Decimal,
    addons: Iterable[AddonSelection],
    ctx: PricingContext,
    rules: Iterable[PricingRule],
) -> PricingResult:
    if ctx.party_size < 1:
        raise ValueError("At least one guest is required")

    base = money(base_rate)
    if base < 0:
        raise ValueError("Base rate must be >= 0")

    lines: list[PriceLine] = [PriceLine(code="base", description=f"Base rate ({ctx.item.kind})", amount=base)]

    addons_total = ZERO
    for addon in addons:
        amount = addon_amount(addon, ctx)
        addons_total += amount
        lines.append(
            PriceLine(
                code=f"addon.{addon.code}",
                description=f"{addon.name} ({addon.pricing_type}) x{addon.quantity}",
                amount=amount,
            )
        )

    # Every adjustment is computed against the unadjusted figure; nothing compounds.
    gross = base + addons_total
    applied: list[AppliedRule] = []
    dynamic_adjustment = ZERO
    for rule in select_rules(rules, ctx):
        amount = rule.adjustment_for(gross)
        dynamic_adjustment += amount
        applied.append(AppliedRule(rule_id=rule.id, name=rule.name, rule_type=rule.rule_type, amount=amount))
        lines.append(PriceLine(code=f"rule.{rule.rule_type}", description=rule.name, amount=amount))

    # Floor at zero by capping the adjustment, so base + addons + adjustment == subtotal still holds.
    if gross + dynamic_adjustment < 0:
        dynamic_adjustment = -gross
    subtotal = gross + dynamic_adjustment

    return PricingResult(
        base=base,
        addons_total=addons_total,
        dynamic_adjustment=dynamic_adjustment,
        subtotal=subtotal,
        applied_rules=tuple(applied),
        lines=tuple(lines),
    )


@dataclass(frozen=True)
class CalendarDay:
    day: date
    subtotal: Decimal
    adjustment: Decimal
    rules_applied: int


def price_calendar(
    base_rate: Decimal,
    item: BookableRef,
    year: int,
    month: int,
    rules: list[PricingRule],
    today: date,
    party_size: int = 1,
    duration_hours: Decimal | None = None,
) -> list[CalendarDay]:
    days_in_month = calendar.monthrange(year, month)[1]
    out: list[CalendarDay] = []
    for d in range(1, days_in_month + 1):
        ctx = PricingContext(
            item=item,
            booking_date=date(year, month, d),
            today=today,
            party_size=party_size,
            duration_hours=duration_hours,
        )
        result = price(base_rate, (), ctx, rules)
        out.append(
            CalendarDay(
                day=ctx.booking_date,
                subtotal=result.subtotal,
                adjustment=result.dynamic_adjustment,
                rules_applied=len(result.applied_rules),
            )
        )
    return out
