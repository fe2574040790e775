from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .lifecycle import Actor, BookingStatus

# Fixed-point currency: 2 fractional digits, never float.
Money = Numeric(12, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    SQLite hands back naive values even for DateTime(timezone=True); they are
    stored in UTC, so UTC is re-attached on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass an aware datetime")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(cls):
    return Enum(cls, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e])


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class Bookable(Base):
    """A vessel (priced per hour) or a tour (priced per person)."""

    __tablename__ = "bookables"
    __table_args__ = (CheckConstraint("kind IN ('vessel', 'tour')", name="ck_bookables_kind"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), index=True)
    name: Mapped[str] = mapped_column(String(255))
    category: Mapped[str | None] = mapped_column(String(64), index=True)  # vessel type or tour category

    # vessel: price per hour; tour: adult price
    base_price: Mapped[Decimal] = mapped_column(Money)
    child_price: Mapped[Decimal | None] = mapped_column(Money)
    min_hours: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Addon(Base):
    __tablename__ = "addons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    unit_price: Mapped[Decimal] = mapped_column(Money)
    pricing_type: Mapped[str] = mapped_column(String(16), default="fixed")  # fixed|per_person|per_hour|per_item
    applies_to: Mapped[str] = mapped_column(String(16), default="all")  # all|vessels|tours
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PricingRuleRow(Base):
    """
    Stored pricing rule.

    Condition columns are typed and nullable; which ones are meaningful
    depends on `type` and is enforced when the row is turned into a rule
    variant (see persistence.rule_from_row).
    """

    __tablename__ = "pricing_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(32), index=True)

    applies_to: Mapped[str] = mapped_column(String(16), default="all")
    vessel_types: Mapped[list] = mapped_column(JSON, default=list)
    tour_categories: Mapped[list] = mapped_column(JSON, default=list)
    vessel_ids: Mapped[list] = mapped_column(JSON, default=list)
    tour_ids: Mapped[list] = mapped_column(JSON, default=list)

    start_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    days_of_week: Mapped[list] = mapped_column(JSON, default=list)
    min_days_ahead: Mapped[int | None] = mapped_column(Integer)
    max_days_ahead: Mapped[int | None] = mapped_column(Integer)
    min_guests: Mapped[int | None] = mapped_column(Integer)
    max_guests: Mapped[int | None] = mapped_column(Integer)
    min_duration_hours: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    max_duration_hours: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))

    adjustment_type: Mapped[str] = mapped_column(String(16))  # percentage|fixed
    adjustment_value: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_stackable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class LoyaltyTierRow(Base):
    __tablename__ = "loyalty_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(32), unique=True)
    name: Mapped[str] = mapped_column(String(64))
    min_bookings: Mapped[int] = mapped_column(Integer, default=0)
    min_spent: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    cashback_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    extra_discount_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    free_cancellation_hours: Mapped[int] = mapped_column(Integer, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


# ---------------------------------------------------------------------------
# Promo codes and gift cards
# ---------------------------------------------------------------------------


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("usage_limit IS NULL OR usage_count <= usage_limit", name="ck_promo_codes_usage_limit"),
        CheckConstraint("usage_count >= 0", name="ck_promo_codes_usage_count"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True)  # stored upper-case
    description: Mapped[str | None] = mapped_column(Text)

    discount_type: Mapped[str] = mapped_column(String(16))  # percentage|fixed
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    min_order_thb: Mapped[Decimal | None] = mapped_column(Money)
    max_discount_thb: Mapped[Decimal | None] = mapped_column(Money)

    usage_limit: Mapped[int | None] = mapped_column(Integer)
    max_uses_per_user: Mapped[int] = mapped_column(Integer, default=1)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)

    valid_from: Mapped[datetime | None] = mapped_column(UTCDateTime)
    valid_until: Mapped[datetime | None] = mapped_column(UTCDateTime)

    applies_to: Mapped[str] = mapped_column(String(16), default="all")
    vessel_ids: Mapped[list] = mapped_column(JSON, default=list)
    tour_ids: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PromoCodeUsage(Base):
    __tablename__ = "promo_code_usages"
    __table_args__ = (UniqueConstraint("promo_code_id", "booking_id", name="uq_promo_code_usages_promo_booking"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    promo_code_id: Mapped[int] = mapped_column(ForeignKey("promo_codes.id"), index=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    discount_amount: Mapped[Decimal] = mapped_column(Money)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class GiftCard(Base):
    __tablename__ = "gift_cards"
    __table_args__ = (
        CheckConstraint("balance >= 0 AND balance <= initial_amount", name="ck_gift_cards_balance"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), unique=True)
    initial_amount: Mapped[Decimal] = mapped_column(Money)
    balance: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)  # pending|active|used|expired|cancelled

    valid_from: Mapped[date] = mapped_column(Date)
    valid_until: Mapped[date] = mapped_column(Date, index=True)
    applies_to: Mapped[str] = mapped_column(String(16), default="all")
    min_order_thb: Mapped[Decimal | None] = mapped_column(Money)

    recipient_email: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class CashbackAccount(Base):
    """One row per cashback owner; the row ledger writers lock."""

    __tablename__ = "cashback_accounts"

    owner: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class _LedgerRowMixin:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner: Mapped[str] = mapped_column(String(64), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    booking_reference: Mapped[str | None] = mapped_column(String(32), index=True)
    type: Mapped[str] = mapped_column(String(16))  # earn|spend|refund|expire|adjust
    amount: Mapped[Decimal] = mapped_column(Money)  # signed
    resulting_balance: Mapped[Decimal] = mapped_column(Money)
    reason: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class CashbackTransaction(_LedgerRowMixin, Base):
    __tablename__ = "cashback_transactions"
    __table_args__ = (
        UniqueConstraint("owner", "seq", name="uq_cashback_transactions_owner_seq"),
        CheckConstraint("resulting_balance >= 0", name="ck_cashback_transactions_balance"),
    )


class GiftCardTransaction(_LedgerRowMixin, Base):
    __tablename__ = "gift_card_transactions"
    __table_args__ = (
        UniqueConstraint("owner", "seq", name="uq_gift_card_transactions_owner_seq"),
        CheckConstraint("resulting_balance >= 0", name="ck_gift_card_transactions_balance"),
    )


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (CheckConstraint("final_total >= 0", name="ck_bookings_final_total"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(32), unique=True)
    quote_id: Mapped[str] = mapped_column(String(64), unique=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)

    bookable_kind: Mapped[str] = mapped_column(String(16), index=True)
    bookable_id: Mapped[int] = mapped_column(Integer, index=True)
    booking_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[time | None] = mapped_column(Time)
    duration_hours: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    adults: Mapped[int] = mapped_column(Integer, default=1)
    children: Mapped[int] = mapped_column(Integer, default=0)

    currency: Mapped[str] = mapped_column(String(3), default="THB")
    base: Mapped[Decimal] = mapped_column(Money)
    addons_total: Mapped[Decimal] = mapped_column(Money)
    dynamic_adjustment: Mapped[Decimal] = mapped_column(Money)
    promo_discount: Mapped[Decimal] = mapped_column(Money)
    gift_card_amount: Mapped[Decimal] = mapped_column(Money)
    loyalty_discount: Mapped[Decimal] = mapped_column(Money)
    cashback_spent: Mapped[Decimal] = mapped_column(Money)
    cashback_earned: Mapped[Decimal] = mapped_column(Money)
    final_total: Mapped[Decimal] = mapped_column(Money)
    cashback_status: Mapped[str] = mapped_column(String(16), default="none")  # none|pending|credited|deducted|void

    addons: Mapped[list] = mapped_column(JSON, default=list)  # [{"code","quantity"}] as requested
    price_lines: Mapped[list] = mapped_column(JSON, default=list)
    applied_rule_ids: Mapped[list] = mapped_column(JSON, default=list)
    promo_code_id: Mapped[int | None] = mapped_column(ForeignKey("promo_codes.id"))
    gift_card_code: Mapped[str | None] = mapped_column(String(32))
    loyalty_tier: Mapped[str | None] = mapped_column(String(32))

    status: Mapped[BookingStatus] = mapped_column(_enum(BookingStatus), index=True)
    payment_method: Mapped[str | None] = mapped_column(String(32))
    payment_reference: Mapped[str | None] = mapped_column(String(128))
    refund_amount: Mapped[Decimal | None] = mapped_column(Money)
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    free_cancellation_until: Mapped[datetime | None] = mapped_column(UTCDateTime)

    admin_notes: Mapped[list] = mapped_column(JSON, default=list)  # [{"text","author","time"}]

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    no_show_at: Mapped[datetime | None] = mapped_column(UTCDateTime)


class BookingStatusHistory(Base):
    __tablename__ = "booking_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    old_status: Mapped[BookingStatus | None] = mapped_column(_enum(BookingStatus))
    new_status: Mapped[BookingStatus] = mapped_column(_enum(BookingStatus))
    actor_type: Mapped[Actor] = mapped_column(_enum(Actor))
    actor_id: Mapped[str | None] = mapped_column(String(64))
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)


class BookableStats(Base):
    __tablename__ = "bookable_stats"
    __table_args__ = (UniqueConstraint("bookable_kind", "bookable_id", name="uq_bookable_stats_bookable"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bookable_kind: Mapped[str] = mapped_column(String(16))
    bookable_id: Mapped[int] = mapped_column(Integer)
    completed_count: Mapped[int] = mapped_column(Integer, default=0)
    no_show_count: Mapped[int] = mapped_column(Integer, default=0)
    revenue: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))


class PaymentEvent(Base):
    """Gateway webhook deliveries already handled, keyed by the gateway's event id."""

    __tablename__ = "payment_events"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    booking_reference: Mapped[str] = mapped_column(String(32), index=True)
    status: Mapped[str] = mapped_column(String(32))
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
