"""
Booking statuses, actors and the transition table, as data.

The table is checked for completeness at import time so a missing or
malformed entry fails loudly instead of falling through a default.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    NO_SHOW = "no_show"


class Actor(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"
    VENDOR = "vendor"
    SYSTEM = "system"


class Effect(str, enum.Enum):
    NOTIFY_USER = "notify_user"
    NOTIFY_ADMIN = "notify_admin"
    REFUND_SPENT_CASHBACK = "refund_spent_cashback"
    CREDIT_EARNED_CASHBACK = "credit_earned_cashback"
    DEDUCT_EARNED_CASHBACK = "deduct_earned_cashback"
    PROCESS_REFUND = "process_refund"
    UPDATE_STATS = "update_stats"


TERMINAL_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.REFUNDED, BookingStatus.COMPLETED})

# Milestone timestamp stamped (once) on entering a status.
MILESTONES: dict[BookingStatus, str] = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.PAID: "paid_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
    BookingStatus.REFUNDED: "refunded_at",
    BookingStatus.NO_SHOW: "no_show_at",
}


@dataclass(frozen=True)
class TransitionRule:
    actors: frozenset[Actor]
    effects: tuple[Effect, ...]
    requires_reason: bool = False


def _rule(actors: set[Actor], *effects: Effect, requires_reason: bool = False) -> TransitionRule:
    return TransitionRule(actors=frozenset(actors), effects=effects, requires_reason=requires_reason)


S, A, E = BookingStatus, Actor, Effect

TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], TransitionRule] = {
    (S.PENDING, S.CONFIRMED): _rule({A.ADMIN, A.VENDOR, A.SYSTEM}, E.NOTIFY_USER),
    (S.PENDING, S.PAID): _rule({A.SYSTEM}, E.NOTIFY_USER, E.NOTIFY_ADMIN),
    (S.PENDING, S.CANCELLED): _rule(
        {A.USER, A.ADMIN, A.VENDOR}, E.REFUND_SPENT_CASHBACK, E.NOTIFY_USER, requires_reason=True
    ),
    (S.CONFIRMED, S.PAID): _rule({A.SYSTEM, A.ADMIN}, E.CREDIT_EARNED_CASHBACK, E.NOTIFY_USER),
    (S.CONFIRMED, S.CANCELLED): _rule(
        {A.USER, A.ADMIN, A.VENDOR}, E.REFUND_SPENT_CASHBACK, E.NOTIFY_USER, requires_reason=True
    ),
    (S.PAID, S.COMPLETED): _rule({A.ADMIN, A.VENDOR, A.SYSTEM}, E.UPDATE_STATS),
    (S.PAID, S.CANCELLED): _rule(
        {A.ADMIN}, E.PROCESS_REFUND, E.DEDUCT_EARNED_CASHBACK, E.NOTIFY_USER, requires_reason=True
    ),
    (S.PAID, S.REFUNDED): _rule(
        {A.ADMIN, A.SYSTEM}, E.PROCESS_REFUND, E.DEDUCT_EARNED_CASHBACK, E.NOTIFY_USER, requires_reason=True
    ),
    (S.PAID, S.NO_SHOW): _rule({A.ADMIN, A.VENDOR}, E.UPDATE_STATS),
    (S.COMPLETED, S.REFUNDED): _rule({A.ADMIN}, E.PROCESS_REFUND, E.DEDUCT_EARNED_CASHBACK, requires_reason=True),
}

del S, A, E


def _validate_table() -> None:
    for (old, new), rule in TRANSITIONS.items():
        if not isinstance(old, BookingStatus) or not isinstance(new, BookingStatus):
            raise TypeError(f"Transition keys must be BookingStatus members: {(old, new)!r}")
        if old == new:
            raise ValueError(f"Self-transition {old.value} is implicit and must not be listed")
        if not rule.actors:
            raise ValueError(f"Transition {old.value}->{new.value} has no allowed actors")
        if any(not isinstance(e, Effect) for e in rule.effects):
            raise TypeError(f"Transition {old.value}->{new.value} has an unknown effect")
        if old in TERMINAL_STATUSES and not (old == BookingStatus.COMPLETED and new == BookingStatus.REFUNDED):
            raise ValueError(f"Terminal status {old.value} cannot transition to {new.value}")
        if Effect.CREDIT_EARNED_CASHBACK in rule.effects and Effect.DEDUCT_EARNED_CASHBACK in rule.effects:
            raise ValueError(f"Transition {old.value}->{new.value} both credits and deducts cashback")


_validate_table()


def allowed_targets(status: BookingStatus, actor: Actor) -> list[tuple[BookingStatus, TransitionRule]]:
    return [(new, rule) for (old, new), rule in TRANSITIONS.items() if old == status and actor in rule.actors]
