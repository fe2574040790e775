from __future__ import annotations

from decimal import Decimal
from typing import Any


class BookingError(Exception):
    """
    Base class for every error the core raises on purpose.

    `code` is a stable machine-readable identifier and `context` holds the
    details a UI needs to explain the failure (old/new status, missing field,
    amounts). Neither leaks ORM objects.
    """

    code = "booking_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: _plain(v) for k, v in context.items() if v is not None}

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "context": self.context}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return getattr(value, "value", value)


# Validation errors: bad input, never retried.


class ValidationError(BookingError):
    code = "validation_error"


class PromoCodeError(ValidationError):
    code = "promo_code_invalid"


class GiftCardError(ValidationError):
    code = "gift_card_invalid"


class QuoteChanged(ValidationError):
    code = "quote_changed"


class NotFound(BookingError):
    code = "not_found"


# State conflicts: retrying with the same input gives the same answer.


class StateConflict(BookingError):
    code = "state_conflict"


class InvalidTransition(StateConflict):
    code = "invalid_transition"

    def __init__(self, old_status: Any, new_status: Any, actor: Any = None):
        old, new = _plain(old_status), _plain(new_status)
        if actor is None:
            message = f"Cannot transition from '{old}' to '{new}'"
        else:
            message = f"Cannot transition from '{old}' to '{new}' as {_plain(actor)}"
        super().__init__(message, old_status=old, new_status=new, actor=actor)
        self.old_status = old
        self.new_status = new


class ReasonRequired(StateConflict):
    code = "reason_required"

    def __init__(self, old_status: Any, new_status: Any):
        old, new = _plain(old_status), _plain(new_status)
        super().__init__(
            f"A reason is required to move a booking from '{old}' to '{new}'",
            old_status=old,
            new_status=new,
            field="reason",
        )


class InsufficientBalance(StateConflict):
    code = "insufficient_balance"

    def __init__(self, owner: str, requested: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient balance for {owner}: requested {requested}, available {available}",
            owner=owner,
            requested=requested,
            available=available,
        )
        self.requested = requested
        self.available = available
