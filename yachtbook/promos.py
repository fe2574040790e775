from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from .errors import PromoCodeError
from .models import PromoCode, PromoCodeUsage
from .persistence import scope_from_row
from .pricing import ZERO, BookableRef, money, percent_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromoCandidate:
    item: BookableRef
    order_amount: Decimal


@dataclass(frozen=True)
class PromoValidation:
    code: str
    discount: Decimal = ZERO
    promo_id: int | None = None
    error: str | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise PromoCodeError(self.message or "Promo code is not valid", promo_code=self.code, reason=self.error)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def discount_for(promo: PromoCode, order_amount: Decimal) -> Decimal:
    if promo.discount_type == "percentage":
        discount = percent_of(order_amount, promo.discount_value)
    else:
        discount = money(promo.discount_value)
    if promo.max_discount_thb is not None:
        discount = min(discount, money(promo.max_discount_thb))
    return max(ZERO, min(discount, money(order_amount)))


class PromoCodeValidator:
    """
    Checks a promo code against a candidate booking.

    `validate` never writes. `consume` is the only path that moves the usage
    counter and is called by the booking state machine inside its unit of
    work.
    """

    def __init__(self, s: Session):
        self.s = s

    def _uses_by(self, promo_id: int, user_id: str) -> int:
        return (
            self.s.query(func.count(PromoCodeUsage.id))
            .filter(PromoCodeUsage.promo_code_id == promo_id, PromoCodeUsage.user_id == user_id)
            .scalar()
            or 0
        )

    def check(self, promo: PromoCode | None, code: str, candidate: PromoCandidate, user_id: str, now: datetime) -> PromoValidation:
        def fail(error: str, message: str) -> PromoValidation:
            return PromoValidation(code=code, error=error, message=message)

        if promo is None or not promo.is_active:
            return fail("not_found", "Promo code not found or inactive")
        if promo.valid_from is not None and now < promo.valid_from:
            return fail("not_started", "Promo code is not active yet")
        if promo.valid_until is not None and now > promo.valid_until:
            return fail("expired", "Promo code has expired")
        if promo.min_order_thb is not None and candidate.order_amount < money(promo.min_order_thb):
            return fail("min_order", f"Minimum order amount is {money(promo.min_order_thb)}")
        if not scope_from_row(promo).covers(candidate.item):
            return fail("scope", "Promo code does not apply to this booking")
        if promo.usage_limit is not None and promo.usage_count >= promo.usage_limit:
            return fail("usage_limit", "Promo code usage limit reached")
        if promo.max_uses_per_user is not None and self._uses_by(promo.id, user_id) >= promo.max_uses_per_user:
            return fail("user_limit", "You have already used this promo code")

        return PromoValidation(code=code, discount=discount_for(promo, candidate.order_amount), promo_id=promo.id)

    def validate(self, code: str, candidate: PromoCandidate, user_id: str, now: datetime) -> PromoValidation:
        code = normalize_code(code)
        promo = self.s.query(PromoCode).filter(PromoCode.code == code).first()
        return self.check(promo, code, candidate, user_id, now)

    def consume(
        self,
        code: str,
        candidate: PromoCandidate,
        user_id: str,
        booking_id: int,
        now: datetime,
    ) -> PromoValidation:
        """Lock the code, re-validate it and record one usage for `booking_id`."""
        code = normalize_code(code)
        promo = (
            self.s.query(PromoCode)
            .filter(PromoCode.code == code)
            .with_for_update()
            .populate_existing()
            .first()
        )
        result = self.check(promo, code, candidate, user_id, now)
        result.raise_for_error()

        self.s.add(
            PromoCodeUsage(
                promo_code_id=promo.id,
                booking_id=booking_id,
                user_id=user_id,
                discount_amount=result.discount,
            )
        )
        promo.usage_count = promo.usage_count + 1
        self.s.flush()
        logger.info("Promo %s consumed by booking %s (usage %s/%s)", code, booking_id, promo.usage_count, promo.usage_limit)
        return result
