from __future__ import annotations

import calendar
import logging
import secrets
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from .errors import GiftCardError, ValidationError
from .ledger import GiftCardLedger
from .models import GiftCard
from .pricing import ZERO, BookableRef, money

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class GiftCardRedemption:
    code: str
    amount: Decimal = ZERO
    balance: Decimal = ZERO
    error: str | None = None
    message: str | None = None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise GiftCardError(self.message or "Gift card cannot be used", gift_card=self.code, reason=self.error)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year, month = d.year + month_index // 12, month_index % 12 + 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


class GiftCardRedeemer:
    def __init__(self, s: Session):
        self.s = s
        self.ledger = GiftCardLedger(s)

    def check(self, card: GiftCard | None, code: str, order_amount: Decimal, item: BookableRef, today: date) -> GiftCardRedemption:
        def fail(error: str, message: str) -> GiftCardRedemption:
            return GiftCardRedemption(code=code, error=error, message=message)

        if card is None:
            return fail("not_found", "Gift card not found")
        if card.status != "active":
            return fail(card.status, f"Gift card is {card.status}")
        if today < card.valid_from:
            return fail("not_started", "Gift card is not valid yet")
        if today > card.valid_until:
            return fail("expired", "Gift card has expired")
        if card.applies_to not in ("all", item.scope):
            return fail("scope", "Gift card does not apply to this booking")
        balance = self.ledger.balance_of(code)
        if balance <= 0:
            return fail("empty", "Gift card has no remaining balance")
        if card.min_order_thb is not None and order_amount < money(card.min_order_thb):
            return fail("min_order", f"Minimum order amount is {money(card.min_order_thb)}")

        return GiftCardRedemption(code=code, amount=min(balance, money(order_amount)), balance=balance)

    def quote(self, code: str, order_amount: Decimal, item: BookableRef, today: date) -> GiftCardRedemption:
        """How much of `order_amount` the card would cover. Read-only."""
        code = normalize_code(code)
        card = self.s.query(GiftCard).filter(GiftCard.code == code).first()
        return self.check(card, code, order_amount, item, today)

    def redeem(
        self,
        code: str,
        amount: Decimal,
        order_amount: Decimal,
        item: BookableRef,
        today: date,
        booking_reference: str,
    ) -> GiftCardRedemption:
        """Lock the card, re-check it and debit exactly `amount`; never clamps."""
        code = normalize_code(code)
        card = self.ledger.lock(code)
        result = self.check(card, code, order_amount, item, today)
        result.raise_for_error()
        self.ledger.debit(code, amount, booking_reference=booking_reference, reason="redeemed")
        return result

    def refund(self, code: str, amount: Decimal, booking_reference: str, reason: str, today: date) -> None:
        """
        Return `amount` to the card. An expired card still inside its validity
        window is reactivated; past it, the refunded amount expires again at once.
        """
        code = normalize_code(code)
        card = self.ledger.lock(code)
        self.ledger.credit(code, amount, booking_reference=booking_reference, reason=reason, type="refund")
        if card.status != "expired":
            return
        if today <= card.valid_until:
            card.status = "active"
            logger.info("Gift card %s reactivated by refund for %s", code, booking_reference)
        else:
            self.ledger.debit(code, amount, booking_reference=booking_reference, reason="expired", type="expire")


def generate_code() -> str:
    return "-".join("".join(secrets.choice(CODE_ALPHABET) for _ in range(4)) for _ in range(3))


def issue_gift_card(
    s: Session,
    amount: Decimal,
    valid_months: int = 12,
    applies_to: str = "all",
    min_order: Decimal | None = None,
    recipient_email: str | None = None,
    today: date | None = None,
) -> GiftCard:
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Gift card amount must be > 0", field="amount")
    if valid_months < 1:
        raise ValidationError("Gift card validity must be at least one month", field="valid_months")
    if applies_to not in ("all", "vessels", "tours"):
        raise ValidationError("applies_to must be one of all, vessels, tours", field="applies_to")

    today = today or date.today()
    code = generate_code()
    while s.query(GiftCard.id).filter(GiftCard.code == code).first() is not None:
        code = generate_code()

    card = GiftCard(
        code=code,
        initial_amount=amount,
        balance=ZERO,
        status="active",
        valid_from=today,
        valid_until=add_months(today, valid_months),
        applies_to=applies_to,
        min_order_thb=money(min_order) if min_order is not None else None,
        recipient_email=recipient_email,
    )
    s.add(card)
    s.flush()
    GiftCardLedger(s).credit(code, amount, reason="issued", type="adjust")
    logger.info("Issued gift card %s for %s", code, amount)
    return card


def expire_gift_cards(s: Session, today: date) -> list[str]:
    """Expire active cards past their validity; the remaining balance leaves via an `expire` row."""
    ledger = GiftCardLedger(s)
    codes = [
        c
        for (c,) in s.query(GiftCard.code)
        .filter(GiftCard.status.in_(("active", "used")), GiftCard.valid_until < today)
        .order_by(GiftCard.id.asc())
        .all()
    ]
    for code in codes:
        card = ledger.lock(code)
        remaining = ledger.balance_of(code)
        if remaining > 0:
            ledger.debit(code, remaining, reason="expired", type="expire")
        card.status = "expired"
    if codes:
        logger.info("Expired %s gift card(s)", len(codes))
    return codes
