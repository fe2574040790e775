"""
Append-only balance ledgers for cashback (owner = user id) and gift cards
(owner = card code).

Every balance change is one row carrying its signed amount and the balance
it results in; rows for an owner are numbered by `seq` and unique per
(owner, seq), so two writers that both read the same "last row" cannot both
commit. Writers additionally lock a per-owner anchor row for the duration of
the unit of work.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Literal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import InsufficientBalance, NotFound
from .models import CashbackAccount, CashbackTransaction, GiftCard, GiftCardTransaction
from .pricing import ZERO, money

logger = logging.getLogger(__name__)

EntryType = Literal["earn", "spend", "refund", "expire", "adjust"]


class LedgerStore:
    row_model: type[CashbackTransaction] | type[GiftCardTransaction]
    name = "ledger"

    def __init__(self, s: Session):
        self.s = s

    # -- locking -----------------------------------------------------------

    def lock(self, owner: str):
        """Serialize writers for `owner` until the enclosing transaction ends."""
        raise NotImplementedError

    def _after_append(self, anchor, row) -> None:
        pass

    # -- reads -------------------------------------------------------------

    def _last(self, owner: str):
        m = self.row_model
        return self.s.query(m).filter(m.owner == owner).order_by(m.seq.desc()).first()

    def balance_of(self, owner: str) -> Decimal:
        last = self._last(owner)
        return money(last.resulting_balance) if last is not None else ZERO

    def history(self, owner: str) -> list:
        m = self.row_model
        return self.s.query(m).filter(m.owner == owner).order_by(m.seq.asc()).all()

    def replayed_balance(self, owner: str) -> Decimal:
        return money(sum((r.amount for r in self.history(owner)), ZERO))

    def verify(self, owner: str) -> bool:
        """True when every row's resulting balance is the previous one plus its amount."""
        running = ZERO
        for expected_seq, row in enumerate(self.history(owner), start=1):
            running = running + row.amount
            if row.seq != expected_seq or money(row.resulting_balance) != money(running) or running < 0:
                return False
        return True

    # -- writes ------------------------------------------------------------

    def credit(
        self,
        owner: str,
        amount: Decimal,
        booking_reference: str | None = None,
        reason: str | None = None,
        type: EntryType = "earn",
    ):
        amount = money(amount)
        if amount <= 0:
            raise ValueError(f"Credit amount must be > 0, got {amount}")
        return self._append(owner, amount, type, booking_reference, reason)

    def debit(
        self,
        owner: str,
        amount: Decimal,
        booking_reference: str | None = None,
        reason: str | None = None,
        type: EntryType = "spend",
    ):
        amount = money(amount)
        if amount <= 0:
            raise ValueError(f"Debit amount must be > 0, got {amount}")
        return self._append(owner, -amount, type, booking_reference, reason)

    def _append(self, owner: str, signed: Decimal, type: str, booking_reference: str | None, reason: str | None):
        anchor = self.lock(owner)
        last = self._last(owner)
        balance = money(last.resulting_balance) if last is not None else ZERO
        resulting = balance + signed
        if resulting < 0:
            raise InsufficientBalance(owner, requested=-signed, available=balance)

        row = self.row_model(
            owner=owner,
            seq=(last.seq + 1) if last is not None else 1,
            booking_reference=booking_reference,
            type=type,
            amount=signed,
            resulting_balance=resulting,
            reason=reason,
        )
        self.s.add(row)
        self._after_append(anchor, row)
        self.s.flush()
        logger.info(
            "%s %s owner=%s amount=%s balance=%s booking=%s",
            self.name,
            type,
            owner,
            signed,
            resulting,
            booking_reference,
        )
        return row


class CashbackLedger(LedgerStore):
    row_model = CashbackTransaction
    name = "cashback"

    def lock(self, owner: str) -> CashbackAccount:
        acct = self.s.get(CashbackAccount, owner, with_for_update=True)
        if acct is not None:
            return acct
        try:
            with self.s.begin_nested():
                self.s.add(CashbackAccount(owner=owner))
        except IntegrityError:
            # Another writer created the account first; lock theirs below.
            logger.debug("cashback account %s created concurrently", owner)
        return self.s.get(CashbackAccount, owner, with_for_update=True, populate_existing=True)


class GiftCardLedger(LedgerStore):
    row_model = GiftCardTransaction
    name = "gift_card"

    def lock(self, owner: str) -> GiftCard:
        card = (
            self.s.query(GiftCard)
            .filter(GiftCard.code == owner)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if card is None:
            raise NotFound("Gift card not found", code=owner)
        return card

    def _after_append(self, card: GiftCard, row: GiftCardTransaction) -> None:
        # The card row mirrors the ledger so listings need no aggregate query.
        card.balance = row.resulting_balance
        if card.status == "active" and row.resulting_balance == 0:
            card.status = "used"
        elif card.status == "used" and row.resulting_balance > 0:
            card.status = "active"
