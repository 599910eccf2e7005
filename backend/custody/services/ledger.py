# backend/custody/services/ledger.py
"""
Authoritative off-chain balances.

Every mutation runs inside the caller's session transaction: the balance row is
locked with SELECT ... FOR UPDATE, updated, and the matching append-only
LedgerEntry is inserted before the caller commits. Nothing here commits.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from custody.core.enums import Currency, HoldStatus, LedgerEntryType
from custody.core.errors import (
    DuplicateDeposit,
    InconsistentState,
    InsufficientFunds,
    InvalidAmount,
    InvalidTransition,
    NotFound,
)
from custody.models import Balance, BalanceHold, LedgerEntry

logger = logging.getLogger(__name__)

QUANT = Decimal("0.00000001")
ZERO = Decimal("0")

RELEASE_TYPES = (LedgerEntryType.WITHDRAWAL_REJECTED, LedgerEntryType.WITHDRAWAL_FAILED)


def normalize_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(QUANT, rounding=ROUND_DOWN)
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"invalid amount: {value}")
    if amount <= ZERO:
        raise InvalidAmount("amount must be positive")
    return amount


def _now():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CreditResult:
    user_id: int
    currency: str
    amount: Decimal
    balance: Decimal
    available_balance: Decimal
    duplicate: bool = False


@dataclass(frozen=True)
class LedgerReconciliation:
    user_id: int
    currency: str
    expected_balance: Decimal
    expected_available: Decimal
    balance: Decimal
    available_balance: Decimal

    @property
    def matches(self) -> bool:
        return (
            self.expected_balance == self.balance
            and self.expected_available == self.available_balance
        )


class Ledger:
    def _lock_balance(self, db: Session, user_id: int, currency: str, create: bool = False) -> Balance | None:
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id, Balance.currency == currency)
            .with_for_update()
        )
        row = db.execute(stmt).scalar_one_or_none()
        if row is None and create:
            row = Balance(user_id=user_id, currency=currency, balance=ZERO, available_balance=ZERO)
            db.add(row)
            db.flush()
        return row

    def _lock_hold(self, db: Session, hold_id: int) -> BalanceHold:
        hold = db.execute(
            select(BalanceHold).where(BalanceHold.id == hold_id).with_for_update()
        ).scalar_one_or_none()
        if hold is None:
            raise NotFound(f"hold {hold_id} not found")
        return hold

    def _entry(self, db: Session, user_id, entry_type: LedgerEntryType, currency, amount, reference, meta=None):
        db.add(
            LedgerEntry(
                user_id=user_id,
                entry_type=entry_type.value,
                currency=currency,
                amount=amount,
                reference_id=reference,
                meta=meta,
            )
        )

    def _check_invariant(self, row: Balance):
        if not (ZERO <= row.available_balance <= row.balance):
            # the check constraint would reject the flush anyway; fail with context first
            raise InconsistentState(
                f"balance invariant violated for user {row.user_id} {row.currency}",
                balance=str(row.balance),
                available=str(row.available_balance),
            )

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------
    def credit(self, db: Session, user_id: int, currency: Currency | str, amount, idempotency_key: str,
               meta: dict | None = None) -> CreditResult:
        """Add funds once per idempotency key. A replay returns the settled result."""
        currency = Currency(currency).value
        amount = normalize_amount(amount)

        row = self._lock_balance(db, user_id, currency, create=True)
        settled = self._deposit_entry(db, currency, idempotency_key)
        if settled is not None:
            if settled.user_id != user_id or settled.amount != amount:
                raise DuplicateDeposit(
                    f"reference {idempotency_key} already credited with different terms",
                    user_id=settled.user_id,
                    amount=str(settled.amount),
                )
            logger.info(f"Credit {currency}:{idempotency_key} already settled, skipping")
            return CreditResult(
                user_id, currency, amount, row.balance, row.available_balance, duplicate=True
            )

        row.balance = row.balance + amount
        row.available_balance = row.available_balance + amount
        self._check_invariant(row)
        self._entry(db, user_id, LedgerEntryType.DEPOSIT, currency, amount, idempotency_key, meta)
        db.flush()

        logger.info(f"Credited {amount} {currency} to user {user_id} (ref {idempotency_key})")
        return CreditResult(user_id, currency, amount, row.balance, row.available_balance)

    def hold(self, db: Session, user_id: int, currency: Currency | str, amount, meta: dict | None = None) -> int:
        currency = Currency(currency).value
        amount = normalize_amount(amount)

        row = self._lock_balance(db, user_id, currency)
        available = row.available_balance if row else ZERO
        if available < amount:
            logger.warning(
                f"Insufficient funds for hold: user {user_id}, available {available} {currency}, "
                f"requested {amount}"
            )
            raise InsufficientFunds(
                f"insufficient {currency} balance", available=str(available), requested=str(amount)
            )

        row.available_balance = available - amount
        self._check_invariant(row)
        hold = BalanceHold(user_id=user_id, currency=currency, amount=amount, status=HoldStatus.ACTIVE.value)
        db.add(hold)
        db.flush()
        self._entry(db, user_id, LedgerEntryType.WITHDRAWAL_REQUEST, currency, amount, f"hold:{hold.id}", meta)
        db.flush()

        logger.info(f"Held {amount} {currency} for user {user_id} (hold {hold.id})")
        return hold.id

    def commit_hold(self, db: Session, hold_id: int, external_ref: str) -> Balance:
        hold = self._lock_hold(db, hold_id)
        if hold.status == HoldStatus.COMMITTED.value and hold.external_ref == external_ref:
            return self.get_balance(db, hold.user_id, hold.currency)
        if hold.status != HoldStatus.ACTIVE.value:
            raise InvalidTransition(f"hold {hold_id} is {hold.status}, cannot commit")

        row = self._lock_balance(db, hold.user_id, hold.currency)
        row.balance = row.balance - hold.amount
        self._check_invariant(row)
        hold.status = HoldStatus.COMMITTED.value
        hold.external_ref = external_ref
        hold.settled_at = _now()
        self._entry(
            db, hold.user_id, LedgerEntryType.WITHDRAWAL_COMPLETED, hold.currency, hold.amount,
            f"hold:{hold.id}", {"tx_reference": external_ref},
        )
        db.flush()

        logger.info(f"Committed hold {hold.id}: debited {hold.amount} {hold.currency} from user {hold.user_id}")
        return row

    def release_hold(self, db: Session, hold_id: int,
                     entry_type: LedgerEntryType = LedgerEntryType.WITHDRAWAL_REJECTED,
                     reason: str | None = None) -> Balance:
        if entry_type not in RELEASE_TYPES:
            raise ValueError(f"{entry_type} is not a release entry type")
        hold = self._lock_hold(db, hold_id)
        if hold.status != HoldStatus.ACTIVE.value:
            raise InvalidTransition(f"hold {hold_id} is {hold.status}, cannot release")

        row = self._lock_balance(db, hold.user_id, hold.currency)
        row.available_balance = row.available_balance + hold.amount
        self._check_invariant(row)
        hold.status = HoldStatus.RELEASED.value
        hold.settled_at = _now()
        self._entry(
            db, hold.user_id, entry_type, hold.currency, hold.amount, f"hold:{hold.id}",
            {"reason": reason} if reason else None,
        )
        db.flush()

        logger.info(f"Released hold {hold.id}: {hold.amount} {hold.currency} available again for user {hold.user_id}")
        return row

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_balance(self, db: Session, user_id: int, currency: Currency | str) -> Balance | None:
        currency = Currency(currency).value
        return db.execute(
            select(Balance).where(Balance.user_id == user_id, Balance.currency == currency)
        ).scalar_one_or_none()

    def get_balances(self, db: Session, user_id: int) -> list[Balance]:
        return list(
            db.execute(
                select(Balance).where(Balance.user_id == user_id).order_by(Balance.currency)
            ).scalars()
        )

    def _deposit_entry(self, db: Session, currency: str, idempotency_key: str) -> LedgerEntry | None:
        return db.execute(
            select(LedgerEntry).where(
                LedgerEntry.entry_type == LedgerEntryType.DEPOSIT.value,
                LedgerEntry.currency == currency,
                LedgerEntry.reference_id == idempotency_key,
            )
        ).scalar_one_or_none()

    def is_credited(self, db: Session, currency: Currency | str, idempotency_key: str) -> bool:
        return self._deposit_entry(db, Currency(currency).value, idempotency_key) is not None

    def reconcile(self, db: Session, user_id: int, currency: Currency | str) -> LedgerReconciliation:
        """Recompute balance and available balance from the entry log."""
        currency = Currency(currency).value
        totals = dict(
            db.execute(
                select(LedgerEntry.entry_type, func.coalesce(func.sum(LedgerEntry.amount), 0))
                .where(LedgerEntry.user_id == user_id, LedgerEntry.currency == currency)
                .group_by(LedgerEntry.entry_type)
            ).all()
        )

        def total(entry_type: LedgerEntryType) -> Decimal:
            return Decimal(str(totals.get(entry_type.value, 0))).quantize(QUANT)

        deposits = total(LedgerEntryType.DEPOSIT)
        held = total(LedgerEntryType.WITHDRAWAL_REQUEST)
        completed = total(LedgerEntryType.WITHDRAWAL_COMPLETED)
        released = total(LedgerEntryType.WITHDRAWAL_REJECTED) + total(LedgerEntryType.WITHDRAWAL_FAILED)

        row = self.get_balance(db, user_id, currency)
        return LedgerReconciliation(
            user_id=user_id,
            currency=currency,
            expected_balance=deposits - completed,
            expected_available=deposits - held + released,
            balance=row.balance if row else ZERO,
            available_balance=row.available_balance if row else ZERO,
        )

    def liabilities(self, db: Session, currency: Currency | str) -> Decimal:
        """Sum of user balances the pool must be able to cover."""
        currency = Currency(currency).value
        total = db.execute(
            select(func.coalesce(func.sum(Balance.balance), 0)).where(Balance.currency == currency)
        ).scalar_one()
        return Decimal(str(total)).quantize(QUANT)
