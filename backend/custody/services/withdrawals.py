# backend/custody/services/withdrawals.py
"""
Withdrawal lifecycle.

    pending --approve--> approved --broadcast ok--> completed
       |                    |------broadcast failed--> failed (hold released)
       |                    `------timeout----------> stays approved, resolved by recover_in_flight
       `----reject------> rejected (hold released)

Approval signs first, then claims the request with a conditional
`pending -> approved` update that also stores the transaction hash and raw
transaction. Only the claimant broadcasts. The stored hash is what a restart
uses to find out whether the send happened.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from custody.core.addresses import validate_address
from custody.core.db import session_scope
from custody.core.enums import Currency, LedgerEntryType, WithdrawalStatus, parse_currency
from custody.core.errors import (
    BroadcastFailed,
    BroadcastTimeout,
    ChainUnavailable,
    InconsistentState,
    InvalidAmount,
    InvalidTransition,
    NotFound,
)
from custody.models import WithdrawalRequest
from custody.services.chain.base import SignedTransfer
from custody.services.ledger import QUANT, Ledger, normalize_amount

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


@dataclass
class RecoveryReport:
    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    unresolved: list[int] = field(default_factory=list)


class WithdrawalCoordinator:
    def __init__(self, ledger: Ledger, pool, fee_rates: dict[str, Decimal],
                 session_factory: sessionmaker | None = None, notifier=None):
        self.ledger = ledger
        self.pool = pool
        self.fee_rates = fee_rates
        self.session_factory = session_factory
        self.notifier = notifier

    def quote(self, currency: Currency, amount: Decimal) -> tuple[Decimal, Decimal]:
        """(fee, net amount) for a requested amount."""
        rate = Decimal(str(self.fee_rates.get(currency.value, 0)))
        fee = (amount * rate).quantize(QUANT, rounding=ROUND_DOWN)
        net = amount - fee
        if net <= 0:
            raise InvalidAmount("amount does not cover the withdrawal fee", fee=str(fee))
        return fee, net

    # ──────────────────────────────────────────────
    # User
    # ──────────────────────────────────────────────
    def request_withdrawal(self, user_id: int, currency: Currency | str, amount, destination: str) -> WithdrawalRequest:
        currency = parse_currency(currency)
        destination = validate_address(currency, destination)
        amount = normalize_amount(amount)
        fee, net = self.quote(currency, amount)

        with session_scope(self.session_factory) as db:
            in_flight = db.execute(
                select(WithdrawalRequest.id).where(
                    WithdrawalRequest.user_id == user_id,
                    WithdrawalRequest.status == WithdrawalStatus.APPROVED.value,
                )
            ).first()
            if in_flight is not None:
                raise InconsistentState(
                    f"withdrawal #{in_flight[0]} is still being reconciled with the chain",
                    request_id=in_flight[0],
                )

            hold_id = self.ledger.hold(
                db, user_id, currency, amount, meta={"destination": destination, "fee": str(fee)}
            )
            request = WithdrawalRequest(
                user_id=user_id,
                currency=currency.value,
                amount=amount,
                fee=fee,
                net_amount=net,
                destination_address=destination,
                status=WithdrawalStatus.PENDING.value,
                hold_id=hold_id,
            )
            db.add(request)
            db.flush()

        logger.info(
            f"Withdrawal #{request.id} requested: user {user_id}, {amount} {currency.value} "
            f"(net {net}) to {destination}"
        )
        if self.notifier is not None:
            self.notifier.withdrawal_requested(request)
        return request

    # ──────────────────────────────────────────────
    # Admin
    # ──────────────────────────────────────────────
    def approve(self, request_id: int, admin_id: int | None, notes: str | None = None) -> WithdrawalRequest:
        with session_scope(self.session_factory) as db:
            request = self._get(db, request_id)
            if request.status != WithdrawalStatus.PENDING.value:
                raise InvalidTransition(f"withdrawal #{request_id} is {request.status}, cannot approve")
            currency = Currency(request.currency)
            destination = validate_address(currency, request.destination_address)
            net_amount = request.net_amount

        # one signed-but-unsent transfer per pool address at a time, or two would take the same nonce
        with self.pool.send_lock(currency):
            # liquidity check and signing; any failure here leaves the request pending
            transfer = self.pool.prepare(currency, destination, net_amount)
            self._claim(request_id, admin_id, notes, transfer)
            logger.info(f"Withdrawal #{request_id} approved by admin {admin_id}, tx {transfer.tx_reference}")
            return self._broadcast(request_id, transfer)

    def _claim(self, request_id: int, admin_id: int | None, notes: str | None, transfer: SignedTransfer):
        with session_scope(self.session_factory) as db:
            claimed = db.execute(
                update(WithdrawalRequest)
                .where(
                    WithdrawalRequest.id == request_id,
                    WithdrawalRequest.status == WithdrawalStatus.PENDING.value,
                )
                .values(
                    status=WithdrawalStatus.APPROVED.value,
                    admin_id=admin_id,
                    admin_notes=notes,
                    tx_reference=transfer.tx_reference,
                    raw_transaction=transfer.raw,
                    broadcast_at=_now(),
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise InvalidTransition(f"withdrawal #{request_id} was already processed")

    def reject(self, request_id: int, admin_id: int | None, reason: str | None = None) -> WithdrawalRequest:
        with session_scope(self.session_factory) as db:
            claimed = db.execute(
                update(WithdrawalRequest)
                .where(
                    WithdrawalRequest.id == request_id,
                    WithdrawalRequest.status == WithdrawalStatus.PENDING.value,
                )
                .values(
                    status=WithdrawalStatus.REJECTED.value,
                    admin_id=admin_id,
                    admin_notes=reason,
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            request = self._get(db, request_id)
            if claimed.rowcount != 1:
                raise InvalidTransition(f"withdrawal #{request_id} is {request.status}, cannot reject")
            self.ledger.release_hold(db, request.hold_id, LedgerEntryType.WITHDRAWAL_REJECTED, reason)

        logger.info(f"Withdrawal #{request_id} rejected by admin {admin_id}: {reason or '-'}")
        if self.notifier is not None:
            self.notifier.withdrawal_rejected(request)
        return request

    def rebroadcast(self, request_id: int) -> WithdrawalRequest:
        """Send the stored signed transaction again. Same bytes, same hash: never a second payment."""
        with session_scope(self.session_factory) as db:
            request = self._get(db, request_id)
            if request.status != WithdrawalStatus.APPROVED.value:
                raise InvalidTransition(f"withdrawal #{request_id} is {request.status}, nothing to rebroadcast")
            if not request.raw_transaction or not request.tx_reference:
                raise InconsistentState(f"withdrawal #{request_id} has no signed transaction")
            currency = Currency(request.currency)
            transfer = SignedTransfer(
                currency=currency,
                source=self.pool.pool_address(currency),
                destination=request.destination_address,
                amount=request.net_amount,
                fee=Decimal("0"),
                tx_reference=request.tx_reference,
                raw=request.raw_transaction,
            )
        logger.info(f"Rebroadcasting withdrawal #{request_id} (tx {transfer.tx_reference})")
        return self._broadcast(request_id, transfer)

    # ──────────────────────────────────────────────
    # Broadcast and settlement
    # ──────────────────────────────────────────────
    def _broadcast(self, request_id: int, transfer: SignedTransfer) -> WithdrawalRequest:
        try:
            tx_reference = self.pool.broadcast(transfer)
        except BroadcastTimeout:
            logger.warning(
                f"Withdrawal #{request_id} broadcast timed out; left approved with tx {transfer.tx_reference}"
            )
            raise
        except BroadcastFailed as e:
            self._fail(request_id, f"broadcast failed: {e}")
            raise
        return self._complete(request_id, tx_reference or transfer.tx_reference)

    def _complete(self, request_id: int, tx_reference: str) -> WithdrawalRequest:
        with session_scope(self.session_factory) as db:
            request = self._get(db, request_id, lock=True)
            if request.status == WithdrawalStatus.COMPLETED.value:
                return request
            if request.status != WithdrawalStatus.APPROVED.value:
                raise InvalidTransition(f"withdrawal #{request_id} is {request.status}, cannot complete")
            self.ledger.commit_hold(db, request.hold_id, tx_reference)
            request.status = WithdrawalStatus.COMPLETED.value
            request.tx_reference = tx_reference
            request.completed_at = _now()

        logger.info(f"Withdrawal #{request_id} completed, tx {tx_reference}")
        if self.notifier is not None:
            self.notifier.withdrawal_completed(request)
        return request

    def _fail(self, request_id: int, reason: str) -> WithdrawalRequest:
        with session_scope(self.session_factory) as db:
            request = self._get(db, request_id, lock=True)
            if request.status == WithdrawalStatus.FAILED.value:
                return request
            if request.status != WithdrawalStatus.APPROVED.value:
                raise InvalidTransition(f"withdrawal #{request_id} is {request.status}, cannot fail")
            request.status = WithdrawalStatus.FAILED.value
            request.admin_notes = reason[:500]
            try:
                self.ledger.release_hold(db, request.hold_id, LedgerEntryType.WITHDRAWAL_FAILED, reason)
            except Exception as e:
                logger.critical(f"Withdrawal #{request_id} failed but its hold could not be released: {e}")
                if self.notifier is not None:
                    self.notifier.alert(
                        "Hold release failed",
                        f"Withdrawal #{request_id}: {reason}\nRelease error: {e}\nUser funds stay held until fixed.",
                    )
                raise

        logger.warning(f"Withdrawal #{request_id} failed, hold released: {reason}")
        if self.notifier is not None:
            self.notifier.withdrawal_failed(request, reason)
        return request

    def recover_in_flight(self) -> RecoveryReport:
        """Settle approved requests against the chain using their stored transaction hash."""
        report = RecoveryReport()
        with session_scope(self.session_factory) as db:
            in_flight = db.execute(
                select(WithdrawalRequest.id, WithdrawalRequest.currency, WithdrawalRequest.tx_reference)
                .where(WithdrawalRequest.status == WithdrawalStatus.APPROVED.value)
                .order_by(WithdrawalRequest.id)
            ).all()

        for request_id, currency, tx_reference in in_flight:
            if not tx_reference:
                self._fail(request_id, "approved without a transaction reference")
                report.failed.append(request_id)
                continue
            try:
                status = self.pool.lookup(currency, tx_reference)
            except ChainUnavailable as e:
                logger.warning(f"Withdrawal #{request_id}: chain lookup failed, retrying next pass: {e}")
                report.unresolved.append(request_id)
                continue

            if status.found and status.succeeded is False:
                self._fail(request_id, f"transaction {tx_reference} reverted on chain")
                report.failed.append(request_id)
            elif status.found:
                self._complete(request_id, tx_reference)
                report.completed.append(request_id)
            else:
                logger.warning(
                    f"Withdrawal #{request_id}: tx {tx_reference} not found on chain; "
                    f"left approved for rebroadcast or review"
                )
                report.unresolved.append(request_id)

        if in_flight:
            logger.info(
                f"In-flight recovery: {len(report.completed)} completed, {len(report.failed)} failed, "
                f"{len(report.unresolved)} unresolved"
            )
        return report

    # ──────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────
    def _get(self, db: Session, request_id: int, lock: bool = False) -> WithdrawalRequest:
        stmt = select(WithdrawalRequest).where(WithdrawalRequest.id == request_id)
        if lock:
            stmt = stmt.with_for_update()
        request = db.execute(stmt).scalar_one_or_none()
        if request is None:
            raise NotFound(f"withdrawal #{request_id} not found")
        return request

    def list_requests(self, db: Session, user_id: int | None = None, status: str | None = None,
                      limit: int = 100) -> list[WithdrawalRequest]:
        stmt = select(WithdrawalRequest)
        if user_id is not None:
            stmt = stmt.where(WithdrawalRequest.user_id == user_id)
        if status:
            stmt = stmt.where(WithdrawalRequest.status == status)
        return list(db.execute(stmt.order_by(WithdrawalRequest.id.desc()).limit(limit)).scalars())
