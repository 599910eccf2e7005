# backend/custody/services/deposits.py
"""
Deposit reconciliation.

Each observation is applied in its own transaction. The status flip to
`completed` and the ledger credit happen in that same transaction, keyed by the
on-chain reference, so a replayed or concurrent observation can neither credit
twice nor leave a completed record without its credit. A balance-diff
observation also moves its address snapshot in that transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from custody.core.db import session_scope
from custody.core.enums import ChainFamily, Currency, DepositStatus
from custody.core.errors import InvalidTransition, NotFound
from custody.models import DepositAddress, DepositRecord, User
from custody.services.chain.base import Observation
from custody.services.chain.observers import advance_snapshot
from custody.services.chain.registry import family_of
from custody.services.ledger import Ledger

logger = logging.getLogger(__name__)

MAX_APPLY_ATTEMPTS = 3
FINAL_STATUSES = (DepositStatus.COMPLETED.value, DepositStatus.FAILED.value)


def _now():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HealReport:
    checked: int = 0
    credited: int = 0
    status_fixed: int = 0


class DepositReconciler:
    def __init__(self, ledger: Ledger, confirmations: dict[str, int], session_factory: sessionmaker | None = None,
                 notifier=None, sweeper=None):
        self.ledger = ledger
        self.confirmations = confirmations
        self.session_factory = session_factory
        self.notifier = notifier
        self.sweeper = sweeper

    def required(self, currency: Currency | str) -> int:
        return int(self.confirmations[Currency(currency).value])

    # ──────────────────────────────────────────────
    # Observations
    # ──────────────────────────────────────────────
    def apply(self, observation: Observation) -> DepositRecord | None:
        """Record one observation. None when a balance-diff observation went stale before it was applied."""
        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            try:
                with session_scope(self.session_factory) as db:
                    record, credited = self._apply(db, observation)
                break
            except IntegrityError:
                # a concurrent pass inserted the record or the credit first; re-read and continue from there
                if attempt == MAX_APPLY_ATTEMPTS:
                    raise
                logger.info(f"Deposit {observation.external_ref} raced with another pass, retrying")

        if credited:
            self._after_credit(record)
        return record

    def apply_all(self, observations: Iterable[Observation]) -> int:
        """
        Apply a poll cycle. Returns the number of observations applied.

        A failing observation is logged and skipped; its transaction rolled
        back, so it is observed again next cycle while the rest of the cycle
        goes on.
        """
        applied = 0
        for observation in observations:
            try:
                record = self.apply(observation)
            except Exception as e:
                logger.exception(
                    f"Deposit {observation.currency.value} {observation.external_ref} at {observation.address} "
                    f"could not be applied, retrying next cycle: {e}"
                )
                continue
            if record is not None:
                applied += 1
        return applied

    def _apply(self, db: Session, obs: Observation) -> tuple[DepositRecord | None, bool]:
        currency = Currency(obs.currency).value
        record = db.execute(
            select(DepositRecord)
            .where(DepositRecord.currency == currency, DepositRecord.tx_reference == obs.external_ref)
            .with_for_update()
        ).scalar_one_or_none()

        if record is None:
            if obs.cursor is not None and not advance_snapshot(db, obs):
                logger.info(f"Deposit {obs.external_ref} was computed from an outdated snapshot, dropping it")
                return None, False
            record = self._create(db, obs)
        else:
            if record.amount != obs.amount:
                logger.error(
                    f"Deposit {obs.external_ref} observed as {obs.amount} but recorded as {record.amount}; "
                    f"keeping the recorded amount"
                )
            # replays only ever raise the observed depth
            if obs.confirmations > record.confirmations:
                record.confirmations = obs.confirmations
            if (
                record.status == DepositStatus.PENDING.value
                and record.user_id is not None
                and record.confirmations >= 1
            ):
                record.status = DepositStatus.CONFIRMING.value

        credited = self._complete_if_final(db, record)
        db.flush()
        return record, credited

    def _create(self, db: Session, obs: Observation) -> DepositRecord:
        currency = Currency(obs.currency)
        user_id = self._owner(db, currency, obs.address)
        record = DepositRecord(
            user_id=user_id,
            currency=currency.value,
            amount=obs.amount,
            address=obs.address,
            sender_address=obs.sender,
            tx_reference=obs.external_ref,
            confirmations=max(obs.confirmations, 0),
            required_confirmations=self.required(currency),
            status=DepositStatus.PENDING.value,
        )
        if obs.amount <= 0:
            record.status = DepositStatus.FAILED.value
            record.failure_reason = "non-positive amount"
            logger.warning(f"Deposit {obs.external_ref} has non-positive amount {obs.amount}, marking failed")
        elif user_id is not None and obs.confirmations >= 1:
            record.status = DepositStatus.CONFIRMING.value

        db.add(record)
        db.flush()

        if user_id is None:
            logger.info(
                f"Unattributed {currency.value} deposit {obs.amount} at {obs.address} (ref {obs.external_ref}), "
                f"waiting for an admin claim"
            )
        else:
            logger.info(
                f"Detected {currency.value} deposit {obs.amount} for user {user_id} "
                f"({obs.confirmations}/{record.required_confirmations} confirmations, ref {obs.external_ref})"
            )
        return record

    def _owner(self, db: Session, currency: Currency, address: str) -> int | None:
        stmt = select(DepositAddress.user_id).where(DepositAddress.currency == currency.value)
        if family_of(currency) == ChainFamily.EVM:
            stmt = stmt.where(DepositAddress.address.ilike(address))
        else:
            stmt = stmt.where(DepositAddress.address == address)
        return db.execute(stmt).scalar_one_or_none()

    def _complete_if_final(self, db: Session, record: DepositRecord) -> bool:
        if record.status in FINAL_STATUSES or record.user_id is None:
            return False
        if record.confirmations < record.required_confirmations:
            return False

        result = self.ledger.credit(
            db,
            record.user_id,
            record.currency,
            record.amount,
            record.tx_reference,
            meta={"deposit_id": record.id, "address": record.address},
        )
        record.status = DepositStatus.COMPLETED.value
        if record.credited_at is None:
            record.credited_at = _now()
        if result.duplicate:
            logger.warning(f"Deposit {record.tx_reference} was already credited; status corrected to completed")
        return not result.duplicate

    def _after_credit(self, record: DepositRecord):
        if self.notifier is not None:
            try:
                self.notifier.deposit_confirmed(record)
            except Exception as e:
                logger.exception(f"Deposit {record.id} notification failed: {e}")
        if self.sweeper is not None:
            # sweeping is scheduled, never awaited; crediting does not depend on it
            self.sweeper.schedule(record.user_id, Currency(record.currency))

    # ──────────────────────────────────────────────
    # Admin operations
    # ──────────────────────────────────────────────
    def claim(self, deposit_id: int, user_id: int, admin_id: int | None = None) -> DepositRecord:
        """Attribute a pool deposit to a user; credits immediately if it is already deep enough."""
        with session_scope(self.session_factory) as db:
            record = db.execute(
                select(DepositRecord).where(DepositRecord.id == deposit_id).with_for_update()
            ).scalar_one_or_none()
            if record is None:
                raise NotFound(f"deposit {deposit_id} not found")
            if record.user_id is not None:
                raise InvalidTransition(f"deposit {deposit_id} already belongs to user {record.user_id}")
            if record.status != DepositStatus.PENDING.value:
                raise InvalidTransition(f"deposit {deposit_id} is {record.status}, cannot claim")
            if db.get(User, user_id) is None:
                raise NotFound(f"user {user_id} not found")

            record.user_id = user_id
            record.claimed_by = admin_id
            if record.confirmations >= 1:
                record.status = DepositStatus.CONFIRMING.value
            credited = self._complete_if_final(db, record)
            db.flush()

        logger.info(f"Deposit {deposit_id} claimed for user {user_id} by admin {admin_id}")
        if credited:
            self._after_credit(record)
        return record

    def heal(self) -> HealReport:
        """Re-derive each deposit's status from whether its reference was credited."""
        with session_scope(self.session_factory) as db:
            ids = list(
                db.execute(
                    select(DepositRecord.id).where(
                        DepositRecord.user_id.is_not(None),
                        DepositRecord.status != DepositStatus.FAILED.value,
                    )
                ).scalars()
            )

        credited = fixed = 0
        for deposit_id in ids:
            with session_scope(self.session_factory) as db:
                record = db.execute(
                    select(DepositRecord).where(DepositRecord.id == deposit_id).with_for_update()
                ).scalar_one()
                is_credited = self.ledger.is_credited(db, record.currency, record.tx_reference)

                if record.status == DepositStatus.COMPLETED.value and not is_credited:
                    logger.warning(f"Inconsistent state: deposit {record.id} completed without credit, crediting now")
                    self.ledger.credit(
                        db, record.user_id, record.currency, record.amount, record.tx_reference,
                        meta={"deposit_id": record.id, "healed": True},
                    )
                    credited += 1
                elif is_credited and record.status != DepositStatus.COMPLETED.value:
                    logger.warning(f"Inconsistent state: deposit {record.id} credited but {record.status}, marking completed")
                    record.status = DepositStatus.COMPLETED.value
                    record.credited_at = record.credited_at or _now()
                    fixed += 1

        if credited or fixed:
            logger.warning(f"Deposit heal: {credited} credited, {fixed} statuses corrected")
        return HealReport(checked=len(ids), credited=credited, status_fixed=fixed)

    # ──────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────
    def observed_depth(self, currency: Currency | str, tx_reference: str) -> int | None:
        """Confirmations last recorded for a reference, None if it was never recorded."""
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(DepositRecord.confirmations).where(
                    DepositRecord.currency == Currency(currency).value,
                    DepositRecord.tx_reference == tx_reference,
                )
            ).scalar_one_or_none()

    def list_deposits(self, db: Session, user_id: int | None = None, status: str | None = None,
                      unattributed: bool = False, limit: int = 100) -> list[DepositRecord]:
        stmt = select(DepositRecord)
        if user_id is not None:
            stmt = stmt.where(DepositRecord.user_id == user_id)
        if unattributed:
            stmt = stmt.where(DepositRecord.user_id.is_(None))
        if status:
            stmt = stmt.where(DepositRecord.status == status)
        return list(db.execute(stmt.order_by(DepositRecord.id.desc()).limit(limit)).scalars())
