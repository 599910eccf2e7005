# backend/custody/services/chain/observers.py
"""
Poll-cycle observers.

`poll()` returns a generator over one cycle: per-address reads run in a thread
pool and observations are yielded as the reads complete, so the order is not
stable. Nothing an observer persists ever moves past an observation that was
not applied, so a cycle can be abandoned and simply run again.
"""
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from custody.core.db import session_scope
from custody.core.enums import Currency
from custody.core.errors import ChainUnavailable
from custody.models import AddressSnapshot, ScanCursor
from custody.services.chain.base import BalanceCursor, ChainAdapter, Observation, SignedTransfer

logger = logging.getLogger(__name__)

AddressSource = Callable[[], Iterable[str]]


class ChainObserver(ABC):
    def __init__(self, adapter: ChainAdapter, addresses: AddressSource, workers: int = 4):
        self.adapter = adapter
        self.currency = adapter.currency
        self._addresses = addresses
        self.workers = max(1, workers)
        # held by whoever runs a cycle and applies it, so cycles of one observer never interleave
        self.lock = threading.Lock()

    def watched(self) -> list[str]:
        return list(dict.fromkeys(a for a in self._addresses() if a))

    def _targets(self, addresses: Iterable[str] | None) -> list[str]:
        return self.watched() if addresses is None else list(dict.fromkeys(addresses))

    def _fetch_all(self, fn, addresses: list[str]):
        """Yield (address, result) in completion order; failed addresses are logged and skipped."""
        if not addresses:
            return
        with ThreadPoolExecutor(max_workers=min(self.workers, len(addresses))) as pool:
            futures = {pool.submit(fn, address): address for address in addresses}
            for future in as_completed(futures):
                address = futures[future]
                try:
                    result = future.result()
                except ChainUnavailable as e:
                    logger.error(f"[{self.currency.value}] poll failed for {address}: {e}")
                    continue
                except Exception as e:
                    logger.exception(f"[{self.currency.value}] unexpected poll error for {address}: {e}")
                    continue
                yield address, result

    @abstractmethod
    def poll(self, addresses: Iterable[str] | None = None) -> Iterator[Observation]:
        """One cycle over `addresses`, or over every watched address."""


class TransactionIndexedObserver(ChainObserver):
    """UTXO chains: list transactions touching each watched address."""

    def poll(self, addresses: Iterable[str] | None = None) -> Iterator[Observation]:
        for _address, observations in self._fetch_all(self.adapter.list_incoming, self._targets(addresses)):
            yield from observations


# ──────────────────────────────────────────────
# Balance-diff snapshots
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class Snapshot:
    raw_balance: int
    sequence: int
    sweep_tx_reference: str | None = None
    sweep_raw_transaction: str | None = field(default=None, repr=False)
    sweep_outflow_raw: int = 0
    sweep_fee_raw: int = 0


def _snapshot_row(db: Session, currency: str, address: str, lock: bool = False) -> AddressSnapshot | None:
    stmt = select(AddressSnapshot).where(
        AddressSnapshot.currency == currency,
        AddressSnapshot.address == address.lower(),
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def advance_snapshot(db: Session, observation: Observation) -> bool:
    """
    Move an address's snapshot to the balance an observation was cut at, inside
    the caller's transaction. Refused when the snapshot is no longer the one
    the observation was computed from.
    """
    cursor = observation.cursor
    row = _snapshot_row(db, Currency(observation.currency).value, observation.address, lock=True)
    if row is None or row.sequence != cursor.base_sequence or int(row.last_raw_balance) != cursor.base_raw:
        return False
    row.last_raw_balance = str(cursor.raw_balance)
    row.sequence = cursor.sequence
    return True


class DbSnapshotStore:
    """Snapshots in address_snapshots, so a restart does not re-baseline (and miss) deposits."""

    def __init__(self, session_factory: sessionmaker | None = None):
        self.session_factory = session_factory

    @staticmethod
    def _snapshot(row: AddressSnapshot) -> Snapshot:
        return Snapshot(
            raw_balance=int(row.last_raw_balance),
            sequence=row.sequence,
            sweep_tx_reference=row.sweep_tx_reference,
            sweep_raw_transaction=row.sweep_raw_transaction,
            sweep_outflow_raw=int(row.sweep_outflow_raw or 0),
            sweep_fee_raw=int(row.sweep_fee_raw or 0),
        )

    def get(self, currency: str, address: str) -> Snapshot | None:
        with session_scope(self.session_factory) as db:
            row = _snapshot_row(db, currency, address)
            return self._snapshot(row) if row else None

    def save(self, currency: str, address: str, raw_balance: int, sequence: int):
        """Set balance and sequence outright. Only for baselines."""
        with session_scope(self.session_factory) as db:
            row = _snapshot_row(db, currency, address, lock=True)
            if row is None:
                row = AddressSnapshot(currency=currency, address=address.lower())
                db.add(row)
            row.last_raw_balance = str(raw_balance)
            row.sequence = sequence

    def write_down(self, currency: str, address: str, base: Snapshot, raw_balance: int) -> bool:
        """Lower the balance after an outflow no sweep explains. Refused if the row moved since `base`."""
        with session_scope(self.session_factory) as db:
            row = _snapshot_row(db, currency, address, lock=True)
            if (row is None or row.sweep_tx_reference or row.sequence != base.sequence
                    or int(row.last_raw_balance) != base.raw_balance):
                return False
            row.last_raw_balance = str(raw_balance)
            return True

    def ensure(self, currency: str, address: str, raw_balance: int = 0):
        """Create a baseline if none exists yet."""
        if self.get(currency, address) is None:
            self.save(currency, address, raw_balance, 0)

    # sweeps ------------------------------------------------------------------
    def begin_sweep(self, currency: str, address: str, transfer: SignedTransfer, outflow_raw: int,
                    fee_raw: int) -> bool:
        """Record a sweep before it is broadcast. False if another one is still in flight."""
        with session_scope(self.session_factory) as db:
            row = _snapshot_row(db, currency, address, lock=True)
            if row is None or row.sweep_tx_reference:
                return False
            row.sweep_tx_reference = transfer.tx_reference
            row.sweep_raw_transaction = transfer.raw
            row.sweep_outflow_raw = str(outflow_raw)
            row.sweep_fee_raw = str(fee_raw)
            return True

    def clear_sweep(self, currency: str, address: str, tx_reference: str):
        """Forget a sweep that never reached the network."""
        with session_scope(self.session_factory) as db:
            row = _snapshot_row(db, currency, address, lock=True)
            if row is not None and row.sweep_tx_reference == tx_reference:
                self._clear(row)

    def settle_sweep(self, currency: str, address: str, tx_reference: str, deducted_raw: int) -> Snapshot | None:
        """Deduct a mined sweep from the snapshot. Returns the updated snapshot, None if already settled."""
        with session_scope(self.session_factory) as db:
            row = _snapshot_row(db, currency, address, lock=True)
            if row is None or row.sweep_tx_reference != tx_reference:
                return None
            remaining = int(row.last_raw_balance) - deducted_raw
            if remaining < 0:
                logger.warning(
                    f"[{currency}] sweep {tx_reference} moved more than the snapshot of {address} held"
                )
            row.last_raw_balance = str(max(remaining, 0))
            self._clear(row)
            db.flush()
            return self._snapshot(row)

    @staticmethod
    def _clear(row: AddressSnapshot):
        row.sweep_tx_reference = None
        row.sweep_raw_transaction = None
        row.sweep_outflow_raw = None
        row.sweep_fee_raw = None


class BalanceDiffObserver(ChainObserver):
    """
    Account chains: compare each address's balance to its last snapshot.

    A positive delta becomes an observation referenced as
    `<currency>:<address>:<sequence>` and is treated as final
    (`confirmations` = the configured requirement). The observation carries
    its cursor and the reconciler moves the snapshot in the transaction that
    records the deposit, so an observation that was never applied is produced
    again, under the same reference, next cycle.

    A sweep out of the address is deducted from the snapshot once its
    transaction is mined, so value arriving around a sweep is never netted
    against it.
    """

    def __init__(self, adapter: ChainAdapter, addresses: AddressSource, snapshots: DbSnapshotStore,
                 confirmations: int, workers: int = 4):
        super().__init__(adapter, addresses, workers=workers)
        self.snapshots = snapshots
        self.confirmations = confirmations

    def _read(self, address: str) -> tuple[Snapshot | None, int]:
        snapshot = self.snapshots.get(self.currency.value, address)
        if snapshot is not None and snapshot.sweep_tx_reference:
            snapshot = self._settle_sweep(address, snapshot)
        return snapshot, self.adapter.get_balance_raw(address)

    def _settle_sweep(self, address: str, snapshot: Snapshot) -> Snapshot:
        status = self.adapter.get_transaction(snapshot.sweep_tx_reference)
        if not status.found:
            return snapshot
        # a reverted sweep still paid its fee
        deducted = snapshot.sweep_fee_raw if status.succeeded is False else snapshot.sweep_outflow_raw
        settled = self.snapshots.settle_sweep(
            self.currency.value, address, snapshot.sweep_tx_reference, deducted
        )
        logger.info(
            f"[{self.currency.value}] sweep {snapshot.sweep_tx_reference} from {address} mined, "
            f"snapshot reduced by {self.adapter.to_amount(deducted)}"
        )
        return settled or self.snapshots.get(self.currency.value, address)

    def poll(self, addresses: Iterable[str] | None = None) -> Iterator[Observation]:
        currency = self.currency.value
        for address, (snapshot, current) in self._fetch_all(self._read, self._targets(addresses)):
            if snapshot is None:
                logger.info(f"[{currency}] baselining {address} at {current}")
                self.snapshots.save(currency, address, current, 0)
                continue

            delta = current - snapshot.raw_balance
            if delta < 0:
                if snapshot.sweep_tx_reference:
                    # sweep mined after its status was read; settled next cycle
                    continue
                logger.warning(
                    f"[{currency}] unexplained outflow of {self.adapter.to_amount(-delta)} at {address}"
                )
                self.snapshots.write_down(currency, address, snapshot, current)
                continue
            if delta == 0:
                continue

            amount = self.adapter.to_amount(delta)
            if amount <= 0:
                # below 1e-8: leave the snapshot so dust accumulates into a creditable delta
                continue

            sequence = snapshot.sequence + 1
            yield Observation(
                currency=self.currency,
                address=address,
                amount=amount,
                external_ref=f"{currency}:{address.lower()}:{sequence}",
                confirmations=self.confirmations,
                cursor=BalanceCursor(
                    base_raw=snapshot.raw_balance,
                    base_sequence=snapshot.sequence,
                    raw_balance=current,
                    sequence=sequence,
                ),
            )


# ──────────────────────────────────────────────
# Block scanning
# ──────────────────────────────────────────────
class DbCursorStore:
    def __init__(self, session_factory: sessionmaker | None = None):
        self.session_factory = session_factory

    def _row(self, db: Session, currency: str, address: str) -> ScanCursor | None:
        return db.execute(
            select(ScanCursor).where(ScanCursor.currency == currency, ScanCursor.address == address.lower())
        ).scalar_one_or_none()

    def get(self, currency: str, address: str) -> int | None:
        with session_scope(self.session_factory) as db:
            row = self._row(db, currency, address)
            return row.next_block if row else None

    def save(self, currency: str, address: str, next_block: int):
        with session_scope(self.session_factory) as db:
            row = self._row(db, currency, address)
            if row is None:
                row = ScanCursor(currency=currency, address=address.lower())
                db.add(row)
            row.next_block = next_block


class BlockScanObserver(ChainObserver):
    """
    Account-chain pool addresses: scan blocks for transfers paying the address.

    The pool's balance also moves with withdrawals and sweeps, so deposits
    there are found per transaction instead of by balance diff. Each address
    keeps a cursor; it only moves past blocks that are final and whose
    transfers have all been recorded at the required depth, so shallow blocks
    are rescanned (and their confirmations raised) until they settle.
    """

    def __init__(self, adapter: ChainAdapter, addresses: AddressSource, cursors: DbCursorStore,
                 confirmations: int, observed_depth: Callable[[Currency, str], int | None],
                 is_internal: Callable[[str], bool] | None = None, max_blocks: int = 500,
                 lookback: int = 1000, workers: int = 4):
        super().__init__(adapter, addresses, workers=workers)
        self.cursors = cursors
        self.confirmations = confirmations
        self.observed_depth = observed_depth
        self.is_internal = is_internal
        self.max_blocks = max(1, max_blocks)
        self.lookback = max(1, lookback)

    def _scan(self, address: str, tip: int) -> tuple[int, int, list[Observation]]:
        currency = self.currency.value
        start = self.cursors.get(currency, address)
        if start is None:
            start = max(tip - self.lookback + 1, 0)
            logger.info(f"[{currency}] scanning {address} from block {start}")
            self.cursors.save(currency, address, start)
        end = min(tip, start + self.max_blocks - 1)
        if end < start:
            return start, end, []

        observations = []
        for obs in self.adapter.scan_incoming(address, start, end, tip):
            if obs.sender and self.is_internal is not None and self.is_internal(obs.sender):
                logger.debug(f"[{currency}] skipping internal transfer {obs.external_ref} into {address}")
                continue
            observations.append(obs)
        return start, end, observations

    def _advance(self, address: str, start: int, end: int, tip: int, observations: list[Observation]):
        final_end = min(end, tip - self.confirmations + 1)
        next_block = final_end + 1
        for obs in observations:
            if obs.block is None or obs.block > final_end:
                continue
            depth = self.observed_depth(obs.currency, obs.external_ref)
            if depth is None or depth < self.confirmations:
                next_block = min(next_block, obs.block)
        if next_block > start:
            self.cursors.save(self.currency.value, address, next_block)

    def poll(self, addresses: Iterable[str] | None = None) -> Iterator[Observation]:
        targets = self._targets(addresses)
        if not targets:
            return
        try:
            tip = self.adapter.block_number()
        except ChainUnavailable as e:
            logger.error(f"[{self.currency.value}] block height unavailable, skipping scan: {e}")
            return

        for address, (start, end, observations) in self._fetch_all(lambda a: self._scan(a, tip), targets):
            yield from observations
            # runs only once the consumer has applied everything above
            self._advance(address, start, end, tip, observations)
