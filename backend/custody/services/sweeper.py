# backend/custody/services/sweeper.py
"""
Moves ETH that landed on display addresses into the pool.

Crediting never waits for this. The reconciler only schedules an address; the
monitor thread calls run_once(), which sweeps what is due and backs off
exponentially per address on failure. Tokens are not swept: moving them would
first require funding the display address with gas.

A sweep only moves what has been credited. Under the address's observer lock
it first runs one observe-and-apply pass for the address, then caps the
amount at the credited snapshot (minus the fee) and records the sweep on the
snapshot before broadcasting. Value that arrives later stays on the address
until the observer credits it.
"""
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal

from custody.core.enums import Currency
from custody.core.errors import BroadcastFailed
from custody.core.keys import KeyDerivationEngine
from custody.services.chain.base import SignedTransfer
from custody.services.chain.observers import DbSnapshotStore, Snapshot

logger = logging.getLogger(__name__)

SWEPT_CURRENCIES = (Currency.ETH,)


@dataclass(frozen=True)
class SweepResult:
    user_id: int
    currency: Currency
    tx_reference: str | None
    amount: Decimal | None = None
    skipped: str | None = None


class Sweeper:
    def __init__(self, adapters: dict, keys: KeyDerivationEngine, pool, min_interval: int = 300,
                 max_backoff: int = 3600, dust: Decimal = Decimal("0"), clock=time.monotonic,
                 snapshots: DbSnapshotStore | None = None):
        self.adapters = adapters
        self.keys = keys
        self.pool = pool
        self.min_interval = min_interval
        self.max_backoff = max_backoff
        self.dust = Decimal(str(dust))
        self.clock = clock
        self.snapshots = snapshots or DbSnapshotStore()
        # wired by the runtime once the observers and the reconciler exist
        self.observers: dict = {}
        self.reconciler = None
        self._due: dict[tuple[int, Currency], float] = {}
        self._failures: dict[tuple[int, Currency], int] = {}
        self._last_swept: dict[tuple[int, Currency], float] = {}
        self._lock = threading.Lock()

    def schedule(self, user_id: int | None, currency: Currency):
        if user_id is None or currency not in SWEPT_CURRENCIES:
            return
        key = (user_id, currency)
        with self._lock:
            if key in self._due:
                return
            not_before = self._last_swept.get(key, float("-inf")) + self.min_interval
            self._due[key] = max(self.clock(), not_before)
        logger.debug(f"Sweep scheduled for user {user_id} {currency.value}")

    def pending(self) -> int:
        with self._lock:
            return len(self._due)

    def run_once(self) -> list[SweepResult]:
        now = self.clock()
        with self._lock:
            due = [key for key, at in self._due.items() if at <= now]

        results = []
        for user_id, currency in due:
            key = (user_id, currency)
            try:
                result = self.sweep(user_id, currency)
            except Exception as e:
                failures = self._failures.get(key, 0) + 1
                delay = min(self.min_interval * (2 ** (failures - 1)), self.max_backoff)
                with self._lock:
                    self._failures[key] = failures
                    self._due[key] = self.clock() + delay
                logger.exception(
                    f"Sweep for user {user_id} {currency.value} failed (attempt {failures}), "
                    f"retrying in {delay}s: {e}"
                )
                continue

            with self._lock:
                self._due.pop(key, None)
                self._failures.pop(key, None)
                if result.tx_reference:
                    self._last_swept[key] = self.clock()
            results.append(result)
        return results

    def sweep(self, user_id: int, currency: Currency) -> SweepResult:
        """Send the credited balance above fee and dust from a user's display address to the pool."""
        key = self.keys.derive_spending_key(user_id, currency)
        observer = self.observers.get(currency)
        if observer is None:
            return self._sweep(user_id, currency, key)
        # the monitor cycle for this chain waits, so the snapshot cannot move under the sweep
        with observer.lock:
            if self.reconciler is not None:
                self.reconciler.apply_all(observer.poll([key.address]))
            return self._sweep(user_id, currency, key)

    def _sweep(self, user_id: int, currency: Currency, key) -> SweepResult:
        adapter = self.adapters[currency]
        address = key.address
        snapshot = self.snapshots.get(currency.value, address)
        if snapshot is None:
            logger.info(f"Skipping sweep of {address}: no snapshot yet")
            return SweepResult(user_id, currency, None, skipped="no snapshot")
        if snapshot.sweep_tx_reference:
            return self._resume(user_id, currency, address, snapshot)

        balance_raw = adapter.get_balance_raw(address)
        credited_raw = min(snapshot.raw_balance, balance_raw)
        gas_price = adapter.gas_price()
        fee_raw = gas_price * adapter.gas_limit

        residual_raw = credited_raw - fee_raw - adapter.to_raw(self.dust)
        if residual_raw <= 0:
            logger.info(
                f"Skipping sweep of {address}: credited {adapter.to_amount(credited_raw)} "
                f"does not cover fee {adapter.to_amount(fee_raw)} plus dust {self.dust}"
            )
            return SweepResult(user_id, currency, None, skipped="below fee")

        amount = adapter.to_amount(credited_raw - fee_raw)
        transfer = adapter.build_transfer(key, self.pool.pool_address(currency), amount, gas_price=gas_price)
        if not self.snapshots.begin_sweep(
            currency.value, address, transfer, adapter.to_raw(amount) + fee_raw, fee_raw
        ):
            return SweepResult(user_id, currency, None, skipped="sweep in flight")

        try:
            tx_reference = adapter.broadcast(transfer) or transfer.tx_reference
        except BroadcastFailed:
            self.snapshots.clear_sweep(currency.value, address, transfer.tx_reference)
            raise
        logger.info(f"Swept {amount} {currency.value} from {address} to pool, tx {tx_reference}")
        return SweepResult(user_id, currency, tx_reference, amount=amount)

    def _resume(self, user_id: int, currency: Currency, address: str, snapshot: Snapshot) -> SweepResult:
        """A recorded sweep has not been settled: send its stored bytes again unless it is mined."""
        adapter = self.adapters[currency]
        tx_reference = snapshot.sweep_tx_reference
        if adapter.get_transaction(tx_reference).found:
            return SweepResult(user_id, currency, None, skipped="sweep in flight")

        transfer = SignedTransfer(
            currency=currency,
            source=address,
            destination=self.pool.pool_address(currency),
            amount=adapter.to_amount(snapshot.sweep_outflow_raw - snapshot.sweep_fee_raw),
            fee=adapter.to_amount(snapshot.sweep_fee_raw),
            tx_reference=tx_reference,
            raw=snapshot.sweep_raw_transaction,
        )
        logger.info(f"Rebroadcasting sweep {tx_reference} from {address}")
        try:
            adapter.broadcast(transfer)
        except BroadcastFailed:
            self.snapshots.clear_sweep(currency.value, address, tx_reference)
            raise
        return SweepResult(user_id, currency, tx_reference, amount=transfer.amount)
