# backend/custody/services/wallet_monitor.py
import logging
import threading
from typing import Callable

from custody.core.enums import Currency

logger = logging.getLogger(__name__)


class ChainMonitor:
    """
    Background threads: one polling loop per currency, one maintenance loop
    (in-flight withdrawal recovery, deposit heal, pool reconciliation) and one
    sweeper loop. A slow chain only delays its own thread.
    """

    def __init__(self, runtime, intervals: dict[Currency, int], maintenance_interval: int = 300,
                 sweep_interval: int = 60):
        self.runtime = runtime
        self.intervals = intervals
        self.maintenance_interval = maintenance_interval
        self.sweep_interval = sweep_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # ──────────────────────────────────────────────
    # Single passes (also used directly by admin endpoints and tests)
    # ──────────────────────────────────────────────
    def poll_once(self, currency: Currency) -> int:
        """
        Run one cycle of the currency's observers (display addresses, then the
        block-scanned pool if there is one). An error ends that cycle only;
        unprocessed observations come back next time.
        """
        observers = [self.runtime.observers[currency]]
        if currency in self.runtime.pool_observers:
            observers.append(self.runtime.pool_observers[currency])
        applied = 0
        for observer in observers:
            try:
                with observer.lock:
                    applied += self.runtime.reconciler.apply_all(observer.poll())
            except Exception as e:
                logger.exception(f"[{currency.value}] deposit poll cycle aborted: {e}")
        return applied

    def maintenance_once(self):
        steps = (
            ("withdrawal recovery", self.runtime.coordinator.recover_in_flight),
            ("deposit heal", self.runtime.reconciler.heal),
            ("pool reconciliation", self.runtime.pool_reconciler.run),
        )
        for name, step in steps:
            try:
                step()
            except Exception as e:
                logger.exception(f"Maintenance step '{name}' failed: {e}")

    def sweep_once(self):
        try:
            self.runtime.sweeper.run_once()
        except Exception as e:
            logger.exception(f"Sweeper pass failed: {e}")

    # ──────────────────────────────────────────────
    # Threads
    # ──────────────────────────────────────────────
    def _loop(self, name: str, step: Callable[[], object], interval: int):
        logger.info(f"{name} started (every {interval}s)")
        while not self._stop.is_set():
            step()
            self._stop.wait(interval)
        logger.info(f"{name} stopped")

    def _spawn(self, name: str, step: Callable[[], object], interval: int):
        thread = threading.Thread(target=self._loop, args=(name, step, interval), name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self):
        if self._threads:
            return
        self._stop.clear()
        for currency in self.runtime.observers:
            interval = self.intervals.get(currency, 60)
            self._spawn(f"monitor-{currency.value}", lambda c=currency: self.poll_once(c), interval)
        self._spawn("maintenance", self.maintenance_once, self.maintenance_interval)
        if self.runtime.sweeper is not None:
            self._spawn("sweeper", self.sweep_once, self.sweep_interval)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
