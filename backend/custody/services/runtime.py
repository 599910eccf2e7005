# backend/custody/services/runtime.py
"""
Wires the custody services together once per process.

The decrypted seed enters here as a CustodyConfig and is handed to the key
engine; nothing else reads it.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import sessionmaker

from custody.core.config import Settings
from custody.core.db import session_scope
from custody.core.enums import ChainFamily, Currency
from custody.core.errors import SeedUnavailable
from custody.core.keys import CustodyConfig, KeyDerivationEngine, load_custody_config
from custody.services.chain.base import ChainAdapter
from custody.services.chain.observers import (
    BalanceDiffObserver,
    BlockScanObserver,
    ChainObserver,
    DbCursorStore,
    DbSnapshotStore,
    TransactionIndexedObserver,
)
from custody.services.chain.registry import build_adapters
from custody.services.deposit_addresses import DepositAddressBook
from custody.services.deposits import DepositReconciler
from custody.services.ledger import Ledger
from custody.services.pool import PoolCustody
from custody.services.pool_reconciliation import PoolReconciler
from custody.services.sweeper import Sweeper
from custody.services.telegram import TelegramNotifier
from custody.services.wallet_monitor import ChainMonitor
from custody.services.withdrawals import WithdrawalCoordinator

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    ledger: Ledger
    keys: KeyDerivationEngine
    address_book: DepositAddressBook
    pool: PoolCustody
    reconciler: DepositReconciler
    coordinator: WithdrawalCoordinator
    pool_reconciler: PoolReconciler
    observers: dict[Currency, ChainObserver]
    sweeper: Sweeper | None = None
    notifier: TelegramNotifier | None = None
    monitor: ChainMonitor | None = None
    # account-chain pool addresses, scanned block by block
    pool_observers: dict[Currency, ChainObserver] = field(default_factory=dict)


def _watched(pool: PoolCustody, address_book: DepositAddressBook, session_factory, currency: Currency,
             include_pool: bool):
    def addresses() -> list[str]:
        with session_scope(session_factory) as db:
            display = address_book.display_addresses(db, currency)
        # an account pool's balance also moves with sweeps and withdrawals, so diffs there are not deposits
        return ([pool.pool_address(currency)] if include_pool else []) + display

    return addresses


def build_observers(settings: Settings, adapters: dict[Currency, ChainAdapter], pool: PoolCustody,
                    address_book: DepositAddressBook, session_factory=None,
                    snapshots: DbSnapshotStore | None = None) -> dict[Currency, ChainObserver]:
    required = settings.required_confirmations()
    snapshots = snapshots or DbSnapshotStore(session_factory)
    observers = {}
    for currency, adapter in adapters.items():
        if adapter.family == ChainFamily.UTXO:
            observers[currency] = TransactionIndexedObserver(
                adapter,
                _watched(pool, address_book, session_factory, currency, include_pool=True),
                workers=settings.POLL_WORKERS,
            )
        else:
            observers[currency] = BalanceDiffObserver(
                adapter,
                _watched(pool, address_book, session_factory, currency, include_pool=False),
                snapshots,
                confirmations=required[currency.value],
                workers=settings.POLL_WORKERS,
            )
    return observers


def build_pool_observers(settings: Settings, adapters: dict[Currency, ChainAdapter], pool: PoolCustody,
                         address_book: DepositAddressBook, reconciler: DepositReconciler,
                         session_factory=None) -> dict[Currency, ChainObserver]:
    """Block scanners for account-chain pool addresses. UTXO pools are already watched per transaction."""
    required = settings.required_confirmations()
    cursors = DbCursorStore(session_factory)
    observers = {}
    for currency, adapter in adapters.items():
        if adapter.family == ChainFamily.UTXO:
            continue

        def is_sweep(sender: str, currency=currency) -> bool:
            with session_scope(session_factory) as db:
                return address_book.is_display_address(db, currency, sender)

        observers[currency] = BlockScanObserver(
            adapter,
            lambda currency=currency: [pool.pool_address(currency)],
            cursors,
            confirmations=required[currency.value],
            observed_depth=reconciler.observed_depth,
            is_internal=is_sweep,
            max_blocks=settings.POOL_SCAN_MAX_BLOCKS,
            lookback=settings.POOL_SCAN_LOOKBACK_BLOCKS,
            workers=settings.POLL_WORKERS,
        )
    return observers


def build_runtime(settings: Settings, session_factory: sessionmaker | None = None,
                  adapters: dict[Currency, ChainAdapter] | None = None,
                  custody_config: CustodyConfig | None = None,
                  notifier=None) -> Runtime:
    if custody_config is None:
        custody_config = load_custody_config(settings.MASTER_SEED_ENCRYPTED, settings.WALLET_ENCRYPTION_KEY)
    keys = KeyDerivationEngine(custody_config)
    adapters = adapters if adapters is not None else build_adapters(settings)
    if notifier is None:
        notifier = TelegramNotifier(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_CHAT_ID)

    ledger = Ledger()
    address_book = DepositAddressBook(keys)
    pool = PoolCustody(adapters, keys, session_factory)
    snapshots = DbSnapshotStore(session_factory)
    sweeper = None
    if settings.SWEEP_ENABLED:
        sweeper = Sweeper(
            adapters,
            keys,
            pool,
            min_interval=settings.SWEEP_MIN_INTERVAL_SECONDS,
            max_backoff=settings.SWEEP_MAX_BACKOFF_SECONDS,
            dust=settings.SWEEP_DUST_ETH,
            snapshots=snapshots,
        )
    reconciler = DepositReconciler(
        ledger,
        settings.required_confirmations(),
        session_factory=session_factory,
        notifier=notifier,
        sweeper=sweeper,
    )
    coordinator = WithdrawalCoordinator(
        ledger,
        pool,
        settings.withdrawal_fee_rates(),
        session_factory=session_factory,
        notifier=notifier,
    )
    pool_reconciler = PoolReconciler(
        ledger,
        pool,
        address_book,
        session_factory=session_factory,
        tolerance=settings.POOL_RECONCILE_TOLERANCE,
        notifier=notifier,
    )
    runtime = Runtime(
        ledger=ledger,
        keys=keys,
        address_book=address_book,
        pool=pool,
        reconciler=reconciler,
        coordinator=coordinator,
        pool_reconciler=pool_reconciler,
        observers=build_observers(settings, adapters, pool, address_book, session_factory, snapshots),
        sweeper=sweeper,
        notifier=notifier,
        pool_observers=build_pool_observers(settings, adapters, pool, address_book, reconciler, session_factory),
    )
    if sweeper is not None:
        sweeper.observers = runtime.observers
        sweeper.reconciler = reconciler
    runtime.monitor = ChainMonitor(
        runtime,
        intervals={
            currency: settings.BTC_POLL_INTERVAL_SECONDS if currency == Currency.BTC
            else settings.WALLET_POLL_INTERVAL_SECONDS
            for currency in adapters
        },
        maintenance_interval=settings.MAINTENANCE_INTERVAL_SECONDS,
        sweep_interval=settings.WALLET_POLL_INTERVAL_SECONDS,
    )
    return runtime


_runtime: Runtime | None = None


def set_runtime(runtime: Runtime | None):
    global _runtime
    _runtime = runtime


def get_runtime() -> Runtime:
    """FastAPI dependency; custody endpoints fail closed until the seed was loaded."""
    if _runtime is None:
        raise SeedUnavailable("custody runtime is not initialized")
    return _runtime
