# backend/custody/services/pool_reconciliation.py
"""
Periodic comparison of what users are owed (ledger) with what custody holds on
chain (pool plus unswept display addresses). A shortfall beyond the tolerance
is alerted; nothing is changed automatically.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from custody.core.db import session_scope
from custody.core.errors import ChainUnavailable
from custody.services.deposit_addresses import DepositAddressBook
from custody.services.ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolReconciliation:
    currency: str
    liabilities: Decimal
    pool_balance: Decimal | None
    custody_balance: Decimal | None
    error: str | None = None

    @property
    def shortfall(self) -> Decimal | None:
        if self.custody_balance is None:
            return None
        return max(self.liabilities - self.custody_balance, Decimal("0"))


class PoolReconciler:
    def __init__(self, ledger: Ledger, pool, address_book: DepositAddressBook,
                 session_factory: sessionmaker | None = None, tolerance: Decimal = Decimal("0"), notifier=None):
        self.ledger = ledger
        self.pool = pool
        self.address_book = address_book
        self.session_factory = session_factory
        self.tolerance = Decimal(str(tolerance))
        self.notifier = notifier

    def run(self) -> list[PoolReconciliation]:
        results = []
        for currency, adapter in self.pool.adapters.items():
            with session_scope(self.session_factory) as db:
                liabilities = self.ledger.liabilities(db, currency)
                display = self.address_book.display_addresses(db, currency)

            try:
                pool_balance = adapter.get_balance(self.pool.pool_address(currency))
                custody_balance = pool_balance + sum(
                    (adapter.get_balance(address) for address in display), Decimal("0")
                )
            except ChainUnavailable as e:
                logger.error(f"[{currency.value}] pool reconciliation skipped: {e}")
                results.append(PoolReconciliation(currency.value, liabilities, None, None, error=str(e)))
                continue

            result = PoolReconciliation(currency.value, liabilities, pool_balance, custody_balance)
            results.append(result)
            if result.shortfall > self.tolerance:
                logger.critical(
                    f"[{currency.value}] custody holds {custody_balance} but users are owed {liabilities} "
                    f"(shortfall {result.shortfall})"
                )
                if self.notifier is not None:
                    self.notifier.alert(
                        f"{currency.value} custody shortfall",
                        f"Ledger liabilities: {liabilities}\nOn chain: {custody_balance} "
                        f"(pool {pool_balance})\nShortfall: {result.shortfall}",
                    )
            else:
                logger.info(
                    f"[{currency.value}] pool reconciliation ok: owed {liabilities}, held {custody_balance}"
                )
        return results
