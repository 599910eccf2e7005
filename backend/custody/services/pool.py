# backend/custody/services/pool.py
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from custody.core.addresses import same_address, validate_address
from custody.core.db import session_scope
from custody.core.enums import Currency
from custody.core.errors import (
    ChainUnavailable,
    InconsistentState,
    InsufficientPoolBalance,
    UnsupportedCurrency,
)
from custody.core.keys import KeyDerivationEngine
from custody.models import PoolAddress
from custody.services.chain.base import ChainAdapter, SignedTransfer, TransactionStatus

logger = logging.getLogger(__name__)


class PoolCustody:
    """The platform's spending addresses. Every outbound transaction leaves from here."""

    def __init__(self, adapters: dict[Currency, ChainAdapter], keys: KeyDerivationEngine,
                 session_factory: sessionmaker | None = None):
        self.adapters = adapters
        self.keys = keys
        self.session_factory = session_factory
        self._addresses: dict[Currency, str] = {}
        self._send_locks: dict[str, threading.Lock] = {}
        self._send_locks_guard = threading.Lock()

    def initialize(self):
        """Derive pool addresses and check them against what was stored on first start."""
        now = datetime.now(timezone.utc)
        with session_scope(self.session_factory) as db:
            for currency in self.adapters:
                derived = self.keys.pool_address(currency)
                row = db.get(PoolAddress, currency.value)
                if row is None:
                    db.add(
                        PoolAddress(
                            currency=currency.value,
                            address=derived.address,
                            derivation_path=derived.derivation_path,
                            verified=True,
                            verified_at=now,
                        )
                    )
                    logger.info(f"Registered {currency.value} pool address {derived.address}")
                elif not same_address(currency, row.address, derived.address):
                    # stored address was derived from another seed
                    raise InconsistentState(
                        f"{currency.value} pool address does not match the configured seed",
                        stored=row.address,
                        derived=derived.address,
                    )
                else:
                    row.verified = True
                    row.verified_at = now
                self._addresses[currency] = derived.address

    def adapter(self, currency: Currency | str) -> ChainAdapter:
        try:
            return self.adapters[Currency(currency)]
        except (KeyError, ValueError):
            raise UnsupportedCurrency(f"no chain adapter for {currency}")

    def pool_address(self, currency: Currency | str) -> str:
        currency = Currency(currency)
        if currency not in self._addresses:
            self._addresses[currency] = self.keys.pool_address(currency).address
        return self._addresses[currency]

    def send_lock(self, currency: Currency | str) -> threading.Lock:
        """Held from signing to broadcast. ETH and USDT share one address and one nonce sequence."""
        key = self.pool_address(currency).lower()
        with self._send_locks_guard:
            return self._send_locks.setdefault(key, threading.Lock())

    def check_liquidity(self, currency: Currency, amount: Decimal) -> Decimal:
        """Raise InsufficientPoolBalance unless the pool can pay amount plus fee. Returns the fee estimate."""
        adapter = self.adapter(currency)
        address = self.pool_address(currency)
        fee = adapter.estimate_fee()
        balance = adapter.get_balance(address)

        if adapter.native_asset:
            if balance < amount + fee:
                raise InsufficientPoolBalance(
                    f"{currency.value} pool balance too low",
                    balance=str(balance), amount=str(amount), fee=str(fee),
                )
            return fee

        fee_balance = adapter.get_fee_balance(address)
        if balance < amount:
            raise InsufficientPoolBalance(
                f"{currency.value} pool balance too low", balance=str(balance), amount=str(amount)
            )
        if fee_balance < fee:
            raise InsufficientPoolBalance(
                f"{currency.value} pool cannot pay the network fee",
                fee_balance=str(fee_balance), fee=str(fee),
            )
        return fee

    def prepare(self, currency: Currency | str, destination: str, amount: Decimal) -> SignedTransfer:
        """Validate, check liquidity and sign. Nothing is sent."""
        currency = Currency(currency)
        destination = validate_address(currency, destination)
        self.check_liquidity(currency, amount)
        key = self.keys.pool_spending_key(currency)
        transfer = self.adapter(currency).build_transfer(key, destination, amount)
        logger.info(
            f"Signed {currency.value} transfer of {amount} to {destination} "
            f"(fee {transfer.fee}, tx {transfer.tx_reference})"
        )
        return transfer

    def broadcast(self, transfer: SignedTransfer) -> str:
        tx_reference = self.adapter(transfer.currency).broadcast(transfer) or transfer.tx_reference
        logger.info(f"Broadcast {transfer.currency.value} tx {tx_reference}")
        return tx_reference

    def send_from_pool(self, currency: Currency | str, destination: str, amount: Decimal) -> str:
        with self.send_lock(currency):
            return self.broadcast(self.prepare(currency, destination, amount))

    def lookup(self, currency: Currency | str, tx_reference: str) -> TransactionStatus:
        return self.adapter(currency).get_transaction(tx_reference)

    def balances(self) -> dict[str, dict]:
        result = {}
        for currency, adapter in self.adapters.items():
            address = self.pool_address(currency)
            entry = {"address": address, "balance": None, "fee_balance": None, "error": None}
            try:
                entry["balance"] = adapter.get_balance(address)
                if not adapter.native_asset:
                    entry["fee_balance"] = adapter.get_fee_balance(address)
            except ChainUnavailable as e:
                logger.error(f"[{currency.value}] pool balance unavailable: {e}")
                entry["error"] = str(e)
            result[currency.value] = entry
        return result
