# backend/custody/services/chain/base.py
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal

import requests

from custody.core.enums import ChainFamily, Currency
from custody.core.errors import BroadcastFailed, BroadcastTimeout, ChainUnavailable

logger = logging.getLogger(__name__)

QUANT = Decimal("0.00000001")


@dataclass(frozen=True)
class BalanceCursor:
    """Snapshot a balance-diff observation was computed from, and the one it moves the address to."""
    base_raw: int
    base_sequence: int
    raw_balance: int
    sequence: int


@dataclass(frozen=True)
class Observation:
    """One inbound transfer (or synthetic balance increase) seen at a watched address."""
    currency: Currency
    address: str
    amount: Decimal
    external_ref: str
    confirmations: int
    sender: str | None = None
    # block the transfer was included in, for block-scanned addresses
    block: int | None = None
    # set on balance-diff observations; the snapshot moves in the same transaction as the deposit record
    cursor: BalanceCursor | None = None


@dataclass(frozen=True)
class SignedTransfer:
    currency: Currency
    source: str
    destination: str
    amount: Decimal
    fee: Decimal
    tx_reference: str
    raw: str = field(repr=False)


@dataclass(frozen=True)
class TransactionStatus:
    found: bool
    confirmations: int = 0
    succeeded: bool | None = None


class ChainAdapter(ABC):
    """Read/send primitives for one currency. Selected by the static table in registry.py."""

    family: ChainFamily
    currency: Currency
    decimals: int
    # False for tokens, whose fees are paid in another asset
    native_asset = True

    def __init__(self, timeout: int = 15, send_timeout: int = 30):
        self.timeout = timeout
        self.send_timeout = send_timeout
        self.http = requests.Session()

    # units ---------------------------------------------------------------
    def to_amount(self, raw: int) -> Decimal:
        return (Decimal(raw) / (Decimal(10) ** self.decimals)).quantize(QUANT, rounding=ROUND_DOWN)

    def to_raw(self, amount: Decimal) -> int:
        return int((Decimal(amount) * (Decimal(10) ** self.decimals)).to_integral_value(rounding=ROUND_DOWN))

    # reads -----------------------------------------------------------------
    @abstractmethod
    def get_balance_raw(self, address: str) -> int:
        """Current confirmed balance in base units."""

    def get_balance(self, address: str) -> Decimal:
        return self.to_amount(self.get_balance_raw(address))

    def get_fee_balance(self, address: str) -> Decimal:
        """Balance available to pay network fees (native coin)."""
        return self.get_balance(address)

    @abstractmethod
    def estimate_fee(self) -> Decimal:
        """Simple fee estimate for one transfer, in the native coin."""

    @abstractmethod
    def get_transaction(self, tx_reference: str) -> TransactionStatus:
        ...

    def list_incoming(self, address: str) -> list[Observation]:
        raise NotImplementedError(f"{self.currency.value} is not transaction-indexed")

    def block_number(self) -> int:
        raise NotImplementedError(f"{self.currency.value} is not block-scanned")

    def scan_incoming(self, address: str, from_block: int, to_block: int, tip: int) -> list[Observation]:
        """Transfers paying `address` in blocks from_block..to_block inclusive."""
        raise NotImplementedError(f"{self.currency.value} is not block-scanned")

    # sends -----------------------------------------------------------------
    @abstractmethod
    def build_transfer(self, key, destination: str, amount: Decimal) -> SignedTransfer:
        """Sign a transfer from the key's address. Nothing is sent."""

    @abstractmethod
    def broadcast(self, transfer: SignedTransfer) -> str:
        ...

    # http helpers ----------------------------------------------------------
    def _get(self, url: str, **kwargs):
        try:
            resp = self.http.get(url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            return resp
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"{self.currency.value} explorer error: {e}")

    def _send_errors(self, exc: requests.exceptions.RequestException, transfer: SignedTransfer):
        """Map a transport failure during broadcast to a custody error."""
        if isinstance(exc, requests.exceptions.ConnectTimeout):
            # never reached the node
            return BroadcastFailed(f"{self.currency.value} node unreachable: {exc}")
        if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ChunkedEncodingError)):
            return BroadcastTimeout(
                f"{self.currency.value} broadcast timed out", tx_reference=transfer.tx_reference
            )
        if isinstance(exc, requests.exceptions.ConnectionError):
            return BroadcastFailed(f"{self.currency.value} node connection failed: {exc}")
        return BroadcastFailed(f"{self.currency.value} broadcast error: {exc}")


class JsonRpcMixin:
    """Minimal JSON-RPC 2.0 over the adapter's requests session."""

    rpc_url: str | None = None
    rpc_auth: tuple[str, str] | None = None

    def _rpc(self, method: str, params: list, timeout: int | None = None, wrap_transport: bool = True):
        if not self.rpc_url:
            raise ChainUnavailable(f"{self.currency.value} RPC endpoint is not configured")
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            resp = self.http.post(self.rpc_url, json=payload, auth=self.rpc_auth, timeout=timeout or self.timeout)
            data = resp.json()
        except requests.exceptions.RequestException as e:
            if not wrap_transport:
                raise
            raise ChainUnavailable(f"{self.currency.value} RPC {method} failed: {e}")
        except ValueError:
            raise ChainUnavailable(f"{self.currency.value} RPC {method} returned non-JSON (HTTP {resp.status_code})")
        if data.get("error"):
            raise RpcError(method, data["error"])
        return data.get("result")


class RpcError(ChainUnavailable):
    def __init__(self, method: str, error):
        message = error.get("message") if isinstance(error, dict) else str(error)
        super().__init__(f"RPC {method} error: {message}", rpc_error=error)
        self.rpc_message = message or ""
