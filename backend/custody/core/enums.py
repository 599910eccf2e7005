# backend/custody/core/enums.py
from enum import Enum

from custody.core.errors import UnsupportedCurrency


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Currency(str, Enum):
    """Supported custody assets"""
    BTC = "BTC"
    ETH = "ETH"
    USDT = "USDT"


class ChainFamily(str, Enum):
    """How a chain exposes inbound value"""
    UTXO = "utxo"    # transaction-indexed
    EVM = "evm"      # balance-diff


class DepositStatus(str, Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"


class LedgerEntryType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL_REQUEST = "withdrawal_request"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    WITHDRAWAL_FAILED = "withdrawal_failed"


def parse_currency(value: str) -> Currency:
    try:
        return Currency((value or "").upper())
    except ValueError:
        raise UnsupportedCurrency(f"unsupported currency: {value}")
