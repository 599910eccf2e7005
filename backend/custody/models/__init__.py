# backend/custody/models/__init__.py

from custody.models.user import User
from custody.models.balance import Balance, BalanceHold, LedgerEntry
from custody.models.deposit import AddressSnapshot, DepositAddress, DepositRecord, ScanCursor
from custody.models.withdrawal import WithdrawalRequest
from custody.models.pool import PoolAddress

__all__ = [
    "User",
    "Balance",
    "BalanceHold",
    "LedgerEntry",
    "DepositAddress",
    "DepositRecord",
    "AddressSnapshot",
    "ScanCursor",
    "WithdrawalRequest",
    "PoolAddress",
]
