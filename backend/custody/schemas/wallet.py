# backend/custody/schemas/wallet.py
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class BalanceOut(BaseModel):
    currency: str
    balance: Decimal
    available_balance: Decimal

    model_config = dict(from_attributes=True)


class PoolBalanceOut(BaseModel):
    currency: str
    address: str
    balance: Optional[Decimal] = None
    fee_balance: Optional[Decimal] = None
    error: Optional[str] = None


class PoolReconciliationOut(BaseModel):
    currency: str
    liabilities: Decimal
    pool_balance: Optional[Decimal] = None
    custody_balance: Optional[Decimal] = None
    shortfall: Optional[Decimal] = None
    error: Optional[str] = None
