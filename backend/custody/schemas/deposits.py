# backend/custody/schemas/deposits.py
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class DepositAddressOut(BaseModel):
    currency: str
    address: str
    derivation_path: str
    required_confirmations: int


class DepositRecordOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    currency: str
    amount: Decimal
    address: str
    sender_address: Optional[str] = None
    tx_reference: str
    confirmations: int
    required_confirmations: int
    status: str
    failure_reason: Optional[str] = None
    detected_at: datetime
    credited_at: Optional[datetime] = None

    model_config = dict(from_attributes=True)


class ClaimIn(BaseModel):
    user_id: int


class HealOut(BaseModel):
    checked: int
    credited: int
    status_fixed: int
