# backend/custody/schemas/withdrawals.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class WithdrawalRequestIn(BaseModel):
    currency: str = Field(..., pattern="^(BTC|ETH|USDT)$")
    amount: Decimal = Field(..., gt=0)
    destination_address: str = Field(..., min_length=1, max_length=255)


class WithdrawalOut(BaseModel):
    id: int
    user_id: int
    currency: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    destination_address: str
    status: str
    admin_id: Optional[int] = None
    admin_notes: Optional[str] = None
    tx_reference: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = dict(from_attributes=True)


class ApproveIn(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)


class RejectIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RecoveryOut(BaseModel):
    completed: List[int]
    failed: List[int]
    unresolved: List[int]
