# backend/custody/api/withdrawals.py

from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from slowapi import Limiter
from slowapi.util import get_remote_address

from custody.core.auth import get_current_user
from custody.core.db import get_db
from custody.models import User
from custody.schemas.withdrawals import WithdrawalOut, WithdrawalRequestIn
from custody.services.runtime import Runtime, get_runtime

router = APIRouter(prefix="/withdrawals", tags=["withdrawals"])
limiter = Limiter(key_func=get_remote_address)


@router.post("/request", response_model=WithdrawalOut)
@limiter.limit("3/minute")
def request_withdrawal(
    request: Request,
    data: WithdrawalRequestIn,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.coordinator.request_withdrawal(
        user.id, data.currency, data.amount, data.destination_address
    )


@router.get("/my", response_model=List[WithdrawalOut])
def my_withdrawals(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.coordinator.list_requests(db, user_id=user.id)
