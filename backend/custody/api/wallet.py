# backend/custody/api/wallet.py

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from custody.core.auth import get_current_user
from custody.core.db import get_db
from custody.core.enums import parse_currency
from custody.models import User
from custody.schemas.deposits import DepositAddressOut, DepositRecordOut
from custody.schemas.wallet import BalanceOut
from custody.services.ledger import Ledger
from custody.services.runtime import Runtime, get_runtime

router = APIRouter(prefix="/wallet", tags=["wallet"])
ledger = Ledger()


@router.get("/balances", response_model=List[BalanceOut])
def my_balances(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return ledger.get_balances(db, user.id)


@router.get("/deposit-address/{currency}", response_model=DepositAddressOut)
def deposit_address(
    currency: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    currency = parse_currency(currency)
    row = runtime.address_book.get_deposit_address(db, user.id, currency)
    return DepositAddressOut(
        currency=row.currency,
        address=row.address,
        derivation_path=row.derivation_path,
        required_confirmations=runtime.reconciler.required(currency),
    )


@router.get("/deposits", response_model=List[DepositRecordOut])
def my_deposits(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.reconciler.list_deposits(db, user_id=user.id, limit=limit)
