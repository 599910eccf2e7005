# backend/custody/api/admin_pool.py
from typing import List

from fastapi import APIRouter, Depends

from custody.core.auth import get_current_admin
from custody.schemas.wallet import PoolBalanceOut, PoolReconciliationOut
from custody.services.runtime import Runtime, get_runtime

router = APIRouter(prefix="/admin/pool", tags=["admin:pool"])


@router.get("", response_model=List[PoolBalanceOut])
def pool_status(
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return [
        PoolBalanceOut(currency=currency, **entry)
        for currency, entry in runtime.pool.balances().items()
    ]


@router.get("/reconciliation", response_model=List[PoolReconciliationOut])
def pool_reconciliation(
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return [
        PoolReconciliationOut(
            currency=r.currency,
            liabilities=r.liabilities,
            pool_balance=r.pool_balance,
            custody_balance=r.custody_balance,
            shortfall=r.shortfall,
            error=r.error,
        )
        for r in runtime.pool_reconciler.run()
    ]
