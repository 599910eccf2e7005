# backend/custody/api/admin_deposits.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from custody.core.auth import get_current_admin
from custody.core.db import get_db
from custody.core.enums import parse_currency
from custody.schemas.deposits import ClaimIn, DepositRecordOut, HealOut
from custody.services.runtime import Runtime, get_runtime

router = APIRouter(prefix="/admin/deposits", tags=["admin:deposits"])


# ---------- List ----------
@router.get("", response_model=List[DepositRecordOut])
def list_deposits(
    status: Optional[str] = Query(None, description="pending|confirming|completed|failed"),
    unattributed: bool = Query(False, description="only pool deposits nobody has claimed"),
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.reconciler.list_deposits(db, status=status, unattributed=unattributed, limit=200)


# ---------- Claim a pool deposit for a user ----------
@router.post("/{deposit_id}/claim", response_model=DepositRecordOut)
def claim_deposit(
    deposit_id: int,
    payload: ClaimIn,
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.reconciler.claim(deposit_id, payload.user_id, admin.id)


# ---------- Re-derive statuses from the ledger ----------
@router.post("/heal", response_model=HealOut)
def heal_deposits(
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    report = runtime.reconciler.heal()
    return HealOut(checked=report.checked, credited=report.credited, status_fixed=report.status_fixed)


# ---------- Run one poll cycle now ----------
@router.post("/poll/{currency}")
def poll_now(
    currency: str,
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    currency = parse_currency(currency)
    return {"currency": currency.value, "applied": runtime.monitor.poll_once(currency)}
