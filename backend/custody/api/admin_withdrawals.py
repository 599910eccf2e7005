# backend/custody/api/admin_withdrawals.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from custody.core.auth import get_current_admin
from custody.core.db import get_db
from custody.schemas.withdrawals import ApproveIn, RecoveryOut, RejectIn, WithdrawalOut
from custody.services.runtime import Runtime, get_runtime

router = APIRouter(prefix="/admin/withdrawals", tags=["admin:withdrawals"])


# ---------- List ----------
@router.get("", response_model=List[WithdrawalOut])
def list_withdrawals(
    status: Optional[str] = Query(None, description="pending|approved|rejected|completed|failed"),
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.coordinator.list_requests(db, status=status, limit=200)


# ---------- Approve (signs, then broadcasts from the pool) ----------
@router.post("/{request_id}/approve", response_model=WithdrawalOut)
def approve_withdrawal(
    request_id: int,
    payload: ApproveIn | None = None,
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.coordinator.approve(request_id, admin.id, payload.notes if payload else None)


# ---------- Reject ----------
@router.post("/{request_id}/reject", response_model=WithdrawalOut)
def reject_withdrawal(
    request_id: int,
    payload: RejectIn | None = None,
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.coordinator.reject(request_id, admin.id, payload.reason if payload else None)


# ---------- Rebroadcast the stored signed transaction ----------
@router.post("/{request_id}/rebroadcast", response_model=WithdrawalOut)
def rebroadcast_withdrawal(
    request_id: int,
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.coordinator.rebroadcast(request_id)


# ---------- Resolve approved requests against the chain ----------
@router.post("/recover", response_model=RecoveryOut)
def recover_in_flight(
    admin=Depends(get_current_admin),
    runtime: Runtime = Depends(get_runtime),
):
    report = runtime.coordinator.recover_in_flight()
    return RecoveryOut(completed=report.completed, failed=report.failed, unresolved=report.unresolved)
