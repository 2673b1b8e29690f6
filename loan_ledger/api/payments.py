"""
Payment endpoints
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import LedgerSystem, get_ledger_system, require_viewer
from .schemas import PaymentResponse
from ..payments import PaymentFilter


router = APIRouter()


@router.get("", response_model=List[PaymentResponse])
def list_payments(
    loan_id: Optional[str] = None,
    method: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List payments, newest first"""
    payments = system.payment_recorder.list_payments(PaymentFilter(
        loan_id=loan_id,
        method=method,
        search=search,
        limit=limit
    ))
    return [PaymentResponse.from_payment(p) for p in payments]


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get payment by id or payment code"""
    return PaymentResponse.from_payment(system.payment_recorder.get_payment(payment_id))
