"""
Loan endpoints
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import LedgerSystem, get_actor_id, get_ledger_system, require_viewer
from .schemas import (
    IssueLoanRequest, LoanDetailsResponse, LoanResponse, LoanStatsResponse,
    PaymentResponse, RecordPaymentRequest, RecordPaymentResponse, UpdateLoanRequest,
)
from ..loans import LoanFilter, LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LoanResponse)
def issue_loan(
    request: IssueLoanRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Issue a new loan to a worker"""
    loan = system.loan_ledger.issue_loan(
        worker_id=request.worker_id,
        principal=request.principal,
        interest_rate=request.interest_rate,
        purpose=request.purpose,
        due_date=request.due_date,
        issuer_id=actor_id,
        notes=request.notes,
        disbursed_at=request.disbursed_at
    )
    return LoanResponse.from_loan(loan)


@router.get("", response_model=List[LoanResponse])
def list_loans(
    worker_id: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List loans, newest first"""
    loan_filter = LoanFilter(
        worker_id=worker_id,
        status=LoanStatus(status.upper()) if status else None,
        search=search,
        limit=limit
    )
    return [LoanResponse.from_loan(loan) for loan in system.loan_ledger.list_loans(loan_filter)]


@router.get("/stats", response_model=LoanStatsResponse)
def get_loan_stats(
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Finance dashboard figures with the five most recent payments"""
    return LoanStatsResponse.from_stats(
        system.loan_ledger.loan_stats(),
        system.payment_recorder.recent_payments(limit=5)
    )


@router.get("/{loan_id}", response_model=LoanDetailsResponse)
def get_loan(
    loan_id: str,
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get loan details with payment history"""
    return LoanDetailsResponse.from_details(system.loan_ledger.get_loan_details(loan_id))


@router.patch("/{loan_id}", response_model=LoanResponse)
def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Edit purpose, notes, due date or interest rate"""
    loan = system.loan_ledger.update_loan_details(
        loan_id, request.changes(), actor_id, expected_version=request.expected_version
    )
    return LoanResponse.from_loan(loan)


@router.delete("/{loan_id}", response_model=LoanResponse)
def cancel_loan(
    loan_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Cancel a loan; the record and its balance are kept"""
    loan = system.loan_ledger.cancel_loan(loan_id, actor_id)
    return LoanResponse.from_loan(loan)


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED,
             response_model=RecordPaymentResponse)
def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Record a repayment against a loan"""
    payment, loan = system.payment_recorder.record_payment(
        loan_id=loan_id,
        amount=request.amount,
        method=request.method,
        reference=request.reference,
        notes=request.notes,
        paid_at=request.paid_at,
        recorder_id=actor_id
    )
    return RecordPaymentResponse(
        payment=PaymentResponse.from_payment(payment),
        loan=LoanResponse.from_loan(loan)
    )


@router.get("/{loan_id}/payments", response_model=List[PaymentResponse])
def get_loan_payments(
    loan_id: str,
    actor_id: Optional[str] = Depends(require_viewer),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Payments of one loan, newest first"""
    return [PaymentResponse.from_payment(p) for p in system.payment_recorder.get_loan_payments(loan_id)]
