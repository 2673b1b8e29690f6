"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..audit import AuditEntry
from ..loans import Loan, LoanDetails, LoanStats
from ..payments import Payment


# Loan schemas
class IssueLoanRequest(BaseModel):
    worker_id: str
    principal: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field("0", description="Percentage as decimal string, informational")
    purpose: Optional[str] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None


class UpdateLoanRequest(BaseModel):
    # Unknown keys are passed through so the ledger can reject them
    model_config = ConfigDict(extra="allow")

    purpose: Optional[str] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    interest_rate: Optional[str] = None
    expected_version: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        data.update(self.model_extra or {})
        data.pop("expected_version", None)
        return data


class LoanResponse(BaseModel):
    id: str
    loan_code: str
    worker_id: str
    principal: str
    balance: str
    amount_paid: str
    interest_rate: str
    status: str = Field(..., description="Effective status; OVERDUE is derived from the due date")
    stored_status: str
    purpose: Optional[str] = None
    notes: Optional[str] = None
    disbursed_at: datetime
    due_date: Optional[datetime] = None
    created_by_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int

    @classmethod
    def from_loan(cls, loan: Loan, now: Optional[datetime] = None) -> 'LoanResponse':
        return cls(
            id=loan.id,
            loan_code=loan.loan_code,
            worker_id=loan.worker_id,
            principal=str(loan.principal),
            balance=str(loan.balance),
            amount_paid=str(loan.amount_paid),
            interest_rate=str(loan.interest_rate),
            status=loan.effective_status(now).value,
            stored_status=loan.status.value,
            purpose=loan.purpose,
            notes=loan.notes,
            disbursed_at=loan.disbursed_at,
            due_date=loan.due_date,
            created_by_id=loan.created_by_id,
            created_at=loan.created_at,
            updated_at=loan.updated_at,
            version=loan.version
        )


# Payment schemas
class RecordPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    method: str = Field("CASH", description="CASH, TRANSFER, DEDUCTION or CHECK")
    reference: Optional[str] = None
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None


class PaymentResponse(BaseModel):
    id: str
    payment_code: str
    loan_id: str
    amount: str
    method: str
    reference: Optional[str] = None
    notes: Optional[str] = None
    paid_at: datetime
    recorded_by_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_payment(cls, payment: Payment) -> 'PaymentResponse':
        return cls(
            id=payment.id,
            payment_code=payment.payment_code,
            loan_id=payment.loan_id,
            amount=str(payment.amount),
            method=payment.method.value,
            reference=payment.reference,
            notes=payment.notes,
            paid_at=payment.paid_at,
            recorded_by_id=payment.recorded_by_id,
            created_at=payment.created_at
        )


class RecordPaymentResponse(BaseModel):
    payment: PaymentResponse
    loan: LoanResponse


class LoanDetailsResponse(BaseModel):
    loan: LoanResponse
    payments: List[PaymentResponse]
    worker_name: Optional[str] = None
    issuer_name: Optional[str] = None

    @classmethod
    def from_details(cls, details: LoanDetails) -> 'LoanDetailsResponse':
        return cls(
            loan=LoanResponse.from_loan(details.loan),
            payments=[PaymentResponse.from_payment(p) for p in details.payments],
            worker_name=details.worker_name,
            issuer_name=details.issuer_name
        )


class LoanStatsResponse(BaseModel):
    total: int
    active: int
    overdue: int
    paid_off: int
    total_outstanding: str
    recent_payments: List[PaymentResponse] = []

    @classmethod
    def from_stats(cls, stats: LoanStats, recent: List[Payment]) -> 'LoanStatsResponse':
        return cls(
            recent_payments=[PaymentResponse.from_payment(p) for p in recent],
            **stats.to_dict()
        )


# Audit schemas
class AuditEntryResponse(BaseModel):
    id: str
    sequence: int
    timestamp: datetime
    action: str
    entity: str
    entity_id: str
    actor_id: Optional[str] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    current_hash: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> 'AuditEntryResponse':
        return cls(
            id=entry.id,
            sequence=entry.sequence,
            timestamp=entry.timestamp,
            action=entry.action.value,
            entity=entry.entity,
            entity_id=entry.entity_id,
            actor_id=entry.actor_id,
            old_value=entry.old_value,
            new_value=entry.new_value,
            current_hash=entry.current_hash
        )
