"""
Payment Module

Records repayments against loans. Each payment re-reads the loan under its
row lock, validates the amount against the balance held at that instant and
writes the payment row, the new balance, any status change and the audit
entry in one transaction.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import time
import uuid

from .audit import AuditAction, AuditSink
from .config import LedgerConfig, get_config
from .directory import WorkerDirectory
from .errors import (
    AlreadySettled, ConcurrencyConflict, InvalidAmount, LedgerError,
    LoanCancelled, NotFound, OverPayment, PermissionDenied,
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .loans import (
    LOANS_TABLE, PAYMENTS_TABLE, Loan, LoanLedger, LoanStatus,
    parse_datetime, as_utc, derive_status,
)
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .permissions import Authorizer
from .sequences import SequenceAllocator, payment_bucket
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_ledger.payments")


class PaymentMethod(Enum):
    """How the worker repaid"""
    CASH = "CASH"
    TRANSFER = "TRANSFER"      # Bank transfer
    DEDUCTION = "DEDUCTION"    # Payroll deduction
    CHECK = "CHECK"


@dataclass
class Payment(StorageRecord):
    """Immutable repayment applied against a loan"""
    payment_code: str                   # P-YYYYMMDD-NNNN
    loan_id: str
    amount: Decimal
    method: PaymentMethod
    paid_at: datetime
    recorded_by_id: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['method'] = self.method.value
        result['paid_at'] = self.paid_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            payment_code=data['payment_code'],
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            method=PaymentMethod(data['method']),
            paid_at=parse_datetime(data['paid_at']),
            recorded_by_id=data.get('recorded_by_id'),
            reference=data.get('reference'),
            notes=data.get('notes')
        )


@dataclass
class PaymentFilter:
    """Criteria for listing payments"""
    loan_id: Optional[str] = None
    method: Optional[PaymentMethod] = None
    search: Optional[str] = None    # Payment code, reference or worker name
    limit: Optional[int] = None


def _coerce_method(method: Any) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(str(method).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValueError(f"Unknown payment method {method!r}, expected one of {allowed}")


class PaymentRecorder(EventPublisherMixin):
    """
    Applies payments to loan balances

    Lock order is loan row first, then the audit chain head, for every
    writer, so concurrent payments cannot deadlock.
    """

    def __init__(
        self,
        storage: StorageInterface,
        allocator: SequenceAllocator,
        audit_sink: AuditSink,
        loans: LoanLedger,
        authorizer: Authorizer,
        workers: Optional[WorkerDirectory] = None,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None,
        sleep=time.sleep
    ):
        self.storage = storage
        self.allocator = allocator
        self.audit_sink = audit_sink
        self.loans = loans
        self.authorizer = authorizer
        self.workers = workers or loans.workers
        self.config = config or get_config()
        self.set_event_dispatcher(dispatcher)
        self._sleep = sleep

        self.payments_table = PAYMENTS_TABLE
        self.loans_table = LOANS_TABLE

    def record_payment(
        self,
        loan_id: str,
        amount: Any,
        method: Any = PaymentMethod.CASH,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        recorder_id: Optional[str] = None
    ) -> Tuple[Payment, Loan]:
        """
        Record a payment and decrement the loan balance

        Args:
            loan_id: Loan id or loan code
            amount: Positive amount, at most the outstanding balance
            method: CASH, TRANSFER, DEDUCTION or CHECK
            reference: Free text (transfer reference, cheque number)
            notes: Free text
            paid_at: Defaults to now, may be backdated
            recorder_id: User recording the payment

        Returns:
            Tuple of the new Payment and the updated Loan

        Raises:
            PermissionDenied, InvalidAmount, NotFound, AlreadySettled,
            LoanCancelled, OverPayment, AllocationFailed, ConcurrencyConflict
        """
        try:
            if not self.authorizer.can_record_payment(recorder_id):
                raise PermissionDenied(recorder_id, "record payments")

            amount = to_amount(amount)
            if amount <= ZERO:
                raise InvalidAmount(f"Payment amount must be positive, got {amount}", amount=amount)
            method = _coerce_method(method)

            attempt = 0
            while True:
                attempt += 1
                try:
                    payment, loan, previous = self._apply_payment(
                        loan_id, amount, method, reference, notes, paid_at, recorder_id
                    )
                    break
                except ConcurrencyConflict as e:
                    if attempt > self.config.payment_max_retries:
                        raise
                    log_action(
                        logger, "warning",
                        f"Payment on loan {loan_id} hit a lock conflict, retrying ({attempt}/{self.config.payment_max_retries})",
                        user_id=recorder_id, action="record_payment", resource=f"loan:{loan_id}",
                        extra={"error": e.code}
                    )
                    self._sleep(self.config.retry_backoff_seconds * attempt)
        except LedgerError as e:
            log_action(
                logger, "warning", f"record_payment rejected: {e.message}",
                user_id=recorder_id, action="record_payment", resource=f"loan:{loan_id}",
                extra={"error": e.code}
            )
            raise

        log_action(
            logger, "info", f"Recorded payment {payment.payment_code} on loan {loan.loan_code}",
            user_id=recorder_id, action="record_payment", resource=f"payment:{payment.id}",
            extra={
                "amount": str(amount),
                "previous_balance": str(previous.balance),
                "new_balance": str(loan.balance)
            }
        )
        self.publish_event(DomainEvent.PAYMENT_RECORDED, "payment", payment.id, {
            "payment_code": payment.payment_code,
            "loan_id": loan.id,
            "loan_code": loan.loan_code,
            "amount": str(amount),
            "previous_balance": str(previous.balance),
            "new_balance": str(loan.balance)
        })
        if loan.status == LoanStatus.PAID_OFF:
            self.publish_event(DomainEvent.LOAN_PAID_OFF, "loan", loan.id, {
                "loan_code": loan.loan_code,
                "final_payment_code": payment.payment_code
            })
        return payment, loan

    def _apply_payment(
        self,
        loan_id: str,
        amount: Decimal,
        method: PaymentMethod,
        reference: Optional[str],
        notes: Optional[str],
        paid_at: Optional[datetime],
        recorder_id: Optional[str]
    ) -> Tuple[Payment, Loan, Loan]:
        """One locked check-and-update; returns payment, updated loan, loan before"""
        with self.storage.atomic():
            loan = self.loans.lock_loan(loan_id)
            previous = Loan.from_dict(loan.to_dict())

            if loan.status == LoanStatus.PAID_OFF:
                raise AlreadySettled(f"Loan {loan.loan_code} is already paid off", loan_id=loan.id)
            if loan.status == LoanStatus.CANCELLED:
                raise LoanCancelled(f"Loan {loan.loan_code} is cancelled", loan_id=loan.id)
            if amount > loan.balance:
                raise OverPayment(amount, loan.balance)

            now = datetime.now(timezone.utc)
            payment_code = self.allocator.next_code(self.config.payment_code_prefix, payment_bucket(now))
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_code=payment_code,
                loan_id=loan.id,
                amount=amount,
                method=method,
                paid_at=as_utc(paid_at) or now,
                recorded_by_id=recorder_id,
                reference=reference,
                notes=notes
            )
            self.storage.save(self.payments_table, payment.id, payment.to_dict())

            loan.balance = previous.balance - amount
            loan.status = derive_status(previous.status, loan.balance)
            loan.version += 1
            loan.updated_at = now
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            self.audit_sink.append(
                recorder_id, AuditAction.CREATE, "Payment", payment.id,
                new_value={
                    'payment_code': payment.payment_code,
                    'amount': amount,
                    'method': method.value,
                    'loan_id': loan.id,
                    'loan_code': loan.loan_code,
                    'previous_balance': previous.balance,
                    'new_balance': loan.balance
                }
            )
            if loan.status != previous.status:
                self.audit_sink.append(
                    recorder_id, AuditAction.UPDATE, "Loan", loan.id,
                    old_value={'status': previous.status.value, 'balance': previous.balance},
                    new_value={'status': loan.status.value, 'balance': loan.balance}
                )

        return payment, loan, previous

    def get_payment(self, payment_id: str) -> Payment:
        """Get payment by id or payment code"""
        data = self.storage.load(self.payments_table, payment_id)
        if data is None:
            by_code = self.storage.find(self.payments_table, {'payment_code': payment_id})
            data = by_code[0] if by_code else None
        if data is None:
            raise NotFound("Payment", payment_id)
        return Payment.from_dict(data)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """Payments of one loan, newest first"""
        loan = self.loans.get_loan(loan_id)
        return self.list_payments(PaymentFilter(loan_id=loan.id))

    def list_payments(self, payment_filter: Optional[PaymentFilter] = None) -> List[Payment]:
        """Payments matching the filter, newest paid_at first"""
        payment_filter = payment_filter or PaymentFilter()
        if payment_filter.limit is not None and payment_filter.limit < 1:
            raise ValueError(f"limit must be at least 1, got {payment_filter.limit}")
        filters: Dict[str, Any] = {}
        if payment_filter.loan_id:
            filters['loan_id'] = payment_filter.loan_id
        if payment_filter.method:
            filters['method'] = _coerce_method(payment_filter.method).value

        payments = [Payment.from_dict(data) for data in self.storage.find(self.payments_table, filters)]

        if payment_filter.search:
            needle = payment_filter.search.strip().lower()
            worker_names = self._worker_names_by_loan()
            payments = [
                p for p in payments
                if needle in p.payment_code.lower()
                or needle in (p.reference or "").lower()
                or needle in worker_names.get(p.loan_id, "").lower()
            ]

        payments.sort(key=lambda p: p.paid_at, reverse=True)
        if payment_filter.limit:
            payments = payments[:payment_filter.limit]
        return payments

    def recent_payments(self, limit: int = 5) -> List[Payment]:
        """Most recent payments across all loans"""
        return self.list_payments(PaymentFilter(limit=limit))

    def _worker_names_by_loan(self) -> Dict[str, str]:
        names = {}
        for data in self.storage.load_all(self.loans_table):
            names[data['id']] = self.workers.display_name(data['worker_id']) or ""
        return names
