"""
Loan Module

Handles loan issuance, cancellation, detail edits and the read side of the
ledger (lookups, filtered listings, detail views, dashboard statistics).
Balances are written only by the payment recorder; this module never
changes ``balance`` after issuance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditAction, AuditSink
from .config import LedgerConfig, get_config
from .directory import UserDirectory, WorkerDirectory
from .errors import (
    ConcurrencyConflict, InvalidAmount, InvalidTransition, LedgerError,
    NotFound, PermissionDenied,
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount, to_rate
from .permissions import Authorizer
from .sequences import SequenceAllocator, loan_bucket
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_ledger.loans")

LOANS_TABLE = "loans"
PAYMENTS_TABLE = "payments"

EDITABLE_FIELDS = frozenset({"purpose", "notes", "due_date", "interest_rate"})


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"          # Issued, balance outstanding
    OVERDUE = "OVERDUE"        # Outstanding past its due date
    PAID_OFF = "PAID_OFF"      # Balance reached zero (terminal)
    CANCELLED = "CANCELLED"    # Cancelled by an administrator (terminal)


TERMINAL_STATUSES = frozenset({LoanStatus.PAID_OFF, LoanStatus.CANCELLED})


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC"""
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


def derive_status(current_status: LoanStatus, new_balance: Decimal) -> LoanStatus:
    """
    Status after a balance change

    A zero balance settles the loan regardless of whether it was ACTIVE or
    OVERDUE; any other balance leaves the status as it was.
    """
    if new_balance < ZERO:
        raise InvalidAmount(f"Balance cannot be negative: {new_balance}", balance=new_balance)
    if new_balance == ZERO:
        return LoanStatus.PAID_OFF
    return current_status


@dataclass
class Loan(StorageRecord):
    """Loan issued to a worker"""
    loan_code: str                      # L-YYYYMM-NNNN
    worker_id: str
    principal: Decimal
    balance: Decimal
    interest_rate: Decimal              # Percentage, informational
    status: LoanStatus
    disbursed_at: datetime
    created_by_id: Optional[str] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def amount_paid(self) -> Decimal:
        return self.principal - self.balance

    def effective_status(self, now: Optional[datetime] = None) -> LoanStatus:
        return effective_status(self, now)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['disbursed_at'] = self.disbursed_at.isoformat()
        result['due_date'] = self.due_date.isoformat() if self.due_date else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_code=data['loan_code'],
            worker_id=data['worker_id'],
            principal=Decimal(data['principal']),
            balance=Decimal(data['balance']),
            interest_rate=Decimal(data['interest_rate']),
            status=LoanStatus(data['status']),
            disbursed_at=parse_datetime(data['disbursed_at']),
            created_by_id=data.get('created_by_id'),
            purpose=data.get('purpose'),
            notes=data.get('notes'),
            due_date=parse_datetime(data.get('due_date')),
            version=data.get('version', 1)
        )


def effective_status(loan: Loan, now: Optional[datetime] = None) -> LoanStatus:
    """
    Status as reported to readers

    OVERDUE is derived on read: an ACTIVE loan whose due date has passed
    reports OVERDUE. Stored statuses other than ACTIVE are returned as is.
    """
    if loan.status != LoanStatus.ACTIVE or loan.due_date is None:
        return loan.status
    now = as_utc(now) or datetime.now(timezone.utc)
    if as_utc(loan.due_date) < now:
        return LoanStatus.OVERDUE
    return loan.status


@dataclass
class LoanFilter:
    """Criteria for listing loans"""
    worker_id: Optional[str] = None
    status: Optional[LoanStatus] = None   # Matched against the effective status
    search: Optional[str] = None          # Loan code or worker name, case-insensitive
    limit: Optional[int] = None


@dataclass
class LoanDetails:
    """Loan with its payment history and resolved names"""
    loan: Loan
    payments: List[Any] = field(default_factory=list)   # Payment records, newest first
    worker_name: Optional[str] = None
    issuer_name: Optional[str] = None


@dataclass
class LoanStats:
    """Finance dashboard figures over non-cancelled loans"""
    total: int = 0
    active: int = 0
    overdue: int = 0
    paid_off: int = 0
    total_outstanding: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'active': self.active,
            'overdue': self.overdue,
            'paid_off': self.paid_off,
            'total_outstanding': str(self.total_outstanding)
        }


class LoanLedger(EventPublisherMixin):
    """
    Owns loan records from issuance through cancellation
    """

    def __init__(
        self,
        storage: StorageInterface,
        allocator: SequenceAllocator,
        audit_sink: AuditSink,
        workers: WorkerDirectory,
        users: UserDirectory,
        authorizer: Authorizer,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.allocator = allocator
        self.audit_sink = audit_sink
        self.workers = workers
        self.users = users
        self.authorizer = authorizer
        self.config = config or get_config()
        self.set_event_dispatcher(dispatcher)

        self.loans_table = LOANS_TABLE
        self.payments_table = PAYMENTS_TABLE

    def issue_loan(
        self,
        worker_id: str,
        principal: Any,
        interest_rate: Any,
        purpose: Optional[str],
        due_date: Optional[datetime],
        issuer_id: Optional[str],
        notes: Optional[str] = None,
        disbursed_at: Optional[datetime] = None
    ) -> Loan:
        """
        Issue a new loan with its full principal outstanding

        Args:
            worker_id: Borrowing worker
            principal: Amount lent, must be positive
            interest_rate: Percentage, must not be negative
            purpose: Free text
            due_date: Optional repayment deadline
            issuer_id: User issuing the loan
            notes: Free text
            disbursed_at: Defaults to now

        Returns:
            Created Loan object
        """
        try:
            if not self.authorizer.can_issue_loan(issuer_id):
                raise PermissionDenied(issuer_id, "issue loans")

            principal = to_amount(principal)
            if principal <= ZERO:
                raise InvalidAmount(f"Principal must be positive, got {principal}", principal=principal)

            rate = to_rate(interest_rate)
            if rate < 0:
                raise InvalidAmount(f"Interest rate cannot be negative, got {rate}", interest_rate=rate)

            if not self.workers.exists(worker_id):
                raise NotFound("Worker", worker_id)

            now = datetime.now(timezone.utc)
            with self.storage.atomic():
                loan_code = self.allocator.next_code(self.config.loan_code_prefix, loan_bucket(now))
                loan = Loan(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_code=loan_code,
                    worker_id=worker_id,
                    principal=principal,
                    balance=principal,
                    interest_rate=rate,
                    status=LoanStatus.ACTIVE,
                    disbursed_at=as_utc(disbursed_at) or now,
                    created_by_id=issuer_id,
                    purpose=purpose,
                    notes=notes,
                    due_date=as_utc(due_date)
                )
                self._save_loan(loan)
                self.audit_sink.append(
                    issuer_id, AuditAction.CREATE, "Loan", loan.id, new_value=loan.to_dict()
                )
        except LedgerError as e:
            self._log_rejection(issuer_id, "issue_loan", e)
            raise

        log_action(
            logger, "info", f"Issued loan {loan.loan_code}",
            user_id=issuer_id, action="issue_loan", resource=f"loan:{loan.id}",
            extra={"loan_code": loan.loan_code, "worker_id": worker_id, "principal": str(principal)}
        )
        self.publish_event(DomainEvent.LOAN_ISSUED, "loan", loan.id, {
            "loan_code": loan.loan_code,
            "worker_id": worker_id,
            "principal": str(principal)
        })
        return loan

    def cancel_loan(self, loan_id: str, actor_id: Optional[str]) -> Loan:
        """
        Cancel an ACTIVE or OVERDUE loan

        The balance is left untouched and the record is kept.
        """
        try:
            if not self.authorizer.can_cancel_loan(actor_id):
                raise PermissionDenied(actor_id, "cancel loans")

            with self.storage.atomic():
                loan = self.lock_loan(loan_id)
                if loan.is_terminal:
                    raise InvalidTransition(
                        f"Cannot cancel loan {loan.loan_code} in status {loan.status.value}",
                        loan_id=loan.id, status=loan.status.value
                    )

                before = loan.to_dict()
                loan.status = LoanStatus.CANCELLED
                loan.version += 1
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)
                self.audit_sink.append(
                    actor_id, AuditAction.DELETE, "Loan", loan.id,
                    old_value=before, new_value={'status': loan.status.value}
                )
        except LedgerError as e:
            self._log_rejection(actor_id, "cancel_loan", e)
            raise

        log_action(
            logger, "info", f"Cancelled loan {loan.loan_code}",
            user_id=actor_id, action="cancel_loan", resource=f"loan:{loan.id}",
            extra={"balance": str(loan.balance)}
        )
        self.publish_event(DomainEvent.LOAN_CANCELLED, "loan", loan.id, {
            "loan_code": loan.loan_code,
            "balance": str(loan.balance)
        })
        return loan

    def update_loan_details(
        self,
        loan_id: str,
        fields: Dict[str, Any],
        actor_id: Optional[str],
        expected_version: Optional[int] = None
    ) -> Loan:
        """
        Edit the non-monetary fields of a non-terminal loan

        Args:
            loan_id: Loan id or loan code
            fields: Subset of purpose, notes, due_date, interest_rate
            actor_id: User making the change
            expected_version: Reject with ConcurrencyConflict if the loan
                has been written since this version was read

        Returns:
            Updated Loan object
        """
        try:
            if not self.authorizer.can_update_loan(actor_id):
                raise PermissionDenied(actor_id, "update loans")

            illegal = sorted(set(fields) - EDITABLE_FIELDS)
            if illegal:
                raise InvalidTransition(
                    f"Fields cannot be edited: {', '.join(illegal)}", fields=illegal
                )

            changes = dict(fields)
            if 'interest_rate' in changes:
                rate = to_rate(changes['interest_rate'])
                if rate < 0:
                    raise InvalidAmount(f"Interest rate cannot be negative, got {rate}", interest_rate=rate)
                changes['interest_rate'] = rate
            if 'due_date' in changes:
                changes['due_date'] = parse_datetime(changes['due_date'])

            with self.storage.atomic():
                loan = self.lock_loan(loan_id)
                if loan.is_terminal:
                    raise InvalidTransition(
                        f"Loan {loan.loan_code} is {loan.status.value} and can no longer be edited",
                        loan_id=loan.id, status=loan.status.value
                    )
                if expected_version is not None and loan.version != expected_version:
                    raise ConcurrencyConflict(
                        f"Loan {loan.loan_code} was modified (version {loan.version}, expected {expected_version})",
                        loan_id=loan.id, version=loan.version, expected_version=expected_version
                    )

                old_values = {}
                new_values = {}
                for name, value in changes.items():
                    if getattr(loan, name) != value:
                        old_values[name] = getattr(loan, name)
                        new_values[name] = value
                        setattr(loan, name, value)

                if new_values:
                    loan.version += 1
                    loan.updated_at = datetime.now(timezone.utc)
                    self._save_loan(loan)
                    self.audit_sink.append(
                        actor_id, AuditAction.UPDATE, "Loan", loan.id,
                        old_value=old_values, new_value=new_values
                    )
        except LedgerError as e:
            self._log_rejection(actor_id, "update_loan", e)
            raise

        if new_values:
            log_action(
                logger, "info", f"Updated loan {loan.loan_code}",
                user_id=actor_id, action="update_loan", resource=f"loan:{loan.id}",
                extra={"fields": sorted(new_values)}
            )
            self.publish_event(DomainEvent.LOAN_UPDATED, "loan", loan.id, {
                "loan_code": loan.loan_code,
                "fields": sorted(new_values)
            })
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by id or loan code"""
        data = self._find_loan_data(loan_id)
        if data is None:
            raise NotFound("Loan", loan_id)
        return Loan.from_dict(data)

    def lock_loan(self, loan_id: str) -> Loan:
        """
        Load a loan and hold its row lock until the current transaction ends

        Must be called inside ``storage.atomic()``.
        """
        data = self.storage.load(self.loans_table, loan_id)
        record_id = loan_id if data else None
        if record_id is None:
            by_code = self.storage.find(self.loans_table, {'loan_code': loan_id})
            record_id = by_code[0]['id'] if by_code else None
        if record_id is None:
            raise NotFound("Loan", loan_id)

        data = self.storage.load_for_update(self.loans_table, record_id)
        if data is None:
            raise NotFound("Loan", loan_id)
        return Loan.from_dict(data)

    def list_loans(self, loan_filter: Optional[LoanFilter] = None,
                   now: Optional[datetime] = None) -> List[Loan]:
        """Loans matching the filter, newest first"""
        loan_filter = loan_filter or LoanFilter()
        if loan_filter.limit is not None and loan_filter.limit < 1:
            raise ValueError(f"limit must be at least 1, got {loan_filter.limit}")
        filters = {'worker_id': loan_filter.worker_id} if loan_filter.worker_id else {}
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]

        if loan_filter.status:
            loans = [loan for loan in loans if effective_status(loan, now) == loan_filter.status]

        if loan_filter.search:
            needle = loan_filter.search.strip().lower()
            loans = [loan for loan in loans if self._loan_matches(loan, needle)]

        loans.sort(key=lambda loan: (loan.created_at, loan.loan_code), reverse=True)
        if loan_filter.limit:
            loans = loans[:loan_filter.limit]
        return loans

    def get_worker_loans(self, worker_id: str) -> List[Loan]:
        """All loans of one worker, newest first"""
        return self.list_loans(LoanFilter(worker_id=worker_id))

    def get_loan_details(self, loan_id: str) -> LoanDetails:
        """Loan with payment history (newest first) and display names"""
        from .payments import Payment

        loan = self.get_loan(loan_id)
        payments = [
            Payment.from_dict(data)
            for data in self.storage.find(self.payments_table, {'loan_id': loan.id})
        ]
        payments.sort(key=lambda p: p.paid_at, reverse=True)

        return LoanDetails(
            loan=loan,
            payments=payments,
            worker_name=self.workers.display_name(loan.worker_id),
            issuer_name=self.users.display_name(loan.created_by_id) if loan.created_by_id else None
        )

    def loan_stats(self, now: Optional[datetime] = None) -> LoanStats:
        """Counts by effective status and outstanding total, cancelled loans excluded"""
        stats = LoanStats()
        for data in self.storage.load_all(self.loans_table):
            loan = Loan.from_dict(data)
            status = effective_status(loan, now)
            if status == LoanStatus.CANCELLED:
                continue

            stats.total += 1
            if status == LoanStatus.ACTIVE:
                stats.active += 1
            elif status == LoanStatus.OVERDUE:
                stats.overdue += 1
            elif status == LoanStatus.PAID_OFF:
                stats.paid_off += 1

            if status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
                stats.total_outstanding += loan.balance
        return stats

    def _find_loan_data(self, loan_id: str) -> Optional[Dict[str, Any]]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return data
        by_code = self.storage.find(self.loans_table, {'loan_code': loan_id})
        return by_code[0] if by_code else None

    def _loan_matches(self, loan: Loan, needle: str) -> bool:
        if needle in loan.loan_code.lower():
            return True
        worker_name = self.workers.display_name(loan.worker_id) or ""
        return needle in worker_name.lower()

    def _save_loan(self, loan: Loan) -> None:
        """Save loan to storage"""
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _log_rejection(self, actor_id: Optional[str], action: str, error: LedgerError) -> None:
        log_action(
            logger, "warning", f"{action} rejected: {error.message}",
            user_id=actor_id, action=action, resource="loan",
            extra={"error": error.code}
        )
