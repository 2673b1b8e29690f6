"""
Tests for loan issuance, cancellation, detail edits and loan queries
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from conftest import ADMIN, MANAGER, OPERATOR, OUTSIDER
from loan_ledger.audit import AuditAction
from loan_ledger.errors import (
    AllocationFailed, ConcurrencyConflict, InvalidAmount, InvalidTransition,
    NotFound, PermissionDenied, StorageUnavailable,
)
from loan_ledger.loans import (
    Loan, LoanFilter, LoanStatus, derive_status, effective_status
)
from loan_ledger.sequences import loan_bucket
from loan_ledger.storage import InMemoryStorage


def past(days=1):
    return datetime.now(timezone.utc) - timedelta(days=days)


def future(days=30):
    return datetime.now(timezone.utc) + timedelta(days=days)


class CounterOutageStorage(InMemoryStorage):
    """Storage whose sequence counter can be switched off"""

    def __init__(self):
        super().__init__()
        self.counter_down = False

    def increment_counter(self, prefix, bucket):
        if self.counter_down:
            raise StorageUnavailable("counter store unreachable")
        return super().increment_counter(prefix, bucket)


class TestDeriveStatus:
    """Pure status transition rule"""

    def test_zero_balance_settles_active_loan(self):
        """Test zero balance settles active loan"""
        assert derive_status(LoanStatus.ACTIVE, Decimal("0.00")) == LoanStatus.PAID_OFF

    def test_zero_balance_settles_overdue_loan(self):
        """Test zero balance settles overdue loan"""
        assert derive_status(LoanStatus.OVERDUE, Decimal("0")) == LoanStatus.PAID_OFF

    def test_positive_balance_keeps_status(self):
        """Test positive balance keeps status"""
        assert derive_status(LoanStatus.ACTIVE, Decimal("0.01")) == LoanStatus.ACTIVE
        assert derive_status(LoanStatus.OVERDUE, Decimal("10")) == LoanStatus.OVERDUE

    def test_negative_balance_rejected(self):
        """Test negative balance rejected"""
        with pytest.raises(InvalidAmount):
            derive_status(LoanStatus.ACTIVE, Decimal("-1"))


class TestEffectiveStatus:
    """OVERDUE derived on read"""

    def make_loan(self, status=LoanStatus.ACTIVE, due_date=None):
        now = datetime.now(timezone.utc)
        return Loan(
            id="loan-1", created_at=now, updated_at=now, loan_code="L-202410-0001",
            worker_id="W001", principal=Decimal("100.00"), balance=Decimal("100.00"),
            interest_rate=Decimal("0"), status=status, disbursed_at=now, due_date=due_date
        )

    def test_active_past_due_reports_overdue(self):
        """Test active past due reports overdue"""
        assert effective_status(self.make_loan(due_date=past())) == LoanStatus.OVERDUE

    def test_active_before_due_stays_active(self):
        """Test active before due stays active"""
        assert effective_status(self.make_loan(due_date=future())) == LoanStatus.ACTIVE

    def test_no_due_date_never_overdue(self):
        """Test no due date never overdue"""
        assert effective_status(self.make_loan()) == LoanStatus.ACTIVE

    def test_terminal_statuses_unaffected_by_due_date(self):
        """Test terminal statuses unaffected by due date"""
        assert effective_status(self.make_loan(LoanStatus.PAID_OFF, past())) == LoanStatus.PAID_OFF
        assert effective_status(self.make_loan(LoanStatus.CANCELLED, past())) == LoanStatus.CANCELLED

    def test_explicit_now(self):
        """Test overdue is judged against the supplied moment"""
        due = datetime(2024, 10, 1, tzinfo=timezone.utc)
        loan = self.make_loan(due_date=due)

        assert loan.effective_status(datetime(2024, 9, 30, tzinfo=timezone.utc)) == LoanStatus.ACTIVE
        assert loan.effective_status(datetime(2024, 10, 2, tzinfo=timezone.utc)) == LoanStatus.OVERDUE

    def test_loan_round_trip(self):
        """Test loan round trip"""
        loan = self.make_loan(due_date=future())
        restored = Loan.from_dict(loan.to_dict())

        assert restored == loan


class TestIssueLoan:
    """Loan issuance"""

    def test_issue_loan(self, ledger):
        """Test issue loan"""
        loan = ledger.issue_loan("W001", "5000", "1.5", "Medical expenses", None, ADMIN)

        assert loan.principal == Decimal("5000.00")
        assert loan.balance == Decimal("5000.00")
        assert loan.status == LoanStatus.ACTIVE
        assert loan.interest_rate == Decimal("1.5")
        assert loan.loan_code == f"L-{loan_bucket()}-0001"
        assert loan.created_by_id == ADMIN
        assert loan.version == 1
        assert ledger.get_loan(loan.id) == loan

    def test_codes_increase_within_month(self, ledger):
        """Test codes increase within month"""
        codes = [ledger.issue_loan("W001", "100", "0", None, None, OPERATOR).loan_code for _ in range(3)]

        assert [code[-4:] for code in codes] == ["0001", "0002", "0003"]

    def test_lookup_by_code(self, ledger):
        """Test lookup by code"""
        loan = ledger.issue_loan("W002", "250.50", "0", None, future(), MANAGER)

        assert ledger.get_loan(loan.loan_code).id == loan.id

    def test_principal_is_quantized(self, ledger):
        """Test principal is quantized"""
        loan = ledger.issue_loan("W001", "100.005", "0", None, None, ADMIN)
        assert loan.principal == Decimal("100.01")

    @pytest.mark.parametrize("principal", ["0", "-10", "abc", "NaN"])
    def test_invalid_principal(self, ledger, principal):
        """Test invalid principal"""
        with pytest.raises(InvalidAmount):
            ledger.issue_loan("W001", principal, "0", None, None, ADMIN)
        assert ledger.list_loans() == []

    def test_negative_interest_rate(self, ledger):
        """Test negative interest rate"""
        with pytest.raises(InvalidAmount):
            ledger.issue_loan("W001", "100", "-1", None, None, ADMIN)

    def test_unknown_worker(self, ledger):
        """Test unknown worker"""
        with pytest.raises(NotFound) as exc_info:
            ledger.issue_loan("W999", "100", "0", None, None, ADMIN)
        assert exc_info.value.details["entity"] == "Worker"

    def test_permission_required(self, ledger):
        """Test permission required"""
        with pytest.raises(PermissionDenied):
            ledger.issue_loan("W001", "100", "0", None, None, OUTSIDER)
        with pytest.raises(PermissionDenied):
            ledger.issue_loan("W001", "100", "0", None, None, None)

    def test_audit_create_entry(self, system):
        """Test audit create entry"""
        loan = system.loan_ledger.issue_loan("W001", "5000", "0", "Rent", None, ADMIN)

        history = system.audit_trail.get_entries_for_entity("Loan", loan.id)
        assert len(history) == 1
        assert history[0].action == AuditAction.CREATE
        assert history[0].actor_id == ADMIN
        assert history[0].new_value["balance"] == "5000.00"
        assert history[0].new_value["loan_code"] == loan.loan_code

    def test_allocation_failure_writes_nothing(self, make_system):
        """Test a counter outage aborts issuance without a loan or audit entry"""
        storage = CounterOutageStorage()
        system = make_system(storage=storage)
        storage.counter_down = True

        with pytest.raises(AllocationFailed):
            system.loan_ledger.issue_loan("W001", "500", "0", None, None, ADMIN)

        assert system.storage.count("loans") == 0
        assert system.audit_trail.count_entries() == 0

        storage.counter_down = False
        loan = system.loan_ledger.issue_loan("W001", "500", "0", None, None, ADMIN)
        assert system.loan_ledger.list_loans() == [loan]

    def test_unknown_loan(self, ledger):
        """Test unknown loan"""
        with pytest.raises(NotFound):
            ledger.get_loan("missing")


class TestCancelLoan:
    """Cancellation"""

    def test_cancel_active_loan(self, system):
        """Test cancel active loan"""
        ledger = system.loan_ledger
        loan = ledger.issue_loan("W001", "500", "0", None, None, ADMIN)

        cancelled = ledger.cancel_loan(loan.id, ADMIN)

        assert cancelled.status == LoanStatus.CANCELLED
        assert cancelled.balance == Decimal("500.00")
        assert ledger.get_loan(loan.id).status == LoanStatus.CANCELLED

        history = system.audit_trail.get_entries_for_entity("Loan", loan.id)
        assert history[-1].action == AuditAction.DELETE
        assert history[-1].old_value["status"] == "ACTIVE"
        assert history[-1].old_value["balance"] == "500.00"

    def test_cancel_overdue_loan(self, ledger):
        """Test cancel overdue loan"""
        loan = ledger.issue_loan("W001", "500", "0", None, past(), ADMIN)
        assert loan.effective_status() == LoanStatus.OVERDUE

        assert ledger.cancel_loan(loan.loan_code, ADMIN).status == LoanStatus.CANCELLED

    def test_cancel_twice_is_invalid(self, ledger):
        """Test cancel twice is invalid"""
        loan = ledger.issue_loan("W001", "500", "0", None, None, ADMIN)
        ledger.cancel_loan(loan.id, ADMIN)

        with pytest.raises(InvalidTransition):
            ledger.cancel_loan(loan.id, ADMIN)

    def test_cancel_paid_off_is_invalid(self, ledger, recorder):
        """Test cancel paid off is invalid"""
        loan = ledger.issue_loan("W001", "100", "0", None, None, ADMIN)
        recorder.record_payment(loan.id, "100", recorder_id=ADMIN)

        with pytest.raises(InvalidTransition):
            ledger.cancel_loan(loan.id, ADMIN)

    def test_only_super_admin_cancels(self, ledger):
        """Test only super admin cancels"""
        loan = ledger.issue_loan("W001", "100", "0", None, None, ADMIN)

        for actor in (MANAGER, OPERATOR, OUTSIDER):
            with pytest.raises(PermissionDenied):
                ledger.cancel_loan(loan.id, actor)
        assert ledger.get_loan(loan.id).status == LoanStatus.ACTIVE

    def test_cancel_unknown_loan(self, ledger):
        """Test cancel unknown loan"""
        with pytest.raises(NotFound):
            ledger.cancel_loan("missing", ADMIN)


class TestUpdateLoanDetails:
    """Non-monetary edits"""

    def test_update_fields(self, system):
        """Test update fields"""
        ledger = system.loan_ledger
        loan = ledger.issue_loan("W001", "1000", "1", "Rent", None, ADMIN)
        due = future(60)

        updated = ledger.update_loan_details(
            loan.id, {"purpose": "School fees", "due_date": due, "interest_rate": "2.5"}, MANAGER
        )

        assert updated.purpose == "School fees"
        assert updated.due_date == due
        assert updated.interest_rate == Decimal("2.5")
        assert updated.balance == Decimal("1000.00")
        assert updated.version == 2

        entry = system.audit_trail.get_entries_for_entity("Loan", loan.id)[-1]
        assert entry.action == AuditAction.UPDATE
        assert entry.old_value == {"purpose": "Rent", "due_date": None, "interest_rate": "1"}
        assert entry.new_value["purpose"] == "School fees"
        assert entry.new_value["interest_rate"] == "2.5"

    @pytest.mark.parametrize("field", ["balance", "status", "principal", "loan_code"])
    def test_protected_fields_rejected(self, ledger, field):
        """Test protected fields rejected"""
        loan = ledger.issue_loan("W001", "1000", "0", None, None, ADMIN)

        with pytest.raises(InvalidTransition):
            ledger.update_loan_details(loan.id, {field: "0"}, ADMIN)
        assert ledger.get_loan(loan.id) == loan

    def test_terminal_loan_cannot_be_edited(self, ledger, recorder):
        """Test terminal loan cannot be edited"""
        paid = ledger.issue_loan("W001", "10", "0", None, None, ADMIN)
        recorder.record_payment(paid.id, "10", recorder_id=ADMIN)
        cancelled = ledger.issue_loan("W001", "10", "0", None, None, ADMIN)
        ledger.cancel_loan(cancelled.id, ADMIN)

        for loan in (paid, cancelled):
            with pytest.raises(InvalidTransition):
                ledger.update_loan_details(loan.id, {"notes": "late edit"}, ADMIN)

    def test_overdue_loan_can_be_edited(self, ledger):
        """Test overdue loan can be edited"""
        loan = ledger.issue_loan("W001", "10", "0", None, past(), ADMIN)

        updated = ledger.update_loan_details(loan.id, {"due_date": future()}, ADMIN)
        assert updated.effective_status() == LoanStatus.ACTIVE

    def test_stale_version_conflicts(self, ledger):
        """Test stale version conflicts"""
        loan = ledger.issue_loan("W001", "1000", "0", None, None, ADMIN)
        ledger.update_loan_details(loan.id, {"notes": "first"}, ADMIN, expected_version=1)

        with pytest.raises(ConcurrencyConflict):
            ledger.update_loan_details(loan.id, {"notes": "second"}, ADMIN, expected_version=1)
        assert ledger.get_loan(loan.id).notes == "first"

    def test_no_change_writes_nothing(self, system):
        """Test no change writes nothing"""
        ledger = system.loan_ledger
        loan = ledger.issue_loan("W001", "1000", "0", "Rent", None, ADMIN)

        same = ledger.update_loan_details(loan.id, {"purpose": "Rent"}, ADMIN)

        assert same.version == 1
        assert len(system.audit_trail.get_entries_for_entity("Loan", loan.id)) == 1

    def test_operator_cannot_update(self, ledger):
        """Test operator cannot update"""
        loan = ledger.issue_loan("W001", "1000", "0", None, None, ADMIN)
        with pytest.raises(PermissionDenied):
            ledger.update_loan_details(loan.id, {"notes": "x"}, OPERATOR)


class TestLoanQueries:
    """Listing, details and statistics"""

    def test_list_newest_first(self, ledger):
        """Test list newest first"""
        first = ledger.issue_loan("W001", "100", "0", None, None, ADMIN)
        second = ledger.issue_loan("W002", "200", "0", None, None, ADMIN)

        assert [loan.id for loan in ledger.list_loans()] == [second.id, first.id]

    def test_filter_by_worker(self, ledger):
        """Test filter by worker"""
        ledger.issue_loan("W001", "100", "0", None, None, ADMIN)
        ledger.issue_loan("W002", "200", "0", None, None, ADMIN)
        ledger.issue_loan("W001", "300", "0", None, None, ADMIN)

        loans = ledger.list_loans(LoanFilter(worker_id="W001"))
        assert sorted(loan.principal for loan in loans) == [Decimal("100.00"), Decimal("300.00")]
        assert len(ledger.get_worker_loans("W002")) == 1

    def test_filter_by_effective_status(self, ledger):
        """Test filter by effective status"""
        overdue = ledger.issue_loan("W001", "100", "0", None, past(), ADMIN)
        active = ledger.issue_loan("W002", "200", "0", None, future(), ADMIN)

        assert [l.id for l in ledger.list_loans(LoanFilter(status=LoanStatus.OVERDUE))] == [overdue.id]
        assert [l.id for l in ledger.list_loans(LoanFilter(status=LoanStatus.ACTIVE))] == [active.id]

    def test_search_by_code_and_worker_name(self, ledger):
        """Test search by code and worker name"""
        siti = ledger.issue_loan("W001", "100", "0", None, None, ADMIN)
        budi = ledger.issue_loan("W002", "200", "0", None, None, ADMIN)

        assert [l.id for l in ledger.list_loans(LoanFilter(search="rahayu"))] == [siti.id]
        assert [l.id for l in ledger.list_loans(LoanFilter(search="BUDI"))] == [budi.id]
        assert [l.id for l in ledger.list_loans(LoanFilter(search=budi.loan_code.lower()))] == [budi.id]

    def test_limit(self, ledger):
        """Test listing honours a limit"""
        for _ in range(4):
            ledger.issue_loan("W001", "100", "0", None, None, ADMIN)
        assert len(ledger.list_loans(LoanFilter(limit=2))) == 2

    @pytest.mark.parametrize("limit", [0, -1])
    def test_limit_below_one_rejected(self, ledger, limit):
        """Test a zero or negative limit is refused instead of slicing"""
        ledger.issue_loan("W001", "100", "0", None, None, ADMIN)
        with pytest.raises(ValueError):
            ledger.list_loans(LoanFilter(limit=limit))

    def test_loan_details(self, ledger, recorder):
        """Test loan details"""
        loan = ledger.issue_loan("W001", "1000", "0", None, None, MANAGER)
        early, _ = recorder.record_payment(loan.id, "100", paid_at=past(5), recorder_id=ADMIN)
        late, _ = recorder.record_payment(loan.id, "200", paid_at=past(1), recorder_id=ADMIN)

        details = ledger.get_loan_details(loan.loan_code)

        assert details.loan.balance == Decimal("700.00")
        assert [p.id for p in details.payments] == [late.id, early.id]
        assert details.worker_name == "Siti Rahayu"
        assert details.issuer_name == "Mario Manager"

    def test_loan_stats(self, ledger, recorder):
        """Test loan stats"""
        active = ledger.issue_loan("W001", "1000", "0", None, future(), ADMIN)
        overdue = ledger.issue_loan("W002", "500", "0", None, past(), ADMIN)
        paid = ledger.issue_loan("W003", "300", "0", None, None, ADMIN)
        cancelled = ledger.issue_loan("W001", "999", "0", None, None, ADMIN)
        recorder.record_payment(active.id, "250", recorder_id=ADMIN)
        recorder.record_payment(paid.id, "300", recorder_id=ADMIN)
        ledger.cancel_loan(cancelled.id, ADMIN)

        stats = ledger.loan_stats()

        assert stats.total == 3
        assert stats.active == 1
        assert stats.overdue == 1
        assert stats.paid_off == 1
        assert stats.total_outstanding == Decimal("1250.00")
        assert stats.to_dict()["total_outstanding"] == "1250.00"
        assert overdue.balance == Decimal("500.00")
