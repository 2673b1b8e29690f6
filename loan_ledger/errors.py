"""
Ledger Error Taxonomy

Every rejected ledger operation raises one of these. Each error carries a
stable ``code`` so the presentation layer can render an actionable message
without parsing text.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary"""
        details = {
            k: str(v) if isinstance(v, Decimal) else v
            for k, v in self.details.items()
        }
        return {"error": self.code, "message": self.message, "details": details}


class InvalidAmount(LedgerError):
    """Amount is non-positive or otherwise unusable"""

    code = "invalid_amount"


class OverPayment(InvalidAmount):
    """Payment would drive the balance below zero"""

    code = "over_payment"

    def __init__(self, amount: Decimal, balance: Decimal):
        super().__init__(
            f"Payment amount {amount} exceeds outstanding balance of {balance}",
            amount=amount,
            balance=balance,
        )


class NotFound(LedgerError):
    """Referenced loan, payment or worker does not exist"""

    code = "not_found"

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"{entity} {identifier} not found", entity=entity, identifier=identifier)


class AlreadySettled(LedgerError):
    """Loan is PAID_OFF"""

    code = "already_settled"


class LoanCancelled(LedgerError):
    """Loan is CANCELLED"""

    code = "loan_cancelled"


class InvalidTransition(LedgerError):
    """Illegal status change, or an edit attempted on a terminal loan"""

    code = "invalid_transition"


class AllocationFailed(LedgerError):
    """Sequence counter could not be incremented or committed"""

    code = "allocation_failed"


class ConcurrencyConflict(LedgerError):
    """Row lock could not be taken in time, or a version check failed"""

    code = "concurrency_conflict"


class PermissionDenied(LedgerError):
    """Actor lacks the capability for the requested operation"""

    code = "permission_denied"

    def __init__(self, actor_id: Optional[str], capability: str):
        super().__init__(
            f"Actor {actor_id} is not allowed to {capability}",
            actor_id=actor_id,
            capability=capability,
        )


class StorageUnavailable(LedgerError):
    """Transient storage failure; safe for the caller to retry"""

    code = "storage_unavailable"
