"""
System wiring and request dependencies
"""

import threading
from typing import Optional

from fastapi import Depends, Header

from ..audit import AuditTrail
from ..config import LedgerConfig, get_config
from ..directory import (
    InMemoryUserDirectory, InMemoryWorkerDirectory, UserDirectory,
    WorkerDirectory, load_directory_seed,
)
from ..errors import PermissionDenied
from ..events import EventDispatcher
from ..loans import LoanLedger
from ..logging_config import get_logger
from ..payments import PaymentRecorder
from ..permissions import Authorizer, RoleAuthorizer
from ..sequences import SequenceAllocator
from ..storage import StorageInterface, create_storage


logger = get_logger("loan_ledger.api")


class LedgerSystem:
    """Loan ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        workers: Optional[WorkerDirectory] = None,
        users: Optional[UserDirectory] = None,
        authorizer: Optional[Authorizer] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url,
            timeout=self.config.database_timeout,
            lock_timeout=self.config.lock_timeout_seconds
        )

        # External directories
        self.workers = workers or InMemoryWorkerDirectory()
        self.users = users or InMemoryUserDirectory()
        if self.config.directory_seed_file:
            if isinstance(self.workers, InMemoryWorkerDirectory) and isinstance(self.users, InMemoryUserDirectory):
                load_directory_seed(self.config.directory_seed_file, self.workers, self.users)
            else:
                logger.warning("directory_seed_file ignored: directories are not in-memory")

        self.authorizer = authorizer or RoleAuthorizer(self.users)
        self.dispatcher = dispatcher or EventDispatcher()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.allocator = SequenceAllocator(self.storage, width=self.config.sequence_width)
        self.loan_ledger = LoanLedger(
            self.storage, self.allocator, self.audit_trail,
            self.workers, self.users, self.authorizer,
            dispatcher=self.dispatcher, config=self.config
        )
        self.payment_recorder = PaymentRecorder(
            self.storage, self.allocator, self.audit_trail,
            self.loan_ledger, self.authorizer,
            dispatcher=self.dispatcher, config=self.config
        )

    def close(self) -> None:
        self.storage.close()


# Global ledger system instance, created on first use
_ledger_system: Optional[LedgerSystem] = None
_system_lock = threading.Lock()


def get_ledger_system() -> LedgerSystem:
    global _ledger_system
    with _system_lock:
        if _ledger_system is None:
            _ledger_system = LedgerSystem()
        return _ledger_system


def set_ledger_system(system: Optional[LedgerSystem]) -> None:
    """Replace the global instance (tests, embedding applications)"""
    global _ledger_system
    with _system_lock:
        _ledger_system = system


def get_actor_id(x_actor_id: Optional[str] = Header(None)) -> Optional[str]:
    """Acting user, from the X-Actor-Id header"""
    return x_actor_id


def require_viewer(
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LedgerSystem = Depends(get_ledger_system)
) -> Optional[str]:
    if not system.authorizer.can_view_loan(actor_id):
        raise PermissionDenied(actor_id, "view loans")
    return actor_id
