"""
Authorization Module

Capability predicates the ledger consults before each mutation. The ledger
never compares role strings itself; it receives an ``Authorizer`` and asks
it questions such as ``can_issue_loan(actor_id)``.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set

from .directory import UserDirectory


class Capability(Enum):
    """Ledger capabilities"""
    ISSUE_LOAN = "issue_loan"
    RECORD_PAYMENT = "record_payment"
    UPDATE_LOAN = "update_loan"
    CANCEL_LOAN = "cancel_loan"
    VIEW_LOAN = "view_loan"


# Role grants carried over from the HR back office
DEFAULT_ROLE_CAPABILITIES: Dict[str, FrozenSet[Capability]] = {
    "SUPER_ADMIN": frozenset(Capability),
    "MANAGER": frozenset({
        Capability.ISSUE_LOAN,
        Capability.RECORD_PAYMENT,
        Capability.UPDATE_LOAN,
        Capability.VIEW_LOAN,
    }),
    "TH_OPERATOR": frozenset({
        Capability.ISSUE_LOAN,
        Capability.RECORD_PAYMENT,
        Capability.VIEW_LOAN,
    }),
}


class Authorizer(ABC):
    """Answers whether an actor may perform a ledger operation"""

    @abstractmethod
    def has_capability(self, actor_id: Optional[str], capability: Capability) -> bool:
        pass

    def can_issue_loan(self, actor_id: Optional[str]) -> bool:
        return self.has_capability(actor_id, Capability.ISSUE_LOAN)

    def can_record_payment(self, actor_id: Optional[str]) -> bool:
        return self.has_capability(actor_id, Capability.RECORD_PAYMENT)

    def can_update_loan(self, actor_id: Optional[str]) -> bool:
        return self.has_capability(actor_id, Capability.UPDATE_LOAN)

    def can_cancel_loan(self, actor_id: Optional[str]) -> bool:
        return self.has_capability(actor_id, Capability.CANCEL_LOAN)

    def can_view_loan(self, actor_id: Optional[str]) -> bool:
        return self.has_capability(actor_id, Capability.VIEW_LOAN)


class AllowAllAuthorizer(Authorizer):
    """Grants everything; for batch jobs and tests"""

    def has_capability(self, actor_id: Optional[str], capability: Capability) -> bool:
        return True


class RoleAuthorizer(Authorizer):
    """Resolves the actor's role through the user directory"""

    def __init__(self, users: UserDirectory,
                 role_capabilities: Optional[Dict[str, FrozenSet[Capability]]] = None):
        self.users = users
        self.role_capabilities = role_capabilities or DEFAULT_ROLE_CAPABILITIES

    def capabilities_of(self, actor_id: Optional[str]) -> Set[Capability]:
        if not actor_id:
            return set()
        role = self.users.role_of(actor_id)
        if role is None:
            return set()
        return set(self.role_capabilities.get(role, frozenset()))

    def has_capability(self, actor_id: Optional[str], capability: Capability) -> bool:
        return capability in self.capabilities_of(actor_id)
