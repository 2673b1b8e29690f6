"""
Shared fixtures: an in-memory ledger with a few workers and users
"""

import pytest

from loan_ledger.api.dependencies import LedgerSystem
from loan_ledger.config import LedgerConfig
from loan_ledger.directory import InMemoryUserDirectory, InMemoryWorkerDirectory
from loan_ledger.storage import InMemoryStorage


ADMIN = "U-ADMIN"        # SUPER_ADMIN
MANAGER = "U-MANAGER"    # MANAGER
OPERATOR = "U-OPS"       # TH_OPERATOR
OUTSIDER = "U-GUEST"     # role without ledger capabilities


def make_config(**overrides) -> LedgerConfig:
    settings = {
        "database_url": "memory://",
        "lock_timeout_seconds": 5.0,
        "retry_backoff_seconds": 0.0,
    }
    settings.update(overrides)
    return LedgerConfig(**settings)


def make_directories():
    workers = InMemoryWorkerDirectory()
    workers.add_worker("W001", "Siti", "Rahayu")
    workers.add_worker("W002", "Budi", "Santoso")
    workers.add_worker("W003", "Maria", "Lopez")

    users = InMemoryUserDirectory()
    users.add_user(ADMIN, "Ana Admin", "SUPER_ADMIN")
    users.add_user(MANAGER, "Mario Manager", "MANAGER")
    users.add_user(OPERATOR, "Olga Operator", "TH_OPERATOR")
    users.add_user(OUTSIDER, "Gina Guest", "RECRUITER")
    return workers, users


@pytest.fixture
def make_system():
    """Factory for isolated ledger systems; closes them afterwards"""
    created = []

    def factory(storage=None, **config_overrides) -> LedgerSystem:
        workers, users = make_directories()
        system = LedgerSystem(
            config=make_config(**config_overrides),
            storage=storage or InMemoryStorage(),
            workers=workers,
            users=users
        )
        created.append(system)
        return system

    yield factory

    for system in created:
        system.close()


@pytest.fixture
def system(make_system) -> LedgerSystem:
    return make_system()


@pytest.fixture
def ledger(system):
    return system.loan_ledger


@pytest.fixture
def recorder(system):
    return system.payment_recorder
