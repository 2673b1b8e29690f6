"""
Directory Lookups

Read-only views onto the worker and user records the ledger references but
does not own. Production wiring plugs in adapters over the HR and identity
systems; the in-memory implementations serve tests and local runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional
import json
import threading


class WorkerDirectory(ABC):
    """Lookup of workers that may borrow"""

    @abstractmethod
    def exists(self, worker_id: str) -> bool:
        """True when the worker record exists"""
        pass

    @abstractmethod
    def display_name(self, worker_id: str) -> Optional[str]:
        """Human-readable name, or None when unknown"""
        pass


class UserDirectory(ABC):
    """Lookup of system users (issuers, recorders, approvers)"""

    @abstractmethod
    def role_of(self, user_id: str) -> Optional[str]:
        """Role name of the user, or None when unknown"""
        pass

    @abstractmethod
    def display_name(self, user_id: str) -> Optional[str]:
        """Human-readable name, or None when unknown"""
        pass


@dataclass(frozen=True)
class WorkerInfo:
    worker_id: str
    first_name: str
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class UserInfo:
    user_id: str
    name: str
    role: str


class InMemoryWorkerDirectory(WorkerDirectory):
    """Dictionary-backed worker directory"""

    def __init__(self):
        self._workers: Dict[str, WorkerInfo] = {}
        self._lock = threading.Lock()

    def add_worker(self, worker_id: str, first_name: str, last_name: str = "") -> WorkerInfo:
        worker = WorkerInfo(worker_id=worker_id, first_name=first_name, last_name=last_name)
        with self._lock:
            self._workers[worker_id] = worker
        return worker

    def exists(self, worker_id: str) -> bool:
        with self._lock:
            return worker_id in self._workers

    def display_name(self, worker_id: str) -> Optional[str]:
        with self._lock:
            worker = self._workers.get(worker_id)
        return worker.full_name if worker else None


class InMemoryUserDirectory(UserDirectory):
    """Dictionary-backed user directory"""

    def __init__(self):
        self._users: Dict[str, UserInfo] = {}
        self._lock = threading.Lock()

    def add_user(self, user_id: str, name: str, role: str) -> UserInfo:
        user = UserInfo(user_id=user_id, name=name, role=role)
        with self._lock:
            self._users[user_id] = user
        return user

    def role_of(self, user_id: str) -> Optional[str]:
        with self._lock:
            user = self._users.get(user_id)
        return user.role if user else None

    def display_name(self, user_id: str) -> Optional[str]:
        with self._lock:
            user = self._users.get(user_id)
        return user.name if user else None


def load_directory_seed(path: str, workers: InMemoryWorkerDirectory,
                        users: InMemoryUserDirectory) -> None:
    """
    Populate in-memory directories from a JSON file of the form
    ``{"workers": [{"id", "first_name", "last_name"}], "users": [{"id", "name", "role"}]}``
    """
    with open(path, encoding="utf-8") as f:
        seed = json.load(f)

    for worker in seed.get("workers", []):
        workers.add_worker(worker["id"], worker["first_name"], worker.get("last_name", ""))
    for user in seed.get("users", []):
        users.add_user(user["id"], user["name"], user["role"])
