"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every ledger mutation appends an entry here inside the same transaction as
the mutation itself, so an operation is never reported complete without
its audit record, and a rolled-back operation leaves no audit record.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditAction(Enum):
    """Kinds of audited mutation"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _serialize(value: Any) -> Any:
    """Convert values to JSON-serializable format"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditEntry(StorageRecord):
    """
    Immutable audit entry with hash chaining for tamper detection
    """
    sequence: int        # Position in the chain, starting at 1
    action: AuditAction
    entity: str          # "Loan", "Payment"
    entity_id: str
    previous_hash: str
    current_hash: str
    actor_id: Optional[str] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.old_value is not None:
            self.old_value = _serialize(self.old_value)
        if self.new_value is not None:
            self.new_value = _serialize(self.new_value)

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity': self.entity,
            'entity_id': self.entity_id,
            'actor_id': self.actor_id,
            'previous_hash': self.previous_hash,
            'old_value': self.old_value,
            'new_value': self.new_value
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        data = dict(data)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['action'], str):
            data['action'] = AuditAction(data['action'])
        return cls(**data)


def latest(entries: List[AuditEntry], limit: Optional[int]) -> List[AuditEntry]:
    """Keep the most recent ``limit`` entries of a chain-ordered list"""
    if limit is None:
        return entries
    if limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")
    return entries[-limit:]


class AuditSink(ABC):
    """Append-only destination for audit records"""

    @abstractmethod
    def append(
        self,
        actor_id: Optional[str],
        action: AuditAction,
        entity: str,
        entity_id: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """Append one record; must be durable before returning"""
        pass


class AuditTrail(AuditSink):
    """
    Hash-chained audit trail stored alongside the ledger tables

    The chain head (last sequence and hash) lives in its own row, locked for
    the remainder of the caller's transaction, so concurrent appends never
    fork the chain.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_log",
                 chain_table: str = "audit_chain"):
        self.storage = storage
        self.table_name = table_name
        self.chain_table = chain_table

    def append(
        self,
        actor_id: Optional[str],
        action: AuditAction,
        entity: str,
        entity_id: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """
        Append an audit entry with hash chaining

        Args:
            actor_id: User who initiated the action
            action: CREATE, UPDATE or DELETE
            entity: Entity name ("Loan", "Payment")
            entity_id: ID of the entity
            old_value: State before the mutation
            new_value: State after the mutation

        Returns:
            Created AuditEntry
        """
        with self.storage.atomic():
            head = self.storage.load_for_update(self.chain_table, self.HEAD_ID) or {
                'sequence': 0, 'last_hash': ""
            }

            now = datetime.now(timezone.utc)
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head['sequence'] + 1,
                action=action,
                entity=entity,
                entity_id=entity_id,
                previous_hash=head['last_hash'],
                current_hash="",  # Will be calculated below
                actor_id=actor_id,
                old_value=old_value,
                new_value=new_value
            )
            entry.current_hash = entry.calculate_hash()

            self.storage.save(self.table_name, entry.id, entry.to_dict())
            self.storage.save(self.chain_table, self.HEAD_ID, {
                'sequence': entry.sequence,
                'last_hash': entry.current_hash
            })

            return entry

    def get_entries_for_entity(
        self,
        entity: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEntry]:
        """
        Get all audit entries for a specific entity, oldest first

        Args:
            entity: Entity name
            entity_id: ID of entity
            limit: Keep only the most recent N entries
        """
        entries = [
            AuditEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {'entity': entity, 'entity_id': entity_id})
        ]
        entries.sort(key=lambda x: x.sequence)
        return latest(entries, limit)

    def get_all_entries(self, limit: Optional[int] = None) -> List[AuditEntry]:
        """All entries in chain order"""
        entries = [AuditEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda x: x.sequence)
        return latest(entries, limit)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self.get_all_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries, start=1):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'sequence': entry.sequence,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash or entry.sequence != position:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'sequence': entry.sequence,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result

    def count_entries(self) -> int:
        """Get total number of audit entries"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit entry"""
        head = self.storage.load(self.chain_table, self.HEAD_ID)
        return head['last_hash'] if head else None
