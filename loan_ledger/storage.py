"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL. All monetary values stored as Decimal strings.

Besides plain document storage every backend offers the three primitives the
ledger's invariants rest on:

* ``atomic()`` - a nestable transaction; everything written inside commits or
  rolls back together.
* ``load_for_update()`` - read a row and hold its lock until the enclosing
  transaction ends, serializing writers of the same loan.
* ``increment_counter()`` - atomic increment-and-return on a
  ``sequence_counters(prefix, bucket, value)`` row.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, asdict, field
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyConflict, StorageUnavailable


logger = logging.getLogger("loan_ledger.storage")

COUNTERS_TABLE = "sequence_counters"


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy to prevent external mutation
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record and lock it until the current transaction ends"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def increment_counter(self, prefix: str, bucket: str) -> int:
        """Atomically increment the (prefix, bucket) counter and return the new value"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """True when the calling thread has an open transaction"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's transaction"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Nested blocks join the outermost transaction, which alone commits.
        """
        if self.in_transaction():
            yield
            return

        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


@dataclass
class _MemoryTransaction:
    """Write buffer and held row locks of one thread's transaction"""
    writes: Dict[Tuple[str, str], Dict[str, Any]] = field(default_factory=dict)
    held_locks: Dict[Tuple[str, str], threading.Lock] = field(default_factory=dict)


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation

    Transactions buffer their writes per thread and publish them on commit.
    Row locks taken by ``load_for_update`` are released on commit or rollback.
    Counter increments are published immediately and survive rollback, so a
    failed operation can leave a gap but never a duplicate.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._counters: Dict[Tuple[str, str], int] = {}
        self._row_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._lock = threading.RLock()
        self._local = threading.local()
        self.lock_timeout = lock_timeout

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _current(self) -> Optional[_MemoryTransaction]:
        return getattr(self._local, 'transaction', None)

    def _visible_rows(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with the calling thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])
        transaction = self._current()
        if transaction:
            for (write_table, record_id), data in transaction.writes.items():
                if write_table == table:
                    rows[record_id] = data
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        transaction = self._current()
        if transaction is not None:
            transaction.writes[(table, record_id)] = _copy(data)
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._visible_rows(table).get(record_id)
        if record:
            return _copy(record)
        return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Lock the row for the rest of the transaction, then load it"""
        transaction = self._current()
        if transaction is None:
            raise RuntimeError("load_for_update requires an active transaction")

        key = (table, record_id)
        if key not in transaction.held_locks:
            with self._lock:
                row_lock = self._row_locks.setdefault(key, threading.Lock())
            if not row_lock.acquire(timeout=self.lock_timeout):
                raise ConcurrencyConflict(
                    f"Timed out waiting for lock on {table}/{record_id}",
                    table=table, record_id=record_id
                )
            transaction.held_locks[key] = row_lock

        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._visible_rows(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._visible_rows(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._visible_rows(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._visible_rows(table))

    def increment_counter(self, prefix: str, bucket: str) -> int:
        """Atomic increment, published immediately"""
        with self._lock:
            value = self._counters.get((prefix, bucket), 0) + 1
            self._counters[(prefix, bucket)] = value
            return value

    def get_counter(self, prefix: str, bucket: str) -> int:
        """Current counter value (0 when never allocated)"""
        with self._lock:
            return self._counters.get((prefix, bucket), 0)

    def in_transaction(self) -> bool:
        return self._current() is not None

    def begin_transaction(self) -> None:
        """Start a transaction"""
        if self._current() is None:
            self._local.transaction = _MemoryTransaction()

    def commit(self) -> None:
        """Publish buffered writes"""
        transaction = self._current()
        if transaction is None:
            return
        try:
            with self._lock:
                for (table, record_id), data in transaction.writes.items():
                    self._ensure_table(table)
                    self._data[table][record_id] = data
        finally:
            self._end(transaction)

    def rollback(self) -> None:
        """Discard buffered writes"""
        transaction = self._current()
        if transaction is not None:
            self._end(transaction)

    def _end(self, transaction: _MemoryTransaction) -> None:
        self._local.transaction = None
        for row_lock in transaction.held_locks.values():
            row_lock.release()
        transaction.held_locks.clear()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class _SerializedSQLStorage(StorageInterface):
    """
    Transaction bookkeeping shared by the SQL backends

    One connection is shared by all threads. A transaction holds the
    connection lock from begin to commit/rollback, so transactions inside a
    process are serialized; the database's own locking (``BEGIN IMMEDIATE``,
    ``SELECT ... FOR UPDATE``) covers other processes.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self._lock = threading.RLock()
        self._owner: Optional[int] = None
        self._known_tables: set = set()
        self.lock_timeout = lock_timeout

    def in_transaction(self) -> bool:
        return self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        if self.in_transaction():
            return
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflict("Timed out waiting for the storage write lock")
        try:
            self._begin()
        except BaseException:
            self._lock.release()
            raise
        self._owner = threading.get_ident()

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction():
            return
        try:
            self._commit()
        except BaseException:
            self._safe_rollback()
            raise
        finally:
            self._owner = None
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self.in_transaction():
            return
        try:
            self._safe_rollback()
        finally:
            self._owner = None
            self._lock.release()

    def _safe_rollback(self) -> None:
        # Tables created inside the transaction are gone again
        self._known_tables.clear()
        try:
            self._rollback()
        except Exception as e:
            logger.error(f"Rollback failed: {e}")

    @abstractmethod
    def _begin(self) -> None:
        pass

    @abstractmethod
    def _commit(self) -> None:
        pass

    @abstractmethod
    def _rollback(self) -> None:
        pass


class SQLiteStorage(_SerializedSQLStorage):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0,
                 lock_timeout: float = 5.0):
        super().__init__(lock_timeout=lock_timeout)
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {COUNTERS_TABLE} (
                    prefix TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    value INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (prefix, bucket)
                )
            """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._known_tables.add(table)

    def _begin(self) -> None:
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise StorageUnavailable(f"Could not start SQLite transaction: {e}")

    def _commit(self) -> None:
        try:
            self._connection.execute("COMMIT")
        except sqlite3.OperationalError as e:
            raise StorageUnavailable(f"Could not commit SQLite transaction: {e}")

    def _rollback(self) -> None:
        self._connection.execute("ROLLBACK")

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """BEGIN IMMEDIATE already holds the database write lock"""
        if not self.in_transaction():
            raise RuntimeError("load_for_update requires an active transaction")
        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def increment_counter(self, prefix: str, bucket: str) -> int:
        """Increment inside the current transaction, or in a short one of its own"""
        with self._lock:
            if self.in_transaction():
                return self._increment(prefix, bucket)
            self._connection.execute("BEGIN IMMEDIATE")
            try:
                value = self._increment(prefix, bucket)
                self._connection.execute("COMMIT")
                return value
            except BaseException:
                self._connection.execute("ROLLBACK")
                raise

    def _increment(self, prefix: str, bucket: str) -> int:
        now = datetime.now(timezone.utc).isoformat()
        self._connection.execute(f"""
            INSERT OR IGNORE INTO {COUNTERS_TABLE} (prefix, bucket, value, updated_at)
            VALUES (?, ?, 0, ?)
        """, (prefix, bucket, now))
        self._connection.execute(f"""
            UPDATE {COUNTERS_TABLE} SET value = value + 1, updated_at = ?
            WHERE prefix = ? AND bucket = ?
        """, (now, prefix, bucket))
        cursor = self._connection.execute(f"""
            SELECT value FROM {COUNTERS_TABLE} WHERE prefix = ? AND bucket = ?
        """, (prefix, bucket))
        return cursor.fetchone()['value']

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(_SerializedSQLStorage):
    """PostgreSQL storage backend with row-level locking"""

    def __init__(self, connection_string: str, lock_timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        super().__init__(lock_timeout=lock_timeout)
        self.connection_string = connection_string
        self._connection = self.psycopg2.connect(
            self.connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._connection.autocommit = False  # We handle transactions manually

        with self._lock:
            self._run(f"""
                CREATE TABLE IF NOT EXISTS {COUNTERS_TABLE} (
                    prefix TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    value BIGINT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (prefix, bucket)
                )
            """)

    def _run(self, sql: str, params: tuple = (), fetch: Optional[str] = None):
        """Execute one statement, committing unless a transaction is open"""
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            if fetch == "one":
                result = cursor.fetchone()
            elif fetch == "all":
                result = cursor.fetchall()
            else:
                result = cursor.rowcount
            if not self.in_transaction():
                self._connection.commit()
            return result
        except self.psycopg2.OperationalError as e:
            if not self.in_transaction():
                self._connection.rollback()
            raise StorageUnavailable(f"PostgreSQL unavailable: {e}")
        except Exception:
            if not self.in_transaction():
                self._connection.rollback()
            raise
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        self._run(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        self._run(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._known_tables.add(table)

    def _begin(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        pass

    def _commit(self) -> None:
        try:
            self._connection.commit()
        except self.psycopg2.OperationalError as e:
            raise StorageUnavailable(f"Could not commit PostgreSQL transaction: {e}")

    def _rollback(self) -> None:
        self._connection.rollback()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            self._run(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT data FROM {table} WHERE id = %s", (record_id,), fetch="one")
            return dict(row['data']) if row else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """SELECT ... FOR UPDATE inside the current transaction"""
        if not self.in_transaction():
            raise RuntimeError("load_for_update requires an active transaction")
        with self._lock:
            self._ensure_table(table)
            row = self._run(
                f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,), fetch="one"
            )
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            rows = self._run(f"SELECT data FROM {table} ORDER BY created_at", fetch="all")
            return [dict(row['data']) for row in rows]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT 1 AS found FROM {table} WHERE id = %s LIMIT 1", (record_id,), fetch="one")
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        if not filters:
            return self.load_all(table)
        with self._lock:
            self._ensure_table(table)
            rows = self._run(
                f"SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY created_at",
                (json.dumps(filters, default=str),), fetch="all"
            )
            return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT COUNT(*) AS count FROM {table}", fetch="one")
            return row['count']

    def increment_counter(self, prefix: str, bucket: str) -> int:
        """Single-statement UPSERT increment"""
        with self._lock:
            row = self._run(f"""
                INSERT INTO {COUNTERS_TABLE} (prefix, bucket, value, updated_at)
                VALUES (%s, %s, 1, NOW())
                ON CONFLICT (prefix, bucket) DO UPDATE SET
                    value = {COUNTERS_TABLE}.value + 1,
                    updated_at = NOW()
                RETURNING value
            """, (prefix, bucket), fetch="one")
            return row['value']

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0, lock_timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:``, ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:", timeout=timeout, lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
