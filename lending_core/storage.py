"""
Storage Backend Module

Provides the document store interface, in-memory (testing) and SQLite
(persistence) implementations, and the optimistic transaction used by every
mutating operation. All monetary values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .config import get_config
from .errors import IndexUnavailableError, TransactionConflict, TransactionTooLarge
from .logging_config import get_logger, log_action
from .money import money_str, to_decimal


logger = get_logger("lending.storage")

# (table, record_id)
DocKey = Tuple[str, str]
# (field, operator, value)
Condition = Tuple[str, str, Any]

T = TypeVar("T")

RANGE_OPERATORS = {">", ">=", "<", "<="}


def _serialize(value: Any) -> Any:
    """Convert dataclass field values into JSON-safe storage values"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value


def _copy(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Deep copy to prevent external mutation
    if data is None:
        return None
    return json.loads(json.dumps(data, default=str))


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: _serialize(value) for key, value in asdict(self).items()}

    @staticmethod
    def _timestamps(data: Dict[str, Any]) -> Dict[str, datetime]:
        """Parse created_at/updated_at written by to_dict"""
        now = datetime.now(timezone.utc)
        result = {}
        for key in ('created_at', 'updated_at'):
            value = data.get(key)
            result[key] = datetime.fromisoformat(value) if isinstance(value, str) else (value or now)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load_versioned(self, table: str, record_id: str) -> Tuple[Optional[Dict[str, Any]], int]:
        """Load a record together with its version (0 when never written)"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def query_versioned(self, table: str, conditions: Optional[List[Condition]] = None,
                        order_by: Optional[str] = None,
                        start_after: Optional[Dict[str, Any]] = None,
                        limit: Optional[int] = None) -> List[Tuple[str, Dict[str, Any], int]]:
        """Ordered, filtered page of (record_id, record, version)"""
        pass

    @abstractmethod
    def commit_writes(self, read_versions: Dict[DocKey, int],
                      writes: Dict[DocKey, Optional[Dict[str, Any]]]) -> None:
        """
        Apply a buffered write set atomically.

        Raises TransactionConflict without writing anything when any document
        in read_versions no longer has the version the transaction observed.
        A None value in writes deletes the document.
        """
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        return self.load_versioned(table, record_id)[0]

    def version(self, table: str, record_id: str) -> int:
        """Current version of a document"""
        return self.load_versioned(table, record_id)[1]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching equality filters"""
        return self.query(table, [(key, "==", value) for key, value in filters.items()])

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.load_all(table))

    def query(self, table: str, conditions: Optional[List[Condition]] = None,
              order_by: Optional[str] = None, start_after: Optional[Dict[str, Any]] = None,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Ordered, filtered page of records"""
        return [doc for _, doc, _ in self.query_versioned(table, conditions, order_by, start_after, limit)]

    @contextmanager
    def atomic(self, max_operations: Optional[int] = None):
        """
        Context manager for atomic operations.

        Yields a Transaction whose buffered writes are committed when the
        block exits normally; an exception discards them.
        """
        tx = Transaction(self, max_operations)
        yield tx
        tx.commit()

    def run_transaction(self, fn: Callable[['Transaction'], T],
                        max_attempts: Optional[int] = None,
                        max_operations: Optional[int] = None) -> T:
        """
        Run fn(tx) inside a transaction, retrying on conflicting writes.

        fn is re-executed from scratch with a fresh transaction on every
        attempt, so it must read everything it needs through tx.
        """
        cfg = get_config()
        attempts = max_attempts or cfg.transaction_max_attempts
        limit = max_operations or cfg.transaction_max_operations

        for attempt in range(1, attempts + 1):
            try:
                with self.atomic(limit) as tx:
                    result = fn(tx)
                return result
            except TransactionConflict as e:
                if attempt >= attempts:
                    log_action(logger, "error", "Transaction retries exhausted",
                               action="transaction_abort",
                               extra={"attempts": attempt, "reason": str(e)})
                    raise
                log_action(logger, "warning", "Transaction conflict, retrying",
                           action="transaction_retry",
                           extra={"attempt": attempt, "reason": str(e)})
        raise TransactionConflict("transaction was not attempted")

    # Shared query evaluation

    @staticmethod
    def _compare(stored: Any, operator: str, value: Any) -> bool:
        if isinstance(value, (Decimal, int, float)) and not isinstance(value, bool):
            if stored is None or isinstance(stored, bool):
                return False
            try:
                stored = to_decimal(stored)
            except ValueError:
                return False
            value = to_decimal(value)
        if operator == "==":
            return stored == value
        if operator == "!=":
            return stored != value
        if stored is None:
            return False
        try:
            if operator == ">":
                return stored > value
            if operator == ">=":
                return stored >= value
            if operator == "<":
                return stored < value
            if operator == "<=":
                return stored <= value
        except TypeError:
            return False
        raise ValueError(f"Unsupported query operator: {operator}")

    @classmethod
    def _matches(cls, record: Dict[str, Any], conditions: Optional[List[Condition]]) -> bool:
        for field, operator, value in conditions or []:
            if not cls._compare(record.get(field), operator, value):
                return False
        return True

    @staticmethod
    def _sort_key(record_id: str, record: Dict[str, Any], order_by: Optional[str]) -> tuple:
        if not order_by:
            return (0, 0, record_id)
        value = record.get(order_by)
        if value is None:
            return (0, 0, record_id)
        return (1, value, record_id)

    @classmethod
    def _select(cls, rows: Iterable[Tuple[str, Dict[str, Any], int]],
                conditions: Optional[List[Condition]], order_by: Optional[str],
                start_after: Optional[Dict[str, Any]], limit: Optional[int]
                ) -> List[Tuple[str, Dict[str, Any], int]]:
        selected = [row for row in rows if cls._matches(row[1], conditions)]
        if order_by:
            selected.sort(key=lambda row: cls._sort_key(row[0], row[1], order_by))
        if start_after is not None:
            cursor = cls._sort_key(start_after.get('id', ''), start_after, order_by)
            selected = [row for row in selected
                        if cls._sort_key(row[0], row[1], order_by) > cursor]
        if limit is not None:
            selected = selected[:limit]
        return selected


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Tables listed in missing_indexes refuse queries that combine a range
    condition with an ordering, like a document store without the composite
    index deployed.
    """

    def __init__(self, missing_indexes: Optional[Set[str]] = None):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, Dict[str, int]] = {}
        self._lock = threading.RLock()
        self.missing_indexes = set(missing_indexes or ())

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
            self._versions[table] = {}

    def _bump(self, table: str, record_id: str) -> None:
        self._versions[table][record_id] = self._versions[table].get(record_id, 0) + 1

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)
            self._bump(table, record_id)

    def load_versioned(self, table: str, record_id: str) -> Tuple[Optional[Dict[str, Any]], int]:
        with self._lock:
            self._ensure_table(table)
            return _copy(self._data[table].get(record_id)), self._versions[table].get(record_id, 0)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                self._bump(table, record_id)
                return True
            return False

    def query_versioned(self, table, conditions=None, order_by=None, start_after=None, limit=None):
        with self._lock:
            self._ensure_table(table)
            if table in self.missing_indexes and order_by and any(
                    operator in RANGE_OPERATORS for _, operator, _ in conditions or []):
                raise IndexUnavailableError(f"Query on {table} requires an index")
            rows = [
                (record_id, _copy(record), self._versions[table].get(record_id, 0))
                for record_id, record in self._data[table].items()
            ]
            return self._select(rows, conditions, order_by, start_after, limit)

    def commit_writes(self, read_versions, writes) -> None:
        with self._lock:
            for (table, record_id), expected in read_versions.items():
                self._ensure_table(table)
                current = self._versions[table].get(record_id, 0)
                if current != expected:
                    raise TransactionConflict(
                        f"{table}/{record_id} changed (version {expected} -> {current})"
                    )
            for (table, record_id), data in writes.items():
                self._ensure_table(table)
                if data is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = _copy(data)
                self._bump(table, record_id)

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._bump(table, record_id)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; commit_writes issues BEGIN IMMEDIATE itself
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            # data is NULL for deleted documents so their version survives
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def _write(self, table: str, record_id: str, data: Optional[Dict[str, Any]]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str) if data is not None else None
        self._connection.execute(f"""
            INSERT INTO {table} (id, data, version, created_at, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                version = {table}.version + 1,
                updated_at = excluded.updated_at
        """, (record_id, data_json, now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            self._write(table, record_id, data)

    def load_versioned(self, table: str, record_id: str) -> Tuple[Optional[Dict[str, Any]], int]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"""
                SELECT data, version FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row is None:
                return None, 0
            return (json.loads(row['data']) if row['data'] is not None else None), row['version']

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE data IS NOT NULL ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            if not self.exists(table, record_id):
                return False
            self._write(table, record_id, None)
            return True

    def query_versioned(self, table, conditions=None, order_by=None, start_after=None, limit=None):
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT id, data, version FROM {table} WHERE data IS NOT NULL ORDER BY created_at
            """)
            rows = [(row['id'], json.loads(row['data']), row['version']) for row in cursor.fetchall()]
            return self._select(rows, conditions, order_by, start_after, limit)

    def commit_writes(self, read_versions, writes) -> None:
        with self._lock:
            for table, _ in list(read_versions) + list(writes):
                self._ensure_table(table)
            self._connection.execute("BEGIN IMMEDIATE")
            try:
                for (table, record_id), expected in read_versions.items():
                    row = self._connection.execute(
                        f"SELECT version FROM {table} WHERE id = ?", (record_id,)
                    ).fetchone()
                    current = row['version'] if row else 0
                    if current != expected:
                        raise TransactionConflict(
                            f"{table}/{record_id} changed (version {expected} -> {current})"
                        )
                for (table, record_id), data in writes.items():
                    self._write(table, record_id, data)
                self._connection.execute("COMMIT")
            except Exception:
                self._connection.execute("ROLLBACK")
                raise

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"""
                UPDATE {table} SET data = NULL, version = version + 1 WHERE data IS NOT NULL
            """)

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class Transaction:
    """
    Buffered read-modify-write unit over a StorageInterface.

    Reads record the version they observed; writes are buffered and applied
    by commit() only if none of the observed documents changed meanwhile.
    Reads see the transaction's own pending writes.
    """

    def __init__(self, storage: StorageInterface, max_operations: Optional[int] = None):
        self.storage = storage
        self.max_operations = max_operations
        self._reads: Dict[DocKey, int] = {}
        self._writes: Dict[DocKey, Optional[Dict[str, Any]]] = {}
        self.committed = False

    @property
    def operation_count(self) -> int:
        return len(self._writes)

    def _observe(self, key: DocKey, version: int) -> None:
        seen = self._reads.get(key)
        if seen is None:
            self._reads[key] = version
        elif seen != version:
            raise TransactionConflict(f"{key[0]}/{key[1]} changed during the transaction")

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        key = (table, record_id)
        if key in self._writes:
            return _copy(self._writes[key])
        data, version = self.storage.load_versioned(table, record_id)
        self._observe(key, version)
        return data

    def query(self, table: str, conditions: Optional[List[Condition]] = None,
              order_by: Optional[str] = None, start_after: Optional[Dict[str, Any]] = None,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = self.storage.query_versioned(table, conditions, order_by, start_after, limit)
        results = []
        for record_id, doc, version in rows:
            key = (table, record_id)
            self._observe(key, version)
            if key in self._writes:
                pending = self._writes[key]
                if pending is None or not self.storage._matches(pending, conditions):
                    continue
                doc = _copy(pending)
            results.append(doc)
        return results

    def _stage(self, table: str, record_id: str, data: Optional[Dict[str, Any]]) -> None:
        if self.committed:
            raise RuntimeError("Transaction already committed")
        key = (table, record_id)
        if (key not in self._writes and self.max_operations is not None
                and len(self._writes) >= self.max_operations):
            raise TransactionTooLarge(
                f"Transaction exceeds {self.max_operations} write operations"
            )
        self._writes[key] = _copy(data)

    def set(self, table: str, record_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Buffer a write; merge=True updates only the given fields"""
        if merge:
            current = self.get(table, record_id) or {}
            current.update(data)
            data = current
        self._stage(table, record_id, data)

    def increment(self, table: str, record_id: str, deltas: Dict[str, Any],
                  fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Add deltas to numeric fields of a document (created when missing).

        Integer deltas keep integer fields; everything else is money and is
        stored as a 2-place Decimal string.
        """
        doc = self.get(table, record_id) or {"id": record_id}
        for field, delta in deltas.items():
            if isinstance(delta, int) and not isinstance(delta, bool):
                doc[field] = int(doc.get(field) or 0) + delta
            else:
                doc[field] = money_str(to_decimal(doc.get(field)) + to_decimal(delta))
        if fields:
            doc.update(fields)
        self._stage(table, record_id, doc)
        return doc

    def delete(self, table: str, record_id: str) -> None:
        self.get(table, record_id)
        self._stage(table, record_id, None)

    def commit(self) -> None:
        if self.committed:
            return
        self.storage.commit_writes(self._reads, self._writes)
        self.committed = True


class StorageManager:
    """Manages storage backend selection and provides convenience methods"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    @classmethod
    def from_url(cls, database_url: Optional[str] = None) -> 'StorageManager':
        """Create a backend from memory:// or sqlite:///path URLs"""
        url = database_url or get_config().database_url
        if url in ("memory://", ""):
            return cls(InMemoryStorage())
        if url.startswith("sqlite://"):
            path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else ""
            return cls(SQLiteStorage(path or ":memory:"))
        raise ValueError(f"Unsupported database_url: {url}")

    def close(self) -> None:
        """Close storage backend"""
        self.storage.close()
