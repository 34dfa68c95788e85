"""
Storage Backend Module

Provides the abstract storage interface the engine is written against, plus
in-memory (testing) and SQLite (persistence) implementations. Records are
JSON documents; all monetary values are stored as integer minor units.

Filters passed to find/count/sum are dicts of ``field`` or ``field__lookup``
keys, with lookups exact, lt, lte, gt, gte, in and isnull.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from datetime import datetime, date, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .logging_config import get_logger


logger = get_logger("ledger_engine.storage")

# Undo-log marker for a record that did not exist before the write
_MISSING = object()


def to_storage_datetime(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string (sortable as text)"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_storage_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Common fields in storage form; subclasses add their own"""
        return {
            'id': self.id,
            'created_at': to_storage_datetime(self.created_at),
            'updated_at': to_storage_datetime(self.updated_at),
        }

    @staticmethod
    def base_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'id': data['id'],
            'created_at': from_storage_datetime(data['created_at']),
            'updated_at': from_storage_datetime(data['updated_at']),
        }


def _filter_value(value: Any) -> Any:
    """Bring a filter operand into the same form as stored JSON values"""
    if isinstance(value, datetime):
        return to_storage_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_filter_value(v) for v in value]
    return value


def _lookup_exact(actual, expected) -> bool:
    return actual == expected


def _lookup_in(actual, expected) -> bool:
    return actual in expected


def _lookup_isnull(actual, expected) -> bool:
    return (actual is None) == bool(expected)


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def lookup(actual, expected) -> bool:
        if actual is None or expected is None:
            return False
        return compare(actual, expected)
    return lookup


LOOKUPS: Dict[str, Callable[[Any, Any], bool]] = {
    'exact': _lookup_exact,
    'in': _lookup_in,
    'isnull': _lookup_isnull,
    'lt': _ordered(lambda a, b: a < b),
    'lte': _ordered(lambda a, b: a <= b),
    'gt': _ordered(lambda a, b: a > b),
    'gte': _ordered(lambda a, b: a >= b),
}


def _split_filter_key(key: str):
    if '__' in key:
        field, lookup = key.rsplit('__', 1)
        if lookup in LOOKUPS:
            return field, lookup
    return key, 'exact'


def record_matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """Check a stored record against a filter dict"""
    if not filters:
        return True
    for key, value in filters.items():
        field, lookup = _split_filter_key(key)
        if lookup == 'exact' and field not in record:
            return False
        if not LOOKUPS[lookup](record.get(field), _filter_value(value)):
            return False
    return True


def sum_field(records: Iterable[Dict[str, Any]], field: str) -> int:
    """Integer sum of a field across records, ignoring nulls"""
    total = 0
    for record in records:
        value = record.get(field)
        if value is not None:
            total += int(value)
    return total


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Create or update a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Physically delete a record"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Find records matching filters, in insertion order"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records matching filters"""
        return len(self.find(table, filters))

    def sum(self, table: str, field: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Integer sum of a field over records matching filters"""
        return sum_field(self.find(table, filters), field)

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) an atomic unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the current unit; nested units commit with the outermost one"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the current unit"""
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Writes inside the block either all commit or none do. Nested blocks
        join the outermost unit.
        """
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes inside an atomic unit record the value they replace in an undo
    log; rollback replays it backwards. Stored records are never mutated in
    place, so the log keeps references rather than copies. The
    store lock is held for the duration of a unit, so other threads neither
    write nor read until it finishes.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: Optional[List[Tuple[str, Optional[str], Any, Optional[int]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(value):
        # JSON round trip: deep copy and serializability check in one
        return json.loads(json.dumps(value))

    def _remember(self, table: str, record_id: Optional[str] = None, position: Optional[int] = None) -> None:
        """Log the current value of a record (or a whole table) before it changes"""
        if self._undo is None:
            return
        if record_id is None:
            self._undo.append((table, None, self._data.get(table), None))
        else:
            self._undo.append((table, record_id, self._data[table].get(record_id, _MISSING), position))

    def _restore_at(self, table: str, record_id: str, record: Dict[str, Any], position: int) -> None:
        items = list(self._data[table].items())
        items.insert(position, (record_id, record))
        self._data[table] = dict(items)


    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                if self._undo is not None:
                    self._remember(table, record_id, list(self._data[table]).index(record_id))
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record)
                for record in self._data[table].values()
                if record_matches(record, filters)
            ]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._remember(table)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._undo = []
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            raise RuntimeError("commit() called outside a transaction")
        try:
            self._depth -= 1
            if self._depth == 0:
                self._undo = None
        finally:
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            raise RuntimeError("rollback() called outside a transaction")
        try:
            self._depth -= 1
            if self._depth == 0:
                for table, record_id, previous, position in reversed(self._undo):
                    if record_id is None:
                        if previous is None:
                            self._data.pop(table, None)
                        else:
                            self._data[table] = previous
                    elif previous is _MISSING:
                        self._data[table].pop(record_id, None)
                    elif position is None:
                        self._data[table][record_id] = previous
                    else:
                        self._restore_at(table, record_id, previous, position)
                self._undo = None
                logger.debug("In-memory transaction rolled back")
        finally:
            self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Atomic units run as ``BEGIN IMMEDIATE`` transactions: the database write
    lock is taken before anything is read, so a read-aggregate-then-write
    sequence inside a unit cannot interleave with another writer, including
    one in a different process sharing the file.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly by begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
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
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = to_storage_datetime(datetime.now(timezone.utc))
            # UPSERT keeps the rowid, and with it the insertion order
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON documents filtered in Python)"""
        return [record for record in self.load_all(table) if record_matches(record, filters)]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._connection.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            raise RuntimeError("commit() called outside a transaction")
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error:
                    self._connection.execute("ROLLBACK")
                    self._tables.clear()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            raise RuntimeError("rollback() called outside a transaction")
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
                # tables created inside the unit are gone again
                self._tables.clear()
                logger.debug("SQLite transaction rolled back")
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """Build the storage backend selected by a LedgerConfig"""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.sqlite_path)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
