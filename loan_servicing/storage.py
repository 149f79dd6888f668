"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Loan-scoped concurrency is enforced here rather than in the services: every
record carries a ``version`` and ``save_versioned`` performs a compare-and-set
against the stored value, so separate service instances sharing one database
contend correctly.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, TypeVar, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import threading
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyConflictError, PersistenceFailureError


logger = logging.getLogger("loan_servicing.storage")

T = TypeVar("T")


def to_storage_value(value: Any) -> Any:
    """Convert a Python value to its JSON-safe stored form"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: to_storage_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [to_storage_value(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: to_storage_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _check_version(table: str, record_id: str,
                   current: Optional[Dict[str, Any]],
                   expected_version: Optional[int]) -> None:
    """Raise ConcurrencyConflictError unless the stored version matches"""
    if expected_version is None:
        if current is not None:
            raise ConcurrencyConflictError(
                f"{table}/{record_id} already exists", table, record_id
            )
        return

    if current is None:
        raise ConcurrencyConflictError(
            f"{table}/{record_id} does not exist (expected version {expected_version})",
            table, record_id
        )

    current_version = current.get('version', 0)
    if current_version != expected_version:
        raise ConcurrencyConflictError(
            f"{table}/{record_id} is at version {current_version}, expected {expected_version}",
            table, record_id
        )


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage (unconditional upsert)"""
        pass

    @abstractmethod
    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: Optional[int]) -> int:
        """
        Compare-and-set write.

        ``expected_version=None`` inserts and fails if the record exists;
        otherwise the stored version must equal ``expected_version``.
        Returns the new version. Raises ConcurrencyConflictError on mismatch.
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
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
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Transactions hold the storage lock and snapshot all tables on entry so
    that a rollback restores the exact pre-transaction state.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._depth = 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(record: Any) -> Any:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: Optional[int]) -> int:
        """Compare-and-set write against the in-memory record"""
        with self._lock:
            self._ensure_table(table)
            _check_version(table, record_id, self._data[table].get(record_id), expected_version)

            new_version = 1 if expected_version is None else expected_version + 1
            record = self._copy(data)
            record['version'] = new_version
            self._data[table][record_id] = record
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Acquire the storage lock and snapshot state for rollback"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = self._copy(self._data)
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot taken when the outermost transaction began"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            # Set isolation_level to 'DEFERRED' to enable manual transaction control
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
        except sqlite3.Error as e:
            raise PersistenceFailureError(f"Cannot open database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def _guard(self, operation: str):
        """Map driver errors to PersistenceFailureError"""
        try:
            yield
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error(f"SQLite {operation} failed: {e}")
            raise PersistenceFailureError(f"Storage {operation} failed: {e}") from e

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def _release_failed_write(self) -> None:
        # A rejected CAS outside atomic() must not leave the write lock held
        if not self._in_transaction:
            self._connection.rollback()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._maybe_commit()
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._guard("save"):
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, data.get('version', 0), record_id, now, now))
            self._maybe_commit()

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: Optional[int]) -> int:
        """Compare-and-set write using conditional SQL"""
        with self._lock, self._guard("versioned save"):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()

            if expected_version is None:
                new_version = 1
                record = dict(data, version=new_version)
                try:
                    self._connection.execute(f"""
                        INSERT INTO {table} (id, data, version, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                    """, (record_id, json.dumps(record, default=str), new_version, now, now))
                except sqlite3.IntegrityError as e:
                    self._release_failed_write()
                    raise ConcurrencyConflictError(
                        f"{table}/{record_id} already exists", table, record_id
                    ) from e
            else:
                new_version = expected_version + 1
                record = dict(data, version=new_version)
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (json.dumps(record, default=str), new_version, now,
                      record_id, expected_version))
                if cursor.rowcount == 0:
                    self._release_failed_write()
                    raise ConcurrencyConflictError(
                        f"{table}/{record_id} changed since version {expected_version}",
                        table, record_id
                    )

            self._maybe_commit()
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._guard("load"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._guard("load_all"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._guard("delete"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._guard("exists"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON field extraction"""
        with self._lock, self._guard("find"):
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) IS ?")
                params.extend([f"$.{key}", value])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._guard("count"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._guard("clear_table"):
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        self._lock.acquire()
        # SQLite with isolation_level='DEFERRED' automatically starts transactions
        # on the first write; we only track nesting here
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            if self._depth == 1:
                try:
                    with self._guard("commit"):
                        self._connection.commit()
                except PersistenceFailureError:
                    # Drop the pending writes so a later autocommit cannot publish them
                    self._connection.rollback()
                    self._known_tables.clear()
                    raise
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            if self._depth == 1:
                self._connection.rollback()
                # Tables created inside the transaction are gone too
                self._known_tables.clear()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage; ``sqlite:///path/to.db`` or
    ``sqlite://:memory:`` gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    if database_url.startswith("sqlite://"):
        return SQLiteStorage(database_url[len("sqlite://"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")


def retry_on_conflict(operation: Callable[[], T], max_retries: int, description: str) -> T:
    """
    Run a transactional operation, re-running it after version conflicts.

    The operation must open its own ``atomic()`` block and reload whatever it
    reads, so each attempt starts from the committed state. After
    ``max_retries`` re-runs the last conflict is surfaced to the caller.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except ConcurrencyConflictError as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(f"{description}: giving up after {attempt} conflicting attempts")
                raise ConcurrencyConflictError(
                    f"{description} conflicted {attempt} times: {e}", e.table, e.record_id
                ) from e
            logger.warning(f"{description}: version conflict ({e}), retry {attempt} of {max_retries}")
