"""
Storage Backend Module

Provides abstract document storage interface and implementations for in-memory
(testing) and SQLite (persistence). Every document carries an integer
``version`` used for optimistic concurrency: writers read a version and commit
only if nobody else has written since.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import copy
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import DependencyError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record unconditionally"""
        pass

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        """
        Write a record only if its stored version matches.

        Args:
            table: Table name
            record_id: Record ID
            data: Full document to store; its ``version`` field is persisted
            expected_version: Version the writer read, or None to insert a new id

        Returns:
            True if the write happened, False on a version conflict
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
        """Find records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
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


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: float = 5.0):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self.lock_timeout = lock_timeout
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    @contextmanager
    def _locked(self):
        """Acquire the store lock within the write timeout"""
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise DependencyError(
                "Timed out waiting for in-memory store lock",
                {"timeout_seconds": self.lock_timeout}
            )
        try:
            yield
        finally:
            self._lock.release()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Round-trip through JSON so callers never share references with the store
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._locked():
            self._table(table)[record_id] = self._copy(data)

    def compare_and_swap(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        with self._locked():
            rows = self._table(table)
            current = rows.get(record_id)
            if expected_version is None:
                if current is not None:
                    return False
            elif current is None or current.get('version', 0) != expected_version:
                return False
            rows[record_id] = self._copy(data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._locked():
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._locked():
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._locked():
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._locked():
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._locked():
            return [
                self._copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._locked():
            return len(self._table(table))

    def begin_transaction(self) -> None:
        # Lock is held until commit/rollback; a snapshot backs rollback
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise DependencyError(
                "Timed out waiting for in-memory store lock",
                {"timeout_seconds": self.lock_timeout}
            )
        self._depth += 1
        if self._depth == 1:
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        # Nested rollback discards the whole outer transaction
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._depth -= 1
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        try:
            self._connection = sqlite3.connect(
                self.db_path, timeout=timeout,
                check_same_thread=False, isolation_level='DEFERRED'
            )
        except sqlite3.Error as e:
            raise DependencyError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._depth = 0
        self._known_tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._guard("configure"):
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _guard(self, operation: str):
        """Serialize access and surface driver failures as DependencyError"""
        if not self._lock.acquire(timeout=self.timeout):
            raise DependencyError(
                f"Timed out waiting for SQLite lock during {operation}",
                {"timeout_seconds": self.timeout}
            )
        try:
            yield
        except sqlite3.Error as e:
            raise DependencyError(f"SQLite {operation} failed: {e}") from e
        finally:
            self._lock.release()

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
        if not self._in_transaction:
            self._connection.commit()
        self._known_tables.add(table)

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard("save"):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    version = excluded.version,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), data.get('version', 0), now, now))
            self._commit_unless_in_transaction()

    def compare_and_swap(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        with self._guard("compare_and_swap"):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            new_version = data.get('version', 0)

            if expected_version is None:
                cursor = self._connection.execute(f"""
                    INSERT OR IGNORE INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, data_json, new_version, now, now))
            else:
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (data_json, new_version, now, record_id, expected_version))

            self._commit_unless_in_transaction()
            return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard("load"):
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard("load_all"):
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._guard("delete"):
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._guard("exists"):
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._guard("count"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        # Held until commit/rollback so other threads cannot commit our statements
        if not self._lock.acquire(timeout=self.timeout):
            raise DependencyError(
                "Timed out waiting for SQLite lock during begin_transaction",
                {"timeout_seconds": self.timeout}
            )
        self._depth += 1
        if self._depth == 1:
            self._in_transaction = True

    def commit(self) -> None:
        # A failed commit leaves depth and lock held; atomic() unwinds them via rollback
        with self._guard("commit"):
            if self._depth == 1 and self._in_transaction:
                self._connection.commit()
                self._in_transaction = False
        self._depth -= 1
        self._lock.release()

    def rollback(self) -> None:
        # Nested rollback discards the whole outer transaction
        try:
            with self._guard("rollback"):
                if self._in_transaction:
                    self._connection.rollback()
                    self._in_transaction = False
                # Tables created inside the transaction are gone too
                self._known_tables.clear()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` selects InMemoryStorage; ``sqlite:///path/to.db`` (or
    ``sqlite://`` for an in-process database) selects SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
