"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). Records are JSON documents; all monetary
values are stored as Decimal strings.

The atomic unit: ``with storage.atomic():`` is all-or-nothing and serializes
concurrent writers. Units nest; only the outermost one commits.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyConflict, DuplicateReference
from .logging_config import get_logger


logger = get_logger("wallet_ledger.storage")


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: Optional[int] = None
        self._rollback_only = False

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """
        Insert a new record.

        Raises:
            DuplicateReference: if ``record_id`` already exists in ``table``
        """

    @abstractmethod
    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> int:
        """
        Replace a record only if its stored ``version`` equals ``expected_version``.

        Returns:
            The new version (``expected_version + 1``)

        Raises:
            ConcurrencyConflict: if another writer changed the record first
        """

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching all filters, in insertion order"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    # Backend hooks for the outermost unit
    @abstractmethod
    def _begin(self) -> None:
        pass

    @abstractmethod
    def _commit(self) -> None:
        pass

    @abstractmethod
    def _rollback(self) -> None:
        pass

    @property
    def in_transaction(self) -> bool:
        """True when the calling thread is inside an atomic unit"""
        return self._depth > 0 and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Start (or join) an atomic unit; blocks while another thread holds one"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._begin()
            except Exception:
                self._lock.release()
                raise
            self._owner = threading.get_ident()
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit the current unit (only the outermost one writes)"""
        self._depth -= 1
        try:
            if self._depth == 0:
                self._owner = None
                if self._rollback_only:
                    self._rollback()
                    raise RuntimeError("Atomic unit aborted by a failed nested unit")
                try:
                    self._commit()
                except Exception:
                    self._rollback()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Abort the current unit; a nested abort dooms the outermost unit"""
        self._depth -= 1
        try:
            if self._depth == 0:
                self._owner = None
                self._rollback()
            else:
                self._rollback_only = True
        finally:
            self._lock.release()

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                raise DuplicateReference(f"{table} record {record_id} already exists",
                                         details={"table": table, "id": record_id})
            rows[record_id] = _copy(data)

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> int:
        with self._lock:
            rows = self._table(table)
            current = rows.get(record_id)
            if current is None or current.get("version", 0) != expected_version:
                raise ConcurrencyConflict(
                    f"{table} record {record_id} was modified concurrently",
                    details={"table": table, "id": record_id}
                )
            stored = _copy(data)
            stored["version"] = expected_version + 1
            rows[record_id] = stored
            return expected_version + 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""

    def _begin(self) -> None:
        self._snapshot = _copy(self._data)

    def _commit(self) -> None:
        self._snapshot = None

    def _rollback(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
        self._snapshot = None


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; units are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None,
            timeout=busy_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = FULL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
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
        self._known_tables.add(table)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise ConcurrencyConflict(f"Database is busy: {e}")
            raise

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    version = excluded.version,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), data.get("version", 0), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), data.get("version", 0), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateReference(f"{table} record {record_id} already exists",
                                         details={"table": table, "id": record_id})

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> int:
        with self._lock:
            self._ensure_table(table)
            stored = dict(data)
            stored["version"] = expected_version + 1
            cursor = self._execute(f"""
                UPDATE {table} SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (json.dumps(stored, default=str), expected_version + 1,
                  datetime.now(timezone.utc).isoformat(), record_id, expected_version))
            if cursor.rowcount != 1:
                raise ConcurrencyConflict(
                    f"{table} record {record_id} was modified concurrently",
                    details={"table": table, "id": record_id}
                )
            return expected_version + 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def _begin(self) -> None:
        # IMMEDIATE takes the write lock up front so writers in other processes serialize
        self._execute("BEGIN IMMEDIATE")

    def _commit(self) -> None:
        self._connection.execute("COMMIT")

    def _rollback(self) -> None:
        self._connection.execute("ROLLBACK")
        # DDL inside the unit was rolled back too
        self._known_tables.clear()


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported: ``memory://``, ``sqlite://:memory:``, ``sqlite:///relative.db``,
    ``sqlite:////absolute/path.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        path = path or ":memory:"
        logger.info(f"Using SQLite storage at {path}")
        return SQLiteStorage(path)
    raise ValueError(f"Unsupported database URL: {database_url}")
