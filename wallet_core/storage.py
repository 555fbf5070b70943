"""
Storage Backend Module

Abstract document store plus in-memory (testing) and SQLite (persistence)
backends. Every table is keyed by the record's business identifier; all
monetary values are stored as Decimal strings.

A unit of work opened with ``atomic()`` is held by one thread at a time and
is rolled back in full (records and counters) when the block raises.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import dataclasses
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager

from .currency import Money
from .errors import DependencyUnavailable, DuplicateIdentifier


def encode_value(value: Any) -> Any:
    """Convert a domain value into its JSON-safe stored form"""
    # currency lives once on the owning record
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value):
        return {f.name: encode_value(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def elapsed_display(start: datetime, end: Optional[datetime]) -> Optional[str]:
    """'2h 5m' or '5m' between two timestamps; None without an end"""
    if end is None:
        return None
    minutes = int((end - start).total_seconds() // 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def newest_first(
    records: List[Any],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: Optional[int] = None
) -> List[Any]:
    """Filter records by an inclusive created_at range and sort newest first"""
    if start_date:
        records = [r for r in records if r.created_at >= as_utc(start_date)]
    if end_date:
        records = [r for r in records if r.created_at <= as_utc(end_date)]
    records = sorted(records, key=lambda r: r.created_at, reverse=True)
    if limit:
        records = records[:limit]
    return records


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: encode_value(getattr(self, f.name)) for f in dataclasses.fields(self)}

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or datetime.now(timezone.utc)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or overwrite a record"""
        pass

    @abstractmethod
    def insert(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        unique_fields: Iterable[str] = ()
    ) -> None:
        """
        Insert a record only if its id, and each of unique_fields, is unused

        Raises:
            DuplicateIdentifier: If the id or a unique field value is taken
        """
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
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def increment_counter(self, name: str) -> int:
        """Atomically increment a named counter and return the new value"""
        pass

    @abstractmethod
    def get_counter(self, name: str) -> Optional[int]:
        """Current counter value, or None if it was never set"""
        pass

    @abstractmethod
    def set_counter(self, name: str, value: int) -> None:
        """Initialize or overwrite a named counter"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Open a unit of work, or a savepoint inside the current one"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the innermost open unit"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard every write made since the innermost begin"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._counters: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._snapshots: List[str] = []
        self._closed = False

    @staticmethod
    def _copy(data: Any) -> Any:
        # JSON round-trip is a deep copy that also rejects unstorable values
        return json.loads(json.dumps(data, default=str))

    def _check_open(self) -> None:
        if self._closed:
            raise DependencyUnavailable("In-memory storage is closed")

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._check_open()
            self._ensure_table(table)[record_id] = self._copy(data)

    def insert(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        unique_fields: Iterable[str] = ()
    ) -> None:
        with self._lock:
            self._check_open()
            rows = self._ensure_table(table)
            if record_id in rows:
                raise DuplicateIdentifier(table, "id", record_id)
            for field_name in unique_fields:
                value = data.get(field_name)
                for row in rows.values():
                    if row.get(field_name) == value:
                        raise DuplicateIdentifier(table, field_name, str(value))
            rows[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._check_open()
            record = self._ensure_table(table).get(record_id)
            if record is not None:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._check_open()
            return [self._copy(record) for record in self._ensure_table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._check_open()
            rows = self._ensure_table(table)
            if record_id in rows:
                del rows[record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._check_open()
            return record_id in self._ensure_table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._check_open()
            results = []
            for record in self._ensure_table(table).values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._check_open()
            return len(self._ensure_table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._check_open()
            self._data[table] = {}

    def increment_counter(self, name: str) -> int:
        with self._lock:
            self._check_open()
            self._counters[name] = self._counters.get(name, 0) + 1
            return self._counters[name]

    def get_counter(self, name: str) -> Optional[int]:
        with self._lock:
            self._check_open()
            return self._counters.get(name)

    def set_counter(self, name: str, value: int) -> None:
        with self._lock:
            self._check_open()
            self._counters[name] = value

    def begin_transaction(self) -> None:
        # The lock stays held until the matching commit/rollback
        self._lock.acquire()
        try:
            self._check_open()
            self._snapshots.append(json.dumps({"data": self._data, "counters": self._counters}))
        except BaseException:
            self._lock.release()
            raise

    def commit(self) -> None:
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        snapshot = json.loads(self._snapshots.pop())
        self._data = snapshot["data"]
        self._counters = snapshot["counters"]
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return self._copy(self._data)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    COUNTERS_TABLE = "_counters"

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; units of work are opened explicitly with BEGIN/SAVEPOINT
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        with self._lock:
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.COUNTERS_TABLE} (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

    @contextmanager
    def _guard(self):
        """Translate driver failures into DependencyUnavailable"""
        if self._connection is None:
            raise DependencyUnavailable(f"SQLite storage {self.db_path} is closed")
        try:
            yield self._connection
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise DependencyUnavailable(f"SQLite storage {self.db_path} unavailable: {e}") from e

    def _ensure_table(self, conn: sqlite3.Connection, table: str) -> None:
        if table in self._tables:
            return
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            now = datetime.now(timezone.utc).isoformat()
            conn.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        unique_fields: Iterable[str] = ()
    ) -> None:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            for field_name in unique_fields:
                value = data.get(field_name)
                if self.find(table, {field_name: value}):
                    raise DuplicateIdentifier(table, field_name, str(value))
            now = datetime.now(timezone.utc).isoformat()
            try:
                conn.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateIdentifier(table, "id", record_id) from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            row = conn.execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"SELECT data FROM {table} ORDER BY rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            row = conn.execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    def count(self, table: str) -> int:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            return conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock, self._guard() as conn:
            self._ensure_table(conn, table)
            conn.execute(f"DELETE FROM {table}")

    def increment_counter(self, name: str) -> int:
        with self._lock, self._guard() as conn:
            conn.execute(f"""
                INSERT INTO {self.COUNTERS_TABLE} (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (name,))
            row = conn.execute(
                f"SELECT value FROM {self.COUNTERS_TABLE} WHERE name = ?", (name,)
            ).fetchone()
            return row['value']

    def get_counter(self, name: str) -> Optional[int]:
        with self._lock, self._guard() as conn:
            row = conn.execute(
                f"SELECT value FROM {self.COUNTERS_TABLE} WHERE name = ?", (name,)
            ).fetchone()
            return row['value'] if row else None

    def set_counter(self, name: str, value: int) -> None:
        with self._lock, self._guard() as conn:
            conn.execute(f"""
                INSERT INTO {self.COUNTERS_TABLE} (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value
            """, (name, value))

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            with self._guard() as conn:
                if self._depth == 0:
                    conn.execute("BEGIN IMMEDIATE")
                else:
                    conn.execute(f"SAVEPOINT sp_{self._depth}")
            self._depth += 1
        except BaseException:
            self._lock.release()
            raise

    def commit(self) -> None:
        try:
            with self._guard() as conn:
                if self._depth == 1:
                    conn.execute("COMMIT")
                else:
                    conn.execute(f"RELEASE SAVEPOINT sp_{self._depth - 1}")
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        try:
            with self._guard() as conn:
                if self._depth == 1:
                    conn.execute("ROLLBACK")
                    # DDL inside the unit was rolled back too
                    self._tables.clear()
                else:
                    conn.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth - 1}")
                    conn.execute(f"RELEASE SAVEPOINT sp_{self._depth - 1}")
                    self._tables.clear()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a backend from a URL: ``memory://`` or ``sqlite:///path/to.db``
    (``sqlite://`` alone opens an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database_url: {database_url}")
