"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL persistence. All monetary values stored as Decimal strings.

A unit of work is opened with ``storage.atomic()``. The storage's re-entrant
lock is held for the whole unit, so concurrent units serialize, and any
exception rolls every write in the unit back. Balance arithmetic goes through
``modify``/``increment``, a single read-modify-write performed by the backend
itself rather than by the caller.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import dataclasses
import json
import logging
import sqlite3
import threading
import typing
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager

from .exceptions import AlreadyExistsError, InadequateFundsError, StorageFailureError
from .money import Amount

logger = logging.getLogger(__name__)

Mutator = Callable[[Dict[str, Any]], Dict[str, Any]]


def _encode(value: Any) -> Any:
    if isinstance(value, Amount):
        return str(value.value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _decode(field_type: Any, value: Any) -> Any:
    if value is None:
        return None
    if typing.get_origin(field_type) is Union:
        # Optional[X]
        inner = [t for t in typing.get_args(field_type) if t is not type(None)]
        return _decode(inner[0], value) if len(inner) == 1 else value
    if field_type is Amount:
        return Amount.of(value)
    if field_type is Decimal:
        return Decimal(value)
    if field_type is datetime:
        return value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if field_type is date:
        return value if isinstance(value, date) else date.fromisoformat(value)
    if isinstance(field_type, type) and issubclass(field_type, Enum):
        try:
            return field_type(value)
        except ValueError:
            raise StorageFailureError(f"invalid {field_type.__name__} value in storage: {value!r}")
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _encode(getattr(self, f.name)) for f in dataclasses.fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, decoding amounts, dates and enums"""
        hints = typing.get_type_hints(cls)
        values = {}
        for f in dataclasses.fields(cls):
            if f.name in data:
                values[f.name] = _decode(hints.get(f.name), data[f.name])
        return cls(**values)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises AlreadyExistsError if the id is taken"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table, oldest first"""
        pass

    @abstractmethod
    def modify(self, table: str, record_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        """
        Atomically read a record, apply ``mutator`` and write the result.

        Returns the updated record, or None if the record does not exist.
        If the mutator raises, nothing is written.
        """
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

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for one unit of work.

        Nested calls join the outermost unit; only the outermost one commits
        or rolls back.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.begin_transaction()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.commit()

    def increment(
        self,
        table: str,
        record_id: str,
        field: str,
        delta: Decimal,
        floor: Optional[Decimal] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically add ``delta`` to a Decimal field.

        When ``floor`` is given and the new value would fall below it, raises
        InadequateFundsError and leaves the record untouched.
        """
        def apply(record: Dict[str, Any]) -> Dict[str, Any]:
            new_value = Decimal(record[field]) + delta
            if floor is not None and new_value < floor:
                raise InadequateFundsError(
                    f"{table} {record_id}: {field} {record[field]} cannot cover {-delta}"
                )
            record[field] = str(new_value)
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            return record
        return self.modify(table, record_id, apply)


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, refusing duplicates"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise AlreadyExistsError(f"{table} record {record_id} already exists")
            self._data[table][record_id] = self._copy(data)

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

    def modify(self, table: str, record_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        """Read-modify-write under the storage lock"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None:
                return None
            updated = mutator(self._copy(current))
            self._data[table][record_id] = self._copy(updated)
            return self._copy(updated)

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

    def begin_transaction(self) -> None:
        """Snapshot all tables so the unit can be undone"""
        self._snapshot = self._copy(self._data)

    def commit(self) -> None:
        """Drop the snapshot"""
        self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken when the unit began"""
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN IMMEDIATE/COMMIT/ROLLBACK explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _translate_errors(self):
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise AlreadyExistsError(str(e)) from e
        except sqlite3.Error as e:
            logger.error(f"SQLite storage failure: {e}")
            raise StorageFailureError(f"sqlite error: {e}") from e

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

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record; the primary key rejects duplicates"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._translate_errors():
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
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def modify(self, table: str, record_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        """Read-modify-write inside one write transaction"""
        with self.atomic(), self._translate_errors():
            self._ensure_table(table)
            row = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row is None:
                return None
            updated = mutator(json.loads(row['data']))
            self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
            """, (json.dumps(updated, default=str), datetime.now(timezone.utc).isoformat(), record_id))
            return updated

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock"""
        with self._translate_errors():
            self._connection.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        """Commit current transaction"""
        with self._translate_errors():
            self._connection.execute("COMMIT")

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._translate_errors():
            self._connection.execute("ROLLBACK")
        # Tables created inside the rolled-back unit no longer exist
        self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level locking for balance updates"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            try:
                self._connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor
                )
            except self.psycopg2.Error as e:
                raise StorageFailureError(f"opening database connection: {e}") from e
            self._connection.autocommit = False  # We handle transactions manually

    @contextmanager
    def _cursor(self):
        """Cursor that commits outside a unit of work and translates driver errors"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
                if not self.in_transaction:
                    self._connection.commit()
            except self.psycopg2.IntegrityError as e:
                if not self.in_transaction:
                    self._connection.rollback()
                raise AlreadyExistsError(str(e)) from e
            except self.psycopg2.Error as e:
                if not self.in_transaction:
                    self._connection.rollback()
                logger.error(f"PostgreSQL storage failure: {e}")
                raise StorageFailureError(f"database error: {e}") from e
            finally:
                cursor.close()

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Plain INSERT; the primary key rejects duplicates"""
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row['data']) for row in cursor.fetchall()]

    def modify(self, table: str, record_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        """Lock the row with SELECT ... FOR UPDATE, then write it back"""
        with self.atomic(), self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            updated = mutator(dict(row['data']))
            cursor.execute(f"""
                UPDATE {table} SET data = %s, updated_at = %s WHERE id = %s
            """, (json.dumps(updated, default=str), datetime.now(timezone.utc), record_id))
            return updated

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            if not filters:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            else:
                conditions = []
                params = []
                for key, value in filters.items():
                    conditions.append("data ->> %s = %s")
                    params.extend([key, json.dumps(value) if isinstance(value, bool) else str(value)])
                where_clause = " AND ".join(conditions)
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE {where_clause}
                    ORDER BY created_at
                """, params)
            return [dict(row['data']) for row in cursor.fetchall()]

    def commit(self) -> None:
        """Commit current transaction"""
        self._connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._connection.rollback()
        self._tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported schemes: ``memory://``, ``sqlite:///path`` (``sqlite://`` for an
    in-memory SQLite database) and ``postgresql://`` / ``postgres://``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
