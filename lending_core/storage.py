"""
Storage Backend Module

Provides the abstract persistence interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values are stored as Decimal
strings and all dates as ISO strings.

Every payment or reversal event runs inside ``storage.atomic()``: the block
holds the backend lock for its whole duration, so two mutations against the
same loan can never interleave, and a failure anywhere inside the block leaves
no row changed.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Set
from decimal import Decimal
from datetime import datetime, timezone
import re
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .config import get_config


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

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
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
        """Find records whose fields equal every value in filters"""
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
    Dict-backed storage for tests and single-process use.

    Records are copied through JSON on the way in and out, so callers never
    share mutable state with the store.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    @staticmethod
    def _copy(value: Any) -> Any:
        return json.loads(json.dumps(value, default=str))

    def _rows(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._rows(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._rows(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._rows(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._rows(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._rows(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._rows(table).values() if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._rows(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._tables[table] = {}

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        """Take the store lock; the outermost block also snapshots every table"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = self._copy(self._tables)
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Put back the tables as they were when the outermost block began"""
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._tables = self._snapshot
            self._snapshot = None
        self._lock.release()


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _checked(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table or field name {name!r}")
    return name


def _sql_value(value: Any) -> Any:
    # json_extract yields 1/0 for JSON booleans and text for our Decimal strings
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    return value


class SQLiteStorage(StorageInterface):
    """
    SQLite document store.

    Each record type gets its own table of (id, data, created_at, updated_at)
    rows, with the record serialized as JSON in ``data``. Filters run in SQL
    through ``json_extract`` so looking up a loan's open installments does not
    load the whole table.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _finish(self) -> None:
        """Commit a standalone write; inside an atomic block the block commits"""
        if self._depth == 0:
            self._connection.commit()

    def _table(self, table: str) -> str:
        if table not in self._tables:
            name = _checked(table)
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {name} ("
                "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
                "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{name}_created ON {name}(created_at)")
            self._finish()
            self._tables.add(table)
        return table

    def _select(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        return [json.loads(row["data"]) for row in self._connection.execute(sql, params).fetchall()]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            name = self._table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(
                f"INSERT INTO {name} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (record_id, json.dumps(data, default=str), now, now)
            )
            self._finish()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._select(f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,))
            return rows[0] if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose JSON fields equal every filter value, oldest first"""
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            path = f"$.{_checked(key)}"
            if value is None:
                clauses.append("json_extract(data, ?) IS NULL")
                params.append(path)
            else:
                clauses.append("json_extract(data, ?) = ?")
                params.extend([path, _sql_value(value)])
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            return self._select(
                f"SELECT data FROM {self._table(table)}{where} ORDER BY created_at, rowid", tuple(params))

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._connection.execute(f"DELETE FROM {self._table(table)} WHERE id = ?", (record_id,))
            self._finish()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._connection.execute(f"SELECT 1 FROM {self._table(table)} WHERE id = ?", (record_id,))
            return cursor.fetchone() is not None

    def count(self, table: str) -> int:
        with self._lock:
            return self._connection.execute(f"SELECT COUNT(*) FROM {self._table(table)}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._connection.execute(f"DELETE FROM {self._table(table)}")
            self._finish()

    def begin_transaction(self) -> None:
        """Hold the connection lock and the database write lock until the block ends"""
        self._lock.acquire()
        if self._depth == 0 and not self._connection.in_transaction:
            self._connection.execute("BEGIN IMMEDIATE")
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.rollback()
                # tables created inside the block are gone again
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: Optional[str] = None) -> StorageInterface:
    """
    Open the backend named by a database URL (default: the configured one).

    ``memory://`` gives an InMemoryStorage; ``sqlite:///path/to.db`` a
    SQLiteStorage on that file, and ``sqlite://`` or ``sqlite:///:memory:``
    an in-memory SQLite database.
    """
    if database_url is None:
        database_url = get_config().database_url

    if database_url == "memory://":
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL {database_url!r}")
