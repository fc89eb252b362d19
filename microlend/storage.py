"""
Storage Backend Module

Document-style persistence for ledger records: each table maps a record id
to a JSON document. Monetary values travel as Decimal strings, dates as ISO
strings.

Two backends: ``InMemoryStorage`` for tests and ``SQLiteStorage`` for a
single-file ledger. Multi-record mutations run inside ``atomic()``;
``record_lock()`` serializes read-modify-write cycles on one record (one
loan) across threads.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import LedgerError, PersistenceError

_TABLE_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def serialize_value(value: Any) -> Any:
    """JSON-storable form of a field value"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


@dataclass
class StorageRecord:
    """Common identity and timestamps of every persisted record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {key: serialize_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Build from a stored document; subclasses convert their own fields first"""
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class RecordLockRegistry:
    """In-process mutexes keyed by (table, record_id)"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}

    def get(self, table: str, record_id: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault((table, str(record_id)), threading.RLock())


class StorageInterface(ABC):
    """
    Backend contract used by the ledger

    Transactions nest: only the outermost begin/commit/rollback pair
    touches the backend.
    """

    def __init__(self):
        self._record_locks = RecordLockRegistry()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a document"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Document by id, or None"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose top-level fields equal every filter value, in insertion order"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def close(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Run a block as one unit of work

        Commits on normal exit and rolls back on every exception path.
        Ledger errors propagate unchanged after the rollback; any other
        failure surfaces as PersistenceError.
        """
        self.begin_transaction()
        try:
            yield
        except LedgerError:
            self.rollback()
            raise
        except Exception as e:
            self.rollback()
            raise PersistenceError(f"Atomic unit rolled back: {e}") from e
        except BaseException:
            self.rollback()
            raise

        try:
            self.commit()
        except Exception as e:
            raise PersistenceError(f"Commit failed, changes rolled back: {e}") from e

    @contextmanager
    def record_lock(self, table: str, record_id: str):
        """Hold the mutex for one record while reading and mutating it"""
        with self._record_locks.get(table, record_id):
            yield


class InMemoryStorage(StorageInterface):
    """
    Dictionary-backed storage for tests

    Documents are kept as JSON text so callers never share mutable state
    with the store. A transaction snapshots the tables and restores them on
    rollback.
    """

    def __init__(self):
        super().__init__()
        self._tables: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, str]]] = None

    def _table(self, table: str) -> Dict[str, str]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = json.dumps(data, default=str)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._table(table).get(record_id)
        return json.loads(document) if document is not None else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            documents = list(self._table(table).values())
        records = (json.loads(document) for document in documents)
        return [record for record in records if _matches(record, filters)]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def begin_transaction(self) -> None:
        """The storage lock stays held until the matching commit/rollback"""
        self._lock.acquire()
        self._tx_depth += 1
        if self._tx_depth == 1:
            self._snapshot = {name: dict(rows) for name, rows in self._tables.items()}

    def commit(self) -> None:
        try:
            if self._tx_depth == 1:
                self._snapshot = None
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        try:
            if self._tx_depth == 1 and self._snapshot is not None:
                self._tables = self._snapshot
                self._snapshot = None
        finally:
            self._tx_depth -= 1
            self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage, one table per record type

    Each row holds the JSON document plus bookkeeping timestamps. Filters
    are pushed down to SQLite with json_extract. Writes outside a
    transaction commit immediately; inside one they wait for the outermost
    commit.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Transactions are driven explicitly through commit()/rollback()
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _table(self, table: str) -> str:
        """Validated table name, creating the table on first use"""
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        if table not in self._known_tables:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
                "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            self._known_tables.add(table)
        return table

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        cursor = self._connection.execute(sql, params)
        if self._tx_depth == 0:
            self._connection.commit()
        return cursor

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            name = self._table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._write(
                f"INSERT INTO {name} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (record_id, json.dumps(data, default=str), now, now)
            )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._connection.execute(
                f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,)
            ).fetchone()
        return json.loads(row['data']) if row else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        clauses = []
        params = []
        for key, value in filters.items():
            path = f"$.{json.dumps(key)}"
            if value is None:
                # Absent keys must not match, so check the type as well
                clauses.append("json_type(data, ?) = 'null'")
                params.append(path)
            else:
                clauses.append("json_extract(data, ?) = ?")
                params.extend([path, value])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            rows = self._connection.execute(
                f"SELECT data FROM {self._table(table)} {where} ORDER BY rowid", params
            ).fetchall()
        return [json.loads(row['data']) for row in rows]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            row = self._connection.execute(
                f"SELECT 1 FROM {self._table(table)} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
        return row is not None

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._write(f"DELETE FROM {self._table(table)} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def count(self, table: str) -> int:
        with self._lock:
            return self._connection.execute(f"SELECT COUNT(*) FROM {self._table(table)}").fetchone()[0]

    def begin_transaction(self) -> None:
        """The connection lock stays held until the matching commit/rollback"""
        self._lock.acquire()
        self._tx_depth += 1

    def commit(self) -> None:
        try:
            if self._tx_depth == 1:
                try:
                    self._connection.commit()
                except sqlite3.Error:
                    self._connection.rollback()
                    self._known_tables.clear()
                    raise
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        try:
            if self._tx_depth == 1:
                self._connection.rollback()
                # A table created inside the transaction may be gone
                self._known_tables.clear()
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported: ``memory://``, ``sqlite:///:memory:``, ``sqlite:///path/to.db``.
    """
    if database_url in ("memory://", "memory"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
