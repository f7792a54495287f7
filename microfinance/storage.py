"""
Storage Backend Module

Record persistence for the loan core. Every table holds JSON documents keyed
by record id; money travels as Decimal strings and dates as ISO strings.

Two backends ship with the core:

* InMemoryStorage: process-local dictionaries, used by tests and tooling
* SQLiteStorage: a single SQLite file (or ``:memory:``)

Both honour ``atomic()``: every write made inside the block is kept or
discarded as a unit.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Union
import json
import sqlite3
import threading


def encode_value(value: Any) -> Any:
    """Scalar to its stored representation"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def as_utc(value: datetime) -> datetime:
    """Timezone-aware timestamp; naive values are taken as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class StorageRecord:
    """Fields shared by every persisted record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: encode_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = as_utc(datetime.fromisoformat(data[key]))
        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Contract every storage backend implements"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one record, None when absent"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record of a table in insertion order"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record; False when it did not exist"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Group writes into one transaction. Blocks nest: only the outermost
        block commits, and a failure anywhere discards the whole group.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


UndoEntry = Tuple[str, str, Optional[Dict[str, Any]]]


class InMemoryStorage(StorageInterface):
    """
    Dictionary-backed storage.

    Transactions belong to the calling thread: each thread keeps its own
    undo journal, so a rollback on one thread restores only the rows that
    thread wrote.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._txn = threading.local()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        return json.loads(json.dumps(data, default=str))

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    @property
    def _depth(self) -> int:
        return getattr(self._txn, 'depth', 0)

    def _remember(self, table: str, record_id: str) -> None:
        if self._depth:
            self._txn.undo.append((table, record_id, self._table(table).get(record_id)))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._remember(table, record_id)
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._table(table):
                return False
            self._remember(table, record_id)
            del self._table(table)[record_id]
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            for record_id in list(self._table(table)):
                self._remember(table, record_id)
            self._tables[table] = {}

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        if self._depth == 0:
            self._txn.undo = []
        self._txn.depth = self._depth + 1

    def commit(self) -> None:
        if self._depth == 0:
            return
        self._txn.depth -= 1
        if self._txn.depth == 0:
            self._txn.undo = []

    def rollback(self) -> None:
        """Restore every row this thread touched since its outermost begin"""
        if self._depth == 0:
            return
        undo: List[UndoEntry] = self._txn.undo
        with self._lock:
            while undo:
                table, record_id, previous = undo.pop()
                if previous is None:
                    self._table(table).pop(record_id, None)
                else:
                    self._table(table)[record_id] = previous
        self._txn.depth = 0


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS {table} (
        id TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
"""

_UPSERT = """
    INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
"""


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed storage.

    One connection is shared by all threads. A transaction holds the
    connection lock from begin to commit/rollback, so other threads queue
    behind it instead of writing into it.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level='DEFERRED'
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._known_tables: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _execute(self, table: str, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        """Run a statement against a table, creating the table on first use"""
        if table not in self._known_tables:
            self._connection.execute(_SCHEMA.format(table=table))
            self._connection.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
            )
            if self._depth == 0:
                self._connection.commit()
            self._known_tables.add(table)
        return self._connection.execute(sql.format(table=table), params)

    def _write(self, table: str, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        cursor = self._execute(table, sql, params)
        if self._depth == 0:
            self._connection.commit()
        return cursor

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._write(table, _UPSERT, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._execute(table, "SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._execute(table, "SELECT data FROM {table} ORDER BY created_at, rowid").fetchall()
        return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._write(table, "DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._execute(table, "SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def count(self, table: str) -> int:
        with self._lock:
            return self._execute(table, "SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._write(table, "DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1

    def _end(self, keep: bool) -> None:
        if self._depth == 0:
            return
        try:
            if self._depth > 1:
                self._rollback_only = self._rollback_only or not keep
                return
            if keep and not self._rollback_only:
                self._connection.commit()
            else:
                self._connection.rollback()
                # Tables created inside the transaction are gone again
                self._known_tables.clear()
            self._rollback_only = False
        finally:
            self._depth -= 1
            self._lock.release()

    def commit(self) -> None:
        self._end(keep=True)

    def rollback(self) -> None:
        self._end(keep=False)

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://`` (InMemoryStorage), ``sqlite://`` or
    ``sqlite:///:memory:`` (in-memory SQLite) and ``sqlite:///path/to.db``.
    """
    if database_url == "memory://":
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
