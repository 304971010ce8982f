"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; versioned
records carry an integer `version` used for optimistic concurrency.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO string, treating naive values as UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def to_jsonable(value: Any) -> Any:
    """Convert enums, datetimes and nested containers to JSON-safe values"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def base_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @staticmethod
    def base_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'id': data['id'],
            'created_at': parse_datetime(data['created_at']),
            'updated_at': parse_datetime(data['updated_at']),
        }


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        """
        Save only if the stored record still has expected_version.

        expected_version=None means insert only if no record exists.
        Returns False when another writer got there first.
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


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(record, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _copy(data)

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        """Versioned save, checked and written under the storage lock"""
        with self._lock:
            rows = self._table(table)
            current = rows.get(record_id)
            if expected_version is None:
                accepted = current is None
            else:
                accepted = current is not None and current.get('version') == expected_version
            if accepted:
                rows[record_id] = _copy(data)
            return accepted

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value, in insertion order"""
        with self._lock:
            return [_copy(r) for r in self._table(table).values() if _matches(r, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Snapshot every table; rows are replaced on write, never mutated"""
        with self._lock:
            if self._snapshot is None:
                self._snapshot = {name: dict(rows) for name, rows in self._data.items()}

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Each table holds one JSON document per row. Equality filters on scalar
    fields are pushed into SQL through json_extract; the versioned save is a
    single conditional statement so concurrent writers cannot both win.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED lets begin_transaction span several statements
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _execute(self, table: str, sql: str, params: tuple = (), write: bool = False) -> sqlite3.Cursor:
        """Run sql against table (named {table} in the statement), creating it on first use"""
        with self._lock:
            if table not in self._tables:
                self._connection.execute(
                    f"CREATE TABLE IF NOT EXISTS {table} ("
                    "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
                    "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
                )
                self._connection.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
                )
                self._tables.add(table)
                write = True
            cursor = self._connection.execute(sql.format(table=table), params)
            if write and not self._in_transaction:
                self._connection.commit()
            return cursor

    @staticmethod
    def _where(filters: Dict[str, Any]):
        """SQL conditions for scalar filters plus the filters left for Python"""
        clauses, params, remaining = [], [], {}
        for key, value in filters.items():
            if value is None:
                clauses.append("json_type(data, ?) = 'null'")
                params.append(f"$.{key}")
            elif isinstance(value, (str, int, float)):
                clauses.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", int(value) if isinstance(value, bool) else value])
            else:
                remaining[key] = value
        return " AND ".join(clauses), tuple(params), remaining

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = utc_now().isoformat()
        self._execute(table, """
            INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
        """, (record_id, json.dumps(data, default=str), now, now), write=True)

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        now = utc_now().isoformat()
        data_json = json.dumps(data, default=str)
        if expected_version is None:
            cursor = self._execute(table, """
                INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
            """, (record_id, data_json, now, now), write=True)
        else:
            cursor = self._execute(table, """
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND json_extract(data, '$.version') = ?
            """, (data_json, now, record_id, expected_version), write=True)
        return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._execute(table, "SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        cursor = self._execute(table, "DELETE FROM {table} WHERE id = ?", (record_id,), write=True)
        return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        cursor = self._execute(table, "SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
        return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value, oldest first"""
        where, params, remaining = self._where(filters)
        sql = "SELECT data FROM {table}"
        if where:
            sql += f" WHERE {where}"
        rows = self._execute(table, sql + " ORDER BY created_at, id", params).fetchall()
        records = [json.loads(row['data']) for row in rows]
        return [r for r in records if _matches(r, remaining)] if remaining else records

    def count(self, table: str) -> int:
        return self._execute(table, "SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        self._execute(table, "DELETE FROM {table}", write=True)

    def begin_transaction(self) -> None:
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # tables created inside the transaction are gone too
                self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
