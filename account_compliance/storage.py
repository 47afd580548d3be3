"""
Storage Backend Module

Record store the compliance core is written against. Records are
JSON-compatible dicts addressed by (table, record_id); the in-memory
backend is the development and test stand-in for a real database.
"""

import json
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

Table = Dict[str, Dict[str, Any]]


@dataclass
class StorageRecord:
    """Common identity and timestamps of every persisted record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['updated_at'] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        values = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


def matches_filters(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """True when every filter key is present in record with an equal value"""
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Synchronous record store"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace one record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """One record, or None when absent"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record of a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove one record; False when it was already absent"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Remove every matching record and return how many went"""
        return sum(1 for record in self.find(table, filters) if self.delete(table, record['id']))

    def close(self) -> None:
        pass

    # Transactions default to no-ops for backends without them

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Commit on success, roll back on any exception"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    Dict-backed store.

    Tables keep insertion order. Data is copied through JSON on the way in
    and out, so callers never share mutable state with the store, and a
    transaction snapshots every table and restores them on rollback.
    """

    def __init__(self):
        self._tables: Dict[str, Table] = {}
        self._snapshot: Optional[Dict[str, Table]] = None
        self._lock = threading.RLock()

    @staticmethod
    def _copy(value: Any) -> Any:
        return json.loads(json.dumps(value, default=str))

    def _table(self, table: str) -> Table:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return None if record is None else self._copy(record)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return self._copy(list(self._table(table).values()))

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return self._copy([r for r in self._table(table).values() if matches_filters(r, filters)])

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Single pass under one lock acquisition"""
        with self._lock:
            rows = self._table(table)
            matching = [record_id for record_id, r in rows.items() if matches_filters(r, filters)]
            for record_id in matching:
                del rows[record_id]
            return len(matching)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._tables[table] = {}

    def begin_transaction(self) -> None:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._copy(self._tables)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._tables, self._snapshot = self._snapshot, None

    def get_all_data(self) -> Dict[str, Table]:
        """Copy of every table, for inspection in tests"""
        with self._lock:
            return self._copy(self._tables)
