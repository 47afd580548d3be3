"""
Async Storage Backend Module

Coroutine version of the record store, which every compliance operation
awaits on, plus a deadline wrapper that turns slow store calls into
retryable StoreTimeoutError failures instead of indefinite waits.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from .errors import StoreTimeoutError
from .storage import InMemoryStorage, StorageInterface

logger = logging.getLogger(__name__)


class AsyncStorageInterface(ABC):
    """Asynchronous record store; same contract as StorageInterface"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        pass

    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """
        Remove every matching record.

        Matching nothing is not an error, which keeps bulk erasure
        idempotent.
        """
        removed = 0
        for record in await self.find(table, filters):
            removed += await self.delete(table, record['id'])
        return removed

    async def close(self) -> None:
        pass

    async def begin_transaction(self) -> None:
        pass

    async def commit(self) -> None:
        pass

    async def rollback(self) -> None:
        pass

    @asynccontextmanager
    async def atomic(self):
        """Commit on success, roll back on any exception or cancellation"""
        await self.begin_transaction()
        try:
            yield self
        except BaseException:
            await self.rollback()
            raise
        await self.commit()


class AsyncInMemoryStorage(AsyncStorageInterface):
    """Runs a sync store (InMemoryStorage by default) off the event loop, one call at a time"""

    def __init__(self, sync_storage: Optional[StorageInterface] = None):
        self._sync = sync_storage or InMemoryStorage()
        self._lock = asyncio.Lock()

    @property
    def sync_storage(self) -> StorageInterface:
        return self._sync

    async def _run(self, method: str, *args):
        async with self._lock:
            return await asyncio.to_thread(getattr(self._sync, method), *args)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._run("save", table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._run("load", table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._run("load_all", table)

    async def delete(self, table: str, record_id: str) -> bool:
        return await self._run("delete", table, record_id)

    async def exists(self, table: str, record_id: str) -> bool:
        return await self._run("exists", table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._run("find", table, filters)

    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        return await self._run("delete_where", table, filters)

    async def count(self, table: str) -> int:
        return await self._run("count", table)

    async def clear_table(self, table: str) -> None:
        await self._run("clear_table", table)

    async def close(self) -> None:
        await self._run("close")

    async def begin_transaction(self) -> None:
        await self._run("begin_transaction")

    async def commit(self) -> None:
        await self._run("commit")

    async def rollback(self) -> None:
        await self._run("rollback")


class TimeoutStorage(AsyncStorageInterface):
    """
    Deadline wrapper for any AsyncStorageInterface.

    Every call is bounded by `timeout` seconds; an expired deadline raises
    StoreTimeoutError, which callers treat as a retryable I/O failure.
    """

    def __init__(self, inner: AsyncStorageInterface, timeout: float):
        if timeout <= 0:
            raise ValueError("Store timeout must be positive")
        self.inner = inner
        self.timeout = timeout

    async def _bounded(self, operation: str, *args):
        try:
            return await asyncio.wait_for(getattr(self.inner, operation)(*args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Store operation {operation} timed out after {self.timeout}s")
            raise StoreTimeoutError(operation, self.timeout) from e

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._bounded("save", table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._bounded("load", table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._bounded("load_all", table)

    async def delete(self, table: str, record_id: str) -> bool:
        return await self._bounded("delete", table, record_id)

    async def exists(self, table: str, record_id: str) -> bool:
        return await self._bounded("exists", table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._bounded("find", table, filters)

    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        return await self._bounded("delete_where", table, filters)

    async def count(self, table: str) -> int:
        return await self._bounded("count", table)

    async def clear_table(self, table: str) -> None:
        await self._bounded("clear_table", table)

    async def close(self) -> None:
        await self.inner.close()

    async def begin_transaction(self) -> None:
        await self._bounded("begin_transaction")

    async def commit(self) -> None:
        await self._bounded("commit")

    async def rollback(self) -> None:
        await self._bounded("rollback")


def create_async_storage(timeout: Optional[float] = None) -> AsyncStorageInterface:
    """
    Default async store.

    Bounded by `timeout`, or by the configured store_timeout_seconds when
    omitted; a zero timeout returns the unbounded store.
    """
    if timeout is None:
        from .config import get_config
        timeout = get_config().store_timeout_seconds
    storage = AsyncInMemoryStorage()
    return TimeoutStorage(storage, timeout) if timeout else storage
