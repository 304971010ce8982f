"""
Async Storage Backend Module

Provides the async storage interface used by the workflow engine, a threaded
wrapper over the sync backends (in-memory, SQLite) and production async
PostgreSQL using asyncpg.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from contextlib import asynccontextmanager
import asyncio
import contextvars
import json

from .config import WorkflowConfig
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    async def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                               expected_version: Optional[int]) -> bool:
        """Versioned save; expected_version=None means insert-if-absent"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    async def initialize(self) -> None:
        """Prepare connections (default no-op)"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    @asynccontextmanager
    async def atomic(self):
        """Group writes so they commit or roll back together (default no-op)"""
        yield


class ThreadedAsyncStorage(AsyncStorageInterface):
    """Async wrapper running a sync backend in the default thread pool"""

    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage
        self._lock = asyncio.Lock()
        # Marks the task that currently owns an atomic block
        self._owner = contextvars.ContextVar(f"storage_owner_{id(self)}", default=False)

    async def _call(self, func, *args):
        if self._owner.get():
            return await asyncio.to_thread(func, *args)
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._call(self._sync_storage.save, table, record_id, data)

    async def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                               expected_version: Optional[int]) -> bool:
        return await self._call(
            self._sync_storage.compare_and_save, table, record_id, data, expected_version
        )

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._call(self._sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._call(self._sync_storage.load_all, table)

    async def delete(self, table: str, record_id: str) -> bool:
        return await self._call(self._sync_storage.delete, table, record_id)

    async def exists(self, table: str, record_id: str) -> bool:
        return await self._call(self._sync_storage.exists, table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._call(self._sync_storage.find, table, filters)

    async def count(self, table: str) -> int:
        return await self._call(self._sync_storage.count, table)

    async def clear_table(self, table: str) -> None:
        await self._call(self._sync_storage.clear_table, table)

    async def close(self) -> None:
        await asyncio.to_thread(self._sync_storage.close)

    @asynccontextmanager
    async def atomic(self):
        """Hold the storage lock for the whole block and commit once"""
        if self._owner.get():
            yield
            return
        async with self._lock:
            token = self._owner.set(True)
            try:
                await asyncio.to_thread(self._sync_storage.begin_transaction)
                try:
                    yield
                    await asyncio.to_thread(self._sync_storage.commit)
                except Exception:
                    await asyncio.to_thread(self._sync_storage.rollback)
                    raise
            finally:
                self._owner.reset(token)


class AsyncInMemoryStorage(ThreadedAsyncStorage):
    """Async wrapper around InMemoryStorage for tests and single-process use"""

    def __init__(self):
        super().__init__(InMemoryStorage())


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """True async PostgreSQL using asyncpg"""

    def __init__(self, connection_string: str, pool_size: int = 10):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool = None
        self._tables = set()
        # Connection of the transaction the current task is inside, if any
        self._tx_connection = contextvars.ContextVar(f"pg_tx_{id(self)}", default=None)

    async def initialize(self) -> None:
        """Create connection pool, call on app startup"""
        import asyncpg
        self.pool = await asyncpg.create_pool(
            self.connection_string,
            min_size=2,
            max_size=self.pool_size,
            command_timeout=60
        )

    async def close(self) -> None:
        """Close pool, call on app shutdown"""
        if self.pool:
            await self.pool.close()

    @asynccontextmanager
    async def _connection(self):
        conn = self._tx_connection.get()
        if conn is not None:
            yield conn
            return
        if not self.pool:
            raise RuntimeError("Pool not initialized. Call initialize() first.")
        async with self.pool.acquire() as conn:
            yield conn

    async def _ensure_table(self, conn, table: str) -> None:
        if table in self._tables:
            return
        await conn.execute(f'''
            CREATE TABLE IF NOT EXISTS "{table}" (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
            )
        ''')
        self._tables.add(table)

    @staticmethod
    def _decode(value: Any) -> Dict[str, Any]:
        return json.loads(value) if isinstance(value, str) else value

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            await conn.execute(f'''
                INSERT INTO "{table}" (id, data, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (id)
                DO UPDATE SET data = $2::jsonb, updated_at = NOW()
            ''', record_id, json.dumps(data, default=str))

    async def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                               expected_version: Optional[int]) -> bool:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            payload = json.dumps(data, default=str)
            if expected_version is None:
                result = await conn.execute(f'''
                    INSERT INTO "{table}" (id, data, updated_at)
                    VALUES ($1, $2::jsonb, NOW())
                    ON CONFLICT (id) DO NOTHING
                ''', record_id, payload)
                return result == 'INSERT 0 1'
            result = await conn.execute(f'''
                UPDATE "{table}" SET data = $2::jsonb, updated_at = NOW()
                WHERE id = $1 AND (data->>'version')::int = $3
            ''', record_id, payload, expected_version)
            return result == 'UPDATE 1'

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
            return self._decode(row['data']) if row else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            rows = await conn.fetch(f'SELECT data FROM "{table}" ORDER BY created_at')
            return [self._decode(row['data']) for row in rows]

    async def delete(self, table: str, record_id: str) -> bool:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            result = await conn.execute(f'DELETE FROM "{table}" WHERE id = $1', record_id)
            return result != 'DELETE 0'

    async def exists(self, table: str, record_id: str) -> bool:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT 1 FROM "{table}" WHERE id = $1', record_id)
            return row is not None

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose JSON document contains all filter pairs"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            rows = await conn.fetch(
                f'SELECT data FROM "{table}" WHERE data @> $1::jsonb ORDER BY created_at',
                json.dumps(filters, default=str)
            )
            return [self._decode(row['data']) for row in rows]

    async def count(self, table: str) -> int:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT COUNT(*) FROM "{table}"')
            return row[0]

    async def clear_table(self, table: str) -> None:
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            await conn.execute(f'DELETE FROM "{table}"')

    @asynccontextmanager
    async def atomic(self):
        """Run the block on one pooled connection inside a transaction"""
        if self._tx_connection.get() is not None:
            yield
            return
        if not self.pool:
            raise RuntimeError("Pool not initialized. Call initialize() first.")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                token = self._tx_connection.set(conn)
                try:
                    yield
                finally:
                    self._tx_connection.reset(token)


def create_async_storage(config: Optional[WorkflowConfig] = None) -> AsyncStorageInterface:
    """Factory function to create async storage instances"""
    if config is None:
        from .config import get_config
        config = get_config()

    storage_type = config.storage_type.lower()
    if storage_type == 'postgresql':
        if not config.database_url:
            raise ValueError("database_url is required for PostgreSQL storage")
        return AsyncPostgreSQLStorage(config.database_url, config.database_pool_size)
    if storage_type == 'sqlite':
        return ThreadedAsyncStorage(SQLiteStorage(config.sqlite_path))
    return AsyncInMemoryStorage()
