"""
Tenant Scoping Module

Every engine call is assumed to run for one tenant (clinic or branch). The
current tenant lives in a contextvar, and TenantAwareStorage keys and stamps
records with it so codes such as workflow definition codes are unique per
tenant rather than globally.
"""

from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, List, Optional
import contextvars

from .async_storage import AsyncStorageInterface


_current_tenant = contextvars.ContextVar('current_tenant', default=None)


def get_current_tenant() -> Optional[str]:
    """Get current tenant ID from context"""
    return _current_tenant.get()


def set_current_tenant(tenant_id: Optional[str]) -> contextvars.Token:
    """Set current tenant ID in context"""
    return _current_tenant.set(tenant_id)


@contextmanager
def tenant_context(tenant_id: str):
    """Context manager for scoping a block to one tenant"""
    token = _current_tenant.set(tenant_id)
    try:
        yield
    finally:
        _current_tenant.reset(token)


class TenantAwareStorage(AsyncStorageInterface):
    """Async storage wrapper that isolates records per tenant"""

    TENANT_FIELD = '_tenant_id'

    def __init__(self, inner_storage: AsyncStorageInterface):
        self.inner = inner_storage

    def _key(self, record_id: str) -> str:
        tenant_id = get_current_tenant()
        return f"{tenant_id}:{record_id}" if tenant_id else record_id

    def _stamp(self, data: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = get_current_tenant()
        if tenant_id:
            data = data.copy()
            data[self.TENANT_FIELD] = tenant_id
        return data

    def _visible(self, data: Dict[str, Any]) -> bool:
        tenant_id = get_current_tenant()
        if not tenant_id:
            # No tenant set: administrative access to every record
            return True
        return data.get(self.TENANT_FIELD) == tenant_id

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self.inner.save(table, self._key(record_id), self._stamp(data))

    async def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                               expected_version: Optional[int]) -> bool:
        return await self.inner.compare_and_save(
            table, self._key(record_id), self._stamp(data), expected_version
        )

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        result = await self.inner.load(table, self._key(record_id))
        if result and not self._visible(result):
            return None
        return result

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        records = await self.inner.load_all(table)
        return [record for record in records if self._visible(record)]

    async def delete(self, table: str, record_id: str) -> bool:
        record = await self.inner.load(table, self._key(record_id))
        if not record or not self._visible(record):
            return False
        return await self.inner.delete(table, self._key(record_id))

    async def exists(self, table: str, record_id: str) -> bool:
        return await self.load(table, record_id) is not None

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        tenant_id = get_current_tenant()
        if tenant_id:
            filters = dict(filters, **{self.TENANT_FIELD: tenant_id})
        return await self.inner.find(table, filters)

    async def count(self, table: str) -> int:
        return len(await self.load_all(table))

    async def clear_table(self, table: str) -> None:
        if get_current_tenant() is None:
            await self.inner.clear_table(table)
            return
        for record in await self.load_all(table):
            await self.delete(table, record['id'])

    async def initialize(self) -> None:
        await self.inner.initialize()

    async def close(self) -> None:
        await self.inner.close()

    @asynccontextmanager
    async def atomic(self):
        async with self.inner.atomic():
            yield
