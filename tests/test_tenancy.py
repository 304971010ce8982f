"""
Tests for tenant scoping

TenantAwareStorage must keep each clinic's records apart, including
definition codes, while leaving unscoped administrative access intact.
"""

import pytest
import pytest_asyncio

from clinic_workflow.approvers import RoleApprover
from clinic_workflow.async_storage import AsyncInMemoryStorage
from clinic_workflow.definitions import DefinitionRegistry, WorkflowStep
from clinic_workflow.tenancy import (
    TenantAwareStorage,
    get_current_tenant,
    set_current_tenant,
    tenant_context,
)


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


class TestTenantContext:

    def test_context_manager_restores_previous_tenant(self):
        assert get_current_tenant() is None
        with tenant_context("north"):
            assert get_current_tenant() == "north"
            with tenant_context("south"):
                assert get_current_tenant() == "south"
            assert get_current_tenant() == "north"
        assert get_current_tenant() is None

    def test_set_current_tenant(self):
        set_current_tenant("east")
        try:
            assert get_current_tenant() == "east"
        finally:
            set_current_tenant(None)
        assert get_current_tenant() is None


class TestTenantAwareStorage:

    @pytest_asyncio.fixture
    async def inner(self):
        return AsyncInMemoryStorage()

    @pytest_asyncio.fixture
    async def storage(self, inner):
        return TenantAwareStorage(inner)

    @pytest.mark.asyncio
    async def test_records_are_isolated(self, storage):
        with tenant_context("north"):
            await storage.save("employees", "e1", {"id": "e1", "name": "North nurse"})
        with tenant_context("south"):
            await storage.save("employees", "e1", {"id": "e1", "name": "South nurse"})
            assert (await storage.load("employees", "e1"))["name"] == "South nurse"
            assert len(await storage.find("employees", {})) == 1
            assert await storage.count("employees") == 1
        with tenant_context("north"):
            assert (await storage.load("employees", "e1"))["name"] == "North nurse"

    @pytest.mark.asyncio
    async def test_records_are_stamped_and_namespaced(self, storage, inner):
        with tenant_context("north"):
            await storage.save("employees", "e1", {"id": "e1"})

        raw = await inner.load("employees", "north:e1")
        assert raw["_tenant_id"] == "north"
        assert raw["id"] == "e1"

    @pytest.mark.asyncio
    async def test_delete_cannot_cross_tenants(self, storage):
        with tenant_context("north"):
            await storage.save("employees", "e1", {"id": "e1"})
        with tenant_context("south"):
            assert await storage.delete("employees", "e1") is False
        with tenant_context("north"):
            assert await storage.exists("employees", "e1")
            assert await storage.delete("employees", "e1") is True

    @pytest.mark.asyncio
    async def test_clear_table_only_touches_current_tenant(self, storage):
        with tenant_context("north"):
            await storage.save("employees", "e1", {"id": "e1"})
        with tenant_context("south"):
            await storage.save("employees", "e2", {"id": "e2"})
            await storage.clear_table("employees")
            assert await storage.count("employees") == 0
        with tenant_context("north"):
            assert await storage.count("employees") == 1

    @pytest.mark.asyncio
    async def test_unscoped_access_sees_everything(self, storage):
        with tenant_context("north"):
            await storage.save("employees", "e1", {"id": "e1"})
        with tenant_context("south"):
            await storage.save("employees", "e2", {"id": "e2"})
        assert len(await storage.load_all("employees")) == 2

    @pytest.mark.asyncio
    async def test_definition_codes_are_unique_per_tenant(self, storage, definition_factory):
        registry = DefinitionRegistry(storage)
        steps = [WorkflowStep(sequence=1, name="Review", approver=RoleApprover("nurse_manager"))]

        with tenant_context("north"):
            await registry.create_definition(definition_factory("LEAVE_APPROVAL", steps))
        with tenant_context("south"):
            created = await registry.create_definition(
                definition_factory("LEAVE_APPROVAL", steps, name="South leave")
            )
            assert created.version == 1
            assert [d.name for d in await registry.list_definitions()] == ["South leave"]
        with tenant_context("north"):
            assert (await registry.get_definition("LEAVE_APPROVAL")).name == "Leave Approval"
