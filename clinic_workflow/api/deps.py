"""
Workflow system wiring and request dependencies
"""

from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Header, HTTPException, Request

from ..async_storage import AsyncStorageInterface, create_async_storage
from ..config import WorkflowConfig, get_config
from ..directory import StorageDirectory
from ..events import EventDispatcher
from ..notifications import (
    ChannelProvider, InAppChannelProvider, LogChannelProvider, WebhookChannelProvider,
    WorkflowNotifier,
)
from ..storage import utc_now
from ..tenancy import TenantAwareStorage
from ..workflows import WorkflowEngine


class WorkflowSystem:
    """Clinic workflow system with all components initialized"""

    def __init__(self, config: Optional[WorkflowConfig] = None,
                 storage: Optional[AsyncStorageInterface] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config or get_config()

        self.base_storage = storage or create_async_storage(self.config)
        if self.config.multi_tenant:
            self.storage: AsyncStorageInterface = TenantAwareStorage(self.base_storage)
        else:
            self.storage = self.base_storage

        self.directory = StorageDirectory(self.storage)
        self.in_app = InAppChannelProvider(self.storage)
        providers: List[ChannelProvider] = [LogChannelProvider(), self.in_app]
        self.webhook: Optional[WebhookChannelProvider] = None
        if self.config.notification_webhook_url:
            self.webhook = WebhookChannelProvider(
                self.config.notification_webhook_url, timeout=self.config.notification_timeout
            )
            providers.append(self.webhook)
        self.notifier = WorkflowNotifier(providers, timeout=self.config.notification_timeout)
        self.events = EventDispatcher()

        self.engine = WorkflowEngine(
            self.storage, self.directory, self.config,
            notifier=self.notifier, events=self.events, clock=clock,
        )

    async def startup(self) -> None:
        await self.base_storage.initialize()

    async def shutdown(self) -> None:
        if self.webhook:
            await self.webhook.close()
        await self.base_storage.close()


def get_workflow_system(request: Request) -> WorkflowSystem:
    return request.app.state.workflow_system


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.workflow_system.engine


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Acting employee, as asserted by the upstream gateway"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id
