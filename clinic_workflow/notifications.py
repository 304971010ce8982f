"""
Notification Module

Fire-and-forget notifications for workflow participants. The engine queues
NotificationRequests while it mutates an instance and hands them to the
WorkflowNotifier once the change has committed. Delivery failures and
timeouts are logged and never propagate into workflow progression.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging
import uuid

import httpx

from .async_storage import AsyncStorageInterface
from .storage import StorageRecord, to_jsonable, utc_now

logger = logging.getLogger("clinic_workflow.notifications")


class NotificationType(Enum):
    """Types of workflow notifications"""
    TASK_ASSIGNED = "task_assigned"
    TASK_AVAILABLE = "task_available"  # pooled task waiting to be claimed
    TASK_REMINDER = "task_reminder"
    TASK_ESCALATED = "task_escalated"
    TASK_DELEGATED = "task_delegated"
    INFO_REQUESTED = "info_requested"
    INFO_PROVIDED = "info_provided"
    STEP_NOTIFICATION = "step_notification"
    WORKFLOW_APPROVED = "workflow_approved"
    WORKFLOW_REJECTED = "workflow_rejected"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    SLA_BREACHED = "sla_breached"


DEFAULT_TEMPLATES: Dict[NotificationType, Tuple[str, str]] = {
    NotificationType.TASK_ASSIGNED: (
        "Action Required: {workflow_name}",
        "A {workflow_name} request for {entity_type} {entity_reference} needs your "
        "decision at step {step_name}. Due: {due_at}.",
    ),
    NotificationType.TASK_AVAILABLE: (
        "Task available: {workflow_name}",
        "A {workflow_name} task for {entity_type} {entity_reference} is waiting to be "
        "claimed at step {step_name}.",
    ),
    NotificationType.TASK_REMINDER: (
        "Reminder: {workflow_name} is overdue",
        "Your decision on {entity_type} {entity_reference} at step {step_name} was due {due_at}.",
    ),
    NotificationType.TASK_ESCALATED: (
        "Escalated: {workflow_name}",
        "An overdue {workflow_name} task for {entity_type} {entity_reference} was escalated "
        "to you from {escalated_from}.",
    ),
    NotificationType.TASK_DELEGATED: (
        "Delegated to you: {workflow_name}",
        "{delegated_from} delegated the {step_name} decision on {entity_type} "
        "{entity_reference} to you. Reason: {comments}",
    ),
    NotificationType.INFO_REQUESTED: (
        "More information needed: {workflow_name}",
        "{actor_id} needs more information about {entity_type} {entity_reference}: {comments}",
    ),
    NotificationType.INFO_PROVIDED: (
        "Information provided: {workflow_name}",
        "The initiator answered your question on {entity_type} {entity_reference}: {comments}",
    ),
    NotificationType.STEP_NOTIFICATION: (
        "FYI: {workflow_name}",
        "{workflow_name} for {entity_type} {entity_reference} reached step {step_name}.",
    ),
    NotificationType.WORKFLOW_APPROVED: (
        "Approved: {workflow_name}",
        "Your {workflow_name} request for {entity_type} {entity_reference} was approved.",
    ),
    NotificationType.WORKFLOW_REJECTED: (
        "Rejected: {workflow_name}",
        "Your {workflow_name} request for {entity_type} {entity_reference} was rejected "
        "by {actor_id}: {comments}",
    ),
    NotificationType.WORKFLOW_CANCELLED: (
        "Cancelled: {workflow_name}",
        "The {workflow_name} request for {entity_type} {entity_reference} was cancelled: {comments}",
    ),
    NotificationType.SLA_BREACHED: (
        "SLA breached: {workflow_name}",
        "{workflow_name} for {entity_type} {entity_reference} passed its deadline {sla_due_at}.",
    ),
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


@dataclass
class NotificationRequest:
    """Notification queued during a mutation, delivered after commit"""
    notification_type: NotificationType
    recipient_ids: List[str]
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Notification(StorageRecord):
    """Rendered notification for one recipient"""
    notification_type: NotificationType
    recipient_id: str
    subject: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'notification_type': self.notification_type.value,
            'recipient_id': self.recipient_id,
            'subject': self.subject,
            'body': self.body,
            'metadata': to_jsonable(self.metadata),
            'read': self.read,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        return cls(
            **cls.base_fields(data),
            notification_type=NotificationType(data['notification_type']),
            recipient_id=data['recipient_id'],
            subject=data['subject'],
            body=data['body'],
            metadata=data.get('metadata') or {},
            read=data.get('read', False),
        )


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logging channel provider for development"""

    async def send(self, notification: Notification) -> bool:
        logger.info(
            "Notification %s to %s: %s",
            notification.notification_type.value, notification.recipient_id, notification.subject,
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    TABLE = "in_app_notifications"

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    async def send(self, notification: Notification) -> bool:
        await self.storage.save(self.TABLE, notification.id, notification.to_dict())
        return True

    async def get_notifications(self, recipient_id: str, unread_only: bool = False,
                                limit: int = 50) -> List[Notification]:
        filters: Dict[str, Any] = {'recipient_id': recipient_id}
        if unread_only:
            filters['read'] = False
        records = await self.storage.find(self.TABLE, filters)
        notifications = [Notification.from_dict(r) for r in records]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    async def mark_as_read(self, notification_id: str) -> bool:
        data = await self.storage.load(self.TABLE, notification_id)
        if not data:
            return False
        notification = Notification.from_dict(data)
        notification.read = True
        notification.updated_at = utc_now()
        await self.storage.save(self.TABLE, notification.id, notification.to_dict())
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external delivery services"""

    def __init__(self, url: str, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": to_jsonable(notification.metadata),
        }
        response = await self._client.post(self.url, json=payload)
        if response.status_code >= 400:
            logger.warning("Webhook %s answered %s for notification %s",
                           self.url, response.status_code, notification.id)
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()


class WorkflowNotifier:
    """Renders workflow notifications and fans them out to channel providers"""

    def __init__(self, providers: Optional[List[ChannelProvider]] = None,
                 timeout: float = 5.0,
                 templates: Optional[Dict[NotificationType, Tuple[str, str]]] = None):
        self.providers: List[ChannelProvider] = providers if providers is not None else [LogChannelProvider()]
        self.timeout = timeout
        self.templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self.templates.update(templates)

    def add_provider(self, provider: ChannelProvider) -> None:
        self.providers.append(provider)

    def render(self, notification_type: NotificationType, recipient_id: str,
               variables: Dict[str, Any]) -> Notification:
        subject_template, body_template = self.templates[notification_type]
        values = _Blank({k: ("" if v is None else v) for k, v in to_jsonable(variables).items()})
        now = utc_now()
        return Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            recipient_id=recipient_id,
            subject=subject_template.format_map(values),
            body=body_template.format_map(values),
            metadata=dict(variables),
        )

    async def notify(self, notification_type: NotificationType, recipient_ids: List[str],
                     **variables) -> int:
        """Deliver to every recipient; returns how many deliveries succeeded"""
        delivered = 0
        for recipient_id in dict.fromkeys(r for r in recipient_ids if r):
            try:
                notification = self.render(notification_type, recipient_id, variables)
            except (KeyError, ValueError):
                logger.exception("Could not render %s notification", notification_type.value)
                continue
            for provider in self.providers:
                if await self._send(provider, notification):
                    delivered += 1
        return delivered

    async def dispatch(self, requests: List[NotificationRequest]) -> int:
        delivered = 0
        for request in requests:
            delivered += await self.notify(
                request.notification_type, request.recipient_ids, **request.variables
            )
        return delivered

    async def _send(self, provider: ChannelProvider, notification: Notification) -> bool:
        try:
            return await asyncio.wait_for(provider.send(notification), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Notification %s via %s timed out",
                           notification.id, type(provider).__name__)
        except Exception:
            logger.exception("Notification %s via %s failed",
                             notification.id, type(provider).__name__)
        return False
