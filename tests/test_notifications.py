"""
Tests for workflow notifications

Template rendering, fan-out to channel providers, failure and timeout
isolation, in-app storage and webhook delivery.
"""

import asyncio
import json
import pytest
import pytest_asyncio
from datetime import datetime, timezone

import httpx

from clinic_workflow.async_storage import AsyncInMemoryStorage
from clinic_workflow.notifications import (
    ChannelProvider,
    InAppChannelProvider,
    NotificationRequest,
    NotificationType,
    WebhookChannelProvider,
    WorkflowNotifier,
)


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

VARIABLES = {
    "instance_id": "i1",
    "workflow_code": "LEAVE_APPROVAL",
    "workflow_name": "Leave Approval",
    "entity_type": "leave_request",
    "entity_id": "42",
    "entity_reference": "LR-42",
    "step_name": "Manager Approval",
    "due_at": datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc),
}


class FailingProvider(ChannelProvider):
    async def send(self, notification):
        raise ConnectionError("smtp unreachable")


class SlowProvider(ChannelProvider):
    async def send(self, notification):
        await asyncio.sleep(5)
        return True


class TestRendering:

    def test_render_task_assigned(self):
        notification = WorkflowNotifier([]).render(NotificationType.TASK_ASSIGNED, "nurse_lead", VARIABLES)

        assert notification.recipient_id == "nurse_lead"
        assert notification.subject == "Action Required: Leave Approval"
        assert "leave_request LR-42" in notification.body
        assert "2026-03-03T09:00:00+00:00" in notification.body
        assert notification.read is False

    def test_missing_values_render_blank(self):
        notification = WorkflowNotifier([]).render(
            NotificationType.WORKFLOW_REJECTED, "alice",
            {"workflow_name": "Leave Approval", "actor_id": "hr_head", "comments": None},
        )
        assert notification.body == "Your Leave Approval request for   was rejected by hr_head: "

    def test_custom_templates(self):
        notifier = WorkflowNotifier([], templates={
            NotificationType.TASK_REMINDER: ("Nudge", "Please look at {entity_reference}"),
        })
        notification = notifier.render(NotificationType.TASK_REMINDER, "bob", VARIABLES)
        assert notification.subject == "Nudge"
        assert notification.body == "Please look at LR-42"


class TestDelivery:

    @pytest.mark.asyncio
    async def test_notify_each_recipient_once(self, outbox):
        notifier = WorkflowNotifier([outbox])

        delivered = await notifier.notify(
            NotificationType.TASK_AVAILABLE, ["hr_officer1", "hr_officer2", "hr_officer1", None], **VARIABLES
        )

        assert delivered == 2
        assert [n.recipient_id for n in outbox.sent] == ["hr_officer1", "hr_officer2"]

    @pytest.mark.asyncio
    async def test_failing_provider_is_isolated(self, outbox):
        notifier = WorkflowNotifier([FailingProvider(), outbox])

        delivered = await notifier.notify(NotificationType.TASK_ASSIGNED, ["nurse_lead"], **VARIABLES)

        assert delivered == 1
        assert outbox.recipients(NotificationType.TASK_ASSIGNED) == ["nurse_lead"]

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self):
        notifier = WorkflowNotifier([SlowProvider()], timeout=0.05)
        assert await notifier.notify(NotificationType.TASK_ASSIGNED, ["nurse_lead"], **VARIABLES) == 0

    @pytest.mark.asyncio
    async def test_dispatch_requests(self, outbox):
        notifier = WorkflowNotifier([outbox])

        delivered = await notifier.dispatch([
            NotificationRequest(NotificationType.TASK_ASSIGNED, ["nurse_lead"], VARIABLES),
            NotificationRequest(NotificationType.WORKFLOW_APPROVED, ["alice"], VARIABLES),
        ])

        assert delivered == 2
        assert [n.notification_type for n in outbox.sent] == [
            NotificationType.TASK_ASSIGNED, NotificationType.WORKFLOW_APPROVED,
        ]


class TestInAppChannel:

    @pytest_asyncio.fixture
    async def provider(self):
        return InAppChannelProvider(AsyncInMemoryStorage())

    @pytest.mark.asyncio
    async def test_store_and_read(self, provider):
        notifier = WorkflowNotifier([provider])
        await notifier.notify(NotificationType.TASK_ASSIGNED, ["nurse_lead"], **VARIABLES)
        await notifier.notify(NotificationType.TASK_REMINDER, ["nurse_lead"], **VARIABLES)

        inbox = await provider.get_notifications("nurse_lead")
        assert len(inbox) == 2
        assert await provider.get_notifications("alice") == []
        assert inbox[0].metadata["entity_reference"] == "LR-42"

        assert await provider.mark_as_read(inbox[0].id) is True
        unread = await provider.get_notifications("nurse_lead", unread_only=True)
        assert [n.id for n in unread] == [inbox[1].id]

    @pytest.mark.asyncio
    async def test_mark_unknown_notification(self, provider):
        assert await provider.mark_as_read("missing") is False


class TestWebhookChannel:

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = WebhookChannelProvider("https://hooks.clinic.test/notify", client=client)
        notifier = WorkflowNotifier([provider])

        assert await notifier.notify(NotificationType.TASK_ASSIGNED, ["nurse_lead"], **VARIABLES) == 1
        await provider.close()

        [payload] = received
        assert payload["type"] == "task_assigned"
        assert payload["recipient_id"] == "nurse_lead"
        assert payload["metadata"]["due_at"] == "2026-03-03T09:00:00+00:00"

    @pytest.mark.asyncio
    async def test_error_status_counts_as_failure(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        provider = WebhookChannelProvider("https://hooks.clinic.test/notify", client=client)

        notifier = WorkflowNotifier([provider])
        assert await notifier.notify(NotificationType.TASK_ASSIGNED, ["nurse_lead"], **VARIABLES) == 0
        await provider.close()
