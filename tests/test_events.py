"""
Tests for the domain event dispatcher
"""

import pytest

from clinic_workflow.events import DomainEvent, EventDispatcher, EventPayload
from clinic_workflow.exceptions import NotAssignedError


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


def make_event(event_type=DomainEvent.WORKFLOW_APPROVED):
    return EventPayload(
        event_type=event_type,
        entity_type="leave_request",
        entity_id="42",
        data={"instance_id": "i1", "workflow_code": "LEAVE_APPROVAL"},
    )


class TestEventDispatcher:

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def test_subscribe_and_publish(self):
        received = []
        self.dispatcher.subscribe(DomainEvent.WORKFLOW_APPROVED, received.append)

        event = make_event()
        self.dispatcher.publish(event)
        self.dispatcher.publish(make_event(DomainEvent.WORKFLOW_REJECTED))

        assert received == [event]

    def test_global_handlers_receive_everything(self):
        received = []
        self.dispatcher.subscribe_all(received.append)

        self.dispatcher.publish(make_event(DomainEvent.WORKFLOW_STARTED))
        self.dispatcher.publish(make_event(DomainEvent.TASK_ESCALATED))

        assert [e.event_type for e in received] == [DomainEvent.WORKFLOW_STARTED, DomainEvent.TASK_ESCALATED]

    def test_handler_errors_are_isolated(self):
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        self.dispatcher.subscribe(DomainEvent.WORKFLOW_APPROVED, broken)
        self.dispatcher.subscribe(DomainEvent.WORKFLOW_APPROVED, received.append)

        self.dispatcher.publish(make_event())

        assert len(received) == 1

    def test_unsubscribe(self):
        received = []
        self.dispatcher.subscribe(DomainEvent.WORKFLOW_APPROVED, received.append)
        self.dispatcher.unsubscribe(DomainEvent.WORKFLOW_APPROVED, received.append)
        self.dispatcher.unsubscribe(DomainEvent.WORKFLOW_APPROVED, received.append)

        self.dispatcher.publish(make_event())

        assert received == []

    def test_handler_counts_and_clear(self):
        self.dispatcher.subscribe(DomainEvent.WORKFLOW_APPROVED, lambda e: None)
        self.dispatcher.subscribe(DomainEvent.WORKFLOW_REJECTED, lambda e: None)
        self.dispatcher.subscribe_all(lambda e: None)

        assert self.dispatcher.get_handler_count(DomainEvent.WORKFLOW_APPROVED) == 1
        assert self.dispatcher.get_handler_count() == 3

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0

    def test_payload_serialization(self):
        data = make_event().to_dict()
        assert data["event_type"] == "workflow.approved"
        assert data["entity_id"] == "42"
        assert data["data"]["workflow_code"] == "LEAVE_APPROVAL"


class TestEngineEvents:

    @pytest.mark.asyncio
    async def test_events_keyed_by_governed_entity(self, engine, leave_instance, published):
        await engine.approve_step(leave_instance.id, "nurse_lead")
        await engine.reject_step(leave_instance.id, "hr_head", "Short staffed")

        final = published[-1]
        assert final.event_type == DomainEvent.WORKFLOW_REJECTED
        assert (final.entity_type, final.entity_id) == ("leave_request", "42")
        assert final.data["instance_id"] == leave_instance.id
        assert final.data["status"] == "rejected"
        assert final.data["completed_by"] == "hr_head"

    @pytest.mark.asyncio
    async def test_refused_actions_publish_nothing(self, engine, leave_instance, published):
        count = len(published)
        with pytest.raises(NotAssignedError):
            await engine.approve_step(leave_instance.id, "bob")
        assert len(published) == count
