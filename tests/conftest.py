"""
Shared fixtures for the workflow engine tests

The seeded clinic directory:

    clinic (head: director)
    +-- nursing (head: nurse_lead)      alice, bob (nurse), nurse_lead (nurse_manager)
    +-- front_desk (no head)            carol (receptionist)
    +-- hr (head: hr_head)              hr_head (hr_manager), hr_officer1, hr_officer2
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from clinic_workflow.approvers import ExpressionApprover, RoleApprover
from clinic_workflow.async_storage import AsyncInMemoryStorage
from clinic_workflow.config import WorkflowConfig
from clinic_workflow.definitions import WorkflowDefinition, WorkflowStep
from clinic_workflow.directory import StorageDirectory
from clinic_workflow.events import EventDispatcher
from clinic_workflow.notifications import ChannelProvider, WorkflowNotifier
from clinic_workflow.workflows import WorkflowEngine


class FakeClock:
    """Controllable clock handed to the engine"""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingProvider(ChannelProvider):
    """Channel provider that keeps every notification it receives"""

    def __init__(self):
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)
        return True

    def of_type(self, notification_type):
        return [n for n in self.sent if n.notification_type == notification_type]

    def recipients(self, notification_type):
        return [n.recipient_id for n in self.of_type(notification_type)]


async def seed_directory(directory):
    await directory.add_department("clinic", "Main Clinic", head_id="director")
    await directory.add_department("nursing", "Nursing", head_id="nurse_lead", parent_id="clinic")
    await directory.add_department("front_desk", "Front Desk", parent_id="clinic")
    await directory.add_department("hr", "Human Resources", head_id="hr_head", parent_id="clinic")

    await directory.add_employee("director", "Dana Director", department_id="clinic",
                                 roles=["clinic_director"])
    await directory.add_employee("nurse_lead", "Nina Lead", department_id="nursing",
                                 manager_id="director", roles=["nurse_manager"])
    await directory.add_employee("alice", "Alice Nurse", department_id="nursing",
                                 manager_id="nurse_lead", roles=["nurse"])
    await directory.add_employee("bob", "Bob Nurse", department_id="nursing",
                                 manager_id="nurse_lead", roles=["nurse"])
    await directory.add_employee("carol", "Carol Reception", department_id="front_desk",
                                 manager_id="director", roles=["receptionist"])
    await directory.add_employee("hr_head", "Harriet Head", department_id="hr",
                                 manager_id="director", roles=["hr_manager"])
    await directory.add_employee("hr_officer1", "Oscar Officer", department_id="hr",
                                 manager_id="hr_head", roles=["hr_officer"])
    await directory.add_employee("hr_officer2", "Olive Officer", department_id="hr",
                                 manager_id="hr_head", roles=["hr_officer"])


def build_definition(code, steps, entity_type="leave_request", **kwargs):
    """Unsaved definition; the registry assigns id, timestamps and version"""
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    kwargs.setdefault("name", code.replace("_", " ").title())
    return WorkflowDefinition(
        id=code,
        created_at=created,
        updated_at=created,
        code=code,
        entity_type=entity_type,
        steps=steps,
        **kwargs
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    """Create async in-memory storage instance"""
    return AsyncInMemoryStorage()


@pytest_asyncio.fixture
async def directory(storage):
    directory = StorageDirectory(storage)
    await seed_directory(directory)
    return directory


@pytest.fixture
def config():
    return WorkflowConfig(
        storage_type="memory",
        max_conflict_retries=5,
        max_escalation_level=1,
        reminder_interval_hours=24,
        allow_self_approval=False,
        default_rejection_policy="terminate",
        delegation_cache_ttl_seconds=30,
        notification_webhook_url="",
        multi_tenant=False,
    )


@pytest.fixture
def outbox():
    return RecordingProvider()


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def published(events):
    """Every domain event the engine publishes"""
    received = []
    events.subscribe_all(received.append)
    return received


@pytest.fixture
def engine(storage, directory, config, outbox, events, published, clock):
    """Create workflow engine for testing"""
    notifier = WorkflowNotifier([outbox], timeout=1.0)
    return WorkflowEngine(storage, directory, config, notifier=notifier, events=events, clock=clock)


@pytest.fixture
def definition_factory():
    return build_definition


@pytest_asyncio.fixture
async def leave_definition(engine):
    """LEAVE_APPROVAL: the initiator's manager, then the HR manager"""
    definition = build_definition("LEAVE_APPROVAL", [
        WorkflowStep(sequence=1, name="Manager Approval",
                     approver=ExpressionApprover("initiator.manager"),
                     escalation_hours=24, escalation_role_id="clinic_director"),
        WorkflowStep(sequence=2, name="HR Approval", approver=RoleApprover("hr_manager")),
    ], name="Leave Approval", sla_hours=72)
    return await engine.create_definition(definition)


@pytest_asyncio.fixture
async def leave_instance(engine, leave_definition):
    """Leave request 42 started by alice, waiting on nurse_lead"""
    return await engine.start_workflow(
        "LEAVE_APPROVAL", "leave_request", "42", "LR-42", "Family event",
        initiated_by="alice", context={"days": 3},
    )
