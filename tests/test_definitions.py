"""
Tests for workflow definitions

Validation, versioning, activation and deletion of workflow templates, plus
condition matching for conditional steps.
"""

import pytest
import pytest_asyncio

from clinic_workflow.approvers import DepartmentApprover, ExpressionApprover, RoleApprover
from clinic_workflow.definitions import (
    StepType,
    WorkflowDefinition,
    WorkflowStep,
    matches_condition,
    validate_definition,
)
from clinic_workflow.exceptions import (
    DefinitionInUseError,
    InvalidDefinitionError,
    UnknownWorkflowCodeError,
)
from clinic_workflow.instances import WorkflowStatus


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


def approval(sequence, role="nurse_manager", **kwargs):
    return WorkflowStep(sequence=sequence, name=f"Step {sequence}",
                        approver=RoleApprover(role), **kwargs)


class TestDefinitionValidation:

    def test_valid_definition(self, definition_factory):
        validate_definition(definition_factory("LEAVE_APPROVAL", [approval(1), approval(2)]))

    @pytest.mark.parametrize("steps, kwargs, message", [
        ([], {}, "at least one step"),
        ([approval(1), approval(1)], {}, "unique"),
        ([approval(0)], {}, "positive"),
        ([approval(1)], {"rejection_policy": "shrug"}, "Unknown rejection policy"),
        ([approval(1)], {"sla_hours": 0}, "SLA hours"),
        ([approval(1, escalation_role_id="clinic_director")], {}, "requires escalation hours"),
        ([approval(1, escalation_hours=-1)], {}, "escalation hours must be positive"),
        ([WorkflowStep(sequence=1, name="Gate", step_type=StepType.CONDITIONAL,
                       approver=RoleApprover("nurse_manager"))], {}, "no condition"),
        ([approval(1, return_to_sequence=7)], {}, "unknown step 7"),
        ([WorkflowStep(sequence=1, name="Nobody")], {}, "no approver"),
    ])
    def test_invalid_definitions(self, definition_factory, steps, kwargs, message):
        with pytest.raises(InvalidDefinitionError) as exc_info:
            validate_definition(definition_factory("LEAVE_APPROVAL", steps, **kwargs))
        assert message in exc_info.value.message

    def test_notification_only_workflow_is_rejected(self, definition_factory):
        step = WorkflowStep(sequence=1, name="FYI", step_type=StepType.NOTIFICATION,
                            approver=DepartmentApprover("hr"))
        with pytest.raises(InvalidDefinitionError):
            validate_definition(definition_factory("STAFF_NOTICE", [step]))

    def test_malformed_expression_is_a_definition_error(self, definition_factory):
        step = WorkflowStep(sequence=1, name="Manager", approver=ExpressionApprover("boss"))
        with pytest.raises(InvalidDefinitionError):
            validate_definition(definition_factory("LEAVE_APPROVAL", [step]))

    def test_entity_type_required(self, definition_factory):
        with pytest.raises(InvalidDefinitionError):
            validate_definition(definition_factory("LEAVE_APPROVAL", [approval(1)], entity_type=""))


class TestDefinitionRegistry:

    @pytest.mark.asyncio
    async def test_create_assigns_identity_and_version(self, engine, definition_factory, clock):
        definition = await engine.create_definition(
            definition_factory("PURCHASE_REQUISITION", [approval(1)], entity_type="requisition")
        )

        assert definition.id == "PURCHASE_REQUISITION"
        assert definition.version == 1
        assert definition.created_at == clock.now

        stored = await engine.get_definition("PURCHASE_REQUISITION")
        assert stored.entity_type == "requisition"
        assert stored.steps[0].approver == RoleApprover("nurse_manager")

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self, engine, leave_definition, definition_factory):
        with pytest.raises(InvalidDefinitionError):
            await engine.create_definition(definition_factory("LEAVE_APPROVAL", [approval(1)]))

    @pytest.mark.asyncio
    async def test_list_definitions(self, engine, leave_definition, definition_factory):
        await engine.create_definition(
            definition_factory("PURCHASE_REQUISITION", [approval(1)], entity_type="requisition")
        )
        await engine.deactivate_definition("PURCHASE_REQUISITION")

        assert [d.code for d in await engine.list_definitions()] == ["LEAVE_APPROVAL", "PURCHASE_REQUISITION"]
        assert [d.code for d in await engine.list_definitions(active_only=True)] == ["LEAVE_APPROVAL"]
        assert [d.code for d in await engine.list_definitions(entity_type="requisition")] == [
            "PURCHASE_REQUISITION"
        ]

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, engine, leave_definition):
        updated = await engine.update_definition(
            "LEAVE_APPROVAL", {"sla_hours": 48, "description": "Annual and sick leave"}, "director"
        )
        assert updated.version == 2
        assert updated.sla_hours == 48
        assert (await engine.get_definition("LEAVE_APPROVAL")).description == "Annual and sick leave"

    @pytest.mark.asyncio
    async def test_update_accepts_step_dicts(self, engine, leave_definition):
        updated = await engine.update_definition("LEAVE_APPROVAL", {"steps": [
            {"sequence": 1, "name": "HR", "approver": {"kind": "role", "role_id": "hr_manager"}},
        ]})
        assert [s.name for s in updated.steps] == ["HR"]

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, engine, leave_definition):
        with pytest.raises(InvalidDefinitionError):
            await engine.update_definition("LEAVE_APPROVAL", {"code": "OTHER"})

    @pytest.mark.asyncio
    async def test_invalid_update_is_not_stored(self, engine, leave_definition):
        with pytest.raises(InvalidDefinitionError):
            await engine.update_definition("LEAVE_APPROVAL", {"steps": []})
        stored = await engine.get_definition("LEAVE_APPROVAL")
        assert stored.version == 1
        assert len(stored.steps) == 2

    @pytest.mark.asyncio
    async def test_update_unknown_code(self, engine):
        with pytest.raises(UnknownWorkflowCodeError):
            await engine.update_definition("NOPE", {"name": "Nope"})

    @pytest.mark.asyncio
    async def test_running_instance_keeps_its_snapshot(self, engine, leave_instance):
        await engine.update_definition("LEAVE_APPROVAL", {"steps": [
            WorkflowStep(sequence=1, name="Director Only", approver=RoleApprover("clinic_director")),
        ]})

        instance = await engine.get_instance(leave_instance.id)
        assert instance.definition_version == 1
        assert [s.name for s in instance.steps] == ["Manager Approval", "HR Approval"]

        instance = await engine.approve_step(leave_instance.id, "nurse_lead")
        assert instance.current_step_sequence == 2
        assert instance.current_tasks()[0].assignee_id == "hr_head"

    @pytest.mark.asyncio
    async def test_deactivate_and_activate(self, engine, leave_definition):
        deactivated = await engine.deactivate_definition("LEAVE_APPROVAL")
        assert deactivated.is_active is False
        assert deactivated.version == 2

        with pytest.raises(UnknownWorkflowCodeError):
            await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "1", initiated_by="alice")

        await engine.activate_definition("LEAVE_APPROVAL")
        instance = await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "1",
                                               initiated_by="alice")
        assert instance.status == WorkflowStatus.IN_PROGRESS
        assert instance.definition_version == 3

    @pytest.mark.asyncio
    async def test_delete_unused_definition(self, engine, leave_definition):
        assert await engine.delete_definition("LEAVE_APPROVAL") is True
        assert await engine.get_definition("LEAVE_APPROVAL") is None

    @pytest.mark.asyncio
    async def test_delete_definition_in_use(self, engine, leave_instance):
        with pytest.raises(DefinitionInUseError) as exc_info:
            await engine.delete_definition("LEAVE_APPROVAL")
        assert exc_info.value.instance_count == 1
        assert await engine.get_definition("LEAVE_APPROVAL") is not None

    @pytest.mark.asyncio
    async def test_delete_during_start_leaves_no_orphan(self, engine, leave_definition, monkeypatch):
        lookup = engine.directory.get_employee
        deleted = []

        async def delete_then_lookup(employee_id):
            # Definition vanishes after start_workflow has read it
            if not deleted:
                deleted.append(await engine.delete_definition("LEAVE_APPROVAL"))
            return await lookup(employee_id)

        monkeypatch.setattr(engine.directory, "get_employee", delete_then_lookup)

        with pytest.raises(UnknownWorkflowCodeError):
            await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "42", initiated_by="alice")

        assert deleted == [True]
        assert await engine.instances.count_for_workflow("LEAVE_APPROVAL") == 0
        assert await engine.get_definition("LEAVE_APPROVAL") is None

    @pytest.mark.asyncio
    async def test_delete_unknown_definition(self, engine):
        with pytest.raises(UnknownWorkflowCodeError):
            await engine.delete_definition("NOPE")


class TestSerialization:

    def test_definition_round_trip(self, definition_factory):
        definition = definition_factory("LEAVE_APPROVAL", [
            approval(2, escalation_hours=8, escalation_role_id="clinic_director"),
            WorkflowStep(sequence=1, name="Gate", step_type=StepType.CONDITIONAL,
                         approver=ExpressionApprover("initiator.manager"),
                         condition={"days_above": 5}),
        ], sla_hours=72, rejection_policy="return_to_previous")

        restored = WorkflowDefinition.from_dict(definition.to_dict())

        assert [s.sequence for s in restored.steps] == [1, 2]
        assert restored.steps[0].condition == {"days_above": 5}
        assert restored.steps[1].escalation_role_id == "clinic_director"
        assert restored.rejection_policy == "return_to_previous"
        assert restored.sla_hours == 72


class TestConditions:

    @pytest.mark.parametrize("condition, context, expected", [
        ({}, {}, True),
        ({"days_above": 5}, {"days": 7}, True),
        ({"days_above": 5}, {"days": 5}, False),
        ({"amount_below": "1000.00"}, {"amount": "999.99"}, True),
        ({"amount_below": 1000}, {"amount": 1500}, False),
        ({"amount_below": 1000}, {}, False),
        ({"amount_below": 1000}, {"amount": "lots"}, False),
        ({"leave_type": ["annual", "sick"]}, {"leave_type": "sick"}, True),
        ({"leave_type": ["annual", "sick"]}, {"leave_type": "unpaid"}, False),
        ({"urgent": True}, {"urgent": True}, True),
        ({"urgent": True}, {}, False),
        ({"urgent": True, "days_above": 2}, {"urgent": True, "days": 1}, False),
    ])
    def test_matches_condition(self, condition, context, expected):
        assert matches_condition(condition, context) is expected
