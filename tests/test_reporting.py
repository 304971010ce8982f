"""
Tests for workflow reporting

Audit reports with step timelines, date-range statistics with export, and
the personal dashboard.
"""

import json
import pytest
from datetime import timedelta

from clinic_workflow.history import HistoryRecorder
from clinic_workflow.instances import WorkflowStatus
from clinic_workflow.reporting import ReportFormat, describe_entry


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


class TestAuditReport:

    @pytest.mark.asyncio
    async def test_completed_workflow(self, engine, leave_instance, clock):
        clock.advance(hours=2)
        await engine.approve_step(leave_instance.id, "nurse_lead", "Covered")
        clock.advance(hours=3)
        await engine.approve_step(leave_instance.id, "hr_head")

        report = await engine.get_workflow_audit_report(leave_instance.id)

        assert report.status == WorkflowStatus.APPROVED
        assert report.integrity["valid"] is True
        assert report.replay_consistent is True
        assert report.total_duration_hours == 5.0

        manager, hr = report.steps
        assert (manager.name, manager.outcome, manager.duration_hours) == ("Manager Approval", "approved", 2.0)
        assert (hr.name, hr.outcome, hr.duration_hours) == ("HR Approval", "approved", 3.0)
        assert manager.activations == 1

        descriptions = [row["description"] for row in report.timeline]
        assert descriptions[0] == "alice started the workflow: Family event"
        assert "nurse_lead approved: Covered" in descriptions
        assert descriptions[-1] == "Workflow approved"

    @pytest.mark.asyncio
    async def test_in_progress_workflow(self, engine, leave_instance):
        report = await engine.get_workflow_audit_report(leave_instance.id)

        assert report.status == WorkflowStatus.IN_PROGRESS
        assert report.replay_consistent is True
        assert report.steps[0].outcome is None
        assert report.steps[1].activated_at is None

        data = report.to_dict()
        assert data["status"] == "in_progress"
        assert data["completed_at"] is None
        json.dumps(data)

    @pytest.mark.asyncio
    async def test_tampering_shows_in_report(self, engine, storage, leave_instance):
        history = await engine.get_workflow_history(leave_instance.id)
        record = await storage.load(HistoryRecorder.TABLE, history[0].id)
        record["comments"] = "Edited"
        await storage.save(HistoryRecorder.TABLE, history[0].id, record)

        report = await engine.get_workflow_audit_report(leave_instance.id)
        assert report.integrity["valid"] is False

    @pytest.mark.asyncio
    async def test_describe_delegation(self, engine, leave_instance):
        await engine.delegate_step(leave_instance.id, "nurse_lead", "bob", "Away")
        history = await engine.get_workflow_history(leave_instance.id)
        lines = [describe_entry(e) for e in history]
        assert "nurse_lead delegated to bob: Away" in lines
        assert "Task assigned to bob" in lines


class TestStatistics:

    @pytest.mark.asyncio
    async def test_statistics_per_workflow(self, engine, leave_definition, clock):
        start = clock.now

        approved = await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "1", initiated_by="alice")
        rejected = await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "2", initiated_by="bob")
        await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "3", initiated_by="bob")

        clock.advance(hours=4)
        await engine.approve_step(approved.id, "nurse_lead")
        await engine.approve_step(approved.id, "hr_head")
        await engine.reject_step(rejected.id, "nurse_lead")

        clock.advance(hours=21)
        await engine.process_overdue_steps()

        result = await engine.get_statistics(start, clock.now)

        [row] = result.data
        assert row["workflow_code"] == "LEAVE_APPROVAL"
        assert row["total"] == 3
        assert row["approved"] == 1
        assert row["rejected"] == 1
        assert row["in_progress"] == 1
        assert row["approval_rate"] == 0.5
        assert row["average_completion_hours"] == 4.0
        assert row["escalations"] == 1
        assert result.totals["total"] == 3
        assert "workflow_code" not in result.totals

    @pytest.mark.asyncio
    async def test_window_excludes_older_instances(self, engine, leave_instance, clock):
        clock.advance(days=2)
        result = await engine.get_statistics(clock.now, clock.now + timedelta(days=1))
        assert result.data == []
        assert result.totals["total"] == 0
        assert result.totals["approval_rate"] is None

    @pytest.mark.asyncio
    async def test_export(self, engine, leave_instance, clock):
        result = await engine.get_statistics(clock.now - timedelta(hours=1), clock.now)

        csv_text = engine.reporting.export_report(result, ReportFormat.CSV)
        header, line = csv_text.strip().splitlines()
        assert header.startswith("workflow_code,total,in_progress")
        assert line.startswith("LEAVE_APPROVAL,1,1")

        exported = json.loads(engine.reporting.export_report(result, ReportFormat.JSON))
        assert exported["report_id"] == "workflow_statistics"
        assert exported["data"][0]["total"] == 1

        with pytest.raises(ValueError):
            engine.reporting.export_report(result, "xml")


class TestDashboard:

    @pytest.mark.asyncio
    async def test_approver_dashboard(self, engine, leave_definition, clock):
        first = await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "1", initiated_by="alice")
        await engine.start_workflow("LEAVE_APPROVAL", "leave_request", "2", initiated_by="bob")
        await engine.approve_step(first.id, "nurse_lead")
        await engine.create_delegation("nurse_lead", "director", clock.now, clock.now + timedelta(days=1),
                                       workflow_codes=["PURCHASE_REQUISITION"])

        dashboard = await engine.get_dashboard("nurse_lead")

        assert dashboard.assigned_to_me == 1
        assert dashboard.decided_last_7_days == 1
        assert dashboard.delegations_given == 1
        assert dashboard.delegations_received == 0
        assert dashboard.due_today == 0
        assert [t["entity_id"] for t in dashboard.next_tasks] == ["2"]

    @pytest.mark.asyncio
    async def test_initiator_dashboard(self, engine, leave_instance, clock):
        clock.advance(hours=25)
        assert (await engine.get_dashboard("alice")).my_open_requests == 1
        manager = await engine.get_dashboard("nurse_lead")
        assert manager.overdue == 1
        assert manager.to_dict()["overdue"] == 1
