"""
Reporting Module

Read-only reports over workflow instances and their history: a per-instance
audit report with a step timeline and integrity check, date-range statistics
per workflow, and a personal dashboard for approvers and initiators.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import csv
import io
import json

from .history import HistoryAction, WorkflowHistoryEntry, replay_history, verify_chain
from .instances import WorkflowInstance, WorkflowStatus
from .storage import serialize_datetime, to_jsonable


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


_DESCRIPTIONS = {
    HistoryAction.STARTED: "{actor} started the workflow",
    HistoryAction.STEP_ACTIVATED: "Step {step} activated",
    HistoryAction.TASK_ASSIGNED: "Task assigned to {assignee}",
    HistoryAction.TASK_CLAIMED: "{actor} claimed the task",
    HistoryAction.TASK_UNCLAIMED: "{actor} returned the task to the pool",
    HistoryAction.APPROVED: "{actor} approved",
    HistoryAction.REJECTED: "{actor} rejected",
    HistoryAction.DELEGATED: "{actor} delegated to {delegate}",
    HistoryAction.ESCALATED: "Task escalated to {escalated_to}",
    HistoryAction.INFO_REQUESTED: "{actor} requested more information",
    HistoryAction.INFO_PROVIDED: "{actor} provided more information",
    HistoryAction.TASK_CANCELLED: "Task cancelled",
    HistoryAction.STEP_APPROVED: "Step {step} approved",
    HistoryAction.STEP_REJECTED: "Step {step} rejected",
    HistoryAction.STEP_SKIPPED: "Step {step} skipped, condition not met",
    HistoryAction.STEP_NOTIFIED: "Step {step} notified {recipients}",
    HistoryAction.RETURNED_TO_STEP: "Returned to step {step}",
    HistoryAction.WORKFLOW_APPROVED: "Workflow approved",
    HistoryAction.WORKFLOW_REJECTED: "Workflow rejected",
    HistoryAction.WORKFLOW_CANCELLED: "{actor} cancelled the workflow",
}

_STEP_RESOLUTIONS = {
    HistoryAction.STEP_APPROVED: "approved",
    HistoryAction.STEP_REJECTED: "rejected",
    HistoryAction.STEP_SKIPPED: "skipped",
    HistoryAction.STEP_NOTIFIED: "notified",
}


def describe_entry(entry: WorkflowHistoryEntry) -> str:
    """Human-readable line for a history entry"""
    metadata = entry.metadata or {}
    assignee = metadata.get("assignee_id") or "pool " + ", ".join(metadata.get("candidate_ids") or [])
    text = _DESCRIPTIONS[entry.action].format(
        actor=entry.actor_id or "system",
        step=entry.step_name or entry.step_sequence,
        assignee=assignee,
        delegate=metadata.get("delegate_to", ""),
        escalated_to=", ".join(metadata.get("escalated_to") or []),
        recipients=", ".join(metadata.get("recipients") or []),
    )
    if entry.comments:
        text += f": {entry.comments}"
    return text


def _hours_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return round((end - start).total_seconds() / 3600, 2)


@dataclass
class StepTimeline:
    """Everything that happened to one step of an instance"""
    sequence: int
    name: str
    outcome: Optional[str] = None
    activated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    activations: int = 0
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def duration_hours(self) -> Optional[float]:
        return _hours_between(self.activated_at, self.resolved_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'name': self.name,
            'outcome': self.outcome,
            'activated_at': serialize_datetime(self.activated_at),
            'resolved_at': serialize_datetime(self.resolved_at),
            'duration_hours': self.duration_hours,
            'activations': self.activations,
            'events': self.events,
        }


@dataclass
class WorkflowAuditReport:
    """Audit trail of one instance, rendered for humans and checked for tampering"""
    instance_id: str
    workflow_code: str
    workflow_name: str
    entity_type: str
    entity_id: str
    entity_reference: str
    initiated_by: str
    status: WorkflowStatus
    started_at: datetime
    completed_at: Optional[datetime]
    steps: List[StepTimeline]
    timeline: List[Dict[str, Any]]
    integrity: Dict[str, Any]
    replay_consistent: bool
    generated_at: datetime

    @property
    def total_duration_hours(self) -> Optional[float]:
        return _hours_between(self.started_at, self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'workflow_code': self.workflow_code,
            'workflow_name': self.workflow_name,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'entity_reference': self.entity_reference,
            'initiated_by': self.initiated_by,
            'status': self.status.value,
            'started_at': serialize_datetime(self.started_at),
            'completed_at': serialize_datetime(self.completed_at),
            'total_duration_hours': self.total_duration_hours,
            'steps': [s.to_dict() for s in self.steps],
            'timeline': self.timeline,
            'integrity': to_jsonable(self.integrity),
            'replay_consistent': self.replay_consistent,
            'generated_at': serialize_datetime(self.generated_at),
        }


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


@dataclass
class Dashboard:
    """Personal summary for one employee"""
    user_id: str
    generated_at: datetime
    assigned_to_me: int = 0
    available_to_claim: int = 0
    overdue: int = 0
    due_today: int = 0
    my_open_requests: int = 0
    decided_last_7_days: int = 0
    delegations_given: int = 0
    delegations_received: int = 0
    next_tasks: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'generated_at': serialize_datetime(self.generated_at),
            'assigned_to_me': self.assigned_to_me,
            'available_to_claim': self.available_to_claim,
            'overdue': self.overdue,
            'due_today': self.due_today,
            'my_open_requests': self.my_open_requests,
            'decided_last_7_days': self.decided_last_7_days,
            'delegations_given': self.delegations_given,
            'delegations_received': self.delegations_received,
            'next_tasks': self.next_tasks,
        }


class WorkflowReporting:
    """Audit reports, statistics and dashboards"""

    DASHBOARD_TASK_LIMIT = 10

    def __init__(self, engine):
        self.engine = engine

    async def get_workflow_audit_report(self, instance_id: str) -> WorkflowAuditReport:
        """
        Build the step timeline of an instance from its history.

        The report also verifies the hash chain and checks that replaying the
        history reproduces the stored status and current step.
        """
        instance = await self.engine.get_instance(instance_id)
        entries = await self.engine.history.get_history(instance_id)

        steps: Dict[int, StepTimeline] = {
            s.sequence: StepTimeline(sequence=s.sequence, name=s.name) for s in instance.steps
        }
        timeline = []
        for entry in entries:
            row = {
                'sequence_no': entry.sequence_no,
                'occurred_at': serialize_datetime(entry.occurred_at),
                'action': entry.action.value,
                'actor_id': entry.actor_id,
                'step_sequence': entry.step_sequence,
                'task_id': entry.task_id,
                'comments': entry.comments,
                'description': describe_entry(entry),
            }
            timeline.append(row)
            step = steps.get(entry.step_sequence) if entry.step_sequence is not None else None
            if step is None:
                continue
            step.events.append(row)
            if entry.action == HistoryAction.STEP_ACTIVATED:
                step.activations += 1
                step.activated_at = entry.occurred_at
                step.resolved_at = None
                step.outcome = None
            elif entry.action in _STEP_RESOLUTIONS:
                step.outcome = _STEP_RESOLUTIONS[entry.action]
                step.resolved_at = entry.occurred_at
                if entry.action == HistoryAction.STEP_SKIPPED:
                    step.activated_at = entry.occurred_at

        replayed = replay_history(entries)
        live_ids = {t.id for t in instance.live_tasks()}
        replay_consistent = (
            replayed.status == instance.status
            and replayed.current_step_sequence == instance.current_step_sequence
            and replayed.live_task_ids == live_ids
        )

        return WorkflowAuditReport(
            instance_id=instance.id,
            workflow_code=instance.workflow_code,
            workflow_name=instance.workflow_name,
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            entity_reference=instance.entity_reference,
            initiated_by=instance.initiated_by,
            status=instance.status,
            started_at=instance.started_at,
            completed_at=instance.completed_at,
            steps=[steps[seq] for seq in sorted(steps)],
            timeline=timeline,
            integrity=verify_chain(entries, instance),
            replay_consistent=replay_consistent,
            generated_at=self.engine.clock(),
        )

    async def get_statistics(self, start: datetime, end: datetime,
                             workflow_code: Optional[str] = None) -> ReportResult:
        """
        Aggregate instances started between start and end, one row per workflow.

        Rates are fractions of decided instances (approved plus rejected);
        escalations count history entries inside the window.
        """
        instances = [
            i for i in await self.engine.instances.find(workflow_code=workflow_code)
            if start <= i.started_at <= end
        ]
        escalations: Dict[str, int] = {}
        codes_by_instance = {i.id: i.workflow_code for i in instances}
        for entry in await self.engine.history.get_entries_between(start, end):
            if entry.action == HistoryAction.ESCALATED and entry.instance_id in codes_by_instance:
                code = codes_by_instance[entry.instance_id]
                escalations[code] = escalations.get(code, 0) + 1

        grouped: Dict[str, List[WorkflowInstance]] = {}
        for instance in instances:
            grouped.setdefault(instance.workflow_code, []).append(instance)

        data = [
            self._statistics_row(code, grouped[code], escalations.get(code, 0))
            for code in sorted(grouped)
        ]
        totals = self._statistics_row(None, instances, sum(escalations.values()))
        totals.pop('workflow_code')

        return ReportResult(
            report_id="workflow_statistics",
            generated_at=self.engine.clock(),
            period_start=start,
            period_end=end,
            data=data,
            totals=totals,
            metadata={'row_count': len(data), 'workflow_code': workflow_code},
        )

    @staticmethod
    def _statistics_row(code: Optional[str], instances: List[WorkflowInstance],
                        escalations: int) -> Dict[str, Any]:
        counts = {status: 0 for status in WorkflowStatus}
        durations = []
        for instance in instances:
            counts[instance.status] += 1
            if instance.status in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED):
                durations.append(_hours_between(instance.started_at, instance.completed_at))

        decided = counts[WorkflowStatus.APPROVED] + counts[WorkflowStatus.REJECTED]
        return {
            'workflow_code': code,
            'total': len(instances),
            'in_progress': counts[WorkflowStatus.IN_PROGRESS],
            'approved': counts[WorkflowStatus.APPROVED],
            'rejected': counts[WorkflowStatus.REJECTED],
            'cancelled': counts[WorkflowStatus.CANCELLED],
            'approval_rate': round(counts[WorkflowStatus.APPROVED] / decided, 4) if decided else None,
            'average_completion_hours': round(sum(durations) / len(durations), 2) if durations else None,
            'escalations': escalations,
            'sla_breaches': sum(1 for i in instances if i.sla_breached_at is not None),
        }

    async def get_dashboard(self, user_id: str) -> Dashboard:
        now = self.engine.clock()
        tasks = await self.engine.queue.get_my_tasks(user_id)
        end_of_day = now.replace(hour=23, minute=59, second=59, microsecond=999999)
        week_ago = now - timedelta(days=7)

        dashboard = Dashboard(user_id=user_id, generated_at=now)
        for view in tasks:
            if view.assignee_id == user_id:
                dashboard.assigned_to_me += 1
            elif view.is_claimable:
                dashboard.available_to_claim += 1
            if view.is_overdue:
                dashboard.overdue += 1
            elif view.due_at is not None and view.due_at <= end_of_day:
                dashboard.due_today += 1
        dashboard.next_tasks = [v.to_dict() for v in tasks[:self.DASHBOARD_TASK_LIMIT]]

        dashboard.my_open_requests = len(await self.engine.instances.find(
            status=WorkflowStatus.IN_PROGRESS, initiated_by=user_id
        ))
        for instance in await self.engine.instances.find():
            dashboard.decided_last_7_days += sum(
                1 for t in instance.tasks
                if t.is_decided and t.acted_by == user_id and t.acted_at and t.acted_at >= week_ago
            )

        for delegation in await self.engine.delegations.get_active_delegations(user_id, now):
            if delegation.delegator_id == user_id:
                dashboard.delegations_given += 1
            else:
                dashboard.delegations_received += 1
        return dashboard

    def export_report(self, result: ReportResult,
                      format: ReportFormat) -> Union[Dict[str, Any], str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'generated_at': result.generated_at.isoformat(),
                'period_start': result.period_start.isoformat(),
                'period_end': result.period_end.isoformat(),
                'data': result.data,
                'totals': result.totals,
                'metadata': result.metadata,
            }

        elif format == ReportFormat.JSON:
            return json.dumps(self.export_report(result, ReportFormat.DICT), indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()
            if result.data:
                writer = csv.DictWriter(output, fieldnames=list(result.data[0].keys()))
                writer.writeheader()
                for row in result.data:
                    writer.writerow(row)
            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")
