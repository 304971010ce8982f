"""
Step Execution State Machine

One WorkflowTask row exists per (instance, step activation, approver). Rows
move through

    assigned --> approved | rejected | delegated | escalated | cancelled
    assigned --> info_requested --> assigned | cancelled

Delegated and escalated rows are terminal for their holder; the orchestrator
spawns a fresh assigned row for the new holder so every hand-over stays
visible in the task list.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidTransitionError
from .storage import parse_datetime, serialize_datetime


class TaskStatus(Enum):
    """Status of a single task row"""
    ASSIGNED = "assigned"
    INFO_REQUESTED = "info_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


class TaskPriority(Enum):
    """Task priority, inherited from the instance"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.URGENT: 3,
}

LIVE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.INFO_REQUESTED})
DECISION_STATUSES = frozenset({TaskStatus.APPROVED, TaskStatus.REJECTED})

TRANSITIONS = {
    TaskStatus.ASSIGNED: frozenset({
        TaskStatus.APPROVED,
        TaskStatus.REJECTED,
        TaskStatus.DELEGATED,
        TaskStatus.ESCALATED,
        TaskStatus.INFO_REQUESTED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.INFO_REQUESTED: frozenset({
        TaskStatus.ASSIGNED,
        TaskStatus.CANCELLED,
    }),
}


@dataclass
class WorkflowTask:
    """Assignable unit of work derived from a step for one approver"""
    id: str
    step_sequence: int
    step_name: str
    activation: int
    status: TaskStatus
    assigned_at: datetime
    assignee_id: Optional[str] = None  # None while the task sits in a pool
    candidate_ids: List[str] = field(default_factory=list)
    department_id: Optional[str] = None
    due_at: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.NORMAL
    acted_at: Optional[datetime] = None
    acted_by: Optional[str] = None
    comments: Optional[str] = None
    delegated_from: Optional[str] = None
    escalated_from: Optional[str] = None
    escalation_level: int = 0
    parent_task_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    reminded_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_pooled(self) -> bool:
        return len(self.candidate_ids) > 1

    @property
    def is_decided(self) -> bool:
        return self.status in DECISION_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return self.status == TaskStatus.ASSIGNED and self.due_at is not None and self.due_at <= now

    def can_act(self, employee_id: str) -> bool:
        """True when employee_id may decide this task right now"""
        return self.status == TaskStatus.ASSIGNED and self.assignee_id == employee_id

    def can_claim(self, employee_id: str) -> bool:
        return self.is_live and self.assignee_id is None and employee_id in self.candidate_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'step_sequence': self.step_sequence,
            'step_name': self.step_name,
            'activation': self.activation,
            'status': self.status.value,
            'assigned_at': serialize_datetime(self.assigned_at),
            'assignee_id': self.assignee_id,
            'candidate_ids': list(self.candidate_ids),
            'department_id': self.department_id,
            'due_at': serialize_datetime(self.due_at),
            'priority': self.priority.value,
            'acted_at': serialize_datetime(self.acted_at),
            'acted_by': self.acted_by,
            'comments': self.comments,
            'delegated_from': self.delegated_from,
            'escalated_from': self.escalated_from,
            'escalation_level': self.escalation_level,
            'parent_task_id': self.parent_task_id,
            'claimed_at': serialize_datetime(self.claimed_at),
            'reminded_at': serialize_datetime(self.reminded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTask':
        return cls(
            id=data['id'],
            step_sequence=data['step_sequence'],
            step_name=data['step_name'],
            activation=data['activation'],
            status=TaskStatus(data['status']),
            assigned_at=parse_datetime(data['assigned_at']),
            assignee_id=data.get('assignee_id'),
            candidate_ids=data.get('candidate_ids', []),
            department_id=data.get('department_id'),
            due_at=parse_datetime(data.get('due_at')),
            priority=TaskPriority(data.get('priority', TaskPriority.NORMAL.value)),
            acted_at=parse_datetime(data.get('acted_at')),
            acted_by=data.get('acted_by'),
            comments=data.get('comments'),
            delegated_from=data.get('delegated_from'),
            escalated_from=data.get('escalated_from'),
            escalation_level=data.get('escalation_level', 0),
            parent_task_id=data.get('parent_task_id'),
            claimed_at=parse_datetime(data.get('claimed_at')),
            reminded_at=parse_datetime(data.get('reminded_at')),
        )


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(task: WorkflowTask, target: TaskStatus, at: datetime,
               actor_id: Optional[str] = None, comments: Optional[str] = None) -> WorkflowTask:
    """
    Move a task to target, stamping who acted and when.

    Raises:
        InvalidTransitionError: if the move is not in TRANSITIONS
    """
    if not can_transition(task.status, target):
        raise InvalidTransitionError(task.status.value, target.value)

    task.status = target
    if target == TaskStatus.ASSIGNED:
        # Resuming after more information was supplied
        task.acted_at = None
        task.acted_by = None
        return task
    task.acted_at = at
    task.acted_by = actor_id
    if comments is not None:
        task.comments = comments
    return task
