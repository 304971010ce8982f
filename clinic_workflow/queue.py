"""
Task Queue Module

Read projections over live task rows (personal inbox, department queue) and
the claim/unclaim operations for pooled tasks. Claims go through the engine's
compare-and-save mutation path, so of two concurrent claims exactly one wins.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .definitions import StepType
from .exceptions import AlreadyClaimedError, NotAssignedError, StaleTaskError, TaskNotFoundError
from .history import HistoryAction
from .instances import WorkflowInstance, WorkflowStatus
from .notifications import NotificationType
from .storage import serialize_datetime
from .tasks import TaskPriority, TaskStatus, WorkflowTask


@dataclass
class TaskFilter:
    """Optional narrowing of a task listing"""
    status: Optional[TaskStatus] = None
    workflow_code: Optional[str] = None
    entity_type: Optional[str] = None
    step_type: Optional[StepType] = None
    priority: Optional[TaskPriority] = None
    overdue_only: bool = False
    include_claimable: bool = True


@dataclass
class TaskView:
    """A live task joined with the instance it belongs to"""
    task_id: str
    instance_id: str
    workflow_code: str
    workflow_name: str
    entity_type: str
    entity_id: str
    entity_reference: str
    initiated_by: str
    step_sequence: int
    step_name: str
    step_type: StepType
    status: TaskStatus
    assignee_id: Optional[str]
    candidate_ids: List[str] = field(default_factory=list)
    department_id: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL
    assigned_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    is_overdue: bool = False
    is_claimable: bool = False
    delegated_from: Optional[str] = None
    escalated_from: Optional[str] = None
    escalation_level: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'task_id': self.task_id,
            'instance_id': self.instance_id,
            'workflow_code': self.workflow_code,
            'workflow_name': self.workflow_name,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'entity_reference': self.entity_reference,
            'initiated_by': self.initiated_by,
            'step_sequence': self.step_sequence,
            'step_name': self.step_name,
            'step_type': self.step_type.value,
            'status': self.status.value,
            'assignee_id': self.assignee_id,
            'candidate_ids': list(self.candidate_ids),
            'department_id': self.department_id,
            'priority': self.priority.value,
            'assigned_at': serialize_datetime(self.assigned_at),
            'due_at': serialize_datetime(self.due_at),
            'is_overdue': self.is_overdue,
            'is_claimable': self.is_claimable,
            'delegated_from': self.delegated_from,
            'escalated_from': self.escalated_from,
            'escalation_level': self.escalation_level,
        }


def _sort_key(view: TaskView) -> Tuple[int, bool, datetime, datetime]:
    # Highest priority first, then earliest due; undated tasks last
    return (-view.priority.rank, view.due_at is None, view.due_at or view.assigned_at,
            view.assigned_at)


class TaskQueue:
    """Inbox and department queue projections plus pooled-task claiming"""

    def __init__(self, engine):
        self.engine = engine

    async def get_my_tasks(self, user_id: str,
                           task_filter: Optional[TaskFilter] = None) -> List[TaskView]:
        """Live tasks assigned to user_id, plus unclaimed pools they may claim"""
        task_filter = task_filter or TaskFilter()
        now = self.engine.clock()
        views = []
        for instance, task in await self._live_rows():
            mine = task.assignee_id == user_id
            claimable = task.can_claim(user_id)
            if not mine and not (claimable and task_filter.include_claimable):
                continue
            views.append(self._view(instance, task, now, claimable))
        return self._apply(views, task_filter)

    async def get_department_tasks(self, department_id: str,
                                   task_filter: Optional[TaskFilter] = None) -> List[TaskView]:
        """Live tasks owned by a department, claimed or not"""
        task_filter = task_filter or TaskFilter()
        now = self.engine.clock()
        views = [
            self._view(instance, task, now, task.assignee_id is None)
            for instance, task in await self._live_rows()
            if (task.department_id or instance.department_id) == department_id
        ]
        if not task_filter.include_claimable:
            views = [v for v in views if v.assignee_id is not None]
        return self._apply(views, task_filter)

    async def claim_task(self, task_id: str, claimant_id: str) -> WorkflowTask:
        """
        Take a pooled task. The first claim wins.

        Raises:
            TaskNotFoundError: unknown task id
            AlreadyClaimedError: someone else holds the task
            NotAssignedError: claimant is not a candidate
            StaleTaskError: the task is no longer open
        """
        instance_id = await self._instance_id(task_id)

        async def operation(instance, effects, now):
            task = self._open_task(instance, task_id)
            if task.assignee_id is not None:
                raise AlreadyClaimedError(task_id, task.assignee_id)
            if claimant_id not in task.candidate_ids:
                raise NotAssignedError(f"{claimant_id} is not a candidate for task {task_id}",
                                       claimant_id)
            task.assignee_id = claimant_id
            task.claimed_at = now
            self.engine._record(instance, effects, HistoryAction.TASK_CLAIMED, now,
                                claimant_id, task)
            return task

        _, task = await self.engine.mutate(instance_id, operation, action="claim_task",
                                           actor_id=claimant_id, task_id=task_id)
        return task

    async def unclaim_task(self, task_id: str, actor_id: str) -> WorkflowTask:
        """Return a claimed pooled task to its candidates"""
        instance_id = await self._instance_id(task_id)

        async def operation(instance, effects, now):
            task = self._open_task(instance, task_id)
            if task.assignee_id != actor_id or task.claimed_at is None:
                raise NotAssignedError(f"{actor_id} has not claimed task {task_id}", actor_id)
            if task.status != TaskStatus.ASSIGNED:
                raise StaleTaskError(f"Task {task_id} is {task.status.value}", instance.id, task_id)
            task.assignee_id = None
            task.claimed_at = None
            self.engine._record(instance, effects, HistoryAction.TASK_UNCLAIMED, now, actor_id, task)
            others = [c for c in task.candidate_ids if c != actor_id]
            effects.notify(NotificationType.TASK_AVAILABLE, others,
                           **self.engine._variables(instance, task))
            return task

        _, task = await self.engine.mutate(instance_id, operation, action="unclaim_task",
                                           actor_id=actor_id, task_id=task_id)
        return task

    async def _instance_id(self, task_id: str) -> str:
        instance_id = await self.engine.instances.instance_id_for_task(task_id)
        if instance_id is None:
            raise TaskNotFoundError(task_id)
        return instance_id

    @staticmethod
    def _open_task(instance: WorkflowInstance, task_id: str) -> WorkflowTask:
        task = instance.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if not task.is_live or instance.status.is_terminal:
            raise StaleTaskError(f"Task {task_id} is already {task.status.value}",
                                 instance.id, task_id)
        return task

    async def _live_rows(self) -> List[Tuple[WorkflowInstance, WorkflowTask]]:
        instances = await self.engine.instances.find(status=WorkflowStatus.IN_PROGRESS)
        return [(instance, task) for instance in instances for task in instance.live_tasks()]

    @staticmethod
    def _view(instance: WorkflowInstance, task: WorkflowTask, now: datetime,
              claimable: bool) -> TaskView:
        step = instance.get_step(task.step_sequence)
        return TaskView(
            task_id=task.id,
            instance_id=instance.id,
            workflow_code=instance.workflow_code,
            workflow_name=instance.workflow_name,
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            entity_reference=instance.entity_reference,
            initiated_by=instance.initiated_by,
            step_sequence=task.step_sequence,
            step_name=task.step_name,
            step_type=step.step_type if step else StepType.APPROVAL,
            status=task.status,
            assignee_id=task.assignee_id,
            candidate_ids=list(task.candidate_ids),
            department_id=task.department_id or instance.department_id,
            priority=task.priority,
            assigned_at=task.assigned_at,
            due_at=task.due_at,
            is_overdue=task.is_overdue(now),
            is_claimable=claimable,
            delegated_from=task.delegated_from,
            escalated_from=task.escalated_from,
            escalation_level=task.escalation_level,
        )

    @staticmethod
    def _apply(views: List[TaskView], task_filter: TaskFilter) -> List[TaskView]:
        if task_filter.status is not None:
            views = [v for v in views if v.status == task_filter.status]
        if task_filter.workflow_code:
            views = [v for v in views if v.workflow_code == task_filter.workflow_code]
        if task_filter.entity_type:
            views = [v for v in views if v.entity_type == task_filter.entity_type]
        if task_filter.step_type is not None:
            views = [v for v in views if v.step_type == task_filter.step_type]
        if task_filter.priority is not None:
            views = [v for v in views if v.priority == task_filter.priority]
        if task_filter.overdue_only:
            views = [v for v in views if v.is_overdue]
        views.sort(key=_sort_key)
        return views
