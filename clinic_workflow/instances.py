"""
Workflow Instance Module

A WorkflowInstance embeds its step snapshot and every task row it ever
created. The whole document is written with a version compare-and-save, so
two actors touching the same instance can never both succeed against the
same state. Auxiliary tables index tasks by id and guard the
one-active-instance-per-entity rule.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from .async_storage import AsyncStorageInterface
from .definitions import WorkflowStep
from .storage import StorageRecord, parse_datetime, serialize_datetime, utc_now
from .tasks import LIVE_STATUSES, TaskPriority, WorkflowTask

logger = logging.getLogger("clinic_workflow.instances")


class WorkflowStatus(Enum):
    """Status of an entire workflow instance"""
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != WorkflowStatus.IN_PROGRESS


@dataclass
class WorkflowInstance(StorageRecord):
    """Running workflow instance"""
    workflow_code: str
    definition_version: int
    workflow_name: str
    entity_type: str
    entity_id: str
    entity_reference: str
    initiated_by: str
    status: WorkflowStatus
    started_at: datetime
    steps: List[WorkflowStep]
    allow_parallel_approval: bool = False
    require_all_approvers: bool = False
    rejection_policy: str = "terminate"
    initiator_comments: Optional[str] = None
    department_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.NORMAL
    tasks: List[WorkflowTask] = field(default_factory=list)
    current_step_sequence: Optional[int] = None
    activation_count: int = 0
    # candidates still waiting their turn in a one-at-a-time, all-must-approve step
    queued_approvers: List[Dict[str, Optional[str]]] = field(default_factory=list)
    awaiting_info: bool = False
    info_requested_by: Optional[str] = None
    sla_due_at: Optional[datetime] = None
    sla_breached_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    version: int = 0
    history_count: int = 0
    last_history_hash: str = ""

    def get_step(self, sequence: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.sequence == sequence:
                return step
        return None

    def next_step(self, after_sequence: Optional[int]) -> Optional[WorkflowStep]:
        following = [s for s in self.steps if after_sequence is None or s.sequence > after_sequence]
        return min(following, key=lambda s: s.sequence) if following else None

    def get_task(self, task_id: str) -> Optional[WorkflowTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def live_tasks(self) -> List[WorkflowTask]:
        return [t for t in self.tasks if t.status in LIVE_STATUSES]

    def activation_tasks(self, step_sequence: int, activation: int) -> List[WorkflowTask]:
        return [
            t for t in self.tasks
            if t.step_sequence == step_sequence and t.activation == activation
        ]

    def current_tasks(self) -> List[WorkflowTask]:
        """Every row of the step activation in progress"""
        if self.current_step_sequence is None:
            return []
        return self.activation_tasks(self.current_step_sequence, self.activation_count)

    def refresh_current_step(self) -> Optional[int]:
        """Recompute the cached step pointer from the live task rows"""
        live = self.live_tasks()
        if live:
            self.current_step_sequence = live[0].step_sequence
        elif self.status.is_terminal:
            self.current_step_sequence = None
        return self.current_step_sequence

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'workflow_code': self.workflow_code,
            'definition_version': self.definition_version,
            'workflow_name': self.workflow_name,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'entity_reference': self.entity_reference,
            'initiated_by': self.initiated_by,
            'status': self.status.value,
            'started_at': serialize_datetime(self.started_at),
            'steps': [s.to_dict() for s in self.steps],
            'allow_parallel_approval': self.allow_parallel_approval,
            'require_all_approvers': self.require_all_approvers,
            'rejection_policy': self.rejection_policy,
            'initiator_comments': self.initiator_comments,
            'department_id': self.department_id,
            'context': self.context,
            'priority': self.priority.value,
            'tasks': [t.to_dict() for t in self.tasks],
            'current_step_sequence': self.current_step_sequence,
            'activation_count': self.activation_count,
            'queued_approvers': [dict(q) for q in self.queued_approvers],
            'awaiting_info': self.awaiting_info,
            'info_requested_by': self.info_requested_by,
            'sla_due_at': serialize_datetime(self.sla_due_at),
            'sla_breached_at': serialize_datetime(self.sla_breached_at),
            'completed_at': serialize_datetime(self.completed_at),
            'completed_by': self.completed_by,
            'version': self.version,
            'history_count': self.history_count,
            'last_history_hash': self.last_history_hash,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        return cls(
            **cls.base_fields(data),
            workflow_code=data['workflow_code'],
            definition_version=data['definition_version'],
            workflow_name=data.get('workflow_name', data['workflow_code']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            entity_reference=data.get('entity_reference', ''),
            initiated_by=data['initiated_by'],
            status=WorkflowStatus(data['status']),
            started_at=parse_datetime(data['started_at']),
            steps=[WorkflowStep.from_dict(s) for s in data.get('steps', [])],
            allow_parallel_approval=data.get('allow_parallel_approval', False),
            require_all_approvers=data.get('require_all_approvers', False),
            rejection_policy=data.get('rejection_policy', 'terminate'),
            initiator_comments=data.get('initiator_comments'),
            department_id=data.get('department_id'),
            context=data.get('context') or {},
            priority=TaskPriority(data.get('priority', TaskPriority.NORMAL.value)),
            tasks=[WorkflowTask.from_dict(t) for t in data.get('tasks', [])],
            current_step_sequence=data.get('current_step_sequence'),
            activation_count=data.get('activation_count', 0),
            queued_approvers=data.get('queued_approvers') or [],
            awaiting_info=data.get('awaiting_info', False),
            info_requested_by=data.get('info_requested_by'),
            sla_due_at=parse_datetime(data.get('sla_due_at')),
            sla_breached_at=parse_datetime(data.get('sla_breached_at')),
            completed_at=parse_datetime(data.get('completed_at')),
            completed_by=data.get('completed_by'),
            version=data.get('version', 0),
            history_count=data.get('history_count', 0),
            last_history_hash=data.get('last_history_hash', ''),
        )


class InstanceStore:
    """Persistence for instances, the task index and the active-entity guard"""

    TABLE = "workflow_instances"
    TASK_INDEX = "workflow_task_index"
    ACTIVE_ENTITIES = "workflow_active_entities"

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    async def load(self, instance_id: str) -> Optional[WorkflowInstance]:
        data = await self.storage.load(self.TABLE, instance_id)
        return WorkflowInstance.from_dict(data) if data else None

    async def insert(self, instance: WorkflowInstance) -> bool:
        instance.version = 1
        return await self.storage.compare_and_save(
            self.TABLE, instance.id, instance.to_dict(), None
        )

    async def save(self, instance: WorkflowInstance, expected_version: int) -> bool:
        """Write the instance only if nobody else wrote it since it was loaded"""
        instance.version = expected_version + 1
        instance.updated_at = utc_now()
        return await self.storage.compare_and_save(
            self.TABLE, instance.id, instance.to_dict(), expected_version
        )

    async def find(self, **filters) -> List[WorkflowInstance]:
        filters = {
            k: (v.value if isinstance(v, Enum) else v)
            for k, v in filters.items() if v is not None
        }
        records = await self.storage.find(self.TABLE, filters)
        instances = [WorkflowInstance.from_dict(r) for r in records]
        instances.sort(key=lambda i: (i.started_at, i.id))
        return instances

    async def count_for_workflow(self, workflow_code: str) -> int:
        return len(await self.storage.find(self.TABLE, {'workflow_code': workflow_code}))

    async def index_tasks(self, instance: WorkflowInstance, tasks: List[WorkflowTask]) -> None:
        for task in tasks:
            await self.storage.save(self.TASK_INDEX, task.id, {
                'id': task.id,
                'instance_id': instance.id,
            })

    async def instance_id_for_task(self, task_id: str) -> Optional[str]:
        data = await self.storage.load(self.TASK_INDEX, task_id)
        return data['instance_id'] if data else None

    @staticmethod
    def _entity_key(entity_type: str, entity_id: str) -> str:
        return f"{entity_type}:{entity_id}"

    async def acquire_entity(self, entity_type: str, entity_id: str,
                             instance_id: str) -> Optional[str]:
        """
        Reserve the entity for instance_id.

        Returns None on success, or the id of the in-progress instance that
        already holds the entity. Guards left behind by finished instances
        are taken over.
        """
        key = self._entity_key(entity_type, entity_id)
        record = {'id': key, 'instance_id': instance_id, 'version': 1}
        while True:
            if await self.storage.compare_and_save(self.ACTIVE_ENTITIES, key, record, None):
                return None
            existing = await self.storage.load(self.ACTIVE_ENTITIES, key)
            if existing is None:
                continue
            holder = await self.load(existing['instance_id'])
            if holder and holder.status == WorkflowStatus.IN_PROGRESS:
                return holder.id
            logger.warning("Replacing stale entity guard %s held by %s",
                           key, existing['instance_id'])
            record['version'] = existing.get('version', 1) + 1
            if await self.storage.compare_and_save(
                self.ACTIVE_ENTITIES, key, record, existing.get('version', 1)
            ):
                return None

    async def release_entity(self, entity_type: str, entity_id: str, instance_id: str) -> None:
        key = self._entity_key(entity_type, entity_id)
        existing = await self.storage.load(self.ACTIVE_ENTITIES, key)
        if existing and existing['instance_id'] == instance_id:
            await self.storage.delete(self.ACTIVE_ENTITIES, key)
