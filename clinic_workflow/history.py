"""
Workflow History Module

Hash-chained, append-only history per workflow instance. Entries are staged
against the in-memory instance (which carries the chain head) and persisted
in the same atomic block as the instance write, so a state change and its
history entry always commit together. Replaying an instance's history
reconstructs its status, current step and live tasks.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
import uuid

from .async_storage import AsyncStorageInterface
from .instances import WorkflowInstance, WorkflowStatus
from .storage import StorageRecord, parse_datetime, to_jsonable


class HistoryAction(Enum):
    """Accepted transitions recorded in history"""
    STARTED = "started"
    STEP_ACTIVATED = "step_activated"
    TASK_ASSIGNED = "task_assigned"
    TASK_CLAIMED = "task_claimed"
    TASK_UNCLAIMED = "task_unclaimed"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    ESCALATED = "escalated"
    INFO_REQUESTED = "info_requested"
    INFO_PROVIDED = "info_provided"
    TASK_CANCELLED = "task_cancelled"
    STEP_APPROVED = "step_approved"
    STEP_REJECTED = "step_rejected"
    STEP_SKIPPED = "step_skipped"
    STEP_NOTIFIED = "step_notified"
    RETURNED_TO_STEP = "returned_to_step"
    WORKFLOW_APPROVED = "workflow_approved"
    WORKFLOW_REJECTED = "workflow_rejected"
    WORKFLOW_CANCELLED = "workflow_cancelled"


DECISION_ACTIONS = frozenset({HistoryAction.APPROVED, HistoryAction.REJECTED})

# Actions that end a task row
_TASK_CLOSING_ACTIONS = frozenset({
    HistoryAction.APPROVED,
    HistoryAction.REJECTED,
    HistoryAction.DELEGATED,
    HistoryAction.ESCALATED,
    HistoryAction.TASK_CANCELLED,
})

_TERMINAL_ACTIONS = {
    HistoryAction.WORKFLOW_APPROVED: WorkflowStatus.APPROVED,
    HistoryAction.WORKFLOW_REJECTED: WorkflowStatus.REJECTED,
    HistoryAction.WORKFLOW_CANCELLED: WorkflowStatus.CANCELLED,
}


@dataclass
class WorkflowHistoryEntry(StorageRecord):
    """Immutable history entry chained to its predecessor by SHA-256"""
    instance_id: str
    sequence_no: int
    action: HistoryAction
    occurred_at: datetime
    actor_id: Optional[str] = None
    step_sequence: Optional[int] = None
    step_name: Optional[str] = None
    task_id: Optional[str] = None
    comments: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    current_hash: str = ""

    @property
    def is_decision(self) -> bool:
        return self.action in DECISION_ACTIONS

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'instance_id': self.instance_id,
            'sequence_no': self.sequence_no,
            'action': self.action.value,
            'occurred_at': self.occurred_at.isoformat(),
            'actor_id': self.actor_id,
            'step_sequence': self.step_sequence,
            'step_name': self.step_name,
            'task_id': self.task_id,
            'comments': self.comments,
            'metadata': self.metadata,
            'previous_hash': self.previous_hash,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'instance_id': self.instance_id,
            'sequence_no': self.sequence_no,
            'action': self.action.value,
            'occurred_at': self.occurred_at.isoformat(),
            'actor_id': self.actor_id,
            'step_sequence': self.step_sequence,
            'step_name': self.step_name,
            'task_id': self.task_id,
            'comments': self.comments,
            'metadata': self.metadata,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowHistoryEntry':
        return cls(
            **cls.base_fields(data),
            instance_id=data['instance_id'],
            sequence_no=data['sequence_no'],
            action=HistoryAction(data['action']),
            occurred_at=parse_datetime(data['occurred_at']),
            actor_id=data.get('actor_id'),
            step_sequence=data.get('step_sequence'),
            step_name=data.get('step_name'),
            task_id=data.get('task_id'),
            comments=data.get('comments'),
            metadata=data.get('metadata') or {},
            previous_hash=data.get('previous_hash', ''),
            current_hash=data.get('current_hash', ''),
        )


class HistoryRecorder:
    """Append-only history store"""

    TABLE = "workflow_history"

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    @staticmethod
    def stage(instance: WorkflowInstance, action: HistoryAction, at: datetime,
              actor_id: Optional[str] = None, step_sequence: Optional[int] = None,
              task_id: Optional[str] = None, comments: Optional[str] = None,
              metadata: Optional[Dict[str, Any]] = None) -> WorkflowHistoryEntry:
        """
        Build the next chained entry and advance the chain head on the instance.

        Nothing is written here; the caller persists staged entries after the
        instance compare-and-save succeeds.
        """
        step = instance.get_step(step_sequence) if step_sequence is not None else None
        entry = WorkflowHistoryEntry(
            id=str(uuid.uuid4()),
            created_at=at,
            updated_at=at,
            instance_id=instance.id,
            sequence_no=instance.history_count + 1,
            action=action,
            occurred_at=at,
            actor_id=actor_id,
            step_sequence=step_sequence,
            step_name=step.name if step else None,
            task_id=task_id,
            comments=comments,
            metadata=to_jsonable(metadata or {}),
            previous_hash=instance.last_history_hash,
        )
        entry.current_hash = entry.calculate_hash()
        instance.history_count = entry.sequence_no
        instance.last_history_hash = entry.current_hash
        return entry

    async def persist(self, entries: List[WorkflowHistoryEntry]) -> None:
        for entry in entries:
            created = await self.storage.compare_and_save(
                self.TABLE, entry.id, entry.to_dict(), None
            )
            if not created:
                raise RuntimeError(f"History entry {entry.id} already exists")

    async def get_history(self, instance_id: str) -> List[WorkflowHistoryEntry]:
        records = await self.storage.find(self.TABLE, {'instance_id': instance_id})
        entries = [WorkflowHistoryEntry.from_dict(r) for r in records]
        entries.sort(key=lambda e: e.sequence_no)
        return entries

    async def get_entries_between(self, start: datetime, end: datetime) -> List[WorkflowHistoryEntry]:
        records = await self.storage.load_all(self.TABLE)
        entries = [WorkflowHistoryEntry.from_dict(r) for r in records]
        entries = [e for e in entries if start <= e.occurred_at <= end]
        entries.sort(key=lambda e: (e.occurred_at, e.instance_id, e.sequence_no))
        return entries

    async def verify_integrity(self, instance_id: str,
                               instance: Optional[WorkflowInstance] = None) -> Dict[str, Any]:
        """
        Verify hashes, chain links and sequence numbering of one instance's history.

        Returns:
            Dictionary with integrity check results
        """
        entries = await self.get_history(instance_id)
        return verify_chain(entries, instance)


def verify_chain(entries: List[WorkflowHistoryEntry],
                 instance: Optional[WorkflowInstance] = None) -> Dict[str, Any]:
    result = {
        'valid': True,
        'total_entries': len(entries),
        'hash_errors': [],
        'chain_breaks': [],
        'sequence_gaps': [],
    }

    previous_hash = ""
    for position, entry in enumerate(entries, start=1):
        if not entry.verify_hash():
            result['valid'] = False
            result['hash_errors'].append({
                'entry_id': entry.id,
                'sequence_no': entry.sequence_no,
                'expected_hash': entry.calculate_hash(),
                'actual_hash': entry.current_hash,
            })
        if entry.previous_hash != previous_hash:
            result['valid'] = False
            result['chain_breaks'].append({
                'entry_id': entry.id,
                'sequence_no': entry.sequence_no,
                'expected_previous_hash': previous_hash,
                'actual_previous_hash': entry.previous_hash,
            })
        if entry.sequence_no != position:
            result['valid'] = False
            result['sequence_gaps'].append({'expected': position, 'actual': entry.sequence_no})
        previous_hash = entry.current_hash

    if instance is not None:
        head_matches = (
            instance.history_count == len(entries)
            and instance.last_history_hash == previous_hash
        )
        result['head_matches_instance'] = head_matches
        if not head_matches:
            result['valid'] = False
    return result


@dataclass
class ReplayedState:
    """Instance state derived purely from history"""
    status: Optional[WorkflowStatus] = None
    current_step_sequence: Optional[int] = None
    live_task_ids: Set[str] = field(default_factory=set)
    awaiting_info: bool = False
    step_outcomes: Dict[int, str] = field(default_factory=dict)


def replay_history(entries: List[WorkflowHistoryEntry]) -> ReplayedState:
    """Fold history entries, in sequence order, into the state they imply"""
    state = ReplayedState()
    for entry in sorted(entries, key=lambda e: e.sequence_no):
        action = entry.action
        if action == HistoryAction.STARTED:
            state.status = WorkflowStatus.IN_PROGRESS
        elif action == HistoryAction.STEP_ACTIVATED:
            state.current_step_sequence = entry.step_sequence
        elif action == HistoryAction.TASK_ASSIGNED:
            state.live_task_ids.add(entry.task_id)
        elif action in _TASK_CLOSING_ACTIONS:
            state.live_task_ids.discard(entry.task_id)
        elif action == HistoryAction.INFO_REQUESTED:
            state.awaiting_info = True
        elif action == HistoryAction.INFO_PROVIDED:
            state.awaiting_info = False
        elif action in (HistoryAction.STEP_APPROVED, HistoryAction.STEP_REJECTED,
                        HistoryAction.STEP_SKIPPED, HistoryAction.STEP_NOTIFIED):
            state.step_outcomes[entry.step_sequence] = action.value
        elif action in _TERMINAL_ACTIONS:
            state.status = _TERMINAL_ACTIONS[action]
            state.current_step_sequence = None
            state.awaiting_info = False
    return state
