"""
Workflow Engine Module

Orchestrates workflow instances across their ordered steps: resolves
approvers, creates task rows, combines decisions into step outcomes, applies
the rejection policy and terminates instances. Every state change goes
through WorkflowEngine.mutate, which reloads the instance, applies the change
in memory and writes it back with a version compare-and-save together with
its history entries. A lost race is retried against fresh state, where the
operation re-validates and fails with StaleTaskError if the actor's task was
resolved in the meantime.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging
import uuid

from .approvers import ApproverResolver, ResolutionContext, ResolvedApprovers
from .async_storage import AsyncStorageInterface
from .config import WorkflowConfig, get_config
from .definitions import DefinitionRegistry, StepType, WorkflowDefinition, WorkflowStep, matches_condition
from .delegations import ApprovalDelegation, DelegationRegistry
from .directory import DirectoryInterface
from .escalation import EscalationSweeper
from .events import DomainEvent, EventDispatcher, EventPayload, create_workflow_event
from .exceptions import (
    DefinitionInUseError, DelegationScopeError, DuplicateWorkflowError, InstanceNotFoundError,
    NotAssignedError, StaleTaskError, UnknownWorkflowCodeError, WorkflowError, WorkflowStateError,
    ActionNotAllowedError,
)
from .history import HistoryAction, HistoryRecorder, WorkflowHistoryEntry
from .instances import InstanceStore, WorkflowInstance, WorkflowStatus
from .logging_config import log_action
from .notifications import NotificationRequest, NotificationType, WorkflowNotifier
from .policies import CompletionMode, StepOutcome, evaluate_step, get_rejection_policy
from .queue import TaskFilter, TaskQueue, TaskView
from .reporting import WorkflowReporting
from .storage import utc_now
from .tasks import TaskPriority, TaskStatus, WorkflowTask, transition
from .tenancy import get_current_tenant

logger = logging.getLogger("clinic_workflow.engine")

SYSTEM_ACTOR = "system"

_FINAL_ACTIONS = {
    WorkflowStatus.APPROVED: (HistoryAction.WORKFLOW_APPROVED, DomainEvent.WORKFLOW_APPROVED,
                              NotificationType.WORKFLOW_APPROVED),
    WorkflowStatus.REJECTED: (HistoryAction.WORKFLOW_REJECTED, DomainEvent.WORKFLOW_REJECTED,
                              NotificationType.WORKFLOW_REJECTED),
    WorkflowStatus.CANCELLED: (HistoryAction.WORKFLOW_CANCELLED, DomainEvent.WORKFLOW_CANCELLED,
                               NotificationType.WORKFLOW_CANCELLED),
}


@dataclass
class MutationEffects:
    """Everything one accepted mutation produces besides the instance itself"""
    entries: List[WorkflowHistoryEntry] = field(default_factory=list)
    new_tasks: List[WorkflowTask] = field(default_factory=list)
    notifications: List[NotificationRequest] = field(default_factory=list)
    events: List[EventPayload] = field(default_factory=list)
    release_entity: bool = False
    touched: bool = False

    @property
    def changed(self) -> bool:
        return self.touched or bool(self.entries)

    def mark_changed(self) -> None:
        self.touched = True

    def notify(self, notification_type: NotificationType, recipient_ids: List[Optional[str]],
               **variables) -> None:
        recipients = [r for r in recipient_ids if r]
        if recipients:
            self.notifications.append(NotificationRequest(notification_type, recipients, variables))


Operation = Callable[[WorkflowInstance, MutationEffects, datetime], Awaitable[Any]]


class WorkflowEngine:
    """Main workflow engine: definitions, instances, tasks, delegations and reports"""

    def __init__(self, storage: AsyncStorageInterface, directory: DirectoryInterface,
                 config: Optional[WorkflowConfig] = None,
                 notifier: Optional[WorkflowNotifier] = None,
                 events: Optional[EventDispatcher] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.storage = storage
        self.directory = directory
        self.config = config or get_config()
        self.clock = clock
        self.definitions = DefinitionRegistry(storage, clock)
        self.delegations = DelegationRegistry(
            storage, directory, self.config.delegation_cache_ttl_seconds, clock
        )
        self.resolver = ApproverResolver(
            directory, self.delegations, self.config.allow_self_approval, clock
        )
        self.instances = InstanceStore(storage)
        self.history = HistoryRecorder(storage)
        self.notifier = notifier or WorkflowNotifier(timeout=self.config.notification_timeout)
        self.events = events or EventDispatcher()
        self.queue = TaskQueue(self)
        self.sweeper = EscalationSweeper(self)
        self.reporting = WorkflowReporting(self)

    # Definition Management

    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await self.definitions.create_definition(definition)

    async def get_definition(self, code: str) -> Optional[WorkflowDefinition]:
        return await self.definitions.get_definition(code)

    async def list_definitions(self, active_only: bool = False,
                               entity_type: Optional[str] = None) -> List[WorkflowDefinition]:
        return await self.definitions.list_definitions(active_only, entity_type)

    async def update_definition(self, code: str, updates: Dict[str, Any],
                                updated_by: Optional[str] = None) -> WorkflowDefinition:
        return await self.definitions.update_definition(code, updates, updated_by)

    async def activate_definition(self, code: str) -> WorkflowDefinition:
        return await self.definitions.activate_definition(code)

    async def deactivate_definition(self, code: str) -> WorkflowDefinition:
        return await self.definitions.deactivate_definition(code)

    async def delete_definition(self, code: str) -> bool:
        """
        Delete a definition that no instance references.

        The count and the delete share one atomic block with the insert in
        start_workflow, so no instance can slip in between them.
        """
        async with self.storage.atomic():
            in_use = await self.instances.count_for_workflow(code)
            if in_use:
                raise DefinitionInUseError(code, in_use)
            if not await self.definitions.delete_definition(code):
                raise UnknownWorkflowCodeError(code, "not found")
        return True

    # Instance lifecycle

    async def start_workflow(self, workflow_code: str, entity_type: str, entity_id: str,
                             entity_reference: str = "",
                             initiator_comments: Optional[str] = None, *,
                             initiated_by: str,
                             department_id: Optional[str] = None,
                             context: Optional[Dict[str, Any]] = None,
                             priority: TaskPriority = TaskPriority.NORMAL) -> WorkflowInstance:
        """
        Start a workflow for an entity and route its first step.

        Raises:
            UnknownWorkflowCodeError: code missing, inactive, or for another entity type
            DuplicateWorkflowError: the entity already has an in-progress instance
            UnresolvedApproverError: the first step resolves to nobody
        """
        try:
            return await self._start_workflow(
                workflow_code, entity_type, entity_id, entity_reference, initiator_comments,
                initiated_by, department_id, context or {}, priority,
            )
        except WorkflowError as e:
            self._log_refused("start_workflow", e, initiated_by,
                              extra={"workflow_code": workflow_code, "entity_type": entity_type,
                                     "entity_id": entity_id})
            raise

    async def _start_workflow(self, workflow_code, entity_type, entity_id, entity_reference,
                              initiator_comments, initiated_by, department_id, context,
                              priority) -> WorkflowInstance:
        definition = await self.definitions.get_definition(workflow_code)
        if not definition or not definition.is_active:
            raise UnknownWorkflowCodeError(workflow_code)
        if definition.entity_type != entity_type:
            raise UnknownWorkflowCodeError(workflow_code, f"does not govern {entity_type}")

        if department_id is None:
            initiator = await self.directory.get_employee(initiated_by)
            department_id = initiator.department_id if initiator else None

        now = self.clock()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            workflow_code=definition.code,
            definition_version=definition.version,
            workflow_name=definition.name,
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_reference=entity_reference,
            initiated_by=initiated_by,
            status=WorkflowStatus.IN_PROGRESS,
            started_at=now,
            steps=[WorkflowStep.from_dict(s.to_dict()) for s in definition.ordered_steps],
            allow_parallel_approval=definition.allow_parallel_approval,
            require_all_approvers=definition.require_all_approvers,
            rejection_policy=definition.rejection_policy,
            initiator_comments=initiator_comments,
            department_id=department_id,
            context=dict(context),
            priority=priority,
            sla_due_at=now + timedelta(hours=definition.sla_hours) if definition.sla_hours else None,
        )

        effects = MutationEffects()
        self._record(instance, effects, HistoryAction.STARTED, now, initiated_by,
                     comments=initiator_comments,
                     metadata={"definition_version": definition.version,
                               "entity_type": entity_type, "entity_id": instance.entity_id,
                               "entity_reference": entity_reference})
        effects.events.append(create_workflow_event(DomainEvent.WORKFLOW_STARTED, instance))
        await self._advance(instance, effects, now, None, initiated_by)

        async with self.storage.atomic():
            current = await self.definitions.get_definition(workflow_code)
            if not current or not current.is_active:
                raise UnknownWorkflowCodeError(workflow_code)
            holder = await self.instances.acquire_entity(entity_type, instance.entity_id, instance.id)
            if holder:
                raise DuplicateWorkflowError(entity_type, instance.entity_id, holder)
            await self.instances.insert(instance)
            await self.history.persist(effects.entries)
            await self.instances.index_tasks(instance, effects.new_tasks)

        log_action(logger, "info", f"Workflow {workflow_code} started",
                   user_id=initiated_by, action="start_workflow", instance_id=instance.id,
                   tenant_id=get_current_tenant(),
                   extra={"entity_type": entity_type, "entity_id": instance.entity_id,
                          "current_step": instance.current_step_sequence})
        await self._after_commit(instance, effects)
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.instances.load(instance_id)
        if not instance:
            raise InstanceNotFoundError(instance_id)
        return instance

    async def list_instances(self, status: Optional[WorkflowStatus] = None,
                             workflow_code: Optional[str] = None,
                             entity_type: Optional[str] = None,
                             entity_id: Optional[str] = None,
                             initiated_by: Optional[str] = None) -> List[WorkflowInstance]:
        return await self.instances.find(
            status=status, workflow_code=workflow_code, entity_type=entity_type,
            entity_id=entity_id, initiated_by=initiated_by,
        )

    async def approve_step(self, instance_id: str, actor_id: str,
                           comments: Optional[str] = None) -> WorkflowInstance:
        """Approve the actor's open task on the instance"""
        async def operation(instance, effects, now):
            task = self._actionable_task(instance, actor_id)
            transition(task, TaskStatus.APPROVED, now, actor_id, comments)
            self._record(instance, effects, HistoryAction.APPROVED, now, actor_id, task, comments)
            await self._evaluate_step(instance, task, effects, now, actor_id, comments)

        instance, _ = await self.mutate(instance_id, operation, action="approve_step",
                                        actor_id=actor_id)
        return instance

    async def reject_step(self, instance_id: str, actor_id: str,
                          comments: Optional[str] = None) -> WorkflowInstance:
        """Reject the actor's open task; the step outcome follows the completion mode"""
        async def operation(instance, effects, now):
            task = self._actionable_task(instance, actor_id)
            step = instance.get_step(task.step_sequence)
            if not step.allow_rejection:
                raise ActionNotAllowedError(f"Step {step.name} does not allow rejection")
            transition(task, TaskStatus.REJECTED, now, actor_id, comments)
            self._record(instance, effects, HistoryAction.REJECTED, now, actor_id, task, comments)
            await self._evaluate_step(instance, task, effects, now, actor_id, comments)

        instance, _ = await self.mutate(instance_id, operation, action="reject_step",
                                        actor_id=actor_id)
        return instance

    async def request_more_info(self, instance_id: str, actor_id: str,
                                comments: Optional[str] = None) -> WorkflowInstance:
        """Pause the actor's task until the initiator supplies more information"""
        async def operation(instance, effects, now):
            task = self._actionable_task(instance, actor_id)
            transition(task, TaskStatus.INFO_REQUESTED, now, actor_id, comments)
            instance.awaiting_info = True
            instance.info_requested_by = actor_id
            self._record(instance, effects, HistoryAction.INFO_REQUESTED, now, actor_id, task, comments)
            effects.notify(NotificationType.INFO_REQUESTED, [instance.initiated_by],
                           **self._variables(instance, task, actor_id=actor_id, comments=comments))

        instance, _ = await self.mutate(instance_id, operation, action="request_more_info",
                                        actor_id=actor_id)
        return instance

    async def provide_more_info(self, instance_id: str, actor_id: str,
                                comments: Optional[str] = None,
                                context_updates: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """Initiator answers an information request; paused tasks resume with a fresh due time"""
        async def operation(instance, effects, now):
            if instance.status.is_terminal:
                raise WorkflowStateError(f"Workflow {instance.id} is already {instance.status.value}")
            if actor_id != instance.initiated_by:
                raise NotAssignedError("Only the initiator can provide more information", actor_id)
            paused = [t for t in instance.live_tasks() if t.status == TaskStatus.INFO_REQUESTED]
            if not instance.awaiting_info or not paused:
                raise WorkflowStateError(f"Workflow {instance.id} is not waiting for information")

            for task in paused:
                transition(task, TaskStatus.ASSIGNED, now)
                task.due_at = self._due_at(instance.get_step(task.step_sequence), now)
                task.reminded_at = None
            instance.awaiting_info = False
            instance.info_requested_by = None
            if context_updates:
                instance.context.update(context_updates)
            self._record(instance, effects, HistoryAction.INFO_PROVIDED, now, actor_id, paused[0],
                         comments, metadata={"context_keys": sorted(context_updates or {})})
            effects.notify(NotificationType.INFO_PROVIDED, [t.assignee_id for t in paused],
                           **self._variables(instance, paused[0], actor_id=actor_id, comments=comments))

        instance, _ = await self.mutate(instance_id, operation, action="provide_more_info",
                                        actor_id=actor_id)
        return instance

    async def delegate_step(self, instance_id: str, actor_id: str, delegate_to: str,
                            reason: Optional[str] = None) -> WorkflowInstance:
        """
        Hand the actor's open task to another employee for this instance only.

        Raises:
            DelegationScopeError: step forbids delegation, or the delegate is the
                actor, the initiator, inactive or already holds a task here
        """
        async def operation(instance, effects, now):
            task = self._actionable_task(instance, actor_id)
            step = instance.get_step(task.step_sequence)
            if not step.allow_delegation:
                raise DelegationScopeError(f"Step {step.name} does not allow delegation")
            if delegate_to == actor_id:
                raise DelegationScopeError("Cannot delegate to yourself")
            if delegate_to == instance.initiated_by and not self.config.allow_self_approval:
                raise DelegationScopeError("Cannot delegate to the workflow initiator")
            delegate = await self.directory.get_employee(delegate_to)
            if not delegate or not delegate.is_active:
                raise DelegationScopeError(f"Delegate {delegate_to} is not an active employee")
            if any(t.assignee_id == delegate_to for t in instance.live_tasks()):
                raise DelegationScopeError(f"{delegate_to} already holds a task on this workflow")

            transition(task, TaskStatus.DELEGATED, now, actor_id, reason)
            new_task = self._spawn_from(task, now, assignee_id=delegate_to, delegated_from=actor_id)
            self._record(instance, effects, HistoryAction.DELEGATED, now, actor_id, task, reason,
                         metadata={"delegate_to": delegate_to, "new_task_id": new_task.id})
            self._add_task(instance, effects, new_task, now, actor_id)
            effects.notify(NotificationType.TASK_DELEGATED, [delegate_to],
                           **self._variables(instance, new_task, delegated_from=actor_id,
                                             comments=reason))

        instance, _ = await self.mutate(instance_id, operation, action="delegate_step",
                                        actor_id=actor_id)
        return instance

    async def cancel_workflow(self, instance_id: str, cancelled_by: str,
                              reason: Optional[str] = None) -> WorkflowInstance:
        """Force an in-progress instance to cancelled, closing every open task"""
        async def operation(instance, effects, now):
            if instance.status.is_terminal:
                raise WorkflowStateError(f"Workflow {instance.id} is already {instance.status.value}")
            holders = [t.assignee_id for t in instance.live_tasks()]
            self._finish(instance, effects, now, WorkflowStatus.CANCELLED, cancelled_by, reason)
            effects.notify(NotificationType.WORKFLOW_CANCELLED, holders,
                           **self._variables(instance, None, actor_id=cancelled_by, comments=reason))

        instance, _ = await self.mutate(instance_id, operation, action="cancel_workflow",
                                        actor_id=cancelled_by)
        return instance

    # Task queue

    async def get_my_tasks(self, user_id: str,
                           task_filter: Optional[TaskFilter] = None) -> List[TaskView]:
        return await self.queue.get_my_tasks(user_id, task_filter)

    async def get_department_tasks(self, department_id: str,
                                   task_filter: Optional[TaskFilter] = None) -> List[TaskView]:
        return await self.queue.get_department_tasks(department_id, task_filter)

    async def claim_task(self, task_id: str, claimant_id: str) -> WorkflowTask:
        return await self.queue.claim_task(task_id, claimant_id)

    async def unclaim_task(self, task_id: str, actor_id: str) -> WorkflowTask:
        return await self.queue.unclaim_task(task_id, actor_id)

    # Delegations

    async def create_delegation(self, delegator_id: str, delegate_id: str,
                                starts_at: datetime, ends_at: datetime,
                                workflow_codes: Optional[List[str]] = None,
                                reason: str = "",
                                created_by: Optional[str] = None) -> ApprovalDelegation:
        return await self.delegations.create_delegation(
            delegator_id, delegate_id, starts_at, ends_at, workflow_codes, reason, created_by
        )

    async def cancel_delegation(self, delegation_id: str,
                                cancelled_by: Optional[str] = None) -> ApprovalDelegation:
        return await self.delegations.cancel_delegation(delegation_id, cancelled_by)

    async def get_active_delegations(self, employee_id: Optional[str] = None) -> List[ApprovalDelegation]:
        return await self.delegations.get_active_delegations(employee_id)

    # Escalation

    async def process_overdue_steps(self) -> None:
        """Escalate or remind every overdue task; safe to call repeatedly"""
        await self.sweeper.sweep()

    # Reporting

    async def get_workflow_history(self, instance_id: str) -> List[WorkflowHistoryEntry]:
        await self.get_instance(instance_id)
        return await self.history.get_history(instance_id)

    async def get_workflow_audit_report(self, instance_id: str):
        return await self.reporting.get_workflow_audit_report(instance_id)

    async def get_dashboard(self, user_id: str):
        return await self.reporting.get_dashboard(user_id)

    async def get_statistics(self, start: datetime, end: datetime,
                             workflow_code: Optional[str] = None):
        return await self.reporting.get_statistics(start, end, workflow_code)

    # Mutation path

    async def mutate(self, instance_id: str, operation: Operation, *, action: str,
                     actor_id: Optional[str] = None,
                     task_id: Optional[str] = None) -> Tuple[WorkflowInstance, Any]:
        """
        Apply operation to a fresh copy of the instance and compare-and-save it.

        The operation mutates the instance in memory and stages history,
        notifications and events on the effects object. Lost races are retried
        up to max_conflict_retries times against reloaded state.
        """
        attempts = max(1, self.config.max_conflict_retries)
        for attempt in range(1, attempts + 1):
            instance = await self.instances.load(instance_id)
            if instance is None:
                raise InstanceNotFoundError(instance_id)
            expected_version = instance.version
            effects = MutationEffects()
            try:
                result = await operation(instance, effects, self.clock())
            except WorkflowError as e:
                self._log_refused(action, e, actor_id, instance_id=instance_id, task_id=task_id,
                                  extra={"attempt": attempt})
                raise
            if not effects.changed:
                return instance, result

            instance.refresh_current_step()
            async with self.storage.atomic():
                saved = await self.instances.save(instance, expected_version)
                if saved:
                    await self.history.persist(effects.entries)
                    await self.instances.index_tasks(instance, effects.new_tasks)

            if saved:
                log_action(logger, "info", f"{action} accepted",
                           user_id=actor_id, action=action, instance_id=instance_id,
                           task_id=task_id, tenant_id=get_current_tenant(),
                           extra={"status": instance.status.value,
                                  "current_step": instance.current_step_sequence,
                                  "version": instance.version})
                await self._after_commit(instance, effects)
                return instance, result

            log_action(logger, "debug", f"{action} lost a version race, retrying",
                       user_id=actor_id, action=action, instance_id=instance_id,
                       task_id=task_id, extra={"attempt": attempt})

        error = StaleTaskError(
            f"Workflow {instance_id} changed concurrently; reload and retry",
            instance_id, task_id,
        )
        self._log_refused(action, error, actor_id, instance_id=instance_id, task_id=task_id)
        raise error

    async def _after_commit(self, instance: WorkflowInstance, effects: MutationEffects) -> None:
        if effects.release_entity:
            await self.instances.release_entity(instance.entity_type, instance.entity_id, instance.id)
        for event in effects.events:
            self.events.publish(event)
        if effects.notifications:
            try:
                await self.notifier.dispatch(effects.notifications)
            except Exception:
                logger.exception("Notification dispatch failed for workflow %s", instance.id)

    def _log_refused(self, action: str, error: WorkflowError, actor_id: Optional[str],
                     instance_id: Optional[str] = None, task_id: Optional[str] = None,
                     extra: Optional[dict] = None) -> None:
        details = {"error": error.code}
        details.update(extra or {})
        log_action(logger, "warning", f"{action} refused: {error.message}",
                   user_id=actor_id, action=action, instance_id=instance_id, task_id=task_id,
                   tenant_id=get_current_tenant(), extra=details)

    # Step progression

    def _actionable_task(self, instance: WorkflowInstance, actor_id: str) -> WorkflowTask:
        """The live task actor_id may decide, or the reason they cannot"""
        for task in instance.live_tasks():
            if task.assignee_id == actor_id:
                if task.status == TaskStatus.INFO_REQUESTED or instance.awaiting_info:
                    raise WorkflowStateError(
                        f"Workflow {instance.id} is waiting for more information from the initiator"
                    )
                return task

        for task in instance.live_tasks():
            if actor_id in task.candidate_ids:
                if task.assignee_id is None:
                    raise NotAssignedError("Pooled task must be claimed before acting on it", actor_id)
                raise NotAssignedError(f"Task is claimed by {task.assignee_id}", actor_id)
        previous = [
            t for t in instance.tasks
            if not t.is_live and (t.assignee_id == actor_id or actor_id in t.candidate_ids)
        ]
        if previous:
            raise StaleTaskError(
                f"Task of {actor_id} on workflow {instance.id} is already {previous[-1].status.value}",
                instance.id, previous[-1].id,
            )
        raise NotAssignedError(f"{actor_id} has no open task on workflow {instance.id}", actor_id)

    async def _evaluate_step(self, instance: WorkflowInstance, decided: WorkflowTask,
                             effects: MutationEffects, now: datetime, actor_id: str,
                             comments: Optional[str]) -> None:
        step = instance.get_step(decided.step_sequence)
        mode = CompletionMode.for_flags(instance.allow_parallel_approval,
                                        instance.require_all_approvers)
        rows = instance.activation_tasks(step.sequence, decided.activation)
        live = [t for t in rows if t.is_live]
        decisions = [t.status.value for t in rows if t.is_decided]
        outcome = evaluate_step(mode, decisions, len(live), decided.status.value,
                                len(instance.queued_approvers))
        if outcome is None:
            if mode == CompletionMode.IN_TURN and not live and instance.queued_approvers:
                self._hand_to_next(instance, step, decided, effects, now)
            return
        instance.queued_approvers = []

        for sibling in live:
            transition(sibling, TaskStatus.CANCELLED, now, SYSTEM_ACTOR)
            self._record(instance, effects, HistoryAction.TASK_CANCELLED, now, SYSTEM_ACTOR, sibling,
                         metadata={"reason": "step_resolved", "resolved_by": actor_id})

        effects.events.append(create_workflow_event(
            DomainEvent.WORKFLOW_STEP_COMPLETED, instance,
            step_sequence=step.sequence, step_name=step.name, outcome=outcome.value,
        ))
        if outcome == StepOutcome.APPROVED:
            self._record(instance, effects, HistoryAction.STEP_APPROVED, now, actor_id,
                         step_sequence=step.sequence, metadata={"mode": mode.value})
            await self._advance(instance, effects, now, step.sequence, actor_id)
            return

        self._record(instance, effects, HistoryAction.STEP_REJECTED, now, actor_id,
                     step_sequence=step.sequence, comments=comments, metadata={"mode": mode.value})
        decision = get_rejection_policy(instance.rejection_policy).on_rejection(instance.steps, step)
        if decision.terminate:
            self._finish(instance, effects, now, WorkflowStatus.REJECTED, actor_id, comments)
            return

        target = instance.get_step(decision.return_to_sequence)
        self._record(instance, effects, HistoryAction.RETURNED_TO_STEP, now, actor_id,
                     step_sequence=target.sequence,
                     metadata={"from_step": step.sequence, "policy": instance.rejection_policy})
        await self._activate(instance, target, effects, now)

    def _hand_to_next(self, instance: WorkflowInstance, step: WorkflowStep, decided: WorkflowTask,
                      effects: MutationEffects, now: datetime) -> None:
        """Give the next queued candidate of an in-turn step its task"""
        queued = instance.queued_approvers.pop(0)
        task = self._new_task(instance, step, now, self._due_at(step, now),
                              assignee_id=queued["employee_id"],
                              candidate_ids=[queued["employee_id"]],
                              department_id=decided.department_id,
                              delegated_from=queued.get("delegated_from"))
        self._add_task(instance, effects, task, now, SYSTEM_ACTOR)

    async def _advance(self, instance: WorkflowInstance, effects: MutationEffects,
                       now: datetime, after_sequence: Optional[int], actor_id: str) -> None:
        """Route the next step that needs a decision, or approve the instance"""
        step = instance.next_step(after_sequence)
        while step is not None:
            if step.step_type == StepType.CONDITIONAL and not matches_condition(step.condition, instance.context):
                self._record(instance, effects, HistoryAction.STEP_SKIPPED, now, SYSTEM_ACTOR,
                             step_sequence=step.sequence, metadata={"condition": step.condition})
                step = instance.next_step(step.sequence)
                continue
            if step.step_type == StepType.NOTIFICATION:
                resolved = await self._resolve(instance, step)
                instance.activation_count += 1
                instance.current_step_sequence = step.sequence
                self._record(instance, effects, HistoryAction.STEP_ACTIVATED, now, SYSTEM_ACTOR,
                             step_sequence=step.sequence)
                self._record(instance, effects, HistoryAction.STEP_NOTIFIED, now, SYSTEM_ACTOR,
                             step_sequence=step.sequence,
                             metadata={"recipients": resolved.employee_ids})
                effects.notify(NotificationType.STEP_NOTIFICATION, resolved.employee_ids,
                               **self._variables(instance, None, step_name=step.name))
                step = instance.next_step(step.sequence)
                continue
            await self._activate(instance, step, effects, now)
            return

        self._finish(instance, effects, now, WorkflowStatus.APPROVED, actor_id)

    async def _activate(self, instance: WorkflowInstance, step: WorkflowStep,
                        effects: MutationEffects, now: datetime) -> None:
        """Resolve approvers for step and create its task rows"""
        resolved = await self._resolve(instance, step)
        mode = CompletionMode.for_flags(instance.allow_parallel_approval,
                                        instance.require_all_approvers)
        instance.activation_count += 1
        instance.current_step_sequence = step.sequence
        self._record(instance, effects, HistoryAction.STEP_ACTIVATED, now, SYSTEM_ACTOR,
                     step_sequence=step.sequence,
                     metadata={"mode": mode.value, "candidates": resolved.employee_ids,
                               "pooled": resolved.pooled})

        due_at = self._due_at(step, now)
        candidates = resolved.candidates
        instance.queued_approvers = []
        if len(candidates) > 1 and mode == CompletionMode.IN_TURN and not resolved.pooled:
            instance.queued_approvers = [
                {"employee_id": c.employee_id, "delegated_from": c.delegated_from}
                for c in candidates[1:]
            ]
            candidates = candidates[:1]
        if len(candidates) > 1 and (resolved.pooled or mode == CompletionMode.SEQUENTIAL):
            tasks = [self._new_task(instance, step, now, due_at, assignee_id=None,
                                    candidate_ids=resolved.employee_ids,
                                    department_id=resolved.department_id)]
        else:
            tasks = [
                self._new_task(instance, step, now, due_at, assignee_id=c.employee_id,
                               candidate_ids=[c.employee_id],
                               department_id=resolved.department_id,
                               delegated_from=c.delegated_from)
                for c in candidates
            ]
        for task in tasks:
            self._add_task(instance, effects, task, now, SYSTEM_ACTOR)

    def _finish(self, instance: WorkflowInstance, effects: MutationEffects, now: datetime,
                status: WorkflowStatus, actor_id: Optional[str],
                comments: Optional[str] = None) -> None:
        for task in instance.live_tasks():
            transition(task, TaskStatus.CANCELLED, now, actor_id or SYSTEM_ACTOR)
            self._record(instance, effects, HistoryAction.TASK_CANCELLED, now, actor_id, task,
                         metadata={"reason": status.value})
        instance.status = status
        instance.completed_at = now
        instance.queued_approvers = []
        instance.completed_by = actor_id
        instance.current_step_sequence = None
        instance.awaiting_info = False
        instance.info_requested_by = None

        history_action, event_type, notification_type = _FINAL_ACTIONS[status]
        self._record(instance, effects, history_action, now, actor_id, comments=comments)
        effects.release_entity = True
        effects.events.append(create_workflow_event(event_type, instance, completed_by=actor_id))
        if actor_id != instance.initiated_by:
            effects.notify(notification_type, [instance.initiated_by],
                           **self._variables(instance, None, actor_id=actor_id, comments=comments))

    # Helpers

    async def _resolve(self, instance: WorkflowInstance, step: WorkflowStep) -> ResolvedApprovers:
        ctx = ResolutionContext(
            workflow_code=instance.workflow_code,
            initiator_id=instance.initiated_by,
            department_id=instance.department_id,
            context=instance.context,
            step_sequence=step.sequence,
        )
        return await self.resolver.resolve(step.approver, ctx)

    @staticmethod
    def _due_at(step: WorkflowStep, now: datetime) -> Optional[datetime]:
        return now + timedelta(hours=step.escalation_hours) if step.escalation_hours else None

    def _new_task(self, instance: WorkflowInstance, step: WorkflowStep, now: datetime,
                  due_at: Optional[datetime], **fields) -> WorkflowTask:
        task = WorkflowTask(
            id=str(uuid.uuid4()),
            step_sequence=step.sequence,
            step_name=step.name,
            activation=instance.activation_count,
            status=TaskStatus.ASSIGNED,
            assigned_at=now,
            due_at=due_at,
            priority=instance.priority,
            **fields,
        )
        if task.assignee_id is None and len(task.candidate_ids) == 1:
            task.assignee_id = task.candidate_ids[0]
        return task

    def _spawn_from(self, task: WorkflowTask, now: datetime, **fields) -> WorkflowTask:
        """New assigned row for the same step activation, e.g. after delegation"""
        values = dict(
            id=str(uuid.uuid4()),
            step_sequence=task.step_sequence,
            step_name=task.step_name,
            activation=task.activation,
            status=TaskStatus.ASSIGNED,
            assigned_at=now,
            due_at=task.due_at,
            priority=task.priority,
            department_id=task.department_id,
            escalation_level=task.escalation_level,
            parent_task_id=task.id,
        )
        values.update(fields)
        new_task = WorkflowTask(**values)
        if not new_task.candidate_ids and new_task.assignee_id:
            new_task.candidate_ids = [new_task.assignee_id]
        if new_task.assignee_id is None and len(new_task.candidate_ids) == 1:
            new_task.assignee_id = new_task.candidate_ids[0]
        return new_task

    def _add_task(self, instance: WorkflowInstance, effects: MutationEffects,
                  task: WorkflowTask, now: datetime, actor_id: Optional[str]) -> None:
        instance.tasks.append(task)
        effects.new_tasks.append(task)
        self._record(instance, effects, HistoryAction.TASK_ASSIGNED, now, actor_id, task,
                     metadata={"assignee_id": task.assignee_id,
                               "candidate_ids": task.candidate_ids,
                               "delegated_from": task.delegated_from,
                               "escalated_from": task.escalated_from,
                               "due_at": task.due_at})
        variables = self._variables(instance, task)
        if task.assignee_id:
            effects.notify(NotificationType.TASK_ASSIGNED, [task.assignee_id], **variables)
        else:
            effects.notify(NotificationType.TASK_AVAILABLE, task.candidate_ids, **variables)

    def _record(self, instance: WorkflowInstance, effects: MutationEffects,
                action: HistoryAction, now: datetime, actor_id: Optional[str] = None,
                task: Optional[WorkflowTask] = None, comments: Optional[str] = None,
                step_sequence: Optional[int] = None,
                metadata: Optional[Dict[str, Any]] = None) -> None:
        if step_sequence is None and task is not None:
            step_sequence = task.step_sequence
        effects.entries.append(HistoryRecorder.stage(
            instance, action, now, actor_id or SYSTEM_ACTOR,
            step_sequence=step_sequence,
            task_id=task.id if task else None,
            comments=comments,
            metadata=metadata,
        ))

    @staticmethod
    def _variables(instance: WorkflowInstance, task: Optional[WorkflowTask],
                   **extra) -> Dict[str, Any]:
        variables = {
            "instance_id": instance.id,
            "workflow_code": instance.workflow_code,
            "workflow_name": instance.workflow_name,
            "entity_type": instance.entity_type,
            "entity_id": instance.entity_id,
            "entity_reference": instance.entity_reference or instance.entity_id,
            "sla_due_at": instance.sla_due_at,
        }
        if task is not None:
            variables.update({
                "task_id": task.id,
                "step_name": task.step_name,
                "due_at": task.due_at,
                "priority": task.priority.value,
            })
        variables.update(extra)
        return variables
