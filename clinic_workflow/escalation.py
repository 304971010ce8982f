"""
Escalation Module

Periodic sweep over overdue tasks. A task past its due time is escalated to
its step's escalation role while it is below the maximum escalation level,
otherwise its holder is reminded (at most once per reminder interval).
Instances past their overall SLA are flagged once and their initiator is
notified; they are never cancelled automatically.

Each row is handled through the engine's compare-and-save mutation path, so
running the sweep twice, or two sweeps concurrently, escalates a task once.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict
import logging

from .approvers import ResolutionContext, RoleApprover
from .events import DomainEvent, create_workflow_event
from .exceptions import UnresolvedApproverError
from .history import HistoryAction
from .instances import WorkflowInstance, WorkflowStatus
from .logging_config import log_action
from .notifications import NotificationType
from .tasks import TaskStatus, WorkflowTask, transition

logger = logging.getLogger("clinic_workflow.escalation")

ESCALATED = "escalated"
REMINDED = "reminded"
SKIPPED = "skipped"


@dataclass
class SweepSummary:
    """Counts from one sweep"""
    instances_scanned: int = 0
    overdue_tasks: int = 0
    escalated: int = 0
    reminded: int = 0
    skipped: int = 0
    sla_breaches: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EscalationSweeper:
    """Escalates or reminds overdue tasks and flags SLA breaches"""

    def __init__(self, engine):
        self.engine = engine

    @property
    def max_level(self) -> int:
        return self.engine.config.max_escalation_level

    @property
    def reminder_interval(self) -> timedelta:
        return timedelta(hours=self.engine.config.reminder_interval_hours)

    async def sweep(self) -> SweepSummary:
        """Handle every overdue task once; a failing row never stops the sweep"""
        summary = SweepSummary()
        now = self.engine.clock()
        instances = await self.engine.instances.find(status=WorkflowStatus.IN_PROGRESS)

        for instance in instances:
            summary.instances_scanned += 1
            if instance.awaiting_info:
                continue

            for task in instance.live_tasks():
                if not task.is_overdue(now):
                    continue
                summary.overdue_tasks += 1
                try:
                    outcome = await self._handle_overdue(instance.id, task.id)
                except Exception:
                    summary.failures += 1
                    logger.exception("Could not process overdue task %s of workflow %s",
                                     task.id, instance.id)
                    continue
                if outcome == ESCALATED:
                    summary.escalated += 1
                elif outcome == REMINDED:
                    summary.reminded += 1
                else:
                    summary.skipped += 1

            if instance.sla_due_at and instance.sla_due_at <= now and instance.sla_breached_at is None:
                try:
                    if await self._flag_sla_breach(instance.id):
                        summary.sla_breaches += 1
                except Exception:
                    summary.failures += 1
                    logger.exception("Could not flag SLA breach of workflow %s", instance.id)

        log_action(logger, "info", "Overdue sweep finished", user_id="system",
                   action="process_overdue_steps", extra=summary.to_dict())
        return summary

    async def _handle_overdue(self, instance_id: str, task_id: str) -> str:
        async def operation(instance, effects, now):
            task = instance.get_task(task_id)
            if (task is None or instance.status.is_terminal or instance.awaiting_info
                    or not task.is_overdue(now)):
                return SKIPPED

            step = instance.get_step(task.step_sequence)
            if step.escalation_role_id and task.escalation_level < self.max_level:
                try:
                    await self._escalate(instance, task, step, effects, now)
                    return ESCALATED
                except UnresolvedApproverError as e:
                    logger.warning("Escalation of task %s not possible: %s", task.id, e.message)

            if task.reminded_at and now - task.reminded_at < self.reminder_interval:
                return SKIPPED
            task.reminded_at = now
            effects.mark_changed()
            recipients = [task.assignee_id] if task.assignee_id else list(task.candidate_ids)
            effects.notify(NotificationType.TASK_REMINDER, recipients,
                           **self.engine._variables(instance, task))
            return REMINDED

        _, outcome = await self.engine.mutate(instance_id, operation, action="escalate_task",
                                              actor_id="system", task_id=task_id)
        return outcome

    async def _escalate(self, instance: WorkflowInstance, task: WorkflowTask, step,
                        effects, now: datetime) -> None:
        """Close task as escalated and route a new task to the escalation role"""
        ctx = ResolutionContext(
            workflow_code=instance.workflow_code,
            initiator_id=instance.initiated_by,
            department_id=instance.department_id,
            context=instance.context,
            step_sequence=step.sequence,
        )
        resolved = await self.engine.resolver.resolve(RoleApprover(step.escalation_role_id), ctx)
        holders = {t.assignee_id for t in instance.live_tasks()}
        targets = [c.employee_id for c in resolved.candidates if c.employee_id not in holders]
        if not targets:
            raise UnresolvedApproverError(
                f"Every member of {step.escalation_role_id} already holds a task on workflow {instance.id}",
                step_sequence=step.sequence,
            )

        transition(task, TaskStatus.ESCALATED, now, "system")
        new_task = self.engine._spawn_from(
            task, now,
            assignee_id=targets[0] if len(targets) == 1 else None,
            candidate_ids=targets,
            due_at=now + timedelta(hours=step.escalation_hours),
            escalated_from=task.assignee_id,
            escalation_level=task.escalation_level + 1,
            reminded_at=None,
        )
        self.engine._record(instance, effects, HistoryAction.ESCALATED, now, "system", task,
                            metadata={"escalation_role_id": step.escalation_role_id,
                                      "escalated_to": targets,
                                      "escalation_level": new_task.escalation_level,
                                      "new_task_id": new_task.id})
        self.engine._add_task(instance, effects, new_task, now, "system")
        effects.notify(NotificationType.TASK_ESCALATED, targets,
                       **self.engine._variables(instance, new_task,
                                                escalated_from=task.assignee_id or "the pool"))
        effects.events.append(create_workflow_event(
            DomainEvent.TASK_ESCALATED, instance,
            task_id=task.id, new_task_id=new_task.id, step_sequence=step.sequence,
            escalated_to=targets, escalation_level=new_task.escalation_level,
        ))

    async def _flag_sla_breach(self, instance_id: str) -> bool:
        async def operation(instance, effects, now):
            if (instance.status.is_terminal or instance.sla_breached_at is not None
                    or instance.sla_due_at is None or instance.sla_due_at > now):
                return False
            instance.sla_breached_at = now
            effects.mark_changed()
            recipients = [instance.initiated_by] + [t.assignee_id for t in instance.live_tasks()]
            effects.notify(NotificationType.SLA_BREACHED, recipients,
                           **self.engine._variables(instance, None))
            return True

        _, flagged = await self.engine.mutate(instance_id, operation, action="flag_sla_breach",
                                              actor_id="system")
        return flagged
