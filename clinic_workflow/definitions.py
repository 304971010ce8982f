"""
Workflow Definition Module

Declarative workflow templates: an ordered list of steps, each with a step
type, an approver specification, delegation / rejection permissions and
optional escalation settings. Instances copy the steps at start, so editing
a definition only affects instances started afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging

from .approvers import (
    ApproverSpec, ExpressionApprover,
    approver_from_dict, approver_to_dict, parse_expression,
)
from .async_storage import AsyncStorageInterface
from .exceptions import InvalidDefinitionError, UnknownWorkflowCodeError, UnresolvedApproverError
from .logging_config import log_action
from .policies import rejection_policy_names
from .storage import StorageRecord, utc_now

logger = logging.getLogger("clinic_workflow.definitions")


class StepType(Enum):
    """Types of workflow steps"""
    APPROVAL = "approval"
    NOTIFICATION = "notification"  # notify recipients, then continue
    CONDITIONAL = "conditional"  # approval step that only runs when its condition matches


@dataclass
class WorkflowStep:
    """Definition of a single workflow step"""
    sequence: int
    name: str
    step_type: StepType = StepType.APPROVAL
    approver: Optional[ApproverSpec] = None
    allow_delegation: bool = True
    allow_rejection: bool = True
    escalation_hours: Optional[float] = None
    escalation_role_id: Optional[str] = None
    condition: Dict[str, Any] = field(default_factory=dict)
    return_to_sequence: Optional[int] = None
    description: str = ""

    @property
    def requires_decision(self) -> bool:
        return self.step_type != StepType.NOTIFICATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'name': self.name,
            'step_type': self.step_type.value,
            'approver': approver_to_dict(self.approver),
            'allow_delegation': self.allow_delegation,
            'allow_rejection': self.allow_rejection,
            'escalation_hours': self.escalation_hours,
            'escalation_role_id': self.escalation_role_id,
            'condition': self.condition,
            'return_to_sequence': self.return_to_sequence,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowStep':
        return cls(
            sequence=data['sequence'],
            name=data['name'],
            step_type=StepType(data.get('step_type', StepType.APPROVAL.value)),
            approver=approver_from_dict(data.get('approver')),
            allow_delegation=data.get('allow_delegation', True),
            allow_rejection=data.get('allow_rejection', True),
            escalation_hours=data.get('escalation_hours'),
            escalation_role_id=data.get('escalation_role_id'),
            condition=data.get('condition') or {},
            return_to_sequence=data.get('return_to_sequence'),
            description=data.get('description', ''),
        )


@dataclass
class WorkflowDefinition(StorageRecord):
    """Workflow template; the id is the workflow code"""
    code: str
    name: str
    entity_type: str
    steps: List[WorkflowStep]
    description: str = ""
    sla_hours: Optional[float] = None
    allow_parallel_approval: bool = False
    require_all_approvers: bool = False
    rejection_policy: str = "terminate"
    is_active: bool = True
    version: int = 1
    created_by: Optional[str] = None

    @property
    def ordered_steps(self) -> List[WorkflowStep]:
        return sorted(self.steps, key=lambda s: s.sequence)

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'code': self.code,
            'name': self.name,
            'entity_type': self.entity_type,
            'steps': [step.to_dict() for step in self.ordered_steps],
            'description': self.description,
            'sla_hours': self.sla_hours,
            'allow_parallel_approval': self.allow_parallel_approval,
            'require_all_approvers': self.require_all_approvers,
            'rejection_policy': self.rejection_policy,
            'is_active': self.is_active,
            'version': self.version,
            'created_by': self.created_by,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        return cls(
            **cls.base_fields(data),
            code=data['code'],
            name=data['name'],
            entity_type=data['entity_type'],
            steps=[WorkflowStep.from_dict(s) for s in data.get('steps', [])],
            description=data.get('description', ''),
            sla_hours=data.get('sla_hours'),
            allow_parallel_approval=data.get('allow_parallel_approval', False),
            require_all_approvers=data.get('require_all_approvers', False),
            rejection_policy=data.get('rejection_policy', 'terminate'),
            is_active=data.get('is_active', True),
            version=data.get('version', 1),
            created_by=data.get('created_by'),
        )


def matches_condition(condition: Dict[str, Any], context: Dict[str, Any]) -> bool:
    """
    Check a conditional step's condition against the instance context.

    `<key>_below` / `<key>_above` compare numerically, list values mean
    membership, anything else is equality. Every entry must hold.
    """
    for key, expected in condition.items():
        for suffix, compare in (('_below', lambda a, b: a < b), ('_above', lambda a, b: a > b)):
            if key.endswith(suffix):
                actual = context.get(key[:-len(suffix)])
                try:
                    if actual is None or not compare(Decimal(str(actual)), Decimal(str(expected))):
                        return False
                except InvalidOperation:
                    return False
                break
        else:
            if key not in context:
                return False
            if isinstance(expected, list):
                if context[key] not in expected:
                    return False
            elif context[key] != expected:
                return False
    return True


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise InvalidDefinitionError when the definition cannot run"""
    if not definition.code or not definition.code.strip():
        raise InvalidDefinitionError("Workflow code is required")
    if not definition.entity_type:
        raise InvalidDefinitionError("Workflow must declare the entity type it governs")
    if not definition.steps:
        raise InvalidDefinitionError("Workflow must have at least one step")
    if definition.sla_hours is not None and definition.sla_hours <= 0:
        raise InvalidDefinitionError("SLA hours must be positive")
    if definition.rejection_policy not in rejection_policy_names():
        raise InvalidDefinitionError(f"Unknown rejection policy: {definition.rejection_policy}")

    sequences = [step.sequence for step in definition.steps]
    if len(set(sequences)) != len(sequences):
        raise InvalidDefinitionError("Step sequences must be unique")
    if min(sequences) < 1:
        raise InvalidDefinitionError("Step sequences must be positive")
    if not any(step.requires_decision for step in definition.steps):
        raise InvalidDefinitionError("Workflow needs at least one approval step")

    for step in definition.steps:
        where = f"Step {step.sequence}"
        if step.approver is None:
            raise InvalidDefinitionError(f"{where} has no approver specification")
        if isinstance(step.approver, ExpressionApprover):
            try:
                parse_expression(step.approver.expression)
            except UnresolvedApproverError as e:
                raise InvalidDefinitionError(f"{where}: {e.message}")
        if step.escalation_hours is not None and step.escalation_hours <= 0:
            raise InvalidDefinitionError(f"{where} escalation hours must be positive")
        if step.escalation_role_id and step.escalation_hours is None:
            raise InvalidDefinitionError(f"{where} escalation role requires escalation hours")
        if step.step_type == StepType.CONDITIONAL and not step.condition:
            raise InvalidDefinitionError(f"{where} is conditional but has no condition")
        if step.return_to_sequence is not None and step.return_to_sequence not in sequences:
            raise InvalidDefinitionError(f"{where} returns to unknown step {step.return_to_sequence}")


class DefinitionRegistry:
    """Stores and versions workflow definitions"""

    TABLE = "workflow_definitions"
    UPDATABLE_FIELDS = {
        'name', 'description', 'entity_type', 'steps', 'sla_hours',
        'allow_parallel_approval', 'require_all_approvers', 'rejection_policy',
    }

    def __init__(self, storage: AsyncStorageInterface,
                 clock: Callable[[], datetime] = utc_now):
        self.storage = storage
        self.clock = clock

    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store a new definition; codes are unique per tenant"""
        definition.id = definition.code
        definition.created_at = self.clock()
        definition.updated_at = definition.created_at
        definition.version = 1
        validate_definition(definition)

        created = await self.storage.compare_and_save(
            self.TABLE, definition.id, definition.to_dict(), None
        )
        if not created:
            raise InvalidDefinitionError(f"Workflow code {definition.code} already exists")

        log_action(logger, "info", f"Workflow definition {definition.code} created",
                   user_id=definition.created_by, action="create_definition",
                   resource=definition.code)
        return definition

    async def get_definition(self, code: str) -> Optional[WorkflowDefinition]:
        data = await self.storage.load(self.TABLE, code)
        return WorkflowDefinition.from_dict(data) if data else None

    async def list_definitions(self, active_only: bool = False,
                               entity_type: Optional[str] = None) -> List[WorkflowDefinition]:
        filters: Dict[str, Any] = {}
        if active_only:
            filters['is_active'] = True
        if entity_type:
            filters['entity_type'] = entity_type
        records = await self.storage.find(self.TABLE, filters)
        definitions = [WorkflowDefinition.from_dict(r) for r in records]
        definitions.sort(key=lambda d: d.code)
        return definitions

    async def update_definition(self, code: str, updates: Dict[str, Any],
                                updated_by: Optional[str] = None) -> WorkflowDefinition:
        """Apply field updates and bump the definition version"""
        unknown = set(updates) - self.UPDATABLE_FIELDS
        if unknown:
            raise InvalidDefinitionError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        def apply(definition: WorkflowDefinition) -> None:
            for key, value in updates.items():
                if key == 'steps':
                    value = [s if isinstance(s, WorkflowStep) else WorkflowStep.from_dict(s)
                             for s in value]
                setattr(definition, key, value)
            validate_definition(definition)

        definition = await self._modify(code, apply)
        log_action(logger, "info", f"Workflow definition {code} updated to v{definition.version}",
                   user_id=updated_by, action="update_definition", resource=code,
                   extra={"fields": sorted(updates)})
        return definition

    async def activate_definition(self, code: str) -> WorkflowDefinition:
        return await self._set_active(code, True)

    async def deactivate_definition(self, code: str) -> WorkflowDefinition:
        return await self._set_active(code, False)

    async def delete_definition(self, code: str) -> bool:
        """Delete a definition; callers check for referencing instances first"""
        deleted = await self.storage.delete(self.TABLE, code)
        if deleted:
            log_action(logger, "info", f"Workflow definition {code} deleted",
                       action="delete_definition", resource=code)
        return deleted

    async def _set_active(self, code: str, active: bool) -> WorkflowDefinition:
        def apply(definition: WorkflowDefinition) -> None:
            definition.is_active = active

        definition = await self._modify(code, apply)
        log_action(logger, "info",
                   f"Workflow definition {code} {'activated' if active else 'deactivated'}",
                   action="activate_definition" if active else "deactivate_definition",
                   resource=code)
        return definition

    async def _modify(self, code: str,
                      apply: Callable[[WorkflowDefinition], None]) -> WorkflowDefinition:
        while True:
            definition = await self.get_definition(code)
            if not definition:
                raise UnknownWorkflowCodeError(code, "not found")
            expected_version = definition.version
            apply(definition)
            definition.version = expected_version + 1
            definition.updated_at = self.clock()
            if await self.storage.compare_and_save(
                self.TABLE, code, definition.to_dict(), expected_version
            ):
                return definition
