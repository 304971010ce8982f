"""
Pydantic schemas for API requests
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..approvers import approver_from_dict
from ..definitions import StepType, WorkflowDefinition, WorkflowStep
from ..storage import utc_now


# Definition schemas
class ApproverModel(BaseModel):
    kind: str = Field(..., description="Approver kind (role, employee, department, expression)")
    role_id: Optional[str] = None
    employee_id: Optional[str] = None
    department_id: Optional[str] = None
    pool: bool = False
    expression: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        fields = {
            'role': ('role_id',),
            'employee': ('employee_id',),
            'department': ('department_id', 'pool'),
            'expression': ('expression',),
        }.get(self.kind, ())
        data = {'kind': self.kind}
        data.update({name: getattr(self, name) for name in fields})
        return data


class StepModel(BaseModel):
    sequence: int
    name: str
    step_type: str = Field(StepType.APPROVAL.value, description="approval, notification or conditional")
    approver: Optional[ApproverModel] = None
    allow_delegation: bool = True
    allow_rejection: bool = True
    escalation_hours: Optional[float] = None
    escalation_role_id: Optional[str] = None
    condition: Dict[str, Any] = Field(default_factory=dict)
    return_to_sequence: Optional[int] = None
    description: str = ""

    def to_step(self) -> WorkflowStep:
        return WorkflowStep(
            sequence=self.sequence,
            name=self.name,
            step_type=StepType(self.step_type),
            approver=approver_from_dict(self.approver.to_dict()) if self.approver else None,
            allow_delegation=self.allow_delegation,
            allow_rejection=self.allow_rejection,
            escalation_hours=self.escalation_hours,
            escalation_role_id=self.escalation_role_id,
            condition=self.condition,
            return_to_sequence=self.return_to_sequence,
            description=self.description,
        )


class CreateDefinitionRequest(BaseModel):
    code: str
    name: str
    entity_type: str
    steps: List[StepModel]
    description: str = ""
    sla_hours: Optional[float] = None
    allow_parallel_approval: bool = False
    require_all_approvers: bool = False
    rejection_policy: Optional[str] = None
    is_active: bool = True

    def to_definition(self, created_by: str, default_policy: str) -> WorkflowDefinition:
        now = utc_now()
        return WorkflowDefinition(
            id=self.code,
            created_at=now,
            updated_at=now,
            code=self.code,
            name=self.name,
            entity_type=self.entity_type,
            steps=[step.to_step() for step in self.steps],
            description=self.description,
            sla_hours=self.sla_hours,
            allow_parallel_approval=self.allow_parallel_approval,
            require_all_approvers=self.require_all_approvers,
            rejection_policy=self.rejection_policy or default_policy,
            is_active=self.is_active,
            created_by=created_by,
        )


class UpdateDefinitionRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    entity_type: Optional[str] = None
    steps: Optional[List[StepModel]] = None
    sla_hours: Optional[float] = None
    allow_parallel_approval: Optional[bool] = None
    require_all_approvers: Optional[bool] = None
    rejection_policy: Optional[str] = None

    def to_updates(self) -> Dict[str, Any]:
        updates = self.model_dump(exclude_unset=True, exclude={'steps'})
        if self.steps is not None:
            updates['steps'] = [step.to_step() for step in self.steps]
        return updates


# Workflow schemas
class StartWorkflowRequest(BaseModel):
    workflow_code: str
    entity_type: str
    entity_id: str
    entity_reference: str = ""
    comments: Optional[str] = None
    department_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    priority: str = Field("normal", description="low, normal, high or urgent")


class DecisionRequest(BaseModel):
    comments: Optional[str] = None


class ProvideInfoRequest(BaseModel):
    comments: Optional[str] = None
    context_updates: Dict[str, Any] = Field(default_factory=dict)


class DelegateStepRequest(BaseModel):
    delegate_to: str
    reason: Optional[str] = None


class CancelWorkflowRequest(BaseModel):
    reason: Optional[str] = None


# Delegation schemas
class CreateDelegationRequest(BaseModel):
    delegate_id: str
    starts_at: datetime
    ends_at: datetime
    delegator_id: Optional[str] = Field(None, description="Defaults to the calling user")
    workflow_codes: List[str] = Field(default_factory=list)
    reason: str = ""


# Directory schemas
class CreateEmployeeRequest(BaseModel):
    employee_id: str
    name: str
    email: str = ""
    department_id: Optional[str] = None
    manager_id: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    is_active: bool = True


class CreateDepartmentRequest(BaseModel):
    department_id: str
    name: str
    head_id: Optional[str] = None
    parent_id: Optional[str] = None
