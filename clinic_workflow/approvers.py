"""
Approver Resolution Module

A step's approver specification is one of four variants:

    RoleApprover(role_id)               every active member of the role
    EmployeeApprover(employee_id)       one specific employee
    DepartmentApprover(department_id)   the department head, or the whole
                                        department as a claimable pool
    ExpressionApprover(expression)      union of terms separated by "|"

Expression terms:

    initiator.manager            manager of the initiator
    initiator.department.head    head of the initiator's own department
    department.head              head of the instance's department
    department.parent.head       head of the instance department's parent
    role:<role_id>               role members
    employee:<employee_id>       that employee
    department:<department_id>   head of that department
    context.<key>                employee id(s) stored in the instance context

Resolution maps the specification to base identities, substitutes active
delegations one hop only, and deduplicates. Resolving to nobody is a
configuration error.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, List, Optional, Set, Tuple, Union
import logging

from .delegations import DelegationRegistry
from .directory import DirectoryInterface
from .exceptions import UnresolvedApproverError
from .storage import utc_now

logger = logging.getLogger("clinic_workflow.approvers")


@dataclass(frozen=True)
class RoleApprover:
    role_id: str
    kind: ClassVar[str] = "role"


@dataclass(frozen=True)
class EmployeeApprover:
    employee_id: str
    kind: ClassVar[str] = "employee"


@dataclass(frozen=True)
class DepartmentApprover:
    department_id: Optional[str] = None  # None = the instance's department
    pool: bool = False
    kind: ClassVar[str] = "department"


@dataclass(frozen=True)
class ExpressionApprover:
    expression: str
    kind: ClassVar[str] = "expression"


ApproverSpec = Union[RoleApprover, EmployeeApprover, DepartmentApprover, ExpressionApprover]

_APPROVER_TYPES = {
    cls.kind: cls
    for cls in (RoleApprover, EmployeeApprover, DepartmentApprover, ExpressionApprover)
}


def approver_to_dict(approver: Optional[ApproverSpec]) -> Optional[Dict[str, Any]]:
    if approver is None:
        return None
    if isinstance(approver, RoleApprover):
        return {'kind': approver.kind, 'role_id': approver.role_id}
    if isinstance(approver, EmployeeApprover):
        return {'kind': approver.kind, 'employee_id': approver.employee_id}
    if isinstance(approver, DepartmentApprover):
        return {'kind': approver.kind, 'department_id': approver.department_id,
                'pool': approver.pool}
    if isinstance(approver, ExpressionApprover):
        return {'kind': approver.kind, 'expression': approver.expression}
    raise TypeError(f"Unsupported approver specification: {approver!r}")


def approver_from_dict(data: Optional[Dict[str, Any]]) -> Optional[ApproverSpec]:
    if not data:
        return None
    fields = dict(data)
    kind = fields.pop('kind', None)
    if kind not in _APPROVER_TYPES:
        raise UnresolvedApproverError(f"Unknown approver kind: {kind}", approver=data)
    try:
        return _APPROVER_TYPES[kind](**fields)
    except TypeError as e:
        raise UnresolvedApproverError(f"Malformed approver specification: {e}", approver=data)


_FIXED_TERMS = {
    'initiator.manager',
    'initiator.department.head',
    'department.head',
    'department.parent.head',
}
_PREFIXED_TERMS = ('role:', 'employee:', 'department:', 'context.')


def parse_expression(expression: str) -> List[Tuple[str, Optional[str]]]:
    """
    Split an approver expression into (term, argument) pairs.

    Raises:
        UnresolvedApproverError: for empty expressions or unknown terms
    """
    if not expression or not expression.strip():
        raise UnresolvedApproverError("Empty approver expression")

    terms = []
    for raw in expression.split('|'):
        term = raw.strip()
        if term in _FIXED_TERMS:
            terms.append((term, None))
            continue
        for prefix in _PREFIXED_TERMS:
            if term.startswith(prefix) and term[len(prefix):].strip():
                terms.append((prefix, term[len(prefix):].strip()))
                break
        else:
            raise UnresolvedApproverError(
                f"Malformed approver expression term {term!r} in {expression!r}",
                approver={'kind': 'expression', 'expression': expression},
            )
    return terms


@dataclass
class ResolutionContext:
    """What the resolver knows about the instance being routed"""
    workflow_code: str
    initiator_id: str
    department_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    step_sequence: Optional[int] = None


@dataclass
class ApproverCandidate:
    employee_id: str
    delegated_from: Optional[str] = None
    delegation_id: Optional[str] = None


@dataclass
class ResolvedApprovers:
    """Concrete candidates for one step activation"""
    candidates: List[ApproverCandidate]
    pooled: bool = False  # one claimable task for the whole set
    department_id: Optional[str] = None  # owning department for department tasks

    @property
    def employee_ids(self) -> List[str]:
        return [c.employee_id for c in self.candidates]


class ApproverResolver:
    """Turns approver specifications plus delegation state into candidates"""

    def __init__(self, directory: DirectoryInterface, delegations: DelegationRegistry,
                 allow_self_approval: bool = False,
                 clock: Callable[[], datetime] = utc_now):
        self.directory = directory
        self.delegations = delegations
        self.allow_self_approval = allow_self_approval
        self.clock = clock

    async def resolve(self, approver: Optional[ApproverSpec],
                      ctx: ResolutionContext) -> ResolvedApprovers:
        """
        Resolve a specification to a non-empty candidate set.

        Raises:
            UnresolvedApproverError: malformed specification or no candidates
        """
        if approver is None:
            raise UnresolvedApproverError(
                "Step has no approver specification", step_sequence=ctx.step_sequence
            )

        pooled = False
        owner_department = None
        if isinstance(approver, RoleApprover):
            base = await self._role_members(approver.role_id)
        elif isinstance(approver, EmployeeApprover):
            base = await self._active_employee(approver.employee_id)
        elif isinstance(approver, DepartmentApprover):
            owner_department = approver.department_id or ctx.department_id
            if not owner_department:
                raise UnresolvedApproverError(
                    "No department to resolve the approver from",
                    step_sequence=ctx.step_sequence, approver=approver_to_dict(approver),
                )
            if approver.pool:
                pooled = True
                members = await self.directory.get_department_members(owner_department)
                base = [m.id for m in members]
            else:
                base = await self._department_head(owner_department, ctx.initiator_id)
        elif isinstance(approver, ExpressionApprover):
            base = await self._evaluate_expression(approver.expression, ctx)
        else:
            raise UnresolvedApproverError(f"Unsupported approver specification: {approver!r}")

        if not self.allow_self_approval:
            base = [employee_id for employee_id in base if employee_id != ctx.initiator_id]
        if not base:
            raise UnresolvedApproverError(
                f"Approver specification resolved to no active employees "
                f"for workflow {ctx.workflow_code}",
                step_sequence=ctx.step_sequence, approver=approver_to_dict(approver),
            )

        candidates = await self._apply_delegations(base, ctx)
        return ResolvedApprovers(
            candidates=candidates, pooled=pooled, department_id=owner_department
        )

    async def _apply_delegations(self, base: List[str],
                                 ctx: ResolutionContext) -> List[ApproverCandidate]:
        at = self.clock()
        candidates: List[ApproverCandidate] = []
        seen: Set[str] = set()
        for employee_id in base:
            candidate = ApproverCandidate(employee_id)
            delegation = await self.delegations.find_active_delegation(
                employee_id, ctx.workflow_code, at
            )
            if delegation and await self._can_substitute(delegation.delegate_id, ctx):
                candidate = ApproverCandidate(
                    delegation.delegate_id,
                    delegated_from=employee_id,
                    delegation_id=delegation.id,
                )
            if candidate.employee_id not in seen:
                seen.add(candidate.employee_id)
                candidates.append(candidate)
        return candidates

    async def _can_substitute(self, delegate_id: str, ctx: ResolutionContext) -> bool:
        if delegate_id == ctx.initiator_id and not self.allow_self_approval:
            return False
        return bool(await self._active_employee(delegate_id))

    async def _role_members(self, role_id: str) -> List[str]:
        return [member.id for member in await self.directory.get_role_members(role_id)]

    async def _active_employee(self, employee_id: Optional[str]) -> List[str]:
        if not employee_id:
            return []
        employee = await self.directory.get_employee(employee_id)
        return [employee.id] if employee and employee.is_active else []

    async def _department_head(self, department_id: Optional[str],
                               initiator_id: Optional[str]) -> List[str]:
        """Nearest active head walking up the hierarchy, skipping the initiator"""
        visited: Set[str] = set()
        while department_id and department_id not in visited:
            visited.add(department_id)
            department = await self.directory.get_department(department_id)
            if not department:
                return []
            if department.head_id and (
                self.allow_self_approval or department.head_id != initiator_id
            ):
                head = await self._active_employee(department.head_id)
                if head:
                    return head
            department_id = department.parent_id
        return []

    async def _evaluate_expression(self, expression: str,
                                   ctx: ResolutionContext) -> List[str]:
        result: List[str] = []
        for term, argument in parse_expression(expression):
            if term == 'initiator.manager':
                initiator = await self.directory.get_employee(ctx.initiator_id)
                ids = await self._active_employee(initiator.manager_id if initiator else None)
            elif term == 'initiator.department.head':
                initiator = await self.directory.get_employee(ctx.initiator_id)
                department_id = initiator.department_id if initiator else None
                ids = await self._department_head(department_id, ctx.initiator_id)
            elif term == 'department.head':
                ids = await self._department_head(ctx.department_id, ctx.initiator_id)
            elif term == 'department.parent.head':
                department = (
                    await self.directory.get_department(ctx.department_id)
                    if ctx.department_id else None
                )
                ids = await self._department_head(
                    department.parent_id if department else None, ctx.initiator_id
                )
            elif term == 'role:':
                ids = await self._role_members(argument)
            elif term == 'employee:':
                ids = await self._active_employee(argument)
            elif term == 'department:':
                ids = await self._department_head(argument, ctx.initiator_id)
            else:
                value = ctx.context.get(argument)
                values = value if isinstance(value, list) else [value]
                ids = []
                for employee_id in values:
                    ids.extend(await self._active_employee(str(employee_id) if employee_id else None))
            result.extend(ids)

            if not ids:
                logger.debug("Approver term %s%s resolved to nobody", term, argument or "")
        return result
