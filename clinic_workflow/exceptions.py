"""
Typed Exception Hierarchy for the Workflow Engine

    WorkflowError (base)
    |
    +-- ConfigurationError         fatal, surfaced to whoever configured/started
    |   +-- UnknownWorkflowCodeError
    |   +-- UnresolvedApproverError
    |   +-- InvalidDefinitionError
    |   +-- DefinitionInUseError
    |
    +-- ConcurrencyError           recoverable by re-fetching and retrying
    |   +-- StaleTaskError
    |   +-- AlreadyClaimedError
    |   +-- WorkflowStateError
    |
    +-- AuthorizationError         rejected outright, never retried
    |   +-- NotAssignedError
    |   +-- DelegationScopeError
    |   +-- ActionNotAllowedError
    |
    +-- DuplicateWorkflowError     caller bug
    |
    +-- NotFoundError
    |   +-- InstanceNotFoundError
    |   +-- TaskNotFoundError
    |   +-- DelegationNotFoundError
    |
    +-- InvalidTransitionError

Every class carries a machine-readable `code` and the HTTP status the API
layer answers with.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base exception for all workflow engine errors."""

    code: str = "WORKFLOW_ERROR"
    status_code: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Configuration errors


class ConfigurationError(WorkflowError):
    """Base exception for workflow configuration problems."""

    code: str = "CONFIGURATION_ERROR"
    status_code: int = 422


class UnknownWorkflowCodeError(ConfigurationError):
    """No active workflow definition exists for the code."""

    code: str = "UNKNOWN_WORKFLOW_CODE"
    status_code: int = 404

    def __init__(self, workflow_code: str, reason: str = "not found or inactive"):
        self.workflow_code = workflow_code
        super().__init__(
            f"Workflow {workflow_code} {reason}",
            {"workflow_code": workflow_code},
        )


class UnresolvedApproverError(ConfigurationError):
    """Approver specification is malformed or resolves to nobody."""

    code: str = "UNRESOLVED_APPROVER"

    def __init__(self, message: str, step_sequence: Optional[int] = None,
                 approver: Optional[Dict[str, Any]] = None):
        self.step_sequence = step_sequence
        self.approver = approver
        super().__init__(message, {"step_sequence": step_sequence, "approver": approver})


class InvalidDefinitionError(ConfigurationError, ValueError):
    """Workflow definition failed validation."""

    code: str = "INVALID_DEFINITION"


class DefinitionInUseError(ConfigurationError):
    """Definition cannot be deleted while instances reference it."""

    code: str = "DEFINITION_IN_USE"
    status_code: int = 409

    def __init__(self, workflow_code: str, instance_count: int):
        self.workflow_code = workflow_code
        self.instance_count = instance_count
        super().__init__(
            f"Workflow {workflow_code} is referenced by {instance_count} instance(s)",
            {"workflow_code": workflow_code, "instance_count": instance_count},
        )


# Concurrency conflicts


class ConcurrencyError(WorkflowError):
    """Base exception for conflicts resolved by re-fetching state."""

    code: str = "CONCURRENCY_CONFLICT"
    status_code: int = 409


class StaleTaskError(ConcurrencyError):
    """The task was already resolved when the action reached storage."""

    code: str = "STALE_TASK"

    def __init__(self, message: str, instance_id: Optional[str] = None,
                 task_id: Optional[str] = None):
        self.instance_id = instance_id
        self.task_id = task_id
        super().__init__(message, {"instance_id": instance_id, "task_id": task_id})


class AlreadyClaimedError(ConcurrencyError):
    """A pooled task was claimed by someone else first."""

    code: str = "ALREADY_CLAIMED"

    def __init__(self, task_id: str, claimed_by: Optional[str]):
        self.task_id = task_id
        self.claimed_by = claimed_by
        super().__init__(
            f"Task {task_id} already claimed by {claimed_by}",
            {"task_id": task_id, "claimed_by": claimed_by},
        )


class WorkflowStateError(ConcurrencyError):
    """The instance is not in a state that allows the operation."""

    code: str = "INVALID_WORKFLOW_STATE"


# Authorization errors


class AuthorizationError(WorkflowError):
    """Base exception for actions the actor may not perform."""

    code: str = "AUTHORIZATION_ERROR"
    status_code: int = 403


class NotAssignedError(AuthorizationError):
    """Actor holds no live task on the instance."""

    code: str = "NOT_ASSIGNED"

    def __init__(self, message: str, actor_id: Optional[str] = None):
        self.actor_id = actor_id
        super().__init__(message, {"actor_id": actor_id})


class DelegationScopeError(AuthorizationError):
    """Delegation request violates delegation rules."""

    code: str = "DELEGATION_SCOPE"


class ActionNotAllowedError(AuthorizationError):
    """The step configuration does not permit the action."""

    code: str = "ACTION_NOT_ALLOWED"


# Duplicate instances


class DuplicateWorkflowError(WorkflowError):
    """An in-progress instance already exists for the entity."""

    code: str = "DUPLICATE_WORKFLOW"
    status_code: int = 409

    def __init__(self, entity_type: str, entity_id: str, instance_id: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.instance_id = instance_id
        super().__init__(
            f"Active workflow already exists for {entity_type} {entity_id}",
            {"entity_type": entity_type, "entity_id": entity_id, "instance_id": instance_id},
        )


# Lookups


class NotFoundError(WorkflowError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"
    status_code: int = 404


class InstanceNotFoundError(NotFoundError):
    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance {instance_id} not found", {"instance_id": instance_id})


class TaskNotFoundError(NotFoundError):
    code: str = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found", {"task_id": task_id})


class DelegationNotFoundError(NotFoundError):
    code: str = "DELEGATION_NOT_FOUND"

    def __init__(self, delegation_id: str):
        self.delegation_id = delegation_id
        super().__init__(f"Delegation {delegation_id} not found", {"delegation_id": delegation_id})


class InvalidTransitionError(WorkflowError):
    """Illegal move in the task state machine."""

    code: str = "INVALID_TRANSITION"
    status_code: int = 422

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition task from {from_status} to {to_status}",
            {"from_status": from_status, "to_status": to_status},
        )
