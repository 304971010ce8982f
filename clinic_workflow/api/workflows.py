"""
Workflow instance endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import get_current_user, get_engine
from .schemas import (
    CancelWorkflowRequest,
    DecisionRequest,
    DelegateStepRequest,
    ProvideInfoRequest,
    StartWorkflowRequest,
)
from ..instances import WorkflowStatus
from ..tasks import TaskPriority
from ..workflows import WorkflowEngine


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_workflow(
    request: StartWorkflowRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Start a workflow for an entity"""
    try:
        priority = TaskPriority(request.priority)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid priority: {request.priority}")

    instance = await engine.start_workflow(
        request.workflow_code,
        request.entity_type,
        request.entity_id,
        request.entity_reference,
        request.comments,
        initiated_by=user_id,
        department_id=request.department_id,
        context=request.context,
        priority=priority,
    )
    return instance.to_dict()


@router.get("")
async def list_workflows(
    status: Optional[str] = None,
    workflow_code: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    initiated_by: Optional[str] = None,
    engine: WorkflowEngine = Depends(get_engine)
):
    """List workflow instances"""
    try:
        workflow_status = WorkflowStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    instances = await engine.list_instances(
        workflow_status, workflow_code, entity_type, entity_id, initiated_by
    )
    return {"workflows": [i.to_dict() for i in instances]}


@router.get("/{instance_id}")
async def get_workflow(instance_id: str, engine: WorkflowEngine = Depends(get_engine)):
    instance = await engine.get_instance(instance_id)
    return instance.to_dict()


@router.post("/{instance_id}/approve")
async def approve_step(
    instance_id: str,
    request: DecisionRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    instance = await engine.approve_step(instance_id, user_id, request.comments)
    return instance.to_dict()


@router.post("/{instance_id}/reject")
async def reject_step(
    instance_id: str,
    request: DecisionRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    instance = await engine.reject_step(instance_id, user_id, request.comments)
    return instance.to_dict()


@router.post("/{instance_id}/request-info")
async def request_more_info(
    instance_id: str,
    request: DecisionRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    instance = await engine.request_more_info(instance_id, user_id, request.comments)
    return instance.to_dict()


@router.post("/{instance_id}/provide-info")
async def provide_more_info(
    instance_id: str,
    request: ProvideInfoRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    instance = await engine.provide_more_info(
        instance_id, user_id, request.comments, request.context_updates
    )
    return instance.to_dict()


@router.post("/{instance_id}/delegate")
async def delegate_step(
    instance_id: str,
    request: DelegateStepRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    instance = await engine.delegate_step(instance_id, user_id, request.delegate_to, request.reason)
    return instance.to_dict()


@router.post("/{instance_id}/cancel")
async def cancel_workflow(
    instance_id: str,
    request: CancelWorkflowRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    instance = await engine.cancel_workflow(instance_id, user_id, request.reason)
    return instance.to_dict()


@router.get("/{instance_id}/history")
async def get_workflow_history(instance_id: str, engine: WorkflowEngine = Depends(get_engine)):
    """Hash-chained history of an instance"""
    entries = await engine.get_workflow_history(instance_id)
    return {"instance_id": instance_id, "entries": [e.to_dict() for e in entries]}


@router.get("/{instance_id}/audit-report")
async def get_workflow_audit_report(instance_id: str,
                                    engine: WorkflowEngine = Depends(get_engine)):
    report = await engine.get_workflow_audit_report(instance_id)
    return report.to_dict()
