"""
Approval delegation endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_current_user, get_engine
from .schemas import CreateDelegationRequest
from ..storage import parse_datetime
from ..workflows import WorkflowEngine


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_delegation(
    request: CreateDelegationRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Delegate the caller's (or an admin-named delegator's) approvals for a window"""
    delegation = await engine.create_delegation(
        request.delegator_id or user_id,
        request.delegate_id,
        parse_datetime(request.starts_at),
        parse_datetime(request.ends_at),
        request.workflow_codes,
        request.reason,
        created_by=user_id,
    )
    return delegation.to_dict()


@router.get("/active")
async def get_active_delegations(
    employee_id: Optional[str] = None,
    engine: WorkflowEngine = Depends(get_engine)
):
    delegations = await engine.get_active_delegations(employee_id)
    return {"delegations": [d.to_dict() for d in delegations]}


@router.post("/{delegation_id}/cancel")
async def cancel_delegation(
    delegation_id: str,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    delegation = await engine.cancel_delegation(delegation_id, user_id)
    return delegation.to_dict()
