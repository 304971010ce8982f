"""
Task queue endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .deps import get_current_user, get_engine
from ..definitions import StepType
from ..queue import TaskFilter
from ..tasks import TaskPriority, TaskStatus
from ..workflows import WorkflowEngine


router = APIRouter()


def get_task_filter(
    status: Optional[str] = None,
    workflow_code: Optional[str] = None,
    entity_type: Optional[str] = None,
    step_type: Optional[str] = None,
    priority: Optional[str] = None,
    overdue_only: bool = False,
    include_claimable: bool = True
) -> TaskFilter:
    """Build a TaskFilter from query parameters"""
    try:
        return TaskFilter(
            status=TaskStatus(status) if status else None,
            workflow_code=workflow_code,
            entity_type=entity_type,
            step_type=StepType(step_type) if step_type else None,
            priority=TaskPriority(priority) if priority else None,
            overdue_only=overdue_only,
            include_claimable=include_claimable,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/mine")
async def get_my_tasks(
    task_filter: TaskFilter = Depends(get_task_filter),
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Tasks assigned to the caller plus pools they can claim"""
    tasks = await engine.get_my_tasks(user_id, task_filter)
    return {"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}


@router.get("/department/{department_id}")
async def get_department_tasks(
    department_id: str,
    task_filter: TaskFilter = Depends(get_task_filter),
    engine: WorkflowEngine = Depends(get_engine)
):
    tasks = await engine.get_department_tasks(department_id, task_filter)
    return {"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}


@router.post("/{task_id}/claim")
async def claim_task(
    task_id: str,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    task = await engine.claim_task(task_id, user_id)
    return task.to_dict()


@router.post("/{task_id}/unclaim")
async def unclaim_task(
    task_id: str,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    task = await engine.unclaim_task(task_id, user_id)
    return task.to_dict()
