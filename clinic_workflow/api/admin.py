"""
Administrative endpoints: overdue sweep, directory maintenance, notifications
"""

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import WorkflowSystem, get_workflow_system
from .schemas import CreateDepartmentRequest, CreateEmployeeRequest


router = APIRouter()


@router.post("/process-overdue")
async def process_overdue_steps(system: WorkflowSystem = Depends(get_workflow_system)):
    """Escalate or remind overdue tasks; meant to be called by a scheduler"""
    summary = await system.engine.sweeper.sweep()
    return summary.to_dict()


@router.post("/employees", status_code=status.HTTP_201_CREATED)
async def create_employee(
    request: CreateEmployeeRequest,
    system: WorkflowSystem = Depends(get_workflow_system)
):
    employee = await system.directory.add_employee(
        request.employee_id,
        request.name,
        email=request.email,
        department_id=request.department_id,
        manager_id=request.manager_id,
        roles=request.roles,
        is_active=request.is_active,
    )
    return employee.to_dict()


@router.post("/employees/{employee_id}/deactivate")
async def deactivate_employee(employee_id: str,
                              system: WorkflowSystem = Depends(get_workflow_system)):
    if not await system.directory.deactivate_employee(employee_id):
        raise HTTPException(status_code=404, detail="Employee not found")
    return {"employee_id": employee_id, "is_active": False}


@router.post("/departments", status_code=status.HTTP_201_CREATED)
async def create_department(
    request: CreateDepartmentRequest,
    system: WorkflowSystem = Depends(get_workflow_system)
):
    department = await system.directory.add_department(
        request.department_id,
        request.name,
        head_id=request.head_id,
        parent_id=request.parent_id,
    )
    return department.to_dict()


@router.get("/notifications/{recipient_id}")
async def get_notifications(
    recipient_id: str,
    unread_only: bool = False,
    system: WorkflowSystem = Depends(get_workflow_system)
):
    notifications = await system.in_app.get_notifications(recipient_id, unread_only)
    return {"notifications": [n.to_dict() for n in notifications]}
