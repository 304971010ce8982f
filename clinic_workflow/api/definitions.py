"""
Workflow definition endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_current_user, get_engine
from .schemas import CreateDefinitionRequest, UpdateDefinitionRequest
from ..exceptions import InvalidDefinitionError, UnknownWorkflowCodeError
from ..workflows import WorkflowEngine


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_definition(
    request: CreateDefinitionRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Create a workflow definition"""
    try:
        definition = request.to_definition(user_id, engine.config.default_rejection_policy)
    except ValueError as e:
        raise InvalidDefinitionError(str(e))
    definition = await engine.create_definition(definition)
    return definition.to_dict()


@router.get("")
async def list_definitions(
    active_only: bool = False,
    entity_type: Optional[str] = None,
    engine: WorkflowEngine = Depends(get_engine)
):
    """List workflow definitions"""
    definitions = await engine.list_definitions(active_only, entity_type)
    return {"definitions": [d.to_dict() for d in definitions]}


@router.get("/{code}")
async def get_definition(code: str, engine: WorkflowEngine = Depends(get_engine)):
    """Get workflow definition by code"""
    definition = await engine.get_definition(code)
    if not definition:
        raise UnknownWorkflowCodeError(code, "not found")
    return definition.to_dict()


@router.put("/{code}")
async def update_definition(
    code: str,
    request: UpdateDefinitionRequest,
    user_id: str = Depends(get_current_user),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Update a workflow definition; running instances keep their snapshot"""
    try:
        updates = request.to_updates()
    except ValueError as e:
        raise InvalidDefinitionError(str(e))
    definition = await engine.update_definition(code, updates, user_id)
    return definition.to_dict()


@router.post("/{code}/activate")
async def activate_definition(code: str, engine: WorkflowEngine = Depends(get_engine)):
    definition = await engine.activate_definition(code)
    return {"code": definition.code, "is_active": definition.is_active, "version": definition.version}


@router.post("/{code}/deactivate")
async def deactivate_definition(code: str, engine: WorkflowEngine = Depends(get_engine)):
    definition = await engine.deactivate_definition(code)
    return {"code": definition.code, "is_active": definition.is_active, "version": definition.version}


@router.delete("/{code}")
async def delete_definition(code: str, engine: WorkflowEngine = Depends(get_engine)):
    """Delete a definition no instance references"""
    await engine.delete_definition(code)
    return {"message": f"Workflow definition {code} deleted"}
