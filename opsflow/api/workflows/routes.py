from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from opsflow.core.middleware import get_current_tenant_id
from opsflow.core.security import require_role
from opsflow.api.deps import get_workflow_executor
from opsflow.domain.workflow import ExecutionStatus
from opsflow.services.workflow_executor import WorkflowExecutor

router = APIRouter(prefix="/workflows", tags=["workflows"])


class TriggerCreateRequest(BaseModel):
    trigger_name: str = Field(min_length=1, max_length=200)
    event_type: str
    actions: list[dict] = Field(min_length=1)
    conditions: dict | None = None
    source_module: str | None = None
    is_active: bool = True


@router.get("/triggers")
async def list_triggers(
    event_type: str | None = None,
    executor: WorkflowExecutor = Depends(get_workflow_executor),
):
    items = await executor.list_triggers(event_type, tenant_id=get_current_tenant_id() or "default")
    return {"success": True, "data": items}


@router.post("/triggers", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_role())])
async def create_trigger(
    req: TriggerCreateRequest,
    executor: WorkflowExecutor = Depends(get_workflow_executor),
):
    try:
        item = await executor.create_trigger(
            req.trigger_name,
            req.event_type,
            req.actions,
            source_module=req.source_module,
            conditions=req.conditions,
            is_active=req.is_active,
            tenant_id=get_current_tenant_id() or "default",
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail={"code": "INVALID_TRIGGER", "message": str(e)})
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail={"code": "TRIGGER_EXISTS", "message": f"trigger '{req.trigger_name}' already exists"},
        )
    return {"success": True, "data": item}


@router.get("/executions")
async def list_executions(
    trigger_id: str | None = None,
    status_filter: ExecutionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    executor: WorkflowExecutor = Depends(get_workflow_executor),
):
    items = await executor.list_executions(
        trigger_id=trigger_id,
        status=status_filter.value if status_filter else None,
        tenant_id=get_current_tenant_id() or "default",
        limit=limit,
    )
    return {"success": True, "data": items}
