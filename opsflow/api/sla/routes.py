from fastapi import APIRouter, Depends, Query

from opsflow.api.deps import as_http_error, get_sla_monitor
from opsflow.core.security import get_current_user, require_role
from opsflow.domain.errors import DomainError
from opsflow.services.sla_monitor import SlaMonitor

router = APIRouter(prefix="/sla", tags=["sla"])


@router.post("/check")
async def run_sla_check(
    user: dict = Depends(require_role()),
    monitor: SlaMonitor = Depends(get_sla_monitor),
):
    try:
        result = await monitor.run_check(tenant_id=user["tenant_id"])
    except DomainError as e:
        raise as_http_error(e)
    return {"success": True, "data": result.to_dict()}


@router.get("/summary")
async def sla_summary(
    days: int = Query(default=30, ge=1, le=365),
    user: dict = Depends(get_current_user),
    monitor: SlaMonitor = Depends(get_sla_monitor),
):
    return {"success": True, "data": await monitor.summary(days=days, tenant_id=user["tenant_id"])}


@router.get("/breaches")
async def sla_breaches(
    days: int = Query(default=30, ge=1, le=365),
    limit: int = Query(default=100, ge=1, le=1000),
    user: dict = Depends(get_current_user),
    monitor: SlaMonitor = Depends(get_sla_monitor),
):
    items = await monitor.list_breaches(days=days, limit=limit, tenant_id=user["tenant_id"])
    return {"success": True, "data": items}
