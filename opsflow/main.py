import asyncio
import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from opsflow.api import health
from opsflow.api.events.routes import router as events_router
from opsflow.api.offers.routes import router as offers_router
from opsflow.api.sla.routes import router as sla_router
from opsflow.api.workflows.routes import router as workflows_router
from opsflow.core.config import settings
from opsflow.core.database import init_database
from opsflow.core.logging import setup_logging
from opsflow.core.middleware import RequestIdMiddleware, TenantMiddleware, UserContextMiddleware
from opsflow.core.redis_client import close_redis
from opsflow.core.security import get_current_user
from opsflow.shared.event_bus.bus import close_event_bus
from opsflow.workers.sla_worker import SlaWorker
from opsflow.workers.workflow_worker import WorkflowWorker

logger = logging.getLogger("opsflow.core")

app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["Authorization", "Content-Type", "X-Tenant-Id", "X-Request-Id"],
    expose_headers=["X-Request-Id", "X-Response-Time"],
)

app.add_middleware(UserContextMiddleware)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(TenantMiddleware)

app.include_router(health.router, prefix=settings.API_V1_STR)
app.include_router(offers_router, prefix=settings.API_V1_STR, dependencies=[Depends(get_current_user)])
app.include_router(events_router, prefix=settings.API_V1_STR, dependencies=[Depends(get_current_user)])
app.include_router(sla_router, prefix=settings.API_V1_STR, dependencies=[Depends(get_current_user)])
app.include_router(workflows_router, prefix=settings.API_V1_STR, dependencies=[Depends(get_current_user)])

_workers: list = []
_worker_tasks: list[asyncio.Task] = []


@app.on_event("startup")
async def startup_event():
    setup_logging()
    await init_database()
    if settings.WORKFLOW_LISTENER_ENABLED:
        workflow_worker = WorkflowWorker()
        await workflow_worker.subscribe()
        _workers.append(workflow_worker)
    if settings.SLA_WORKER_ENABLED:
        sla_worker = SlaWorker()
        _workers.append(sla_worker)
        _worker_tasks.append(asyncio.create_task(sla_worker.start(), name="sla-worker"))
    logger.info("started with workers: %s", [w.name for w in _workers] or "none")


@app.on_event("shutdown")
async def shutdown_event():
    for worker in _workers:
        await worker.stop()
    for task in _worker_tasks:
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            task.cancel()
    _workers.clear()
    _worker_tasks.clear()
    await close_event_bus()
    await close_redis()
