"""Service providers for route dependencies; tests swap them via app.dependency_overrides."""
from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import async_sessionmaker

from opsflow.core.database import AsyncSessionLocal
from opsflow.domain.errors import DomainError
from opsflow.services.event_log import EventLogStore
from opsflow.services.offer_broadcast import OfferBroadcastService
from opsflow.services.offer_claim import OfferClaimCoordinator
from opsflow.services.sla_monitor import SlaMonitor
from opsflow.services.workflow_executor import WorkflowExecutor
from opsflow.shared.event_bus.bus import EventBus, get_event_bus


def as_http_error(e: DomainError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"code": e.code, "message": e.message})


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


def get_bus() -> EventBus:
    return get_event_bus()


def get_event_log(session_factory: async_sessionmaker = Depends(get_session_factory)) -> EventLogStore:
    return EventLogStore(session_factory)


def get_offer_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    bus: EventBus = Depends(get_bus),
) -> OfferBroadcastService:
    return OfferBroadcastService(session_factory, bus)


def get_claim_coordinator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    bus: EventBus = Depends(get_bus),
) -> OfferClaimCoordinator:
    return OfferClaimCoordinator(session_factory, bus)


def get_sla_monitor(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    bus: EventBus = Depends(get_bus),
) -> SlaMonitor:
    return SlaMonitor(session_factory, bus)


def get_workflow_executor(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    bus: EventBus = Depends(get_bus),
) -> WorkflowExecutor:
    return WorkflowExecutor(session_factory, bus)
