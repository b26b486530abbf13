import asyncio
import json
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from opsflow.api.deps import as_http_error, get_bus, get_event_log
from opsflow.core.middleware import get_current_tenant_id
from opsflow.core.timeutil import utcnow
from opsflow.domain.errors import DomainError
from opsflow.domain.events import DomainEvent, DomainEventInput, EventMetadata, Severity
from opsflow.services.event_log import EventLogStore
from opsflow.shared.event_bus.bus import EventBus
from opsflow.shared.event_bus.subscription import EventFilter

router = APIRouter(prefix="/events", tags=["events"])

_stream_counts: dict[str, int] = defaultdict(int)
_stream_lock = asyncio.Lock()
_MAX_STREAMS_PER_TENANT = 100
_HEARTBEAT_INTERVAL_SECONDS = 30
_STREAM_BUFFER = 100


class PublishEventRequest(BaseModel):
    event_type: str
    aggregate_id: str
    payload: dict = Field(default_factory=dict)
    domain: str | None = None
    severity: Severity = Severity.INFO
    event_id: str | None = None
    correlation_id: str | None = None
    causation_id: str | None = None


def sse_frame(event_name: str, data: dict, event_id: int | str | None = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_name}")
    lines.append(f"data: {json.dumps(data, ensure_ascii=False)}")
    return "\n".join(lines) + "\n\n"


@router.post("", status_code=status.HTTP_201_CREATED)
async def publish_event(req: PublishEventRequest, bus: EventBus = Depends(get_bus)):
    try:
        event = await bus.publish(
            DomainEventInput(
                event_type=req.event_type,
                aggregate_id=req.aggregate_id,
                payload=req.payload,
                domain=req.domain,
                severity=req.severity,
                event_id=req.event_id,
                metadata=EventMetadata(correlation_id=req.correlation_id, causation_id=req.causation_id),
            )
        )
    except DomainError as e:
        raise as_http_error(e)
    return {"success": True, "data": event.to_message()}


@router.get("")
async def list_events(
    domain: str | None = None,
    event_type: str | None = None,
    aggregate_id: str | None = None,
    after_seq: int | None = Query(default=None, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    log: EventLogStore = Depends(get_event_log),
):
    """Newest first; with after_seq, oldest first from that watermark."""
    tenant_id = get_current_tenant_id() or "default"
    if after_seq is not None:
        events = await log.list_since(
            after_seq, domain=domain, event_type=event_type, tenant_id=tenant_id, limit=limit
        )
    else:
        events = await log.list_recent(
            limit=limit, domain=domain, event_type=event_type, aggregate_id=aggregate_id, tenant_id=tenant_id
        )
    return {"success": True, "data": [e.to_message() for e in events]}


@router.get("/stream")
async def event_stream(
    request: Request,
    event_type: str | None = None,
    domain: str | None = None,
    bus: EventBus = Depends(get_bus),
):
    tenant_id = get_current_tenant_id() or "default"
    async with _stream_lock:
        if _stream_counts[tenant_id] >= _MAX_STREAMS_PER_TENANT:
            raise HTTPException(
                status_code=429,
                detail={"code": "TOO_MANY_STREAM_CONNECTIONS", "message": "too many SSE connections"},
            )
        _stream_counts[tenant_id] += 1

    outbox: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=_STREAM_BUFFER)

    async def forward(event: DomainEvent) -> None:
        await outbox.put(event)

    async def event_generator():
        subscription = None
        try:
            subscription = await bus.subscribe(
                EventFilter(event_type=event_type, domain=domain, tenant_id=tenant_id), forward
            )
            yield sse_frame("ready", {"channel": subscription.channel_key, "last_seq": subscription.last_seq})
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(outbox.get(), timeout=_HEARTBEAT_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    yield sse_frame("heartbeat", {"timestamp": utcnow().isoformat()})
                    continue
                yield sse_frame(event.event_type, event.to_message(), event_id=event.seq)
        finally:
            if subscription is not None:
                await subscription.unsubscribe()
            async with _stream_lock:
                _stream_counts[tenant_id] = max(0, _stream_counts[tenant_id] - 1)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
