"""Built-in workflow actions.

Every action runs inside the execution's transaction: it writes through
ctx.session and stages any events on ctx.staged. A raising action rolls
back every action of the same execution.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from opsflow.core.timeutil import utcnow
from opsflow.domain.conditions import resolve_path
from opsflow.domain.events import DomainEvent, DomainEventInput, EventMetadata, Severity
from opsflow.domain.maintenance import RequestStatus, TERMINAL_STATUSES
from opsflow.domain.sla import WORKFLOW_ESCALATION
from opsflow.domain.workflow import ActionType, WorkflowAction
from opsflow.models.base_models import MaintenanceRequest, SLABreachRecord
from opsflow.services.notification_service import NotificationService, render
from opsflow.services.offer_broadcast import OfferBroadcastService
from opsflow.shared.event_bus.bus import EventBus


@dataclass
class ActionContext:
    session: AsyncSession
    bus: EventBus
    event: DomainEvent
    action: WorkflowAction
    trigger_id: str
    trigger_name: str
    execution_id: str
    staged: list[DomainEvent] = field(default_factory=list)

    @property
    def request_id(self) -> str:
        explicit = self.action.parameters.get("request_id")
        return str(explicit or resolve_path(self.event.payload, "request_id") or self.event.aggregate_id)


ActionHandler = Callable[[ActionContext], Awaitable[dict[str, Any]]]


class ActionRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def get(self, action_type: str) -> ActionHandler:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ValueError(f"unknown workflow action type '{action_type}'")
        return handler

    @property
    def action_types(self) -> list[str]:
        return sorted(self._handlers)

    @classmethod
    def with_builtins(cls) -> ActionRegistry:
        registry = cls()
        registry.register(ActionType.NOTIFICATION.value, send_notification)
        registry.register(ActionType.ESCALATION.value, escalate)
        registry.register(ActionType.PUBLISH_EVENT.value, publish_event)
        registry.register(ActionType.SET_REQUEST_STATUS.value, set_request_status)
        return registry


async def send_notification(ctx: ActionContext) -> dict[str, Any]:
    params = ctx.action.parameters
    user_ids = await NotificationService.resolve_targets(
        ctx.session, ctx.action.target, ctx.event.payload, ctx.event.tenant_id
    )
    title = render(params.get("title") or ctx.trigger_name, ctx.event.payload)
    message = render(params.get("message") or f"{ctx.event.event_type} on {ctx.event.aggregate_id}", ctx.event.payload)
    count = await NotificationService.notify(
        ctx.session,
        user_ids,
        title,
        message,
        type=params.get("type", "info"),
        source_event_id=ctx.event.event_id,
        tenant_id=ctx.event.tenant_id,
    )
    return {"notified": count}


async def escalate(ctx: ActionContext) -> dict[str, Any]:
    params = ctx.action.parameters
    record = SLABreachRecord(
        id=str(uuid.uuid4()),
        request_id=ctx.request_id,
        escalation_type=WORKFLOW_ESCALATION,
        penalty_amount=params.get("penalty_amount"),
        escalation_reason=render(params.get("reason") or f"Escalated by workflow {ctx.trigger_name}", ctx.event.payload),
        escalated_from=params.get("escalated_from"),
        escalated_to=ctx.action.target or None,
        dedup_key=f"{WORKFLOW_ESCALATION}:{ctx.trigger_id}:{ctx.event.event_id}",
        meta={"execution_id": ctx.execution_id, "event_id": ctx.event.event_id, "event_type": ctx.event.event_type},
        created_at=utcnow(),
        tenant_id=ctx.event.tenant_id,
    )
    ctx.session.add(record)
    await ctx.session.flush()
    return {"escalation_id": record.id}


async def publish_event(ctx: ActionContext) -> dict[str, Any]:
    """Invoke a downstream workflow by emitting an event caused by this one."""
    params = ctx.action.parameters
    event_type = params.get("event_type") or ctx.action.target
    if not event_type:
        raise ValueError("publish_event requires an event_type")
    if event_type == ctx.event.event_type:
        raise ValueError(f"publish_event would re-trigger '{event_type}'")
    payload = dict(ctx.event.payload) if params.get("forward_payload") else {}
    payload.update(params.get("payload") or {})
    staged = await ctx.bus.stage(
        ctx.session,
        DomainEventInput(
            event_type=event_type,
            aggregate_id=str(params.get("aggregate_id") or ctx.event.aggregate_id),
            payload=payload,
            severity=Severity(params.get("severity", Severity.INFO.value)),
            metadata=EventMetadata(
                user_id=ctx.event.metadata.user_id,
                correlation_id=ctx.event.metadata.correlation_id,
                causation_id=ctx.event.event_id,
            ),
            tenant_id=ctx.event.tenant_id,
        ),
    )
    ctx.staged.append(staged)
    return {"event_id": staged.event_id, "event_type": event_type}


async def set_request_status(ctx: ActionContext) -> dict[str, Any]:
    status = RequestStatus(ctx.action.target or ctx.action.parameters.get("status"))
    values: dict[str, Any] = {"status": status.value}
    if status is RequestStatus.COMPLETED:
        values["completed_at"] = utcnow()
    result = await ctx.session.execute(
        update(MaintenanceRequest)
        .where(MaintenanceRequest.id == ctx.request_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LookupError(f"maintenance request {ctx.request_id} not found")
    cancelled = []
    if status.value in TERMINAL_STATUSES:
        offers = OfferBroadcastService(event_bus=ctx.bus)
        cancelled = await offers.cancel_open_for_request(
            ctx.session,
            ctx.request_id,
            ctx.event.tenant_id,
            reason=f"request_{status.value}",
            actor_id=ctx.event.metadata.user_id,
        )
        ctx.staged.extend(cancelled)
    return {
        "request_id": ctx.request_id,
        "status": status.value,
        "offers_cancelled": [e.payload["offer_id"] for e in cancelled],
    }
