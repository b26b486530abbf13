from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from opsflow.core.config import settings
from opsflow.domain.errors import DomainError


class EventPayload(BaseModel):
    """Known fields are typed; extra keys ride along untouched."""
    model_config = ConfigDict(extra="allow")


# ── Maintenance requests ─────────────────────────────────

class RequestCreatedPayload(EventPayload):
    request_id: str
    title: str | None = None
    priority: str | None = None
    sla_breach_at: datetime | None = None


class RequestAssignedPayload(EventPayload):
    request_id: str
    assigned_to: str
    via_offer_id: str | None = None


class RequestCompletedPayload(EventPayload):
    request_id: str
    priority: str | None = None
    completed_by: str | None = None


# ── Offers ───────────────────────────────────────────────

class OfferCreatedPayload(EventPayload):
    offer_id: str
    request_id: str
    expires_at: datetime
    recipients: list[str]
    recipients_count: int


class OfferClaimedPayload(EventPayload):
    offer_id: str
    request_id: str
    winner: str
    claimed_at: datetime


class OfferDeclinedPayload(EventPayload):
    offer_id: str
    request_id: str
    user_id: str


class OfferClosedPayload(EventPayload):
    offer_id: str
    request_id: str
    reason: str | None = None


# ── SLA ──────────────────────────────────────────────────

class SlaBreachedPayload(EventPayload):
    request_id: str
    breach_record_id: str
    sla_breach_at: datetime
    penalty_amount: float
    priority: str | None = None
    severity: str = "critical"


# ── Other modules ────────────────────────────────────────

class OrderCompletedPayload(EventPayload):
    order_id: str


class VisitorCheckedInPayload(EventPayload):
    visitor_id: str


class WorkflowExecutionFailedPayload(EventPayload):
    execution_id: str
    trigger_id: str
    trigger_name: str
    error_message: str


@dataclass(frozen=True)
class EventContract:
    event_type: str
    domain: str
    version: str
    payload_model: type[EventPayload]


class EventContractError(DomainError):
    status_code = 422


def _contract(event_type: str, model: type[EventPayload], version: str = "1.0.0") -> EventContract:
    return EventContract(event_type=event_type, domain=event_type.split(".", 1)[0], version=version, payload_model=model)


EVENT_CONTRACTS: dict[str, EventContract] = {
    c.event_type: c
    for c in (
        _contract("maintenance.request.created", RequestCreatedPayload),
        _contract("maintenance.request.assigned", RequestAssignedPayload),
        _contract("maintenance.request.completed", RequestCompletedPayload),
        _contract("maintenance.offer.created", OfferCreatedPayload),
        _contract("maintenance.offer.claimed", OfferClaimedPayload),
        _contract("maintenance.offer.declined", OfferDeclinedPayload),
        _contract("maintenance.offer.expired", OfferClosedPayload),
        _contract("maintenance.offer.cancelled", OfferClosedPayload),
        _contract("maintenance.sla.breached", SlaBreachedPayload),
        _contract("procurement.order.completed", OrderCompletedPayload),
        _contract("visitor.checked_in", VisitorCheckedInPayload),
        _contract("workflow.execution.failed", WorkflowExecutionFailedPayload),
    )
}


def enforce_event_contract(event_type: str, payload: dict[str, Any], strict: bool | None = None) -> dict[str, Any]:
    """Validate payload against the registered schema and return its JSON form."""
    strict = settings.EVENT_CONTRACTS_STRICT if strict is None else strict
    contract = EVENT_CONTRACTS.get(event_type)
    if contract is None:
        if strict:
            raise EventContractError("EVENT_CONTRACT_NOT_REGISTERED", f"event_type '{event_type}' is not registered")
        return dict(payload)

    requested_version = str(payload.get("event_contract_version") or contract.version)
    if requested_version != contract.version:
        raise EventContractError(
            "EVENT_CONTRACT_VERSION_MISMATCH",
            f"event_type '{event_type}' expects version {contract.version}, got {requested_version}",
        )

    try:
        model = contract.payload_model.model_validate(payload)
    except ValidationError as e:
        raise EventContractError(
            "EVENT_PAYLOAD_INVALID",
            f"payload for '{event_type}' failed validation: {e.errors(include_url=False)}",
        ) from e
    return model.model_dump(mode="json")
