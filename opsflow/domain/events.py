"""Domain Events: immutable records of things that happened."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from opsflow.core.timeutil import ensure_utc


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def domain_of(event_type: str) -> str:
    """'maintenance.request.created' → 'maintenance'."""
    return event_type.split(".", 1)[0]


@dataclass(frozen=True)
class EventMetadata:
    user_id: str | None = None
    correlation_id: str | None = None
    causation_id: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class DomainEventInput:
    """What a publisher hands to the bus; the bus fills in the rest."""
    event_type: str
    aggregate_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    domain: str | None = None
    severity: Severity = Severity.INFO
    event_id: str | None = None
    metadata: EventMetadata = field(default_factory=EventMetadata)
    tenant_id: str | None = None


@dataclass(frozen=True)
class DomainEvent:
    """A stored event. seq is assigned by the log and orders catch-up replays."""
    event_id: str
    event_type: str
    domain: str
    aggregate_id: str
    payload: dict[str, Any]
    severity: Severity
    metadata: EventMetadata
    tenant_id: str = "default"
    seq: int | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "domain": self.domain,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload,
            "severity": self.severity.value,
            "tenant_id": self.tenant_id,
            "metadata": {
                "user_id": self.metadata.user_id,
                "correlation_id": self.metadata.correlation_id,
                "causation_id": self.metadata.causation_id,
                "timestamp": self.metadata.timestamp.isoformat() if self.metadata.timestamp else None,
            },
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> DomainEvent:
        meta = message.get("metadata") or {}
        ts = meta.get("timestamp")
        return cls(
            event_id=message["event_id"],
            event_type=message["event_type"],
            domain=message.get("domain") or domain_of(message["event_type"]),
            aggregate_id=message.get("aggregate_id", ""),
            payload=message.get("payload") or {},
            severity=Severity(message.get("severity", Severity.INFO.value)),
            tenant_id=message.get("tenant_id") or "default",
            seq=message.get("seq"),
            metadata=EventMetadata(
                user_id=meta.get("user_id"),
                correlation_id=meta.get("correlation_id"),
                causation_id=meta.get("causation_id"),
                timestamp=ensure_utc(datetime.fromisoformat(ts)) if ts else None,
            ),
        )
