"""SLA state derivation, penalty rule and escalation dedup keys.

Nothing here is stored: the state of a request is recomputed from
sla_breach_at, its status and the current time on every read.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from opsflow.core.timeutil import ensure_utc
from opsflow.domain.maintenance import RequestStatus, TERMINAL_STATUSES

SLA_BREACH_ESCALATION = "sla_breach"
WORKFLOW_ESCALATION = "workflow_auto"

PENALTY_STEP_RATIO = 0.10
PENALTY_CAP_MULTIPLIER = 5.0


class SlaState(str, Enum):
    ON_TRACK = "on_track"
    WARNING = "warning"
    BREACHED = "breached"
    MET = "met"
    NO_SLA = "no_sla"


class DedupKeyMode(str, Enum):
    REQUEST = "request"
    BREACH_INSTANCE = "breach_instance"


def classify(
    sla_breach_at: datetime | None,
    status: str,
    now: datetime,
    warning_window: timedelta = timedelta(minutes=30),
    completed_at: datetime | None = None,
) -> SlaState:
    if sla_breach_at is None:
        return SlaState.NO_SLA
    breach_at = ensure_utc(sla_breach_at)
    if status in TERMINAL_STATUSES:
        if status == RequestStatus.COMPLETED.value and completed_at is not None and ensure_utc(completed_at) > breach_at:
            return SlaState.BREACHED
        return SlaState.MET
    if breach_at <= now:
        return SlaState.BREACHED
    if breach_at - now < warning_window:
        return SlaState.WARNING
    return SlaState.ON_TRACK


def penalty_for(priority: str | None, hours_overdue: float, base_by_priority: dict[str, float]) -> float:
    """Base amount for the priority, +10% per full hour overdue, capped at 5x base."""
    base = float(base_by_priority.get(priority or "medium", base_by_priority.get("medium", 0.0)))
    full_hours = max(int(hours_overdue), 0)
    amount = base * (1 + PENALTY_STEP_RATIO * full_hours)
    return round(min(amount, base * PENALTY_CAP_MULTIPLIER), 2)


def breach_dedup_key(request_id: str, sla_breach_at: datetime, mode: DedupKeyMode) -> str:
    """request: one escalation per request, ever.
    breach_instance: one escalation per (request, deadline); a re-opened
    request with a new sla_breach_at escalates again."""
    if mode is DedupKeyMode.REQUEST:
        return f"{SLA_BREACH_ESCALATION}:{request_id}"
    stamp = ensure_utc(sla_breach_at).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return f"{SLA_BREACH_ESCALATION}:{request_id}@{stamp}"


@dataclass
class SlaCheckResult:
    breaches_found: int = 0
    skipped: int = 0
    escalated_request_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "breaches_found": self.breaches_found,
            "skipped": self.skipped,
            "escalated_request_ids": list(self.escalated_request_ids),
        }
