"""Maintenance request (work item) states as seen by the offer and SLA core."""
from __future__ import annotations

from enum import Enum


class RequestStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[str] = frozenset({RequestStatus.COMPLETED.value, RequestStatus.CANCELLED.value})


def is_offerable(status: str, assigned_to: str | None) -> bool:
    return status == RequestStatus.PENDING.value and not assigned_to
