"""Workflow execution states and configured actions."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ActionType(str, Enum):
    NOTIFICATION = "notification"
    ESCALATION = "escalation"
    PUBLISH_EVENT = "publish_event"
    SET_REQUEST_STATUS = "set_request_status"


@dataclass(frozen=True)
class WorkflowAction:
    type: str
    target: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> WorkflowAction:
        if not isinstance(raw, dict) or not raw.get("type"):
            raise ValueError(f"workflow action requires a type: {raw!r}")
        return cls(type=str(raw["type"]), target=str(raw.get("target") or ""), parameters=dict(raw.get("parameters") or {}))


@dataclass(frozen=True)
class ExecutionSummary:
    id: str
    trigger_id: str
    trigger_name: str
    event_id: str
    status: ExecutionStatus
    error_message: str | None = None
    actions_run: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.id,
            "trigger_id": self.trigger_id,
            "trigger_name": self.trigger_name,
            "event_id": self.event_id,
            "status": self.status.value,
            "error_message": self.error_message,
            "actions_run": self.actions_run,
        }
