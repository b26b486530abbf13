from __future__ import annotations

import logging
from string import Template
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsflow.domain.conditions import resolve_path
from opsflow.models.base_models import Notification, Profile

logger = logging.getLogger("opsflow.notifications")


def render(template: str, payload: dict[str, Any]) -> str:
    """$field placeholders from the top level of the payload; unknown ones are left as-is."""
    flat = {k: v for k, v in (payload or {}).items() if isinstance(k, str)}
    return Template(template).safe_substitute(flat)


class NotificationService:
    """In-app notifications written inside the caller's transaction."""

    @staticmethod
    async def resolve_targets(session: AsyncSession, target: str, payload: dict[str, Any], tenant_id: str) -> list[str]:
        """user:<id> | role:<role> | payload:<dotted.field> (string or list of ids)."""
        kind, _, value = (target or "").partition(":")
        if not value:
            raise ValueError(f"notification target must look like 'kind:value', got '{target}'")
        if kind == "user":
            return [value]
        if kind == "role":
            rows = await session.execute(
                select(Profile.id)
                .where(Profile.role == value, Profile.is_active.is_(True), Profile.tenant_id == tenant_id)
                .order_by(Profile.id)
            )
            return [r[0] for r in rows.all()]
        if kind == "payload":
            resolved = resolve_path(payload, value)
            if resolved is None:
                return []
            if isinstance(resolved, (list, tuple, set)):
                return [str(v) for v in resolved if v]
            return [str(resolved)]
        raise ValueError(f"unknown notification target kind '{kind}'")

    @staticmethod
    async def notify(
        session: AsyncSession,
        user_ids: list[str],
        title: str,
        message: str,
        *,
        type: str = "info",
        source_event_id: str | None = None,
        tenant_id: str = "default",
    ) -> int:
        unique_ids = list(dict.fromkeys(user_ids))
        session.add_all(
            Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=type,
                source_event_id=source_event_id,
                tenant_id=tenant_id,
            )
            for user_id in unique_ids
        )
        await session.flush()
        logger.debug("queued %d notifications: %s", len(unique_ids), title)
        return len(unique_ids)
