"""Event Log Store: append-only table of domain events.

The log is the source of truth; the live change feed is only a hint that
something was appended. seq is assigned by the database and is what
subscribers use as a catch-up watermark.
"""
from __future__ import annotations

import logging
from dataclasses import replace

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsflow.core.database import AsyncSessionLocal
from opsflow.core.timeutil import ensure_utc
from opsflow.domain.events import DomainEvent, EventMetadata, Severity
from opsflow.models.base_models import DomainEventRecord

logger = logging.getLogger("opsflow.event_log")


def record_to_event(row: DomainEventRecord) -> DomainEvent:
    return DomainEvent(
        event_id=row.event_id,
        event_type=row.event_type,
        domain=row.domain,
        aggregate_id=row.aggregate_id,
        payload=row.payload or {},
        severity=Severity(row.severity or Severity.INFO.value),
        tenant_id=row.tenant_id or "default",
        seq=row.seq,
        metadata=EventMetadata(
            user_id=row.user_id,
            correlation_id=row.correlation_id,
            causation_id=row.causation_id,
            timestamp=ensure_utc(row.occurred_at),
        ),
    )


class EventLogStore:
    def __init__(self, session_factory: async_sessionmaker | None = None):
        self._session_factory = session_factory or AsyncSessionLocal

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory

    async def append(self, session: AsyncSession, event: DomainEvent) -> DomainEvent:
        """Insert in the caller's transaction. The caller commits."""
        row = DomainEventRecord(
            event_id=event.event_id,
            event_type=event.event_type,
            domain=event.domain,
            aggregate_id=event.aggregate_id,
            payload=event.payload,
            severity=event.severity.value,
            user_id=event.metadata.user_id,
            correlation_id=event.metadata.correlation_id,
            causation_id=event.metadata.causation_id,
            occurred_at=event.metadata.timestamp,
            tenant_id=event.tenant_id,
        )
        session.add(row)
        await session.flush()
        return replace(event, seq=row.seq)

    async def get(self, event_id: str) -> DomainEvent | None:
        async with self._session_factory() as session:
            result = await session.execute(select(DomainEventRecord).where(DomainEventRecord.event_id == event_id))
            row = result.scalar_one_or_none()
            return record_to_event(row) if row else None

    async def list_since(
        self,
        after_seq: int,
        *,
        domain: str | None = None,
        event_type: str | None = None,
        tenant_id: str | None = None,
        limit: int = 500,
    ) -> list[DomainEvent]:
        stmt = select(DomainEventRecord).where(DomainEventRecord.seq > after_seq)
        if tenant_id:
            stmt = stmt.where(DomainEventRecord.tenant_id == tenant_id)
        if event_type:
            stmt = stmt.where(DomainEventRecord.event_type == event_type)
        elif domain:
            stmt = stmt.where(DomainEventRecord.domain == domain)
        stmt = stmt.order_by(DomainEventRecord.seq.asc()).limit(min(max(limit, 1), 5000))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [record_to_event(row) for row in result.scalars().all()]

    async def list_recent(
        self,
        *,
        limit: int = 100,
        domain: str | None = None,
        event_type: str | None = None,
        aggregate_id: str | None = None,
        tenant_id: str | None = None,
    ) -> list[DomainEvent]:
        stmt = select(DomainEventRecord)
        if tenant_id:
            stmt = stmt.where(DomainEventRecord.tenant_id == tenant_id)
        if event_type:
            stmt = stmt.where(DomainEventRecord.event_type == event_type)
        if domain:
            stmt = stmt.where(DomainEventRecord.domain == domain)
        if aggregate_id:
            stmt = stmt.where(DomainEventRecord.aggregate_id == aggregate_id)
        stmt = stmt.order_by(DomainEventRecord.seq.desc()).limit(min(max(limit, 1), 1000))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [record_to_event(row) for row in result.scalars().all()]

    async def max_seq(self) -> int:
        async with self._session_factory() as session:
            value = await session.scalar(select(func.max(DomainEventRecord.seq)))
            return int(value or 0)
