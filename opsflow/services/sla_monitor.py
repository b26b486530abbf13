"""SLA / Escalation Monitor.

run_check() is pull-based and keeps no timer state; SlaWorker calls it on a
fixed interval and the API exposes it for manual runs. Each breached request
is escalated in its own transaction so one failure does not hold back the
rest, and the unique dedup_key makes concurrent checkers harmless. Breaches
that already have a record are filtered out in the candidate query, so a
backlog of old escalations never crowds new breaches out of the limit.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from opsflow.core.config import settings
from opsflow.core.database import AsyncSessionLocal
from opsflow.core.observability import metrics_registry
from opsflow.core.timeutil import ensure_utc, utcnow
from opsflow.domain.events import DomainEventInput, Severity
from opsflow.domain.maintenance import RequestStatus, TERMINAL_STATUSES
from opsflow.domain.sla import (
    SLA_BREACH_ESCALATION,
    DedupKeyMode,
    SlaCheckResult,
    SlaState,
    breach_dedup_key,
    classify,
    penalty_for,
)
from opsflow.models.base_models import MaintenanceRequest, SLABreachRecord
from opsflow.shared.event_bus.bus import EventBus, get_event_bus

logger = logging.getLogger("opsflow.sla")


class SlaMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        event_bus: EventBus | None = None,
        *,
        dedup_mode: DedupKeyMode | str | None = None,
        warning_window_minutes: int | None = None,
        penalty_by_priority: dict[str, float] | None = None,
        domain: str = "maintenance",
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._bus = event_bus or get_event_bus()
        self.dedup_mode = DedupKeyMode(dedup_mode or settings.SLA_DEDUP_KEY)
        self.warning_window = timedelta(minutes=warning_window_minutes or settings.SLA_WARNING_WINDOW_MINUTES)
        self.penalty_by_priority = dict(penalty_by_priority or settings.SLA_PENALTY_BY_PRIORITY)
        self.domain = domain

    def _already_escalated(self):
        """Correlated EXISTS matching the dedup key of the active mode."""
        stmt = select(SLABreachRecord.id).where(
            SLABreachRecord.request_id == MaintenanceRequest.id,
            SLABreachRecord.escalation_type == SLA_BREACH_ESCALATION,
        )
        if self.dedup_mode is DedupKeyMode.BREACH_INSTANCE:
            stmt = stmt.where(SLABreachRecord.breach_at == MaintenanceRequest.sla_breach_at)
        return stmt.exists()

    async def run_check(
        self, now: datetime | None = None, limit: int = 1000, tenant_id: str | None = None
    ) -> SlaCheckResult:
        """Escalate up to limit breaches not escalated yet, oldest deadline first."""
        now = ensure_utc(now) or utcnow()
        metrics_registry.inc("opsflow_sla_check_runs_total")

        breached = [
            MaintenanceRequest.status.not_in(sorted(TERMINAL_STATUSES)),
            MaintenanceRequest.sla_breach_at.is_not(None),
            MaintenanceRequest.sla_breach_at <= now,
        ]
        if tenant_id is not None:
            breached.append(MaintenanceRequest.tenant_id == tenant_id)
        async with self._session_factory() as session:
            rows = await session.execute(
                select(
                    MaintenanceRequest.id,
                    MaintenanceRequest.priority,
                    MaintenanceRequest.sla_breach_at,
                    MaintenanceRequest.tenant_id,
                )
                .where(*breached, ~self._already_escalated())
                .order_by(MaintenanceRequest.sla_breach_at.asc())
                .limit(min(max(limit, 1), 10000))
            )
            candidates = rows.all()
            breached_open = await session.scalar(select(func.count()).select_from(MaintenanceRequest).where(*breached))

        result = SlaCheckResult()
        for request_id, priority, sla_breach_at, tenant_id in candidates:
            try:
                created = await self._escalate(request_id, priority, ensure_utc(sla_breach_at), tenant_id, now)
            except SQLAlchemyError:
                logger.exception("SLA escalation failed: request_id=%s", request_id)
                continue
            if created:
                result.breaches_found += 1
                result.escalated_request_ids.append(request_id)
            else:
                result.skipped += 1

        metrics_registry.set_gauge("opsflow_sla_breached_open", float(breached_open or 0))
        if result.breaches_found:
            metrics_registry.inc("opsflow_sla_breaches_total", result.breaches_found)
        logger.info(
            "SLA check: candidates=%d escalated=%d skipped=%d mode=%s",
            len(candidates), result.breaches_found, result.skipped, self.dedup_mode.value,
        )
        return result

    async def _escalate(
        self,
        request_id: str,
        priority: str | None,
        sla_breach_at: datetime,
        tenant_id: str,
        now: datetime,
    ) -> bool:
        dedup_key = breach_dedup_key(request_id, sla_breach_at, self.dedup_mode)
        hours_overdue = max((now - sla_breach_at).total_seconds() / 3600.0, 0.0)
        penalty = penalty_for(priority, hours_overdue, self.penalty_by_priority)

        async with self._session_factory() as session:
            existing = await session.scalar(select(SLABreachRecord.id).where(SLABreachRecord.dedup_key == dedup_key))
            if existing is not None:
                return False

            record = SLABreachRecord(
                id=str(uuid.uuid4()),
                request_id=request_id,
                escalation_type=SLA_BREACH_ESCALATION,
                penalty_amount=penalty,
                escalation_reason=f"SLA deadline {sla_breach_at.isoformat()} missed by {hours_overdue:.1f}h",
                breach_at=sla_breach_at,
                dedup_key=dedup_key,
                meta={
                    "priority": priority,
                    "hours_overdue": round(hours_overdue, 2),
                    "dedup_mode": self.dedup_mode.value,
                    "detected_at": now.isoformat(),
                },
                created_at=now,
                tenant_id=tenant_id,
            )
            session.add(record)
            try:
                await session.flush()
                event = await self._bus.stage(
                    session,
                    DomainEventInput(
                        event_type=f"{self.domain}.sla.breached",
                        aggregate_id=request_id,
                        payload={
                            "request_id": request_id,
                            "breach_record_id": record.id,
                            "sla_breach_at": sla_breach_at,
                            "penalty_amount": penalty,
                            "priority": priority,
                            "severity": Severity.CRITICAL.value,
                        },
                        domain=self.domain,
                        severity=Severity.CRITICAL,
                        tenant_id=tenant_id,
                    ),
                )
                await session.commit()
            except IntegrityError:
                # another checker escalated the same breach first
                await session.rollback()
                logger.info("SLA escalation already recorded: request_id=%s key=%s", request_id, dedup_key)
                return False

        await self._bus.fan_out(event)
        logger.warning(
            "SLA breached: request_id=%s priority=%s overdue=%.1fh penalty=%.2f",
            request_id, priority, hours_overdue, penalty,
        )
        return True

    def state_of(self, request: MaintenanceRequest, now: datetime | None = None) -> SlaState:
        return classify(
            request.sla_breach_at,
            request.status,
            ensure_utc(now) or utcnow(),
            self.warning_window,
            completed_at=request.completed_at,
        )

    async def summary(
        self, days: int = 30, now: datetime | None = None, tenant_id: str | None = None
    ) -> dict[str, Any]:
        """Rolling window metrics: requests created in the window, breach records created in it."""
        now = ensure_utc(now) or utcnow()
        since = now - timedelta(days=days)
        request_filter = [MaintenanceRequest.created_at >= since]
        record_filter = [
            SLABreachRecord.escalation_type == SLA_BREACH_ESCALATION,
            SLABreachRecord.created_at >= since,
        ]
        if tenant_id is not None:
            request_filter.append(MaintenanceRequest.tenant_id == tenant_id)
            record_filter.append(SLABreachRecord.tenant_id == tenant_id)
        async with self._session_factory() as session:
            requests = (
                await session.execute(select(MaintenanceRequest).where(*request_filter))
            ).scalars().all()
            penalties = (
                await session.execute(select(SLABreachRecord.penalty_amount).where(*record_filter))
            ).scalars().all()

        total = len(requests)
        breached = len(penalties)
        warning = sum(1 for r in requests if self.state_of(r, now) is SlaState.WARNING)
        resolution_hours = [
            (ensure_utc(r.completed_at) - ensure_utc(r.created_at)).total_seconds() / 3600.0
            for r in requests
            if r.status == RequestStatus.COMPLETED.value and r.completed_at and r.created_at
        ]
        compliance = ((total - breached) / total * 100.0) if total else 100.0
        return {
            "window_days": days,
            "total_requests": total,
            "breached_requests": breached,
            "warning_requests": warning,
            "compliance_rate": round(max(compliance, 0.0), 2),
            "avg_resolution_hours": round(sum(resolution_hours) / len(resolution_hours), 2) if resolution_hours else 0.0,
            "total_penalties": round(sum(p or 0.0 for p in penalties), 2),
        }

    async def list_breaches(
        self, days: int = 30, now: datetime | None = None, limit: int = 100, tenant_id: str | None = None
    ) -> list[dict[str, Any]]:
        now = ensure_utc(now) or utcnow()
        since = now - timedelta(days=days)
        record_filter = [
            SLABreachRecord.escalation_type == SLA_BREACH_ESCALATION,
            SLABreachRecord.created_at >= since,
        ]
        if tenant_id is not None:
            record_filter.append(SLABreachRecord.tenant_id == tenant_id)
        async with self._session_factory() as session:
            rows = await session.execute(
                select(SLABreachRecord, MaintenanceRequest)
                .outerjoin(MaintenanceRequest, MaintenanceRequest.id == SLABreachRecord.request_id)
                .where(*record_filter)
                .order_by(SLABreachRecord.created_at.desc())
                .limit(min(max(limit, 1), 1000))
            )
            items = []
            for record, request in rows.all():
                items.append(
                    {
                        "id": record.id,
                        "request_id": record.request_id,
                        "escalation_type": record.escalation_type,
                        "penalty_amount": record.penalty_amount,
                        "escalation_reason": record.escalation_reason,
                        "breach_at": ensure_utc(record.breach_at).isoformat() if record.breach_at else None,
                        "dedup_key": record.dedup_key,
                        "created_at": ensure_utc(record.created_at).isoformat(),
                        "metadata": record.meta or {},
                        "request": {
                            "title": request.title,
                            "priority": request.priority,
                            "status": request.status,
                            "sla_breach_at": ensure_utc(request.sla_breach_at).isoformat() if request.sla_breach_at else None,
                        }
                        if request is not None
                        else None,
                    }
                )
            return items
