"""Offer Broadcast Service: fan a maintenance request out to eligible workers.

One open offer per request at a time: a remaining open offer is reported as
AlreadyBroadcastError, and the partial unique index on task_offers turns a
concurrent second broadcast into the same error at flush time.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsflow.core.config import settings
from opsflow.core.database import AsyncSessionLocal
from opsflow.core.observability import metrics_registry
from opsflow.core.timeutil import ensure_utc, utcnow
from opsflow.domain.errors import (
    AlreadyBroadcastError,
    InvalidTtlError,
    NoRecipientsError,
    NotAvailableError,
    OfferNotFoundError,
    StoreUnavailableError,
)
from opsflow.domain.events import DomainEvent, DomainEventInput, EventMetadata
from opsflow.domain.maintenance import TERMINAL_STATUSES, is_offerable
from opsflow.domain.offer import BroadcastResult, OfferSnapshot, OfferStatus
from opsflow.models.base_models import MaintenanceRequest, OfferRecipient, Profile, TaskOffer
from opsflow.shared.event_bus.bus import EventBus, get_event_bus

logger = logging.getLogger("opsflow.offers")


def offer_snapshot(row: TaskOffer) -> OfferSnapshot:
    return OfferSnapshot(
        id=row.id,
        request_id=row.request_id,
        status=OfferStatus(row.status),
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
        created_by=row.created_by,
        claimed_by=row.claimed_by,
        claimed_at=ensure_utc(row.claimed_at),
    )


class OfferBroadcastService:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        event_bus: EventBus | None = None,
        *,
        domain: str | None = None,
        default_ttl_minutes: int | None = None,
        max_ttl_minutes: int | None = None,
        eligible_roles: list[str] | None = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._bus = event_bus or get_event_bus()
        self.domain = domain or settings.OFFER_DOMAIN
        self.default_ttl_minutes = default_ttl_minutes or settings.OFFER_DEFAULT_TTL_MINUTES
        self.max_ttl_minutes = max_ttl_minutes or settings.OFFER_MAX_TTL_MINUTES
        self.eligible_roles = list(eligible_roles or settings.OFFER_ELIGIBLE_ROLES)

    def _event(
        self, name: str, request_id: str, payload: dict, actor_id: str | None = None, tenant_id: str | None = None
    ) -> DomainEventInput:
        return DomainEventInput(
            event_type=f"{self.domain}.offer.{name}",
            aggregate_id=request_id,
            payload=payload,
            domain=self.domain,
            metadata=EventMetadata(user_id=actor_id),
            tenant_id=tenant_id,
        )

    async def _default_recipients(self, session: AsyncSession, tenant_id: str) -> list[str]:
        rows = await session.execute(
            select(Profile.id)
            .where(
                Profile.is_active.is_(True),
                Profile.role.in_(self.eligible_roles),
                Profile.tenant_id == tenant_id,
            )
            .order_by(Profile.id)
        )
        return [r[0] for r in rows.all()]

    async def _expire_stale_for_request(
        self, session: AsyncSession, request_id: str, tenant_id: str, now: datetime
    ) -> list[DomainEvent]:
        rows = await session.execute(
            select(TaskOffer.id).where(
                TaskOffer.request_id == request_id,
                TaskOffer.status == OfferStatus.OPEN.value,
                TaskOffer.expires_at <= now,
            )
        )
        staged = []
        for offer_id in [r[0] for r in rows.all()]:
            flipped = await session.execute(
                update(TaskOffer)
                .where(TaskOffer.id == offer_id, TaskOffer.status == OfferStatus.OPEN.value)
                .values(status=OfferStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount == 1:
                staged.append(
                    await self._bus.stage(
                        session,
                        self._event(
                            "expired",
                            request_id,
                            {"offer_id": offer_id, "request_id": request_id, "reason": "ttl_elapsed"},
                            tenant_id=tenant_id,
                        ),
                    )
                )
        return staged

    async def cancel_open_for_request(
        self,
        session: AsyncSession,
        request_id: str,
        tenant_id: str,
        reason: str,
        actor_id: str | None = None,
    ) -> list[DomainEvent]:
        """Cancel the request's open offers inside the caller's transaction. Fan out after commit."""
        rows = await session.execute(
            select(TaskOffer.id).where(
                TaskOffer.request_id == request_id,
                TaskOffer.status == OfferStatus.OPEN.value,
            )
        )
        staged = []
        for offer_id in [r[0] for r in rows.all()]:
            flipped = await session.execute(
                update(TaskOffer)
                .where(TaskOffer.id == offer_id, TaskOffer.status == OfferStatus.OPEN.value)
                .values(status=OfferStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount == 1:
                staged.append(
                    await self._bus.stage(
                        session,
                        self._event(
                            "cancelled",
                            request_id,
                            {"offer_id": offer_id, "request_id": request_id, "reason": reason},
                            actor_id,
                            tenant_id,
                        ),
                    )
                )
        return staged

    async def broadcast(
        self,
        request_id: str,
        eligible_user_ids: list[str] | set[str] | None = None,
        ttl_minutes: int | None = None,
        actor_id: str | None = None,
        now: datetime | None = None,
        tenant_id: str | None = None,
    ) -> BroadcastResult:
        """tenant_id, when given, hides requests of other tenants as not_found."""
        ttl = self.default_ttl_minutes if ttl_minutes is None else int(ttl_minutes)
        if not 1 <= ttl <= self.max_ttl_minutes:
            raise InvalidTtlError(ttl, self.max_ttl_minutes)

        recipients: list[str] | None = None
        if eligible_user_ids is not None:
            recipients = sorted({str(u) for u in eligible_user_ids if u})
            if not recipients:
                raise NoRecipientsError(request_id)

        now = ensure_utc(now) or utcnow()
        async with self._session_factory() as session:
            try:
                request = (
                    await session.execute(
                        select(MaintenanceRequest).where(MaintenanceRequest.id == request_id).with_for_update()
                    )
                ).scalar_one_or_none()
                if request is None or (tenant_id is not None and request.tenant_id != tenant_id):
                    raise NotAvailableError(request_id, "not_found")
                if not is_offerable(request.status, request.assigned_to):
                    reason = "already_assigned" if request.assigned_to else f"status_{request.status}"
                    raise NotAvailableError(request_id, reason)

                if recipients is None:
                    recipients = await self._default_recipients(session, request.tenant_id)
                    if not recipients:
                        raise NoRecipientsError(request_id)

                staged = await self._expire_stale_for_request(session, request_id, request.tenant_id, now)

                existing = await session.scalar(
                    select(TaskOffer.id).where(
                        TaskOffer.request_id == request_id,
                        TaskOffer.status == OfferStatus.OPEN.value,
                    )
                )
                if existing is not None:
                    raise AlreadyBroadcastError(request_id, existing)

                offer = TaskOffer(
                    id=str(uuid.uuid4()),
                    request_id=request_id,
                    status=OfferStatus.OPEN.value,
                    expires_at=now + timedelta(minutes=ttl),
                    created_at=now,
                    created_by=actor_id,
                    tenant_id=request.tenant_id,
                )
                session.add(offer)
                session.add_all(
                    OfferRecipient(offer_id=offer.id, user_id=user_id, delivered_at=now) for user_id in recipients
                )
                await session.flush()

                created = await self._bus.stage(
                    session,
                    self._event(
                        "created",
                        request_id,
                        {
                            "offer_id": offer.id,
                            "request_id": request_id,
                            "expires_at": offer.expires_at,
                            "recipients": recipients,
                            "recipients_count": len(recipients),
                        },
                        actor_id,
                        request.tenant_id,
                    ),
                )
                offer.created_event_id = created.event_id
                offer.correlation_id = created.metadata.correlation_id
                staged.append(created)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info("broadcast lost to a concurrent offer: request_id=%s", request_id)
                raise AlreadyBroadcastError(request_id) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreUnavailableError("broadcast", str(e)) from e
            snapshot = offer_snapshot(offer)

        await self._bus.fan_out_all(staged)
        metrics_registry.inc("opsflow_offers_broadcast_total")
        logger.info(
            "offer broadcast: offer_id=%s request_id=%s recipients=%d ttl_minutes=%d",
            snapshot.id, request_id, len(recipients), ttl,
        )
        return BroadcastResult(offer=snapshot, recipients_count=len(recipients))

    async def cancel(self, offer_id: str, actor_id: str | None = None, tenant_id: str | None = None) -> bool:
        """open → cancelled. False when the offer already left open."""
        async with self._session_factory() as session:
            try:
                row = (
                    await session.execute(select(TaskOffer.request_id, TaskOffer.tenant_id).where(TaskOffer.id == offer_id))
                ).first()
                if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
                    raise OfferNotFoundError(offer_id)
                request_id, tenant_id = row
                result = await session.execute(
                    update(TaskOffer)
                    .where(TaskOffer.id == offer_id, TaskOffer.status == OfferStatus.OPEN.value)
                    .values(status=OfferStatus.CANCELLED.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False
                event = await self._bus.stage(
                    session,
                    self._event(
                        "cancelled",
                        request_id,
                        {"offer_id": offer_id, "request_id": request_id, "reason": "cancelled"},
                        actor_id,
                        tenant_id,
                    ),
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreUnavailableError("cancel_offer", str(e)) from e

        await self._bus.fan_out(event)
        logger.info("offer cancelled: offer_id=%s by=%s", offer_id, actor_id)
        return True

    async def expire_stale(self, now: datetime | None = None, limit: int = 500) -> int:
        """Flip overdue open offers to expired. accept() never depends on this sweep."""
        now = ensure_utc(now) or utcnow()
        expired = 0
        async with self._session_factory() as session:
            rows = await session.execute(
                select(TaskOffer.id, TaskOffer.request_id, TaskOffer.tenant_id)
                .where(TaskOffer.status == OfferStatus.OPEN.value, TaskOffer.expires_at <= now)
                .order_by(TaskOffer.expires_at.asc())
                .limit(min(max(limit, 1), 5000))
            )
            for offer_id, request_id, tenant_id in rows.all():
                result = await session.execute(
                    update(TaskOffer)
                    .where(TaskOffer.id == offer_id, TaskOffer.status == OfferStatus.OPEN.value)
                    .values(status=OfferStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    continue
                event = await self._bus.stage(
                    session,
                    self._event(
                        "expired",
                        request_id,
                        {"offer_id": offer_id, "request_id": request_id, "reason": "ttl_elapsed"},
                        tenant_id=tenant_id,
                    ),
                )
                await session.commit()
                await self._bus.fan_out(event)
                expired += 1

        if expired:
            metrics_registry.inc("opsflow_offers_expired_total", expired)
            logger.info("expired %d stale offers", expired)
        return expired

    async def get_offer(self, offer_id: str) -> OfferSnapshot:
        async with self._session_factory() as session:
            row = await session.get(TaskOffer, offer_id)
            if row is None:
                raise OfferNotFoundError(offer_id)
            return offer_snapshot(row)

    async def list_open_offers_for_user(self, user_id: str, now: datetime | None = None) -> list[OfferSnapshot]:
        now = ensure_utc(now) or utcnow()
        async with self._session_factory() as session:
            rows = await session.execute(
                select(TaskOffer)
                .join(OfferRecipient, OfferRecipient.offer_id == TaskOffer.id)
                .join(MaintenanceRequest, MaintenanceRequest.id == TaskOffer.request_id)
                .where(
                    OfferRecipient.user_id == user_id,
                    MaintenanceRequest.status.not_in(sorted(TERMINAL_STATUSES)),
                    OfferRecipient.declined_at.is_(None),
                    TaskOffer.status == OfferStatus.OPEN.value,
                    TaskOffer.expires_at > now,
                )
                .order_by(TaskOffer.created_at.desc())
            )
            return [offer_snapshot(row) for row in rows.scalars().all()]
