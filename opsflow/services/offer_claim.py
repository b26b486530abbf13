"""Offer Claim Coordinator: first accept whose conditional update lands wins.

accept() flow, all in one transaction:
    1. caller must be a non-declined recipient
    2. UPDATE task_offers SET status='claimed' WHERE id=? AND status='open' AND expires_at > now
    3. 0 rows → re-read to tell already_claimed from offer_not_found_or_expired
    4. 1 row  → assign the request to the caller (must touch exactly one row);
       a request already completed or cancelled makes the claim a loss
    5. stage offer.claimed + request.assigned, commit, fan out

No application-level lock is taken; the store's row-level write ordering is
the only arbiter between concurrent callers.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsflow.core.config import settings
from opsflow.core.database import AsyncSessionLocal
from opsflow.core.observability import metrics_registry
from opsflow.core.timeutil import ensure_utc, utcnow
from opsflow.domain.errors import NotARecipientError, PartialClaimFailure, StoreUnavailableError
from opsflow.domain.events import DomainEventInput, EventMetadata
from opsflow.domain.maintenance import RequestStatus, TERMINAL_STATUSES
from opsflow.domain.offer import ClaimReason, ClaimResult, OfferStatus
from opsflow.models.base_models import MaintenanceRequest, OfferRecipient, TaskOffer
from opsflow.shared.event_bus.bus import EventBus, get_event_bus

logger = logging.getLogger("opsflow.offers")


class OfferClaimCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        event_bus: EventBus | None = None,
        *,
        domain: str | None = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._bus = event_bus or get_event_bus()
        self.domain = domain or settings.OFFER_DOMAIN

    @staticmethod
    def _lost(reason: ClaimReason, offer_id: str | None, request_id: str | None) -> ClaimResult:
        metrics_registry.inc("opsflow_offer_claims_lost_total")
        return ClaimResult(won=False, reason=reason, offer_id=offer_id, request_id=request_id)

    async def _loss_reason(self, session: AsyncSession, offer_id: str, now: datetime) -> tuple[ClaimReason, str | None]:
        row = (
            await session.execute(
                select(TaskOffer.status, TaskOffer.expires_at, TaskOffer.request_id).where(TaskOffer.id == offer_id)
            )
        ).first()
        if row is None:
            return ClaimReason.OFFER_NOT_FOUND_OR_EXPIRED, None
        status, expires_at, request_id = row
        # past expiry wins over whatever status is stored
        if ensure_utc(expires_at) <= now or status != OfferStatus.CLAIMED.value:
            return ClaimReason.OFFER_NOT_FOUND_OR_EXPIRED, request_id
        return ClaimReason.ALREADY_CLAIMED, request_id

    async def accept(self, offer_id: str, user_id: str, now: datetime | None = None) -> ClaimResult:
        now = ensure_utc(now) or utcnow()
        async with self._session_factory() as session:
            recipient = (
                await session.execute(
                    select(OfferRecipient.declined_at).where(
                        OfferRecipient.offer_id == offer_id, OfferRecipient.user_id == user_id
                    )
                )
            ).first()
            if recipient is None:
                request_id = await session.scalar(select(TaskOffer.request_id).where(TaskOffer.id == offer_id))
                if request_id is None:
                    return self._lost(ClaimReason.OFFER_NOT_FOUND_OR_EXPIRED, offer_id, None)
                raise NotARecipientError(offer_id, user_id)
            if recipient[0] is not None:
                raise NotARecipientError(offer_id, user_id)

            try:
                result = await session.execute(
                    update(TaskOffer)
                    .where(
                        TaskOffer.id == offer_id,
                        TaskOffer.status == OfferStatus.OPEN.value,
                        TaskOffer.expires_at > now,
                    )
                    .values(status=OfferStatus.CLAIMED.value, claimed_by=user_id, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreUnavailableError("accept_offer", str(e)) from e

            if result.rowcount != 1:
                await session.rollback()
                reason, request_id = await self._loss_reason(session, offer_id, now)
                logger.info("claim lost: offer_id=%s user_id=%s reason=%s", offer_id, user_id, reason.value)
                return self._lost(reason, offer_id, request_id)

            request_id, tenant_id = (
                await session.execute(select(TaskOffer.request_id, TaskOffer.tenant_id).where(TaskOffer.id == offer_id))
            ).one()
            try:
                assigned = await session.execute(
                    update(MaintenanceRequest)
                    .where(
                        MaintenanceRequest.id == request_id,
                        MaintenanceRequest.assigned_to.is_(None),
                        MaintenanceRequest.status.not_in(sorted(TERMINAL_STATUSES)),
                    )
                    .values(assigned_to=user_id, assigned_at=now, status=RequestStatus.ASSIGNED.value)
                    .execution_options(synchronize_session=False)
                )
                if assigned.rowcount != 1:
                    request_status = await session.scalar(
                        select(MaintenanceRequest.status).where(MaintenanceRequest.id == request_id)
                    )
                    if request_status is None or request_status in TERMINAL_STATUSES:
                        # the work item was closed under an offer nobody cancelled
                        await session.rollback()
                        logger.warning(
                            "claim refused: offer_id=%s request_id=%s request_status=%s",
                            offer_id, request_id, request_status,
                        )
                        return self._lost(ClaimReason.OFFER_NOT_FOUND_OR_EXPIRED, offer_id, request_id)
                    raise PartialClaimFailure(offer_id, request_id, "request is no longer assignable")
                claimed = await self._bus.stage(
                    session,
                    DomainEventInput(
                        event_type=f"{self.domain}.offer.claimed",
                        aggregate_id=request_id,
                        payload={"offer_id": offer_id, "request_id": request_id, "winner": user_id, "claimed_at": now},
                        domain=self.domain,
                        metadata=EventMetadata(user_id=user_id),
                        tenant_id=tenant_id,
                    ),
                )
                assigned_event = await self._bus.stage(
                    session,
                    DomainEventInput(
                        event_type=f"{self.domain}.request.assigned",
                        aggregate_id=request_id,
                        payload={"request_id": request_id, "assigned_to": user_id, "via_offer_id": offer_id},
                        domain=self.domain,
                        metadata=EventMetadata(
                            user_id=user_id,
                            correlation_id=claimed.metadata.correlation_id,
                            causation_id=claimed.event_id,
                        ),
                        tenant_id=tenant_id,
                    ),
                )
            except PartialClaimFailure as e:
                await session.rollback()
                self._record_partial_failure(e)
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                failure = PartialClaimFailure(offer_id, request_id, str(e))
                self._record_partial_failure(failure)
                raise failure from e

            try:
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreUnavailableError("accept_offer", str(e)) from e

        await self._bus.fan_out_all([claimed, assigned_event])
        metrics_registry.inc("opsflow_offer_claims_won_total")
        logger.info("claim won: offer_id=%s request_id=%s winner=%s", offer_id, request_id, user_id)
        return ClaimResult(won=True, offer_id=offer_id, request_id=request_id, claimed_at=now)

    @staticmethod
    def _record_partial_failure(error: PartialClaimFailure) -> None:
        metrics_registry.inc("opsflow_offer_partial_claim_failures_total")
        logger.critical(
            "partial claim rolled back: offer_id=%s request_id=%s: %s",
            error.offer_id, error.request_id, error.message,
        )

    async def _current_offer_id(self, request_id: str, open_only: bool) -> str | None:
        stmt = select(TaskOffer.id).where(TaskOffer.request_id == request_id)
        if open_only:
            stmt = stmt.where(TaskOffer.status == OfferStatus.OPEN.value)
        stmt = stmt.order_by(TaskOffer.created_at.desc()).limit(1)
        async with self._session_factory() as session:
            return await session.scalar(stmt)

    async def accept_for_request(self, request_id: str, user_id: str, now: datetime | None = None) -> ClaimResult:
        """Accept the request's current offer: the open one, else the latest (so a late caller sees why it lost)."""
        offer_id = await self._current_offer_id(request_id, open_only=True)
        if offer_id is None:
            offer_id = await self._current_offer_id(request_id, open_only=False)
        if offer_id is None:
            return self._lost(ClaimReason.OFFER_NOT_FOUND_OR_EXPIRED, None, request_id)
        return await self.accept(offer_id, user_id, now=now)

    async def decline(self, offer_id: str, user_id: str, now: datetime | None = None) -> bool:
        """Mark the caller's recipient row declined. Missing or already declined rows are a no-op."""
        now = ensure_utc(now) or utcnow()
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(OfferRecipient)
                    .where(
                        OfferRecipient.offer_id == offer_id,
                        OfferRecipient.user_id == user_id,
                        OfferRecipient.declined_at.is_(None),
                    )
                    .values(declined_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False
                request_id, tenant_id = (
                    await session.execute(select(TaskOffer.request_id, TaskOffer.tenant_id).where(TaskOffer.id == offer_id))
                ).one()
                event = await self._bus.stage(
                    session,
                    DomainEventInput(
                        event_type=f"{self.domain}.offer.declined",
                        aggregate_id=request_id,
                        payload={"offer_id": offer_id, "request_id": request_id, "user_id": user_id},
                        domain=self.domain,
                        metadata=EventMetadata(user_id=user_id),
                        tenant_id=tenant_id,
                    ),
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreUnavailableError("decline_offer", str(e)) from e

        await self._bus.fan_out(event)
        logger.info("offer declined: offer_id=%s user_id=%s", offer_id, user_id)
        return True

    async def decline_for_request(self, request_id: str, user_id: str, now: datetime | None = None) -> bool:
        offer_id = await self._current_offer_id(request_id, open_only=True)
        if offer_id is None:
            return False
        return await self.decline(offer_id, user_id, now=now)
