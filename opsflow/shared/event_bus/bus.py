"""Event bus: log first, then fan out over the change feed.

Usage:
    # publisher outside a business transaction
    await bus.publish(DomainEventInput("visitor.checked_in", visitor_id, {...}))

    # publisher inside a business transaction
    event = await bus.stage(session, DomainEventInput(...))
    await session.commit()
    await bus.fan_out(event)

    # subscriber
    sub = await bus.subscribe(EventFilter(event_type="maintenance.request.completed"), handler)
    ...
    await sub.unsubscribe()

Channels are "<prefix>:all", "<prefix>:domain:<domain>" and
"<prefix>:type:<event_type>"; every event goes to all three. Subscriptions
with the same filter key share one feed channel.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from functools import partial
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsflow.core.config import settings
from opsflow.core.event_contract_registry import enforce_event_contract
from opsflow.core.middleware import get_current_request_id, get_current_tenant_id, get_current_user_id
from opsflow.core.observability import metrics_registry
from opsflow.core.resilience import retry_async
from opsflow.core.timeutil import utcnow
from opsflow.domain.errors import PublishError
from opsflow.domain.events import DomainEvent, DomainEventInput, EventMetadata, domain_of
from opsflow.services.event_log import EventLogStore
from opsflow.shared.event_bus.change_feed import ChangeFeed, InMemoryChangeFeed, RedisChangeFeed
from opsflow.shared.event_bus.subscription import DeliveryOutcome, EventFilter, EventHandler, Subscription

logger = logging.getLogger("opsflow.event_bus")

_OUTCOME_METRICS = {
    DeliveryOutcome.DELIVERED: "opsflow_event_deliveries_total",
    DeliveryOutcome.DUPLICATE: "opsflow_event_duplicates_total",
    DeliveryOutcome.DROPPED_SLOW_CONSUMER: "opsflow_event_dropped_slow_consumer_total",
}


class EventBus:
    def __init__(
        self,
        feed: ChangeFeed,
        log: EventLogStore | None = None,
        *,
        channel_prefix: str | None = None,
        queue_size: int | None = None,
        dedup_window: int | None = None,
        catch_up_on_reconnect: bool | None = None,
        catch_up_overlap: int | None = None,
        contracts_strict: bool | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
    ):
        self.feed = feed
        self.log = log or EventLogStore()
        self.channel_prefix = channel_prefix or settings.EVENT_CHANNEL_PREFIX
        self.queue_size = queue_size or settings.EVENT_BUS_QUEUE_SIZE
        self.dedup_window = dedup_window or settings.EVENT_BUS_DEDUP_WINDOW
        self.catch_up_on_reconnect = (
            settings.EVENT_BUS_CATCH_UP_ON_RECONNECT if catch_up_on_reconnect is None else catch_up_on_reconnect
        )
        self.catch_up_overlap = settings.EVENT_BUS_CATCH_UP_OVERLAP if catch_up_overlap is None else catch_up_overlap
        self.contracts_strict = contracts_strict
        self.max_retries = max_retries or settings.PUBLISH_MAX_RETRIES
        self.retry_base_delay = settings.PUBLISH_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        self._channels: dict[str, dict[str, Subscription]] = {}
        self._lock = asyncio.Lock()

    # ── publishing ──

    def channel_for(self, key: str) -> str:
        return f"{self.channel_prefix}:{key}"

    def channels_for_event(self, event: DomainEvent) -> list[str]:
        return [
            self.channel_for("all"),
            self.channel_for(f"domain:{event.domain}"),
            self.channel_for(f"type:{event.event_type}"),
        ]

    def build(self, event_input: DomainEventInput) -> DomainEvent:
        """Fill ids, timestamp, domain and request context; validate the payload contract."""
        payload = enforce_event_contract(event_input.event_type, event_input.payload, self.contracts_strict)
        meta = event_input.metadata
        return DomainEvent(
            event_id=event_input.event_id or str(uuid.uuid4()),
            event_type=event_input.event_type,
            domain=event_input.domain or domain_of(event_input.event_type),
            aggregate_id=str(event_input.aggregate_id),
            payload=payload,
            severity=event_input.severity,
            tenant_id=event_input.tenant_id or get_current_tenant_id() or "default",
            metadata=EventMetadata(
                user_id=meta.user_id or get_current_user_id() or None,
                correlation_id=meta.correlation_id or get_current_request_id() or str(uuid.uuid4()),
                causation_id=meta.causation_id,
                timestamp=meta.timestamp or utcnow(),
            ),
        )

    async def stage(self, session: AsyncSession, event_input: DomainEventInput) -> DomainEvent:
        """Append inside the caller's transaction. Call fan_out() after commit."""
        return await self.log.append(session, self.build(event_input))

    async def _write(self, event: DomainEvent) -> DomainEvent:
        async with self.log.session_factory() as session:
            try:
                stored = await self.log.append(session, event)
                await session.commit()
                return stored
            except IntegrityError:
                await session.rollback()
                # A retried write whose first commit did land.
                existing = await self.log.get(event.event_id)
                if existing is None:
                    raise
                return existing

    async def publish(self, event_input: DomainEventInput) -> DomainEvent:
        event = self.build(event_input)
        try:
            stored = await retry_async(
                self._write,
                event,
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                retry_on=(SQLAlchemyError, OSError),
            )
        except (SQLAlchemyError, OSError) as e:
            metrics_registry.inc("opsflow_event_publish_failures_total")
            logger.error("publish failed: event_type=%s event_id=%s error=%s", event.event_type, event.event_id, e)
            raise PublishError(event.event_type, str(e)) from e
        metrics_registry.inc("opsflow_events_published_total")
        await self.fan_out(stored)
        return stored

    async def fan_out(self, event: DomainEvent) -> None:
        """Best effort; a failed channel is logged and counted, subscribers recover via catch-up."""
        message = event.to_message()
        for channel in self.channels_for_event(event):
            try:
                await self.feed.publish(channel, message)
            except Exception as e:
                metrics_registry.inc("opsflow_event_fanout_failures_total")
                logger.warning(
                    "fan-out failed: channel=%s event_id=%s event_type=%s error=%s",
                    channel, event.event_id, event.event_type, e,
                )

    async def fan_out_all(self, events: list[DomainEvent]) -> None:
        for event in events:
            await self.fan_out(event)

    # ── subscribing ──

    async def _replay(self, event_filter: EventFilter, after_seq: int, limit: int) -> list[DomainEvent]:
        return await self.log.list_since(
            after_seq, domain=event_filter.domain, event_type=event_filter.event_type, limit=limit
        )

    async def subscribe(self, event_filter: EventFilter, handler: EventHandler) -> Subscription:
        subscription = Subscription(
            event_filter,
            handler,
            queue_size=self.queue_size,
            dedup_window=self.dedup_window,
            catch_up_overlap=self.catch_up_overlap,
            auto_catch_up=self.catch_up_on_reconnect,
            replay=self._replay,
            on_unsubscribe=self._detach,
        )
        # New subscribers start at the head of the log, not its beginning.
        subscription.seek(await self.log.max_seq())
        channel = self.channel_for(event_filter.key)
        async with self._lock:
            members = self._channels.get(channel)
            if members is None:
                await self.feed.open_channel(
                    channel,
                    partial(self._on_message, channel),
                    partial(self._on_reconnect, channel),
                )
                members = {}
                self._channels[channel] = members
                logger.info("event bus channel opened: %s", channel)
            members[subscription.id] = subscription
            subscription.start()
            self._update_gauges()
        # events logged between the head read and joining the channel
        await subscription.catch_up()
        return subscription

    async def _detach(self, subscription: Subscription) -> None:
        channel = self.channel_for(subscription.channel_key)
        async with self._lock:
            members = self._channels.get(channel)
            if members is None:
                return
            members.pop(subscription.id, None)
            if not members:
                del self._channels[channel]
                try:
                    await self.feed.close_channel(channel)
                except Exception:
                    logger.exception("event bus channel close failed: %s", channel)
                logger.info("event bus channel closed: %s", channel)
            self._update_gauges()

    async def _on_message(self, channel: str, message: dict[str, Any]) -> None:
        members = self._channels.get(channel)
        if not members:
            return
        try:
            event = DomainEvent.from_message(message)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("event bus dropped malformed message on %s: %s", channel, e)
            return
        for subscription in list(members.values()):
            if not subscription.filter.matches(event):
                continue
            outcome = subscription.offer(event)
            metrics_registry.inc(_OUTCOME_METRICS[outcome])

    async def _on_reconnect(self, channel: str) -> None:
        if not self.catch_up_on_reconnect:
            logger.info("event bus channel %s reconnected; catch-up disabled", channel)
            return
        for subscription in list(self._channels.get(channel, {}).values()):
            try:
                await subscription.catch_up()
            except Exception:
                logger.exception("catch-up after reconnect failed: subscription=%s", subscription.id)

    def _update_gauges(self) -> None:
        metrics_registry.set_gauge("opsflow_event_bus_channels", float(len(self._channels)))
        metrics_registry.set_gauge(
            "opsflow_event_bus_subscriptions", float(sum(len(m) for m in self._channels.values()))
        )

    def subscriptions(self, channel_key: str | None = None) -> list[Subscription]:
        if channel_key is not None:
            return list(self._channels.get(self.channel_for(channel_key), {}).values())
        return [s for members in self._channels.values() for s in members.values()]

    @property
    def open_channels(self) -> list[str]:
        return list(self._channels)

    async def close(self) -> None:
        for subscription in self.subscriptions():
            await subscription.unsubscribe()
        await self.feed.close()


def build_change_feed(backend: str | None = None) -> ChangeFeed:
    backend = (backend or settings.CHANGE_FEED_BACKEND).lower()
    if backend == "memory":
        return InMemoryChangeFeed()
    if backend == "redis":
        return RedisChangeFeed()
    raise ValueError(f"unknown change feed backend '{backend}'")


_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    global _bus
    if _bus is None:
        _bus = EventBus(build_change_feed())
    return _bus


async def close_event_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None
