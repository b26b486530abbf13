"""Subscriptions: a bounded per-subscriber queue between the feed and a handler.

Delivery guarantees:
1. Non-blocking: the feed never waits on a slow handler; a full queue drops
   the event and marks the subscription for catch-up
2. At-least-once + dedup: recently seen event_ids are skipped
3. Gap fill: last_seq is the highest log seq queued; catch_up() replays the
   log after it (minus an overlap) through the same dedup window
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from opsflow.core.observability import metrics_registry
from opsflow.domain.events import DomainEvent

logger = logging.getLogger("opsflow.event_bus")

EventHandler = Callable[[DomainEvent], Awaitable[None]]
ReplaySource = Callable[["EventFilter", int, int], Awaitable[list[DomainEvent]]]

_REPLAY_BATCH = 500


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    DROPPED_SLOW_CONSUMER = "dropped_slow_consumer"


@dataclass(frozen=True)
class EventFilter:
    """event_type wins over domain; neither means every event."""
    event_type: str | None = None
    domain: str | None = None
    tenant_id: str | None = None

    @property
    def key(self) -> str:
        if self.event_type:
            return f"type:{self.event_type}"
        if self.domain:
            return f"domain:{self.domain}"
        return "all"

    def matches(self, event: DomainEvent) -> bool:
        if self.tenant_id and event.tenant_id != self.tenant_id:
            return False
        if self.event_type:
            return event.event_type == self.event_type
        if self.domain:
            return event.domain == self.domain
        return True


class Subscription:
    def __init__(
        self,
        event_filter: EventFilter,
        handler: EventHandler,
        *,
        queue_size: int = 256,
        dedup_window: int = 1024,
        catch_up_overlap: int = 50,
        auto_catch_up: bool = True,
        replay: ReplaySource | None = None,
        on_unsubscribe: Callable[["Subscription"], Awaitable[None]] | None = None,
    ):
        self.id = str(uuid.uuid4())
        self.filter = event_filter
        self.last_seq = 0
        self.dropped = 0
        self._floor = 0
        self._handler = handler
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=max(queue_size, 1))
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._dedup_window = max(dedup_window, 1)
        self._overlap = max(catch_up_overlap, 0)
        self._auto_catch_up = auto_catch_up
        self._replay = replay
        self._on_unsubscribe = on_unsubscribe
        self._missed_from: int | None = None
        self._consumer: asyncio.Task | None = None
        self._catch_up_task: asyncio.Task | None = None
        self._catch_up_lock = asyncio.Lock()
        self._closed = False

    @property
    def channel_key(self) -> str:
        return self.filter.key

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def needs_catch_up(self) -> bool:
        return self._missed_from is not None

    def seek(self, seq: int) -> None:
        """Start delivery after seq; catch-up never replays at or below it."""
        self.last_seq = self._floor = max(seq, 0)

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume(), name=f"subscription:{self.id}")

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        while len(self._seen) > self._dedup_window:
            self._seen.popitem(last=False)

    def _advance(self, event: DomainEvent) -> None:
        if event.seq is not None and event.seq > self.last_seq:
            self.last_seq = event.seq

    def offer(self, event: DomainEvent) -> DeliveryOutcome:
        """Non-blocking hand-off from the feed."""
        if self._closed:
            return DeliveryOutcome.DROPPED_SLOW_CONSUMER
        if event.event_id in self._seen:
            self._advance(event)
            return DeliveryOutcome.DUPLICATE
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if event.seq is not None:
                self._missed_from = event.seq if self._missed_from is None else min(self._missed_from, event.seq)
            logger.warning(
                "subscription %s (%s) queue full, dropped event %s (%s)",
                self.id, self.channel_key, event.event_id, event.event_type,
            )
            self._schedule_catch_up()
            return DeliveryOutcome.DROPPED_SLOW_CONSUMER
        self._remember(event.event_id)
        self._advance(event)
        return DeliveryOutcome.DELIVERED

    def _schedule_catch_up(self) -> None:
        if not self._auto_catch_up or self._replay is None:
            return
        if self._catch_up_task is not None and not self._catch_up_task.done():
            return
        self._catch_up_task = asyncio.create_task(self._catch_up_logged())

    async def _catch_up_logged(self) -> None:
        try:
            await self.catch_up()
        except Exception:
            logger.exception("subscription %s catch-up failed", self.id)

    async def catch_up(self) -> int:
        """Replay logged events this subscription may have missed. Returns the number queued."""
        if self._replay is None or self._closed:
            return 0
        async with self._catch_up_lock:
            after = max(self.last_seq - self._overlap, self._floor)
            replayed = 0
            while True:
                # drops that happen while this replay is blocked are picked up by the next pass
                if self._missed_from is not None:
                    after = max(min(after, self._missed_from - 1), self._floor)
                self._missed_from = None
                batch = await self._replay(self.filter, after, _REPLAY_BATCH)
                for event in batch:
                    if not self.filter.matches(event) or event.event_id in self._seen:
                        self._advance(event)
                        continue
                    # Backpressure instead of dropping: the feed is not waiting on us here.
                    await self._queue.put(event)
                    self._remember(event.event_id)
                    self._advance(event)
                    replayed += 1
                if len(batch) < _REPLAY_BATCH and self._missed_from is None:
                    break
                if batch:
                    after = batch[-1].seq or after
        if replayed:
            metrics_registry.inc("opsflow_event_catch_up_replayed_total", replayed)
            logger.info("subscription %s caught up %d events (last_seq=%d)", self.id, replayed, self.last_seq)
        return replayed

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handler(event)
            except Exception:
                logger.exception(
                    "subscription %s handler failed: event_id=%s event_type=%s",
                    self.id, event.event_id, event.event_type,
                )
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_unsubscribe is not None:
            await self._on_unsubscribe(self)
        current = asyncio.current_task()
        for task in (self._catch_up_task, self._consumer):
            if task is None or task.done():
                continue
            task.cancel()
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
