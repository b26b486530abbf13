from __future__ import annotations

import logging

from opsflow.domain.events import DomainEvent
from opsflow.services.workflow_executor import WorkflowExecutor
from opsflow.shared.event_bus.bus import EventBus, get_event_bus
from opsflow.shared.event_bus.subscription import EventFilter, Subscription
from opsflow.workers.base import BaseWorker

logger = logging.getLogger("opsflow.workers.workflow")


class WorkflowWorker(BaseWorker):
    """Feeds every event on the bus to the trigger executor."""

    def __init__(self, executor: WorkflowExecutor | None = None, event_bus: EventBus | None = None):
        super().__init__("workflow")
        self._bus = event_bus or get_event_bus()
        self.executor = executor or WorkflowExecutor(event_bus=self._bus)
        self.subscription: Subscription | None = None

    async def handle(self, event: DomainEvent) -> None:
        executions = await self.executor.on_event(event)
        if executions:
            logger.info("event %s (%s) fired %d workflow(s)", event.event_id, event.event_type, len(executions))

    async def subscribe(self) -> Subscription:
        if self.subscription is None or self.subscription.closed:
            self.subscription = await self._bus.subscribe(EventFilter(), self.handle)
        return self.subscription

    async def run(self):
        await self.subscribe()
        await self._stopped.wait()

    async def stop(self):
        self._shutdown()
        if self.subscription is not None:
            await self.subscription.unsubscribe()
            self.subscription = None
