from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from opsflow.core.config import settings
from opsflow.services.offer_broadcast import OfferBroadcastService
from opsflow.services.sla_monitor import SlaMonitor
from opsflow.workers.base import BaseWorker

logger = logging.getLogger("opsflow.workers.sla")


class SlaWorker(BaseWorker):
    """
    Scheduled SLA scan plus the offer expiry sweep.

    Guarantees:
    1. Idempotent: re-running against unchanged data escalates nothing new
    2. Failure isolation: a failed tick is logged and the next tick runs on schedule
    3. The sweep only tidies listings; accept() enforces expiry on its own
    """

    def __init__(
        self,
        monitor: SlaMonitor | None = None,
        offers: OfferBroadcastService | None = None,
        interval_seconds: int | None = None,
    ):
        super().__init__("sla")
        self.monitor = monitor or SlaMonitor()
        self.offers = offers or OfferBroadcastService()
        self.interval_seconds = interval_seconds or settings.SLA_CHECK_INTERVAL_SECONDS

    async def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        result = await self.process_with_retry(self.monitor.run_check, now)
        expired = await self.process_with_retry(self.offers.expire_stale, now)
        return {**result.to_dict(), "offers_expired": expired}

    async def run(self):
        logger.info("SLA Worker started (interval=%ds, dedup=%s)", self.interval_seconds, self.monitor.dedup_mode.value)
        while self._running:
            try:
                await self.run_once()
            except Exception:  # pragma: no cover
                logger.exception("SLA Worker iteration failed")
            await self.sleep(self.interval_seconds)


if __name__ == "__main__":
    asyncio.run(SlaWorker().start())
