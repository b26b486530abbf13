import asyncio
import logging
from typing import Any, Callable

from opsflow.core.resilience import retry_async

logger = logging.getLogger("opsflow.workers")


class BaseWorker:
    def __init__(self, name: str):
        self.name = name
        self._running = True
        self._stopped = asyncio.Event()

    async def start(self):
        logger.info("Worker %s started", self.name)
        await self.run()

    async def run(self):
        raise NotImplementedError

    def _shutdown(self):
        logger.info("Worker %s shutting down...", self.name)
        self._running = False
        self._stopped.set()

    async def stop(self):
        self._shutdown()

    async def sleep(self, seconds: float) -> None:
        """Interval wait that returns early on shutdown."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_with_retry(self, func: Callable, *args: Any, max_retries: int = 3, base_delay: float = 1.0):
        return await retry_async(func, *args, max_retries=max_retries, base_delay=base_delay)
