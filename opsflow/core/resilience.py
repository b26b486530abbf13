import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

logger = logging.getLogger("opsflow.resilience")


class CircuitOpenException(Exception):
    pass


class CircuitBreaker:
    def __init__(self, max_failures: int = 3, reset_timeout: int = 60):
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self.failure_count = 0
        self.last_failure_time = 0
        self.state = "CLOSED" # CLOSED, OPEN, HALF_OPEN

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.max_failures:
            self.state = "OPEN"

    def record_success(self):
        self.failure_count = 0
        self.state = "CLOSED"

    def allow_request(self) -> bool:
        if self.state == "CLOSED":
            return True

        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
                return True
            return False

        # HALF_OPEN
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        if not self.allow_request():
            raise CircuitOpenException("Circuit is OPEN. Failing fast.")
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 0.2,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    **kwargs: Any,
) -> Any:
    """Bounded exponential backoff: base_delay, 2*base_delay, 4*base_delay ..."""
    for attempt in range(max_retries):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt == max_retries - 1:
                logger.error("%s failed permanently after %d attempts", getattr(func, "__name__", func), max_retries)
                raise
            wait = base_delay * (2 ** attempt)
            logger.warning("Retry %d/%d for %s: %s", attempt + 1, max_retries, getattr(func, "__name__", func), e)
            await asyncio.sleep(wait)
