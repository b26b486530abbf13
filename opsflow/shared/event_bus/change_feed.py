"""Change feeds carry "an event was appended" notifications between processes.

A feed is lossy by nature (Redis pub/sub does not buffer for absent
listeners), so it only ever carries a copy of a logged event. Anything
missed is recovered from the event log through catch-up.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

from opsflow.core.redis_client import get_redis
from opsflow.core.resilience import CircuitBreaker

logger = logging.getLogger("opsflow.event_bus.feed")

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
ReconnectHandler = Callable[[], Awaitable[None]]


class ChangeFeed(Protocol):
    async def publish(self, channel: str, message: dict[str, Any]) -> None: ...

    async def open_channel(
        self, channel: str, on_message: MessageHandler, on_reconnect: ReconnectHandler | None = None
    ) -> None: ...

    async def close_channel(self, channel: str) -> None: ...

    async def close(self) -> None: ...


class InMemoryChangeFeed:
    """Single-process feed: publish calls the channel's listener inline."""

    def __init__(self) -> None:
        self._channels: dict[str, tuple[MessageHandler, ReconnectHandler | None]] = {}

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        entry = self._channels.get(channel)
        if entry is None:
            return
        # Round-trip through JSON so listeners see what a networked feed would deliver.
        await entry[0](json.loads(json.dumps(message)))

    async def open_channel(
        self, channel: str, on_message: MessageHandler, on_reconnect: ReconnectHandler | None = None
    ) -> None:
        self._channels[channel] = (on_message, on_reconnect)

    async def close_channel(self, channel: str) -> None:
        self._channels.pop(channel, None)

    async def close(self) -> None:
        self._channels.clear()


class RedisChangeFeed:
    """redis.asyncio pub/sub feed, one PubSub connection per channel.

    Each channel runs a listener task. When the connection drops the task
    re-subscribes with exponential backoff and then calls on_reconnect so
    the owner can fill the gap from the log.
    """

    def __init__(
        self,
        redis_factory: Callable[[], Any] = get_redis,
        reconnect_base_delay: float = 0.5,
        reconnect_max_delay: float = 10.0,
        poll_timeout: float = 1.0,
        breaker: CircuitBreaker | None = None,
    ):
        self._redis_factory = redis_factory
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.poll_timeout = poll_timeout
        self.breaker = breaker or CircuitBreaker(max_failures=5, reset_timeout=30)
        self._listeners: dict[str, asyncio.Task] = {}

    @property
    def channels(self) -> list[str]:
        return list(self._listeners)

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        redis = self._redis_factory()
        await self.breaker.call(redis.publish, channel, json.dumps(message, ensure_ascii=True))

    async def open_channel(
        self, channel: str, on_message: MessageHandler, on_reconnect: ReconnectHandler | None = None
    ) -> None:
        if channel in self._listeners:
            return
        pubsub = self._redis_factory().pubsub()
        await pubsub.subscribe(channel)
        self._listeners[channel] = asyncio.create_task(
            self._listen(channel, pubsub, on_message, on_reconnect),
            name=f"change-feed:{channel}",
        )

    async def close_channel(self, channel: str) -> None:
        task = self._listeners.pop(channel, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        for channel in list(self._listeners):
            await self.close_channel(channel)

    async def _listen(
        self,
        channel: str,
        pubsub,
        on_message: MessageHandler,
        on_reconnect: ReconnectHandler | None,
    ) -> None:
        attempt = 0
        try:
            while True:
                try:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_timeout)
                    attempt = 0
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    attempt += 1
                    delay = min(self.reconnect_base_delay * (2 ** (attempt - 1)), self.reconnect_max_delay)
                    logger.warning("change feed %s lost connection (attempt %d): %s", channel, attempt, e)
                    await asyncio.sleep(delay)
                    try:
                        pubsub = await self._resubscribe(channel, pubsub)
                    except Exception as resub_err:
                        logger.warning("change feed %s resubscribe failed: %s", channel, resub_err)
                        continue
                    if on_reconnect is not None:
                        try:
                            await on_reconnect()
                        except Exception:
                            logger.exception("change feed %s reconnect callback failed", channel)
                    continue
                if message is None:
                    continue
                await self._dispatch(channel, message, on_message)
        finally:
            if pubsub is not None:
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except Exception:
                    logger.debug("change feed %s close failed", channel, exc_info=True)

    async def _resubscribe(self, channel: str, old_pubsub):
        try:
            await old_pubsub.aclose()
        except Exception:
            logger.debug("change feed %s stale pubsub close failed", channel, exc_info=True)
        pubsub = self._redis_factory().pubsub()
        await pubsub.subscribe(channel)
        logger.info("change feed %s resubscribed", channel)
        return pubsub

    async def _dispatch(self, channel: str, message: dict[str, Any], on_message: MessageHandler) -> None:
        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            body = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("change feed %s dropped undecodable message", channel)
            return
        try:
            await on_message(body)
        except Exception:
            logger.exception("change feed %s listener failed", channel)
