import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from opsflow.core.resilience import CircuitBreaker, CircuitOpenException
from opsflow.shared.event_bus.change_feed import RedisChangeFeed


class FakePubSub:
    def __init__(self, messages=()):
        self.messages = list(messages)
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed.append(channel)

    async def unsubscribe(self, channel):
        self.unsubscribed.append(channel)

    async def aclose(self):
        self.closed = True

    async def get_message(self, ignore_subscribe_messages=True, timeout=1.0):
        if self.messages:
            item = self.messages.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        await asyncio.sleep(0.005)
        return None


def _redis_with(*pubsubs):
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    redis.pubsub = MagicMock(side_effect=list(pubsubs))
    return redis


async def _eventually(predicate, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_publish_serializes_message():
    redis = _redis_with()
    feed = RedisChangeFeed(redis_factory=lambda: redis)

    await feed.publish("opsflow:events:all", {"event_id": "e-1", "event_type": "maintenance.request.completed"})

    redis.publish.assert_awaited_once()
    channel, body = redis.publish.await_args.args
    assert channel == "opsflow:events:all"
    assert json.loads(body)["event_id"] == "e-1"


@pytest.mark.asyncio
async def test_publish_fails_fast_when_breaker_is_open():
    redis = _redis_with()
    redis.publish.side_effect = ConnectionError("redis down")
    feed = RedisChangeFeed(redis_factory=lambda: redis, breaker=CircuitBreaker(max_failures=1, reset_timeout=60))

    with pytest.raises(ConnectionError):
        await feed.publish("c", {"event_id": "e-1"})
    with pytest.raises(CircuitOpenException):
        await feed.publish("c", {"event_id": "e-2"})
    assert redis.publish.await_count == 1


@pytest.mark.asyncio
async def test_listener_dispatches_decoded_messages():
    pubsub = FakePubSub(
        [
            {"type": "message", "data": json.dumps({"event_id": "e-1"})},
            {"type": "message", "data": b"not-json"},
            {"type": "message", "data": json.dumps({"event_id": "e-2"}).encode()},
        ]
    )
    redis = _redis_with(pubsub)
    feed = RedisChangeFeed(redis_factory=lambda: redis, poll_timeout=0.01)
    received = []

    async def on_message(body):
        received.append(body["event_id"])

    await feed.open_channel("opsflow:events:all", on_message)
    await _eventually(lambda: len(received) == 2)

    assert received == ["e-1", "e-2"]
    assert pubsub.subscribed == ["opsflow:events:all"]
    assert feed.channels == ["opsflow:events:all"]

    await feed.close()
    assert pubsub.unsubscribed == ["opsflow:events:all"]
    assert pubsub.closed
    assert feed.channels == []


@pytest.mark.asyncio
async def test_listener_failure_does_not_stop_the_channel():
    pubsub = FakePubSub(
        [
            {"type": "message", "data": json.dumps({"event_id": "boom"})},
            {"type": "message", "data": json.dumps({"event_id": "e-2"})},
        ]
    )
    redis = _redis_with(pubsub)
    feed = RedisChangeFeed(redis_factory=lambda: redis, poll_timeout=0.01)
    received = []

    async def on_message(body):
        if body["event_id"] == "boom":
            raise RuntimeError("handler bug")
        received.append(body["event_id"])

    await feed.open_channel("c", on_message)
    await _eventually(lambda: received == ["e-2"])
    await feed.close()


@pytest.mark.asyncio
async def test_connection_loss_resubscribes_and_signals_reconnect():
    first = FakePubSub([ConnectionError("connection reset")])
    second = FakePubSub([{"type": "message", "data": json.dumps({"event_id": "after"})}])
    redis = _redis_with(first, second)
    feed = RedisChangeFeed(redis_factory=lambda: redis, reconnect_base_delay=0.001, poll_timeout=0.01)
    received = []
    reconnects = []

    async def on_message(body):
        received.append(body["event_id"])

    async def on_reconnect():
        reconnects.append(True)

    await feed.open_channel("c", on_message, on_reconnect)
    await _eventually(lambda: received == ["after"])

    assert reconnects == [True]
    assert first.closed
    assert second.subscribed == ["c"]
    await feed.close()


@pytest.mark.asyncio
async def test_open_channel_is_idempotent():
    redis = _redis_with(FakePubSub(), FakePubSub())
    feed = RedisChangeFeed(redis_factory=lambda: redis, poll_timeout=0.01)
    handler = AsyncMock()

    await feed.open_channel("c", handler)
    await feed.open_channel("c", handler)

    assert redis.pubsub.call_count == 1
    await feed.close()
