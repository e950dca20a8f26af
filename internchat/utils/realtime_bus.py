import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Set

import redis.asyncio as redis


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"messages:conversation_id={conversation_id}"


class LocalBus:
    """In-process fan-out used when no REDIS_URL is configured.

    Only subscribers living in the same process see published messages,
    which is enough for a single worker and for tests.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(channel, set()).add(queue)
        queues = self._queues

        class _Sub:
            async def run(self_inner):
                while True:
                    data = await queue.get()
                    await on_message(data)

            async def cancel(self_inner):
                listeners = queues.get(channel)
                if listeners is None:
                    return
                listeners.discard(queue)
                if not listeners:
                    del queues[channel]

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._queues.get(channel, ()))


class RedisBus:
    """Redis pub/sub bus shared by every worker."""

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                # connection errors propagate; the subscriber decides whether to resubscribe
                while self_inner._running:
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                finally:
                    await pubsub.aclose()

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = os.getenv("REDIS_URL")
    if not url:
        logger.info("REDIS_URL not set, using in-process realtime bus")
        _bus = LocalBus()
        return _bus
    _bus = RedisBus(url)
    return _bus


async def close_bus() -> None:
    global _bus
    if isinstance(_bus, RedisBus):
        await _bus.close()
    _bus = None
