import asyncio
import logging
from typing import Callable, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from internchat.errors import RepositoryError, gateway_errors
from internchat.schemas.messaging import Message
from internchat.utils.realtime_bus import conversation_channel


logger = logging.getLogger(__name__)

OnInsert = Callable[[Message], None]
OnError = Callable[[RepositoryError], None]


class MessageSubscription:
    """Live push channel for the inserts of a single conversation.

    The channel is pumped by a background task. ``unsubscribe()`` is
    synchronous and idempotent: it cancels the task, and the task's
    cleanup releases the bus channel.
    """

    def __init__(self, bus, conversation_id: str, on_insert: OnInsert, on_error: Optional[OnError] = None) -> None:
        self.conversation_id = conversation_id
        self._bus = bus
        self._on_insert = on_insert
        self._on_error = on_error
        self._closed = False
        self._channel = conversation_channel(conversation_id)
        self._task = asyncio.get_running_loop().create_task(self._pump(), name=f"pump {self._channel}")

    @property
    def active(self) -> bool:
        return not self._closed

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        logger.debug("Unsubscribed from %s", self._channel)

    async def _pump(self) -> None:
        sub = None
        try:
            with gateway_errors(f"subscribe to {self._channel}"):
                sub = await self._bus.subscribe(self._channel, self._deliver)
                logger.debug("Subscribed to %s", self._channel)
                await sub.run()
        except RepositoryError as exc:
            if self._closed:
                return
            self._closed = True
            logger.warning("Message channel %s dropped: %s", self._channel, exc)
            if self._on_error is not None:
                self._on_error(exc)
        finally:
            if sub is not None:
                try:
                    await sub.cancel()
                except (RedisError, OSError) as exc:
                    logger.warning("Could not release %s cleanly: %s", self._channel, exc)

    async def _deliver(self, data: str) -> None:
        if self._closed:
            return
        try:
            message = Message.model_validate_json(data)
        except ValidationError as exc:
            logger.warning("Dropping malformed payload on %s: %s", self._channel, exc)
            return
        if message.conversation_id != self.conversation_id:
            return
        self._on_insert(message)
