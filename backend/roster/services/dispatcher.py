"""
Single-consumer event queue for roster mutations.

User actions, change-feed events and poll ticks are all drawn from one
queue and each is handled to completion before the next, so the roster
state never sees two mutations interleaved.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    USER_ACTION = "user_action"
    FEED_EVENT = "feed_event"
    POLL_TICK = "poll_tick"


@dataclass
class RosterMessage:
    kind: MessageKind
    payload: Any = None
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class DispatcherClosed(RuntimeError):
    """Raised when submitting to a dispatcher that is not running."""


Handler = Callable[[Any], Awaitable[Any]]


class RosterDispatcher:
    """Routes queued roster messages to one handler per message kind."""

    def __init__(self):
        self._handlers: Dict[MessageKind, Handler] = {}
        self._queue: "asyncio.Queue[RosterMessage]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

    def register_handler(self, kind: MessageKind, handler: Handler) -> None:
        self._handlers[kind] = handler

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume())

    async def submit(self, kind: MessageKind, payload: Any = None) -> Any:
        """Queue a message and wait for its handler's result (or exception)."""
        if not self.running:
            raise DispatcherClosed("Roster dispatcher is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(RosterMessage(kind, payload, future))
        return await future

    def post(self, kind: MessageKind, payload: Any = None) -> None:
        """Queue a message without waiting for it; failures are only logged."""
        if not self.running:
            logger.debug(f"Dropping {kind.value} message, dispatcher not running")
            return
        self._queue.put_nowait(RosterMessage(kind, payload))

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._handle(message)
            finally:
                self._queue.task_done()

    async def _handle(self, message: RosterMessage) -> None:
        handler = self._handlers.get(message.kind)
        if handler is None:
            logger.warning(f"No handler registered for message kind: {message.kind.value}")
            if message.future is not None and not message.future.done():
                message.future.set_exception(LookupError(f"No handler for {message.kind.value}"))
            return

        try:
            result = await handler(message.payload)
        except asyncio.CancelledError:
            if message.future is not None and not message.future.done():
                message.future.cancel()
            raise
        except Exception as e:
            if message.future is not None:
                if not message.future.done():
                    message.future.set_exception(e)
            else:
                logger.error(f"Error handling {message.kind.value} message: {e}")
            return

        if message.future is not None and not message.future.done():
            message.future.set_result(result)

    async def join(self) -> None:
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the consumer and fail anything still queued."""
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

        while not self._queue.empty():
            message = self._queue.get_nowait()
            self._queue.task_done()
            if message.future is not None and not message.future.done():
                message.future.set_exception(DispatcherClosed("Roster dispatcher stopped"))
