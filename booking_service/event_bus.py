import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[object], Awaitable[None]]

ALL_EVENTS = "*"


class EventBus:
    """
    In-process fan-out of lifecycle events.

    Handlers for one event run concurrently. A failing handler is logged and
    never reaches the emitter, so delivery problems cannot undo the write that
    produced the event.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    def handlers_for(self, event_type: str) -> list[Handler]:
        return [*self._handlers.get(event_type, []), *self._handlers.get(ALL_EVENTS, [])]

    async def emit(self, event) -> None:
        handlers = self.handlers_for(event.type)
        if not handlers:
            return

        results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        for handler, result in zip(handlers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "event handler %s failed for %s: %r",
                    getattr(handler, "__qualname__", handler),
                    event.type,
                    result,
                )


bus = EventBus()
