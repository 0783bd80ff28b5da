"""
Publish/subscribe helpers for the voice coach.

`Subscribers` is the per-topic fan-out used for channel messages and
connection callbacks. `AppEventBus` plays the role of the browser window:
UI code listens there for application-level notifications such as
``voiceCoachAutoplayBlocked``.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

AUTOPLAY_BLOCKED_EVENT = "voiceCoachAutoplayBlocked"


class Subscribers:
    """Ordered set of handlers for one topic."""

    def __init__(self, topic: str):
        self.topic = topic
        self._handlers: List[Callable[..., Any]] = []
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, handler: Callable[..., Any]) -> Callable[[], None]:
        """Register a handler and return a callable that removes it."""
        if handler not in self._handlers:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, *args: Any) -> int:
        """
        Deliver to every handler.

        A raising handler is logged and skipped; the rest still receive the
        event. Coroutine handlers are scheduled on the running loop.

        Returns the number of handlers that accepted the event.
        """
        delivered = 0
        for handler in list(self._handlers):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(lambda done, handler=handler: self._finished(handler, done))
                delivered += 1
            except Exception as e:
                logger.error(f"Error in {self.topic} handler {handler!r}: {e}", exc_info=True)
        return delivered

    def _finished(self, handler: Callable[..., Any], task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Error in {self.topic} handler {handler!r}: {error}", exc_info=error)

    @property
    def pending(self) -> int:
        """Coroutine handlers still running."""
        return len(self._pending)

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)


class AppEventBus:
    """Named application events with a detail payload."""

    def __init__(self):
        self._topics: Dict[str, Subscribers] = {}

    def subscribe(self, name: str, handler: Callable[[Dict[str, Any]], Any]) -> Callable[[], None]:
        topic = self._topics.setdefault(name, Subscribers(name))
        return topic.subscribe(handler)

    def dispatch(self, name: str, detail: Dict[str, Any]) -> int:
        topic = self._topics.get(name)
        if topic is None:
            logger.debug(f"No listeners for {name}")
            return 0
        return topic.publish(detail)
