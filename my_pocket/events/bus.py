"""
Change Event Bus

In-process publish/subscribe for "this collection changed" notifications.
Writers publish a topic after the ledger state is fully updated; readers
(the dashboard, lists) re-read whatever they display.

DESIGN DECISION: The bus is an ordinary object created per session and
passed to whoever needs it. There is no module-level instance, so two
sessions (or two tests) never see each other's subscribers.

Delivery rules:
- Synchronous, in the publisher's task, to a snapshot of the subscribers
- A subscriber that raises is reported to the error handler; the remaining
  subscribers still run and ``publish`` itself never raises
- Inside ``batch()`` each topic is delivered once when the outermost batch
  ends, in the order topics were first published
"""

from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Callable, Iterator, Optional

import structlog


logger = structlog.get_logger(__name__)


class Topic(str, Enum):
    """Coarse-grained collections that can change."""
    WORKSPACES = "workspaces:changed"
    MONTHS = "months:changed"
    EXPENSES = "expenses:changed"
    CARDS = "cards:changed"
    PURCHASES = "purchases:changed"
    TEMPLATES = "templates:changed"


Handler = Callable[[Topic], None]
ErrorHandler = Callable[[Topic, Handler, Exception], None]


def _log_subscriber_error(topic: Topic, handler: Handler, error: Exception) -> None:
    logger.error(
        "subscriber_failed",
        topic=topic.value,
        handler=getattr(handler, "__qualname__", repr(handler)),
        error=str(error),
    )


class Subscription:
    """
    Handle returned by ``subscribe``.

    Releasing it (``unsubscribe()`` or leaving a ``with`` block) stops
    delivery. Releasing twice is harmless.
    """

    def __init__(self, bus: "ChangeEventBus", topic: Topic, handler: Handler):
        self._bus = bus
        self.topic = topic
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class _Batch:
    def __init__(self):
        self.topics: list[Topic] = []
        self.open = True

    def add(self, topic: Topic) -> None:
        if topic not in self.topics:
            self.topics.append(topic)


class ChangeEventBus:
    """Session-scoped topic bus."""

    def __init__(self, error_handler: Optional[ErrorHandler] = None):
        self._subscribers: dict[Topic, list[Subscription]] = {}
        self._error_handler = error_handler or _log_subscriber_error
        self._batch: ContextVar[Optional[_Batch]] = ContextVar(
            f"change_event_batch_{id(self)}", default=None
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, topic: Topic, handler: Handler) -> Subscription:
        """
        Register ``handler`` for ``topic``.

        Raises:
            RuntimeError: If the bus was closed
        """
        if self._closed:
            raise RuntimeError("Cannot subscribe to a closed event bus")
        subscription = Subscription(self, Topic(topic), handler)
        self._subscribers.setdefault(subscription.topic, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscribers.get(topic, []))

    def publish(self, topic: Topic) -> None:
        """Notify subscribers of ``topic`` (deferred while a batch is open)."""
        if self._closed:
            return
        topic = Topic(topic)
        batch = self._batch.get()
        if batch is not None and batch.open:
            batch.add(topic)
            return
        self._deliver(topic)

    def _deliver(self, topic: Topic) -> None:
        for subscription in list(self._subscribers.get(topic, [])):
            if not subscription.active:
                continue
            try:
                subscription.handler(topic)
            except Exception as e:
                try:
                    self._error_handler(topic, subscription.handler, e)
                except Exception as report_error:
                    _log_subscriber_error(topic, subscription.handler, report_error)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """
        Coalesce publications for one logical operation.

        Nested batches join the outermost one. Batches are tracked per
        asyncio task, so concurrent operations never merge.
        """
        current = self._batch.get()
        if current is not None and current.open:
            yield
            return

        batch = _Batch()
        token = self._batch.set(batch)
        try:
            yield
        finally:
            self._batch.reset(token)
            batch.open = False
            if not self._closed:
                for topic in batch.topics:
                    self._deliver(topic)

    def close(self) -> None:
        """End the session: drop every subscriber and ignore later publications."""
        for subscriptions in self._subscribers.values():
            for subscription in subscriptions:
                subscription.active = False
        self._subscribers.clear()
        self._closed = True

    def __enter__(self) -> "ChangeEventBus":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
