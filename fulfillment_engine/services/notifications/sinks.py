"""
Outbound event sinks for notifications and accounting sync.

The engine hands events to a sink on a background task once its own
transaction has committed, and never waits on delivery. Every event carries
a deterministic idempotency key, so a collaborator that retries (or receives
the same event twice) can discard duplicates. Sink failures are logged and
swallowed here; they never roll back or block an order transition.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from celery import Celery

from fulfillment_engine.core.config import get_settings
from fulfillment_engine.core.logging import get_logger

logger = get_logger(__name__)

NOTIFY_TASK_NAME = "notifications.dispatch_event"
ACCOUNTING_TASK_NAME = "accounting.sync_order"


def make_idempotency_key(*parts: Any) -> str:
    """Build a deterministic idempotency key from event identity parts."""
    return ":".join(str(part) for part in parts)


class EventSink(Protocol):
    """Fire-and-forget destination for engine events."""

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        ...

    async def sync_accounting(self, order_id: str, idempotency_key: str) -> None:
        ...


class LoggingEventSink:
    """Sink that records events in the structured log only."""

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Event emitted", event_type=event_type, payload=payload)

    async def sync_accounting(self, order_id: str, idempotency_key: str) -> None:
        logger.info(
            "Accounting sync requested",
            order_id=order_id,
            idempotency_key=idempotency_key,
        )


class CeleryEventSink:
    """
    Sink that enqueues events as Celery tasks.

    The idempotency key doubles as the Celery task id, so re-sending the
    same logical event produces the same task id and the worker side owns
    retries.
    """

    def __init__(self, app: Celery):
        self.app = app

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self.app.send_task,
            NOTIFY_TASK_NAME,
            kwargs={"event_type": event_type, "payload": payload},
            task_id=payload.get("idempotency_key"),
        )

    async def sync_accounting(self, order_id: str, idempotency_key: str) -> None:
        await asyncio.to_thread(
            self.app.send_task,
            ACCOUNTING_TASK_NAME,
            kwargs={"order_id": order_id},
            task_id=idempotency_key,
        )


class EventPublisher:
    """
    Boundary between the engine and its sink.

    Adds the idempotency key to every payload and turns sink failures into
    log entries. ``dispatch`` runs a batch of events as a background task
    so callers return without waiting on the sink; ``drain`` waits for the
    batches this publisher still has in flight.
    """

    def __init__(self, sink: Optional[EventSink] = None, timeout_seconds: float = 5.0):
        self.sink = sink or get_event_sink()
        self.timeout_seconds = timeout_seconds
        self._in_flight: set[asyncio.Task] = set()

    def dispatch(self, events: list["PendingEvent"]) -> Optional[asyncio.Task]:
        """
        Publish events in order on a background task.

        Args:
            events: Events to hand off

        Returns:
            The background task, or None when there was nothing to send
        """
        if not events:
            return None
        task = asyncio.create_task(self.publish(events))
        # The event loop only keeps weak references to tasks
        for registry in (self._in_flight, _background_tasks):
            registry.add(task)
            task.add_done_callback(registry.discard)
        return task

    async def drain(self) -> None:
        """Wait until every batch dispatched by this publisher has been sent."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight)

    async def publish(self, events: list["PendingEvent"]) -> None:
        """Hand events to the sink one after another."""
        for event in events:
            if event.kind == "accounting":
                await self.sync_accounting(event.order_id, event.idempotency_key)
            else:
                await self.notify(event.event_type, event.payload, event.idempotency_key)

    async def notify(
        self, event_type: str, payload: dict[str, Any], idempotency_key: str
    ) -> None:
        """
        Hand a notification event to the sink.

        Args:
            event_type: Event name, e.g. ``order.confirmed``
            payload: JSON-serializable event body
            idempotency_key: Deterministic key for duplicate suppression
        """
        payload = {**payload, "idempotency_key": idempotency_key}
        try:
            await asyncio.wait_for(
                self.sink.notify(event_type, payload), timeout=self.timeout_seconds
            )
        except Exception as e:
            logger.error(
                "Failed to hand off notification",
                event_type=event_type,
                idempotency_key=idempotency_key,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def sync_accounting(self, order_id: Any, idempotency_key: str) -> None:
        """
        Ask the accounting collaborator to sync an order.

        Args:
            order_id: Order to sync
            idempotency_key: Deterministic key for duplicate suppression
        """
        try:
            await asyncio.wait_for(
                self.sink.sync_accounting(str(order_id), idempotency_key),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            logger.error(
                "Failed to hand off accounting sync",
                order_id=str(order_id),
                idempotency_key=idempotency_key,
                error=str(e),
                error_type=type(e).__name__,
            )


@dataclass
class PendingEvent:
    kind: str
    idempotency_key: str
    event_type: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    order_id: Optional[str] = None


class EventBuffer:
    """
    Events collected during a unit of work, published after commit.

    Services append to the buffer while their transaction is open and call
    ``flush`` once it has committed; on rollback they call ``clear`` so no
    event escapes for a change that never happened.
    """

    def __init__(self) -> None:
        self.pending: list[PendingEvent] = []

    def add_notification(
        self, event_type: str, payload: dict[str, Any], idempotency_key: str
    ) -> None:
        self.pending.append(
            PendingEvent(
                kind="notify",
                event_type=event_type,
                payload=payload,
                idempotency_key=idempotency_key,
            )
        )

    def add_accounting_sync(self, order_id: Any, idempotency_key: str) -> None:
        self.pending.append(
            PendingEvent(
                kind="accounting",
                order_id=str(order_id),
                idempotency_key=idempotency_key,
            )
        )

    def clear(self) -> None:
        self.pending.clear()

    def flush(self, publisher: EventPublisher) -> int:
        """
        Hand every pending event to the publisher and drop it from the buffer.

        Publication runs in the background; the caller does not wait on
        the sink.

        Returns:
            Number of events dispatched
        """
        events, self.pending = self.pending, []
        publisher.dispatch(events)
        return len(events)


_background_tasks: set[asyncio.Task] = set()


async def wait_for_pending_events(timeout: Optional[float] = None) -> None:
    """
    Wait for every background publication in this process, e.g. on shutdown.

    Args:
        timeout: Give up after this many seconds
    """
    if not _background_tasks:
        return
    _, pending = await asyncio.wait(set(_background_tasks), timeout=timeout)
    if pending:
        logger.warning("Abandoning undelivered events", batches=len(pending))


_sink: Optional[EventSink] = None


def get_event_sink() -> EventSink:
    """
    Get the process-wide event sink selected by configuration.

    Returns:
        LoggingEventSink or CeleryEventSink
    """
    global _sink

    if _sink is None:
        settings = get_settings()
        if settings.event_sink_backend == "celery":
            from fulfillment_engine.services.notifications.tasks import celery_app

            _sink = CeleryEventSink(celery_app)
        else:
            _sink = LoggingEventSink()
        logger.info("Event sink configured", backend=settings.event_sink_backend)

    return _sink
