"""
Celery tasks receiving engine events on the collaborator side.

The engine only enqueues these tasks (see ``CeleryEventSink``); delivery of
emails, push messages and the accounting ledger integration are owned by
the workers consuming them. Tasks are keyed by the event's idempotency key
and retried with backoff by Celery, not by the engine.
"""

from typing import Any

from celery import Celery, Task, shared_task

from fulfillment_engine.core.config import get_settings
from fulfillment_engine.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

celery_app = Celery(
    "fulfillment_engine",
    broker=settings.celery_broker_url,
)
celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
)


class EventDeliveryError(Exception):
    """Raised by a worker when a downstream delivery should be retried."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class EventTask(Task):
    """
    Base task class for event tasks with retry logic.

    Provides automatic retries with backoff and structured failure logging.
    """

    autoretry_for = (EventDeliveryError,)
    retry_kwargs = {"max_retries": 5}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Event task failed",
            task_id=task_id,
            task_name=self.name,
            exception=str(exc),
            kwargs=kwargs,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Event task retrying",
            task_id=task_id,
            task_name=self.name,
            exception=str(exc),
            retry_count=self.request.retries,
        )


@shared_task(
    bind=True,
    base=EventTask,
    name="notifications.dispatch_event",
    time_limit=120,
    soft_time_limit=90,
)
def dispatch_event_task(
    self: Task,
    event_type: str,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """
    Receive a notification event.

    Args:
        self: Task instance
        event_type: Event name, e.g. ``order.confirmed``
        payload: Event body including its idempotency key

    Returns:
        Dictionary acknowledging the event
    """
    logger.info(
        "Processing event",
        task_id=self.request.id,
        event_type=event_type,
        idempotency_key=payload.get("idempotency_key"),
    )
    return {
        "event_type": event_type,
        "idempotency_key": payload.get("idempotency_key"),
        "status": "accepted",
    }


@shared_task(
    bind=True,
    base=EventTask,
    name="accounting.sync_order",
    time_limit=300,
    soft_time_limit=240,
)
def sync_order_task(self: Task, order_id: str) -> dict[str, Any]:
    """
    Receive an accounting sync request for an order.

    Args:
        self: Task instance
        order_id: Order to sync

    Returns:
        Dictionary acknowledging the request
    """
    logger.info(
        "Processing accounting sync",
        task_id=self.request.id,
        order_id=order_id,
    )
    return {"order_id": order_id, "status": "accepted"}
