"""
Packing-session reaper.

Background loop that reverts abandoned packing sessions. On every tick it
finds orders that have sat in ``packing`` with no item-packed event and no
status change for the configured timeout, and moves each back to
``confirmed`` as the system actor through the regular optimistic path, so a
packer's concurrent action always wins over the reaper.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_engine.core.actor import Actor
from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.core.exceptions import VersionConflict
from fulfillment_engine.core.logging import get_logger, log_performance
from fulfillment_engine.database.base import ensure_aware, utc_now
from fulfillment_engine.database.connection import get_session_factory
from fulfillment_engine.database.models.order import Order
from fulfillment_engine.services.notifications.sinks import (
    EventBuffer,
    EventPublisher,
    make_idempotency_key,
)
from fulfillment_engine.services.orders.enums import OrderStatus
from fulfillment_engine.services.orders.repository import OrderRepository
from fulfillment_engine.services.orders.state_machine import get_order_state_machine

logger = get_logger(__name__)

SESSION_TIMEOUT_EVENT = "packing.session_timeout"


@dataclass
class ReapReport:
    """Outcome of one reaper tick."""

    reverted: list[uuid.UUID] = field(default_factory=list)
    skipped: list[uuid.UUID] = field(default_factory=list)


def last_activity(order: Order) -> Optional[datetime]:
    """Last item-packed event, or the last status change."""
    return ensure_aware(order.last_packing_activity_at or order.updated_at)


class PackingSessionReaper:
    """
    Reverts packing sessions idle for longer than the timeout.

    Args:
        session_factory: Factory for the reaper's own sessions
        publisher: Event publisher for post-commit notifications
        settings: Application settings
        clock: Callable returning the current aware UTC time
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.publisher = publisher or EventPublisher(
            timeout_seconds=self.settings.event_sink_timeout_seconds
        )
        self.clock = clock
        self._is_running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.packing_timeout_minutes)

    def is_stale(self, order: Order, now: datetime) -> bool:
        activity = last_activity(order)
        return (
            order.status == OrderStatus.PACKING
            and activity is not None
            and activity <= now - self.timeout
        )

    # ========================================================================
    # One tick
    # ========================================================================

    async def reap_once(self, now: Optional[datetime] = None) -> ReapReport:
        """
        Run one reaper pass.

        Args:
            now: Reference time, defaults to the clock

        Returns:
            ReapReport listing reverted and skipped orders
        """
        now = now or self.clock()
        report = ReapReport()

        async with self.session_factory() as session:
            stale = await OrderRepository(session).find_stale_packing_orders(
                now - self.timeout
            )
            candidates = [(order.id, order.version) for order in stale]
            await session.commit()

        with log_performance(logger, "packing_session_reap", candidates=len(candidates)):
            for order_id, seen_version in candidates:
                if await self.reap_order(order_id, seen_version, now):
                    report.reverted.append(order_id)
                else:
                    report.skipped.append(order_id)

        if candidates:
            logger.info(
                "Packing sessions reaped",
                reverted=len(report.reverted),
                skipped=len(report.skipped),
            )
        return report

    async def reap_order(
        self, order_id: uuid.UUID, seen_version: int, now: Optional[datetime] = None
    ) -> bool:
        """
        Revert one stale packing order.

        The transition uses the version seen when the order was found. If a
        concurrent action moved it on, the order is re-read and reverted at
        its new version only if it is still stale.

        Args:
            order_id: Order found stale
            seen_version: Version observed by the scan
            now: Reference time

        Returns:
            True when the order was reverted
        """
        now = now or self.clock()
        try:
            return await self._revert(order_id, seen_version, now)
        except VersionConflict:
            logger.info(
                "Packing session changed while reaping, re-reading",
                order_id=str(order_id),
                seen_version=seen_version,
            )

        try:
            return await self._revert(order_id, None, now)
        except VersionConflict:
            logger.info("Packing session changed again, skipping", order_id=str(order_id))
            return False

    async def _revert(
        self, order_id: uuid.UUID, expected_version: Optional[int], now: datetime
    ) -> bool:
        events = EventBuffer()
        async with self.session_factory() as session:
            try:
                order = await OrderRepository(session).get_order(order_id)
                if order is None or not self.is_stale(order, now):
                    await session.rollback()
                    return False

                idle_since = last_activity(order)
                machine = get_order_state_machine(session, events, self.settings)
                await machine.transition(
                    order,
                    OrderStatus.CONFIRMED,
                    Actor.system(),
                    order.version if expected_version is None else expected_version,
                    note="Packing session timed out",
                )
                events.add_notification(
                    SESSION_TIMEOUT_EVENT,
                    _timeout_payload(order, idle_since, now),
                    idempotency_key=make_idempotency_key(
                        SESSION_TIMEOUT_EVENT, order.id, order.version
                    ),
                )
                await session.commit()
            except Exception:
                await session.rollback()
                events.clear()
                raise

        events.flush(self.publisher)
        logger.info(
            "Packing session reverted",
            order_id=str(order_id),
            idle_since=idle_since.isoformat() if idle_since else None,
        )
        return True

    # ========================================================================
    # Background loop
    # ========================================================================

    async def _reaper_loop(self) -> None:
        """Run reaper passes at the configured interval until stopped."""
        logger.info(
            "Packing session reaper started",
            interval_seconds=self.settings.reaper_interval_seconds,
            timeout_minutes=self.settings.packing_timeout_minutes,
        )

        while self._is_running:
            try:
                await self.reap_once()
            except asyncio.CancelledError:
                logger.info("Packing session reaper cancelled")
                break
            except Exception as e:
                logger.error(
                    "Packing session reaper pass failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            await asyncio.sleep(self.settings.reaper_interval_seconds)

    async def start(self) -> None:
        """
        Start the background loop.

        Raises:
            RuntimeError: If the reaper is already running
        """
        if self._is_running:
            raise RuntimeError("Packing session reaper is already running")

        self._is_running = True
        self._task = asyncio.create_task(self._reaper_loop())

    async def stop(self) -> None:
        """Stop the background loop, waiting for the current pass to unwind."""
        if not self._is_running:
            return

        self._is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Packing session reaper stopped")


def _timeout_payload(order: Order, idle_since: Optional[datetime], now: datetime) -> dict[str, Any]:
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "idle_since": idle_since.isoformat() if idle_since else None,
        "reverted_at": now.isoformat(),
        "version": order.version,
    }
