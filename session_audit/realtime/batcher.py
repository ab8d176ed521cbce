"""Per-session batching of pending events.

Events are grouped by ``sessionId`` or ``sessionId-topic-<thread>``.
Each group moves through::

    empty -> accumulating (timer armed) -> flushing (batch detached) -> empty

A group has at most one flush timer. Reaching ``max_batch_size`` cancels
the timer and flushes immediately; otherwise the batch is flushed after
``batch_window_ms`` of inactivity since the timer was armed. A batch is
detached from the pending map before any awaiting, so events arriving
during delivery start a new batch.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from ..config import AuditConfig
from .delivery import DeliveryManager, DeliveryOutcome, TaskSupervisor
from .events import PendingEvent
from .formatter import MessageFormatter

logger = logging.getLogger(__name__)


class EventBatcher:
    """Holds pending events and flushes them through delivery."""

    def __init__(
        self,
        config: AuditConfig,
        formatter: MessageFormatter,
        delivery: DeliveryManager,
        supervisor: Optional[TaskSupervisor] = None,
    ):
        """Initialize the batcher.

        Args:
            config: Audit configuration (window and size thresholds)
            formatter: Renders detached batches
            delivery: Sends rendered messages
            supervisor: Owner of timer- and size-triggered flush tasks
        """
        self._window = config.batch_window_ms / 1000
        self._max_batch_size = config.max_batch_size
        self._formatter = formatter
        self._delivery = delivery
        self._supervisor = supervisor if supervisor is not None else delivery.supervisor
        self._pending: Dict[str, List[PendingEvent]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def add_event(self, event: PendingEvent) -> None:
        """Append an event to its group and arm or fire the flush trigger.

        Must be called from the event loop thread.
        """
        key = event.group_key
        batch = self._pending.setdefault(key, [])
        batch.append(event)

        if len(batch) >= self._max_batch_size:
            logger.debug("Batch %s reached %d events, flushing", key, len(batch))
            self._schedule_flush(key)
        elif key not in self._timers:
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(self._window, self._on_timer, key)

    def _on_timer(self, key: str) -> None:
        self._timers.pop(key, None)
        self._schedule_flush(key)

    def _schedule_flush(self, key: str) -> None:
        batch = self._detach(key)
        if batch:
            self._supervisor.spawn(self._deliver(key, batch), name=f"flush:{key}")

    def _detach(self, key: str) -> List[PendingEvent]:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        return self._pending.pop(key, [])

    async def flush(self, group_key: str) -> Optional[DeliveryOutcome]:
        """Detach and deliver one group now.

        Returns:
            Delivery outcome, or None if there was nothing to send
        """
        batch = self._detach(group_key)
        if not batch:
            return None
        return await self._deliver(group_key, batch)

    async def flush_all(self) -> None:
        """Flush every group and wait for in-flight flushes to finish."""
        for key in list(self._pending):
            await self.flush(key)
        await self._supervisor.drain()

    async def _deliver(self, key: str, batch: List[PendingEvent]) -> Optional[DeliveryOutcome]:
        if not self._delivery.accepting():
            logger.info("Dropping %d events for %s during cooldown", len(batch), key)
            return DeliveryOutcome.DROPPED

        text = self._formatter.render(key, batch)
        if not text:
            logger.debug("Nothing to send for %s (%d events)", key, len(batch))
            return None
        return await self._delivery.send(text)

    def find_pending(self, group_key: str, event_id: str) -> Optional[PendingEvent]:
        """Find a not-yet-flushed event by id."""
        for event in self._pending.get(group_key, ()):
            if event.id == event_id:
                return event
        return None

    def pending_count(self, group_key: Optional[str] = None) -> int:
        """Number of pending events in one group, or in all groups."""
        if group_key is not None:
            return len(self._pending.get(group_key, ()))
        return sum(len(batch) for batch in self._pending.values())

    def has_timer(self, group_key: str) -> bool:
        return group_key in self._timers

    def group_keys(self) -> List[str]:
        return list(self._pending)
