"""Tests for session_audit.realtime.batcher module."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_audit.config import AuditConfig
from session_audit.realtime.batcher import EventBatcher
from session_audit.realtime.delivery import DeliveryOutcome, TaskSupervisor
from session_audit.realtime.events import EventKind, PendingEvent


SESSION = "0a1b2c3d-0000-4000-8000-000000000001"


def make_event(event_id, thread=None, session=SESSION):
    return PendingEvent(
        kind=EventKind.THINKING,
        id=event_id,
        session_key=session,
        timestamp=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        data={"preview": event_id},
        thread_number=thread,
    )


@pytest.fixture
def delivery():
    mock = MagicMock()
    mock.accepting.return_value = True
    mock.send = AsyncMock(return_value=DeliveryOutcome.SENT)
    return mock


@pytest.fixture
def formatter():
    mock = MagicMock()
    mock.render.side_effect = lambda key, events: f"{key}:{len(events)}"
    return mock


@pytest.fixture
def supervisor():
    return TaskSupervisor()


def make_batcher(formatter, delivery, supervisor, **config_kwargs):
    config = AuditConfig(**config_kwargs)
    return EventBatcher(config, formatter, delivery, supervisor=supervisor)


class TestTriggers:
    """Test size and inactivity flush triggers."""

    @pytest.mark.asyncio
    async def test_size_trigger_flushes_immediately(self, formatter, delivery, supervisor):
        """Reaching max_batch_size flushes without waiting for the timer."""
        batcher = make_batcher(formatter, delivery, supervisor, max_batch_size=3)

        for i in range(3):
            batcher.add_event(make_event(f"e{i}"))

        assert batcher.pending_count() == 0
        assert not batcher.has_timer(SESSION)

        await supervisor.drain()
        delivery.send.assert_awaited_once_with(f"{SESSION}:3")

    @pytest.mark.asyncio
    async def test_window_trigger(self, formatter, delivery, supervisor):
        """A batch is flushed after the inactivity window."""
        batcher = make_batcher(formatter, delivery, supervisor, batch_window_ms=50)

        batcher.add_event(make_event("e1"))
        batcher.add_event(make_event("e2"))
        assert batcher.has_timer(SESSION)
        delivery.send.assert_not_called()

        await asyncio.sleep(0.15)
        await supervisor.drain()

        delivery.send.assert_awaited_once_with(f"{SESSION}:2")
        assert not batcher.has_timer(SESSION)
        assert batcher.pending_count() == 0

    @pytest.mark.asyncio
    async def test_one_timer_per_group(self, formatter, delivery, supervisor):
        """Adding to an accumulating group does not re-arm the timer."""
        batcher = make_batcher(formatter, delivery, supervisor, batch_window_ms=60000)

        batcher.add_event(make_event("e1"))
        timer = batcher._timers[SESSION]
        batcher.add_event(make_event("e2"))

        assert batcher._timers[SESSION] is timer
        await batcher.flush_all()

    @pytest.mark.asyncio
    async def test_threads_batched_separately(self, formatter, delivery, supervisor):
        """Each (session, thread) pair is its own group."""
        batcher = make_batcher(formatter, delivery, supervisor, batch_window_ms=60000)

        batcher.add_event(make_event("e1"))
        batcher.add_event(make_event("e2", thread="4"))

        assert sorted(batcher.group_keys()) == sorted([SESSION, f"{SESSION}-topic-4"])
        assert batcher.pending_count(f"{SESSION}-topic-4") == 1

        await batcher.flush_all()
        assert delivery.send.await_count == 2

    @pytest.mark.asyncio
    async def test_events_after_detach_start_new_batch(self, formatter, delivery, supervisor):
        """Events arriving during delivery go into a fresh batch."""
        batcher = make_batcher(formatter, delivery, supervisor, batch_window_ms=60000)
        gate = asyncio.Event()

        async def slow_send(text):
            await gate.wait()
            return DeliveryOutcome.SENT

        delivery.send.side_effect = slow_send
        batcher.add_event(make_event("e1"))
        flush = asyncio.create_task(batcher.flush(SESSION))
        await asyncio.sleep(0)

        batcher.add_event(make_event("e2"))
        assert batcher.pending_count(SESSION) == 1
        assert batcher.has_timer(SESSION)

        gate.set()
        assert await flush is DeliveryOutcome.SENT
        await batcher.flush_all()
        assert delivery.send.await_count == 2


class TestFlush:
    """Test explicit flushing."""

    @pytest.mark.asyncio
    async def test_flush_empty_group(self, formatter, delivery, supervisor):
        batcher = make_batcher(formatter, delivery, supervisor)

        assert await batcher.flush(SESSION) is None
        delivery.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_flush_cancels_timer(self, formatter, delivery, supervisor):
        """Flushing a group cancels its pending timer."""
        batcher = make_batcher(formatter, delivery, supervisor, batch_window_ms=60000)
        batcher.add_event(make_event("e1"))

        assert await batcher.flush(SESSION) is DeliveryOutcome.SENT
        assert not batcher.has_timer(SESSION)

    @pytest.mark.asyncio
    async def test_dropped_during_cooldown(self, formatter, delivery, supervisor):
        """Batches are dropped without rendering while delivery refuses."""
        delivery.accepting.return_value = False
        batcher = make_batcher(formatter, delivery, supervisor)
        batcher.add_event(make_event("e1"))

        assert await batcher.flush(SESSION) is DeliveryOutcome.DROPPED
        formatter.render.assert_not_called()
        delivery.send.assert_not_called()
        assert batcher.pending_count() == 0

    @pytest.mark.asyncio
    async def test_empty_render_not_sent(self, formatter, delivery, supervisor):
        """A batch whose events are all suppressed sends nothing."""
        formatter.render.side_effect = lambda key, events: ""
        batcher = make_batcher(formatter, delivery, supervisor)
        batcher.add_event(make_event("e1"))

        assert await batcher.flush(SESSION) is None
        delivery.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_flush_all_waits_for_inflight(self, formatter, delivery, supervisor):
        """flush_all() also waits for size-triggered flushes."""
        batcher = make_batcher(formatter, delivery, supervisor, max_batch_size=1)
        batcher.add_event(make_event("e1"))

        await batcher.flush_all()

        delivery.send.assert_awaited_once()
        assert len(supervisor) == 0


class TestLookup:
    """Test pending-event lookup."""

    @pytest.mark.asyncio
    async def test_find_pending(self, formatter, delivery, supervisor):
        batcher = make_batcher(formatter, delivery, supervisor)
        event = make_event("call_1", thread="2")
        batcher.add_event(event)

        assert batcher.find_pending(f"{SESSION}-topic-2", "call_1") is event
        assert batcher.find_pending(SESSION, "call_1") is None
        assert batcher.find_pending(f"{SESSION}-topic-2", "other") is None

        await batcher.flush_all()
        assert batcher.find_pending(f"{SESSION}-topic-2", "call_1") is None
