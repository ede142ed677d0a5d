"""
Tests for the debounce scheduler.
"""

import asyncio

import pytest
from unittest.mock import Mock

from dynaform.derivation.debounce import DebounceScheduler


class TestDebounceWithoutLoop:
    """Test behaviour outside a running event loop."""

    def test_schedule_needs_loop(self):
        """Test that scheduling without a loop is refused."""
        scheduler = DebounceScheduler()
        assert scheduler.has_loop is False
        assert scheduler.schedule("email", 10, Mock()) is False

    def test_spawn_closes_coroutine(self):
        """Test that spawn without a loop closes the coroutine."""
        async def work():
            return 1

        coro = work()
        assert DebounceScheduler().spawn("k", coro) is None
        assert coro.cr_frame is None


class TestDebounceTimers:
    """Test restartable timers."""

    @pytest.mark.asyncio
    async def test_fires_once_after_quiet_period(self):
        """Test that rescheduling restarts the timer."""
        scheduler = DebounceScheduler()
        callback = Mock()

        scheduler.schedule("email", 20, callback)
        await asyncio.sleep(0.005)
        scheduler.schedule("email", 20, callback)
        await scheduler.wait_idle(timeout=1)

        callback.assert_called_once()
        stats = scheduler.stats
        assert stats["scheduled"] == 2
        assert stats["restarted"] == 1
        assert stats["fired"] == 1
        assert stats["armed_timers"] == 0

    @pytest.mark.asyncio
    async def test_independent_keys(self):
        """Test that different keys do not restart each other."""
        scheduler = DebounceScheduler()
        first, second = Mock(), Mock()
        scheduler.schedule("a", 5, first)
        scheduler.schedule("b", 5, second)
        await scheduler.wait_idle(timeout=1)
        first.assert_called_once()
        second.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test that a cancelled timer never fires."""
        scheduler = DebounceScheduler()
        callback = Mock()
        scheduler.schedule("email", 10, callback)

        assert scheduler.pending("email")
        assert scheduler.cancel("email") is True
        assert scheduler.cancel("email") is False
        await asyncio.sleep(0.03)

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_callback_errors_are_logged(self, caplog):
        """Test that a failing callback does not escape."""
        scheduler = DebounceScheduler()
        scheduler.schedule("bad", 0, Mock(side_effect=RuntimeError("boom")))
        await scheduler.wait_idle(timeout=1)
        assert "Debounced callback for 'bad' failed" in caplog.text

    @pytest.mark.asyncio
    async def test_cancel_prefix(self):
        """Test cancelling everything under an array item."""
        scheduler = DebounceScheduler()
        scheduler.schedule("items#item_1.total", 50, Mock())
        scheduler.schedule("items#item_1.tax", 50, Mock())
        scheduler.schedule("items#item_12.total", 50, Mock())

        assert scheduler.cancel_prefix("items#item_1") == 2
        assert scheduler.pending("items#item_12.total")
        assert scheduler.cancel_all() == 1
        assert not scheduler.pending()


class TestDebounceTasks:
    """Test in-flight task ownership."""

    @pytest.mark.asyncio
    async def test_spawn_replaces_previous(self):
        """Test that a newer task cancels the one it replaces."""
        scheduler = DebounceScheduler()

        async def slow():
            await asyncio.sleep(1)

        async def fast():
            return "done"

        first = scheduler.spawn("city", slow())
        second = scheduler.spawn("city", fast())
        await scheduler.wait_idle(timeout=1)

        assert first.cancelled()
        assert second.result() == "done"
        assert not scheduler.pending()

    @pytest.mark.asyncio
    async def test_wait_idle_follows_timer_into_task(self):
        """Test that work started by a fired timer is awaited."""
        scheduler = DebounceScheduler()
        results = []

        async def work():
            await asyncio.sleep(0.01)
            results.append("finished")

        scheduler.schedule("k", 5, lambda: scheduler.spawn("k", work()))
        await scheduler.wait_idle(timeout=1)

        assert results == ["finished"]

    @pytest.mark.asyncio
    async def test_wait_idle_timeout(self):
        """Test the wait_idle timeout."""
        scheduler = DebounceScheduler()
        scheduler.schedule("slow", 500, Mock())
        with pytest.raises(asyncio.TimeoutError):
            await scheduler.wait_idle(timeout=0.01)
        scheduler.cancel_all()
