"""Tests for the serial export queue."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from influx_relay.core.export_queue import ExportQueue


@pytest.mark.asyncio
class TestExportQueue:
    """Test cases for ExportQueue."""

    async def test_items_processed_in_order(self) -> None:
        """Test that items run one at a time in enqueue order."""
        seen: list[int] = []
        init = MagicMock()
        queue = ExportQueue(seen.append, init, delay_seconds=0)

        for item in range(3):
            await queue.enqueue(item)
        await queue.join()

        assert seen == [0, 1, 2]
        init.assert_called_once_with()
        assert queue.processed_total == 3
        assert queue.is_running() is False
        assert len(queue) == 0

    async def test_async_handlers(self) -> None:
        """Test that coroutine handlers are awaited."""
        run = AsyncMock()
        init = AsyncMock()
        queue = ExportQueue(run, init, delay_seconds=0)

        await queue.enqueue("a")
        await queue.enqueue("b")
        await queue.join()

        init.assert_awaited_once()
        assert [c.args for c in run.await_args_list] == [("a",), ("b",)]

    async def test_handler_error_does_not_stop_queue(self) -> None:
        """Test that a failing item is logged and the next one still runs."""
        run = MagicMock(side_effect=[RuntimeError("bad item"), None])
        queue = ExportQueue(run, delay_seconds=0)

        await queue.enqueue("a")
        await queue.enqueue("b")
        await queue.join()

        assert run.call_count == 2
        assert queue.processed_total == 2

    async def test_is_running_while_processing(self) -> None:
        """Test the running flag around a slow item."""
        gate = asyncio.Event()

        async def slow(item: str) -> None:
            await gate.wait()

        queue = ExportQueue(slow, delay_seconds=0)
        await queue.enqueue("a")
        await asyncio.sleep(0)
        assert queue.is_running() is True

        gate.set()
        await queue.join()
        assert queue.is_running() is False

    async def test_flush_drops_pending(self) -> None:
        """Test that flush discards queued items and stops the worker."""
        gate = asyncio.Event()
        seen: list[str] = []

        async def slow(item: str) -> None:
            seen.append(item)
            await gate.wait()

        queue = ExportQueue(slow, delay_seconds=0)
        await queue.enqueue("a")
        await queue.enqueue("b")
        await asyncio.sleep(0)

        queue.flush()
        assert len(queue) == 0
        assert queue.is_running() is False
        await queue.join()
        await asyncio.sleep(0)
        assert seen == ["a"]

    async def test_restart_runs_init_again(self) -> None:
        """Test that an idle queue runs the init handler when restarted."""
        init = MagicMock()
        queue = ExportQueue(MagicMock(), init, delay_seconds=0)

        await queue.enqueue(1)
        await queue.join()
        await queue.enqueue(2)
        await queue.join()

        assert init.call_count == 2
        assert queue.processed_total == 2

    async def test_stop(self) -> None:
        """Test that stop cancels the worker and waits for it."""
        gate = asyncio.Event()

        async def slow(item: str) -> None:
            await gate.wait()

        queue = ExportQueue(slow, delay_seconds=0)
        await queue.enqueue("a")
        await queue.enqueue("b")
        await asyncio.sleep(0)

        await queue.stop()
        assert queue.is_running() is False
        assert len(queue) == 0
        assert queue.processed_total == 0

    async def test_delay_between_items(self) -> None:
        """Test that the queue pauses after each item."""
        queue = ExportQueue(MagicMock(), delay_seconds=60)
        await queue.enqueue("a")
        await queue.enqueue("b")
        for _ in range(3):
            await asyncio.sleep(0)

        assert queue.processed_total == 1
        assert len(queue) == 1
        await queue.stop()


class TestExportQueueConstruction:
    """Test cases for ExportQueue construction."""

    def test_negative_delay_rejected(self) -> None:
        """Test that a negative delay is refused."""
        with pytest.raises(ValueError, match="negative"):
            ExportQueue(MagicMock(), delay_seconds=-1)

    def test_initial_state(self) -> None:
        """Test a freshly built queue."""
        queue = ExportQueue(MagicMock())
        assert queue.is_running() is False
        assert len(queue) == 0
        assert queue.delay_seconds == 10.0
