"""
Serial job queue for export producers.

Exports of historic data are large and slow, so they are processed one item at
a time with a pause between items, giving the write engine time to drain.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, Union

DEFAULT_DELAY_SECONDS = 10.0

Handler = Union[Callable[..., None], Callable[..., Awaitable[None]]]


class ExportQueue:
    """FIFO of export jobs drained by a single background task."""

    def __init__(
        self,
        run_handler: Handler,
        init_handler: Handler | None = None,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
    ) -> None:
        """
        Initialize the queue.

        Args:
            run_handler: Called with each item, in order
            init_handler: Called without arguments before an idle queue starts
            delay_seconds: Pause after each item before the next one
        """
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        self.run_handler = run_handler
        self.init_handler = init_handler
        self.delay_seconds = delay_seconds
        self.logger = logging.getLogger("influx_relay.export")
        self._items: deque[Any] = deque()
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.processed_total = 0

    def __len__(self) -> int:
        return len(self._items)

    def is_running(self) -> bool:
        """Return True while items are being processed."""
        return self._running

    async def enqueue(self, item: Any) -> None:
        """Add an item, starting the queue if it is idle."""
        self._items.append(item)
        if self._running:
            return

        self._running = True
        if self.init_handler is not None:
            await self._call(self.init_handler)
        self._task = asyncio.create_task(self._run())

    async def _call(self, handler: Handler, *args: Any) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception("Export handler failed")

    async def _run(self) -> None:
        try:
            while self._items:
                item = self._items.popleft()
                await self._call(self.run_handler, item)
                self.processed_total += 1
                self.logger.debug(
                    "Export item done, %d remaining",
                    len(self._items),
                )
                await asyncio.sleep(self.delay_seconds)
        finally:
            # A flush may already have handed the queue to a newer worker.
            if self._task is asyncio.current_task():
                self._running = False
                self._task = None

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        while self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def flush(self) -> None:
        """Drop all pending items and stop processing."""
        dropped = len(self._items)
        self._items.clear()
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._running = False
        if dropped:
            self.logger.info("Dropped %d pending export items", dropped)

    async def stop(self) -> None:
        """Flush the queue and wait for the worker task to finish."""
        task = self._task
        self.flush()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
