"""
Periodic flush scheduler for the InfluxDB relay.

Every ``write_interval`` seconds the scheduler drains the write buffer
through the health monitor and the protocol adapter. Only one flush runs at a
time; the timer and the soft-limit trigger share the same guard. A failed
batch goes back into the buffer and is retried on the next cycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from .exceptions import InfluxRelayError, WriteIntervalError
from .health import ConnectionState

if TYPE_CHECKING:
    from .buffer import WriteBuffer
    from .health import ConnectionHealthMonitor
    from .protocol import ProtocolAdapter

MIN_WRITE_INTERVAL = 10
MAX_WRITE_INTERVAL = 60
DEFAULT_WRITE_INTERVAL = 10


def validate_write_interval(value: Any) -> int:
    """
    Validate a write interval in seconds.

    Raises:
        WriteIntervalError: If value is not an integer in [10, 60]
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise WriteIntervalError(
            f"Write interval must be an integer, got {value!r}",
            value,
        )
    if not MIN_WRITE_INTERVAL <= value <= MAX_WRITE_INTERVAL:
        raise WriteIntervalError(
            f"Write interval must be between {MIN_WRITE_INTERVAL} and "
            f"{MAX_WRITE_INTERVAL} seconds, got {value}",
            value,
        )
    return value


class FlushScheduler:
    """Timer-driven, single-flight loop that writes buffered measurements."""

    def __init__(
        self,
        buffer: WriteBuffer,
        monitor: ConnectionHealthMonitor,
        adapter: ProtocolAdapter,
        write_interval: int = DEFAULT_WRITE_INTERVAL,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            buffer: Buffer to drain
            monitor: Health monitor consulted before each write
            adapter: Adapter used to send batches
            write_interval: Seconds between flush cycles (10-60)
        """
        self.buffer = buffer
        self.monitor = monitor
        self.adapter = adapter
        self.logger = logging.getLogger("influx_relay.scheduler")
        self._write_interval = validate_write_interval(write_interval)
        self._timer: asyncio.TimerHandle | None = None
        self._is_writing = False
        self._stopped = False
        self._background_tasks: set[asyncio.Task[None]] = set()
        self.written_total = 0
        self.failed_batches = 0
        self.last_write_time: float | None = None

    @property
    def write_interval(self) -> int:
        """Return the interval between flush cycles, in seconds."""
        return self._write_interval

    @write_interval.setter
    def write_interval(self, value: int) -> None:
        # Takes effect on the next reschedule.
        self._write_interval = validate_write_interval(value)

    @property
    def is_writing(self) -> bool:
        """Return True while a flush is in flight."""
        return self._is_writing

    @property
    def scheduled(self) -> bool:
        """Return True if a timer is armed."""
        return self._timer is not None

    def schedule(self) -> None:
        """Cancel any pending timer and arm a new one."""
        self._clear_schedule()
        if self._stopped:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._write_interval, self._on_timer)

    def _clear_schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._spawn_flush()

    def _spawn_flush(self) -> None:
        task = asyncio.create_task(self.flush())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def request_flush(self) -> None:
        """Ask for an out-of-cycle flush, e.g. when the buffer is filling up."""
        if self._is_writing or self._stopped:
            return
        self._spawn_flush()

    async def flush(self) -> None:
        """
        Run one flush cycle.

        Returns immediately if another flush is in flight. Never raises; the
        next cycle is always scheduled before returning.
        """
        if self._is_writing:
            return
        self._is_writing = True
        try:
            self._clear_schedule()
            if self.buffer:
                state = await self.monitor.check_health()
                if state is ConnectionState.CONNECTED:
                    await self._write_batch(self.buffer.drain_all())
        except Exception:
            self.logger.exception("Unexpected error in flush cycle")
        finally:
            self._is_writing = False
            self.schedule()

    async def _write_batch(self, batch: list[Any]) -> None:
        start_time = time.monotonic()
        try:
            await self.adapter.write(batch)
        except InfluxRelayError as e:
            self.failed_batches += 1
            self.buffer.requeue(batch)
            self.logger.warning(
                "Writing %d measurements failed, re-queued for retry: %s",
                len(batch),
                e,
            )
        except (Exception, asyncio.CancelledError):
            self.buffer.requeue(batch)
            raise
        else:
            self.written_total += len(batch)
            self.last_write_time = time.time()
            self.logger.info(
                "%d measurements written (%.0f ms)",
                len(batch),
                (time.monotonic() - start_time) * 1000,
            )

    def record_written(self, count: int) -> None:
        """Account for measurements written outside the flush cycle."""
        self.written_total += count
        self.last_write_time = time.time()

    def start(self) -> None:
        """Arm the first cycle."""
        self._stopped = False
        self.schedule()

    async def stop(self) -> None:
        """Cancel the pending timer and any out-of-cycle flush."""
        self._stopped = True
        self._clear_schedule()
        for task in list(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
            self._background_tasks.clear()
