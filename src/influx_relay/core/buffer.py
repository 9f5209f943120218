"""Bounded in-memory write buffer with soft/hard backpressure thresholds."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .measurements import Measurement

DEFAULT_SOFT_LIMIT = 1000  # measurements before an early flush is requested
DEFAULT_HARD_LIMIT = 2000  # measurements before new ones are dropped


class WriteBuffer:
    """
    FIFO holding area for measurements waiting to be written.

    Pushing past ``soft_limit`` only reports the condition through
    ``over_soft_limit``; the owner decides when to flush. Once ``hard_limit``
    measurements are held, further pushes are dropped (newest-dropped).
    Re-queued batches may take the buffer up to ``max_length``, twice the
    hard limit, and no further.
    """

    def __init__(
        self,
        soft_limit: int = DEFAULT_SOFT_LIMIT,
        hard_limit: int = DEFAULT_HARD_LIMIT,
    ) -> None:
        """
        Initialize the buffer.

        Args:
            soft_limit: Length above which an early flush should be triggered
            hard_limit: Length at which new measurements are dropped

        Raises:
            ValueError: If the limits are not positive or soft_limit >= hard_limit
        """
        if soft_limit < 1 or hard_limit < 1:
            raise ValueError("Buffer limits must be positive")
        if soft_limit >= hard_limit:
            raise ValueError(
                f"soft_limit ({soft_limit}) must be below hard_limit ({hard_limit})",
            )
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit
        self.dropped_total = 0
        self.logger = logging.getLogger("influx_relay.buffer")
        self._items: deque[Measurement] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    @property
    def over_soft_limit(self) -> bool:
        """Return True when an out-of-cycle flush should be attempted."""
        return len(self._items) > self.soft_limit

    def push(self, measurement: Measurement | None) -> bool:
        """
        Append a measurement unless the buffer is full.

        Returns:
            True if the measurement was buffered, False if it was dropped
        """
        if measurement is None:
            return False
        if len(self._items) >= self.hard_limit:
            self.dropped_total += 1
            if self.dropped_total == 1 or self.dropped_total % self.soft_limit == 0:
                self.logger.warning(
                    "Write buffer full (%d), dropping measurements (%d dropped so far)",
                    self.hard_limit,
                    self.dropped_total,
                )
            return False
        self._items.append(measurement)
        return True

    def drain_all(self) -> list[Measurement]:
        """Remove and return every buffered measurement in FIFO order."""
        drained = list(self._items)
        self._items = deque()
        return drained

    @property
    def max_length(self) -> int:
        """Return the length a re-queued batch may grow the buffer to."""
        return 2 * self.hard_limit

    def requeue(self, batch: Iterable[Measurement]) -> None:
        """
        Put a failed batch back, after anything that arrived in the meantime.

        The buffer never grows past ``max_length``; the oldest re-queued
        measurements are dropped first.
        """
        batch = list(batch)
        overflow = len(self._items) + len(batch) - self.max_length
        if overflow > 0:
            overflow = min(overflow, len(batch))
            self.dropped_total += overflow
            self.logger.warning(
                "Write buffer at %d, dropping %d re-queued measurements",
                self.max_length,
                overflow,
            )
            batch = batch[overflow:]
        self._items.extend(batch)

    def clear(self) -> None:
        """Discard all buffered measurements."""
        self._items.clear()
