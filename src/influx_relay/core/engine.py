"""
Telemetry engine for the InfluxDB relay.

This module provides the TelemetryEngine class, which wires the formatter,
write buffer, health monitor, protocol adapter and flush scheduler together
and exposes the surface producers and the status API talk to.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .buffer import DEFAULT_HARD_LIMIT, DEFAULT_SOFT_LIMIT, WriteBuffer
from .exceptions import InfluxRelayError, ValidationError
from .health import ConnectionHealthMonitor, EventHandler
from .measurements import (
    FormatterOptions,
    Measurement,
    from_capability,
    from_event,
    from_events,
    from_value,
)
from .protocol import ProtocolAdapter, WriteSettings
from .scheduler import DEFAULT_WRITE_INTERVAL, FlushScheduler, validate_write_interval


class TelemetryEngine:
    """
    Buffering write engine that relays measurements to InfluxDB.

    Measurements are buffered in memory and written in batches by the flush
    scheduler. While the database is offline the buffer absorbs new
    measurements up to its hard limit; failed batches are retried on the
    next cycle.
    """

    def __init__(
        self,
        settings: WriteSettings | Mapping[str, Any] | None = None,
        *,
        write_interval: int = DEFAULT_WRITE_INTERVAL,
        soft_limit: int = DEFAULT_SOFT_LIMIT,
        hard_limit: int = DEFAULT_HARD_LIMIT,
        formatter_options: FormatterOptions | None = None,
    ) -> None:
        """
        Initialize TelemetryEngine with all required components.

        Args:
            settings: Database settings, or the ``influxdb`` config section
            write_interval: Seconds between flush cycles (10-60)
            soft_limit: Buffer length that triggers an early flush
            hard_limit: Buffer length at which new measurements are dropped
            formatter_options: Naming and scaling options for the formatter
        """
        self.logger = logging.getLogger("influx_relay.engine")

        self.adapter = ProtocolAdapter(self._coerce_settings(settings))
        self.buffer = WriteBuffer(soft_limit, hard_limit)
        self.monitor = ConnectionHealthMonitor(self.adapter)
        self.scheduler = FlushScheduler(
            self.buffer,
            self.monitor,
            self.adapter,
            write_interval,
        )
        self.formatter_options = formatter_options or FormatterOptions()
        self.running = False

        self.logger.info("TelemetryEngine initialized")

    @staticmethod
    def _coerce_settings(
        settings: WriteSettings | Mapping[str, Any] | None,
    ) -> WriteSettings:
        if isinstance(settings, WriteSettings):
            return settings
        return WriteSettings.from_config(settings)

    @property
    def settings(self) -> WriteSettings:
        """Return the current database settings."""
        return self.adapter.settings

    @property
    def write_interval(self) -> int:
        """Return the current write interval in seconds."""
        return self.scheduler.write_interval

    @property
    def measurements_written_total(self) -> int:
        """Return the number of measurements persisted since startup."""
        return self.scheduler.written_total

    def start(self) -> None:
        """Arm the flush scheduler. Must be called from the event loop."""
        self.running = True
        self.scheduler.start()
        self.logger.info(
            "TelemetryEngine started (write interval %ds)",
            self.scheduler.write_interval,
        )

    async def stop(self) -> None:
        """Cancel the pending flush. Buffered measurements are not written."""
        self.running = False
        await self.scheduler.stop()
        self.logger.info(
            "TelemetryEngine stopped (%d measurements still buffered)",
            len(self.buffer),
        )

    def update_settings(self, settings: WriteSettings | Mapping[str, Any]) -> None:
        """
        Replace the database settings.

        The connection is treated as unvalidated afterwards; the next flush
        cycle probes the new target before writing.
        """
        self.adapter.settings = self._coerce_settings(settings)
        self.monitor.reset()
        self.logger.info(
            "InfluxDB settings updated (%s, database %s)",
            self.adapter.settings.base_url,
            self.adapter.settings.database or "<unset>",
        )

    def update_write_interval(self, seconds: int) -> None:
        """
        Change the write interval; effective from the next scheduled cycle.

        Raises:
            WriteIntervalError: If seconds is not an integer in [10, 60]
        """
        self.scheduler.write_interval = validate_write_interval(seconds)
        self.logger.info("Write interval set to %ds", seconds)

    def update_formatter_options(self, options: FormatterOptions) -> None:
        """Replace the naming and scaling options used by the write helpers."""
        self.formatter_options = options

    def write(self, measurement: Measurement | None) -> bool:
        """
        Buffer a measurement for the next flush cycle.

        Returns:
            True if the measurement was buffered, False if it was dropped
        """
        accepted = self.buffer.push(measurement)
        if accepted and self.running and self.buffer.over_soft_limit:
            self.scheduler.request_flush()
        return accepted

    def write_capability(self, event: Mapping[str, Any]) -> bool:
        """Format a device capability change and buffer it."""
        return self.write(from_capability(event, self.formatter_options))

    def write_event(self, event: Mapping[str, Any]) -> bool:
        """Format a pre-shaped event and buffer it."""
        return self.write(from_event(event, self.formatter_options))

    def write_events(self, events: Iterable[Mapping[str, Any]]) -> int:
        """
        Format a batch of pre-shaped events and buffer them.

        Returns:
            Number of measurements buffered
        """
        return sum(
            self.write(measurement)
            for measurement in from_events(events, self.formatter_options)
        )

    def write_value(self, measurement_name: str, value: Any) -> bool:
        """Format a bare value as a single-field measurement and buffer it."""
        return self.write(from_value(measurement_name, value, self.formatter_options))

    async def write_measurements(self, batch: Iterable[Measurement | None]) -> bool:
        """
        Write a batch directly, bypassing the buffer when the database is online.

        If the database is offline or the write fails, the batch is pushed into
        the buffer so the regular flush cycle retries it.

        Returns:
            True if the batch was written directly
        """
        measurements = [m for m in batch if m is not None]
        if not measurements:
            return True

        state = await self.monitor.check_health()
        if self.monitor.connected:
            try:
                await self.adapter.write(measurements)
            except InfluxRelayError as e:
                self.logger.warning(
                    "Direct write of %d measurements failed, buffering: %s",
                    len(measurements),
                    e,
                )
            else:
                self.scheduler.record_written(len(measurements))
                return True
        else:
            self.logger.debug(
                "InfluxDB %s, buffering %d measurements",
                state.value,
                len(measurements),
            )

        for measurement in measurements:
            self.write(measurement)
        return False

    def get_status(self) -> dict[str, Any]:
        """
        Get the current status of the engine.

        Returns:
            Dictionary with url, database, connected and
            measurements_written_total
        """
        settings = self.adapter.settings
        return {
            "url": settings.base_url if settings.host else "",
            "database": settings.database,
            "connected": self.monitor.connected,
            "measurements_written_total": self.scheduler.written_total,
        }

    def get_details(self) -> dict[str, Any]:
        """Return the status extended with buffer and scheduler counters."""
        status = self.get_status()
        status.update(
            {
                "running": self.running,
                "buffered": len(self.buffer),
                "dropped_total": self.buffer.dropped_total,
                "failed_batches": self.scheduler.failed_batches,
                "write_interval": self.scheduler.write_interval,
                "last_write_time": self.scheduler.last_write_time,
                "last_error": self.monitor.last_error,
            },
        )
        return status

    def add_event_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Add a handler for connection events.

        Args:
            event_type: ``online`` or ``offline``
            handler: Callback function to handle the event (can be sync or async)
        """
        self.monitor.add_event_handler(event_type, handler)

    def remove_event_handler(self, event_type: str, handler: EventHandler) -> bool:
        """Remove a connection event handler; returns False if not found."""
        return self.monitor.remove_event_handler(event_type, handler)

    def apply_config(self, section: str, config: Mapping[str, Any]) -> None:
        """
        Apply a configuration section, as delivered by the config listener.

        Invalid values are logged and leave the engine unchanged.
        """
        if section == "influxdb":
            self.update_settings(config)
        elif section == "system":
            self.update_formatter_options(
                FormatterOptions.from_config(config.get("measurements")),
            )
            interval = config.get("scheduler", {}).get("write_interval")
            if interval is not None and interval != self.scheduler.write_interval:
                try:
                    self.update_write_interval(interval)
                except ValidationError as e:
                    self.logger.error("Ignoring write interval: %s", e)  # noqa: TRY400
