"""
Connection health monitoring for the InfluxDB relay.

The monitor owns the two-state connection model. It is driven by the flush
scheduler (one check per flush cycle that has data to send) and raises
edge-triggered ``online``/``offline`` notifications to registered handlers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from .exceptions import ConfigurationIncompleteError, InfluxRelayError

if TYPE_CHECKING:
    from .protocol import ProtocolAdapter, WriteSettings

# Type alias for event handlers
EventHandler = Union[
    Callable[[dict[str, Any]], None],
    Callable[[dict[str, Any]], Awaitable[None]],
]

EVENT_ONLINE = "online"
EVENT_OFFLINE = "offline"


class ConnectionState(Enum):
    """Connection state enumeration for tracking database reachability."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class ConnectionHealthMonitor:
    """
    Tracks whether the configured database is online.

    A successful probe while disconnected first makes sure the database exists
    (v1 only) and then marks the connection online. A failed probe while
    connected marks it offline. Probes that confirm the current state do not
    notify anyone.
    """

    def __init__(self, adapter: ProtocolAdapter) -> None:
        """
        Initialize the monitor.

        Args:
            adapter: Protocol adapter holding the current write settings
        """
        self.adapter = adapter
        self.logger = logging.getLogger("influx_relay.health")
        self._state = ConnectionState.DISCONNECTED
        self._validated_identity: tuple[Any, ...] | None = None
        self.last_check: float | None = None
        self.last_error: str | None = None
        self._check_lock = asyncio.Lock()

        self.event_handlers: dict[str, list[EventHandler]] = {
            EVENT_ONLINE: [],
            EVENT_OFFLINE: [],
        }

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Return True if the database is considered online."""
        return self._state is ConnectionState.CONNECTED

    def reset(self) -> None:
        """Forget the validated connection, e.g. after settings were replaced."""
        self._state = ConnectionState.DISCONNECTED
        self._validated_identity = None
        self.last_error = None

    async def check_health(self) -> ConnectionState:
        """
        Probe the database and update the connection state.

        Concurrent checks run one at a time, so a transition is announced once.

        Returns:
            The connection state after the check
        """
        async with self._check_lock:
            return await self._check_health_locked()

    async def _check_health_locked(self) -> ConnectionState:
        settings = self.adapter.settings
        try:
            settings.validate()
        except ConfigurationIncompleteError as e:
            self.last_error = str(e)
            self.logger.info("%s, skipping health check", e.message)
            await self._mark_offline()
            return self._state

        self.last_check = time.time()
        try:
            await self.adapter.ping()
        except InfluxRelayError as e:
            self.last_error = str(e)
            self.logger.warning("InfluxDB health check failed: %s", e)
            await self._mark_offline()
            return self._state

        was_connected = self.connected
        if was_connected and self._validated_identity == settings.identity:
            return self._state

        try:
            await self._ensure_database(settings)
        except InfluxRelayError as e:
            self.last_error = str(e)
            self.logger.error(  # noqa: TRY400
                "InfluxDB at %s is reachable but database %s is not ready: %s",
                settings.base_url,
                settings.database,
                e,
            )
            await self._mark_offline()
            return self._state

        self._state = ConnectionState.CONNECTED
        self._validated_identity = settings.identity
        self.last_error = None
        if was_connected:
            return self._state
        self.logger.info(
            'InfluxDB at %s (%s) is marked as "online"',
            settings.base_url,
            settings.database,
        )
        await self._notify_event_handlers(EVENT_ONLINE, self._event_data())
        return self._state

    async def _ensure_database(self, settings: WriteSettings) -> None:
        """Create the configured database on v1 servers if it is missing."""
        if settings.is_v2:
            return

        try:
            names = await self.adapter.get_database_names()
        except InfluxRelayError as e:
            self.logger.warning("Could not list databases: %s", e)
            names = []

        if settings.database not in names:
            await self.adapter.create_database(settings.database)
            self.logger.info("Created database %s", settings.database)

    async def _mark_offline(self) -> None:
        if not self.connected:
            return
        self._state = ConnectionState.DISCONNECTED
        self._validated_identity = None
        self.logger.warning(
            'InfluxDB at %s is marked as "offline"',
            self.adapter.settings.base_url,
        )
        await self._notify_event_handlers(EVENT_OFFLINE, self._event_data())

    def _event_data(self) -> dict[str, Any]:
        settings = self.adapter.settings
        return {
            "url": settings.base_url,
            "database": settings.database,
            "state": self._state.value,
            "error": self.last_error,
            "timestamp": time.time(),
        }

    def add_event_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Add a handler for ``online`` or ``offline`` transitions.

        Args:
            event_type: Type of event to handle
            handler: Callback function to handle the event (can be sync or async)
        """
        if event_type in self.event_handlers:
            self.event_handlers[event_type].append(handler)
            self.logger.debug("Added event handler for %s", event_type)
        else:
            self.logger.warning("Unknown event type: %s", event_type)

    def remove_event_handler(self, event_type: str, handler: EventHandler) -> bool:
        """
        Remove an event handler.

        Returns:
            True if handler was removed, False if not found
        """
        if event_type not in self.event_handlers:
            return False

        try:
            self.event_handlers[event_type].remove(handler)
        except ValueError:
            self.logger.warning("Event handler not found for %s", event_type)
            return False
        return True

    async def _notify_event_handlers(
        self,
        event_type: str,
        event_data: dict[str, Any],
    ) -> None:
        for handler in list(self.event_handlers.get(event_type, [])):
            try:
                result = handler(event_data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception("Error in event handler for %s", event_type)
