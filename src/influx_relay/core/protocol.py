"""
InfluxDB HTTP protocol adapter.

This module renders measurements as line protocol and issues the HTTP
requests the relay needs: liveness probes, the v1 management queries used to
make sure the database exists, and batch writes for both the v1 (basic auth,
``db`` query parameter) and v2 (token, ``orgID``/``bucket``) write APIs.

``requests`` is blocking, so every call runs in the default executor and is
bounded by ``asyncio.wait_for``; the event loop is suspended, never blocked.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import requests
from requests import RequestException, Timeout

from .escape import quoted
from .exceptions import (
    ConfigurationIncompleteError,
    InfluxProtocolError,
    InfluxRelayError,
    InfluxTimeoutError,
    InfluxUnreachableError,
)
from .measurements import NamedTags, PositionalTags

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from .measurements import FieldValue, Measurement, Tags

# Constants
PROBE_TIMEOUT_SECONDS = 5.0
REQUEST_TIMEOUT_SECONDS = 10.0
MAX_PORT_NUMBER = 65535
SUPPORTED_PROTOCOLS = ("http", "https")
WRITE_PRECISION = "ms"
MAX_ERROR_BODY_LENGTH = 500

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class WriteSettings:
    """Connection settings for the target database."""

    host: str = ""
    protocol: str = "http"
    port: int | str = 8086
    organization: str = ""
    token: str = ""
    username: str = "root"
    password: str = "root"
    database: str = ""

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> WriteSettings:
        """
        Build settings from the ``influxdb`` config section.

        Empty values fall back to the defaults, except for host and database
        which stay empty until configured.
        """
        config = config or {}
        return cls(
            host=(config.get("host") or "").strip(),
            protocol=config.get("protocol") or "http",
            port=config.get("port") or 8086,
            organization=config.get("organization") or "",
            token=config.get("token") or "",
            username=config.get("username") or "root",
            password=config.get("password") or "root",
            database=config.get("database") or "",
        )

    @property
    def is_v2(self) -> bool:
        """Return True when organization and token select the v2 API."""
        return bool(self.organization) and bool(self.token)

    @property
    def port_number(self) -> int | None:
        """Return the port as an int, or None if it is not a valid TCP port."""
        try:
            port = int(self.port)
        except (TypeError, ValueError):
            return None
        if isinstance(self.port, bool) or not 1 <= port <= MAX_PORT_NUMBER:
            return None
        return port

    @property
    def base_url(self) -> str:
        """Return the database base URL."""
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def identity(self) -> tuple[str, int | None, str, str]:
        """Return the (host, port, protocol, database) identity of the target."""
        return (self.host, self.port_number, self.protocol, self.database)

    def missing_settings(self) -> list[str]:
        """Return the names of settings that prevent connecting."""
        missing = []
        if not self.host or not self.host.strip():
            missing.append("host")
        if self.port_number is None:
            missing.append("port")
        if self.protocol not in SUPPORTED_PROTOCOLS:
            missing.append("protocol")
        if not self.database:
            missing.append("database")
        return missing

    @property
    def is_complete(self) -> bool:
        """Return True if the settings are good enough to probe the database."""
        return not self.missing_settings()

    def validate(self) -> None:
        """
        Check that the settings are usable.

        Raises:
            ConfigurationIncompleteError: If host, port, protocol or database
                are unusable
        """
        missing = self.missing_settings()
        if missing:
            raise ConfigurationIncompleteError(
                f"InfluxDB settings incomplete: {', '.join(missing)}",
                missing,
            )


def _render_tags(tags: Tags) -> str:
    if isinstance(tags, PositionalTags):
        return "".join(
            f",tag_{index}={value}" for index, value in enumerate(tags.values)
        )
    if isinstance(tags, NamedTags):
        return "".join(f",{key}={value}" for key, value in tags.values.items())
    raise TypeError(f"Unsupported tags type: {type(tags).__name__}")


def _render_field_value(value: FieldValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _epoch_millis(timestamp: datetime) -> int:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (timestamp - _EPOCH) // timedelta(milliseconds=1)


def to_line(measurement: Measurement) -> str:
    """Render one measurement as a line protocol line."""
    fields = ",".join(
        f"{key}={_render_field_value(value)}"
        for key, value in measurement.fields.items()
    )
    line = f"{measurement.name}{_render_tags(measurement.tags)} {fields}"
    if measurement.timestamp is not None:
        line += f" {_epoch_millis(measurement.timestamp)}"
    return line


def to_line_protocol(measurements: Iterable[Measurement]) -> str:
    """Render measurements as newline separated line protocol, in order."""
    return "\n".join(to_line(measurement) for measurement in measurements)


class ProtocolAdapter:
    """
    Issues ping, query and write requests against an InfluxDB server.

    Every failure is raised as an ``InfluxRelayError`` subclass: transport
    problems as ``InfluxUnreachableError``, expired timeouts as
    ``InfluxTimeoutError`` and unexpected answers as ``InfluxProtocolError``.
    """

    def __init__(self, settings: WriteSettings | None = None) -> None:
        """
        Initialize the adapter.

        Args:
            settings: Database connection settings
        """
        self.settings = settings or WriteSettings()
        self.logger = logging.getLogger("influx_relay.protocol")

    async def _request(
        self,
        send: Callable[..., requests.Response],
        url: str,
        timeout: float,
        **kwargs: Any,
    ) -> requests.Response:
        """Run a blocking ``requests`` call in the executor, bounded by timeout."""
        loop = asyncio.get_running_loop()
        call = functools.partial(send, url, timeout=timeout, **kwargs)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=timeout,
            )
        except (TimeoutError, Timeout) as e:
            raise InfluxTimeoutError(
                f"Request timed out after {timeout:.0f}s",
                url,
                timeout,
            ) from e
        except RequestException as e:
            raise InfluxUnreachableError(f"Request failed: {e}", url) from e

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.settings.token}"}

    async def ping(self) -> None:
        """
        Check that the database is reachable.

        Raises:
            InfluxRelayError: If the database is not online
        """
        if self.settings.is_v2:
            await self._ping_v2()
        else:
            await self._ping_v1()

    async def _ping_v1(self) -> None:
        url = f"{self.settings.base_url}/ping"
        response = await self._request(requests.get, url, PROBE_TIMEOUT_SECONDS)
        if response.status_code != HTTPStatus.NO_CONTENT:
            raise InfluxProtocolError(
                f"InfluxDB is not online ({response.status_code})",
                url,
                response.status_code,
            )

    async def _ping_v2(self) -> None:
        # Servers that still answer the v1 ping are accepted as-is.
        try:
            await self._ping_v1()
        except InfluxRelayError as e:
            self.logger.debug("v1 ping failed (%s), trying v2 health endpoint", e)
        else:
            return

        url = f"{self.settings.base_url}/health"
        response = await self._request(
            requests.get,
            url,
            PROBE_TIMEOUT_SECONDS,
            headers=self._auth_headers(),
        )
        if response.status_code != HTTPStatus.OK:
            raise InfluxProtocolError(
                f"InfluxDB is not online ({response.status_code})",
                url,
                response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise InfluxProtocolError(
                "Health endpoint returned invalid JSON",
                url,
                response.status_code,
            ) from e
        status = body.get("status") if isinstance(body, dict) else None
        if status != "pass":
            raise InfluxProtocolError(
                f"InfluxDB health status is {status!r}",
                url,
                response.status_code,
            )

    async def query(self, query: str) -> dict[str, Any]:
        """
        Run an InfluxQL statement through the v1 query endpoint.

        Args:
            query: InfluxQL statement

        Returns:
            Decoded JSON response

        Raises:
            InfluxRelayError: If the request fails or a statement reports an error
        """
        url = f"{self.settings.base_url}/query"
        response = await self._request(
            requests.post,
            url,
            REQUEST_TIMEOUT_SECONDS,
            params={"u": self.settings.username, "p": self.settings.password},
            data={"q": query},
        )
        if response.status_code != HTTPStatus.OK:
            raise InfluxProtocolError(
                f"Query failed ({response.status_code})",
                url,
                response.status_code,
                response.text[:MAX_ERROR_BODY_LENGTH],
            )
        try:
            body = response.json()
        except ValueError as e:
            raise InfluxProtocolError(
                "Query returned invalid JSON",
                url,
                response.status_code,
            ) from e
        for result in body.get("results", []):
            if "error" in result:
                raise InfluxProtocolError(
                    f"Query failed: {result['error']}",
                    url,
                    response.status_code,
                )
        return body

    async def get_database_names(self) -> list[str]:
        """Return the names of the databases on a v1 server."""
        body = await self.query("SHOW DATABASES")
        results = body.get("results") or [{}]
        series = results[0].get("series") or []
        if not series:
            return []
        return [row[0] for row in series[0].get("values") or []]

    async def create_database(self, database: str) -> None:
        """Create a database on a v1 server; a no-op if it already exists."""
        await self.query(f"CREATE DATABASE {quoted(database)}")

    async def write(self, measurements: Sequence[Measurement]) -> None:
        """
        Write a batch of measurements with a single POST.

        Raises:
            InfluxRelayError: If the write is not fully accepted
        """
        if not measurements:
            return

        settings = self.settings
        settings.validate()
        headers = {"Content-Type": "text/plain; charset=utf-8"}
        if settings.is_v2:
            url = f"{settings.base_url}/api/v2/write"
            params = {
                "orgID": settings.organization,
                "bucket": settings.database,
                "precision": WRITE_PRECISION,
            }
            headers.update(self._auth_headers())
        else:
            url = f"{settings.base_url}/write"
            params = {
                "db": settings.database,
                "u": settings.username,
                "p": settings.password,
                "precision": WRITE_PRECISION,
            }

        body = to_line_protocol(measurements).encode("utf-8")
        start_time = time.monotonic()
        response = await self._request(
            requests.post,
            url,
            REQUEST_TIMEOUT_SECONDS,
            params=params,
            data=body,
            headers=headers,
        )
        if not HTTPStatus.OK <= response.status_code < HTTPStatus.MULTIPLE_CHOICES:
            raise InfluxProtocolError(
                f"Write failed ({response.status_code})",
                url,
                response.status_code,
                response.text[:MAX_ERROR_BODY_LENGTH],
            )
        self.logger.debug(
            "Wrote %d lines to %s in %.0f ms",
            len(measurements),
            url,
            (time.monotonic() - start_time) * 1000,
        )
