"""
Tests for the InfluxDB protocol adapter.

This module tests line protocol rendering, write settings validation and the
HTTP requests issued for pings, queries and writes against v1 and v2 servers.
"""

from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from influx_relay.core.exceptions import (
    ConfigurationIncompleteError,
    InfluxProtocolError,
    InfluxTimeoutError,
    InfluxUnreachableError,
)
from influx_relay.core.measurements import Measurement, NamedTags, PositionalTags
from influx_relay.core.protocol import (
    ProtocolAdapter,
    WriteSettings,
    to_line,
    to_line_protocol,
)
from tests.support.fixtures.sample_events import SHOW_DATABASES_BODY, make_response

TIMESTAMP = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


class TestLineProtocol:
    """Test cases for line protocol rendering."""

    def test_named_tags_and_timestamp(self) -> None:
        """Test a full line with tags, mixed fields and a timestamp."""
        measurement = Measurement(
            name="cpu",
            tags=NamedTags({"host": "hub", "zone": "attic"}),
            fields={"load": 0.5, "ok": True, "cores": 4},
            timestamp=TIMESTAMP,
        )
        assert to_line(measurement) == (
            "cpu,host=hub,zone=attic load=0.5,ok=true,cores=4 1700000000000"
        )

    def test_positional_tags(self) -> None:
        """Test that positional tags get synthesized keys."""
        measurement = Measurement(
            name="cpu",
            tags=PositionalTags(("a", "b")),
            fields={"value": 1},
        )
        assert to_line(measurement) == "cpu,tag_0=a,tag_1=b value=1"

    def test_no_tags_no_timestamp(self) -> None:
        """Test that empty tags and a missing timestamp render nothing."""
        measurement = Measurement(name="cpu", fields={"ok": False})
        assert to_line(measurement) == "cpu ok=false"

    def test_values_rendered_verbatim(self) -> None:
        """Test that formatter output is not escaped a second time."""
        measurement = Measurement(
            name="Living_Room\\,Lamp",
            tags=NamedTags({"name": "my\\ lamp"}),
            fields={"state": '"on \\"full\\""'},
        )
        assert to_line(measurement) == (
            'Living_Room\\,Lamp,name=my\\ lamp state="on \\"full\\""'
        )

    def test_millisecond_precision(self) -> None:
        """Test that sub-millisecond parts are truncated."""
        measurement = Measurement(
            name="m",
            fields={"v": 1},
            timestamp=datetime(1970, 1, 1, 0, 0, 1, 999999, tzinfo=timezone.utc),
        )
        assert to_line(measurement) == "m v=1 1999"

    def test_batch_preserves_order(self, sample_measurements: list) -> None:
        """Test that lines are newline separated in input order."""
        body = to_line_protocol(sample_measurements)
        assert body.split("\n") == [
            f"sensor_{i},zone=kitchen value={i} 1700000000000" for i in range(3)
        ]


class TestWriteSettings:
    """Test cases for WriteSettings."""

    def test_from_config_defaults(self) -> None:
        """Test that empty values fall back to defaults."""
        settings = WriteSettings.from_config({"host": " db ", "database": "home"})
        assert settings.host == "db"
        assert settings.protocol == "http"
        assert settings.port == 8086
        assert settings.username == "root"
        assert settings.password == "root"
        assert settings.base_url == "http://db:8086"

    def test_is_v2(self) -> None:
        """Test that v2 needs both organization and token."""
        assert WriteSettings(organization="o", token="t").is_v2 is True
        assert WriteSettings(organization="o").is_v2 is False
        assert WriteSettings(token="t").is_v2 is False

    @pytest.mark.parametrize(
        ("port", "expected"),
        [
            (8086, 8086),
            ("8087", 8087),
            (1, 1),
            (65535, 65535),
            (0, None),
            (65536, None),
            ("abc", None),
            (None, None),
            (True, None),
        ],
    )
    def test_port_number(self, port: Any, expected: Any) -> None:
        """Test port validation."""
        assert WriteSettings(port=port).port_number == expected

    def test_missing_settings(self) -> None:
        """Test that host and database are required."""
        assert WriteSettings().missing_settings() == ["host", "database"]
        assert WriteSettings(host="db", database="home").missing_settings() == []

    def test_invalid_protocol(self) -> None:
        """Test that only http and https are accepted."""
        settings = WriteSettings(host="db", database="home", protocol="ftp")
        assert settings.missing_settings() == ["protocol"]
        assert settings.is_complete is False

    def test_validate(self) -> None:
        """Test that validate raises with the missing setting names."""
        with pytest.raises(ConfigurationIncompleteError) as exc_info:
            WriteSettings(host="db", port="x").validate()
        assert exc_info.value.missing == ["port", "database"]

    def test_identity(self, v1_settings: WriteSettings) -> None:
        """Test the (host, port, protocol, database) identity."""
        assert v1_settings.identity == ("db", 8086, "http", "home")


@pytest.mark.asyncio
class TestProtocolAdapterPing:
    """Test cases for ProtocolAdapter.ping."""

    @patch("influx_relay.core.protocol.requests")
    async def test_v1_ping_ok(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that a 204 answer means online."""
        mock_requests.get.return_value = make_response(204)
        await ProtocolAdapter(v1_settings).ping()
        mock_requests.get.assert_called_once_with("http://db:8086/ping", timeout=5.0)

    @patch("influx_relay.core.protocol.requests")
    async def test_v1_ping_wrong_status(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that any other status is a failure."""
        mock_requests.get.return_value = make_response(200)
        with pytest.raises(InfluxProtocolError) as exc_info:
            await ProtocolAdapter(v1_settings).ping()
        assert exc_info.value.status_code == 200

    @patch("influx_relay.core.protocol.requests")
    async def test_ping_timeout(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that a client timeout becomes InfluxTimeoutError."""
        mock_requests.get.side_effect = requests.Timeout("slow")
        with pytest.raises(InfluxTimeoutError) as exc_info:
            await ProtocolAdapter(v1_settings).ping()
        assert exc_info.value.timeout == 5.0
        assert isinstance(exc_info.value, InfluxUnreachableError)

    @patch("influx_relay.core.protocol.requests")
    async def test_ping_connection_error(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that transport failures become InfluxUnreachableError."""
        mock_requests.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(InfluxUnreachableError) as exc_info:
            await ProtocolAdapter(v1_settings).ping()
        assert not isinstance(exc_info.value, InfluxTimeoutError)
        assert exc_info.value.url == "http://db:8086/ping"

    @patch("influx_relay.core.protocol.requests")
    async def test_v2_accepts_v1_ping(
        self,
        mock_requests: MagicMock,
        v2_settings: WriteSettings,
    ) -> None:
        """Test that a v2 server answering the v1 ping needs no health call."""
        mock_requests.get.return_value = make_response(204)
        await ProtocolAdapter(v2_settings).ping()
        assert mock_requests.get.call_count == 1

    @patch("influx_relay.core.protocol.requests")
    async def test_v2_health_fallback(
        self,
        mock_requests: MagicMock,
        v2_settings: WriteSettings,
    ) -> None:
        """Test the token authenticated health endpoint."""
        mock_requests.get.side_effect = [
            make_response(404),
            make_response(200, {"status": "pass"}),
        ]
        await ProtocolAdapter(v2_settings).ping()
        mock_requests.get.assert_called_with(
            "http://db:8086/health",
            timeout=5.0,
            headers={"Authorization": "Token tok-1"},
        )

    @patch("influx_relay.core.protocol.requests")
    async def test_v2_health_not_passing(
        self,
        mock_requests: MagicMock,
        v2_settings: WriteSettings,
    ) -> None:
        """Test that a health status other than pass is a failure."""
        mock_requests.get.side_effect = [
            requests.ConnectionError("no v1"),
            make_response(200, {"status": "fail"}),
        ]
        with pytest.raises(InfluxProtocolError):
            await ProtocolAdapter(v2_settings).ping()

    @patch("influx_relay.core.protocol.requests")
    async def test_v2_health_invalid_json(
        self,
        mock_requests: MagicMock,
        v2_settings: WriteSettings,
    ) -> None:
        """Test that an unparsable health body is a failure."""
        mock_requests.get.side_effect = [make_response(404), make_response(200)]
        with pytest.raises(InfluxProtocolError):
            await ProtocolAdapter(v2_settings).ping()


@pytest.mark.asyncio
class TestProtocolAdapterQuery:
    """Test cases for the v1 management queries."""

    @patch("influx_relay.core.protocol.requests")
    async def test_get_database_names(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test SHOW DATABASES parsing and the request shape."""
        mock_requests.post.return_value = make_response(200, SHOW_DATABASES_BODY)
        names = await ProtocolAdapter(v1_settings).get_database_names()
        assert names == ["_internal", "home"]
        mock_requests.post.assert_called_once_with(
            "http://db:8086/query",
            timeout=10.0,
            params={"u": "relay", "p": "secret"},
            data={"q": "SHOW DATABASES"},
        )

    @patch("influx_relay.core.protocol.requests")
    async def test_get_database_names_empty(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that a result without series means no databases."""
        mock_requests.post.return_value = make_response(
            200,
            {"results": [{"statement_id": 0}]},
        )
        assert await ProtocolAdapter(v1_settings).get_database_names() == []

    @patch("influx_relay.core.protocol.requests")
    async def test_create_database_quotes_name(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that the database name is a quoted identifier."""
        mock_requests.post.return_value = make_response(200, {"results": [{}]})
        await ProtocolAdapter(v1_settings).create_database('my "db"')
        kwargs = mock_requests.post.call_args.kwargs
        assert kwargs["data"] == {"q": 'CREATE DATABASE "my \\"db\\""'}

    @patch("influx_relay.core.protocol.requests")
    async def test_statement_error(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that a statement error is raised."""
        mock_requests.post.return_value = make_response(
            200,
            {"results": [{"statement_id": 0, "error": "unauthorized"}]},
        )
        with pytest.raises(InfluxProtocolError, match="unauthorized"):
            await ProtocolAdapter(v1_settings).query("SHOW DATABASES")

    @patch("influx_relay.core.protocol.requests")
    async def test_http_error(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that a non-200 answer is raised with its body."""
        mock_requests.post.return_value = make_response(401, text="denied")
        with pytest.raises(InfluxProtocolError) as exc_info:
            await ProtocolAdapter(v1_settings).query("SHOW DATABASES")
        assert exc_info.value.status_code == 401
        assert exc_info.value.body == "denied"


@pytest.mark.asyncio
class TestProtocolAdapterWrite:
    """Test cases for ProtocolAdapter.write."""

    @patch("influx_relay.core.protocol.requests")
    async def test_v1_write(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
        sample_measurements: list,
    ) -> None:
        """Test the v1 write endpoint, parameters and body."""
        mock_requests.post.return_value = make_response(204)
        await ProtocolAdapter(v1_settings).write(sample_measurements)

        mock_requests.post.assert_called_once()
        args, kwargs = mock_requests.post.call_args
        assert args == ("http://db:8086/write",)
        assert kwargs["params"] == {
            "db": "home",
            "u": "relay",
            "p": "secret",
            "precision": "ms",
        }
        assert kwargs["headers"] == {"Content-Type": "text/plain; charset=utf-8"}
        assert kwargs["timeout"] == 10.0
        assert kwargs["data"] == to_line_protocol(sample_measurements).encode("utf-8")

    @patch("influx_relay.core.protocol.requests")
    async def test_v2_write(
        self,
        mock_requests: MagicMock,
        v2_settings: WriteSettings,
        sample_measurements: list,
    ) -> None:
        """Test the v2 write endpoint with token authentication."""
        mock_requests.post.return_value = make_response(204)
        await ProtocolAdapter(v2_settings).write(sample_measurements)

        args, kwargs = mock_requests.post.call_args
        assert args == ("http://db:8086/api/v2/write",)
        assert kwargs["params"] == {
            "orgID": "org-1",
            "bucket": "home",
            "precision": "ms",
        }
        assert kwargs["headers"]["Authorization"] == "Token tok-1"

    @patch("influx_relay.core.protocol.requests")
    async def test_write_accepts_any_2xx(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
        sample_measurements: list,
    ) -> None:
        """Test that 200 is as good as 204."""
        mock_requests.post.return_value = make_response(200)
        await ProtocolAdapter(v1_settings).write(sample_measurements)

    @patch("influx_relay.core.protocol.requests")
    async def test_write_failure_truncates_body(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
        sample_measurements: list,
    ) -> None:
        """Test that rejected writes raise with a bounded body."""
        mock_requests.post.return_value = make_response(400, text="x" * 1000)
        with pytest.raises(InfluxProtocolError) as exc_info:
            await ProtocolAdapter(v1_settings).write(sample_measurements)
        assert exc_info.value.status_code == 400
        assert len(exc_info.value.body) == 500

    @patch("influx_relay.core.protocol.requests")
    async def test_write_empty_batch(
        self,
        mock_requests: MagicMock,
        v1_settings: WriteSettings,
    ) -> None:
        """Test that an empty batch sends nothing."""
        await ProtocolAdapter(v1_settings).write([])
        mock_requests.post.assert_not_called()

    @patch("influx_relay.core.protocol.requests")
    async def test_write_incomplete_settings(
        self,
        mock_requests: MagicMock,
        sample_measurements: list,
    ) -> None:
        """Test that writes are refused without a usable target."""
        with pytest.raises(ConfigurationIncompleteError):
            await ProtocolAdapter(WriteSettings()).write(sample_measurements)
        mock_requests.post.assert_not_called()
