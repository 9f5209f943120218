"""
Flask REST API implementation for the InfluxDB relay.

This module provides the RelayAPI class which manages the Flask application
and exposes the engine status. The engine runs on the asyncio loop; the API
runs in its own thread and only reads status snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from flask import Flask, request

from .schemas import ErrorSchema, StatusDetailsSchema, StatusSchema

if TYPE_CHECKING:
    from influx_relay.config.config_manager import ConfigManager
    from influx_relay.core.engine import TelemetryEngine

status_schema = StatusSchema()
status_details_schema = StatusDetailsSchema()
error_schema = ErrorSchema()


def format_error_response(
    message: str,
    status_code: int = 400,
) -> tuple[dict[str, Any], int]:
    """
    Format an error into a JSON error response.

    Returns:
        Tuple of (error response dict, status code)
    """
    error = error_schema.dump(
        {
            "status": str(status_code),
            "title": HTTPStatus(status_code).phrase,
            "detail": message,
        },
    )
    return {"errors": [error]}, status_code


class RelayAPI:
    """Flask REST API serving the relay status."""

    def __init__(
        self,
        config_manager: ConfigManager,
        engine: TelemetryEngine,
    ) -> None:
        """
        Initialize RelayAPI with configuration and the telemetry engine.

        Args:
            config_manager: Configuration manager instance
            engine: Telemetry engine whose status is served
        """
        self.config = config_manager
        self.engine = engine
        self.logger = logging.getLogger("influx_relay.api")

        self.app = Flask(__name__)

        self.running = False
        self.server_thread: threading.Thread | None = None

        self._configure_app()
        self._setup_error_handlers()
        self.setup_routes()

        self.logger.info("RelayAPI initialized")

    def _configure_app(self) -> None:
        """Configure Flask application settings."""
        api_config = self.config.get_config("system").get("api", {})
        self.app.config.update(
            {
                "DEBUG": api_config.get("debug", False),
                "TESTING": False,
            },
        )
        self.app.json.sort_keys = False

        @self.app.before_request
        def log_request() -> None:
            self.logger.debug(
                "API Request: %s %s from %s",
                request.method,
                request.path,
                request.remote_addr,
            )

    def _setup_error_handlers(self) -> None:
        """Setup Flask error handlers for consistent error responses."""

        @self.app.errorhandler(404)
        def handle_not_found(error: Any) -> tuple[dict[str, Any], int]:
            return format_error_response("The requested resource was not found", 404)

        @self.app.errorhandler(405)
        def handle_method_not_allowed(error: Any) -> tuple[dict[str, Any], int]:
            return format_error_response("Method not allowed", 405)

        @self.app.errorhandler(500)
        def handle_internal_error(error: Any) -> tuple[dict[str, Any], int]:
            self.logger.exception("Internal server error: %s", error)
            return format_error_response("An internal server error occurred", 500)

    def setup_routes(self) -> None:
        """Register all API endpoints."""

        @self.app.route("/api/health", methods=["GET"])
        def health_check() -> dict[str, Any]:
            """Liveness of the relay process."""
            return {
                "status": "healthy",
                "service": "influx-relay-api",
                "engine_running": self.engine.running,
            }

        @self.app.route("/api/version", methods=["GET"])
        def version_info() -> dict[str, Any]:
            from influx_relay.api import __version__ as api_version
            from influx_relay.core import __version__ as core_version

            return {
                "api_version": api_version,
                "core_version": core_version,
                "service": "influx-relay-api",
            }

        @self.app.route("/api/status", methods=["GET"])
        def status() -> dict[str, Any]:
            """Database URL, connection state and write counter."""
            return status_schema.dump(self.engine.get_status())

        @self.app.route("/api/status/details", methods=["GET"])
        def status_details() -> dict[str, Any]:
            return status_details_schema.dump(self.engine.get_details())

        self.logger.info("API routes registered")

    def start(self) -> None:
        """Start the Flask API server in a daemon thread."""
        if self.running:
            self.logger.warning("API server is already running")
            return

        api_config = self.config.get_config("system").get("api", {})
        host = api_config.get("host", "0.0.0.0")  # nosec B104 - Configurable bind address  # noqa: S104
        port = api_config.get("port", 5000)
        debug = api_config.get("debug", False)

        self.logger.info("Starting API server on %s:%d", host, port)

        def run_server() -> None:
            try:
                self.app.run(
                    host=host,
                    port=port,
                    debug=debug,
                    use_reloader=False,
                    threaded=True,
                )
            except Exception:
                self.logger.exception("API server error")

        self.server_thread = threading.Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

    def stop(self) -> None:
        """
        Stop the Flask API server.

        The Flask development server has no clean shutdown; the daemon thread
        ends with the process.
        """
        if not self.running:
            self.logger.warning("API server is not running")
            return

        self.logger.info("Stopping API server")
        self.running = False

    async def start_async(self) -> None:
        """Start the API server from the event loop."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.start)

    async def stop_async(self) -> None:
        """Stop the API server from the event loop."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.stop)
