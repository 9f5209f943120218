# Why does this file exist, and why not put this in `__main__`?
#
# You might be tempted to import things from `__main__` later,
# but that will cause problems: the code will get executed twice:
#
# - When you run `python -m influx_relay` python will execute
#   `__main__.py` as a script. That means there won't be any
#   `influx_relay.__main__` in `sys.modules`.
# - When you import `__main__` it will get executed again (as a module) because
#   there's no `influx_relay.__main__` in `sys.modules`.
"""Module that contains the command line application."""
# ruff: noqa: T201, BLE001

from __future__ import annotations

import argparse
import asyncio
import contextlib
import copy
import json
import logging
import os
import signal
import sys
from typing import Any

from influx_relay.config.config_manager import ConfigError, ConfigManager
from influx_relay.core.engine import TelemetryEngine
from influx_relay.core.export_queue import ExportQueue
from influx_relay.core.measurements import FormatterOptions, from_events, from_value

DEFAULT_IMPORT_BATCH_SIZE = 500


def setup_logging(config_manager: ConfigManager) -> None:
    """Set up basic logging configuration."""
    log_level = (
        config_manager.get_config("system").get("logging", {}).get("level", "INFO")
    ).upper()

    if not isinstance(logging.getLevelName(log_level), int):
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)
        log_level = "INFO"

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)

    logger = logging.getLogger("influx_relay.setup")
    logger.info("Logging configured at %s level", log_level)


def get_parser() -> argparse.ArgumentParser:
    """
    Return the CLI argument parser.

    Returns:
        An argparse parser.
    """
    parser = argparse.ArgumentParser(prog="influx-relay")
    _ = parser.add_argument(
        "--config-dir",
        type=str,
        default=os.environ.get("INFLUXRELAY_CONFIG_DIR", "/data"),
        help="Directory for configuration files (default: /data or $INFLUXRELAY_CONFIG_DIR)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run_parser = subparsers.add_parser("run", help="Run the relay until interrupted")
    _ = run_parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not start the status API even if enabled in configuration",
    )

    # ping
    _ = subparsers.add_parser(
        "ping",
        help="Check that the configured database is online",
    )

    # show
    show_parser = subparsers.add_parser("show", help="Show a config section or key")
    _ = show_parser.add_argument(
        "section",
        type=str,
        help="Config section (system/influxdb)",
    )
    _ = show_parser.add_argument(
        "key",
        type=str,
        nargs="*",
        help="Optional nested key(s)",
    )

    # set
    set_parser = subparsers.add_parser("set", help="Set a config value")
    _ = set_parser.add_argument(
        "section",
        type=str,
        help="Config section (system/influxdb)",
    )
    _ = set_parser.add_argument(
        "key",
        type=str,
        nargs="+",
        help="Nested key(s) to set (e.g. scheduler write_interval)",
    )
    _ = set_parser.add_argument("value", type=str, help="Value to set (JSON or string)")

    # write
    write_parser = subparsers.add_parser(
        "write",
        help="Write a single value to the database",
    )
    _ = write_parser.add_argument("name", type=str, help="Measurement name")
    _ = write_parser.add_argument("value", type=str, help="Value (JSON or string)")

    # import
    import_parser = subparsers.add_parser(
        "import",
        help="Import events from a JSON lines file",
    )
    _ = import_parser.add_argument(
        "path",
        type=str,
        help="File with one {name, tags, fields, ts} event per line",
    )
    _ = import_parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_IMPORT_BATCH_SIZE,
        help=f"Events per write (default: {DEFAULT_IMPORT_BATCH_SIZE})",
    )

    return parser


def parse_value(raw: str) -> Any:
    """Decode a command line value as JSON, falling back to the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def build_engine(config_manager: ConfigManager) -> TelemetryEngine:
    """Create a telemetry engine from the current configuration."""
    system = config_manager.get_config("system")
    scheduler = system.get("scheduler", {})
    return TelemetryEngine(
        config_manager.get_config("influxdb"),
        write_interval=scheduler.get("write_interval", 10),
        soft_limit=scheduler.get("soft_limit", 1000),
        hard_limit=scheduler.get("hard_limit", 2000),
        formatter_options=FormatterOptions.from_config(system.get("measurements")),
    )


async def run_service(config_manager: ConfigManager, enable_api: bool) -> int:
    """
    Run the relay until SIGINT or SIGTERM.

    Args:
        config_manager: Configuration manager instance
        enable_api: Whether to start the status API

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    from influx_relay.api.api import RelayAPI

    logger = logging.getLogger("influx_relay.service")
    engine = build_engine(config_manager)
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def on_config_change(section: str, config: dict) -> None:
        # Called from the watchdog thread.
        loop.call_soon_threadsafe(engine.apply_config, section, copy.deepcopy(config))

    config_manager.register_listener(on_config_change)

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler)

    api_server = None
    if enable_api and config_manager.get_config("system").get("api", {}).get(
        "enabled",
        False,
    ):
        api_server = RelayAPI(config_manager, engine)

    try:
        if api_server:
            await api_server.start_async()
        engine.start()
        await shutdown_event.wait()
    except Exception:
        logger.exception("Service error")
        return 1
    finally:
        if api_server:
            await api_server.stop_async()
        await engine.stop()

    logger.info("Relay stopped")
    return 0


async def ping_database(config_manager: ConfigManager) -> int:
    """Run one health check; exit code 0 when the database is online."""
    engine = build_engine(config_manager)
    await engine.monitor.check_health()
    status = engine.get_status()
    if engine.monitor.last_error:
        status["error"] = engine.monitor.last_error
    print(json.dumps(status, indent=2))
    return 0 if status["connected"] else 1


async def write_single_value(
    config_manager: ConfigManager,
    name: str,
    value: Any,
) -> int:
    """Format a value as a measurement and write it directly."""
    engine = build_engine(config_manager)
    measurement = from_value(name, value, engine.formatter_options)
    if measurement is None:
        print(f"Error: Cannot write {value!r} as '{name}'", file=sys.stderr)
        return 1
    if not await engine.write_measurements([measurement]):
        print("Error: InfluxDB is not reachable, nothing written", file=sys.stderr)
        return 1
    print(f"Wrote {measurement.name} = {value}")
    return 0


def _read_events(path: str) -> list[dict[str, Any]]:
    events = []
    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            event = json.loads(line)
            if not isinstance(event, dict):
                msg = f"Line {line_number} is not a JSON object"
                raise TypeError(msg)
            events.append(event)
    return events


async def import_events(
    config_manager: ConfigManager,
    path: str,
    batch_size: int,
) -> int:
    """
    Import events from a JSON lines file through the export queue.

    Each batch is written directly; batches that cannot be written are
    buffered and retried once after the queue has drained. Events without a
    line protocol form and measurements dropped by a full buffer count as not
    written.
    """
    logger = logging.getLogger("influx_relay.import")
    events = _read_events(path)
    engine = build_engine(config_manager)
    written = 0
    skipped = 0

    async def write_batch(batch: list[dict[str, Any]]) -> None:
        nonlocal written, skipped
        measurements = from_events(batch, engine.formatter_options)
        unformatted = len(batch) - len(measurements)
        if unformatted:
            skipped += unformatted
            logger.warning("Skipping %d events without fields", unformatted)
        if await engine.write_measurements(measurements):
            written += len(measurements)

    delay = config_manager.get_config("system").get("export", {}).get(
        "delay_seconds",
        10,
    )
    queue = ExportQueue(write_batch, delay_seconds=delay)
    for start in range(0, len(events), batch_size):
        await queue.enqueue(events[start : start + batch_size])
    await queue.join()

    if engine.buffer:
        logger.info("Retrying %d buffered measurements", len(engine.buffer))
        await engine.scheduler.flush()
    not_written = len(engine.buffer) + engine.buffer.dropped_total + skipped
    await engine.stop()

    print(
        f"Imported {engine.measurements_written_total} measurements "
        f"({written} directly), {not_written} not written",
    )
    return 0 if not_written == 0 else 1


def main(args: list[str] | None = None) -> int:
    """
    Run the main program.

    This function is executed when you type `influx-relay` or `python -m influx_relay`.

    Arguments:
        args: Arguments passed from the command line.

    Returns:
        An exit code.
    """
    parser = get_parser()
    opts = parser.parse_args(args=args)
    try:
        os.makedirs(opts.config_dir, exist_ok=True)
    except OSError as e:
        print(
            f"Error: Could not create config directory '{opts.config_dir}': {e}",
            file=sys.stderr,
        )
        return 1

    try:
        config_manager = ConfigManager(
            config_dir=opts.config_dir,
            enable_watchers=opts.command == "run",
        )
        setup_logging(config_manager)
    except ConfigError as e:
        print(f"Error: Failed to initialize config manager: {e}", file=sys.stderr)
        return 1

    try:
        return _handle_command(opts, config_manager)
    finally:
        config_manager.cleanup()


def _handle_command(opts: argparse.Namespace, config_manager: ConfigManager) -> int:  # noqa: PLR0911
    """Handle the CLI command with proper error handling."""
    if opts.command == "show":
        try:
            val: Any = config_manager.get_config(opts.section)
        except KeyError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        for k in opts.key:
            if not isinstance(val, dict) or k not in val:
                print(
                    f"Error: Key '{k}' not found in config section '{opts.section}'",
                    file=sys.stderr,
                )
                return 1
            val = val[k]
        print(json.dumps(val, indent=2))
        return 0

    if opts.command == "set":
        value = parse_value(opts.value)
        try:
            config_manager.set_value(opts.section, opts.key, value)
        except (KeyError, ConfigError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Set {opts.section} {'.'.join(opts.key)} = {value}")
        return 0

    try:
        if opts.command == "run":
            return asyncio.run(run_service(config_manager, not opts.no_api))
        if opts.command == "ping":
            return asyncio.run(ping_database(config_manager))
        if opts.command == "write":
            return asyncio.run(
                write_single_value(config_manager, opts.name, parse_value(opts.value)),
            )
        if opts.command == "import":
            if opts.batch_size < 1:
                print("Error: --batch-size must be positive", file=sys.stderr)
                return 1
            return asyncio.run(
                import_events(config_manager, opts.path, opts.batch_size),
            )
    except (OSError, ValueError, TypeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Error: Unknown command '{opts.command}'", file=sys.stderr)
    return 1
