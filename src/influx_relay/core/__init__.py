"""Core buffering and write engine for the InfluxDB relay."""

from .buffer import WriteBuffer
from .engine import TelemetryEngine
from .export_queue import ExportQueue
from .health import ConnectionHealthMonitor, ConnectionState
from .measurements import FormatterOptions, Measurement, NamedTags, PositionalTags
from .protocol import ProtocolAdapter, WriteSettings
from .scheduler import FlushScheduler

__version__ = "0.0.1-dev0"

__all__ = [
    "ConnectionHealthMonitor",
    "ConnectionState",
    "ExportQueue",
    "FlushScheduler",
    "FormatterOptions",
    "Measurement",
    "NamedTags",
    "PositionalTags",
    "ProtocolAdapter",
    "TelemetryEngine",
    "WriteBuffer",
    "WriteSettings",
]
