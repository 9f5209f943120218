"""Flask REST API implementation for the InfluxDB relay."""

from .api import RelayAPI
from .schemas import StatusSchema

__version__ = "0.0.1-dev0"

__all__ = [
    "RelayAPI",
    "StatusSchema",
]
