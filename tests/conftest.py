"""
Pytest configuration and shared fixtures for the relay tests.

This file imports and exposes fixtures from the fixtures module
to make them available to all test files.
"""

from tests.support.fixtures.sample_events import (
    capability_event,
    fake_influx,
    sample_measurements,
    v1_settings,
    v2_settings,
)

# Re-export all fixtures to make them available to all test files
__all__ = [
    "capability_event",
    "fake_influx",
    "sample_measurements",
    "v1_settings",
    "v2_settings",
]
