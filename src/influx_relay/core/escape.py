"""
Escaping helpers for InfluxDB line protocol and InfluxQL.

Each helper escapes exactly one context. None of them are idempotent, so a
value must be escaped once, when it is turned into its wire representation.
"""

from __future__ import annotations


def escape_measurement(value: str) -> str:
    """Escape commas and spaces in a measurement name."""
    return value.replace(",", "\\,").replace(" ", "\\ ")


def escape_tag(value: str) -> str:
    """Escape commas, equals signs and spaces in a tag key or value."""
    return value.replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def quoted(value: str) -> str:
    """Return value as a double-quoted InfluxQL identifier."""
    value = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{value}"'


def string_literal(value: str) -> str:
    """Return value as a single-quoted InfluxQL string literal."""
    value = value.replace("'", "\\'")
    return f"'{value}'"
