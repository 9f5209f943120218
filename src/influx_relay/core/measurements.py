"""
Measurement model and formatter for the InfluxDB relay.

Producers hand over loosely shaped events (device capability changes, system
metrics, exported history entries). This module turns them into immutable
``Measurement`` records whose name, tag values and string fields are already
safe for line protocol, so the protocol layer can render them verbatim.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Union

from .escape import escape_measurement, escape_tag

FieldValue = Union[bool, int, float, str]

NBSP = "\u00a0"


class MeasurementMode(str, Enum):
    """How the measurement name is derived from an event."""

    BY_NAME = "by_name"
    BY_ZONE = "by_zone"
    BY_ZONE_NAME = "by_zone_name"


class PercentageScale(str, Enum):
    """Normalization applied to percentage capabilities."""

    DEFAULT = "default"
    INT = "int"
    FLOAT = "float"


@dataclass(frozen=True)
class FormatterOptions:
    """Options controlling measurement naming and value scaling."""

    measurement_mode: str = MeasurementMode.BY_NAME.value
    measurement_prefix: str = ""
    percentage_scale: str = PercentageScale.DEFAULT.value

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> FormatterOptions:
        """Build options from the ``measurements`` config section."""
        config = config or {}
        return cls(
            measurement_mode=config.get("mode") or MeasurementMode.BY_NAME.value,
            measurement_prefix=config.get("prefix") or "",
            percentage_scale=config.get("percentage_scale")
            or PercentageScale.DEFAULT.value,
        )


@dataclass(frozen=True)
class NamedTags:
    """Tags keyed by name."""

    values: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class PositionalTags:
    """Legacy tag form: bare values keyed as ``tag_0``, ``tag_1``, ... on the wire."""

    values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))

    def __len__(self) -> int:
        return len(self.values)


Tags = Union[NamedTags, PositionalTags]


@dataclass(frozen=True)
class Measurement:
    """One named, timestamped set of tagged field values."""

    name: str
    fields: Mapping[str, FieldValue]
    tags: Tags = field(default_factory=NamedTags)
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Measurement requires a name")
        if not self.fields:
            raise ValueError("Measurement requires at least one field")
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))


def is_supported_value(value: Any) -> bool:
    """Return True for booleans, finite numbers and strings."""
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    return isinstance(value, str)


def format_key(value: str | None) -> str | None:
    """
    Fold spaces to underscores, then escape the result for use as a name.

    Regular and non-breaking spaces become ``_`` before escaping, so the
    folded underscores are never escaped themselves. Commas, equals signs and
    double quotes are backslash-escaped.
    """
    if value is None:
        return None
    folded = str(value).replace(" ", "_").replace(NBSP, "_")
    return escape_measurement(folded).replace("=", "\\=").replace('"', '\\"')


def format_field_value(
    value: Any,
    capability: Mapping[str, Any] | None = None,
    options: FormatterOptions | None = None,
) -> FieldValue | None:
    """
    Format a raw value for use as a line protocol field value.

    Args:
        value: Raw value reported by the producer
        capability: Capability metadata (``units``, ``min``, ``max``), if any
        options: Formatter options carrying the percentage scale policy

    Returns:
        Booleans and numbers as-is (numbers possibly rescaled), strings wrapped
        in double quotes with inner quotes escaped, None for None and for values
        that are neither booleans, numbers nor strings
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return '"' + value.replace('"', '\\"') + '"'
    if not isinstance(value, (int, float)):
        return None

    if isinstance(capability, Mapping) and capability.get("units") == "%":
        scale = (options or FormatterOptions()).percentage_scale
        low, high = capability.get("min"), capability.get("max")
        if scale == PercentageScale.INT.value and low == 0 and high == 1:
            return value * 100
        if scale == PercentageScale.FLOAT.value and low == 0 and high == 100:  # noqa: PLR2004
            return value / 100

    return value


def format_measurement_name(
    event: Mapping[str, Any],
    options: FormatterOptions | None = None,
) -> str:
    """
    Derive the measurement name for an event.

    The event name is used unless the event has a zone and the measurement
    mode asks for it. A configured prefix is prepended without a separator.
    """
    options = options or FormatterOptions()
    name = format_key(event.get("name")) or ""
    zone_name = event.get("zone_name")
    if zone_name:
        if options.measurement_mode == MeasurementMode.BY_ZONE.value:
            name = format_key(zone_name)
        elif options.measurement_mode == MeasurementMode.BY_ZONE_NAME.value:
            name = f"{format_key(zone_name)}_{name}"
    prefix = options.measurement_prefix
    return f"{format_key(prefix)}{name}" if prefix else name


def _to_timestamp(ts: Any) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
    raise TypeError(f"Unsupported timestamp type: {type(ts).__name__}")


def _tag_value(value: Any) -> str:
    return escape_tag(str(value).replace(NBSP, " "))


def make_tags(raw: Mapping[str, Any] | Sequence[Any] | None) -> Tags:
    """
    Build escaped tags from a producer's tag mapping or positional sequence.

    None and empty values are skipped, since line protocol has no empty tags.
    """
    if raw is None:
        return NamedTags()
    if isinstance(raw, Mapping):
        return NamedTags(
            {
                escape_tag(str(key)): _tag_value(value)
                for key, value in raw.items()
                if value is not None and value != ""
            },
        )
    if isinstance(raw, (str, bytes)):
        raise TypeError("Tags must be a mapping or a sequence of values")
    return PositionalTags(
        tuple(_tag_value(value) for value in raw if value is not None and value != ""),
    )


def from_capability(
    event: Mapping[str, Any] | None,
    options: FormatterOptions | None = None,
) -> Measurement | None:
    """
    Build a measurement from a device capability change.

    Expected keys: ``id``, ``name``, ``zone_id``, ``zone_name``,
    ``capability_id``, ``capability`` (metadata), ``value`` and optional ``ts``.

    Returns:
        The measurement, or None when the value cannot be written
    """
    capability_id = event.get("capability_id") if event else None
    if not event or not event.get("name") or capability_id in (None, ""):
        return None

    value = event.get("value")
    if not is_supported_value(value):
        return None
    formatted = format_field_value(value, event.get("capability"), options)
    if formatted is None:
        return None

    tags = {
        "id": event.get("id"),
        "name": format_key(event["name"]),
        "zoneId": event.get("zone_id"),
        "zone": format_key(event.get("zone_name")),
    }
    return Measurement(
        name=format_measurement_name(event, options),
        tags=NamedTags(
            {
                key: tag if key in ("name", "zone") else escape_tag(str(tag))
                for key, tag in tags.items()
                if tag
            },
        ),
        fields={escape_tag(str(capability_id)): formatted},
        timestamp=_to_timestamp(event.get("ts")),
    )


def from_event(
    event: Mapping[str, Any] | None,
    options: FormatterOptions | None = None,
) -> Measurement | None:
    """Build a measurement from a pre-shaped ``{name, tags, fields, ts}`` event."""
    if not event or not event.get("name"):
        return None

    fields = dict(event.get("fields") or {})
    if not fields and is_supported_value(event.get("value")):
        fields = {"value": format_field_value(event["value"], None, options)}
    if not fields:
        return None

    return Measurement(
        name=format_measurement_name(event, options),
        tags=make_tags(event.get("tags")),
        fields=fields,
        timestamp=_to_timestamp(event.get("ts")),
    )


def from_events(
    events: Iterable[Mapping[str, Any]],
    options: FormatterOptions | None = None,
) -> list[Measurement]:
    """Build measurements from a batch of events, dropping those without fields."""
    measurements = []
    for event in events:
        measurement = from_event(event, options)
        if measurement is not None:
            measurements.append(measurement)
    return measurements


def from_value(
    measurement_name: str | None,
    value: Any,
    options: FormatterOptions | None = None,
) -> Measurement | None:
    """Build a single-field (``value``) measurement from a bare scalar."""
    if not measurement_name or not is_supported_value(value):
        return None
    formatted = format_field_value(value, None, options)
    if formatted is None:
        return None
    return Measurement(
        name=format_measurement_name({"name": measurement_name}, options),
        fields={"value": formatted},
        timestamp=_to_timestamp(None),
    )
