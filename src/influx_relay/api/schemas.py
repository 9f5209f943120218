"""Marshmallow schemas for the relay status API."""

from __future__ import annotations

from marshmallow import Schema, fields


class StatusSchema(Schema):
    """Schema for the engine status returned by ``GET /api/status``."""

    url = fields.Str(
        dump_only=True,
        metadata={"description": "Database base URL, empty when no host is set"},
    )
    database = fields.Str(dump_only=True)
    connected = fields.Bool(
        dump_only=True,
        metadata={"description": "Whether the database is considered online"},
    )
    measurements_written_total = fields.Int(
        dump_only=True,
        data_key="measurementsWrittenTotal",
        metadata={"description": "Measurements persisted since startup"},
    )


class StatusDetailsSchema(StatusSchema):
    """Status extended with buffer and scheduler counters."""

    running = fields.Bool(dump_only=True)
    buffered = fields.Int(dump_only=True)
    dropped_total = fields.Int(dump_only=True, data_key="droppedTotal")
    failed_batches = fields.Int(dump_only=True, data_key="failedBatches")
    write_interval = fields.Int(dump_only=True, data_key="writeInterval")
    last_write_time = fields.Float(
        dump_only=True,
        allow_none=True,
        data_key="lastWriteTime",
    )
    last_error = fields.Str(dump_only=True, allow_none=True, data_key="lastError")


class ErrorSchema(Schema):
    """Schema for error responses."""

    status = fields.Str(dump_only=True)
    title = fields.Str(dump_only=True)
    detail = fields.Str(dump_only=True)
