"""Exception classes for the InfluxDB relay engine."""

from __future__ import annotations

from typing import Any


class InfluxRelayError(Exception):
    """Base exception class for relay errors."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize InfluxRelayError with message, database URL, and context."""
        super().__init__(message)
        self.message = message
        self.url = url
        self.context = context or {}
        self.error_code = getattr(self, "ERROR_CODE", 0)

    def __str__(self) -> str:
        """Return string representation with database URL if available."""
        if self.url:
            return f"InfluxDB Error ({self.url}): {self.message}"
        return f"InfluxDB Error: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/diagnostics."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "url": self.url,
            "error_code": self.error_code,
            "context": self.context,
        }


class ConfigurationIncompleteError(InfluxRelayError):
    """Raised when host, port, protocol or database settings are unusable."""

    ERROR_CODE = 2001

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        """Initialize ConfigurationIncompleteError with the offending setting names."""
        super().__init__(message, context={"missing": missing or []})
        self.missing = missing or []


class InfluxUnreachableError(InfluxRelayError):
    """Raised when the database cannot be reached (transport failure)."""

    ERROR_CODE = 2002


class InfluxTimeoutError(InfluxUnreachableError):
    """Raised when a probe, query or write does not complete in time."""

    ERROR_CODE = 2003

    def __init__(
        self,
        message: str,
        url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize InfluxTimeoutError with the timeout that expired."""
        super().__init__(message, url, {"timeout": timeout})
        self.timeout = timeout


class InfluxProtocolError(InfluxRelayError):
    """Raised when the database answers with an unexpected status or body."""

    ERROR_CODE = 2004

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        """Initialize InfluxProtocolError with the response status and body."""
        super().__init__(message, url, {"status_code": status_code, "body": body})
        self.status_code = status_code
        self.body = body


class ValidationError(InfluxRelayError, ValueError):
    """Raised synchronously when a caller supplies an invalid setting."""

    ERROR_CODE = 2005


class WriteIntervalError(ValidationError):
    """Raised when the write interval is outside the accepted range."""

    ERROR_CODE = 2006

    def __init__(self, message: str, value: Any = None) -> None:
        """Initialize WriteIntervalError with the rejected value."""
        super().__init__(message, context={"value": value})
        self.value = value
