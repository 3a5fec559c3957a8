"""Domain exception hierarchy for the gateway."""

from __future__ import annotations


class GatewayError(RuntimeError):
    """Base class for all gateway errors surfaced to the UI."""


class GatewayTransportError(GatewayError):
    """Raised when a provider or the daemon cannot be reached."""


class UpstreamError(GatewayError):
    """Raised when a provider answers with a failure status and an error message."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class EmptyResponseError(GatewayError):
    """Raised when a successful response carried no extractable content."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class RequestValidationError(GatewayError):
    """Raised when a request from the UI fails validation."""


class UnknownStreamError(GatewayError):
    """Raised when a stream handle is not (or no longer) active."""


class ConfigValidationError(GatewayError):
    """Raised when configuration cannot be validated safely."""
