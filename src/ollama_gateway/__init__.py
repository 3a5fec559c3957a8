"""Top-level package for ollama-gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import GatewayConfig, Provider, Settings, load_settings
    from .exceptions import (
        ConfigValidationError,
        EmptyResponseError,
        GatewayError,
        GatewayTransportError,
        RequestValidationError,
        UnknownStreamError,
        UpstreamError,
    )
    from .gateway import Gateway
    from .models import ChatMessage, ChatRequest, ProgressEvent, StreamEvent

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ConfigValidationError",
    "EmptyResponseError",
    "Gateway",
    "GatewayConfig",
    "GatewayError",
    "GatewayTransportError",
    "ProgressEvent",
    "Provider",
    "RequestValidationError",
    "Settings",
    "StreamEvent",
    "UnknownStreamError",
    "UpstreamError",
    "load_settings",
]

_EXCEPTIONS = {
    "ConfigValidationError",
    "EmptyResponseError",
    "GatewayError",
    "GatewayTransportError",
    "RequestValidationError",
    "UnknownStreamError",
    "UpstreamError",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import ollama_gateway`` stays cheap."""
    if name == "Gateway":
        from .gateway import Gateway

        return Gateway
    if name in {"GatewayConfig", "Provider", "Settings", "load_settings"}:
        from . import config

        return getattr(config, name)
    if name in _EXCEPTIONS:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"ChatMessage", "ChatRequest", "ProgressEvent", "StreamEvent"}:
        from . import models

        return getattr(models, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
