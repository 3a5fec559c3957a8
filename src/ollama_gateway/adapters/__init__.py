"""Provider adapters translating normalized chat turns to backend wire formats."""

from __future__ import annotations

import httpx

from ..config import Provider
from .base import ExtractionStrategy, ProviderAdapter, first_match, map_transport_error
from .ollama_daemon import OllamaDaemonAdapter
from .openai_compat import OpenAICompatibleAdapter

__all__ = [
    "ExtractionStrategy",
    "OllamaDaemonAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "build_adapters",
    "first_match",
    "map_transport_error",
]


def build_adapters(
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[Provider, ProviderAdapter]:
    """Return one adapter per provider, sharing an optional transport."""
    return {
        Provider.OLLAMA: OllamaDaemonAdapter(transport),
        Provider.OPENAI: OpenAICompatibleAdapter(transport),
    }
