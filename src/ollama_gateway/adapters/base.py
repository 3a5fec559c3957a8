"""Shared plumbing for provider adapters: HTTP clients, JSON probing, error mapping."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
import json
import logging
from typing import Any

import httpx

from ..config import GatewayConfig
from ..exceptions import GatewayError, GatewayTransportError
from ..models import ChatMessage

LOGGER = logging.getLogger(__name__)

USER_AGENT = "ollama-gateway/0.3"


@dataclass(frozen=True)
class ExtractionStrategy:
    """Named lookup of a string field inside a decoded JSON payload.

    ``path`` is walked key by key (integers index into lists).  With
    ``allow_empty`` false an empty string counts as no match.
    """

    name: str
    path: tuple[str | int, ...]
    allow_empty: bool = False

    def extract(self, payload: Any) -> str | None:
        node = payload
        for step in self.path:
            if isinstance(step, int):
                if not isinstance(node, list) or len(node) <= step:
                    return None
                node = node[step]
            else:
                if not isinstance(node, dict):
                    return None
                node = node.get(step)
        if not isinstance(node, str):
            return None
        if not node and not self.allow_empty:
            return None
        return node


def first_match(
    payload: Any, strategies: Sequence[ExtractionStrategy]
) -> tuple[str, str] | None:
    """Apply strategies in priority order and return ``(name, value)`` of the first hit."""
    for strategy in strategies:
        value = strategy.extract(payload)
        if value is not None:
            return strategy.name, value
    return None


@dataclass(frozen=True)
class RawResponse:
    """Status and body of a completed HTTP exchange."""

    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any | None:
        """Decoded body, or ``None`` when it is not JSON."""
        try:
            return json.loads(self.text)
        except ValueError:
            return None


def map_transport_error(exc: BaseException, target: str) -> GatewayError:
    """Translate client and socket failures into a readable transport error."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return GatewayTransportError(f"Request to {target} timed out: {exc}")
    if isinstance(exc, (httpx.ConnectError, ConnectionError)):
        return GatewayTransportError(f"Unable to connect to {target}: {exc}")
    return GatewayTransportError(f"Request to {target} failed: {exc}")


def build_timeout(config: GatewayConfig) -> httpx.Timeout:
    return httpx.Timeout(config.timeout_seconds)


class ProviderAdapter(ABC):
    """Translate normalized chat turns to one provider's wire format."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def _client(self, config: GatewayConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=build_timeout(config),
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        )

    async def _post_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> RawResponse:
        try:
            response = await client.post(url, json=body, headers=headers)
            return RawResponse(status=response.status_code, text=response.text)
        except httpx.HTTPError as exc:
            raise map_transport_error(exc, url) from exc

    async def aclose(self) -> None:
        """Release pooled clients, if any."""

    @abstractmethod
    async def complete(
        self,
        config: GatewayConfig,
        messages: Sequence[ChatMessage],
        model: str,
        think: bool,
    ) -> str:
        """Run one non-streamed chat turn and return the normalized text."""

    @abstractmethod
    async def list_models(self, config: GatewayConfig) -> list[str]:
        """Return model identifiers the provider advertises."""
