"""Adapter for remote OpenAI-compatible chat completion APIs."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Any

import httpx

from ..config import GatewayConfig
from ..exceptions import EmptyResponseError, UpstreamError
from ..models import ChatMessage
from .base import ExtractionStrategy, ProviderAdapter, map_transport_error

LOGGER = logging.getLogger(__name__)

COMPLETION_STRATEGY = ExtractionStrategy(
    "choices.0.message.content", ("choices", 0, "message", "content"), allow_empty=True
)
ERROR_STRATEGY = ExtractionStrategy("error.message", ("error", "message"))
MODEL_ID_STRATEGY = ExtractionStrategy("id", ("id",))


def _auth_headers(config: GatewayConfig) -> dict[str, str]:
    if config.api_key:
        return {"Authorization": f"Bearer {config.api_key}"}
    return {}


def _mask(api_key: str | None) -> str:
    if not api_key:
        return "<none>"
    return f"{api_key[:8]}..."


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat against ``/chat/completions``; there is no secondary endpoint."""

    async def complete(
        self,
        config: GatewayConfig,
        messages: Sequence[ChatMessage],
        model: str,
        think: bool,
    ) -> str:
        # Reasoning hints are not portable across compatible providers; think is ignored.
        url = config.endpoint("/chat/completions")
        body: dict[str, Any] = {
            "model": model,
            "messages": [message.to_wire() for message in messages],
            "stream": False,
            "temperature": config.effective_temperature,
        }
        LOGGER.debug(
            "openai.request",
            extra={
                "event": "openai.request",
                "url": url,
                "model": model,
                "api_key": _mask(config.api_key),
            },
        )
        async with self._client(config) as client:
            response = await self._post_json(
                client, url, body, headers=_auth_headers(config)
            )

        payload = response.json()
        content = COMPLETION_STRATEGY.extract(payload)
        if content is not None:
            return content
        if not response.ok:
            message = ERROR_STRATEGY.extract(payload) or response.text
            raise UpstreamError(message, status=response.status)
        raise EmptyResponseError(
            f"openai empty response: status={response.status} body={response.text}",
            status=response.status,
            body=response.text,
        )

    async def list_models(self, config: GatewayConfig) -> list[str]:
        """Return model ids from ``GET /v1/models``."""
        url = config.endpoint("/v1/models")
        async with self._client(config) as client:
            try:
                response = await client.get(url, headers=_auth_headers(config))
            except httpx.HTTPError as exc:
                raise map_transport_error(exc, url) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            if response.is_error:
                message = ERROR_STRATEGY.extract(payload) or response.text
                raise UpstreamError(message, status=response.status_code)
            return []
        names: list[str] = []
        for item in data:
            model_id = MODEL_ID_STRATEGY.extract(item)
            if model_id:
                names.append(model_id)
        return names
