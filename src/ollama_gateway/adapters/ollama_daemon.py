"""Adapter for a locally running Ollama daemon."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Any

import httpx
from ollama import AsyncClient as _AsyncClient
from ollama import ResponseError

from ..config import GatewayConfig
from ..exceptions import EmptyResponseError, UpstreamError
from ..models import ChatMessage, flatten_messages
from .base import (
    ExtractionStrategy,
    ProviderAdapter,
    RawResponse,
    first_match,
    map_transport_error,
)

LOGGER = logging.getLogger(__name__)

# Older daemons have no reasoning toggle; this directive switches thinking off in-band.
NO_THINK_DIRECTIVE = "/no_think"
REASONING_OPTIONS: dict[str, Any] = {"reasoning": {"effort": "medium"}}

CHAT_STRATEGIES = (
    ExtractionStrategy("message.content", ("message", "content")),
    ExtractionStrategy("response", ("response",)),
)
GENERATE_STRATEGIES = (ExtractionStrategy("response", ("response",)),)
ERROR_STRATEGY = ExtractionStrategy("error", ("error",))


def apply_think_to_messages(
    messages: Sequence[ChatMessage], think: bool
) -> list[dict[str, str]]:
    """Serialize messages, appending the disable-thinking directive when needed."""
    wire = [message.to_wire() for message in messages]
    if not think and wire:
        wire[-1]["content"] = f"{wire[-1]['content']} {NO_THINK_DIRECTIVE}"
    return wire


def apply_think_to_prompt(prompt: str, think: bool) -> str:
    return prompt if think else f"{prompt} {NO_THINK_DIRECTIVE}"


def _model_field(model: str) -> str | None:
    return model or None


def _names_from_listing(response: Any) -> list[str]:
    """Collect model names from an SDK object or a plain dict listing."""
    models: Any = None
    if hasattr(response, "models"):
        models = response.models
    elif isinstance(response, dict):
        models = response.get("models")
    elif hasattr(response, "model_dump"):
        try:
            models = response.model_dump().get("models")
        except Exception:
            models = None

    names: list[str] = []
    if not isinstance(models, list):
        return names
    for model in models:
        candidate_name: str | None = None
        if isinstance(model, dict):
            for key in ("name", "model"):
                value = model.get(key)
                if isinstance(value, str) and value.strip():
                    candidate_name = value.strip()
                    break
        else:
            for attr in ("name", "model"):
                value = getattr(model, attr, None)
                if isinstance(value, str) and value.strip():
                    candidate_name = value.strip()
                    break
        if candidate_name:
            names.append(candidate_name)
    return names


class OllamaDaemonAdapter(ProviderAdapter):
    """Chat against ``/api/chat`` with a flattened ``/api/generate`` fallback."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(transport)
        self._sdk_clients: dict[tuple[str, float | None], _AsyncClient] = {}

    def _sdk_client(self, config: GatewayConfig) -> _AsyncClient:
        key = (config.base_url, config.timeout_seconds)
        client = self._sdk_clients.get(key)
        if client is None:
            client = _AsyncClient(
                host=config.base_url,
                timeout=config.timeout_seconds,
                transport=self._transport,
            )
            self._sdk_clients[key] = client
        return client

    async def aclose(self) -> None:
        clients = list(self._sdk_clients.values())
        self._sdk_clients.clear()
        for client in clients:
            # ollama.AsyncClient has no public close; ``_client`` is its httpx
            # client and this breaks if the SDK renames it.
            await client._client.aclose()

    async def list_models(self, config: GatewayConfig) -> list[str]:
        """Return the daemon's local inventory from ``/api/tags``."""
        try:
            response = await self._sdk_client(config).list()
        except ResponseError as exc:
            raise UpstreamError(str(exc.error), status=exc.status_code) from exc
        except Exception as exc:
            raise map_transport_error(exc, config.base_url) from exc
        return _names_from_listing(response)

    async def complete(
        self,
        config: GatewayConfig,
        messages: Sequence[ChatMessage],
        model: str,
        think: bool,
    ) -> str:
        chat_body: dict[str, Any] = {
            "model": _model_field(model),
            "messages": apply_think_to_messages(messages, think),
            "stream": False,
        }
        generate_body: dict[str, Any] = {
            "model": _model_field(model),
            "prompt": apply_think_to_prompt(flatten_messages(messages), think),
            "stream": False,
        }
        if think:
            chat_body["options"] = dict(REASONING_OPTIONS)
            generate_body["options"] = dict(REASONING_OPTIONS)

        async with self._client(config) as client:
            chat = await self._post_json(client, config.endpoint("/api/chat"), chat_body)
            payload = chat.json()
            hit = first_match(payload, CHAT_STRATEGIES)
            if hit is not None:
                LOGGER.debug(
                    "ollama.chat.extracted",
                    extra={"event": "ollama.chat.extracted", "strategy": hit[0]},
                )
                return hit[1]

            # A failing chat endpoint still gets the completion fallback.
            chat_error: str | None = None
            if not chat.ok:
                chat_error = ERROR_STRATEGY.extract(payload) or chat.text
                LOGGER.warning(
                    "ollama.chat.upstream_error",
                    extra={
                        "event": "ollama.chat.upstream_error",
                        "status": chat.status,
                        "error": chat_error,
                    },
                )

            LOGGER.info(
                "ollama.generate.fallback",
                extra={"event": "ollama.generate.fallback", "model": model},
            )
            generate = await self._post_json(
                client, config.endpoint("/api/generate"), generate_body
            )
        return self._parse_generate(chat, chat_error, generate)

    @staticmethod
    def _parse_generate(
        chat: RawResponse, chat_error: str | None, generate: RawResponse
    ) -> str:
        payload = generate.json()
        hit = first_match(payload, GENERATE_STRATEGIES)
        if hit is not None:
            return hit[1]

        generate_error: str | None = None
        if not generate.ok:
            generate_error = ERROR_STRATEGY.extract(payload) or generate.text
            if chat_error is None:
                raise UpstreamError(generate_error, status=generate.status)

        message = (
            f"ollama empty response: status={chat.status} body={chat.text} "
            f"fallback_status={generate.status}"
        )
        detail = chat_error or generate_error
        if detail:
            message = f"{message} daemon_error={detail}"
        raise EmptyResponseError(message, status=chat.status, body=chat.text)
