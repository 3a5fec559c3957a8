"""Route one chat turn to the adapter for its provider."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
from typing import Any

from .adapters.base import ProviderAdapter
from .config import GatewayConfig, Provider
from .models import ChatMessage, coerce_messages, trim_history
from .supervisor import DaemonSupervisor

LOGGER = logging.getLogger(__name__)


class ChatDispatcher:
    """Pick the adapter, pre-warm local models, and make exactly one call."""

    def __init__(
        self,
        adapters: Mapping[Provider, ProviderAdapter],
        supervisor: DaemonSupervisor,
    ) -> None:
        self._adapters = adapters
        self._supervisor = supervisor

    def adapter_for(self, config: GatewayConfig) -> ProviderAdapter:
        return self._adapters[config.provider]

    async def dispatch(
        self,
        config: GatewayConfig,
        messages: Sequence[ChatMessage | Mapping[str, Any]],
        model: str,
        think: bool,
    ) -> str:
        """Return the normalized response text or raise a ``GatewayError``."""
        config = config.for_model(model)
        history = trim_history(coerce_messages(messages), config.max_context_messages)

        if config.is_local:
            try:
                await self._supervisor.ensure_model(config, model)
            except Exception as exc:  # noqa: BLE001 - pre-warm is optional.
                LOGGER.warning(
                    "dispatch.ensure_model_failed",
                    extra={
                        "event": "dispatch.ensure_model_failed",
                        "model": model,
                        "error": str(exc),
                    },
                )

        return await self.adapter_for(config).complete(config, history, model, think)
