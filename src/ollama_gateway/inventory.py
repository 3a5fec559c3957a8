"""Model listing and existence checks across providers."""

from __future__ import annotations

import logging

from .adapters.base import ProviderAdapter
from .config import GatewayConfig, Provider

LOGGER = logging.getLogger(__name__)


class ModelInventory:
    """Answer "which models are there" and "is this one there" for a config."""

    def __init__(self, adapters: dict[Provider, ProviderAdapter]) -> None:
        self._adapters = adapters

    async def list_models(self, config: GatewayConfig) -> list[str]:
        """Return model names advertised by the configured provider."""
        return await self._adapters[config.provider].list_models(config)

    async def model_exists(self, config: GatewayConfig, model: str) -> bool:
        """Exact-name membership test against the provider's model inventory.

        An empty model name is trivially present; an empty or missing inventory
        means absent.
        """
        if not model:
            LOGGER.info(
                "model.check",
                extra={"event": "model.check", "model": "<empty>", "exists": True},
            )
            return True

        LOGGER.info(
            "model.check.start",
            extra={
                "event": "model.check.start",
                "model": model,
                "base_url": config.base_url,
            },
        )
        available = await self.list_models(config)
        exists = model in available
        LOGGER.info(
            "model.check",
            extra={
                "event": "model.check",
                "model": model,
                "exists": exists,
                "available_models": available,
            },
        )
        return exists
