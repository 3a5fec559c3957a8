"""UI-facing facade wiring adapters, supervisor, inventory, and streams together."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from .adapters import build_adapters
from .config import GatewayConfig, Provider, Settings
from .dispatcher import ChatDispatcher
from .events.bus import EventBus, event_bus
from .exceptions import RequestValidationError
from .inventory import ModelInventory
from .launchers import DaemonLauncher
from .models import ChatMessage, ChatRequest, StreamEvent, coerce_messages
from .pull import ModelPuller
from .streams import StreamEmitter
from .supervisor import DaemonSupervisor

LOGGER = logging.getLogger(__name__)

ConfigInput = GatewayConfig | Mapping[str, Any] | None


class Gateway:
    """Single entry point for chat, model management, and daemon supervision.

    Every call takes its own ``GatewayConfig`` (or the UI's JSON mapping of
    one); when omitted, the ``[gateway]`` section of the loaded settings is used.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        launcher: DaemonLauncher | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.bus = bus or event_bus
        self.adapters = build_adapters(transport)
        self.supervisor = DaemonSupervisor(
            self.settings.supervisor,
            adapter=self.adapters[Provider.OLLAMA],
            launcher=launcher,
            bus=self.bus,
        )
        self.inventory = ModelInventory(self.adapters)
        self.dispatcher = ChatDispatcher(self.adapters, self.supervisor)
        self.puller = ModelPuller(transport)
        self.emitter = StreamEmitter(
            self.dispatcher,
            self.puller,
            bus=self.bus,
            settings=self.settings.streams,
        )

    def resolve_config(self, config: ConfigInput = None) -> GatewayConfig:
        """Validate a per-call config, defaulting to the configured gateway."""
        if config is None:
            return self.settings.gateway
        if isinstance(config, GatewayConfig):
            return config
        try:
            return GatewayConfig.model_validate(config)
        except ValidationError as exc:
            raise RequestValidationError(f"Invalid gateway config: {exc}") from exc

    async def list_models(self, config: ConfigInput = None) -> list[str]:
        return await self.inventory.list_models(self.resolve_config(config))

    async def check_model_exists(
        self, config: ConfigInput = None, model: str | None = None
    ) -> bool:
        """Check the model against the daemon its per-model override points at."""
        resolved = self.resolve_config(config)
        if model is None:
            model = resolved.model or ""
        model = model.strip()
        return await self.inventory.model_exists(resolved.for_model(model), model)

    async def ensure_daemon(self, config: ConfigInput = None) -> bool:
        """Make sure the local daemon answers; remote providers need nothing."""
        resolved = self.resolve_config(config)
        if not resolved.is_local:
            return True
        return await self.supervisor.ensure_running(resolved)

    async def chat(
        self,
        messages: Sequence[ChatMessage | Mapping[str, Any]],
        config: ConfigInput = None,
        *,
        model: str | None = None,
        think: bool | None = False,
    ) -> str:
        """Run one chat turn and return the whole response text."""
        request = ChatRequest(
            config=self.resolve_config(config),
            messages=tuple(coerce_messages(messages)),
            model=model or "",
            think=think,
        )
        return await self.dispatcher.dispatch(
            request.config,
            request.messages,
            request.effective_model,
            request.effective_think,
        )

    def start_chat_stream(
        self, request: ChatRequest | str | bytes | Mapping[str, Any]
    ) -> str:
        """Schedule a chat turn and return its handle immediately."""
        if isinstance(request, Mapping) and "config" not in request:
            request = {**request, "config": self.settings.gateway}
        return self.emitter.start_chat(request)

    def start_pull(self, name: str, config: ConfigInput = None) -> str:
        """Schedule a model download and return its handle immediately."""
        resolved = self.resolve_config(config)
        if isinstance(name, str):
            resolved = resolved.for_model(name.strip())
        return self.emitter.start_pull(resolved, name)

    def listen(self, handle: str) -> AsyncIterator[StreamEvent]:
        return self.emitter.listen(handle)

    async def cancel(self, handle: str) -> bool:
        return await self.emitter.cancel(handle)

    async def aclose(self) -> None:
        """Cancel open streams and release pooled HTTP clients."""
        await self.emitter.aclose()
        for adapter in self.adapters.values():
            await adapter.aclose()
        LOGGER.debug("gateway.closed", extra={"event": "gateway.closed"})

    async def __aenter__(self) -> Gateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
