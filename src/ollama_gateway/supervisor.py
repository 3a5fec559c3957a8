"""Local daemon supervision: probe, spawn once, poll until ready.

``ensure_running`` never raises for an absent or slow daemon; it answers with a
boolean and leaves the next step to the caller.  Concurrent callers that find the
daemon unreachable share a single start attempt per endpoint and all receive
its outcome as soon as it is known.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from functools import partial
import logging
from typing import Any, TypeVar

import httpx

from .adapters.base import ProviderAdapter
from .adapters.ollama_daemon import OllamaDaemonAdapter
from .config import GatewayConfig, SupervisorSettings
from .events.bus import EventBus, event_bus
from .exceptions import GatewayError, UpstreamError
from .launchers import DaemonLauncher, default_launcher

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DAEMON_WARNING_EVENT = "daemon-warning"


class SupervisorState(str, Enum):
    """Phases of one ensure-running sequence."""

    IDLE = "IDLE"
    PROBING = "PROBING"
    SPAWNING = "SPAWNING"
    POLLING_READY = "POLLING_READY"
    READY = "READY"
    TIMED_OUT = "TIMED_OUT"


class SingleFlight:
    """Coalesce concurrent calls for the same key into one running task."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Future[Any]] = {}

    def in_flight(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def run(
        self, key: str, factory: Callable[[], Awaitable[T]]
    ) -> tuple[T, bool]:
        """Return ``(result, started_here)`` for the shared task under ``key``."""
        # No await between lookup and insert, so check-and-set is atomic on the loop.
        task = self._tasks.get(key)
        started_here = task is None
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(partial(self._forget, key))
        result = await asyncio.shield(task)
        return result, started_here

    def _forget(self, key: str, task: asyncio.Future[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]


# One start attempt per daemon endpoint across the whole process.
daemon_start_flight = SingleFlight()


class DaemonSupervisor:
    """Make sure the local daemon answers before local chat turns proceed."""

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        *,
        adapter: ProviderAdapter | None = None,
        launcher: DaemonLauncher | None = None,
        bus: EventBus | None = None,
        flight: SingleFlight | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or SupervisorSettings()
        self._adapter = adapter or OllamaDaemonAdapter(transport)
        self._launcher = launcher or default_launcher()
        self._bus = bus or event_bus
        self._flight = flight or daemon_start_flight
        self._state = SupervisorState.IDLE

    @property
    def state(self) -> SupervisorState:
        """Most recent state reached by any sequence on this supervisor."""
        return self._state

    def starting(self, config: GatewayConfig) -> bool:
        """Whether a start attempt for this endpoint is currently running."""
        return self._flight.in_flight(config.base_url)

    def _transition(self, new_state: SupervisorState, config: GatewayConfig) -> None:
        old_state = self._state
        self._state = new_state
        LOGGER.info(
            "supervisor.state",
            extra={
                "event": "supervisor.state",
                "from_state": old_state.value,
                "to_state": new_state.value,
                "base_url": config.base_url,
            },
        )

    async def _warn(
        self, reason: str, config: GatewayConfig, error: BaseException
    ) -> None:
        payload = {"reason": reason, "base_url": config.base_url, "error": str(error)}
        LOGGER.warning(
            f"supervisor.{reason}",
            extra={"event": f"supervisor.{reason}", **payload},
        )
        await self._bus.publish(DAEMON_WARNING_EVENT, payload, source="supervisor")

    async def probe(
        self, config: GatewayConfig, *, require_success: bool = True
    ) -> bool:
        """Issue one inventory request; any answer counts unless success is required."""
        try:
            await self._adapter.list_models(config)
        except UpstreamError:
            return not require_success
        except GatewayError:
            return False
        return True

    async def _poll_until_ready(self, config: GatewayConfig, seconds: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while loop.time() < deadline:
            if await self.probe(config):
                return True
            await asyncio.sleep(self.settings.poll_interval_seconds)
        return False

    async def _start_sequence(self, config: GatewayConfig) -> bool:
        executable = config.daemon_executable
        self._transition(SupervisorState.SPAWNING, config)
        try:
            await self._launcher.serve(executable)
        except Exception as exc:  # noqa: BLE001 - spawning is best-effort; polling decides.
            await self._warn("spawn_failed", config, exc)

        self._transition(SupervisorState.POLLING_READY, config)
        if await self._poll_until_ready(config, self.settings.ready_deadline_seconds):
            self._transition(SupervisorState.READY, config)
            return True

        if self._launcher.needs_warm_up and config.model:
            try:
                await self._launcher.warm_up(
                    executable, config.model, self.settings.warm_up_prompt
                )
            except Exception as exc:  # noqa: BLE001 - last resort only.
                await self._warn("warm_up_failed", config, exc)
            if await self._poll_until_ready(
                config, self.settings.warm_up_deadline_seconds
            ):
                self._transition(SupervisorState.READY, config)
                return True

        self._transition(SupervisorState.TIMED_OUT, config)
        return False

    async def ensure_running(self, config: GatewayConfig) -> bool:
        """Return True once the daemon answers, False if it never did in time."""
        self._transition(SupervisorState.PROBING, config)
        if await self.probe(config, require_success=False):
            self._transition(SupervisorState.READY, config)
            return True

        ready, started_here = await self._flight.run(
            config.base_url, partial(self._start_sequence, config)
        )
        if not started_here:
            LOGGER.info(
                "supervisor.joined",
                extra={
                    "event": "supervisor.joined",
                    "base_url": config.base_url,
                    "ready": ready,
                },
            )
        return ready

    async def ensure_model(self, config: GatewayConfig, model: str) -> bool:
        """Best-effort pre-warm: pull ``model`` through the CLI when it is missing."""
        if not model:
            return True
        try:
            available = await self._adapter.list_models(config)
        except GatewayError:
            available = []
        if model in available:
            return True

        LOGGER.info(
            "supervisor.model.pull",
            extra={"event": "supervisor.model.pull", "model": model},
        )
        try:
            exit_code = await self._launcher.pull(config.daemon_executable, model)
        except Exception as exc:  # noqa: BLE001 - pre-warm must not abort the chat turn.
            await self._warn("model_pull_failed", config, exc)
            return False
        if exit_code != 0:
            await self._warn(
                "model_pull_failed",
                config,
                RuntimeError(f"pull exited with status {exit_code}"),
            )
            return False
        return True
