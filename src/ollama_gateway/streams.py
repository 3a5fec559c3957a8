"""Asynchronously observed chat and pull operations addressed by stream handle.

Each operation gets a handle, returned before any work starts, and a channel
that records every event emitted for it.  Listeners attaching late receive the
recorded events first.  Every event is also published on the event bus under
its wire name (``chat-chunk:<handle>``, ``model-pull-progress:<handle>``...).
Each handle ends with exactly one ``end`` or ``error`` event.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import aclosing
import logging
import threading
import time
from typing import Any

from pydantic import ValidationError

from .config import GatewayConfig, StreamSettings
from .dispatcher import ChatDispatcher
from .events.bus import EventBus, event_bus
from .exceptions import RequestValidationError, UnknownStreamError
from .models import ChatRequest, StreamEvent, StreamFamily
from .pull import ModelPuller
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"
FINISHED_CHANNEL_LIMIT = 64


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


class HandleFactory:
    """Issue ``<prefix>-<millis>`` handles that never repeat within a process."""

    def __init__(self, clock: Callable[[], int] = _now_millis) -> None:
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self, prefix: str) -> str:
        with self._lock:
            value = max(self._clock(), self._last + 1)
            self._last = value
        return f"{prefix}-{value}"


handle_factory = HandleFactory()


def chunk_text(text: str, size: int) -> list[str]:
    """Split ``text`` into consecutive ``size``-character batches."""
    return [text[start : start + size] for start in range(0, len(text), size)]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class StreamChannel:
    """Ordered event record for one handle with any number of listeners."""

    def __init__(self, handle: str, family: StreamFamily) -> None:
        self.handle = handle
        self.family = family
        self.closed = False
        self._history: list[StreamEvent] = []
        self._queues: list[asyncio.Queue[StreamEvent]] = []

    def push(self, event: StreamEvent) -> None:
        if self.closed:
            return
        self._history.append(event)
        for queue in self._queues:
            queue.put_nowait(event)
        if event.is_terminal:
            self.closed = True

    async def listen(self) -> AsyncIterator[StreamEvent]:
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        for event in self._history:
            queue.put_nowait(event)
        if not self.closed:
            self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            if queue in self._queues:
                self._queues.remove(queue)


class StreamEmitter:
    """Run chat dispatches and model pulls as handle-addressed event streams."""

    def __init__(
        self,
        dispatcher: ChatDispatcher,
        puller: ModelPuller,
        *,
        bus: EventBus | None = None,
        settings: StreamSettings | None = None,
        task_manager: TaskManager | None = None,
        handles: HandleFactory | None = None,
    ) -> None:
        """Initialize the emitter.

        Args:
            dispatcher: Runs one chat turn to completion.
            puller: Streams model download progress.
            bus: Event bus receiving every emitted event (process bus by default).
            settings: Chunk size and the chat and pull concurrency bounds.
            task_manager: Tracks running operations by handle.
            handles: Handle source (process-wide factory by default).
        """
        self._dispatcher = dispatcher
        self._puller = puller
        self._bus = bus or event_bus
        self.settings = settings or StreamSettings()
        self._tasks = task_manager or TaskManager()
        self._handles = handles or handle_factory
        self._chat_slots = asyncio.Semaphore(self.settings.max_concurrent_operations)
        self._pull_slots = asyncio.Semaphore(self.settings.max_concurrent_pulls)
        self._channels: dict[str, StreamChannel] = {}
        self._finished: OrderedDict[str, StreamChannel] = OrderedDict()

    @property
    def active_handles(self) -> list[str]:
        return list(self._channels)

    def _open(self, prefix: str, family: StreamFamily) -> StreamChannel:
        handle = self._handles.next(prefix)
        channel = StreamChannel(handle, family)
        self._channels[handle] = channel
        return channel

    def _channel(self, handle: str) -> StreamChannel:
        channel = self._channels.get(handle) or self._finished.get(handle)
        if channel is None:
            raise UnknownStreamError(f"Unknown stream handle: {handle}")
        return channel

    def _retire(self, channel: StreamChannel) -> None:
        self._channels.pop(channel.handle, None)
        self._finished[channel.handle] = channel
        while len(self._finished) > FINISHED_CHANNEL_LIMIT:
            self._finished.popitem(last=False)

    async def _emit(self, channel: StreamChannel, event: StreamEvent) -> None:
        if channel.closed:
            return
        channel.push(event)
        if event.is_terminal:
            self._retire(channel)
        await self._bus.publish(event.name, event.payload(), source="stream")

    def start_chat(self, request: ChatRequest | str | bytes | Mapping[str, Any]) -> str:
        """Validate ``request``, schedule the chat turn, and return its handle.

        Raises:
            RequestValidationError: When the request does not validate.
            RuntimeError: When called outside a running event loop.
        """
        request = ChatRequest.parse(request)
        loop = asyncio.get_running_loop()
        channel = self._open("stream", "chat")
        LOGGER.info(
            "chat.start",
            extra={
                "event": "chat.start",
                "handle": channel.handle,
                "provider": request.config.provider.value,
                "model": request.effective_model,
                "think": request.effective_think,
                "user_input": request.last_user_text,
            },
        )
        task = loop.create_task(self._run_chat(channel, request))
        self._tasks.add(channel.handle, task)
        return channel.handle

    async def _run_chat(self, channel: StreamChannel, request: ChatRequest) -> None:
        try:
            async with self._chat_slots:
                text = await self._dispatcher.dispatch(
                    request.config,
                    request.messages,
                    request.effective_model,
                    request.effective_think,
                )
        except Exception as exc:  # noqa: BLE001 - every failure becomes one error event.
            LOGGER.error(
                "chat.error",
                extra={
                    "event": "chat.error",
                    "handle": channel.handle,
                    "error_type": type(exc).__name__,
                    "error": _describe(exc),
                },
            )
            await self._emit(
                channel,
                StreamEvent(channel.handle, "chat", "error", text=_describe(exc)),
            )
            return

        for batch in chunk_text(text, self.settings.chunk_size):
            await self._emit(
                channel, StreamEvent(channel.handle, "chat", "chunk", text=batch)
            )
        LOGGER.info(
            "chat.end",
            extra={
                "event": "chat.end",
                "handle": channel.handle,
                "output_len": len(text),
            },
        )
        await self._emit(channel, StreamEvent(channel.handle, "chat", "end"))

    def start_pull(
        self, config: GatewayConfig | Mapping[str, Any], name: str
    ) -> str:
        """Schedule a model download and return its handle.

        Raises:
            RequestValidationError: When the config is invalid or ``name`` is empty.
            RuntimeError: When called outside a running event loop.
        """
        if not isinstance(config, GatewayConfig):
            try:
                config = GatewayConfig.model_validate(config)
            except ValidationError as exc:
                raise RequestValidationError(f"Invalid gateway config: {exc}") from exc
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            raise RequestValidationError("Model name must not be empty.")

        loop = asyncio.get_running_loop()
        channel = self._open("pull", "pull")
        task = loop.create_task(self._run_pull(channel, config, name))
        self._tasks.add(channel.handle, task)
        return channel.handle

    async def _run_pull(
        self, channel: StreamChannel, config: GatewayConfig, name: str
    ) -> None:
        try:
            async with self._pull_slots:
                progress_stream = self._puller.pull(config, name, handle=channel.handle)
                async with aclosing(progress_stream) as progress_events:
                    async for progress in progress_events:
                        await self._emit(
                            channel,
                            StreamEvent(
                                channel.handle, "pull", "progress", progress=progress
                            ),
                        )
        except Exception as exc:  # noqa: BLE001 - every failure becomes one error event.
            LOGGER.error(
                "model.pull.error",
                extra={
                    "event": "model.pull.error",
                    "model": name,
                    "pull_id": channel.handle,
                    "error": _describe(exc),
                },
            )
            await self._emit(
                channel,
                StreamEvent(channel.handle, "pull", "error", text=_describe(exc)),
            )
            return

        await self._emit(channel, StreamEvent(channel.handle, "pull", "end"))

    def listen(self, handle: str) -> AsyncIterator[StreamEvent]:
        """Iterate a handle's events from the first one through its terminal event.

        Raises:
            UnknownStreamError: When the handle was never issued or has been
                forgotten.
        """
        return self._channel(handle).listen()

    async def cancel(self, handle: str) -> bool:
        """Stop a running operation and close its stream with an error event.

        Returns False when the stream had already finished.
        """
        channel = self._channel(handle)
        if channel.closed:
            return False
        await self._tasks.cancel(handle)
        if channel.closed:
            return False
        LOGGER.info(
            "stream.cancelled",
            extra={"event": "stream.cancelled", "handle": handle},
        )
        await self._emit(
            channel,
            StreamEvent(handle, channel.family, "error", text=CANCELLED_MESSAGE),
        )
        return True

    async def aclose(self) -> None:
        """Cancel every open stream."""
        for handle in list(self._channels):
            await self.cancel(handle)
        await self._tasks.cancel_all()
