"""Model downloads over the daemon's newline-delimited JSON progress protocol."""

from __future__ import annotations

from collections.abc import AsyncIterator
import json
import logging
from typing import Any

import httpx

from .adapters.base import USER_AGENT, ExtractionStrategy, map_transport_error
from .config import GatewayConfig
from .exceptions import UpstreamError
from .models import ProgressEvent

LOGGER = logging.getLogger(__name__)

ERROR_STRATEGY = ExtractionStrategy("error", ("error",))
PROGRESS_LOG_STEP = 10.0


class NdjsonDecoder:
    """Reassemble newline-terminated records from arbitrarily split byte reads."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[str]:
        """Append ``data`` and return every complete, non-blank line."""
        self._buffer.extend(data)
        lines: list[str] = []
        while True:
            position = self._buffer.find(b"\n")
            if position < 0:
                break
            raw = bytes(self._buffer[: position + 1])
            del self._buffer[: position + 1]
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                lines.append(line)
        return lines

    def flush(self) -> str | None:
        """Return a trailing unterminated line, if any, and reset the buffer."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        line = raw.decode("utf-8", errors="replace").strip()
        return line or None


def decode_progress_line(line: str) -> ProgressEvent:
    """Parse one progress line; an in-band ``error`` record raises."""
    try:
        record: Any = json.loads(line)
    except ValueError:
        return ProgressEvent(status=line, raw=True)
    if not isinstance(record, dict):
        return ProgressEvent(status=line, raw=True)
    error = ERROR_STRATEGY.extract(record)
    if error is not None:
        raise UpstreamError(error)
    return ProgressEvent.from_record(record)


class _ProgressLog:
    """Throttle progress log records to status changes and 10% steps."""

    def __init__(self, model: str, handle: str | None) -> None:
        self.model = model
        self.handle = handle
        self._last_status: str | None = None
        self._last_percent = -1.0

    def record(self, progress: ProgressEvent) -> None:
        if progress.raw:
            LOGGER.info(
                "model.pull.status",
                extra={
                    "event": "model.pull.status",
                    "model": self.model,
                    "line": progress.status,
                    "pull_id": self.handle,
                },
            )
            return
        percent = progress.percent
        if (
            progress.status != self._last_status
            or abs(percent - self._last_percent) >= PROGRESS_LOG_STEP
        ):
            LOGGER.info(
                "model.pull.progress",
                extra={
                    "event": "model.pull.progress",
                    "model": self.model,
                    "status": progress.status,
                    "percent": round(percent, 1),
                    "completed_mb": round(progress.completed / 1_000_000),
                    "total_mb": round(progress.total / 1_000_000),
                    "pull_id": self.handle,
                },
            )
            self._last_status = progress.status
            self._last_percent = percent


class ModelPuller:
    """Stream ``POST /api/pull`` and yield parsed progress in receipt order."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def _client(self, config: GatewayConfig) -> httpx.AsyncClient:
        # Downloads run for minutes; only connecting is bounded.
        return httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds, read=None),
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        )

    async def pull(
        self, config: GatewayConfig, name: str, *, handle: str | None = None
    ) -> AsyncIterator[ProgressEvent]:
        url = config.endpoint("/api/pull")
        progress_log = _ProgressLog(name, handle)
        decoder = NdjsonDecoder()
        LOGGER.info(
            "model.pull.start",
            extra={
                "event": "model.pull.start",
                "model": name,
                "base_url": config.base_url,
                "pull_id": handle,
            },
        )
        try:
            async with self._client(config) as client:
                async with client.stream(
                    "POST", url, json={"name": name, "stream": True}
                ) as response:
                    if response.is_error:
                        text = (await response.aread()).decode("utf-8", errors="replace")
                        try:
                            payload = json.loads(text)
                        except ValueError:
                            payload = None
                        message = ERROR_STRATEGY.extract(payload) or text
                        raise UpstreamError(message, status=response.status_code)

                    async for data in response.aiter_bytes():
                        for line in decoder.feed(data):
                            progress = decode_progress_line(line)
                            progress_log.record(progress)
                            yield progress

                    tail = decoder.flush()
                    if tail is not None:
                        progress = decode_progress_line(tail)
                        progress_log.record(progress)
                        yield progress
        except httpx.HTTPError as exc:
            raise map_transport_error(exc, url) from exc

        LOGGER.info(
            "model.pull.complete",
            extra={"event": "model.pull.complete", "model": name, "pull_id": handle},
        )
