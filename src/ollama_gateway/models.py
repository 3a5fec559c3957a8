"""Normalized request and event payload types shared by every backend."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .config import GatewayConfig
from .exceptions import RequestValidationError

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    """One turn of a conversation; ordering is owned by the caller."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Role
    content: str

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ChatRequest(BaseModel):
    """A single chat turn as issued by the UI."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    config: GatewayConfig
    messages: tuple[ChatMessage, ...]
    model: str = ""
    think: bool | None = False

    @field_validator("model", mode="before")
    @classmethod
    def _normalize_model(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("model must be a string.")
        return value.strip()

    @property
    def effective_think(self) -> bool:
        if self.think is None:
            return self.config.default_think
        return self.think

    @property
    def effective_model(self) -> str:
        return self.model or self.config.model or ""

    @property
    def last_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""

    @classmethod
    def parse(
        cls, payload: ChatRequest | str | bytes | Mapping[str, Any]
    ) -> ChatRequest:
        """Validate a request from JSON text or a mapping."""
        if isinstance(payload, cls):
            return payload
        try:
            if isinstance(payload, (str, bytes)):
                return cls.model_validate_json(payload)
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise RequestValidationError(f"Invalid chat request: {exc}") from exc


def coerce_messages(
    messages: Sequence[ChatMessage | Mapping[str, Any]],
) -> list[ChatMessage]:
    """Validate a sequence of message-like objects, preserving order."""
    try:
        return [
            message
            if isinstance(message, ChatMessage)
            else ChatMessage.model_validate(message)
            for message in messages
        ]
    except ValidationError as exc:
        raise RequestValidationError(f"Invalid chat message: {exc}") from exc


def trim_history(
    messages: Sequence[ChatMessage], cap: int | None
) -> list[ChatMessage]:
    """Keep the most recent ``cap`` messages in their original order."""
    if cap is None or cap >= len(messages):
        return list(messages)
    return list(messages[len(messages) - cap :])


def flatten_messages(messages: Sequence[ChatMessage]) -> str:
    """Render a conversation as ``role: content`` lines for completion endpoints."""
    return "\n".join(f"{message.role}: {message.content}" for message in messages)


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


@dataclass(frozen=True)
class ProgressEvent:
    """A single model-download progress record.

    ``raw`` marks a line the daemon sent that was not valid JSON; its text is
    carried verbatim in ``status``.
    """

    status: str
    completed: float = 0.0
    total: float = 0.0
    raw: bool = False

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(self.completed / self.total * 100.0, 100.0)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> ProgressEvent:
        status = record.get("status")
        return cls(
            status=status if isinstance(status, str) else "",
            completed=_as_number(record.get("completed")),
            total=_as_number(record.get("total")),
        )

    def to_payload(self) -> dict[str, Any] | str:
        if self.raw:
            return self.status
        return {
            "status": self.status,
            "total": self.total,
            "completed": self.completed,
            "percent": self.percent,
        }


StreamKind = Literal["chunk", "end", "error", "progress"]
StreamFamily = Literal["chat", "pull"]

_EVENT_PREFIXES: dict[StreamFamily, str] = {
    "chat": "chat",
    "pull": "model-pull",
}


@dataclass(frozen=True)
class StreamEvent:
    """A framed, handle-tagged event delivered to the UI."""

    handle: str
    family: StreamFamily
    kind: StreamKind
    text: str = ""
    progress: ProgressEvent | None = None

    @property
    def name(self) -> str:
        return f"{_EVENT_PREFIXES[self.family]}-{self.kind}:{self.handle}"

    @property
    def is_terminal(self) -> bool:
        return self.kind in ("end", "error")

    def payload(self) -> Any:
        if self.progress is not None:
            return self.progress.to_payload()
        return self.text
