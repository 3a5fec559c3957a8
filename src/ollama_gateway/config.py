"""Gateway configuration: per-call provider settings and on-disk app settings."""

from __future__ import annotations

from copy import deepcopy
from enum import Enum
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "ollama-gateway"
CONFIG_PATH = CONFIG_DIR / "config.toml"
CONFIG_ENV_VAR = "OLLAMA_GATEWAY_CONFIG"

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_TEMPERATURE = 0.6
VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

_PROVIDER_ALIASES = {
    "local-daemon": "ollama",
    "local": "ollama",
    "remote-openai-compatible": "openai",
    "openai-compatible": "openai",
}


class Provider(str, Enum):
    """Closed set of supported backends."""

    OLLAMA = "ollama"
    OPENAI = "openai"

    @classmethod
    def parse(cls, value: Any) -> Provider:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError("provider must be a string.")
        normalized = value.strip().lower()
        return cls(_PROVIDER_ALIASES.get(normalized, normalized))


def _normalize_base_url(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("base_url must be a string.")
    normalized = value.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValueError("base_url must use http or https scheme.")
    if not parsed.hostname:
        raise ValueError("base_url must include a hostname.")
    return normalized


def _optional_string(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    return normalized or None


class ModelEntry(BaseModel):
    """Per-model endpoint override, selected by exact model name."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    name: str
    provider: Provider | None = None
    base_url: str | None = None
    api_key: str | None = None

    @field_validator("provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> Provider | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return Provider.parse(value)

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return _normalize_base_url(value)

    @field_validator("api_key", mode="before")
    @classmethod
    def _validate_api_key(cls, value: Any) -> str | None:
        return _optional_string(value)


class GatewayConfig(BaseModel):
    """Provider settings supplied fresh by the caller for every call.

    Field names accept both snake_case and the camelCase keys the desktop UI
    sends (``baseUrl``, ``apiKey``, ``ollamaPath``...).
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    provider: Provider = Provider.OLLAMA
    base_url: str = DEFAULT_OLLAMA_URL
    api_key: str | None = None
    model: str | None = None
    daemon_path: str | None = Field(default=None, alias="ollamaPath")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    default_think: bool = False
    max_context_messages: int | None = Field(default=None, ge=1, le=100_000)
    timeout_seconds: float | None = Field(default=120.0, gt=0, le=3600)
    models: tuple[ModelEntry, ...] = ()

    @field_validator("provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> Provider:
        return Provider.parse(value)

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        return _normalize_base_url(value)

    @field_validator("api_key", "model", "daemon_path", mode="before")
    @classmethod
    def _validate_optional_strings(cls, value: Any) -> str | None:
        return _optional_string(value)

    @field_validator("models", mode="before")
    @classmethod
    def _validate_models(cls, value: Any) -> Any:
        if value is None:
            return ()
        return value

    @property
    def is_local(self) -> bool:
        return self.provider is Provider.OLLAMA

    @property
    def effective_temperature(self) -> float:
        return DEFAULT_TEMPERATURE if self.temperature is None else self.temperature

    @property
    def daemon_executable(self) -> str:
        """Daemon executable, falling back to ``ollama`` on the PATH."""
        return self.daemon_path or "ollama"

    def endpoint(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def for_model(self, name: str) -> GatewayConfig:
        """Return a copy with the matching per-model override applied."""
        for entry in self.models:
            if entry.name != name:
                continue
            update: dict[str, Any] = {}
            if entry.provider is not None:
                update["provider"] = entry.provider
            if entry.base_url:
                update["base_url"] = entry.base_url
            if entry.api_key:
                update["api_key"] = entry.api_key
            return self.model_copy(update=update)
        return self


class SupervisorSettings(BaseModel):
    """Daemon readiness polling policy."""

    poll_interval_seconds: float = Field(default=0.9, gt=0, le=60)
    ready_deadline_seconds: float = Field(default=12.0, gt=0, le=600)
    warm_up_deadline_seconds: float = Field(default=8.0, gt=0, le=600)
    warm_up_prompt: str = "hello"


class StreamSettings(BaseModel):
    """Stream delivery behavior."""

    chunk_size: int = Field(default=8, ge=1, le=1024)
    max_concurrent_operations: int = Field(default=4, ge=1, le=256)
    max_concurrent_pulls: int = Field(default=2, ge=1, le=64)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/ollama-gateway/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Settings(BaseModel):
    """Root settings model for all sections."""

    gateway: GatewayConfig = GatewayConfig()
    supervisor: SupervisorSettings = SupervisorSettings()
    streams: StreamSettings = StreamSettings()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _validate_deadlines(self) -> Settings:
        if self.supervisor.poll_interval_seconds > self.supervisor.ready_deadline_seconds:
            raise ValueError(
                "supervisor.poll_interval_seconds must not exceed ready_deadline_seconds."
            )
        return self


DEFAULT_SETTINGS: dict[str, Any] = Settings().model_dump(mode="json")


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate_settings(raw: dict[str, Any]) -> Settings:
    """Validate merged settings and fall back to safe defaults when possible."""
    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return Settings()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def resolve_config_path(config_path: Path | None = None) -> Path:
    if config_path is not None:
        return config_path
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return CONFIG_PATH


def load_settings(config_path: Path | None = None) -> Settings:
    """
    Load settings from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = resolve_config_path(config_path)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_SETTINGS, raw_data)
        if isinstance(raw_data, dict)
        else deepcopy(DEFAULT_SETTINGS)
    )
    return _validate_settings(merged)
