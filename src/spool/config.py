"""Configuration loader for Spool.

Loads from spool.toml with sensible defaults when file is absent.
Configuration is loaded once at startup and passed via dependency injection.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from spool.exceptions import SpoolError

DEFAULT_LEGEND_HEADER = (
    "Earlier turns (compressed: legend: U=User, A=Assistant, T=Tool, O=Other):"
)


class ConfigError(SpoolError):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class ModelConfig:
    """Configuration for a single model provider."""

    provider: str  # "openai_compatible" | "anthropic"
    base_url: str = ""
    model: str = ""
    max_tokens: int = 4096
    temperature: float = 0.1
    api_key: str = ""
    system_message_supported: bool = True

    def __repr__(self) -> str:
        key_display = f"***{self.api_key[-4:]}" if self.api_key else ""
        return (
            f"ModelConfig(provider={self.provider!r}, model={self.model!r}, "
            f"base_url={self.base_url!r}, api_key={key_display!r})"
        )


@dataclass(frozen=True)
class StreamSettings:
    """Defaults for adaptive streaming runs."""

    auto_expand: bool = True
    max_attempts: int = 4
    max_tokens_ceiling: int = 65536
    retain_last: int = 8
    summary_char_budget: int = 4000
    legend_header: str = DEFAULT_LEGEND_HEADER
    allow_attempt_extension: bool = True
    provide_completed_msg: bool = True
    transport_retry_attempts: int = 1
    transport_retry_base_delay_seconds: float = 0.5
    transport_retry_max_delay_seconds: float = 8.0
    transport_retry_jitter_seconds: float = 0.25
    log_slice_width: int = 150


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Top-level Spool configuration."""

    models: dict[str, ModelConfig] = field(default_factory=dict)
    stream: StreamSettings = field(default_factory=StreamSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_model_config(name: str, data: dict) -> ModelConfig:
    """Parse a single model configuration section."""
    return ModelConfig(
        provider=data["provider"],
        base_url=data.get("base_url", ""),
        model=data.get("model", name),
        max_tokens=data.get("max_tokens", 4096),
        temperature=data.get("temperature", 0.1),
        api_key=data.get("api_key", ""),
        system_message_supported=bool(data.get("system_message_supported", True)),
    )


def _positive_int(data: dict, key: str, default: int) -> int:
    raw = data.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"[stream] {key} must be an integer, got {raw!r}") from e
    if value < 1:
        raise ConfigError(f"[stream] {key} must be >= 1, got {value}")
    return value


def _parse_stream_settings(data: dict) -> StreamSettings:
    defaults = StreamSettings()
    retain_last = data.get("retain_last", defaults.retain_last)
    if not isinstance(retain_last, int) or retain_last < 0:
        raise ConfigError(f"[stream] retain_last must be >= 0, got {retain_last!r}")
    return StreamSettings(
        auto_expand=bool(data.get("auto_expand", defaults.auto_expand)),
        max_attempts=_positive_int(data, "max_attempts", defaults.max_attempts),
        max_tokens_ceiling=_positive_int(
            data, "max_tokens_ceiling", defaults.max_tokens_ceiling,
        ),
        retain_last=retain_last,
        summary_char_budget=_positive_int(
            data, "summary_char_budget", defaults.summary_char_budget,
        ),
        legend_header=str(data.get("legend_header", defaults.legend_header)),
        allow_attempt_extension=bool(
            data.get("allow_attempt_extension", defaults.allow_attempt_extension)
        ),
        provide_completed_msg=bool(
            data.get("provide_completed_msg", defaults.provide_completed_msg)
        ),
        transport_retry_attempts=_positive_int(
            data, "transport_retry_attempts", defaults.transport_retry_attempts,
        ),
        transport_retry_base_delay_seconds=float(data.get(
            "transport_retry_base_delay_seconds",
            defaults.transport_retry_base_delay_seconds,
        )),
        transport_retry_max_delay_seconds=float(data.get(
            "transport_retry_max_delay_seconds",
            defaults.transport_retry_max_delay_seconds,
        )),
        transport_retry_jitter_seconds=float(data.get(
            "transport_retry_jitter_seconds",
            defaults.transport_retry_jitter_seconds,
        )),
        log_slice_width=_positive_int(data, "log_slice_width", defaults.log_slice_width),
    )


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for spool.toml in current directory then ~/.spool/.
    Returns default config if no file is found.
    """
    if path is None:
        candidates = [
            Path.cwd() / "spool.toml",
            Path.home() / ".spool" / "spool.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        return Config()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    models: dict[str, ModelConfig] = {}
    for name, model_data in raw.get("models", {}).items():
        if isinstance(model_data, dict) and "provider" in model_data:
            models[name] = _parse_model_config(name, model_data)

    stream_data = raw.get("stream", {})
    if not isinstance(stream_data, dict):
        raise ConfigError(f"[stream] in {path} must be a table")

    log_data = raw.get("logging", {})
    logging_cfg = LoggingConfig(
        level=str(log_data.get("level", "INFO")).upper(),
    )

    return Config(
        models=models,
        stream=_parse_stream_settings(stream_data),
        logging=logging_cfg,
    )


def configure_logging(config: LoggingConfig) -> None:
    """Apply the configured level to the ``spool`` logger tree."""
    level = logging.getLevelName(config.level)
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level: {config.level!r}")
    logging.getLogger("spool").setLevel(level)
