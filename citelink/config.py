from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".citelink"
DEFAULT_LOG_SUBDIR = "logs"
DEFAULT_USER_AGENT = "citelink/0.1 (+https://github.com/citelink/citelink)"
TELEMETRY_SINKS: tuple[str, ...] = ("none", "log")
DEPLOYMENT_MODES: tuple[str, ...] = ("standard", "edge")

_FLAG_WORDS: dict[str, bool] = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}


def _env_name(field_name: str | None) -> str:
    return f"CITELINK_{str(field_name).upper()}"


def _coerce_flag(value: Any, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value, default)
    if isinstance(value, str):
        return _FLAG_WORDS.get(value.strip().lower(), default)
    return default


def _choice(value: Any, *, field_name: str | None, allowed: tuple[str, ...]) -> str:
    env_name = _env_name(field_name)
    if not isinstance(value, str):
        raise ValueError(f"{env_name} must be a string.")
    normalized = value.strip().lower()
    if normalized not in allowed:
        raise ValueError(f"{env_name} must be set to: {', '.join(allowed)}.")
    return normalized


class AppSettings(BaseSettings):
    """
    Runtime configuration, read from `CITELINK_*` environment variables or `.env`.

    Timeouts bound each individual HEAD/GET issued while resolving redirect
    wrappers or verifying destinations. In `edge` deployment mode every
    timeout is clamped to `edge_timeout_seconds`.
    """

    model_config = SettingsConfigDict(
        env_prefix="CITELINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory.",
    )
    log_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR) / DEFAULT_LOG_SUBDIR,
        description="Directory for log files. Defaults to `${CITELINK_DATA_DIR}/logs`.",
    )
    log_level: str = Field(default="INFO", description="Console log level.")

    telemetry_enabled: bool = Field(default=True)
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="`log` writes telemetry events to the telemetry log file; `none` drops them.",
    )

    deployment_mode: Literal["standard", "edge"] = Field(default="standard")
    http_timeout_seconds: float = Field(
        default=7.0,
        description="Timeout for redirect-following and page fetches.",
    )
    probe_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for HEAD probes of corrected slug candidates.",
    )
    edge_timeout_seconds: float = Field(default=3.0)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)

    verification_enabled: bool = Field(
        default=True,
        description="Run canonical-link and 404 recovery checks on rewritten links.",
    )
    verification_max_urls: int = Field(
        default=5,
        description="Maximum distinct URLs per text that go through verification.",
    )
    max_grounded_sources: int = Field(default=3)

    @property
    def resolved_http_timeout_seconds(self) -> float:
        return self._clamp_timeout(self.http_timeout_seconds)

    @property
    def resolved_probe_timeout_seconds(self) -> float:
        return self._clamp_timeout(self.probe_timeout_seconds)

    def _clamp_timeout(self, value: float) -> float:
        if self.deployment_mode == "edge":
            return min(value, self.edge_timeout_seconds)
        return value

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _validate_telemetry_sink(cls, value: Any, info: ValidationInfo) -> str:
        return _choice(value, field_name=info.field_name, allowed=TELEMETRY_SINKS)

    @field_validator("deployment_mode", mode="before")
    @classmethod
    def _validate_deployment_mode(cls, value: Any, info: ValidationInfo) -> str:
        return _choice(value, field_name=info.field_name, allowed=DEPLOYMENT_MODES)

    @field_validator(
        "http_timeout_seconds",
        "probe_timeout_seconds",
        "edge_timeout_seconds",
    )
    @classmethod
    def _validate_timeouts(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"{_env_name(info.field_name)} must be positive.")
        return value

    @field_validator("verification_max_urls", "max_grounded_sources")
    @classmethod
    def _validate_limits(cls, value: int, info: ValidationInfo) -> int:
        if value < 0:
            raise ValueError(f"{_env_name(info.field_name)} must not be negative.")
        return value

    @field_validator("user_agent", mode="before")
    @classmethod
    def _validate_user_agent(cls, value: Any) -> str:
        normalized = value.strip() if isinstance(value, str) else ""
        if not normalized:
            raise ValueError("CITELINK_USER_AGENT must be a non-empty string.")
        return normalized

    @field_validator("telemetry_enabled", "verification_enabled", mode="before")
    @classmethod
    def _validate_flags(cls, value: Any, info: ValidationInfo) -> bool:
        default = cls.model_fields[str(info.field_name)].default
        return _coerce_flag(value, default=bool(default))


def load_settings() -> AppSettings:
    """Read settings and resolve paths; `log_dir` follows `data_dir` unless set."""

    settings = AppSettings()
    data_dir = settings.data_dir.expanduser().resolve()
    if "log_dir" in settings.model_fields_set:
        log_dir = settings.log_dir.expanduser().resolve()
    else:
        log_dir = data_dir / DEFAULT_LOG_SUBDIR
    return settings.model_copy(update={"data_dir": data_dir, "log_dir": log_dir})
