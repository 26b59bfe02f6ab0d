from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Literal, Protocol
from urllib.parse import urlsplit, urlunsplit

import structlog

# Generated answers and fetched pages never leave the process through telemetry.
_REDACTED_ATTRIBUTE_TOKENS: frozenset[str] = frozenset(
    {
        "authorization",
        "body",
        "cookie",
        "html",
        "markdown",
        "payload",
        "text",
        "token",
    }
)
_MAX_STRING_LENGTH = 160

AttributeValue = bool | int | float | str | None


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, AttributeValue]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, AttributeValue]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger("citelink.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, AttributeValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(event_name=event_name, attributes=sanitize_attributes(attributes))

    @contextmanager
    def measure(self, operation: str, **attributes: Any) -> Iterator[dict[str, Any]]:
        """Emit ``<operation>.finish`` or ``<operation>.error`` with a duration.

        The yielded dict collects attributes known only once the work is done.
        Exceptions are re-raised after the error event is emitted.
        """

        extra: dict[str, Any] = {}
        started_at = perf_counter()
        try:
            yield extra
        except Exception as exc:
            self.emit(
                f"{operation}.error",
                **attributes,
                **extra,
                error_type=type(exc).__name__,
                duration_ms=_elapsed_ms(started_at),
            )
            raise
        self.emit(
            f"{operation}.finish",
            **attributes,
            **extra,
            duration_ms=_elapsed_ms(started_at),
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger("citelink.telemetry").warning(
        "unsupported telemetry sink requested; disabling telemetry sink=%s",
        sink,
    )
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    sanitized: dict[str, AttributeValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(token in key for token in _REDACTED_ATTRIBUTE_TOKENS):
            sanitized[key] = "[redacted]"
            continue
        value = _sanitize_value(raw_value)
        if isinstance(value, str) and (key == "url" or key.endswith("_url")):
            value = strip_url_query(value)
        sanitized[key] = value
    return sanitized


def strip_url_query(url: str) -> str:
    """Drop query and fragment, which may carry session or signed tokens."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return "[unparsable-url]"
    if not parts.scheme or not parts.netloc:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _sanitize_value(value: Any) -> AttributeValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    return type(value).__name__


def _elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)
