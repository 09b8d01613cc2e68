from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "yt_orchestrator.telemetry"
REDACTED = "[redacted]"

# Attribute keys containing any of these fragments never leave the process.
_CREDENTIAL_KEY_FRAGMENTS: tuple[str, ...] = (
    "access",
    "authorization",
    "credential",
    "email",
    "grant",
    "password",
    "secret",
    "token",
)
# Google access tokens, refresh tokens and bearer headers leaking through
# free-form values such as exception messages.
_CREDENTIAL_VALUE_PATTERN = re.compile(r"(ya29\.[\w.-]+|1//[\w.-]+|Bearer\s+\S+)")
_MAX_VALUE_LENGTH = 160

AttributeValue = bool | int | float | str | None


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    """Writes one structlog record per event to the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info(event_name, telemetry_event=event_name, **dict(attributes))


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
    def phase(self, name: str, **attributes: Any) -> Iterator[dict[str, Any]]:
        """Emit `<name>.start`, then `<name>.finish` or `<name>.error`.

        The yielded dict is merged into the finish event, so the body can
        report counters it only knows at the end. Exceptions are re-raised.
        """
        self.emit(f"{name}.start", **attributes)
        started_at = time.perf_counter()
        outcome: dict[str, Any] = {}
        try:
            yield outcome
        except Exception as exc:
            self.emit(
                f"{name}.error",
                **attributes,
                duration_ms=_elapsed_ms(started_at),
                error_type=type(exc).__name__,
            )
            raise
        self.emit(
            f"{name}.finish",
            **attributes,
            **outcome,
            duration_ms=_elapsed_ms(started_at),
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
        "unknown telemetry sink %r; telemetry disabled",
        sink,
    )
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    sanitized: dict[str, AttributeValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(fragment in key for fragment in _CREDENTIAL_KEY_FRAGMENTS):
            sanitized[key] = REDACTED
        else:
            sanitized[key] = _sanitize_value(raw_value)
    return sanitized


def _sanitize_value(value: Any) -> AttributeValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if not isinstance(value, str):
        return type(value).__name__

    compact = _CREDENTIAL_VALUE_PATTERN.sub(REDACTED, " ".join(value.split()))
    if len(compact) > _MAX_VALUE_LENGTH:
        return f"{compact[:_MAX_VALUE_LENGTH]}..."
    return compact


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)
