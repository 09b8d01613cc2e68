from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from backend.app.telemetry import (
    StructuredLogTelemetrySink,
    TelemetryClient,
    build_telemetry_client,
)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_telemetry_client_redacts_credential_fields() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "token.refresh.start",
        user_id="user-1",
        access_token="ya29.secret",
        refresh_token="1//refresh",
        client_secret="shh",
        grant_type="refresh_token",
        user_email="user@example.test",
        attempt=2,
    )

    assert len(sink.events) == 1
    event_name, attributes = sink.events[0]
    assert event_name == "token.refresh.start"
    assert attributes["user_id"] == "user-1"
    assert attributes["attempt"] == 2
    assert attributes["access_token"] == "[redacted]"
    assert attributes["refresh_token"] == "[redacted]"
    assert attributes["client_secret"] == "[redacted]"
    assert attributes["grant_type"] == "[redacted]"
    assert attributes["user_email"] == "[redacted]"


def test_telemetry_values_are_compacted() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "cache_sync.user.finish",
        Channel_Title="  Lo-fi   beats \n radio ",
        error="x" * 400,
        summary={"updated": 3},
        duration_ms=12,
        ok=True,
        empty=None,
    )

    _, attributes = sink.events[0]
    assert attributes["channel_title"] == "Lo-fi beats radio"
    assert attributes["error"] == f"{'x' * 160}..."
    assert attributes["summary"] == "dict"
    assert attributes["duration_ms"] == 12
    assert attributes["ok"] is True
    assert attributes["empty"] is None


def test_disabled_telemetry_client_does_not_emit() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=False, sink=sink)

    client.emit("cache_sync.run.start", run_id="run_1")
    assert sink.events == []


def test_build_telemetry_client_none_sink_is_disabled() -> None:
    client = build_telemetry_client(enabled=True, sink="none")
    assert client.enabled is False


def test_build_telemetry_client_log_sink() -> None:
    client = build_telemetry_client(enabled=True, sink="log")
    assert client.enabled is True
    assert isinstance(client.sink, StructuredLogTelemetrySink)

    assert build_telemetry_client(enabled=False, sink="log").enabled is False


def test_token_values_are_scrubbed_from_free_text() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "cache_sync.refresh.error",
        error="401 for Bearer ya29.a0AfH6SM and refresh 1//0gLx-abc",
    )

    _, attributes = sink.events[0]
    assert attributes["error"] == "401 for [redacted] and refresh [redacted]"


def test_phase_reports_finish_with_outcome() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with client.phase("cache_sync.user", user_id="user-1") as outcome:
        outcome["channels_updated"] = 4

    assert [name for name, _ in sink.events] == ["cache_sync.user.start", "cache_sync.user.finish"]
    finish = sink.events[1][1]
    assert finish["user_id"] == "user-1"
    assert finish["channels_updated"] == 4
    assert isinstance(finish["duration_ms"], int)


def test_phase_reports_error_and_reraises() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with pytest.raises(LookupError):
        with client.phase("scheduler.tick", tick_id="t1"):
            raise LookupError("missing")

    assert [name for name, _ in sink.events] == ["scheduler.tick.start", "scheduler.tick.error"]
    assert sink.events[1][1]["error_type"] == "LookupError"
