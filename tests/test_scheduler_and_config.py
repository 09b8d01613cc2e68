from __future__ import annotations

import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from backend.app.config import DEFAULT_CACHE_UPDATE_SCHEDULE, load_settings
from backend.app.services.scheduler_service import (
    CACHE_UPDATE_JOB_ID,
    STARTUP_CACHE_UPDATE_JOB_ID,
    CacheSyncScheduler,
    build_cron_trigger,
)
from backend.app.telemetry import TelemetryClient


class _FakeSyncService:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[bool] = []
        self.error = error
        self.called = threading.Event()

    def update_all_caches(self, force: bool = False) -> None:
        self.calls.append(force)
        self.called.set()
        if self.error is not None:
            raise self.error


class _FakeBackgroundScheduler:
    def __init__(self) -> None:
        self.running = False
        self.jobs: dict[str, dict[str, Any]] = {}
        self.shutdown_calls = 0

    def add_job(self, func: Any, trigger: Any, **kwargs: Any) -> None:
        self.jobs[kwargs["id"]] = {"func": func, "trigger": trigger, **kwargs}

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        _ = wait
        self.running = False
        self.shutdown_calls += 1


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_six_field_cron_has_leading_seconds() -> None:
    trigger = build_cron_trigger(DEFAULT_CACHE_UPDATE_SCHEDULE)
    now = datetime(2024, 1, 1, 0, 10, 5, tzinfo=UTC)

    next_fire = trigger.get_next_fire_time(None, now)

    assert isinstance(trigger, CronTrigger)
    assert next_fire == datetime(2024, 1, 1, 0, 30, 0, tzinfo=UTC)


def test_five_field_cron_is_classic_crontab() -> None:
    trigger = build_cron_trigger("*/15 * * * *")
    now = datetime(2024, 1, 1, 0, 10, 5, tzinfo=UTC)

    assert trigger.get_next_fire_time(None, now) == datetime(2024, 1, 1, 0, 15, 0, tzinfo=UTC)


def test_cron_with_wrong_field_count_is_rejected() -> None:
    with pytest.raises(ValueError, match="5 or 6 fields"):
        build_cron_trigger("* * *")


def test_start_registers_recurring_job_only_by_default() -> None:
    fake_scheduler = _FakeBackgroundScheduler()
    sync_service = _FakeSyncService()
    scheduler = CacheSyncScheduler(
        sync_service,
        scheduler=cast(BackgroundScheduler, fake_scheduler),
    )

    assert scheduler.start_scheduled_sync(DEFAULT_CACHE_UPDATE_SCHEDULE) is True

    assert set(fake_scheduler.jobs) == {CACHE_UPDATE_JOB_ID}
    job = fake_scheduler.jobs[CACHE_UPDATE_JOB_ID]
    assert job["kwargs"] == {"force": False, "trigger_type": "cron"}
    assert job["max_instances"] == 1
    assert sync_service.calls == []

    scheduler.stop()
    assert fake_scheduler.shutdown_calls == 1


def test_startup_run_is_opt_in_and_carries_force_flag() -> None:
    fake_scheduler = _FakeBackgroundScheduler()
    scheduler = CacheSyncScheduler(
        _FakeSyncService(),
        scheduler=cast(BackgroundScheduler, fake_scheduler),
        startup_delay_seconds=5,
    )
    before = datetime.now(UTC)

    scheduler.start_scheduled_sync(
        DEFAULT_CACHE_UPDATE_SCHEDULE,
        run_on_startup=True,
        force_on_startup=True,
    )

    startup_job = fake_scheduler.jobs[STARTUP_CACHE_UPDATE_JOB_ID]
    assert startup_job["kwargs"] == {"force": True, "trigger_type": "startup"}
    trigger = startup_job["trigger"]
    assert isinstance(trigger, DateTrigger)
    assert trigger.run_date >= before
    scheduler.stop()


def test_scheduled_run_failure_is_contained() -> None:
    sink = _CaptureSink()
    sync_service = _FakeSyncService(error=RuntimeError("boom"))
    fake_scheduler = _FakeBackgroundScheduler()
    scheduler = CacheSyncScheduler(
        sync_service,
        scheduler=cast(BackgroundScheduler, fake_scheduler),
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )
    scheduler.start_scheduled_sync(DEFAULT_CACHE_UPDATE_SCHEDULE)

    job = fake_scheduler.jobs[CACHE_UPDATE_JOB_ID]
    job["func"](**job["kwargs"])

    assert sync_service.calls == [False]
    assert [name for name, _ in sink.events] == ["scheduler.tick.start", "scheduler.tick.error"]
    assert sink.events[1][1]["error_type"] == "RuntimeError"


def test_real_scheduler_runs_startup_job(tmp_path: Path) -> None:
    sync_service = _FakeSyncService()
    scheduler = CacheSyncScheduler(
        sync_service,
        lock_path=tmp_path / "scheduler.lock",
        startup_delay_seconds=0,
    )

    try:
        assert scheduler.start_scheduled_sync(
            DEFAULT_CACHE_UPDATE_SCHEDULE,
            run_on_startup=True,
        )
        assert scheduler.running is True
        assert sync_service.called.wait(timeout=5)
    finally:
        scheduler.stop()

    assert sync_service.calls[0] is False
    assert scheduler.running is False


def test_second_scheduler_is_blocked_by_process_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / "scheduler.lock"
    first_backend = _FakeBackgroundScheduler()
    second_backend = _FakeBackgroundScheduler()
    first = CacheSyncScheduler(
        _FakeSyncService(),
        lock_path=lock_path,
        scheduler=cast(BackgroundScheduler, first_backend),
    )
    second = CacheSyncScheduler(
        _FakeSyncService(),
        lock_path=lock_path,
        scheduler=cast(BackgroundScheduler, second_backend),
    )

    try:
        assert first.start_scheduled_sync(DEFAULT_CACHE_UPDATE_SCHEDULE) is True
        assert second.start_scheduled_sync(DEFAULT_CACHE_UPDATE_SCHEDULE) is False
        assert second_backend.jobs == {}
    finally:
        first.stop()
        second.stop()

    third = CacheSyncScheduler(
        _FakeSyncService(),
        lock_path=lock_path,
        scheduler=cast(BackgroundScheduler, _FakeBackgroundScheduler()),
    )
    assert third.start_scheduled_sync(DEFAULT_CACHE_UPDATE_SCHEDULE) is True
    third.stop()


def test_load_settings_requires_google_client_credentials(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("YT_ORCHESTRATOR_GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.setenv("YT_ORCHESTRATOR_GOOGLE_CLIENT_SECRET", "   ")

    with pytest.raises(ValueError, match="YT_ORCHESTRATOR_GOOGLE_CLIENT_ID"):
        load_settings()

    settings = load_settings(validate_oauth_secrets=False)
    assert settings.google_client_secret is None


def test_load_settings_defaults_and_data_dir_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    data_dir = tmp_path / "runtime"
    monkeypatch.setenv("YT_ORCHESTRATOR_DATA_DIR", str(data_dir))

    settings = load_settings()

    assert settings.scheduler_enabled is False
    assert settings.cache_update_schedule == "0 */30 * * * *"
    assert settings.cache_update_run_on_startup is False
    assert settings.cache_update_force_on_startup is False
    assert settings.cache_update_startup_delay_seconds == 5
    assert settings.token_expiry_safety_seconds == 60
    assert settings.channel_recent_videos_max_results == 5
    assert settings.channel_watermark_lookback_days == 7
    assert settings.api_response_cache_ttl_seconds == 300
    assert settings.db_path == (data_dir / "state.db").resolve()
    assert settings.log_dir == (data_dir / "logs").resolve()


def test_load_settings_parses_bool_flags_and_schedule(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("YT_ORCHESTRATOR_ENABLE_CACHE_UPDATE_JOB", "yes")
    monkeypatch.setenv("YT_ORCHESTRATOR_CACHE_UPDATE_RUN_ON_STARTUP", "on")
    monkeypatch.setenv("YT_ORCHESTRATOR_CACHE_UPDATE_FORCE_ON_STARTUP", "maybe")
    monkeypatch.setenv("YT_ORCHESTRATOR_CACHE_UPDATE_SCHEDULE", "  */15   * * * *  ")

    settings = load_settings()

    assert settings.scheduler_enabled is True
    assert settings.cache_update_run_on_startup is True
    assert settings.cache_update_force_on_startup is False
    assert settings.cache_update_schedule == "*/15 * * * *"

    monkeypatch.setenv("YT_ORCHESTRATOR_ENABLE_CACHE_UPDATE_JOB", "off")
    assert load_settings().scheduler_enabled is False


def test_load_settings_rejects_malformed_schedule(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("YT_ORCHESTRATOR_CACHE_UPDATE_SCHEDULE", "every 30 minutes")

    with pytest.raises(ValueError, match="5 or 6 cron fields"):
        load_settings()


def test_load_settings_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "runtime"
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "YT_ORCHESTRATOR_GOOGLE_CLIENT_ID=dotenv-client",
                "YT_ORCHESTRATOR_GOOGLE_CLIENT_SECRET=dotenv-secret",
                f"YT_ORCHESTRATOR_DATA_DIR={data_dir}",
            ]
        ),
        encoding="utf-8",
    )

    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("YT_ORCHESTRATOR_GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("YT_ORCHESTRATOR_GOOGLE_CLIENT_SECRET", raising=False)
    monkeypatch.delenv("YT_ORCHESTRATOR_DATA_DIR", raising=False)

    settings = load_settings()
    assert settings.google_client_id == "dotenv-client"
    assert settings.google_client_secret == "dotenv-secret"
    assert settings.data_dir == data_dir.resolve()
