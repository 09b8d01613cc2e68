from __future__ import annotations

import errno
import logging
import os
from datetime import UTC, datetime, timedelta, tzinfo
from pathlib import Path
from typing import IO, Any, Protocol
from uuid import uuid4

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("yt_orchestrator.scheduler")

CACHE_UPDATE_JOB_ID = "youtube-cache-update"
STARTUP_CACHE_UPDATE_JOB_ID = "youtube-cache-update-startup"

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


class CacheSyncRunner(Protocol):
    def update_all_caches(self, force: bool = False) -> Any:
        ...


def build_cron_trigger(expression: str, *, timezone: tzinfo = UTC) -> CronTrigger:
    """Accepts classic 5-field crontab or 6-field with a leading seconds column."""
    fields = expression.split()
    if len(fields) == 5:
        return CronTrigger.from_crontab(" ".join(fields), timezone=timezone)
    if len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        )
    raise ValueError(f"Cron expression must have 5 or 6 fields, got {len(fields)}: {expression!r}")


class SingleInstanceLock:
    """Advisory `flock` on a file so only one process runs the cache job.

    Several uvicorn workers share one data dir; whichever grabs the lock
    first owns the schedule, the rest serve HTTP only.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle: IO[str] | None = None

    def acquire(self) -> bool:
        if self._handle is not None:
            return True
        if fcntl is None:
            LOGGER.warning("flock unavailable; cache job lock not enforced path=%s", self.path)
            return True

        handle: IO[str] | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.path.open("a+", encoding="utf-8")
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if handle is not None:
                handle.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info("cache job owned by another process lock=%s", self.path)
                return False
            LOGGER.warning(
                "cache job lock unusable path=%s; scheduling without it",
                self.path,
                exc_info=True,
            )
            return True

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("cache job lock release failed path=%s", self.path, exc_info=True)
        finally:
            handle.close()


class CacheSyncScheduler:
    def __init__(
        self,
        sync_service: CacheSyncRunner,
        *,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
        startup_delay_seconds: float = 5,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._sync_service = sync_service
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._lock = SingleInstanceLock(lock_path) if lock_path is not None else None
        self._startup_delay = timedelta(seconds=max(0.0, startup_delay_seconds))
        self._scheduler = scheduler if scheduler is not None else BackgroundScheduler(timezone=UTC)

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start_scheduled_sync(
        self,
        cron_expression: str,
        run_on_startup: bool = False,
        force_on_startup: bool = False,
    ) -> bool:
        if self.running:
            return True

        trigger = build_cron_trigger(cron_expression)
        if self._lock is not None and not self._lock.acquire():
            return False

        self._scheduler.add_job(
            self._run_sync,
            trigger=trigger,
            kwargs={"force": False, "trigger_type": "cron"},
            id=CACHE_UPDATE_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if run_on_startup:
            # Forced runs re-fetch everything; only ever on explicit opt-in.
            self._scheduler.add_job(
                self._run_sync,
                trigger=DateTrigger(run_date=datetime.now(UTC) + self._startup_delay),
                kwargs={"force": force_on_startup, "trigger_type": "startup"},
                id=STARTUP_CACHE_UPDATE_JOB_ID,
                replace_existing=True,
            )

        self._scheduler.start()
        LOGGER.info(
            "cache update job scheduled cron=%r run_on_startup=%s force_on_startup=%s",
            cron_expression,
            run_on_startup,
            force_on_startup,
        )
        return True

    def stop(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
        if self._lock is not None:
            self._lock.release()

    def _run_sync(self, *, force: bool, trigger_type: str) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_tick_type=trigger_type)
        try:
            with self._telemetry.phase(
                "scheduler.tick",
                tick_id=tick_id,
                tick_type=trigger_type,
                force=force,
            ) as outcome:
                summary = self._sync_service.update_all_caches(force)
                outcome["outcome"] = "skipped" if summary is None else "ok"
        except Exception:
            LOGGER.warning("scheduled cache update failed", exc_info=True)
        finally:
            reset_contextvars(**tick_tokens)
