from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database

LOGGER = logging.getLogger("yt_orchestrator.api_usage")

YOUTUBE_SERVICE = "youtube"
DAILY_ALLOWANCE = 1


@dataclass(frozen=True)
class ApiUsageSnapshot:
    user_id: str
    service: str
    date_key: str
    count: int
    last_called_at: str | None


def utc_date_key(now: datetime | None = None) -> str:
    current = now if now is not None else datetime.now(UTC)
    return current.astimezone(UTC).date().isoformat()


class ApiUsageRepository:
    """Per user, per service, per UTC day call ledger.

    Used to let privileged endpoints hit the YouTube API at most once a day
    for a given user.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def acquire_daily(self, user_id: str, *, service: str = YOUTUBE_SERVICE) -> bool:
        date_key = utc_date_key()
        now_iso = utc_now_iso()
        try:
            with self._db.connection() as conn:
                # count only grows while below the allowance, so rowcount tells us who won.
                acquired = conn.execute(
                    """
                    INSERT INTO api_usage (user_id, service, date_key, count, last_called_at)
                    VALUES (?, ?, ?, 1, ?)
                    ON CONFLICT(user_id, service, date_key) DO UPDATE SET
                        count = api_usage.count + 1,
                        last_called_at = excluded.last_called_at
                    WHERE api_usage.count < ?
                    """,
                    (user_id, service, date_key, now_iso, DAILY_ALLOWANCE),
                ).rowcount
        except sqlite3.Error:
            LOGGER.warning(
                "api usage acquire failed; denying call user_id=%s service=%s",
                user_id,
                service,
                exc_info=True,
            )
            return False
        return acquired > 0

    def is_daily_available(self, user_id: str, *, service: str = YOUTUBE_SERVICE) -> bool:
        snapshot = self.snapshot(user_id, service=service)
        return snapshot.count < DAILY_ALLOWANCE

    def snapshot(self, user_id: str, *, service: str = YOUTUBE_SERVICE) -> ApiUsageSnapshot:
        date_key = utc_date_key()
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT count, last_called_at
                FROM api_usage
                WHERE user_id = ? AND service = ? AND date_key = ?
                """,
                (user_id, service, date_key),
            ).fetchone()

        return ApiUsageSnapshot(
            user_id=user_id,
            service=service,
            date_key=date_key,
            count=int(row["count"]) if row is not None else 0,
            last_called_at=str(row["last_called_at"]) if row is not None else None,
        )
