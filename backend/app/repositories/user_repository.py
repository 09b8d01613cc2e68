from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime

from backend.app.repositories.common import parse_timestamp, to_iso, utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class StoredUser:
    user_id: str
    email: str | None
    youtube_access_token: str | None
    youtube_refresh_token: str | None
    youtube_token_expiry: datetime | None
    reauth_required: bool
    reauth_reason: str | None


class UserRepository:
    """Persisted mirror of per-user YouTube credentials and the re-auth flag."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def get_user(self, user_id: str) -> StoredUser | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT
                    user_id, email, youtube_access_token, youtube_refresh_token,
                    youtube_token_expiry, reauth_required, reauth_reason
                FROM users
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_user(row)

    def list_users_with_access_token(self) -> list[StoredUser]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    user_id, email, youtube_access_token, youtube_refresh_token,
                    youtube_token_expiry, reauth_required, reauth_reason
                FROM users
                WHERE youtube_access_token IS NOT NULL AND youtube_access_token != ''
                ORDER BY user_id
                """,
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def upsert_credentials(
        self,
        *,
        user_id: str,
        access_token: str,
        refresh_token: str | None,
        expiry: datetime | None,
        email: str | None = None,
    ) -> None:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO users (
                    user_id, email, youtube_access_token, youtube_refresh_token,
                    youtube_token_expiry, reauth_required, reauth_reason, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 0, NULL, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    email = COALESCE(excluded.email, users.email),
                    youtube_access_token = excluded.youtube_access_token,
                    youtube_refresh_token = COALESCE(
                        excluded.youtube_refresh_token, users.youtube_refresh_token
                    ),
                    youtube_token_expiry = excluded.youtube_token_expiry,
                    reauth_required = 0,
                    reauth_reason = NULL,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    email,
                    access_token,
                    refresh_token,
                    to_iso(expiry),
                    now_iso,
                    now_iso,
                ),
            )

    def update_access_token(
        self,
        *,
        user_id: str,
        access_token: str,
        expiry: datetime | None,
    ) -> bool:
        with self._db.connection() as conn:
            updated = conn.execute(
                """
                UPDATE users
                SET youtube_access_token = ?, youtube_token_expiry = ?, updated_at = ?
                WHERE user_id = ?
                """,
                (access_token, to_iso(expiry), utc_now_iso(), user_id),
            ).rowcount
        return updated > 0

    def require_reauth(self, *, user_id: str, reason: str) -> bool:
        with self._db.connection() as conn:
            updated = conn.execute(
                """
                UPDATE users
                SET
                    youtube_access_token = NULL,
                    youtube_refresh_token = NULL,
                    youtube_token_expiry = NULL,
                    reauth_required = 1,
                    reauth_reason = ?,
                    updated_at = ?
                WHERE user_id = ?
                """,
                (reason, utc_now_iso(), user_id),
            ).rowcount
        return updated > 0


def _row_to_user(row: sqlite3.Row) -> StoredUser:
    return StoredUser(
        user_id=str(row["user_id"]),
        email=_optional_text(row["email"]),
        youtube_access_token=_optional_text(row["youtube_access_token"]),
        youtube_refresh_token=_optional_text(row["youtube_refresh_token"]),
        youtube_token_expiry=parse_timestamp(row["youtube_token_expiry"]),
        reauth_required=bool(row["reauth_required"]),
        reauth_reason=_optional_text(row["reauth_reason"]),
    )


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None
