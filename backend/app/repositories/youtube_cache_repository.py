from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from backend.app.repositories.common import parse_timestamp, to_iso, utc_now
from backend.app.repositories.database import Database

LOGGER = logging.getLogger("yt_orchestrator.cache_repository")

# Stored in latest_video_title when the API returned a video without a title.
# NULL keeps meaning "never checked".
UNSET_VIDEO_TITLE = ""

PLAYLIST_PRIVACY_VALUES: frozenset[str] = frozenset({"public", "private", "unlisted"})


@dataclass(frozen=True)
class CachedChannel:
    user_id: str
    channel_id: str
    channel_title: str
    cached_at: datetime
    channel_description: str | None = None
    thumbnail_url: str | None = None
    custom_url: str | None = None
    subscriber_count: int | None = None
    video_count: int | None = None
    subscription_id: str | None = None
    latest_video_id: str | None = None
    latest_video_title: str | None = None
    latest_video_thumbnail: str | None = None
    latest_video_published_at: datetime | None = None
    is_artist: bool | None = None


@dataclass(frozen=True)
class CachedPlaylist:
    user_id: str
    playlist_id: str
    title: str
    cached_at: datetime
    description: str | None = None
    thumbnail_url: str | None = None
    item_count: int | None = None
    channel_id: str | None = None
    channel_title: str | None = None
    privacy: str | None = None
    etag: str | None = None
    is_music_playlist: bool | None = None


@dataclass(frozen=True)
class BulkInsertResult:
    inserted: int
    failed: int


@dataclass(frozen=True)
class UserCacheStats:
    channels: int
    playlists: int
    unclassified_channels: int
    unclassified_playlists: int
    channels_missing_video_title: int
    channels_cached_at: datetime | None
    playlists_cached_at: datetime | None


_CHANNEL_COLUMNS = (
    "user_id",
    "channel_id",
    "channel_title",
    "channel_description",
    "thumbnail_url",
    "custom_url",
    "subscriber_count",
    "video_count",
    "subscription_id",
    "latest_video_id",
    "latest_video_title",
    "latest_video_thumbnail",
    "latest_video_published_at",
    "is_artist",
    "cached_at",
)

_PLAYLIST_COLUMNS = (
    "user_id",
    "playlist_id",
    "title",
    "description",
    "thumbnail_url",
    "item_count",
    "channel_id",
    "channel_title",
    "privacy",
    "etag",
    "is_music_playlist",
    "cached_at",
)


def _insert_sql(table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def _upsert_sql(table: str, columns: Sequence[str], key_columns: Sequence[str]) -> str:
    assignments = ",\n".join(
        f"    {column} = excluded.{column}" for column in columns if column not in key_columns
    )
    return (
        f"{_insert_sql(table, columns)}\n"
        f"ON CONFLICT({', '.join(key_columns)}) DO UPDATE SET\n{assignments}"
    )


_INSERT_CHANNEL_SQL = _insert_sql("cached_channels", _CHANNEL_COLUMNS)
_UPSERT_CHANNEL_SQL = _upsert_sql("cached_channels", _CHANNEL_COLUMNS, ("user_id", "channel_id"))
_INSERT_PLAYLIST_SQL = _insert_sql("cached_playlists", _PLAYLIST_COLUMNS)
_UPSERT_PLAYLIST_SQL = _upsert_sql(
    "cached_playlists", _PLAYLIST_COLUMNS, ("user_id", "playlist_id")
)
# Per-row failures in a bulk insert: constraint violations and values sqlite cannot bind.
_ROW_ERRORS = (sqlite3.IntegrityError, sqlite3.InterfaceError, sqlite3.ProgrammingError)


class YouTubeCacheRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    # Channels.

    def list_channels(self, user_id: str) -> list[CachedChannel]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {", ".join(_CHANNEL_COLUMNS)}
                FROM cached_channels
                WHERE user_id = ?
                ORDER BY channel_title COLLATE NOCASE, channel_id
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def get_channel(self, user_id: str, channel_id: str) -> CachedChannel | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {", ".join(_CHANNEL_COLUMNS)}
                FROM cached_channels
                WHERE user_id = ? AND channel_id = ?
                """,
                (user_id, channel_id),
            ).fetchone()
        return _row_to_channel(row) if row is not None else None

    def count_channels(self, user_id: str) -> int:
        return self._count("cached_channels", user_id)

    def insert_channels(self, channels: Sequence[CachedChannel]) -> BulkInsertResult:
        return self._insert_many(
            _INSERT_CHANNEL_SQL,
            [(channel.channel_id, _channel_params(channel)) for channel in channels],
            entity="channel",
        )

    def save_channel(self, channel: CachedChannel) -> None:
        with self._db.connection() as conn:
            conn.execute(_UPSERT_CHANNEL_SQL, _channel_params(channel))

    def delete_channels(self, user_id: str) -> int:
        return self._delete("cached_channels", user_id)

    # Playlists.

    def list_playlists(self, user_id: str) -> list[CachedPlaylist]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {", ".join(_PLAYLIST_COLUMNS)}
                FROM cached_playlists
                WHERE user_id = ?
                ORDER BY title COLLATE NOCASE, playlist_id
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_playlist(row) for row in rows]

    def get_playlist(self, user_id: str, playlist_id: str) -> CachedPlaylist | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {", ".join(_PLAYLIST_COLUMNS)}
                FROM cached_playlists
                WHERE user_id = ? AND playlist_id = ?
                """,
                (user_id, playlist_id),
            ).fetchone()
        return _row_to_playlist(row) if row is not None else None

    def count_playlists(self, user_id: str) -> int:
        return self._count("cached_playlists", user_id)

    def insert_playlists(self, playlists: Sequence[CachedPlaylist]) -> BulkInsertResult:
        return self._insert_many(
            _INSERT_PLAYLIST_SQL,
            [(playlist.playlist_id, _playlist_params(playlist)) for playlist in playlists],
            entity="playlist",
        )

    def save_playlist(self, playlist: CachedPlaylist) -> None:
        with self._db.connection() as conn:
            conn.execute(_UPSERT_PLAYLIST_SQL, _playlist_params(playlist))

    def delete_playlists(self, user_id: str) -> int:
        return self._delete("cached_playlists", user_id)

    # Maintenance.

    def mark_unclassified_as_music(self, user_id: str) -> tuple[int, int]:
        now_iso = utc_now().isoformat()
        with self._db.connection() as conn:
            channels = conn.execute(
                """
                UPDATE cached_channels
                SET is_artist = 1, cached_at = ?
                WHERE user_id = ? AND is_artist IS NULL
                """,
                (now_iso, user_id),
            ).rowcount
            playlists = conn.execute(
                """
                UPDATE cached_playlists
                SET is_music_playlist = 1, cached_at = ?
                WHERE user_id = ? AND is_music_playlist IS NULL
                """,
                (now_iso, user_id),
            ).rowcount
        return max(0, channels), max(0, playlists)

    def fill_missing_video_titles(self, user_id: str) -> int:
        with self._db.connection() as conn:
            updated = conn.execute(
                """
                UPDATE cached_channels
                SET latest_video_title = ?
                WHERE user_id = ? AND latest_video_id IS NOT NULL AND latest_video_title IS NULL
                """,
                (UNSET_VIDEO_TITLE, user_id),
            ).rowcount
        return max(0, updated)

    def list_user_ids(self) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT user_id FROM cached_channels
                UNION
                SELECT user_id FROM cached_playlists
                ORDER BY user_id
                """
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def stats(self, user_id: str) -> UserCacheStats:
        with self._db.connection() as conn:
            channel_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN is_artist IS NULL THEN 1 ELSE 0 END) AS unclassified,
                    SUM(
                        CASE
                            WHEN latest_video_id IS NOT NULL AND latest_video_title IS NULL
                            THEN 1 ELSE 0
                        END
                    ) AS missing_title,
                    MAX(cached_at) AS last_cached_at
                FROM cached_channels
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            playlist_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN is_music_playlist IS NULL THEN 1 ELSE 0 END) AS unclassified,
                    MAX(cached_at) AS last_cached_at
                FROM cached_playlists
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()

        return UserCacheStats(
            channels=int(channel_row["total"] or 0),
            playlists=int(playlist_row["total"] or 0),
            unclassified_channels=int(channel_row["unclassified"] or 0),
            unclassified_playlists=int(playlist_row["unclassified"] or 0),
            channels_missing_video_title=int(channel_row["missing_title"] or 0),
            channels_cached_at=parse_timestamp(channel_row["last_cached_at"]),
            playlists_cached_at=parse_timestamp(playlist_row["last_cached_at"]),
        )

    def _count(self, table: str, user_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM {table} WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return int(row["total"]) if row is not None else 0

    def _delete(self, table: str, user_id: str) -> int:
        with self._db.connection() as conn:
            deleted = conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,)).rowcount
        return max(0, deleted)

    def _insert_many(
        self,
        sql: str,
        rows: Sequence[tuple[str, tuple[object, ...]]],
        *,
        entity: str,
    ) -> BulkInsertResult:
        inserted = 0
        failed = 0
        with self._db.connection() as conn:
            for entity_id, params in rows:
                # A failed statement is rolled back on its own; earlier rows stay pending.
                try:
                    conn.execute(sql, params)
                except _ROW_ERRORS as exc:
                    failed += 1
                    LOGGER.warning(
                        "cache bulk insert row skipped entity=%s id=%s error=%s",
                        entity,
                        entity_id,
                        exc,
                    )
                    continue
                inserted += 1
        return BulkInsertResult(inserted=inserted, failed=failed)


def _channel_params(channel: CachedChannel) -> tuple[object, ...]:
    return (
        channel.user_id,
        channel.channel_id,
        channel.channel_title,
        channel.channel_description,
        channel.thumbnail_url,
        channel.custom_url,
        channel.subscriber_count,
        channel.video_count,
        channel.subscription_id,
        channel.latest_video_id,
        channel.latest_video_title,
        channel.latest_video_thumbnail,
        to_iso(channel.latest_video_published_at),
        _bool_to_db(channel.is_artist),
        to_iso(channel.cached_at),
    )


def _playlist_params(playlist: CachedPlaylist) -> tuple[object, ...]:
    privacy = playlist.privacy if playlist.privacy in PLAYLIST_PRIVACY_VALUES else None
    return (
        playlist.user_id,
        playlist.playlist_id,
        playlist.title,
        playlist.description,
        playlist.thumbnail_url,
        playlist.item_count,
        playlist.channel_id,
        playlist.channel_title,
        privacy,
        playlist.etag,
        _bool_to_db(playlist.is_music_playlist),
        to_iso(playlist.cached_at),
    )


def _row_to_channel(row: sqlite3.Row) -> CachedChannel:
    return CachedChannel(
        user_id=str(row["user_id"]),
        channel_id=str(row["channel_id"]),
        channel_title=str(row["channel_title"]),
        cached_at=parse_timestamp(row["cached_at"]) or utc_now(),
        channel_description=_to_optional_str(row["channel_description"]),
        thumbnail_url=_to_optional_str(row["thumbnail_url"]),
        custom_url=_to_optional_str(row["custom_url"]),
        subscriber_count=_to_optional_int(row["subscriber_count"]),
        video_count=_to_optional_int(row["video_count"]),
        subscription_id=_to_optional_str(row["subscription_id"]),
        latest_video_id=_to_optional_str(row["latest_video_id"]),
        # Keep the empty-string marker intact.
        latest_video_title=(
            row["latest_video_title"] if isinstance(row["latest_video_title"], str) else None
        ),
        latest_video_thumbnail=_to_optional_str(row["latest_video_thumbnail"]),
        latest_video_published_at=parse_timestamp(row["latest_video_published_at"]),
        is_artist=_db_to_bool(row["is_artist"]),
    )


def _row_to_playlist(row: sqlite3.Row) -> CachedPlaylist:
    return CachedPlaylist(
        user_id=str(row["user_id"]),
        playlist_id=str(row["playlist_id"]),
        title=str(row["title"]),
        cached_at=parse_timestamp(row["cached_at"]) or utc_now(),
        description=_to_optional_str(row["description"]),
        thumbnail_url=_to_optional_str(row["thumbnail_url"]),
        item_count=_to_optional_int(row["item_count"]),
        channel_id=_to_optional_str(row["channel_id"]),
        channel_title=_to_optional_str(row["channel_title"]),
        privacy=_to_optional_str(row["privacy"]),
        etag=_to_optional_str(row["etag"]),
        is_music_playlist=_db_to_bool(row["is_music_playlist"]),
    )


def _bool_to_db(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _db_to_bool(value: object) -> bool | None:
    if value is None:
        return None
    if isinstance(value, int):
        return bool(value)
    return None


def _to_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _to_optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    return None
