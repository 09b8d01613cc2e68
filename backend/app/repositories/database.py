from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

LOGGER = logging.getLogger("yt_orchestrator.database")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT NULL,
    youtube_access_token TEXT NULL,
    youtube_refresh_token TEXT NULL,
    youtube_token_expiry TEXT NULL,
    reauth_required INTEGER NOT NULL DEFAULT 0,
    reauth_reason TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cached_channels (
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    channel_title TEXT NOT NULL,
    channel_description TEXT NULL,
    thumbnail_url TEXT NULL,
    custom_url TEXT NULL,
    subscriber_count INTEGER NULL,
    video_count INTEGER NULL,
    subscription_id TEXT NULL,
    latest_video_id TEXT NULL,
    latest_video_title TEXT NULL,
    latest_video_thumbnail TEXT NULL,
    latest_video_published_at TEXT NULL,
    is_artist INTEGER NULL,
    cached_at TEXT NOT NULL,
    PRIMARY KEY (user_id, channel_id)
);

CREATE TABLE IF NOT EXISTS cached_playlists (
    user_id TEXT NOT NULL,
    playlist_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NULL,
    thumbnail_url TEXT NULL,
    item_count INTEGER NULL,
    channel_id TEXT NULL,
    channel_title TEXT NULL,
    privacy TEXT NULL,
    etag TEXT NULL,
    is_music_playlist INTEGER NULL,
    cached_at TEXT NOT NULL,
    PRIMARY KEY (user_id, playlist_id)
);

CREATE TABLE IF NOT EXISTS api_usage (
    user_id TEXT NOT NULL,
    service TEXT NOT NULL,
    date_key TEXT NOT NULL,
    count INTEGER NOT NULL,
    last_called_at TEXT NOT NULL,
    PRIMARY KEY (user_id, service, date_key)
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)

    def is_available(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1 FROM cached_channels LIMIT 1").fetchall()
        except sqlite3.Error:
            LOGGER.warning("cache store unavailable path=%s", self._path, exc_info=True)
            return False
        return True
