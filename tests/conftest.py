from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app
from backend.app.repositories.database import Database
from backend.app.repositories.youtube_cache_repository import (
    CachedChannel,
    CachedPlaylist,
    YouTubeCacheRepository,
)


@pytest.fixture(autouse=True)
def _oauth_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("YT_ORCHESTRATOR_GOOGLE_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("YT_ORCHESTRATOR_GOOGLE_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("YT_ORCHESTRATOR_ENABLE_CACHE_UPDATE_JOB", "0")


def _seed_cached_youtube_data(data_dir: Path) -> None:
    cached_at = datetime(2024, 1, 10, tzinfo=UTC)
    db = Database(data_dir / "state.db")
    db.initialize()
    cache_repo = YouTubeCacheRepository(db)
    cache_repo.insert_channels(
        [
            CachedChannel(
                user_id="user-seeded",
                channel_id="UC_seed_music",
                channel_title="Seeded Music",
                cached_at=cached_at,
                latest_video_id="vid_seed_1",
                latest_video_title="Live Session",
                latest_video_published_at=datetime(2024, 1, 5, tzinfo=UTC),
                is_artist=True,
            ),
            CachedChannel(
                user_id="user-seeded",
                channel_id="UC_seed_talk",
                channel_title="Seeded Talk",
                cached_at=cached_at,
                latest_video_id="vid_seed_2",
            ),
        ]
    )
    cache_repo.insert_playlists(
        [
            CachedPlaylist(
                user_id="user-seeded",
                playlist_id="PL_seed",
                title="Road Trip",
                cached_at=cached_at,
                item_count=12,
                privacy="private",
                etag="etag-seed",
            )
        ]
    )


@pytest.fixture
def seeded_data_dir(tmp_path: Path) -> Path:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    _seed_cached_youtube_data(data_dir)
    return data_dir


@pytest.fixture
def client(seeded_data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = seeded_data_dir

    monkeypatch.setenv("YT_ORCHESTRATOR_DATA_DIR", str(data_dir))
    monkeypatch.setenv("YT_ORCHESTRATOR_TELEMETRY_SINK", "none")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
