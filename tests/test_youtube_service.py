from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import pytest
from googleapiclient.errors import HttpError

from backend.app.services.response_cache import ApiResponseCache
from backend.app.services.youtube_service import (
    ChannelVideo,
    CategoryMusicClassifier,
    PlaylistItem,
    PlaylistItemsResult,
    PlaylistPage,
    SubscriptionPage,
    YouTubeApiClient,
    YouTubeClientFactory,
    YouTubeServiceError,
)


class _FakeRequest:
    def __init__(self, response: dict[str, Any] | None = None, error: Exception | None = None):
        self.response = response or {}
        self.error = error
        self.headers: dict[str, str] = {}
        self.executions = 0

    def execute(self) -> dict[str, Any]:
        self.executions += 1
        if self.error is not None:
            raise self.error
        return self.response


class _FakeCollection:
    def __init__(self, request: _FakeRequest) -> None:
        self.request = request
        self.calls: list[dict[str, Any]] = []

    def list(self, **kwargs: Any) -> _FakeRequest:
        self.calls.append(kwargs)
        return self.request


class _FakeYouTubeClient:
    def __init__(self, **collections: _FakeCollection) -> None:
        self._collections = collections

    def subscriptions(self) -> _FakeCollection:
        return self._collections["subscriptions"]

    def playlists(self) -> _FakeCollection:
        return self._collections["playlists"]

    def search(self) -> _FakeCollection:
        return self._collections["search"]

    def playlistItems(self) -> _FakeCollection:  # noqa: N802
        return self._collections["playlistItems"]

    def videos(self) -> _FakeCollection:
        return self._collections["videos"]


def _http_error(status: int) -> HttpError:
    return HttpError(SimpleNamespace(status=status, reason="error"), b"")


def test_list_subscriptions_parses_items_and_uses_response_cache() -> None:
    request = _FakeRequest(
        {
            "items": [
                {
                    "id": "sub_1",
                    "snippet": {
                        "title": "Artist Channel",
                        "description": "Official uploads",
                        "resourceId": {"channelId": "UC_artist"},
                        "thumbnails": {
                            "default": {"url": "https://img.test/default.jpg"},
                            "maxres": {"url": "https://img.test/maxres.jpg"},
                            "high": {"url": "https://img.test/high.jpg"},
                        },
                    },
                },
                {"id": "sub_broken", "snippet": {"title": "No channel id"}},
            ],
            "nextPageToken": "next-1",
        }
    )
    collection = _FakeCollection(request)
    client = YouTubeApiClient(
        _FakeYouTubeClient(subscriptions=collection),
        user_id="user-1",
        response_cache=ApiResponseCache(ttl_seconds=300),
    )

    page = client.list_subscriptions()
    cached_page = client.list_subscriptions()

    assert isinstance(page, SubscriptionPage)
    assert cached_page is page
    assert request.executions == 1
    assert page.next_page_token == "next-1"
    assert len(page.items) == 1
    item = page.items[0]
    assert item.subscription_id == "sub_1"
    assert item.channel_id == "UC_artist"
    assert item.thumbnail_url == "https://img.test/high.jpg"
    assert collection.calls[0]["mine"] is True
    assert "pageToken" not in collection.calls[0]


def test_list_playlists_reads_privacy_count_and_etag() -> None:
    request = _FakeRequest(
        {
            "items": [
                {
                    "id": "PL1",
                    "etag": "etag-pl1",
                    "snippet": {
                        "title": "Gym",
                        "channelId": "UC_me",
                        "channelTitle": "Me",
                        "thumbnails": {"medium": {"url": "https://img.test/medium.jpg"}},
                    },
                    "contentDetails": {"itemCount": 42},
                    "status": {"privacyStatus": "private"},
                }
            ]
        }
    )
    client = YouTubeApiClient(
        _FakeYouTubeClient(playlists=_FakeCollection(request)),
        user_id="user-1",
    )

    page = client.list_playlists("page-2")

    assert isinstance(page, PlaylistPage)
    assert page.next_page_token is None
    summary = page.items[0]
    assert summary.playlist_id == "PL1"
    assert summary.item_count == 42
    assert summary.privacy == "private"
    assert summary.etag == "etag-pl1"
    assert summary.thumbnail_url == "https://img.test/medium.jpg"


def test_list_channel_videos_since_filters_watermark_and_sorts_newest_first() -> None:
    request = _FakeRequest(
        {
            "items": [
                {
                    "id": {"videoId": "vid_boundary"},
                    "snippet": {"title": "Boundary", "publishedAt": "2024-01-01T00:00:00Z"},
                },
                {
                    "id": {"videoId": "vid_older"},
                    "snippet": {"title": "Older", "publishedAt": "2024-01-03T00:00:00Z"},
                },
                {
                    "id": {"videoId": "vid_newer"},
                    "snippet": {"publishedAt": "2024-01-05T08:30:00Z"},
                },
            ]
        }
    )
    collection = _FakeCollection(request)
    client = YouTubeApiClient(_FakeYouTubeClient(search=collection), user_id="user-1")

    videos = client.list_channel_videos_since("UC1", datetime(2024, 1, 1, tzinfo=UTC), 5)

    assert [video.video_id for video in videos] == ["vid_newer", "vid_older"]
    assert videos[0].title is None
    assert videos[0].published_at == datetime(2024, 1, 5, 8, 30, tzinfo=UTC)
    assert collection.calls[0] == {
        "part": "snippet",
        "channelId": "UC1",
        "order": "date",
        "type": "video",
        "publishedAfter": "2024-01-01T00:00:00Z",
        "maxResults": 5,
    }
    assert client.estimated_api_units == 100


def test_list_playlist_items_sends_etag_and_reports_not_modified() -> None:
    request = _FakeRequest(error=_http_error(304))
    client = YouTubeApiClient(
        _FakeYouTubeClient(playlistItems=_FakeCollection(request)),
        user_id="user-1",
    )

    result = client.list_playlist_items("PL1", etag="etag-1")

    assert request.headers["If-None-Match"] == "etag-1"
    assert result == PlaylistItemsResult(items=[], etag="etag-1", not_modified=True)


def test_list_playlist_items_parses_page() -> None:
    request = _FakeRequest(
        {
            "etag": "etag-2",
            "pageInfo": {"totalResults": 120},
            "nextPageToken": "next",
            "items": [
                {
                    "snippet": {
                        "title": "Track",
                        "position": 0,
                        "publishedAt": "2024-02-01T10:00:00Z",
                        "thumbnails": {"standard": {"url": "https://img.test/sd.jpg"}},
                    },
                    "contentDetails": {"videoId": "vid_1"},
                }
            ],
        }
    )
    client = YouTubeApiClient(
        _FakeYouTubeClient(playlistItems=_FakeCollection(request)),
        user_id="user-1",
    )

    result = client.list_playlist_items("PL1")

    assert request.headers == {}
    assert result.not_modified is False
    assert result.etag == "etag-2"
    assert result.total_results == 120
    assert result.next_page_token == "next"
    assert result.items == [
        PlaylistItem(
            video_id="vid_1",
            title="Track",
            thumbnail_url="https://img.test/sd.jpg",
            position=0,
            added_at=datetime(2024, 2, 1, 10, 0, tzinfo=UTC),
        )
    ]


def test_http_errors_become_service_errors() -> None:
    request = _FakeRequest(error=_http_error(403))
    client = YouTubeApiClient(
        _FakeYouTubeClient(playlistItems=_FakeCollection(request)),
        user_id="user-1",
    )

    with pytest.raises(YouTubeServiceError):
        client.list_playlist_items("PL1", etag="etag-1")


class _CategoryApi:
    def __init__(self, videos: list[str], categories: list[str]) -> None:
        self.videos = videos
        self.categories = categories
        self.category_requests: list[list[str]] = []
        self.playlist_requests: list[tuple[str, int]] = []

    def list_channel_videos_since(
        self,
        channel_id: str,
        since: datetime,
        max_results: int,
    ) -> list[ChannelVideo]:
        _ = channel_id
        _ = since
        return [
            ChannelVideo(video_id=video_id, title=None, thumbnail_url=None, published_at=None)
            for video_id in self.videos[:max_results]
        ]

    def list_playlist_items(
        self,
        playlist_id: str,
        page_token: str | None = None,
        etag: str | None = None,
        max_results: int = 50,
    ) -> PlaylistItemsResult:
        _ = page_token
        _ = etag
        self.playlist_requests.append((playlist_id, max_results))
        items = [
            PlaylistItem(
                video_id=video_id,
                title=None,
                thumbnail_url=None,
                position=index,
                added_at=None,
            )
            for index, video_id in enumerate(self.videos)
        ]
        return PlaylistItemsResult(items=items, etag="etag")

    def list_video_categories(self, video_ids: Sequence[str]) -> list[str]:
        self.category_requests.append(list(video_ids))
        return self.categories[: len(video_ids)]


def test_channel_is_music_when_half_of_sample_is_music() -> None:
    api = _CategoryApi(["a", "b", "c", "d"], ["10", "10", "22", "24"])
    assert CategoryMusicClassifier(api).classify_channel_as_music("UC1", 4) is True  # type: ignore[arg-type]

    api = _CategoryApi(["a", "b", "c", "d", "e"], ["10", "10", "22", "24", "1"])
    assert CategoryMusicClassifier(api).classify_channel_as_music("UC1", 5) is False  # type: ignore[arg-type]


def test_empty_sample_is_not_music() -> None:
    api = _CategoryApi([], [])

    assert CategoryMusicClassifier(api).classify_channel_as_music("UC1", 5) is False  # type: ignore[arg-type]
    assert api.category_requests == []


def test_playlist_classifier_samples_first_ten_items() -> None:
    videos = [f"vid_{index}" for index in range(15)]
    api = _CategoryApi(videos, ["10"] * 15)

    assert CategoryMusicClassifier(api).classify_playlist_as_music("PL1") is True  # type: ignore[arg-type]
    assert api.playlist_requests == [("PL1", 10)]
    assert api.category_requests == [videos[:10]]


def test_client_factory_builds_discovery_client(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def _build(service: str, version: str, **kwargs: Any) -> object:
        captured["service"] = service
        captured["version"] = version
        captured.update(kwargs)
        return object()

    modules = {
        "google.oauth2.credentials": SimpleNamespace(
            Credentials=lambda token: SimpleNamespace(token=token)
        ),
        "googleapiclient.discovery": SimpleNamespace(build=_build),
    }
    monkeypatch.setattr(
        "backend.app.services.youtube_service.import_module",
        lambda name: modules[name],
    )

    client = YouTubeClientFactory()("access-1", "user-1")

    assert isinstance(client, YouTubeApiClient)
    assert captured["service"] == "youtube"
    assert captured["version"] == "v3"
    assert captured["credentials"].token == "access-1"
    assert captured["cache_discovery"] is False
