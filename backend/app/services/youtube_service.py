from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib import import_module
from typing import Any, Protocol, cast

from googleapiclient.errors import HttpError

from backend.app.repositories.common import EPOCH, parse_timestamp
from backend.app.services.response_cache import ApiResponseCache

LOGGER = logging.getLogger("yt_orchestrator.youtube")

MUSIC_CATEGORY_ID = "10"
MUSIC_CATEGORY_RATIO = 0.5
PLAYLIST_CLASSIFIER_SAMPLE_SIZE = 10
MAX_PAGE_SIZE = 50

# Rough YouTube Data API v3 costs, used for per-run quota logging.
SEARCH_LIST_UNITS = 100
LIST_CALL_UNITS = 1


class YouTubeServiceError(Exception):
    pass


@dataclass(frozen=True)
class SubscriptionItem:
    subscription_id: str
    channel_id: str
    title: str
    description: str | None = None
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class SubscriptionPage:
    items: list[SubscriptionItem]
    next_page_token: str | None


@dataclass(frozen=True)
class PlaylistSummary:
    playlist_id: str
    title: str
    description: str | None = None
    thumbnail_url: str | None = None
    item_count: int | None = None
    channel_id: str | None = None
    channel_title: str | None = None
    privacy: str | None = None
    etag: str | None = None


@dataclass(frozen=True)
class PlaylistPage:
    items: list[PlaylistSummary]
    next_page_token: str | None


@dataclass(frozen=True)
class ChannelVideo:
    video_id: str
    title: str | None
    thumbnail_url: str | None
    published_at: datetime | None


@dataclass(frozen=True)
class PlaylistItem:
    video_id: str
    title: str | None
    thumbnail_url: str | None
    position: int | None
    added_at: datetime | None


@dataclass(frozen=True)
class PlaylistItemsResult:
    items: list[PlaylistItem]
    etag: str | None
    not_modified: bool = False
    next_page_token: str | None = None
    total_results: int | None = None


class YouTubeApi(Protocol):
    def list_subscriptions(self, page_token: str | None = None) -> SubscriptionPage:
        ...

    def list_playlists(self, page_token: str | None = None) -> PlaylistPage:
        ...

    def list_channel_videos_since(
        self,
        channel_id: str,
        since: datetime,
        max_results: int,
    ) -> list[ChannelVideo]:
        ...

    def list_playlist_items(
        self,
        playlist_id: str,
        page_token: str | None = None,
        etag: str | None = None,
        max_results: int = MAX_PAGE_SIZE,
    ) -> PlaylistItemsResult:
        ...

    def list_video_categories(self, video_ids: Sequence[str]) -> list[str]:
        ...


class MusicClassifier(Protocol):
    def classify_channel_as_music(self, channel_id: str, sample_size: int) -> bool:
        ...

    def classify_playlist_as_music(self, playlist_id: str) -> bool:
        ...


class YouTubeApiClient:
    """YouTube Data API v3 calls needed by the cache sync, bound to one user's access token."""

    def __init__(
        self,
        client: Any,
        *,
        user_id: str,
        response_cache: ApiResponseCache | None = None,
    ) -> None:
        self._client = client
        self._user_id = user_id
        self._response_cache = response_cache
        self.estimated_api_units = 0

    def list_subscriptions(self, page_token: str | None = None) -> SubscriptionPage:
        cached = self._cached("subscriptions", page_token)
        if isinstance(cached, SubscriptionPage):
            return cached

        query_kwargs: dict[str, object] = {
            "part": "snippet,contentDetails",
            "mine": True,
            "maxResults": MAX_PAGE_SIZE,
        }
        if page_token is not None:
            query_kwargs["pageToken"] = page_token

        response = self._execute(self._client.subscriptions().list(**query_kwargs))
        self.estimated_api_units += LIST_CALL_UNITS

        items: list[SubscriptionItem] = []
        for raw_item in _as_list(response.get("items")):
            item = _as_dict(raw_item)
            snippet = _as_dict(item.get("snippet"))
            resource = _as_dict(snippet.get("resourceId"))
            subscription_id = _coerce_nonempty_string(item.get("id"))
            channel_id = _coerce_nonempty_string(resource.get("channelId"))
            if subscription_id is None or channel_id is None:
                continue
            items.append(
                SubscriptionItem(
                    subscription_id=subscription_id,
                    channel_id=channel_id,
                    title=_coerce_nonempty_string(snippet.get("title")) or channel_id,
                    description=_coerce_nonempty_string(snippet.get("description")),
                    thumbnail_url=_best_thumbnail_url(snippet),
                )
            )

        page = SubscriptionPage(items=items, next_page_token=_next_page_token(response))
        self._store("subscriptions", page_token, value=page)
        return page

    def list_playlists(self, page_token: str | None = None) -> PlaylistPage:
        cached = self._cached("playlists", page_token)
        if isinstance(cached, PlaylistPage):
            return cached

        query_kwargs: dict[str, object] = {
            "part": "snippet,contentDetails,status",
            "mine": True,
            "maxResults": MAX_PAGE_SIZE,
        }
        if page_token is not None:
            query_kwargs["pageToken"] = page_token

        response = self._execute(self._client.playlists().list(**query_kwargs))
        self.estimated_api_units += LIST_CALL_UNITS

        items: list[PlaylistSummary] = []
        for raw_item in _as_list(response.get("items")):
            item = _as_dict(raw_item)
            playlist_id = _coerce_nonempty_string(item.get("id"))
            if playlist_id is None:
                continue
            snippet = _as_dict(item.get("snippet"))
            content_details = _as_dict(item.get("contentDetails"))
            status = _as_dict(item.get("status"))
            items.append(
                PlaylistSummary(
                    playlist_id=playlist_id,
                    title=_coerce_nonempty_string(snippet.get("title")) or playlist_id,
                    description=_coerce_nonempty_string(snippet.get("description")),
                    thumbnail_url=_best_thumbnail_url(snippet),
                    item_count=_coerce_int(content_details.get("itemCount")),
                    channel_id=_coerce_nonempty_string(snippet.get("channelId")),
                    channel_title=_coerce_nonempty_string(snippet.get("channelTitle")),
                    privacy=_coerce_nonempty_string(status.get("privacyStatus")),
                    etag=_coerce_nonempty_string(item.get("etag")),
                )
            )

        page = PlaylistPage(items=items, next_page_token=_next_page_token(response))
        self._store("playlists", page_token, value=page)
        return page

    def list_channel_videos_since(
        self,
        channel_id: str,
        since: datetime,
        max_results: int,
    ) -> list[ChannelVideo]:
        since_utc = _as_utc(since)
        response = self._execute(
            self._client.search().list(
                part="snippet",
                channelId=channel_id,
                order="date",
                type="video",
                publishedAfter=_rfc3339(since_utc),
                maxResults=max(1, min(MAX_PAGE_SIZE, max_results)),
            )
        )
        self.estimated_api_units += SEARCH_LIST_UNITS

        videos: list[ChannelVideo] = []
        for raw_item in _as_list(response.get("items")):
            item = _as_dict(raw_item)
            video_id = _coerce_nonempty_string(_as_dict(item.get("id")).get("videoId"))
            if video_id is None:
                continue
            snippet = _as_dict(item.get("snippet"))
            published_at = parse_timestamp(snippet.get("publishedAt"))
            # publishedAfter is inclusive on the API side.
            if published_at is not None and published_at <= since_utc:
                continue
            raw_title = snippet.get("title")
            videos.append(
                ChannelVideo(
                    video_id=video_id,
                    title=raw_title if isinstance(raw_title, str) else None,
                    thumbnail_url=_best_thumbnail_url(snippet),
                    published_at=published_at,
                )
            )

        videos.sort(key=_video_sort_key, reverse=True)
        return videos

    def list_playlist_items(
        self,
        playlist_id: str,
        page_token: str | None = None,
        etag: str | None = None,
        max_results: int = MAX_PAGE_SIZE,
    ) -> PlaylistItemsResult:
        query_kwargs: dict[str, object] = {
            "part": "snippet,contentDetails",
            "playlistId": playlist_id,
            "maxResults": max(1, min(MAX_PAGE_SIZE, max_results)),
        }
        if page_token is not None:
            query_kwargs["pageToken"] = page_token

        request = self._client.playlistItems().list(**query_kwargs)
        if etag:
            request.headers["If-None-Match"] = etag

        self.estimated_api_units += LIST_CALL_UNITS
        try:
            response = cast(dict[str, Any], request.execute())
        except HttpError as exc:
            if etag and _http_status(exc) == 304:
                LOGGER.debug("youtube playlist_items not_modified playlist_id=%s", playlist_id)
                return PlaylistItemsResult(items=[], etag=etag, not_modified=True)
            raise YouTubeServiceError(
                f"YouTube playlistItems.list failed for {playlist_id}: {exc}"
            ) from exc

        items: list[PlaylistItem] = []
        for index, raw_item in enumerate(_as_list(response.get("items"))):
            item = _as_dict(raw_item)
            snippet = _as_dict(item.get("snippet"))
            content_details = _as_dict(item.get("contentDetails"))
            video_id = _coerce_nonempty_string(
                content_details.get("videoId")
            ) or _coerce_nonempty_string(_as_dict(snippet.get("resourceId")).get("videoId"))
            if video_id is None:
                continue
            raw_title = snippet.get("title")
            position = _coerce_int(snippet.get("position"))
            items.append(
                PlaylistItem(
                    video_id=video_id,
                    title=raw_title if isinstance(raw_title, str) else None,
                    thumbnail_url=_best_thumbnail_url(snippet),
                    position=position if position is not None else index,
                    added_at=parse_timestamp(snippet.get("publishedAt")),
                )
            )

        page_info = _as_dict(response.get("pageInfo"))
        return PlaylistItemsResult(
            items=items,
            etag=_coerce_nonempty_string(response.get("etag")),
            not_modified=False,
            next_page_token=_next_page_token(response),
            total_results=_coerce_int(page_info.get("totalResults")),
        )

    def list_video_categories(self, video_ids: Sequence[str]) -> list[str]:
        categories: list[str] = []
        unique_ids = [video_id for video_id in dict.fromkeys(video_ids) if video_id]
        for start in range(0, len(unique_ids), MAX_PAGE_SIZE):
            chunk = unique_ids[start : start + MAX_PAGE_SIZE]
            response = self._execute(
                self._client.videos().list(
                    part="snippet",
                    id=",".join(chunk),
                    fields="items(snippet/categoryId)",
                    maxResults=len(chunk),
                )
            )
            self.estimated_api_units += LIST_CALL_UNITS
            for raw_item in _as_list(response.get("items")):
                snippet = _as_dict(_as_dict(raw_item).get("snippet"))
                category_id = _coerce_nonempty_string(snippet.get("categoryId"))
                if category_id is not None:
                    categories.append(category_id)
        return categories

    def _execute(self, request: Any) -> dict[str, Any]:
        try:
            return _as_dict(request.execute())
        except HttpError as exc:
            raise YouTubeServiceError(f"YouTube Data API request failed: {exc}") from exc

    def _cached(self, kind: str, page_token: str | None) -> Any | None:
        if self._response_cache is None:
            return None
        return self._response_cache.get(self._user_id, kind, page_token)

    def _store(self, kind: str, page_token: str | None, *, value: Any) -> None:
        if self._response_cache is None:
            return
        self._response_cache.set(self._user_id, kind, page_token, value=value)


class CategoryMusicClassifier:
    """A channel or playlist is music when at least half of its sampled videos are category 10."""

    def __init__(self, api: YouTubeApi) -> None:
        self._api = api

    def classify_channel_as_music(self, channel_id: str, sample_size: int) -> bool:
        videos = self._api.list_channel_videos_since(
            channel_id,
            EPOCH,
            sample_size,
        )
        return self._is_music_sample([video.video_id for video in videos[:sample_size]])

    def classify_playlist_as_music(self, playlist_id: str) -> bool:
        result = self._api.list_playlist_items(
            playlist_id,
            max_results=PLAYLIST_CLASSIFIER_SAMPLE_SIZE,
        )
        sample = [item.video_id for item in result.items[:PLAYLIST_CLASSIFIER_SAMPLE_SIZE]]
        return self._is_music_sample(sample)

    def _is_music_sample(self, video_ids: list[str]) -> bool:
        if not video_ids:
            return False
        categories = self._api.list_video_categories(video_ids)
        if not categories:
            return False
        music_count = sum(1 for category_id in categories if category_id == MUSIC_CATEGORY_ID)
        return music_count / len(categories) >= MUSIC_CATEGORY_RATIO


YouTubeApiFactory = Callable[[str, str], YouTubeApi]
ClassifierFactory = Callable[[YouTubeApi], MusicClassifier]


class YouTubeClientFactory:
    def __init__(self, *, response_cache: ApiResponseCache | None = None) -> None:
        self._response_cache = response_cache

    def __call__(self, access_token: str, user_id: str) -> YouTubeApiClient:
        try:
            credentials_module = import_module("google.oauth2.credentials")
            discovery_module = import_module("googleapiclient.discovery")
        except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
            raise YouTubeServiceError(
                "YouTube access requires google-api-python-client and google-auth"
            ) from exc

        credentials = credentials_module.Credentials(token=access_token)
        client = discovery_module.build(
            "youtube",
            "v3",
            credentials=credentials,
            cache_discovery=False,
        )
        return YouTubeApiClient(
            client,
            user_id=user_id,
            response_cache=self._response_cache,
        )


def _http_status(exc: HttpError) -> int | None:
    response = getattr(exc, "resp", None)
    status = getattr(response, "status", None)
    if isinstance(status, int):
        return status
    if isinstance(status, str) and status.isdigit():
        return int(status)
    return None


def _video_sort_key(video: ChannelVideo) -> datetime:
    return video.published_at or EPOCH


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _rfc3339(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _next_page_token(response: dict[str, Any]) -> str | None:
    raw_next = response.get("nextPageToken")
    return raw_next if isinstance(raw_next, str) and raw_next.strip() else None


def _best_thumbnail_url(snippet: dict[str, Any]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in ("high", "medium", "standard", "maxres", "default"):
        url_value = _as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url_value, str) and url_value.strip():
            return url_value
    return None


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
