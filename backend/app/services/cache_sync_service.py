from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Literal
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.common import EPOCH, utc_now
from backend.app.repositories.database import Database
from backend.app.repositories.youtube_cache_repository import (
    PLAYLIST_PRIVACY_VALUES,
    UNSET_VIDEO_TITLE,
    CachedChannel,
    CachedPlaylist,
    YouTubeCacheRepository,
)
from backend.app.services.response_cache import ApiResponseCache
from backend.app.services.token_service import TokenService
from backend.app.services.youtube_service import (
    CategoryMusicClassifier,
    ClassifierFactory,
    MusicClassifier,
    PlaylistSummary,
    SubscriptionItem,
    YouTubeApi,
    YouTubeApiFactory,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("yt_orchestrator.cache_sync")

REFRESH_ERROR_STORE_UNAVAILABLE = "mongodb_not_connected"
REFRESH_ERROR_NO_ACCESS_TOKEN = "no_access_token"

MAX_LISTING_PAGES = 200


@dataclass(frozen=True)
class CacheUpdateSummary:
    updated: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True)
class EntityCounts:
    channels: int
    playlists: int


@dataclass(frozen=True)
class RefreshResult:
    deleted: EntityCounts
    repopulated: EntityCounts
    updated_at: datetime
    ok: Literal[True] = True


@dataclass(frozen=True)
class RefreshFailure:
    error: str
    ok: Literal[False] = False


@dataclass(frozen=True)
class SyncRunSummary:
    run_id: str
    users_total: int
    users_synced: int
    users_skipped: int
    users_failed: int


class CacheSyncService:
    """Keeps each registered user's cached channels and playlists in step with YouTube.

    Runs are sequential: users one after another, and within a user the
    channels and playlists one after another. A failure is isolated to the
    smallest unit it happened in (one row, one channel, one playlist, one user).
    """

    def __init__(
        self,
        *,
        token_service: TokenService,
        cache_repository: YouTubeCacheRepository,
        database: Database,
        api_factory: YouTubeApiFactory,
        classifier_factory: ClassifierFactory = CategoryMusicClassifier,
        response_cache: ApiResponseCache | None = None,
        telemetry: TelemetryClient | None = None,
        recent_videos_max_results: int = 5,
        watermark_lookback_days: int = 7,
        classifier_sample_size: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._token_service = token_service
        self._cache_repository = cache_repository
        self._database = database
        self._api_factory = api_factory
        self._classifier_factory = classifier_factory
        self._response_cache = response_cache
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._recent_videos_max_results = max(1, recent_videos_max_results)
        self._watermark_lookback = timedelta(days=max(0, watermark_lookback_days))
        self._classifier_sample_size = max(1, classifier_sample_size)
        self._clock = clock
        self._batch_lock = threading.Lock()
        self._user_locks: dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()

    def update_all_caches(self, force: bool = False) -> SyncRunSummary | None:
        if not self._batch_lock.acquire(blocking=False):
            LOGGER.warning("cache sync run skipped; previous run still in progress force=%s", force)
            self._telemetry.emit("cache_sync.run.skipped", force=force)
            return None

        run_id = uuid4().hex
        run_tokens = bind_contextvars(sync_run_id=run_id)
        started_at = time.perf_counter()
        user_ids = self._token_service.registered_user_ids()
        synced = skipped = failed = 0
        try:
            self._telemetry.emit(
                "cache_sync.run.start",
                run_id=run_id,
                force=force,
                user_count=len(user_ids),
            )
            LOGGER.info("cache sync run started users=%s force=%s", len(user_ids), force)
            for user_id in user_ids:
                try:
                    with self._user_lock(user_id):
                        if self._sync_user(user_id, force=force):
                            synced += 1
                        else:
                            skipped += 1
                except Exception:
                    failed += 1
                    LOGGER.warning("cache sync failed user_id=%s", user_id, exc_info=True)

            summary = SyncRunSummary(
                run_id=run_id,
                users_total=len(user_ids),
                users_synced=synced,
                users_skipped=skipped,
                users_failed=failed,
            )
            self._telemetry.emit(
                "cache_sync.run.finish",
                run_id=run_id,
                force=force,
                users_synced=synced,
                users_skipped=skipped,
                users_failed=failed,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
            )
            LOGGER.info(
                "cache sync run finished synced=%s skipped=%s failed=%s",
                synced,
                skipped,
                failed,
            )
            return summary
        finally:
            reset_contextvars(**run_tokens)
            self._batch_lock.release()

    def update_user_caches(self, user_id: str, force: bool = False) -> bool:
        with self._user_lock(user_id):
            try:
                return self._sync_user(user_id, force=force)
            except Exception:
                LOGGER.warning("cache sync failed user_id=%s", user_id, exc_info=True)
                return False

    def refresh_user_cache(self, user_id: str) -> RefreshResult | RefreshFailure:
        with self._user_lock(user_id):
            if not self._database.is_available():
                LOGGER.warning("cache refresh refused; store unavailable user_id=%s", user_id)
                return RefreshFailure(error=REFRESH_ERROR_STORE_UNAVAILABLE)

            access_token = self._token_service.ensure_valid_access_token(user_id)
            if access_token is None:
                LOGGER.info("cache refresh refused; no access token user_id=%s", user_id)
                return RefreshFailure(error=REFRESH_ERROR_NO_ACCESS_TOKEN)

            self._telemetry.emit("cache_sync.refresh.start", user_id=user_id)
            try:
                if self._response_cache is not None:
                    self._response_cache.invalidate_user(user_id)

                deleted = EntityCounts(
                    channels=self._cache_repository.delete_channels(user_id),
                    playlists=self._cache_repository.delete_playlists(user_id),
                )
                LOGGER.info(
                    "cache refresh cleared user_id=%s channels=%s playlists=%s",
                    user_id,
                    deleted.channels,
                    deleted.playlists,
                )

                self.populate_initial_channels(user_id, access_token)
                self.populate_initial_playlists(user_id, access_token)
                repopulated = EntityCounts(
                    channels=self._cache_repository.count_channels(user_id),
                    playlists=self._cache_repository.count_playlists(user_id),
                )

                self.update_channel_cache(user_id, access_token, force=True)
                self.update_playlist_cache(user_id, access_token, force=True)
            except Exception as exc:
                LOGGER.error(
                    "cache refresh failed after partial changes user_id=%s",
                    user_id,
                    exc_info=True,
                )
                self._telemetry.emit(
                    "cache_sync.refresh.error",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                )
                return RefreshFailure(error=str(exc) or type(exc).__name__)

            self._telemetry.emit(
                "cache_sync.refresh.finish",
                user_id=user_id,
                channels=repopulated.channels,
                playlists=repopulated.playlists,
            )
            return RefreshResult(
                deleted=deleted,
                repopulated=repopulated,
                updated_at=self._clock(),
            )

    def update_channel_cache(
        self,
        user_id: str,
        access_token: str,
        force: bool = False,
    ) -> CacheUpdateSummary:
        channels = self._cache_repository.list_channels(user_id)
        if not channels:
            LOGGER.info("channel cache update skipped; no cached channels user_id=%s", user_id)
            return CacheUpdateSummary()

        api = self._api_factory(access_token, user_id)
        classifier = self._classifier_factory(api)
        default_watermark = self._clock() - self._watermark_lookback
        updated = skipped = failed = 0

        for channel in channels:
            try:
                if force:
                    watermark = EPOCH
                else:
                    watermark = channel.latest_video_published_at or default_watermark

                videos = api.list_channel_videos_since(
                    channel.channel_id,
                    watermark,
                    self._recent_videos_max_results,
                )

                if videos:
                    newest = videos[0]
                    is_artist = self._classify_channel(classifier, channel)
                    refreshed = replace(
                        channel,
                        latest_video_id=newest.video_id,
                        latest_video_title=(
                            newest.title if newest.title is not None else UNSET_VIDEO_TITLE
                        ),
                        latest_video_thumbnail=newest.thumbnail_url,
                        latest_video_published_at=_later(
                            newest.published_at,
                            None if force else channel.latest_video_published_at,
                        ),
                        is_artist=is_artist,
                        cached_at=self._clock(),
                    )
                elif channel.is_artist is None or force:
                    refreshed = replace(
                        channel,
                        is_artist=self._classify_channel(classifier, channel),
                        cached_at=self._clock(),
                    )
                else:
                    skipped += 1
                    continue

                self._cache_repository.save_channel(refreshed)
                updated += 1
            except Exception:
                failed += 1
                LOGGER.warning(
                    "channel cache update failed user_id=%s channel_id=%s",
                    user_id,
                    channel.channel_id,
                    exc_info=True,
                )

        LOGGER.info(
            "channel cache updated user_id=%s updated=%s skipped=%s failed=%s "
            "estimated_api_units=%s",
            user_id,
            updated,
            skipped,
            failed,
            getattr(api, "estimated_api_units", None),
        )
        return CacheUpdateSummary(updated=updated, skipped=skipped, failed=failed)

    def update_playlist_cache(
        self,
        user_id: str,
        access_token: str,
        force: bool = False,
    ) -> CacheUpdateSummary:
        playlists = self._cache_repository.list_playlists(user_id)
        if not playlists:
            LOGGER.info("playlist cache update skipped; no cached playlists user_id=%s", user_id)
            return CacheUpdateSummary()

        api = self._api_factory(access_token, user_id)
        classifier = self._classifier_factory(api)
        updated = skipped = failed = 0

        for playlist in playlists:
            try:
                sent_etag = None if force else playlist.etag
                result = api.list_playlist_items(playlist.playlist_id, etag=sent_etag)
                if result.not_modified:
                    skipped += 1
                    continue

                if result.items or result.etag != playlist.etag or force:
                    first_thumbnail = result.items[0].thumbnail_url if result.items else None
                    refreshed = replace(
                        playlist,
                        item_count=(
                            result.total_results
                            if result.total_results is not None
                            else len(result.items)
                        ),
                        etag=result.etag,
                        thumbnail_url=first_thumbnail or playlist.thumbnail_url,
                        is_music_playlist=self._classify_playlist(classifier, playlist),
                        cached_at=self._clock(),
                    )
                elif playlist.is_music_playlist is None:
                    refreshed = replace(
                        playlist,
                        is_music_playlist=self._classify_playlist(classifier, playlist),
                        cached_at=self._clock(),
                    )
                else:
                    skipped += 1
                    continue

                self._cache_repository.save_playlist(refreshed)
                updated += 1
            except Exception:
                failed += 1
                LOGGER.warning(
                    "playlist cache update failed user_id=%s playlist_id=%s",
                    user_id,
                    playlist.playlist_id,
                    exc_info=True,
                )

        LOGGER.info(
            "playlist cache updated user_id=%s updated=%s skipped=%s failed=%s",
            user_id,
            updated,
            skipped,
            failed,
        )
        return CacheUpdateSummary(updated=updated, skipped=skipped, failed=failed)

    def populate_initial_channels(self, user_id: str, access_token: str) -> int:
        api = self._api_factory(access_token, user_id)
        subscriptions: list[SubscriptionItem] = []
        page_token: str | None = None
        seen_tokens: set[str] = set()
        for _ in range(MAX_LISTING_PAGES):
            page = api.list_subscriptions(page_token)
            subscriptions.extend(page.items)
            page_token = page.next_page_token
            if page_token is None or page_token in seen_tokens:
                break
            seen_tokens.add(page_token)

        now = self._clock()
        rows = [_subscription_to_channel(user_id, item, now) for item in subscriptions]
        result = self._cache_repository.insert_channels(rows)
        LOGGER.info(
            "channel cache populated user_id=%s fetched=%s inserted=%s failed=%s",
            user_id,
            len(rows),
            result.inserted,
            result.failed,
        )
        return result.inserted

    def populate_initial_playlists(self, user_id: str, access_token: str) -> int:
        api = self._api_factory(access_token, user_id)
        summaries: list[PlaylistSummary] = []
        page_token: str | None = None
        seen_tokens: set[str] = set()
        for _ in range(MAX_LISTING_PAGES):
            page = api.list_playlists(page_token)
            summaries.extend(page.items)
            page_token = page.next_page_token
            if page_token is None or page_token in seen_tokens:
                break
            seen_tokens.add(page_token)

        now = self._clock()
        rows = [_summary_to_playlist(user_id, item, now) for item in summaries]
        result = self._cache_repository.insert_playlists(rows)
        LOGGER.info(
            "playlist cache populated user_id=%s fetched=%s inserted=%s failed=%s",
            user_id,
            len(rows),
            result.inserted,
            result.failed,
        )
        return result.inserted

    def _sync_user(self, user_id: str, *, force: bool) -> bool:
        access_token = self._token_service.ensure_valid_access_token(user_id)
        if access_token is None:
            LOGGER.info("cache sync skipped; no valid access token user_id=%s", user_id)
            self._telemetry.emit("cache_sync.user.skipped", user_id=user_id, reason="no_credentials")
            return False

        with self._telemetry.phase("cache_sync.user", user_id=user_id, force=force) as outcome:
            channel_count = self._cache_repository.count_channels(user_id)
            playlist_count = self._cache_repository.count_playlists(user_id)

            if force and channel_count == 0 and playlist_count == 0:
                LOGGER.info("cache empty; running initial population user_id=%s", user_id)
                self.populate_initial_channels(user_id, access_token)
                self.populate_initial_playlists(user_id, access_token)

            channels = self.update_channel_cache(user_id, access_token, force=force)
            playlists = self.update_playlist_cache(user_id, access_token, force=force)
            outcome.update(
                channels_updated=channels.updated,
                channels_failed=channels.failed,
                playlists_updated=playlists.updated,
                playlists_failed=playlists.failed,
            )
        return True

    def _classify_channel(self, classifier: MusicClassifier, channel: CachedChannel) -> bool | None:
        try:
            return classifier.classify_channel_as_music(
                channel.channel_id,
                self._classifier_sample_size,
            )
        except Exception:
            LOGGER.debug(
                "channel classification failed channel_id=%s",
                channel.channel_id,
                exc_info=True,
            )
            return channel.is_artist

    def _classify_playlist(
        self,
        classifier: MusicClassifier,
        playlist: CachedPlaylist,
    ) -> bool | None:
        try:
            return classifier.classify_playlist_as_music(playlist.playlist_id)
        except Exception:
            LOGGER.debug(
                "playlist classification failed playlist_id=%s",
                playlist.playlist_id,
                exc_info=True,
            )
            return playlist.is_music_playlist

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        with self._user_locks_guard:
            lock = self._user_locks.setdefault(user_id, threading.Lock())
        with lock:
            yield


def _later(candidate: datetime | None, current: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return max(candidate, current)


def _subscription_to_channel(
    user_id: str,
    item: SubscriptionItem,
    cached_at: datetime,
) -> CachedChannel:
    return CachedChannel(
        user_id=user_id,
        channel_id=item.channel_id,
        channel_title=item.title,
        channel_description=item.description,
        thumbnail_url=item.thumbnail_url,
        subscription_id=item.subscription_id,
        cached_at=cached_at,
    )


def _summary_to_playlist(
    user_id: str,
    item: PlaylistSummary,
    cached_at: datetime,
) -> CachedPlaylist:
    privacy = item.privacy if item.privacy in PLAYLIST_PRIVACY_VALUES else None
    return CachedPlaylist(
        user_id=user_id,
        playlist_id=item.playlist_id,
        title=item.title,
        description=item.description,
        thumbnail_url=item.thumbnail_url,
        item_count=item.item_count,
        channel_id=item.channel_id,
        channel_title=item.channel_title,
        privacy=privacy,
        cached_at=cached_at,
    )
