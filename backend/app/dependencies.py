from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.api_usage_repository import ApiUsageRepository
from backend.app.repositories.database import Database
from backend.app.repositories.user_repository import UserRepository
from backend.app.repositories.youtube_cache_repository import YouTubeCacheRepository
from backend.app.services.cache_sync_service import CacheSyncService
from backend.app.services.response_cache import ApiResponseCache
from backend.app.services.token_service import (
    CredentialStore,
    GoogleTokenProvider,
    TokenService,
)
from backend.app.services.youtube_service import YouTubeClientFactory
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_user_repository() -> UserRepository:
    return UserRepository(get_database())


@lru_cache(maxsize=1)
def get_cache_repository() -> YouTubeCacheRepository:
    return YouTubeCacheRepository(get_database())


@lru_cache(maxsize=1)
def get_api_usage_repository() -> ApiUsageRepository:
    return ApiUsageRepository(get_database())


@lru_cache(maxsize=1)
def get_response_cache() -> ApiResponseCache:
    return ApiResponseCache(ttl_seconds=get_settings().api_response_cache_ttl_seconds)


@lru_cache(maxsize=1)
def get_token_service() -> TokenService:
    settings = get_settings()
    return TokenService(
        store=CredentialStore(),
        provider=GoogleTokenProvider(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            token_uri=settings.google_token_uri,
        ),
        user_repository=get_user_repository(),
        telemetry=get_telemetry(),
        safety_window_seconds=settings.token_expiry_safety_seconds,
        default_lifetime_seconds=settings.token_default_lifetime_seconds,
    )


@lru_cache(maxsize=1)
def get_cache_sync_service() -> CacheSyncService:
    settings = get_settings()
    response_cache = get_response_cache()
    return CacheSyncService(
        token_service=get_token_service(),
        cache_repository=get_cache_repository(),
        database=get_database(),
        api_factory=YouTubeClientFactory(response_cache=response_cache),
        response_cache=response_cache,
        telemetry=get_telemetry(),
        recent_videos_max_results=settings.channel_recent_videos_max_results,
        watermark_lookback_days=settings.channel_watermark_lookback_days,
        classifier_sample_size=settings.channel_classifier_sample_size,
    )


def reset_cached_dependencies() -> None:
    get_cache_sync_service.cache_clear()
    get_token_service.cache_clear()
    get_response_cache.cache_clear()
    get_api_usage_repository.cache_clear()
    get_cache_repository.cache_clear()
    get_user_repository.cache_clear()
    get_telemetry.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
