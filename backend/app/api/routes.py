from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.dependencies import (
    get_api_usage_repository,
    get_cache_repository,
    get_cache_sync_service,
    get_token_service,
    get_user_repository,
)
from backend.app.models.sync_contracts import (
    CacheRefreshResponse,
    CacheStatsResponse,
    CacheSyncResponse,
    EntityCountsModel,
    RegisterTokenRequest,
    TokenRegistrationResponse,
)
from backend.app.repositories.api_usage_repository import YOUTUBE_SERVICE, ApiUsageRepository
from backend.app.repositories.user_repository import UserRepository
from backend.app.repositories.youtube_cache_repository import YouTubeCacheRepository
from backend.app.services.cache_sync_service import (
    REFRESH_ERROR_STORE_UNAVAILABLE,
    CacheSyncService,
    RefreshFailure,
)
from backend.app.services.token_service import TokenService

router = APIRouter(prefix="/api/users/{user_id}")


@contextmanager
def _user_context(user_id: str) -> Iterator[None]:
    context_tokens = bind_contextvars(user_id=user_id)
    try:
        yield
    finally:
        reset_contextvars(**context_tokens)


@router.put(
    "/youtube-token",
    response_model=TokenRegistrationResponse,
    tags=["credentials"],
    operation_id="register_youtube_token",
)
def register_youtube_token(
    user_id: str,
    request: RegisterTokenRequest,
    token_service: Annotated[TokenService, Depends(get_token_service)],
) -> TokenRegistrationResponse:
    with _user_context(user_id):
        token_service.register_user_token(
            user_id,
            request.access_token,
            request.refresh_token,
            request.expiry,
        )
    return TokenRegistrationResponse(user_id=user_id, registered=True)


@router.delete(
    "/youtube-token",
    response_model=TokenRegistrationResponse,
    tags=["credentials"],
    operation_id="unregister_youtube_token",
)
def unregister_youtube_token(
    user_id: str,
    token_service: Annotated[TokenService, Depends(get_token_service)],
) -> TokenRegistrationResponse:
    with _user_context(user_id):
        token_service.unregister_user_token(user_id)
    return TokenRegistrationResponse(user_id=user_id, registered=False)


@router.post(
    "/cache/sync",
    response_model=CacheSyncResponse,
    tags=["cache"],
    operation_id="sync_user_cache",
)
def sync_user_cache(
    user_id: str,
    sync_service: Annotated[CacheSyncService, Depends(get_cache_sync_service)],
    api_usage_repository: Annotated[ApiUsageRepository, Depends(get_api_usage_repository)],
    force: Annotated[bool, Query()] = False,
) -> CacheSyncResponse:
    with _user_context(user_id):
        if force and not api_usage_repository.acquire_daily(user_id, service=YOUTUBE_SERVICE):
            raise HTTPException(
                status_code=429,
                detail="Forced cache sync already used today for this user.",
            )
        synced = sync_service.update_user_caches(user_id, force=force)
    return CacheSyncResponse(user_id=user_id, synced=synced, force=force)


@router.post(
    "/cache/refresh",
    response_model=CacheRefreshResponse,
    tags=["cache"],
    operation_id="refresh_user_cache",
)
def refresh_user_cache(
    user_id: str,
    sync_service: Annotated[CacheSyncService, Depends(get_cache_sync_service)],
) -> CacheRefreshResponse:
    with _user_context(user_id):
        result = sync_service.refresh_user_cache(user_id)

    if isinstance(result, RefreshFailure):
        status_code = 503 if result.error == REFRESH_ERROR_STORE_UNAVAILABLE else 400
        raise HTTPException(status_code=status_code, detail=result.error)

    return CacheRefreshResponse(
        deleted=EntityCountsModel(
            channels=result.deleted.channels,
            playlists=result.deleted.playlists,
        ),
        repopulated=EntityCountsModel(
            channels=result.repopulated.channels,
            playlists=result.repopulated.playlists,
        ),
        updated_at=result.updated_at,
    )


@router.get(
    "/cache",
    response_model=CacheStatsResponse,
    tags=["cache"],
    operation_id="get_user_cache_stats",
)
def get_user_cache_stats(
    user_id: str,
    cache_repository: Annotated[YouTubeCacheRepository, Depends(get_cache_repository)],
    user_repository: Annotated[UserRepository, Depends(get_user_repository)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
) -> CacheStatsResponse:
    stats = cache_repository.stats(user_id)
    user = user_repository.get_user(user_id)
    return CacheStatsResponse(
        user_id=user_id,
        channels=stats.channels,
        playlists=stats.playlists,
        unclassified_channels=stats.unclassified_channels,
        unclassified_playlists=stats.unclassified_playlists,
        channels_missing_video_title=stats.channels_missing_video_title,
        channels_cached_at=stats.channels_cached_at,
        playlists_cached_at=stats.playlists_cached_at,
        credentials_registered=token_service.store.get(user_id) is not None,
        reauth_required=user.reauth_required if user is not None else False,
        reauth_reason=user.reauth_reason if user is not None else None,
    )
