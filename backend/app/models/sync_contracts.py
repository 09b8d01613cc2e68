from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class RegisterTokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1, max_length=4096)
    refresh_token: str | None = Field(default=None, max_length=4096)
    expiry: datetime | None = None

    @field_validator("access_token")
    @classmethod
    def _validate_access_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must not be blank")
        return normalized

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _normalize_refresh_token(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class TokenRegistrationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    registered: bool


class CacheSyncResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    synced: bool
    force: bool


class EntityCountsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channels: int
    playlists: int


class CacheRefreshResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: Literal[True] = True
    deleted: EntityCountsModel
    repopulated: EntityCountsModel
    updated_at: datetime


class CacheStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    channels: int
    playlists: int
    unclassified_channels: int
    unclassified_playlists: int
    channels_missing_video_title: int
    channels_cached_at: datetime | None = None
    playlists_cached_at: datetime | None = None
    credentials_registered: bool
    reauth_required: bool = False
    reauth_reason: str | None = None
