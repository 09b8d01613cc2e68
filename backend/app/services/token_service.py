from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from importlib import import_module
from threading import Lock
from typing import Protocol

from backend.app.repositories.common import as_utc, utc_now
from backend.app.repositories.user_repository import UserRepository
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("yt_orchestrator.tokens")

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
REAUTH_REASON_INVALID_GRANT = "invalid_grant"


@dataclass(frozen=True)
class UserCredential:
    access_token: str
    refresh_token: str | None = None
    expiry: datetime | None = None


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    expiry: datetime | None


class TokenRefreshError(Exception):
    pass


class InvalidGrantError(TokenRefreshError):
    """The refresh token was revoked or expired; the user must re-authorize."""


class TokenProvider(Protocol):
    def refresh(self, refresh_token: str) -> RefreshedToken:
        ...


class CredentialStore:
    """Process-wide map of user id to YouTube credentials.

    Readers get snapshots; the batch iterates over `user_ids()` while the API
    layer may register or unregister users concurrently.
    """

    def __init__(self) -> None:
        self._credentials: dict[str, UserCredential] = {}
        self._lock = Lock()

    def register(self, user_id: str, credential: UserCredential) -> None:
        with self._lock:
            self._credentials[user_id] = credential

    def unregister(self, user_id: str) -> bool:
        with self._lock:
            return self._credentials.pop(user_id, None) is not None

    def get(self, user_id: str) -> UserCredential | None:
        with self._lock:
            return self._credentials.get(user_id)

    def replace(self, user_id: str, credential: UserCredential) -> bool:
        with self._lock:
            if user_id not in self._credentials:
                return False
            self._credentials[user_id] = credential
            return True

    def user_ids(self) -> list[str]:
        with self._lock:
            return list(self._credentials)


class GoogleTokenProvider:
    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        token_uri: str = DEFAULT_TOKEN_URI,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_uri = token_uri

    def refresh(self, refresh_token: str) -> RefreshedToken:
        if not self._client_id or not self._client_secret:
            raise TokenRefreshError("Google OAuth client id/secret are not configured")

        try:
            requests_module = import_module("google.auth.transport.requests")
            credentials_module = import_module("google.oauth2.credentials")
        except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
            raise TokenRefreshError("Token refresh requires the google-auth dependency") from exc

        credentials = credentials_module.Credentials(
            token=None,
            refresh_token=refresh_token,
            client_id=self._client_id,
            client_secret=self._client_secret,
            token_uri=self._token_uri,
        )
        try:
            credentials.refresh(requests_module.Request())
        except Exception as exc:
            if _oauth_refresh_requires_reauth(exc):
                raise InvalidGrantError(str(exc)) from exc
            raise TokenRefreshError(str(exc)) from exc

        access_token = getattr(credentials, "token", None)
        if not isinstance(access_token, str) or not access_token:
            raise TokenRefreshError("Google token endpoint returned no access token")

        expiry = getattr(credentials, "expiry", None)
        if isinstance(expiry, datetime) and expiry.tzinfo is None:
            # google-auth reports naive UTC expiries.
            expiry = expiry.replace(tzinfo=UTC)
        return RefreshedToken(
            access_token=access_token,
            expiry=expiry if isinstance(expiry, datetime) else None,
        )


class TokenService:
    def __init__(
        self,
        *,
        store: CredentialStore,
        provider: TokenProvider,
        user_repository: UserRepository | None = None,
        telemetry: TelemetryClient | None = None,
        safety_window_seconds: int = 60,
        default_lifetime_seconds: int = 3300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._provider = provider
        self._user_repository = user_repository
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._safety_window = timedelta(seconds=max(0, safety_window_seconds))
        self._default_lifetime = timedelta(seconds=max(1, default_lifetime_seconds))
        self._clock = clock
        self._refresh_lock = Lock()

    @property
    def store(self) -> CredentialStore:
        return self._store

    def registered_user_ids(self) -> list[str]:
        return self._store.user_ids()

    def register_user_token(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str | None = None,
        expiry: datetime | None = None,
        *,
        persist: bool = True,
    ) -> None:
        if expiry is not None:
            expiry = as_utc(expiry)
        self._store.register(
            user_id,
            UserCredential(
                access_token=access_token,
                refresh_token=refresh_token,
                expiry=expiry,
            ),
        )
        LOGGER.info(
            "youtube credentials registered user_id=%s has_refresh_token=%s expiry=%s",
            user_id,
            refresh_token is not None,
            expiry.isoformat() if expiry is not None else None,
        )
        if persist and self._user_repository is not None:
            try:
                self._user_repository.upsert_credentials(
                    user_id=user_id,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expiry=expiry,
                )
            except Exception:
                LOGGER.warning(
                    "youtube credentials persist failed user_id=%s",
                    user_id,
                    exc_info=True,
                )

    def unregister_user_token(self, user_id: str) -> bool:
        removed = self._store.unregister(user_id)
        LOGGER.info("youtube credentials unregistered user_id=%s removed=%s", user_id, removed)
        return removed

    def ensure_valid_access_token(self, user_id: str) -> str | None:
        credential = self._store.get(user_id)
        if credential is None:
            return None
        if not self._is_expired(credential):
            return credential.access_token
        if credential.refresh_token is None:
            return self._stale_token(user_id, credential)

        with self._refresh_lock:
            current = self._store.get(user_id)
            if current is None:
                return None
            if not self._is_expired(current):
                return current.access_token
            if current.refresh_token is None:
                return self._stale_token(user_id, current)
            return self._refresh(user_id, current)

    def preload_from_repository(self) -> int:
        if self._user_repository is None:
            return 0

        now = self._clock()
        loaded = 0
        for user in self._user_repository.list_users_with_access_token():
            if user.youtube_access_token is None:
                continue
            if user.youtube_token_expiry is not None and user.youtube_token_expiry <= now:
                continue
            self.register_user_token(
                user.user_id,
                user.youtube_access_token,
                user.youtube_refresh_token,
                user.youtube_token_expiry,
                persist=False,
            )
            loaded += 1

        LOGGER.info("youtube credentials preloaded count=%s", loaded)
        return loaded

    def _is_expired(self, credential: UserCredential) -> bool:
        if credential.expiry is None:
            return False
        return credential.expiry - self._safety_window <= self._clock()

    def _stale_token(self, user_id: str, credential: UserCredential) -> str:
        # Nothing to refresh with; let the API reject it if it is really stale.
        LOGGER.info(
            "youtube token expired without refresh token; using stale token user_id=%s",
            user_id,
        )
        return credential.access_token

    def _refresh(self, user_id: str, credential: UserCredential) -> str | None:
        assert credential.refresh_token is not None
        self._telemetry.emit("token.refresh.start", user_id=user_id)
        try:
            refreshed = self._provider.refresh(credential.refresh_token)
        except InvalidGrantError:
            LOGGER.warning(
                "youtube token refresh rejected; re-authorization required user_id=%s",
                user_id,
                exc_info=True,
            )
            self._telemetry.emit("token.refresh.revoked", user_id=user_id)
            self._store.unregister(user_id)
            self._mark_reauth_required(user_id)
            return None
        except Exception:
            LOGGER.warning(
                "youtube token refresh failed; using stale access token user_id=%s",
                user_id,
                exc_info=True,
            )
            self._telemetry.emit("token.refresh.error", user_id=user_id)
            return credential.access_token

        expiry = refreshed.expiry or (self._clock() + self._default_lifetime)
        self._store.replace(
            user_id,
            UserCredential(
                access_token=refreshed.access_token,
                refresh_token=credential.refresh_token,
                expiry=expiry,
            ),
        )
        self._telemetry.emit(
            "token.refresh.finish",
            user_id=user_id,
            expiry=expiry.isoformat(),
        )
        LOGGER.info("youtube token refreshed user_id=%s expiry=%s", user_id, expiry.isoformat())

        if self._user_repository is not None:
            try:
                self._user_repository.update_access_token(
                    user_id=user_id,
                    access_token=refreshed.access_token,
                    expiry=expiry,
                )
            except Exception:
                LOGGER.warning(
                    "youtube refreshed token persist failed user_id=%s",
                    user_id,
                    exc_info=True,
                )
        return refreshed.access_token

    def _mark_reauth_required(self, user_id: str) -> None:
        if self._user_repository is None:
            return
        try:
            self._user_repository.require_reauth(
                user_id=user_id,
                reason=REAUTH_REASON_INVALID_GRANT,
            )
        except Exception:
            LOGGER.warning(
                "youtube reauth flag persist failed user_id=%s",
                user_id,
                exc_info=True,
            )


def _oauth_refresh_requires_reauth(exc: Exception) -> bool:
    normalized = str(exc).lower()
    return "invalid_grant" in normalized or "expired or revoked" in normalized
