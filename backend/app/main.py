from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.dependencies import (
    get_cache_sync_service,
    get_database,
    get_settings,
    get_telemetry,
    get_token_service,
)
from backend.app.logging_config import configure_application_logging
from backend.app.services.scheduler_service import CacheSyncScheduler

LOGGER = logging.getLogger("yt_orchestrator.app")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    telemetry = get_telemetry()
    get_database()
    get_token_service().preload_from_repository()
    scheduler: CacheSyncScheduler | None = None

    if settings.scheduler_enabled:
        scheduler = CacheSyncScheduler(
            get_cache_sync_service(),
            telemetry=telemetry,
            lock_path=settings.data_dir / "scheduler.lock",
            startup_delay_seconds=settings.cache_update_startup_delay_seconds,
        )
        scheduler.start_scheduled_sync(
            settings.cache_update_schedule,
            run_on_startup=settings.cache_update_run_on_startup,
            force_on_startup=settings.cache_update_force_on_startup,
        )
    else:
        LOGGER.info("cache update job disabled")

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def _request_id_from(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "").strip()
    return incoming or str(uuid4())


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = _request_id_from(request)
    context_tokens = bind_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=request.url.path,
    )
    try:
        with get_telemetry().phase(
            "http.request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        ) as outcome:
            response = await call_next(request)
            outcome["status_code"] = response.status_code
    finally:
        reset_contextvars(**context_tokens)
    response.headers["X-Request-ID"] = request_id
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="YouTube Cache Orchestrator", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
