from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pagerpush.apps.api.response import API_VERSION, error_response
from pagerpush.apps.api.routes.health import router as health_router
from pagerpush.apps.api.routes.queue import router as queue_router
from pagerpush.core.config import get_settings
from pagerpush.core.errors import QueueUnavailableError
from pagerpush.core.logging import configure_logging
from pagerpush.services.notifications.runtime import NotificationRuntime, build_runtime


logger = logging.getLogger(__name__)


def create_app(runtime: NotificationRuntime | None = None, *, start_workers: bool = False) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        # Without an injected runtime the app owns one built from settings.
        owned = runtime is None
        active = build_runtime(get_settings()) if owned else runtime
        application.state.notification_runtime = active
        # Embedded mode runs the worker pool inside the API process.
        if start_workers:
            active.start()
        try:
            yield
        finally:
            if owned or start_workers:
                await active.stop()

    app = FastAPI(title="PagerPush API", lifespan=lifespan)
    app.state.notification_runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(QueueUnavailableError)
    async def _queue_unavailable_handler(request: Request, exc: QueueUnavailableError):
        logger.warning("queue_unavailable path=%s error=%s", request.url.path, exc)
        payload = error_response(request=request, code="SERVICE_UNAVAILABLE", message="Notification queue unavailable")
        return JSONResponse(content=payload, status_code=503)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(queue_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
