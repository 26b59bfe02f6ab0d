from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from citelink.api.routes import router
from citelink.dependencies import get_settings, get_telemetry
from citelink.logging_config import configure_application_logging

LOGGER = logging.getLogger("citelink.main")

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    LOGGER.info(
        "citelink ready deployment_mode=%s verification_enabled=%s http_timeout=%s",
        settings.deployment_mode,
        settings.verification_enabled,
        settings.resolved_http_timeout_seconds,
    )
    yield


def _request_id_for(request: Request) -> str:
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return incoming[:MAX_REQUEST_ID_LENGTH] if incoming else uuid4().hex


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Tag logs and telemetry with a request id and echo it on the response."""

    request_id = _request_id_for(request)
    context_tokens = bind_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=request.url.path,
    )
    try:
        with get_telemetry().measure(
            "http.request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        ) as outcome:
            response = await call_next(request)
            outcome["status_code"] = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        reset_contextvars(**context_tokens)


def create_app() -> FastAPI:
    app = FastAPI(title="Citelink API", version="0.1.0", lifespan=app_lifespan)
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
