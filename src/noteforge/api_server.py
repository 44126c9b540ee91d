"""
FastAPI service layer for the NoteForge ask pipeline.

Exposes POST /api/v1/ai/query, GET /metrics and GET /health.

Run with:
    uvicorn noteforge.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
import contextvars
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

from fastapi import Body, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .ask_service import AskService
from .config import API_WORKERS, RETRIEVAL_MODE
from .errors import AskError, InvalidRequestError, NotAllowedError, RateLimitedError, ServiceUnavailableError
from .metrics import metrics_collector
from .observability import bind_request_context, clear_request_context, get_logger

logger = get_logger(__name__)


def _error_response(error: AskError) -> JSONResponse:
    headers = {}
    if isinstance(error, RateLimitedError) and error.retry_after_s is not None:
        headers["Retry-After"] = str(max(1, int(round(error.retry_after_s))))
    return JSONResponse(status_code=error.status_code, content=error.to_envelope(), headers=headers or None)


def _request_error_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": str(err.get("msg", "")), "type": str(err.get("type", ""))}
        for err in exc.errors()
    ]


def create_app(service: AskService | None = None) -> FastAPI:
    """Builds the API. Pass `service` to serve a pre-wired pipeline (tests, demo)."""
    state: dict[str, Any] = {"service": service}
    # Thread pool for running the synchronous pipeline off the event loop.
    executor = ThreadPoolExecutor(max_workers=API_WORKERS, thread_name_prefix="ask-api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire the default pipeline once at startup; release resources on shutdown."""
        if state["service"] is None:
            from .providers import build_default_service

            try:
                state["service"] = build_default_service()
            except Exception as exc:
                logger.warning(
                    "ask_service_unavailable",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        yield  # Application is running.

        current = state.get("service")
        if current is not None and current.query_log is not None:
            current.query_log.close(wait=True)
        executor.shutdown(wait=False)

    app = FastAPI(
        title="NoteForge API",
        description="Grounded question answering over a writer's notes",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_request_context(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(AskError)
    async def ask_error_handler(request: Request, exc: AskError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error_response(InvalidRequestError("Invalid request", details=_request_error_details(exc)))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("api_unhandled_error", path=request.url.path)
        return _error_response(AskError("An unexpected error occurred. Please try again."))

    @app.post("/api/v1/ai/query")
    async def query_endpoint(
        payload: Any = Body(default=None),
        x_owner_id: str | None = Header(default=None),
        accept_language: str | None = Header(default=None),
    ):
        """Answer one question over the notes of a book or a series."""
        owner_id = (x_owner_id or "").strip()
        if not owner_id:
            raise NotAllowedError("Authentication required")
        ask_service: AskService | None = state.get("service")
        if ask_service is None:
            raise ServiceUnavailableError(
                "The ask service is not initialized. Check the model provider configuration."
            )

        loop = asyncio.get_running_loop()
        # Copy the context so pipeline logs carry the request fields.
        ctx = contextvars.copy_context()
        result = await loop.run_in_executor(
            executor,
            ctx.run,
            partial(ask_service.answer, payload, owner_id, locale=accept_language),
        )
        return JSONResponse(content=result.to_response())

    @app.get("/metrics")
    async def metrics_endpoint():
        """Return aggregated service metrics."""
        ask_service = state.get("service")
        metrics = ask_service.metrics if ask_service is not None and ask_service.metrics is not None else metrics_collector
        return metrics.get_summary()

    @app.get("/health")
    async def health_endpoint():
        ask_service = state.get("service")
        return {
            "status": "ok" if ask_service is not None else "degraded",
            "retrieval_mode": ask_service.retrieval_mode if ask_service is not None else RETRIEVAL_MODE,
        }

    return app


app = create_app()
