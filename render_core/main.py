from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from render_core.errors import ApiError, RenderError
from render_core.routes import cron, renders
from render_core.routes._deps import error_response, request_id_from_request, trace_id_from_request
from render_core.runtime import RenderServices, create_services_from_env
from render_core.schemas import success_envelope
from render_core.security import redact_sensitive

logger = logging.getLogger(__name__)


def create_app(services: RenderServices | None = None) -> FastAPI:
    app = FastAPI(title="Render Core API", version="0.1.0")
    app.state.services = services or create_services_from_env()

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code == "AUTH_UNAUTHORIZED":
            logger.warning(
                "security blocked path=%s trace_id=%s headers=%s",
                request.url.path,
                trace_id_from_request(request),
                redact_sensitive(dict(request.headers.items())),
            )
        details = exc.meta if isinstance(exc, RenderError) and exc.meta else None
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(renders.router)
    app.include_router(cron.router)
    return app


app = create_app()
