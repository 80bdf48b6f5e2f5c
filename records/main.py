from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from records.errors import ApiError
from records.routes import documents, nominees, public, todos
from records.routes._deps import error_response, request_id_from_request, trace_id_from_request
from records.schemas import success_envelope
from records.security import AuthContext, JwtSecurityConfig, parse_and_validate_bearer_token, redact_sensitive
from records.settings import AppSettings

logger = logging.getLogger(__name__)

_PUBLIC_API_PATHS = {"/api/v1/health"}
_SECURITY_CODES = {
    "AUTH_UNAUTHORIZED",
    "NOMINEE_ACCESS_DENIED",
    "NOMINEE_ACCESS_EXPIRED",
    "SHARE_LINK_INVALID",
    "FILE_LINK_INVALID",
}


def _validation_details(exc: RequestValidationError) -> list[dict[str, object]]:
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "")),
        }
        for err in exc.errors()
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="Personal Records API", version="0.1.0")
    settings = AppSettings.from_env()
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _log_security_blocked(request: Request, exc: ApiError) -> None:
        headers_obj = dict(request.headers.items())
        headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
        logger.warning(
            "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
            exc.code,
            request.url.path,
            trace_id_from_request(request),
            exc.message,
            headers_payload,
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        try:
            path = request.url.path
            if path.startswith("/api/v1/") and path not in _PUBLIC_API_PATHS:
                if security_cfg.enabled:
                    request.state.auth = parse_and_validate_bearer_token(
                        authorization=request.headers.get("Authorization"),
                        cfg=security_cfg,
                    )
                else:
                    request.state.auth = AuthContext(
                        user_id=request.headers.get("x-user-id", "").strip() or "user_default",
                        full_name=request.headers.get("x-user-name", "").strip(),
                        email=request.headers.get("x-user-email", "").strip().lower(),
                        claims={},
                    )
            response = await call_next(request)
        except ApiError as exc:
            _log_security_blocked(request, exc)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            _log_security_blocked(request, exc)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
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
            details=_validation_details(exc),
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

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(documents.router)
    app.include_router(nominees.router)
    app.include_router(todos.router)
    app.include_router(public.router)
    return app


app = create_app()
