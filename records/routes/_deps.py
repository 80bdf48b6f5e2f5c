from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from records.schemas import error_envelope, success_envelope
from records.security import AuthContext
from records.store import store


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def current_user(request: Request) -> AuthContext:
    auth = getattr(request.state, "auth", None)
    if isinstance(auth, AuthContext):
        return auth
    return AuthContext(user_id="user_default", full_name="", email="", claims={})


def user_id_from_request(request: Request) -> str:
    return current_user(request).user_id


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: Any | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def created_response(request: Request, data: Any, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=201,
        content=success_envelope(data, trace_id_from_request(request), message),
    )


def run_with_optional_idempotency(
    request: Request,
    *,
    endpoint: str,
    idempotency_key: str | None,
    payload: dict[str, Any],
    execute: Callable[[], dict[str, Any]],
) -> dict[str, Any]:
    if not idempotency_key:
        return execute()
    return store.run_idempotent(
        endpoint=endpoint,
        user_id=user_id_from_request(request),
        idempotency_key=idempotency_key,
        payload=payload,
        execute=execute,
    )
