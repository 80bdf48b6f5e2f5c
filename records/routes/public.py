from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Request, Response
from fastapi.responses import RedirectResponse

from records.errors import ApiError
from records.object_storage import LocalObjectStorage
from records.store import store

router = APIRouter(tags=["public"])


@router.get("/shared/{token}")
def open_shared_link(token: str, request: Request):
    target = store.resolve_shared_link(token=token)
    return RedirectResponse(url=target, status_code=307)


@router.get("/files/{token}")
def download_signed_file(token: str, request: Request):
    storage = store.object_storage
    if not isinstance(storage, LocalObjectStorage):
        raise ApiError(
            code="FILE_LINK_INVALID",
            message="signed file links are served by object storage",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
    content, content_type, filename = storage.open_signed(token)
    return Response(
        content=content,
        media_type=content_type,
        headers={"content-disposition": f"inline; filename*=UTF-8''{quote(filename)}"},
    )
