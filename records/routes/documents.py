from __future__ import annotations

import hashlib

from fastapi import APIRouter, File, Form, Header, Query, Request, UploadFile

from records.routes._deps import (
    created_response,
    run_with_optional_idempotency,
    trace_id_from_request,
    user_id_from_request,
)
from records.schemas import DocumentCategory, DocumentUpdateRequest, ShareDocumentRequest, success_envelope
from records.store import store
from records.store_documents import parse_metadata_field, parse_tags_field

router = APIRouter(prefix="/api/v1", tags=["documents"])


@router.post("/documents/upload")
async def upload_document(
    request: Request,
    category: DocumentCategory = Form(...),
    document_type: str = Form(..., min_length=1),
    title: str = Form(default=""),
    metadata: str | None = Form(default=None),
    tags: str | None = Form(default=None),
    file: UploadFile | None = File(default=None),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    file_bytes = await file.read() if file is not None else b""
    filename = (file.filename or "") if file is not None else ""
    parsed_metadata = parse_metadata_field(metadata)
    parsed_tags = parse_tags_field(tags)
    user_id = user_id_from_request(request)
    data = run_with_optional_idempotency(
        request,
        endpoint="POST:/api/v1/documents/upload",
        idempotency_key=idempotency_key,
        payload={
            "category": category,
            "document_type": document_type,
            "title": title,
            "metadata": parsed_metadata,
            "tags": parsed_tags,
            "filename": filename,
            "file_sha256": hashlib.sha256(file_bytes).hexdigest(),
        },
        execute=lambda: store.upload_document(
            user_id=user_id,
            category=category,
            document_type=document_type.strip(),
            title=title,
            filename=filename,
            content_bytes=file_bytes,
            content_type=file.content_type if file is not None else None,
            metadata=parsed_metadata,
            tags=parsed_tags,
        ),
    )
    return created_response(request, data, "Document uploaded successfully")


@router.get("/documents")
def list_documents(
    request: Request,
    category: DocumentCategory | None = Query(default=None),
    document_type: str | None = Query(default=None),
    search: str | None = Query(default=None),
    account_id: str | None = Query(default=None),
):
    data = store.list_documents(
        user_id=user_id_from_request(request),
        category=category,
        document_type=document_type,
        search=search,
        account_id=account_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/documents/stats/categories")
def document_stats(request: Request):
    stats = store.document_category_stats(user_id=user_id_from_request(request))
    return success_envelope({"stats": stats}, trace_id_from_request(request))


@router.get("/documents/{document_id}")
def get_document(document_id: str, request: Request):
    document = store.get_document(user_id=user_id_from_request(request), document_id=document_id)
    return success_envelope(document, trace_id_from_request(request))


@router.put("/documents/{document_id}")
def update_document(document_id: str, payload: DocumentUpdateRequest, request: Request):
    document = store.update_document(
        user_id=user_id_from_request(request),
        document_id=document_id,
        payload=payload.model_dump(exclude_unset=True),
    )
    return success_envelope(document, trace_id_from_request(request), "Document updated successfully")


@router.delete("/documents/{document_id}")
def delete_document(document_id: str, request: Request):
    data = store.delete_document(user_id=user_id_from_request(request), document_id=document_id)
    return success_envelope(data, trace_id_from_request(request), "Document deleted successfully")


@router.get("/documents/{document_id}/download")
def document_download_url(
    document_id: str,
    request: Request,
    account_id: str | None = Query(default=None),
):
    data = store.get_document_download_url(
        user_id=user_id_from_request(request),
        document_id=document_id,
        account_id=account_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/documents/{document_id}/view")
def document_view_url(
    document_id: str,
    request: Request,
    account_id: str | None = Query(default=None),
):
    data = store.get_document_view_url(
        user_id=user_id_from_request(request),
        document_id=document_id,
        account_id=account_id,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/documents/{document_id}/share")
def share_document(document_id: str, request: Request, payload: ShareDocumentRequest | None = None):
    body = payload or ShareDocumentRequest()
    data = store.share_document(
        user_id=user_id_from_request(request),
        document_id=document_id,
        expiry_hours=body.expiry_hours,
        note=body.note,
    )
    return success_envelope(data, trace_id_from_request(request), "Share link generated successfully")


@router.get("/documents/{document_id}/share-history")
def share_history(document_id: str, request: Request):
    history = store.get_share_history(user_id=user_id_from_request(request), document_id=document_id)
    return success_envelope({"share_history": history}, trace_id_from_request(request))


@router.delete("/documents/{document_id}/share/{share_id}")
def revoke_share(document_id: str, share_id: str, request: Request):
    data = store.revoke_share(
        user_id=user_id_from_request(request),
        document_id=document_id,
        share_id=share_id,
    )
    return success_envelope(data, trace_id_from_request(request), "Share access revoked successfully")
