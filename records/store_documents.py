from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from records.errors import ApiError
from records.object_storage import file_extension
from records.security import LinkTokenError

logger = logging.getLogger(__name__)

DOWNLOAD_URL_TTL_S = 3600
VIEW_URL_TTL_S = 1800
SHARED_REDIRECT_TTL_S = 300
SHARE_LINK_PURPOSE = "share"


def _document_not_found() -> ApiError:
    return ApiError(
        code="DOC_NOT_FOUND",
        message="Document not found",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def parse_metadata_field(raw: str | None) -> dict[str, Any]:
    """Decode the JSON ``metadata`` form field sent with an upload."""
    if raw is None or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = None
    if not isinstance(value, dict):
        raise ApiError(
            code="DOC_METADATA_INVALID",
            message="metadata must be a JSON object",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return value


def parse_tags_field(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


class StoreDocumentsMixin:
    def _require_document(self, *, user_id: str, document_id: str) -> dict[str, Any]:
        document = self.documents_repository.get(user_id=user_id, document_id=document_id)
        if document is None:
            raise _document_not_found()
        return document

    def _document_scope(self, *, user_id: str, account_id: str | None):
        if not account_id:
            return user_id, None
        access = self.resolve_nominee_access(user_id=user_id, nominee_id=account_id)
        return access.owner_id, access

    def upload_document(
        self,
        *,
        user_id: str,
        category: str,
        document_type: str,
        title: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        if not filename or not content_bytes:
            raise ApiError(
                code="DOC_FILE_REQUIRED",
                message="No file uploaded",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        storage_uri = self.object_storage.put_object(
            owner_id=user_id,
            category=category,
            document_type=document_type,
            filename=filename,
            content_bytes=content_bytes,
            content_type=content_type,
        )
        document = {
            "document_id": self._new_id("doc"),
            "user_id": user_id,
            "category": category,
            "document_type": document_type,
            "title": title.strip() or filename,
            "file_name": filename,
            "file_url": self.object_storage.public_url(storage_uri=storage_uri),
            "file_type": file_extension(filename),
            "file_size": len(content_bytes),
            "storage_uri": storage_uri,
            "metadata": dict(metadata or {}),
            "tags": list(tags or []),
            "upload_date": self._utcnow_iso(),
            "is_deleted": False,
            "deleted_at": None,
            "share_history": [],
        }
        try:
            saved = self._persist_document(document=document)
        except Exception:
            logger.error("document persist failed; removing uploaded object uri=%s", storage_uri)
            self.object_storage.delete_object(storage_uri=storage_uri)
            raise
        logger.info(
            "document uploaded document_id=%s user_id=%s size=%s",
            saved["document_id"],
            user_id,
            saved["file_size"],
        )
        return saved

    def list_documents(
        self,
        *,
        user_id: str,
        category: str | None = None,
        document_type: str | None = None,
        search: str | None = None,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        owner_id, access = self._document_scope(user_id=user_id, account_id=account_id)
        categories: list[str] | None = [category] if category else None
        if access is not None:
            allowed = list(access.categories)
            categories = [c for c in (categories or allowed) if c in allowed]
        if categories == []:
            items: list[dict[str, Any]] = []
        else:
            items = self.documents_repository.list(
                user_id=owner_id,
                categories=categories,
                document_type=document_type or None,
                search=(search or "").strip() or None,
            )
        if access is None:
            access_info: dict[str, Any] = {"is_nominee_access": False}
        else:
            access_info = {"is_nominee_access": True, "access_level": access.access_level}
        return {"documents": items, "total": len(items), "access_info": access_info}

    def get_document(self, *, user_id: str, document_id: str) -> dict[str, Any]:
        document = self._require_document(user_id=user_id, document_id=document_id)
        document["signed_url"] = self.object_storage.get_presigned_url(
            storage_uri=document["storage_uri"],
            expires_in=DOWNLOAD_URL_TTL_S,
        )
        return document

    def update_document(self, *, user_id: str, document_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        document = self._require_document(user_id=user_id, document_id=document_id)
        if payload.get("title"):
            document["title"] = str(payload["title"]).strip() or document["title"]
        if payload.get("metadata"):
            document["metadata"] = {**(document.get("metadata") or {}), **payload["metadata"]}
        if payload.get("tags") is not None:
            document["tags"] = [str(tag).strip() for tag in payload["tags"] if str(tag).strip()]
        return self._persist_document(document=document)

    def delete_document(self, *, user_id: str, document_id: str) -> dict[str, Any]:
        document = self._require_document(user_id=user_id, document_id=document_id)
        document["is_deleted"] = True
        document["deleted_at"] = self._utcnow_iso()
        self._persist_document(document=document)
        return {"document_id": document_id, "deleted": True}

    def document_category_stats(self, *, user_id: str) -> list[dict[str, Any]]:
        grouped: dict[str, dict[str, Any]] = {}
        for document in self.documents_repository.list(user_id=user_id):
            bucket = grouped.setdefault(
                document["category"],
                {"category": document["category"], "count": 0, "total_size": 0},
            )
            bucket["count"] += 1
            bucket["total_size"] += int(document.get("file_size") or 0)
        return [grouped[key] for key in sorted(grouped)]

    def get_document_download_url(
        self,
        *,
        user_id: str,
        document_id: str,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        owner_id, access = self._document_scope(user_id=user_id, account_id=account_id)
        document = self._require_document(user_id=owner_id, document_id=document_id)
        if access is not None:
            access.check_category(document["category"])
            if not access.can_download:
                raise ApiError(
                    code="NOMINEE_DOWNLOAD_FORBIDDEN",
                    message="Your access level does not permit downloading documents",
                    error_class="security_sensitive",
                    retryable=False,
                    http_status=403,
                )
        signed_url = self.object_storage.get_presigned_url(
            storage_uri=document["storage_uri"],
            expires_in=DOWNLOAD_URL_TTL_S,
        )
        return {"signed_url": signed_url, "file_name": document["file_name"]}

    def get_document_view_url(
        self,
        *,
        user_id: str,
        document_id: str,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        owner_id, access = self._document_scope(user_id=user_id, account_id=account_id)
        document = self._require_document(user_id=owner_id, document_id=document_id)
        if access is not None:
            access.check_category(document["category"])
        signed_url = self.object_storage.get_presigned_url(
            storage_uri=document["storage_uri"],
            expires_in=VIEW_URL_TTL_S,
        )
        return {
            "signed_url": signed_url,
            "file_name": document["file_name"],
            "file_type": document["file_type"],
            "document": {
                "document_id": document["document_id"],
                "title": document["title"],
                "file_name": document["file_name"],
                "file_type": document["file_type"],
                "upload_date": document["upload_date"],
                "category": document["category"],
                "document_type": document["document_type"],
            },
        }

    def share_document(
        self,
        *,
        user_id: str,
        document_id: str,
        expiry_hours: int = 24,
        note: str | None = None,
    ) -> dict[str, Any]:
        document = self._require_document(user_id=user_id, document_id=document_id)
        now = self._utcnow()
        expires_at = now + timedelta(hours=expiry_hours)
        share_id = self._new_id("shr")
        entry = {
            "share_id": share_id,
            "shared_with": (note or "").strip() or f"Link - {expiry_hours}h expiry",
            "shared_at": now.isoformat(),
            "expires_at": expires_at.isoformat(),
            "access_count": 0,
        }
        document.setdefault("share_history", []).append(entry)
        self._persist_document(document=document)

        token = self.link_signer.sign(
            {"doc": document_id, "sid": share_id},
            purpose=SHARE_LINK_PURPOSE,
            expires_at=int(expires_at.timestamp()),
        )
        signed_url = self.object_storage.get_presigned_url(
            storage_uri=document["storage_uri"],
            expires_in=expiry_hours * 3600,
        )
        return {
            "share_id": share_id,
            "expires_at": entry["expires_at"],
            "signed_url": signed_url,
            "share_link": f"{self.settings.public_base_url}/shared/{token}",
        }

    def get_share_history(self, *, user_id: str, document_id: str) -> list[dict[str, Any]]:
        document = self._require_document(user_id=user_id, document_id=document_id)
        history = list(document.get("share_history") or [])
        return sorted(history, key=lambda x: str(x.get("shared_at") or ""), reverse=True)

    def revoke_share(self, *, user_id: str, document_id: str, share_id: str) -> dict[str, Any]:
        document = self._require_document(user_id=user_id, document_id=document_id)
        history = list(document.get("share_history") or [])
        remaining = [entry for entry in history if entry.get("share_id") != share_id]
        if len(remaining) == len(history):
            raise ApiError(
                code="SHARE_NOT_FOUND",
                message="Share not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        document["share_history"] = remaining
        self._persist_document(document=document)
        logger.info("share revoked document_id=%s share_id=%s", document_id, share_id)
        return {"document_id": document_id, "share_id": share_id, "revoked": True}

    def resolve_shared_link(self, *, token: str) -> str:
        """Count one access on a share link and return a short-lived object URL."""
        try:
            claims = self.link_signer.unsign(token, purpose=SHARE_LINK_PURPOSE)
        except LinkTokenError as exc:
            logger.warning("shared link rejected reason=%s", exc)
            if exc.expired:
                raise ApiError(
                    code="SHARE_LINK_EXPIRED",
                    message="This share link has expired",
                    error_class="security_sensitive",
                    retryable=False,
                    http_status=410,
                ) from None
            raise ApiError(
                code="SHARE_LINK_INVALID",
                message="Invalid share link",
                error_class="security_sensitive",
                retryable=False,
                http_status=404,
            ) from None

        document_id = str(claims.get("doc") or "")
        share_id = str(claims.get("sid") or "")
        document = self._record_share_access(document_id=document_id, share_id=share_id)
        if document is None:
            raise ApiError(
                code="SHARE_LINK_INVALID",
                message="This share link has been revoked",
                error_class="security_sensitive",
                retryable=False,
                http_status=404,
            )
        return self.object_storage.get_presigned_url(
            storage_uri=document["storage_uri"],
            expires_in=SHARED_REDIRECT_TTL_S,
        )
