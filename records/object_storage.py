from __future__ import annotations

import json
import logging
import mimetypes
import os
import re
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from records.errors import ApiError
from records.security import LinkSigner, LinkTokenError
from records.settings import AppSettings, env_bool

logger = logging.getLogger(__name__)

FILE_LINK_PURPOSE = "file"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned.strip(".") or "object"


def file_extension(filename: str) -> str:
    ext = os.path.splitext(filename or "")[1].lstrip(".").lower()
    return re.sub(r"[^a-z0-9]+", "", ext) or "bin"


def build_object_key(
    *,
    prefix: str,
    owner_id: str,
    category: str,
    document_type: str,
    filename: str,
    now_ms: int | None = None,
) -> str:
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    base = (
        f"{_clean_segment(owner_id)}/{_clean_segment(category)}/"
        f"{_clean_segment(document_type)}_{stamp}_{uuid.uuid4().hex[:8]}.{file_extension(filename)}"
    )
    if prefix:
        return f"{prefix}/{base}"
    return base


def _storage_unavailable(action: str) -> ApiError:
    return ApiError(
        code="STORAGE_UNAVAILABLE",
        message=f"object storage {action} failed",
        error_class="transient",
        retryable=True,
        http_status=503,
    )


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    public_base_url: str
    link_secret: str


class ObjectStorageBackend:
    backend_name = "base"

    def put_object(
        self,
        *,
        owner_id: str,
        category: str,
        document_type: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        raise NotImplementedError

    def get_object(self, *, storage_uri: str) -> bytes:
        raise NotImplementedError

    def delete_object(self, *, storage_uri: str) -> bool:
        raise NotImplementedError

    def get_presigned_url(self, *, storage_uri: str, expires_in: int) -> str:
        raise NotImplementedError

    def public_url(self, *, storage_uri: str) -> str:
        raise NotImplementedError

    def _uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"  # type: ignore[attr-defined]


class LocalObjectStorage(ObjectStorageBackend):
    """Filesystem-backed storage for development and tests.

    Presigned URLs point at the API's ``/files/{token}`` route, which calls
    :meth:`open_signed` to stream the object back.
    """

    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._prefix = config.prefix.strip("/")
        self._public_base_url = config.public_base_url.rstrip("/")
        self._signer = LinkSigner(config.link_secret)
        self._root.mkdir(parents=True, exist_ok=True)

    def put_object(
        self,
        *,
        owner_id: str,
        category: str,
        document_type: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = build_object_key(
            prefix=self._prefix,
            owner_id=owner_id,
            category=category,
            document_type=document_type,
            filename=filename,
        )
        path = self._path_for_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content_bytes)
        self._write_meta(
            path,
            {
                "content_type": content_type or "application/octet-stream",
                "filename": filename,
                "created_at": _now_iso(),
            },
        )
        return self._uri_for_key(key)

    def get_object(self, *, storage_uri: str) -> bytes:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.read_bytes()

    def delete_object(self, *, storage_uri: str) -> bool:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            return False
        path.unlink()
        meta = self._meta_path(path)
        if meta.exists():
            meta.unlink()
        return True

    def get_presigned_url(self, *, storage_uri: str, expires_in: int) -> str:
        # validates the uri belongs to this backend
        self._path_for_uri(storage_uri)
        token = self._signer.sign(
            {"uri": storage_uri},
            purpose=FILE_LINK_PURPOSE,
            expires_at=int(time.time()) + int(expires_in),
        )
        return f"{self._public_base_url}/files/{token}"

    def public_url(self, *, storage_uri: str) -> str:
        return self._path_for_uri(storage_uri).resolve().as_uri()

    def open_signed(self, token: str) -> tuple[bytes, str, str]:
        """Return ``(content, content_type, filename)`` for a signed file token."""
        try:
            claims = self._signer.unsign(token, purpose=FILE_LINK_PURPOSE)
        except LinkTokenError as exc:
            raise ApiError(
                code="FILE_LINK_EXPIRED" if exc.expired else "FILE_LINK_INVALID",
                message=str(exc),
                error_class="security_sensitive",
                retryable=False,
                http_status=410 if exc.expired else 404,
            ) from None
        storage_uri = str(claims.get("uri") or "")
        try:
            path = self._path_for_uri(storage_uri)
        except ValueError:
            path = None
        if path is None or not path.exists():
            raise ApiError(
                code="FILE_NOT_FOUND",
                message="stored object not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        meta = self._read_meta(path)
        filename = str(meta.get("filename") or path.name)
        content_type = str(meta.get("content_type") or "") or (
            mimetypes.guess_type(filename)[0] or "application/octet-stream"
        )
        return path.read_bytes(), content_type, filename

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()

    def _path_for_key(self, key: str) -> Path:
        return self._root / self._bucket / key

    def _path_for_uri(self, storage_uri: str) -> Path:
        parsed = parse_storage_uri(storage_uri)
        if parsed["backend"] != self.backend_name:
            raise ValueError("storage backend mismatch")
        if ".." in parsed["key"].split("/"):
            raise ValueError("invalid storage key")
        return self._root / parsed["bucket"] / parsed["key"]

    def _meta_path(self, path: Path) -> Path:
        return Path(f"{path}.meta.json")

    def _read_meta(self, path: Path) -> dict[str, Any]:
        meta_path = self._meta_path(path)
        if not meta_path.exists():
            return {}
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}

    def _write_meta(self, path: Path, meta: dict[str, Any]) -> None:
        meta_path = self._meta_path(path)
        meta_path.write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except ImportError as exc:  # pragma: no cover - declared dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        self._region = config.region
        self._endpoint = config.endpoint.rstrip("/")
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )
        logger.info("s3 object storage initialized bucket=%s region=%s", self._bucket, self._region or "-")

    def put_object(
        self,
        *,
        owner_id: str,
        category: str,
        document_type: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = build_object_key(
            prefix=self._prefix,
            owner_id=owner_id,
            category=category,
            document_type=document_type,
            filename=filename,
        )
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content_bytes,
                ContentType=content_type or "application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("s3 upload failed key=%s error=%s", key, type(exc).__name__)
            raise _storage_unavailable("upload") from exc
        return self._uri_for_key(key)

    def get_object(self, *, storage_uri: str) -> bytes:
        parsed = parse_storage_uri(storage_uri)
        try:
            response = self._client.get_object(Bucket=parsed["bucket"], Key=parsed["key"])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                raise FileNotFoundError(storage_uri) from exc
            raise _storage_unavailable("read") from exc
        except BotoCoreError as exc:
            raise _storage_unavailable("read") from exc
        return response["Body"].read()

    def delete_object(self, *, storage_uri: str) -> bool:
        parsed = parse_storage_uri(storage_uri)
        try:
            self._client.delete_object(Bucket=parsed["bucket"], Key=parsed["key"])
        except (BotoCoreError, ClientError) as exc:
            logger.error("s3 delete failed key=%s error=%s", parsed["key"], type(exc).__name__)
            raise _storage_unavailable("delete") from exc
        return True

    def get_presigned_url(self, *, storage_uri: str, expires_in: int) -> str:
        parsed = parse_storage_uri(storage_uri)
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": parsed["bucket"], "Key": parsed["key"]},
                ExpiresIn=int(expires_in),
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("s3 presign failed key=%s error=%s", parsed["key"], type(exc).__name__)
            raise _storage_unavailable("signing") from exc

    def public_url(self, *, storage_uri: str) -> str:
        parsed = parse_storage_uri(storage_uri)
        if self._endpoint:
            return f"{self._endpoint}/{parsed['bucket']}/{parsed['key']}"
        if not self._region:
            return f"https://{parsed['bucket']}.s3.amazonaws.com/{parsed['key']}"
        return f"https://{parsed['bucket']}.s3.{self._region}.amazonaws.com/{parsed['key']}"


def parse_storage_uri(uri: str) -> dict[str, str]:
    if not uri.startswith("object://"):
        raise ValueError("invalid storage uri")
    raw = uri[len("object://") :]
    parts = raw.split("/", 2)
    if len(parts) != 3 or not all(parts):
        raise ValueError("invalid storage uri")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2]}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    settings = AppSettings.from_env(env)
    backend = env.get("RECORDS_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "records").strip() or "records",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/records-object-storage").strip() or "/tmp/records-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env_bool(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", True),
        public_base_url=settings.public_base_url,
        link_secret=settings.share_link_secret,
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    return LocalObjectStorage(config=config)
