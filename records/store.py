from __future__ import annotations

import json
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from records.errors import ApiError
from records.object_storage import create_object_storage_from_env
from records.repositories import (
    InMemoryDocumentsRepository,
    InMemoryNomineesRepository,
    InMemoryTodosRepository,
)
from records.security import LinkSigner
from records.settings import AppSettings
from records.store_documents import StoreDocumentsMixin
from records.store_nominees import StoreNomineesMixin
from records.store_todos import StoreTodosMixin


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


class InMemoryStore(StoreDocumentsMixin, StoreNomineesMixin, StoreTodosMixin):
    def __init__(self) -> None:
        self.settings = AppSettings.from_env(os.environ)
        self.link_signer = LinkSigner(self.settings.share_link_secret)
        self.object_storage = create_object_storage_from_env(os.environ)
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self.documents: dict[str, dict[str, Any]] = {}
        self.nominees: dict[str, dict[str, Any]] = {}
        self.todos: dict[str, dict[str, Any]] = {}
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.documents_repository = InMemoryDocumentsRepository(self.documents)
        self.nominees_repository = InMemoryNomineesRepository(self.nominees)
        self.todos_repository = InMemoryTodosRepository(self.todos)

    def reset(self) -> None:
        self.settings = AppSettings.from_env(os.environ)
        self.link_signer = LinkSigner(self.settings.share_link_secret)
        self.object_storage = create_object_storage_from_env(os.environ)
        reset_fn = getattr(self.object_storage, "reset", None)
        if callable(reset_fn):
            reset_fn()
        self.idempotency_records.clear()
        self.documents.clear()
        self.nominees.clear()
        self.todos.clear()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(UTC)

    @classmethod
    def _utcnow_iso(cls) -> str:
        return cls._utcnow().isoformat()

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    def _persist_document(self, *, document: dict[str, Any]) -> dict[str, Any]:
        return self.documents_repository.upsert(document=document)

    def _persist_nominee(self, *, nominee: dict[str, Any]) -> dict[str, Any]:
        return self.nominees_repository.upsert(nominee=nominee)

    def _persist_todo(self, *, todo: dict[str, Any]) -> dict[str, Any]:
        return self.todos_repository.upsert(todo=todo)

    def _record_share_access(self, *, document_id: str, share_id: str) -> dict[str, Any] | None:
        return self.documents_repository.record_share_access(document_id=document_id, share_id=share_id)

    def run_idempotent(
        self,
        *,
        endpoint: str,
        user_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: callable,
    ) -> dict[str, Any]:
        key = (f"{user_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        if key in self.idempotency_records:
            record = self.idempotency_records[key]
            if record.fingerprint != current_fingerprint:
                raise ApiError(
                    code="IDEMPOTENCY_CONFLICT",
                    message="same key with different payload",
                    error_class="validation",
                    retryable=False,
                    http_status=409,
                )
            return record.data

        data = execute()
        self.idempotency_records[key] = IdempotencyRecord(
            fingerprint=current_fingerprint,
            data=data,
        )
        return data


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("RECORDS_STORE_BACKEND", "memory").strip().lower()
    if backend == "sqlite":
        from records.store_backends import SqliteBackedStore

        db_path = env.get("RECORDS_STORE_SQLITE_PATH", ".local/records-store.sqlite3")
        return SqliteBackedStore(db_path)
    if backend == "postgres":
        from records.store_backends import PostgresBackedStore

        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when RECORDS_STORE_BACKEND=postgres")
        table_name = env.get("RECORDS_STORE_POSTGRES_TABLE", "records_store_state")
        return PostgresBackedStore(dsn=dsn, table_name=table_name)
    return InMemoryStore()


store = create_store_from_env()
