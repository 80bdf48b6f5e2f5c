from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from records.db.postgres import PostgresTxRunner, _import_psycopg
from records.repositories import (
    PostgresDocumentsRepository,
    PostgresNomineesRepository,
    PostgresTodosRepository,
)
from records.store import IdempotencyRecord, InMemoryStore


def _idempotency_rows(records: dict[tuple[str, str], IdempotencyRecord]) -> list[dict[str, Any]]:
    return [
        {"scope": scope, "key": key, "fingerprint": record.fingerprint, "data": record.data}
        for (scope, key), record in records.items()
    ]


def _restore_idempotency(rows: Any) -> dict[tuple[str, str], IdempotencyRecord]:
    restored: dict[tuple[str, str], IdempotencyRecord] = {}
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        scope = row.get("scope")
        key = row.get("key")
        fingerprint = row.get("fingerprint")
        data = row.get("data")
        if not isinstance(scope, str) or not isinstance(key, str) or not isinstance(fingerprint, str):
            continue
        if not isinstance(data, dict):
            continue
        restored[(scope, key)] = IdempotencyRecord(fingerprint=fingerprint, data=data)
    return restored


class SqliteBackedStore(InMemoryStore):
    """Persistent store backend that snapshots all state to one SQLite row."""

    def __init__(self, db_path: str) -> None:
        super().__init__()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._initialize_database()
        self._load_state()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _state_snapshot(self) -> dict[str, Any]:
        return {
            "schema_version": 1,
            "idempotency_records": _idempotency_rows(self.idempotency_records),
            "documents": self.documents,
            "nominees": self.nominees,
            "todos": self.todos,
        }

    def _restore_state(self, payload: dict[str, Any]) -> None:
        self.idempotency_records = _restore_idempotency(payload.get("idempotency_records"))
        self.documents = payload.get("documents", {}) if isinstance(payload.get("documents"), dict) else {}
        self.nominees = payload.get("nominees", {}) if isinstance(payload.get("nominees"), dict) else {}
        self.todos = payload.get("todos", {}) if isinstance(payload.get("todos"), dict) else {}
        self._bind_repositories()

    def _save_state(self) -> None:
        snapshot = self._state_snapshot()
        blob = json.dumps(snapshot, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                    INSERT INTO store_state(id, payload)
                    VALUES (1, ?)
                    ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
                    """,
                (blob,),
            )
            conn.commit()

    def _load_state(self) -> None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT payload FROM store_state WHERE id = 1").fetchone()
        if row is None:
            return
        payload_raw = row[0]
        if not isinstance(payload_raw, str):
            return
        try:
            payload = json.loads(payload_raw)
        except json.JSONDecodeError:
            return
        if not isinstance(payload, dict):
            return
        self._restore_state(payload)

    def reset(self) -> None:
        super().reset()
        self._save_state()

    def _persist_document(self, *, document: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_document(document=document)
        self._save_state()
        return saved

    def _persist_nominee(self, *, nominee: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_nominee(nominee=nominee)
        self._save_state()
        return saved

    def _persist_todo(self, *, todo: dict[str, Any]) -> dict[str, Any]:
        saved = super()._persist_todo(todo=todo)
        self._save_state()
        return saved

    def _record_share_access(self, *, document_id: str, share_id: str) -> dict[str, Any] | None:
        with self._lock:
            document = super()._record_share_access(document_id=document_id, share_id=share_id)
            if document is not None:
                self._save_state()
        return document

    def run_idempotent(
        self,
        *,
        endpoint: str,
        user_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: callable,
    ) -> dict[str, Any]:
        data = super().run_idempotent(
            endpoint=endpoint,
            user_id=user_id,
            idempotency_key=idempotency_key,
            payload=payload,
            execute=execute,
        )
        self._save_state()
        return data


class PostgresBackedStore(InMemoryStore):
    """Store backend that keeps aggregates in PostgreSQL tables.

    Documents, nominees and tasks go through the PostgreSQL repositories;
    idempotency records are snapshotted to ``table_name``.
    """

    def __init__(self, *, dsn: str, table_name: str = "records_store_state") -> None:
        super().__init__()
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._table_name = table_name.strip() or "records_store_state"
        self._lock = threading.RLock()
        self._initialize_database()
        self._tx_runner = PostgresTxRunner(self._dsn)
        self._bind_repositories()
        self._load_state()

    def _bind_repositories(self) -> None:
        tx_runner = getattr(self, "_tx_runner", None)
        if tx_runner is None:
            super()._bind_repositories()
            return
        self.documents_repository = PostgresDocumentsRepository(tx_runner=tx_runner, table_name="documents")
        self.nominees_repository = PostgresNomineesRepository(tx_runner=tx_runner, table_name="nominees")
        self.todos_repository = PostgresTodosRepository(tx_runner=tx_runner, table_name="todos")

    def _connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def _initialize_database(self) -> None:
        create_sql = f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                  id SMALLINT PRIMARY KEY,
                  payload JSONB NOT NULL
                )
                """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(create_sql)
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                      document_id TEXT PRIMARY KEY,
                      user_id TEXT NOT NULL,
                      category TEXT NOT NULL,
                      document_type TEXT NOT NULL,
                      title TEXT NOT NULL,
                      file_name TEXT NOT NULL,
                      file_url TEXT,
                      file_type TEXT,
                      file_size BIGINT NOT NULL DEFAULT 0,
                      storage_uri TEXT NOT NULL,
                      metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                      tags JSONB NOT NULL DEFAULT '[]'::jsonb,
                      upload_date TEXT NOT NULL,
                      is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                      deleted_at TEXT,
                      share_history JSONB NOT NULL DEFAULT '[]'::jsonb
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS nominees (
                      nominee_id TEXT PRIMARY KEY,
                      user_id TEXT NOT NULL,
                      full_name TEXT NOT NULL,
                      relationship TEXT NOT NULL,
                      date_of_birth TEXT NOT NULL,
                      aadhaar_number TEXT,
                      pan_number TEXT,
                      mobile_number TEXT,
                      mobile_verified BOOLEAN NOT NULL DEFAULT FALSE,
                      mobile_otp JSONB,
                      email TEXT,
                      address JSONB,
                      share_percentage DOUBLE PRECISION NOT NULL DEFAULT 0,
                      is_active BOOLEAN NOT NULL DEFAULT TRUE,
                      documents JSONB NOT NULL DEFAULT '[]'::jsonb,
                      notes TEXT,
                      has_access BOOLEAN NOT NULL DEFAULT FALSE,
                      access_level TEXT NOT NULL DEFAULT 'none',
                      invite_status TEXT NOT NULL DEFAULT 'not_invited',
                      invite_token TEXT,
                      invite_sent_at TEXT,
                      linked_user TEXT,
                      linked_at TEXT,
                      last_accessed_at TEXT,
                      access_expires_at TEXT,
                      can_view_categories JSONB NOT NULL DEFAULT '[]'::jsonb,
                      owner_name TEXT,
                      owner_email TEXT,
                      created_at TEXT NOT NULL,
                      updated_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS todos (
                      todo_id TEXT PRIMARY KEY,
                      user_id TEXT NOT NULL,
                      task_name TEXT NOT NULL,
                      is_completed BOOLEAN NOT NULL DEFAULT FALSE,
                      completed_at TEXT,
                      priority TEXT NOT NULL DEFAULT 'medium',
                      is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                      deleted_at TEXT,
                      created_at TEXT NOT NULL,
                      updated_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute("CREATE INDEX IF NOT EXISTS idx_documents_user ON documents (user_id, upload_date)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_nominees_user ON nominees (user_id, created_at)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_nominees_linked_user ON nominees (linked_user)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_nominees_invite_token ON nominees (invite_token)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_todos_user ON todos (user_id, created_at)")
            conn.commit()

    def _save_state(self) -> None:
        blob = json.dumps(
            {"schema_version": 1, "idempotency_records": _idempotency_rows(self.idempotency_records)},
            sort_keys=True,
            ensure_ascii=True,
            separators=(",", ":"),
        )
        upsert_sql = f"""
                    INSERT INTO {self._table_name}(id, payload)
                    VALUES (1, %s::jsonb)
                    ON CONFLICT(id) DO UPDATE SET payload = EXCLUDED.payload
                    """
        with self._lock, self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(upsert_sql, (blob,))
            conn.commit()

    def _load_state(self) -> None:
        select_sql = f"SELECT payload::text FROM {self._table_name} WHERE id = 1"
        with self._lock, self._connect() as conn, conn.cursor() as cur:
            cur.execute(select_sql)
            row = cur.fetchone()
        if row is None or not isinstance(row[0], str):
            return
        try:
            payload = json.loads(row[0])
        except json.JSONDecodeError:
            return
        if isinstance(payload, dict):
            self.idempotency_records = _restore_idempotency(payload.get("idempotency_records"))

    def reset(self) -> None:
        with self._lock, self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("TRUNCATE TABLE documents, nominees, todos")
            conn.commit()
        super().reset()
        self._save_state()

    def run_idempotent(
        self,
        *,
        endpoint: str,
        user_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: callable,
    ) -> dict[str, Any]:
        data = super().run_idempotent(
            endpoint=endpoint,
            user_id=user_id,
            idempotency_key=idempotency_key,
            payload=payload,
            execute=execute,
        )
        self._save_state()
        return data
