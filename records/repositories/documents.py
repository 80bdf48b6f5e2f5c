from __future__ import annotations

import copy
import json
import re
import threading
from typing import Any

from records.db.postgres import PostgresTxRunner

_COLUMNS: tuple[str, ...] = (
    "document_id",
    "user_id",
    "category",
    "document_type",
    "title",
    "file_name",
    "file_url",
    "file_type",
    "file_size",
    "storage_uri",
    "metadata",
    "tags",
    "upload_date",
    "is_deleted",
    "deleted_at",
    "share_history",
)
_JSON_COLUMNS = {"metadata", "tags", "share_history"}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _matches_search(document: dict[str, Any], needle: str) -> bool:
    needle = needle.lower()
    if needle in str(document.get("title") or "").lower():
        return True
    if needle in str(document.get("file_name") or "").lower():
        return True
    return any(needle in str(tag).lower() for tag in document.get("tags") or [])


def _like_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class InMemoryDocumentsRepository:
    def __init__(self, documents: dict[str, dict[str, Any]]) -> None:
        self._documents = documents
        self._lock = threading.Lock()

    def upsert(self, *, document: dict[str, Any]) -> dict[str, Any]:
        doc = copy.deepcopy(document)
        with self._lock:
            self._documents[str(doc["document_id"])] = doc
        return copy.deepcopy(doc)

    def get(self, *, user_id: str, document_id: str) -> dict[str, Any] | None:
        row = self._documents.get(document_id)
        if row is None or row.get("user_id") != user_id or row.get("is_deleted"):
            return None
        return copy.deepcopy(row)

    def list(
        self,
        *,
        user_id: str,
        categories: list[str] | None = None,
        document_type: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        items = []
        for row in self._documents.values():
            if row.get("user_id") != user_id or row.get("is_deleted"):
                continue
            if categories is not None and row.get("category") not in categories:
                continue
            if document_type and row.get("document_type") != document_type:
                continue
            if search and not _matches_search(row, search):
                continue
            items.append(copy.deepcopy(row))
        return sorted(items, key=lambda x: str(x.get("upload_date") or ""), reverse=True)

    def record_share_access(self, *, document_id: str, share_id: str) -> dict[str, Any] | None:
        """Bump ``access_count`` on one share entry; None when the share is gone."""
        with self._lock:
            row = self._documents.get(document_id)
            if row is None or row.get("is_deleted"):
                return None
            for entry in row.get("share_history") or []:
                if entry.get("share_id") == share_id:
                    entry["access_count"] = int(entry.get("access_count") or 0) + 1
                    return copy.deepcopy(row)
            return None


class PostgresDocumentsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "documents") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_document(row: tuple[Any, ...]) -> dict[str, Any]:
        document = dict(zip(_COLUMNS, row))
        document["metadata"] = document.get("metadata") if isinstance(document.get("metadata"), dict) else {}
        document["tags"] = document.get("tags") if isinstance(document.get("tags"), list) else []
        history = document.get("share_history")
        document["share_history"] = history if isinstance(history, list) else []
        document["file_size"] = int(document.get("file_size") or 0)
        document["is_deleted"] = bool(document.get("is_deleted"))
        return document

    def upsert(self, *, document: dict[str, Any]) -> dict[str, Any]:
        item = dict(document)
        placeholders = ", ".join("%s::jsonb" if col in _JSON_COLUMNS else "%s" for col in _COLUMNS)
        updates = ",\n                ".join(f"{col} = EXCLUDED.{col}" for col in _COLUMNS[1:])
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(document_id) DO UPDATE SET
                {updates}
        """
        params = tuple(
            json.dumps(item.get(col), ensure_ascii=True, sort_keys=True) if col in _JSON_COLUMNS else item.get(col)
            for col in _COLUMNS
        )

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return item

        return self._tx_runner.run_in_tx(user_id=str(item["user_id"]), fn=_op)

    def get(self, *, user_id: str, document_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE user_id = %s AND document_id = %s AND is_deleted = FALSE
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, document_id))
                row = cur.fetchone()
            return None if row is None else self._row_to_document(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def list(
        self,
        *,
        user_id: str,
        categories: list[str] | None = None,
        document_type: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = %s", "is_deleted = FALSE"]
        params: list[Any] = [user_id]
        if categories is not None:
            clauses.append("category = ANY(%s)")
            params.append(list(categories))
        if document_type:
            clauses.append("document_type = %s")
            params.append(document_type)
        if search:
            pattern = _like_pattern(search)
            clauses.append(
                "(title ILIKE %s OR file_name ILIKE %s OR EXISTS ("
                "SELECT 1 FROM jsonb_array_elements_text(tags) AS tag WHERE tag ILIKE %s))"
            )
            params.extend([pattern, pattern, pattern])
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE {" AND ".join(clauses)}
            ORDER BY upload_date DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [self._row_to_document(row) for row in rows]

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def record_share_access(self, *, document_id: str, share_id: str) -> dict[str, Any] | None:
        """Bump ``access_count`` on one share entry in a single UPDATE; None when the share is gone."""
        sql = f"""
            UPDATE {self._table_name}
            SET share_history = (
                SELECT jsonb_agg(
                    CASE WHEN entry->>'share_id' = %s
                        THEN jsonb_set(
                            entry,
                            '{{access_count}}',
                            to_jsonb(COALESCE((entry->>'access_count')::int, 0) + 1)
                        )
                        ELSE entry
                    END
                    ORDER BY position
                )
                FROM jsonb_array_elements(share_history) WITH ORDINALITY AS history(entry, position)
            )
            WHERE document_id = %s AND is_deleted = FALSE AND share_history @> %s::jsonb
            RETURNING {", ".join(_COLUMNS)}
        """
        containment = json.dumps([{"share_id": share_id}])

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (share_id, document_id, containment))
                row = cur.fetchone()
            return None if row is None else self._row_to_document(row)

        return self._tx_runner.run_in_tx(user_id=None, fn=_op)
