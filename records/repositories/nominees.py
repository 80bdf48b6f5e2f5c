from __future__ import annotations

import copy
import json
import re
from typing import Any

from records.db.postgres import PostgresTxRunner

_COLUMNS: tuple[str, ...] = (
    "nominee_id",
    "user_id",
    "full_name",
    "relationship",
    "date_of_birth",
    "aadhaar_number",
    "pan_number",
    "mobile_number",
    "mobile_verified",
    "mobile_otp",
    "email",
    "address",
    "share_percentage",
    "is_active",
    "documents",
    "notes",
    "has_access",
    "access_level",
    "invite_status",
    "invite_token",
    "invite_sent_at",
    "linked_user",
    "linked_at",
    "last_accessed_at",
    "access_expires_at",
    "can_view_categories",
    "owner_name",
    "owner_email",
    "created_at",
    "updated_at",
)
_JSON_COLUMNS = {"mobile_otp", "address", "documents", "can_view_categories"}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _newest_first(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(items, key=lambda x: str(x.get("created_at") or ""), reverse=True)


class InMemoryNomineesRepository:
    def __init__(self, nominees: dict[str, dict[str, Any]]) -> None:
        self._nominees = nominees

    def upsert(self, *, nominee: dict[str, Any]) -> dict[str, Any]:
        item = copy.deepcopy(nominee)
        self._nominees[str(item["nominee_id"])] = item
        return copy.deepcopy(item)

    def get(self, *, user_id: str, nominee_id: str) -> dict[str, Any] | None:
        row = self._nominees.get(nominee_id)
        if row is None or row.get("user_id") != user_id:
            return None
        return copy.deepcopy(row)

    def list(self, *, user_id: str, is_active: bool | None = None) -> list[dict[str, Any]]:
        items = [
            copy.deepcopy(x)
            for x in self._nominees.values()
            if x.get("user_id") == user_id and (is_active is None or bool(x.get("is_active")) == is_active)
        ]
        return _newest_first(items)

    def get_pending_by_invite_token(self, *, invite_token: str) -> dict[str, Any] | None:
        for row in self._nominees.values():
            if row.get("invite_token") == invite_token and row.get("invite_status") == "pending":
                return copy.deepcopy(row)
        return None

    def get_linked(self, *, nominee_id: str, linked_user: str) -> dict[str, Any] | None:
        row = self._nominees.get(nominee_id)
        if row is None or row.get("linked_user") != linked_user:
            return None
        return copy.deepcopy(row)

    def list_linked(self, *, linked_user: str) -> list[dict[str, Any]]:
        items = [
            copy.deepcopy(x)
            for x in self._nominees.values()
            if x.get("linked_user") == linked_user
            and x.get("has_access")
            and x.get("invite_status") == "accepted"
            and x.get("is_active")
        ]
        return _newest_first(items)


class PostgresNomineesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "nominees") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_nominee(row: tuple[Any, ...]) -> dict[str, Any]:
        nominee = dict(zip(_COLUMNS, row))
        nominee["documents"] = nominee.get("documents") if isinstance(nominee.get("documents"), list) else []
        categories = nominee.get("can_view_categories")
        nominee["can_view_categories"] = categories if isinstance(categories, list) else []
        nominee["share_percentage"] = float(nominee.get("share_percentage") or 0)
        for flag in ("is_active", "has_access", "mobile_verified"):
            nominee[flag] = bool(nominee.get(flag))
        return nominee

    def _select(self, where: str) -> str:
        return f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE {where}
        """

    def upsert(self, *, nominee: dict[str, Any]) -> dict[str, Any]:
        item = dict(nominee)
        placeholders = ", ".join("%s::jsonb" if col in _JSON_COLUMNS else "%s" for col in _COLUMNS)
        updates = ",\n                ".join(f"{col} = EXCLUDED.{col}" for col in _COLUMNS[1:])
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(nominee_id) DO UPDATE SET
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

    def get(self, *, user_id: str, nominee_id: str) -> dict[str, Any] | None:
        sql = self._select("user_id = %s AND nominee_id = %s") + " LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, nominee_id))
                row = cur.fetchone()
            return None if row is None else self._row_to_nominee(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def list(self, *, user_id: str, is_active: bool | None = None) -> list[dict[str, Any]]:
        if is_active is None:
            sql = self._select("user_id = %s") + " ORDER BY created_at DESC"
            params: tuple[Any, ...] = (user_id,)
        else:
            sql = self._select("user_id = %s AND is_active = %s") + " ORDER BY created_at DESC"
            params = (user_id, is_active)

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [self._row_to_nominee(row) for row in rows]

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def get_pending_by_invite_token(self, *, invite_token: str) -> dict[str, Any] | None:
        sql = self._select("invite_token = %s AND invite_status = 'pending'") + " LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (invite_token,))
                row = cur.fetchone()
            return None if row is None else self._row_to_nominee(row)

        return self._tx_runner.run_in_tx(user_id=None, fn=_op)

    def get_linked(self, *, nominee_id: str, linked_user: str) -> dict[str, Any] | None:
        sql = self._select("nominee_id = %s AND linked_user = %s") + " LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (nominee_id, linked_user))
                row = cur.fetchone()
            return None if row is None else self._row_to_nominee(row)

        return self._tx_runner.run_in_tx(user_id=None, fn=_op)

    def list_linked(self, *, linked_user: str) -> list[dict[str, Any]]:
        sql = (
            self._select(
                "linked_user = %s AND has_access = TRUE AND invite_status = 'accepted' AND is_active = TRUE"
            )
            + " ORDER BY created_at DESC"
        )

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (linked_user,))
                rows = cur.fetchall() or []
            return [self._row_to_nominee(row) for row in rows]

        return self._tx_runner.run_in_tx(user_id=None, fn=_op)
