from __future__ import annotations

import re
from typing import Any

from records.db.postgres import PostgresTxRunner

_COLUMNS: tuple[str, ...] = (
    "todo_id",
    "user_id",
    "task_name",
    "is_completed",
    "completed_at",
    "priority",
    "is_deleted",
    "deleted_at",
    "created_at",
    "updated_at",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryTodosRepository:
    def __init__(self, todos: dict[str, dict[str, Any]]) -> None:
        self._todos = todos

    def upsert(self, *, todo: dict[str, Any]) -> dict[str, Any]:
        item = dict(todo)
        self._todos[str(item["todo_id"])] = item
        return dict(item)

    def get(self, *, user_id: str, todo_id: str) -> dict[str, Any] | None:
        row = self._todos.get(todo_id)
        if row is None or row.get("user_id") != user_id or row.get("is_deleted"):
            return None
        return dict(row)

    def list(
        self,
        *,
        user_id: str,
        completed: bool | None = None,
        priority: str | None = None,
    ) -> list[dict[str, Any]]:
        items = [
            dict(x)
            for x in self._todos.values()
            if x.get("user_id") == user_id
            and not x.get("is_deleted")
            and (completed is None or bool(x.get("is_completed")) == completed)
            and (not priority or x.get("priority") == priority)
        ]
        return sorted(items, key=lambda x: str(x.get("created_at") or ""), reverse=True)


class PostgresTodosRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "todos") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_todo(row: tuple[Any, ...]) -> dict[str, Any]:
        todo = dict(zip(_COLUMNS, row))
        todo["is_completed"] = bool(todo.get("is_completed"))
        todo["is_deleted"] = bool(todo.get("is_deleted"))
        return todo

    def upsert(self, *, todo: dict[str, Any]) -> dict[str, Any]:
        item = dict(todo)
        sql = f"""
            INSERT INTO {self._table_name} (
                todo_id, user_id, task_name, is_completed, completed_at, priority,
                is_deleted, deleted_at, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT(todo_id) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                task_name = EXCLUDED.task_name,
                is_completed = EXCLUDED.is_completed,
                completed_at = EXCLUDED.completed_at,
                priority = EXCLUDED.priority,
                is_deleted = EXCLUDED.is_deleted,
                deleted_at = EXCLUDED.deleted_at,
                created_at = EXCLUDED.created_at,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(item.get(col) for col in _COLUMNS))
            return item

        return self._tx_runner.run_in_tx(user_id=str(item["user_id"]), fn=_op)

    def get(self, *, user_id: str, todo_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE user_id = %s AND todo_id = %s AND is_deleted = FALSE
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, todo_id))
                row = cur.fetchone()
            return None if row is None else self._row_to_todo(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def list(
        self,
        *,
        user_id: str,
        completed: bool | None = None,
        priority: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = %s", "is_deleted = FALSE"]
        params: list[Any] = [user_id]
        if completed is not None:
            clauses.append("is_completed = %s")
            params.append(completed)
        if priority:
            clauses.append("priority = %s")
            params.append(priority)
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [self._row_to_todo(row) for row in rows]

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)
