from __future__ import annotations

from typing import Any

from records.errors import ApiError


class StoreTodosMixin:
    def _require_todo(self, *, user_id: str, todo_id: str) -> dict[str, Any]:
        todo = self.todos_repository.get(user_id=user_id, todo_id=todo_id)
        if todo is None:
            raise ApiError(
                code="TODO_NOT_FOUND",
                message="Task not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return todo

    @staticmethod
    def _clean_task_name(raw: Any) -> str:
        task_name = str(raw or "").strip()
        if not task_name:
            raise ApiError(
                code="TODO_NAME_REQUIRED",
                message="Task name is required",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        return task_name

    def _set_completed(self, todo: dict[str, Any], completed: bool) -> None:
        todo["is_completed"] = completed
        todo["completed_at"] = self._utcnow_iso() if completed else None

    def create_todo(self, *, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        now = self._utcnow_iso()
        todo = {
            "todo_id": self._new_id("todo"),
            "user_id": user_id,
            "task_name": self._clean_task_name(payload.get("task_name")),
            "is_completed": False,
            "completed_at": None,
            "priority": payload.get("priority") or "medium",
            "is_deleted": False,
            "deleted_at": None,
            "created_at": now,
            "updated_at": now,
        }
        return self._persist_todo(todo=todo)

    def list_todos(
        self,
        *,
        user_id: str,
        completed: bool | None = None,
        priority: str | None = None,
    ) -> list[dict[str, Any]]:
        return self.todos_repository.list(user_id=user_id, completed=completed, priority=priority)

    def get_todo(self, *, user_id: str, todo_id: str) -> dict[str, Any]:
        return self._require_todo(user_id=user_id, todo_id=todo_id)

    def update_todo(self, *, user_id: str, todo_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        todo = self._require_todo(user_id=user_id, todo_id=todo_id)
        if payload.get("task_name") is not None:
            todo["task_name"] = self._clean_task_name(payload["task_name"])
        if payload.get("priority") is not None:
            todo["priority"] = payload["priority"]
        if payload.get("is_completed") is not None:
            self._set_completed(todo, bool(payload["is_completed"]))
        todo["updated_at"] = self._utcnow_iso()
        return self._persist_todo(todo=todo)

    def toggle_todo(self, *, user_id: str, todo_id: str) -> dict[str, Any]:
        todo = self._require_todo(user_id=user_id, todo_id=todo_id)
        self._set_completed(todo, not todo.get("is_completed"))
        todo["updated_at"] = self._utcnow_iso()
        return self._persist_todo(todo=todo)

    def delete_todo(self, *, user_id: str, todo_id: str) -> dict[str, Any]:
        todo = self._require_todo(user_id=user_id, todo_id=todo_id)
        todo["is_deleted"] = True
        todo["deleted_at"] = self._utcnow_iso()
        todo["updated_at"] = todo["deleted_at"]
        self._persist_todo(todo=todo)
        return {"todo_id": todo_id, "deleted": True}

    def todo_stats(self, *, user_id: str) -> dict[str, int]:
        todos = self.todos_repository.list(user_id=user_id)
        completed = sum(1 for todo in todos if todo.get("is_completed"))
        return {"total": len(todos), "completed": completed, "pending": len(todos) - completed}
