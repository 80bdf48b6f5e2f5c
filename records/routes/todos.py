from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from records.routes._deps import (
    created_response,
    run_with_optional_idempotency,
    trace_id_from_request,
    user_id_from_request,
)
from records.schemas import Priority, TodoCreateRequest, TodoUpdateRequest, success_envelope
from records.store import store

router = APIRouter(prefix="/api/v1", tags=["todos"])


@router.post("/todos")
def create_todo(
    payload: TodoCreateRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    body = payload.model_dump()
    user_id = user_id_from_request(request)
    data = run_with_optional_idempotency(
        request,
        endpoint="POST:/api/v1/todos",
        idempotency_key=idempotency_key,
        payload=body,
        execute=lambda: store.create_todo(user_id=user_id, payload=body),
    )
    return created_response(request, data, "Task created successfully")


@router.get("/todos")
def list_todos(
    request: Request,
    completed: bool | None = Query(default=None),
    priority: Priority | None = Query(default=None),
):
    todos = store.list_todos(user_id=user_id_from_request(request), completed=completed, priority=priority)
    return success_envelope({"todos": todos, "total": len(todos)}, trace_id_from_request(request))


@router.get("/todos/stats/summary")
def todo_stats(request: Request):
    stats = store.todo_stats(user_id=user_id_from_request(request))
    return success_envelope({"stats": stats}, trace_id_from_request(request))


@router.get("/todos/{todo_id}")
def get_todo(todo_id: str, request: Request):
    todo = store.get_todo(user_id=user_id_from_request(request), todo_id=todo_id)
    return success_envelope(todo, trace_id_from_request(request))


@router.put("/todos/{todo_id}")
def update_todo(todo_id: str, payload: TodoUpdateRequest, request: Request):
    todo = store.update_todo(
        user_id=user_id_from_request(request),
        todo_id=todo_id,
        payload=payload.model_dump(exclude_unset=True),
    )
    return success_envelope(todo, trace_id_from_request(request), "Task updated successfully")


@router.patch("/todos/{todo_id}/toggle")
def toggle_todo(todo_id: str, request: Request):
    todo = store.toggle_todo(user_id=user_id_from_request(request), todo_id=todo_id)
    state = "completed" if todo["is_completed"] else "incomplete"
    return success_envelope(todo, trace_id_from_request(request), f"Task marked as {state}")


@router.delete("/todos/{todo_id}")
def delete_todo(todo_id: str, request: Request):
    data = store.delete_todo(user_id=user_id_from_request(request), todo_id=todo_id)
    return success_envelope(data, trace_id_from_request(request), "Task deleted successfully")
