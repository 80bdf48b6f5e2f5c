from __future__ import annotations


def _create(client, task_name: str, priority: str = "medium") -> dict:
    resp = client.post("/api/v1/todos", json={"task_name": task_name, "priority": priority})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_create_todo(client):
    resp = client.post("/api/v1/todos", json={"task_name": "  Update nominee for PPF  ", "priority": "high"})
    assert resp.status_code == 201
    assert resp.json()["message"] == "Task created successfully"
    todo = resp.json()["data"]
    assert todo["todo_id"].startswith("todo_")
    assert todo["task_name"] == "Update nominee for PPF"
    assert todo["priority"] == "high"
    assert todo["is_completed"] is False
    assert todo["completed_at"] is None


def test_create_todo_requires_name_and_valid_priority(client):
    blank = client.post("/api/v1/todos", json={"task_name": "   "})
    assert blank.status_code == 400
    assert blank.json()["error"]["code"] == "TODO_NAME_REQUIRED"
    assert blank.json()["error"]["message"] == "Task name is required"

    missing = client.post("/api/v1/todos", json={})
    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "TODO_NAME_REQUIRED"

    bad_priority = client.post("/api/v1/todos", json={"task_name": "x", "priority": "urgent"})
    assert bad_priority.status_code == 400
    assert bad_priority.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_list_todos_newest_first_with_filters(client):
    first = _create(client, "Renew car insurance", "high")
    second = _create(client, "Scan property papers", "low")
    third = _create(client, "Link PAN with Aadhaar", "high")
    client.patch(f"/api/v1/todos/{second['todo_id']}/toggle")

    everything = client.get("/api/v1/todos").json()["data"]
    assert everything["total"] == 3
    assert [t["todo_id"] for t in everything["todos"]] == [third["todo_id"], second["todo_id"], first["todo_id"]]

    done = client.get("/api/v1/todos", params={"completed": "true"}).json()["data"]
    assert [t["todo_id"] for t in done["todos"]] == [second["todo_id"]]

    high = client.get("/api/v1/todos", params={"priority": "high", "completed": "false"}).json()["data"]
    assert [t["task_name"] for t in high["todos"]] == ["Link PAN with Aadhaar", "Renew car insurance"]


def test_update_todo_fields(client):
    todo = _create(client, "Call bank")
    resp = client.put(f"/api/v1/todos/{todo['todo_id']}", json={"task_name": "Call HDFC bank", "priority": "low"})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Task updated successfully"
    assert resp.json()["data"]["task_name"] == "Call HDFC bank"
    assert resp.json()["data"]["priority"] == "low"

    completed = client.put(f"/api/v1/todos/{todo['todo_id']}", json={"is_completed": True}).json()["data"]
    assert completed["is_completed"] is True
    assert completed["completed_at"]

    blank = client.put(f"/api/v1/todos/{todo['todo_id']}", json={"task_name": ""})
    assert blank.status_code == 400
    assert blank.json()["error"]["code"] == "TODO_NAME_REQUIRED"


def test_toggle_flips_completion(client):
    todo = _create(client, "File ITR")
    on = client.patch(f"/api/v1/todos/{todo['todo_id']}/toggle")
    assert on.json()["message"] == "Task marked as completed"
    assert on.json()["data"]["is_completed"] is True
    assert on.json()["data"]["completed_at"]

    off = client.patch(f"/api/v1/todos/{todo['todo_id']}/toggle")
    assert off.json()["message"] == "Task marked as incomplete"
    assert off.json()["data"]["is_completed"] is False
    assert off.json()["data"]["completed_at"] is None


def test_delete_todo_hides_it(client):
    todo = _create(client, "Old task")
    resp = client.delete(f"/api/v1/todos/{todo['todo_id']}")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"todo_id": todo["todo_id"], "deleted": True}

    missing = client.get(f"/api/v1/todos/{todo['todo_id']}")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "TODO_NOT_FOUND"
    assert client.get("/api/v1/todos").json()["data"]["total"] == 0
    assert client.patch(f"/api/v1/todos/{todo['todo_id']}/toggle").status_code == 404


def test_todo_stats(client):
    a = _create(client, "a")
    _create(client, "b")
    c = _create(client, "c")
    client.patch(f"/api/v1/todos/{a['todo_id']}/toggle")
    client.delete(f"/api/v1/todos/{c['todo_id']}")

    stats = client.get("/api/v1/todos/stats/summary").json()["data"]["stats"]
    assert stats == {"total": 2, "completed": 1, "pending": 1}


def test_todos_are_owner_scoped(client):
    todo = _create(client, "Private")
    other = client.as_user("user_other")
    assert other.get(f"/api/v1/todos/{todo['todo_id']}").status_code == 404
    assert other.put(f"/api/v1/todos/{todo['todo_id']}", json={"priority": "low"}).status_code == 404
    assert other.delete(f"/api/v1/todos/{todo['todo_id']}").status_code == 404
    assert other.get("/api/v1/todos/stats/summary").json()["data"]["stats"]["total"] == 0
