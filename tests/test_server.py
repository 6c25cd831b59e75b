"""
Tests for the Flask task server.

Covers:
    - Task routes         — CRUD, move, status codes, both prefixes
    - Activity logging    — derived per mutation, best effort
    - Broadcast           — one primary event per successful mutation
    - Mode routes         — read and override
    - File routes         — workspace confinement
    - Auth                — X-API-Key when a secret is configured
"""

import json
import sqlite3
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from entity_server import create_app
from pkg.entity.activity import ActivityLog
from pkg.entity.cloud import CloudRequestError
from pkg.entity.local import LocalTaskAdapter
from pkg.entity.sync import TaskSyncFacade


def _drain(viewer):
    events = []
    while True:
        message = viewer.receive(timeout=0)
        if message is None:
            return events
        events.append(json.loads(message))


def _create(client, name="Ship release", **fields):
    return client.post("/api/tasks", json={"name": name, **fields})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_move_logs_activity_end_to_end(client):
    created = _create(client, column="todo")
    assert created.status_code == 201
    task = created.get_json()
    assert task["created_at"] == task["updated_at"]

    moved = client.put(f"/api/tasks/{task['id']}/move", json={"column": "review"})
    assert moved.status_code == 200
    assert moved.get_json()["column"] == "review"

    activities = client.get("/api/activities").get_json()["activities"]
    assert activities[0]["type"] == "task_moved"
    assert activities[0]["task_id"] == task["id"]
    assert activities[0]["task_column"] == "review"
    assert activities[1]["type"] == "task_created"


def test_routes_served_at_bare_prefix(client):
    created = client.post("/tasks", json={"name": "bare"})
    assert created.status_code == 201
    names = [t["name"] for t in client.get("/tasks").get_json()["tasks"]]
    assert names == ["bare"]
    assert client.get("/health").get_json()["status"] == "ok"
    assert client.get("/api/health").get_json()["mode"] == "LOCAL"


def test_get_task(client):
    task = _create(client).get_json()
    assert client.get(f"/api/tasks/{task['id']}").get_json() == task
    assert client.get("/api/tasks/999").status_code == 404


@pytest.mark.parametrize("task_id", ["0", "-1", "abc"])
def test_invalid_ids_are_400(client, task_id):
    assert client.get(f"/api/tasks/{task_id}").status_code == 400
    assert client.delete(f"/api/tasks/{task_id}").status_code == 400


def test_blank_name_is_400(client):
    assert _create(client, name="   ").status_code == 400
    task = _create(client).get_json()
    assert client.put(f"/api/tasks/{task['id']}", json={"name": ""}).status_code == 400
    assert client.get("/api/tasks").get_json()["tasks"][0]["name"] == "Ship release"


def test_invalid_column_is_400(client):
    task = _create(client).get_json()
    assert client.put(f"/api/tasks/{task['id']}/move", json={"column": "limbo"}).status_code == 400
    assert client.put(f"/api/tasks/{task['id']}", json={"column": "limbo"}).status_code == 400
    # column is checked before the task is looked up
    assert client.put("/api/tasks/555", json={"column": "limbo"}).status_code == 400


def test_create_with_unknown_column_falls_back_to_backlog(client):
    created = _create(client, column="limbo")
    assert created.status_code == 201
    assert created.get_json()["column"] == "backlog"


def test_update_and_complete(client):
    task = _create(client, column="review").get_json()
    updated = client.put(f"/api/tasks/{task['id']}", json={"column": "done", "assignee": "Rae"})
    assert updated.status_code == 200
    body = updated.get_json()
    assert body["column"] == "done"
    assert body["assignee"] == "Rae"
    assert body["updated_at"] > task["updated_at"]

    latest = client.get("/api/activities?limit=1").get_json()["activities"]
    assert len(latest) == 1
    assert latest[0]["type"] == "task_completed"


def test_move_unknown_task_is_404(client):
    assert client.put("/api/tasks/555/move", json={"column": "done"}).status_code == 404
    assert client.put("/api/tasks/555", json={"name": "x"}).status_code == 404


def test_delete(client):
    task = _create(client).get_json()
    response = client.delete(f"/api/tasks/{task['id']}")
    assert response.status_code == 204
    assert response.data == b""
    assert client.get("/api/tasks").get_json()["tasks"] == []
    assert client.get("/api/activities").get_json()["activities"][0]["type"] == "task_deleted"


def test_delete_unknown_creates_no_activity(client):
    response = client.delete("/api/tasks/424242")
    assert response.status_code == 404
    assert client.get("/api/activities").get_json()["activities"] == []


def test_adapter_failure_is_500(config, store, broadcaster):
    cloud = MagicMock()
    cloud.list_tasks = AsyncMock(side_effect=CloudRequestError("peer down", 502))
    facade = TaskSyncFacade(LocalTaskAdapter(store), cloud, environ={})
    app = create_app(config, facade=facade, activity_log=ActivityLog(store), broadcaster=broadcaster)

    response = app.test_client().get("/api/tasks")
    assert response.status_code == 500
    assert response.get_json() == {"error": "peer down"}


def test_activity_failure_does_not_fail_mutation(client, app):
    activity_log = app.extensions["entity"].activity_log
    with patch.object(activity_log, "create_activity", side_effect=sqlite3.OperationalError("locked")):
        response = _create(client)
    assert response.status_code == 201
    assert client.get("/api/activities").get_json()["activities"] == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Broadcast
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_mutations_broadcast_primary_event_once(client, broadcaster):
    viewer = broadcaster.connect()
    task = _create(client).get_json()
    client.put(f"/api/tasks/{task['id']}/move", json={"column": "doing"})
    client.delete(f"/api/tasks/{task['id']}")

    primary = [e for e in _drain(viewer) if e["type"] != "activity:created"]
    assert primary == [
        {"type": "task:created", "task": task},
        {"type": "task:moved", "taskId": task["id"], "column": "doing"},
        {"type": "task:deleted", "taskId": task["id"]},
    ]


def test_failed_mutation_does_not_broadcast(client, broadcaster):
    viewer = broadcaster.connect()
    _create(client, name="")
    client.put("/api/tasks/9/move", json={"column": "done"})
    assert _drain(viewer) == []


def test_events_stream_rejects_when_full(client, broadcaster):
    for _ in range(broadcaster.max_viewers):
        broadcaster.connect()
    assert client.get("/api/events").status_code == 503


def test_events_stream_starts_with_connected_frame(client, broadcaster):
    response = client.get("/api/events", buffered=False)
    assert response.mimetype == "text/event-stream"
    assert broadcaster.viewer_count == 1
    first = next(iter(response.response))
    if isinstance(first, bytes):
        first = first.decode()
    assert first == 'data: {"type": "connected"}\n\n'
    response.close()
    assert broadcaster.viewer_count == 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Mode and activities
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_db_mode_routes(client):
    assert client.get("/api/db-mode").get_json() == {"mode": "LOCAL", "cloudConfigured": False}
    # cloud requested but not configured: still LOCAL
    assert client.post("/api/db-mode", json={"mode": "CLOUD"}).get_json()["mode"] == "LOCAL"
    assert client.post("/db-mode", json={"mode": None}).status_code == 200
    assert client.post("/api/db-mode", json={"mode": "HYBRID"}).status_code == 400
    assert client.post("/api/db-mode", json={}).status_code == 400


def test_post_activity(client, broadcaster):
    viewer = broadcaster.connect()
    response = client.post("/api/activities", json={
        "type": "command_run",
        "action": "Ran tests",
        "description": "42 passed.",
        "agentName": "CI",
    })
    assert response.status_code == 201
    body = response.get_json()
    assert body["agent_name"] == "CI"
    assert body["source"] == "agent"
    assert _drain(viewer) == [{"type": "activity:created", "activity": body}]

    bad = client.post("/api/activities", json={"type": "command_run", "action": "x"})
    assert bad.status_code == 400


def test_activity_limit_is_clamped(client):
    for i in range(3):
        client.post("/api/activities", json={"type": "thinking", "action": f"a{i}", "description": "d"})
    assert len(client.get("/api/activities?limit=0").get_json()["activities"]) == 1
    assert len(client.get("/api/activities?limit=nope").get_json()["activities"]) == 3


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Files
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_file_lifecycle(client, workspace):
    assert client.post("/api/file", json={"path": "notes/a.md", "content": "hi"}).status_code == 200
    assert (workspace / "notes" / "a.md").read_text() == "hi"

    assert client.put("/api/file?path=notes/a.md", json={"content": "bye"}).status_code == 200
    assert client.get("/api/file?path=notes/a.md").get_json()["content"] == "bye"

    moved = client.post("/api/file/move", json={"from": "notes/a.md", "to": "archive/a.md"})
    assert moved.status_code == 200
    assert (workspace / "archive" / "a.md").exists()

    assert client.delete("/api/file?path=archive/a.md").status_code == 200
    assert not (workspace / "archive" / "a.md").exists()

    descriptions = [a["description"] for a in client.get("/api/activities").get_json()["activities"]]
    assert descriptions == [
        "Deleted archive/a.md.",
        "Moved notes/a.md to archive/a.md.",
        "Updated notes/a.md.",
        "Created notes/a.md.",
    ]


def test_file_traversal_is_400(client):
    assert client.get("/api/file?path=../../etc/passwd").status_code == 400
    assert client.get("/api/file?path=/etc/passwd").status_code == 400
    assert client.post("/api/file", json={"path": "../escape.txt", "content": ""}).status_code == 400
    assert client.get("/api/file").status_code == 400


def test_missing_file_is_404(client):
    assert client.get("/api/file?path=nope.md").status_code == 404
    assert client.delete("/api/file?path=nope.md").status_code == 404


def test_undecodable_file_is_json_500(client, workspace):
    (workspace / "blob.bin").write_bytes(b"\xff\xfe\x00binary")
    response = client.get("/api/file?path=blob.bin")
    assert response.status_code == 500
    assert response.is_json
    assert "error" in response.get_json()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_api_key_required_when_secret_set(client, config):
    config.api_secret = "s3cret"

    assert _create(client).status_code == 401
    wrong = client.post("/api/tasks", json={"name": "x"}, headers={"X-API-Key": "nope"})
    assert wrong.status_code == 403
    ok = client.post("/api/tasks", json={"name": "x"}, headers={"X-API-Key": "s3cret"})
    assert ok.status_code == 201
    # reads stay open
    assert client.get("/api/tasks").status_code == 200
