"""
Tests for the HTTP adapter: routing, version headers and error mapping.
"""

import logging
from typing import Any, Dict, Optional

from fastapi.testclient import TestClient

logger = logging.getLogger(__name__)

ACTOR = {"X-Actor": "api-tester"}


def create_project(client: TestClient, name: str = "API Project") -> Dict[str, Any]:
    response = client.post("/api/projects", json={"name": name})
    assert response.status_code == 200, response.json()
    return response.json()


def create_task(client: TestClient, project_id: int, title: str, parent_id: Optional[int] = None, **fields) -> Dict[str, Any]:
    payload = {"project_id": project_id, "title": title, "parent_task_id": parent_id, **fields}
    response = client.post("/api/tasks", json=payload, headers=ACTOR)
    assert response.status_code == 200, response.json()
    return response.json()


def current_etag(client: TestClient, task_id: int) -> str:
    response = client.get(f"/api/tasks/{task_id}")
    assert response.status_code == 200, response.json()
    return response.headers["ETag"]


# ============== Basics (3 tests) ==============


def test_health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_get_task_returns_etag_header(client: TestClient):
    project = create_project(client)
    task = create_task(client, project["id"], "Design")

    response = client.get(f"/api/tasks/{task['id']}")

    assert response.status_code == 200
    assert response.headers["ETag"] == f'"{response.json()["etag"]}"'
    assert response.json()["etag"].startswith("v1-")
    logger.info("✓ Task read carries its version token")


def test_unknown_task_is_404(client: TestClient):
    response = client.get("/api/tasks/424242")

    assert response.status_code == 404
    assert response.json()["error_code"] == "NOT_FOUND"


# ============== Versioned writes (3 tests) ==============


def test_patch_requires_if_match(client: TestClient):
    project = create_project(client)
    task = create_task(client, project["id"], "Design")

    response = client.patch(f"/api/tasks/{task['id']}", json={"title": "Redesign"})

    assert response.status_code == 428
    assert response.json()["error_code"] == "PRECONDITION_REQUIRED"


def test_patch_with_stale_if_match_conflicts(client: TestClient):
    project = create_project(client)
    task = create_task(client, project["id"], "Design")
    etag = current_etag(client, task["id"])

    first = client.patch(f"/api/tasks/{task['id']}", json={"title": "Redesign"}, headers={"If-Match": etag})
    second = client.patch(f"/api/tasks/{task['id']}", json={"title": "Lost"}, headers={"If-Match": etag})

    assert first.status_code == 200, first.json()
    assert first.json()["version"] == 2
    assert first.headers["ETag"] != etag
    assert second.status_code == 409
    assert second.json()["error_code"] == "CONFLICT"


def test_delete_task_with_if_match(client: TestClient):
    project = create_project(client)
    task = create_task(client, project["id"], "Temporary")

    response = client.delete(f"/api/tasks/{task['id']}", headers={"If-Match": current_etag(client, task["id"])})

    assert response.status_code == 200, response.json()
    assert client.get(f"/api/tasks/{task['id']}").status_code == 404


# ============== Hierarchy & progress (4 tests) ==============


def test_reparent_under_descendant_is_409_cycle(client: TestClient):
    project = create_project(client)
    root = create_task(client, project["id"], "Root")
    child = create_task(client, project["id"], "Child", root["id"])

    response = client.post(
        f"/api/tasks/{root['id']}/reparent",
        json={"new_parent_id": child["id"]},
        headers={"If-Match": current_etag(client, root["id"]), **ACTOR},
    )

    assert response.status_code == 409
    assert response.json()["error_code"] == "CYCLE"


def test_progress_rolls_up_over_http(client: TestClient):
    project = create_project(client)
    parent = create_task(client, project["id"], "Parent", estimate_value=8)
    b = create_task(client, project["id"], "B", parent["id"], estimate_value=4)
    create_task(client, project["id"], "C", parent["id"], estimate_value=4, progress=100)

    response = client.patch(
        f"/api/tasks/{b['id']}/progress",
        json={"progress": 50},
        headers={"If-Match": current_etag(client, b["id"]), **ACTOR},
    )

    assert response.status_code == 200, response.json()
    assert response.json()["new_progress"] == 50
    assert response.json()["recomputed_parents"] == {str(parent["id"]): 75}
    assert client.get(f"/api/tasks/{parent['id']}").json()["progress"] == 75


def test_progress_on_parent_is_400(client: TestClient):
    project = create_project(client)
    parent = create_task(client, project["id"], "Parent")
    create_task(client, project["id"], "Child", parent["id"])

    response = client.patch(
        f"/api/tasks/{parent['id']}/progress",
        json={"progress": 10},
        headers={"If-Match": current_etag(client, parent["id"])},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


def test_reorder_and_tree(client: TestClient):
    project = create_project(client)
    x = create_task(client, project["id"], "X")
    y = create_task(client, project["id"], "Y")
    z = create_task(client, project["id"], "Z")

    response = client.put(f"/api/projects/{project['id']}/reorder", json={
        "parent_task_id": None,
        "items": [
            {"task_id": x["id"], "order_index": 2},
            {"task_id": y["id"], "order_index": 0},
            {"task_id": z["id"], "order_index": 1},
        ],
    }, headers=ACTOR)

    assert response.status_code == 200, response.json()
    assert response.json()["success_count"] == 3
    tree = client.get(f"/api/projects/{project['id']}/tree").json()
    assert [node["title"] for node in tree] == ["Y", "Z", "X"]


# ============== Dependencies, schedule & activity (4 tests) ==============


def test_dependency_cycle_is_409(client: TestClient):
    project = create_project(client)
    a = create_task(client, project["id"], "A")
    b = create_task(client, project["id"], "B")

    first = client.post(
        f"/api/projects/{project['id']}/dependencies",
        json={"predecessor_id": a["id"], "successor_id": b["id"]},
        headers=ACTOR,
    )
    back = client.post(
        f"/api/projects/{project['id']}/dependencies",
        json={"predecessor_id": b["id"], "successor_id": a["id"], "type": "SS"},
        headers=ACTOR,
    )

    assert first.status_code == 200, first.json()
    assert first.json()["type"] == "FS"
    assert back.status_code == 409
    assert back.json()["error_code"] == "CYCLE"
    assert len(client.get(f"/api/projects/{project['id']}/dependencies").json()) == 1


def test_delete_missing_dependency_is_404(client: TestClient):
    project = create_project(client)
    a = create_task(client, project["id"], "A")
    b = create_task(client, project["id"], "B")

    response = client.delete(f"/api/dependencies?predecessor_id={a['id']}&successor_id={b['id']}")

    assert response.status_code == 404


def test_schedule_endpoint(client: TestClient):
    project = create_project(client)
    a = create_task(client, project["id"], "A", estimate_value=2, estimate_unit="days")
    b = create_task(client, project["id"], "B", estimate_value=24, estimate_unit="hours")
    client.post(
        f"/api/projects/{project['id']}/dependencies",
        json={"predecessor_id": a["id"], "successor_id": b["id"]},
    )

    response = client.get(
        f"/api/projects/{project['id']}/schedule",
        params={"project_start": "2025-01-06T09:00:00Z"},
    )

    assert response.status_code == 200, response.json()
    body = response.json()
    assert body["project_finish"] == 5
    assert body["critical_path"] == [a["id"], b["id"]]
    logger.info("✓ Schedule endpoint returns the critical path")


def test_activity_endpoint_lists_newest_first(client: TestClient):
    project = create_project(client)
    task = create_task(client, project["id"], "Logged")
    client.patch(
        f"/api/tasks/{task['id']}",
        json={"status": "doing"},
        headers={"If-Match": current_etag(client, task["id"]), **ACTOR},
    )

    response = client.get(f"/api/projects/{project['id']}/activity")

    assert response.status_code == 200, response.json()
    body = response.json()
    assert body["total_count"] == 2
    assert [event["action"] for event in body["events"]] == ["updated", "created"]
    assert body["events"][0]["actor"] == "api-tester"
    assert body["events"][0]["before"]["status"] == "todo"
    assert body["events"][0]["after"]["status"] == "doing"
