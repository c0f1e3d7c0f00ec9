import pytest
from fastapi.testclient import TestClient

from crawlcore import main
from crawlcore.manager import UnifiedTaskManager

from .test_scheduler import GatedRunner, registry_with


@pytest.fixture
def client(make_scheduler, storage, session, auth_store, monkeypatch):
    # the scheduler is never started, so submitted tasks stay queued
    scheduler = make_scheduler(registry=registry_with(GatedRunner()))
    manager = UnifiedTaskManager(scheduler=scheduler, storage=storage, auth_store=auth_store)
    monkeypatch.setattr(main, "task_manager", manager)
    monkeypatch.setattr(main, "scheduler", scheduler)
    monkeypatch.setattr(main, "storage", storage)
    monkeypatch.setattr(main, "session_manager", session)
    monkeypatch.setattr(main.config.security, "api_key_required", False)
    # components are injected above; skip the real startup wiring
    monkeypatch.setattr(main.app.router, "on_startup", [])
    monkeypatch.setattr(main.app.router, "on_shutdown", [])
    with TestClient(main.app) as test_client:
        yield test_client


def test_submit_poll_and_cancel(client):
    response = client.post("/tasks/timeline", json={"target_id": "123", "max_items": 20})
    assert response.status_code == 200
    task_id = response.json()["task_id"]

    task = client.get(f"/tasks/{task_id}").json()
    assert task["status"] == "queued"
    assert task["task_type"] == "timeline"

    cancelled = client.delete(f"/tasks/{task_id}").json()
    assert cancelled["status"] == "cancelled"
    assert cancelled["result_summary"]["error_kind"] == "UserCancelled"

    listed = client.get("/tasks", params={"status": "cancelled"}).json()
    assert [t["task_id"] for t in listed["tasks"]] == [task_id]


def test_validation_error_is_400(client):
    response = client.post("/tasks/timeline", json={"target_id": "abc"})
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"

    response = client.post("/tasks/channel", json={"target_id": "@chan", "stop_on_duplicate_count": 99})
    assert response.status_code == 400


def test_duplicate_is_409(client):
    first = client.post("/tasks/channel", json={"target_id": "@chan"}).json()["task_id"]
    response = client.post("/tasks/channel", json={"target_id": "@chan"})
    assert response.status_code == 409
    assert response.json()["active_task_id"] == first


def test_unknown_task_is_404(client):
    assert client.get("/tasks/nope").status_code == 404
    assert client.delete("/tasks/nope").status_code == 404
    assert client.post("/tasks/nope/retry").status_code == 404


def test_retry_and_cleanup(client):
    task_id = client.post("/tasks/channel", json={"target_id": "@chan"}).json()["task_id"]
    client.delete(f"/tasks/{task_id}")

    retried = client.post(f"/tasks/{task_id}/retry").json()
    assert retried["retry_of"] == task_id

    assert client.post("/tasks/cleanup", params={"older_than_days": 0}).status_code == 400
    assert client.post("/tasks/cleanup", params={"older_than_days": 7}).json() == {"removed": 0}


def test_executor_endpoints(client):
    assert client.get("/executor/status").json() == {"running_count": 0, "max_concurrency": 2}
    assert client.post("/executor/zombies/cleanup").json() == {"count": 0}


def test_auth_state_endpoints(client, seeded_auth):
    status = client.get("/auth-state").json()
    assert status["valid"] is True
    assert client.delete("/auth-state").json() == {"cleared": True}
    assert client.get("/auth-state").json()["problem"] == "NoAuthState"


def test_health_stats_and_metrics(client):
    health = client.get("/healthz").json()
    assert health["status"] == "ok"
    assert health["components"]["browser"] == "idle"

    stats = client.get("/stats").json()
    assert "executor" in stats and "service" in stats

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_api_key_enforced(client, monkeypatch):
    monkeypatch.setattr(main.config.security, "api_key_required", True)
    monkeypatch.setattr(main.config.security, "api_key", "secret")

    assert client.get("/executor/status").status_code == 401
    assert client.get("/executor/status", headers={"x-api-key": "secret"}).status_code == 200
    assert client.get("/healthz").status_code == 200
