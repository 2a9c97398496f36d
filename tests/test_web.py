"""Tests for the REST and WebSocket API."""

import pytest
from starlette.testclient import TestClient

from crew_orchestrator.web.app import create_app

from conftest import git


@pytest.fixture
def client(coordinator):
    with TestClient(create_app(coordinator)) as client:
        yield client


@pytest.fixture
def ready_task(client):
    client.post("/api/agents", json={"name": "Ada", "id": "ada"})
    client.post("/api/tasks", json={"title": "Add feature", "id": "T1", "assigned_agent_id": "ada"})
    return "T1"


def _run_to_review(client, coordinator, fake_adapter, task_id="T1", content="hello\n"):
    assert client.post(f"/api/tasks/{task_id}/run").status_code == 200
    fake_adapter.last_run.write("feature.txt", content)
    fake_adapter.last_run.emit("done\n")
    fake_adapter.last_run.finish(0)
    assert coordinator.wait(task_id, timeout=5)


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True, "active_runs": 0}


class TestTasksApi:
    def test_create_and_get(self, client):
        resp = client.post("/api/tasks", json={"title": "Write docs", "priority": 4})
        assert resp.status_code == 201
        task = resp.json()["task"]
        assert task["id"] == "write-docs"
        assert task["status"] == "inbox"
        assert task["priority"] == 4

        detail = client.get("/api/tasks/write-docs").json()
        assert detail["ok"]
        assert detail["task"]["title"] == "Write docs"
        assert detail["worktree"] is None
        assert detail["running"] is False
        assert detail["logs"][0]["message"] == "Task created (inbox)"

    def test_create_requires_title(self, client):
        resp = client.post("/api/tasks", json={"description": "no title"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "bad_request"

    def test_invalid_json(self, client):
        resp = client.post("/api/tasks", content=b"{nope", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_list_with_filter(self, client, ready_task):
        client.post("/api/tasks", json={"title": "Loose"})
        tasks = client.get("/api/tasks").json()["tasks"]
        assert {t["id"] for t in tasks} == {"T1", "loose"}
        planned = client.get("/api/tasks", params={"status": "planned"}).json()["tasks"]
        assert [t["id"] for t in planned] == ["T1"]

    def test_update(self, client, ready_task):
        resp = client.patch("/api/tasks/T1", json={"title": "Renamed", "status": "done"})
        assert resp.status_code == 200
        assert resp.json()["task"]["title"] == "Renamed"
        assert resp.json()["task"]["status"] == "planned"

    def test_unknown_task_is_404(self, client):
        resp = client.get("/api/tasks/ghost")
        assert resp.status_code == 404
        body = resp.json()
        assert body["ok"] is False
        assert body["error"] == "not_found"
        assert "ghost" in body["message"]

    def test_assign(self, client):
        client.post("/api/agents", json={"name": "Ada", "id": "ada"})
        client.post("/api/tasks", json={"title": "Loose", "id": "T2"})
        resp = client.post("/api/tasks/T2/assign", json={"agent_id": "ada"})
        assert resp.json()["task"]["status"] == "planned"
        assert client.post("/api/tasks/T2/assign", json={}).status_code == 400

    def test_delete(self, client, ready_task):
        assert client.delete("/api/tasks/T1").json() == {"ok": True, "id": "T1", "deleted": True}
        assert client.get("/api/tasks/T1").status_code == 404


class TestRunApi:
    def test_run_review_diff_merge(self, client, coordinator, fake_adapter, ready_task, git_repo):
        _run_to_review(client, coordinator, fake_adapter)
        assert client.get("/api/tasks/T1").json()["task"]["status"] == "review"

        diff = client.get("/api/tasks/T1/diff").json()
        assert diff["hasWorktree"]
        assert "feature.txt" in diff["stat"]

        worktrees = client.get("/api/worktrees").json()["worktrees"]
        assert [w["taskId"] for w in worktrees] == ["T1"]

        terminal = client.get("/api/tasks/T1/terminal", params={"lines": 50, "pretty": "1"}).json()
        assert terminal["exists"]
        assert terminal["text"] == "done"

        merged = client.post("/api/tasks/T1/merge")
        assert merged.status_code == 200
        assert merged.json()["ok"]
        assert (git_repo / "feature.txt").read_text() == "hello\n"
        assert client.get("/api/tasks/T1").json()["task"]["status"] == "done"

    def test_run_twice_is_409(self, client, coordinator, fake_adapter, ready_task):
        assert client.post("/api/tasks/T1/run").status_code == 200
        resp = client.post("/api/tasks/T1/run")
        assert resp.status_code == 409
        assert resp.json()["error"] == "task_busy"
        fake_adapter.last_run.finish(0)
        coordinator.wait("T1", timeout=5)

    def test_run_without_agent_is_400(self, client):
        client.post("/api/tasks", json={"title": "Loose", "id": "T2"})
        resp = client.post("/api/tasks/T2/run")
        assert resp.status_code == 400
        assert resp.json()["error"] == "no_agent_assigned"

    def test_stop_pause_and_resume(self, client, coordinator, fake_adapter, ready_task):
        client.post("/api/tasks/T1/run")
        resp = client.post("/api/tasks/T1/stop", json={"mode": "pause"})
        assert resp.json()["task"]["status"] == "pending"
        coordinator.wait("T1", timeout=5)

        assert client.post("/api/tasks/T1/resume").json()["task"]["status"] == "in_progress"
        resp = client.post("/api/tasks/T1/stop")
        assert resp.json()["task"]["status"] == "cancelled"
        coordinator.wait("T1", timeout=5)

    def test_stop_idle_task_is_409(self, client, ready_task):
        resp = client.post("/api/tasks/T1/stop")
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

    def test_merge_conflict(self, client, coordinator, fake_adapter, ready_task, git_repo):
        client.post("/api/tasks/T1/run")
        fake_adapter.last_run.write("README.md", "# agent\n")
        fake_adapter.last_run.finish(0)
        coordinator.wait("T1", timeout=5)
        (git_repo / "README.md").write_text("# main\n")
        git(git_repo, "commit", "-am", "main edit")

        resp = client.post("/api/tasks/T1/merge")
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "merge_conflict"
        assert body["conflicts"] == ["README.md"]

        discarded = client.post("/api/tasks/T1/discard").json()
        assert discarded == {"ok": True, "message": "Worktree discarded"}
        assert client.post("/api/tasks/T1/approve").json()["task"]["status"] == "done"

    def test_merge_without_worktree_is_404(self, client, ready_task):
        resp = client.post("/api/tasks/T1/merge")
        assert resp.status_code == 404
        assert resp.json()["error"] == "no_worktree"

    def test_diff_without_worktree(self, client, ready_task):
        assert client.get("/api/tasks/T1/diff").json() == {
            "ok": True, "hasWorktree": False, "diff": "", "stat": "",
        }


class TestAgentsApi:
    def test_create_list_get(self, client):
        resp = client.post("/api/agents", json={"name": "Grace", "cli_provider": "gemini"})
        assert resp.status_code == 201
        assert resp.json()["agent"]["id"] == "grace"
        assert [a["id"] for a in client.get("/api/agents").json()["agents"]] == ["grace"]
        assert client.get("/api/agents/grace").json()["agent"]["cli_provider"] == "gemini"

    def test_unknown_provider_is_400(self, client):
        resp = client.post("/api/agents", json={"name": "Bot", "cli_provider": "notepad"})
        assert resp.status_code == 400

    def test_unknown_agent_is_404(self, client):
        assert client.get("/api/agents/ghost").status_code == 404
        assert client.patch("/api/agents/ghost", json={"status": "break"}).status_code == 404

    def test_patch_agent(self, client, ready_task):
        resp = client.patch("/api/agents/ada", json={"role": "junior", "status": "offline", "avatar": "x"})
        assert resp.status_code == 200
        assert resp.json()["agent"]["role"] == "junior"
        assert resp.json()["agent"]["status"] == "offline"

        resp = client.post("/api/tasks/T1/run")
        assert resp.status_code == 400
        assert resp.json()["error"] == "provider_unavailable"

    def test_patch_agent_validation(self, client, ready_task):
        assert client.patch("/api/agents/ada", json={}).status_code == 400
        assert client.patch("/api/agents/ada", json={"status": "working"}).status_code == 400
        assert client.patch("/api/agents/ada", json={"cli_provider": "notepad"}).status_code == 400

    def test_patch_running_agent_is_409(self, client, coordinator, fake_adapter, ready_task):
        client.post("/api/tasks/T1/run")
        resp = client.patch("/api/agents/ada", json={"status": "break"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "agent_busy"
        fake_adapter.last_run.finish(0)
        assert coordinator.wait("T1", timeout=5)


class TestEventSocket:
    def test_connected_replay_and_live_events(self, client, coordinator, ready_task):
        with client.websocket_connect("/ws?task_id=T1&after=0") as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connected"
            assert connected["task_id"] == "T1"

            replayed = ws.receive_json()
            assert replayed["type"] == "cli_output"
            assert replayed["payload"]["seq"] == 1
            assert replayed["payload"]["data"] == "Task created (planned)"

            coordinator.update_task("T1", title="Live title")
            live = ws.receive_json()
            assert live["type"] == "task_update"
            assert live["payload"]["title"] == "Live title"

    def test_replay_after_cursor(self, client, coordinator, ready_task):
        coordinator.assign("T1", "ada")
        with client.websocket_connect("/ws?task_id=T1&after=1") as ws:
            assert ws.receive_json()["type"] == "connected"
            replayed = ws.receive_json()
            assert replayed["payload"]["seq"] == 2
            assert replayed["payload"]["data"].startswith("Assigned to Ada")

    def test_unfiltered_stream_sees_all_tasks(self, client, coordinator, ready_task):
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            coordinator.create_task("Another", task_id="T9")
            event = ws.receive_json()
            assert event["task_id"] == "T9"
