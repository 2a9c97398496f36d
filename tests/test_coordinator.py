"""Tests for the execution coordinator, driven by an in-process fake adapter."""

import sqlite3
import threading
from pathlib import Path

import pytest

from crew_orchestrator.core.errors import (
    AgentBusy,
    InvalidTransition,
    MergeConflict,
    NoAgentAssigned,
    NotFound,
    ProviderUnavailable,
    TaskBusy,
    WorkspaceUnavailable,
)
from crew_orchestrator.core.events import AGENT_STATUS, CLI_OUTPUT, TASK_UPDATE
from crew_orchestrator.db.engine import get_db
from crew_orchestrator.core.logs import list_logs
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import coordinator as coordinator_mod
from crew_orchestrator.integrations.git import branch_exists

from conftest import git


@pytest.fixture
def agent(coordinator):
    return coordinator.create_agent("Ada", agent_id="ada")


@pytest.fixture
def task(coordinator, agent):
    return coordinator.create_task("Add feature", task_id="T1", assigned_agent_id=agent.id)


def _finish(coordinator, fake_adapter, task_id="T1", exit_code=0, error=None):
    fake_adapter.last_run.finish(exit_code, error)
    assert coordinator.wait(task_id, timeout=5)
    return coordinator.get_task(task_id)


def _messages(coordinator, task_id="T1"):
    with get_db(coordinator.config.db_path) as db:
        return [e.message for e in list_logs(db, task_id)]


class TestRun:
    def test_run_to_review_and_merge(self, coordinator, fake_adapter, task, git_repo):
        started = coordinator.run("T1")
        assert started.status == "in_progress"
        assert started.started_at is not None
        assert coordinator.is_running("T1")
        assert coordinator.get_agent("ada").status == "working"
        assert coordinator.get_agent("ada").current_task_id == "T1"

        run = fake_adapter.last_run
        assert Path(run.request.cwd) == git_repo.resolve() / ".crew-worktrees" / "T1"
        assert run.request.env == {"CREW_TASK_ID": "T1"}
        assert "Add feature" in run.request.prompt
        run.write("feature.txt", "new feature\n")
        run.emit("working on it\n")

        finished = _finish(coordinator, fake_adapter)
        assert finished.status == "review"
        assert finished.result == "working on it"
        assert not coordinator.is_running("T1")
        agent = coordinator.get_agent("ada")
        assert agent.status == "idle"
        assert agent.current_task_id is None
        assert agent.stats_tasks_done == 1

        diff = coordinator.diff("T1")
        assert diff["hasWorktree"]
        assert diff["branchName"] == "task-T1"
        assert "feature.txt" in diff["stat"]

        result = coordinator.merge("T1")
        assert result["ok"]
        assert (git_repo / "feature.txt").read_text() == "new feature\n"
        assert coordinator.get_task("T1").status == "done"
        assert coordinator.get_task("T1").completed_at is not None
        assert coordinator.diff("T1")["hasWorktree"] is False
        assert not branch_exists(git_repo, "task-T1")

    def test_terminal_has_file_and_structured_logs(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        fake_adapter.last_run.emit("line one\n")
        fake_adapter.last_run.emit("oops\n", stream="stderr")
        _finish(coordinator, fake_adapter)

        terminal = coordinator.terminal("T1")
        assert terminal["exists"]
        assert terminal["text"].startswith("line one\noops")
        kinds = [e["kind"] for e in terminal["task_logs"]]
        assert "stdout" in kinds
        assert "stderr" in kinds
        assert "status" in kinds

    def test_log_sequence_has_no_gaps(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        for i in range(20):
            fake_adapter.last_run.emit(f"chunk {i}\n")
        _finish(coordinator, fake_adapter)

        with get_db(coordinator.config.db_path) as db:
            seqs = [e.seq for e in list_logs(db, "T1")]
        assert seqs == list(range(1, len(seqs) + 1))

    def test_failed_run_goes_pending_and_keeps_worktree(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        fake_adapter.last_run.write("partial.txt", "half done")
        finished = _finish(coordinator, fake_adapter, exit_code=2, error="boom")

        assert finished.status == "pending"
        assert "RUN failed (exit code: 2): boom" in _messages(coordinator)
        assert coordinator.get_agent("ada").status == "idle"
        assert coordinator.diff("T1")["hasWorktree"]

    def test_concurrent_runs_one_wins(self, coordinator, fake_adapter, task):
        results = []
        barrier = threading.Barrier(2)

        def attempt():
            barrier.wait()
            try:
                coordinator.run("T1")
                results.append("ok")
            except (TaskBusy, InvalidTransition) as e:
                results.append(type(e).__name__)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["TaskBusy", "ok"]
        assert len(fake_adapter.runs) == 1
        _finish(coordinator, fake_adapter)

    def test_run_while_running_is_busy(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        with pytest.raises(TaskBusy):
            coordinator.run("T1")
        _finish(coordinator, fake_adapter)

    def test_run_without_agent(self, coordinator):
        coordinator.create_task("Orphan", task_id="T2")
        with pytest.raises(NoAgentAssigned):
            coordinator.run("T2")
        assert coordinator.get_task("T2").status == "inbox"

    def test_run_done_task_is_rejected(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        _finish(coordinator, fake_adapter)
        coordinator.merge("T1")
        with pytest.raises(InvalidTransition):
            coordinator.run("T1")

    def test_unknown_task(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.run("ghost")

    def test_agent_busy(self, coordinator, fake_adapter, task):
        coordinator.create_task("Second", task_id="T2", assigned_agent_id="ada")
        coordinator.run("T1")
        with pytest.raises(AgentBusy):
            coordinator.run("T2")
        assert coordinator.get_task("T2").status == "planned"
        _finish(coordinator, fake_adapter)

    def test_provider_unavailable_leaves_nothing_behind(self, coordinator, fake_adapter, task, git_repo):
        fake_adapter.fail_start = ProviderUnavailable("claude CLI not found: claude")
        with pytest.raises(ProviderUnavailable):
            coordinator.run("T1")

        assert coordinator.get_task("T1").status == "planned"
        assert coordinator.get_agent("ada").status == "idle"
        assert coordinator.diff("T1")["hasWorktree"] is False
        assert not branch_exists(git_repo, "task-T1")
        assert not coordinator.is_running("T1")

    def test_failed_start_drops_adopted_worktree(self, coordinator, fake_adapter, task, git_repo):
        git(git_repo, "worktree", "add", str(git_repo / ".crew-worktrees" / "T1"), "-b", "task-T1")
        fake_adapter.fail_start = OSError("exec format error")
        with pytest.raises(ProviderUnavailable, match="failed to start"):
            coordinator.run("T1")

        assert coordinator.worktrees()["worktrees"] == []
        assert not branch_exists(git_repo, "task-T1")
        assert coordinator.get_task("T1").status == "planned"

    def test_existing_branch_blocks_run(self, coordinator, fake_adapter, task, git_repo):
        git(git_repo, "branch", "task-T1")
        with pytest.raises(WorkspaceUnavailable, match="already exists"):
            coordinator.run("T1")
        assert fake_adapter.runs == []
        assert branch_exists(git_repo, "task-T1")
        assert coordinator.get_task("T1").status == "planned"

    def test_non_git_project_runs_in_place_and_is_approved(self, coordinator, fake_adapter, agent, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        coordinator.create_task("Plain", task_id="P1", project_path=str(plain), assigned_agent_id="ada")
        coordinator.run("P1")
        assert Path(fake_adapter.last_run.request.cwd) == plain
        task = _finish(coordinator, fake_adapter, "P1")
        assert task.status == "review"

        result = coordinator.merge("P1")
        assert result["ok"] is False
        assert coordinator.get_task("P1").status == "review"
        assert coordinator.approve("P1").status == "done"

    def test_approve_refused_with_worktree(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        _finish(coordinator, fake_adapter)
        with pytest.raises(InvalidTransition):
            coordinator.approve("T1")
        coordinator.discard("T1")
        assert coordinator.approve("T1").status == "done"


class TestStopAndResume:
    def test_pause_then_resume_reuses_branch(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        first = fake_adapter.last_run
        first.write("step1.txt", "one")

        paused = coordinator.pause("T1")
        assert paused.status == "pending"
        assert first.stopped
        assert not coordinator.is_running("T1")
        assert coordinator.get_agent("ada").status == "idle"
        assert coordinator.wait("T1", timeout=5)

        resumed = coordinator.resume("T1")
        assert resumed.status == "in_progress"
        second = fake_adapter.last_run
        assert second is not first
        assert second.request.cwd == first.request.cwd
        assert (Path(second.request.cwd) / "step1.txt").read_text() == "one"

        assert _finish(coordinator, fake_adapter).status == "review"
        assert "step1.txt" in coordinator.diff("T1")["stat"]

    def test_cancel(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        cancelled = coordinator.stop("T1", "cancel")
        assert cancelled.status == "cancelled"
        assert coordinator.wait("T1", timeout=5)
        assert "RUN cancelled by operator" in _messages(coordinator)

        coordinator.resume("T1")
        assert _finish(coordinator, fake_adapter).status == "review"

    def test_late_completion_after_stop_only_logs(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        coordinator.pause("T1")
        assert coordinator.wait("T1", timeout=5)

        task = coordinator.get_task("T1")
        assert task.status == "pending"
        assert task.result is None
        assert "RUN exited after pause (exit code: -15)" in _messages(coordinator)

    def test_stop_when_not_running(self, coordinator, task):
        with pytest.raises(InvalidTransition):
            coordinator.stop("T1")

    def test_unknown_stop_mode(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        with pytest.raises(InvalidTransition, match="Unknown stop mode"):
            coordinator.stop("T1", "explode")
        _finish(coordinator, fake_adapter)

    def test_resume_from_review_is_rejected(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        _finish(coordinator, fake_adapter)
        with pytest.raises(InvalidTransition):
            coordinator.resume("T1")


class TestMergeConflict:
    def test_conflict_keeps_review_and_worktree(self, coordinator, fake_adapter, task, git_repo):
        coordinator.run("T1")
        fake_adapter.last_run.write("README.md", "# From agent\n")
        _finish(coordinator, fake_adapter)

        (git_repo / "README.md").write_text("# From main\n")
        git(git_repo, "commit", "-am", "main edit")

        with pytest.raises(MergeConflict) as exc_info:
            coordinator.merge("T1")
        assert exc_info.value.conflicts == ["README.md"]
        assert coordinator.get_task("T1").status == "review"
        assert coordinator.diff("T1")["hasWorktree"]
        assert git(git_repo, "status", "--short") == ""

        assert coordinator.discard("T1") == {"ok": True, "message": "Worktree discarded"}
        assert coordinator.discard("T1") == {"ok": True, "message": "No worktree to discard"}
        assert coordinator.get_task("T1").status == "review"


class TestUpdateAgent:
    def test_update_publishes_agent_status(self, coordinator, agent):
        sub = coordinator.hub.subscribe()
        updated = coordinator.update_agent("ada", role="team_leader", status="break")
        assert updated.role == "team_leader"
        assert updated.status == "break"

        events = [e for e in sub.drain() if e.type == AGENT_STATUS]
        assert events[-1].payload["status"] == "break"
        assert events[-1].payload["role"] == "team_leader"

    def test_update_while_running_is_refused(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        with pytest.raises(AgentBusy):
            coordinator.update_agent("ada", status="offline")
        assert coordinator.get_agent("ada").status == "working"
        _finish(coordinator, fake_adapter)

    def test_offline_agent_cannot_run(self, coordinator, fake_adapter, task):
        coordinator.update_agent("ada", status="offline")
        with pytest.raises(ProviderUnavailable, match="offline"):
            coordinator.run("T1")
        assert fake_adapter.runs == []
        assert coordinator.get_task("T1").status == "planned"
        assert coordinator.worktrees()["worktrees"] == []

        coordinator.update_agent("ada", status="idle")
        coordinator.run("T1")
        _finish(coordinator, fake_adapter)

    def test_provider_change_used_on_next_run(self, coordinator, fake_adapter, task):
        coordinator.update_agent("ada", cli_provider="codex")
        coordinator.run("T1")
        assert fake_adapter.providers == ["codex"]
        _finish(coordinator, fake_adapter)


class TestAssignDiscardDelete:
    def test_assign_moves_inbox_to_planned(self, coordinator, agent):
        coordinator.create_task("Loose", task_id="T2")
        task = coordinator.assign("T2", "ada")
        assert task.status == "planned"
        assert task.assigned_agent_id == "ada"

    def test_assign_unknown_agent(self, coordinator, agent):
        coordinator.create_task("Loose", task_id="T2")
        with pytest.raises(NotFound):
            coordinator.assign("T2", "ghost")

    def test_assign_while_running(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        with pytest.raises(TaskBusy):
            coordinator.assign("T1", "ada")
        _finish(coordinator, fake_adapter)

    def test_discard_while_running(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        with pytest.raises(TaskBusy):
            coordinator.discard("T1")
        _finish(coordinator, fake_adapter)

    def test_delete_removes_everything(self, coordinator, fake_adapter, task, git_repo):
        coordinator.run("T1")
        fake_adapter.last_run.emit("output\n")
        _finish(coordinator, fake_adapter)
        log_path = Path(coordinator.config.logs_dir) / "T1.log"
        assert log_path.exists()

        assert coordinator.delete("T1") == {"ok": True, "id": "T1", "deleted": True}
        with pytest.raises(NotFound):
            coordinator.get_task("T1")
        assert not log_path.exists()
        assert not branch_exists(git_repo, "task-T1")
        assert _messages(coordinator) == []

    def test_delete_while_running(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        with pytest.raises(TaskBusy):
            coordinator.delete("T1")
        _finish(coordinator, fake_adapter)

    def test_describe(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        detail = coordinator.describe("T1")
        assert detail["running"]
        assert detail["task"]["status"] == "in_progress"
        assert detail["worktree"]["branchName"] == "task-T1"
        assert detail["logs"]
        _finish(coordinator, fake_adapter)


class TestEventsAndNotifications:
    def test_events_for_a_run(self, coordinator, fake_adapter, task):
        sub = coordinator.hub.subscribe("T1")
        coordinator.run("T1")
        fake_adapter.last_run.emit("hello\n")
        _finish(coordinator, fake_adapter)

        events = sub.drain()
        types = {e.type for e in events}
        assert {TASK_UPDATE, CLI_OUTPUT, AGENT_STATUS} <= types

        statuses = [e.payload["status"] for e in events if e.type == TASK_UPDATE]
        assert statuses == ["in_progress", "review"]

        output = [e.payload for e in events if e.type == CLI_OUTPUT]
        seqs = [p["seq"] for p in output]
        assert seqs == sorted(seqs)
        assert set(output[0]) == {"task_id", "seq", "stream", "data"}
        assert any(p["stream"] == "stdout" and p["data"] == "hello\n" for p in output)

    def test_notifier_called_on_completion(self, coordinator, fake_adapter, notifier, task):
        coordinator.run("T1")
        _finish(coordinator, fake_adapter)
        notifier.assert_called_once()
        notified_task, notified_agent, detail = notifier.call_args.args
        assert notified_task.id == "T1"
        assert notified_task.status == "review"
        assert notified_agent.id == "ada"
        assert detail == "Ready for review"

    def test_notifier_failure_does_not_break_completion(self, coordinator, fake_adapter, notifier, task):
        notifier.side_effect = RuntimeError("slack down")
        coordinator.run("T1")
        assert _finish(coordinator, fake_adapter).status == "review"


class TestRecoveryAndShutdown:
    def test_recover_resets_orphaned_state(self, coordinator, agent, git_repo):
        coordinator.create_task("Stuck", task_id="T1", assigned_agent_id="ada")
        with get_db(coordinator.config.db_path) as db:
            tasks_mod.set_task_status(db, "T1", "in_progress", started=True)
            agents_mod.set_agent_status(db, "ada", "working", "T1")

        result = coordinator.recover()
        assert result["recovered_tasks"] == ["T1"]
        assert result["reset_agents"] == ["ada"]
        assert coordinator.get_task("T1").status == "pending"
        assert coordinator.get_agent("ada").status == "idle"
        assert "Recovered after restart: no live execution" in _messages(coordinator)

    def test_recover_with_nothing_to_do(self, coordinator):
        assert coordinator.recover() == {
            "ok": True, "recovered_tasks": [], "reset_agents": [], "missing_worktrees": [],
        }

    def test_shutdown_pauses_live_runs(self, coordinator, fake_adapter, task):
        coordinator.run("T1")
        coordinator.shutdown(wait_seconds=5)
        assert fake_adapter.last_run.stopped
        assert coordinator.active_count == 0
        assert coordinator.get_task("T1").status == "pending"

    def test_pump_failure_stops_run_and_resets_task(self, coordinator, fake_adapter, task, monkeypatch):
        real_append = coordinator_mod.append_log
        failed = []

        def flaky_append(db, task_id, kind, message):
            if kind == "stdout" and not failed:
                failed.append(message)
                raise sqlite3.OperationalError("database is locked")
            return real_append(db, task_id, kind, message)

        monkeypatch.setattr("crew_orchestrator.core.coordinator.append_log", flaky_append)
        coordinator.run("T1")
        fake_adapter.last_run.emit("hello\n")
        assert coordinator.wait("T1", timeout=5)

        assert failed == ["hello\n"]
        assert fake_adapter.last_run.stopped
        assert not coordinator.is_running("T1")
        assert coordinator.get_task("T1").status == "pending"
        assert coordinator.get_agent("ada").status == "idle"
        assert "RUN failed: internal error while processing output" in _messages(coordinator)

        coordinator.resume("T1")
        assert len(fake_adapter.runs) == 2
        assert _finish(coordinator, fake_adapter).status == "review"
