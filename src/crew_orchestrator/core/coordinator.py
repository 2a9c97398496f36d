"""Execution coordinator: owns running executions and drives task state.

The coordinator is the only writer of task and agent status. It holds the
table of live execution handles (at most one per task) and a lock per task
that serializes every transition on that task, including the completion
message delivered by the adapter.

Lock order is task lock -> log lock -> hub lock. Store functions commit
immediately, so no database transaction is held while waiting on a lock.
"""

import logging
import queue
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from crew_orchestrator.adapters.base import Completion, ExecutionRequest, OutputChunk
from crew_orchestrator.adapters.factory import build_adapter
from crew_orchestrator.config import Config
from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core.errors import (
    AgentBusy,
    ExecutionFailed,
    InvalidTransition,
    MergeConflict,
    NoAgentAssigned,
    OrchestratorError,
    ProviderUnavailable,
    TaskBusy,
    WorkspaceUnavailable,
)
from crew_orchestrator.core.events import (
    AGENT_STATUS,
    CLI_OUTPUT,
    TASK_UPDATE,
    BroadcastEvent,
    EventHub,
)
from crew_orchestrator.core.lifecycle import can_delete, next_status
from crew_orchestrator.core.logs import (
    append_log,
    log_file_path,
    prettify_stream_json,
    read_terminal,
    recent_logs,
    tail_text,
)
from crew_orchestrator.core.prompts import build_agent_prompt
from crew_orchestrator.core.worktrees import (
    acquire_worktree,
    diff_worktree,
    discard_worktree,
    get_worktree,
    list_worktrees,
    merge_worktree,
    snapshot_worktree,
)
from crew_orchestrator.db.engine import connect, init_db
from crew_orchestrator.db.models import Agent, Task
from crew_orchestrator.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

RESULT_TAIL_CHARS = 2000

Notifier = Callable[[Task, Agent | None, str | None], None]


@dataclass
class ExecutionHandle:
    task_id: str
    run_id: str
    agent_id: str
    run: object
    outbox: queue.Queue
    log_path: Path
    started_at: float = field(default_factory=time.time)
    cursor: int = 0
    stop_reason: str | None = None
    thread: threading.Thread | None = None
    done: threading.Event = field(default_factory=threading.Event)


class ExecutionCoordinator:
    def __init__(
        self,
        config: Config,
        adapter_factory: Callable | None = None,
        hub: EventHub | None = None,
        notifier: Notifier | None = None,
    ):
        self.config = config
        self.adapter_factory = adapter_factory or build_adapter
        self.hub = hub or EventHub(config.event_queue_size)
        self.notifier = notifier or self._notify_slack
        self._handles: dict[str, ExecutionHandle] = {}
        self._latest: dict[str, ExecutionHandle] = {}
        self._handles_lock = threading.Lock()
        self._task_locks: dict[str, threading.Lock] = {}
        self._task_locks_guard = threading.Lock()
        self._log_lock = threading.Lock()

        init_db(config.db_path).close()
        Path(config.logs_dir).mkdir(parents=True, exist_ok=True)

    # ── Plumbing ─────────────────────────────────────────────────────────────

    @contextmanager
    def _db(self):
        conn = connect(self.config.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _lock_for(self, task_id: str) -> threading.Lock:
        with self._task_locks_guard:
            return self._task_locks.setdefault(task_id, threading.Lock())

    def _log_path(self, task_id: str) -> Path:
        return log_file_path(self.config.logs_dir, task_id)

    def _author(self) -> tuple[str, str]:
        return (self.config.commit_author_name, self.config.commit_author_email)

    def _log(self, db: sqlite3.Connection, task_id: str, kind: str, message: str):
        # Append and publish under one lock so event order matches seq order.
        with self._log_lock:
            entry = append_log(db, task_id, kind, message)
            self.hub.publish(
                BroadcastEvent(
                    CLI_OUTPUT,
                    task_id,
                    {"task_id": task_id, "seq": entry.seq, "stream": kind, "data": message},
                )
            )
        return entry

    def _publish_task(self, task: Task):
        self.hub.publish(BroadcastEvent(TASK_UPDATE, task.id, task.to_dict()))

    def _publish_agent(self, agent: Agent, task_id: str | None):
        self.hub.publish(BroadcastEvent(AGENT_STATUS, task_id, agent.to_dict()))

    def _transition(self, db: sqlite3.Connection, task: Task, event: str, **stamps) -> Task:
        new_status = next_status(task.status, event)
        if new_status == task.status:
            self._publish_task(task)
            return task
        updated = tasks_mod.set_task_status(db, task.id, new_status, **stamps)
        self._log(db, task.id, "status", f"{task.status} → {new_status}")
        self._publish_task(updated)
        return updated

    def _release_agent(self, db: sqlite3.Connection, agent_id: str, task_id: str) -> Agent | None:
        agent = agents_mod.get_agent(db, agent_id)
        if agent is None:
            return None
        if agent.current_task_id in (task_id, None):
            agent = agents_mod.set_agent_status(db, agent_id, "idle", None)
            self._publish_agent(agent, task_id)
        return agent

    def _handle_for_agent(self, agent_id: str) -> ExecutionHandle | None:
        with self._handles_lock:
            for handle in self._handles.values():
                if handle.agent_id == agent_id:
                    return handle
        return None

    def is_running(self, task_id: str) -> bool:
        with self._handles_lock:
            return task_id in self._handles

    @property
    def active_count(self) -> int:
        with self._handles_lock:
            return len(self._handles)

    # ── Store wrappers ───────────────────────────────────────────────────────

    def create_task(self, title: str, **kwargs) -> Task:
        with self._db() as db:
            if kwargs.get("assigned_agent_id"):
                agents_mod.require_agent(db, kwargs["assigned_agent_id"])
            task = tasks_mod.create_task(db, title, **kwargs)
            self._log(db, task.id, "system", f"Task created ({task.status})")
        self._publish_task(task)
        return task

    def update_task(self, task_id: str, **fields) -> Task:
        with self._db() as db:
            task = tasks_mod.update_task(db, task_id, **fields)
        self._publish_task(task)
        return task

    def get_task(self, task_id: str) -> Task:
        with self._db() as db:
            return tasks_mod.require_task(db, task_id)

    def list_tasks(self, **filters) -> list[Task]:
        with self._db() as db:
            return tasks_mod.list_tasks(db, **filters)

    def describe(self, task_id: str, log_limit: int = 50) -> dict:
        """Task detail for the outer surfaces: task, recent logs, worktree, running flag."""
        with self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            record = get_worktree(db, task_id)
            logs = recent_logs(db, task_id, log_limit)
        return {
            "ok": True,
            "task": task.to_dict(),
            "logs": [e.to_dict() for e in logs],
            "worktree": record.to_dict() if record else None,
            "running": self.is_running(task_id),
        }

    def create_agent(self, name: str, **kwargs) -> Agent:
        with self._db() as db:
            agent = agents_mod.create_agent(db, name, **kwargs)
        self._publish_agent(agent, None)
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        with self._db() as db:
            return agents_mod.require_agent(db, agent_id)

    def list_agents(self, status: str | None = None) -> list[Agent]:
        with self._db() as db:
            return agents_mod.list_agents(db, status=status)

    def update_agent(self, agent_id: str, **fields) -> Agent:
        """Edit an agent's profile or status; refused while it is running a task."""
        with self._db() as db:
            agents_mod.require_agent(db, agent_id)
            busy = self._handle_for_agent(agent_id)
            if busy:
                raise AgentBusy(f"Agent {agent_id} is running task {busy.task_id}; stop it first")
            agent = agents_mod.update_agent(db, agent_id, **fields)
        self._publish_agent(agent, None)
        logger.info("Updated agent %s", agent_id)
        return agent

    # ── Lifecycle operations ─────────────────────────────────────────────────

    def assign(self, task_id: str, agent_id: str) -> Task:
        with self._lock_for(task_id), self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            agent = agents_mod.require_agent(db, agent_id)
            if self.is_running(task_id):
                raise TaskBusy(f"Task {task_id} is running; stop it before reassigning")
            new_status = next_status(task.status, "assign")
            updated = tasks_mod.assign_agent(db, task_id, agent_id, new_status)
            self._log(db, task_id, "system", f"Assigned to {agent.name} ({agent.cli_provider})")
            if new_status != task.status:
                self._log(db, task_id, "status", f"{task.status} → {new_status}")
        self._publish_task(updated)
        self._publish_agent(agent, task_id)
        return updated

    def run(self, task_id: str) -> Task:
        """Start an execution for an inbox/planned task."""
        return self._start(task_id, "run")

    def resume(self, task_id: str) -> Task:
        """Start a new execution for a pending/cancelled task, reusing its worktree."""
        return self._start(task_id, "resume")

    def _start(self, task_id: str, event: str) -> Task:
        with self._lock_for(task_id), self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            if self.is_running(task_id):
                raise TaskBusy(f"Task {task_id} is already running")
            next_status(task.status, event)
            if not task.assigned_agent_id:
                raise NoAgentAssigned(f"Task {task_id} has no assigned agent")
            agent = agents_mod.require_agent(db, task.assigned_agent_id)
            if agent.status == "offline":
                raise ProviderUnavailable(f"Agent {agent.id} is offline")
            busy = self._handle_for_agent(agent.id)
            if busy:
                raise AgentBusy(f"Agent {agent.id} is already running task {busy.task_id}")

            adapter = self.adapter_factory(agent.cli_provider, self.config)
            record, inserted = acquire_worktree(
                db,
                task,
                self.config.worktree_dir,
                self.config.branch_prefix,
                self.config.default_project_path,
            )
            cwd = record.worktree_path if record else str(
                Path(task.project_path or self.config.default_project_path).expanduser()
            )
            if not Path(cwd).is_dir():
                raise WorkspaceUnavailable(f"Project directory does not exist: {cwd}")

            handle = self._launch(db, task, agent, adapter, cwd, record, inserted)
            task = self._transition(db, task, event, started=True)
            agent = agents_mod.set_agent_status(db, agent.id, "working", task_id)
            self._log(
                db, task_id, "system",
                f"RUN start (agent: {agent.name}, provider: {agent.cli_provider}, run: {handle.run_id})",
            )
            if record:
                self._log(db, task_id, "system", f"Worktree: {record.worktree_path} (branch {record.branch_name})")
            else:
                self._log(db, task_id, "system", f"No git repository; running in {cwd}")
            self._publish_agent(agent, task_id)

            handle.thread = threading.Thread(
                target=self._pump, args=(handle,), name=f"pump-{task_id}", daemon=True
            )
            handle.thread.start()

        logger.info("Task %s %s on agent %s (run %s)", task_id, event, agent.id, handle.run_id)
        return task

    def _launch(self, db, task, agent, adapter, cwd, record, inserted) -> ExecutionHandle:
        prompt = build_agent_prompt(task, agent, record, cwd)
        outbox: queue.Queue = queue.Queue()
        request = ExecutionRequest(
            task_id=task.id,
            provider=agent.cli_provider,
            prompt=prompt,
            cwd=cwd,
            env={"CREW_TASK_ID": task.id},
        )
        try:
            run = adapter.start(request, outbox)
        except (ProviderUnavailable, OSError) as e:
            if inserted:
                discard_worktree(db, task.id)
            if isinstance(e, ProviderUnavailable):
                raise
            raise ProviderUnavailable(f"{agent.cli_provider} failed to start: {e}") from e

        handle = ExecutionHandle(
            task_id=task.id,
            run_id=uuid.uuid4().hex[:12],
            agent_id=agent.id,
            run=run,
            outbox=outbox,
            log_path=self._log_path(task.id),
        )
        with self._handles_lock:
            self._handles[task.id] = handle
            self._latest[task.id] = handle
        return handle

    def stop(self, task_id: str, mode: str = "cancel") -> Task:
        """Stop a live execution. ``pause`` leaves the task pending, ``cancel`` cancelled."""
        if mode not in ("cancel", "pause"):
            raise InvalidTransition(f"Unknown stop mode: {mode}")
        with self._lock_for(task_id), self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            if not self.is_running(task_id):
                raise InvalidTransition(f"Task {task_id} is not running")
            next_status(task.status, mode)
            with self._handles_lock:
                handle = self._handles.pop(task_id)
            handle.stop_reason = mode
            handle.run.stop(self.config.stop_grace_seconds)
            task = self._transition(db, task, mode)
            verb = "paused" if mode == "pause" else "cancelled"
            self._log(db, task_id, "system", f"RUN {verb} by operator")
            self._release_agent(db, handle.agent_id, task_id)
        logger.info("Task %s %s", task_id, task.status)
        return task

    def pause(self, task_id: str) -> Task:
        return self.stop(task_id, "pause")

    def approve(self, task_id: str) -> Task:
        """Mark a reviewed task done when it has no worktree left to reconcile."""
        with self._lock_for(task_id), self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            if get_worktree(db, task_id):
                raise InvalidTransition(f"Task {task_id} has a worktree; merge or discard it first")
            task = self._transition(db, task, "approve", completed=True)
            self._log(db, task_id, "system", "Approved")
        return task

    def merge(self, task_id: str) -> dict:
        with self._lock_for(task_id), self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            record = get_worktree(db, task_id)
            if record is None:
                return {"ok": False, "message": "No worktree found for this task"}
            next_status(task.status, "merge")
            try:
                result = merge_worktree(
                    db, task_id, f"Merge {record.branch_name}: {task.title}", self._author()
                )
            except MergeConflict as e:
                self._log(db, task_id, "system", f"Merge conflict: {', '.join(e.conflicts)}")
                raise
            self._log(db, task_id, "system", result["message"])
            task = self._transition(db, task, "merge", completed=True)
        self._notify(task, None, result["message"])
        return result

    def discard(self, task_id: str) -> dict:
        with self._lock_for(task_id), self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            if self.is_running(task_id):
                raise TaskBusy(f"Task {task_id} is running; stop it before discarding")
            next_status(task.status, "discard")
            removed = discard_worktree(db, task_id)
            if removed:
                self._log(db, task_id, "system", "Worktree discarded")
            self._publish_task(task)
        if removed:
            return {"ok": True, "message": "Worktree discarded"}
        return {"ok": True, "message": "No worktree to discard"}

    def delete(self, task_id: str) -> dict:
        with self._lock_for(task_id), self._db() as db:
            task = tasks_mod.require_task(db, task_id)
            if self.is_running(task_id):
                raise TaskBusy(f"Task {task_id} is running; stop it before deleting")
            if not can_delete(task.status):
                raise InvalidTransition(f"Cannot delete a task in status '{task.status}'")
            discard_worktree(db, task_id)
            agents_mod.clear_current_task(db, task_id)
            tasks_mod.delete_task(db, task_id)
            self._log_path(task_id).unlink(missing_ok=True)
        with self._handles_lock:
            self._latest.pop(task_id, None)
        with self._task_locks_guard:
            self._task_locks.pop(task_id, None)
        self.hub.publish(BroadcastEvent(TASK_UPDATE, task_id, {"id": task_id, "deleted": True}))
        logger.info("Deleted task %s", task_id)
        return {"ok": True, "id": task_id, "deleted": True}

    # ── Read operations ──────────────────────────────────────────────────────

    def terminal(self, task_id: str, lines=200, pretty: bool = False, after: int = 0) -> dict:
        with self._db() as db:
            tasks_mod.require_task(db, task_id)
            return read_terminal(db, task_id, self._log_path(task_id), lines, pretty, after)

    def diff(self, task_id: str) -> dict:
        with self._db() as db:
            tasks_mod.require_task(db, task_id)
            return diff_worktree(db, task_id, self.config.diff_max_bytes)

    def worktrees(self) -> dict:
        with self._db() as db:
            return {"ok": True, "worktrees": [r.to_dict() for r in list_worktrees(db)]}

    # ── Completion ───────────────────────────────────────────────────────────

    def _pump(self, handle: ExecutionHandle):
        """Consume one execution's outbox until its Completion arrives."""
        completion = None
        try:
            with self._db() as db:
                handle.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(handle.log_path, "a", encoding="utf-8") as log_file:
                    while True:
                        message = handle.outbox.get()
                        if isinstance(message, Completion):
                            completion = message
                            break
                        if isinstance(message, OutputChunk):
                            log_file.write(message.data)
                            log_file.flush()
                            self._log(db, handle.task_id, message.stream, message.data)
                            handle.cursor += 1
                self._complete(db, handle, completion)
        except Exception:
            logger.exception("Execution pump for task %s failed", handle.task_id)
            self._recover_handle(handle)
        finally:
            handle.done.set()

    def _complete(self, db: sqlite3.Connection, handle: ExecutionHandle, completion: Completion):
        task_id = handle.task_id
        detail = None
        with self._lock_for(task_id):
            with self._handles_lock:
                current = self._handles.get(task_id) is handle
                if current:
                    del self._handles[task_id]
            if not current:
                self._log(
                    db, task_id, "system",
                    f"RUN exited after {handle.stop_reason or 'stop'} (exit code: {completion.exit_code})",
                )
                return

            task = tasks_mod.require_task(db, task_id)
            tail = tail_text(handle.log_path, RESULT_TAIL_CHARS)
            tasks_mod.set_task_result(db, task_id, prettify_stream_json(tail) if tail else None)

            if completion.ok:
                try:
                    if snapshot_worktree(db, task_id, self._author()):
                        self._log(db, task_id, "system", "Committed agent changes to task branch")
                except WorkspaceUnavailable as e:
                    self._log(db, task_id, "system", f"Could not commit agent changes: {e}")
                self._log(db, task_id, "system", "RUN completed (exit code: 0)")
                task = self._transition(db, task, "complete")
                agents_mod.record_task_done(db, handle.agent_id)
                detail = "Ready for review"
            else:
                failure = ExecutionFailed(
                    f"RUN failed (exit code: {completion.exit_code})"
                    + (f": {completion.error}" if completion.error else ""),
                    exit_code=completion.exit_code,
                    transient=completion.transient,
                )
                self._log(db, task_id, "system", failure.message)
                task = self._transition(db, task, "fail")
                detail = failure.message
            agent = self._release_agent(db, handle.agent_id, task_id)

        logger.info("Task %s finished run %s: %s", task_id, handle.run_id, task.status)
        self._notify(task, agent, detail)

    def _recover_handle(self, handle: ExecutionHandle):
        """Stop a run whose pump died and put its task back to pending."""
        with self._handles_lock:
            if self._handles.get(handle.task_id) is not handle:
                return
            del self._handles[handle.task_id]
        handle.stop_reason = "pump failure"
        try:
            handle.run.stop(self.config.stop_grace_seconds)
        except Exception:
            logger.exception("Could not stop run %s for task %s", handle.run_id, handle.task_id)
        try:
            with self._lock_for(handle.task_id), self._db() as db:
                task = tasks_mod.require_task(db, handle.task_id)
                self._log(db, task.id, "system", "RUN failed: internal error while processing output")
                self._transition(db, task, "fail")
                self._release_agent(db, handle.agent_id, task.id)
        except Exception:
            logger.exception("Could not reset task %s after pump failure", handle.task_id)

    def wait(self, task_id: str, timeout: float | None = None) -> bool:
        """Block until the latest execution of ``task_id`` has been fully processed."""
        with self._handles_lock:
            handle = self._latest.get(task_id)
        if handle is None:
            return True
        return handle.done.wait(timeout)

    # ── Startup / shutdown ───────────────────────────────────────────────────

    def recover(self) -> dict:
        """Reconcile persisted state with the (empty) set of live executions."""
        recovered, reset_agents, missing = [], [], []
        with self._db() as db:
            for task in tasks_mod.list_tasks(db, status="in_progress"):
                if self.is_running(task.id):
                    continue
                with self._lock_for(task.id):
                    self._log(db, task.id, "system", "Recovered after restart: no live execution")
                    self._transition(db, task, "fail")
                recovered.append(task.id)

            for agent in agents_mod.list_agents(db, status="working"):
                if self._handle_for_agent(agent.id):
                    continue
                agent = agents_mod.set_agent_status(db, agent.id, "idle", None)
                self._publish_agent(agent, None)
                reset_agents.append(agent.id)

            for record in list_worktrees(db):
                if not Path(record.worktree_path).exists():
                    logger.warning(
                        "Worktree for task %s is missing at %s; it will be recreated on resume",
                        record.task_id, record.worktree_path,
                    )
                    missing.append(record.task_id)

        if recovered or reset_agents:
            logger.info("Recovered %d task(s), reset %d agent(s)", len(recovered), len(reset_agents))
        return {
            "ok": True,
            "recovered_tasks": recovered,
            "reset_agents": reset_agents,
            "missing_worktrees": missing,
        }

    def shutdown(self, wait_seconds: float | None = None):
        """Pause every live execution and wait briefly for the processes to exit."""
        with self._handles_lock:
            task_ids = list(self._handles)
        for task_id in task_ids:
            try:
                self.pause(task_id)
            except OrchestratorError as e:
                logger.warning("Could not pause task %s during shutdown: %s", task_id, e)
        timeout = wait_seconds if wait_seconds is not None else self.config.stop_grace_seconds + 1
        for task_id in task_ids:
            self.wait(task_id, timeout)

    # ── Notifications ────────────────────────────────────────────────────────

    def _notify(self, task: Task, agent: Agent | None, detail: str | None):
        try:
            self.notifier(task, agent, detail)
        except Exception:
            logger.exception("Notifier failed for task %s", task.id)

    def _notify_slack(self, task: Task, agent: Agent | None, detail: str | None):
        slack_mod.notify_run(
            self.config.slack_bot_token,
            self.config.slack_channel,
            task.id,
            task.title,
            task.status,
            agent.name if agent else None,
            detail,
        )
