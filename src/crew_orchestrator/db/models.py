"""Data models for the crew orchestrator."""

from dataclasses import dataclass
from datetime import datetime


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "inbox"
    priority: int = 3
    task_type: str = "general"
    department_id: str | None = None
    assigned_agent_id: str | None = None
    project_path: str | None = None
    result: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "task_type": self.task_type,
            "department_id": self.department_id,
            "assigned_agent_id": self.assigned_agent_id,
            "project_path": self.project_path,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class Agent:
    id: str
    name: str
    role: str = "senior"
    department_id: str | None = None
    cli_provider: str = "claude"
    status: str = "idle"
    current_task_id: str | None = None
    stats_tasks_done: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "department_id": self.department_id,
            "cli_provider": self.cli_provider,
            "status": self.status,
            "current_task_id": self.current_task_id,
            "stats_tasks_done": self.stats_tasks_done,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class WorktreeRecord:
    task_id: str
    branch_name: str
    worktree_path: str
    project_path: str
    base_ref: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "taskId": self.task_id,
            "branchName": self.branch_name,
            "worktreePath": self.worktree_path,
            "projectPath": self.project_path,
        }


@dataclass
class TaskLogEntry:
    task_id: str
    seq: int
    kind: str
    message: str
    id: int | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "seq": self.seq,
            "kind": self.kind,
            "message": self.message,
            "created_at": _iso(self.created_at),
        }


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
