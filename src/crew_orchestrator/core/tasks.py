"""Task store operations."""

import re
import sqlite3

from crew_orchestrator.core.errors import NotFound
from crew_orchestrator.core.logs import delete_logs
from crew_orchestrator.db.models import Task, parse_dt

TASK_TYPES = ("general", "development", "design", "analysis", "presentation", "documentation")

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,79}$")

_UPDATABLE = ("title", "description", "priority", "task_type", "department_id", "project_path")


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def unique_id(db: sqlite3.Connection, table: str, base_slug: str) -> str:
    """Generate a unique row ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    candidate = base_slug
    i = 2
    while db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def clamp_priority(priority: int) -> int:
    return max(1, min(5, int(priority)))


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    project_path: str | None = None,
    priority: int = 3,
    task_type: str = "general",
    department_id: str | None = None,
    assigned_agent_id: str | None = None,
    task_id: str | None = None,
) -> Task:
    """Create a new task in ``inbox`` (``planned`` when created with an agent)."""
    if not title.strip():
        raise ValueError("Task title must not be empty")
    if task_type not in TASK_TYPES:
        raise ValueError(f"Unknown task type: {task_type}")
    if task_id is not None:
        if not _TASK_ID_RE.match(task_id):
            raise ValueError(f"Invalid task id: {task_id!r}")
        if get_task(db, task_id):
            raise ValueError(f"Task already exists: {task_id}")
    else:
        task_id = unique_id(db, "tasks", slugify(title))

    status = "planned" if assigned_agent_id else "inbox"
    db.execute(
        """INSERT INTO tasks
           (id, title, description, status, priority, task_type, department_id,
            assigned_agent_id, project_path)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id, title, description, status, clamp_priority(priority), task_type,
            department_id, assigned_agent_id, project_path,
        ),
    )
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise NotFound(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    status: str | None = None,
    agent_id: str | None = None,
    department_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(status)

    if agent_id:
        query += " AND assigned_agent_id = ?"
        params.append(agent_id)

    if department_id:
        query += " AND department_id = ?"
        params.append(department_id)

    query += " ORDER BY priority DESC, created_at ASC, id ASC"
    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def set_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    started: bool = False,
    completed: bool = False,
) -> Task:
    """Write a task's status. Transition checks belong to the caller."""
    set_parts = ["status = ?", "updated_at = datetime('now')"]
    if started:
        set_parts.append("started_at = datetime('now')")
    if completed:
        set_parts.append("completed_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        (status, task_id),
    )
    db.commit()
    return require_task(db, task_id)


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task:
    """Update task metadata. Status and agent are changed through their own operations."""
    require_task(db, task_id)
    updates = {k: v for k, v in fields.items() if k in _UPDATABLE and v is not None}
    unknown = set(fields) - set(_UPDATABLE)
    if unknown:
        raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    if "priority" in updates:
        updates["priority"] = clamp_priority(updates["priority"])
    if "task_type" in updates and updates["task_type"] not in TASK_TYPES:
        raise ValueError(f"Unknown task type: {updates['task_type']}")
    if not updates:
        return require_task(db, task_id)

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    db.commit()
    return require_task(db, task_id)


def assign_agent(db: sqlite3.Connection, task_id: str, agent_id: str, status: str) -> Task:
    db.execute(
        "UPDATE tasks SET assigned_agent_id = ?, status = ?, updated_at = datetime('now') WHERE id = ?",
        (agent_id, status, task_id),
    )
    db.commit()
    return require_task(db, task_id)


def set_task_result(db: sqlite3.Connection, task_id: str, result: str | None):
    db.execute(
        "UPDATE tasks SET result = ?, updated_at = datetime('now') WHERE id = ?",
        (result, task_id),
    )
    db.commit()


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task row and its log entries."""
    if not get_task(db, task_id):
        return False
    delete_logs(db, task_id)
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"] if row["priority"] is not None else 3,
        task_type=row["task_type"],
        department_id=row["department_id"],
        assigned_agent_id=row["assigned_agent_id"],
        project_path=row["project_path"],
        result=row["result"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )
