"""Agent roster operations."""

import sqlite3

from crew_orchestrator.core.errors import NotFound
from crew_orchestrator.core.tasks import slugify, unique_id
from crew_orchestrator.db.models import Agent, parse_dt

AGENT_ROLES = ("team_leader", "senior", "junior", "intern")
AGENT_STATUSES = ("idle", "working", "break", "offline")
CLI_PROVIDERS = ("claude", "codex", "gemini", "opencode", "copilot", "antigravity")

_UPDATABLE = ("name", "role", "cli_provider", "department_id", "status")


def create_agent(
    db: sqlite3.Connection,
    name: str,
    cli_provider: str = "claude",
    role: str = "senior",
    department_id: str | None = None,
    agent_id: str | None = None,
) -> Agent:
    if cli_provider not in CLI_PROVIDERS:
        raise ValueError(f"Unknown CLI provider: {cli_provider}")
    if role not in AGENT_ROLES:
        raise ValueError(f"Unknown role: {role}")
    if agent_id is None:
        agent_id = unique_id(db, "agents", slugify(name) or "agent")
    elif get_agent(db, agent_id):
        raise ValueError(f"Agent already exists: {agent_id}")

    db.execute(
        """INSERT INTO agents (id, name, role, department_id, cli_provider)
           VALUES (?, ?, ?, ?, ?)""",
        (agent_id, name, role, department_id, cli_provider),
    )
    db.commit()
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def require_agent(db: sqlite3.Connection, agent_id: str) -> Agent:
    agent = get_agent(db, agent_id)
    if not agent:
        raise NotFound(f"Agent not found: {agent_id}")
    return agent


def list_agents(db: sqlite3.Connection, status: str | None = None) -> list[Agent]:
    if status:
        rows = db.execute(
            "SELECT * FROM agents WHERE status = ? ORDER BY created_at, id", (status,)
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM agents ORDER BY created_at, id").fetchall()
    return [_row_to_agent(r) for r in rows]


def update_agent(db: sqlite3.Connection, agent_id: str, **fields) -> Agent:
    """Update an agent's profile or take it on/off duty.

    ``working`` is owned by the coordinator and cannot be set here; any
    other status also drops the agent's current task reference.
    """
    require_agent(db, agent_id)
    unknown = set(fields) - set(_UPDATABLE)
    if unknown:
        raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    updates = {k: v for k, v in fields.items() if v is not None}
    if "cli_provider" in updates and updates["cli_provider"] not in CLI_PROVIDERS:
        raise ValueError(f"Unknown CLI provider: {updates['cli_provider']}")
    if "role" in updates and updates["role"] not in AGENT_ROLES:
        raise ValueError(f"Unknown role: {updates['role']}")
    if "status" in updates:
        if updates["status"] not in AGENT_STATUSES:
            raise ValueError(f"Unknown agent status: {updates['status']}")
        if updates["status"] == "working":
            raise ValueError("Agent status 'working' is only set by a run")
        updates["current_task_id"] = None
    name = updates.get("name")
    if name is not None and (not isinstance(name, str) or not name.strip()):
        raise ValueError("Agent name must be a non-empty string")
    if not updates:
        return require_agent(db, agent_id)

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE agents SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [agent_id],
    )
    db.commit()
    return require_agent(db, agent_id)


def set_agent_status(
    db: sqlite3.Connection,
    agent_id: str,
    status: str,
    current_task_id: str | None = None,
) -> Agent:
    """Set an agent's status and the task it is working on."""
    if status not in AGENT_STATUSES:
        raise ValueError(f"Unknown agent status: {status}")
    db.execute(
        """UPDATE agents SET status = ?, current_task_id = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (status, current_task_id, agent_id),
    )
    db.commit()
    return require_agent(db, agent_id)


def record_task_done(db: sqlite3.Connection, agent_id: str):
    db.execute(
        "UPDATE agents SET stats_tasks_done = stats_tasks_done + 1 WHERE id = ?",
        (agent_id,),
    )
    db.commit()


def clear_current_task(db: sqlite3.Connection, task_id: str):
    """Drop the weak back-reference from any agent pointing at ``task_id``."""
    db.execute(
        """UPDATE agents SET current_task_id = NULL, status = 'idle', updated_at = datetime('now')
           WHERE current_task_id = ?""",
        (task_id,),
    )
    db.commit()


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        role=row["role"],
        department_id=row["department_id"],
        cli_provider=row["cli_provider"],
        status=row["status"],
        current_task_id=row["current_task_id"],
        stats_tasks_done=row["stats_tasks_done"] or 0,
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
