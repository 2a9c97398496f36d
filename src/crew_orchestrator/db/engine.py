"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT DEFAULT 'senior' CHECK (role IN ('team_leader', 'senior', 'junior', 'intern')),
    department_id TEXT,
    cli_provider TEXT DEFAULT 'claude'
        CHECK (cli_provider IN ('claude', 'codex', 'gemini', 'opencode', 'copilot', 'antigravity')),
    status TEXT DEFAULT 'idle' CHECK (status IN ('idle', 'working', 'break', 'offline')),
    current_task_id TEXT,
    stats_tasks_done INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'inbox'
        CHECK (status IN ('inbox', 'planned', 'in_progress', 'review', 'done', 'pending', 'cancelled')),
    priority INTEGER DEFAULT 3 CHECK (priority BETWEEN 1 AND 5),
    task_type TEXT DEFAULT 'general'
        CHECK (task_type IN ('general', 'development', 'design', 'analysis', 'presentation', 'documentation')),
    department_id TEXT,
    assigned_agent_id TEXT REFERENCES agents(id) ON DELETE SET NULL,
    project_path TEXT,
    result TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('stdout', 'stderr', 'system', 'status')),
    message TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(task_id, seq)
);

CREATE TABLE IF NOT EXISTS worktrees (
    task_id TEXT PRIMARY KEY REFERENCES tasks(id),
    branch_name TEXT NOT NULL,
    worktree_path TEXT NOT NULL,
    project_path TEXT NOT NULL,
    base_ref TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_task_logs_task ON task_logs(task_id, seq);
"""


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection with the pragmas every caller relies on."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=30000")
    return conn


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    conn = connect(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
