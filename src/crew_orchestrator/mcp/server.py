"""MCP server exposing the crew orchestrator operations as tools."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from crew_orchestrator.config import get_config
from crew_orchestrator.core.coordinator import ExecutionCoordinator
from crew_orchestrator.core.errors import OrchestratorError


@dataclass
class AppContext:
    coordinator: ExecutionCoordinator


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the coordinator on startup, pause live runs on shutdown."""
    coordinator = ExecutionCoordinator(get_config())
    coordinator.recover()
    try:
        yield AppContext(coordinator=coordinator)
    finally:
        coordinator.shutdown()


mcp = FastMCP("crew-orchestrator", lifespan=app_lifespan)


def _coord(ctx: Context) -> ExecutionCoordinator:
    return ctx.request_context.lifespan_context.coordinator


def _guard(fn: Callable[[], dict]) -> dict:
    try:
        return fn()
    except OrchestratorError as e:
        return e.to_dict()
    except ValueError as e:
        return {"ok": False, "error": "bad_request", "message": str(e)}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    project_path: str | None = None,
    priority: int = 3,
    task_type: str = "general",
    agent_id: str | None = None,
) -> dict:
    """Create a task. Priority 1 (lowest) to 5 (highest), default 3."""
    return _guard(lambda: {
        "ok": True,
        "task": _coord(ctx).create_task(
            title,
            description=description,
            project_path=project_path,
            priority=priority,
            task_type=task_type,
            assigned_agent_id=agent_id,
        ).to_dict(),
    })


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None, agent_id: str | None = None) -> dict:
    """List tasks, optionally filtered by status or assigned agent."""
    return _guard(lambda: {
        "ok": True,
        "tasks": [t.to_dict() for t in _coord(ctx).list_tasks(status=status, agent_id=agent_id)],
    })


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its recent log entries and worktree."""
    return _guard(lambda: _coord(ctx).describe(task_id))


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task that is not running, discarding its worktree."""
    return _guard(lambda: _coord(ctx).delete(task_id))


@mcp.tool()
def assign_task(ctx: Context, task_id: str, agent_id: str) -> dict:
    """Assign an agent to a task. Inbox tasks move to planned."""
    return _guard(lambda: {"ok": True, "task": _coord(ctx).assign(task_id, agent_id).to_dict()})


@mcp.tool()
def run_task(ctx: Context, task_id: str) -> dict:
    """Start the assigned agent on an inbox or planned task in its own worktree."""
    return _guard(lambda: {"ok": True, "task": _coord(ctx).run(task_id).to_dict()})


@mcp.tool()
def stop_task(ctx: Context, task_id: str, mode: str = "cancel") -> dict:
    """Stop a running task. mode='pause' leaves it pending, 'cancel' leaves it cancelled."""
    return _guard(lambda: {"ok": True, "task": _coord(ctx).stop(task_id, mode).to_dict()})


@mcp.tool()
def resume_task(ctx: Context, task_id: str) -> dict:
    """Resume a pending or cancelled task on the same branch."""
    return _guard(lambda: {"ok": True, "task": _coord(ctx).resume(task_id).to_dict()})


@mcp.tool()
def approve_task(ctx: Context, task_id: str) -> dict:
    """Mark a review task done when it has no worktree to merge."""
    return _guard(lambda: {"ok": True, "task": _coord(ctx).approve(task_id).to_dict()})


@mcp.tool()
def task_terminal(ctx: Context, task_id: str, lines: int = 200, pretty: bool = True) -> dict:
    """Read the tail of a task's agent output and its log entries."""
    return _guard(lambda: _coord(ctx).terminal(task_id, lines, pretty))


# ── Worktree Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def task_diff(ctx: Context, task_id: str) -> dict:
    """Show the diff of a task's branch against the project branch."""
    return _guard(lambda: _coord(ctx).diff(task_id))


@mcp.tool()
def merge_task(ctx: Context, task_id: str) -> dict:
    """Merge a reviewed task's branch. Conflicts abort the merge and are listed."""
    return _guard(lambda: _coord(ctx).merge(task_id))


@mcp.tool()
def discard_task_worktree(ctx: Context, task_id: str) -> dict:
    """Throw away a task's worktree and branch."""
    return _guard(lambda: _coord(ctx).discard(task_id))


@mcp.tool()
def list_worktrees(ctx: Context) -> dict:
    """List active task worktrees."""
    return _guard(lambda: _coord(ctx).worktrees())


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def create_agent(
    ctx: Context,
    name: str,
    cli_provider: str = "claude",
    role: str = "senior",
    department_id: str | None = None,
) -> dict:
    """Add an agent backed by a CLI provider (claude, codex, gemini, opencode, copilot, antigravity)."""
    return _guard(lambda: {
        "ok": True,
        "agent": _coord(ctx).create_agent(
            name, cli_provider=cli_provider, role=role, department_id=department_id
        ).to_dict(),
    })


@mcp.tool()
def list_agents(ctx: Context, status: str | None = None) -> dict:
    """List agents, optionally filtered by status (idle/working/break/offline)."""
    return _guard(lambda: {
        "ok": True,
        "agents": [a.to_dict() for a in _coord(ctx).list_agents(status)],
    })


@mcp.tool()
def update_agent(
    ctx: Context,
    agent_id: str,
    name: str | None = None,
    cli_provider: str | None = None,
    role: str | None = None,
    department_id: str | None = None,
    status: str | None = None,
) -> dict:
    """Edit an agent that is not running. An 'offline' agent cannot start tasks."""
    return _guard(lambda: {
        "ok": True,
        "agent": _coord(ctx).update_agent(
            agent_id,
            name=name,
            cli_provider=cli_provider,
            role=role,
            department_id=department_id,
            status=status,
        ).to_dict(),
    })
