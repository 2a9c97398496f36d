"""CLI entry point for the crew orchestrator."""

import functools
import json
import logging
import sys

import click

from crew_orchestrator.config import get_config
from crew_orchestrator.core.coordinator import ExecutionCoordinator
from crew_orchestrator.core.errors import MergeConflict, OrchestratorError
from crew_orchestrator.core.events import CLI_OUTPUT

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

STATUS_ICONS = {
    "inbox": "·",
    "planned": "○",
    "in_progress": "●",
    "review": "◐",
    "done": "✓",
    "pending": "‖",
    "cancelled": "✗",
}


def _coordinator() -> ExecutionCoordinator:
    return ExecutionCoordinator(get_config())


def _handle_errors(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except MergeConflict as e:
            click.echo(f"Error: {e}", err=True)
            for path in e.conflicts:
                click.echo(f"  conflict: {path}", err=True)
            sys.exit(1)
        except (OrchestratorError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show log output")
def main(verbose):
    """crew - run coding agents against a task queue"""
    level = get_config().log_level if verbose else "WARNING"
    logging.basicConfig(level=level, format=LOG_FORMAT)


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
def serve(host, port):
    """Start the REST/WebSocket API server."""
    from crew_orchestrator.web.app import run_server

    config = get_config()
    if host:
        config.host = host
    if port:
        config.port = port
    logging.getLogger().setLevel(config.log_level)
    click.echo(f"Serving on http://{config.host}:{config.port}")
    run_server(config)


@main.command("mcp")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from crew_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


@main.command("recover")
@_handle_errors
def recover():
    """Reset tasks and agents left running by a crashed process.

    Only run this while no `crew serve` or `crew mcp` process is using the
    same database: their running tasks would be reset to pending.
    """
    result = _coordinator().recover()
    for task_id in result["recovered_tasks"]:
        click.echo(f"  Task {task_id}: in_progress -> pending")
    for agent_id in result["reset_agents"]:
        click.echo(f"  Agent {agent_id}: working -> idle")
    for task_id in result["missing_worktrees"]:
        click.echo(f"  Worktree missing for {task_id}")
    if not any(result[k] for k in ("recovered_tasks", "reset_agents", "missing_worktrees")):
        click.echo("Nothing to recover.")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--project", "project_path", default=None, help="Project directory (defaults to CREW_PROJECT_PATH)")
@click.option("--priority", "-p", default=3, type=int, help="Priority 1 (lowest) to 5 (highest)")
@click.option("--type", "task_type", default="general", help="Task type")
@click.option("--agent", "agent_id", default=None, help="Assign to this agent")
@click.option("--id", "task_id", default=None, help="Explicit task ID")
@_handle_errors
def task_add(title, description, project_path, priority, task_type, agent_id, task_id):
    """Create a new task."""
    task = _coordinator().create_task(
        title,
        description=description,
        project_path=project_path,
        priority=priority,
        task_type=task_type,
        assigned_agent_id=agent_id,
        task_id=task_id,
    )
    click.echo(f"Created task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--agent", "agent_id", default=None, help="Filter by agent")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@_handle_errors
def task_list(status, agent_id, json_output):
    """List tasks."""
    tasks = _coordinator().list_tasks(status=status, agent_id=agent_id)

    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        icon = STATUS_ICONS.get(task.status, "?")
        agent = f" [agent: {task.assigned_agent_id}]" if task.assigned_agent_id else ""
        click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}){agent}")


@task_group.command("show")
@click.argument("task_id")
@_handle_errors
def task_show(task_id):
    """Show task details."""
    detail = _coordinator().describe(task_id, log_limit=20)
    task = detail["task"]
    click.echo(f"Task: {task['id']}")
    click.echo(f"  Title: {task['title']}")
    click.echo(f"  Status: {task['status']}{' (running)' if detail['running'] else ''}")
    click.echo(f"  Priority: P{task['priority']} | Type: {task['task_type']}")
    if task["assigned_agent_id"]:
        click.echo(f"  Agent: {task['assigned_agent_id']}")
    if task["project_path"]:
        click.echo(f"  Project: {task['project_path']}")
    if task["description"]:
        click.echo(f"  Description: {task['description']}")
    if detail["worktree"]:
        click.echo(f"  Branch: {detail['worktree']['branchName']}")
        click.echo(f"  Worktree: {detail['worktree']['worktreePath']}")
    if detail["logs"]:
        click.echo("  Recent log:")
        for entry in detail["logs"]:
            if entry["kind"] in ("system", "status"):
                click.echo(f"    #{entry['seq']} [{entry['kind']}] {entry['message']}")


@task_group.command("update")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--priority", "-p", default=None, type=int)
@click.option("--type", "task_type", default=None)
@click.option("--project", "project_path", default=None)
@_handle_errors
def task_update(task_id, title, description, priority, task_type, project_path):
    """Update task metadata."""
    task = _coordinator().update_task(
        task_id,
        title=title,
        description=description,
        priority=priority,
        task_type=task_type,
        project_path=project_path,
    )
    click.echo(f"Updated task: {task.id}")


@task_group.command("delete")
@click.argument("task_id")
@click.confirmation_option(prompt="Delete this task, its logs and its worktree?")
@_handle_errors
def task_delete(task_id):
    """Delete a task."""
    _coordinator().delete(task_id)
    click.echo(f"Deleted task: {task_id}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("agent_id")
@_handle_errors
def task_assign(task_id, agent_id):
    """Assign an agent to a task."""
    task = _coordinator().assign(task_id, agent_id)
    click.echo(f"Assigned {task.id} to {agent_id} ({task.status})")


@task_group.command("run")
@click.argument("task_id")
@_handle_errors
def task_run(task_id):
    """Run a task in the foreground, streaming agent output. Ctrl-C pauses."""
    coordinator = _coordinator()
    _follow(coordinator, task_id, coordinator.run)


@task_group.command("resume")
@click.argument("task_id")
@_handle_errors
def task_resume(task_id):
    """Resume a pending or cancelled task in the foreground."""
    coordinator = _coordinator()
    _follow(coordinator, task_id, coordinator.resume)


@task_group.command("approve")
@click.argument("task_id")
@_handle_errors
def task_approve(task_id):
    """Mark a review task without a worktree as done."""
    task = _coordinator().approve(task_id)
    click.echo(f"Task {task.id}: {task.status}")


@task_group.command("log")
@click.argument("task_id")
@click.option("--lines", "-n", default=200, type=int, help="Number of output lines")
@click.option("--raw", is_flag=True, help="Show raw provider output")
@_handle_errors
def task_log(task_id, lines, raw):
    """Show a task's agent output."""
    result = _coordinator().terminal(task_id, lines=lines, pretty=not raw)
    if not result["exists"]:
        click.echo("No output recorded.")
    else:
        click.echo(result["text"])
    for entry in result["task_logs"]:
        if entry["kind"] == "system":
            click.echo(f"[{entry['created_at']}] {entry['message']}")


@task_group.command("diff")
@click.argument("task_id")
@click.option("--stat", "stat_only", is_flag=True, help="Only show the diffstat")
@_handle_errors
def task_diff(task_id, stat_only):
    """Show changes on the task branch."""
    result = _coordinator().diff(task_id)
    if not result["ok"]:
        click.echo(f"Error: {result['error']}", err=True)
        sys.exit(1)
    if not result["hasWorktree"]:
        click.echo("No worktree for this task.")
        return
    click.echo(f"Branch: {result['branchName']}")
    click.echo(result["stat"] or "(no committed changes)")
    if result["uncommitted"]:
        click.echo("Uncommitted:")
        click.echo(result["uncommitted"])
    if not stat_only and result["diff"]:
        click.echo(result["diff"])


@task_group.command("merge")
@click.argument("task_id")
@_handle_errors
def task_merge(task_id):
    """Merge the task branch and finish the task."""
    result = _coordinator().merge(task_id)
    if not result["ok"]:
        click.echo(f"Error: {result['message']}", err=True)
        sys.exit(1)
    click.echo(result["message"])


@task_group.command("discard")
@click.argument("task_id")
@_handle_errors
def task_discard(task_id):
    """Throw away the task's worktree and branch."""
    click.echo(_coordinator().discard(task_id)["message"])


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage agents."""
    pass


@agent_group.command("add")
@click.argument("name")
@click.option("--provider", "cli_provider", default="claude", help="claude, codex, gemini, opencode, copilot, antigravity")
@click.option("--role", default="senior", help="team_leader, senior, junior, intern")
@click.option("--department", "department_id", default=None)
@click.option("--id", "agent_id", default=None, help="Explicit agent ID")
@_handle_errors
def agent_add(name, cli_provider, role, department_id, agent_id):
    """Add an agent."""
    agent = _coordinator().create_agent(
        name, cli_provider=cli_provider, role=role, department_id=department_id, agent_id=agent_id
    )
    click.echo(f"Created agent: {agent.id} ({agent.cli_provider}, {agent.role})")


@agent_group.command("list")
@click.option("--status", default=None, help="Filter: idle, working, break, offline")
@_handle_errors
def agent_list(status):
    """List agents."""
    agents = _coordinator().list_agents(status)
    if not agents:
        click.echo("No agents found.")
        return
    for agent in agents:
        task = f" [task: {agent.current_task_id}]" if agent.current_task_id else ""
        click.echo(
            f"  [{agent.status}] {agent.id}: {agent.name} ({agent.cli_provider}, "
            f"{agent.role}, done: {agent.stats_tasks_done}){task}"
        )


@agent_group.command("update")
@click.argument("agent_id")
@click.option("--name", default=None)
@click.option("--provider", "cli_provider", default=None)
@click.option("--role", default=None)
@click.option("--department", "department_id", default=None)
@click.option(
    "--status",
    default=None,
    type=click.Choice(["idle", "break", "offline"]),
    help="An offline agent cannot start tasks",
)
@_handle_errors
def agent_update(agent_id, name, cli_provider, role, department_id, status):
    """Update an agent that is not running."""
    agent = _coordinator().update_agent(
        agent_id,
        name=name,
        cli_provider=cli_provider,
        role=role,
        department_id=department_id,
        status=status,
    )
    click.echo(f"Updated agent: {agent.id} [{agent.status}] ({agent.cli_provider}, {agent.role})")


@agent_group.command("show")
@click.argument("agent_id")
@_handle_errors
def agent_show(agent_id):
    """Show agent details."""
    agent = _coordinator().get_agent(agent_id)
    click.echo(json.dumps(agent.to_dict(), indent=2))


# ── Worktree Commands ─────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Inspect task worktrees."""
    pass


@worktree_group.command("list")
@_handle_errors
def worktree_list():
    """List active task worktrees."""
    worktrees = _coordinator().worktrees()["worktrees"]
    if not worktrees:
        click.echo("No worktrees.")
        return
    for wt in worktrees:
        click.echo(f"  {wt['taskId']}: {wt['branchName']} -> {wt['worktreePath']}")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _follow(coordinator: ExecutionCoordinator, task_id: str, start):
    """Start a run and stream its output until it finishes or is paused."""
    logs = coordinator.describe(task_id, log_limit=1)["logs"]
    last_seq = logs[-1]["seq"] if logs else 0
    sub = coordinator.hub.subscribe(task_id)
    try:
        start(task_id)
        click.echo(f"Running {task_id} (Ctrl-C to pause)", err=True)
        try:
            while not coordinator.wait(task_id, timeout=0.2):
                sub, last_seq = _echo_events(coordinator, task_id, sub, last_seq)
        except KeyboardInterrupt:
            click.echo("\nPausing...", err=True)
            if coordinator.is_running(task_id):
                coordinator.pause(task_id)
            coordinator.wait(task_id, coordinator.config.stop_grace_seconds + 1)
        sub, last_seq = _echo_events(coordinator, task_id, sub, last_seq)
    finally:
        coordinator.hub.unsubscribe(sub)
    task = coordinator.get_task(task_id)
    click.echo(f"Task {task_id}: {task.status}", err=True)


def _echo_events(coordinator: ExecutionCoordinator, task_id: str, sub, last_seq: int):
    """Echo output entries newer than ``last_seq``.

    A subscription that fell behind is dropped by the hub; resubscribe and
    fill the gap from the task log. Returns the live subscription and the
    last seq echoed.
    """
    for event in sub.drain():
        if event.type == CLI_OUTPUT and event.payload["seq"] > last_seq:
            _echo_entry(event.payload["stream"], event.payload["data"])
            last_seq = event.payload["seq"]
    if sub.overflowed:
        sub = coordinator.hub.subscribe(task_id)
        for entry in coordinator.terminal(task_id, after=last_seq)["task_logs"]:
            _echo_entry(entry["kind"], entry["message"])
            last_seq = entry["seq"]
    return sub, last_seq


def _echo_entry(stream: str, data: str):
    if stream in ("stdout", "stderr"):
        click.echo(data, nl=False, err=stream == "stderr")
    else:
        click.echo(f"[{stream}] {data}", err=True)


if __name__ == "__main__":
    main()
