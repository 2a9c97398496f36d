"""Prompt text handed to an agent when its task runs."""

from crew_orchestrator.db.models import Agent, Task, WorktreeRecord


def build_agent_prompt(task: Task, agent: Agent, worktree: WorktreeRecord | None, cwd: str) -> str:
    """Build the prompt for an agent, including task and workspace context."""
    parts = []
    parts.append(f"# Task: {task.title}")
    parts.append(f"Task ID: {task.id}")
    parts.append(f"Type: {task.task_type} | Priority: {task.priority}")
    if task.description:
        parts.append(f"\n## Description\n{task.description}")

    parts.append("\n## Workspace")
    parts.append(f"Working directory: {cwd}")
    if worktree:
        parts.append(f"Branch: {worktree.branch_name}")
        parts.append(
            "You are in an isolated git worktree. Edit files here only; "
            "the operator reviews and merges the branch afterwards."
        )

    if task.result:
        parts.append(f"\n## Previous Run Output (tail)\n{task.result}")

    parts.append(f"\n## Your Role\nYou are {agent.name} ({agent.role}).")

    parts.append(
        "\n## Completion\n"
        "When you are finished, provide a brief summary of what was accomplished, "
        "any files changed, and any issues encountered."
    )

    return "\n".join(parts)
