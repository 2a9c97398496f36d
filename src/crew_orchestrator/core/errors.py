"""Exceptions raised by orchestrator operations.

Every error carries a machine-readable ``code`` and the HTTP status the web
layer answers with, so the REST, MCP and CLI surfaces report failures the
same way.
"""


class OrchestratorError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message}


class NotFound(OrchestratorError):
    code = "not_found"
    status_code = 404


class TaskBusy(OrchestratorError):
    """The task already has a live execution handle."""

    code = "task_busy"
    status_code = 409


class AgentBusy(TaskBusy):
    """The assigned agent is running another task."""

    code = "agent_busy"


class InvalidTransition(OrchestratorError):
    code = "invalid_transition"
    status_code = 409


class NoAgentAssigned(InvalidTransition):
    code = "no_agent_assigned"
    status_code = 400


class WorkspaceUnavailable(OrchestratorError):
    code = "workspace_unavailable"
    status_code = 503


class ProviderUnavailable(OrchestratorError):
    code = "provider_unavailable"
    status_code = 400


class ExecutionFailed(OrchestratorError):
    """A run ended unsuccessfully after it started.

    Never raised to callers; rendered into the failure log entry instead.
    """

    code = "execution_failed"
    status_code = 500

    def __init__(self, message: str, exit_code: int | None = None, transient: bool = False):
        super().__init__(message)
        self.exit_code = exit_code
        self.transient = transient


class MergeConflict(OrchestratorError):
    code = "merge_conflict"
    status_code = 409

    def __init__(self, message: str, conflicts: list[str]):
        super().__init__(message)
        self.conflicts = conflicts

    def to_dict(self) -> dict:
        return {**super().to_dict(), "conflicts": self.conflicts}
