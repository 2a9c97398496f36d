"""Message types shared by process adapters.

An adapter is started with an ExecutionRequest and an outbox queue. While it
runs it puts zero or more OutputChunk messages on the outbox, then exactly one
Completion. ``start`` returns a run object whose ``stop(grace)`` asks the
execution to end; the Completion still arrives afterwards.
"""

import queue
from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class ExecutionRequest:
    task_id: str
    provider: str
    prompt: str
    cwd: str
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class OutputChunk:
    stream: str  # "stdout" or "stderr"
    data: str


@dataclass
class Completion:
    exit_code: int | None
    error: str | None = None
    transient: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


class AdapterRun(Protocol):
    def stop(self, grace: float) -> None: ...


class Adapter(Protocol):
    def start(self, request: ExecutionRequest, outbox: queue.Queue) -> AdapterRun: ...
