"""Run a coding-agent CLI as a child process and stream its output."""

import codecs
import logging
import os
import queue
import signal
import subprocess
import threading

from crew_orchestrator.adapters.base import Completion, ExecutionRequest, OutputChunk
from crew_orchestrator.core.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

PROVIDER_COMMANDS: dict[str, list[str]] = {
    "claude": [
        "claude",
        "--dangerously-skip-permissions",
        "--print",
        "--verbose",
        "--output-format=stream-json",
        "--include-partial-messages",
    ],
    "codex": ["codex", "--yolo", "exec", "--json"],
    "gemini": ["gemini", "--yolo", "--output-format=stream-json"],
    "opencode": ["opencode", "run", "--format", "json"],
}

# Variables that make a nested claude CLI think it is running inside another session.
STRIPPED_ENV = ("CLAUDECODE", "CLAUDE_CODE")

READ_SIZE = 65536


class CliProcessRun:
    """A running CLI process wired to an outbox."""

    def __init__(self, proc: subprocess.Popen, outbox: queue.Queue, task_id: str):
        self.proc = proc
        self.outbox = outbox
        self.task_id = task_id
        self._stop_requested = threading.Event()
        self._readers: list[threading.Thread] = []

    @property
    def pid(self) -> int:
        return self.proc.pid

    def start(self, prompt: str):
        threading.Thread(
            target=self._feed, args=(prompt,), name=f"cli-stdin-{self.task_id}", daemon=True
        ).start()
        for stream, name in ((self.proc.stdout, "stdout"), (self.proc.stderr, "stderr")):
            reader = threading.Thread(
                target=self._pump, args=(stream, name), name=f"cli-{name}-{self.task_id}", daemon=True
            )
            reader.start()
            self._readers.append(reader)
        threading.Thread(target=self._wait, name=f"cli-wait-{self.task_id}", daemon=True).start()

    def stop(self, grace: float):
        """Ask the process to exit: SIGTERM to its group, SIGKILL after ``grace`` seconds."""
        if self._stop_requested.is_set() or self.proc.poll() is not None:
            return
        self._stop_requested.set()
        threading.Thread(
            target=self._terminate, args=(grace,), name=f"cli-stop-{self.task_id}", daemon=True
        ).start()

    def _terminate(self, grace: float):
        self._signal(signal.SIGTERM)
        try:
            self.proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s for task %s ignored SIGTERM; killing", self.pid, self.task_id)
            self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))

    def _signal(self, sig):
        if hasattr(os, "killpg"):
            try:
                os.killpg(self.proc.pid, sig)
            except ProcessLookupError:
                pass
            return
        if sig == signal.SIGTERM:
            self.proc.terminate()
        else:
            self.proc.kill()

    def _feed(self, prompt: str):
        try:
            self.proc.stdin.write(prompt.encode("utf-8"))
            self.proc.stdin.close()
        except (BrokenPipeError, OSError):
            logger.debug("stdin closed early for task %s", self.task_id)

    def _pump(self, stream, name: str):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = stream.read1(READ_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                self.outbox.put(OutputChunk(name, text))
        tail = decoder.decode(b"", final=True)
        if tail:
            self.outbox.put(OutputChunk(name, tail))
        stream.close()

    def _wait(self):
        exit_code = self.proc.wait()
        for reader in self._readers:
            reader.join()
        error = None
        if self._stop_requested.is_set():
            error = "stopped"
        elif exit_code < 0:
            error = f"terminated by signal {-exit_code}"
        self.outbox.put(Completion(exit_code=exit_code, error=error))


class CliProcessAdapter:
    """Start a provider CLI with the prompt on stdin, in its own process group."""

    def __init__(self, command: list[str]):
        if not command:
            raise ProviderUnavailable("Empty CLI command")
        self.command = list(command)

    def start(self, request: ExecutionRequest, outbox: queue.Queue) -> CliProcessRun:
        env = {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV}
        env.update(request.env)
        try:
            proc = subprocess.Popen(
                self.command,
                cwd=request.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ProviderUnavailable(
                f"{request.provider} CLI not found: {self.command[0]}"
            ) from e
        except OSError as e:
            raise ProviderUnavailable(f"{request.provider} CLI failed to start: {e}") from e

        logger.info("Started %s (pid %s) for task %s", self.command[0], proc.pid, request.task_id)
        run = CliProcessRun(proc, outbox, request.task_id)
        run.start(request.prompt)
        return run
