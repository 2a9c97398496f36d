"""Stream a task prompt through an OpenAI-compatible chat completions endpoint."""

import json
import logging
import queue
import threading

import httpx

from crew_orchestrator.adapters.base import Completion, ExecutionRequest, OutputChunk
from crew_orchestrator.core.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0


class HostedRun:
    def __init__(
        self,
        client: httpx.Client,
        url: str,
        body: dict,
        outbox: queue.Queue,
        task_id: str,
    ):
        self.client = client
        self.url = url
        self.body = body
        self.outbox = outbox
        self.task_id = task_id
        self._stop_requested = threading.Event()
        self._response: httpx.Response | None = None
        self._thread = threading.Thread(target=self._run, name=f"hosted-{task_id}", daemon=True)

    def start(self):
        self._thread.start()

    def stop(self, grace: float):
        """Stop reading the stream; close the connection if it has not ended within ``grace``."""
        if self._stop_requested.is_set():
            return
        self._stop_requested.set()
        timer = threading.Timer(grace, self._force_close)
        timer.daemon = True
        timer.start()

    def _force_close(self):
        if self._thread.is_alive() and self._response is not None:
            logger.warning("Closing hosted stream for task %s", self.task_id)
            self._response.close()

    def _run(self):
        try:
            completion = self._stream()
        except (httpx.TimeoutException, httpx.TransportError) as e:
            completion = self._stopped() or Completion(exit_code=1, error=str(e) or "timeout", transient=True)
        except (httpx.HTTPError, httpx.StreamError) as e:
            completion = self._stopped() or Completion(exit_code=1, error=str(e))
        except Exception as e:
            logger.exception("Hosted stream for task %s failed", self.task_id)
            completion = self._stopped() or Completion(exit_code=1, error=f"stream error: {e}")
        finally:
            self.client.close()
        self.outbox.put(completion)

    def _stopped(self) -> Completion | None:
        if self._stop_requested.is_set():
            return Completion(exit_code=None, error="stopped")
        return None

    def _stream(self) -> Completion:
        with self.client.stream("POST", self.url, json=self.body) as response:
            self._response = response
            if response.status_code >= 400:
                response.read()
                transient = response.status_code >= 500 or response.status_code == 429
                return Completion(
                    exit_code=1,
                    error=f"HTTP {response.status_code}: {response.text[:500]}",
                    transient=transient,
                )
            for line in response.iter_lines():
                if self._stop_requested.is_set():
                    break
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if payload == "[DONE]":
                    break
                text = _delta_text(payload)
                if text:
                    self.outbox.put(OutputChunk("stdout", text))
        return self._stopped() or Completion(exit_code=0)


def _delta_text(payload: str) -> str:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream payload: %r", payload[:200])
        return ""
    if not isinstance(data, dict):
        logger.debug("Skipping non-object stream payload: %r", payload[:200])
        return ""
    parts = []
    for choice in data.get("choices") or []:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            parts.append(delta["content"])
    return "".join(parts)


class HostedAdapter:
    """Adapter for providers reached over HTTP rather than a local CLI."""

    def __init__(
        self,
        base_url: str | None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self.transport = transport

    def start(self, request: ExecutionRequest, outbox: queue.Queue) -> HostedRun:
        if not self.base_url:
            raise ProviderUnavailable(
                f"{request.provider} requires CREW_HOSTED_BASE_URL to be configured"
            )
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        client = httpx.Client(timeout=self.timeout, headers=headers, transport=self.transport)
        body = {
            "model": self.model or request.provider,
            "stream": True,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        url = self.base_url.rstrip("/") + "/chat/completions"
        run = HostedRun(client, url, body, outbox, request.task_id)
        run.start()
        logger.info("Started hosted run for task %s against %s", request.task_id, url)
        return run
