"""WebSocket event stream with replay from the task log.

Clients connect to ``/ws``, optionally with ``task_id`` and ``after`` query
parameters. The subscription is registered before replay, so nothing
published during replay is lost; entries may arrive twice and clients
de-duplicate on ``seq``.
"""

import asyncio
import logging
import time

from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocket, WebSocketDisconnect

from crew_orchestrator.core.events import CLI_OUTPUT
from crew_orchestrator.core.logs import list_logs
from crew_orchestrator.db.engine import connect

logger = logging.getLogger(__name__)

# Close code sent to subscribers that fell too far behind.
TRY_AGAIN_LATER = 1013


def _frame(event_type: str, task_id: str | None, payload: dict) -> dict:
    return {"type": event_type, "task_id": task_id, "payload": payload, "ts": int(time.time() * 1000)}


def _replay(db_path, task_id: str, after: int) -> list[dict]:
    db = connect(db_path)
    try:
        entries = list_logs(db, task_id, after_seq=after)
    finally:
        db.close()
    return [
        _frame(CLI_OUTPUT, task_id, {"task_id": task_id, "seq": e.seq, "stream": e.kind, "data": e.message})
        for e in entries
    ]


async def event_stream(websocket: WebSocket):
    coordinator = websocket.app.state.coordinator
    task_id = websocket.query_params.get("task_id") or None
    try:
        after = int(websocket.query_params.get("after", 0))
    except ValueError:
        after = 0

    await websocket.accept()
    sub = coordinator.hub.subscribe_async(asyncio.get_running_loop(), task_id)
    receiver = asyncio.create_task(_drain(websocket))
    try:
        await websocket.send_json(_frame("connected", task_id, {"task_id": task_id}))
        if task_id:
            for frame in await run_in_threadpool(_replay, coordinator.config.db_path, task_id, after):
                await websocket.send_json(frame)

        while True:
            getter = asyncio.create_task(sub.next())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                return
            event = getter.result()
            if event is None:
                if sub.overflowed:
                    await websocket.send_json(_frame("resync", task_id, {"task_id": task_id}))
                    await websocket.close(code=TRY_AGAIN_LATER)
                return
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        coordinator.hub.unsubscribe(sub)
        receiver.cancel()


async def _drain(websocket: WebSocket):
    """Read and ignore client frames until the client disconnects."""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
    except (WebSocketDisconnect, RuntimeError):
        return
