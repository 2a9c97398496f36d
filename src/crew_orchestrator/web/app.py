"""REST and WebSocket API for the crew orchestrator."""

import json
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute

from crew_orchestrator.config import Config, get_config
from crew_orchestrator.core.coordinator import ExecutionCoordinator
from crew_orchestrator.core.errors import OrchestratorError
from crew_orchestrator.web.transport import event_stream

TASK_FIELDS = ("description", "project_path", "priority", "task_type", "department_id", "assigned_agent_id")
UPDATE_FIELDS = ("title", "description", "priority", "task_type", "department_id", "project_path")
AGENT_UPDATE_FIELDS = ("name", "role", "cli_provider", "department_id", "status")


def _coordinator(request: Request) -> ExecutionCoordinator:
    return request.app.state.coordinator


async def _json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _flag(value: str | None) -> bool:
    return (value or "").lower() in ("1", "true", "yes")


# ── Handlers ──────────────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"ok": True, "active_runs": _coordinator(request).active_count})


async def api_list_tasks(request: Request):
    params = request.query_params
    tasks = await run_in_threadpool(
        _coordinator(request).list_tasks,
        status=params.get("status"),
        agent_id=params.get("agent_id"),
        department_id=params.get("department_id"),
    )
    return JSONResponse({"ok": True, "tasks": [t.to_dict() for t in tasks]})


async def api_create_task(request: Request):
    body = await _json(request)
    title = body.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("title is required")
    kwargs = {k: body[k] for k in TASK_FIELDS if body.get(k) is not None}
    if body.get("id"):
        kwargs["task_id"] = body["id"]
    task = await run_in_threadpool(_coordinator(request).create_task, title, **kwargs)
    return JSONResponse({"ok": True, "task": task.to_dict()}, status_code=201)


async def api_get_task(request: Request):
    detail = await run_in_threadpool(_coordinator(request).describe, request.path_params["task_id"])
    return JSONResponse(detail)


async def api_update_task(request: Request):
    body = await _json(request)
    fields = {k: v for k, v in body.items() if k in UPDATE_FIELDS}
    task = await run_in_threadpool(
        _coordinator(request).update_task, request.path_params["task_id"], **fields
    )
    return JSONResponse({"ok": True, "task": task.to_dict()})


async def api_delete_task(request: Request):
    result = await run_in_threadpool(_coordinator(request).delete, request.path_params["task_id"])
    return JSONResponse(result)


async def api_assign(request: Request):
    body = await _json(request)
    agent_id = body.get("agent_id")
    if not agent_id:
        raise ValueError("agent_id is required")
    task = await run_in_threadpool(
        _coordinator(request).assign, request.path_params["task_id"], agent_id
    )
    return JSONResponse({"ok": True, "task": task.to_dict()})


async def api_run(request: Request):
    task = await run_in_threadpool(_coordinator(request).run, request.path_params["task_id"])
    return JSONResponse({"ok": True, "task": task.to_dict()})


async def api_stop(request: Request):
    body = await _json(request)
    mode = body.get("mode") or request.query_params.get("mode") or "cancel"
    task = await run_in_threadpool(_coordinator(request).stop, request.path_params["task_id"], mode)
    return JSONResponse({"ok": True, "task": task.to_dict()})


async def api_resume(request: Request):
    task = await run_in_threadpool(_coordinator(request).resume, request.path_params["task_id"])
    return JSONResponse({"ok": True, "task": task.to_dict()})


async def api_approve(request: Request):
    task = await run_in_threadpool(_coordinator(request).approve, request.path_params["task_id"])
    return JSONResponse({"ok": True, "task": task.to_dict()})


async def api_terminal(request: Request):
    params = request.query_params
    try:
        after = int(params.get("after", 0))
    except ValueError:
        after = 0
    result = await run_in_threadpool(
        _coordinator(request).terminal,
        request.path_params["task_id"],
        params.get("lines", 200),
        _flag(params.get("pretty")),
        after,
    )
    return JSONResponse(result)


async def api_diff(request: Request):
    result = await run_in_threadpool(_coordinator(request).diff, request.path_params["task_id"])
    return JSONResponse(result, status_code=200 if result["ok"] else 500)


async def api_merge(request: Request):
    result = await run_in_threadpool(_coordinator(request).merge, request.path_params["task_id"])
    if not result["ok"]:
        return JSONResponse({**result, "error": "no_worktree"}, status_code=404)
    return JSONResponse(result)


async def api_discard(request: Request):
    result = await run_in_threadpool(_coordinator(request).discard, request.path_params["task_id"])
    return JSONResponse(result)


async def api_list_worktrees(request: Request):
    return JSONResponse(await run_in_threadpool(_coordinator(request).worktrees))


async def api_list_agents(request: Request):
    agents = await run_in_threadpool(
        _coordinator(request).list_agents, request.query_params.get("status")
    )
    return JSONResponse({"ok": True, "agents": [a.to_dict() for a in agents]})


async def api_create_agent(request: Request):
    body = await _json(request)
    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("name is required")
    kwargs = {k: body[k] for k in ("cli_provider", "role", "department_id") if body.get(k)}
    if body.get("id"):
        kwargs["agent_id"] = body["id"]
    agent = await run_in_threadpool(_coordinator(request).create_agent, name, **kwargs)
    return JSONResponse({"ok": True, "agent": agent.to_dict()}, status_code=201)


async def api_get_agent(request: Request):
    agent = await run_in_threadpool(_coordinator(request).get_agent, request.path_params["agent_id"])
    return JSONResponse({"ok": True, "agent": agent.to_dict()})


async def api_update_agent(request: Request):
    body = await _json(request)
    fields = {k: v for k, v in body.items() if k in AGENT_UPDATE_FIELDS}
    if not fields:
        raise ValueError(f"No fields to update; expected one of: {', '.join(AGENT_UPDATE_FIELDS)}")
    agent = await run_in_threadpool(
        _coordinator(request).update_agent, request.path_params["agent_id"], **fields
    )
    return JSONResponse({"ok": True, "agent": agent.to_dict()})


# ── Errors ────────────────────────────────────────────────────────────────────


async def orchestrator_error(request: Request, exc: OrchestratorError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def bad_request(request: Request, exc: ValueError):
    return JSONResponse({"ok": False, "error": "bad_request", "message": str(exc)}, status_code=400)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(coordinator: ExecutionCoordinator | None = None) -> Starlette:
    coordinator = coordinator or ExecutionCoordinator(get_config())

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await run_in_threadpool(coordinator.recover)
        try:
            yield
        finally:
            await run_in_threadpool(coordinator.shutdown)

    routes = [
        Route("/health", health),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/assign", api_assign, methods=["POST"]),
        Route("/api/tasks/{task_id}/run", api_run, methods=["POST"]),
        Route("/api/tasks/{task_id}/stop", api_stop, methods=["POST"]),
        Route("/api/tasks/{task_id}/resume", api_resume, methods=["POST"]),
        Route("/api/tasks/{task_id}/approve", api_approve, methods=["POST"]),
        Route("/api/tasks/{task_id}/terminal", api_terminal, methods=["GET"]),
        Route("/api/tasks/{task_id}/diff", api_diff, methods=["GET"]),
        Route("/api/tasks/{task_id}/merge", api_merge, methods=["POST"]),
        Route("/api/tasks/{task_id}/discard", api_discard, methods=["POST"]),
        Route("/api/worktrees", api_list_worktrees, methods=["GET"]),
        Route("/api/agents", api_list_agents, methods=["GET"]),
        Route("/api/agents", api_create_agent, methods=["POST"]),
        Route("/api/agents/{agent_id}", api_get_agent, methods=["GET"]),
        Route("/api/agents/{agent_id}", api_update_agent, methods=["PATCH"]),
        WebSocketRoute("/ws", event_stream),
    ]
    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={OrchestratorError: orchestrator_error, ValueError: bad_request},
    )
    app.state.coordinator = coordinator
    return app


def run_server(config: Config | None = None):
    config = config or get_config()
    app = create_app(ExecutionCoordinator(config))
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
