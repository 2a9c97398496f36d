"""Task log entries, raw output files, and the terminal view."""

import json
import re
import sqlite3
from pathlib import Path

from crew_orchestrator.db.models import TaskLogEntry, parse_dt

LOG_KINDS = ("stdout", "stderr", "system", "status")

MIN_TERMINAL_LINES = 20
MAX_TERMINAL_LINES = 4000
DEFAULT_TERMINAL_LINES = 200


def append_log(db: sqlite3.Connection, task_id: str, kind: str, message: str) -> TaskLogEntry:
    """Append a log entry, allocating the next per-task sequence number."""
    if kind not in LOG_KINDS:
        raise ValueError(f"Unknown log kind: {kind}")
    # seq is computed inside the INSERT so two writers can never share a number.
    cur = db.execute(
        """INSERT INTO task_logs (task_id, seq, kind, message)
           SELECT ?, COALESCE(MAX(seq), 0) + 1, ?, ? FROM task_logs WHERE task_id = ?""",
        (task_id, kind, message, task_id),
    )
    db.commit()
    row = db.execute("SELECT * FROM task_logs WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_entry(row)


def list_logs(
    db: sqlite3.Connection,
    task_id: str,
    after_seq: int = 0,
    limit: int | None = None,
) -> list[TaskLogEntry]:
    query = "SELECT * FROM task_logs WHERE task_id = ? AND seq > ? ORDER BY seq ASC"
    params: list = [task_id, after_seq]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_entry(r) for r in db.execute(query, params).fetchall()]


def recent_logs(db: sqlite3.Connection, task_id: str, limit: int = 50) -> list[TaskLogEntry]:
    rows = db.execute(
        "SELECT * FROM task_logs WHERE task_id = ? ORDER BY seq DESC LIMIT ?",
        (task_id, limit),
    ).fetchall()
    return [_row_to_entry(r) for r in reversed(rows)]


def delete_logs(db: sqlite3.Connection, task_id: str):
    db.execute("DELETE FROM task_logs WHERE task_id = ?", (task_id,))
    db.commit()


def log_file_path(logs_dir: Path, task_id: str) -> Path:
    return Path(logs_dir) / f"{task_id}.log"


def clamp_lines(lines) -> int:
    try:
        value = int(lines)
    except (TypeError, ValueError):
        value = DEFAULT_TERMINAL_LINES
    return max(MIN_TERMINAL_LINES, min(MAX_TERMINAL_LINES, value))


def tail_text(path: Path, max_chars: int) -> str:
    """Return the last ``max_chars`` characters of a log file, or '' if missing."""
    if not path.exists():
        return ""
    text = path.read_text(encoding="utf-8", errors="replace")
    return text[-max_chars:]


def read_terminal(
    db: sqlite3.Connection,
    task_id: str,
    log_path: Path,
    lines=DEFAULT_TERMINAL_LINES,
    pretty: bool = False,
    after: int = 0,
) -> dict:
    """Read the tail of a task's raw output plus its structured log entries."""
    lines = clamp_lines(lines)
    task_logs = [e.to_dict() for e in list_logs(db, task_id, after_seq=after)]

    if not log_path.exists():
        return {"ok": True, "exists": False, "path": str(log_path), "text": "", "task_logs": task_logs}

    raw = log_path.read_text(encoding="utf-8", errors="replace")
    parts = re.split(r"\r?\n", raw)
    tail = "\n".join(parts[-lines:])
    text = tail
    if pretty:
        rendered = prettify_stream_json(tail)
        text = rendered if rendered.strip() else tail

    return {"ok": True, "exists": True, "path": str(log_path), "text": text, "task_logs": task_logs}


def prettify_stream_json(raw: str) -> str:
    """Render provider stream-JSON output as readable text.

    Understands the Claude, Gemini and Codex event shapes. Input with no
    recognizable JSON events is returned as plain text.
    """
    chunks: list[str] = []
    meta: list[str] = []

    for line in re.split(r"\r?\n", raw):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            _render_event(event, chunks, meta)

    if not chunks and not meta:
        return raw.strip()

    paragraphs = re.split(r"\n{2,}", "".join(chunks))
    body = "\n\n".join(re.sub(r"\s+", " ", p).strip() for p in paragraphs).strip()
    head = "\n".join(meta) + "\n\n" if meta else ""
    return head + body


def _render_event(event: dict, chunks: list[str], meta: list[str]):
    kind = event.get("type")

    if kind == "system" and event.get("subtype") == "init":
        meta.append(f"[init] cwd={event.get('cwd')} model={event.get('model')}")
        failed = [
            f"{s.get('name')}:{s.get('status')}"
            for s in event.get("mcp_servers") or []
            if isinstance(s, dict) and s.get("status") and s.get("status") != "ok"
        ]
        if failed:
            meta.append(f"[mcp] {', '.join(failed)}")

    elif kind == "init" and event.get("session_id"):
        meta.append(f"[init] session={event['session_id']} model={event.get('model')}")

    elif kind == "stream_event":
        inner = event.get("event") or {}
        delta = inner.get("delta") or {}
        block = inner.get("content_block") or {}
        if inner.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            chunks.append(delta.get("text", ""))
        elif inner.get("type") == "content_block_start" and block.get("type") == "text" and block.get("text"):
            chunks.append(block["text"])

    elif kind == "assistant" and isinstance(event.get("message"), dict):
        for block in event["message"].get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                chunks.append(block["text"])

    elif kind == "result" and event.get("result"):
        chunks.append(str(event["result"]))

    elif kind == "message" and event.get("role") == "assistant" and event.get("content"):
        chunks.append(str(event["content"]))

    elif kind == "tool_use" and event.get("tool_name"):
        params = event.get("parameters") or {}
        target = params.get("file_path") or params.get("command") or ""
        chunks.append(f"\n[tool: {event['tool_name']}] {target}\n")

    elif kind == "tool_result" and event.get("status"):
        if event["status"] != "success":
            chunks.append(f"[result: {event['status']}]\n")

    elif kind == "thread.started" and event.get("thread_id"):
        meta.append(f"[thread] {event['thread_id']}")

    elif kind == "item.completed" and isinstance(event.get("item"), dict):
        item = event["item"]
        item_type = item.get("type")
        if item_type == "agent_message" and item.get("text"):
            chunks.append(item["text"])
        elif item_type == "reasoning" and item.get("text"):
            chunks.append(f"\n[reasoning] {item['text']}\n")
        elif item_type == "tool_call" and item.get("name"):
            args = json.dumps(item["arguments"])[:100] if item.get("arguments") else ""
            chunks.append(f"\n[tool: {item['name']}] {args}\n")
        elif item_type == "tool_output" and item.get("output"):
            out = str(item["output"])
            if "error" in out or len(out) < 200:
                chunks.append(f"[output] {out[:200]}\n")

    elif kind == "turn.completed" and isinstance(event.get("usage"), dict):
        usage = event["usage"]
        meta.append(
            f"[usage] in={usage.get('input_tokens')} out={usage.get('output_tokens')} "
            f"cached={usage.get('cached_input_tokens') or 0}"
        )


def _row_to_entry(row: sqlite3.Row) -> TaskLogEntry:
    return TaskLogEntry(
        id=row["id"],
        task_id=row["task_id"],
        seq=row["seq"],
        kind=row["kind"],
        message=row["message"],
        created_at=parse_dt(row["created_at"]),
    )
