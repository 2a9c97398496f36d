"""Per-task git worktrees: acquire, diff, merge and discard."""

import logging
import shutil
import sqlite3
from pathlib import Path

from crew_orchestrator.core.errors import MergeConflict, WorkspaceUnavailable
from crew_orchestrator.db.models import Task, WorktreeRecord, parse_dt
from crew_orchestrator.integrations import git
from crew_orchestrator.integrations.git import GitError

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... (truncated)"


def branch_name_for(task_id: str, prefix: str = "task-") -> str:
    return f"{prefix}{task_id}"


def get_worktree(db: sqlite3.Connection, task_id: str) -> WorktreeRecord | None:
    row = db.execute("SELECT * FROM worktrees WHERE task_id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_record(row)


def list_worktrees(db: sqlite3.Connection) -> list[WorktreeRecord]:
    rows = db.execute("SELECT * FROM worktrees ORDER BY created_at, task_id").fetchall()
    return [_row_to_record(r) for r in rows]


def acquire_worktree(
    db: sqlite3.Connection,
    task: Task,
    worktree_dir: str = ".crew-worktrees",
    branch_prefix: str = "task-",
    default_project_path: str | Path | None = None,
) -> tuple[WorktreeRecord | None, bool]:
    """Return the task's worktree, creating it if needed.

    Returns ``(record, inserted)``. ``record`` is None when the project is not
    a git repository, in which case the agent runs in the project directory.
    ``inserted`` is True when this call wrote the record, so a caller that
    fails to start the run should discard it again.

    An existing task branch is only adopted when it is checked out in
    a registered worktree at the task's own path, which is what a crash
    between ``git worktree add`` and the insert leaves behind. Any other
    branch with that name belongs to someone else and is never touched.
    """
    existing = get_worktree(db, task.id)
    if existing:
        if not Path(existing.worktree_path).exists():
            _rematerialize(existing)
        return existing, False

    project = _resolve_project(task, default_project_path)
    if project is None or not git.is_git_repo(project):
        return None, False

    branch = branch_name_for(task.id, branch_prefix)
    wt_path = project / worktree_dir / task.id

    try:
        git.ensure_excluded(project, f"/{worktree_dir}/")
        base_ref = git.rev_parse(project, "HEAD")
        if git.branch_exists(project, branch):
            if not _is_own_worktree(project, wt_path, branch):
                raise WorkspaceUnavailable(
                    f"Branch {branch} already exists in {project} and is not a worktree of task "
                    f"{task.id}; rename or delete it before running the task"
                )
            logger.info("Adopting existing worktree %s for task %s", wt_path, task.id)
        else:
            wt_path.parent.mkdir(parents=True, exist_ok=True)
            git.worktree_add(project, wt_path, branch, base_ref)
    except (GitError, OSError) as e:
        raise WorkspaceUnavailable(f"Could not create worktree for {task.id}: {e}") from e

    db.execute(
        """INSERT INTO worktrees (task_id, branch_name, worktree_path, project_path, base_ref)
           VALUES (?, ?, ?, ?, ?)""",
        (task.id, branch, str(wt_path), str(project), base_ref),
    )
    db.commit()
    logger.info("Worktree ready for task %s: %s (%s)", task.id, wt_path, branch)
    return get_worktree(db, task.id), True


def diff_worktree(db: sqlite3.Connection, task_id: str, max_bytes: int = 50000) -> dict:
    """Diff the task branch against the project's current branch."""
    record = get_worktree(db, task_id)
    if not record:
        return {"ok": True, "hasWorktree": False, "diff": "", "stat": ""}

    try:
        base = git.get_current_branch(record.project_path)
        stat, patch = git.diff_range(record.project_path, base, record.branch_name)
        uncommitted = ""
        if Path(record.worktree_path).exists():
            uncommitted = git.get_status(record.worktree_path)
    except GitError as e:
        return {"ok": False, "hasWorktree": True, "branchName": record.branch_name, "error": str(e)}

    if len(patch) > max_bytes:
        patch = patch[:max_bytes] + TRUNCATION_MARKER

    return {
        "ok": True,
        "hasWorktree": True,
        "branchName": record.branch_name,
        "stat": stat,
        "diff": patch,
        "uncommitted": uncommitted,
    }


def snapshot_worktree(
    db: sqlite3.Connection,
    task_id: str,
    author: tuple[str, str] | None = None,
    message: str | None = None,
) -> bool:
    """Commit uncommitted changes in the task's worktree. Returns True if a commit was made."""
    record = get_worktree(db, task_id)
    if not record or not Path(record.worktree_path).exists():
        return False
    try:
        return git.commit_all(record.worktree_path, message or f"{task_id}: agent changes", author)
    except GitError as e:
        raise WorkspaceUnavailable(f"Could not commit changes for {task_id}: {e}") from e


def merge_worktree(
    db: sqlite3.Connection,
    task_id: str,
    message: str | None = None,
    author: tuple[str, str] | None = None,
) -> dict:
    """Merge the task branch into the project's current branch.

    A clean merge removes the worktree, branch and record. A conflicting
    merge is aborted and raises MergeConflict, leaving everything in place.
    """
    record = get_worktree(db, task_id)
    if not record:
        return {"ok": False, "message": "No worktree found for this task"}

    repo = record.project_path
    snapshot_worktree(db, task_id, author)

    try:
        current = git.get_current_branch(repo)
        stat, _ = git.diff_range(repo, current, record.branch_name)
    except GitError as e:
        raise WorkspaceUnavailable(f"Could not inspect {record.branch_name}: {e}") from e

    if not stat.strip():
        _remove(record)
        _delete_record(db, task_id)
        return {"ok": True, "message": "No changes to merge"}

    try:
        git.merge_branch(repo, record.branch_name, message or f"Merge {record.branch_name} ({task_id})")
    except GitError as e:
        conflicts = _conflicts(repo)
        try:
            git.merge_abort(repo)
        except GitError:
            logger.warning("git merge --abort failed in %s", repo)
        if conflicts:
            raise MergeConflict(
                f"Merge conflict in {len(conflicts)} file(s); merge aborted", conflicts
            ) from e
        raise WorkspaceUnavailable(f"Merge of {record.branch_name} failed: {e}") from e

    _remove(record)
    _delete_record(db, task_id)
    logger.info("Merged %s into %s", record.branch_name, current)
    return {"ok": True, "message": f"Merged {record.branch_name} into {current}"}


def discard_worktree(db: sqlite3.Connection, task_id: str) -> bool:
    """Remove the task's worktree, branch and record. Never fails on the git side.

    Returns False when the task had no worktree.
    """
    record = get_worktree(db, task_id)
    if not record:
        return False
    _remove(record)
    _delete_record(db, task_id)
    logger.info("Discarded worktree for task %s", task_id)
    return True


def _resolve_project(task: Task, default_project_path: str | Path | None) -> Path | None:
    raw = task.project_path or default_project_path
    if not raw:
        return None
    return Path(raw).expanduser().resolve()


def _is_own_worktree(project: Path, wt_path: Path, branch: str) -> bool:
    if not (wt_path / ".git").exists():
        return False
    return git.worktree_branches(project).get(wt_path.resolve()) == branch


def _rematerialize(record: WorktreeRecord):
    """Recreate a worktree directory that vanished while its record remained."""
    repo = record.project_path
    try:
        git.worktree_prune(repo)
        if git.branch_exists(repo, record.branch_name):
            git.worktree_add(repo, record.worktree_path, record.branch_name, create_branch=False)
        else:
            git.worktree_add(
                repo, record.worktree_path, record.branch_name, record.base_ref or "HEAD"
            )
    except (GitError, OSError) as e:
        raise WorkspaceUnavailable(
            f"Worktree for {record.task_id} is missing and could not be recreated: {e}"
        ) from e
    logger.info("Recreated missing worktree %s", record.worktree_path)


def _conflicts(repo: str) -> list[str]:
    try:
        return git.unmerged_paths(repo)
    except GitError:
        return []


def _remove(record: WorktreeRecord):
    """Best-effort removal of the worktree directory and branch."""
    repo = record.project_path
    wt_path = Path(record.worktree_path)

    if wt_path.exists():
        try:
            git.worktree_remove(repo, wt_path, force=True)
        except GitError as e:
            logger.warning("git worktree remove failed for %s (%s); deleting directory", wt_path, e)
            shutil.rmtree(wt_path, ignore_errors=True)
    try:
        git.worktree_prune(repo)
    except GitError as e:
        logger.warning("git worktree prune failed in %s: %s", repo, e)

    if git.branch_exists(repo, record.branch_name):
        try:
            git.delete_branch(repo, record.branch_name, force=True)
        except GitError as e:
            logger.warning("Could not delete branch %s: %s", record.branch_name, e)


def _delete_record(db: sqlite3.Connection, task_id: str):
    db.execute("DELETE FROM worktrees WHERE task_id = ?", (task_id,))
    db.commit()


def _row_to_record(row: sqlite3.Row) -> WorktreeRecord:
    return WorktreeRecord(
        task_id=row["task_id"],
        branch_name=row["branch_name"],
        worktree_path=row["worktree_path"],
        project_path=row["project_path"],
        base_ref=row["base_ref"],
        created_at=parse_dt(row["created_at"]),
    )
