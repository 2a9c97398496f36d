"""Git subprocess wrappers for worktree, branch and merge operations."""

import subprocess
from pathlib import Path

DEFAULT_TIMEOUT = 60


class GitError(Exception):
    """Raised when a git command fails."""


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    strip: bool = True,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            errors="replace",
            check=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} could not run: {e}") from e
    return result.stdout.strip() if strip else result.stdout


def is_git_repo(path: str | Path) -> bool:
    """Check whether ``path`` is inside a git work tree."""
    if not Path(path).is_dir():
        return False
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path, timeout=10) == "true"
    except GitError:
        return False


def rev_parse(cwd: str | Path, ref: str = "HEAD") -> str:
    return run_git(["rev-parse", ref], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name ('HEAD' when detached)."""
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def git_dir(cwd: str | Path) -> Path:
    """Absolute path of the repository's common git directory."""
    path = Path(run_git(["rev-parse", "--git-common-dir"], cwd=cwd))
    if not path.is_absolute():
        path = Path(cwd) / path
    return path.resolve()


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_ref: str = "HEAD",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += [str(worktree_path), "-b", branch, base_ref]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def worktree_branches(repo_path: str | Path) -> dict[Path, str | None]:
    """Map each registered worktree path to its branch (None when detached)."""
    out = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    branches: dict[Path, str | None] = {}
    path = None
    for line in out.splitlines():
        if line.startswith("worktree "):
            path = Path(line[len("worktree "):]).resolve()
            branches[path] = None
        elif line.startswith("branch ") and path is not None:
            branches[path] = line[len("branch "):].removeprefix("refs/heads/")
    return branches


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def diff_range(repo_path: str | Path, base: str, branch: str) -> tuple[str, str]:
    """Return ``(stat, patch)`` for changes on ``branch`` since it left ``base``."""
    stat = run_git(["diff", f"{base}...{branch}", "--stat"], cwd=repo_path)
    patch = run_git(["diff", f"{base}...{branch}"], cwd=repo_path, strip=False)
    return stat, patch


def merge_branch(repo_path: str | Path, branch: str, message: str) -> str:
    return run_git(["merge", branch, "--no-ff", "-m", message], cwd=repo_path, timeout=120)


def merge_abort(repo_path: str | Path) -> str:
    return run_git(["merge", "--abort"], cwd=repo_path)


def unmerged_paths(repo_path: str | Path) -> list[str]:
    """Paths left in conflict by a failed merge."""
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=repo_path)
    return [line for line in output.splitlines() if line.strip()]


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--short"], cwd=cwd)


def has_identity(cwd: str | Path) -> bool:
    """Check whether user.name and user.email are configured."""
    try:
        return bool(run_git(["config", "user.name"], cwd=cwd)) and bool(
            run_git(["config", "user.email"], cwd=cwd)
        )
    except GitError:
        return False


def commit_all(cwd: str | Path, message: str, author: tuple[str, str] | None = None) -> bool:
    """Stage and commit everything in ``cwd``. Returns False when nothing changed."""
    if not get_status(cwd):
        return False
    run_git(["add", "-A"], cwd=cwd)
    identity: list[str] = []
    if author and not has_identity(cwd):
        identity = ["-c", f"user.name={author[0]}", "-c", f"user.email={author[1]}"]
    run_git(identity + ["commit", "-m", message], cwd=cwd)
    return True


def ensure_excluded(repo_path: str | Path, pattern: str):
    """Add ``pattern`` to .git/info/exclude unless already listed."""
    exclude = git_dir(repo_path) / "info" / "exclude"
    exclude.parent.mkdir(parents=True, exist_ok=True)
    text = exclude.read_text() if exclude.exists() else ""
    if pattern in text.splitlines():
        return
    with open(exclude, "a") as f:
        if text and not text.endswith("\n"):
            f.write("\n")
        f.write(pattern + "\n")
