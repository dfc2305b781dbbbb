"""Minimal git helpers

Thin wrapper over the ``git`` CLI covering what the executor needs: branch
switching, selective staging, committing, unstaging and restoring paths
from ``HEAD``.
"""

from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, Iterable, List, Sequence, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_NOTHING_TO_COMMIT = (
    "nothing to commit",
    "nothing added to commit",
    "no changes added to commit",
)

_PERMANENT_ERRORS = (
    "not a git repository",
    "did not match any",
    "invalid reference",
    "unknown revision",
)


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _decode(payload: bytes | None) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


def run_git(root: Path, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
    """Run ``git args`` in ``root`` returning decoded output."""

    process = subprocess.run(
        ["git", *args],
        cwd=root,
        capture_output=True,
        text=False,
        check=False,
    )
    result = subprocess.CompletedProcess(process.args, process.returncode, _decode(process.stdout), _decode(process.stderr))
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


def is_transient(error: GitError) -> bool:
    text = str(error).lower()
    return not any(marker in text for marker in _PERMANENT_ERRORS)


def retry_git(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` retrying transient :class:`GitError` with exponential backoff."""

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except GitError as error:
            if attempt >= attempts or not is_transient(error):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            LOGGER.warning("Git operation failed (attempt %d/%d), retrying in %.1fs: %s", attempt, attempts, delay, error)
            sleep(delay)
    raise GitError("retry_git called with no attempts")


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Initialise a repository at ``root`` with an identity and an initial commit."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        run_git(path, ["init", "-q"])
        for key, value in (("user.email", "stepwise@example.com"), ("user.name", "Stepwise")):
            configured = run_git(path, ["config", "--get", key], check=False)
            if configured.returncode != 0 or not configured.stdout.strip():
                run_git(path, ["config", key, value])
        run_git(path, ["add", "--all"])
        run_git(path, ["commit", "-q", "--allow-empty", "-m", "Initial commit"])
        return cls(path)

    # ------------------------------------------------------------------ git IO
    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return run_git(self.root, list(args), check=check)

    def relative(self, path: Path | str) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            candidate = candidate.resolve().relative_to(self.root)
        return candidate.as_posix()

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self.git("rev-parse", "--abbrev-ref", "HEAD", check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def branch_exists(self, name: str) -> bool:
        result = self.git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False)
        return result.returncode == 0

    def checkout_branch(self, name: str, *, create: bool = False, start_point: str | None = None) -> None:
        args: List[str] = ["checkout", "-q"]
        if create:
            args.extend(["-b", name])
            if start_point:
                args.append(start_point)
        else:
            args.append(name)
        self.git(*args)

    # ------------------------------------------------------------------ refs
    def head(self, *, short: bool = False) -> str | None:
        args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "--verify", "HEAD"]
        result = self.git(*args, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def exists_in_head(self, path: str) -> bool:
        """``True`` when ``path`` is tracked in the last commit."""

        result = self.git("cat-file", "-e", f"HEAD:{path}", check=False)
        return result.returncode == 0

    # ------------------------------------------------------------- repo status
    def status_entries(self) -> List[tuple[str, Path]]:
        """Return porcelain status entries as ``(status, path)`` pairs."""

        result = self.git("status", "--porcelain", "--untracked-files=all")
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            raw_path = raw_path.strip().strip('"')
            entries.append((status.strip() or status, Path(raw_path)))
        return entries

    def changed_paths(self, *, exclude: Iterable[str] = ()) -> List[str]:
        """Paths with pending changes, skipping anything under ``exclude`` prefixes."""

        prefixes = tuple(prefix.rstrip("/") for prefix in exclude if prefix)
        paths: set[str] = set()
        for _status, path in self.status_entries():
            value = path.as_posix()
            if any(value == prefix or value.startswith(f"{prefix}/") for prefix in prefixes):
                continue
            paths.add(value)
        return sorted(paths)

    def staged_paths(self) -> List[str]:
        result = self.git("diff", "--cached", "--name-only", "--no-renames")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ---------------------------------------------------------------- index
    def stage(self, paths: Sequence[str]) -> None:
        """Stage additions, modifications and deletions for ``paths`` only."""

        if not paths:
            return
        self.git("add", "--all", "--", *paths)

    def unstage(self) -> None:
        """Reset the index to ``HEAD`` leaving the working tree untouched."""

        self.git("reset", "-q")

    def restore_from_head(self, path: str) -> None:
        self.git("checkout", "HEAD", "--", path)

    def commit(self, message: str, paths: Sequence[str] = ()) -> str | None:
        """Commit the staged changes, or only those under ``paths`` when given.

        With ``paths`` other staged entries stay in the index untouched.
        Returns the short hash of the new commit, or ``None`` when nothing was
        staged.
        """

        pathspec = ["--", *paths] if paths else []
        commit = self.git("commit", "-q", "-m", message, *pathspec, check=False)
        if commit.returncode != 0:
            output = f"{commit.stdout}\n{commit.stderr}".strip()
            if any(marker in output.lower() for marker in _NOTHING_TO_COMMIT):
                return None
            raise GitError(f"git commit failed: {output or 'unknown git error'}")
        return self.head(short=True)


__all__ = ["GitError", "GitRepository", "is_transient", "retry_git", "run_git"]
