"""Pre-step snapshots and rollback.

A snapshot records, for every path a step may touch, whether it existed and
its exact bytes, plus the directories that did not exist yet, the current
branch, ``HEAD`` and the set of paths that were already dirty.  Records are
JSON files named ``<step>-<timestamp>.json``; the newest record for a step
wins on rollback.

Rollback failures are never silent: they are logged at ``CRITICAL`` and
raised as :class:`RollbackError`.
"""

from __future__ import annotations

import base64
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Literal, Optional, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..planning.schema import Step, StepStatus, utc_iso, utc_now
from ..utils.fs import write_text_atomic
from ..utils.slug import slugify, timestamp_token
from .vcs import GitError, GitRepository, retry_git

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MANUAL_INTERVENTION = "Manual intervention required: inspect the working tree and git index before re-running."


class RollbackError(RuntimeError):
    """Raised when state could not be restored."""


class SnapshotModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=False)


class FileCapture(SnapshotModel):
    path: str
    existed: bool
    is_dir: bool = False
    content: Optional[str] = None
    encoding: Literal["utf-8", "base64"] = "utf-8"

    @classmethod
    def capture(cls, root: Path, relative: str) -> "FileCapture":
        target = root / relative
        if target.is_dir():
            return cls(path=relative, existed=True, is_dir=True)
        if not target.exists():
            return cls(path=relative, existed=False)
        raw = target.read_bytes()
        try:
            return cls(path=relative, existed=True, content=raw.decode("utf-8"))
        except UnicodeDecodeError:
            return cls(path=relative, existed=True, content=base64.b64encode(raw).decode("ascii"), encoding="base64")

    def data(self) -> bytes:
        if self.content is None:
            return b""
        if self.encoding == "base64":
            return base64.b64decode(self.content)
        return self.content.encode("utf-8")


class Snapshot(SnapshotModel):
    step_id: str
    created_at: datetime = Field(default_factory=utc_now)
    files: List[FileCapture] = Field(default_factory=list)
    absent_dirs: List[str] = Field(default_factory=list)
    dirty_paths: List[str] = Field(default_factory=list)
    branch: Optional[str] = None
    head: Optional[str] = None

    record_path: Optional[Path] = Field(default=None, exclude=True)


def _missing_parents(root: Path, relative: str) -> List[str]:
    missing: List[str] = []
    parent = Path(relative).parent
    while parent.parts:
        if (root / parent).exists():
            break
        missing.append(parent.as_posix())
        parent = parent.parent
    return missing


class SnapshotManager:
    """Capture and restore pre-step state for a repository."""

    def __init__(
        self,
        root: Path,
        snapshots_dir: Path,
        *,
        repo: GitRepository | None = None,
        exclude: Sequence[str] = (),
        delete_after_rollback: bool = False,
        git_attempts: int = 3,
        git_retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.root = root
        self.snapshots_dir = snapshots_dir
        self.repo = repo
        self.exclude = tuple(exclude)
        self.delete_after_rollback = delete_after_rollback
        self._git_attempts = git_attempts
        self._git_retry_delay = git_retry_delay
        self._sleep = sleep

    def _git(self, operation: Callable[[], T]) -> T:
        return retry_git(operation, attempts=self._git_attempts, base_delay=self._git_retry_delay, sleep=self._sleep)

    # --------------------------------------------------------------- capture
    def snapshot(self, step: Step) -> Snapshot:
        """Record the state of everything ``step`` may touch and persist it."""

        files: List[FileCapture] = []
        absent_dirs: List[str] = []
        for relative in step.touched_paths():
            files.append(FileCapture.capture(self.root, relative))
            for missing in _missing_parents(self.root, relative):
                if missing not in absent_dirs:
                    absent_dirs.append(missing)

        snapshot = Snapshot(step_id=step.id, files=files, absent_dirs=absent_dirs)
        if self.repo is not None:
            snapshot.branch = self.repo.current_branch()
            snapshot.head = self.repo.head()
            snapshot.dirty_paths = self.repo.changed_paths(exclude=self.exclude)

        name = f"{slugify(step.id, fallback='step')}-{timestamp_token(snapshot.created_at)}.json"
        path = self.snapshots_dir / name
        write_text_atomic(path, snapshot.model_dump_json(indent=2) + "\n")
        snapshot.record_path = path
        LOGGER.debug("Snapshot for step %s saved to %s", step.id, path)
        return snapshot

    # --------------------------------------------------------------- lookup
    def list_snapshots(self, step_id: str | None = None) -> List[Snapshot]:
        if not self.snapshots_dir.exists():
            return []
        snapshots: List[Snapshot] = []
        for path in sorted(self.snapshots_dir.glob("*.json")):
            snapshot = Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
            if step_id is not None and snapshot.step_id != step_id:
                continue
            snapshot.record_path = path
            snapshots.append(snapshot)
        snapshots.sort(key=lambda item: (item.created_at, item.record_path.name if item.record_path else ""))
        return snapshots

    def latest(self, step_id: str) -> Snapshot | None:
        snapshots = self.list_snapshots(step_id)
        return snapshots[-1] if snapshots else None

    # -------------------------------------------------------------- restore
    def restore(self, snapshot: Snapshot) -> None:
        """Rewrite captured files verbatim and return to the captured branch."""

        for capture in snapshot.files:
            target = self.root / capture.path
            if capture.existed and not capture.is_dir:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(capture.data())
            elif capture.existed:
                target.mkdir(parents=True, exist_ok=True)
            elif target.is_dir() and not target.is_symlink():
                if not any(target.iterdir()):
                    target.rmdir()
            elif target.exists() or target.is_symlink():
                target.unlink()

        for relative in sorted(snapshot.absent_dirs, key=lambda item: len(Path(item).parts), reverse=True):
            directory = self.root / relative
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()

        if self.repo is not None and snapshot.branch:
            current = self.repo.current_branch()
            if current != snapshot.branch:
                LOGGER.info("Switching back to branch %s", snapshot.branch)
                self._git(lambda: self.repo.checkout_branch(snapshot.branch))

    def _finish(self, snapshot: Snapshot) -> None:
        if self.delete_after_rollback and snapshot.record_path is not None:
            snapshot.record_path.unlink(missing_ok=True)

    def rollback(self, step_id: str, *, missing_ok: bool = False) -> Snapshot | None:
        """Restore the most recent snapshot recorded for ``step_id``."""

        snapshot = self.latest(step_id)
        if snapshot is None:
            if missing_ok:
                LOGGER.info("No snapshot recorded for step %s", step_id)
                return None
            raise RollbackError(f"No snapshot found for step {step_id!r}")

        LOGGER.info("Rolling back step %s", step_id)
        try:
            self.restore(snapshot)
        except (GitError, OSError) as error:
            LOGGER.critical("Rollback failed for step %s: %s. %s", step_id, error, MANUAL_INTERVENTION)
            raise RollbackError(f"Rollback failed for step {step_id!r}: {error}") from error
        self._finish(snapshot)
        LOGGER.info("Rollback completed for step %s", step_id)
        return snapshot

    def _check_head(self, step: Step, snapshot: Snapshot) -> None:
        assert self.repo is not None
        current_head = self.repo.head()
        if snapshot.head and current_head != snapshot.head:
            raise RollbackError(
                f"HEAD moved from {snapshot.head[:8]} to {(current_head or '?')[:8]} during step {step.id!r}"
            )

    def rollback_gate_failure(self, step: Step, snapshot: Snapshot) -> List[str]:
        """Undo a step whose changes failed the quality gate.

        Staged changes are reset and the captured branch is checked out again
        when the step switched away from it.  Paths the step changed are
        restored from ``HEAD`` or removed when ``HEAD`` does not know them,
        then the snapshot is applied so pre-existing uncommitted edits come
        back.  A ``HEAD`` that moved on the captured branch is refused.
        Returns the paths that were reverted.
        """

        if self.repo is None:
            raise RollbackError("Gate rollback requires a git repository")
        repo = self.repo
        try:
            same_branch = not snapshot.branch or repo.current_branch() == snapshot.branch
            if same_branch:
                self._check_head(step, snapshot)
            staged = self._git(repo.staged_paths)
            if staged:
                self._git(repo.unstage)
            if not same_branch:
                LOGGER.info("Switching back to branch %s before restoring files", snapshot.branch)
                self._git(lambda: repo.checkout_branch(snapshot.branch))
                self._check_head(step, snapshot)

            baseline = set(snapshot.dirty_paths)
            candidates: List[str] = []
            for relative in [*step.touched_paths(), *staged, *repo.changed_paths(exclude=self.exclude)]:
                if relative not in candidates:
                    candidates.append(relative)

            reverted: List[str] = []
            for relative in candidates:
                target = self.root / relative
                if relative in baseline and relative not in step.touched_paths():
                    continue
                if repo.exists_in_head(relative):
                    self._git(lambda path=relative: repo.restore_from_head(path))
                    reverted.append(relative)
                elif target.is_file() or target.is_symlink():
                    target.unlink()
                    reverted.append(relative)

            self.restore(snapshot)
        except RollbackError as error:
            LOGGER.critical("Rollback failed for step %s: %s. %s", step.id, error, MANUAL_INTERVENTION)
            raise
        except (GitError, OSError) as error:
            LOGGER.critical("Rollback failed for step %s: %s. %s", step.id, error, MANUAL_INTERVENTION)
            raise RollbackError(f"Rollback failed for step {step.id!r}: {error}") from error

        self._finish(snapshot)
        LOGGER.info("Rolled back %d path(s) for step %s", len(reverted), step.id)
        return reverted

    def rollback_failed_steps(self, steps: Iterable[Step]) -> List[str]:
        """Roll back every FAILED step, newest first, and reset it to PENDING."""

        failed = [step for step in steps if step.status is StepStatus.FAILED]
        rolled_back: List[str] = []
        for step in reversed(failed):
            self.rollback(step.id, missing_ok=True)
            step.reset(f"Rolled back at {utc_iso()}")
            rolled_back.append(step.id)
        return rolled_back

    # ------------------------------------------------------------ retention
    def prune(self, max_age_days: int, *, now: float | None = None) -> int:
        """Delete snapshot records older than ``max_age_days``."""

        if not self.snapshots_dir.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - max_age_days * 86400
        removed = 0
        for path in self.snapshots_dir.glob("*.json"):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        if removed:
            LOGGER.info("Removed %d snapshot(s) older than %d day(s)", removed, max_age_days)
        return removed


__all__ = [
    "FileCapture",
    "MANUAL_INTERVENTION",
    "RollbackError",
    "Snapshot",
    "SnapshotManager",
]
