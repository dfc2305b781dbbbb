"""One handler per step kind.

Handlers perform the filesystem or git action for a step and return a short
summary for the execution log.  They are idempotent where the action allows
it: creating an existing folder, deleting a missing file or checking out the
current branch are no-ops.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Dict

from ..tools.vcs import GitError
from .context import ExecutionContext
from .schema import Step, StepKind

LOGGER = logging.getLogger(__name__)

REPLACE_BLOCK_RE = re.compile(r"<<<REPLACE>>>(.*?)<<</REPLACE>>>", re.DOTALL)
WITH_BLOCK_RE = re.compile(r"<<<WITH>>>(.*?)<<</WITH>>>", re.DOTALL)


class StepActionError(RuntimeError):
    """Raised when a handler cannot perform its action."""


StepHandler = Callable[[Step, ExecutionContext], str]


def resolve_inside(root: Path, relative: str, step_id: str) -> Path:
    """Resolve ``relative`` under ``root`` refusing paths that escape it."""

    candidate = Path(relative)
    if candidate.is_absolute():
        raise StepActionError(f"Step '{step_id}' uses an absolute path: {relative}")
    resolved = (root / candidate).resolve()
    base = root.resolve()
    if resolved != base and base not in resolved.parents:
        raise StepActionError(f"Step '{step_id}' path escapes the repository: {relative}")
    return resolved


def _require_path(step: Step, ctx: ExecutionContext) -> Path:
    if not step.target_path:
        raise StepActionError(f"Step '{step.id}' ({step.kind.value}) requires a target path")
    return resolve_inside(ctx.root, step.target_path, step.id)


def parse_refactor_directive(payload: str, step_id: str = "") -> tuple[str, str]:
    """Return the ``(search, replacement)`` pair from a refactor payload."""

    replace_match = REPLACE_BLOCK_RE.search(payload)
    with_match = WITH_BLOCK_RE.search(payload)
    if not replace_match or not with_match:
        raise StepActionError(
            f"Invalid refactor template for step '{step_id}'. Missing <<<REPLACE>>> or <<<WITH>>> blocks."
        )
    search = replace_match.group(1).strip()
    if not search:
        raise StepActionError(f"Invalid refactor template for step '{step_id}'. The <<<REPLACE>>> block is empty.")
    return search, with_match.group(1).strip()


# ------------------------------------------------------------------ handlers
def handle_create_file(step: Step, ctx: ExecutionContext) -> str:
    target = _require_path(step, ctx)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(step.content, encoding="utf-8")
    return f"Wrote {step.target_path} ({len(step.content)} chars)"


def handle_refactor_file(step: Step, ctx: ExecutionContext) -> str:
    target = _require_path(step, ctx)
    search, replacement = parse_refactor_directive(step.content, step.id)
    if not target.is_file():
        raise StepActionError(f"Cannot refactor '{step.target_path}': file does not exist")
    original = target.read_text(encoding="utf-8")
    updated = original.replace(search, replacement, 1)
    if updated == original:
        raise StepActionError(
            f"Refactor of '{step.target_path}' made no changes; the <<<REPLACE>>> text was not found"
        )
    target.write_text(updated, encoding="utf-8")
    return f"Refactored {step.target_path}"


def handle_delete_file(step: Step, ctx: ExecutionContext) -> str:
    target = _require_path(step, ctx)
    if not target.exists():
        LOGGER.warning("File %s does not exist; nothing to delete", step.target_path)
        ctx.warn("Step %s: %s already absent", step.id, step.target_path)
        return f"{step.target_path} already absent"
    if target.is_dir():
        raise StepActionError(f"Refusing to delete directory '{step.target_path}' in a delete_file step")
    target.unlink()
    return f"Deleted {step.target_path}"


def handle_create_folders(step: Step, ctx: ExecutionContext) -> str:
    spec = step.action.create_folders if step.action else None
    if spec is None or not spec.base_path:
        raise StepActionError(f"Step '{step.id}' requires action.create_folders.base_path")
    created = 0
    for relative in step.folder_paths():
        folder = resolve_inside(ctx.root, relative, step.id)
        if folder.is_dir():
            continue
        folder.mkdir(parents=True, exist_ok=True)
        created += 1
    return f"Created {created} folder(s) under {spec.base_path}"


def handle_branch(step: Step, ctx: ExecutionContext) -> str:
    branch = step.action.branch_name if step.action else None
    if not branch:
        raise StepActionError(f"Step '{step.id}' requires action.branch_name")
    if ctx.repo is None:
        raise StepActionError(f"Step '{step.id}' needs a git repository")
    repo = ctx.repo
    try:
        if repo.current_branch() == branch:
            return f"Already on branch {branch}"
        if repo.branch_exists(branch):
            repo.checkout_branch(branch)
            return f"Switched to existing branch {branch}"
        source = step.action.source_branch if step.action else None
        repo.checkout_branch(branch, create=True, start_point=source)
    except GitError as error:
        raise StepActionError(f"Branch step '{step.id}' failed: {error}") from error
    return f"Created branch {branch}" + (f" from {source}" if source else "")


def handle_pull_request(step: Step, ctx: ExecutionContext) -> str:
    action = step.action
    if action is None or not action.source_branch or not action.target_branch:
        raise StepActionError(f"Step '{step.id}' requires action.source_branch and action.target_branch")
    title = action.title or step.description or step.id
    ctx.log("Pull request %s -> %s: %s", action.source_branch, action.target_branch, title)
    return f"Pull request {action.source_branch} -> {action.target_branch} prepared"


STEP_HANDLERS: Dict[StepKind, StepHandler] = {
    StepKind.CREATE_FILE: handle_create_file,
    StepKind.REFACTOR_FILE: handle_refactor_file,
    StepKind.DELETE_FILE: handle_delete_file,
    StepKind.CREATE_FOLDERS: handle_create_folders,
    StepKind.BRANCH: handle_branch,
    StepKind.PULL_REQUEST: handle_pull_request,
}

_UNHANDLED = set(StepKind) - set(STEP_HANDLERS)
if _UNHANDLED:
    raise RuntimeError(f"No handler registered for step kind(s): {sorted(kind.value for kind in _UNHANDLED)}")


def dispatch(step: Step, ctx: ExecutionContext) -> str:
    return STEP_HANDLERS[step.kind](step, ctx)


__all__ = [
    "STEP_HANDLERS",
    "StepActionError",
    "StepHandler",
    "dispatch",
    "parse_refactor_directive",
    "resolve_inside",
]
