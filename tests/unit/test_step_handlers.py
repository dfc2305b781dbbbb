from __future__ import annotations

from pathlib import Path

import pytest

from stepwise.config import ExecutorConfig
from stepwise.planning.context import ExecutionContext
from stepwise.planning.handlers import (
    STEP_HANDLERS,
    StepActionError,
    dispatch,
    parse_refactor_directive,
    resolve_inside,
)
from stepwise.planning.schema import ExecutionPlan, FolderSpec, Step, StepAction, StepKind

REFACTOR_PAYLOAD = "<<<REPLACE>>>\nconst a = 1\n<<</REPLACE>>>\n<<<WITH>>>\nconst a = 2\n<<</WITH>>>\n"


def _context(root: Path, repo=None) -> ExecutionContext:
    return ExecutionContext(
        plan=ExecutionPlan(),
        plan_path=root / "plan.yaml",
        root=root,
        config=ExecutorConfig(),
        repo=repo,
    )


def test_every_step_kind_has_a_handler() -> None:
    assert set(STEP_HANDLERS) == set(StepKind)


def test_resolve_inside_refuses_escaping_paths(tmp_path: Path) -> None:
    assert resolve_inside(tmp_path, "src/a.ts", "s") == (tmp_path / "src" / "a.ts").resolve()
    with pytest.raises(StepActionError, match="escapes"):
        resolve_inside(tmp_path, "../outside.ts", "s")
    with pytest.raises(StepActionError, match="absolute"):
        resolve_inside(tmp_path, str(tmp_path / "a.ts"), "s")


def test_parse_refactor_directive() -> None:
    assert parse_refactor_directive(REFACTOR_PAYLOAD, "r") == ("const a = 1", "const a = 2")
    with pytest.raises(StepActionError, match="Missing <<<REPLACE>>>"):
        parse_refactor_directive("just text", "r")
    with pytest.raises(StepActionError, match="empty"):
        parse_refactor_directive("<<<REPLACE>>>  <<</REPLACE>>><<<WITH>>>x<<</WITH>>>", "r")


def test_create_file_writes_payload_and_parents(tmp_path: Path) -> None:
    step = Step(id="c", kind=StepKind.CREATE_FILE, target_path="src/domain/user.ts", payload="export {}\n")

    summary = dispatch(step, _context(tmp_path))

    assert (tmp_path / "src" / "domain" / "user.ts").read_text(encoding="utf-8") == "export {}\n"
    assert summary.startswith("Wrote src/domain/user.ts")


def test_create_file_requires_a_path(tmp_path: Path) -> None:
    with pytest.raises(StepActionError, match="requires a target path"):
        dispatch(Step(id="c", kind=StepKind.CREATE_FILE, payload="x"), _context(tmp_path))


def test_refactor_replaces_first_occurrence(tmp_path: Path) -> None:
    target = tmp_path / "a.ts"
    target.write_text("const a = 1\nconst a = 1\n", encoding="utf-8")
    step = Step(id="r", kind=StepKind.REFACTOR_FILE, target_path="a.ts", payload=REFACTOR_PAYLOAD)

    dispatch(step, _context(tmp_path))

    assert target.read_text(encoding="utf-8") == "const a = 2\nconst a = 1\n"


def test_refactor_fails_when_search_text_is_absent(tmp_path: Path) -> None:
    (tmp_path / "a.ts").write_text("const b = 1\n", encoding="utf-8")
    step = Step(id="r", kind=StepKind.REFACTOR_FILE, target_path="a.ts", payload=REFACTOR_PAYLOAD)

    with pytest.raises(StepActionError, match="made no changes"):
        dispatch(step, _context(tmp_path))


def test_refactor_fails_for_missing_file(tmp_path: Path) -> None:
    step = Step(id="r", kind=StepKind.REFACTOR_FILE, target_path="absent.ts", payload=REFACTOR_PAYLOAD)

    with pytest.raises(StepActionError, match="does not exist"):
        dispatch(step, _context(tmp_path))


def test_delete_file_is_idempotent(tmp_path: Path) -> None:
    target = tmp_path / "old.ts"
    target.write_text("x", encoding="utf-8")
    step = Step(id="d", kind=StepKind.DELETE_FILE, target_path="old.ts")
    ctx = _context(tmp_path)

    assert dispatch(step, ctx) == "Deleted old.ts"
    assert not target.exists()
    assert dispatch(step, ctx) == "old.ts already absent"


def test_delete_file_refuses_directories(tmp_path: Path) -> None:
    (tmp_path / "pkg").mkdir()

    with pytest.raises(StepActionError, match="Refusing to delete directory"):
        dispatch(Step(id="d", kind=StepKind.DELETE_FILE, target_path="pkg"), _context(tmp_path))


def test_create_folders_counts_new_folders(tmp_path: Path) -> None:
    (tmp_path / "src" / "domain" / "models").mkdir(parents=True)
    step = Step(
        id="f",
        kind=StepKind.CREATE_FOLDERS,
        action=StepAction(create_folders=FolderSpec(base_path="src/domain", folders=["models", "usecases"])),
    )

    summary = dispatch(step, _context(tmp_path))

    assert summary == "Created 1 folder(s) under src/domain"
    assert (tmp_path / "src" / "domain" / "usecases").is_dir()


def test_branch_step_creates_then_reuses_branch(plan_repo) -> None:
    step = Step(id="b", kind=StepKind.BRANCH, action=StepAction(branch_name="feature/users"))
    ctx = _context(plan_repo.root, repo=plan_repo.repo)
    start = plan_repo.repo.current_branch()

    assert dispatch(step, ctx) == "Created branch feature/users"
    assert dispatch(step, ctx) == "Already on branch feature/users"
    plan_repo.repo.checkout_branch(start)
    assert dispatch(step, ctx) == "Switched to existing branch feature/users"


def test_branch_step_wraps_git_failures(plan_repo) -> None:
    step = Step(
        id="b",
        kind=StepKind.BRANCH,
        action=StepAction(branch_name="feature/x", source_branch="does-not-exist"),
    )

    with pytest.raises(StepActionError, match="Branch step 'b' failed"):
        dispatch(step, _context(plan_repo.root, repo=plan_repo.repo))


def test_branch_step_needs_a_repository(tmp_path: Path) -> None:
    step = Step(id="b", kind=StepKind.BRANCH, action=StepAction(branch_name="feature/x"))

    with pytest.raises(StepActionError, match="needs a git repository"):
        dispatch(step, _context(tmp_path))


def test_pull_request_only_validates(tmp_path: Path) -> None:
    step = Step(
        id="pr",
        kind=StepKind.PULL_REQUEST,
        action=StepAction(source_branch="feature/x", target_branch="main", title="Users"),
    )

    assert dispatch(step, _context(tmp_path)) == "Pull request feature/x -> main prepared"
    with pytest.raises(StepActionError, match="source_branch"):
        dispatch(Step(id="pr", kind=StepKind.PULL_REQUEST), _context(tmp_path))
