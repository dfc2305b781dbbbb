from __future__ import annotations

import os
import time

import pytest

from stepwise.planning.schema import FolderSpec, Step, StepAction, StepKind, StepStatus
from stepwise.tools.snapshots import RollbackError, SnapshotManager


def _manager(plan_repo, **kwargs) -> SnapshotManager:
    return SnapshotManager(
        plan_repo.root,
        plan_repo.root / ".stepwise" / "snapshots",
        repo=plan_repo.repo,
        exclude=[".stepwise"],
        git_retry_delay=0,
        **kwargs,
    )


def _file_step(step_id: str, path: str) -> Step:
    return Step(id=step_id, kind=StepKind.CREATE_FILE, target_path=path, payload="new")


def test_rollback_restores_modified_file_exactly(plan_repo) -> None:
    original = "line one\nline two  \n\n"
    plan_repo.write("src/user.ts", original)
    manager = _manager(plan_repo)
    manager.snapshot(_file_step("edit", "src/user.ts"))

    (plan_repo.root / "src" / "user.ts").write_text("changed\n", encoding="utf-8")
    manager.rollback("edit")

    assert (plan_repo.root / "src" / "user.ts").read_text(encoding="utf-8") == original


def test_rollback_removes_created_file_and_directories(plan_repo) -> None:
    manager = _manager(plan_repo)
    manager.snapshot(_file_step("create", "src/domain/models/user.ts"))

    plan_repo.write("src/domain/models/user.ts", "export {}\n")
    manager.rollback("create")

    assert not (plan_repo.root / "src").exists()


def test_binary_content_round_trips(plan_repo) -> None:
    payload = bytes(range(256))
    (plan_repo.root / "logo.bin").write_bytes(payload)
    manager = _manager(plan_repo)
    snapshot = manager.snapshot(_file_step("bin", "logo.bin"))

    (plan_repo.root / "logo.bin").write_bytes(b"oops")
    manager.rollback("bin")

    assert snapshot.files[0].encoding == "base64"
    assert (plan_repo.root / "logo.bin").read_bytes() == payload


def test_folder_snapshot_removes_created_folders(plan_repo) -> None:
    step = Step(
        id="folders",
        kind=StepKind.CREATE_FOLDERS,
        action=StepAction(create_folders=FolderSpec(base_path="src/domain", folders=["models", "usecases"])),
    )
    manager = _manager(plan_repo)
    manager.snapshot(step)

    for relative in step.folder_paths():
        (plan_repo.root / relative).mkdir(parents=True)
    manager.rollback("folders")

    assert not (plan_repo.root / "src").exists()


def test_latest_snapshot_wins(plan_repo) -> None:
    plan_repo.write("notes.md", "first\n")
    manager = _manager(plan_repo)
    manager.snapshot(_file_step("notes", "notes.md"))
    plan_repo.write("notes.md", "second\n")
    manager.snapshot(_file_step("notes", "notes.md"))
    plan_repo.write("notes.md", "third\n")

    manager.rollback("notes")

    assert (plan_repo.root / "notes.md").read_text(encoding="utf-8") == "second\n"
    assert len(manager.list_snapshots("notes")) == 2


def test_rollback_without_snapshot(plan_repo) -> None:
    manager = _manager(plan_repo)

    with pytest.raises(RollbackError, match="No snapshot"):
        manager.rollback("ghost")
    assert manager.rollback("ghost", missing_ok=True) is None


def test_rollback_returns_to_captured_branch(plan_repo) -> None:
    manager = _manager(plan_repo)
    start = plan_repo.repo.current_branch()
    manager.snapshot(Step(id="branch", kind=StepKind.BRANCH, action=StepAction(branch_name="feature/x")))

    plan_repo.repo.checkout_branch("feature/x", create=True)
    manager.rollback("branch")

    assert plan_repo.repo.current_branch() == start


def test_delete_after_rollback_removes_record(plan_repo) -> None:
    manager = _manager(plan_repo, delete_after_rollback=True)
    manager.snapshot(_file_step("tmp", "tmp.txt"))

    manager.rollback("tmp")

    assert manager.list_snapshots("tmp") == []


def test_gate_rollback_keeps_unrelated_dirty_files(plan_repo) -> None:
    plan_repo.write("scratch.txt", "user edit\n")
    manager = _manager(plan_repo)
    step = _file_step("gate", "src/new.ts")
    snapshot = manager.snapshot(step)

    plan_repo.write("src/new.ts", "export {}\n")
    plan_repo.repo.stage(["src/new.ts"])
    reverted = manager.rollback_gate_failure(step, snapshot)

    assert reverted == ["src/new.ts"]
    assert not (plan_repo.root / "src" / "new.ts").exists()
    assert (plan_repo.root / "scratch.txt").read_text(encoding="utf-8") == "user edit\n"
    assert plan_repo.repo.staged_paths() == []


def test_gate_rollback_refuses_when_head_moved(plan_repo) -> None:
    manager = _manager(plan_repo)
    step = _file_step("moved", "a.txt")
    snapshot = manager.snapshot(step)
    plan_repo.write("a.txt", "a\n")
    plan_repo.commit_all("sneaky commit")

    with pytest.raises(RollbackError, match="HEAD moved"):
        manager.rollback_gate_failure(step, snapshot)


def test_gate_rollback_returns_from_branch_ahead_of_start(plan_repo) -> None:
    start = plan_repo.repo.current_branch()
    start_head = plan_repo.repo.head()
    plan_repo.repo.checkout_branch("feature", create=True)
    plan_repo.write("feature.txt", "only on feature\n")
    plan_repo.commit_all("feature work")
    plan_repo.repo.checkout_branch(start)
    manager = _manager(plan_repo)
    step = Step(id="br", kind=StepKind.BRANCH, action=StepAction(branch_name="feature"))
    snapshot = manager.snapshot(step)

    plan_repo.repo.checkout_branch("feature")
    manager.rollback_gate_failure(step, snapshot)

    assert plan_repo.repo.current_branch() == start
    assert plan_repo.repo.head() == start_head
    assert not (plan_repo.root / "feature.txt").exists()


def test_rollback_failed_steps_resets_in_reverse_order(plan_repo) -> None:
    manager = _manager(plan_repo)
    first = _file_step("first", "one.txt")
    second = _file_step("second", "two.txt")
    ok = _file_step("ok", "ok.txt")
    for step in (first, ok, second):
        manager.snapshot(step)
    plan_repo.write("one.txt", "1\n")
    plan_repo.write("two.txt", "2\n")
    first.mark_failed(-1, "failed")
    second.mark_failed(-1, "failed")
    ok.mark_success(1, "done")

    reset = manager.rollback_failed_steps([first, ok, second])

    assert reset == ["second", "first"]
    assert first.status is StepStatus.PENDING and second.status is StepStatus.PENDING
    assert ok.status is StepStatus.SUCCESS
    assert not (plan_repo.root / "one.txt").exists()
    assert not (plan_repo.root / "two.txt").exists()


def test_prune_deletes_old_records(plan_repo) -> None:
    manager = _manager(plan_repo)
    old = manager.snapshot(_file_step("old", "old.txt")).record_path
    fresh = manager.snapshot(_file_step("fresh", "fresh.txt")).record_path
    ten_days_ago = time.time() - 10 * 86400
    os.utime(old, (ten_days_ago, ten_days_ago))

    removed = manager.prune(7)

    assert removed == 1
    assert not old.exists()
    assert fresh.exists()


def test_snapshot_records_are_json_files(plan_repo) -> None:
    snapshot = _manager(plan_repo).snapshot(_file_step("My Step!", "x.txt"))

    assert snapshot.record_path is not None
    assert snapshot.record_path.parent == plan_repo.root / ".stepwise" / "snapshots"
    assert snapshot.record_path.name.startswith("my-step-")
    assert snapshot.record_path.suffix == ".json"
