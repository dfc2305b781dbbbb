from __future__ import annotations

import pytest

from stepwise.config import CommitSettings
from stepwise.planning.schema import FolderSpec, Step, StepAction, StepKind
from stepwise.tools.commits import (
    MAX_SUBJECT_LENGTH,
    CommitManager,
    enhance_description,
    extract_entity_name,
    extract_scope,
    generate_commit_message,
)


@pytest.mark.parametrize(
    ("path", "scope"),
    [
        ("src/domain/models/user.ts", "domain"),
        ("src/infrastructure/http/client.ts", "infra"),
        ("src/presentation/controllers/user.ts", "presentation"),
        ("src/app/models/order.ts", "domain"),
        ("src/app/factories/make-app.ts", "main"),
        ("README.md", "core"),
        (None, "core"),
    ],
)
def test_extract_scope(path, scope: str) -> None:
    assert extract_scope(path) == scope


def test_extract_entity_name() -> None:
    assert extract_entity_name("src/domain/models/user-profile.ts") == "User Profile"
    assert extract_entity_name("src/domain/models/order_item.entity.ts") == "Order Item"
    assert extract_entity_name("../etc/passwd") is None
    assert extract_entity_name(None) is None


def test_enhance_description_mentions_entity_and_role() -> None:
    assert enhance_description("Add model", "src/domain/models/user.ts") == "Add model - User entity"
    assert enhance_description("Add user", "src/domain/models/user.ts") == "Add user (entity)"
    assert enhance_description("Add entity", "src/domain/models/user.ts") == "Add entity for User"
    assert enhance_description("Add user entity", "src/domain/models/user.ts") == "Add user entity"
    assert enhance_description("Add docs", "docs/readme.md") == "Add docs"


def test_generate_commit_message_uses_conventional_format() -> None:
    message = generate_commit_message(StepKind.CREATE_FILE, "Add user entity", "src/domain/models/user.ts")

    assert message == "feat(domain): add user entity"


def test_generate_commit_message_truncates_long_subjects() -> None:
    message = generate_commit_message(StepKind.REFACTOR_FILE, "Rename " + "x" * 200, "src/data/repo.ts")

    assert message is not None
    assert len(message) == MAX_SUBJECT_LENGTH
    assert message.startswith("refactor(data): rename ")
    assert message.endswith("...")


def test_generate_commit_message_adds_co_author_trailer() -> None:
    settings = CommitSettings(co_author="Reviewer <reviewer@example.com>")

    message = generate_commit_message(StepKind.DELETE_FILE, "Remove stale file", "old.ts", settings=settings)

    assert message == "chore(core): remove stale file\n\nCo-Authored-By: Reviewer <reviewer@example.com>"


def test_generate_commit_message_skips_uncommitted_kinds() -> None:
    assert generate_commit_message(StepKind.BRANCH, "Create branch") is None
    assert generate_commit_message(StepKind.CREATE_FILE, "x", settings=CommitSettings(enabled=False)) is None


def test_generate_commit_message_without_conventional_prefix() -> None:
    settings = CommitSettings(conventional_commits=False)

    assert generate_commit_message(StepKind.CREATE_FILE, "Add file", "a.ts", settings=settings) == "Add file"


def test_commit_step_stages_only_the_target_path(plan_repo) -> None:
    plan_repo.write("src/domain/models/user.ts", "export interface User {}\n")
    plan_repo.write("scratch.txt", "not part of the step\n")
    step = Step(
        id="user",
        kind=StepKind.CREATE_FILE,
        target_path="src/domain/models/user.ts",
        description="Add user entity",
    )

    outcome = CommitManager(plan_repo.repo).commit_step(step)

    assert outcome.commit_hash == plan_repo.repo.head(short=True)
    assert outcome.staged == ["src/domain/models/user.ts"]
    assert plan_repo.log()[0] == "feat(domain): add user entity"
    assert plan_repo.repo.changed_paths() == ["scratch.txt"]


def test_commit_step_records_deletions(plan_repo) -> None:
    plan_repo.write("old.ts", "legacy\n")
    plan_repo.commit_all("add old file")
    (plan_repo.root / "old.ts").unlink()
    step = Step(id="rm", kind=StepKind.DELETE_FILE, target_path="old.ts", description="Remove old file")

    outcome = CommitManager(plan_repo.repo).commit_step(step)

    assert outcome.commit_hash
    assert not plan_repo.repo.exists_in_head("old.ts")


def test_commit_step_with_nothing_to_commit(plan_repo) -> None:
    step = Step(id="noop", kind=StepKind.CREATE_FILE, target_path="README.md", description="Touch readme")

    outcome = CommitManager(plan_repo.repo).commit_step(step)

    assert outcome.commit_hash is None
    assert outcome.skipped == "nothing to commit"


def test_commit_step_skips_branch_steps(plan_repo) -> None:
    step = Step(id="b", kind=StepKind.BRANCH, action=StepAction(branch_name="feature/x"))

    assert CommitManager(plan_repo.repo).commit_step(step).skipped == "kind"


def test_folder_step_commits_only_files_under_its_folders(plan_repo) -> None:
    plan_repo.write("src/domain/models/.gitkeep", "")
    plan_repo.write("notes.txt", "scratch\n")
    step = Step(
        id="folders",
        kind=StepKind.CREATE_FOLDERS,
        action=StepAction(create_folders=FolderSpec(base_path="src/domain", folders=["models"])),
    )

    outcome = CommitManager(plan_repo.repo, exclude=[".stepwise"]).commit_step(step)

    assert outcome.staged == ["src/domain/models/.gitkeep"]
    assert plan_repo.repo.changed_paths() == ["notes.txt"]


def test_commit_step_leaves_previously_staged_entries_out_of_the_commit(plan_repo) -> None:
    plan_repo.write("noise.txt", "staged by hand\n")
    plan_repo.repo.stage(["noise.txt"])
    plan_repo.write("src/domain/models/order.ts", "export interface Order {}\n")
    step = Step(
        id="order",
        kind=StepKind.CREATE_FILE,
        target_path="src/domain/models/order.ts",
        description="Add order entity",
    )

    outcome = CommitManager(plan_repo.repo).commit_step(step)

    committed = plan_repo.repo.git("show", "--name-only", "--format=", "HEAD").stdout.split()
    assert outcome.commit_hash == plan_repo.repo.head(short=True)
    assert committed == ["src/domain/models/order.ts"]
    assert plan_repo.repo.staged_paths() == ["noise.txt"]


def test_commit_step_does_not_commit_foreign_staged_entries_when_step_is_unchanged(plan_repo) -> None:
    head = plan_repo.repo.head()
    plan_repo.write("noise.txt", "staged by hand\n")
    plan_repo.repo.stage(["noise.txt"])
    step = Step(id="noop", kind=StepKind.CREATE_FILE, target_path="README.md", description="Touch readme")

    outcome = CommitManager(plan_repo.repo).commit_step(step)

    assert outcome.skipped == "nothing to commit"
    assert plan_repo.repo.head() == head
    assert plan_repo.repo.staged_paths() == ["noise.txt"]
