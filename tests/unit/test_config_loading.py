from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from stepwise.config import ConfigError, ExecutorConfig, config_from_mapping, load_config
from stepwise.tools.vcs import GitError, is_transient, retry_git


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(search_dir=tmp_path)

    assert config.source_path is None
    assert config.paths.state_dir == ".stepwise"
    assert config.batch.max_parallel == 1
    assert config.quality_checks.lint.script == "lint"


def test_explicit_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.yaml")


def test_relative_paths_anchor_at_config_file(tmp_path: Path) -> None:
    path = tmp_path / "stepwise.yaml"
    path.write_text(
        "project:\n  repo_root: repo\npaths:\n  state_dir: .state\nscoring:\n  rules_path: rules.yaml\n",
        encoding="utf-8",
    )

    config = load_config(path)
    root = config.resolve_repo_root()

    assert root == (tmp_path / "repo").resolve()
    assert config.resolve_state_dir(root) == root / ".state"
    assert config.resolve_rules_path(root) == root / "rules.yaml"


def test_invalid_values_fall_back_to_defaults(caplog: pytest.LogCaptureFixture) -> None:
    config = config_from_mapping({"batch": {"max_parallel": 0}})

    assert config == ExecutorConfig()
    assert "Falling back to default configuration." in caplog.text


def test_unparseable_file_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "stepwise.yaml"
    path.write_text("git: [\n", encoding="utf-8")

    config = load_config(path)

    assert config.git.max_retries == 3
    assert config.source_path == path.resolve()


def test_retry_git_retries_transient_errors() -> None:
    attempts: List[int] = []
    delays: List[float] = []

    def _flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise GitError("git add failed: Unable to create index.lock: File exists")
        return "ok"

    assert retry_git(_flaky, attempts=3, base_delay=0.5, sleep=delays.append) == "ok"
    assert delays == [0.5, 1.0]


def test_retry_git_gives_up_on_permanent_errors() -> None:
    delays: List[float] = []
    error = GitError("git checkout failed: pathspec 'x' did not match any file(s) known to git")

    def _broken() -> None:
        raise error

    assert not is_transient(error)
    with pytest.raises(GitError):
        retry_git(_broken, attempts=3, sleep=delays.append)
    assert delays == []
