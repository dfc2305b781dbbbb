from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from stepwise.config import ExecutorConfig, config_from_mapping  # noqa: E402
from stepwise.tools.vcs import GitRepository  # noqa: E402

QUIET_SETTINGS: Dict[str, Any] = {
    "quality_checks": {"lint": {"enabled": False}, "test": {"enabled": False}},
    "git": {"safety_grace_seconds": 0, "retry_delay_seconds": 0},
    "validation": {"grace_period_seconds": 0},
}


@dataclass(slots=True)
class PlanRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path
    repo: GitRepository

    def write(self, relative: str, text: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def commit_all(self, message: str = "fixture update") -> None:
        self.repo.git("add", "--all")
        self.repo.git("commit", "-q", "-m", message)

    def log(self) -> List[str]:
        result = self.repo.git("log", "--format=%s")
        return [line for line in result.stdout.splitlines() if line]

    def run_cli(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m stepwise.cli`` with the provided arguments."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath

        command = [sys.executable, "-m", "stepwise.cli", *args]
        return subprocess.run(  # noqa: S603 - command constructed from known values
            command,
            cwd=self.root,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )


@pytest.fixture()
def plan_repo(tmp_path: Path) -> PlanRepo:
    """Create a tiny git repository with one committed file."""

    root = tmp_path / "project"
    root.mkdir()
    (root / "README.md").write_text("# Fixture project\n", encoding="utf-8")
    repo = GitRepository.initialise(root)
    return PlanRepo(root=repo.root, repo=repo)


@pytest.fixture()
def quiet_config() -> ExecutorConfig:
    """Configuration with quality checks disabled and no grace periods."""

    return config_from_mapping(QUIET_SETTINGS)


@pytest.fixture()
def write_plan() -> Callable[..., Path]:
    """Return a helper writing a plan document with the given steps."""

    def _write(path: Path, steps: List[Dict[str, Any]], **extra: Any) -> Path:
        document: Dict[str, Any] = {"steps": steps}
        document.update(extra)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return path

    return _write
