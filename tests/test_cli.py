from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from stepwise.cli import app
from stepwise.planning.schema import StepStatus
from stepwise.planning.store import PlanStore

from conftest import QUIET_SETTINGS

runner = CliRunner()


@pytest.fixture()
def cli_repo(plan_repo, monkeypatch: pytest.MonkeyPatch):
    """Repository with a committed quiet stepwise.yaml used as the cwd."""

    plan_repo.write("stepwise.yaml", yaml.safe_dump(QUIET_SETTINGS, sort_keys=False))
    plan_repo.commit_all("add executor config")
    monkeypatch.chdir(plan_repo.root)
    return plan_repo


def _plan(write_plan, path: Path, steps) -> Path:
    return write_plan(path, steps, metadata={"layer": "domain", "project_type": "backend"})


def test_validate_command(tmp_path: Path, write_plan) -> None:
    good = _plan(write_plan, tmp_path / "good.yaml", [{"id": "a", "type": "delete_file", "path": "x"}])
    bad = write_plan(tmp_path / "bad.yaml", [{"id": "a", "type": "create_file"}])

    ok = runner.invoke(app, ["validate", str(good)])
    failed = runner.invoke(app, ["validate", str(bad)])

    assert ok.exit_code == 0, ok.output
    assert "Plan is valid" in ok.output
    assert failed.exit_code == 1
    assert "is missing a target path" in failed.output


def test_rules_command_filters_by_layer(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    everything = runner.invoke(app, ["rules"])
    main_only = runner.invoke(app, ["rules", "--layer", "main"])

    assert everything.exit_code == 0, everything.output
    assert "domain-external-dependency" in everything.output
    assert "main-factory-wiring" in main_only.output
    assert "domain-external-dependency" not in main_only.output


def test_rules_command_rejects_unknown_layer(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(app, ["rules", "--layer", "kernel"])

    assert result.exit_code == 2


def test_score_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    payload = tmp_path / "payload.ts"
    payload.write_text("import axios from 'axios'\n", encoding="utf-8")

    success = runner.invoke(app, ["score", "create_file"])
    lint = runner.invoke(app, ["score", "create_file", "--failure", "-m", "Lint failed"])
    forbidden = runner.invoke(
        app,
        ["score", "create_file", "--layer", "domain", "--payload-file", str(payload)],
    )

    assert success.exit_code == 0, success.output
    assert success.output.strip().splitlines()[-1] == "1"
    assert lint.output.strip().splitlines()[-1] == "-1"
    assert forbidden.output.strip().splitlines()[-1] == "-2"


def test_score_command_rejects_unknown_kind(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert runner.invoke(app, ["score", "teleport"]).exit_code == 2


def test_run_requires_plan_or_selector(cli_repo) -> None:
    result = runner.invoke(app, ["run"])

    assert result.exit_code == 2


def test_run_single_plan_then_report(cli_repo, write_plan, tmp_path: Path) -> None:
    plan_path = _plan(
        write_plan,
        tmp_path / "plans" / "users.yaml",
        [
            {
                "id": "user",
                "type": "create_file",
                "path": "src/domain/models/user.ts",
                "template": "export interface User {\n  id: string\n}\n",
                "description": "Add user entity",
            }
        ],
    )

    result = runner.invoke(app, ["run", str(plan_path)])

    assert result.exit_code == 0, result.output
    assert "users.yaml: SUCCESS" in result.output
    assert "Layer: backend/domain" in result.output
    assert (cli_repo.root / "src" / "domain" / "models" / "user.ts").exists()

    report = runner.invoke(app, ["report", "--layer", "domain"])
    assert report.exit_code == 0, report.output
    assert "Learning report (layer: domain)" in report.output
    assert "Total executions: 1" in report.output


def test_failed_run_then_rollback_failed(cli_repo, write_plan, tmp_path: Path) -> None:
    plan_path = _plan(
        write_plan,
        tmp_path / "plans" / "broken.yaml",
        [
            {
                "id": "draft",
                "type": "create_file",
                "path": "src/draft.ts",
                "template": "export const draft = true\n",
                "validation_script": "exit 3",
            }
        ],
    )

    failed = runner.invoke(app, ["run", str(plan_path)])

    assert failed.exit_code == 1, failed.output
    assert (cli_repo.root / "src" / "draft.ts").exists()

    rolled = runner.invoke(app, ["rollback-failed", str(plan_path)])

    assert rolled.exit_code == 0, rolled.output
    assert "Rolled back 1 step(s): draft" in rolled.output
    assert not (cli_repo.root / "src" / "draft.ts").exists()
    assert PlanStore(plan_path).load().steps[0].status is StepStatus.PENDING

    again = runner.invoke(app, ["rollback-failed", str(plan_path)])
    assert "No failed steps to roll back." in again.output


def test_rollback_unknown_step(cli_repo) -> None:
    result = runner.invoke(app, ["rollback", "ghost"])

    assert result.exit_code == 1
    assert "Rollback failed" in result.output


def test_snapshots_clean(cli_repo) -> None:
    result = runner.invoke(app, ["snapshots-clean", "--days", "3"])

    assert result.exit_code == 0, result.output
    assert "Removed 0 snapshot(s) older than 3 day(s)." in result.output


def test_batch_run_by_layer(cli_repo, write_plan) -> None:
    templates = cli_repo.root / "templates"
    write_plan(
        templates / "backend-domain-template.yaml",
        [{"id": "a", "type": "create_file", "path": "src/domain/a.ts", "template": "export const a = 1\n"}],
    )
    write_plan(
        templates / "backend-main-template.yaml",
        [{"id": "m", "type": "create_file", "path": "src/main/m.ts", "template": "export const m = 1\n"}],
    )

    result = runner.invoke(app, ["run", "--layer", "domain"])

    assert result.exit_code == 0, result.output
    assert "Executing 1 plan(s):" in result.output
    assert "Batch finished: 1 succeeded, 0 failed, 0 interrupted" in result.output
    assert not (cli_repo.root / "src" / "main").exists()


def test_batch_run_without_matches(cli_repo) -> None:
    result = runner.invoke(app, ["run", "--all"])

    assert result.exit_code == 1
    assert "No plans matched" in result.output


def test_module_entry_point(plan_repo) -> None:
    result = plan_repo.run_cli("rules", "--layer", "domain")

    assert result.returncode == 0, result.stderr
    assert "domain-external-dependency" in result.stdout
