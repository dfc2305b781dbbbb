"""CLI commands for running, validating and repairing execution plans."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import ConfigError, ExecutorConfig, load_config
from .planning.batch import PlanSelector, discover_plans, run_batch
from .planning.executor import StepExecutor
from .planning.schema import Layer, LayerInfo, StepKind, Target, detect_layer_info
from .planning.store import PlanStore, PlanStoreError
from .planning.validation import validate_plan
from .policy.layers import LayerRuleTable, RuleTableError
from .scoring.engine import ScoringEngine
from .scoring.metrics import MetricsStore
from .tools.snapshots import RollbackError, SnapshotManager
from .tools.vcs import GitError, GitRepository

APP_HELP = "Deterministic, resumable execution of step plans."

app = typer.Typer(help=APP_HELP, no_args_is_help=True)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ------------------------------------------------------------------ helpers
def _load_config(path: Optional[str]) -> ExecutorConfig:
    try:
        return load_config(Path(path) if path else None)
    except ConfigError as error:
        raise typer.BadParameter(str(error), param_hint="--config") from error


def _parse_layer(value: Optional[str]) -> Optional[Layer]:
    if value is None:
        return None
    try:
        return Layer(value)
    except ValueError as error:
        choices = ", ".join(layer.value for layer in Layer)
        raise typer.BadParameter(f"Unknown layer {value!r}; expected one of {choices}", param_hint="--layer") from error


def _parse_target(value: Optional[str]) -> Optional[Target]:
    if value is None:
        return None
    try:
        return Target(value)
    except ValueError as error:
        choices = ", ".join(target.value for target in Target)
        raise typer.BadParameter(
            f"Unknown target {value!r}; expected one of {choices}", param_hint="--target"
        ) from error


def _open_repository(cfg: ExecutorConfig) -> GitRepository:
    try:
        return GitRepository.discover(cfg.resolve_repo_root())
    except GitError as error:
        typer.echo(f"Not inside a git repository: {error}")
        raise typer.Exit(code=1) from error


def _snapshot_manager(cfg: ExecutorConfig, repo: GitRepository) -> SnapshotManager:
    state_dir = cfg.resolve_state_dir(repo.root)
    return SnapshotManager(
        repo.root,
        state_dir / "snapshots",
        repo=repo,
        exclude=[cfg.paths.state_dir],
        delete_after_rollback=cfg.snapshots.delete_after_rollback,
        git_attempts=cfg.git.max_retries,
        git_retry_delay=cfg.git.retry_delay_seconds,
    )


def _state_dir(cfg: ExecutorConfig) -> Path:
    return cfg.resolve_state_dir(cfg.resolve_repo_root())


CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to stepwise.yaml.")


# ----------------------------------------------------------------- commands
@app.command()
def run(
    plan: Optional[str] = typer.Argument(None, help="Plan document to execute."),
    all_plans: bool = typer.Option(False, "--all", help="Run every template in the templates directory."),
    layer: Optional[str] = typer.Option(None, "--layer", "-l", help="Run templates for one layer."),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Run templates for one target."),
    config: Optional[str] = CONFIG_OPTION,
    max_parallel: Optional[int] = typer.Option(
        None,
        "--max-parallel",
        min=1,
        help="Maximum number of plans executed concurrently in batch mode.",
    ),
) -> None:
    """Execute a plan, or a batch of templates selected by layer or target."""
    cfg = _load_config(config)

    if plan is not None:
        try:
            summary = StepExecutor(plan, config=cfg).run()
        except (PlanStoreError, RuleTableError) as error:
            typer.echo(f"Error: {error}")
            raise typer.Exit(code=1) from error
        typer.echo(summary.format_summary())
        raise typer.Exit(code=summary.exit_code)

    selector = PlanSelector(all=all_plans, layer=_parse_layer(layer), target=_parse_target(target))
    if selector.is_empty():
        raise typer.BadParameter("Provide a PLAN or one of --all, --layer, --target.")

    templates_dir = Path(cfg.batch.templates_dir)
    if not templates_dir.is_absolute():
        templates_dir = cfg.resolve_repo_root() / templates_dir
    plans = discover_plans(templates_dir, cfg.batch.patterns, selector)
    if not plans:
        typer.echo(f"No plans matched in {templates_dir}.")
        raise typer.Exit(code=1)

    typer.echo(f"Executing {len(plans)} plan(s):")
    for path in plans:
        typer.echo(f"- {path.name}")
    batch = run_batch(plans, config=cfg, max_parallel=max_parallel)
    typer.echo(batch.format_summary())
    raise typer.Exit(code=batch.exit_code)


@app.command()
def validate(plan: str = typer.Argument(..., help="Plan document to check.")) -> None:
    """Check a plan document without executing it."""
    report = validate_plan(Path(plan))
    typer.echo(report.format_summary())
    if not report.valid:
        raise typer.Exit(code=1)


@app.command()
def rollback(
    step_id: str = typer.Argument(..., help="Step whose latest snapshot should be restored."),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Restore the most recent snapshot recorded for a step."""
    cfg = _load_config(config)
    manager = _snapshot_manager(cfg, _open_repository(cfg))
    try:
        snapshot = manager.rollback(step_id)
    except RollbackError as error:
        typer.echo(f"Rollback failed: {error}")
        raise typer.Exit(code=1) from error
    assert snapshot is not None
    typer.echo(f"Rolled back step {step_id} to snapshot taken at {snapshot.created_at}.")


@app.command("rollback-failed")
def rollback_failed(
    plan: str = typer.Argument(..., help="Plan document whose failed steps should be undone."),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Roll back every FAILED step of a plan and reset it to PENDING."""
    cfg = _load_config(config)
    store = PlanStore(plan)
    try:
        document = store.load()
    except PlanStoreError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error

    manager = _snapshot_manager(cfg, _open_repository(cfg))
    layer_info = detect_layer_info(store.path, document)
    steps = document.active_steps(layer_info.layer if layer_info else None)
    try:
        reset = manager.rollback_failed_steps(steps)
    except RollbackError as error:
        typer.echo(f"Rollback failed: {error}")
        raise typer.Exit(code=1) from error
    store.save(document)
    if not reset:
        typer.echo("No failed steps to roll back.")
        return
    typer.echo(f"Rolled back {len(reset)} step(s): {', '.join(reset)}")


@app.command("snapshots-clean")
def snapshots_clean(
    days: Optional[int] = typer.Option(None, "--days", min=0, help="Delete snapshots older than N days."),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Delete old snapshot records."""
    cfg = _load_config(config)
    manager = _snapshot_manager(cfg, _open_repository(cfg))
    retention = cfg.snapshots.retention_days if days is None else days
    removed = manager.prune(retention)
    typer.echo(f"Removed {removed} snapshot(s) older than {retention} day(s).")


@app.command()
def score(
    kind: str = typer.Argument(..., help="Step kind, e.g. create_file."),
    success: bool = typer.Option(True, "--success/--failure", help="Outcome to score."),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Failure message."),
    payload_file: Optional[Path] = typer.Option(None, "--payload-file", help="File holding the step payload."),
    layer: Optional[str] = typer.Option(None, "--layer", "-l", help="Layer the step belongs to."),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Target the step belongs to."),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Print the score the engine would assign to a step outcome."""
    cfg = _load_config(config)
    try:
        step_kind = StepKind(kind)
    except ValueError as error:
        raise typer.BadParameter(f"Unknown step kind {kind!r}", param_hint="KIND") from error

    layer_value = _parse_layer(layer)
    target_value = _parse_target(target)
    layer_info = None
    if layer_value is not None:
        layer_info = LayerInfo(target=target_value or Target.BACKEND, layer=layer_value)

    payload = None
    if payload_file is not None:
        try:
            payload = payload_file.read_text(encoding="utf-8")
        except OSError as error:
            raise typer.BadParameter(f"Unable to read {payload_file}: {error}", param_hint="--payload-file") from error

    try:
        engine = ScoringEngine.from_config(cfg, cfg.resolve_repo_root())
    except RuleTableError as error:
        typer.echo(f"Invalid rule table: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(str(engine.score(step_kind, success, layer_info, message, payload)))


@app.command()
def rules(
    layer: Optional[str] = typer.Option(None, "--layer", "-l", help="Only show rules for one layer."),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """List the layer rule table."""
    cfg = _load_config(config)
    selected_layer = _parse_layer(layer)
    try:
        table = LayerRuleTable.from_sources(cfg.resolve_rules_path(cfg.resolve_repo_root()))
    except RuleTableError as error:
        typer.echo(f"Invalid rule table: {error}")
        raise typer.Exit(code=1) from error

    entries: List[str] = []
    for rule in table.rules:
        if selected_layer is not None and not rule.applies_to(selected_layer):
            continue
        entries.append(f"{rule.layer:<13} {rule.kind.value:<9} {rule.score_impact:+d}  {rule.name}: {rule.message}")
    if not entries:
        typer.echo("No rules defined.")
        return
    for entry in entries:
        typer.echo(entry)


@app.command()
def report(
    layer: Optional[str] = typer.Option(None, "--layer", "-l", help="Restrict the report to one layer."),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Print the learning report built from recorded run metrics."""
    cfg = _load_config(config)
    store = MetricsStore(_state_dir(cfg) / "metrics")
    typer.echo(store.build_report(_parse_layer(layer)).render())


if __name__ == "__main__":  # pragma: no cover
    app()
