"""Step executor: the resumable state machine that drives a plan.

For every step that is not already SUCCESS or SKIPPED the executor runs the
layer pre-check, snapshots the paths the step touches, dispatches to the
step's handler, runs the optional validation script and then the quality
gate.  A gate failure rolls the step back; a pass commits it.  The plan
document is persisted after every step so an interrupted or failed run can
be resumed exactly where it stopped.  The first failed step aborts the run.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import FrameType
from typing import Callable, List, Optional

from ..config import ExecutorConfig, load_config
from ..policy.layers import LAYER_GUIDANCE, ArchitectureViolation, LayerRuleTable, describe_failure_context
from ..scoring.engine import ScoringEngine, aggregate_plan_score
from ..scoring.metrics import MetricsStore
from ..tools.commits import CommitManager
from ..tools.gates import QualityGate, QualityGateReport
from ..tools.run_log import RunLog
from ..tools.scripts import ValidationScriptError, run_validation_script
from ..tools.snapshots import MANUAL_INTERVENTION, RollbackError, Snapshot, SnapshotManager
from ..tools.vcs import GitError, GitRepository
from .context import ExecutionContext
from .handlers import StepActionError, dispatch
from .schema import ExecutionPlan, LayerInfo, Layer, Step, StepStatus, Target, detect_layer_info, utc_iso
from .store import PlanStore
from .validation import PlanValidator, ValidationReport, validate_plan

LOGGER = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130

STEP_FAILURES = (ArchitectureViolation, StepActionError, ValidationScriptError, GitError, OSError)


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    INTERRUPTED = "INTERRUPTED"


EXIT_CODES = {RunStatus.SUCCESS: 0, RunStatus.FAILED: 1, RunStatus.INTERRUPTED: EXIT_INTERRUPTED}


class QualityGateFailure(RuntimeError):
    """The quality gate rejected a step's changes."""

    def __init__(self, step_id: str, report: QualityGateReport) -> None:
        self.step_id = step_id
        self.report = report
        super().__init__(f"Quality checks failed for step '{step_id}'")


class RunInterrupted(RuntimeError):
    """Cancellation was requested between steps."""


@dataclass(slots=True)
class StepOutcome:
    step_id: str
    status: StepStatus
    score: Optional[int]
    duration_ms: int
    message: str = ""
    commit_hash: Optional[str] = None


@dataclass(slots=True)
class RunSummary:
    plan_path: Path
    status: RunStatus
    outcomes: List[StepOutcome] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    final_score: Optional[float] = None
    commit_hashes: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    run_log_path: Optional[Path] = None
    layer_info: Optional[LayerInfo] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def format_summary(self) -> str:
        lines = [f"{self.plan_path.name}: {self.status.value}"]
        if self.layer_info is not None:
            lines.append(f"Layer: {self.layer_info}")
        for outcome in self.outcomes:
            entry = f"- {outcome.step_id}: {outcome.status.value} (score {outcome.score}, {outcome.duration_ms}ms)"
            if outcome.commit_hash:
                entry += f" commit {outcome.commit_hash}"
            lines.append(entry)
        if self.skipped:
            lines.append(f"Skipped (already done): {', '.join(self.skipped)}")
        if self.final_score is not None:
            lines.append(f"Final score: {self.final_score}")
        if self.error:
            lines.append(f"Error: {self.error}")
        if self.run_log_path is not None:
            lines.append(f"Run log: {self.run_log_path}")
        return "\n".join(lines)


def _relative_to(path: Path, root: Path) -> str | None:
    try:
        return path.resolve().relative_to(root).as_posix()
    except ValueError:
        return None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class StepExecutor:
    """Execute one plan document from its first unfinished step."""

    def __init__(
        self,
        plan_path: Path | str,
        *,
        config: ExecutorConfig | None = None,
        repo_root: Path | None = None,
        rules: LayerRuleTable | None = None,
        scoring: ScoringEngine | None = None,
        quality_gate: QualityGate | None = None,
        validator: PlanValidator | None = validate_plan,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
        handle_signals: bool = True,
    ) -> None:
        self.plan_path = Path(plan_path).resolve()
        self.config = config or load_config()
        self.store = PlanStore(self.plan_path)
        self._root_hint = repo_root
        self._rules = rules
        self._scoring = scoring
        self._quality_gate = quality_gate
        self.validator = validator
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._handle_signals = handle_signals

    # ------------------------------------------------------------------ setup
    def _open_repository(self) -> GitRepository:
        root = self._root_hint or self.config.resolve_repo_root()
        return GitRepository.discover(root)

    def _exclusions(self, root: Path) -> List[str]:
        excluded = [_relative_to(self.config.resolve_state_dir(root), root), _relative_to(self.plan_path, root)]
        return [entry for entry in excluded if entry]

    def _safety_check(self, repo: GitRepository, exclude: List[str]) -> None:
        pending = repo.changed_paths(exclude=exclude)
        if not pending:
            return
        LOGGER.warning(
            "Working tree has %d uncommitted change(s): %s",
            len(pending),
            ", ".join(pending[:10]) + (" ..." if len(pending) > 10 else ""),
        )
        grace = self.config.git.safety_grace_seconds
        if grace > 0:
            LOGGER.warning("Continuing in %.0f second(s); press Ctrl+C to abort.", grace)
            self._sleep(grace)

    def _prevalidate(self) -> ValidationReport | None:
        if self.validator is None or not self.config.validation.enabled:
            return None
        report = self.validator(self.plan_path)
        for warning in report.warnings:
            LOGGER.warning("Plan validation: %s", warning)
        if not report.valid:
            for error in report.errors:
                LOGGER.error("Plan validation: %s", error)
            grace = self.config.validation.grace_period_seconds
            LOGGER.warning("Plan validation failed; continuing in %.0f second(s).", grace)
            if grace > 0:
                self._sleep(grace)
        return report

    @staticmethod
    def _layer_from_report(report: ValidationReport | None) -> LayerInfo | None:
        if report is None or not report.detected_target or not report.detected_layer:
            return None
        try:
            return LayerInfo(target=Target(report.detected_target), layer=Layer(report.detected_layer))
        except ValueError:
            return None

    # -------------------------------------------------------------------- run
    def run(self) -> RunSummary:
        """Run the plan; returns a summary instead of raising for step failures."""

        plan = self.store.load()
        summary = RunSummary(plan_path=self.plan_path, status=RunStatus.FAILED)

        try:
            repo = self._open_repository()
        except GitError as error:
            LOGGER.error("Not inside a git repository: %s", error)
            summary.error = str(error)
            return summary

        root = repo.root
        exclude = self._exclusions(root)
        state_dir = self.config.resolve_state_dir(root)

        previous_handler = self._install_signal_handler()
        run_log: RunLog | None = None
        try:
            self._safety_check(repo, exclude)
            report = self._prevalidate()
            layer_info = detect_layer_info(self.plan_path, plan) or self._layer_from_report(report)
            summary.layer_info = layer_info

            run_log = RunLog(state_dir / "logs", self.plan_path.stem)
            summary.run_log_path = run_log.path
            ctx = ExecutionContext(
                plan=plan,
                plan_path=self.plan_path,
                root=root,
                config=self.config,
                layer_info=layer_info,
                repo=repo,
                run_log=run_log,
                cancel_event=self.cancel_event,
                commit_hashes=list((plan.evaluation.commit_hashes if plan.evaluation else []) or []),
            )
            ctx.log("Run started for %s (layer: %s)", self.plan_path, layer_info or "unknown")
            self._execute_plan(ctx, summary, state_dir, exclude)
        except (KeyboardInterrupt, RunInterrupted):
            self._handle_interrupt(plan, repo, summary)
        finally:
            self._restore_signal_handler(previous_handler)
            if run_log is not None:
                run_log.close()
        return summary

    def _execute_plan(self, ctx: ExecutionContext, summary: RunSummary, state_dir: Path, exclude: List[str]) -> None:
        plan = ctx.plan
        repo = ctx.repo
        assert repo is not None
        config = self.config
        rules = self._rules or LayerRuleTable.from_sources(config.resolve_rules_path(ctx.root))
        scoring = self._scoring or ScoringEngine.from_config(config, ctx.root, rules=rules)
        gate = self._quality_gate or QualityGate.from_config(config, ctx.working_dir)
        snapshots = SnapshotManager(
            ctx.root,
            state_dir / "snapshots",
            repo=repo,
            exclude=exclude,
            delete_after_rollback=config.snapshots.delete_after_rollback,
            git_attempts=config.git.max_retries,
            git_retry_delay=config.git.retry_delay_seconds,
            sleep=self._sleep,
        )
        commits = CommitManager(repo, config.commit, exclude=exclude)
        runner = _StepRunner(ctx, self.store, rules, scoring, gate, snapshots, commits)

        attempted: List[Step] = []
        steps = plan.active_steps(ctx.layer)
        if not steps:
            LOGGER.warning("Plan %s has no steps", self.plan_path)
        try:
            for step in steps:
                if self.cancel_event.is_set():
                    raise RunInterrupted("Cancellation requested")
                if step.is_settled:
                    LOGGER.info("Skipping step %s (%s)", step.id, step.status.value)
                    summary.skipped.append(step.id)
                    continue
                attempted.append(step)
                outcome = runner.execute(step)
                summary.outcomes.append(outcome)
                if outcome.status is not StepStatus.SUCCESS:
                    summary.failed_step = step.id
                    summary.error = outcome.message
                    self._provide_guidance(ctx)
                    self._finalise(ctx, summary, RunStatus.FAILED)
                    return
            summary.final_score = aggregate_plan_score((step.score for step in steps), ctx.layer_info)
            self._finalise(ctx, summary, RunStatus.SUCCESS)
        finally:
            MetricsStore(state_dir / "metrics").record_run(attempted, ctx.layer_info)

    def _finalise(self, ctx: ExecutionContext, summary: RunSummary, status: RunStatus) -> None:
        evaluation = ctx.plan.ensure_evaluation()
        evaluation.final_status = status.value
        evaluation.commit_hashes = list(ctx.commit_hashes)
        evaluation.updated_at = utc_iso()
        if status is RunStatus.SUCCESS:
            evaluation.final_score = summary.final_score
        self.store.save(ctx.plan)
        summary.status = status
        summary.commit_hashes = list(ctx.commit_hashes)
        ctx.log("Run finished with status %s", status.value)
        LOGGER.info("Plan %s finished: %s", self.plan_path.name, status.value)

    @staticmethod
    def _provide_guidance(ctx: ExecutionContext) -> None:
        if ctx.layer_info is None:
            return
        layer = ctx.layer_info.layer
        ctx.warn("%s layer guidance:", layer.value.upper())
        for line in LAYER_GUIDANCE[layer]:
            ctx.warn("  - %s", line)

    def _handle_interrupt(self, plan: ExecutionPlan, repo: GitRepository, summary: RunSummary) -> None:
        LOGGER.warning("Execution interrupted; unstaging pending changes.")
        try:
            if repo.staged_paths():
                repo.unstage()
        except GitError as error:
            LOGGER.critical("Unable to unstage changes after interrupt: %s. %s", error, MANUAL_INTERVENTION)
        evaluation = plan.ensure_evaluation()
        evaluation.final_status = RunStatus.INTERRUPTED.value
        evaluation.updated_at = utc_iso()
        self.store.save(plan)
        summary.status = RunStatus.INTERRUPTED
        summary.error = "Interrupted"

    # ---------------------------------------------------------------- signals
    def _install_signal_handler(self) -> object:
        if not self._handle_signals or threading.current_thread() is not threading.main_thread():
            return None

        def _on_sigterm(signum: int, frame: FrameType | None) -> None:
            raise KeyboardInterrupt(f"signal {signum}")

        return signal.signal(signal.SIGTERM, _on_sigterm)

    def _restore_signal_handler(self, previous: object) -> None:
        if previous is None or threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGTERM, previous)  # type: ignore[arg-type]


class _StepRunner:
    """Per-step pipeline bound to one execution context."""

    def __init__(
        self,
        ctx: ExecutionContext,
        store: PlanStore,
        rules: LayerRuleTable,
        scoring: ScoringEngine,
        gate: QualityGate,
        snapshots: SnapshotManager,
        commits: CommitManager,
    ) -> None:
        self.ctx = ctx
        self.store = store
        self.rules = rules
        self.scoring = scoring
        self.gate = gate
        self.snapshots = snapshots
        self.commits = commits

    def _persist(self) -> None:
        self.store.save(self.ctx.plan)

    def execute(self, step: Step) -> StepOutcome:
        ctx = self.ctx
        started = time.monotonic()
        notes: List[str] = []
        snapshot: Snapshot | None = None
        LOGGER.info("Executing step %s (%s)", step.id, step.kind.value)
        ctx.log("Step %s (%s) started", step.id, step.kind.value)

        try:
            precheck = self.rules.precheck(step, ctx.layer_info)
            for warning in precheck.warnings:
                LOGGER.warning("%s", warning)
                ctx.warn("%s", warning)
                notes.append(warning)
            snapshot = self.snapshots.snapshot(step)
            ctx.log("Snapshot recorded for step %s", step.id)
            notes.append(dispatch(step, ctx))
            script_output = ""
            if step.validation_command:
                ctx.log("Running validation script for step %s", step.id)
                result = run_validation_script(
                    step.validation_command,
                    cwd=ctx.working_dir,
                    on_line=lambda line: self._stream(step.id, line),
                )
                script_output = result.output
        except STEP_FAILURES as error:
            return self._fail(step, started, error, snapshot, notes)

        report = self.gate.run()
        if not report.overall_passed:
            return self._fail_gate(step, started, QualityGateFailure(step.id, report), snapshot, notes)

        try:
            commit = self.commits.commit_step(step)
        except GitError as error:
            return self._fail(step, started, error, None, notes)
        if commit.commit_hash:
            step.commit_hash = commit.commit_hash
            ctx.commit_hashes.append(commit.commit_hash)
            notes.append(f"Commit: {commit.commit_hash}")
        elif commit.skipped == "nothing to commit":
            notes.append("No changes to commit")

        score = self.scoring.score(step.kind, True, ctx.layer_info, None, step.payload)
        duration = _elapsed_ms(started)
        log = f"Completed successfully at {utc_iso()} ({duration}ms).\nScore: {score}"
        if notes:
            log += "\n" + "\n".join(notes)
        if script_output:
            log += f"\n\n--- SCRIPT OUTPUT ---\n{script_output}"
        step.mark_success(score, log)
        self._persist()
        ctx.log("Step %s succeeded with score %d", step.id, score)
        LOGGER.info("Step %s completed (score %d)", step.id, score)
        return StepOutcome(step.id, step.status, step.score, duration, commit_hash=commit.commit_hash)

    def _stream(self, step_id: str, line: str) -> None:
        if self.ctx.run_log is not None:
            self.ctx.run_log.output(step_id, line)
        else:
            LOGGER.info("[%s] %s", step_id, line)

    def _fail(
        self,
        step: Step,
        started: float,
        error: BaseException,
        snapshot: Snapshot | None,
        notes: List[str],
    ) -> StepOutcome:
        ctx = self.ctx
        message = describe_failure_context(ctx.layer_info, str(error))
        score = self.scoring.score(step.kind, False, ctx.layer_info, str(error), step.payload)
        LOGGER.error("Step %s failed: %s", step.id, error)
        if ctx.run_log is not None:
            ctx.run_log.error("Step %s failed: %s", step.id, error)

        if snapshot is not None and ctx.config.snapshots.rollback_on_failure:
            notes.append(self._rollback(step, snapshot))

        duration = _elapsed_ms(started)
        log = f"Failed at {utc_iso()} ({duration}ms).\nScore: {score}"
        if notes:
            log += "\n" + "\n".join(notes)
        log += f"\n\n--- ERROR LOG ---\n{message}"
        step.mark_failed(score, log)
        self._persist()
        return StepOutcome(step.id, step.status, step.score, duration, message=str(error))

    def _fail_gate(
        self,
        step: Step,
        started: float,
        failure: QualityGateFailure,
        snapshot: Snapshot | None,
        notes: List[str],
    ) -> StepOutcome:
        ctx = self.ctx
        LOGGER.error("Quality checks failed for step %s; rolling back", step.id)
        ctx.log("Quality checks failed for step %s", step.id)
        rollback_note = self._rollback(step, snapshot) if snapshot is not None else "No snapshot to roll back"

        duration = _elapsed_ms(started)
        log = f"Failed at {utc_iso()} ({duration}ms).\nScore: -1"
        if notes:
            log += "\n" + "\n".join(notes)
        log += f"\n\n--- QUALITY CHECKS FAILED ---\n{failure.report.format_summary()}\n{rollback_note}"
        step.mark_failed(-1, log)
        self._persist()
        return StepOutcome(step.id, step.status, step.score, duration, message=str(failure))

    def _rollback(self, step: Step, snapshot: Snapshot) -> str:
        ctx = self.ctx
        ctx.log("Rollback started for step %s", step.id)
        try:
            reverted = self.snapshots.rollback_gate_failure(step, snapshot)
        except RollbackError as error:
            if ctx.run_log is not None:
                ctx.run_log.critical("Rollback failed for step %s: %s", step.id, error)
            return f"ROLLBACK FAILED: {error}. {MANUAL_INTERVENTION}"
        ctx.log("Rollback succeeded for step %s (%d path(s))", step.id, len(reverted))
        return f"Changes rolled back ({len(reverted)} path(s))"


def run_plan(plan_path: Path | str, **kwargs: object) -> RunSummary:
    """Convenience wrapper building a :class:`StepExecutor` and running it."""

    return StepExecutor(plan_path, **kwargs).run()  # type: ignore[arg-type]


__all__ = [
    "EXIT_CODES",
    "EXIT_INTERRUPTED",
    "QualityGateFailure",
    "RunInterrupted",
    "RunStatus",
    "RunSummary",
    "StepExecutor",
    "StepOutcome",
    "run_plan",
]
