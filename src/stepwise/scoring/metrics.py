"""Execution metrics and per-pattern success tracking.

Every run appends one record per attempted step to ``metrics.json`` and
folds the outcomes into ``patterns.json``, keyed
``<layer>_<kind>_<error type or "success">``.  Patterns that keep failing
get a suggested fix which shows up in :func:`MetricsStore.build_report`.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..planning.schema import Layer, LayerInfo, Step, StepStatus, utc_now
from ..utils.fs import read_json, write_json_atomic

LOGGER = logging.getLogger(__name__)

MAX_METRICS = 1000
SUGGESTION_MIN_OCCURRENCES = 3
SUGGESTION_MAX_SUCCESS_RATE = 0.5

ERROR_TYPE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), name)
    for pattern, name in (
        (r"LINT FAILED|lint: failed", "lint"),
        (r"TESTS? FAILED|test: failed", "test"),
        (r"TypeScript.*error", "typescript"),
        (r"branch.*exists", "branch_conflict"),
        (r"PR.*failed|pull request.*failed", "pr_creation"),
        (r"permission denied", "permission"),
        (r"cannot find module|no module named", "missing_dependency"),
        (r"git.*failed", "git_operation"),
        (r"architecture.*violation", "architecture_violation"),
        (r"clean.*architecture", "clean_architecture"),
    )
)

BASE_SUGGESTIONS: Dict[str, str] = {
    "lint": "Add an automatic lint fix step before validation",
    "test": "Review test expectations and fixtures",
    "typescript": "Add type definitions or fix type mismatches",
    "branch_conflict": "Check for an existing branch before creating it",
    "pr_creation": "Ensure all changes are committed and pushed",
    "permission": "Configure git credentials before this step",
    "missing_dependency": "Add a dependency installation step",
    "git_operation": "Add git status checks and recovery steps",
    "architecture_violation": "Review layer responsibilities and dependencies",
    "clean_architecture": "Follow clean architecture principles",
}

LAYER_SUGGESTIONS: Dict[Layer, str] = {
    Layer.DOMAIN: "Ensure no external dependencies in the domain layer.",
    Layer.DATA: "Implement domain interfaces and use the repository pattern.",
    Layer.INFRA: "Add error handling around external services.",
    Layer.PRESENTATION: "Keep presentation logic separate from business logic.",
    Layer.MAIN: "Use dependency injection and factories.",
}

_DURATION_RE = re.compile(r"\((\d+)ms\)")


class MetricsModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=False)


class ExecutionMetric(MetricsModel):
    step_id: str
    kind: str
    success: bool
    duration_ms: int = 0
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    layer: Optional[str] = None
    target: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class LearningPattern(MetricsModel):
    pattern: str
    occurrences: int = 0
    success_rate: float = 0.0
    last_seen: datetime = Field(default_factory=utc_now)
    layer: Optional[str] = None
    suggested_fix: Optional[str] = None


class LearningReport(MetricsModel):
    layer: str = "all"
    total_executions: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    top_errors: Dict[str, int] = Field(default_factory=dict)
    patterns: List[LearningPattern] = Field(default_factory=list)

    def render(self) -> str:
        lines = [
            f"Learning report (layer: {self.layer})",
            f"Total executions: {self.total_executions}",
            f"Success rate: {self.success_rate * 100:.1f}%",
            f"Average duration: {self.average_duration_ms:.0f}ms",
        ]
        if self.top_errors:
            lines.append("Top errors:")
            for name, count in self.top_errors.items():
                lines.append(f"- {name}: {count}")
        if self.patterns:
            lines.append("Patterns:")
            for pattern in self.patterns:
                entry = (
                    f"- {pattern.pattern}: {pattern.occurrences} occurrence(s), "
                    f"{pattern.success_rate * 100:.0f}% success"
                )
                if pattern.suggested_fix:
                    entry += f" -> {pattern.suggested_fix}"
                lines.append(entry)
        return "\n".join(lines)


def classify_error(log: str) -> str:
    for pattern, name in ERROR_TYPE_PATTERNS:
        if pattern.search(log):
            return name
    return "unknown"


def suggest_fix(error_type: str | None, layer: Layer | None) -> str:
    suggestion = BASE_SUGGESTIONS.get(error_type or "", "Review and debug the failing step")
    if layer is not None:
        suggestion = f"{suggestion}. {LAYER_SUGGESTIONS[layer]}"
    return suggestion


def extract_duration(log: str) -> int:
    match = _DURATION_RE.search(log or "")
    return int(match.group(1)) if match else 0


def metric_for_step(step: Step, layer_info: LayerInfo | None) -> ExecutionMetric:
    success = step.status is StepStatus.SUCCESS
    metric = ExecutionMetric(
        step_id=step.id,
        kind=step.kind.value,
        success=success,
        duration_ms=extract_duration(step.execution_log),
        layer=layer_info.layer.value if layer_info else None,
        target=layer_info.target.value if layer_info else None,
    )
    if step.status is StepStatus.FAILED:
        metric.error_type = classify_error(step.execution_log)
        metric.error_message = step.execution_log[:500]
    return metric


class MetricsStore:
    """JSON-backed metrics history under the state directory."""

    _lock = threading.Lock()

    def __init__(self, root: Path) -> None:
        self.root = root
        self.metrics_path = root / "metrics.json"
        self.patterns_path = root / "patterns.json"

    # ------------------------------------------------------------------ load
    def load_metrics(self) -> List[ExecutionMetric]:
        raw = read_json(self.metrics_path, [])
        return [ExecutionMetric.model_validate(entry) for entry in raw]

    def load_patterns(self) -> Dict[str, LearningPattern]:
        raw = read_json(self.patterns_path, {})
        return {key: LearningPattern.model_validate(value) for key, value in raw.items()}

    # ---------------------------------------------------------------- record
    def record_run(self, steps: Sequence[Step], layer_info: LayerInfo | None) -> List[ExecutionMetric]:
        """Append metrics for attempted steps and update pattern statistics."""

        attempted = [step for step in steps if step.status in {StepStatus.SUCCESS, StepStatus.FAILED}]
        metrics = [metric_for_step(step, layer_info) for step in attempted]
        if not metrics:
            return []
        with self._lock:
            history = self.load_metrics()
            history.extend(metrics)
            history = history[-MAX_METRICS:]
            write_json_atomic(self.metrics_path, [entry.model_dump(mode="json") for entry in history])

            patterns = self.load_patterns()
            for metric in metrics:
                self._fold(patterns, metric, layer_info)
            write_json_atomic(
                self.patterns_path,
                {key: value.model_dump(mode="json") for key, value in patterns.items()},
            )
        LOGGER.debug("Recorded %d metric(s) in %s", len(metrics), self.metrics_path)
        return metrics

    @staticmethod
    def _fold(patterns: Dict[str, LearningPattern], metric: ExecutionMetric, layer_info: LayerInfo | None) -> None:
        prefix = f"{layer_info.layer.value}_" if layer_info else ""
        key = f"{prefix}{metric.kind}_{metric.error_type or 'success'}"
        entry = patterns.get(key) or LearningPattern(pattern=key, layer=metric.layer)
        entry.occurrences += 1
        entry.last_seen = utc_now()
        successes = entry.success_rate * (entry.occurrences - 1) + (1 if metric.success else 0)
        entry.success_rate = successes / entry.occurrences
        if (
            not metric.success
            and entry.occurrences > SUGGESTION_MIN_OCCURRENCES
            and entry.success_rate < SUGGESTION_MAX_SUCCESS_RATE
        ):
            entry.suggested_fix = suggest_fix(metric.error_type, layer_info.layer if layer_info else None)
        patterns[key] = entry

    # ---------------------------------------------------------------- report
    def build_report(self, layer: Layer | None = None) -> LearningReport:
        metrics = self.load_metrics()
        patterns = list(self.load_patterns().values())
        if layer is not None:
            metrics = [metric for metric in metrics if metric.layer == layer.value]
            patterns = [pattern for pattern in patterns if pattern.layer == layer.value]

        total = len(metrics)
        errors = Counter(metric.error_type or "unknown" for metric in metrics if not metric.success)
        patterns.sort(key=lambda item: item.occurrences, reverse=True)
        return LearningReport(
            layer=layer.value if layer else "all",
            total_executions=total,
            success_rate=(sum(1 for metric in metrics if metric.success) / total) if total else 0.0,
            average_duration_ms=(sum(metric.duration_ms for metric in metrics) / total) if total else 0.0,
            top_errors=dict(errors.most_common(5)),
            patterns=patterns[:10],
        )


__all__ = [
    "ExecutionMetric",
    "LearningPattern",
    "LearningReport",
    "MetricsStore",
    "classify_error",
    "metric_for_step",
    "suggest_fix",
]
