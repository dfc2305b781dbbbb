"""Run several plan documents with bounded concurrency."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..config import ExecutorConfig
from .executor import EXIT_INTERRUPTED, RunStatus, RunSummary, StepExecutor
from .schema import Layer, LayerInfo, Target, detect_layer_info
from .store import PlanStore, PlanStoreError

LOGGER = logging.getLogger(__name__)

LAYER_ORDER: List[Layer] = list(Layer)


@dataclass(slots=True)
class PlanSelector:
    """Which templates a batch run picks up; ``all`` wins over filters."""

    all: bool = False
    layer: Optional[Layer] = None
    target: Optional[Target] = None

    def is_empty(self) -> bool:
        return not self.all and self.layer is None and self.target is None

    def matches(self, info: LayerInfo | None) -> bool:
        if self.all:
            return True
        if info is None:
            return False
        if self.layer is not None and info.layer is not self.layer:
            return False
        if self.target is not None and info.target is not self.target:
            return False
        return True


@dataclass(slots=True)
class BatchSummary:
    runs: List[RunSummary] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def count(self, status: RunStatus) -> int:
        return sum(1 for run in self.runs if run.status is status)

    @property
    def succeeded(self) -> int:
        return self.count(RunStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self.count(RunStatus.FAILED) + len(self.errors)

    @property
    def interrupted(self) -> int:
        return self.count(RunStatus.INTERRUPTED)

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return EXIT_INTERRUPTED
        return 1 if self.failed else 0

    def format_summary(self) -> str:
        lines = [
            f"Batch finished: {self.succeeded} succeeded, {self.failed} failed, {self.interrupted} interrupted",
        ]
        for run in self.runs:
            lines.append(f"- {run.plan_path.name}: {run.status.value}")
        for name, message in sorted(self.errors.items()):
            lines.append(f"- {name}: ERROR {message}")
        return "\n".join(lines)


def _layer_for(path: Path) -> LayerInfo | None:
    info = detect_layer_info(path, None)
    if info is not None:
        return info
    try:
        return detect_layer_info(path, PlanStore(path).load())
    except PlanStoreError as error:
        LOGGER.warning("Skipping unreadable plan %s: %s", path, error)
        return None


def _sort_key(item: tuple[Path, LayerInfo | None]) -> tuple[int, str]:
    path, info = item
    rank = LAYER_ORDER.index(info.layer) if info is not None else len(LAYER_ORDER)
    return rank, path.name


def discover_plans(templates_dir: Path, patterns: List[str], selector: PlanSelector) -> List[Path]:
    """Return matching plan files ordered domain -> data -> infra -> presentation -> main."""

    if not templates_dir.is_dir():
        LOGGER.warning("Templates directory %s does not exist", templates_dir)
        return []
    found: Dict[Path, LayerInfo | None] = {}
    for pattern in patterns:
        for path in templates_dir.glob(pattern):
            if path.is_file() and path not in found:
                found[path] = _layer_for(path)
    selected = [(path, info) for path, info in found.items() if selector.matches(info)]
    return [path for path, _ in sorted(selected, key=_sort_key)]


ExecutorFactory = Callable[[Path, threading.Event], StepExecutor]


def run_batch(
    plans: List[Path],
    *,
    config: ExecutorConfig,
    max_parallel: int | None = None,
    executor_factory: ExecutorFactory | None = None,
    cancel_event: threading.Event | None = None,
) -> BatchSummary:
    """Execute ``plans`` with at most ``max_parallel`` running at once.

    Each plan gets its own executor and context.  Interrupting the batch sets
    the shared cancel event so every run stops at its next step boundary.
    """

    cancel = cancel_event or threading.Event()
    workers = max(1, max_parallel or config.batch.max_parallel)

    def _default_factory(path: Path, event: threading.Event) -> StepExecutor:
        return StepExecutor(path, config=config, cancel_event=event)

    factory = executor_factory or _default_factory
    summary = BatchSummary()
    if not plans:
        return summary

    LOGGER.info("Running %d plan(s) with max_parallel=%d", len(plans), workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="plan-run") as pool:
        futures: Dict[Path, Future[RunSummary]] = {
            path: pool.submit(lambda p=path: factory(p, cancel).run()) for path in plans
        }
        try:
            for path, future in futures.items():
                _collect(summary, path, future)
        except KeyboardInterrupt:
            LOGGER.warning("Batch interrupted; stopping runs at the next step boundary")
            cancel.set()
            for future in futures.values():
                future.cancel()
            for path, future in futures.items():
                if not future.cancelled():
                    _collect(summary, path, future)
    LOGGER.info(summary.format_summary())
    return summary


def _collect(summary: BatchSummary, path: Path, future: Future[RunSummary]) -> None:
    if any(run.plan_path == path.resolve() for run in summary.runs) or path.name in summary.errors:
        return
    try:
        summary.runs.append(future.result())
    except PlanStoreError as error:
        LOGGER.error("Plan %s could not be run: %s", path, error)
        summary.errors[path.name] = str(error)


__all__ = ["BatchSummary", "PlanSelector", "discover_plans", "run_batch"]
