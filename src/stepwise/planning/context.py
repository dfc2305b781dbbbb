"""Execution context threaded through step dispatch."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from ..config import ExecutorConfig
from ..tools.run_log import RunLog
from ..tools.vcs import GitRepository
from .schema import ExecutionPlan, Layer, LayerInfo


@dataclass(slots=True)
class ExecutionContext:
    """Everything one plan run needs; never shared between runs."""

    plan: ExecutionPlan
    plan_path: Path
    root: Path
    config: ExecutorConfig
    layer_info: LayerInfo | None = None
    repo: GitRepository | None = None
    run_log: RunLog | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    commit_hashes: List[str] = field(default_factory=list)

    @property
    def layer(self) -> Layer | None:
        return self.layer_info.layer if self.layer_info else None

    @property
    def working_dir(self) -> Path:
        """Directory validation scripts and quality checks run from."""
        configured = self.plan.metadata.working_dir
        if configured:
            candidate = Path(configured)
            return candidate if candidate.is_absolute() else self.root / candidate
        return self.root

    def log(self, message: str, *args: object) -> None:
        if self.run_log is not None:
            self.run_log.info(message, *args)

    def warn(self, message: str, *args: object) -> None:
        if self.run_log is not None:
            self.run_log.warning(message, *args)


__all__ = ["ExecutionContext"]
