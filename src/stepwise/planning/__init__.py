"""
Plan documents and the step execution engine.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "ExecutionPlan": "stepwise.planning.schema",
    "LayerInfo": "stepwise.planning.schema",
    "Step": "stepwise.planning.schema",
    "StepKind": "stepwise.planning.schema",
    "StepStatus": "stepwise.planning.schema",
    "PlanStore": "stepwise.planning.store",
    "PlanStoreError": "stepwise.planning.store",
    "validate_plan": "stepwise.planning.validation",
    "RunStatus": "stepwise.planning.executor",
    "RunSummary": "stepwise.planning.executor",
    "StepExecutor": "stepwise.planning.executor",
    "run_plan": "stepwise.planning.executor",
    "BatchSummary": "stepwise.planning.batch",
    "run_batch": "stepwise.planning.batch",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers so ``planning.schema`` stays cheap to import."""
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
