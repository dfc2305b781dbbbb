"""Plan document persistence.

The plan document is the single source of truth for resumability.  It is
rewritten in full after every step; writes go to a temporary file in the
same directory which is fsynced and atomically moved into place.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from ..utils.fs import write_text_atomic
from .schema import ExecutionPlan

LOGGER = logging.getLogger(__name__)


class PlanStoreError(RuntimeError):
    """Raised when a plan document cannot be read, validated or written."""


class _PlanDumper(yaml.SafeDumper):
    """Safe dumper that keeps multi-line payloads readable."""


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_PlanDumper.add_representer(str, _represent_str)


def parse_plan(data: Mapping[str, Any], *, source: str = "<memory>") -> ExecutionPlan:
    try:
        return ExecutionPlan.model_validate(dict(data))
    except ValidationError as error:
        raise PlanStoreError(f"Invalid plan document {source}: {error}") from error


def dump_plan(plan: ExecutionPlan) -> str:
    return yaml.dump(plan.to_document(), Dumper=_PlanDumper, sort_keys=False, allow_unicode=True, width=120)


class PlanStore:
    """Load and persist one plan document."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> ExecutionPlan:
        if not self.path.is_file():
            raise PlanStoreError(f"Plan document not found: {self.path}")
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise PlanStoreError(f"Unable to parse plan document {self.path}: {error}") from error
        if not isinstance(data, Mapping):
            raise PlanStoreError(f"Expected mapping at top level of {self.path}")
        plan = parse_plan(data, source=str(self.path))
        LOGGER.debug("Loaded plan %s", self.path)
        return plan

    def save(self, plan: ExecutionPlan) -> None:
        """Rewrite the whole document; returns only once it is durable."""

        text = dump_plan(plan)
        with self._lock:
            try:
                write_text_atomic(self.path, text)
            except OSError as error:
                raise PlanStoreError(f"Unable to write plan document {self.path}: {error}") from error
        LOGGER.debug("Persisted plan %s", self.path)


__all__ = ["PlanStore", "PlanStoreError", "dump_plan", "parse_plan"]
