"""Structural pre-validation of plan documents.

The executor treats a failing report as advisory: errors are logged, a
grace period elapses, then execution continues.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from pydantic import ValidationError

from .handlers import REPLACE_BLOCK_RE, WITH_BLOCK_RE
from .schema import ExecutionPlan, Step, StepKind, detect_layer_info


@dataclass(slots=True)
class ValidationReport:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    detected_target: Optional[str] = None
    detected_layer: Optional[str] = None

    def format_summary(self) -> str:
        lines = [f"Plan is {'valid' if self.valid else 'invalid'}"]
        if self.detected_target or self.detected_layer:
            lines.append(f"Detected: {self.detected_target or '?'} / {self.detected_layer or '?'}")
        lines.extend(f"error: {message}" for message in self.errors)
        lines.extend(f"warning: {message}" for message in self.warnings)
        return "\n".join(lines)


PlanValidator = Callable[[Path], ValidationReport]


def _step_errors(step: Step) -> List[str]:
    label = f"Step '{step.id}' ({step.kind.value})"
    errors: List[str] = []
    if step.kind in {StepKind.CREATE_FILE, StepKind.REFACTOR_FILE, StepKind.DELETE_FILE} and not step.target_path:
        errors.append(f"{label} is missing a target path")
    if step.kind is StepKind.CREATE_FILE and step.payload is None:
        errors.append(f"{label} is missing file content")
    if step.kind is StepKind.REFACTOR_FILE:
        payload = step.content
        if not REPLACE_BLOCK_RE.search(payload) or not WITH_BLOCK_RE.search(payload):
            errors.append(f"{label} must contain <<<REPLACE>>> and <<<WITH>>> blocks")
    action = step.action
    if step.kind is StepKind.CREATE_FOLDERS and (action is None or action.create_folders is None):
        errors.append(f"{label} is missing action.create_folders")
    if step.kind is StepKind.BRANCH and (action is None or not action.branch_name):
        errors.append(f"{label} is missing action.branch_name")
    if step.kind is StepKind.PULL_REQUEST and (action is None or not action.source_branch or not action.target_branch):
        errors.append(f"{label} is missing action.source_branch or action.target_branch")
    return errors


def validate_plan(path: Path) -> ValidationReport:
    """Check ``path`` without executing anything."""

    report = ValidationReport(valid=False)
    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as error:
        report.errors.append(f"Unable to read plan: {error}")
        return report
    if not isinstance(data, dict):
        report.errors.append("Plan document must be a mapping")
        return report

    try:
        plan = ExecutionPlan.model_validate(data)
    except ValidationError as error:
        for issue in error.errors():
            location = ".".join(str(part) for part in issue.get("loc", ()))
            report.errors.append(f"{location or '<root>'}: {issue.get('msg')}")
        return report

    layer_info = detect_layer_info(Path(path), plan)
    if layer_info is not None:
        report.detected_target = layer_info.target.value
        report.detected_layer = layer_info.layer.value
    else:
        report.warnings.append("Unable to detect target and layer from the file name or metadata")

    steps = plan.active_steps(layer_info.layer if layer_info else None)
    if not steps:
        report.errors.append("Plan has no steps")

    duplicates = sorted(step_id for step_id, count in Counter(step.id for step in steps).items() if count > 1)
    for step_id in duplicates:
        report.errors.append(f"Duplicate step id '{step_id}'")

    for step in steps:
        report.errors.extend(_step_errors(step))
        if step.kind in {StepKind.CREATE_FILE, StepKind.REFACTOR_FILE} and not step.validation_command:
            report.warnings.append(f"Step '{step.id}' has no validation script")

    report.valid = not report.errors
    return report


__all__ = ["PlanValidator", "ValidationReport", "validate_plan"]
