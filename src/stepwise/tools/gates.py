"""Quality gate orchestration for lint and test checks.

Checks run as independent child processes launched concurrently.  A check
whose command cannot be resolved or started is reported as failed; the gate
never passes because of an internal error.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List

from ..config import CheckSettings, ExecutorConfig
from .packages import PackageManagerUnavailable, UnsafeScriptError, build_script_command

LOGGER = logging.getLogger(__name__)

MAX_ERROR_LINES = 10

_LINT_POSITION_RE = re.compile(r"^\s*\d+:\d+\s+(error|warning)", re.IGNORECASE)
_LINT_FILE_HEADER_RE = re.compile(r"^/.*\.(ts|js|tsx|jsx|vue|py)$")
_LINT_COMPACT_RE = re.compile(r"^\S+:\d+:\d+:?\s")
_TEST_FAILURE_RE = re.compile(r"FAIL|✕|×|failed", re.IGNORECASE)
_TEST_SUMMARY_RE = re.compile(r"Tests:.*failed", re.IGNORECASE)
_GENERIC_ERROR_RE = re.compile(r"error|failed|exception", re.IGNORECASE)


def _parse_lint(lines: Sequence[str]) -> List[str]:
    errors: List[str] = []
    for line in lines:
        if _LINT_POSITION_RE.match(line) or _LINT_FILE_HEADER_RE.match(line) or _LINT_COMPACT_RE.match(line):
            errors.append(line.strip())
    return errors


def _parse_test(lines: Sequence[str]) -> List[str]:
    errors: List[str] = []
    in_failure = False
    for line in lines:
        if _TEST_FAILURE_RE.search(line):
            in_failure = True
            errors.append(line.strip())
        elif in_failure and line.strip():
            errors.append(line.strip())
            if len(errors) >= MAX_ERROR_LINES:
                break
        elif _TEST_SUMMARY_RE.search(line):
            errors.append(line.strip())
    return errors


def _parse_generic(lines: Sequence[str]) -> List[str]:
    return [line.strip() for line in lines if _GENERIC_ERROR_RE.search(line)]


ERROR_PARSERS: Dict[str, Callable[[Sequence[str]], List[str]]] = {
    "lint": _parse_lint,
    "test": _parse_test,
}


def extract_error_lines(output: str, check_name: str, *, limit: int = MAX_ERROR_LINES) -> List[str]:
    """Return at most ``limit`` lines worth showing for a failed check."""

    lines = output.splitlines()
    parser = ERROR_PARSERS.get(check_name, _parse_generic)
    errors = parser(lines)
    if not errors and parser is not _parse_generic:
        errors = _parse_generic(lines)
    if not errors:
        errors = [line.strip() for line in lines if line.strip()][-limit:]
    return errors[:limit]


@dataclass(slots=True)
class QualityCheck:
    """A configured check: an explicit argv or a package script."""

    name: str
    command: Sequence[str] | None = None
    script: str | None = None

    def resolve_command(self, cwd: Path, *, allowed_scripts: Sequence[str] = ()) -> List[str]:
        if self.command:
            return list(self.command)
        if self.script:
            return build_script_command(cwd, self.script, allowed=allowed_scripts)
        raise UnsafeScriptError(f"Check {self.name!r} has neither a command nor a script")

    def run(self, cwd: Path, *, allowed_scripts: Sequence[str] = ()) -> "QualityCheckResult":
        try:
            command = self.resolve_command(cwd, allowed_scripts=allowed_scripts)
        except (UnsafeScriptError, PackageManagerUnavailable) as error:
            return QualityCheckResult.crashed(self.name, [], str(error))

        try:
            process = subprocess.run(  # noqa: S603  # command is sourced from executor config
                command,
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                errors="replace",
            )
        except OSError as error:
            return QualityCheckResult.crashed(self.name, command, f"Unable to run {command[0]}: {error}")

        output = "\n".join(part for part in (process.stdout, process.stderr) if part)
        passed = process.returncode == 0
        return QualityCheckResult(
            name=self.name,
            passed=passed,
            output=output,
            command=command,
            exit_code=process.returncode,
            errors=[] if passed else extract_error_lines(output, self.name),
        )


@dataclass(slots=True)
class QualityCheckResult:
    name: str
    passed: bool
    output: str
    command: List[str] = field(default_factory=list)
    exit_code: int | None = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def crashed(cls, name: str, command: List[str], message: str) -> "QualityCheckResult":
        return cls(name=name, passed=False, output=message, command=command, exit_code=None, errors=[message])

    def short_message(self) -> str:
        if self.passed:
            return f"{self.name}: passed"
        detail = self.errors[0] if self.errors else f"exit code {self.exit_code}"
        return f"{self.name}: failed ({detail})"


@dataclass(slots=True)
class QualityGateReport:
    results: List[QualityCheckResult] = field(default_factory=list)

    @property
    def overall_passed(self) -> bool:
        return all(result.passed for result in self.results)

    def result_for(self, name: str) -> QualityCheckResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def format_summary(self) -> str:
        if not self.results:
            return "No quality checks enabled."
        lines: List[str] = []
        for result in self.results:
            lines.append(f"{result.name.capitalize()}: {'PASSED' if result.passed else 'FAILED'}")
            for error in result.errors:
                lines.append(f"  {error}")
        return "\n".join(lines)


def checks_from_settings(settings: Mapping[str, CheckSettings]) -> List[QualityCheck]:
    checks: List[QualityCheck] = []
    for name, entry in settings.items():
        if not entry.enabled:
            continue
        checks.append(QualityCheck(name=name, command=entry.command, script=entry.script))
    return checks


class QualityGate:
    """Run the enabled checks concurrently and aggregate their results."""

    def __init__(
        self,
        root: Path,
        checks: Sequence[QualityCheck],
        *,
        allowed_scripts: Sequence[str] = (),
    ) -> None:
        self.root = root
        self.checks = list(checks)
        self.allowed_scripts = list(allowed_scripts)

    @classmethod
    def from_config(cls, config: ExecutorConfig, root: Path) -> "QualityGate":
        section = config.quality_checks
        checks = checks_from_settings({"lint": section.lint, "test": section.test})
        return cls(root, checks, allowed_scripts=section.allowed_scripts)

    def _run_one(self, check: QualityCheck) -> QualityCheckResult:
        try:
            return check.run(self.root, allowed_scripts=self.allowed_scripts)
        except Exception as error:  # noqa: BLE001 - a crashing check must fail the gate
            LOGGER.exception("Quality check %s crashed", check.name)
            return QualityCheckResult.crashed(check.name, list(check.command or []), f"Check crashed: {error}")

    def run(self) -> QualityGateReport:
        if not self.checks:
            return QualityGateReport()
        with ThreadPoolExecutor(max_workers=len(self.checks), thread_name_prefix="quality-check") as pool:
            results = list(pool.map(self._run_one, self.checks))
        for result in results:
            if result.passed:
                LOGGER.info("%s check passed", result.name)
            else:
                LOGGER.warning("%s check failed", result.name)
                for line in result.errors:
                    LOGGER.warning("  %s", line)
        return QualityGateReport(results=results)


__all__ = [
    "ERROR_PARSERS",
    "MAX_ERROR_LINES",
    "QualityCheck",
    "QualityCheckResult",
    "QualityGate",
    "QualityGateReport",
    "checks_from_settings",
    "extract_error_lines",
]
