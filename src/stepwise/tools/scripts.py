"""Run step validation scripts, streaming their output as it arrives."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

LOGGER = logging.getLogger(__name__)

MAX_CAPTURED_LINES = 2000
TERMINATE_TIMEOUT_SECONDS = 5.0


class ValidationScriptError(RuntimeError):
    """A validation script exited with a non-zero status."""

    def __init__(self, exit_code: int, output: str) -> None:
        self.exit_code = exit_code
        self.output = output
        tail = "\n".join(output.splitlines()[-20:])
        super().__init__(f"Validation script failed with exit code {exit_code}\n{tail}".rstrip())


@dataclass(slots=True)
class ScriptResult:
    exit_code: int
    output: str


def _shell() -> str:
    return shutil.which("bash") or shutil.which("sh") or "sh"


def _stop(process: subprocess.Popen[str]) -> None:
    """Terminate a script abandoned mid-run, killing it if it lingers."""
    LOGGER.warning("Stopping validation script (pid %d)", process.pid)
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_validation_script(
    script: str,
    *,
    cwd: Path,
    on_line: Callable[[str], None] | None = None,
    env: dict[str, str] | None = None,
) -> ScriptResult:
    """Execute ``script`` with the system shell from ``cwd``.

    Each output line (stdout and stderr merged) is passed to ``on_line`` as
    soon as it is read.  Raises :class:`ValidationScriptError` on a non-zero
    exit status.
    """

    emit = on_line or (lambda line: LOGGER.info("%s", line))
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        suffix=".sh",
        prefix="stepwise-validate-",
        delete=False,
    ) as handle:
        handle.write(script)
        script_path = Path(handle.name)

    captured: List[str] = []
    process: subprocess.Popen[str] | None = None
    try:
        process = subprocess.Popen(  # noqa: S603  # script comes from the plan document
            [_shell(), str(script_path)],
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
            env={**os.environ, **(env or {})},
        )
        assert process.stdout is not None
        with process.stdout:
            for raw in process.stdout:
                line = raw.rstrip("\n")
                emit(line)
                captured.append(line)
                if len(captured) > MAX_CAPTURED_LINES:
                    del captured[0]
        exit_code = process.wait()
    finally:
        if process is not None and process.poll() is None:
            _stop(process)
        script_path.unlink(missing_ok=True)

    output = "\n".join(captured)
    if exit_code != 0:
        raise ValidationScriptError(exit_code, output)
    return ScriptResult(exit_code=exit_code, output=output)


__all__ = ["ScriptResult", "ValidationScriptError", "run_validation_script"]
