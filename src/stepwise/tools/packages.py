"""Package-manager detection and safe script command construction."""

from __future__ import annotations

import re
import shutil
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Sequence


class UnsafeScriptError(ValueError):
    """Raised when a script name fails the safety checks."""


class PackageManagerUnavailable(RuntimeError):
    """Raised when the detected package manager is not installed."""


class PackageManager(str, Enum):
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"


LOCKFILES: tuple[tuple[str, PackageManager], ...] = (
    ("pnpm-lock.yaml", PackageManager.PNPM),
    ("yarn.lock", PackageManager.YARN),
)

_SAFE_SCRIPT_RE = re.compile(r"^[A-Za-z0-9:\-\s]+$")

DANGEROUS_KEYWORDS: frozenset[str] = frozenset(
    {"rm", "sudo", "curl", "wget", "eval", "exec", "chmod", "chown", "mv", "dd", "mkfs", "shutdown", "reboot"}
)


def detect_package_manager(root: Path) -> PackageManager:
    """Pick the package manager from lockfiles present in ``root``."""

    for lockfile, manager in LOCKFILES:
        if (root / lockfile).exists():
            return manager
    return PackageManager.NPM


def validate_script_name(script: str, *, allowed: Iterable[str] = ()) -> List[str]:
    """Return the script split into arguments or raise :class:`UnsafeScriptError`."""

    candidate = script.strip()
    allowed_set = {entry.strip() for entry in allowed if entry.strip()}
    if allowed_set and candidate not in allowed_set:
        raise UnsafeScriptError(f"Script {candidate!r} is not in the allowed list")
    if not candidate or not _SAFE_SCRIPT_RE.match(candidate):
        raise UnsafeScriptError(f"Script {candidate!r} contains unsupported characters")
    parts = candidate.split()
    blocked = sorted(DANGEROUS_KEYWORDS.intersection(part.lower() for part in parts))
    if blocked:
        raise UnsafeScriptError(f"Script {candidate!r} contains blocked keyword(s): {', '.join(blocked)}")
    return parts


def build_script_command(
    root: Path,
    script: str,
    *,
    allowed: Sequence[str] = (),
    manager: PackageManager | None = None,
) -> List[str]:
    """Return the argv that runs ``script`` through the project's package manager."""

    parts = validate_script_name(script, allowed=allowed)
    selected = manager or detect_package_manager(root)
    if shutil.which(selected.value) is None:
        raise PackageManagerUnavailable(f"{selected.value} is not installed or not on PATH")
    if selected is PackageManager.NPM:
        return [selected.value, "run", *parts]
    return [selected.value, *parts]


__all__ = [
    "DANGEROUS_KEYWORDS",
    "PackageManager",
    "PackageManagerUnavailable",
    "UnsafeScriptError",
    "build_script_command",
    "detect_package_manager",
    "validate_script_name",
]
