"""Integrations with git, child processes and the filesystem."""

from .commits import CommitManager, CommitOutcome, extract_scope, generate_commit_message, should_commit
from .gates import QualityCheck, QualityCheckResult, QualityGate, QualityGateReport, extract_error_lines
from .packages import PackageManager, UnsafeScriptError, build_script_command, detect_package_manager
from .run_log import RunLog
from .scripts import ScriptResult, ValidationScriptError, run_validation_script
from .snapshots import RollbackError, Snapshot, SnapshotManager
from .vcs import GitError, GitRepository, retry_git

__all__ = [
    "CommitManager",
    "CommitOutcome",
    "GitError",
    "GitRepository",
    "PackageManager",
    "QualityCheck",
    "QualityCheckResult",
    "QualityGate",
    "QualityGateReport",
    "RollbackError",
    "RunLog",
    "ScriptResult",
    "Snapshot",
    "SnapshotManager",
    "UnsafeScriptError",
    "ValidationScriptError",
    "build_script_command",
    "detect_package_manager",
    "extract_error_lines",
    "extract_scope",
    "generate_commit_message",
    "retry_git",
    "run_validation_script",
    "should_commit",
]
