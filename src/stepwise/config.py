"""Executor configuration loaded from ``stepwise.yaml``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "stepwise.yaml"
DEFAULT_STATE_DIR = ".stepwise"

DEFAULT_COMMIT_TYPES: Dict[str, Optional[str]] = {
    "create_file": "feat",
    "refactor_file": "refactor",
    "delete_file": "chore",
    "create_folders": "chore",
    "branch": None,
    "pull_request": None,
}

DEFAULT_TEMPLATE_PATTERNS: List[str] = [
    "*-template.regent",
    "*-template.yaml",
    "*-template.yml",
]


class ConfigError(ValueError):
    """Raised when a configuration file cannot be located or parsed."""


class SettingsModel(BaseModel):
    """Base model for configuration sections."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class ProjectSettings(SettingsModel):
    repo_root: str = "."


class PathSettings(SettingsModel):
    state_dir: str = DEFAULT_STATE_DIR


class CommitSettings(SettingsModel):
    enabled: bool = True
    conventional_commits: bool = True
    type_mapping: Dict[str, Optional[str]] = Field(default_factory=lambda: dict(DEFAULT_COMMIT_TYPES))
    co_author: Optional[str] = None


class CheckSettings(SettingsModel):
    """One quality check: a package script name or an explicit argv."""

    enabled: bool = True
    script: Optional[str] = None
    command: Optional[List[str]] = None


class QualityCheckSettings(SettingsModel):
    lint: CheckSettings = Field(default_factory=lambda: CheckSettings(script="lint"))
    test: CheckSettings = Field(default_factory=lambda: CheckSettings(script="test --run"))
    allowed_scripts: List[str] = Field(default_factory=list)


class ScoringSettings(SettingsModel):
    cache_enabled: bool = True
    cache_size: int = Field(default=100, ge=1)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    rules_path: Optional[str] = None


class SnapshotSettings(SettingsModel):
    retention_days: int = Field(default=7, ge=0)
    delete_after_rollback: bool = False
    rollback_on_failure: bool = False


class GitSettings(SettingsModel):
    safety_grace_seconds: float = Field(default=5.0, ge=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)


class ValidationSettings(SettingsModel):
    enabled: bool = True
    grace_period_seconds: float = Field(default=5.0, ge=0)


class BatchSettings(SettingsModel):
    templates_dir: str = "templates"
    patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_TEMPLATE_PATTERNS))
    max_parallel: int = Field(default=1, ge=1)


class ExecutorConfig(SettingsModel):
    """Validated executor configuration."""

    project: ProjectSettings = Field(default_factory=ProjectSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    commit: CommitSettings = Field(default_factory=CommitSettings)
    quality_checks: QualityCheckSettings = Field(default_factory=QualityCheckSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    snapshots: SnapshotSettings = Field(default_factory=SnapshotSettings)
    git: GitSettings = Field(default_factory=GitSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)

    source_path: Optional[Path] = Field(default=None, exclude=True)

    def resolve_repo_root(self, base: Path | None = None) -> Path:
        """Return the repository root, relative entries anchored at ``base``."""

        anchor = base
        if anchor is None:
            anchor = self.source_path.parent if self.source_path else Path.cwd()
        root = Path(self.project.repo_root).expanduser()
        if not root.is_absolute():
            root = anchor / root
        return root.resolve()

    def resolve_state_dir(self, repo_root: Path) -> Path:
        state = Path(self.paths.state_dir).expanduser()
        if not state.is_absolute():
            state = repo_root / state
        return state

    def resolve_rules_path(self, repo_root: Path) -> Path | None:
        if not self.scoring.rules_path:
            return None
        path = Path(self.scoring.rules_path).expanduser()
        if not path.is_absolute():
            path = repo_root / path
        return path


def config_from_mapping(data: Mapping[str, Any] | None, *, source: Path | None = None) -> ExecutorConfig:
    """Validate ``data`` falling back to defaults when it is invalid."""

    payload = dict(data or {})
    try:
        config = ExecutorConfig.model_validate(payload)
    except ValidationError as error:
        for issue in error.errors():
            location = ".".join(str(part) for part in issue.get("loc", ()))
            LOGGER.warning("Invalid configuration at %s: %s", location or "<root>", issue.get("msg"))
        LOGGER.warning("Falling back to default configuration.")
        config = ExecutorConfig()
    config.source_path = source
    return config


def load_config(path: Path | str | None = None, *, search_dir: Path | None = None) -> ExecutorConfig:
    """Load configuration from ``path`` or ``<search_dir>/stepwise.yaml``.

    An explicitly requested file must exist.  When no path is given and the
    default file is absent the built-in defaults are returned.
    """

    if path is None:
        candidate = (search_dir or Path.cwd()) / DEFAULT_CONFIG_NAME
        if not candidate.exists():
            LOGGER.debug("No %s found; using defaults.", DEFAULT_CONFIG_NAME)
            return config_from_mapping({}, source=None)
        config_path = candidate
    else:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as error:
        LOGGER.warning("Unable to parse %s: %s; using defaults.", config_path, error)
        raw = {}
    if not isinstance(raw, Mapping):
        LOGGER.warning("Configuration root in %s must be a mapping; using defaults.", config_path)
        raw = {}
    return config_from_mapping(raw, source=config_path.resolve())


__all__ = [
    "BatchSettings",
    "CheckSettings",
    "CommitSettings",
    "ConfigError",
    "DEFAULT_COMMIT_TYPES",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_STATE_DIR",
    "ExecutorConfig",
    "GitSettings",
    "PathSettings",
    "QualityCheckSettings",
    "ScoringSettings",
    "SnapshotSettings",
    "ValidationSettings",
    "config_from_mapping",
    "load_config",
]
