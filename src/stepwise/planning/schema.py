"""Typed records for plan documents and their steps."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

SCORE_MIN = -2
SCORE_MAX = 2

_TEMPLATE_NAME_RE = re.compile(
    r"^(backend|frontend|fullstack)-(domain|data|infra|presentation|main)-template(?:\.[A-Za-z0-9]+)*$"
)


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def utc_iso() -> str:
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def clamp_score(value: float) -> int:
    """Round ``value`` and clamp it into the closed score interval."""
    return int(max(SCORE_MIN, min(SCORE_MAX, round(value))))


class PlanModel(BaseModel):
    """Base model for plan records; unknown keys survive a rewrite."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=False)


class StepKind(str, Enum):
    """Closed set of step variants understood by the executor."""

    CREATE_FILE = "create_file"
    REFACTOR_FILE = "refactor_file"
    DELETE_FILE = "delete_file"
    CREATE_FOLDERS = "create_folders"
    BRANCH = "branch"
    PULL_REQUEST = "pull_request"

    @classmethod
    def _missing_(cls, value: object) -> "StepKind | None":
        if isinstance(value, str):
            lowered = value.strip().lower()
            aliases = {
                "folder": cls.CREATE_FOLDERS,
                "folders": cls.CREATE_FOLDERS,
                "create_folder": cls.CREATE_FOLDERS,
                "create_branch": cls.BRANCH,
                "pr": cls.PULL_REQUEST,
                "create_pull_request": cls.PULL_REQUEST,
            }
            if lowered in aliases:
                return aliases[lowered]
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    @property
    def touches_files(self) -> bool:
        return self in {StepKind.CREATE_FILE, StepKind.REFACTOR_FILE, StepKind.DELETE_FILE}


class StepStatus(str, Enum):
    """Lifecycle states for a step."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @classmethod
    def _missing_(cls, value: object) -> "StepStatus | None":
        if isinstance(value, str):
            upper = value.strip().upper()
            for member in cls:
                if member.value == upper:
                    return member
        return None


class Target(str, Enum):
    BACKEND = "backend"
    FRONTEND = "frontend"
    FULLSTACK = "fullstack"


class Layer(str, Enum):
    DOMAIN = "domain"
    DATA = "data"
    INFRA = "infra"
    PRESENTATION = "presentation"
    MAIN = "main"

    @classmethod
    def _missing_(cls, value: object) -> "Layer | None":
        if isinstance(value, str) and value.strip().lower() == "infrastructure":
            return cls.INFRA
        return None


class LayerInfo(BaseModel):
    """``(target, layer)`` pair fixed for the duration of a run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    target: Target
    layer: Layer

    def __str__(self) -> str:
        return f"{self.target.value}/{self.layer.value}"


class FolderSpec(PlanModel):
    base_path: str = Field(validation_alias=AliasChoices("base_path", "basePath"))
    folders: List[str] = Field(default_factory=list)


class StepAction(PlanModel):
    """Structured parameters for non-file steps."""

    create_folders: Optional[FolderSpec] = None
    branch_name: Optional[str] = None
    source_branch: Optional[str] = None
    target_branch: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None


class Step(PlanModel):
    """Single unit of work inside a plan."""

    id: str = ""
    kind: StepKind = Field(validation_alias=AliasChoices("kind", "type"))
    status: StepStatus = StepStatus.PENDING
    description: Optional[str] = None
    target_path: Optional[str] = Field(default=None, validation_alias=AliasChoices("target_path", "path"))
    payload: Optional[str] = Field(default=None, validation_alias=AliasChoices("payload", "template", "content"))
    validation_command: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("validation_command", "validation_script"),
    )
    score: Optional[int] = Field(default=None, validation_alias=AliasChoices("score", "rlhf_score"))
    action: Optional[StepAction] = None
    commit_hash: Optional[str] = None
    execution_log: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return clamp_score(value)
        return value

    @field_validator("execution_log", mode="before")
    @classmethod
    def _coerce_log(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None:
            return ""
        return str(value) if isinstance(value, int) else value

    @model_validator(mode="after")
    def _score_only_for_settled_outcomes(self) -> "Step":
        if self.status in {StepStatus.PENDING, StepStatus.SKIPPED}:
            self.score = None
        return self

    @property
    def is_settled(self) -> bool:
        """``True`` for steps that must never run again."""
        return self.status in {StepStatus.SUCCESS, StepStatus.SKIPPED}

    @property
    def content(self) -> str:
        return self.payload or ""

    def folder_paths(self) -> List[str]:
        spec = self.action.create_folders if self.action else None
        if spec is None:
            return []
        base = spec.base_path.rstrip("/")
        if not spec.folders:
            return [base]
        return [f"{base}/{folder.strip('/')}" if base else folder.strip("/") for folder in spec.folders]

    def touched_paths(self) -> List[str]:
        """Repository-relative paths this step may create, modify or delete."""
        if self.kind is StepKind.CREATE_FOLDERS:
            return self.folder_paths()
        if self.target_path:
            return [self.target_path]
        return []

    def mark_success(self, score: int, log: str) -> None:
        self.status = StepStatus.SUCCESS
        self.score = clamp_score(score)
        self.execution_log = log

    def mark_failed(self, score: int, log: str) -> None:
        self.status = StepStatus.FAILED
        self.score = clamp_score(score)
        self.execution_log = log

    def reset(self, log: str) -> None:
        self.status = StepStatus.PENDING
        self.score = None
        self.commit_hash = None
        self.execution_log = log


class PlanMetadata(PlanModel):
    layer: Optional[str] = None
    project_type: Optional[str] = None
    architecture_style: Optional[str] = None
    working_dir: Optional[str] = None


class PlanEvaluation(PlanModel):
    final_score: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("final_score", "final_rlhf_score"),
    )
    final_status: Optional[str] = None
    commit_hashes: List[str] = Field(default_factory=list)
    updated_at: Optional[str] = None


LAYER_STEP_KEYS: Dict[Layer, str] = {layer: f"{layer.value}_steps" for layer in Layer}


class ExecutionPlan(PlanModel):
    """Ordered steps plus metadata and the evaluation written by the executor."""

    metadata: PlanMetadata = Field(default_factory=PlanMetadata)
    steps: Optional[List[Step]] = None
    domain_steps: Optional[List[Step]] = None
    data_steps: Optional[List[Step]] = None
    infra_steps: Optional[List[Step]] = None
    presentation_steps: Optional[List[Step]] = None
    main_steps: Optional[List[Step]] = None
    evaluation: Optional[PlanEvaluation] = None

    @model_validator(mode="after")
    def _assign_missing_ids(self) -> "ExecutionPlan":
        for key in ("steps", *LAYER_STEP_KEYS.values()):
            entries = getattr(self, key)
            if not entries:
                continue
            for index, step in enumerate(entries, start=1):
                if not step.id:
                    step.id = f"step-{index}"
        return self

    def steps_key(self, layer: Layer | None = None) -> str | None:
        """Return the document key holding the steps executed for ``layer``."""
        if layer is not None:
            key = LAYER_STEP_KEYS[layer]
            if getattr(self, key):
                return key
        if self.steps is not None:
            return "steps"
        for key in LAYER_STEP_KEYS.values():
            if getattr(self, key):
                return key
        return None

    def active_steps(self, layer: Layer | None = None) -> List[Step]:
        key = self.steps_key(layer)
        if key is None:
            return []
        return getattr(self, key) or []

    def find_step(self, step_id: str, layer: Layer | None = None) -> Step | None:
        for step in self.active_steps(layer):
            if step.id == step_id:
                return step
        return None

    def ensure_evaluation(self) -> PlanEvaluation:
        if self.evaluation is None:
            self.evaluation = PlanEvaluation()
        return self.evaluation

    def to_document(self) -> Dict[str, Any]:
        """Serialise for persistence, dropping unset optional fields."""
        return self.model_dump(mode="json", exclude_none=True)


def detect_layer_info(plan_path: Path | None, plan: ExecutionPlan | None) -> LayerInfo | None:
    """Derive the run's layer from the file name, then the plan metadata."""

    if plan_path is not None:
        match = _TEMPLATE_NAME_RE.match(plan_path.name)
        if match:
            return LayerInfo(target=Target(match.group(1)), layer=Layer(match.group(2)))

    if plan is None:
        return None
    metadata = plan.metadata
    if not metadata.layer or not metadata.project_type:
        return None
    try:
        return LayerInfo(target=Target(metadata.project_type.lower()), layer=Layer(metadata.layer.lower()))
    except ValueError:
        return None


__all__ = [
    "ExecutionPlan",
    "FolderSpec",
    "LAYER_STEP_KEYS",
    "Layer",
    "LayerInfo",
    "PlanEvaluation",
    "PlanMetadata",
    "SCORE_MAX",
    "SCORE_MIN",
    "Step",
    "StepAction",
    "StepKind",
    "StepStatus",
    "Target",
    "clamp_score",
    "detect_layer_info",
    "utc_iso",
    "utc_now",
]
