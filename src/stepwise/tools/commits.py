"""Conventional commits for completed steps."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import List, Mapping, Optional, Sequence

from ..config import DEFAULT_COMMIT_TYPES, CommitSettings
from ..planning.schema import Step, StepKind
from .vcs import GitRepository

LOGGER = logging.getLogger(__name__)

MAX_SUBJECT_LENGTH = 72

_LAYER_SEGMENT_RE = re.compile(r"(?:^|/)(domain|data|infra|infrastructure|presentation|main)/", re.IGNORECASE)

SCOPE_FALLBACKS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("/models/", "/entities/", "/value-objects/"), "domain"),
    (("/usecases/", "/use-cases/"), "data"),
    (("/repositories/", "/adapters/"), "infra"),
    (("/controllers/", "/components/"), "presentation"),
    (("/factories/", "/composition/"), "main"),
)

FILE_ROLES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("/models/", "/entities/"), "entity"),
    (("/value-objects/",), "value object"),
    (("/usecases/", "/use-cases/"), "use case"),
    (("/repositories/",), "repository"),
    (("/controllers/",), "controller"),
    (("/components/",), "component"),
    (("/factories/",), "factory"),
    (("/adapters/",), "adapter"),
    (("/protocols/", "/interfaces/"), "protocol"),
)


def extract_scope(path: str | None) -> str:
    """Architectural scope for a commit derived from ``path``."""

    if not path:
        return "core"
    normalised = "/" + path.replace("\\", "/").lstrip("/")
    match = _LAYER_SEGMENT_RE.search(normalised)
    if match:
        layer = match.group(1).lower()
        return "infra" if layer == "infrastructure" else layer
    for markers, scope in SCOPE_FALLBACKS:
        if any(marker in normalised for marker in markers):
            return scope
    return "core"


def extract_entity_name(path: str | None) -> str | None:
    if not path:
        return None
    normalised = path.replace("\\", "/")
    if ".." in normalised.split("/") or normalised.startswith("/"):
        return None
    stem = PurePosixPath(normalised).name.split(".", 1)[0]
    words = [word for word in re.split(r"[-_]", stem) if word]
    if not words:
        return None
    return " ".join(word.capitalize() for word in words)


def enhance_description(description: str, path: str | None) -> str:
    """Mention the entity and its role when the path reveals them."""

    entity = extract_entity_name(path)
    if not entity or not path:
        return description
    normalised = "/" + path.replace("\\", "/").lstrip("/")
    role = ""
    for markers, name in FILE_ROLES:
        if any(marker in normalised for marker in markers):
            role = name
            break
    if not role:
        return description

    lowered = description.lower()
    has_entity = entity.lower() in lowered
    has_role = role in lowered
    if not has_entity and not has_role:
        return f"{description} - {entity} {role}"
    if not has_entity:
        return f"{description} for {entity}"
    if not has_role:
        return f"{description} ({role})"
    return description


def commit_type_for(kind: StepKind, mapping: Mapping[str, Optional[str]] | None = None) -> Optional[str]:
    table = mapping if mapping is not None else DEFAULT_COMMIT_TYPES
    return table.get(kind.value)


def should_commit(kind: StepKind, settings: CommitSettings) -> bool:
    if not settings.enabled:
        return False
    return commit_type_for(kind, settings.type_mapping) is not None


def generate_commit_message(
    kind: StepKind,
    description: str,
    path: str | None = None,
    *,
    settings: CommitSettings | None = None,
) -> str | None:
    """Build ``type(scope): description`` plus an optional trailer.

    Returns ``None`` when the step kind is not committed.
    """

    config = settings or CommitSettings()
    if not description.strip():
        raise ValueError("Commit description must not be empty")
    commit_type = commit_type_for(kind, config.type_mapping)
    if not config.enabled or commit_type is None:
        return None

    text = enhance_description(description.strip(), path)
    if config.conventional_commits:
        text = text[:1].lower() + text[1:]
        prefix = f"{commit_type}({extract_scope(path)}): "
    else:
        prefix = ""
    subject = prefix + text
    if len(subject) > MAX_SUBJECT_LENGTH:
        available = MAX_SUBJECT_LENGTH - len(prefix) - 3
        if available <= 0:
            raise ValueError(f"Commit prefix {prefix!r} leaves no room for a description")
        subject = f"{prefix}{text[:available]}..."

    if config.co_author:
        return f"{subject}\n\nCo-Authored-By: {config.co_author}"
    return subject


@dataclass(slots=True)
class CommitOutcome:
    commit_hash: str | None = None
    message: str | None = None
    staged: List[str] = field(default_factory=list)
    skipped: str | None = None


class CommitManager:
    """Stage only what a step touched and commit it."""

    def __init__(
        self,
        repo: GitRepository,
        settings: CommitSettings | None = None,
        *,
        exclude: Sequence[str] = (),
    ) -> None:
        self.repo = repo
        self.settings = settings or CommitSettings()
        self.exclude = tuple(exclude)

    def paths_to_stage(self, step: Step) -> List[str]:
        if step.kind.touches_files and step.target_path:
            path = step.target_path
            if (self.repo.root / path).exists() or self.repo.exists_in_head(path):
                return [path]
            return []
        changed = self.repo.changed_paths(exclude=self.exclude)
        touched = [path.rstrip("/") for path in step.touched_paths()]
        if not touched:
            return changed
        return [path for path in changed if any(path == prefix or path.startswith(f"{prefix}/") for prefix in touched)]

    def commit_step(self, step: Step) -> CommitOutcome:
        """Commit ``step``'s changes; ``nothing to commit`` is not an error."""

        if not should_commit(step.kind, self.settings):
            LOGGER.info("Step kind %s does not require a commit", step.kind.value)
            return CommitOutcome(skipped="kind")

        message = generate_commit_message(
            step.kind,
            step.description or step.id,
            step.target_path,
            settings=self.settings,
        )
        if message is None:
            return CommitOutcome(skipped="kind")

        already_staged = self.repo.staged_paths()
        if already_staged:
            LOGGER.warning(
                "Git index already has staged changes; they stay staged and are not committed: %s",
                ", ".join(already_staged),
            )

        paths = self.paths_to_stage(step)
        self.repo.stage(paths)
        prefixes = [path.rstrip("/") for path in paths]
        ours = [
            entry
            for entry in self.repo.staged_paths()
            if any(entry == prefix or entry.startswith(f"{prefix}/") for prefix in prefixes)
        ]
        commit_hash = self.repo.commit(message, ours) if ours else None
        if commit_hash is None:
            LOGGER.warning("No changes to commit for step %s", step.id)
            return CommitOutcome(message=message, staged=paths, skipped="nothing to commit")

        LOGGER.info("Committed %s: %s", commit_hash, message.splitlines()[0])
        return CommitOutcome(commit_hash=commit_hash, message=message, staged=paths)


__all__ = [
    "CommitManager",
    "CommitOutcome",
    "MAX_SUBJECT_LENGTH",
    "commit_type_for",
    "enhance_description",
    "extract_entity_name",
    "extract_scope",
    "generate_commit_message",
    "should_commit",
]
