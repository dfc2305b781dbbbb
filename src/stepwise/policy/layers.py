"""Layer rule table.

Architectural expectations for each layer are data, not branches: every rule
is a :class:`LayerRule` carrying a regular expression, a rule kind and a
score impact.  The same table drives two consumers:

``LayerRuleTable.precheck``
    Static scan of a step payload before the step runs.  A matching
    ``forbidden`` rule flagged for pre-checking raises
    :class:`ArchitectureViolation`; a missing ``required`` pattern is returned
    as a warning.

``stepwise.scoring.engine.ScoringEngine``
    Applies ``modifier`` rules additively and the architectural rules
    (``forbidden``/``required``/``quality``) last.

Extra rules are read from YAML, either as a ``rules`` list or as the
``learning_patterns.common_errors`` section used by plan templates.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Sequence

import yaml

from ..planning.schema import Layer, LayerInfo, Step, StepKind

LOGGER = logging.getLogger(__name__)

ALL_LAYERS = "all"


class RuleKind(str, Enum):
    FORBIDDEN = "forbidden"
    REQUIRED = "required"
    QUALITY = "quality"
    MODIFIER = "modifier"


class RuleTableError(ValueError):
    """Raised when a rule source is malformed."""


class ArchitectureViolation(RuntimeError):
    """A payload matched a forbidden pattern for its layer."""

    def __init__(self, rule: "LayerRule", step_id: str, layer: Layer) -> None:
        self.rule = rule
        self.step_id = step_id
        self.layer = layer
        super().__init__(
            f"{layer.value.capitalize()} layer architecture violation in step '{step_id}': "
            f"{rule.message or rule.name}"
        )


@lru_cache(maxsize=256)
def _compile(pattern: str, case_sensitive: bool) -> re.Pattern[str]:
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(pattern, flags)


@dataclass(slots=True, frozen=True)
class LayerRule:
    """One declarative rule bound to a layer (or ``all``)."""

    name: str
    layer: str
    kind: RuleKind
    pattern: str
    score_impact: int = 0
    message: str = ""
    fix: str | None = None
    precheck: bool = True
    case_sensitive: bool = False

    def applies_to(self, layer: Layer | str | None) -> bool:
        if self.layer == ALL_LAYERS:
            return True
        value = layer.value if isinstance(layer, Layer) else layer
        return self.layer == value

    def matches(self, text: str) -> bool:
        return _compile(self.pattern, self.case_sensitive).search(text) is not None


DEFAULT_LAYER_RULES: tuple[LayerRule, ...] = (
    LayerRule(
        name="domain-external-dependency",
        layer=Layer.DOMAIN.value,
        kind=RuleKind.FORBIDDEN,
        pattern=r"import\s+(?:[^;\n]*\bfrom\s+)?['\"]?@?(?:axios|fetch|prisma|redis|mongodb|mysql|postgres)",
        score_impact=-2,
        message="External dependencies are not allowed in the domain layer",
    ),
    LayerRule(
        name="domain-model-vocabulary",
        layer=Layer.DOMAIN.value,
        kind=RuleKind.QUALITY,
        pattern=r"value\s+object|aggregate\s+root",
        score_impact=1,
    ),
    LayerRule(
        name="data-implements-contract",
        layer=Layer.DATA.value,
        kind=RuleKind.REQUIRED,
        pattern=r"\b(?:implements|extends)\b",
        score_impact=-1,
        message="Data layer should implement domain interfaces",
    ),
    LayerRule(
        name="data-raw-query",
        layer=Layer.DATA.value,
        kind=RuleKind.FORBIDDEN,
        pattern=r"^(?![\s\S]*repository)[\s\S]*select\s+\*\s+from",
        score_impact=-2,
        message="Direct database access without a repository",
        precheck=False,
    ),
    LayerRule(
        name="infra-error-handling",
        layer=Layer.INFRA.value,
        kind=RuleKind.REQUIRED,
        pattern=r"\btry\b[\s\S]*\b(?:catch|except)\b",
        score_impact=-1,
        message="Infrastructure adapters should include error handling",
    ),
    LayerRule(
        name="presentation-business-logic",
        layer=Layer.PRESENTATION.value,
        kind=RuleKind.FORBIDDEN,
        pattern=r"business\s+logic|domain\s+rules|calculations",
        score_impact=-2,
        message="Business logic is not allowed in the presentation layer",
    ),
    LayerRule(
        name="presentation-computation",
        layer=Layer.PRESENTATION.value,
        kind=RuleKind.FORBIDDEN,
        pattern=r"calculate|compute|business|domain logic",
        score_impact=-2,
        message="Computation belongs in domain use cases",
        precheck=False,
    ),
    LayerRule(
        name="main-factory-wiring",
        layer=Layer.MAIN.value,
        kind=RuleKind.REQUIRED,
        pattern=r"[Ff]actory|make[A-Z]",
        score_impact=0,
        message="Main layer should wire dependencies through factories",
        case_sensitive=True,
    ),
    LayerRule(
        name="main-factory-bonus",
        layer=Layer.MAIN.value,
        kind=RuleKind.QUALITY,
        pattern=r"factory",
        score_impact=1,
    ),
)


LAYER_GUIDANCE: Dict[Layer, tuple[str, ...]] = {
    Layer.DOMAIN: (
        "Domain layer must have no external dependencies",
        "Define entities, value objects and use case contracts only",
        "No implementation details",
    ),
    Layer.DATA: (
        "Implement domain interfaces",
        "Transform external data into domain models",
        "Depend on repository protocols, not drivers",
    ),
    Layer.INFRA: (
        "Implement data layer protocols",
        "Wrap external services behind adapters",
        "Handle errors from external systems",
    ),
    Layer.PRESENTATION: (
        "Keep controllers and components thin",
        "Delegate to use cases",
        "No business logic",
    ),
    Layer.MAIN: (
        "Use factories to compose dependencies",
        "Configure the application",
        "No business logic",
    ),
}


def describe_failure_context(layer_info: LayerInfo | None, message: str) -> str:
    """Prefix ``message`` with the run's layer context."""

    if layer_info is None:
        return message
    lowered = message.lower()
    lines = [f"Layer context: {layer_info.target.value} / {layer_info.layer.value}"]
    layer = layer_info.layer
    if layer is Layer.DOMAIN and "import" in lowered:
        lines.append("Domain layer violation: external dependencies are not allowed in the domain layer.")
    elif layer is Layer.DATA and "implement" in lowered:
        lines.append("Data layer issue: implementations should follow the domain contracts.")
    elif layer is Layer.PRESENTATION and ("business" in lowered or "logic" in lowered):
        lines.append("Presentation violation: move business logic into domain use cases.")
    lines.append(f"Original error: {message}")
    return "\n".join(lines)


@dataclass(slots=True)
class PrecheckResult:
    warnings: List[str] = field(default_factory=list)


class LayerRuleTable:
    """Read-only collection of rules keyed by layer."""

    def __init__(self, rules: Iterable[LayerRule] = DEFAULT_LAYER_RULES) -> None:
        self._rules: tuple[LayerRule, ...] = tuple(rules)
        for rule in self._rules:
            try:
                _compile(rule.pattern, rule.case_sensitive)
            except re.error as error:
                raise RuleTableError(f"Invalid pattern for rule {rule.name!r}: {error}") from error

    @classmethod
    def from_sources(
        cls,
        *paths: Path | None,
        include_defaults: bool = True,
    ) -> "LayerRuleTable":
        rules: List[LayerRule] = list(DEFAULT_LAYER_RULES) if include_defaults else []
        for path in paths:
            if path is None:
                continue
            if not path.exists():
                LOGGER.warning("Rule source %s does not exist; skipping.", path)
                continue
            loaded = load_rules(path)
            LOGGER.debug("Loaded %d rule(s) from %s", len(loaded), path)
            rules.extend(loaded)
        return cls(rules)

    @property
    def rules(self) -> tuple[LayerRule, ...]:
        return self._rules

    def for_layer(self, layer: Layer | str | None, *kinds: RuleKind) -> List[LayerRule]:
        selected = [rule for rule in self._rules if rule.applies_to(layer)]
        if kinds:
            selected = [rule for rule in selected if rule.kind in kinds]
        return selected

    def modifiers(self, layer: Layer | str | None) -> List[LayerRule]:
        """Additive rules for ``layer`` first, then those declared for all layers."""
        specific = [
            rule for rule in self._rules if rule.kind is RuleKind.MODIFIER and rule.layer != ALL_LAYERS and rule.applies_to(layer)
        ]
        general = [rule for rule in self._rules if rule.kind is RuleKind.MODIFIER and rule.layer == ALL_LAYERS]
        return specific + general

    def architectural(self, layer: Layer | str | None) -> List[LayerRule]:
        return self.for_layer(layer, RuleKind.FORBIDDEN, RuleKind.REQUIRED, RuleKind.QUALITY)

    def precheck(self, step: Step, layer_info: LayerInfo | None) -> PrecheckResult:
        """Scan ``step``'s payload; raise on forbidden content."""

        result = PrecheckResult()
        if layer_info is None or step.kind not in {StepKind.CREATE_FILE, StepKind.REFACTOR_FILE}:
            return result
        payload = step.content
        layer = layer_info.layer
        for rule in self.for_layer(layer, RuleKind.FORBIDDEN):
            if rule.precheck and rule.matches(payload):
                raise ArchitectureViolation(rule, step.id, layer)
        for rule in self.for_layer(layer, RuleKind.REQUIRED):
            if rule.precheck and not rule.matches(payload):
                result.warnings.append(
                    f"{layer.value.capitalize()} layer warning for step '{step.id}': {rule.message or rule.name}"
                )
        return result


def _rule_from_mapping(entry: Mapping[str, Any], *, default_kind: RuleKind, index: int) -> LayerRule:
    pattern = entry.get("pattern") or entry.get("regex")
    if not isinstance(pattern, str) or not pattern:
        raise RuleTableError(f"Rule #{index} is missing a pattern")
    raw_kind = entry.get("kind") or entry.get("severity") or default_kind.value
    try:
        kind = RuleKind(str(raw_kind).lower())
    except ValueError as error:
        raise RuleTableError(f"Rule #{index} has unknown kind {raw_kind!r}") from error
    impact = entry.get("score_impact", 0)
    if not isinstance(impact, (int, float)) or isinstance(impact, bool):
        raise RuleTableError(f"Rule #{index} has a non-numeric score_impact")
    layer = str(entry.get("layer") or ALL_LAYERS).lower()
    if layer != ALL_LAYERS:
        try:
            layer = Layer(layer).value
        except ValueError as error:
            raise RuleTableError(f"Rule #{index} targets unknown layer {layer!r}") from error
    return LayerRule(
        name=str(entry.get("name") or f"{layer}-rule-{index}"),
        layer=layer,
        kind=kind,
        pattern=pattern,
        score_impact=int(impact),
        message=str(entry.get("message") or entry.get("fix") or ""),
        fix=entry.get("fix"),
        precheck=bool(entry.get("precheck", True)),
        case_sensitive=bool(entry.get("case_sensitive", False)),
    )


def parse_rules(data: Mapping[str, Any]) -> List[LayerRule]:
    """Build rules from a parsed YAML mapping."""

    rules: List[LayerRule] = []
    explicit: Sequence[Any] = data.get("rules") or []
    learning = data.get("learning_patterns")
    common_errors: Sequence[Any] = []
    if isinstance(learning, Mapping):
        common_errors = learning.get("common_errors") or []

    for index, entry in enumerate(explicit, start=1):
        if not isinstance(entry, Mapping):
            raise RuleTableError(f"Rule #{index} must be a mapping")
        rules.append(_rule_from_mapping(entry, default_kind=RuleKind.MODIFIER, index=index))
    offset = len(rules)
    for index, entry in enumerate(common_errors, start=offset + 1):
        if not isinstance(entry, Mapping):
            raise RuleTableError(f"Rule #{index} must be a mapping")
        rules.append(_rule_from_mapping(entry, default_kind=RuleKind.MODIFIER, index=index))
    return rules


def load_rules(path: Path) -> List[LayerRule]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise RuleTableError(f"Unable to parse rule file {path}: {error}") from error
    if not isinstance(data, Mapping):
        raise RuleTableError(f"Expected mapping at top level of {path}")
    return parse_rules(data)


__all__ = [
    "ALL_LAYERS",
    "ArchitectureViolation",
    "DEFAULT_LAYER_RULES",
    "LAYER_GUIDANCE",
    "LayerRule",
    "LayerRuleTable",
    "PrecheckResult",
    "RuleKind",
    "RuleTableError",
    "describe_failure_context",
    "load_rules",
    "parse_rules",
]
