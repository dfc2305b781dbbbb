"""Deterministic step scoring.

Scores are integers in ``[-2, 2]``:

* ``-2`` catastrophic failure or an architectural violation
* ``-1`` runtime failure (lint, tests, compilation)
* ``0`` failure whose message matches nothing known
* ``1`` plain success
* ``2`` success showing domain-modelling vocabulary

Layer rules from :class:`~stepwise.policy.layers.LayerRuleTable` are layered on
top.  Additive modifiers run first, each clamped; architectural rules run
last so a forbidden match always has the final word.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Hashable, Optional

from ..config import ExecutorConfig
from ..planning.schema import Layer, LayerInfo, StepKind, clamp_score
from ..policy.layers import LayerRuleTable, RuleKind
from .cache import NullCache, ScoreCacheProtocol, TTLCache

LOGGER = logging.getLogger(__name__)

CATASTROPHIC_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE | re.DOTALL)
    for pattern in (
        r"replace.*with.*format",
        r"<<<replace>>>.*<<<",
        r"architecture.*violation",
        r"clean.*architecture",
        r"domain.*layer.*violation",
        r"invalid.*template.*format",
    )
)

RUNTIME_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"lint.*failed",
        r"test.*failed",
        r"typescript.*error",
        r"compilation.*error",
        r"syntax.*error",
    )
)

QUALITY_INDICATORS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ubiquitous.*language",
        r"domain.*driven.*design",
        r"clean.*architecture",
        r"aggregate.*root",
        r"value.*object",
        r"repository.*pattern",
    )
)

REFACTOR_MARKERS = ("<<<REPLACE>>>", "<<<WITH>>>")

STRICT_LAYERS = frozenset({Layer.DOMAIN, Layer.MAIN})


def _digest(value: str | None) -> str:
    if not value:
        return ""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class ScoringEngine:
    """Compute bounded quality scores for step outcomes."""

    def __init__(
        self,
        rules: LayerRuleTable | None = None,
        *,
        cache: ScoreCacheProtocol | None = None,
    ) -> None:
        self.rules = rules or LayerRuleTable()
        self.cache: ScoreCacheProtocol = cache if cache is not None else TTLCache()

    @classmethod
    def from_config(
        cls,
        config: ExecutorConfig,
        repo_root: Path,
        *,
        rules: LayerRuleTable | None = None,
    ) -> "ScoringEngine":
        if rules is None:
            rules = LayerRuleTable.from_sources(config.resolve_rules_path(repo_root))
        settings = config.scoring
        cache: ScoreCacheProtocol
        if settings.cache_enabled:
            cache = TTLCache(capacity=settings.cache_size, ttl=settings.cache_ttl_seconds)
        else:
            cache = NullCache()
        return cls(rules, cache=cache)

    # ----------------------------------------------------------------- public
    def score(
        self,
        kind: StepKind,
        success: bool,
        layer_info: LayerInfo | None = None,
        message: str | None = None,
        payload: str | None = None,
    ) -> int:
        key: Hashable = (
            kind.value,
            success,
            str(layer_info) if layer_info else None,
            _digest(payload),
            _digest(message),
        )
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = self._compute(kind, success, layer_info, message, payload)
        self.cache.set(key, result)
        return result

    # -------------------------------------------------------------- internals
    def _compute(
        self,
        kind: StepKind,
        success: bool,
        layer_info: LayerInfo | None,
        message: str | None,
        payload: str | None,
    ) -> int:
        if success:
            base = self.success_score(payload)
        elif message:
            base = self.failure_score(kind, message, payload)
        else:
            base = 0

        if layer_info is None:
            return base

        adjusted = self.apply_layer_rules(base, payload or "", layer_info.layer)
        if not success:
            adjusted = min(adjusted, base)
        LOGGER.debug(
            "Score for %s (%s, %s): base=%d final=%d",
            kind.value,
            "success" if success else "failure",
            layer_info,
            base,
            adjusted,
        )
        return adjusted

    @staticmethod
    def failure_score(kind: StepKind, message: str, payload: str | None = None) -> int:
        for pattern in CATASTROPHIC_PATTERNS:
            if pattern.search(message):
                return -2
        if kind is StepKind.REFACTOR_FILE and payload is not None:
            if not all(marker in payload for marker in REFACTOR_MARKERS):
                return -2
        for pattern in RUNTIME_PATTERNS:
            if pattern.search(message):
                return -1
        return 0

    @staticmethod
    def success_score(payload: str | None) -> int:
        if payload and any(pattern.search(payload) for pattern in QUALITY_INDICATORS):
            return 2
        return 1

    def apply_layer_rules(self, score: int, payload: str, layer: Layer) -> int:
        if not payload:
            return clamp_score(score)

        for rule in self.rules.modifiers(layer):
            if rule.matches(payload):
                score = clamp_score(score + rule.score_impact)

        for rule in self.rules.architectural(layer):
            matched = rule.matches(payload)
            if rule.kind is RuleKind.FORBIDDEN and matched:
                return -2
            if rule.kind is RuleKind.REQUIRED and not matched:
                score = clamp_score(score + rule.score_impact)
            elif rule.kind is RuleKind.QUALITY and matched:
                score = clamp_score(score + rule.score_impact)
        return score


def aggregate_plan_score(scores: Iterable[Optional[int]], layer_info: LayerInfo | None = None) -> float:
    """Mean of recorded step scores shifted into ``[0, 2]``.

    Domain and main plans receive a smaller shift.
    """

    recorded = [value for value in scores if value is not None]
    if not recorded:
        return 1.0
    average = sum(recorded) / len(recorded)
    shift = 0.5 if layer_info is not None and layer_info.layer in STRICT_LAYERS else 1.0
    return round(max(0.0, min(2.0, average + shift)), 2)


__all__ = [
    "CATASTROPHIC_PATTERNS",
    "QUALITY_INDICATORS",
    "RUNTIME_PATTERNS",
    "ScoringEngine",
    "aggregate_plan_score",
]
