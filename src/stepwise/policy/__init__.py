"""Architectural layer policy."""

from .layers import (
    ArchitectureViolation,
    LayerRule,
    LayerRuleTable,
    RuleKind,
    RuleTableError,
)

__all__ = [
    "ArchitectureViolation",
    "LayerRule",
    "LayerRuleTable",
    "RuleKind",
    "RuleTableError",
]
