"""Step scoring, its cache and the learning metrics store."""

from .cache import CacheStats, NullCache, TTLCache
from .engine import ScoringEngine, aggregate_plan_score

__all__ = [
    "CacheStats",
    "NullCache",
    "ScoringEngine",
    "TTLCache",
    "aggregate_plan_score",
]
