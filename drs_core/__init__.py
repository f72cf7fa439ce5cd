"""
drs_core: the pure decision core of the Distributed Resource Scheduler.

Public API:
    HealthScorer          → 0–100 balance score and dominant dimension of a snapshot
    RuleEvaluator         → placement gate, bundles and violation audit
    RecommendationEngine  → greedy balancing pass and node evacuation

Usage:
    from drs_core import HealthScorer, RecommendationEngine

    engine = RecommendationEngine(HealthScorer())
    recs = engine.recommend(snapshot, settings, rules, excluded=locked_ids)

Nothing in this package performs I/O or holds state between calls.
"""

from drs_core.health import HealthScore, HealthScorer, ScorerWeights
from drs_core.recommender import RecommendationEngine
from drs_core.rules import (
    RuleDecision,
    RuleEvaluator,
    RuleViolation,
    evaluate_placement,
    find_violations,
)

__all__ = [
    "HealthScore",
    "HealthScorer",
    "ScorerWeights",
    "RecommendationEngine",
    "RuleDecision",
    "RuleEvaluator",
    "RuleViolation",
    "evaluate_placement",
    "find_violations",
]
