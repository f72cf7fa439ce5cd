"""
drs_core/health.py
──────────────────
HealthScorer: turns one ClusterSnapshot into a 0–100 balance score.

What this is
─────────────
The authoritative imbalance score used for scheduling decisions.
100 means every eligible node carries the same load; 0 means the cluster is
as lopsided as the configured tolerances allow (or cannot be evaluated).

This is NOT the dashboard's trend indicator (recent vs older averages).
That one answers "is load going up?"; this one answers "is load spread
evenly right now?".

The formula
────────────
  eligible   = nodes with status ONLINE (offline and maintenance excluded)
  σ_cpu      = population std-dev of cpu_pct over eligible nodes
  σ_mem      = population std-dev of mem_pct over eligible nodes

  c_cpu      = min(σ_cpu / max_cpu_deviation, 1)
  c_mem      = min(σ_mem / max_mem_deviation, 1)

  imbalance  = w_cpu × c_cpu + w_mem × c_mem      (weights normalised to sum 1)
  score      = clamp(100 × (1 − imbalance), 0, 100)

Dominant dimension = the larger weighted component. Ties go to CPU.
NONE when both components are zero.

Edge cases
───────────
  0 eligible nodes, some in maintenance
                   → score 100, dimension NONE   (nothing online to balance)
  0 eligible nodes otherwise (empty, all offline)
                   → score 0,   dimension NONE   ("cannot evaluate")
  1 eligible node  → score 100, dimension NONE   (nothing to balance against)

Determinism
────────────
Pure function of (snapshot, weights). No caches, no clocks, no randomness.
Node order does not matter: std-dev is order-independent.

Standalone use:
    from drs_core.health import HealthScorer
    result = HealthScorer().score(snapshot)
    result.score, result.dominant
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from orchestrator.shared.models import ClusterSnapshot, Dimension, NodeStatus

# ── Scoring constants ─────────────────────────────────────────────────────────

DEFAULT_MAX_DEVIATION: float = 30.0
"""Std-dev (percentage points) at which one dimension counts as fully imbalanced.

Three nodes at 90/50/10 % CPU have σ ≈ 32.7 → fully imbalanced on CPU.
Two nodes at 60/40 % have σ = 10 → one third of the way there.
"""

PERFECT_SCORE: float = 100.0
UNEVALUABLE_SCORE: float = 0.0


@dataclass(frozen=True)
class ScorerWeights:
    """
    Configurable parameters of the score.

    cpu_weight / mem_weight are relative; they are normalised before use,
    so (1, 1) and (0.5, 0.5) are the same equal weighting.
    """
    cpu_weight: float = 0.5
    mem_weight: float = 0.5
    max_cpu_deviation: float = DEFAULT_MAX_DEVIATION
    max_mem_deviation: float = DEFAULT_MAX_DEVIATION

    def __post_init__(self) -> None:
        if self.cpu_weight < 0 or self.mem_weight < 0:
            raise ValueError("dimension weights must be non-negative")
        if self.cpu_weight + self.mem_weight == 0:
            raise ValueError("at least one dimension weight must be positive")
        if self.max_cpu_deviation <= 0 or self.max_mem_deviation <= 0:
            raise ValueError("maximum deviations must be positive")

    @property
    def normalised(self) -> tuple:
        total = self.cpu_weight + self.mem_weight
        return self.cpu_weight / total, self.mem_weight / total

    @classmethod
    def from_config(cls, config) -> "ScorerWeights":
        return cls(
            cpu_weight=config.cpu_weight,
            mem_weight=config.mem_weight,
            max_cpu_deviation=config.max_cpu_deviation,
            max_mem_deviation=config.max_mem_deviation,
        )


@dataclass(frozen=True)
class HealthScore:
    """
    Result of one scoring pass.

    score            → 0–100, 100 = perfectly balanced.
    dominant         → CPU, MEMORY, or NONE.
    cpu_stddev       → σ of cpu_pct over eligible nodes (0.0 if < 2 nodes).
    mem_stddev       → σ of mem_pct over eligible nodes.
    cpu_mean         → mean cpu_pct over eligible nodes (None if none).
    mem_mean         → mean mem_pct over eligible nodes.
    eligible_nodes   → how many nodes took part.
    """
    score: float
    dominant: Dimension
    cpu_stddev: float = 0.0
    mem_stddev: float = 0.0
    cpu_mean: Optional[float] = None
    mem_mean: Optional[float] = None
    eligible_nodes: int = 0

    @property
    def evaluable(self) -> bool:
        return self.eligible_nodes > 0

    def mean(self, dimension: Dimension) -> Optional[float]:
        if dimension == Dimension.MEMORY:
            return self.mem_mean
        return self.cpu_mean


class HealthScorer:
    """
    Stateless imbalance scorer. One instance can be shared by every cluster.

    Usage:
        scorer = HealthScorer()                        # equal weighting
        scorer = HealthScorer(ScorerWeights(2, 1))     # CPU counts double
        result = scorer.score(snapshot)
    """

    def __init__(self, weights: Optional[ScorerWeights] = None) -> None:
        self._weights = weights or ScorerWeights()

    @property
    def weights(self) -> ScorerWeights:
        return self._weights

    def score(self, snapshot: ClusterSnapshot) -> HealthScore:
        """
        Score one snapshot.

        Returns:
            HealthScore. See module docstring for the formula and edge cases.
        """
        eligible = snapshot.eligible_nodes
        n = len(eligible)

        if n == 0:
            # maintenance nodes are up, just out of rotation: nothing is imbalanced
            in_maintenance = any(node.status == NodeStatus.MAINTENANCE for node in snapshot.nodes)
            return HealthScore(
                score=PERFECT_SCORE if in_maintenance else UNEVALUABLE_SCORE,
                dominant=Dimension.NONE,
                eligible_nodes=0,
            )

        cpu = np.array([node.cpu_pct for node in eligible], dtype=np.float64)
        mem = np.array([node.mem_pct for node in eligible], dtype=np.float64)
        cpu_mean = float(cpu.mean())
        mem_mean = float(mem.mean())

        if n == 1:
            return HealthScore(
                score=PERFECT_SCORE,
                dominant=Dimension.NONE,
                cpu_mean=cpu_mean,
                mem_mean=mem_mean,
                eligible_nodes=1,
            )

        # np.std defaults to ddof=0: population standard deviation
        cpu_std = float(np.std(cpu))
        mem_std = float(np.std(mem))

        w_cpu, w_mem = self._weights.normalised
        cpu_component = w_cpu * min(cpu_std / self._weights.max_cpu_deviation, 1.0)
        mem_component = w_mem * min(mem_std / self._weights.max_mem_deviation, 1.0)

        score = _clamp(PERFECT_SCORE * (1.0 - (cpu_component + mem_component)))

        if cpu_component == 0.0 and mem_component == 0.0:
            dominant = Dimension.NONE
        elif cpu_component >= mem_component:
            dominant = Dimension.CPU
        else:
            dominant = Dimension.MEMORY

        return HealthScore(
            score=score,
            dominant=dominant,
            cpu_stddev=cpu_std,
            mem_stddev=mem_std,
            cpu_mean=cpu_mean,
            mem_mean=mem_mean,
            eligible_nodes=n,
        )

    def breakdown(self, snapshot: ClusterSnapshot) -> dict:
        """
        Dict form of score() for logs and the status endpoint.

        Returns:
            {"score", "dominant", "cpu_stddev", "mem_stddev", "eligible_nodes"}
        """
        result = self.score(snapshot)
        return {
            "score": round(result.score, 2),
            "dominant": result.dominant.value,
            "cpu_stddev": round(result.cpu_stddev, 2),
            "mem_stddev": round(result.mem_stddev, 2),
            "eligible_nodes": result.eligible_nodes,
        }

    def __repr__(self) -> str:
        w = self._weights
        return (
            f"HealthScorer(cpu_weight={w.cpu_weight}, mem_weight={w.mem_weight}, "
            f"max_dev=({w.max_cpu_deviation}, {w.max_mem_deviation}))"
        )


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))
