"""
drs_core/recommender.py
───────────────────────
RecommendationEngine: proposes the migrations that would most reduce
imbalance without breaking a MUST rule.

Two passes
───────────
  recommend(snapshot, settings, rules, excluded)
      The balancing pass. Runs only while the health score is below
      settings.imbalance_threshold. At or above it the answer is [].

  evacuate(snapshot, node_id, rules, excluded)
      The draining pass. Every workload on one node (maintenance, or an
      operator request) gets a destination. Not gated by the threshold:
      a node going into maintenance must be emptied whether or not the
      rest of the cluster is balanced.

The balancing pass, step by step
─────────────────────────────────
  1. Score the snapshot. score ≥ threshold → [].
  2. dim = dominant dimension. Sources are eligible nodes above the eligible
     mean on dim; targets are eligible nodes below it.
  3. For every workload on a source, build its BUNDLE (the workload plus its
     must-affinity partners on the same node) and try every target:
       • rule-check every member at the target. Any MUST violation → drop.
       • score the hypothetical post-move snapshot.
       • gain below settings.min_improvement_pct (or not positive) → drop.
  4. Rank:  (gain − should_penalty × should_rule_penalty)  descending
            bundle resource weight                         ascending
            first workload id                              ascending
            target node id                                 ascending
  5. Take the best candidate, apply it to a WORKING copy of the snapshot,
     and go back to step 2 on the working copy. Stop when the working score
     reaches the threshold, nothing survives step 3, or max_recommendations
     is reached. A workload is proposed at most once per pass.

The concurrency ceiling is NOT applied here. The Mode Controller applies
it when it decides what executes, so deferred candidates stay visible.

Purity
───────
No I/O, no clocks except created_at stamps, no mutation of the input
snapshot (what-ifs go through ClusterSnapshot.with_moves()), and nothing here
touches a workload's `locked` flag. Locked and cooling-down workloads arrive
through `excluded` and are never candidates. Stopped workloads
(running=False) are never moved by either pass, and neither are bundles
that contain one.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import AbstractSet, Dict, List, Optional, Sequence, Tuple

from drs_core.health import HealthScore, HealthScorer, ScorerWeights
from drs_core.rules import RuleEvaluator
from orchestrator.shared.models import (
    AffinityRule,
    ClusterSnapshot,
    Dimension,
    DRSSettings,
    NodeMetrics,
    Priority,
    Recommendation,
    RecommendationKind,
    Workload,
    recommendation_id,
)

logger = logging.getLogger(__name__)

# ── Engine constants ──────────────────────────────────────────────────────────

DEFAULT_MAX_RECOMMENDATIONS: int = 10
"""Upper bound on recommendations produced by one balancing pass."""

DEFAULT_SHOULD_RULE_PENALTY: float = 5.0
"""Score points subtracted from a candidate's ranking gain per violated SHOULD rule."""

CRITICAL_LOAD_PCT: float = 95.0
HIGH_LOAD_PCT: float = 90.0
MEDIUM_GAIN_POINTS: float = 20.0
"""
Priority ladder for balancing moves:
    source above 95 % on either dimension → CRITICAL
    source above 90 %                     → HIGH
    predicted gain above 20 points        → MEDIUM
    otherwise                             → LOW
Evacuation moves are always HIGH.
"""

_GROUP_NAMESPACE = uuid.UUID("0b8e5f37-2d61-4a9c-8c1e-73f4a5d2e960")


@dataclass(frozen=True)
class _Candidate:
    """One bundle → target move that survived rule checks and the gain filter."""
    members: Tuple[str, ...]
    source: str
    target: str
    gain: float
    penalty: float
    soft_violations: Tuple[str, ...]
    resource_weight: float
    after: HealthScore

    def rank_key(self, should_rule_penalty: float) -> tuple:
        return (
            -(self.gain - self.penalty * should_rule_penalty),
            self.resource_weight,
            self.members[0],
            self.target,
        )


class RecommendationEngine:
    """
    Greedy, bounded migration planner.

    Usage:
        engine = RecommendationEngine()
        recs   = engine.recommend(snapshot, settings, rules, excluded={"wl-7"})
        drain  = engine.evacuate(snapshot, "node-x", rules)

    Args:
        scorer:              HealthScorer used for every what-if. Defaults
                             to equal weighting.
        max_recommendations: Cap for one balancing pass.
        should_rule_penalty: Ranking cost per violated SHOULD rule.
    """

    def __init__(
        self,
        scorer: Optional[HealthScorer] = None,
        max_recommendations: int = DEFAULT_MAX_RECOMMENDATIONS,
        should_rule_penalty: float = DEFAULT_SHOULD_RULE_PENALTY,
    ) -> None:
        if max_recommendations < 1:
            raise ValueError("max_recommendations must be at least 1")
        self._scorer = scorer or HealthScorer()
        self._max_recommendations = max_recommendations
        self._should_rule_penalty = should_rule_penalty

    @classmethod
    def from_config(cls, config) -> "RecommendationEngine":
        """Build an engine (and its scorer) from a SchedulerConfig."""
        return cls(
            scorer=HealthScorer(ScorerWeights.from_config(config)),
            max_recommendations=config.max_recommendations,
            should_rule_penalty=config.should_rule_penalty,
        )

    @property
    def scorer(self) -> HealthScorer:
        return self._scorer

    # ── Balancing pass ────────────────────────────────────────────────────────

    def recommend(
        self,
        snapshot: ClusterSnapshot,
        settings: DRSSettings,
        rules: Sequence[AffinityRule],
        excluded: AbstractSet[str] = frozenset(),
    ) -> List[Recommendation]:
        """
        Produce the ranked balancing recommendations for one snapshot.

        Args:
            snapshot: The tick's snapshot. Not modified.
            settings: Threshold and minimum gain are read from here.
            rules:    Rule set, declaration order.
            excluded: Workload ids that must not be moved (locked by a
                      migration job, cooling down, ...).

        Returns:
            Recommendations with status PROPOSED, best first. [] when the
            cluster is balanced, DRS is disabled, or nothing qualifies.
        """
        if not settings.enabled:
            return []

        initial = self._scorer.score(snapshot)
        if initial.score >= settings.imbalance_threshold:
            return []
        if initial.dominant == Dimension.NONE:
            return []

        evaluator = RuleEvaluator(rules)
        working = snapshot
        current = initial
        taken: set = set()
        recommendations: List[Recommendation] = []

        while len(recommendations) < self._max_recommendations:
            if current.score >= settings.imbalance_threshold:
                break
            if current.dominant == Dimension.NONE:
                break

            candidates = self._candidates(
                working, current, evaluator, settings, set(excluded) | taken
            )
            if not candidates:
                break
            best = min(candidates, key=lambda c: c.rank_key(self._should_rule_penalty))
            if len(recommendations) + len(best.members) > self._max_recommendations:
                break

            recommendations.extend(
                self._emit(working, best, current, RecommendationKind.BALANCE)
            )
            working = working.with_moves((m, best.target) for m in best.members)
            current = best.after
            taken.update(best.members)

        if recommendations:
            logger.info(
                "cluster %s: %d recommendation(s), score %.1f → %.1f",
                snapshot.cluster_id, len(recommendations), initial.score, current.score,
            )
        else:
            logger.debug(
                "cluster %s: score %.1f below threshold %.1f but no move qualifies",
                snapshot.cluster_id, initial.score, settings.imbalance_threshold,
            )
        return recommendations

    def _candidates(
        self,
        working: ClusterSnapshot,
        current: HealthScore,
        evaluator: RuleEvaluator,
        settings: DRSSettings,
        blocked: AbstractSet[str],
    ) -> List[_Candidate]:
        dim = current.dominant
        mean = current.mean(dim)
        eligible = working.eligible_nodes
        sources = [n for n in eligible if n.load(dim) > mean]
        targets = [n for n in eligible if n.load(dim) < mean]
        if not sources or not targets:
            return []

        assignment = working.assignment()
        workloads = {w.id: w for w in working.workloads}
        nodes = {n.node_id: n for n in working.nodes}

        candidates: List[_Candidate] = []
        seen_bundles: set = set()
        for source in sources:
            for workload in working.workloads_on(source.node_id):
                bundle = evaluator.bundle_for(workload.id, assignment, workloads)
                if bundle in seen_bundles:
                    continue
                seen_bundles.add(bundle)
                if _is_blocked(bundle, workloads, blocked):
                    continue

                for target in targets:
                    candidate = self._try_move(
                        working, current, evaluator, bundle, source, target,
                        assignment, workloads, nodes,
                    )
                    if candidate is None:
                        continue
                    if candidate.gain <= 0 or candidate.gain < settings.min_improvement_pct:
                        continue
                    candidates.append(candidate)
        return candidates

    def _try_move(
        self,
        working: ClusterSnapshot,
        current: HealthScore,
        evaluator: RuleEvaluator,
        bundle: Tuple[str, ...],
        source: NodeMetrics,
        target: NodeMetrics,
        assignment: Dict[str, str],
        workloads: Dict[str, Workload],
        nodes: Dict[str, NodeMetrics],
    ) -> Optional[_Candidate]:
        """Rule-check and score one bundle → target move. None if a MUST rule forbids it."""
        trial = dict(assignment)
        for member in bundle:
            trial[member] = target.node_id

        penalty = 0.0
        soft: List[str] = []
        for member in bundle:
            decision = evaluator.evaluate(member, target.node_id, trial, workloads, nodes)
            if not decision.allowed:
                logger.debug(
                    "move %s → %s rejected by rule %s",
                    member, target.node_id, decision.violated_rule_id,
                )
                return None
            penalty += decision.penalty
            soft.extend(r for r in decision.soft_violations if r not in soft)

        after = self._scorer.score(working.with_moves((m, target.node_id) for m in bundle))
        return _Candidate(
            members=bundle,
            source=source.node_id,
            target=target.node_id,
            gain=after.score - current.score,
            penalty=penalty,
            soft_violations=tuple(soft),
            resource_weight=sum(workloads[m].resource_weight for m in bundle),
            after=after,
        )

    # ── Draining pass ─────────────────────────────────────────────────────────

    def evacuate(
        self,
        snapshot: ClusterSnapshot,
        node_id: str,
        rules: Sequence[AffinityRule],
        excluded: AbstractSet[str] = frozenset(),
    ) -> List[Recommendation]:
        """
        Plan a destination for every movable workload on `node_id`.

        Bundles are placed first-by-weight (heaviest first, so the largest
        pieces get the most headroom) on the least-loaded eligible node that
        every member may legally occupy. SHOULD violations are avoided when
        an equally valid alternative exists. Workloads with no legal target
        are logged and left in place.

        Returns:
            EVACUATION recommendations with priority HIGH. [] if the node is
            unknown or empty.
        """
        if snapshot.node(node_id) is None:
            logger.warning(
                "cluster %s: cannot evacuate unknown node %s", snapshot.cluster_id, node_id
            )
            return []

        evaluator = RuleEvaluator(rules)
        working = snapshot
        recommendations: List[Recommendation] = []

        residents = sorted(
            snapshot.workloads_on(node_id),
            key=lambda w: (-w.resource_weight, w.id),
        )
        placed: set = set()
        for workload in residents:
            if workload.id in placed:
                continue
            assignment = working.assignment()
            workloads = {w.id: w for w in working.workloads}
            nodes = {n.node_id: n for n in working.nodes}
            bundle = evaluator.bundle_for(workload.id, assignment, workloads)
            placed.update(bundle)
            if _is_blocked(bundle, workloads, excluded):
                continue

            before = self._scorer.score(working)
            best: Optional[_Candidate] = None
            best_key: Optional[tuple] = None
            for target in working.eligible_nodes:
                if target.node_id == node_id:
                    continue
                candidate = self._try_move(
                    working, before, evaluator, bundle, working.node(node_id), target,
                    assignment, workloads, nodes,
                )
                if candidate is None:
                    continue
                key = (candidate.penalty, target.cpu_pct + target.mem_pct, target.node_id)
                if best_key is None or key < best_key:
                    best, best_key = candidate, key

            if best is None:
                logger.warning(
                    "cluster %s: no legal target to evacuate %s from %s",
                    snapshot.cluster_id, ", ".join(bundle), node_id,
                )
                continue

            recommendations.extend(
                self._emit(working, best, before, RecommendationKind.EVACUATION)
            )
            working = working.with_moves((m, best.target) for m in best.members)

        if recommendations:
            logger.info(
                "cluster %s: evacuation of %s planned for %d workload(s)",
                snapshot.cluster_id, node_id, len(recommendations),
            )
        return recommendations

    # ── Recommendation construction ───────────────────────────────────────────

    def _emit(
        self,
        working: ClusterSnapshot,
        candidate: _Candidate,
        before: HealthScore,
        kind: RecommendationKind,
    ) -> List[Recommendation]:
        cluster_id = working.cluster_id
        group_id = None
        if len(candidate.members) > 1:
            key = f"{cluster_id}/{'+'.join(candidate.members)}/{candidate.target}"
            group_id = f"grp-{uuid.uuid5(_GROUP_NAMESPACE, key).hex[:12]}"

        source = working.node(candidate.source)
        target = working.node(candidate.target)
        if kind == RecommendationKind.EVACUATION:
            priority = Priority.HIGH
        else:
            priority = _balance_priority(source, candidate.gain)

        recommendations = []
        for member in candidate.members:
            workload = working.workload(member)
            reasons = _reasons(
                kind, before, candidate, source, target, workload,
                candidate.members, self._should_rule_penalty,
            )
            recommendations.append(Recommendation(
                id=recommendation_id(cluster_id, member, candidate.source, candidate.target),
                cluster_id=cluster_id,
                workload_id=member,
                source_node=candidate.source,
                target_node=candidate.target,
                predicted_score_delta=round(candidate.gain, 4),
                predicted_score=candidate.after.score,
                reasons=reasons,
                kind=kind,
                priority=priority,
                group_id=group_id,
            ))
        return recommendations

    def __repr__(self) -> str:
        return (
            f"RecommendationEngine(max_recommendations={self._max_recommendations}, "
            f"should_rule_penalty={self._should_rule_penalty})"
        )


# ── Helpers ───────────────────────────────────────────────────────────────────

def _is_blocked(
    bundle: Tuple[str, ...],
    workloads: Dict[str, Workload],
    blocked: AbstractSet[str],
) -> bool:
    for member in bundle:
        if member in blocked:
            return True
        workload = workloads.get(member)
        if workload is None or workload.locked or not workload.running:
            return True
    return False


def _balance_priority(source: Optional[NodeMetrics], gain: float) -> Priority:
    if source is not None:
        peak = max(source.cpu_pct, source.mem_pct)
        if peak > CRITICAL_LOAD_PCT:
            return Priority.CRITICAL
        if peak > HIGH_LOAD_PCT:
            return Priority.HIGH
    if gain > MEDIUM_GAIN_POINTS:
        return Priority.MEDIUM
    return Priority.LOW


def _reasons(
    kind: RecommendationKind,
    before: HealthScore,
    candidate: _Candidate,
    source: Optional[NodeMetrics],
    target: Optional[NodeMetrics],
    workload: Optional[Workload],
    members: Tuple[str, ...],
    should_rule_penalty: float,
) -> Tuple[str, ...]:
    """Human-readable contributing factors, most important first."""
    reasons: List[str] = []

    if kind == RecommendationKind.EVACUATION:
        status = source.status.value if source is not None else "unknown"
        reasons.append(f"node {candidate.source} is being evacuated ({status})")
    else:
        dim = before.dominant
        mean = before.mean(dim) or 0.0
        load = source.load(dim) if source is not None else 0.0
        reasons.append(
            f"{dim.value} imbalance: {candidate.source} at {load:.1f}% "
            f"vs cluster mean {mean:.1f}%"
        )

    if target is not None:
        reasons.append(
            f"target {candidate.target} has headroom "
            f"(cpu {target.cpu_pct:.1f}%, memory {target.mem_pct:.1f}%)"
        )
    reasons.append(
        f"predicted score {before.score:.1f} → {candidate.after.score:.1f} "
        f"({candidate.gain:+.1f})"
    )
    if workload is not None:
        reasons.append(
            f"workload weight cpu {workload.cpu_weight:.1f} / memory {workload.mem_weight:.1f}"
        )
    if len(members) > 1:
        partners = [m for m in members if workload is None or m != workload.id]
        reasons.append(f"moves together with {', '.join(partners)} (must affinity)")
    for rule_id in candidate.soft_violations:
        reasons.append(
            f"violates should rule {rule_id} (ranking penalty {should_rule_penalty:.1f})"
        )
    return tuple(reasons)
