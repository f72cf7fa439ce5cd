"""
tests/test_recommender.py
──────────────────────────
Test suite for drs_core/recommender.py

What we are testing
────────────────────
The balancing pass must move load from hot to cold nodes, never propose a
move a MUST rule forbids, return nothing once the cluster is balanced, and
keep must-affinity groups together. The draining pass must empty a node
whether or not the cluster is balanced.

Test groups
────────────
Group 1: balancing basics    → the 90/50/10 cluster, threshold gate
Group 2: rules               → MUST never violated, SHOULD lowers rank
Group 3: bundles             → must-affinity members move together
Group 4: exclusions & limits → locked, excluded, disabled, cap
Group 5: evacuation          → maintenance drain, bundle kept together
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import pytest

from drs_core.health import HealthScorer
from drs_core.recommender import RecommendationEngine
from drs_core.rules import RuleEvaluator
from orchestrator.shared.models import (
    AffinityRule,
    ClusterSnapshot,
    DRSSettings,
    NodeMetrics,
    NodeStatus,
    Priority,
    RecommendationKind,
    RecommendationStatus,
    RuleKind,
    RuleStrictness,
    SubjectSelector,
    TargetKind,
    TargetSelector,
    Workload,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_node(
    node_id: str,
    cpu: float,
    mem: float,
    count: int = 1,
    status: NodeStatus = NodeStatus.ONLINE,
) -> NodeMetrics:
    return NodeMetrics(
        node_id=node_id, status=status, cpu_pct=cpu, mem_pct=mem,
        workload_count=count, running_workload_count=count,
    )


def _make_workload(
    workload_id: str,
    node: str,
    cpu: float,
    mem: float,
    tags: Sequence[str] = (),
    locked: bool = False,
    running: bool = True,
) -> Workload:
    return Workload(
        id=workload_id, current_node=node, cpu_weight=cpu, mem_weight=mem,
        tags=frozenset(tags), locked=locked, running=running,
    )


def _make_rule(
    rule_id: str,
    kind: RuleKind,
    tags: Sequence[str],
    strictness: RuleStrictness = RuleStrictness.MUST,
    target: Optional[TargetSelector] = None,
) -> AffinityRule:
    return AffinityRule(
        id=rule_id, kind=kind, strictness=strictness,
        subject_selector=SubjectSelector(tags=tuple(tags)),
        target_selector=target or TargetSelector(),
    )


def _scenario_a(tags_big: Tuple[str, ...] = (), tags_cold: Tuple[str, ...] = (),
                locked_big: bool = False, stopped_big: bool = False) -> ClusterSnapshot:
    """Three online nodes at 90 / 50 / 10 % CPU, memory even at 50 %."""
    return ClusterSnapshot(
        cluster_id="c-a",
        nodes=(
            _make_node("n-a", 90, 50, count=3),
            _make_node("n-b", 50, 50),
            _make_node("n-c", 10, 50),
        ),
        workloads=(
            _make_workload("big", "n-a", 40, 20, tags=tags_big, locked=locked_big, running=not stopped_big),
            _make_workload("mid", "n-a", 30, 15),
            _make_workload("small", "n-a", 20, 15),
            _make_workload("b1", "n-b", 50, 50),
            _make_workload("c1", "n-c", 10, 50, tags=tags_cold),
        ),
    )


def _web_pair_snapshot(x_status: NodeStatus = NodeStatus.ONLINE) -> ClusterSnapshot:
    """web-a and web-b share n-x with a heavier workload; n-y is nearly idle on CPU."""
    return ClusterSnapshot(
        cluster_id="c-b",
        nodes=(
            _make_node("n-x", 90, 50, count=3, status=x_status),
            _make_node("n-y", 10, 50),
            _make_node("n-z", 50, 50),
        ),
        workloads=(
            _make_workload("web-a", "n-x", 20, 10, tags=["web"]),
            _make_workload("web-b", "n-x", 20, 10, tags=["web"]),
            _make_workload("heavy", "n-x", 50, 30),
            _make_workload("y1", "n-y", 10, 50),
            _make_workload("z1", "n-z", 50, 50),
        ),
    )


WEB_TOGETHER = _make_rule("web-together", RuleKind.AFFINITY, ["web"])
SETTINGS = DRSSettings(imbalance_threshold=70.0, min_improvement_pct=1.0)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: balancing basics
# ─────────────────────────────────────────────────────────────────────────────

class TestBalancing:

    engine = RecommendationEngine()

    def test_hot_to_cold_move_proposed(self) -> None:
        """90/50/10 with threshold 70 → move a workload from the 90 % node to the 10 % node."""
        recs = self.engine.recommend(_scenario_a(), SETTINGS, [])
        assert len(recs) >= 1
        first = recs[0]
        assert first.source_node == "n-a"
        assert first.target_node == "n-c"
        assert first.status == RecommendationStatus.PROPOSED
        assert first.kind == RecommendationKind.BALANCE

    def test_best_move_is_ranked_first(self) -> None:
        """Moving `big` evens CPU completely and gives the largest gain."""
        recs = self.engine.recommend(_scenario_a(), SETTINGS, [])
        assert recs[0].workload_id == "big"
        assert recs[0].predicted_score_delta == pytest.approx(22.78, abs=0.01)
        assert recs[0].predicted_score >= SETTINGS.imbalance_threshold

    def test_greedy_stops_once_threshold_reached(self) -> None:
        recs = self.engine.recommend(_scenario_a(), SETTINGS, [])
        assert [r.workload_id for r in recs] == ["big"]

    def test_balanced_cluster_returns_nothing(self) -> None:
        """Score 50 is at or above a threshold of 50: no action."""
        settings = DRSSettings(imbalance_threshold=50.0)
        assert self.engine.recommend(_scenario_a(), settings, []) == []

    def test_score_above_threshold_always_empty(self) -> None:
        for threshold in (0.0, 10.0, 49.9):
            settings = DRSSettings(imbalance_threshold=threshold)
            assert self.engine.recommend(_scenario_a(), settings, []) == []

    def test_gain_below_minimum_is_discarded(self) -> None:
        settings = DRSSettings(imbalance_threshold=70.0, min_improvement_pct=25.0)
        assert self.engine.recommend(_scenario_a(), settings, []) == []

    def test_reasons_and_priority(self) -> None:
        first = self.engine.recommend(_scenario_a(), SETTINGS, [])[0]
        assert first.reasons[0].startswith("cpu imbalance")
        assert any("predicted score" in reason for reason in first.reasons)
        assert first.priority == Priority.MEDIUM

    def test_deterministic_ids(self) -> None:
        a = self.engine.recommend(_scenario_a(), SETTINGS, [])
        b = self.engine.recommend(_scenario_a(), SETTINGS, [])
        assert [r.id for r in a] == [r.id for r in b]

    def test_input_snapshot_is_not_modified(self) -> None:
        snapshot = _scenario_a()
        before = snapshot.model_dump()
        self.engine.recommend(snapshot, SETTINGS, [])
        assert snapshot.model_dump() == before


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: rules
# ─────────────────────────────────────────────────────────────────────────────

class TestRules:

    def test_must_rule_forbids_best_move(self) -> None:
        snapshot = _scenario_a(tags_big=("db",), tags_cold=("db",))
        rules = [_make_rule("spread-db", RuleKind.ANTI_AFFINITY, ["db"])]
        recs = RecommendationEngine().recommend(snapshot, SETTINGS, rules)
        assert recs, "a legal alternative exists"
        assert ("big", "n-c") not in {(r.workload_id, r.target_node) for r in recs}
        assert recs[0].workload_id == "mid"

    def test_no_recommendation_violates_a_must_rule(self) -> None:
        snapshot = _scenario_a(tags_big=("db",), tags_cold=("db",))
        rules = [_make_rule("spread-db", RuleKind.ANTI_AFFINITY, ["db"])]
        recs = RecommendationEngine().recommend(snapshot, SETTINGS, rules)

        evaluator = RuleEvaluator(rules)
        working = snapshot
        for rec in recs:
            decision = evaluator.evaluate(
                rec.workload_id, rec.target_node, working.assignment(),
                {w.id: w for w in working.workloads}, {n.node_id: n for n in working.nodes},
            )
            assert decision.allowed
            working = working.with_moves([(rec.workload_id, rec.target_node)])

    def test_node_affinity_pins_workload(self) -> None:
        snapshot = _scenario_a(tags_big=("pinned",))
        rules = [_make_rule(
            "pin", RuleKind.AFFINITY, ["pinned"],
            target=TargetSelector(kind=TargetKind.NODES, node_ids=("n-a",)),
        )]
        recs = RecommendationEngine().recommend(snapshot, SETTINGS, rules)
        assert all(r.workload_id != "big" for r in recs)

    def test_should_penalty_lowers_rank(self) -> None:
        snapshot = _scenario_a(tags_big=("db",), tags_cold=("db",))
        rules = [_make_rule(
            "prefer-spread", RuleKind.ANTI_AFFINITY, ["db"], strictness=RuleStrictness.SHOULD
        )]
        lenient = RecommendationEngine(should_rule_penalty=0.0).recommend(snapshot, SETTINGS, rules)
        strict = RecommendationEngine(should_rule_penalty=50.0).recommend(snapshot, SETTINGS, rules)
        assert lenient[0].workload_id == "big"
        assert any("prefer-spread" in reason for reason in lenient[0].reasons)
        assert strict[0].workload_id == "mid"


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: bundles
# ─────────────────────────────────────────────────────────────────────────────

class TestBundles:

    def test_affinity_pair_moves_together(self) -> None:
        settings = DRSSettings(imbalance_threshold=90.0)
        recs = RecommendationEngine().recommend(_web_pair_snapshot(), settings, [WEB_TOGETHER])
        web = [r for r in recs if r.workload_id in ("web-a", "web-b")]
        assert {r.workload_id for r in web} == {"web-a", "web-b"}
        assert len({r.target_node for r in web}) == 1
        assert web[0].group_id is not None
        assert web[0].group_id == web[1].group_id

    def test_unbundled_moves_have_no_group(self) -> None:
        recs = RecommendationEngine().recommend(_scenario_a(), SETTINGS, [])
        assert all(r.group_id is None for r in recs)


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: exclusions & limits
# ─────────────────────────────────────────────────────────────────────────────

class TestExclusions:

    def test_excluded_workload_never_proposed(self) -> None:
        recs = RecommendationEngine().recommend(_scenario_a(), SETTINGS, [], excluded={"big"})
        assert recs
        assert all(r.workload_id != "big" for r in recs)

    def test_locked_workload_never_proposed(self) -> None:
        recs = RecommendationEngine().recommend(_scenario_a(locked_big=True), SETTINGS, [])
        assert all(r.workload_id != "big" for r in recs)

    def test_stopped_workload_never_proposed(self) -> None:
        recs = RecommendationEngine().recommend(_scenario_a(stopped_big=True), SETTINGS, [])
        assert recs
        assert all(r.workload_id != "big" for r in recs)

    def test_disabled_settings_recommend_nothing(self) -> None:
        settings = DRSSettings(enabled=False, imbalance_threshold=70.0)
        assert RecommendationEngine().recommend(_scenario_a(), settings, []) == []

    def test_cap_on_recommendations(self) -> None:
        settings = DRSSettings(imbalance_threshold=100.0, min_improvement_pct=0.0)
        recs = RecommendationEngine(max_recommendations=1).recommend(_scenario_a(), settings, [])
        assert len(recs) == 1

    def test_each_workload_at_most_once(self) -> None:
        settings = DRSSettings(imbalance_threshold=100.0, min_improvement_pct=0.0)
        recs = RecommendationEngine().recommend(_scenario_a(), settings, [])
        ids = [r.workload_id for r in recs]
        assert len(ids) == len(set(ids))

    def test_invalid_cap_rejected(self) -> None:
        with pytest.raises(ValueError):
            RecommendationEngine(max_recommendations=0)

    def test_from_config_uses_scorer_weights(self) -> None:
        from orchestrator.shared.config import SchedulerConfig
        engine = RecommendationEngine.from_config(SchedulerConfig(cpu_weight=1.0, mem_weight=0.0))
        assert isinstance(engine.scorer, HealthScorer)
        assert engine.scorer.weights.normalised == pytest.approx((1.0, 0.0))


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: evacuation
# ─────────────────────────────────────────────────────────────────────────────

class TestEvacuation:

    engine = RecommendationEngine()

    def test_maintenance_pair_moves_together(self) -> None:
        """A must-affinity pair on a node entering maintenance lands on one target."""
        snapshot = _web_pair_snapshot(x_status=NodeStatus.MAINTENANCE)
        recs = self.engine.evacuate(snapshot, "n-x", [WEB_TOGETHER])

        web = [r for r in recs if r.workload_id in ("web-a", "web-b")]
        assert len(web) == 2
        assert web[0].target_node == web[1].target_node
        assert web[0].group_id is not None and web[0].group_id == web[1].group_id
        assert all(r.kind == RecommendationKind.EVACUATION for r in recs)
        assert all(r.priority == Priority.HIGH for r in recs)

    def test_every_workload_leaves_the_node(self) -> None:
        snapshot = _web_pair_snapshot(x_status=NodeStatus.MAINTENANCE)
        recs = self.engine.evacuate(snapshot, "n-x", [WEB_TOGETHER])
        assert {r.workload_id for r in recs} == {"web-a", "web-b", "heavy"}
        assert all(r.target_node in ("n-y", "n-z") for r in recs)

    def test_evacuation_ignores_threshold(self) -> None:
        """Draining happens even when the online nodes are perfectly balanced."""
        snapshot = ClusterSnapshot(
            cluster_id="c-e",
            nodes=(
                _make_node("n-x", 20, 20, status=NodeStatus.MAINTENANCE),
                _make_node("n-y", 30, 30),
                _make_node("n-z", 30, 30),
            ),
            workloads=(_make_workload("vm", "n-x", 20, 20),),
        )
        recs = self.engine.evacuate(snapshot, "n-x", [])
        assert [(r.workload_id, r.target_node) for r in recs] == [("vm", "n-y")]

    def test_rule_respected_when_choosing_target(self) -> None:
        snapshot = _web_pair_snapshot(x_status=NodeStatus.MAINTENANCE)
        avoid_y = _make_rule(
            "web-not-y", RuleKind.ANTI_AFFINITY, ["web"],
            target=TargetSelector(kind=TargetKind.NODES, node_ids=("n-y",)),
        )
        recs = self.engine.evacuate(snapshot, "n-x", [WEB_TOGETHER, avoid_y])
        web = [r for r in recs if r.workload_id in ("web-a", "web-b")]
        assert {r.target_node for r in web} == {"n-z"}

    def test_no_legal_target_leaves_workload(self) -> None:
        snapshot = _web_pair_snapshot(x_status=NodeStatus.MAINTENANCE)
        nowhere = _make_rule(
            "web-stays", RuleKind.AFFINITY, ["web"],
            target=TargetSelector(kind=TargetKind.NODES, node_ids=("n-x",)),
        )
        recs = self.engine.evacuate(snapshot, "n-x", [nowhere])
        assert {r.workload_id for r in recs} == {"heavy"}

    def test_unknown_node_returns_nothing(self) -> None:
        assert self.engine.evacuate(_scenario_a(), "n-missing", []) == []

    def test_stopped_workload_stays_on_draining_node(self) -> None:
        snapshot = ClusterSnapshot(
            cluster_id="c-e",
            nodes=(
                _make_node("n-x", 40, 40, count=2, status=NodeStatus.MAINTENANCE),
                _make_node("n-y", 30, 30),
            ),
            workloads=(
                _make_workload("vm-up", "n-x", 20, 20),
                _make_workload("vm-down", "n-x", 20, 20, running=False),
            ),
        )
        recs = self.engine.evacuate(snapshot, "n-x", [])
        assert [r.workload_id for r in recs] == ["vm-up"]
