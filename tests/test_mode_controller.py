"""
tests/test_mode_controller.py
──────────────────────────────
Test suite for orchestrator/control_plane/mode_controller.py

Test groups
────────────
Group 1: modes            → manual / partial / automatic
Group 2: concurrency      → ceiling, in-flight jobs, deferral
Group 3: bundles          → all-or-nothing approval
Group 4: rejection & disable
"""

from __future__ import annotations

from typing import List, Optional

from orchestrator.control_plane.mode_controller import apply_mode
from orchestrator.shared.models import (
    DRSMode,
    DRSSettings,
    Recommendation,
    RecommendationStatus,
    recommendation_id,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_rec(workload_id: str, target: str = "n2", group_id: Optional[str] = None) -> Recommendation:
    return Recommendation(
        id=recommendation_id("c1", workload_id, "n1", target),
        cluster_id="c1",
        workload_id=workload_id,
        source_node="n1",
        target_node=target,
        predicted_score_delta=5.0,
        predicted_score=80.0,
        group_id=group_id,
    )


def _recs(*workload_ids: str) -> List[Recommendation]:
    return [_make_rec(w) for w in workload_ids]


def _statuses(decision) -> List[RecommendationStatus]:
    return [r.status for r in decision.recommendations]


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: modes
# ─────────────────────────────────────────────────────────────────────────────

class TestModes:

    def test_manual_approves_nothing(self) -> None:
        """Clearly unbalanced cluster in manual mode: recommendations, zero approvals."""
        recs = _recs("w1", "w2")
        decision = apply_mode(recs, DRSSettings(mode=DRSMode.MANUAL, max_concurrent_migrations=5))
        assert decision.approved == ()
        assert _statuses(decision) == [RecommendationStatus.PROPOSED] * 2

    def test_manual_shows_pre_approval_without_executing(self) -> None:
        recs = _recs("w1")
        decision = apply_mode(recs, DRSSettings(mode=DRSMode.MANUAL), pre_approved={recs[0].id})
        assert decision.approved == ()
        assert decision.recommendations[0].status == RecommendationStatus.APPROVED

    def test_partial_approves_only_pre_approved(self) -> None:
        recs = _recs("w1", "w2", "w3")
        decision = apply_mode(
            recs,
            DRSSettings(mode=DRSMode.PARTIAL, max_concurrent_migrations=5),
            pre_approved={recs[1].id},
        )
        assert [r.workload_id for r in decision.approved] == ["w2"]
        assert _statuses(decision) == [
            RecommendationStatus.PROPOSED,
            RecommendationStatus.APPROVED,
            RecommendationStatus.PROPOSED,
        ]

    def test_automatic_approves_everything_within_ceiling(self) -> None:
        recs = _recs("w1", "w2")
        decision = apply_mode(recs, DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=5))
        assert len(decision.approved) == 2
        assert decision.free_slots == 3

    def test_inputs_are_not_modified(self) -> None:
        recs = _recs("w1")
        apply_mode(recs, DRSSettings(mode=DRSMode.AUTOMATIC))
        assert recs[0].status == RecommendationStatus.PROPOSED


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: concurrency
# ─────────────────────────────────────────────────────────────────────────────

class TestConcurrency:

    def test_ceiling_of_one_defers_second(self) -> None:
        """Two qualifying recommendations, ceiling 1: exactly one approved, one stays proposed."""
        recs = _recs("w1", "w2")
        decision = apply_mode(recs, DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=1))
        assert [r.workload_id for r in decision.approved] == ["w1"]
        assert _statuses(decision) == [RecommendationStatus.APPROVED, RecommendationStatus.PROPOSED]
        assert [r.workload_id for r in decision.deferred] == ["w2"]
        assert [r.workload_id for r in decision.proposed] == ["w2"]

    def test_in_flight_jobs_consume_slots(self) -> None:
        recs = _recs("w1", "w2")
        settings = DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=2)
        decision = apply_mode(recs, settings, in_flight=2)
        assert decision.approved == ()
        assert len(decision.deferred) == 2

    def test_zero_ceiling_approves_nothing(self) -> None:
        decision = apply_mode(
            _recs("w1"), DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=0)
        )
        assert decision.approved == ()

    def test_rank_order_decides_who_gets_the_slot(self) -> None:
        recs = _recs("w3", "w1", "w2")
        decision = apply_mode(recs, DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=1))
        assert decision.approved[0].workload_id == "w3"


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: bundles
# ─────────────────────────────────────────────────────────────────────────────

class TestBundles:

    def test_bundle_needs_room_for_all_members(self) -> None:
        recs = [_make_rec("web-a", group_id="g1"), _make_rec("web-b", group_id="g1"), _make_rec("solo")]
        decision = apply_mode(recs, DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=1))
        # the pair cannot fit in one slot; the next unit in rank order takes it
        assert [r.workload_id for r in decision.approved] == ["solo"]
        assert decision.recommendations[0].status == RecommendationStatus.PROPOSED
        assert decision.recommendations[1].status == RecommendationStatus.PROPOSED

    def test_bundle_approved_together(self) -> None:
        recs = [_make_rec("web-a", group_id="g1"), _make_rec("web-b", group_id="g1")]
        decision = apply_mode(recs, DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=2))
        assert len(decision.approved) == 2

    def test_partial_bundle_requires_every_member_pre_approved(self) -> None:
        recs = [_make_rec("web-a", group_id="g1"), _make_rec("web-b", group_id="g1")]
        settings = DRSSettings(mode=DRSMode.PARTIAL, max_concurrent_migrations=5)
        assert apply_mode(recs, settings, pre_approved={recs[0].id}).approved == ()
        both = apply_mode(recs, settings, pre_approved={recs[0].id, recs[1].id})
        assert len(both.approved) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: rejection & disable
# ─────────────────────────────────────────────────────────────────────────────

class TestRejectionAndDisable:

    def test_rejected_never_approved(self) -> None:
        recs = _recs("w1", "w2")
        decision = apply_mode(
            recs,
            DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=5),
            rejected={recs[0].id},
        )
        assert [r.workload_id for r in decision.approved] == ["w2"]
        assert decision.recommendations[0].status == RecommendationStatus.REJECTED

    def test_rejecting_one_member_blocks_the_bundle(self) -> None:
        recs = [_make_rec("web-a", group_id="g1"), _make_rec("web-b", group_id="g1")]
        decision = apply_mode(
            recs,
            DRSSettings(mode=DRSMode.AUTOMATIC, max_concurrent_migrations=5),
            rejected={recs[1].id},
        )
        assert decision.approved == ()
        assert _statuses(decision) == [RecommendationStatus.PROPOSED, RecommendationStatus.REJECTED]

    def test_disabled_approves_nothing(self) -> None:
        decision = apply_mode(
            _recs("w1"),
            DRSSettings(enabled=False, mode=DRSMode.AUTOMATIC, max_concurrent_migrations=5),
        )
        assert decision.approved == ()
