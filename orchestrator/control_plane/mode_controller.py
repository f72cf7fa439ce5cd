"""
orchestrator/control_plane/mode_controller.py
───────────────────────────────────────────────
Mode Controller: decides which of this tick's recommendations execute.

The engine proposes; this module disposes. It never calls the migration API
and never locks anything. It only turns PROPOSED recommendations into
APPROVED (or REJECTED) copies and says which ones go to the orchestrator.

Per mode
─────────
  manual    → nothing executes. Operator approvals show as APPROVED, the
              rest stays PROPOSED for an external actor to look at.
  partial   → a recommendation is approved only if its id was pre-approved
              by an operator before this tick.
  automatic → every recommendation is approved.

In every mode
──────────────
  • ids the operator rejected come back REJECTED and never execute.
  • settings.enabled = False approves nothing.
  • approvals consume concurrency slots in rank order:
        slots = max_concurrent_migrations − in_flight
    A recommendation that wants approval but finds no slot stays PROPOSED
    (deferred). It is re-ranked from scratch on the next tick.
  • recommendations sharing a group_id are one unit: all of them fit and
    are approved together, or none is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AbstractSet, Dict, List, Sequence, Tuple

from orchestrator.shared.models import (
    DRSMode,
    DRSSettings,
    Recommendation,
    RecommendationStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModeDecision:
    """
    Result of one mode pass.

    recommendations → every input recommendation, input order, with its
                      new status.
    approved        → the subset to hand to the Migration Orchestrator.
    deferred        → wanted approval but the concurrency ceiling said no.
    """
    recommendations: Tuple[Recommendation, ...] = ()
    approved: Tuple[Recommendation, ...] = ()
    deferred: Tuple[Recommendation, ...] = ()
    free_slots: int = 0

    @property
    def proposed(self) -> Tuple[Recommendation, ...]:
        return tuple(
            r for r in self.recommendations
            if r.status == RecommendationStatus.PROPOSED
        )


def apply_mode(
    recommendations: Sequence[Recommendation],
    settings: DRSSettings,
    pre_approved: AbstractSet[str] = frozenset(),
    rejected: AbstractSet[str] = frozenset(),
    in_flight: int = 0,
) -> ModeDecision:
    """
    Apply the cluster's mode to a ranked recommendation list.

    Args:
        recommendations: This tick's recommendations, best first. Not modified.
        settings:        Mode, enabled flag and concurrency ceiling.
        pre_approved:    Recommendation ids approved out-of-band (partial mode).
        rejected:        Recommendation ids rejected out-of-band.
        in_flight:       Non-terminal migration jobs already running in
                         this cluster.

    Returns:
        ModeDecision.
    """
    slots = max(0, settings.max_concurrent_migrations - in_flight)
    statuses: Dict[str, RecommendationStatus] = {}
    approved: List[Recommendation] = []
    deferred: List[Recommendation] = []

    for unit in group_units(recommendations):
        live = []
        for rec in unit:
            if rec.id in rejected:
                statuses[rec.id] = RecommendationStatus.REJECTED
            else:
                statuses[rec.id] = RecommendationStatus.PROPOSED
                live.append(rec)

        if len(live) == len(unit) and _approved_for_record(unit, settings, pre_approved):
            for rec in unit:
                statuses[rec.id] = RecommendationStatus.APPROVED
            continue
        if len(live) != len(unit) or not _wants_approval(unit, settings, pre_approved):
            continue
        if len(unit) > slots:
            deferred.extend(unit)
            continue

        for rec in unit:
            statuses[rec.id] = RecommendationStatus.APPROVED
        approved.extend(unit)
        slots -= len(unit)

    result = tuple(rec.with_status(statuses[rec.id]) for rec in recommendations)
    approved_ids = {rec.id for rec in approved}

    if deferred:
        logger.info(
            "%d recommendation(s) deferred: concurrency ceiling %d reached (%d in flight)",
            len(deferred), settings.max_concurrent_migrations, in_flight,
        )

    return ModeDecision(
        recommendations=result,
        approved=tuple(r for r in result if r.id in approved_ids),
        deferred=tuple(deferred),
        free_slots=slots,
    )


def _wants_approval(
    unit: Sequence[Recommendation],
    settings: DRSSettings,
    pre_approved: AbstractSet[str],
) -> bool:
    if not settings.enabled:
        return False
    if settings.mode == DRSMode.AUTOMATIC:
        return True
    if settings.mode == DRSMode.PARTIAL:
        return all(rec.id in pre_approved for rec in unit)
    return False


def _approved_for_record(
    unit: Sequence[Recommendation],
    settings: DRSSettings,
    pre_approved: AbstractSet[str],
) -> bool:
    """Manual mode: operator approvals are shown but never handed on."""
    return (
        settings.enabled
        and settings.mode == DRSMode.MANUAL
        and all(rec.id in pre_approved for rec in unit)
    )


def group_units(recommendations: Sequence[Recommendation]) -> List[List[Recommendation]]:
    """Group recommendations by group_id, keeping the rank of each unit's first member."""
    units: List[List[Recommendation]] = []
    by_group: Dict[str, List[Recommendation]] = {}
    for rec in recommendations:
        if rec.group_id is None:
            units.append([rec])
            continue
        unit = by_group.get(rec.group_id)
        if unit is None:
            unit = by_group[rec.group_id] = []
            units.append(unit)
        unit.append(rec)
    return units
