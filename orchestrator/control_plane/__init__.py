"""
orchestrator/control_plane: the stateful half of the scheduler.

Public API:
    DRSService              → per-cluster tick pipeline, queries and commands
    MigrationOrchestrator   → admission, locking, execution, retry, cancellation
    apply_mode / ModeDecision → manual / partial / automatic gating
    classify_failure        → transient vs permanent migration errors

Errors:
    UnknownClusterError, RecommendationNotFoundError, MigrationJobNotFoundError
"""

from orchestrator.control_plane.drs_service import (
    ClusterStatus,
    DRSService,
    HealthReport,
    RecommendationList,
    RecommendationNotFoundError,
    TickResult,
    UnknownClusterError,
)
from orchestrator.control_plane.migrations import (
    MigrationJobNotFoundError,
    MigrationOrchestrator,
    classify_failure,
)
from orchestrator.control_plane.mode_controller import ModeDecision, apply_mode

__all__ = [
    "ClusterStatus",
    "DRSService",
    "HealthReport",
    "RecommendationList",
    "RecommendationNotFoundError",
    "TickResult",
    "UnknownClusterError",
    "MigrationJobNotFoundError",
    "MigrationOrchestrator",
    "classify_failure",
    "ModeDecision",
    "apply_mode",
]
