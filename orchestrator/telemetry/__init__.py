"""
orchestrator/telemetry: snapshot ingestion.

Public API:
    SnapshotCollector   → bounded fetch + normalisation of one cluster snapshot
    StaleSnapshotError  → raised when a tick has no usable snapshot
"""

from orchestrator.telemetry.collector import SnapshotCollector, StaleSnapshotError

__all__ = ["SnapshotCollector", "StaleSnapshotError"]
