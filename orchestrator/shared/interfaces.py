"""
orchestrator/shared/interfaces.py
──────────────────────────────────
The external collaborators the DRS reads from and writes to.

None of these are implemented by the core. Production wires in adapters for
the hypervisor API and the product's settings/rule storage; the test-suite
and the demo use the in-memory versions in orchestrator/telemetry/simulated.py.

All collaborator methods are coroutines: every one of them is a network
call in production, and the tick loop and migration workers suspend on them.

    SnapshotSource  → fetch_snapshot(cluster_id)  -> ClusterSnapshot
    RuleStore       → get_rules(cluster_id)       -> List[AffinityRule]
    SettingsStore   → get_settings(cluster_id)    -> DRSSettings
    MigrationAPI    → start_migration(...)        -> job handle (str)
                      poll(handle)                -> MigrationStatus
                      cancel(handle)              -> None
    NotificationSink → notify(Notification)      -> None   (optional)

The notification sink is the one synchronous collaborator: it is called from
the job completion hook, which runs inside the event loop and must not block.
A sink that does I/O should queue the event and deliver it elsewhere.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from orchestrator.shared.models import AffinityRule, ClusterSnapshot, DRSSettings


class PollState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MigrationStatus(BaseModel):
    """What the migration API reports for one handle."""
    state: PollState
    error: Optional[str] = None


class MigrationAPIError(Exception):
    """
    Raised by MigrationAPI implementations when a call itself fails.

    Attributes:
        reason:    Human-readable description.
        transient: Optional hint from the adapter. None = let the
                   orchestrator classify `reason` by its markers.
    """

    def __init__(self, reason: str, transient: Optional[bool] = None) -> None:
        self.reason = reason
        self.transient = transient
        super().__init__(reason)


class SnapshotSource(Protocol):
    async def fetch_snapshot(self, cluster_id: str) -> ClusterSnapshot:
        ...


class RuleStore(Protocol):
    async def get_rules(self, cluster_id: str) -> List[AffinityRule]:
        ...


class SettingsStore(Protocol):
    async def get_settings(self, cluster_id: str) -> DRSSettings:
        ...


class MigrationAPI(Protocol):
    async def start_migration(
        self, workload_id: str, source_node: str, target_node: str
    ) -> str:
        ...

    async def poll(self, job_handle: str) -> MigrationStatus:
        ...

    async def cancel(self, job_handle: str) -> None:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Notifications
# ─────────────────────────────────────────────────────────────────────────────

class NotificationKind(str, Enum):
    """
    MIGRATION_*           → one per job: when it is admitted, and when it ends.
    MAINTENANCE_ENTER     → a node started being drained (maintenance or an
                            operator request); workloads_to_move is set.
    MAINTENANCE_EXIT      → the drain stopped before the node was empty.
    EVACUATION_COMPLETED  → a drained node hosts no running workload any more.
    """
    MIGRATION_STARTED = "migration_started"
    MIGRATION_COMPLETED = "migration_completed"
    MIGRATION_FAILED = "migration_failed"
    MIGRATION_CANCELLED = "migration_cancelled"
    MAINTENANCE_ENTER = "maintenance_enter"
    MAINTENANCE_EXIT = "maintenance_exit"
    EVACUATION_COMPLETED = "evacuation_completed"


class Notification(BaseModel):
    """One event handed to the NotificationSink. Unused fields stay None."""
    kind: NotificationKind
    cluster_id: str
    node_id: Optional[str] = None
    workload_id: Optional[str] = None
    job_id: Optional[str] = None
    source_node: Optional[str] = None
    target_node: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    workloads_to_move: Optional[int] = None
    duration_s: Optional[float] = None
    at: datetime = Field(default_factory=datetime.utcnow)


class NotificationSink(Protocol):
    def notify(self, event: Notification) -> None:
        ...
