"""
orchestrator/telemetry/simulated.py
─────────────────────────────────────
In-memory stand-ins for the external collaborators.

Used by orchestrator/main.py (the demo) and by the test-suite. Production
wires real adapters with the same method signatures (see
orchestrator/shared/interfaces.py).

    InMemorySnapshotSource  → serves whatever snapshot was last set; can be
                              told to fail or to stall.
    StaticRuleStore         → per-cluster rule lists.
    StaticSettingsStore     → per-cluster DRSSettings (defaults if unset).
    SimulatedMigrationAPI   → scripted migration outcomes per workload.
                              On success it moves the workload inside the
                              snapshot source, closing the feedback loop:
                              the next tick sees the new placement.
    RecordingNotificationSink → keeps every notification in a list.

Scripting a migration
──────────────────────
    api.script("wl-1", fail("target temporarily unreachable"), SUCCEED)
        → first attempt fails (transient), the retry succeeds.
    api.script("wl-2", HANG)
        → never finishes; the orchestrator's timeout fires.
    api.script("wl-3", ScriptedOutcome(start_error=MigrationAPIError("insufficient memory")))
        → start_migration() itself raises.

Workloads with no script succeed after `default_polls` RUNNING polls.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from orchestrator.shared.interfaces import (
    MigrationAPIError,
    MigrationStatus,
    Notification,
    NotificationKind,
    PollState,
)
from orchestrator.shared.models import AffinityRule, ClusterSnapshot, DRSSettings


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: SNAPSHOTS, RULES, SETTINGS
# ─────────────────────────────────────────────────────────────────────────────

class InMemorySnapshotSource:
    """
    Snapshot source backed by a dict.

    Usage:
        source = InMemorySnapshotSource()
        source.set_snapshot(snapshot)
        source.fail_next("cluster-a", times=2)     # next two fetches raise
        source.set_delay("cluster-a", 5.0)         # every fetch stalls 5 s
    """

    def __init__(self, snapshots: Sequence[ClusterSnapshot] = ()) -> None:
        self._snapshots: Dict[str, ClusterSnapshot] = {}
        self._failures: Dict[str, int] = defaultdict(int)
        self._delays: Dict[str, float] = {}
        self.fetch_count: Dict[str, int] = defaultdict(int)
        for snapshot in snapshots:
            self.set_snapshot(snapshot)

    def set_snapshot(self, snapshot: ClusterSnapshot) -> None:
        self._snapshots[snapshot.cluster_id] = snapshot

    def get_snapshot(self, cluster_id: str) -> Optional[ClusterSnapshot]:
        return self._snapshots.get(cluster_id)

    def fail_next(self, cluster_id: str, times: int = 1) -> None:
        self._failures[cluster_id] += times

    def set_delay(self, cluster_id: str, seconds: float) -> None:
        self._delays[cluster_id] = seconds

    async def fetch_snapshot(self, cluster_id: str) -> ClusterSnapshot:
        self.fetch_count[cluster_id] += 1
        delay = self._delays.get(cluster_id, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if self._failures[cluster_id] > 0:
            self._failures[cluster_id] -= 1
            raise ConnectionError(f"snapshot source for {cluster_id} is unavailable")
        snapshot = self._snapshots.get(cluster_id)
        if snapshot is None:
            raise LookupError(f"no snapshot registered for cluster {cluster_id}")
        return snapshot

    def apply_move(self, workload_id: str, target_node: str) -> bool:
        """
        Relocate a workload in whichever stored snapshot holds it.

        The replacement snapshot is stamped now, so it is never older than
        the one it replaces. Returns False if no snapshot knows the workload.
        """
        for cluster_id, snapshot in self._snapshots.items():
            if snapshot.workload(workload_id) is None:
                continue
            moved = snapshot.with_moves([(workload_id, target_node)])
            self._snapshots[cluster_id] = moved.model_copy(
                update={"captured_at": max(datetime.utcnow(), snapshot.captured_at)}
            )
            return True
        return False


class StaticRuleStore:
    def __init__(self, rules: Optional[Dict[str, List[AffinityRule]]] = None) -> None:
        self._rules: Dict[str, List[AffinityRule]] = dict(rules or {})

    def set_rules(self, cluster_id: str, rules: Sequence[AffinityRule]) -> None:
        self._rules[cluster_id] = list(rules)

    async def get_rules(self, cluster_id: str) -> List[AffinityRule]:
        return list(self._rules.get(cluster_id, []))


class StaticSettingsStore:
    """Per-cluster settings. Clusters without an entry get `default`."""

    def __init__(
        self,
        settings: Optional[Dict[str, DRSSettings]] = None,
        default: Optional[DRSSettings] = None,
    ) -> None:
        self._settings: Dict[str, DRSSettings] = dict(settings or {})
        self._default = default or DRSSettings()

    def set_settings(self, cluster_id: str, settings: DRSSettings) -> None:
        self._settings[cluster_id] = settings

    async def get_settings(self, cluster_id: str) -> DRSSettings:
        return self._settings.get(cluster_id, self._default)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: MIGRATION API
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ScriptedOutcome:
    """
    How one migration attempt behaves.

    state        → final poll state (SUCCEEDED or FAILED).
    error        → error text reported with a FAILED poll.
    polls        → RUNNING polls reported before the final state.
    hang         → report RUNNING forever.
    start_error  → raised by start_migration() instead of starting.
    """
    state: PollState = PollState.SUCCEEDED
    error: Optional[str] = None
    polls: int = 1
    hang: bool = False
    start_error: Optional[MigrationAPIError] = None


SUCCEED = ScriptedOutcome()
HANG = ScriptedOutcome(hang=True)


def fail(error: str, polls: int = 1) -> ScriptedOutcome:
    """An attempt that runs for `polls` polls and then reports FAILED with `error`."""
    return ScriptedOutcome(state=PollState.FAILED, error=error, polls=polls)


@dataclass
class _Attempt:
    workload_id: str
    source_node: str
    target_node: str
    outcome: ScriptedOutcome
    remaining_polls: int
    cancelled: bool = False
    applied: bool = False


class SimulatedMigrationAPI:
    """
    Migration API with scripted outcomes.

    Attributes (for assertions):
        started:   (workload_id, source_node, target_node) per start_migration() call.
        cancelled: job handles passed to cancel().
        active:    handles started but not yet finished or cancelled.
        peak_active: highest simultaneous `active` count observed.
    """

    def __init__(
        self,
        source: Optional[InMemorySnapshotSource] = None,
        default_polls: int = 1,
        latency: float = 0.0,
    ) -> None:
        self._source = source
        self._default = ScriptedOutcome(polls=default_polls)
        self._latency = latency
        self._scripts: Dict[str, Deque[ScriptedOutcome]] = defaultdict(deque)
        self._attempts: Dict[str, _Attempt] = {}
        self._handles = itertools.count(1)

        self.started: List[Tuple[str, str, str]] = []
        self.cancelled: List[str] = []
        self.active: set = set()
        self.peak_active: int = 0

    def script(self, workload_id: str, *outcomes: ScriptedOutcome) -> None:
        """Queue outcomes for the next attempts on `workload_id`, in order."""
        self._scripts[workload_id].extend(outcomes)

    async def start_migration(self, workload_id: str, source_node: str, target_node: str) -> str:
        await self._pause()
        self.started.append((workload_id, source_node, target_node))
        queue = self._scripts.get(workload_id)
        outcome = queue.popleft() if queue else self._default
        if outcome.start_error is not None:
            raise outcome.start_error

        handle = f"sim-{next(self._handles)}"
        self._attempts[handle] = _Attempt(
            workload_id=workload_id,
            source_node=source_node,
            target_node=target_node,
            outcome=outcome,
            remaining_polls=outcome.polls,
        )
        self.active.add(handle)
        self.peak_active = max(self.peak_active, len(self.active))
        return handle

    async def poll(self, job_handle: str) -> MigrationStatus:
        await self._pause()
        attempt = self._attempts.get(job_handle)
        if attempt is None:
            raise MigrationAPIError(f"job handle {job_handle} not found")
        if attempt.cancelled:
            return MigrationStatus(state=PollState.FAILED, error="cancelled")
        if attempt.outcome.hang or attempt.remaining_polls > 0:
            attempt.remaining_polls -= 1
            return MigrationStatus(state=PollState.RUNNING)

        self.active.discard(job_handle)
        if attempt.outcome.state == PollState.SUCCEEDED:
            if not attempt.applied and self._source is not None:
                self._source.apply_move(attempt.workload_id, attempt.target_node)
            attempt.applied = True
            return MigrationStatus(state=PollState.SUCCEEDED)
        return MigrationStatus(state=PollState.FAILED, error=attempt.outcome.error)

    async def cancel(self, job_handle: str) -> None:
        self.cancelled.append(job_handle)
        attempt = self._attempts.get(job_handle)
        if attempt is not None:
            attempt.cancelled = True
        self.active.discard(job_handle)

    async def _pause(self) -> None:
        # always yield so concurrent jobs interleave like real network calls
        await asyncio.sleep(self._latency)

    def __repr__(self) -> str:
        return (
            f"SimulatedMigrationAPI(started={len(self.started)}, "
            f"active={len(self.active)}, cancelled={len(self.cancelled)})"
        )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: NOTIFICATIONS
# ─────────────────────────────────────────────────────────────────────────────

class RecordingNotificationSink:
    """Notification sink that only remembers what it was told."""

    def __init__(self) -> None:
        self.events: List[Notification] = []

    def notify(self, event: Notification) -> None:
        self.events.append(event)

    def of_kind(self, kind: NotificationKind) -> List[Notification]:
        return [e for e in self.events if e.kind == kind]

    def kinds(self) -> List[NotificationKind]:
        return [e.kind for e in self.events]
