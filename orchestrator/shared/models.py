"""
orchestrator/shared/models.py
─────────────────────────────
The single source of truth for every data structure the DRS touches.

Design philosophy
-----------------
Every model answers one question: "What does the scheduler *need to know*
about this thing in order to decide whether a workload should move?"

Two families of models live here:

  Observed state   → ClusterSnapshot, NodeMetrics, Workload.
                     Frozen. A snapshot is captured once per tick and then
                     superseded by the next one. Nobody edits it in place;
                     what-if questions are answered by building a new
                     hypothetical snapshot with ClusterSnapshot.with_moves().

  Decisions        → Recommendation, MigrationJob.
                     Recommendations are values too (status changes produce
                     a copy). MigrationJob is the one mutable record: it is
                     owned by the Migration Orchestrator and walked through
                     its lifecycle there.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class NodeStatus(str, Enum):
    """
    Operational state of a node as reported by the snapshot feed.

    ONLINE      → Scored and eligible as a migration target.
    OFFLINE     → Unreachable. Not scored, not a target. Jobs touching an
                  offline node are cancelled.
    MAINTENANCE → Cordoned by an operator. Not scored and not a target, but
                  still reported so the node does not silently disappear.
                  Workloads still on it are evacuated.
    """
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class Dimension(str, Enum):
    """The resource dimension that dominates the imbalance score."""
    CPU = "cpu"
    MEMORY = "memory"
    NONE = "none"


class DRSMode(str, Enum):
    """
    Autonomy level of the scheduler.

    MANUAL    → recommendations are only surfaced.
    PARTIAL   → only recommendations pre-approved by an operator execute.
    AUTOMATIC → every recommendation executes, up to the concurrency ceiling.
    """
    MANUAL = "manual"
    PARTIAL = "partial"
    AUTOMATIC = "automatic"


class RuleKind(str, Enum):
    AFFINITY = "affinity"
    ANTI_AFFINITY = "anti-affinity"


class RuleStrictness(str, Enum):
    """
    MUST   → hard constraint. A generated recommendation never violates it.
    SHOULD → soft constraint. Only lowers a candidate's rank.
    """
    MUST = "must"
    SHOULD = "should"


class TargetKind(str, Enum):
    """
    What a rule's target selector points at.

    CO_LOCATED → the other workloads matched by the subject selector.
    NODES      → an explicit list of node ids.
    NODE_GROUP → every node whose NodeMetrics.group equals the selector group.
    """
    CO_LOCATED = "co-located"
    NODES = "nodes"
    NODE_GROUP = "node-group"


class RecommendationStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class RecommendationKind(str, Enum):
    """
    BALANCE    → produced by the imbalance pass.
    EVACUATION → produced because the source node is being drained.
    """
    BALANCE = "balance"
    EVACUATION = "evacuation"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class JobState(str, Enum):
    """
    Lifecycle of a MigrationJob.

    QUEUED     → Admitted; workload locked; waiting for its worker.
    RUNNING    → Handed to the migration API; being polled.
    SUCCEEDED  → Terminal. Workload unlocked.
    FAILED     → Terminal. Workload unlocked. Transient failures may first
                 loop back to QUEUED while attempts remain.
    CANCELLED  → Terminal. Operator abort or node loss.
    """
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}
)


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: OBSERVED STATE
# What the snapshot feed tells us about the cluster.
# ─────────────────────────────────────────────────────────────────────────────

class NodeMetrics(BaseModel):
    """
    Resource usage of one node at capture time.

    Fields:
        node_id                → Unique node identifier within the cluster.
        status                 → online | offline | maintenance.
        cpu_pct / mem_pct      → Actual utilisation, 0–100.
        workload_count         → Workloads assigned to the node.
        running_workload_count → Of those, how many are running.
                                 Never greater than workload_count.
        group                  → Optional node-group label for rule targets.
    """
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., min_length=1)
    status: NodeStatus = NodeStatus.ONLINE
    cpu_pct: float = Field(0.0, ge=0.0, le=100.0)
    mem_pct: float = Field(0.0, ge=0.0, le=100.0)
    workload_count: int = Field(0, ge=0)
    running_workload_count: int = Field(0, ge=0)
    group: Optional[str] = None

    @model_validator(mode="after")
    def _running_within_total(self) -> "NodeMetrics":
        if self.running_workload_count > self.workload_count:
            raise ValueError(
                f"node {self.node_id!r}: running_workload_count "
                f"({self.running_workload_count}) exceeds workload_count "
                f"({self.workload_count})"
            )
        return self

    @property
    def is_eligible(self) -> bool:
        """True if this node counts for scoring and may receive workloads."""
        return self.status == NodeStatus.ONLINE

    def load(self, dimension: Dimension) -> float:
        """Utilisation on one dimension. NONE falls back to CPU."""
        if dimension == Dimension.MEMORY:
            return self.mem_pct
        return self.cpu_pct


class Workload(BaseModel):
    """
    A relocatable unit of work (VM or container).

    cpu_weight / mem_weight are the percentage points of the host's cpu_pct /
    mem_pct this workload accounts for. Moving the workload subtracts them
    from the source and adds them to the target.

    `locked` is true while a MigrationJob owns the workload. The snapshot
    feed normally reports False; the orchestrator's lock registry is the
    authority and the engine treats either as "do not touch".
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    current_node: str
    cpu_weight: float = Field(0.0, ge=0.0, le=100.0)
    mem_weight: float = Field(0.0, ge=0.0, le=100.0)
    tags: FrozenSet[str] = Field(default_factory=frozenset)
    pool: Optional[str] = None
    locked: bool = False
    running: bool = True

    @property
    def resource_weight(self) -> float:
        """Combined weight used to prefer moving smaller workloads first."""
        return self.cpu_weight + self.mem_weight


class SnapshotSummary(BaseModel):
    """Derived cluster-wide totals. Computed once, when the snapshot is built."""
    model_config = ConfigDict(frozen=True)

    total_nodes: int = 0
    online_nodes: int = 0
    total_workloads: int = 0
    running_workloads: int = 0
    avg_cpu_pct: float = 0.0
    avg_mem_pct: float = 0.0


class ClusterSnapshot(BaseModel):
    """
    Immutable, versioned view of one cluster at one instant.

    Superseded by the next tick's snapshot. `summary` is derived from the
    nodes and workloads on construction; any value passed for it is
    replaced so the summary can never disagree with the data it summarises.

    Averages cover online nodes only. With no online node they are 0.0.
    """
    model_config = ConfigDict(frozen=True)

    cluster_id: str = Field(..., min_length=1)
    captured_at: datetime = Field(default_factory=datetime.utcnow)
    nodes: Tuple[NodeMetrics, ...] = ()
    workloads: Tuple[Workload, ...] = ()
    summary: SnapshotSummary = Field(default_factory=SnapshotSummary)

    @model_validator(mode="after")
    def _derive_summary(self) -> "ClusterSnapshot":
        seen = set()
        for node in self.nodes:
            if node.node_id in seen:
                raise ValueError(
                    f"cluster {self.cluster_id!r}: duplicate node {node.node_id!r}"
                )
            seen.add(node.node_id)

        online = [n for n in self.nodes if n.status == NodeStatus.ONLINE]
        summary = SnapshotSummary(
            total_nodes=len(self.nodes),
            online_nodes=len(online),
            total_workloads=len(self.workloads),
            running_workloads=sum(1 for w in self.workloads if w.running),
            avg_cpu_pct=sum(n.cpu_pct for n in online) / len(online) if online else 0.0,
            avg_mem_pct=sum(n.mem_pct for n in online) / len(online) if online else 0.0,
        )
        # frozen model: bypass __setattr__ for the derived field only
        object.__setattr__(self, "summary", summary)
        return self

    # ── Lookup helpers ────────────────────────────────────────────────────────

    def node(self, node_id: str) -> Optional[NodeMetrics]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def workload(self, workload_id: str) -> Optional[Workload]:
        for workload in self.workloads:
            if workload.id == workload_id:
                return workload
        return None

    @property
    def eligible_nodes(self) -> List[NodeMetrics]:
        return [n for n in self.nodes if n.is_eligible]

    def assignment(self) -> Dict[str, str]:
        """workload_id → node_id for every workload in the snapshot."""
        return {w.id: w.current_node for w in self.workloads}

    def workloads_on(self, node_id: str) -> List[Workload]:
        return [w for w in self.workloads if w.current_node == node_id]

    # ── What-if ───────────────────────────────────────────────────────────────

    def with_moves(self, moves: Iterable[Tuple[str, str]]) -> "ClusterSnapshot":
        """
        Return a NEW snapshot with the given (workload_id, target_node) moves
        applied. This snapshot is not modified.

        For each move the workload's weights are subtracted from its current
        node and added to the target (both clamped to [0, 100]), workload
        counts are shifted, and the workload's current_node is updated.
        Unknown workloads or nodes are ignored.
        """
        cpu: Dict[str, float] = {n.node_id: n.cpu_pct for n in self.nodes}
        mem: Dict[str, float] = {n.node_id: n.mem_pct for n in self.nodes}
        count: Dict[str, int] = {n.node_id: n.workload_count for n in self.nodes}
        running: Dict[str, int] = {
            n.node_id: n.running_workload_count for n in self.nodes
        }
        placement: Dict[str, str] = self.assignment()
        by_id: Dict[str, Workload] = {w.id: w for w in self.workloads}

        for workload_id, target in moves:
            workload = by_id.get(workload_id)
            if workload is None or target not in cpu:
                continue
            source = placement[workload_id]
            if source == target:
                continue
            if source in cpu:
                cpu[source] = _clamp(cpu[source] - workload.cpu_weight)
                mem[source] = _clamp(mem[source] - workload.mem_weight)
                count[source] = max(0, count[source] - 1)
                if workload.running:
                    running[source] = max(0, running[source] - 1)
            cpu[target] = _clamp(cpu[target] + workload.cpu_weight)
            mem[target] = _clamp(mem[target] + workload.mem_weight)
            count[target] += 1
            if workload.running:
                running[target] += 1
            placement[workload_id] = target

        nodes = tuple(
            n.model_copy(update={
                "cpu_pct": cpu[n.node_id],
                "mem_pct": mem[n.node_id],
                "workload_count": count[n.node_id],
                "running_workload_count": min(running[n.node_id], count[n.node_id]),
            })
            for n in self.nodes
        )
        workloads = tuple(
            w if placement[w.id] == w.current_node
            else w.model_copy(update={"current_node": placement[w.id]})
            for w in self.workloads
        )
        return ClusterSnapshot(
            cluster_id=self.cluster_id,
            captured_at=self.captured_at,
            nodes=nodes,
            workloads=workloads,
        )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: CONSTRAINTS AND SETTINGS
# What the rule store and settings store hand us each tick.
# ─────────────────────────────────────────────────────────────────────────────

class SubjectSelector(BaseModel):
    """
    Which workloads a rule talks about.

    A workload matches when ANY criterion matches: its id is listed, its pool
    equals `pool`, or it carries at least one of `tags`. An empty selector
    matches nothing.
    """
    model_config = ConfigDict(frozen=True)

    workload_ids: Tuple[str, ...] = ()
    pool: Optional[str] = None
    tags: Tuple[str, ...] = ()

    def matches(self, workload: Workload) -> bool:
        if workload.id in self.workload_ids:
            return True
        if self.pool is not None and workload.pool == self.pool:
            return True
        return any(tag in workload.tags for tag in self.tags)


class TargetSelector(BaseModel):
    """
    Where a rule points.

    CO_LOCATED → relative to the other subject members (default).
    NODES      → node_ids.
    NODE_GROUP → every node with NodeMetrics.group == node_group.
    """
    model_config = ConfigDict(frozen=True)

    kind: TargetKind = TargetKind.CO_LOCATED
    node_ids: Tuple[str, ...] = ()
    node_group: Optional[str] = None

    @model_validator(mode="after")
    def _target_is_complete(self) -> "TargetSelector":
        if self.kind == TargetKind.NODES and not self.node_ids:
            raise ValueError("target selector of kind 'nodes' needs node_ids")
        if self.kind == TargetKind.NODE_GROUP and not self.node_group:
            raise ValueError("target selector of kind 'node-group' needs node_group")
        return self


class AffinityRule(BaseModel):
    """
    A placement constraint.

    Invariant: a MUST rule is never knowingly violated by a generated
    recommendation; a SHOULD rule only affects ranking.
    Disabled rules are ignored entirely.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    kind: RuleKind
    strictness: RuleStrictness = RuleStrictness.MUST
    subject_selector: SubjectSelector
    target_selector: TargetSelector = Field(default_factory=TargetSelector)
    enabled: bool = True


class DRSSettings(BaseModel):
    """
    Per-cluster scheduler settings, fetched read-only once per tick.

    Fields:
        enabled                   → False: the tick still scores but never
                                    recommends or migrates.
        mode                      → manual | partial | automatic.
        imbalance_threshold       → Score at or above which no balancing
                                    action is taken (0–100).
        max_concurrent_migrations → Ceiling on non-terminal jobs per cluster.
        min_improvement_pct       → Minimum score gain (score points) a move
                                    must predict to be recommended.
        tick_interval             → Seconds between ticks. Also bounds how long
                                    the tick waits for a snapshot.
        migration_cooldown        → Seconds a workload is left alone after one
                                    of its migrations finished.
    """
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    mode: DRSMode = DRSMode.MANUAL
    imbalance_threshold: float = Field(70.0, ge=0.0, le=100.0)
    max_concurrent_migrations: int = Field(2, ge=0)
    min_improvement_pct: float = Field(1.0, ge=0.0)
    tick_interval: float = Field(30.0, gt=0.0)
    migration_cooldown: float = Field(300.0, ge=0.0)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: DECISIONS
# What the scheduler produces.
# ─────────────────────────────────────────────────────────────────────────────

_RECOMMENDATION_NAMESPACE = uuid.UUID("6f1c2d9e-4b7a-4c1e-9a53-0d2f8e6b7c41")


def recommendation_id(
    cluster_id: str, workload_id: str, source_node: str, target_node: str
) -> str:
    """
    Deterministic id for a proposed move.

    The same move proposed on consecutive ticks keeps the same id, so an
    operator approval made against one tick's list still names it later.
    """
    key = f"{cluster_id}/{workload_id}/{source_node}/{target_node}"
    return f"rec-{uuid.uuid5(_RECOMMENDATION_NAMESPACE, key).hex[:12]}"


class Recommendation(BaseModel):
    """
    A proposed migration with its predicted benefit. Not yet executed.

    Status changes are made by producing a copy (with_status()); a tick's
    recommendation list is replaced wholesale by the next tick's.

    Fields:
        predicted_score_delta → Score gain the move is expected to produce.
        predicted_score       → Health score after the move.
        reasons               → Ordered contributing factors, most important first.
        group_id              → Shared by recommendations that must move
                                together (must-affinity bundles). None otherwise.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    cluster_id: str
    workload_id: str
    source_node: str
    target_node: str
    predicted_score_delta: float
    predicted_score: float = Field(0.0, ge=0.0, le=100.0)
    reasons: Tuple[str, ...] = ()
    status: RecommendationStatus = RecommendationStatus.PROPOSED
    kind: RecommendationKind = RecommendationKind.BALANCE
    priority: Priority = Priority.MEDIUM
    group_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def with_status(self, status: RecommendationStatus) -> "Recommendation":
        if status == self.status:
            return self
        return self.model_copy(update={"status": status})


class JobTransition(BaseModel):
    """One entry in a MigrationJob's history."""
    state: JobState
    at: datetime = Field(default_factory=datetime.utcnow)
    note: Optional[str] = None


class MigrationJob(BaseModel):
    """
    The tracked execution unit that relocates one workload.

    Owned exclusively by the Migration Orchestrator. A workload has at most
    one non-terminal MigrationJob at a time.
    """
    id: str = Field(default_factory=lambda: f"mig-{uuid.uuid4().hex[:10]}")
    cluster_id: str
    recommendation_id: str
    workload_id: str
    source_node: str
    target_node: str
    group_id: Optional[str] = None
    state: JobState = JobState.QUEUED
    attempt_count: int = Field(0, ge=0)
    job_handle: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    failure_class: Optional[FailureClass] = None
    history: List[JobTransition] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    def transition(self, state: JobState, note: Optional[str] = None) -> None:
        """Move to `state` and record it. Terminal states also stamp ended_at."""
        self.state = state
        now = datetime.utcnow()
        if state == JobState.RUNNING and self.started_at is None:
            self.started_at = now
        if state in TERMINAL_JOB_STATES:
            self.ended_at = now
        self.history.append(JobTransition(state=state, at=now, note=note))


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))
