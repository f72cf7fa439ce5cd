"""
orchestrator/control_plane/drs_service.py
───────────────────────────────────────────
DRSService: the per-cluster control loop and the surface the rest of the
product talks to.

One tick, one cluster
──────────────────────
  1. Fetch DRSSettings, then the snapshot, then the rule set. Each fetch is
     bounded by tick_interval (the settings fetch by the last known one).
     Failure → skip the tick, keep the previous results, mark the cluster
     stale. Nothing is fabricated.
  2. Cancel jobs whose source or target node is now OFFLINE.
  3. Score the snapshot.
  4. Plan:
       • evacuation for maintenance nodes that still host workloads and for
         nodes an operator asked to drain;
       • the balancing pass on the post-evacuation picture, with
         operator-drained nodes out of rotation.
     Locked and cooling-down workloads are excluded.
  5. Mode Controller decides what executes (ceiling applied here).
  6. Migration Orchestrator admits the approved ones.
  7. Publish: the new recommendation list replaces the old one wholesale.

Isolation
──────────
tick() runs every cluster's tick concurrently. Each tick catches its own
failures and records them on that cluster's state, so one cluster's broken
snapshot feed cannot stall or crash another.

Exposed operations
───────────────────
  get_health(cluster)             → HealthReport
  get_recommendations(cluster)    → RecommendationList
  approve_recommendation(c, id)   → Recommendation   (takes effect next tick)
  reject_recommendation(c, id)    → Recommendation
  cancel_migration(job_id)        → MigrationJob
  get_migrations(cluster)         → List[MigrationJob]
  get_rule_violations(cluster)    → List[RuleViolation]
  evacuate_node(cluster, node)    → List[Recommendation] (preview; planned every tick)
  get_cluster_status(cluster)     → ClusterStatus

Every view carries computed_at (last successful tick) and stale_since
(first failed tick since then, None when fresh).

Notifications
──────────────
With a NotificationSink wired in, the service reports every admitted job,
every job that ends, and each node that starts or finishes being drained.
A failing sink is logged and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, TypeVar

from pydantic import BaseModel

from drs_core.health import HealthScore
from drs_core.recommender import RecommendationEngine
from drs_core.rules import RuleEvaluator, RuleViolation
from orchestrator.control_plane.migrations import (
    ALREADY_PLACED,
    RULE_VIOLATION_PREFIX,
    MigrationOrchestrator,
)
from orchestrator.control_plane.mode_controller import apply_mode
from orchestrator.shared.config import SchedulerConfig
from orchestrator.shared.interfaces import (
    MigrationAPI,
    Notification,
    NotificationKind,
    NotificationSink,
    RuleStore,
    SettingsStore,
    SnapshotSource,
)
from orchestrator.shared.models import (
    AffinityRule,
    ClusterSnapshot,
    Dimension,
    DRSMode,
    DRSSettings,
    JobState,
    MigrationJob,
    NodeStatus,
    Recommendation,
    RecommendationStatus,
    SnapshotSummary,
)
from orchestrator.telemetry.collector import SnapshotCollector, StaleSnapshotError

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL: float = 30.0
"""Loop interval used before a cluster's settings have ever been fetched."""

T = TypeVar("T")

_JOB_NOTIFICATIONS: Dict[JobState, NotificationKind] = {
    JobState.SUCCEEDED: NotificationKind.MIGRATION_COMPLETED,
    JobState.FAILED: NotificationKind.MIGRATION_FAILED,
    JobState.CANCELLED: NotificationKind.MIGRATION_CANCELLED,
}


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ERRORS
# ─────────────────────────────────────────────────────────────────────────────

class UnknownClusterError(Exception):
    """
    Raised when an operation names a cluster the service does not manage.

    Attributes:
        reason: Human-readable explanation.
    """

    def __init__(self, cluster_id: str) -> None:
        self.cluster_id = cluster_id
        self.reason = f"cluster {cluster_id!r} is not managed by this scheduler"
        super().__init__(self.reason)


class RecommendationNotFoundError(Exception):
    """
    Raised when a recommendation id is not in the cluster's current list.

    Recommendations are replaced every tick, so an id from an older list
    lapses as soon as the move it names is no longer proposed.
    """

    def __init__(self, cluster_id: str, recommendation_id: str) -> None:
        self.cluster_id = cluster_id
        self.recommendation_id = recommendation_id
        self.reason = (
            f"recommendation {recommendation_id!r} is not current in cluster {cluster_id!r}"
        )
        super().__init__(self.reason)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: STATE AND VIEWS
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ClusterState:
    """Everything the service remembers about one cluster between ticks."""
    cluster_id: str
    snapshot: Optional[ClusterSnapshot] = None
    health: Optional[HealthScore] = None
    settings: Optional[DRSSettings] = None
    rules: List[AffinityRule] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)
    computed_at: Optional[datetime] = None
    stale_since: Optional[datetime] = None
    last_error: Optional[str] = None
    pre_approved: Set[str] = field(default_factory=set)
    rejected: Set[str] = field(default_factory=set)
    drain_requests: Set[str] = field(default_factory=set)
    draining: Dict[str, datetime] = field(default_factory=dict)
    cooldowns: Dict[str, datetime] = field(default_factory=dict)
    tick_count: int = 0
    skipped_ticks: int = 0

    @property
    def degraded(self) -> bool:
        return self.stale_since is not None

    def mark_stale(self, reason: str, now: datetime) -> None:
        self.skipped_ticks += 1
        self.last_error = reason
        if self.stale_since is None:
            self.stale_since = now

    def replace_recommendation(self, updated: Recommendation) -> None:
        self.recommendations = [
            updated if rec.id == updated.id else rec for rec in self.recommendations
        ]


@dataclass(frozen=True)
class TickResult:
    """What one cluster tick did. ok=False means the tick was skipped or failed."""
    cluster_id: str
    ok: bool
    score: Optional[float] = None
    dominant: Dimension = Dimension.NONE
    recommendations: int = 0
    approved: int = 0
    admitted: int = 0
    cancelled: int = 0
    error: Optional[str] = None


class HealthReport(BaseModel):
    cluster_id: str
    score: Optional[float] = None
    dominant: Dimension = Dimension.NONE
    cpu_stddev: float = 0.0
    mem_stddev: float = 0.0
    eligible_nodes: int = 0
    computed_at: Optional[datetime] = None
    stale_since: Optional[datetime] = None


class RecommendationList(BaseModel):
    cluster_id: str
    recommendations: List[Recommendation] = []
    computed_at: Optional[datetime] = None
    stale_since: Optional[datetime] = None


class ClusterStatus(BaseModel):
    """Dashboard summary of one cluster."""
    cluster_id: str
    enabled: bool = False
    mode: Optional[DRSMode] = None
    score: Optional[float] = None
    dominant: Dimension = Dimension.NONE
    summary: Optional[SnapshotSummary] = None
    pending_recommendations: int = 0
    active_migrations: int = 0
    locked_workloads: int = 0
    degraded: bool = False
    last_error: Optional[str] = None
    tick_count: int = 0
    skipped_ticks: int = 0
    computed_at: Optional[datetime] = None
    stale_since: Optional[datetime] = None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: SERVICE
# ─────────────────────────────────────────────────────────────────────────────

class DRSService:
    """
    Control plane for a set of clusters.

    Usage:
        service = DRSService(source, rules, settings, api, cluster_ids=["c1", "c2"])
        await service.tick()                 # one tick for every cluster
        stop = asyncio.Event()
        await service.run(stop)              # loop until stop is set

    Args:
        snapshot_source / rule_store / settings_store / migration_api:
            The external collaborators (orchestrator/shared/interfaces.py).
        config:      Process-level SchedulerConfig. Defaults from the environment.
        cluster_ids: Clusters to manage. More can be added with add_cluster().
        clock:       Returns "now". Injected by tests that exercise cooldowns.
        notifier:    Optional sink for migration and maintenance events.
    """

    def __init__(
        self,
        snapshot_source: SnapshotSource,
        rule_store: RuleStore,
        settings_store: SettingsStore,
        migration_api: MigrationAPI,
        config: Optional[SchedulerConfig] = None,
        cluster_ids: Iterable[str] = (),
        clock: Optional[Callable[[], datetime]] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._notifier = notifier
        self._rule_store = rule_store
        self._settings_store = settings_store
        self._clock = clock or datetime.utcnow

        self._collector = SnapshotCollector(snapshot_source)
        self._engine = RecommendationEngine.from_config(self._config)
        self._orchestrator = MigrationOrchestrator(
            migration_api,
            self._config,
            validator=self._validate_job,
            on_complete=self._on_job_complete,
        )
        self._clusters: Dict[str, ClusterState] = {}
        for cluster_id in cluster_ids:
            self.add_cluster(cluster_id)

    @property
    def orchestrator(self) -> MigrationOrchestrator:
        return self._orchestrator

    @property
    def engine(self) -> RecommendationEngine:
        return self._engine

    @property
    def cluster_ids(self) -> List[str]:
        return list(self._clusters)

    def add_cluster(self, cluster_id: str) -> None:
        if cluster_id not in self._clusters:
            self._clusters[cluster_id] = ClusterState(cluster_id=cluster_id)
            logger.info("managing cluster %s", cluster_id)

    def _state(self, cluster_id: str) -> ClusterState:
        state = self._clusters.get(cluster_id)
        if state is None:
            raise UnknownClusterError(cluster_id)
        return state

    # ── Tick pipeline ─────────────────────────────────────────────────────────

    async def tick(self) -> List[TickResult]:
        """One isolated tick for every managed cluster, run concurrently."""
        return list(await asyncio.gather(
            *(self.tick_cluster(cluster_id) for cluster_id in list(self._clusters))
        ))

    async def tick_cluster(self, cluster_id: str) -> TickResult:
        """
        Run the full pipeline for one cluster. Never raises for a failure
        inside the cluster: it is logged, recorded, and reported in the result.

        Raises:
            UnknownClusterError: cluster_id is not managed.
        """
        state = self._state(cluster_id)
        state.tick_count += 1

        try:
            settings = await self._bounded(
                cluster_id,
                "settings",
                self._settings_store.get_settings(cluster_id),
                state.settings.tick_interval if state.settings else DEFAULT_TICK_INTERVAL,
            )
            snapshot = await self._collector.collect(cluster_id, timeout=settings.tick_interval)
            rules = await self._bounded(
                cluster_id, "rules", self._rule_store.get_rules(cluster_id), settings.tick_interval
            )
        except StaleSnapshotError as exc:
            logger.warning("cluster %s: skipping tick, stale input: %s", cluster_id, exc.reason)
            state.mark_stale(exc.reason, self._clock())
            return TickResult(cluster_id=cluster_id, ok=False, error=exc.reason)
        except Exception as exc:
            logger.exception("cluster %s: skipping tick, input fetch failed", cluster_id)
            state.mark_stale(str(exc), self._clock())
            return TickResult(cluster_id=cluster_id, ok=False, error=str(exc))

        try:
            return await self._process(state, settings, snapshot, rules)
        except Exception as exc:
            logger.exception("cluster %s: tick failed", cluster_id)
            state.mark_stale(str(exc), self._clock())
            return TickResult(cluster_id=cluster_id, ok=False, error=str(exc))

    @staticmethod
    async def _bounded(cluster_id: str, what: str, fetch: Awaitable[T], timeout: float) -> T:
        try:
            return await asyncio.wait_for(fetch, timeout=timeout)
        except asyncio.TimeoutError:
            raise StaleSnapshotError(cluster_id, f"{what} fetch timed out after {timeout:.1f}s") from None

    async def _process(
        self,
        state: ClusterState,
        settings: DRSSettings,
        snapshot: ClusterSnapshot,
        rules: List[AffinityRule],
    ) -> TickResult:
        cluster_id = state.cluster_id

        offline = [n.node_id for n in snapshot.nodes if n.status == NodeStatus.OFFLINE]
        cancelled = await self._orchestrator.cancel_for_nodes(cluster_id, offline)

        health = self._engine.scorer.score(snapshot)
        excluded = set(self._orchestrator.locked_workloads(cluster_id))
        excluded |= self._cooling_down(state, settings)

        recommendations: List[Recommendation] = []
        if settings.enabled:
            drains = self._nodes_to_drain(state, snapshot)
            self._track_drains(state, snapshot, drains)
            planning = snapshot
            for node_id in drains:
                evacuation = self._engine.evacuate(planning, node_id, rules, excluded)
                recommendations.extend(evacuation)
                excluded |= {rec.workload_id for rec in evacuation}
                planning = planning.with_moves(
                    (rec.workload_id, rec.target_node) for rec in evacuation
                )
            planning = _hold_drained(planning, state.drain_requests)
            recommendations.extend(
                self._engine.recommend(planning, settings, rules, frozenset(excluded))
            )

        current_ids = {rec.id for rec in recommendations}
        state.pre_approved &= current_ids
        state.rejected &= current_ids

        decision = apply_mode(
            recommendations,
            settings,
            pre_approved=state.pre_approved,
            rejected=state.rejected,
            in_flight=self._orchestrator.in_flight(cluster_id),
        )

        # publish before admitting so the job validator sees this tick's snapshot
        state.snapshot = snapshot
        state.health = health
        state.settings = settings
        state.rules = list(rules)
        state.recommendations = list(decision.recommendations)
        state.computed_at = self._clock()
        state.stale_since = None
        state.last_error = None

        jobs = self._orchestrator.admit(decision.approved, settings.max_concurrent_migrations)
        state.pre_approved -= {job.recommendation_id for job in jobs}
        reasons = {rec.id: "; ".join(rec.reasons) or rec.kind.value for rec in decision.approved}
        for job in jobs:
            self._notify(Notification(
                kind=NotificationKind.MIGRATION_STARTED,
                cluster_id=cluster_id,
                workload_id=job.workload_id,
                job_id=job.id,
                source_node=job.source_node,
                target_node=job.target_node,
                reason=reasons.get(job.recommendation_id),
            ))

        logger.info(
            "cluster %s: score %.1f (%s), %d recommendation(s), %d approved, "
            "%d admitted, %d cancelled",
            cluster_id, health.score, health.dominant.value, len(recommendations),
            len(decision.approved), len(jobs), len(cancelled),
        )
        return TickResult(
            cluster_id=cluster_id,
            ok=True,
            score=health.score,
            dominant=health.dominant,
            recommendations=len(recommendations),
            approved=len(decision.approved),
            admitted=len(jobs),
            cancelled=len(cancelled),
        )

    def _nodes_to_drain(self, state: ClusterState, snapshot: ClusterSnapshot) -> List[str]:
        drains = []
        for node in snapshot.nodes:
            occupied = any(w.running for w in snapshot.workloads_on(node.node_id))
            requested = node.node_id in state.drain_requests
            if requested and not occupied:
                logger.info("cluster %s: node %s drained", state.cluster_id, node.node_id)
                state.drain_requests.discard(node.node_id)
                continue
            if occupied and (requested or node.status == NodeStatus.MAINTENANCE):
                drains.append(node.node_id)
        return drains

    def _track_drains(self, state: ClusterState, snapshot: ClusterSnapshot, drains: List[str]) -> None:
        """Announce nodes that start or stop being drained."""
        now = self._clock()
        for node_id in drains:
            if node_id in state.draining:
                continue
            state.draining[node_id] = now
            self._notify(Notification(
                kind=NotificationKind.MAINTENANCE_ENTER,
                cluster_id=state.cluster_id,
                node_id=node_id,
                workloads_to_move=sum(1 for w in snapshot.workloads_on(node_id) if w.running),
            ))

        for node_id in [n for n in state.draining if n not in drains]:
            started = state.draining.pop(node_id)
            if any(w.running for w in snapshot.workloads_on(node_id)):
                self._notify(Notification(
                    kind=NotificationKind.MAINTENANCE_EXIT,
                    cluster_id=state.cluster_id,
                    node_id=node_id,
                ))
                continue
            logger.info("cluster %s: evacuation of %s completed", state.cluster_id, node_id)
            self._notify(Notification(
                kind=NotificationKind.EVACUATION_COMPLETED,
                cluster_id=state.cluster_id,
                node_id=node_id,
                duration_s=(now - started).total_seconds(),
            ))

    def _cooling_down(self, state: ClusterState, settings: DRSSettings) -> Set[str]:
        now = self._clock()
        window = timedelta(seconds=settings.migration_cooldown)
        for workload_id, finished in list(state.cooldowns.items()):
            if now - finished >= window:
                del state.cooldowns[workload_id]
        return set(state.cooldowns)

    # ── Orchestrator hooks ────────────────────────────────────────────────────

    async def _validate_job(self, job: MigrationJob) -> Optional[str]:
        """Re-check a job against the latest snapshot before each attempt."""
        state = self._clusters.get(job.cluster_id)
        if state is None or state.snapshot is None:
            return "cluster state unavailable"
        snapshot = state.snapshot

        workload = snapshot.workload(job.workload_id)
        if workload is None:
            return f"workload {job.workload_id} is no longer reported"
        if workload.current_node == job.target_node:
            return ALREADY_PLACED
        if workload.current_node != job.source_node:
            return f"workload {job.workload_id} is no longer on {job.source_node}"
        target = snapshot.node(job.target_node)
        if target is None or not target.is_eligible:
            return f"target node {job.target_node} is not online"

        assignment = snapshot.assignment()
        assignment[job.workload_id] = job.target_node
        if job.group_id is not None:
            # bundle members that already moved are on their target even if
            # the snapshot predates it; later jobs overwrite earlier ones
            for other in self._orchestrator.jobs(job.cluster_id):
                if other.group_id != job.group_id or other.id == job.id:
                    continue
                if not other.is_terminal or other.state == JobState.SUCCEEDED:
                    assignment[other.workload_id] = other.target_node

        decision = RuleEvaluator(state.rules).evaluate(
            job.workload_id,
            job.target_node,
            assignment,
            {w.id: w for w in snapshot.workloads},
            {n.node_id: n for n in snapshot.nodes},
        )
        if not decision.allowed:
            return f"must rule {decision.violated_rule_id} forbids {job.target_node}"
        return None

    def _on_job_complete(self, job: MigrationJob) -> None:
        state = self._clusters.get(job.cluster_id)
        if state is None:
            return
        if job.state in (JobState.SUCCEEDED, JobState.FAILED) and job.ended_at is not None:
            state.cooldowns[job.workload_id] = job.ended_at

        if job.state == JobState.FAILED and (job.error or "").startswith(RULE_VIOLATION_PREFIX):
            for rec in state.recommendations:
                if rec.id == job.recommendation_id:
                    state.replace_recommendation(rec.with_status(RecommendationStatus.SUPERSEDED))
                    logger.info(
                        "cluster %s: recommendation %s superseded: %s",
                        job.cluster_id, rec.id, job.error,
                    )

        duration = None
        if job.started_at is not None and job.ended_at is not None:
            duration = (job.ended_at - job.started_at).total_seconds()
        self._notify(Notification(
            kind=_JOB_NOTIFICATIONS[job.state],
            cluster_id=job.cluster_id,
            workload_id=job.workload_id,
            job_id=job.id,
            source_node=job.source_node,
            target_node=job.target_node,
            error=job.error,
            duration_s=duration,
        ))

    def _notify(self, event: Notification) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(event)
        except Exception:
            logger.exception("cluster %s: notification %s failed", event.cluster_id, event.kind.value)

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_health(self, cluster_id: str) -> HealthReport:
        state = self._state(cluster_id)
        health = state.health
        if health is None:
            return HealthReport(cluster_id=cluster_id, stale_since=state.stale_since)
        return HealthReport(
            cluster_id=cluster_id,
            score=health.score,
            dominant=health.dominant,
            cpu_stddev=health.cpu_stddev,
            mem_stddev=health.mem_stddev,
            eligible_nodes=health.eligible_nodes,
            computed_at=state.computed_at,
            stale_since=state.stale_since,
        )

    def get_recommendations(self, cluster_id: str) -> RecommendationList:
        state = self._state(cluster_id)
        return RecommendationList(
            cluster_id=cluster_id,
            recommendations=list(state.recommendations),
            computed_at=state.computed_at,
            stale_since=state.stale_since,
        )

    def get_migrations(self, cluster_id: str) -> List[MigrationJob]:
        self._state(cluster_id)
        return [job.model_copy(deep=True) for job in self._orchestrator.jobs(cluster_id)]

    def get_rule_violations(self, cluster_id: str) -> List[RuleViolation]:
        state = self._state(cluster_id)
        if state.snapshot is None:
            return []
        snapshot = state.snapshot
        return RuleEvaluator(state.rules).find_violations(
            snapshot.assignment(),
            {w.id: w for w in snapshot.workloads},
            {n.node_id: n for n in snapshot.nodes},
        )

    def get_cluster_status(self, cluster_id: str) -> ClusterStatus:
        state = self._state(cluster_id)
        settings = state.settings
        health = state.health
        return ClusterStatus(
            cluster_id=cluster_id,
            enabled=settings.enabled if settings else False,
            mode=settings.mode if settings else None,
            score=health.score if health else None,
            dominant=health.dominant if health else Dimension.NONE,
            summary=state.snapshot.summary if state.snapshot else None,
            pending_recommendations=sum(
                1 for r in state.recommendations if r.status == RecommendationStatus.PROPOSED
            ),
            active_migrations=self._orchestrator.in_flight(cluster_id),
            locked_workloads=len(self._orchestrator.locked_workloads(cluster_id)),
            degraded=state.degraded,
            last_error=state.last_error,
            tick_count=state.tick_count,
            skipped_ticks=state.skipped_ticks,
            computed_at=state.computed_at,
            stale_since=state.stale_since,
        )

    # ── Commands ──────────────────────────────────────────────────────────────

    def approve_recommendation(self, cluster_id: str, recommendation_id: str) -> Recommendation:
        """
        Pre-approve a recommendation (and the rest of its bundle).

        In partial mode it executes on the next tick if the engine still
        proposes it. In manual mode the approval is recorded but DRS
        executes nothing.

        Raises:
            UnknownClusterError, RecommendationNotFoundError.
        """
        state = self._state(cluster_id)
        target = self._find(state, recommendation_id)
        for rec in self._bundle_of(state, target):
            state.pre_approved.add(rec.id)
            state.rejected.discard(rec.id)
            state.replace_recommendation(rec.with_status(RecommendationStatus.APPROVED))
        logger.info("cluster %s: recommendation %s approved", cluster_id, recommendation_id)
        return self._find(state, recommendation_id)

    def reject_recommendation(self, cluster_id: str, recommendation_id: str) -> Recommendation:
        """
        Reject a recommendation (and the rest of its bundle). The move is not
        executed while it keeps being proposed under the same id.

        Raises:
            UnknownClusterError, RecommendationNotFoundError.
        """
        state = self._state(cluster_id)
        target = self._find(state, recommendation_id)
        for rec in self._bundle_of(state, target):
            state.rejected.add(rec.id)
            state.pre_approved.discard(rec.id)
            state.replace_recommendation(rec.with_status(RecommendationStatus.REJECTED))
        logger.info("cluster %s: recommendation %s rejected", cluster_id, recommendation_id)
        return self._find(state, recommendation_id)

    async def cancel_migration(self, job_id: str) -> MigrationJob:
        """Operator abort. Idempotent; raises MigrationJobNotFoundError for unknown ids."""
        job = await self._orchestrator.cancel_job(job_id, "cancelled by operator")
        return job.model_copy(deep=True)

    def evacuate_node(self, cluster_id: str, node_id: str) -> List[Recommendation]:
        """
        Ask for a node to be drained.

        The drain is planned on every tick until the node hosts no workloads.
        Returns a preview computed from the last snapshot ([] before the
        first successful tick).
        """
        state = self._state(cluster_id)
        state.drain_requests.add(node_id)
        logger.info("cluster %s: evacuation of %s requested", cluster_id, node_id)
        if state.snapshot is None:
            return []
        excluded: FrozenSet[str] = self._orchestrator.locked_workloads(cluster_id)
        return self._engine.evacuate(state.snapshot, node_id, state.rules, excluded)

    def _find(self, state: ClusterState, recommendation_id: str) -> Recommendation:
        for rec in state.recommendations:
            if rec.id == recommendation_id:
                return rec
        raise RecommendationNotFoundError(state.cluster_id, recommendation_id)

    def _bundle_of(self, state: ClusterState, rec: Recommendation) -> List[Recommendation]:
        if rec.group_id is None:
            return [rec]
        return [r for r in state.recommendations if r.group_id == rec.group_id]

    # ── Loop ──────────────────────────────────────────────────────────────────

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Tick every cluster at its own tick_interval until stop_event is set.
        In-flight migrations keep running after the loop stops; call
        shutdown() to wait for or cancel them.
        """
        stop = stop_event or asyncio.Event()
        loops = [
            asyncio.create_task(self._cluster_loop(cluster_id, stop), name=f"drs-{cluster_id}")
            for cluster_id in list(self._clusters)
        ]
        try:
            await asyncio.gather(*loops)
        finally:
            for task in loops:
                task.cancel()

    async def _cluster_loop(self, cluster_id: str, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while not stop.is_set():
            started = loop.time()
            await self.tick_cluster(cluster_id)
            settings = self._clusters[cluster_id].settings
            interval = settings.tick_interval if settings else DEFAULT_TICK_INTERVAL
            remaining = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                continue

    async def shutdown(self, cancel_migrations: bool = False) -> None:
        """Wait for in-flight migrations, or cancel them first."""
        if cancel_migrations:
            for job in self._orchestrator.active_jobs():
                await self._orchestrator.cancel_job(job.id, "scheduler shutting down")
        await self._orchestrator.wait_idle()

    def __repr__(self) -> str:
        return f"DRSService(clusters={len(self._clusters)}, {self._orchestrator!r})"


def _hold_drained(snapshot: ClusterSnapshot, drain_requests: Set[str]) -> ClusterSnapshot:
    """Planning copy in which operator-drained nodes are out of rotation."""
    held = [n.node_id for n in snapshot.nodes if n.node_id in drain_requests and n.is_eligible]
    if not held:
        return snapshot
    return ClusterSnapshot(
        cluster_id=snapshot.cluster_id,
        captured_at=snapshot.captured_at,
        nodes=tuple(
            n.model_copy(update={"status": NodeStatus.MAINTENANCE}) if n.node_id in held else n
            for n in snapshot.nodes
        ),
        workloads=snapshot.workloads,
    )
