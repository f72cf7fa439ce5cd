"""
orchestrator/control_plane/migrations.py
─────────────────────────────────────────
MigrationOrchestrator: turns approved recommendations into MigrationJobs and
drives each one to a terminal state.

This is the ONLY component that calls the external migration API and the
only one that locks or unlocks a workload.

Job lifecycle
──────────────
        admit()
          │  lock (cluster, workload)
          ▼
       QUEUED ──validate──► FAILED (permanent, "rule violation: ...")
          │    ──already on target──► SUCCEEDED (nothing started)
          │
          │ start_migration() once per attempt
          ▼
       RUNNING ──poll…poll──► SUCCEEDED
          │
          ├── failed / timeout, transient, attempts left ──► QUEUED (retry)
          ├── failed, permanent or attempts exhausted   ──► FAILED
          └── cancel_job() / cancel_for_nodes()         ──► CANCELLED

  Every terminal state releases the lock and fires the completion callback
  exactly once. A permanent failure never goes back to QUEUED.

Concurrency model
──────────────────
One asyncio task per job. admit() is synchronous, so the check-then-lock
sequence cannot interleave with another admission on the same event loop:
two non-terminal jobs can never share a (cluster, workload) key.

Admission is per cluster: a recommendation is admitted only if its workload
is unlocked and the cluster's non-terminal job count stays within
max_concurrent_migrations. Bundles (shared group_id) are admitted
all-or-nothing.

Failure classification
───────────────────────
  1. MigrationAPIError.transient, when the adapter sets it, wins.
  2. Otherwise the error text is matched (case-insensitive substrings):
       permanent markers first → PERMANENT
       transient markers       → TRANSIENT
       anything else           → PERMANENT
  Timeouts are recorded as error "timeout" and are TRANSIENT.
  Any other exception from the API is matched by its text like a
  MigrationAPIError. An exception escaping the worker itself fails the job
  permanently ("internal error: ..."), so the lock is always released.

Cancellation is idempotent. Cancelling a terminal job returns it unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from orchestrator.control_plane.mode_controller import group_units
from orchestrator.shared.config import SchedulerConfig
from orchestrator.shared.interfaces import MigrationAPI, MigrationAPIError, PollState
from orchestrator.shared.models import (
    FailureClass,
    JobState,
    MigrationJob,
    Recommendation,
    RecommendationStatus,
)

logger = logging.getLogger(__name__)

TIMEOUT_ERROR: str = "timeout"
RULE_VIOLATION_PREFIX: str = "rule violation"
"""Error prefix for jobs stopped by pre-attempt validation. Always permanent."""

ALREADY_PLACED: str = "already on target"
"""Validator verdict: the workload already sits on its target, the job succeeds without a migration."""

INTERNAL_ERROR_PREFIX: str = "internal error"

DEFAULT_HISTORY_LIMIT: int = 1000
"""Terminal jobs kept for the get_migrations() view before the oldest are dropped."""

JobValidator = Callable[[MigrationJob], Awaitable[Optional[str]]]
"""Returns None if the job may proceed, else the reason it may not."""

CompletionCallback = Callable[[MigrationJob], None]


class MigrationJobNotFoundError(Exception):
    """
    Raised when a job id is not known to the orchestrator.

    Attributes:
        reason: Human-readable explanation.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.reason = f"migration job {job_id!r} not found"
        super().__init__(self.reason)


def classify_failure(
    error: str,
    transient_markers: Iterable[str],
    permanent_markers: Iterable[str],
) -> FailureClass:
    """
    Classify a migration error message.

    Permanent markers are checked before transient ones, so
    "validation timeout" is permanent. Unknown errors are permanent:
    retrying something we do not understand risks repeating the damage.
    """
    text = (error or "").lower()
    if any(marker.lower() in text for marker in permanent_markers):
        return FailureClass.PERMANENT
    if any(marker.lower() in text for marker in transient_markers):
        return FailureClass.TRANSIENT
    return FailureClass.PERMANENT


class MigrationOrchestrator:
    """
    Admits, executes, retries and cancels migration jobs.

    Usage:
        orchestrator = MigrationOrchestrator(api, config, validator=check_job)
        jobs = orchestrator.admit(approved, max_concurrent=2)   # inside a running loop
        ...
        await orchestrator.cancel_job(jobs[0].id)
        await orchestrator.wait_idle()

    Args:
        api:          The external migration API.
        config:       Timeouts, poll interval, attempt cap, error markers.
        validator:    Async pre-attempt check. None disables re-validation.
        on_complete:  Called once with every job that reaches a terminal state.
    """

    def __init__(
        self,
        api: MigrationAPI,
        config: Optional[SchedulerConfig] = None,
        validator: Optional[JobValidator] = None,
        on_complete: Optional[CompletionCallback] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._api = api
        self._config = config or SchedulerConfig()
        self._validator = validator
        self._on_complete = on_complete
        self._history_limit = history_limit

        self._jobs: Dict[str, MigrationJob] = {}
        self._locks: Dict[Tuple[str, str], str] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._released: set = set()

    # ── Views ─────────────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> MigrationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise MigrationJobNotFoundError(job_id)
        return job

    def jobs(self, cluster_id: Optional[str] = None) -> List[MigrationJob]:
        return [
            job for job in self._jobs.values()
            if cluster_id is None or job.cluster_id == cluster_id
        ]

    def active_jobs(self, cluster_id: Optional[str] = None) -> List[MigrationJob]:
        return [job for job in self.jobs(cluster_id) if not job.is_terminal]

    def in_flight(self, cluster_id: str) -> int:
        return len(self.active_jobs(cluster_id))

    def is_locked(self, cluster_id: str, workload_id: str) -> bool:
        return (cluster_id, workload_id) in self._locks

    def locked_workloads(self, cluster_id: str) -> FrozenSet[str]:
        return frozenset(wid for cid, wid in self._locks if cid == cluster_id)

    @property
    def task_count(self) -> int:
        """Worker tasks still tracked. Each task drops itself when it exits."""
        return len(self._tasks)

    # ── Admission ─────────────────────────────────────────────────────────────

    def admit(
        self,
        recommendations: Sequence[Recommendation],
        max_concurrent: int,
    ) -> List[MigrationJob]:
        """
        Create, lock and start jobs for approved recommendations.

        Must be called from inside a running event loop. Recommendations
        that are not APPROVED, whose workload is locked, or that would take
        the cluster past `max_concurrent` are skipped (the engine proposes
        them again on a later tick).

        Returns:
            The jobs created, in input order.
        """
        admitted: List[MigrationJob] = []
        for unit in group_units(recommendations):
            cluster_id = unit[0].cluster_id
            if any(rec.status != RecommendationStatus.APPROVED for rec in unit):
                logger.warning(
                    "cluster %s: skipping unapproved recommendation(s) %s",
                    cluster_id, ", ".join(rec.id for rec in unit),
                )
                continue
            locked = [rec.workload_id for rec in unit if self.is_locked(cluster_id, rec.workload_id)]
            if locked:
                logger.info(
                    "cluster %s: workload(s) %s already have a migration in flight",
                    cluster_id, ", ".join(locked),
                )
                continue
            if self.in_flight(cluster_id) + len(unit) > max_concurrent:
                logger.info(
                    "cluster %s: concurrency ceiling %d reached, deferring %s",
                    cluster_id, max_concurrent, ", ".join(rec.id for rec in unit),
                )
                continue

            for rec in unit:
                admitted.append(self._start(rec))
        return admitted

    def _start(self, rec: Recommendation) -> MigrationJob:
        job = MigrationJob(
            cluster_id=rec.cluster_id,
            recommendation_id=rec.id,
            workload_id=rec.workload_id,
            source_node=rec.source_node,
            target_node=rec.target_node,
            group_id=rec.group_id,
        )
        job.transition(JobState.QUEUED, "admitted")
        self._jobs[job.id] = job
        self._locks[(job.cluster_id, job.workload_id)] = job.id
        self._tasks[job.id] = asyncio.create_task(self._run(job), name=job.id)
        logger.info(
            "cluster %s: job %s queued: %s %s → %s",
            job.cluster_id, job.id, job.workload_id, job.source_node, job.target_node,
        )
        return job

    # ── Execution ─────────────────────────────────────────────────────────────

    async def _run(self, job: MigrationJob) -> None:
        try:
            while not job.is_terminal:
                job.attempt_count += 1

                if self._validator is not None:
                    problem = await self._validator(job)
                    if job.is_terminal:
                        return
                    if problem == ALREADY_PLACED:
                        job.error = None
                        job.failure_class = None
                        job.transition(JobState.SUCCEEDED, ALREADY_PLACED)
                        logger.info(
                            "cluster %s: job %s: %s already on %s, nothing to move",
                            job.cluster_id, job.id, job.workload_id, job.target_node,
                        )
                        return
                    if problem:
                        self._fail(job, f"{RULE_VIOLATION_PREFIX}: {problem}", FailureClass.PERMANENT)
                        return

                job.job_handle = None
                job.transition(JobState.RUNNING, f"attempt {job.attempt_count}")
                error, failure = await self._attempt(job)
                if job.is_terminal:
                    return

                if error is None:
                    job.error = None
                    job.failure_class = None
                    job.transition(JobState.SUCCEEDED)
                    logger.info(
                        "cluster %s: job %s succeeded after %d attempt(s)",
                        job.cluster_id, job.id, job.attempt_count,
                    )
                    return

                if (
                    failure == FailureClass.TRANSIENT
                    and job.attempt_count < self._config.max_attempts
                ):
                    job.error = error
                    job.failure_class = failure
                    job.transition(JobState.QUEUED, f"retrying after: {error}")
                    logger.warning(
                        "cluster %s: job %s attempt %d failed (%s), retrying",
                        job.cluster_id, job.id, job.attempt_count, error,
                    )
                    continue

                self._fail(job, error, failure)
        except asyncio.CancelledError:
            if not job.is_terminal:
                job.transition(JobState.CANCELLED, "worker cancelled")
            raise
        except Exception as exc:
            logger.exception("cluster %s: job %s worker crashed", job.cluster_id, job.id)
            if not job.is_terminal:
                self._fail(job, f"{INTERNAL_ERROR_PREFIX}: {exc!r}", FailureClass.PERMANENT)
        finally:
            self._release(job)
            self._tasks.pop(job.id, None)

    async def _attempt(self, job: MigrationJob) -> Tuple[Optional[str], Optional[FailureClass]]:
        """One start + poll cycle under the per-attempt timeout."""
        try:
            error = await asyncio.wait_for(
                self._start_and_poll(job), timeout=self._config.migration_timeout_s
            )
        except asyncio.TimeoutError:
            await self._cancel_handle(job)
            return TIMEOUT_ERROR, FailureClass.TRANSIENT
        except MigrationAPIError as exc:
            if exc.transient is not None:
                failure = FailureClass.TRANSIENT if exc.transient else FailureClass.PERMANENT
            else:
                failure = self._classify(exc.reason)
            return exc.reason, failure
        except Exception as exc:
            # adapters built on other clients raise their own errors (OSError, HTTP errors)
            reason = str(exc) or type(exc).__name__
            logger.warning(
                "cluster %s: job %s migration call raised %s: %s",
                job.cluster_id, job.id, type(exc).__name__, reason,
            )
            await self._cancel_handle(job)
            return reason, self._classify(reason)

        if error is None:
            return None, None
        return error, self._classify(error)

    async def _start_and_poll(self, job: MigrationJob) -> Optional[str]:
        job.job_handle = await self._api.start_migration(
            job.workload_id, job.source_node, job.target_node
        )
        while True:
            status = await self._api.poll(job.job_handle)
            if status.state == PollState.SUCCEEDED:
                return None
            if status.state == PollState.FAILED:
                return status.error or "migration failed"
            await asyncio.sleep(self._config.poll_interval_s)

    def _classify(self, error: str) -> FailureClass:
        return classify_failure(
            error,
            self._config.transient_error_markers,
            self._config.permanent_error_markers,
        )

    def _fail(self, job: MigrationJob, error: str, failure: Optional[FailureClass]) -> None:
        job.error = error
        job.failure_class = failure or FailureClass.PERMANENT
        job.transition(JobState.FAILED, error)
        logger.error(
            "cluster %s: job %s failed (%s) after %d attempt(s): %s",
            job.cluster_id, job.id, job.failure_class.value, job.attempt_count, error,
        )

    # ── Cancellation ──────────────────────────────────────────────────────────

    async def cancel_job(self, job_id: str, reason: str = "cancelled by operator") -> MigrationJob:
        """
        Abort one job. No-op (returns the job unchanged) if it is already terminal.

        Raises:
            MigrationJobNotFoundError: unknown job id.
        """
        job = self.get_job(job_id)
        if job.is_terminal:
            return job

        job.error = reason
        job.transition(JobState.CANCELLED, reason)
        logger.info("cluster %s: job %s cancelled: %s", job.cluster_id, job.id, reason)

        task = self._tasks.get(job.id)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        await self._cancel_handle(job)
        self._release(job)
        return job

    async def cancel_for_nodes(
        self, cluster_id: str, node_ids: Iterable[str], reason: str = "node offline"
    ) -> List[MigrationJob]:
        """Cancel every non-terminal job in the cluster whose source or target is in node_ids."""
        lost = set(node_ids)
        if not lost:
            return []
        cancelled = []
        for job in self.active_jobs(cluster_id):
            if job.source_node in lost or job.target_node in lost:
                node = job.source_node if job.source_node in lost else job.target_node
                cancelled.append(await self.cancel_job(job.id, f"{reason}: {node}"))
        return cancelled

    async def _cancel_handle(self, job: MigrationJob) -> None:
        if not job.job_handle:
            return
        try:
            await self._api.cancel(job.job_handle)
        except Exception as exc:
            logger.warning(
                "cluster %s: cancel of job %s handle %s failed: %s",
                job.cluster_id, job.id, job.job_handle, exc,
            )

    # ── Completion ────────────────────────────────────────────────────────────

    def _release(self, job: MigrationJob) -> None:
        if job.id in self._released or not job.is_terminal:
            return
        self._released.add(job.id)

        key = (job.cluster_id, job.workload_id)
        if self._locks.get(key) == job.id:
            del self._locks[key]
        task = self._tasks.get(job.id)
        if task is None or task.done() or task is asyncio.current_task():
            self._tasks.pop(job.id, None)

        if self._on_complete is not None:
            try:
                self._on_complete(job)
            except Exception:
                logger.exception("completion callback failed for job %s", job.id)
        self._trim_history()

    def _trim_history(self) -> None:
        terminal = [job for job in self._jobs.values() if job.is_terminal]
        excess = len(terminal) - self._history_limit
        if excess <= 0:
            return
        terminal.sort(key=lambda j: j.ended_at)
        for job in terminal[:excess]:
            self._jobs.pop(job.id, None)
            self._released.discard(job.id)

    async def wait_idle(self) -> None:
        """Wait until every job task has finished."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                self._tasks = {jid: t for jid, t in self._tasks.items() if not t.done()}
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def __repr__(self) -> str:
        return (
            f"MigrationOrchestrator(jobs={len(self._jobs)}, "
            f"locked={len(self._locks)}, running_tasks={self.task_count})"
        )

