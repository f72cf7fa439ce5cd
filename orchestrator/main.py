"""
orchestrator/main.py
─────────────────────
Runnable demo: two simulated clusters under one DRSService.

  cluster-a → automatic mode. Three nodes at 90 / 50 / 10 % CPU. The
              scheduler migrates load off node-a until the score clears
              the threshold.
  cluster-b → manual mode, with node-x in maintenance hosting a pair of web
              workloads bound by a MUST affinity rule. The scheduler
              proposes moving both together and executes nothing.

Run:
    python -m orchestrator.main
    DRS_LOG_LEVEL=DEBUG python -m orchestrator.main
"""

from __future__ import annotations

import asyncio
import logging

from orchestrator.control_plane.drs_service import DRSService
from orchestrator.shared.config import load_config, setup_logging
from orchestrator.shared.models import (
    AffinityRule,
    ClusterSnapshot,
    DRSMode,
    DRSSettings,
    NodeMetrics,
    NodeStatus,
    RuleKind,
    SubjectSelector,
    Workload,
)
from orchestrator.telemetry.simulated import (
    InMemorySnapshotSource,
    SimulatedMigrationAPI,
    StaticRuleStore,
    StaticSettingsStore,
)

logger = logging.getLogger(__name__)

DEMO_TICKS: int = 4


def build_demo() -> DRSService:
    config = load_config(poll_interval_s=0.05)

    cluster_a = ClusterSnapshot(
        cluster_id="cluster-a",
        nodes=(
            NodeMetrics(node_id="node-a", cpu_pct=90, mem_pct=60, workload_count=3, running_workload_count=3),
            NodeMetrics(node_id="node-b", cpu_pct=50, mem_pct=50, workload_count=2, running_workload_count=2),
            NodeMetrics(node_id="node-c", cpu_pct=10, mem_pct=40, workload_count=1, running_workload_count=1),
        ),
        workloads=(
            Workload(id="vm-101", current_node="node-a", cpu_weight=40, mem_weight=20),
            Workload(id="vm-102", current_node="node-a", cpu_weight=30, mem_weight=25),
            Workload(id="vm-103", current_node="node-a", cpu_weight=20, mem_weight=15),
            Workload(id="vm-201", current_node="node-b", cpu_weight=30, mem_weight=30),
            Workload(id="vm-202", current_node="node-b", cpu_weight=20, mem_weight=20),
            Workload(id="vm-301", current_node="node-c", cpu_weight=10, mem_weight=40),
        ),
    )
    cluster_b = ClusterSnapshot(
        cluster_id="cluster-b",
        nodes=(
            NodeMetrics(node_id="node-x", status=NodeStatus.MAINTENANCE, cpu_pct=40, mem_pct=40,
                        workload_count=2, running_workload_count=2),
            NodeMetrics(node_id="node-y", cpu_pct=30, mem_pct=35, workload_count=1, running_workload_count=1),
            NodeMetrics(node_id="node-z", cpu_pct=60, mem_pct=55, workload_count=1, running_workload_count=1),
        ),
        workloads=(
            Workload(id="web-a", current_node="node-x", cpu_weight=20, mem_weight=20, tags=frozenset({"web"})),
            Workload(id="web-b", current_node="node-x", cpu_weight=20, mem_weight=20, tags=frozenset({"web"})),
            Workload(id="db-1", current_node="node-y", cpu_weight=30, mem_weight=35),
            Workload(id="batch-1", current_node="node-z", cpu_weight=60, mem_weight=55),
        ),
    )

    source = InMemorySnapshotSource([cluster_a, cluster_b])
    rules = StaticRuleStore({
        "cluster-b": [
            AffinityRule(
                id="web-together",
                name="web tier stays together",
                kind=RuleKind.AFFINITY,
                subject_selector=SubjectSelector(tags=("web",)),
            ),
        ],
    })
    settings = StaticSettingsStore({
        "cluster-a": DRSSettings(mode=DRSMode.AUTOMATIC, tick_interval=1.0, migration_cooldown=0),
        "cluster-b": DRSSettings(mode=DRSMode.MANUAL, tick_interval=1.0),
    })
    api = SimulatedMigrationAPI(source=source, default_polls=1)

    return DRSService(source, rules, settings, api, config=config,
                      cluster_ids=["cluster-a", "cluster-b"])


async def run_demo(ticks: int = DEMO_TICKS) -> DRSService:
    service = build_demo()
    for n in range(1, ticks + 1):
        await service.tick()
        await service.orchestrator.wait_idle()
        for cluster_id in service.cluster_ids:
            status = service.get_cluster_status(cluster_id)
            logger.info(
                "tick %d %s: score=%s dominant=%s pending=%d active=%d",
                n, cluster_id,
                f"{status.score:.1f}" if status.score is not None else "n/a",
                status.dominant.value, status.pending_recommendations,
                status.active_migrations,
            )

    for cluster_id in service.cluster_ids:
        for rec in service.get_recommendations(cluster_id).recommendations:
            logger.info(
                "%s: %s %s → %s [%s, %s] %s",
                cluster_id, rec.workload_id, rec.source_node, rec.target_node,
                rec.status.value, rec.priority.value, rec.reasons[0] if rec.reasons else "",
            )
        for job in service.get_migrations(cluster_id):
            logger.info(
                "%s: job %s %s %s → %s %s",
                cluster_id, job.id, job.workload_id, job.source_node, job.target_node,
                job.state.value,
            )
    await service.shutdown()
    return service


def main() -> None:
    config = load_config()
    setup_logging(config.log_level)
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
