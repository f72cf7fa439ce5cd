"""
orchestrator/telemetry/collector.py
─────────────────────────────────────
SnapshotCollector: pulls one ClusterSnapshot per tick from the external
snapshot source and normalises it before anything scores it.

What this is
─────────────
The snapshot source is outside our control. It can be slow, it can fail,
it can send malformed data, and it can drop nodes from a report. The
collector is the one place where those problems are turned into either:

  • a clean, immutable ClusterSnapshot, or
  • a StaleSnapshotError (the caller skips the tick; nothing is fabricated).

Rules applied
──────────────
  1. Bounded wait. fetch_snapshot() is wrapped in asyncio.wait_for(timeout);
     the service passes tick_interval, so a slow source skips ticks instead
     of queueing them.
  2. Any fetch failure, timeout, or pydantic ValidationError → StaleSnapshotError.
  3. A snapshot for the wrong cluster, or one captured BEFORE the last
     accepted snapshot (out of order) → StaleSnapshotError.
  4. Partial snapshots. A node reported in an earlier snapshot but missing
     from this one is re-inserted with status OFFLINE (last known metrics),
     never silently dropped. A workload whose node is missing altogether
     gets an OFFLINE placeholder node. After MISSING_NODE_TTL consecutive
     absences a node is forgotten (decommissioned).

Integration contract
─────────────────────
    collector = SnapshotCollector(source)
    try:
        snapshot = await collector.collect("cluster-a", timeout=30.0)
    except StaleSnapshotError as exc:
        ...  # keep previous results, mark the cluster degraded
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError

from orchestrator.shared.interfaces import SnapshotSource
from orchestrator.shared.models import ClusterSnapshot, NodeMetrics, NodeStatus

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

MISSING_NODE_TTL: int = 10
"""Consecutive snapshots a known node may be missing before it is forgotten.

Below this it is reported OFFLINE: jobs touching it are cancelled and it is
never a target, but it stays visible. Ten ticks at the default 30 s interval
is five minutes, long enough to ride out a flapping agent.
"""


class StaleSnapshotError(Exception):
    """
    Raised when no usable snapshot could be obtained this tick.

    Attributes:
        cluster_id: The cluster whose tick must be skipped.
        reason:     Human-readable explanation.
    """

    def __init__(self, cluster_id: str, reason: str) -> None:
        self.cluster_id = cluster_id
        self.reason = reason
        super().__init__(f"cluster {cluster_id!r}: {reason}")


class SnapshotCollector:
    """
    Fetches and normalises snapshots, one cluster at a time.

    Holds per-cluster memory of the nodes seen so far (for partial-snapshot
    repair) and of the last accepted capture time (for ordering). Nothing
    else is kept between ticks.
    """

    def __init__(self, source: SnapshotSource, missing_node_ttl: int = MISSING_NODE_TTL) -> None:
        self._source = source
        self._missing_node_ttl = missing_node_ttl
        self._known_nodes: Dict[str, Dict[str, NodeMetrics]] = {}
        self._missing_for: Dict[str, Dict[str, int]] = {}
        self._last_captured: Dict[str, datetime] = {}
        self._collect_count: int = 0
        self._failure_count: int = 0

    # ── Public API ─────────────────────────────────────────────────────────────

    async def collect(self, cluster_id: str, timeout: Optional[float] = None) -> ClusterSnapshot:
        """
        Fetch, validate and normalise one snapshot.

        Args:
            cluster_id: Cluster to fetch.
            timeout:    Seconds to wait for the source. None waits forever.

        Returns:
            A normalised ClusterSnapshot.

        Raises:
            StaleSnapshotError: the tick must be skipped.
        """
        self._collect_count += 1
        try:
            raw = await asyncio.wait_for(self._source.fetch_snapshot(cluster_id), timeout)
        except asyncio.TimeoutError:
            self._failure_count += 1
            raise StaleSnapshotError(cluster_id, f"snapshot fetch timed out after {timeout}s")
        except ValidationError as exc:
            self._failure_count += 1
            raise StaleSnapshotError(
                cluster_id, f"malformed snapshot: {exc.error_count()} validation error(s)"
            ) from exc
        except Exception as exc:
            self._failure_count += 1
            raise StaleSnapshotError(cluster_id, f"snapshot fetch failed: {exc}") from exc

        if raw.cluster_id != cluster_id:
            self._failure_count += 1
            raise StaleSnapshotError(
                cluster_id, f"source returned a snapshot for cluster {raw.cluster_id!r}"
            )
        last = self._last_captured.get(cluster_id)
        if last is not None and raw.captured_at < last:
            self._failure_count += 1
            raise StaleSnapshotError(
                cluster_id,
                f"out-of-order snapshot captured at {raw.captured_at.isoformat()} "
                f"(last accepted {last.isoformat()})",
            )

        snapshot = self._normalise(raw)
        self._last_captured[cluster_id] = snapshot.captured_at
        return snapshot

    def forget(self, cluster_id: str) -> None:
        """Drop everything remembered about one cluster."""
        self._known_nodes.pop(cluster_id, None)
        self._missing_for.pop(cluster_id, None)
        self._last_captured.pop(cluster_id, None)

    def known_nodes(self, cluster_id: str) -> List[str]:
        return sorted(self._known_nodes.get(cluster_id, {}))

    # ── Private helpers ────────────────────────────────────────────────────────

    def _normalise(self, raw: ClusterSnapshot) -> ClusterSnapshot:
        cluster_id = raw.cluster_id
        known = self._known_nodes.setdefault(cluster_id, {})
        missing_for = self._missing_for.setdefault(cluster_id, {})

        reported = {node.node_id for node in raw.nodes}
        for node in raw.nodes:
            known[node.node_id] = node
            missing_for.pop(node.node_id, None)

        repaired: List[NodeMetrics] = []
        for node_id in sorted(set(known) - reported):
            missing_for[node_id] = missing_for.get(node_id, 0) + 1
            if missing_for[node_id] > self._missing_node_ttl:
                logger.info(
                    "cluster %s: node %s missing for %d snapshots, forgetting it",
                    cluster_id, node_id, missing_for[node_id] - 1,
                )
                del known[node_id]
                del missing_for[node_id]
                continue
            repaired.append(known[node_id].model_copy(update={"status": NodeStatus.OFFLINE}))

        placed_on = {w.current_node for w in raw.workloads}
        for node_id in sorted(placed_on - reported - {n.node_id for n in repaired}):
            repaired.append(NodeMetrics(node_id=node_id, status=NodeStatus.OFFLINE))

        if not repaired:
            return raw

        logger.warning(
            "cluster %s: partial snapshot, treating %d missing node(s) as offline: %s",
            cluster_id, len(repaired), ", ".join(n.node_id for n in repaired),
        )
        return ClusterSnapshot(
            cluster_id=cluster_id,
            captured_at=raw.captured_at,
            nodes=tuple(raw.nodes) + tuple(repaired),
            workloads=raw.workloads,
        )

    # ── Introspection ──────────────────────────────────────────────────────────

    @property
    def collect_count(self) -> int:
        """Total collect() calls since this collector was created."""
        return self._collect_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def __repr__(self) -> str:
        return (
            f"SnapshotCollector(clusters={len(self._known_nodes)}, "
            f"collects={self._collect_count}, failures={self._failure_count})"
        )
