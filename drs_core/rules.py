"""
drs_core/rules.py
─────────────────
RuleEvaluator: decides whether a candidate placement satisfies the
configured affinity / anti-affinity rules.

What it answers
────────────────
  evaluate(workload_id, target_node, assignment, ...) → RuleDecision
      "May this workload land on that node, given where everything else is?"

  find_violations(assignment, ...) → List[RuleViolation]
      "Which rules does the CURRENT placement already break?"  (audit view)

  bundle_for(workload_id, assignment, ...) → Tuple[str, ...]
      "Which workloads must travel with this one?"  (must-affinity partners
      that currently share its node)

Rule semantics
───────────────
A rule only applies to a workload matched by its subject selector.
"Others" are the OTHER subject members that have a placement.

  target = co-located (default)
    anti-affinity → violated if the target already hosts another member.
    affinity      → violated if other members are placed somewhere and the
                    target hosts none of them.

  target = nodes / node-group
    affinity      → violated if the target is NOT one of the selected nodes.
    anti-affinity → violated if the target IS one of the selected nodes.

Strictness
───────────
  MUST   → gate. The first MUST violation (declaration order) short-circuits
           with allowed=False and that rule's id.
  SHOULD → never gates. Each violated SHOULD rule adds 1.0 to `penalty`
           and its id to `soft_violations`; the Recommendation Engine folds
           the penalty into ranking.

Disabled rules are skipped everywhere.

Assignments are plain dicts (workload_id → node_id). To check a bundle that
moves together, pass an assignment where every member already sits on the
target; then each member sees the others at its destination.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from orchestrator.shared.models import (
    AffinityRule,
    NodeMetrics,
    RuleKind,
    RuleStrictness,
    TargetKind,
    Workload,
)

SHOULD_VIOLATION_PENALTY: float = 1.0
"""Penalty units contributed by one violated SHOULD rule."""


@dataclass(frozen=True)
class RuleDecision:
    """
    Outcome of evaluating one placement.

    allowed          → False only for a MUST violation.
    violated_rule_id → Id of the first violated MUST rule, else None.
    penalty          → Sum of SHOULD penalties (0.0 when none violated).
    soft_violations  → Ids of violated SHOULD rules, declaration order.
    """
    allowed: bool
    violated_rule_id: Optional[str] = None
    penalty: float = 0.0
    soft_violations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RuleViolation:
    """One rule broken by the current placement."""
    rule_id: str
    strictness: RuleStrictness
    workload_ids: Tuple[str, ...]
    node_ids: Tuple[str, ...]
    message: str

    @property
    def severity(self) -> str:
        return "critical" if self.strictness == RuleStrictness.MUST else "warning"


class RuleEvaluator:
    """
    Evaluates placements against an ordered rule set.

    Stateless apart from the rule list it was built with. Build one per tick
    from the rule store's answer.

    Usage:
        evaluator = RuleEvaluator(rules)
        decision = evaluator.evaluate("wl-1", "node-b", assignment, workloads, nodes)
        if not decision.allowed:
            ...  # decision.violated_rule_id
    """

    def __init__(self, rules: Sequence[AffinityRule]) -> None:
        self._rules: Tuple[AffinityRule, ...] = tuple(r for r in rules if r.enabled)

    @property
    def rules(self) -> Tuple[AffinityRule, ...]:
        return self._rules

    # ── Placement gate ────────────────────────────────────────────────────────

    def evaluate(
        self,
        workload_id: str,
        target_node: str,
        assignment: Mapping[str, str],
        workloads: Mapping[str, Workload],
        nodes: Mapping[str, NodeMetrics],
    ) -> RuleDecision:
        """
        Decide whether `workload_id` may be placed on `target_node`.

        Args:
            workload_id: The workload being placed.
            target_node: Candidate destination.
            assignment:  workload_id → node_id for every placed workload.
                         The moving workload's own entry is ignored.
            workloads:   workload_id → Workload (for selector matching).
            nodes:       node_id → NodeMetrics (for node-group targets).

        Returns:
            RuleDecision.
        """
        workload = workloads.get(workload_id)
        if workload is None:
            return RuleDecision(allowed=True)

        penalty = 0.0
        soft: List[str] = []
        for rule in self._rules:
            if not rule.subject_selector.matches(workload):
                continue
            if not self._violates(rule, workload, target_node, assignment, workloads, nodes):
                continue
            if rule.strictness == RuleStrictness.MUST:
                return RuleDecision(allowed=False, violated_rule_id=rule.id)
            penalty += SHOULD_VIOLATION_PENALTY
            soft.append(rule.id)

        return RuleDecision(allowed=True, penalty=penalty, soft_violations=tuple(soft))

    def _violates(
        self,
        rule: AffinityRule,
        workload: Workload,
        target_node: str,
        assignment: Mapping[str, str],
        workloads: Mapping[str, Workload],
        nodes: Mapping[str, NodeMetrics],
    ) -> bool:
        target = rule.target_selector

        if target.kind == TargetKind.CO_LOCATED:
            others = _placed_members(rule, assignment, workloads, exclude=workload.id)
            hosts_other = any(node == target_node for node in others.values())
            if rule.kind == RuleKind.ANTI_AFFINITY:
                return hosts_other
            return bool(others) and not hosts_other

        selected = _selected_nodes(rule, nodes)
        if rule.kind == RuleKind.AFFINITY:
            return target_node not in selected
        return target_node in selected

    # ── Bundles ───────────────────────────────────────────────────────────────

    def bundle_for(
        self,
        workload_id: str,
        assignment: Mapping[str, str],
        workloads: Mapping[str, Workload],
    ) -> Tuple[str, ...]:
        """
        The workload plus every MUST co-located affinity partner sharing its node.

        Closed transitively: a partner's partners on the same node are
        included too. Returned sorted for determinism. A workload with no
        such partners returns a 1-tuple.
        """
        home = assignment.get(workload_id)
        bundle: Set[str] = {workload_id}
        if home is None:
            return (workload_id,)

        frontier = [workload_id]
        while frontier:
            current = workloads.get(frontier.pop())
            if current is None:
                continue
            for rule in self._rules:
                if (
                    rule.kind != RuleKind.AFFINITY
                    or rule.strictness != RuleStrictness.MUST
                    or rule.target_selector.kind != TargetKind.CO_LOCATED
                    or not rule.subject_selector.matches(current)
                ):
                    continue
                members = _placed_members(rule, assignment, workloads, exclude=current.id)
                for member_id, node in members.items():
                    if node == home and member_id not in bundle:
                        bundle.add(member_id)
                        frontier.append(member_id)

        return tuple(sorted(bundle))

    # ── Audit ─────────────────────────────────────────────────────────────────

    def find_violations(
        self,
        assignment: Mapping[str, str],
        workloads: Mapping[str, Workload],
        nodes: Mapping[str, NodeMetrics],
    ) -> List[RuleViolation]:
        """
        List every rule the current placement breaks, in declaration order.
        At most one RuleViolation per rule.
        """
        violations: List[RuleViolation] = []
        for rule in self._rules:
            members = _placed_members(rule, assignment, workloads)
            if not members:
                continue
            violation = self._audit_rule(rule, members, nodes)
            if violation is not None:
                violations.append(violation)
        return violations

    def _audit_rule(
        self,
        rule: AffinityRule,
        members: Dict[str, str],
        nodes: Mapping[str, NodeMetrics],
    ) -> Optional[RuleViolation]:
        target = rule.target_selector

        if target.kind == TargetKind.CO_LOCATED:
            by_node: Dict[str, List[str]] = {}
            for member_id, node in sorted(members.items()):
                by_node.setdefault(node, []).append(member_id)

            if rule.kind == RuleKind.AFFINITY and len(by_node) > 1:
                return RuleViolation(
                    rule_id=rule.id,
                    strictness=rule.strictness,
                    workload_ids=tuple(sorted(members)),
                    node_ids=tuple(sorted(by_node)),
                    message="affinity rule violated: workloads should share one node",
                )
            if rule.kind == RuleKind.ANTI_AFFINITY:
                for node in sorted(by_node):
                    if len(by_node[node]) > 1:
                        return RuleViolation(
                            rule_id=rule.id,
                            strictness=rule.strictness,
                            workload_ids=tuple(by_node[node]),
                            node_ids=(node,),
                            message="anti-affinity rule violated: workloads should run on different nodes",
                        )
            return None

        selected = _selected_nodes(rule, nodes)
        if rule.kind == RuleKind.AFFINITY:
            offending = {w: n for w, n in members.items() if n not in selected}
            message = "node affinity rule violated: workloads should run on the selected nodes"
        else:
            offending = {w: n for w, n in members.items() if n in selected}
            message = "node anti-affinity rule violated: workloads should avoid the selected nodes"
        if not offending:
            return None
        return RuleViolation(
            rule_id=rule.id,
            strictness=rule.strictness,
            workload_ids=tuple(sorted(offending)),
            node_ids=tuple(sorted(set(offending.values()))),
            message=message,
        )

    def __repr__(self) -> str:
        return f"RuleEvaluator(rules={len(self._rules)})"


# ── Module-level convenience ──────────────────────────────────────────────────

def evaluate_placement(
    workload_id: str,
    target_node: str,
    rules: Sequence[AffinityRule],
    assignment: Mapping[str, str],
    workloads: Iterable[Workload],
    nodes: Iterable[NodeMetrics] = (),
) -> RuleDecision:
    """One-shot form of RuleEvaluator.evaluate() taking plain sequences."""
    return RuleEvaluator(rules).evaluate(
        workload_id,
        target_node,
        assignment,
        {w.id: w for w in workloads},
        {n.node_id: n for n in nodes},
    )


def find_violations(
    rules: Sequence[AffinityRule],
    assignment: Mapping[str, str],
    workloads: Iterable[Workload],
    nodes: Iterable[NodeMetrics] = (),
) -> List[RuleViolation]:
    """One-shot form of RuleEvaluator.find_violations()."""
    return RuleEvaluator(rules).find_violations(
        assignment,
        {w.id: w for w in workloads},
        {n.node_id: n for n in nodes},
    )


def _placed_members(
    rule: AffinityRule,
    assignment: Mapping[str, str],
    workloads: Mapping[str, Workload],
    exclude: Optional[str] = None,
) -> Dict[str, str]:
    """Subject members with a placement: member_id → node_id."""
    return {
        wid: assignment[wid]
        for wid, wl in workloads.items()
        if wid != exclude and wid in assignment and rule.subject_selector.matches(wl)
    }


def _selected_nodes(rule: AffinityRule, nodes: Mapping[str, NodeMetrics]) -> Set[str]:
    target = rule.target_selector
    if target.kind == TargetKind.NODES:
        return set(target.node_ids)
    return {nid for nid, node in nodes.items() if node.group == target.node_group}
