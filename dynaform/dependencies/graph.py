"""
DYNAFORM Dependency Graph

Directed acyclic graph of field dependencies, built from the active
derivation rules.

Nodes are field patterns: absolute paths (``subtotal``) or item patterns
(``items.$.lineTotal``), so one node stands for the same field in every
array item. Edges run dependency -> target. Containment edges run
descendant -> container (``items.$.lineTotal -> items``) so that a rule
reading a whole array is ordered after the per-item rules writing into it.

Self-transform rules read only their own value and add no edge. Rules with
the wildcard dependency ``*`` are kept out of the graph and always rank last.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set
import logging

import networkx as nx

from dynaform.core.paths import WILDCARD, Segments, is_descendant, parse_path
from dynaform.errors.exceptions import CyclicDependencyError

logger = logging.getLogger(__name__)


# =============================================================================
# EDGE TYPES
# =============================================================================

class EdgeType(Enum):
    """Type of dependency relationship."""
    DATA_FLOW = "data_flow"        # Target is computed from source
    CONTAINMENT = "containment"    # Source lies inside the target container


@dataclass
class RuleEntry:
    """Graph-level view of one rule."""
    rule_id: str
    target: str
    dependencies: List[str] = field(default_factory=list)
    is_wildcard: bool = False
    self_transform: bool = False


# =============================================================================
# DEPENDENCY GRAPH
# =============================================================================

class DependencyGraph:
    """
    Field dependency DAG with cycle rejection.

    Usage:
        graph = DependencyGraph()
        graph.add_rule("r1", "priceWithMarkup", ["basePrice"])
        graph.add_rule("r2", "priceWithTax", ["priceWithMarkup"])
        graph.get_recalculation_order({"basePrice"})
        # ['priceWithMarkup', 'priceWithTax']
    """

    def __init__(self):
        self._rules: Dict[str, RuleEntry] = {}
        self._graph: nx.DiGraph = nx.DiGraph()
        self._order: Dict[str, int] = {}
        self._build_timestamp: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def add_rule(
        self,
        rule_id: str,
        target: str,
        dependencies: Iterable[str],
        self_transform: bool = False,
    ) -> None:
        """
        Register a rule's edges.

        Raises:
            CyclicDependencyError: if the rule would close a cycle; the graph
                is left unchanged
        """
        entry = self._make_entry(rule_id, target, dependencies, self_transform)

        candidate = dict(self._rules)
        candidate[rule_id] = entry
        graph = self._build(candidate.values())

        cycle = self._find_cycle(graph)
        if cycle:
            raise CyclicDependencyError(cycle)

        self._rules = candidate
        self._commit(graph)

        if entry.is_wildcard:
            logger.warning(
                f"Rule '{rule_id}' on '{target}' depends on the whole form ('*'); "
                f"it runs after every other rule and is excluded from cycle detection"
            )

    def remove_rule(self, rule_id: str) -> bool:
        if rule_id not in self._rules:
            return False
        del self._rules[rule_id]
        self._commit(self._build(self._rules.values()))
        return True

    def would_create_cycle(self, target: str, dependencies: Iterable[str]) -> Optional[List[str]]:
        """The cycle a hypothetical rule would close, or None."""
        candidate = dict(self._rules)
        candidate["__probe__"] = self._make_entry("__probe__", target, dependencies)
        return self._find_cycle(self._build(candidate.values()))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def has_node(self, pattern: str) -> bool:
        return pattern in self._graph

    def get_rank(self, target: str) -> int:
        """
        Topological position of a target; lower runs first.

        Wildcard targets and unknown patterns rank after every graph node.
        """
        if self._is_wildcard_target(target):
            return len(self._order) + 1
        return self._order.get(target, len(self._order))

    def get_direct_dependencies(self, pattern: str) -> Set[str]:
        if pattern not in self._graph:
            return set()
        return set(self._graph.predecessors(pattern))

    def get_direct_dependents(self, pattern: str) -> Set[str]:
        if pattern not in self._graph:
            return set()
        return set(self._graph.successors(pattern))

    def get_all_downstream(self, pattern: str) -> Set[str]:
        """All patterns reachable from ``pattern`` (transitive closure)."""
        if pattern not in self._graph:
            return set()
        return set(nx.descendants(self._graph, pattern))

    def get_all_dependencies(self, pattern: str) -> Set[str]:
        if pattern not in self._graph:
            return set()
        return set(nx.ancestors(self._graph, pattern))

    def get_recalculation_order(self, changed: Set[str]) -> List[str]:
        """
        Rule targets affected by a set of changed patterns, dependencies first.

        Wildcard targets are appended last.
        """
        targets = {e.target for e in self._rules.values() if not e.is_wildcard}
        affected: Set[str] = set()
        for pattern in changed:
            affected.update(self.get_all_downstream(pattern) & targets)

        ordered = sorted(affected, key=lambda p: self._order.get(p, 0))
        wildcard = sorted({e.target for e in self._rules.values() if e.is_wildcard} - set(ordered))
        return ordered + wildcard

    def get_edge_type(self, source: str, target: str) -> Optional[EdgeType]:
        data = self._graph.get_edge_data(source, target)
        return data["edge_type"] if data else None

    def get_rule_ids(self) -> List[str]:
        return list(self._rules)

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.number_of_edges()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize graph for debugging."""
        return {
            "rules": {
                r.rule_id: {"target": r.target, "dependencies": r.dependencies, "wildcard": r.is_wildcard}
                for r in self._rules.values()
            },
            "edges": [
                {"source": u, "target": v, "edge_type": d["edge_type"].value}
                for u, v, d in self._graph.edges(data=True)
            ],
            "order": dict(self._order),
            "build_timestamp": self._build_timestamp.isoformat() if self._build_timestamp else None,
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _make_entry(
        self,
        rule_id: str,
        target: str,
        dependencies: Iterable[str],
        self_transform: bool = False,
    ) -> RuleEntry:
        deps = list(dict.fromkeys(dependencies))
        return RuleEntry(
            rule_id=rule_id,
            target=target,
            dependencies=[d for d in deps if d != WILDCARD],
            is_wildcard=WILDCARD in deps,
            self_transform=self_transform,
        )

    def _is_wildcard_target(self, target: str) -> bool:
        return any(e.is_wildcard and e.target == target for e in self._rules.values()) \
            and target not in self._order

    def _build(self, rules: Iterable[RuleEntry]) -> nx.DiGraph:
        graph = nx.DiGraph()
        for rule in rules:
            if rule.is_wildcard:
                continue
            graph.add_node(rule.target)
            for dep in rule.dependencies:
                # Self-transform: own prior value, no edge
                if rule.self_transform and dep == rule.target:
                    continue
                graph.add_edge(dep, rule.target, edge_type=EdgeType.DATA_FLOW)

        parsed: Dict[str, Segments] = {n: parse_path(n) for n in graph.nodes}
        for child, child_segments in parsed.items():
            for parent, parent_segments in parsed.items():
                if child != parent and is_descendant(child_segments, parent_segments) \
                        and not graph.has_edge(child, parent):
                    graph.add_edge(child, parent, edge_type=EdgeType.CONTAINMENT)
        return graph

    def _find_cycle(self, graph: nx.DiGraph) -> Optional[List[str]]:
        try:
            edges = nx.find_cycle(graph, orientation="original")
        except nx.NetworkXNoCycle:
            return None
        cycle = [edges[0][0]] + [edge[1] for edge in edges]
        return cycle

    def _commit(self, graph: nx.DiGraph) -> None:
        self._graph = graph
        self._order = {
            node: i for i, node in enumerate(nx.lexicographical_topological_sort(graph))
        }
        self._build_timestamp = datetime.now(timezone.utc)
        logger.debug(
            f"Dependency graph rebuilt: {graph.number_of_nodes()} fields, "
            f"{graph.number_of_edges()} edges, {len(self._rules)} rules"
        )
