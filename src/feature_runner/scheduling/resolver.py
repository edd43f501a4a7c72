"""Dependency resolution for the feature backlog.

The graph is rebuilt from each feature's dependency list on every scheduling
pass. Ordering uses in-degree counting (Kahn's algorithm); among the features
whose dependencies are all placed, the one declared first is placed next, so
the order is deterministic for a given declaration order.

A dependency on an unknown feature fails the pass with `UnresolvedDependency`.
If some features can never reach in-degree zero, the members of every cycle
are reported together in one `CycleDetected`.
"""

from __future__ import annotations

import heapq
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ..domain.models import Feature, FeatureStatus
from ..errors import CycleDetected, UnresolvedDependency

BLOCKING_STATES = frozenset({FeatureStatus.FAILED, FeatureStatus.STOPPED})


@dataclass
class DependencyGraph:
    ids: list[str] = field(default_factory=list)
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, features: Sequence[Feature]) -> "DependencyGraph":
        graph = cls()
        for feature in features:
            graph.ids.append(feature.id)
            # Duplicate edges would double-count in-degree.
            graph.dependencies[feature.id] = list(dict.fromkeys(feature.dependencies))
            graph.dependents.setdefault(feature.id, [])

        known = set(graph.ids)
        for feature_id in graph.ids:
            missing = [dep for dep in graph.dependencies[feature_id] if dep not in known]
            if missing:
                raise UnresolvedDependency(feature_id, missing)
            for dep in graph.dependencies[feature_id]:
                graph.dependents[dep].append(feature_id)
        return graph

    def topological_order(self) -> list[str]:
        position = {feature_id: idx for idx, feature_id in enumerate(self.ids)}
        in_degree = {feature_id: len(deps) for feature_id, deps in self.dependencies.items()}
        ready = [(position[fid], fid) for fid in self.ids if in_degree[fid] == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, feature_id = heapq.heappop(ready)
            order.append(feature_id)
            for dependent in self.dependents[feature_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (position[dependent], dependent))

        if len(order) != len(self.ids):
            placed = set(order)
            remaining = [fid for fid in self.ids if fid not in placed]
            raise CycleDetected(self._cycle_members(remaining))
        return order

    def _cycle_members(self, remaining: list[str]) -> list[str]:
        """Return features that sit on a cycle, in declaration order.

        Features that are merely downstream of a cycle are left out. Uses an
        iterative Tarjan SCC pass over the unplaced subgraph.
        """
        subset = set(remaining)
        index: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        members: set[str] = set()
        counter = 0

        for root in remaining:
            if root in index:
                continue
            work: list[tuple[str, int]] = [(root, 0)]
            while work:
                node, child_idx = work.pop()
                if child_idx == 0:
                    index[node] = lowlink[node] = counter
                    counter += 1
                    stack.append(node)
                    on_stack.add(node)
                children = [dep for dep in self.dependencies[node] if dep in subset]
                if child_idx < len(children):
                    work.append((node, child_idx + 1))
                    child = children[child_idx]
                    if child not in index:
                        work.append((child, 0))
                    elif child in on_stack:
                        lowlink[node] = min(lowlink[node], index[child])
                    continue
                if lowlink[node] == index[node]:
                    component: list[str] = []
                    while True:
                        top = stack.pop()
                        on_stack.discard(top)
                        component.append(top)
                        if top == node:
                            break
                    if len(component) > 1 or node in self.dependencies[node]:
                        members.update(component)
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])

        return [fid for fid in remaining if fid in members] or remaining


def compute_order(features: Sequence[Feature]) -> list[str]:
    """Return feature ids so that every feature follows all of its dependencies.

    Raises:
        UnresolvedDependency: A dependency names no known feature.
        CycleDetected: The dependency sets contain at least one cycle.
    """
    return DependencyGraph.build(features).topological_order()


def is_ready(feature: Feature, states: Mapping[str, FeatureStatus]) -> bool:
    """True when every dependency of `feature` is Verified."""
    return all(states.get(dep) == FeatureStatus.VERIFIED for dep in feature.dependencies)


def blocking_dependencies(feature: Feature, states: Mapping[str, FeatureStatus]) -> list[str]:
    """Dependencies that can never become Verified without intervention."""
    return [dep for dep in feature.dependencies if states.get(dep) in BLOCKING_STATES]
