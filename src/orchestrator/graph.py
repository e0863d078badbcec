"""Dependency graph for module orchestration.

Builds a DAG from resolved module dependencies and computes traversal
orderings for apply (prerequisites first) and destroy (dependents first).
Modules and edges are kept in index tables; cycle detection runs before
any traversal.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from modules import ModuleSpec, resolve_dependencies
from orchestrator.errors import CycleDetected, UnknownDependency

logger = logging.getLogger(__name__)

# DFS colours
_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class ModuleNode:
    """A module in the graph.

    Attributes:
        spec: The underlying ModuleSpec declaration
        index: Position in the graph's index table
        read_only: Prerequisite outside the run's targets (plan-only)
    """
    spec: ModuleSpec
    index: int
    read_only: bool = False

    @property
    def id(self) -> str:
        return self.spec.id

    def __repr__(self) -> str:
        suffix = ', read_only' if self.read_only else ''
        return f"ModuleNode({self.id}{suffix})"


class ModuleGraph:
    """DAG of one environment's modules.

    Provides ordered traversal for lifecycle operations:
    - apply_order(): dependencies before dependents (topological)
    - destroy_order(): exact reverse of apply_order()
    """

    def __init__(self, specs: list[ModuleSpec], edges: Optional[dict[str, set[str]]] = None,
                 prerequisites: Iterable[str] = ()):
        """Build the graph.

        Args:
            specs: Module declarations (one environment)
            edges: Pre-resolved dependency edges; resolved from specs when None
            prerequisites: Ids included only as read-only prerequisites

        Raises:
            ValueError: If specs is empty or mixes environments
            UnknownDependency: If an edge names a module not in specs
            CycleDetected: If the edges form a cycle
        """
        if not specs:
            raise ValueError("ModuleGraph requires at least one module")
        environments = {s.environment for s in specs}
        if len(environments) > 1:
            raise ValueError(f"ModuleGraph spans environments: {sorted(environments)}")

        self.environment = specs[0].environment
        if edges is None:
            edges = resolve_dependencies(specs)

        prerequisites = set(prerequisites)
        ordered = sorted(specs, key=lambda s: s.id)
        self._nodes: list[ModuleNode] = [
            ModuleNode(spec=s, index=i, read_only=s.id in prerequisites)
            for i, s in enumerate(ordered)
        ]
        self._index: dict[str, int] = {n.id: n.index for n in self._nodes}
        self._deps: list[set[int]] = [set() for _ in self._nodes]
        self._dependents: list[set[int]] = [set() for _ in self._nodes]

        for node in self._nodes:
            for dep in edges.get(node.id, set()):
                if dep not in self._index:
                    raise UnknownDependency(node.id, dep, self.environment)
                d = self._index[dep]
                self._deps[node.index].add(d)
                self._dependents[d].add(node.index)

        self._check_cycles()

    def _check_cycles(self) -> None:
        """DFS colouring; raises CycleDetected naming the cycle members."""
        colour = [_WHITE] * len(self._nodes)
        stack: list[int] = []

        def visit(i: int) -> None:
            colour[i] = _GREY
            stack.append(i)
            for d in sorted(self._deps[i]):
                if colour[d] == _GREY:
                    cycle = stack[stack.index(d):] + [d]
                    raise CycleDetected([self._nodes[c].id for c in cycle])
                if colour[d] == _WHITE:
                    visit(d)
            stack.pop()
            colour[i] = _BLACK

        for node in self._nodes:
            if colour[node.index] == _WHITE:
                visit(node.index)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, module_id: str) -> bool:
        return module_id in self._index

    @property
    def ids(self) -> list[str]:
        """All module ids, sorted."""
        return [n.id for n in self._nodes]

    @property
    def targets(self) -> list[str]:
        """Ids this run may mutate (everything except read-only prerequisites)."""
        return [n.id for n in self._nodes if not n.read_only]

    @property
    def prerequisites(self) -> list[str]:
        """Read-only prerequisite ids."""
        return [n.id for n in self._nodes if n.read_only]

    def get_node(self, module_id: str) -> ModuleNode:
        """Get a ModuleNode by id.

        Raises:
            KeyError: If module id not found
        """
        return self._nodes[self._index[module_id]]

    def dependencies(self, module_id: str) -> set[str]:
        """Direct dependencies of a module."""
        return {self._nodes[d].id for d in self._deps[self._index[module_id]]}

    def dependents(self, module_id: str) -> set[str]:
        """Modules that directly depend on a module."""
        return {self._nodes[d].id for d in self._dependents[self._index[module_id]]}

    def _closure(self, start: Iterable[str], adjacency: list[set[int]]) -> set[str]:
        seen: set[int] = set()
        pending = [self._index[s] for s in start]
        while pending:
            i = pending.pop()
            for j in adjacency[i]:
                if j not in seen:
                    seen.add(j)
                    pending.append(j)
        return {self._nodes[i].id for i in seen}

    def transitive_dependencies(self, module_ids: Iterable[str]) -> set[str]:
        """Everything the given modules depend on, directly or not."""
        return self._closure(module_ids, self._deps)

    def transitive_dependents(self, module_ids: Iterable[str]) -> set[str]:
        """Everything that depends on the given modules, directly or not."""
        return self._closure(module_ids, self._dependents)

    def apply_order(self) -> list[ModuleNode]:
        """Return nodes in apply order (dependencies before dependents).

        Kahn's algorithm with ties broken by id, so the order is stable.
        """
        remaining = [len(d) for d in self._deps]
        ready = [n.id for n in self._nodes if remaining[n.index] == 0]
        heapq.heapify(ready)
        ordered: list[ModuleNode] = []

        while ready:
            node = self.get_node(heapq.heappop(ready))
            ordered.append(node)
            for j in self._dependents[node.index]:
                remaining[j] -= 1
                if remaining[j] == 0:
                    heapq.heappush(ready, self._nodes[j].id)

        return ordered

    def destroy_order(self) -> list[ModuleNode]:
        """Return nodes in destroy order (dependents before dependencies).

        Reverse of apply_order.
        """
        return list(reversed(self.apply_order()))

    def select(self, targets: Optional[Iterable[str]] = None,
               include_dependents: bool = False) -> 'ModuleGraph':
        """Partial graph for a run targeting a subset of modules.

        Transitive dependencies outside the target set are kept as read-only
        prerequisites so they can be planned (for their outputs) but are
        never mutated. A destroy passes include_dependents so everything
        built on a target is torn down with it.

        Args:
            targets: Module ids to target; None or empty selects everything
            include_dependents: Also target the transitive dependents

        Raises:
            UnknownDependency: If a target is not a module of this graph
        """
        targets = {t.strip('/') for t in (targets or [])}
        if not targets:
            return self
        for target in sorted(targets):
            if target not in self._index:
                raise UnknownDependency('<run>', target, self.environment)
        if include_dependents:
            targets |= self.transitive_dependents(targets)

        prerequisites = self.transitive_dependencies(targets) - targets
        keep = targets | prerequisites
        specs = [n.spec for n in self._nodes if n.id in keep]
        edges = {i: self.dependencies(i) for i in keep}
        logger.debug(
            f"Selected {len(targets)} target(s) with {len(prerequisites)} "
            f"read-only prerequisite(s) in '{self.environment}'"
        )
        return ModuleGraph(specs, edges=edges, prerequisites=prerequisites)

    def without(self, module_ids: Iterable[str]) -> 'ModuleGraph':
        """Same graph with the given modules turned into read-only prerequisites."""
        frozen = set(module_ids) | set(self.prerequisites)
        specs = [n.spec for n in self._nodes]
        edges = {n.id: self.dependencies(n.id) for n in self._nodes}
        return ModuleGraph(specs, edges=edges, prerequisites=frozen & set(self._index))
