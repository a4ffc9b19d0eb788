"""Dependency graph resolver: cycles, conflicts and execution order.

Resolution never raises for bad input: cycles, unknown ids and conflicts come
back as lists on the result so the caller decides whether a partial
resolution is acceptable. Conflict resolution only annotates; it never
rewrites the graph.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from itertools import combinations
from typing import Iterable, Mapping

from meshdag.config import BLOCK_ON_CONFLICTS, FAST_PATH_LIMIT
from meshdag.errors import CycleError
from meshdag.models import Conflict, DependencyInfo, DependencyResolutionResult

logger = logging.getLogger(__name__)


def find_cycles(graph: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Find dependency cycles with a depth-first search over a recursion stack.

    `graph` maps an id to the ids it depends on; ids outside the graph are
    ignored. Each cycle is the stack sub-path from the first occurrence of the
    revisited id up to the revisit, e.g. ``["A", "B", "A"]``.
    """
    visited: set[str] = set()
    cycles: list[list[str]] = []
    seen: set[frozenset[str]] = set()

    for root in graph:
        if root in visited:
            continue
        visited.add(root)
        path = [root]
        on_stack = {root}
        pending = [iter(graph[root])]

        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                pending.pop()
                on_stack.discard(path.pop())
                continue
            if dep not in graph:
                continue
            if dep in on_stack:
                cycle = path[path.index(dep):] + [dep]
                key = frozenset(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(cycle)
                continue
            if dep in visited:
                continue
            visited.add(dep)
            path.append(dep)
            on_stack.add(dep)
            pending.append(iter(graph[dep]))

    return cycles


def _major(version: str) -> str:
    return version.lstrip("vV^~=").split(".", 1)[0]


class DependencyResolver:
    """Resolves dependency ids against a catalog of DependencyInfo records.

    The catalog and the graph cache are process-wide; both are guarded by a
    lock and every resolve call works on its own snapshot.
    """

    def __init__(
        self,
        catalog: Iterable[DependencyInfo] = (),
        fast_path_limit: int = FAST_PATH_LIMIT,
        block_on_conflicts: bool = BLOCK_ON_CONFLICTS,
    ):
        self.fast_path_limit = fast_path_limit
        self.block_on_conflicts = block_on_conflicts
        self._catalog: dict[str, DependencyInfo] = {info.id: info for info in catalog}
        self._graph_cache: dict[tuple[str, ...], tuple[dict[str, DependencyInfo], list[str]]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def register(self, *infos: DependencyInfo):
        with self._lock:
            for info in infos:
                self._catalog[info.id] = info
            self._graph_cache.clear()

    def unregister(self, *dep_ids: str):
        with self._lock:
            for dep_id in dep_ids:
                self._catalog.pop(dep_id, None)
            self._graph_cache.clear()

    def exists(self, dep_id: str) -> bool:
        with self._lock:
            return dep_id in self._catalog

    def get(self, dep_id: str) -> DependencyInfo | None:
        with self._lock:
            return self._catalog.get(dep_id)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        ids: Iterable[str],
        catalog: Mapping[str, DependencyInfo] | None = None,
    ) -> DependencyResolutionResult:
        """Resolve `ids` against `catalog`, or against the registered catalog when omitted."""
        ids = list(ids)
        if len(ids) <= self.fast_path_limit:
            view = dict(catalog) if catalog is not None else self._snapshot()
            return self._resolve_direct(ids, view)

        graph, unknown = self._graph_for(ids, catalog)

        cycles = find_cycles({dep_id: info.dependencies for dep_id, info in graph.items()})
        circular = _unique(member for cycle in cycles for member in cycle)
        if cycles:
            logger.warning(f"Dependency cycles detected: {[' -> '.join(c) for c in cycles]}")

        conflicts = self.detect_conflicts(graph)
        self.resolve_conflicts(conflicts)

        order = self.topological_order(graph, exclude=set(circular))
        unresolved = _unique(unknown + self._missing_from_order(graph, order))

        success = not unresolved and not circular
        if self.block_on_conflicts and conflicts:
            success = False

        logger.debug(
            f"Resolved {len(order)}/{len(graph)} dependencies, "
            f"{len(unresolved)} unresolved, {len(circular)} circular, {len(conflicts)} conflicts"
        )
        return DependencyResolutionResult(
            success=success,
            resolved_dependencies=list(order),
            unresolved_dependencies=unresolved,
            circular_dependencies=circular,
            execution_order=order,
            cycles=cycles,
            conflicts=conflicts,
        )

    def _resolve_direct(self, ids: list[str], catalog: Mapping[str, DependencyInfo]) -> DependencyResolutionResult:
        """Small inputs: existence check, duplicates count as circular references."""
        seen: set[str] = set()
        circular: list[str] = []
        present: list[str] = []
        unresolved: list[str] = []
        for dep_id in ids:
            if dep_id in seen:
                circular.append(dep_id)
                continue
            seen.add(dep_id)
            (present if dep_id in catalog else unresolved).append(dep_id)

        # Order the present ids among themselves; their other dependencies are not expanded.
        sub_graph = {
            dep_id: DependencyInfo(
                id=dep_id,
                dependencies=[d for d in catalog[dep_id].dependencies if d in seen],
                priority=catalog[dep_id].priority,
            )
            for dep_id in present
        }
        cycles = find_cycles({dep_id: info.dependencies for dep_id, info in sub_graph.items()})
        circular = _unique(circular + [member for cycle in cycles for member in cycle])

        order = self.topological_order(sub_graph, exclude=set(circular))
        unresolved = _unique(unresolved + self._missing_from_order(sub_graph, order))
        return DependencyResolutionResult(
            success=not unresolved and not circular,
            resolved_dependencies=list(order),
            unresolved_dependencies=unresolved,
            circular_dependencies=circular,
            execution_order=order,
            cycles=cycles,
        )

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def _snapshot(self) -> dict[str, DependencyInfo]:
        with self._lock:
            return dict(self._catalog)

    def _graph_for(
        self,
        ids: list[str],
        catalog: Mapping[str, DependencyInfo] | None,
    ) -> tuple[dict[str, DependencyInfo], list[str]]:
        if catalog is not None:
            return self.build_graph(ids, catalog)

        key = tuple(ids)
        with self._lock:
            cached = self._graph_cache.get(key)
            if cached is None:
                cached = self.build_graph(ids, self._catalog)
                self._graph_cache[key] = cached
        graph, unknown = cached
        return dict(graph), list(unknown)

    @staticmethod
    def build_graph(
        ids: Iterable[str],
        catalog: Mapping[str, DependencyInfo],
    ) -> tuple[dict[str, DependencyInfo], list[str]]:
        """Collect `ids` and their transitive dependencies. Returns (graph, unknown ids)."""
        graph: dict[str, DependencyInfo] = {}
        unknown: list[str] = []
        queue = list(ids)
        while queue:
            dep_id = queue.pop(0)
            if dep_id in graph or dep_id in unknown:
                continue
            info = catalog.get(dep_id)
            if info is None:
                unknown.append(dep_id)
                continue
            graph[dep_id] = info
            queue.extend(info.dependencies)
        return graph, unknown

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def detect_conflicts(self, graph: Mapping[str, DependencyInfo]) -> list[Conflict]:
        return (
            self._version_conflicts(graph)
            + self._resource_conflicts(graph)
            + self._semantic_conflicts(graph)
            + self._temporal_conflicts(graph)
        )

    @staticmethod
    def _by_base(graph: Mapping[str, DependencyInfo]) -> dict[str, list[DependencyInfo]]:
        groups: dict[str, list[DependencyInfo]] = defaultdict(list)
        for info in graph.values():
            if info.resolved_version:
                groups[info.base_name].append(info)
        return groups

    def _version_conflicts(self, graph: Mapping[str, DependencyInfo]) -> list[Conflict]:
        conflicts = []
        for base, infos in self._by_base(graph).items():
            versions = sorted({i.resolved_version for i in infos})
            if len(versions) < 2:
                continue
            count = len(versions)
            severity = "critical" if count > 3 else "high" if count > 2 else "medium"
            conflicts.append(Conflict(
                type="version",
                ids=[i.id for i in infos],
                severity=severity,
                description=f"{base} is required at {count} versions: {', '.join(versions)}",
                subject=base,
                versions=versions,
            ))
        return conflicts

    def _resource_conflicts(self, graph: Mapping[str, DependencyInfo]) -> list[Conflict]:
        claims: dict[str, list[str]] = defaultdict(list)
        for info in graph.values():
            for resource in info.resources:
                claims[resource].append(info.id)
        return [
            Conflict(
                type="resource",
                ids=ids,
                severity="high" if len(ids) > 2 else "medium",
                description=f"{len(ids)} dependencies claim exclusive resource {resource}",
                subject=resource,
            )
            for resource, ids in claims.items()
            if len(ids) > 1
        ]

    def _semantic_conflicts(self, graph: Mapping[str, DependencyInfo]) -> list[Conflict]:
        conflicts = []
        for base, infos in self._by_base(graph).items():
            for a, b in combinations(infos, 2):
                if _major(a.resolved_version) == _major(b.resolved_version):
                    continue
                conflicts.append(Conflict(
                    type="semantic",
                    ids=[a.id, b.id],
                    severity="high",
                    description=(
                        f"{base} major versions differ: {a.resolved_version} vs {b.resolved_version}"
                    ),
                    subject=base,
                    versions=[a.resolved_version, b.resolved_version],
                ))
        return conflicts

    def _temporal_conflicts(self, graph: Mapping[str, DependencyInfo]) -> list[Conflict]:
        slots: dict[str, list[DependencyInfo]] = defaultdict(list)
        for info in graph.values():
            if info.slot:
                slots[info.slot].append(info)
        conflicts = []
        for slot, infos in slots.items():
            if len(infos) < 2:
                continue
            # Highest priority first; the resolution text keeps this order.
            infos = sorted(infos, key=lambda i: -i.priority)
            conflicts.append(Conflict(
                type="temporal",
                ids=[i.id for i in infos],
                severity="medium",
                description=f"{len(infos)} dependencies scheduled in slot {slot}",
                subject=slot,
            ))
        return conflicts

    @staticmethod
    def resolve_conflicts(conflicts: list[Conflict]) -> list[Conflict]:
        """Annotate each conflict with a recommended resolution."""
        for conflict in conflicts:
            if conflict.type == "version":
                conflict.resolution = f"use {conflict.subject}@{max(conflict.versions)}"
            elif conflict.type == "resource":
                conflict.resolution = f"serialize access to {conflict.subject}"
            elif conflict.type == "semantic":
                conflict.resolution = (
                    f"reconcile {conflict.subject} {' and '.join(conflict.versions)} explicitly"
                )
            elif conflict.type == "temporal":
                conflict.resolution = f"run slot {conflict.subject} in order: {', '.join(conflict.ids)}"
        return conflicts

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    @staticmethod
    def topological_order(graph: Mapping[str, DependencyInfo], exclude: set[str] | None = None) -> list[str]:
        """Depth-first postorder. Ids that are excluded, unknown, or depend on either are left out.

        The walk keeps its own stack so chain depth is not bounded by the
        interpreter's recursion limit. Meeting a node that is still in
        progress means a cycle slipped past detection; that raises CycleError
        instead of reordering.
        """
        exclude = exclude or set()
        order: list[str] = []
        state: dict[str, str] = {}  # in_progress | done | blocked

        def settled(dep_id: str) -> bool | None:
            """Outcome for an id that needs no walk, None for a fresh one."""
            current = state.get(dep_id)
            if current == "done":
                return True
            if current == "blocked":
                return False
            if current == "in_progress":
                raise CycleError(dep_id)
            if dep_id in exclude or dep_id not in graph:
                state[dep_id] = "blocked"
                return False
            return None

        # Higher priority roots first; sorted() is stable so ties keep graph order.
        for root in sorted(graph, key=lambda d: -graph[d].priority):
            if settled(root) is not None:
                continue
            state[root] = "in_progress"
            # Frame: [id, iterator over its dependencies, still placeable]
            stack = [[root, iter(graph[root].dependencies), True]]
            while stack:
                frame = stack[-1]
                dep = next(frame[1], None)
                if dep is not None:
                    outcome = settled(dep)
                    if outcome is None:
                        state[dep] = "in_progress"
                        stack.append([dep, iter(graph[dep].dependencies), True])
                    elif not outcome:
                        frame[2] = False
                    continue

                stack.pop()
                dep_id, _, placeable = frame
                if placeable:
                    order.append(dep_id)
                    state[dep_id] = "done"
                else:
                    state[dep_id] = "blocked"
                    if stack:
                        stack[-1][2] = False
        return order

    @staticmethod
    def _missing_from_order(graph: Mapping[str, DependencyInfo], order: list[str]) -> list[str]:
        placed = set(order)
        return [dep_id for dep_id in graph if dep_id not in placed]


def _unique(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result
