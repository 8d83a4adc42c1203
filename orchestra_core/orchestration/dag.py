"""Orchestration layer — Dependency graph resolver.

Builds a NetworkX DiGraph from module descriptors (edge ``a -> b`` means
"a depends on b") and turns it into a load order.

Resolution never raises on a bad graph.  Cycles, missing dependencies and
version conflicts are returned as data on :class:`LoadOrderResult` so that
reporting tools and the scheduler can decide how to react.

Algorithm:
  Three-colour depth-first traversal (WHITE / GREY / BLACK).  Roots are
  visited in descriptor order and dependencies in sorted order, so the
  result is deterministic for a given input.  Reaching a GREY node closes
  a cycle: the slice of the traversal path from that node to the top is
  recorded.  Nodes are appended in post-order, which places every
  dependency before its dependents.

  Members of a non-trivial strongly connected component are treated as
  cyclic even when the traversal only reached them through a cross edge,
  so no cyclic module can leak into ``order``.

  ``depth[m]`` is ``1 + max(depth[d])`` over m's resolvable dependencies,
  or 0.  It is computed walking ``order``, so each dependency's depth is
  final when consumed.  Cyclic modules get depth 0 and never contribute
  to a dependent's depth.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import networkx as nx

from orchestra_core.exceptions import (
    CycleDetectedError,
    MissingDependencyError,
    OrchestraError,
)
from orchestra_core.logging import get_logger
from orchestra_core.protocol.compat import ModuleVersionChecker, VersionConflict
from orchestra_core.protocol.models import ModuleDescriptor, Stage, StepDefinition

log = get_logger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass
class LoadOrderResult:
    """Outcome of a dependency resolution."""

    order: list[str] = field(default_factory=list)
    depth: dict[str, int] = field(default_factory=dict)
    cycles: list[list[str]] = field(default_factory=list)
    cyclic: set[str] = field(default_factory=set)
    missing: dict[str, list[str]] = field(default_factory=dict)
    version_conflicts: list[VersionConflict] = field(default_factory=list)
    required: set[str] = field(default_factory=set)
    graph: nx.DiGraph = field(default_factory=nx.DiGraph, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return not (self.cyclic or self.missing or self.version_conflicts)

    def errors(self) -> list[OrchestraError]:
        """Return every resolution problem as an exception instance (not raised)."""
        errors: list[OrchestraError] = [CycleDetectedError(c) for c in self.cycles]
        for module, deps in self.missing.items():
            errors.extend(MissingDependencyError(module, dep) for dep in deps)
        errors.extend(conflict.to_error() for conflict in self.version_conflicts)
        return errors

    def levels(self) -> list[list[str]]:
        """Group ``order`` by depth.  Modules on one level never depend on each other."""
        if not self.order:
            return []
        grouped: list[list[str]] = [[] for _ in range(max(self.depth[m] for m in self.order) + 1)]
        for module in self.order:
            grouped[self.depth[module]].append(module)
        return grouped

    def dependents(self, module: str) -> set[str]:
        """Return every module that transitively depends on *module*."""
        if module not in self.graph:
            return set()
        return nx.ancestors(self.graph, module)

    def blocked_required(self) -> list[str]:
        """Required modules that cannot load: cyclic, missing a dependency,
        or depending (transitively) on a module that cannot load."""
        unloadable = self.cyclic | set(self.missing)
        blocked = set(unloadable)
        for module in unloadable:
            blocked |= self.dependents(module)
        return sorted(blocked & self.required)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": list(self.order),
            "depth": dict(self.depth),
            "cycles": [list(c) for c in self.cycles],
            "cyclic": sorted(self.cyclic),
            "missing": {k: list(v) for k, v in self.missing.items()},
            "version_conflicts": [
                {
                    "module": c.module,
                    "dependency": c.dependency,
                    "required": c.required_specifier,
                    "found": c.found_version,
                }
                for c in self.version_conflicts
            ],
            "blocked_required": self.blocked_required(),
        }


class DependencyGraphResolver:
    """Resolves module descriptors into a safe load order.

    Usage::

        result = DependencyGraphResolver().resolve(registry.descriptors())
        for module in result.order:
            ...  # load
        for error in result.errors():
            log.warning("resolution_problem", error=error.message)
    """

    def resolve(self, descriptors: Iterable[ModuleDescriptor]) -> LoadOrderResult:
        by_name = self._index(descriptors)
        graph = self.build_graph(by_name.values())

        missing = {
            name: sorted(d.dependencies - by_name.keys())
            for name, d in by_name.items()
            if d.dependencies - by_name.keys()
        }

        post_order, cycles = self._traverse(graph, list(by_name))

        cyclic = {node for cycle in cycles for node in cycle}
        cyclic.update(nx.nodes_with_selfloops(graph))
        for component in nx.strongly_connected_components(graph):
            if len(component) > 1:
                cyclic.update(component)

        order = [node for node in post_order if node not in cyclic]
        depth: dict[str, int] = {node: 0 for node in by_name}
        for node in order:
            dep_depths = [depth[d] for d in graph.successors(node) if d not in cyclic]
            depth[node] = 1 + max(dep_depths) if dep_depths else 0

        conflicts = ModuleVersionChecker.for_descriptors(by_name.values()).check(by_name.values())

        for cycle in cycles:
            log.warning("dependency_cycle_detected", cycle=cycle)
        for module, deps in missing.items():
            log.warning("dependency_missing", module=module, missing=deps)
        for conflict in conflicts:
            log.warning(
                "dependency_version_conflict",
                module=conflict.module,
                dependency=conflict.dependency,
                required=conflict.required_specifier,
                found=conflict.found_version,
            )
        log.debug(
            "load_order_resolved",
            modules=len(by_name),
            ordered=len(order),
            cyclic=len(cyclic),
        )

        return LoadOrderResult(
            order=order,
            depth=depth,
            cycles=cycles,
            cyclic=cyclic,
            missing=missing,
            version_conflicts=conflicts,
            required={name for name, d in by_name.items() if d.required},
            graph=graph,
        )

    @staticmethod
    def build_graph(descriptors: Iterable[ModuleDescriptor]) -> nx.DiGraph:
        """Build the dependency graph.  Edges to unknown modules are left out."""
        descriptors = list(descriptors)
        graph: nx.DiGraph = nx.DiGraph()
        for descriptor in descriptors:
            graph.add_node(descriptor.name, version=descriptor.version)
        for descriptor in descriptors:
            for dep in descriptor.dependencies:
                if dep in graph:
                    graph.add_edge(descriptor.name, dep)
        return graph

    @staticmethod
    def _index(descriptors: Iterable[ModuleDescriptor]) -> dict[str, ModuleDescriptor]:
        by_name: dict[str, ModuleDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in by_name:
                log.warning("duplicate_module_descriptor", module=descriptor.name)
            by_name[descriptor.name] = descriptor
        return by_name

    @staticmethod
    def _traverse(graph: nx.DiGraph, roots: list[str]) -> tuple[list[str], list[list[str]]]:
        """Iterative three-colour DFS.  Returns (post-order, distinct cycles)."""
        color = dict.fromkeys(graph.nodes, _WHITE)
        post_order: list[str] = []
        seen_cycles: dict[tuple[str, ...], list[str]] = {}

        for root in roots:
            if color[root] != _WHITE:
                continue
            color[root] = _GREY
            path = [root]
            frames = [iter(sorted(graph.successors(root)))]

            while frames:
                for dep in frames[-1]:
                    if color[dep] == _WHITE:
                        color[dep] = _GREY
                        path.append(dep)
                        frames.append(iter(sorted(graph.successors(dep))))
                        break
                    if color[dep] == _GREY:
                        cycle = _normalise_cycle(path[path.index(dep):])
                        seen_cycles.setdefault(tuple(cycle), cycle)
                else:
                    frames.pop()
                    node = path.pop()
                    color[node] = _BLACK
                    post_order.append(node)

        return post_order, sorted(seen_cycles.values())


def _normalise_cycle(cycle: list[str]) -> list[str]:
    """Rotate *cycle* to start at its smallest member so equal cycles compare equal."""
    start = cycle.index(min(cycle))
    return cycle[start:] + cycle[:start]


def resolve_load_order(descriptors: Iterable[ModuleDescriptor]) -> LoadOrderResult:
    """Convenience wrapper around :meth:`DependencyGraphResolver.resolve`."""
    return DependencyGraphResolver().resolve(descriptors)


def stages_from_levels(
    result: LoadOrderResult,
    make_step: Callable[[str], StepDefinition] | None = None,
    stage_prefix: str = "depth",
) -> list[Stage]:
    """Build one stage per depth level, each level's steps in one parallel group.

    Args:
        result:       A resolved load order.
        make_step:    Builds the step for a module name.  Defaults to a step
                      whose target is the module name.
        stage_prefix: Stage names are ``f"{stage_prefix}-{level}"``.
    """
    factory = make_step or (lambda name: StepDefinition(target=name))
    stages: list[Stage] = []
    for level, modules in enumerate(result.levels()):
        group = f"{stage_prefix}-{level}"
        steps = [factory(m).model_copy(update={"parallel_group": group}) for m in modules]
        stages.append(Stage(name=group, steps=steps))
    return stages
