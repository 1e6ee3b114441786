# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Dependency Resolver

Single responsibility: Build the dependency graph for one or more target
manifests against a registry view, detect conflicts and cycles, and
compute a deterministic install order.

Resolution is flat: one version per package id. Installed versions are
preferred whenever they satisfy every constraint (minimizes churn).
"""

import heapq
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from package_engine.core.errors import InvalidRangeError, InvalidVersionError
from package_engine.models.package_models import (
    DependencyEdge,
    DependencyGraph,
    DependencyNode,
    DependencyResolutionResult,
    InstalledPackage,
    InstallPlan,
    NodeStatus,
    PackageManifest,
    RequiredAction,
    RequiredActionType,
)

from .versioning import parse_range, parse_version, resolve_highest, satisfies, satisfies_all

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryView:
    """
    Read-only snapshot of installed packages and available versions.

    Resolution is a pure function of this view, so previews computed
    without the space lock are advisory only.
    """
    installed: Mapping[str, InstalledPackage] = field(default_factory=dict)
    available: Mapping[str, Sequence[PackageManifest]] = field(default_factory=dict)
    platform_version: Optional[str] = None

    def installed_package(self, package_id: str) -> Optional[InstalledPackage]:
        """Installed record if present; disabled packages count as present"""
        record = self.installed.get(package_id)
        if record is not None and record.is_present:
            return record
        return None

    def candidates(self, package_id: str) -> List[PackageManifest]:
        """Available manifests compatible with the platform version"""
        result = []
        for manifest in self.available.get(package_id, []):
            if self.platform_version and manifest.platform_range:
                try:
                    if not satisfies(self.platform_version, manifest.platform_range):
                        continue
                except (InvalidRangeError, InvalidVersionError):
                    logger.warning(f"Skipping {manifest.key}: invalid platform range {manifest.platform_range!r}")
                    continue
            result.append(manifest)
        return result

    def installed_requirements(self, package_id: str, exclude: Iterable[str] = ()) -> Dict[str, str]:
        """Ranges on package_id declared by installed packages (dependent -> range)"""
        skip = set(exclude)
        requirements = {}
        for dependent_id in sorted(self.installed):
            record = self.installed[dependent_id]
            if dependent_id in skip or not record.is_present:
                continue
            for dep in record.manifest.dependencies:
                if dep.package_id == package_id:
                    requirements[dependent_id] = dep.version_range
        return requirements


@dataclass
class Selection:
    """Version chosen for one package id"""
    manifest: Optional[PackageManifest]
    status: NodeStatus
    installed_version: Optional[str] = None
    conflict_reason: Optional[str] = None
    missing: bool = False  # Nothing in registry or installed for this id


@dataclass
class ResolutionResult:
    """Graph, plan and chosen manifests for one resolution run"""
    targets: List[str]
    graph: DependencyGraph
    plan: InstallPlan
    manifests: Dict[str, PackageManifest] = field(default_factory=dict)

    @property
    def can_proceed(self) -> bool:
        return self.plan.can_proceed

    @property
    def conflicts(self) -> List[DependencyNode]:
        return [n for n in self.graph.nodes.values() if n.status == NodeStatus.CONFLICT]

    def to_apply(self) -> List[PackageManifest]:
        """Manifests to apply in install order: new dependencies plus the targets"""
        result = []
        for package_id in self.plan.install_order:
            node = self.graph.nodes[package_id]
            if package_id in self.targets or node.status == NodeStatus.NEEDS_INSTALL:
                result.append(self.manifests[package_id])
        return result

    def to_response(self) -> DependencyResolutionResult:
        """Shape used by the resolve-dependencies API"""
        return DependencyResolutionResult(
            dependencies=[
                self.graph.nodes[pid] for pid in sorted(self.graph.nodes) if pid not in self.targets
            ],
            can_proceed=self.plan.can_proceed,
            required_actions=self.plan.required_actions,
            install_order=self.plan.install_order,
            circular_dependencies=self.plan.circular_dependencies or None,
        )


class DependencyResolver:
    """Resolves package dependencies using semver ranges"""

    def __init__(self, max_passes: int = 8):
        """
        Initialize dependency resolver.

        Args:
            max_passes: Upper bound on re-expansion passes when a later
                        constraint changes an earlier version choice
        """
        self.max_passes = max(1, max_passes)

    def resolve(
        self,
        targets: Sequence[PackageManifest],
        view: RegistryView,
        include_installed_dependents: bool = True
    ) -> ResolutionResult:
        """
        Resolve dependencies for the target manifests.

        Args:
            targets: Manifests to install or upgrade to (versions are fixed)
            view: Registry snapshot
            include_installed_dependents: Also honor ranges declared by
                installed packages that are not part of this resolution

        Returns:
            ResolutionResult with graph and install plan
        """
        targets = sorted(targets, key=lambda m: m.id)
        target_ids = [m.id for m in targets]
        logger.debug(f"Resolving dependencies for {', '.join(m.key for m in targets)}")

        requirements, edges, selections = self._expand(targets, view, include_installed_dependents)

        graph = DependencyGraph(edges=edges)
        manifests: Dict[str, PackageManifest] = {m.id: m for m in targets}

        for manifest in targets:
            graph.nodes[manifest.id] = self._target_node(
                manifest, view, requirements.get(manifest.id, {}), include_installed_dependents, target_ids
            )

        for package_id, selection in selections.items():
            ranges = requirements.get(package_id, {})
            node = DependencyNode(
                package_id=package_id,
                required_range=self._describe_ranges(ranges),
                required_by=dict(ranges),
                resolved_version=selection.manifest.version if selection.manifest else None,
                installed_version=selection.installed_version,
                status=selection.status,
                conflict_reason=selection.conflict_reason,
            )
            graph.nodes[package_id] = node
            if selection.manifest is not None:
                manifests[package_id] = selection.manifest

        cycles = self._find_cycles(graph, target_ids)
        for cycle in cycles:
            description = " -> ".join(cycle)
            for package_id in cycle[:-1]:
                node = graph.nodes[package_id]
                node.status = NodeStatus.CONFLICT
                node.conflict_reason = node.conflict_reason or f"Circular dependency: {description}"

        self._mark_blocked(graph)

        plan = InstallPlan(
            install_order=self._install_order(graph),
            circular_dependencies=cycles,
        )
        plan.required_actions = self._required_actions(graph, cycles, target_ids, selections)
        plan.can_proceed = not cycles and not any(
            n.status == NodeStatus.CONFLICT for n in graph.nodes.values()
        )

        if not plan.can_proceed:
            logger.info(
                f"Resolution blocked for {', '.join(target_ids)}: "
                f"{len([n for n in graph.nodes.values() if n.status == NodeStatus.CONFLICT])} conflict(s), "
                f"{len(cycles)} cycle(s)"
            )

        return ResolutionResult(targets=target_ids, graph=graph, plan=plan, manifests=manifests)

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------

    def _expand(
        self,
        targets: List[PackageManifest],
        view: RegistryView,
        include_installed_dependents: bool
    ) -> Tuple[Dict[str, Dict[str, str]], List[DependencyEdge], Dict[str, Selection]]:
        """
        Breadth-first expansion repeated until version choices are stable.

        A choice made early in the walk can be invalidated by a range
        discovered later (diamonds). Each pass starts from the previous
        pass's requirements, so the walk converges on choices that
        satisfy every range reaching a node.
        """
        target_ids = {m.id for m in targets}
        hints: Dict[str, Dict[str, str]] = {}
        requirements: Dict[str, Dict[str, str]] = {}
        edges: List[DependencyEdge] = []
        final: Dict[str, Selection] = {}

        for pass_number in range(1, self.max_passes + 1):
            requirements = defaultdict(dict)
            edges = []
            chosen: Dict[str, Selection] = {}
            expanded: Set[str] = set()
            queue = deque(targets)

            while queue:
                manifest = queue.popleft()
                if manifest.id in expanded:
                    continue
                expanded.add(manifest.id)

                for dep in sorted(manifest.dependencies, key=lambda d: d.package_id):
                    requirements[dep.package_id][manifest.id] = dep.version_range
                    edges.append(DependencyEdge(
                        dependent=manifest.id,
                        dependency=dep.package_id,
                        version_range=dep.version_range,
                    ))
                    if dep.package_id in target_ids:
                        continue
                    if dep.package_id not in chosen:
                        ranges = {**hints.get(dep.package_id, {}), **requirements[dep.package_id]}
                        if include_installed_dependents:
                            ranges = {
                                **view.installed_requirements(dep.package_id, exclude=expanded | target_ids),
                                **ranges,
                            }
                        chosen[dep.package_id] = self._select(dep.package_id, ranges, view)
                    selected = chosen[dep.package_id].manifest
                    if selected is not None:
                        queue.append(selected)

            final = {}
            for package_id in sorted(chosen):
                ranges = dict(requirements[package_id])
                if include_installed_dependents:
                    installed_ranges = view.installed_requirements(
                        package_id, exclude=set(chosen) | target_ids
                    )
                    for dependent_id, range_expression in installed_ranges.items():
                        requirements[package_id].setdefault(dependent_id, range_expression)
                    ranges = {**installed_ranges, **ranges}
                final[package_id] = self._select(package_id, ranges, view)

            stable = all(
                _version_of(final[pid]) == _version_of(chosen[pid]) for pid in chosen
            )
            if stable:
                logger.debug(f"Resolution converged after {pass_number} pass(es)")
                return dict(requirements), edges, final
            hints = {pid: dict(ranges) for pid, ranges in requirements.items()}

        logger.warning(f"Resolution did not converge after {self.max_passes} passes")
        for package_id, selection in final.items():
            if selection.status != NodeStatus.CONFLICT and _version_of(selection) != _version_of(chosen.get(package_id)):
                selection.status = NodeStatus.CONFLICT
                selection.conflict_reason = (
                    f"Could not settle on a single version of {package_id} "
                    f"after {self.max_passes} resolution passes"
                )
        return dict(requirements), edges, final

    def _select(self, package_id: str, ranges: Dict[str, str], view: RegistryView) -> Selection:
        """Pick installed version if it satisfies everything, else highest available"""
        installed = view.installed_package(package_id)
        installed_version = installed.version if installed else None

        parsed = []
        for dependent_id in sorted(ranges):
            try:
                parsed.append(parse_range(ranges[dependent_id]))
            except InvalidRangeError as e:
                # Aborts only this dependency, not the whole graph
                logger.warning(f"Invalid range for {package_id} required by {dependent_id}: {e.message}")
                return Selection(
                    manifest=None,
                    status=NodeStatus.CONFLICT,
                    installed_version=installed_version,
                    conflict_reason=f"{e.message} (required by {dependent_id})",
                )

        if installed is not None and satisfies_all(installed.version, parsed):
            return Selection(
                manifest=installed.manifest,
                status=NodeStatus.SATISFIED,
                installed_version=installed_version,
            )

        candidates = {m.version: m for m in view.candidates(package_id)}
        best = resolve_highest(candidates.keys(), parsed)
        if best is not None:
            return Selection(
                manifest=candidates[best],
                status=NodeStatus.NEEDS_INSTALL,
                installed_version=installed_version,
            )

        constraints = ", ".join(f"{ranges[d]} (required by {d})" for d in sorted(ranges))
        if not candidates and installed is None:
            reason = f"No version of {package_id} is available in the registry; needs {constraints}"
        elif installed is not None:
            reason = (
                f"Installed {package_id}@{installed.version} and no available version "
                f"satisfies all constraints: {constraints}"
            )
        else:
            reason = f"No version of {package_id} satisfies all constraints: {constraints}"
        return Selection(
            manifest=None,
            status=NodeStatus.CONFLICT,
            installed_version=installed_version,
            conflict_reason=reason,
            missing=not candidates and installed is None,
        )

    def _target_node(
        self,
        manifest: PackageManifest,
        view: RegistryView,
        ranges: Dict[str, str],
        include_installed_dependents: bool,
        target_ids: List[str]
    ) -> DependencyNode:
        """Targets keep their version; dependents' ranges must accept it"""
        installed = view.installed.get(manifest.id)
        ranges = dict(ranges)
        if include_installed_dependents:
            ranges = {**view.installed_requirements(manifest.id, exclude=target_ids), **ranges}

        node = DependencyNode(
            package_id=manifest.id,
            required_range=self._describe_ranges(ranges),
            required_by=ranges,
            resolved_version=manifest.version,
            installed_version=installed.version if installed else None,
            status=NodeStatus.NEEDS_INSTALL,
        )

        rejected = []
        for dependent_id in sorted(ranges):
            try:
                if not satisfies(manifest.version, ranges[dependent_id]):
                    rejected.append(f"{ranges[dependent_id]} (required by {dependent_id})")
            except InvalidRangeError as e:
                rejected.append(f"{e.message} (required by {dependent_id})")
        if rejected:
            node.status = NodeStatus.CONFLICT
            node.conflict_reason = f"{manifest.key} does not satisfy {', '.join(rejected)}"
        return node

    @staticmethod
    def _describe_ranges(ranges: Dict[str, str]) -> Optional[str]:
        unique = sorted(set(ranges.values()))
        if not unique:
            return None
        return ", ".join(unique)

    # ------------------------------------------------------------------
    # Graph analysis
    # ------------------------------------------------------------------

    def _find_cycles(self, graph: DependencyGraph, roots: List[str]) -> List[List[str]]:
        """
        Depth-first search with an explicit recursion stack.

        Each cycle is reported once as a closed path starting at its
        lexically smallest member, e.g. ['A', 'B', 'A'].
        """
        adjacency: Dict[str, List[str]] = {
            package_id: [d for d in graph.dependencies_of(package_id) if d in graph.nodes]
            for package_id in graph.nodes
        }

        cycles: List[List[str]] = []
        seen: Set[Tuple[str, ...]] = set()
        done: Set[str] = set()
        stack: List[str] = []
        on_stack: Set[str] = set()

        def visit(package_id: str):
            stack.append(package_id)
            on_stack.add(package_id)
            for dependency in adjacency.get(package_id, []):
                if dependency in on_stack:
                    loop = stack[stack.index(dependency):]
                    pivot = loop.index(min(loop))
                    canonical = tuple(loop[pivot:] + loop[:pivot])
                    if canonical not in seen:
                        seen.add(canonical)
                        cycles.append(list(canonical) + [canonical[0]])
                elif dependency not in done:
                    visit(dependency)
            stack.pop()
            on_stack.discard(package_id)
            done.add(package_id)

        for root in list(roots) + sorted(graph.nodes):
            if root not in done:
                visit(root)

        return cycles

    def _mark_blocked(self, graph: DependencyGraph):
        """Every upstream dependent that reaches a conflicted node is blocked by it"""
        for package_id in sorted(graph.nodes):
            if graph.nodes[package_id].status != NodeStatus.CONFLICT:
                continue
            queue = deque(graph.dependents_of(package_id))
            reached: Set[str] = set()
            while queue:
                upstream = queue.popleft()
                if upstream in reached or upstream == package_id:
                    continue
                reached.add(upstream)
                node = graph.nodes.get(upstream)
                if node is not None and package_id not in node.blocked_by:
                    node.blocked_by.append(package_id)
                queue.extend(graph.dependents_of(upstream))

        for node in graph.nodes.values():
            node.blocked_by.sort()

    def _install_order(self, graph: DependencyGraph) -> List[str]:
        """Kahn's algorithm over the non-conflicted subgraph, ties broken lexically"""
        included = {
            pid for pid, node in graph.nodes.items()
            if node.status != NodeStatus.CONFLICT and not node.blocked_by
        }

        indegree = {pid: 0 for pid in included}
        downstream: Dict[str, Set[str]] = defaultdict(set)
        for edge in graph.edges:
            if edge.dependent in included and edge.dependency in included:
                if edge.dependent not in downstream[edge.dependency]:
                    downstream[edge.dependency].add(edge.dependent)
                    indegree[edge.dependent] += 1

        ready = [pid for pid, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            package_id = heapq.heappop(ready)
            order.append(package_id)
            for dependent in downstream.get(package_id, ()):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return order

    def _required_actions(
        self,
        graph: DependencyGraph,
        cycles: List[List[str]],
        target_ids: List[str],
        selections: Dict[str, Selection]
    ) -> List[RequiredAction]:
        actions = []
        for package_id in sorted(graph.nodes):
            node = graph.nodes[package_id]
            if package_id in target_ids and node.status != NodeStatus.CONFLICT:
                continue
            if node.status == NodeStatus.NEEDS_INSTALL and not node.blocked_by:
                actions.append(RequiredAction(
                    type=RequiredActionType.INSTALL,
                    package_id=package_id,
                    version=node.resolved_version,
                    description=f"Install {package_id}@{node.resolved_version}",
                ))
            elif node.status == NodeStatus.CONFLICT:
                selection = selections.get(package_id)
                in_cycle = any(package_id in cycle for cycle in cycles)
                if selection is not None and selection.missing and not in_cycle:
                    actions.append(RequiredAction(
                        type=RequiredActionType.INSTALL,
                        package_id=package_id,
                        description=node.conflict_reason or f"Install {package_id}",
                    ))
                else:
                    actions.append(RequiredAction(
                        type=RequiredActionType.CONFIRM_CONFLICT,
                        package_id=package_id,
                        version=node.resolved_version,
                        description=node.conflict_reason or f"Resolve conflict on {package_id}",
                    ))
        return actions


def _version_of(selection: Optional[Selection]) -> Optional[str]:
    if selection is None or selection.manifest is None:
        return None
    return str(parse_version(selection.manifest.version))
