# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for DependencyResolver

Tests graph expansion, version choice, conflicts, cycles and install order.
"""

import pytest

from package_engine.models.package_models import NodeStatus, PackageStatus, RequiredActionType
from package_engine.services.registry.resolver import DependencyResolver, RegistryView


def registry(*manifests):
    """Group manifests by id as RegistryView.available expects"""
    available = {}
    for m in manifests:
        available.setdefault(m.id, []).append(m)
    return available


@pytest.fixture
def resolver():
    return DependencyResolver(max_passes=8)


class TestVersionChoice:
    """Test installed-first then highest-available selection"""

    def test_prefers_installed_version(self, resolver, manifest, installed):
        """crm@1.0.0 needing core ^1.0.0 reuses installed core 1.2.0"""
        core = manifest("com.acme.core", "1.2.0")
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.core": "^1.0.0"})
        view = RegistryView(
            installed={core.id: installed(core)},
            available=registry(manifest("com.acme.core", "1.5.0"), core),
        )

        result = resolver.resolve([crm], view)

        node = result.graph.nodes["com.acme.core"]
        assert node.status == NodeStatus.SATISFIED
        assert node.resolved_version == "1.2.0"
        assert result.plan.install_order == ["com.acme.core", "com.acme.crm"]
        assert result.can_proceed is True
        assert result.plan.required_actions == []
        assert [m.key for m in result.to_apply()] == ["com.acme.crm@1.0.0"]

    def test_picks_highest_available_when_not_installed(self, resolver, manifest):
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.ui": "^1.5.0"})
        view = RegistryView(available=registry(
            manifest("com.acme.ui", "1.4.0"),
            manifest("com.acme.ui", "1.5.2"),
            manifest("com.acme.ui", "1.6.0-beta.1"),
            manifest("com.acme.ui", "2.0.0"),
        ))

        result = resolver.resolve([crm], view)

        node = result.graph.nodes["com.acme.ui"]
        assert node.status == NodeStatus.NEEDS_INSTALL
        assert node.resolved_version == "1.5.2"
        assert node.required_range == "^1.5.0"
        assert node.required_by == {"com.acme.crm": "^1.5.0"}
        assert result.plan.required_actions[0].type == RequiredActionType.INSTALL
        assert result.plan.required_actions[0].description == "Install com.acme.ui@1.5.2"

    def test_installed_but_unsatisfying_version_is_replaced(self, resolver, manifest, installed):
        old = manifest("com.acme.core", "1.0.0")
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.core": "^1.2.0"})
        view = RegistryView(
            installed={old.id: installed(old)},
            available=registry(old, manifest("com.acme.core", "1.3.0")),
        )

        node = resolver.resolve([crm], view).graph.nodes["com.acme.core"]

        assert node.status == NodeStatus.NEEDS_INSTALL
        assert node.installed_version == "1.0.0"
        assert node.resolved_version == "1.3.0"

    def test_disabled_package_counts_as_present(self, resolver, manifest, installed):
        core = manifest("com.acme.core", "1.2.0")
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.core": "^1.0.0"})
        view = RegistryView(installed={core.id: installed(core, status=PackageStatus.DISABLED)})

        result = resolver.resolve([crm], view)

        assert result.graph.nodes["com.acme.core"].status == NodeStatus.SATISFIED
        assert result.can_proceed is True

    def test_failed_install_does_not_count_as_present(self, resolver, manifest, installed):
        core = manifest("com.acme.core", "1.2.0")
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.core": "^1.0.0"})
        view = RegistryView(installed={core.id: installed(core, status=PackageStatus.FAILED)})

        result = resolver.resolve([crm], view)

        assert result.graph.nodes["com.acme.core"].status == NodeStatus.CONFLICT
        assert result.can_proceed is False

    def test_platform_incompatible_candidates_are_skipped(self, resolver, manifest):
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.ui": "^1.0.0"})
        view = RegistryView(
            available=registry(
                manifest("com.acme.ui", "1.4.0", platform_range=">=3.0.0"),
                manifest("com.acme.ui", "1.5.0", platform_range=">=4.0.0"),
            ),
            platform_version="3.2.0",
        )

        assert resolver.resolve([crm], view).graph.nodes["com.acme.ui"].resolved_version == "1.4.0"


class TestConflicts:
    """Test diamond dependencies and conflict reporting"""

    def test_diamond_resolves_to_intersection(self, resolver, manifest):
        app = manifest("com.acme.app", "1.0.0", {"com.acme.b": "^1.0.0", "com.acme.c": "^1.0.0"})
        b = manifest("com.acme.b", "1.0.0", {"com.acme.c": ">=1.2.0 <1.5.0"})
        view = RegistryView(available=registry(
            b,
            manifest("com.acme.c", "1.1.0"),
            manifest("com.acme.c", "1.4.0"),
            manifest("com.acme.c", "1.9.0"),
        ))

        result = resolver.resolve([app], view)

        node = result.graph.nodes["com.acme.c"]
        assert node.resolved_version == "1.4.0"
        assert node.required_by == {"com.acme.app": "^1.0.0", "com.acme.b": ">=1.2.0 <1.5.0"}
        assert result.can_proceed is True
        assert result.plan.install_order == ["com.acme.c", "com.acme.b", "com.acme.app"]

    def test_diamond_with_empty_intersection_conflicts(self, resolver, manifest):
        app = manifest("com.acme.app", "1.0.0", {"com.acme.b": "^1.0.0", "com.acme.c": "^1.0.0"})
        b = manifest("com.acme.b", "1.0.0", {"com.acme.c": "^2.0.0"})
        view = RegistryView(available=registry(
            b, manifest("com.acme.c", "1.4.0"), manifest("com.acme.c", "2.1.0")
        ))

        result = resolver.resolve([app], view)

        node = result.graph.nodes["com.acme.c"]
        assert node.status == NodeStatus.CONFLICT
        assert "^1.0.0 (required by com.acme.app)" in node.conflict_reason
        assert "^2.0.0 (required by com.acme.b)" in node.conflict_reason
        assert result.graph.nodes["com.acme.b"].blocked_by == ["com.acme.c"]
        assert result.graph.nodes["com.acme.app"].blocked_by == ["com.acme.c"]
        assert result.can_proceed is False
        assert result.plan.install_order == []
        actions = {(a.type, a.package_id) for a in result.plan.required_actions}
        assert (RequiredActionType.CONFIRM_CONFLICT, "com.acme.c") in actions

    def test_installed_dependents_constrain_shared_dependency(self, resolver, manifest, installed):
        core = manifest("com.acme.core", "1.2.0")
        erp = manifest("com.acme.erp", "1.0.0", {"com.acme.core": "^1.0.0"})
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.core": "^2.0.0"})
        view = RegistryView(
            installed={core.id: installed(core), erp.id: installed(erp)},
            available=registry(core, manifest("com.acme.core", "2.0.0")),
        )

        result = resolver.resolve([crm], view)

        node = result.graph.nodes["com.acme.core"]
        assert node.status == NodeStatus.CONFLICT
        assert node.required_by["com.acme.erp"] == "^1.0.0"
        assert result.can_proceed is False

    def test_missing_package_requires_install(self, resolver, manifest):
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.ghost": "^1.0.0"})

        result = resolver.resolve([crm], RegistryView())

        assert result.graph.nodes["com.acme.ghost"].status == NodeStatus.CONFLICT
        assert result.plan.required_actions[0].type == RequiredActionType.INSTALL
        assert result.plan.required_actions[0].package_id == "com.acme.ghost"
        assert result.can_proceed is False

    def test_invalid_range_only_fails_that_dependency(self, resolver, manifest):
        crm = manifest("com.acme.crm", "1.0.0", {"com.acme.bad": "^^1", "com.acme.ui": "^1.0.0"})
        view = RegistryView(available=registry(
            manifest("com.acme.bad", "1.0.0"), manifest("com.acme.ui", "1.0.0")
        ))

        result = resolver.resolve([crm], view)

        assert result.graph.nodes["com.acme.bad"].status == NodeStatus.CONFLICT
        assert "Invalid version range" in result.graph.nodes["com.acme.bad"].conflict_reason
        assert result.graph.nodes["com.acme.ui"].status == NodeStatus.NEEDS_INSTALL
        assert result.graph.nodes["com.acme.ui"].resolved_version == "1.0.0"

    def test_target_rejected_by_installed_dependent(self, resolver, manifest, installed):
        core_v1 = manifest("com.acme.core", "1.2.0")
        erp = manifest("com.acme.erp", "1.0.0", {"com.acme.core": "^1.0.0"})
        view = RegistryView(installed={core_v1.id: installed(core_v1), erp.id: installed(erp)})

        result = resolver.resolve([manifest("com.acme.core", "2.0.0")], view)

        node = result.graph.nodes["com.acme.core"]
        assert node.status == NodeStatus.CONFLICT
        assert "required by com.acme.erp" in node.conflict_reason
        assert result.can_proceed is False


class TestCycles:
    """Test circular dependency detection"""

    def test_two_node_cycle(self, resolver, manifest):
        a = manifest("com.acme.a", "1.0.0", {"com.acme.b": "^1.0.0"})
        b = manifest("com.acme.b", "1.0.0", {"com.acme.a": "^1.0.0"})

        result = resolver.resolve([a], RegistryView(available=registry(a, b)))

        assert result.can_proceed is False
        assert result.plan.circular_dependencies == [["com.acme.a", "com.acme.b", "com.acme.a"]]
        assert result.plan.install_order == []
        assert result.graph.nodes["com.acme.b"].status == NodeStatus.CONFLICT
        assert result.to_response().circular_dependencies == [["com.acme.a", "com.acme.b", "com.acme.a"]]

    def test_cycle_reported_once_from_smallest_member(self, resolver, manifest):
        root = manifest("com.acme.root", "1.0.0", {"com.acme.z": "*"})
        z = manifest("com.acme.z", "1.0.0", {"com.acme.m": "*"})
        m = manifest("com.acme.m", "1.0.0", {"com.acme.z": "*"})

        result = resolver.resolve([root], RegistryView(available=registry(z, m)))

        assert result.plan.circular_dependencies == [["com.acme.m", "com.acme.z", "com.acme.m"]]
        assert result.graph.nodes["com.acme.root"].blocked_by == ["com.acme.m", "com.acme.z"]

    def test_self_dependency(self, resolver, manifest):
        selfish = manifest("com.acme.self", "1.0.0", {"com.acme.self": "^1.0.0"})

        result = resolver.resolve([selfish], RegistryView())

        assert result.plan.circular_dependencies == [["com.acme.self", "com.acme.self"]]
        assert result.can_proceed is False

    def test_no_cycle_no_circular_dependencies_in_response(self, resolver, manifest):
        crm = manifest("com.acme.crm", "1.0.0")

        response = resolver.resolve([crm], RegistryView()).to_response()

        assert response.circular_dependencies is None
        assert response.install_order == ["com.acme.crm"]
        assert response.dependencies == []


class TestInstallOrder:
    """Test topological ordering and determinism"""

    @pytest.fixture
    def wide_graph(self, manifest):
        app = manifest("com.acme.app", "1.0.0", {
            "com.acme.ui": "^1.0.0", "com.acme.core": "^1.0.0", "com.acme.reports": "^1.0.0"
        })
        available = registry(
            manifest("com.acme.ui", "1.0.0", {"com.acme.core": "^1.0.0", "com.acme.utils": "^1.0.0"}),
            manifest("com.acme.core", "1.0.0", {"com.acme.utils": "^1.0.0"}),
            manifest("com.acme.reports", "1.0.0", {"com.acme.charts": "^1.0.0", "com.acme.core": "^1.0.0"}),
            manifest("com.acme.charts", "1.0.0"),
            manifest("com.acme.utils", "1.0.0"),
        )
        return app, RegistryView(available=available)

    def test_dependencies_precede_dependents(self, resolver, wide_graph):
        app, view = wide_graph

        result = resolver.resolve([app], view)

        order = result.plan.install_order
        position = {pid: i for i, pid in enumerate(order)}
        assert len(order) == 6
        for edge in result.graph.edges:
            assert position[edge.dependency] < position[edge.dependent]

    def test_ties_broken_lexically(self, resolver, wide_graph):
        app, view = wide_graph

        order = resolver.resolve([app], view).plan.install_order

        assert order == [
            "com.acme.charts", "com.acme.utils", "com.acme.core",
            "com.acme.reports", "com.acme.ui", "com.acme.app",
        ]

    def test_resolution_is_deterministic(self, resolver, wide_graph):
        app, view = wide_graph

        first = resolver.resolve([app], view)
        second = resolver.resolve([app], view)

        assert first.plan.install_order == second.plan.install_order
        assert first.to_response().to_dict() == second.to_response().to_dict()

    def test_graph_neighbours(self, resolver, wide_graph):
        app, view = wide_graph

        graph = resolver.resolve([app], view).graph

        assert graph.dependencies_of("com.acme.ui") == ["com.acme.core", "com.acme.utils"]
        assert graph.dependents_of("com.acme.core") == ["com.acme.app", "com.acme.reports", "com.acme.ui"]
        assert graph.dependents_of("com.acme.app") == []
