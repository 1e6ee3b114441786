# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""Data models for the package lifecycle engine."""

from package_engine.models.package_models import (
    PackageType,
    PackageStatus,
    NodeStatus,
    MergeStrategy,
    OperationPhase,
    PackageDependency,
    PackageManifest,
    InstalledPackage,
    DependencyNode,
    DependencyGraph,
    InstallPlan,
    Snapshot,
    ArtifactRef,
    MergeConflict,
    NamespaceConflict,
    UpgradePlan,
)

__all__ = [
    # Enums
    "PackageType",
    "PackageStatus",
    "NodeStatus",
    "MergeStrategy",
    "OperationPhase",
    # Packages
    "PackageDependency",
    "PackageManifest",
    "InstalledPackage",
    # Resolution
    "DependencyNode",
    "DependencyGraph",
    "InstallPlan",
    # Lifecycle
    "Snapshot",
    "ArtifactRef",
    "MergeConflict",
    "NamespaceConflict",
    "UpgradePlan",
]
