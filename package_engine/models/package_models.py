# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Data Models

Defines data structures for the package lifecycle engine including
manifests, installed packages, dependency graphs, snapshots, artifacts,
merge conflicts and the request/response shapes of the package API.

Field names are snake_case in Python and camelCase on the wire.
"""

import re
from datetime import datetime, UTC
from enum import Enum
from typing import List, Dict, Optional, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PACKAGE_ID_PATTERN = re.compile(r"^[a-z][a-z0-9-]*(\.[a-z0-9][a-z0-9_-]*)+$")
SEMVER_PATTERN = re.compile(
    r"^v?\d+\.\d+\.\d+(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
SHA256_PATTERN = r"^[0-9a-fA-F]{64}$"


def utcnow() -> datetime:
    return datetime.now(UTC)


class WireModel(BaseModel):
    """Base model serialising to camelCase"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-compatible dictionary using wire names"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# ENUMS
# =============================================================================

class PackageType(str, Enum):
    """Type of package"""
    PLUGIN = "plugin"
    APP = "app"
    DRIVER = "driver"
    MODULE = "module"


class PackageStatus(str, Enum):
    """Lifecycle status of an installed package"""
    INSTALLED = "installed"
    DISABLED = "disabled"
    FAILED = "failed"
    PENDING = "pending"


class NodeStatus(str, Enum):
    """Resolution status of a dependency node"""
    SATISFIED = "satisfied"
    NEEDS_INSTALL = "needs_install"
    CONFLICT = "conflict"


class RequiredActionType(str, Enum):
    """Action needed before an install plan can be committed"""
    INSTALL = "install"
    CONFIRM_CONFLICT = "confirm_conflict"


class MergeStrategy(str, Enum):
    """How customizations are reconciled during upgrade"""
    THREE_WAY_MERGE = "three-way-merge"
    KEEP_CUSTOM = "keep-custom"
    OVERWRITE = "overwrite"

    @classmethod
    def _missing_(cls, value):
        if value == "accept-incoming":
            return cls.OVERWRITE
        return None


class OperationPhase(str, Enum):
    """Phase of a mutating operation"""
    PENDING = "pending"
    RESOLVING = "resolving"
    PLANNING = "planning"
    SNAPSHOTTING = "snapshotting"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"


class CompatibilityLevel(str, Enum):
    """Compatibility between two versions of the same package"""
    FULLY_COMPATIBLE = "fully-compatible"
    BACKWARD_COMPATIBLE = "backward-compatible"
    BREAKING_CHANGES = "breaking-changes"
    INCOMPATIBLE = "incompatible"


class ImpactLevel(str, Enum):
    """Impact of an upgrade"""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SnapshotReason(str, Enum):
    """Operation that captured a snapshot"""
    UPGRADE = "upgrade"
    UNINSTALL = "uninstall"


class TransactionStatus(str, Enum):
    """Transaction status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class TransactionOperation(str, Enum):
    """Type of transaction operation"""
    INSTALL = "install"
    UPGRADE = "upgrade"
    UNINSTALL = "uninstall"
    ROLLBACK = "rollback"
    ENABLE = "enable"
    DISABLE = "disable"


# =============================================================================
# MANIFESTS AND INSTALLED PACKAGES
# =============================================================================

class PackageDependency(WireModel):
    """Declared dependency: package id plus a semver range expression"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    package_id: str
    version_range: str = "*"


class PackageManifest(WireModel):
    """
    Published package manifest.

    Immutable once published; a new version is a new manifest.
    The config tree holds the package's default metadata/config
    (objects, fields, views, settings) as an arbitrary JSON tree.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    version: str
    type: PackageType = PackageType.PLUGIN
    description: Optional[str] = None
    dependencies: List[PackageDependency] = Field(default_factory=list)
    namespace: Optional[str] = None
    platform_range: Optional[str] = None  # Required platform version range
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        if not PACKAGE_ID_PATTERN.match(value):
            raise ValueError(f"Package id must be reverse-domain notation (e.g. com.acme.crm), got '{value}'")
        return value

    @field_validator("version")
    @classmethod
    def _validate_version(cls, value: str) -> str:
        if not SEMVER_PATTERN.match(value):
            raise ValueError(f"Invalid semantic version: '{value}'")
        return value.lstrip("v")

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dependencies_from_mapping(cls, value: Any) -> Any:
        # Accept {"com.acme.core": "^1.0.0"} as well as a list of objects
        if isinstance(value, dict):
            return [{"package_id": k, "version_range": v} for k, v in sorted(value.items())]
        return value

    @property
    def key(self) -> str:
        return f"{self.id}@{self.version}"

    @property
    def vendor(self) -> str:
        """Vendor short id: second segment of the reverse-domain id"""
        parts = self.id.split(".")
        return parts[1] if len(parts) > 1 else parts[0]


class InstalledPackage(WireModel):
    """Record of an installed package"""
    manifest: PackageManifest
    status: PackageStatus = PackageStatus.INSTALLED
    enabled: bool = True
    namespace: Optional[str] = None  # Effective namespace (manifest namespace unless renamed)
    config: Dict[str, Any] = Field(default_factory=dict)  # Current (customized) config tree
    installed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    transaction_id: Optional[str] = None

    @property
    def package_id(self) -> str:
        return self.manifest.id

    @property
    def version(self) -> str:
        return self.manifest.version

    @property
    def is_present(self) -> bool:
        """Installed or disabled packages count as present; disabled is not absent"""
        return self.status in (PackageStatus.INSTALLED, PackageStatus.DISABLED)

    @property
    def effective_namespace(self) -> Optional[str]:
        return self.namespace or self.manifest.namespace


# =============================================================================
# DEPENDENCY RESOLUTION
# =============================================================================

class DependencyNode(WireModel):
    """Node in the dependency graph of one resolution run"""
    package_id: str
    required_range: Optional[str] = None
    required_by: Dict[str, str] = Field(default_factory=dict)  # dependent -> range
    resolved_version: Optional[str] = None
    installed_version: Optional[str] = None
    status: NodeStatus = NodeStatus.NEEDS_INSTALL
    conflict_reason: Optional[str] = None
    blocked_by: List[str] = Field(default_factory=list)


class DependencyEdge(WireModel):
    """Directed edge dependent -> dependency"""
    dependent: str
    dependency: str
    version_range: str


class DependencyGraph(WireModel):
    """Complete dependency graph for one resolution run"""
    nodes: Dict[str, DependencyNode] = Field(default_factory=dict)
    edges: List[DependencyEdge] = Field(default_factory=list)

    def dependencies_of(self, package_id: str) -> List[str]:
        return sorted({e.dependency for e in self.edges if e.dependent == package_id})

    def dependents_of(self, package_id: str) -> List[str]:
        return sorted({e.dependent for e in self.edges if e.dependency == package_id})


class RequiredAction(WireModel):
    """Something that must happen before the plan can be committed"""
    type: RequiredActionType
    package_id: str
    version: Optional[str] = None
    description: str


class InstallPlan(WireModel):
    """Topologically ordered plan"""
    install_order: List[str] = Field(default_factory=list)
    can_proceed: bool = True
    required_actions: List[RequiredAction] = Field(default_factory=list)
    circular_dependencies: List[List[str]] = Field(default_factory=list)


class DependencyResolutionResult(WireModel):
    """Dependency resolution result with topological sort (resolve-dependencies response)"""
    dependencies: List[DependencyNode] = Field(default_factory=list)
    can_proceed: bool
    required_actions: List[RequiredAction] = Field(default_factory=list)
    install_order: List[str] = Field(default_factory=list)
    circular_dependencies: Optional[List[List[str]]] = None


# =============================================================================
# ARTIFACTS
# =============================================================================

class ArtifactRef(WireModel):
    """Reference to an accepted package artifact"""
    url: str
    sha256: str = Field(pattern=SHA256_PATTERN)
    size: int = Field(ge=0)
    uploaded_at: datetime = Field(default_factory=utcnow)


class ArtifactMetadata(WireModel):
    """Metadata describing an uploaded artifact"""
    package_id: str
    version: str
    filename: str
    format: str = "tgz"


class VerificationResult(WireModel):
    """Outcome of artifact verification"""
    valid: bool
    sha256: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


# =============================================================================
# NAMESPACES, MERGE, SNAPSHOTS
# =============================================================================

class NamespaceConflict(WireModel):
    """Namespace collision with another installed package"""
    type: Literal["namespace_conflict"] = "namespace_conflict"
    requested_namespace: str
    conflicting_package_id: str
    conflicting_package_name: str
    suggestion: Optional[str] = None


class MergeConflict(WireModel):
    """Path where vendor and tenant both changed a value differently"""
    path: str
    base_value: Any = None
    incoming_value: Any = None
    custom_value: Any = None


class MergeResult(WireModel):
    """Outcome of an upgrade merge"""
    success: bool
    merged: Dict[str, Any] = Field(default_factory=dict)
    conflicts: List[MergeConflict] = Field(default_factory=list)
    divergences: List[str] = Field(default_factory=list)  # keep-custom overrides


class Snapshot(WireModel):
    """Immutable capture of a package's state before upgrade or uninstall"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    snapshot_id: str
    package_id: str
    version: str
    manifest: PackageManifest
    config: Dict[str, Any] = Field(default_factory=dict)
    status: PackageStatus = PackageStatus.INSTALLED
    enabled: bool = True
    namespace: Optional[str] = None
    reason: SnapshotReason
    target_version: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class DependencyUpgrade(WireModel):
    """Dependency version change caused by an upgrade"""
    package_id: str
    from_version: Optional[str] = None
    to_version: str


class UpgradePlan(WireModel):
    """Upgrade plan that was (or would be) executed"""
    package_id: str
    from_version: str
    to_version: str
    impact_level: ImpactLevel
    changes: List[str] = Field(default_factory=list)
    affected_customizations: int = 0
    dependency_upgrades: List[DependencyUpgrade] = Field(default_factory=list)
    install_order: List[str] = Field(default_factory=list)


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionRecord(WireModel):
    """Transaction record for mutating operations"""
    id: str
    operation: TransactionOperation
    package_id: str
    version: Optional[str] = None
    status: TransactionStatus
    phase: OperationPhase = OperationPhase.PENDING
    dependencies_installed: List[str] = Field(default_factory=list)
    snapshot_id: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# REQUESTS AND RESPONSES
# =============================================================================

class PackageInstallRequest(WireModel):
    """Install package request"""
    manifest: PackageManifest
    artifact_ref: Optional[ArtifactRef] = None
    signature: Optional[str] = None  # Detached signature over the artifact bytes
    settings: Optional[Dict[str, Any]] = None
    enable_on_install: bool = True
    platform_version: Optional[str] = None
    namespace: Optional[str] = None  # Rename to avoid a namespace conflict
    accept_namespace_conflict: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)  # Seconds; bounds lock wait and artifact fetch


class PackageInstallResponse(WireModel):
    """Install package response"""
    success: bool
    package: Optional[InstalledPackage] = None
    dependency_resolution: Optional[DependencyResolutionResult] = None
    namespace_conflicts: Optional[List[NamespaceConflict]] = None
    installed_dependencies: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    message: Optional[str] = None


class PackageUpgradeRequest(WireModel):
    """Upgrade package request"""
    package_id: str
    target_version: Optional[str] = None  # Defaults to latest
    manifest: Optional[PackageManifest] = None
    merge_strategy: MergeStrategy = MergeStrategy.THREE_WAY_MERGE
    create_snapshot: bool = True
    dry_run: bool = False
    allow_destructive: bool = False  # Required for the overwrite strategy
    resolutions: Dict[str, Any] = Field(default_factory=dict)  # path -> chosen value
    platform_version: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class PackageUpgradeResponse(WireModel):
    """Upgrade package response"""
    success: bool
    phase: OperationPhase
    failed_phase: Optional[OperationPhase] = None
    snapshot_id: Optional[str] = None
    plan: Optional[UpgradePlan] = None
    conflicts: Optional[List[MergeConflict]] = None
    dependency_resolution: Optional[DependencyResolutionResult] = None
    namespace_conflicts: Optional[List[NamespaceConflict]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    message: Optional[str] = None


class ResolveDependenciesRequest(WireModel):
    """Resolve dependencies request"""
    manifest: PackageManifest
    platform_version: Optional[str] = None


class UploadArtifactRequest(WireModel):
    """Upload artifact request"""
    artifact: ArtifactMetadata
    data: bytes
    sha256: Optional[str] = Field(default=None, pattern=SHA256_PATTERN)
    signature: Optional[str] = None
    release_notes: Optional[str] = None
    manifest: Optional[PackageManifest] = None  # Published to the index on success


class UploadArtifactResponse(WireModel):
    """Upload artifact response"""
    success: bool
    artifact_ref: Optional[ArtifactRef] = None
    submission_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    message: Optional[str] = None


class PackageRollbackRequest(WireModel):
    """Rollback package request"""
    package_id: str
    snapshot_id: str
    rollback_customizations: bool = True
    timeout: Optional[float] = Field(default=None, gt=0)


class PackageRollbackResponse(WireModel):
    """Rollback package response"""
    success: bool
    restored_version: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    message: Optional[str] = None


class UninstallPackageResponse(WireModel):
    """Uninstall package response"""
    package_id: str
    success: bool
    snapshot_id: Optional[str] = None
    dependents: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    message: Optional[str] = None


class ListInstalledPackagesResponse(WireModel):
    """List installed packages response"""
    packages: List[InstalledPackage] = Field(default_factory=list)
    total: int = 0
    next_cursor: Optional[str] = None
    has_more: bool = False
