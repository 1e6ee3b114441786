# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Operations

Single responsibility: Install, upgrade, roll back, uninstall and
enable/disable packages as atomic transactions.

Every mutating operation runs under the space lock. Steps before
"applying" are read-only; a failure while applying restores the
installed-packages state captured just before it.
"""

import copy
import logging
import uuid
from typing import List, Optional

from package_engine.core.errors import (
    DependencyConflictError,
    InvalidRangeError,
    NamespaceConflictError,
    PackageAlreadyInstalledError,
    PackageEngineError,
    PackageNotFoundError,
    PlatformIncompatibleError,
    RollbackFailedError,
    SnapshotNotFoundError,
    UpgradeFailedError,
    ValidationError,
    VersionNotFoundError,
    sanitize_error_for_user,
)
from package_engine.core.logging import log_event
from package_engine.models.package_models import (
    DependencyUpgrade,
    InstalledPackage,
    MergeStrategy,
    NodeStatus,
    OperationPhase,
    PackageInstallRequest,
    PackageInstallResponse,
    PackageManifest,
    PackageRollbackRequest,
    PackageRollbackResponse,
    PackageStatus,
    PackageUpgradeRequest,
    PackageUpgradeResponse,
    Snapshot,
    SnapshotReason,
    TransactionOperation,
    TransactionRecord,
    UninstallPackageResponse,
    UpgradePlan,
    utcnow,
)

from .artifacts import ArtifactVerifier
from .index import PackageIndex
from .locks import DEFAULT_SPACE, SpaceLockManager
from .merge import UpgradeMergeEngine, deep_merge
from .namespaces import NamespaceConflictDetector
from .resolver import DependencyResolver, RegistryView, ResolutionResult
from .store import PackageStore, SnapshotStore
from .transactions import TransactionLogger
from .versioning import impact_level, satisfies

logger = logging.getLogger(__name__)


class PackageApplier:
    """
    Applies package state to the host platform (object schemas, views, ...).

    The default does nothing; the platform plugs in its own implementation.
    Raising from any method aborts the operation and restores prior state.
    """

    async def install(self, manifest: PackageManifest, config: dict):
        logger.debug(f"Applying install of {manifest.key}")

    async def upgrade(self, current: PackageManifest, target: PackageManifest, config: dict):
        logger.debug(f"Applying upgrade of {current.id} {current.version} -> {target.version}")

    async def uninstall(self, record: InstalledPackage):
        logger.debug(f"Applying uninstall of {record.manifest.key}")

    async def restore(self, snapshot: Snapshot):
        logger.debug(f"Applying restore of {snapshot.package_id} to {snapshot.version}")


class PackageOperations:
    """Handles package installation, upgrades, rollback and removal"""

    def __init__(
        self,
        packages: PackageStore,
        snapshots: SnapshotStore,
        index: PackageIndex,
        resolver: DependencyResolver,
        verifier: ArtifactVerifier,
        detector: NamespaceConflictDetector,
        merge_engine: UpgradeMergeEngine,
        transaction_logger: TransactionLogger,
        lock_manager: SpaceLockManager,
        platform_version: str,
        applier: Optional[PackageApplier] = None,
        space_id: str = DEFAULT_SPACE
    ):
        """
        Initialize package operations.

        Args:
            packages: Installed package store
            snapshots: Snapshot store
            index: Available package versions
            resolver: Dependency resolver
            verifier: Artifact verifier
            detector: Namespace conflict detector
            merge_engine: Upgrade merge engine
            transaction_logger: Transaction logger
            lock_manager: Per-space lock manager (may be shared across spaces)
            platform_version: Current platform version
            applier: Host platform hook
            space_id: Tenant/space these stores belong to
        """
        self.packages = packages
        self.snapshots = snapshots
        self.index = index
        self.resolver = resolver
        self.verifier = verifier
        self.detector = detector
        self.merge_engine = merge_engine
        self.transaction_logger = transaction_logger
        self.lock_manager = lock_manager
        self.platform_version = platform_version
        self.applier = applier or PackageApplier()
        self.space_id = space_id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def registry_view(self, platform_version: Optional[str] = None) -> RegistryView:
        """Snapshot of installed and available packages"""
        return RegistryView(
            installed=self.packages.as_mapping(),
            available=self.index.available(),
            platform_version=platform_version or self.platform_version,
        )

    def check_platform(self, manifest: PackageManifest, platform_version: str):
        if manifest.platform_range and not satisfies(platform_version, manifest.platform_range):
            raise PlatformIncompatibleError(manifest.id, manifest.platform_range, platform_version)

    def _take_snapshot(
        self,
        record: InstalledPackage,
        reason: SnapshotReason,
        target_version: Optional[str] = None
    ) -> Snapshot:
        snapshot = Snapshot(
            snapshot_id=f"snap-{uuid.uuid4().hex[:12]}",
            package_id=record.package_id,
            version=record.version,
            manifest=record.manifest,
            config=copy.deepcopy(record.config),
            status=record.status,
            enabled=record.enabled,
            namespace=record.namespace,
            reason=reason,
            target_version=target_version,
        )
        self.snapshots.put(snapshot)
        logger.info(f"Snapshot {snapshot.snapshot_id} taken of {record.manifest.key} before {reason.value}")
        return snapshot

    async def _apply_dependency(
        self,
        manifest: PackageManifest,
        transaction: TransactionRecord,
        snapshot_ids: List[str]
    ) -> str:
        """
        Install a new dependency, or move an installed one to the resolved version.

        Ids of snapshots taken here are appended to snapshot_ids so a failed
        transaction can discard them along with its package changes.
        """
        existing = self.packages.get(manifest.id)
        if existing is None:
            config = copy.deepcopy(manifest.config)
            await self.applier.install(manifest, config)
            record = InstalledPackage(manifest=manifest, config=config, transaction_id=transaction.id)
        else:
            snapshot = self._take_snapshot(existing, SnapshotReason.UPGRADE, target_version=manifest.version)
            snapshot_ids.append(snapshot.snapshot_id)
            merged = self.merge_engine.merge(
                existing.manifest.config, manifest.config, existing.config, MergeStrategy.KEEP_CUSTOM
            )
            await self.applier.upgrade(existing.manifest, manifest, merged.merged)
            record = existing.model_copy(update={
                "manifest": manifest,
                "config": merged.merged,
                "updated_at": utcnow(),
                "transaction_id": transaction.id,
            })
        self.packages.put(record)
        return manifest.key

    def _discard_snapshots(self, snapshot_ids: List[str]):
        for snapshot_id in snapshot_ids:
            self.snapshots.delete(snapshot_id)

    def _fail(self, transaction: TransactionRecord, error: PackageEngineError, rolled_back: bool = False) -> str:
        message = sanitize_error_for_user(error, include_type=False)
        self.transaction_logger.fail(transaction, error.code_value, message, rolled_back=rolled_back)
        log_event(
            logger, "package_operation_failed", level="WARNING",
            transaction_id=transaction.id,
            operation=transaction.operation.value,
            package_id=transaction.package_id,
            phase=transaction.phase.value,
            error_code=error.code_value,
        )
        return message

    def _completed(self, transaction: TransactionRecord):
        self.transaction_logger.complete(transaction)
        log_event(
            logger, "package_operation_completed",
            transaction_id=transaction.id,
            operation=transaction.operation.value,
            package_id=transaction.package_id,
            version=transaction.version,
        )

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def install(self, request: PackageInstallRequest) -> PackageInstallResponse:
        """
        Install a package with its dependencies.

        Verify artifact -> resolve -> namespace check -> apply in install order.
        Re-installing the same version and manifest is a no-op success.
        """
        manifest = request.manifest
        platform_version = request.platform_version or self.platform_version
        transaction = self.transaction_logger.create_transaction(
            TransactionOperation.INSTALL, manifest.id, manifest.version
        )
        resolution: Optional[ResolutionResult] = None

        try:
            async with self.lock_manager.acquire(self.space_id, request.timeout):
                existing = self.packages.get(manifest.id)
                if existing is not None:
                    if existing.version == manifest.version and existing.manifest == manifest:
                        self._completed(transaction)
                        return PackageInstallResponse(
                            success=True,
                            package=existing,
                            message=f"{manifest.key} is already installed",
                        )
                    raise PackageAlreadyInstalledError(manifest.id, existing.version)

                self.transaction_logger.advance(transaction, OperationPhase.RESOLVING)
                self.check_platform(manifest, platform_version)

                if request.artifact_ref is not None:
                    await self.verifier.verify_or_raise(
                        request.artifact_ref,
                        request.artifact_ref.sha256,
                        signature=request.signature,
                        package_id=manifest.id,
                        timeout=request.timeout,
                    )

                resolution = self.resolver.resolve([manifest], self.registry_view(platform_version))
                if not resolution.can_proceed:
                    raise DependencyConflictError(
                        f"Dependencies of {manifest.key} cannot be resolved",
                        details={"conflicts": [n.package_id for n in resolution.conflicts]},
                    )

                self.transaction_logger.advance(transaction, OperationPhase.PLANNING)
                to_apply = resolution.to_apply()
                overrides = {manifest.id: request.namespace} if request.namespace else {}
                namespace_conflicts = self.detector.check_plan(to_apply, self.packages.list(), overrides)
                if namespace_conflicts and not request.accept_namespace_conflict:
                    message = self._fail(transaction, NamespaceConflictError(
                        f"Namespace conflict for {manifest.key}; rename, accept or abort"
                    ))
                    return PackageInstallResponse(
                        success=False,
                        dependency_resolution=resolution.to_response(),
                        namespace_conflicts=namespace_conflicts,
                        error_code=NamespaceConflictError.code.value,
                        error_message=message,
                    )

                self.transaction_logger.advance(transaction, OperationPhase.APPLYING)
                backup = self.packages.backup()
                installed_dependencies: List[str] = []
                dependency_snapshots: List[str] = []
                try:
                    for item in to_apply:
                        if item.id != manifest.id:
                            key = await self._apply_dependency(item, transaction, dependency_snapshots)
                            installed_dependencies.append(key)
                            continue
                        config = deep_merge(manifest.config, request.settings)
                        await self.applier.install(manifest, config)
                        self.packages.put(InstalledPackage(
                            manifest=manifest,
                            status=PackageStatus.INSTALLED if request.enable_on_install else PackageStatus.DISABLED,
                            enabled=request.enable_on_install,
                            namespace=request.namespace,
                            config=config,
                            transaction_id=transaction.id,
                        ))
                except Exception as e:
                    logger.error(f"Installation of {manifest.key} failed while applying: {e}")
                    self.packages.restore(backup)
                    self._discard_snapshots(dependency_snapshots)
                    raise PackageEngineError(
                        f"Installation of {manifest.key} failed and was rolled back: {e}"
                    ) from e

                transaction.dependencies_installed = installed_dependencies
                self._completed(transaction)
                logger.info(f"Package {manifest.key} installed successfully")
                return PackageInstallResponse(
                    success=True,
                    package=self.packages.get(manifest.id),
                    dependency_resolution=resolution.to_response(),
                    namespace_conflicts=namespace_conflicts or None,
                    installed_dependencies=installed_dependencies,
                    message=f"Installed {manifest.key}",
                )

        except PackageEngineError as e:
            rolled_back = transaction.phase == OperationPhase.APPLYING
            message = self._fail(transaction, e, rolled_back=rolled_back)
            return PackageInstallResponse(
                success=False,
                dependency_resolution=resolution.to_response() if resolution else None,
                error_code=e.code_value,
                error_message=message,
            )

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    def _target_manifest(self, request: PackageUpgradeRequest) -> PackageManifest:
        if request.manifest is not None:
            if request.manifest.id != request.package_id:
                raise ValidationError(
                    f"Manifest id {request.manifest.id} does not match {request.package_id}",
                    field="manifest"
                )
            if request.target_version and request.manifest.version != request.target_version.lstrip("v"):
                raise ValidationError(
                    f"Manifest version {request.manifest.version} does not match target {request.target_version}",
                    field="target_version"
                )
            return request.manifest

        if request.target_version:
            manifest = self.index.get_manifest(request.package_id, request.target_version)
        else:
            manifest = self.index.latest(request.package_id)
        if manifest is None:
            raise VersionNotFoundError(request.package_id, request.target_version)
        return manifest

    async def upgrade(self, request: PackageUpgradeRequest) -> PackageUpgradeResponse:
        """
        Upgrade an installed package.

        Snapshot -> resolve -> namespace check and merge -> apply. On a
        merge conflict nothing is committed and the snapshot is kept.
        """
        platform_version = request.platform_version or self.platform_version
        transaction = self.transaction_logger.create_transaction(
            TransactionOperation.UPGRADE, request.package_id, request.target_version
        )
        snapshot: Optional[Snapshot] = None
        plan: Optional[UpgradePlan] = None
        resolution: Optional[ResolutionResult] = None

        def failed(error: PackageEngineError, **fields) -> PackageUpgradeResponse:
            failed_phase = transaction.phase
            message = self._fail(transaction, error, rolled_back=failed_phase == OperationPhase.APPLYING)
            return PackageUpgradeResponse(
                success=False,
                phase=OperationPhase.FAILED,
                failed_phase=failed_phase,
                snapshot_id=snapshot.snapshot_id if snapshot else None,
                plan=plan,
                dependency_resolution=resolution.to_response() if resolution else None,
                error_code=error.code_value,
                error_message=message,
                **fields
            )

        try:
            async with self.lock_manager.acquire(self.space_id, request.timeout):
                existing = self.packages.get(request.package_id)
                if existing is None:
                    raise PackageNotFoundError(request.package_id)

                target = self._target_manifest(request)
                transaction.version = target.version
                if target == existing.manifest:
                    self._completed(transaction)
                    return PackageUpgradeResponse(
                        success=True,
                        phase=OperationPhase.COMPLETED,
                        message=f"{target.key} is already installed",
                    )
                self.check_platform(target, platform_version)

                if request.create_snapshot and not request.dry_run:
                    self.transaction_logger.advance(transaction, OperationPhase.SNAPSHOTTING)
                    snapshot = self._take_snapshot(existing, SnapshotReason.UPGRADE, target_version=target.version)
                    transaction.snapshot_id = snapshot.snapshot_id
                elif not request.create_snapshot:
                    logger.warning(f"Upgrading {request.package_id} without a snapshot at caller's request")

                self.transaction_logger.advance(transaction, OperationPhase.RESOLVING)
                resolution = self.resolver.resolve([target], self.registry_view(platform_version))
                if not resolution.can_proceed:
                    return failed(DependencyConflictError(
                        f"Dependencies of {target.key} cannot be resolved",
                        details={"conflicts": [n.package_id for n in resolution.conflicts]},
                    ))

                self.transaction_logger.advance(transaction, OperationPhase.PLANNING)
                base, incoming, custom = existing.manifest.config, target.config, existing.config
                plan = UpgradePlan(
                    package_id=target.id,
                    from_version=existing.version,
                    to_version=target.version,
                    impact_level=impact_level(existing.version, target.version),
                    changes=self.merge_engine.changed_paths(base, incoming),
                    affected_customizations=len(self.merge_engine.affected_customizations(base, incoming, custom)),
                    dependency_upgrades=[
                        DependencyUpgrade(
                            package_id=node.package_id,
                            from_version=node.installed_version,
                            to_version=node.resolved_version,
                        )
                        for pid, node in sorted(resolution.graph.nodes.items())
                        if pid != target.id and node.status == NodeStatus.NEEDS_INSTALL
                    ],
                    install_order=resolution.plan.install_order,
                )

                namespace_overrides = {target.id: existing.namespace} if existing.namespace else {}
                namespace_conflicts = self.detector.check_plan(
                    resolution.to_apply(), self.packages.list(), namespace_overrides
                )
                if namespace_conflicts:
                    return failed(
                        NamespaceConflictError(f"Namespace conflict upgrading to {target.key}"),
                        namespace_conflicts=namespace_conflicts,
                    )

                merge = self.merge_engine.merge(
                    base, incoming, custom,
                    strategy=request.merge_strategy,
                    resolutions=request.resolutions,
                    allow_destructive=request.allow_destructive,
                )
                if not merge.success:
                    return failed(
                        UpgradeFailedError(
                            f"{len(merge.conflicts)} customization conflict(s) upgrading {existing.manifest.key} "
                            f"to {target.version}; resubmit with resolutions or another merge strategy",
                            details={"paths": [c.path for c in merge.conflicts]},
                        ),
                        conflicts=merge.conflicts,
                    )

                if request.dry_run:
                    self._completed(transaction)
                    return PackageUpgradeResponse(
                        success=True,
                        phase=OperationPhase.PLANNING,
                        plan=plan,
                        message="Dry run: no changes committed",
                    )

                self.transaction_logger.advance(transaction, OperationPhase.APPLYING)
                backup = self.packages.backup()
                upgraded_dependencies: List[str] = []
                dependency_snapshots: List[str] = []
                try:
                    for item in resolution.to_apply():
                        if item.id != target.id:
                            key = await self._apply_dependency(item, transaction, dependency_snapshots)
                            upgraded_dependencies.append(key)
                    await self.applier.upgrade(existing.manifest, target, merge.merged)
                    self.packages.put(existing.model_copy(update={
                        "manifest": target,
                        "config": merge.merged,
                        "updated_at": utcnow(),
                        "transaction_id": transaction.id,
                    }))
                except Exception as e:
                    logger.error(f"Upgrade of {existing.manifest.key} failed while applying: {e}")
                    self.packages.restore(backup)
                    self._discard_snapshots(dependency_snapshots)
                    raise UpgradeFailedError(
                        f"Upgrade of {existing.manifest.key} to {target.version} failed and was rolled back: {e}"
                    ) from e

                transaction.dependencies_installed = upgraded_dependencies
                self._completed(transaction)
                logger.info(f"Package {request.package_id} upgraded from {existing.version} to {target.version}")
                return PackageUpgradeResponse(
                    success=True,
                    phase=OperationPhase.COMPLETED,
                    snapshot_id=snapshot.snapshot_id if snapshot else None,
                    plan=plan,
                    message=f"Upgraded {request.package_id} to {target.version}",
                )

        except PackageEngineError as e:
            return failed(e)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, request: PackageRollbackRequest) -> PackageRollbackResponse:
        """
        Restore a package to a snapshot.

        Restores exactly what was captured; dependencies are not re-resolved.
        Rolling back to the same snapshot twice yields the same state.
        """
        transaction = self.transaction_logger.create_transaction(
            TransactionOperation.ROLLBACK, request.package_id
        )

        try:
            async with self.lock_manager.acquire(self.space_id, request.timeout):
                snapshot = self.snapshots.get(request.snapshot_id)
                if snapshot is None or snapshot.package_id != request.package_id:
                    raise SnapshotNotFoundError(request.snapshot_id)

                transaction.version = snapshot.version
                transaction.snapshot_id = snapshot.snapshot_id
                current = self.packages.get(request.package_id)

                if request.rollback_customizations or current is None:
                    config = copy.deepcopy(snapshot.config)
                else:
                    config = copy.deepcopy(current.config)

                if current is not None and (
                    current.manifest == snapshot.manifest
                    and current.config == config
                    and current.status == snapshot.status
                    and current.enabled == snapshot.enabled
                    and current.namespace == snapshot.namespace
                ):
                    self._completed(transaction)
                    return PackageRollbackResponse(
                        success=True,
                        restored_version=snapshot.version,
                        message=f"{request.package_id} already matches snapshot {snapshot.snapshot_id}",
                    )

                self.transaction_logger.advance(transaction, OperationPhase.APPLYING)
                backup = self.packages.backup()
                try:
                    await self.applier.restore(snapshot)
                    self.packages.put(InstalledPackage(
                        manifest=snapshot.manifest,
                        status=snapshot.status,
                        enabled=snapshot.enabled,
                        namespace=snapshot.namespace,
                        config=config,
                        installed_at=current.installed_at if current else snapshot.created_at,
                        transaction_id=transaction.id,
                    ))
                except Exception as e:
                    logger.error(f"Rollback of {request.package_id} failed: {e}")
                    self.packages.restore(backup)
                    raise RollbackFailedError(
                        f"Rollback of {request.package_id} to snapshot {snapshot.snapshot_id} failed: {e}"
                    ) from e

                self._completed(transaction)
                logger.info(f"Package {request.package_id} rolled back to {snapshot.version}")
                return PackageRollbackResponse(
                    success=True,
                    restored_version=snapshot.version,
                    message=f"Restored {request.package_id} to {snapshot.version}",
                )

        except PackageEngineError as e:
            message = self._fail(transaction, e, rolled_back=transaction.phase == OperationPhase.APPLYING)
            return PackageRollbackResponse(success=False, error_code=e.code_value, error_message=message)

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------

    def blocking_dependents(self, record: InstalledPackage) -> List[str]:
        """Installed packages whose declared range is satisfied by the installed version"""
        blocking = []
        for dependent_id, range_expression in self.packages.find_dependents(record.package_id).items():
            try:
                if satisfies(record.version, range_expression):
                    blocking.append(dependent_id)
            except InvalidRangeError:
                blocking.append(dependent_id)
        return blocking

    async def uninstall(self, package_id: str) -> UninstallPackageResponse:
        """
        Remove a package.

        Blocked while another installed package depends on it; cascading
        removal is left to the caller.
        """
        transaction = self.transaction_logger.create_transaction(TransactionOperation.UNINSTALL, package_id)
        dependents: List[str] = []

        try:
            async with self.lock_manager.acquire(self.space_id):
                record = self.packages.get(package_id)
                if record is None:
                    raise PackageNotFoundError(package_id)
                transaction.version = record.version

                self.transaction_logger.advance(transaction, OperationPhase.RESOLVING)
                dependents = self.blocking_dependents(record)
                if dependents:
                    raise DependencyConflictError(
                        f"Cannot uninstall {package_id}: required by {', '.join(dependents)}",
                        details={"dependents": dependents},
                    )

                self.transaction_logger.advance(transaction, OperationPhase.SNAPSHOTTING)
                snapshot = self._take_snapshot(record, SnapshotReason.UNINSTALL)
                transaction.snapshot_id = snapshot.snapshot_id

                self.transaction_logger.advance(transaction, OperationPhase.APPLYING)
                backup = self.packages.backup()
                try:
                    await self.applier.uninstall(record)
                    self.packages.delete(package_id)
                except Exception as e:
                    logger.error(f"Uninstall of {package_id} failed: {e}")
                    self.packages.restore(backup)
                    raise PackageEngineError(f"Uninstall of {package_id} failed and was rolled back: {e}") from e

                self._completed(transaction)
                logger.info(f"Package {package_id} removed successfully")
                return UninstallPackageResponse(
                    package_id=package_id,
                    success=True,
                    snapshot_id=snapshot.snapshot_id,
                    message=f"Uninstalled {record.manifest.key}",
                )

        except PackageEngineError as e:
            message = self._fail(transaction, e, rolled_back=transaction.phase == OperationPhase.APPLYING)
            return UninstallPackageResponse(
                package_id=package_id,
                success=False,
                dependents=dependents,
                error_code=e.code_value,
                error_message=message,
            )

    # ------------------------------------------------------------------
    # Enable / disable
    # ------------------------------------------------------------------

    async def set_enabled(self, package_id: str, enabled: bool) -> InstalledPackage:
        """
        Enable or disable an installed package.

        Raises:
            PackageNotFoundError: If the package is not installed
        """
        operation = TransactionOperation.ENABLE if enabled else TransactionOperation.DISABLE
        transaction = self.transaction_logger.create_transaction(operation, package_id)

        try:
            async with self.lock_manager.acquire(self.space_id):
                record = self.packages.get(package_id)
                if record is None:
                    raise PackageNotFoundError(package_id)
                transaction.version = record.version

                self.transaction_logger.advance(transaction, OperationPhase.APPLYING)
                updated = record.model_copy(update={
                    "enabled": enabled,
                    "status": PackageStatus.INSTALLED if enabled else PackageStatus.DISABLED,
                    "updated_at": utcnow(),
                    "transaction_id": transaction.id,
                })
                self.packages.put(updated)
                self._completed(transaction)
                return updated
        except PackageEngineError as e:
            self._fail(transaction, e)
            raise
