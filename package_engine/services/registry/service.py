# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Service - Modular Composition

Composes focused modules into a unified package lifecycle service.
Each module does one thing well, following Unix philosophy.
"""

import uuid
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from package_engine.core.config import EngineConfig, get_config
from package_engine.core.errors import (
    ArtifactInvalidError,
    PackageEngineError,
    PackageNotFoundError,
    UploadFailedError,
    ValidationError,
    sanitize_error_for_user,
)
from package_engine.core.logging import get_service_logger
from package_engine.models.package_models import (
    ArtifactRef,
    DependencyResolutionResult,
    InstalledPackage,
    ListInstalledPackagesResponse,
    PackageInstallRequest,
    PackageInstallResponse,
    PackageRollbackRequest,
    PackageRollbackResponse,
    PackageStatus,
    PackageUpgradeRequest,
    PackageUpgradeResponse,
    ResolveDependenciesRequest,
    Snapshot,
    TransactionRecord,
    UninstallPackageResponse,
    UploadArtifactRequest,
    UploadArtifactResponse,
)

from .artifacts import (
    ArtifactFetcher,
    ArtifactStorage,
    ArtifactVerifier,
    GpgSignatureVerifier,
    LocalArtifactStorage,
    SignatureVerifier,
)
from .index import PackageIndex
from .locks import DEFAULT_SPACE, SpaceLockManager
from .merge import UpgradeMergeEngine
from .namespaces import NamespaceConflictDetector
from .operations import PackageApplier, PackageOperations
from .resolver import DependencyResolver
from .store import PackageStore, SnapshotStore
from .transactions import TransactionLogger

logger = get_service_logger("package_service")


class PackageService:
    """
    Unified package lifecycle service (modular composition).

    Composes:
    - PackageIndex: Available versions, refresh, publish
    - DependencyResolver: Dependency graph and install order
    - ArtifactVerifier: Size, checksum, signature
    - NamespaceConflictDetector: Namespace collisions
    - UpgradeMergeEngine: Three-way customization merge
    - PackageOperations: Install/upgrade/rollback/uninstall transactions
    - TransactionLogger: Log transactions
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        applier: Optional[PackageApplier] = None,
        signature_verifier: Optional[SignatureVerifier] = None,
        storage: Optional[ArtifactStorage] = None,
        lock_manager: Optional[SpaceLockManager] = None,
        space_id: str = DEFAULT_SPACE,
        base_dir: Path = Path("."),
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize Package Service.

        Args:
            config: Engine configuration (defaults to global config)
            applier: Host platform hook applying package state
            signature_verifier: Signature capability (defaults to GPG)
            storage: Destination for uploaded artifacts
            lock_manager: Shared per-space lock manager
            space_id: Tenant/space served by this instance
            base_dir: Base directory for relative file:// URLs
            transport: Optional httpx transport for registry and artifact fetches
        """
        self.config = config or get_config()
        self.space_id = space_id

        data_dir = Path(self.config.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        # Initialize modular components
        self.packages = PackageStore(self.config.packages_file)
        self.snapshots = SnapshotStore(self.config.snapshots_file)
        self.index = PackageIndex(self.config.package_index_file, base_dir=base_dir, transport=transport)
        self.transaction_logger = TransactionLogger(self.config.transactions_log)
        self.lock_manager = lock_manager or SpaceLockManager(timeout=self.config.lock_timeout)
        self.resolver = DependencyResolver(max_passes=self.config.max_resolution_passes)
        self.detector = NamespaceConflictDetector()
        self.merge_engine = UpgradeMergeEngine()
        self.storage = storage or LocalArtifactStorage(self.config.artifacts_dir, self.config.artifact_base_url)
        self.verifier = ArtifactVerifier(
            max_size=self.config.max_artifact_size,
            fetcher=ArtifactFetcher(
                timeout=self.config.artifact_fetch_timeout,
                base_dir=base_dir,
                transport=transport,
            ),
            signature_verifier=signature_verifier or GpgSignatureVerifier(self.config.gpg_keyring),
            require_signature=self.config.require_signature,
        )

        self.operations = PackageOperations(
            packages=self.packages,
            snapshots=self.snapshots,
            index=self.index,
            resolver=self.resolver,
            verifier=self.verifier,
            detector=self.detector,
            merge_engine=self.merge_engine,
            transaction_logger=self.transaction_logger,
            lock_manager=self.lock_manager,
            platform_version=self.config.platform_version,
            applier=applier,
            space_id=space_id,
        )

        logger.info(f"Package service ready for space {space_id} (platform v{self.config.platform_version})")

    # ========== Mutating Operations ==========

    async def install(self, request: PackageInstallRequest) -> PackageInstallResponse:
        return await self.operations.install(request)

    async def upgrade(self, request: PackageUpgradeRequest) -> PackageUpgradeResponse:
        return await self.operations.upgrade(request)

    async def rollback(self, request: PackageRollbackRequest) -> PackageRollbackResponse:
        return await self.operations.rollback(request)

    async def uninstall(self, package_id: str) -> UninstallPackageResponse:
        return await self.operations.uninstall(package_id)

    async def enable(self, package_id: str) -> InstalledPackage:
        return await self.operations.set_enabled(package_id, True)

    async def disable(self, package_id: str) -> InstalledPackage:
        return await self.operations.set_enabled(package_id, False)

    # ========== Resolution Preview ==========

    def resolve_dependencies(self, request: ResolveDependenciesRequest) -> DependencyResolutionResult:
        """
        Preview dependency resolution without taking the space lock.

        The result is advisory; install/upgrade re-resolve under the lock.
        """
        view = self.operations.registry_view(request.platform_version)
        self.operations.check_platform(request.manifest, view.platform_version)
        return self.resolver.resolve([request.manifest], view).to_response()

    # ========== Artifacts ==========

    async def upload_artifact(self, request: UploadArtifactRequest) -> UploadArtifactResponse:
        """
        Verify and store an uploaded artifact.

        The manifest, when given, is published to the package index.
        """
        submission_id = f"sub-{uuid.uuid4().hex[:12]}"
        metadata = request.artifact

        try:
            if not request.sha256:
                raise ArtifactInvalidError("sha256 is required for uploads")
            if request.manifest is not None and (
                request.manifest.id != metadata.package_id or request.manifest.version != metadata.version
            ):
                raise ValidationError(
                    f"Manifest {request.manifest.key} does not match artifact "
                    f"{metadata.package_id}@{metadata.version}",
                    field="manifest"
                )

            digest = self.verifier.verify_bytes(
                request.data, request.sha256, request.signature, metadata.package_id
            )

            try:
                url = await self.storage.store(metadata, request.data)
            except OSError as e:
                raise UploadFailedError(f"Failed to store artifact: {e}") from e

            if request.manifest is not None:
                self.index.publish(request.manifest)

        except PackageEngineError as e:
            logger.warning(f"Upload {submission_id} rejected: {e.code_value}")
            return UploadArtifactResponse(
                success=False,
                submission_id=submission_id,
                error_code=e.code_value,
                error_message=sanitize_error_for_user(e, include_type=False),
            )

        logger.info(f"Upload {submission_id} accepted: {metadata.package_id}@{metadata.version}")
        return UploadArtifactResponse(
            success=True,
            artifact_ref=ArtifactRef(url=url, sha256=digest, size=len(request.data)),
            submission_id=submission_id,
            message=f"Accepted {metadata.package_id}@{metadata.version}",
        )

    # ========== Queries ==========

    def list_packages(
        self,
        status: Optional[PackageStatus] = None,
        enabled: Optional[bool] = None,
        cursor: Optional[str] = None,
        limit: int = 50
    ) -> ListInstalledPackagesResponse:
        """
        List installed packages ordered by id.

        Args:
            status: Optional status filter
            enabled: Optional enabled filter
            cursor: Package id after which to continue
            limit: Page size
        """
        if limit < 1:
            raise ValidationError("limit must be positive", field="limit")

        records = self.packages.list()
        if status is not None:
            records = [r for r in records if r.status == status]
        if enabled is not None:
            records = [r for r in records if r.enabled == enabled]

        total = len(records)
        if cursor:
            records = [r for r in records if r.package_id > cursor]

        page = records[:limit]
        has_more = len(records) > limit
        return ListInstalledPackagesResponse(
            packages=page,
            total=total,
            next_cursor=page[-1].package_id if has_more else None,
            has_more=has_more,
        )

    def get_package(self, package_id: str) -> InstalledPackage:
        record = self.packages.get(package_id)
        if record is None:
            raise PackageNotFoundError(package_id)
        return record

    def list_snapshots(self, package_id: str) -> List[Snapshot]:
        return self.snapshots.list_for_package(package_id)

    def list_transactions(self, limit: int = 50, package_id: Optional[str] = None) -> List[TransactionRecord]:
        return self.transaction_logger.list_transactions(limit=limit, package_id=package_id)

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        return self.transaction_logger.get_transaction(transaction_id)

    # ========== Index ==========

    async def refresh_index(self) -> Dict[str, int]:
        """Refresh available versions from the configured registries"""
        return await self.index.refresh(self.config.registries, timeout=self.config.registry_timeout)
