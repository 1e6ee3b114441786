# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Index

Single responsibility: Hold the available manifests per package id,
refreshed from remote (http/https) and local (file://) registries and
extended by accepted uploads.
"""

import json
import logging
import os
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError as PydanticValidationError

from package_engine.core.config import RegistrySource
from package_engine.core.errors import OperationTimeoutError, PackageEngineError
from package_engine.models.package_models import PackageManifest

from .versioning import is_valid_version, parse_version

logger = logging.getLogger(__name__)

UPLOADS_REGISTRY = "uploads"


class PackageIndex:
    """Available package versions from all registries"""

    def __init__(
        self,
        index_file: Path,
        base_dir: Path = Path("."),
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize package index.

        Args:
            index_file: Path to package-index.json
            base_dir: Base directory for resolving relative file:// paths
            transport: Optional httpx transport (tests, proxies)
        """
        self.index_file = index_file
        self.base_dir = base_dir
        self.transport = transport
        self.index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        if not self.index_file.exists():
            return {"last_updated": None, "registries": {}}

        try:
            return json.loads(self.index_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load package index: {e}")
            return {"last_updated": None, "registries": {}}

    def _save_index(self):
        self.index_file.parent.mkdir(parents=True, exist_ok=True)
        temp = self.index_file.with_suffix(".tmp")
        temp.write_text(json.dumps(self.index, indent=2))
        os.replace(temp, self.index_file)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def manifests(self, package_id: str) -> List[PackageManifest]:
        """All known manifests of a package, highest version first, deduplicated"""
        found: Dict[str, PackageManifest] = {}
        for reg_name in sorted(self.index.get("registries", {})):
            for pkg in self.index["registries"][reg_name].get("packages", []):
                if pkg.get("id") != package_id or not is_valid_version(str(pkg.get("version", ""))):
                    continue
                try:
                    manifest = PackageManifest.model_validate(pkg)
                except PydanticValidationError as e:
                    logger.warning(f"Skipping invalid manifest {package_id}@{pkg.get('version')} in {reg_name}: {e}")
                    continue
                found.setdefault(manifest.version, manifest)
        return sorted(found.values(), key=lambda m: parse_version(m.version), reverse=True)

    def versions(self, package_id: str) -> List[str]:
        return [m.version for m in self.manifests(package_id)]

    def get_manifest(self, package_id: str, version: str) -> Optional[PackageManifest]:
        wanted = parse_version(version)
        for manifest in self.manifests(package_id):
            if parse_version(manifest.version) == wanted:
                return manifest
        return None

    def latest(self, package_id: str, include_prerelease: bool = False) -> Optional[PackageManifest]:
        for manifest in self.manifests(package_id):
            if include_prerelease or not parse_version(manifest.version).is_prerelease:
                return manifest
        return None

    def available(self) -> Dict[str, List[PackageManifest]]:
        """Mapping package id -> manifests, as consumed by RegistryView"""
        package_ids = set()
        for reg_data in self.index.get("registries", {}).values():
            for pkg in reg_data.get("packages", []):
                if pkg.get("id"):
                    package_ids.add(pkg["id"])
        return {pid: self.manifests(pid) for pid in sorted(package_ids)}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def publish(self, manifest: PackageManifest, registry: str = UPLOADS_REGISTRY):
        """Add a manifest (e.g. from an accepted upload); replaces the same version"""
        reg_data = self.index.setdefault("registries", {}).setdefault(
            registry, {"url": f"local://{registry}", "packages": []}
        )
        reg_data["packages"] = [
            pkg for pkg in reg_data.get("packages", [])
            if not (pkg.get("id") == manifest.id and pkg.get("version") == manifest.version)
        ]
        reg_data["packages"].append(manifest.to_dict())
        reg_data["last_updated"] = datetime.now(UTC).isoformat()
        self._save_index()
        logger.info(f"Published {manifest.key} to {registry}")

    async def refresh(self, registries: Sequence[RegistrySource], timeout: float = 10.0) -> Dict[str, int]:
        """
        Refresh package index from registries.

        Registries that fail are skipped and keep their previous entries.
        Uploaded manifests are always kept.

        Returns:
            Registry name -> number of manifests fetched
        """
        logger.info("Refreshing package index...")
        previous = self.index.get("registries", {})
        new_index = {
            "last_updated": datetime.now(UTC).isoformat(),
            "registries": {},
        }
        fetched: Dict[str, int] = {}

        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            for registry in registries:
                try:
                    logger.info(f"Fetching packages from {registry.name}...")
                    packages = await self._fetch_from_registry(client, registry)
                except (httpx.HTTPError, PackageEngineError, ValueError) as e:
                    logger.error(f"Failed to fetch from {registry.name}: {e}")
                    if registry.name in previous:
                        new_index["registries"][registry.name] = previous[registry.name]
                    continue

                new_index["registries"][registry.name] = {
                    "url": registry.url,
                    "packages": [pkg.to_dict() for pkg in packages],
                    "last_updated": datetime.now(UTC).isoformat()
                }
                fetched[registry.name] = len(packages)
                logger.info(f"Fetched {len(packages)} packages from {registry.name}")

        if UPLOADS_REGISTRY in previous and UPLOADS_REGISTRY not in new_index["registries"]:
            new_index["registries"][UPLOADS_REGISTRY] = previous[UPLOADS_REGISTRY]

        self.index = new_index
        self._save_index()
        return fetched

    async def _fetch_from_registry(
        self,
        client: httpx.AsyncClient,
        registry: RegistrySource
    ) -> List[PackageManifest]:
        """
        Fetch manifest list from a registry.

        Supports both HTTP and local file:// repositories (YUM-style).
        """
        if registry.url.startswith("file://"):
            return self._scan_local_directory(registry)

        try:
            response = await client.get(f"{registry.url.rstrip('/')}/packages")
        except httpx.TimeoutException:
            raise OperationTimeoutError(f"Registry lookup ({registry.name})", client.timeout.read or 0)
        response.raise_for_status()
        data = response.json()

        packages = []
        for pkg in data.get("packages", []):
            try:
                packages.append(PackageManifest.model_validate(pkg))
            except PydanticValidationError as e:
                logger.warning(f"Skipping invalid manifest from {registry.name}: {e}")
        return packages

    def _scan_local_directory(self, registry: RegistrySource) -> List[PackageManifest]:
        """
        Scan local directory for packages (like createrepo for YUM).

        Reads manifest.json from each subdirectory, and from each version
        directory below it (<package>/<version>/manifest.json).
        """
        local_path = registry.url.replace("file://", "", 1)
        if local_path.startswith("./") or local_path.startswith("../"):
            directory = (self.base_dir / local_path).resolve()
        else:
            directory = Path(local_path)

        if not directory.is_dir():
            logger.warning(f"Local registry directory does not exist: {directory}")
            return []

        logger.info(f"Scanning local directory: {directory}")
        packages = []
        for manifest_file in sorted(directory.glob("*/manifest.json")) + sorted(directory.glob("*/*/manifest.json")):
            try:
                packages.append(PackageManifest.model_validate(json.loads(manifest_file.read_text())))
            except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
                logger.warning(f"Failed to load {manifest_file}: {e}")

        logger.info(f"Scanned {len(packages)} packages from {directory}")
        return packages
