# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Fixtures and Utilities

Provides pytest fixtures for manifests, installed packages, an isolated
engine configuration and a fully composed PackageService.
"""

import hashlib
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from package_engine.core.config import EngineConfig
from package_engine.models.package_models import (
    InstalledPackage,
    PackageManifest,
    PackageStatus,
)
from package_engine.services.registry.service import PackageService


def build_manifest(
    package_id: str,
    version: str = "1.0.0",
    dependencies: Optional[Dict[str, str]] = None,
    namespace: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    platform_range: Optional[str] = None,
) -> PackageManifest:
    """Manifest with a readable default name"""
    return PackageManifest(
        id=package_id,
        name=package_id.split(".")[-1].upper(),
        version=version,
        dependencies=dependencies or {},
        namespace=namespace,
        config=config or {},
        platform_range=platform_range,
    )


def build_installed(
    manifest: PackageManifest,
    status: PackageStatus = PackageStatus.INSTALLED,
    config: Optional[Dict[str, Any]] = None,
    namespace: Optional[str] = None,
) -> InstalledPackage:
    return InstalledPackage(
        manifest=manifest,
        status=status,
        enabled=status == PackageStatus.INSTALLED,
        namespace=namespace,
        config=config if config is not None else dict(manifest.config),
    )


def sha256_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ============================================================================
# Factory Fixtures
# ============================================================================

@pytest.fixture
def manifest():
    """Factory for PackageManifest"""
    return build_manifest


@pytest.fixture
def installed():
    """Factory for InstalledPackage"""
    return build_installed


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """Engine configuration isolated in a temporary data directory"""
    return EngineConfig(
        platform_version="3.0.0",
        data_dir=str(tmp_path / "data"),
        max_artifact_size=1024 * 1024,
        artifact_fetch_timeout=2.0,
        lock_timeout=2.0,
        log_level="DEBUG",
    )


@pytest.fixture
def service(engine_config: EngineConfig) -> PackageService:
    """PackageService composed over the temporary configuration"""
    return PackageService(config=engine_config)
