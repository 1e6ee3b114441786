# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Engine Configuration - Single source of truth.
YAML is king. Env vars ONLY for file locations and log level.

- ALL configuration in plain text (YAML)
- NO hidden state - everything inspectable via `cat`, `grep`
"""

import logging
import os
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION DATACLASS
# =============================================================================

@dataclass(frozen=True)
class RegistrySource:
    """Remote (http/https) or local (file://) package registry"""
    name: str
    url: str
    priority: int = 50  # Lower number = higher priority


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable engine configuration.
    All values from YAML. No hidden state.
    """

    # -- Platform --
    platform_version: str = "3.0.0"

    # -- Paths --
    data_dir: str = "./data"
    gpg_keyring: Optional[str] = None

    # -- Artifacts --
    max_artifact_size: int = 50 * 1024 * 1024
    require_signature: bool = False
    artifact_base_url: Optional[str] = None

    # -- Timeouts (seconds) --
    artifact_fetch_timeout: float = 30.0
    registry_timeout: float = 10.0
    lock_timeout: float = 30.0

    # -- Resolver --
    max_resolution_passes: int = 8

    # -- Registries --
    registries: List[RegistrySource] = field(default_factory=list)

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "json"

    # -- Derived paths --
    @property
    def packages_file(self) -> Path:
        return Path(self.data_dir) / "installed-packages.json"

    @property
    def snapshots_file(self) -> Path:
        return Path(self.data_dir) / "snapshots.json"

    @property
    def package_index_file(self) -> Path:
        return Path(self.data_dir) / "package-index.json"

    @property
    def transactions_log(self) -> Path:
        return Path(self.data_dir) / "transactions.jsonl"

    @property
    def artifacts_dir(self) -> Path:
        return Path(self.data_dir) / "artifacts"


# =============================================================================
# LOADER
# =============================================================================

def _get(d: Dict[str, Any], *keys, default=None):
    """Safely navigate nested dicts"""
    for k in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(k, {})
    return d if d != {} else default


def load_config(path: str = "configs/engine.yaml") -> EngineConfig:
    """
    Load configuration from YAML.
    Returns defaults if file doesn't exist.
    """
    if not Path(path).exists():
        logger.warning(f"Config not found at {path}, using defaults")
        return EngineConfig(log_level=os.getenv("LOG_LEVEL", "INFO"))

    with open(path) as f:
        y = yaml.safe_load(f) or {}

    registries = [
        RegistrySource(
            name=entry["name"],
            url=entry["url"],
            priority=entry.get("priority", 50)
        )
        for entry in (_get(y, "registries") or [])
    ]

    return EngineConfig(
        # Platform
        platform_version=str(_get(y, "platform", "version") or "3.0.0"),

        # Paths
        data_dir=_get(y, "paths", "data_dir") or "./data",
        gpg_keyring=_get(y, "paths", "gpg_keyring"),

        # Artifacts
        max_artifact_size=_get(y, "artifacts", "max_size_bytes") or 50 * 1024 * 1024,
        require_signature=bool(_get(y, "artifacts", "require_signature", default=False)),
        artifact_base_url=_get(y, "artifacts", "base_url"),

        # Timeouts
        artifact_fetch_timeout=_get(y, "timeouts", "artifact_fetch") or 30.0,
        registry_timeout=_get(y, "timeouts", "registry") or 10.0,
        lock_timeout=_get(y, "timeouts", "lock") or 30.0,

        # Resolver
        max_resolution_passes=_get(y, "resolver", "max_passes") or 8,

        # Registries
        registries=sorted(registries, key=lambda r: (r.priority, r.name)),

        # Logging
        log_level=os.getenv("LOG_LEVEL", _get(y, "logging", "level") or "INFO"),
        log_format=_get(y, "logging", "format") or "json",
    )


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        config_path = os.getenv("PACKAGE_ENGINE_CONFIG_PATH", "configs/engine.yaml")
        _config = load_config(config_path)
    return _config


def reload_config() -> EngineConfig:
    """Force reload configuration."""
    global _config
    _config = None
    return get_config()
