# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package and Snapshot Stores

Single responsibility: Persist installed packages and snapshots as plain
JSON files (get/put/delete by id, scan by dependency reference).
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from package_engine.models.package_models import InstalledPackage, Snapshot

logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = "1.0"


class JsonRecordStore:
    """Key-value records kept in one JSON document"""

    def __init__(self, path: Path, collection: str):
        """
        Args:
            path: JSON file path
            collection: Top-level key holding the records
        """
        self.path = path
        self.collection = collection

    def load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load {self.path.name}: {e}")
            return {}
        return data.get(self.collection, {})

    def save(self, records: Dict[str, Dict[str, Any]]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"version": STORE_FORMAT_VERSION, self.collection: records}
        temp = self.path.with_suffix(self.path.suffix + ".tmp")
        temp.write_text(json.dumps(data, indent=2))
        os.replace(temp, self.path)


class PackageStore:
    """Installed packages keyed by package id"""

    def __init__(self, packages_file: Path):
        self._store = JsonRecordStore(packages_file, "packages")
        self.packages: Dict[str, InstalledPackage] = self._load()

    def _load(self) -> Dict[str, InstalledPackage]:
        records = {}
        for package_id, raw in self._store.load().items():
            try:
                records[package_id] = InstalledPackage.model_validate(raw)
            except PydanticValidationError as e:
                logger.error(f"Skipping corrupt package record {package_id}: {e}")
        return records

    def _save(self):
        self._store.save({pid: rec.to_dict() for pid, rec in sorted(self.packages.items())})

    def get(self, package_id: str) -> Optional[InstalledPackage]:
        return self.packages.get(package_id)

    def put(self, record: InstalledPackage):
        self.packages[record.package_id] = record
        self._save()

    def delete(self, package_id: str) -> bool:
        if self.packages.pop(package_id, None) is None:
            return False
        self._save()
        return True

    def list(self) -> List[InstalledPackage]:
        return [self.packages[pid] for pid in sorted(self.packages)]

    def as_mapping(self) -> Dict[str, InstalledPackage]:
        return dict(self.packages)

    def find_dependents(self, package_id: str) -> Dict[str, str]:
        """Present packages declaring a dependency on package_id (dependent -> range)"""
        dependents = {}
        for pid in sorted(self.packages):
            record = self.packages[pid]
            if pid == package_id or not record.is_present:
                continue
            for dep in record.manifest.dependencies:
                if dep.package_id == package_id:
                    dependents[pid] = dep.version_range
        return dependents

    def backup(self) -> Dict[str, InstalledPackage]:
        """Copy of current state for restore on failure"""
        return {pid: rec.model_copy(deep=True) for pid, rec in self.packages.items()}

    def restore(self, backup: Dict[str, InstalledPackage]):
        logger.info("Restoring installed packages from backup...")
        self.packages = copy.copy(backup)
        self._save()


class SnapshotStore:
    """Snapshots keyed by snapshot id; retained until removed explicitly"""

    def __init__(self, snapshots_file: Path):
        self._store = JsonRecordStore(snapshots_file, "snapshots")
        self.snapshots: Dict[str, Snapshot] = {}
        for snapshot_id, raw in self._store.load().items():
            try:
                self.snapshots[snapshot_id] = Snapshot.model_validate(raw)
            except PydanticValidationError as e:
                logger.error(f"Skipping corrupt snapshot {snapshot_id}: {e}")

    def _save(self):
        self._store.save({sid: snap.to_dict() for sid, snap in sorted(self.snapshots.items())})

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        return self.snapshots.get(snapshot_id)

    def put(self, snapshot: Snapshot):
        self.snapshots[snapshot.snapshot_id] = snapshot
        self._save()

    def delete(self, snapshot_id: str) -> bool:
        if self.snapshots.pop(snapshot_id, None) is None:
            return False
        self._save()
        return True

    def list_for_package(self, package_id: str) -> List[Snapshot]:
        """Snapshots of a package, newest first"""
        found = [s for s in self.snapshots.values() if s.package_id == package_id]
        return sorted(found, key=lambda s: (s.created_at, s.snapshot_id), reverse=True)
