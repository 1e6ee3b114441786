# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Namespace Conflict Detector

Single responsibility: Detect namespace (object naming prefix) collisions
between a candidate package and other installed packages.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from package_engine.models.package_models import (
    InstalledPackage,
    NamespaceConflict,
    PackageManifest,
)

logger = logging.getLogger(__name__)


class NamespaceConflictDetector:
    """Reports namespace collisions; never blocks on its own"""

    def check(
        self,
        candidate: PackageManifest,
        installed: Iterable[InstalledPackage],
        namespace: Optional[str] = None
    ) -> Optional[NamespaceConflict]:
        """
        Check candidate's namespace against installed packages.

        Args:
            candidate: Manifest being installed or upgraded to
            installed: Installed packages
            namespace: Namespace override (rename), defaults to the manifest's

        Returns:
            NamespaceConflict with a suggested alternative, or None
        """
        requested = namespace or candidate.namespace
        if not requested:
            return None

        installed = list(installed)
        taken = self._taken(installed, exclude=candidate.id)
        holder = taken.get(requested.lower())
        if holder is None:
            return None

        suggestion = self.suggest(requested, candidate, taken)
        logger.info(
            f"Namespace '{requested}' requested by {candidate.id} is held by {holder.package_id}; "
            f"suggesting '{suggestion}'"
        )
        return NamespaceConflict(
            requested_namespace=requested,
            conflicting_package_id=holder.package_id,
            conflicting_package_name=holder.manifest.name,
            suggestion=suggestion,
        )

    def check_plan(
        self,
        manifests: Sequence[PackageManifest],
        installed: Iterable[InstalledPackage],
        overrides: Optional[dict] = None
    ) -> List[NamespaceConflict]:
        """
        Check every manifest of an install plan.

        Manifests earlier in the plan claim their namespaces before later
        ones are checked, so two new packages cannot collide silently.
        """
        overrides = overrides or {}
        pending = [p for p in installed if p.package_id not in {m.id for m in manifests}]
        conflicts = []
        for manifest in manifests:
            conflict = self.check(manifest, pending, overrides.get(manifest.id))
            if conflict is not None:
                conflicts.append(conflict)
                continue
            pending.append(InstalledPackage(manifest=manifest, namespace=overrides.get(manifest.id)))
        return conflicts

    def suggest(self, requested: str, candidate: PackageManifest, taken: dict) -> str:
        """Deterministic alternative: append the vendor short id, then a counter"""
        base = f"{requested}_{candidate.vendor}"
        suggestion = base
        counter = 2
        while suggestion.lower() in taken:
            suggestion = f"{base}{counter}"
            counter += 1
        return suggestion

    @staticmethod
    def _taken(installed: Iterable[InstalledPackage], exclude: str) -> dict:
        taken = {}
        for record in sorted(installed, key=lambda r: r.package_id):
            if record.package_id == exclude or not record.is_present:
                continue
            namespace = record.effective_namespace
            if namespace:
                taken.setdefault(namespace.lower(), record)
        return taken
