# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Upgrade Merge Engine

Single responsibility: Reconcile an incoming package config tree with the
tenant's customized tree, using the originally installed tree as base.

Merging is structural: objects are walked key by key so reordering
unrelated keys never produces a conflict. Lists and scalars are leaves.
Paths use '/' separators, e.g. objects/account/fields/status.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from package_engine.core.errors import ValidationError
from package_engine.models.package_models import MergeConflict, MergeResult, MergeStrategy

logger = logging.getLogger(__name__)


class _Missing:
    """Marker for a key absent from one side of the merge"""

    def __repr__(self) -> str:
        return "<missing>"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


MISSING = _Missing()

PATH_SEPARATOR = "/"


def _join(path: str, key: str) -> str:
    return f"{path}{PATH_SEPARATOR}{key}" if path else str(key)


def _plain(value: Any) -> Any:
    return None if value is MISSING else value


def _same(a: Any, b: Any) -> bool:
    """JSON equality: true, 1 and 1.0 are distinct values"""
    if a is MISSING or b is MISSING:
        return a is b
    if isinstance(a, (bool, int, float)) or isinstance(b, (bool, int, float)):
        return type(a) is type(b) and a == b
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(_same(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_same(a[k], b[k]) for k in a)
    return a == b


class UpgradeMergeEngine:
    """Three-way merge of base, incoming and custom config trees"""

    def merge(
        self,
        base: Dict[str, Any],
        incoming: Dict[str, Any],
        custom: Dict[str, Any],
        strategy: MergeStrategy = MergeStrategy.THREE_WAY_MERGE,
        resolutions: Optional[Dict[str, Any]] = None,
        allow_destructive: bool = False
    ) -> MergeResult:
        """
        Merge config trees.

        Args:
            base: Tree at the installed version, as originally installed
            incoming: Tree at the target version
            custom: Current tree including tenant customizations
            strategy: three-way-merge, keep-custom or overwrite
            resolutions: Explicit values for conflicting paths (path -> value)
            allow_destructive: Must be True for the overwrite strategy

        Returns:
            MergeResult; success is False when unresolved conflicts remain

        Raises:
            ValidationError: If overwrite is requested without allow_destructive
        """
        strategy = MergeStrategy(strategy)
        resolutions = resolutions or {}

        if strategy == MergeStrategy.OVERWRITE:
            if not allow_destructive:
                raise ValidationError(
                    "The overwrite strategy discards tenant customizations; "
                    "set allow_destructive to confirm",
                    field="merge_strategy"
                )
            discarded = self.customized_paths(base, custom)
            if discarded:
                logger.warning(f"Overwrite discards {len(discarded)} customization(s): {', '.join(discarded)}")
            return MergeResult(success=True, merged=copy.deepcopy(incoming), divergences=discarded)

        conflicts: List[MergeConflict] = []
        divergences: List[str] = []
        merged = self._merge_value("", base, incoming, custom, strategy, resolutions, conflicts, divergences)
        if merged is MISSING:
            merged = {}

        for path in divergences:
            logger.info(f"Keeping tenant customization at {path}; incoming value differs")

        return MergeResult(
            success=not conflicts,
            merged=merged,
            conflicts=conflicts,
            divergences=divergences,
        )

    def _merge_value(
        self,
        path: str,
        base: Any,
        incoming: Any,
        custom: Any,
        strategy: MergeStrategy,
        resolutions: Dict[str, Any],
        conflicts: List[MergeConflict],
        divergences: List[str]
    ) -> Any:
        present = [v for v in (base, incoming, custom) if v is not MISSING]
        if present and all(isinstance(v, dict) for v in present):
            return self._merge_dict(path, base, incoming, custom, strategy, resolutions, conflicts, divergences)

        if _same(custom, base):
            return copy.deepcopy(incoming)
        if _same(incoming, base) or _same(custom, incoming):
            return copy.deepcopy(custom)

        if path in resolutions:
            return copy.deepcopy(resolutions[path])
        if strategy == MergeStrategy.KEEP_CUSTOM:
            divergences.append(path)
            return copy.deepcopy(custom)

        conflicts.append(MergeConflict(
            path=path,
            base_value=_plain(base),
            incoming_value=_plain(incoming),
            custom_value=_plain(custom),
        ))
        # Left at the tenant value; nothing is committed while conflicts remain
        return copy.deepcopy(custom)

    def _merge_dict(self, path, base, incoming, custom, strategy, resolutions, conflicts, divergences):
        base = {} if base is MISSING else base
        incoming_map = {} if incoming is MISSING else incoming
        custom_map = {} if custom is MISSING else custom

        keys = list(incoming_map)
        keys += [k for k in custom_map if k not in incoming_map]
        keys += [k for k in base if k not in incoming_map and k not in custom_map]

        result = {}
        for key in keys:
            value = self._merge_value(
                _join(path, key),
                base.get(key, MISSING),
                incoming_map.get(key, MISSING),
                custom_map.get(key, MISSING),
                strategy, resolutions, conflicts, divergences
            )
            if value is not MISSING:
                result[key] = value

        # Whole subtree removed on one side and untouched on the other
        if not result and (incoming is MISSING or custom is MISSING):
            if incoming is MISSING and _same(custom, base):
                return MISSING
            if custom is MISSING and _same(incoming, base):
                return MISSING
        return result

    # ------------------------------------------------------------------
    # Diff helpers used by upgrade planning
    # ------------------------------------------------------------------

    def changed_paths(self, before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
        """Leaf paths whose value differs between two trees"""
        return [path for path, _, _ in self._diff("", before, after)]

    def customized_paths(self, base: Dict[str, Any], custom: Dict[str, Any]) -> List[str]:
        """Leaf paths where the tenant diverged from the installed tree"""
        return self.changed_paths(base, custom)

    def affected_customizations(
        self,
        base: Dict[str, Any],
        incoming: Dict[str, Any],
        custom: Dict[str, Any]
    ) -> List[str]:
        """Customized paths that the incoming version also changes"""
        changed = set(self.changed_paths(base, incoming))
        return [p for p in self.customized_paths(base, custom) if p in changed]

    def _diff(self, path: str, before: Any, after: Any) -> List[Tuple[str, Any, Any]]:
        if isinstance(before, dict) and isinstance(after, dict):
            changes = []
            for key in sorted(set(before) | set(after), key=str):
                changes.extend(self._diff(_join(path, key), before.get(key, MISSING), after.get(key, MISSING)))
            return changes
        if isinstance(before, dict) and after is MISSING:
            return self._diff(path, before, {}) or [(path, before, after)]
        if before is MISSING and isinstance(after, dict):
            return self._diff(path, {}, after) or [(path, before, after)]
        if _same(before, after):
            return []
        return [(path, before, after)]


def deep_merge(defaults: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Recursively overlay overrides on defaults (used for install settings)"""
    result = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result
