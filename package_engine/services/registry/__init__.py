# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Registry Module - Package Lifecycle Engine

Modular package management system following Unix philosophy:
- Each module does one thing well
- Modules compose to form complete system
- Text-based state throughout (JSON stores, JSONL transaction log)
"""

from .versioning import satisfies, resolve_highest, parse_range, parse_version
from .artifacts import ArtifactVerifier, GpgSignatureVerifier, SignatureVerifier
from .index import PackageIndex
from .resolver import DependencyResolver, RegistryView
from .namespaces import NamespaceConflictDetector
from .merge import UpgradeMergeEngine
from .transactions import TransactionLogger
from .operations import PackageApplier, PackageOperations
from .service import PackageService

__all__ = [
    "satisfies",
    "resolve_highest",
    "parse_range",
    "parse_version",
    "ArtifactVerifier",
    "GpgSignatureVerifier",
    "SignatureVerifier",
    "PackageIndex",
    "DependencyResolver",
    "RegistryView",
    "NamespaceConflictDetector",
    "UpgradeMergeEngine",
    "TransactionLogger",
    "PackageApplier",
    "PackageOperations",
    "PackageService",
]
