# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Lifecycle Engine

Dependency resolution, artifact verification, upgrade merging and
snapshot/rollback for multi-tenant platform packages.
"""

__version__ = "1.0.0"
