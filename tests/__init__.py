# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Suite for the Package Lifecycle Engine

Structure:
- unit/: Unit tests for the engine modules and the composed service
"""
