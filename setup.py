# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Setup configuration for the Package Lifecycle Engine
"""

from setuptools import setup, find_packages

setup(
    name="package-lifecycle-engine",
    version="1.0.0",
    description="Dependency resolution, verified installs, upgrade merging and rollback for platform packages",
    author="Jason Cafarelli",
    packages=find_packages(include=["package_engine", "package_engine.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0.0",
        "python-gnupg>=0.5.0",
        "httpx>=0.24.0",
        "PyYAML>=6.0",
        "aiofiles>=23.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ]
    },
)
