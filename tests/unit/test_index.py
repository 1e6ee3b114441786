# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for PackageIndex

Tests registry refresh (http and file://), publishing and version queries.
"""

import json

import httpx
import pytest

from package_engine.core.config import RegistrySource
from package_engine.services.registry.index import UPLOADS_REGISTRY, PackageIndex


def manifest_dict(package_id, version, **extra):
    data = {"id": package_id, "name": package_id.split(".")[-1].upper(), "version": version}
    data.update(extra)
    return data


def registry_transport(packages, status_code=200):
    def handler(request):
        assert request.url.path == "/packages"
        return httpx.Response(status_code, json={"packages": packages})
    return httpx.MockTransport(handler)


@pytest.fixture
def index_file(tmp_path):
    return tmp_path / "package-index.json"


class TestRefresh:
    """Test refreshing from registries"""

    @pytest.mark.asyncio
    async def test_http_registry(self, index_file):
        transport = registry_transport([
            manifest_dict("com.acme.crm", "1.0.0"),
            manifest_dict("com.acme.crm", "1.2.0", dependencies={"com.acme.core": "^1.0.0"}),
            {"id": "not valid", "name": "x", "version": "1.0.0"},
        ])
        index = PackageIndex(index_file, transport=transport)

        fetched = await index.refresh([RegistrySource(name="official", url="https://registry.example.com")])

        assert fetched == {"official": 2}
        assert index.versions("com.acme.crm") == ["1.2.0", "1.0.0"]
        assert index.get_manifest("com.acme.crm", "1.2.0").dependencies[0].package_id == "com.acme.core"
        assert json.loads(index_file.read_text())["registries"]["official"]["url"] == "https://registry.example.com"

    @pytest.mark.asyncio
    async def test_local_registry_scan(self, index_file, tmp_path):
        repo = tmp_path / "packages"
        (repo / "crm").mkdir(parents=True)
        (repo / "crm" / "manifest.json").write_text(json.dumps(manifest_dict("com.acme.crm", "1.0.0")))
        (repo / "core" / "2.0.0").mkdir(parents=True)
        (repo / "core" / "2.0.0" / "manifest.json").write_text(json.dumps(manifest_dict("com.acme.core", "2.0.0")))
        (repo / "broken").mkdir()
        (repo / "broken" / "manifest.json").write_text("{")

        index = PackageIndex(index_file, base_dir=tmp_path)
        fetched = await index.refresh([RegistrySource(name="local", url="file://./packages")])

        assert fetched == {"local": 2}
        assert sorted(index.available()) == ["com.acme.core", "com.acme.crm"]

    @pytest.mark.asyncio
    async def test_failed_registry_keeps_previous_entries(self, index_file):
        registries = [RegistrySource(name="official", url="https://registry.example.com")]
        index = PackageIndex(index_file, transport=registry_transport([manifest_dict("com.acme.crm", "1.0.0")]))
        await index.refresh(registries)

        index.transport = registry_transport([], status_code=503)
        fetched = await index.refresh(registries)

        assert fetched == {}
        assert index.versions("com.acme.crm") == ["1.0.0"]

    @pytest.mark.asyncio
    async def test_uploads_survive_refresh(self, index_file, manifest):
        index = PackageIndex(index_file, transport=registry_transport([]))
        index.publish(manifest("com.acme.crm", "3.0.0"))

        await index.refresh([RegistrySource(name="official", url="https://registry.example.com")])

        assert UPLOADS_REGISTRY in index.index["registries"]
        assert index.versions("com.acme.crm") == ["3.0.0"]


class TestQueries:
    """Test version lookups"""

    @pytest.fixture
    def index(self, index_file, manifest):
        index = PackageIndex(index_file)
        for version in ["1.0.0", "1.5.0", "2.0.0-beta.1"]:
            index.publish(manifest("com.acme.crm", version))
        index.publish(manifest("com.acme.crm", "1.5.0"), registry="mirror")
        return index

    def test_versions_deduplicated_highest_first(self, index):
        assert index.versions("com.acme.crm") == ["2.0.0-beta.1", "1.5.0", "1.0.0"]

    def test_latest_skips_prerelease(self, index):
        assert index.latest("com.acme.crm").version == "1.5.0"
        assert index.latest("com.acme.crm", include_prerelease=True).version == "2.0.0-beta.1"

    def test_get_manifest_ignores_build_metadata(self, index):
        assert index.get_manifest("com.acme.crm", "1.5.0+build.7").version == "1.5.0"
        assert index.get_manifest("com.acme.crm", "9.9.9") is None

    def test_unknown_package(self, index):
        assert index.manifests("com.acme.unknown") == []
        assert index.latest("com.acme.unknown") is None

    def test_publish_replaces_same_version(self, index, manifest):
        index.publish(manifest("com.acme.crm", "1.0.0", namespace="crm"))

        assert index.get_manifest("com.acme.crm", "1.0.0").namespace == "crm"
        assert len(index.index["registries"][UPLOADS_REGISTRY]["packages"]) == 3

    def test_index_persisted(self, index, index_file):
        assert PackageIndex(index_file).versions("com.acme.crm") == ["2.0.0-beta.1", "1.5.0", "1.0.0"]
