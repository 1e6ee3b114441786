# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for artifact fetching, verification and storage
"""

import asyncio
from unittest.mock import patch

import httpx
import pytest

from package_engine.core.errors import (
    ArtifactInvalidError,
    ChecksumMismatchError,
    OperationTimeoutError,
    SignatureInvalidError,
    ValidationError,
)
from package_engine.models.package_models import ArtifactMetadata, ArtifactRef
from package_engine.services.registry.artifacts import (
    ArtifactFetcher,
    ArtifactVerifier,
    GpgSignatureVerifier,
    LocalArtifactStorage,
    publisher_id,
)
from package_engine.signing.gpg import GPGNotFoundError
from tests.conftest import sha256_of

PAYLOAD = b"package artifact bytes " * 64


class StaticSignatureVerifier:
    """Accepts exactly one signature string"""

    def __init__(self, accepted: str = "good-signature"):
        self.accepted = accepted
        self.calls = []

    def verify(self, data, signature, package_id=None):
        self.calls.append((signature, package_id))
        if signature == self.accepted:
            return (True, "")
        return (False, "Signature does not match artifact content")


def artifact_ref(data: bytes = PAYLOAD, url: str = "https://artifacts.example.com/crm-1.0.0.tgz") -> ArtifactRef:
    return ArtifactRef(url=url, sha256=sha256_of(data), size=len(data))


def flip_bit(data: bytes, index: int = 10) -> bytes:
    corrupted = bytearray(data)
    corrupted[index] ^= 0x01
    return bytes(corrupted)


class TestVerifyBytes:
    """Test checksum and signature checks on bytes in hand"""

    def test_valid_bytes_return_digest(self):
        verifier = ArtifactVerifier(max_size=1024 * 1024)
        assert verifier.verify_bytes(PAYLOAD, sha256_of(PAYLOAD)) == sha256_of(PAYLOAD)

    def test_single_bit_flip_is_detected(self):
        verifier = ArtifactVerifier(max_size=1024 * 1024)

        with pytest.raises(ChecksumMismatchError) as exc_info:
            verifier.verify_bytes(flip_bit(PAYLOAD), sha256_of(PAYLOAD))

        assert exc_info.value.code_value == "checksum_mismatch"
        assert exc_info.value.details["expected"] == sha256_of(PAYLOAD)

    def test_uppercase_expected_digest_matches(self):
        verifier = ArtifactVerifier(max_size=1024 * 1024)
        assert verifier.verify_bytes(PAYLOAD, sha256_of(PAYLOAD).upper()) == sha256_of(PAYLOAD)

    @pytest.mark.parametrize("expected", ["", "abc", "z" * 64])
    def test_malformed_expected_digest(self, expected):
        verifier = ArtifactVerifier(max_size=1024 * 1024)
        with pytest.raises(ArtifactInvalidError):
            verifier.verify_bytes(PAYLOAD, expected)

    def test_oversized_bytes_rejected_before_hashing(self):
        verifier = ArtifactVerifier(max_size=16)
        with pytest.raises(ArtifactInvalidError) as exc_info:
            verifier.verify_bytes(PAYLOAD, "0" * 64)
        assert exc_info.value.details["max_size"] == 16

    def test_valid_signature_accepted(self):
        signatures = StaticSignatureVerifier()
        verifier = ArtifactVerifier(max_size=1024 * 1024, signature_verifier=signatures)

        verifier.verify_bytes(PAYLOAD, sha256_of(PAYLOAD), "good-signature", "com.acme.crm")

        assert signatures.calls == [("good-signature", "com.acme.crm")]

    def test_invalid_signature_rejected(self):
        verifier = ArtifactVerifier(max_size=1024 * 1024, signature_verifier=StaticSignatureVerifier())

        with pytest.raises(SignatureInvalidError) as exc_info:
            verifier.verify_bytes(PAYLOAD, sha256_of(PAYLOAD), "forged")

        assert "does not match" in exc_info.value.message

    def test_signature_not_checked_when_checksum_fails(self):
        signatures = StaticSignatureVerifier()
        verifier = ArtifactVerifier(max_size=1024 * 1024, signature_verifier=signatures)

        with pytest.raises(ChecksumMismatchError):
            verifier.verify_bytes(flip_bit(PAYLOAD), sha256_of(PAYLOAD), "good-signature")

        assert signatures.calls == []

    def test_missing_signature_when_required(self):
        verifier = ArtifactVerifier(
            max_size=1024 * 1024, signature_verifier=StaticSignatureVerifier(), require_signature=True
        )
        with pytest.raises(SignatureInvalidError):
            verifier.verify_bytes(PAYLOAD, sha256_of(PAYLOAD))

    def test_unsigned_artifact_allowed_by_default(self):
        verifier = ArtifactVerifier(max_size=1024 * 1024, signature_verifier=StaticSignatureVerifier())
        assert verifier.verify_bytes(PAYLOAD, sha256_of(PAYLOAD))

    def test_signature_without_verifier_rejected(self):
        verifier = ArtifactVerifier(max_size=1024 * 1024)
        with pytest.raises(SignatureInvalidError):
            verifier.verify_bytes(PAYLOAD, sha256_of(PAYLOAD), "good-signature")


class TestVerifyFetched:
    """Test verification of artifacts fetched by reference"""

    @pytest.mark.asyncio
    async def test_http_artifact_verified(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=PAYLOAD))
        verifier = ArtifactVerifier(max_size=1024 * 1024, fetcher=ArtifactFetcher(transport=transport))

        result = await verifier.verify(artifact_ref(), sha256_of(PAYLOAD))

        assert result.valid is True
        assert result.sha256 == sha256_of(PAYLOAD)

    @pytest.mark.asyncio
    async def test_corrupted_download_reported(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=flip_bit(PAYLOAD)))
        verifier = ArtifactVerifier(max_size=1024 * 1024, fetcher=ArtifactFetcher(transport=transport))

        result = await verifier.verify(artifact_ref(), sha256_of(PAYLOAD))

        assert result.valid is False
        assert result.error_code == "checksum_mismatch"

    @pytest.mark.asyncio
    async def test_declared_size_checked_before_fetch(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=PAYLOAD)

        verifier = ArtifactVerifier(max_size=64, fetcher=ArtifactFetcher(transport=httpx.MockTransport(handler)))

        with pytest.raises(ArtifactInvalidError):
            await verifier.verify_or_raise(artifact_ref(), sha256_of(PAYLOAD))

        assert requests == []

    @pytest.mark.asyncio
    async def test_size_mismatch_with_declared_size(self):
        verifier = ArtifactVerifier(max_size=1024 * 1024)
        ref = ArtifactRef(url="https://artifacts.example.com/a.tgz", sha256=sha256_of(PAYLOAD), size=10)

        with pytest.raises(ArtifactInvalidError) as exc_info:
            await verifier.verify_or_raise(ref, sha256_of(PAYLOAD), data=PAYLOAD)

        assert exc_info.value.details == {"declared": 10, "actual": len(PAYLOAD)}

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        verifier = ArtifactVerifier(max_size=1024 * 1024, fetcher=ArtifactFetcher(transport=transport))

        result = await verifier.verify(artifact_ref(), sha256_of(PAYLOAD))

        assert result.valid is False
        assert result.error_code == "artifact_invalid"

    @pytest.mark.asyncio
    async def test_fetch_timeout(self):
        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, content=PAYLOAD)

        fetcher = ArtifactFetcher(timeout=0.05, transport=httpx.MockTransport(slow))

        with pytest.raises(OperationTimeoutError) as exc_info:
            await fetcher.fetch("https://artifacts.example.com/a.tgz", max_size=1024 * 1024)

        assert exc_info.value.code_value == "timeout"


class TestArtifactFetcher:
    """Test http and file:// fetching"""

    @pytest.mark.asyncio
    async def test_content_length_over_limit(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=PAYLOAD))
        fetcher = ArtifactFetcher(transport=transport)

        with pytest.raises(ArtifactInvalidError):
            await fetcher.fetch("https://artifacts.example.com/a.tgz", max_size=100)

    @pytest.mark.asyncio
    async def test_streamed_body_over_limit(self):
        async def body():
            for _ in range(10):
                yield b"x" * 50

        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body()))
        fetcher = ArtifactFetcher(transport=transport)

        with pytest.raises(ArtifactInvalidError):
            await fetcher.fetch("https://artifacts.example.com/a.tgz", max_size=100)

    @pytest.mark.asyncio
    async def test_file_url(self, tmp_path):
        path = tmp_path / "crm 1.0.0.tgz"
        path.write_bytes(PAYLOAD)

        data = await ArtifactFetcher().fetch(path.as_uri(), max_size=1024 * 1024)

        assert data == PAYLOAD

    @pytest.mark.asyncio
    async def test_relative_file_url(self, tmp_path):
        (tmp_path / "artifacts").mkdir()
        (tmp_path / "artifacts" / "crm.tgz").write_bytes(PAYLOAD)

        data = await ArtifactFetcher(base_dir=tmp_path).fetch("file://./artifacts/crm.tgz", max_size=1024 * 1024)

        assert data == PAYLOAD

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(ArtifactInvalidError):
            await ArtifactFetcher().fetch((tmp_path / "missing.tgz").as_uri(), max_size=1024)

    @pytest.mark.asyncio
    async def test_oversized_file(self, tmp_path):
        path = tmp_path / "big.tgz"
        path.write_bytes(PAYLOAD)

        with pytest.raises(ArtifactInvalidError):
            await ArtifactFetcher().fetch(path.as_uri(), max_size=10)


class TestGpgSignatureVerifier:
    """Test GPG-backed signature verification with python-gnupg patched out"""

    def test_valid_signature(self):
        with patch("package_engine.services.registry.artifacts.verify_data_signature",
                   return_value=(True, "", "ABCD1234")):
            assert GpgSignatureVerifier("/tmp/keyring").verify(PAYLOAD, "sig", "com.acme.crm") == (True, "")

    def test_bad_signature(self):
        with patch("package_engine.services.registry.artifacts.verify_data_signature",
                   return_value=(False, "Signature does not match artifact content", None)):
            valid, error = GpgSignatureVerifier("/tmp/keyring").verify(PAYLOAD, "sig")
        assert valid is False
        assert "does not match" in error

    def test_gpg_missing_is_invalid(self):
        with patch("package_engine.services.registry.artifacts.verify_data_signature",
                   side_effect=GPGNotFoundError("GPG not found")):
            valid, error = GpgSignatureVerifier("/tmp/keyring").verify(PAYLOAD, "sig")
        assert valid is False
        assert "GPG not found" in error

    def test_publisher_key_must_match(self):
        with patch("package_engine.services.registry.artifacts.import_public_key", return_value="ACME0001"):
            verifier = GpgSignatureVerifier("/tmp/keyring", trusted_keys={"com.acme": "-----BEGIN PGP-----"})

        with patch("package_engine.services.registry.artifacts.verify_data_signature",
                   return_value=(True, "", "OTHER999")):
            valid, error = verifier.verify(PAYLOAD, "sig", "com.acme.crm")
            assert valid is False
            assert "com.acme" in error
            assert verifier.verify(PAYLOAD, "sig", "com.other.crm") == (True, "")

    def test_publisher_id(self):
        assert publisher_id("com.acme.crm") == "com.acme"
        assert publisher_id("io.vendor.tools.export") == "io.vendor"


class TestLocalArtifactStorage:
    """Test artifact persistence"""

    @pytest.mark.asyncio
    async def test_store_returns_file_uri(self, tmp_path):
        storage = LocalArtifactStorage(tmp_path / "artifacts")
        metadata = ArtifactMetadata(package_id="com.acme.crm", version="1.0.0", filename="crm.tgz")

        url = await storage.store(metadata, PAYLOAD)

        stored = tmp_path / "artifacts" / "com.acme.crm" / "1.0.0" / "crm.tgz"
        assert stored.read_bytes() == PAYLOAD
        assert url == stored.resolve().as_uri()
        assert await ArtifactFetcher().fetch(url, max_size=1024 * 1024) == PAYLOAD

    @pytest.mark.asyncio
    async def test_store_with_base_url(self, tmp_path):
        storage = LocalArtifactStorage(tmp_path, base_url="https://cdn.example.com/packages/")
        metadata = ArtifactMetadata(package_id="com.acme.crm", version="1.0.0", filename="../crm.tgz")

        url = await storage.store(metadata, PAYLOAD)

        assert url == "https://cdn.example.com/packages/com.acme.crm/1.0.0/crm.tgz"
        assert (tmp_path / "com.acme.crm" / "1.0.0" / "crm.tgz").exists()

    @pytest.mark.asyncio
    async def test_rejects_empty_filename(self, tmp_path):
        storage = LocalArtifactStorage(tmp_path)
        metadata = ArtifactMetadata(package_id="com.acme.crm", version="1.0.0", filename="..")

        with pytest.raises(ValidationError):
            await storage.store(metadata, PAYLOAD)

    @pytest.mark.asyncio
    async def test_failed_write_leaves_no_temp_file(self, tmp_path):
        storage = LocalArtifactStorage(tmp_path)
        metadata = ArtifactMetadata(package_id="com.acme.crm", version="1.0.0", filename="crm.tgz")

        with patch("package_engine.services.registry.artifacts.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await storage.store(metadata, PAYLOAD)

        assert list((tmp_path / "com.acme.crm" / "1.0.0").iterdir()) == []
