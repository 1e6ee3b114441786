# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Artifact Verifier

Single responsibility: Validate package artifacts (size, SHA256, signature)
before they enter the registry or get installed.

Signature checking is pluggable: any object implementing SignatureVerifier
can be injected. GPG detached signatures are provided out of the box.
"""

import asyncio
import hashlib
import hmac
import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple
from urllib.parse import unquote

import aiofiles
import httpx

from package_engine.core.errors import (
    ArtifactInvalidError,
    ChecksumMismatchError,
    OperationTimeoutError,
    PackageEngineError,
    SignatureInvalidError,
    ValidationError,
)
from package_engine.models.package_models import ArtifactMetadata, ArtifactRef, VerificationResult
from package_engine.signing.gpg import GPGNotFoundError, import_public_key, verify_data_signature

logger = logging.getLogger(__name__)

SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def publisher_id(package_id: str) -> str:
    """Publisher of a reverse-domain package id: com.acme.crm -> com.acme"""
    return ".".join(package_id.split(".")[:2])


# =============================================================================
# SIGNATURE VERIFIERS
# =============================================================================

class SignatureVerifier(Protocol):
    """Capability for checking a detached signature over artifact bytes"""

    def verify(self, data: bytes, signature: str, package_id: Optional[str] = None) -> Tuple[bool, str]:
        """Returns (is_valid, error_message)"""
        ...


class GpgSignatureVerifier:
    """Verifies ASCII-armored GPG detached signatures"""

    def __init__(self, keyring_dir: Optional[str] = None, trusted_keys: Optional[Dict[str, str]] = None):
        """
        Args:
            keyring_dir: GPG home directory holding trusted public keys
            trusted_keys: Optional publisher id -> ASCII-armored public key.
                          When a publisher has a key, its packages must be
                          signed with exactly that key.
        """
        self.keyring_dir = keyring_dir
        self.publisher_fingerprints: Dict[str, str] = {}
        for publisher, key_data in (trusted_keys or {}).items():
            self.publisher_fingerprints[publisher] = import_public_key(key_data, keyring_dir)
            logger.info(f"Trusted key for publisher {publisher}: {self.publisher_fingerprints[publisher]}")

    def verify(self, data: bytes, signature: str, package_id: Optional[str] = None) -> Tuple[bool, str]:
        try:
            valid, error, fingerprint = verify_data_signature(data, signature, self.keyring_dir)
        except GPGNotFoundError as e:
            return (False, str(e))

        if not valid:
            return (False, error)

        if package_id:
            expected = self.publisher_fingerprints.get(publisher_id(package_id))
            if expected and expected != fingerprint:
                return (False, f"Signed by {fingerprint}, not by the trusted key of {publisher_id(package_id)}")
        return (True, "")


# =============================================================================
# FETCHING
# =============================================================================

class ArtifactFetcher:
    """Fetches artifact bytes over http(s) or from file:// paths"""

    def __init__(
        self,
        timeout: float = 30.0,
        base_dir: Path = Path("."),
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            timeout: Seconds allowed for the whole fetch
            base_dir: Base directory for relative file:// paths
            transport: Optional httpx transport (tests, proxies)
        """
        self.timeout = timeout
        self.base_dir = base_dir
        self.transport = transport

    async def fetch(self, url: str, max_size: int, timeout: Optional[float] = None) -> bytes:
        """
        Fetch artifact bytes.

        Raises:
            ArtifactInvalidError: If the artifact cannot be read or exceeds max_size
            OperationTimeoutError: If the fetch exceeds the timeout
        """
        timeout = timeout or self.timeout
        try:
            return await asyncio.wait_for(self._fetch(url, max_size), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Artifact fetch timed out after {timeout}s: {url}")
            raise OperationTimeoutError("Artifact fetch", timeout)

    async def _fetch(self, url: str, max_size: int) -> bytes:
        if url.startswith("http://") or url.startswith("https://"):
            return await self._fetch_http(url, max_size)
        return await self._read_local(url, max_size)

    async def _fetch_http(self, url: str, max_size: int) -> bytes:
        chunks = []
        received = 0
        try:
            async with httpx.AsyncClient(transport=self.transport, follow_redirects=True) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > max_size:
                        raise ArtifactInvalidError(
                            f"Artifact is {declared} bytes; maximum is {max_size}",
                            details={"size": int(declared), "max_size": max_size}
                        )
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > max_size:
                            raise ArtifactInvalidError(
                                f"Artifact exceeds maximum size of {max_size} bytes",
                                details={"max_size": max_size}
                            )
                        chunks.append(chunk)
        except httpx.HTTPError as e:
            raise ArtifactInvalidError(f"Failed to fetch artifact from {url}: {e}", details={"url": url})
        return b"".join(chunks)

    async def _read_local(self, url: str, max_size: int) -> bytes:
        local_path = unquote(url.replace("file://", "", 1))
        if local_path.startswith("./") or local_path.startswith("../"):
            path = (self.base_dir / local_path).resolve()
        else:
            path = Path(local_path)

        if not path.is_file():
            raise ArtifactInvalidError(f"Artifact not found: {path.name}", details={"url": url})

        size = path.stat().st_size
        if size > max_size:
            raise ArtifactInvalidError(
                f"Artifact is {size} bytes; maximum is {max_size}",
                details={"size": size, "max_size": max_size}
            )

        async with aiofiles.open(path, "rb") as f:
            return await f.read()


# =============================================================================
# VERIFIER
# =============================================================================

class ArtifactVerifier:
    """Checks size, SHA256 digest and (optionally) signature of an artifact"""

    def __init__(
        self,
        max_size: int,
        fetcher: Optional[ArtifactFetcher] = None,
        signature_verifier: Optional[SignatureVerifier] = None,
        require_signature: bool = False
    ):
        self.max_size = max_size
        self.fetcher = fetcher or ArtifactFetcher()
        self.signature_verifier = signature_verifier
        self.require_signature = require_signature

    async def verify(
        self,
        artifact: ArtifactRef,
        expected_sha256: str,
        data: Optional[bytes] = None,
        signature: Optional[str] = None,
        package_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> VerificationResult:
        """
        Verify an artifact, returning the outcome instead of raising.

        Args:
            artifact: Artifact reference (url, declared size)
            expected_sha256: Expected hex digest
            data: Artifact bytes if already in hand; fetched from artifact.url otherwise
            signature: Optional detached signature
            package_id: Package the artifact belongs to (publisher key lookup)
            timeout: Fetch timeout override

        Returns:
            VerificationResult
        """
        try:
            digest = await self.verify_or_raise(artifact, expected_sha256, data, signature, package_id, timeout)
        except PackageEngineError as e:
            return VerificationResult(valid=False, error_code=e.code_value, error_message=e.message)
        return VerificationResult(valid=True, sha256=digest)

    async def verify_or_raise(
        self,
        artifact: ArtifactRef,
        expected_sha256: str,
        data: Optional[bytes] = None,
        signature: Optional[str] = None,
        package_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> str:
        """
        Verify an artifact.

        Returns:
            Recomputed hex digest

        Raises:
            ArtifactInvalidError, ChecksumMismatchError, SignatureInvalidError,
            OperationTimeoutError
        """
        # Size is checked before any bytes are fetched or hashed
        self._check_size(artifact.size)
        if data is None:
            data = await self.fetcher.fetch(artifact.url, self.max_size, timeout)
        if len(data) != artifact.size:
            raise ArtifactInvalidError(
                f"Artifact size mismatch: declared {artifact.size} bytes, got {len(data)}",
                details={"declared": artifact.size, "actual": len(data)}
            )
        return self.verify_bytes(data, expected_sha256, signature, package_id)

    def verify_bytes(
        self,
        data: bytes,
        expected_sha256: str,
        signature: Optional[str] = None,
        package_id: Optional[str] = None
    ) -> str:
        """Verify bytes already in hand (uploads); returns the hex digest"""
        if not expected_sha256 or not SHA256_RE.match(expected_sha256):
            raise ArtifactInvalidError(
                "Expected SHA256 must be 64 hexadecimal characters",
                details={"sha256": expected_sha256}
            )
        self._check_size(len(data))

        digest = sha256_hex(data)
        if not hmac.compare_digest(digest, expected_sha256.lower()):
            logger.warning(f"Checksum mismatch: expected {expected_sha256.lower()}, got {digest}")
            raise ChecksumMismatchError(expected_sha256.lower(), digest)

        self._check_signature(data, signature, package_id)
        return digest

    def _check_size(self, size: int):
        if size > self.max_size:
            raise ArtifactInvalidError(
                f"Artifact is {size} bytes; maximum is {self.max_size}",
                details={"size": size, "max_size": self.max_size}
            )

    def _check_signature(self, data: bytes, signature: Optional[str], package_id: Optional[str]):
        if not signature:
            if self.require_signature:
                raise SignatureInvalidError("Artifact signature is required but missing")
            return

        if self.signature_verifier is None:
            raise SignatureInvalidError("Artifact is signed but no signature verifier is configured")

        valid, error = self.signature_verifier.verify(data, signature, package_id)
        if not valid:
            logger.warning(f"Signature verification failed for {package_id or 'artifact'}: {error}")
            raise SignatureInvalidError(error or "Signature verification failed")


# =============================================================================
# STORAGE
# =============================================================================

class ArtifactStorage(Protocol):
    """Destination for accepted uploads"""

    async def store(self, metadata: ArtifactMetadata, data: bytes) -> str:
        """Persist bytes and return the artifact URL"""
        ...


class LocalArtifactStorage:
    """Stores artifacts under a directory, one folder per package version"""

    def __init__(self, root: Path, base_url: Optional[str] = None):
        self.root = root
        self.base_url = base_url

    async def store(self, metadata: ArtifactMetadata, data: bytes) -> str:
        filename = Path(metadata.filename).name
        if not filename or filename in (".", ".."):
            raise ValidationError(f"Invalid artifact filename: {metadata.filename!r}", field="filename")

        directory = self.root / metadata.package_id / metadata.version
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / filename
        temp = directory / f".{filename}.tmp"

        try:
            async with aiofiles.open(temp, "wb") as f:
                await f.write(data)
            os.replace(temp, target)
        except Exception:
            temp.unlink(missing_ok=True)
            raise

        logger.info(f"Stored artifact {metadata.package_id}@{metadata.version} ({len(data)} bytes)")
        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{metadata.package_id}/{metadata.version}/{filename}"
        return target.resolve().as_uri()
