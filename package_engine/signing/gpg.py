# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
GPG Wrapper Module for Artifact Signatures

Provides Python wrapper for GPG operations using python-gnupg library.
Verifies YUM-style detached signatures over package artifact bytes.
"""

import os
import tempfile
from pathlib import Path
from typing import Tuple, Optional

import gnupg


class GPGNotFoundError(Exception):
    """Raised when GPG executable is not found on the system"""
    pass


class KeyImportError(Exception):
    """Raised when a public key cannot be imported into the keyring"""
    pass


def _get_gpg_instance(keyring_dir: Optional[str] = None) -> gnupg.GPG:
    """
    Get GPG instance with optional custom keyring directory.

    Args:
        keyring_dir: Optional path to custom GPG keyring directory.
                    If None, uses system default (~/.gnupg)

    Returns:
        gnupg.GPG instance

    Raises:
        GPGNotFoundError: If GPG executable is not found
    """
    try:
        if keyring_dir:
            Path(keyring_dir).mkdir(parents=True, exist_ok=True)
            gpg = gnupg.GPG(gnupghome=keyring_dir)
        else:
            gpg = gnupg.GPG()

        # Test if GPG is available
        gpg.list_keys()
        return gpg
    except Exception as e:
        raise GPGNotFoundError(
            f"GPG not found or not properly configured. "
            f"Please install GPG (gpg or gnupg). Error: {str(e)}"
        )


def verify_data_signature(
    data: bytes,
    signature: str,
    keyring_dir: Optional[str] = None
) -> Tuple[bool, str, Optional[str]]:
    """
    Verifies an ASCII-armored detached signature against artifact bytes.

    Args:
        data: Signed artifact bytes
        signature: ASCII-armored detached signature
        keyring_dir: Optional custom keyring directory

    Returns:
        (is_valid, error_message, fingerprint): error_message is empty
        string if valid; fingerprint is the signing key when known.

    Raises:
        GPGNotFoundError: If GPG is not installed
    """
    gpg = _get_gpg_instance(keyring_dir)

    # python-gnupg reads detached signatures from a file
    fd, sig_path = tempfile.mkstemp(suffix=".asc")
    try:
        with os.fdopen(fd, "w") as sig_file:
            sig_file.write(signature)
        verified = gpg.verify_data(sig_path, data)
    finally:
        Path(sig_path).unlink(missing_ok=True)

    fingerprint = getattr(verified, "fingerprint", None) or None

    if verified.valid:
        return (True, "", fingerprint)

    error_parts = []

    if verified.status == 'signature bad':
        error_parts.append("Signature does not match artifact content")
    elif verified.status == 'no public key':
        error_parts.append(f"Public key not found: {verified.key_id}")
        error_parts.append("Publisher may not be trusted")
    elif verified.status:
        error_parts.append(f"Verification failed: {verified.status}")

    if verified.stderr:
        error_parts.append(f"GPG error: {verified.stderr}")

    error_message = ". ".join(error_parts) if error_parts else "Signature verification failed"
    return (False, error_message, fingerprint)


def import_public_key(key_data: str, keyring_dir: Optional[str] = None) -> str:
    """
    Imports a public key to the keyring.

    Args:
        key_data: ASCII-armored public key data
        keyring_dir: Optional custom keyring directory

    Returns:
        Fingerprint of the imported key

    Raises:
        GPGNotFoundError: If GPG is not installed
        KeyImportError: If key import fails
    """
    gpg = _get_gpg_instance(keyring_dir)

    result = gpg.import_keys(key_data)

    if not result.count:
        raise KeyImportError(f"Failed to import key. {result.stderr}")

    if result.fingerprints:
        return result.fingerprints[0]
    raise KeyImportError("Key imported but no fingerprint returned")
