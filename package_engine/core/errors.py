# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Custom exceptions for the package lifecycle engine.

All exceptions inherit from PackageEngineError for consistent error handling.
Each exception carries the error code reported to callers of the package API.
"""

from enum import Enum
from typing import Optional


class PackageErrorCode(str, Enum):
    """Error codes returned by the package API (closed enumeration)"""
    PACKAGE_NOT_FOUND = "package_not_found"
    PACKAGE_ALREADY_INSTALLED = "package_already_installed"
    VERSION_NOT_FOUND = "version_not_found"
    DEPENDENCY_CONFLICT = "dependency_conflict"
    NAMESPACE_CONFLICT = "namespace_conflict"
    PLATFORM_INCOMPATIBLE = "platform_incompatible"
    ARTIFACT_INVALID = "artifact_invalid"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    UPGRADE_FAILED = "upgrade_failed"
    ROLLBACK_FAILED = "rollback_failed"
    SNAPSHOT_NOT_FOUND = "snapshot_not_found"
    UPLOAD_FAILED = "upload_failed"


# Engine-local codes for failures the API enumeration does not name
INVALID_REQUEST = "invalid_request"
TIMEOUT = "timeout"
INTERNAL_ERROR = "internal_error"


class PackageEngineError(Exception):
    """Base exception for all package engine errors."""

    code: str = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[dict] = None
    ):
        """
        Initialize package engine error.

        Args:
            message: Human-readable error message
            status_code: HTTP status code
            details: Additional error details
        """
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code_value(self) -> str:
        """Error code as a plain string."""
        return self.code.value if isinstance(self.code, Enum) else self.code

    def to_dict(self) -> dict:
        """Convert error to dictionary for API response."""
        return {
            "error": self.__class__.__name__,
            "code": self.code_value,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details
        }


class ValidationError(PackageEngineError):
    """Malformed request, manifest or range expression."""

    code = INVALID_REQUEST

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, status_code=400, details=details)
        self.field = field


class InvalidRangeError(ValidationError):
    """Version range expression could not be parsed."""

    def __init__(self, expression: str, reason: str = ""):
        message = f"Invalid version range: '{expression}'"
        if reason:
            message += f" ({reason})"
        super().__init__(message, field="version_range", details={"range": expression})
        self.expression = expression


class InvalidVersionError(ValidationError):
    """Version string is not valid semver."""

    def __init__(self, version: str):
        super().__init__(f"Invalid semantic version: '{version}'", field="version",
                         details={"version": version})
        self.version = version


class PackageNotFoundError(PackageEngineError):
    """Package is not installed or not known to the registry."""

    code = PackageErrorCode.PACKAGE_NOT_FOUND

    def __init__(self, package_id: str, details: Optional[dict] = None):
        super().__init__(f"Package not found: {package_id}", status_code=404, details=details)
        self.package_id = package_id


class PackageAlreadyInstalledError(PackageEngineError):
    """A different version or manifest of the package is already installed."""

    code = PackageErrorCode.PACKAGE_ALREADY_INSTALLED

    def __init__(self, package_id: str, installed_version: str):
        super().__init__(
            f"Package {package_id}@{installed_version} is already installed. Use upgrade instead.",
            status_code=409,
            details={"package_id": package_id, "installed_version": installed_version}
        )
        self.package_id = package_id


class VersionNotFoundError(PackageEngineError):
    """Requested version is not available in the package index."""

    code = PackageErrorCode.VERSION_NOT_FOUND

    def __init__(self, package_id: str, version: Optional[str] = None):
        target = f"{package_id}@{version}" if version else package_id
        super().__init__(f"Version not found: {target}", status_code=404,
                         details={"package_id": package_id, "version": version})


class DependencyConflictError(PackageEngineError):
    """Dependency graph could not be resolved or a dependent blocks the operation."""

    code = PackageErrorCode.DEPENDENCY_CONFLICT

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=409, details=details)


class NamespaceConflictError(PackageEngineError):
    """Declared namespace collides with another installed package."""

    code = PackageErrorCode.NAMESPACE_CONFLICT

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=409, details=details)


class PlatformIncompatibleError(PackageEngineError):
    """Manifest requires a platform version the current platform does not satisfy."""

    code = PackageErrorCode.PLATFORM_INCOMPATIBLE

    def __init__(self, package_id: str, required: str, platform_version: str):
        super().__init__(
            f"Package {package_id} requires platform {required}, but current platform is v{platform_version}",
            status_code=422,
            details={"required": required, "platform_version": platform_version}
        )


class ArtifactInvalidError(PackageEngineError):
    """Artifact is malformed, oversized or its size does not match."""

    code = PackageErrorCode.ARTIFACT_INVALID

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=422, details=details)


class ChecksumMismatchError(PackageEngineError):
    """Recomputed digest does not match the expected SHA256."""

    code = PackageErrorCode.CHECKSUM_MISMATCH

    def __init__(self, expected: str, actual: str):
        super().__init__(
            "Artifact checksum mismatch; the artifact must be re-uploaded",
            status_code=422,
            details={"expected": expected, "actual": actual}
        )


class SignatureInvalidError(PackageEngineError):
    """Artifact signature is missing or does not verify."""

    code = PackageErrorCode.SIGNATURE_INVALID

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=422, details=details)


class UpgradeFailedError(PackageEngineError):
    """Upgrade could not be committed."""

    code = PackageErrorCode.UPGRADE_FAILED

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=409, details=details)


class RollbackFailedError(PackageEngineError):
    """Snapshot could not be restored."""

    code = PackageErrorCode.ROLLBACK_FAILED

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=500, details=details)


class SnapshotNotFoundError(PackageEngineError):
    """Snapshot id is unknown or has been purged."""

    code = PackageErrorCode.SNAPSHOT_NOT_FOUND

    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot not found: {snapshot_id}", status_code=404,
                         details={"snapshot_id": snapshot_id})


class UploadFailedError(PackageEngineError):
    """Artifact could not be stored."""

    code = PackageErrorCode.UPLOAD_FAILED

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=502, details=details)


class OperationTimeoutError(PackageEngineError):
    """A network-bound step or lock acquisition exceeded its timeout."""

    code = TIMEOUT

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout}s", status_code=504,
                         details={"operation": operation, "timeout": timeout})
        self.operation = operation


# Error Message Utilities

def sanitize_error_for_user(error: Exception, include_type: bool = True) -> str:
    """
    Sanitize error messages for user display.
    Removes filesystem paths and limits length.

    Args:
        error: The exception to sanitize
        include_type: Whether to include exception type

    Returns:
        User-friendly error message without stack trace
    """
    if isinstance(error, PackageEngineError):
        error_msg = error.message
    else:
        error_msg = str(error).strip()

    error_msg = error_msg.replace("/app/", "")
    error_msg = error_msg.replace("/configs/", "")

    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."

    if include_type:
        return f"{error.__class__.__name__}: {error_msg}"

    return error_msg
