"""
Trustship Exception Hierarchy

Structured, inspectable errors for trust verification and installation.
Every error carries a stable code and a details mapping so a failure can be
diagnosed from its terminal state alone.
"""

from typing import Any, Dict, List, Optional


class TrustshipError(Exception):
    """Base exception for all Trustship errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "TRUSTSHIP_ERROR"
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    @property
    def failed_state(self) -> Optional[str]:
        """Pipeline state an install was in when this error surfaced."""
        return self.details.get("failed_state")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(TrustshipError):
    """Raised when configuration cannot be loaded or is invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(
            message,
            code="CONFIG_ERROR",
            details={"errors": errors or []},
        )
        self.errors = errors or []


# ============================================================================
# Trust errors
# ============================================================================


class KeyValidationError(TrustshipError):
    """Common base for key resolution and usability failures."""

    def __init__(self, message: str, code: str, key_id: str, **details: Any):
        super().__init__(message, code=code, details={"key_id": key_id, **details})
        self.key_id = key_id


class UnknownKeyError(KeyValidationError):
    """Raised when a key identifier is not present in the keyring."""

    def __init__(self, key_id: str):
        super().__init__(f"Unknown key: {key_id}", "KEY.UNKNOWN", key_id)


class RevokedKeyError(KeyValidationError):
    """Raised when a key has been revoked."""

    def __init__(self, key_id: str):
        super().__init__(f"Key has been revoked: {key_id}", "KEY.REVOKED", key_id)


class ExpiredKeyError(KeyValidationError):
    """Raised when a key is past its expiry at evaluation time."""

    def __init__(self, key_id: str, expiry: Optional[str] = None, at_time: Optional[str] = None):
        super().__init__(
            f"Key has expired: {key_id}",
            "KEY.EXPIRED",
            key_id,
            expiry=expiry,
            at_time=at_time,
        )
        self.expiry = expiry
        self.at_time = at_time


class UnsupportedAlgorithmError(TrustshipError):
    """Raised when a key uses a signature algorithm that is not implemented."""

    def __init__(self, algorithm: str, key_id: Optional[str] = None):
        super().__init__(
            f"Unsupported signature algorithm: {algorithm}",
            code="SIGNATURE.UNSUPPORTED_ALGORITHM",
            details={"algorithm": algorithm, "key_id": key_id},
        )
        self.algorithm = algorithm
        self.key_id = key_id


class CanonicalizationError(TrustshipError):
    """Raised when a value cannot be canonically serialized."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="CANONICAL.INVALID_VALUE", details={"path": path})
        self.path = path


class ManifestFormatError(TrustshipError):
    """Raised when a manifest or key document is structurally invalid."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="MANIFEST.FORMAT", details={"path": path})
        self.path = path


class ManifestTrustError(TrustshipError):
    """
    Raised when a manifest is rejected by the trust evaluator.

    Carries the verdict and the full evaluation so the caller can see which
    keys were counted, which were excluded and why.
    """

    def __init__(self, message: str, verdict: str, evaluation: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code=f"TRUST.{verdict}",
            details={"verdict": verdict, "evaluation": evaluation or {}},
        )
        self.verdict = verdict
        self.evaluation = evaluation or {}


# ============================================================================
# Installation errors
# ============================================================================


class InstallationError(TrustshipError):
    """Base class for failures raised by the installation pipeline."""

    def __init__(
        self,
        message: str,
        code: str = "INSTALL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, details=details)


class NetworkError(InstallationError):
    """Transient network failure; retried by the download client."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(
            message,
            code="NETWORK_ERROR",
            details={"url": url, "status": status},
        )
        self.url = url
        self.status = status


class DownloadFailedError(InstallationError):
    """Raised when a download fails permanently or exhausts its retries."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        attempts: int = 0,
        status: Optional[int] = None,
        artifact: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="DOWNLOAD_FAILED",
            details={
                "url": url,
                "attempts": attempts,
                "status": status,
                "artifact": artifact,
            },
        )
        self.url = url
        self.attempts = attempts
        self.status = status
        self.artifact = artifact


class ChecksumMismatchError(InstallationError):
    """
    Raised when downloaded bytes do not match the manifest.

    Never retried: a mismatch means corruption or tampering.
    """

    def __init__(
        self,
        message: str,
        artifact: str,
        expected_hash: Optional[str] = None,
        actual_hash: Optional[str] = None,
        expected_size: Optional[int] = None,
        actual_size: Optional[int] = None,
    ):
        super().__init__(
            message,
            code="CHECKSUM_MISMATCH",
            details={
                "artifact": artifact,
                "expected_hash": expected_hash,
                "actual_hash": actual_hash,
                "expected_size": expected_size,
                "actual_size": actual_size,
            },
        )
        self.artifact = artifact
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        self.expected_size = expected_size
        self.actual_size = actual_size


class LockBusyError(InstallationError):
    """Raised when the installation lock is held by a live process."""

    def __init__(
        self,
        message: str,
        lock_path: Optional[str] = None,
        holder: Optional[Dict[str, Any]] = None,
        waited_seconds: float = 0.0,
    ):
        super().__init__(
            message,
            code="LOCK_BUSY",
            details={
                "lock_path": lock_path,
                "holder": holder,
                "waited_seconds": waited_seconds,
            },
        )
        self.lock_path = lock_path
        self.holder = holder
        self.waited_seconds = waited_seconds


class FilesystemError(InstallationError):
    """Raised when a filesystem operation fails; staged content is rolled back."""

    def __init__(self, message: str, path: Optional[str] = None, operation: Optional[str] = None):
        super().__init__(
            message,
            code="FILESYSTEM_ERROR",
            details={"path": path, "operation": operation},
        )
        self.path = path
        self.operation = operation


class NotInstalledError(InstallationError):
    """Raised when removing a product version that has no committed entry."""

    def __init__(self, product: str, version: str):
        super().__init__(
            f"{product} {version} is not installed",
            code="NOT_INSTALLED",
            details={"product": product, "version": version},
        )
        self.product = product
        self.version = version


class InvalidTransitionError(InstallationError):
    """Raised when the installation state machine is driven illegally."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Invalid installation state transition: {current} -> {requested}",
            code="INVALID_TRANSITION",
            details={"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested
