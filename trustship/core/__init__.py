"""
Trustship Core Module

Configuration and the shared exception hierarchy.
"""

from .config import Config
from .exceptions import (
    ChecksumMismatchError,
    ConfigError,
    DownloadFailedError,
    FilesystemError,
    InstallationError,
    LockBusyError,
    ManifestFormatError,
    ManifestTrustError,
    NotInstalledError,
    TrustshipError,
)

__all__ = [
    "Config",
    "ChecksumMismatchError",
    "ConfigError",
    "DownloadFailedError",
    "FilesystemError",
    "InstallationError",
    "LockBusyError",
    "ManifestFormatError",
    "ManifestTrustError",
    "NotInstalledError",
    "TrustshipError",
]
