"""
Trustship - Signature-Gated Software Installation

Installs pinned product releases only after their manifests pass a two-level
trust chain: root keys authorize release keys, release keys sign manifests.
Downloads are checksum-verified, staged, and committed crash-safely.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Trustship Team"

from .core.config import Config
from .core.exceptions import TrustshipError
from .install import InstallationManager, InstallOptions, InstallOutcome
from .trust import Keyring, ManifestTrustEvaluator, TrustRoot, TrustVerdict

__all__ = [
    "Config",
    "TrustshipError",
    "InstallationManager",
    "InstallOptions",
    "InstallOutcome",
    "Keyring",
    "ManifestTrustEvaluator",
    "TrustRoot",
    "TrustVerdict",
]
