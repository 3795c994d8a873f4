"""
Trustship - Trust Module

Key model, signature verification and the two-level manifest trust chain.
"""

from .canonical import canonical_bytes, canonical_digest
from .evaluator import (
    Exclusion,
    ExclusionReason,
    ManifestTrustEvaluator,
    TrustEvaluation,
    TrustVerdict,
)
from .keys import Key, Keyring, KeyRole, RevocationList, Signature, TrustRoot
from .manifest import (
    Artifact,
    AuthorizedReleaseKeySet,
    ReleaseManifest,
    sign_manifest,
    sign_release_key_set,
)
from .signatures import ECDSA_P256_SHA256, LocalKeyPair, SignatureVerifier

__all__ = [
    "canonical_bytes",
    "canonical_digest",
    "Exclusion",
    "ExclusionReason",
    "ManifestTrustEvaluator",
    "TrustEvaluation",
    "TrustVerdict",
    "Key",
    "Keyring",
    "KeyRole",
    "RevocationList",
    "Signature",
    "TrustRoot",
    "Artifact",
    "AuthorizedReleaseKeySet",
    "ReleaseManifest",
    "sign_manifest",
    "sign_release_key_set",
    "ECDSA_P256_SHA256",
    "LocalKeyPair",
    "SignatureVerifier",
]
