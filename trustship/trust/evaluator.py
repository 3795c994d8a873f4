"""
Manifest Trust Evaluator

Applies the two-level trust chain to a release manifest:

1. Root keys authorize the release-key set: distinct, valid, non-revoked,
   non-expired root signatures over the key set's canonical body must meet
   the root threshold.
2. Release keys sign the manifest: distinct, valid, non-revoked, non-expired
   signatures from authorized release keys must meet the release threshold.

Unknown, revoked, expired, unsupported or invalid signatures are excluded
from the count rather than failing outright; only a missed threshold is
fatal. Revocation and expiry are judged at evaluation time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..core.exceptions import (
    ExpiredKeyError,
    ManifestTrustError,
    RevokedKeyError,
    UnknownKeyError,
    UnsupportedAlgorithmError,
)
from .keys import Key, Keyring, KeyRole, Signature
from .manifest import ReleaseManifest
from .signatures import SignatureVerifier

logger = logging.getLogger(__name__)


class TrustVerdict(Enum):
    """Closed set of evaluation outcomes."""
    TRUSTED = "TRUSTED"
    ROOT_THRESHOLD_NOT_MET = "ROOT_THRESHOLD_NOT_MET"
    RELEASE_THRESHOLD_NOT_MET = "RELEASE_THRESHOLD_NOT_MET"


class ExclusionReason(Enum):
    """Why a signature or key did not count toward a quorum."""
    UNKNOWN_KEY = "unknown_key"
    REVOKED = "revoked"
    EXPIRED = "expired"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    INVALID_SIGNATURE = "invalid_signature"
    DUPLICATE_SIGNER = "duplicate_signer"
    ROLE_CONFLICT = "role_conflict"


@dataclass
class Exclusion:
    """A key or signature left out of a quorum count."""
    level: str
    key_id: str
    reason: ExclusionReason
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "key_id": self.key_id,
            "reason": self.reason.value,
            "detail": self.detail,
        }


@dataclass
class TrustEvaluation:
    """Outcome of evaluating one manifest."""
    verdict: TrustVerdict
    product: str
    version: str
    manifest_digest: str
    evaluated_at: datetime
    root_threshold: int
    root_signers: List[str] = field(default_factory=list)
    release_threshold: int = 0
    release_signers: List[str] = field(default_factory=list)
    authorized_release_keys: List[str] = field(default_factory=list)
    exclusions: List[Exclusion] = field(default_factory=list)

    @property
    def trusted(self) -> bool:
        return self.verdict is TrustVerdict.TRUSTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "product": self.product,
            "version": self.version,
            "manifest_digest": self.manifest_digest,
            "evaluated_at": self.evaluated_at.isoformat(),
            "root_threshold": self.root_threshold,
            "root_signers": list(self.root_signers),
            "release_threshold": self.release_threshold,
            "release_signers": list(self.release_signers),
            "authorized_release_keys": list(self.authorized_release_keys),
            "exclusions": [e.to_dict() for e in self.exclusions],
        }

    def raise_for_verdict(self) -> None:
        """Raise ManifestTrustError unless the manifest is trusted."""
        if self.trusted:
            return
        if self.verdict is TrustVerdict.ROOT_THRESHOLD_NOT_MET:
            message = (
                f"Release key set for {self.product} {self.version} has "
                f"{len(self.root_signers)} of {self.root_threshold} required root signatures"
            )
        else:
            message = (
                f"Manifest for {self.product} {self.version} has "
                f"{len(self.release_signers)} of {self.release_threshold} required "
                f"release signatures"
            )
        raise ManifestTrustError(message, self.verdict.value, self.to_dict())


class ManifestTrustEvaluator:
    """Decides whether a release manifest is trustworthy."""

    def __init__(self, verifier: Optional[SignatureVerifier] = None):
        self._verifier = verifier or SignatureVerifier()

    def _count_quorum(
        self,
        level: str,
        message: bytes,
        signatures: Sequence[Signature],
        candidates: Dict[str, Key],
        keyring: Keyring,
        now: datetime,
        exclusions: List[Exclusion],
    ) -> List[str]:
        """Return the distinct key ids whose signatures count at this level."""
        counted: List[str] = []

        for signature in signatures:
            key_id = signature.key_id

            if key_id in counted:
                exclusions.append(Exclusion(level, key_id, ExclusionReason.DUPLICATE_SIGNER))
                continue

            try:
                key = candidates.get(key_id)
                if key is None:
                    raise UnknownKeyError(key_id)
                keyring.check_usable(key, now)
                valid = self._verifier.verify(message, signature, key)
            except UnknownKeyError:
                exclusions.append(Exclusion(level, key_id, ExclusionReason.UNKNOWN_KEY))
                continue
            except RevokedKeyError:
                exclusions.append(Exclusion(level, key_id, ExclusionReason.REVOKED))
                continue
            except ExpiredKeyError as e:
                exclusions.append(
                    Exclusion(level, key_id, ExclusionReason.EXPIRED, detail=e.expiry)
                )
                continue
            except UnsupportedAlgorithmError as e:
                exclusions.append(
                    Exclusion(
                        level,
                        key_id,
                        ExclusionReason.UNSUPPORTED_ALGORITHM,
                        detail=e.algorithm,
                    )
                )
                continue

            if not valid:
                exclusions.append(Exclusion(level, key_id, ExclusionReason.INVALID_SIGNATURE))
                continue

            counted.append(key_id)

        return counted

    def _authorized_release_keys(
        self,
        keys: Sequence[Key],
        keyring: Keyring,
        exclusions: List[Exclusion],
    ) -> Dict[str, Key]:
        # A key holds exactly one role: root keys never double as release keys.
        authorized: Dict[str, Key] = {}
        for key in keys:
            if key.role is not KeyRole.RELEASE:
                exclusions.append(
                    Exclusion("release", key.key_id, ExclusionReason.ROLE_CONFLICT,
                              detail=f"role {key.role.value} in release key set")
                )
                continue
            if keyring.is_root_key(key.key_id):
                exclusions.append(
                    Exclusion("release", key.key_id, ExclusionReason.ROLE_CONFLICT,
                              detail="key is also a root key")
                )
                continue
            authorized[key.key_id] = key
        return authorized

    def evaluate(
        self,
        manifest: ReleaseManifest,
        keyring: Keyring,
        now: Optional[datetime] = None,
    ) -> TrustEvaluation:
        """
        Evaluate a manifest against the trust root held by ``keyring``.

        Args:
            manifest: Parsed release manifest
            keyring: Keyring built from the trust root
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            TrustEvaluation with the verdict, counted signers and exclusions
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        exclusions: List[Exclusion] = []
        key_set = manifest.release_keys

        evaluation = TrustEvaluation(
            verdict=TrustVerdict.ROOT_THRESHOLD_NOT_MET,
            product=manifest.product,
            version=manifest.version,
            manifest_digest=manifest.digest,
            evaluated_at=now,
            root_threshold=keyring.root_threshold,
            exclusions=exclusions,
        )

        # Level 1: root keys authorize the release key set.
        evaluation.root_signers = self._count_quorum(
            "root",
            key_set.canonical_body,
            key_set.signatures,
            keyring.trust_root.root_keys,
            keyring,
            now,
            exclusions,
        )
        if len(evaluation.root_signers) < keyring.root_threshold:
            self._log_outcome(evaluation)
            return evaluation

        keyring.record_revocations(key_set.revoked)

        # Level 2: authorized release keys sign the manifest.
        release_keys = self._authorized_release_keys(key_set.keys, keyring, exclusions)
        evaluation.authorized_release_keys = sorted(release_keys)
        evaluation.release_threshold = max(keyring.release_threshold, key_set.threshold)
        evaluation.release_signers = self._count_quorum(
            "release",
            manifest.canonical_body,
            manifest.signatures,
            release_keys,
            keyring,
            now,
            exclusions,
        )
        if len(evaluation.release_signers) < evaluation.release_threshold:
            evaluation.verdict = TrustVerdict.RELEASE_THRESHOLD_NOT_MET
            self._log_outcome(evaluation)
            return evaluation

        evaluation.verdict = TrustVerdict.TRUSTED
        self._log_outcome(evaluation)
        return evaluation

    @staticmethod
    def _log_outcome(evaluation: TrustEvaluation) -> None:
        for exclusion in evaluation.exclusions:
            logger.warning(
                f"Excluded {exclusion.level} signature from {exclusion.key_id[:16]}: "
                f"{exclusion.reason.value}"
            )

        if evaluation.trusted:
            logger.info(
                f"Manifest trusted: {evaluation.product} {evaluation.version} "
                f"digest={evaluation.manifest_digest[:23]}... "
                f"root={len(evaluation.root_signers)}/{evaluation.root_threshold} "
                f"release={len(evaluation.release_signers)}/{evaluation.release_threshold}"
            )
        else:
            logger.error(
                f"Manifest rejected: {evaluation.product} {evaluation.version} "
                f"verdict={evaluation.verdict.value}"
            )
