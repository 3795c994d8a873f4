"""
Release Manifest Model

Parses signed manifest documents into typed objects.

Document layout:

    {
      "signed": {
        "product": "widget",
        "version": "1.0.0",
        "artifacts": [{"name", "url", "sha256", "size", "format"}],
        "release_keys": {
          "signed": {"keys": [...], "threshold": 1, "revoked": [...]},
          "signatures": [{"key_id", "signature"}]
        }
      },
      "signatures": [{"key_id", "signature"}]
    }

Signatures always cover the canonical bytes of the ``signed`` body exactly as
received. Typed objects keep that body so nothing is re-encoded from parsed
fields before verification.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Union

import jsonschema

from ..core.exceptions import CanonicalizationError, ManifestFormatError
from .canonical import canonical_bytes, canonical_digest
from .keys import Key, KeyRole, Signature

logger = logging.getLogger(__name__)


ARTIFACT_FORMATS = ("tar.xz", "tar.gz", "tar", "file")

_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._+-]*$"

SIGNATURE_SCHEMA = {
    "type": "object",
    "required": ["key_id", "signature"],
    "properties": {
        "key_id": {"type": "string", "minLength": 1},
        "signature": {"type": "string", "minLength": 1},
    },
}

KEY_SCHEMA = {
    "type": "object",
    "required": ["role", "algorithm", "public_key"],
    "properties": {
        "key_id": {"type": "string"},
        "role": {"enum": [role.value for role in KeyRole]},
        "algorithm": {"type": "string", "minLength": 1},
        "public_key": {"type": "string", "minLength": 1},
        "expiry": {"type": ["string", "null"]},
    },
}

RELEASE_KEY_SET_SCHEMA = {
    "type": "object",
    "required": ["signed", "signatures"],
    "properties": {
        "signed": {
            "type": "object",
            "required": ["keys", "threshold"],
            "properties": {
                "keys": {"type": "array", "items": KEY_SCHEMA},
                "threshold": {"type": "integer", "minimum": 1},
                "revoked": {"type": "array", "items": {"type": "string"}},
            },
        },
        "signatures": {"type": "array", "items": SIGNATURE_SCHEMA},
    },
}

ARTIFACT_SCHEMA = {
    "type": "object",
    "required": ["name", "url", "sha256", "size"],
    "properties": {
        "name": {"type": "string", "pattern": _NAME_PATTERN},
        "url": {"type": "string", "minLength": 1},
        "sha256": {"type": "string", "pattern": r"^(sha256:)?[0-9a-f]{64}$"},
        "size": {"type": "integer", "minimum": 0},
        "format": {"enum": list(ARTIFACT_FORMATS)},
    },
}

MANIFEST_SCHEMA = {
    "type": "object",
    "required": ["signed", "signatures"],
    "properties": {
        "signed": {
            "type": "object",
            "required": ["product", "version", "artifacts", "release_keys"],
            "properties": {
                "product": {"type": "string", "pattern": _NAME_PATTERN},
                "version": {"type": "string", "pattern": _NAME_PATTERN},
                "artifacts": {"type": "array", "items": ARTIFACT_SCHEMA},
                "release_keys": RELEASE_KEY_SET_SCHEMA,
            },
        },
        "signatures": {"type": "array", "items": SIGNATURE_SCHEMA},
    },
}


def _validate(document: Any, schema: Dict[str, Any], what: str) -> None:
    try:
        jsonschema.validate(document, schema)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ManifestFormatError(f"Invalid {what}: {e.message}", path=location)


@dataclass(frozen=True)
class Artifact:
    """A downloadable file declared by a release manifest."""
    name: str
    url: str
    sha256: str
    size: int
    format: str = "file"

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Artifact":
        digest = record["sha256"]
        if digest.startswith("sha256:"):
            digest = digest[7:]
        return cls(
            name=record["name"],
            url=record["url"],
            sha256=digest,
            size=record["size"],
            format=record.get("format", "file"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "sha256": self.sha256,
            "size": self.size,
            "format": self.format,
        }


@dataclass(frozen=True)
class AuthorizedReleaseKeySet:
    """Release keys authorized by a quorum of root signatures."""
    keys: Tuple[Key, ...]
    threshold: int
    revoked: Tuple[str, ...]
    signatures: Tuple[Signature, ...]
    signed_body: Dict[str, Any]

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "AuthorizedReleaseKeySet":
        _validate(document, RELEASE_KEY_SET_SCHEMA, "release key set")
        body = document["signed"]
        return cls(
            keys=tuple(Key.from_record(record) for record in body["keys"]),
            threshold=body["threshold"],
            revoked=tuple(body.get("revoked", [])),
            signatures=tuple(Signature.from_record(s) for s in document["signatures"]),
            signed_body=body,
        )

    @property
    def canonical_body(self) -> bytes:
        return canonical_bytes(self.signed_body)

    def to_document(self) -> Dict[str, Any]:
        return {
            "signed": self.signed_body,
            "signatures": [s.to_record() for s in self.signatures],
        }


@dataclass(frozen=True)
class ReleaseManifest:
    """A signed release of one product version."""
    product: str
    version: str
    artifacts: Tuple[Artifact, ...]
    release_keys: AuthorizedReleaseKeySet
    signatures: Tuple[Signature, ...]
    signed_body: Dict[str, Any]

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "ReleaseManifest":
        """
        Parse and structurally validate a manifest document.

        Args:
            document: Decoded JSON manifest

        Returns:
            ReleaseManifest (not yet trusted)

        Raises:
            ManifestFormatError: If the document violates the manifest schema
        """
        _validate(document, MANIFEST_SCHEMA, "release manifest")
        body = document["signed"]
        try:
            canonical_bytes(body)
        except CanonicalizationError as e:
            raise ManifestFormatError(f"Manifest body is not canonicalizable: {e.message}", path=e.path)

        artifacts = tuple(Artifact.from_record(a) for a in body["artifacts"])
        names = [a.name for a in artifacts]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ManifestFormatError(
                f"Duplicate artifact names: {', '.join(duplicates)}",
                path="signed/artifacts",
            )

        logger.debug(
            f"Parsed manifest {body['product']} {body['version']} with {len(artifacts)} artifacts"
        )
        return cls(
            product=body["product"],
            version=body["version"],
            artifacts=artifacts,
            release_keys=AuthorizedReleaseKeySet.from_document(body["release_keys"]),
            signatures=tuple(Signature.from_record(s) for s in document["signatures"]),
            signed_body=body,
        )

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "ReleaseManifest":
        try:
            document = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestFormatError(f"Manifest is not valid JSON: {e}")
        return cls.from_document(document)

    @classmethod
    def from_file(cls, path: Path) -> "ReleaseManifest":
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise ManifestFormatError(f"Cannot read manifest {path}: {e}")
        return cls.from_json(data)

    @property
    def canonical_body(self) -> bytes:
        return canonical_bytes(self.signed_body)

    @property
    def digest(self) -> str:
        """``sha256:<hex>`` of the canonical signed body."""
        return canonical_digest(self.signed_body)

    def to_document(self) -> Dict[str, Any]:
        return {
            "signed": self.signed_body,
            "signatures": [s.to_record() for s in self.signatures],
        }


def sign_release_key_set(
    release_keys: Iterable[Key],
    threshold: int,
    signers: Sequence[Any],
    revoked: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """
    Build a release-key-set document signed by ``signers``.

    Args:
        release_keys: Keys to authorize
        threshold: Release signatures required on manifests
        signers: Root key pairs (anything with ``sign_body``)
        revoked: Key identifiers to revoke

    Returns:
        Release key set document
    """
    body: Dict[str, Any] = {
        "keys": [key.to_record() for key in release_keys],
        "threshold": threshold,
        "revoked": sorted(revoked or []),
    }
    return {
        "signed": body,
        "signatures": [signer.sign_body(body).to_record() for signer in signers],
    }


def sign_manifest(
    product: str,
    version: str,
    artifacts: Iterable[Artifact],
    release_key_set: Dict[str, Any],
    signers: Sequence[Any],
) -> Dict[str, Any]:
    """Build a release manifest document signed by ``signers``."""
    body: Dict[str, Any] = {
        "product": product,
        "version": version,
        "artifacts": [artifact.to_record() for artifact in artifacts],
        "release_keys": release_key_set,
    }
    return {
        "signed": body,
        "signatures": [signer.sign_body(body).to_record() for signer in signers],
    }


