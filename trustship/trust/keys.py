"""
Keyring & Trust Root

Key model, the root of trust and the revocation list.

Keys are identified by the lowercase hex SHA-256 of their public-key bytes,
so an identifier can always be recomputed from the key material. The trust
root is an explicit value built from configuration and passed to the keyring;
there is no process-wide key state.
"""

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from ..core.config import TrustConfig
from ..core.exceptions import (
    ConfigError,
    ExpiredKeyError,
    ManifestFormatError,
    RevokedKeyError,
    UnknownKeyError,
)

logger = logging.getLogger(__name__)


class KeyRole(Enum):
    """Roles a key may hold. A key has exactly one role."""
    ROOT = "root"
    RELEASE = "release"


def calculate_key_id(public_bytes: bytes) -> str:
    """Derive the key identifier from raw public-key bytes."""
    return hashlib.sha256(public_bytes).hexdigest()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def decode_b64(value: Any, what: str) -> bytes:
    if not isinstance(value, str):
        raise ManifestFormatError(f"{what} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ManifestFormatError(f"{what} is not valid base64: {e}")


@dataclass(frozen=True)
class Key:
    """A public key with its role, algorithm and optional expiry."""
    key_id: str
    role: KeyRole
    algorithm: str
    public_bytes: bytes
    expiry: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Key":
        """
        Load a key from its document form.

        Args:
            record: Mapping with ``role``, ``algorithm``, ``public_key``
                (base64) and ``expiry`` (ISO-8601 or null). An optional
                ``key_id`` must match the identifier derived from the key.

        Returns:
            Immutable Key

        Raises:
            ManifestFormatError: If the record is malformed
        """
        if not isinstance(record, dict):
            raise ManifestFormatError("Key record must be an object")

        try:
            role = KeyRole(record.get("role"))
        except ValueError:
            raise ManifestFormatError(f"Unknown key role: {record.get('role')!r}")

        algorithm = record.get("algorithm")
        if not isinstance(algorithm, str) or not algorithm:
            raise ManifestFormatError("Key record is missing its algorithm")

        public_bytes = decode_b64(record.get("public_key"), "Key public_key")
        key_id = calculate_key_id(public_bytes)

        stated_id = record.get("key_id")
        if stated_id is not None and stated_id != key_id:
            raise ManifestFormatError(
                f"Key id {stated_id} does not match key material ({key_id})"
            )

        expiry = None
        expiry_value = record.get("expiry")
        if expiry_value is not None:
            try:
                expiry = parse_timestamp(expiry_value)
            except (AttributeError, TypeError, ValueError):
                raise ManifestFormatError(f"Invalid key expiry: {expiry_value!r}")

        return cls(
            key_id=key_id,
            role=role,
            algorithm=algorithm,
            public_bytes=public_bytes,
            expiry=expiry,
        )

    def to_record(self) -> Dict[str, Any]:
        """Document form of the key, the inverse of ``from_record``."""
        return {
            "key_id": self.key_id,
            "role": self.role.value,
            "algorithm": self.algorithm,
            "public_key": base64.b64encode(self.public_bytes).decode("ascii"),
            "expiry": format_timestamp(self.expiry) if self.expiry else None,
        }


@dataclass(frozen=True)
class Signature:
    """A signature made by ``key_id`` over a canonical body."""
    key_id: str
    signature: bytes

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Signature":
        if not isinstance(record, dict) or not isinstance(record.get("key_id"), str):
            raise ManifestFormatError("Signature record must have a string key_id")
        return cls(
            key_id=record["key_id"],
            signature=decode_b64(record.get("signature"), "Signature value"),
        )

    def to_record(self) -> Dict[str, str]:
        return {
            "key_id": self.key_id,
            "signature": base64.b64encode(self.signature).decode("ascii"),
        }


class RevocationList:
    """
    Set of revoked key identifiers.

    Monotonic: identifiers can be added but never removed.
    """

    def __init__(self, key_ids: Optional[Iterable[str]] = None):
        self._revoked: Set[str] = set(key_ids or ())

    def revoke(self, key_id: str) -> bool:
        """Revoke a key. Returns True if it was not already revoked."""
        if key_id in self._revoked:
            return False
        self._revoked.add(key_id)
        return True

    def extend(self, key_ids: Iterable[str]) -> List[str]:
        """Revoke several keys, returning the ones that were newly revoked."""
        return [key_id for key_id in key_ids if self.revoke(key_id)]

    def __contains__(self, key_id: object) -> bool:
        return key_id in self._revoked

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._revoked))

    def __len__(self) -> int:
        return len(self._revoked)


@dataclass
class TrustRoot:
    """
    Root keys plus the thresholds they enforce.

    ``release_threshold`` is a floor: a root-authorized release-key set may
    demand more release signatures, never fewer.
    """
    root_keys: Dict[str, Key]
    root_threshold: int
    release_threshold: int = 1
    revoked_keys: List[str] = field(default_factory=list)

    def __post_init__(self):
        for key in self.root_keys.values():
            if key.role is not KeyRole.ROOT:
                raise ConfigError(f"Trust root contains non-root key {key.key_id}")
        if self.root_threshold < 1:
            raise ConfigError("Root threshold must be at least 1")
        if self.root_threshold > len(self.root_keys):
            raise ConfigError(
                f"Root threshold {self.root_threshold} cannot be met by "
                f"{len(self.root_keys)} root keys"
            )
        if self.release_threshold < 1:
            raise ConfigError("Release threshold must be at least 1")

    @classmethod
    def from_keys(
        cls,
        keys: Iterable[Key],
        root_threshold: int,
        release_threshold: int = 1,
        revoked_keys: Optional[Iterable[str]] = None,
    ) -> "TrustRoot":
        return cls(
            root_keys={key.key_id: key for key in keys},
            root_threshold=root_threshold,
            release_threshold=release_threshold,
            revoked_keys=list(revoked_keys or ()),
        )

    @classmethod
    def from_config(cls, trust: TrustConfig) -> "TrustRoot":
        """Build the trust root from the ``trust`` configuration section."""
        keys = []
        for index, record in enumerate(trust.root_keys):
            try:
                keys.append(Key.from_record(record))
            except ManifestFormatError as e:
                raise ConfigError(f"Invalid root key #{index}: {e.message}")
        return cls.from_keys(
            keys,
            root_threshold=trust.root_threshold,
            release_threshold=trust.release_threshold,
            revoked_keys=trust.revoked_keys,
        )


class Keyring:
    """
    Resolves root keys and answers revocation and expiry questions.

    Built once per invocation from a TrustRoot. The only mutation after
    construction is accumulating revocations found in verified key sets.
    """

    def __init__(
        self,
        trust_root: TrustRoot,
        revocations: Optional[RevocationList] = None,
    ):
        self._trust_root = trust_root
        self._revocations = revocations if revocations is not None else RevocationList()
        self._revocations.extend(trust_root.revoked_keys)

    @property
    def trust_root(self) -> TrustRoot:
        return self._trust_root

    @property
    def root_threshold(self) -> int:
        return self._trust_root.root_threshold

    @property
    def release_threshold(self) -> int:
        return self._trust_root.release_threshold

    @property
    def revocations(self) -> RevocationList:
        return self._revocations

    def is_root_key(self, key_id: str) -> bool:
        return key_id in self._trust_root.root_keys

    def resolve(self, key_id: str) -> Key:
        """
        Resolve a root key by identifier.

        Raises:
            UnknownKeyError: If the key is not part of the trust root
        """
        key = self._trust_root.root_keys.get(key_id)
        if key is None:
            raise UnknownKeyError(key_id)
        return key

    def is_revoked(self, key_id: str) -> bool:
        return key_id in self._revocations

    @staticmethod
    def is_expired(key: Key, at_time: datetime) -> bool:
        """Keys without an expiry never expire. A naive ``at_time`` is taken as UTC."""
        if key.expiry is None:
            return False
        if at_time.tzinfo is None:
            at_time = at_time.replace(tzinfo=timezone.utc)
        return at_time >= key.expiry

    def check_usable(self, key: Key, at_time: datetime) -> None:
        """
        Ensure a key may contribute to a quorum at ``at_time``.

        Raises:
            RevokedKeyError: If the key is revoked
            ExpiredKeyError: If the key has expired
        """
        if self.is_revoked(key.key_id):
            raise RevokedKeyError(key.key_id)
        if self.is_expired(key, at_time):
            raise ExpiredKeyError(
                key.key_id,
                expiry=format_timestamp(key.expiry),
                at_time=format_timestamp(at_time),
            )

    def record_revocations(self, key_ids: Iterable[str]) -> List[str]:
        """Accumulate revocations discovered in a verified key set."""
        added = self._revocations.extend(key_ids)
        for key_id in added:
            logger.warning(f"Key revoked by authorized key set: {key_id}")
        return added
