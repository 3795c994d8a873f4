"""
Signature Verifier

Verifies signatures over canonical bytes against resolved keys.

Implemented algorithm:
- ecdsa-p256-sha256-asn1-spki-der: ECDSA over NIST P-256 with SHA-256,
  public keys as DER SubjectPublicKeyInfo, signatures as ASN.1 DER.

Also provides LocalKeyPair, the local signer used by the manifest signing
script and by test fixtures.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..core.exceptions import UnsupportedAlgorithmError
from .canonical import canonical_bytes
from .keys import Key, KeyRole, Signature, calculate_key_id

logger = logging.getLogger(__name__)


ECDSA_P256_SHA256 = "ecdsa-p256-sha256-asn1-spki-der"


def _verify_ecdsa_p256_sha256(message: bytes, signature: bytes, public_bytes: bytes) -> bool:
    try:
        public_key = serialization.load_der_public_key(public_bytes)
    except (ValueError, TypeError) as e:
        logger.warning(f"Unable to load P-256 public key: {e}")
        return False

    if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(
        public_key.curve, ec.SECP256R1
    ):
        logger.warning("Public key is not a P-256 key")
        return False

    try:
        public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False


_ALGORITHMS: Dict[str, Callable[[bytes, bytes, bytes], bool]] = {
    ECDSA_P256_SHA256: _verify_ecdsa_p256_sha256,
}


def supported_algorithms():
    return sorted(_ALGORITHMS)


class SignatureVerifier:
    """Stateless verifier dispatching on the key's algorithm tag."""

    def verify(self, message: bytes, signature: Signature, key: Key) -> bool:
        """
        Verify ``signature`` over ``message`` with ``key``.

        Args:
            message: Canonical bytes of the signed body
            signature: Signature record
            key: Resolved key the signature claims to come from

        Returns:
            True if the signature is valid, False on cryptographic mismatch

        Raises:
            UnsupportedAlgorithmError: If the key's algorithm is not implemented
        """
        verify_fn = _ALGORITHMS.get(key.algorithm)
        if verify_fn is None:
            raise UnsupportedAlgorithmError(key.algorithm, key_id=key.key_id)

        if signature.key_id != key.key_id:
            return False

        return verify_fn(message, signature.signature, key.public_bytes)


class LocalKeyPair:
    """An in-process P-256 key pair able to sign canonical bodies."""

    def __init__(
        self,
        private_key: ec.EllipticCurvePrivateKey,
        role: KeyRole,
        expiry: Optional[datetime] = None,
    ):
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise ValueError("Only P-256 private keys are supported")

        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        self._private_key = private_key
        self.public = Key(
            key_id=calculate_key_id(public_bytes),
            role=role,
            algorithm=ECDSA_P256_SHA256,
            public_bytes=public_bytes,
            expiry=expiry,
        )

    @classmethod
    def generate(cls, role: KeyRole, expiry: Optional[datetime] = None) -> "LocalKeyPair":
        return cls(ec.generate_private_key(ec.SECP256R1()), role, expiry)

    @classmethod
    def from_pem(
        cls,
        pem: bytes,
        role: KeyRole,
        expiry: Optional[datetime] = None,
    ) -> "LocalKeyPair":
        private_key = serialization.load_pem_private_key(pem, password=None)
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise ValueError("PEM does not contain an elliptic-curve private key")
        return cls(private_key, role, expiry)

    def to_pem(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @property
    def key_id(self) -> str:
        return self.public.key_id

    def sign(self, message: bytes) -> Signature:
        """Sign raw message bytes."""
        raw = self._private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        return Signature(key_id=self.key_id, signature=raw)

    def sign_body(self, body: Any) -> Signature:
        """Sign the canonical serialization of ``body``."""
        return self.sign(canonical_bytes(body))
