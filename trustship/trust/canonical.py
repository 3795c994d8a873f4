"""
Canonical Serialization

The single byte encoding of a signed body, shared by signer and verifier:
JSON with object keys sorted lexicographically, no insignificant whitespace,
UTF-8 with non-ASCII characters kept literal.

Only dicts with string keys, lists, strings, integers, booleans and None are
accepted. Floats are rejected so number formatting never differs between
implementations.
"""

import hashlib
import json
from typing import Any

from ..core.exceptions import CanonicalizationError


def _check(value: Any, path: str) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise CanonicalizationError(
                    f"Object key must be a string, got {type(k).__name__}",
                    path=path,
                )
            _check(v, f"{path}.{k}")
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check(item, f"{path}[{i}]")
        return
    raise CanonicalizationError(
        f"Value of type {type(value).__name__} cannot be canonically serialized",
        path=path,
    )


def canonical_bytes(value: Any) -> bytes:
    """
    Serialize a value to its canonical byte form.

    Args:
        value: JSON-compatible value without floats

    Returns:
        Canonical UTF-8 bytes

    Raises:
        CanonicalizationError: If the value contains unsupported types
    """
    _check(value, "$")
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def canonical_digest(value: Any) -> str:
    """SHA-256 digest of the canonical form, as ``sha256:<hex>``."""
    return f"sha256:{hashlib.sha256(canonical_bytes(value)).hexdigest()}"
