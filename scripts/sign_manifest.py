#!/usr/bin/env python3
"""
Release Manifest Signing Script

Local publisher tooling for the two-level trust chain:

- genkey:         create a P-256 key pair (PEM) and its public key record
- sign-keyset:    root keys authorize a set of release keys
- sign-manifest:  release keys sign a product release manifest

Usage:
    python scripts/sign_manifest.py genkey --role root --out keys/root1.pem
    python scripts/sign_manifest.py sign-keyset --root-key keys/root1.pem \\
        --root-key keys/root2.pem --release-key-record keys/release1.pub.json \\
        --threshold 1 --output build/keyset.json
    python scripts/sign_manifest.py sign-manifest --product widget \\
        --version 1.0.0 --keyset build/keyset.json --release-key keys/release1.pem \\
        --artifact dist/widget-1.0.0.pkg --output build/manifest.json

Private keys are unencrypted PKCS#8 PEM; keep them off shared machines.
"""

import argparse
import hashlib
import json
import sys
from pathlib import Path
from typing import List, Optional

from trustship.core.exceptions import TrustshipError
from trustship.trust import (
    Artifact,
    Key,
    KeyRole,
    LocalKeyPair,
    sign_manifest,
    sign_release_key_set,
)
from trustship.trust.keys import parse_timestamp


_SUFFIX_FORMATS = [
    (".tar.xz", "tar.xz"),
    (".txz", "tar.xz"),
    (".tar.gz", "tar.gz"),
    (".tgz", "tar.gz"),
    (".tar", "tar"),
]


def compute_file_hash(file_path: Path) -> str:
    """Compute SHA256 hash of a file."""
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(8192):
            hasher.update(chunk)
    return hasher.hexdigest()


def infer_format(file_path: Path) -> str:
    name = file_path.name.lower()
    for suffix, fmt in _SUFFIX_FORMATS:
        if name.endswith(suffix):
            return fmt
    return "file"


def load_key_pair(path: Path, role: KeyRole) -> LocalKeyPair:
    with open(path, "rb") as f:
        return LocalKeyPair.from_pem(f.read(), role)


def describe_artifact(file_path: Path, url_prefix: str) -> Artifact:
    return Artifact(
        name=file_path.name,
        url=f"{url_prefix.rstrip('/')}/{file_path.name}",
        sha256=compute_file_hash(file_path),
        size=file_path.stat().st_size,
        format=infer_format(file_path),
    )


def write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.write("\n")


def cmd_genkey(args: argparse.Namespace) -> int:
    expiry = parse_timestamp(args.expiry) if args.expiry else None
    pair = LocalKeyPair.generate(KeyRole(args.role), expiry)

    args.out.parent.mkdir(parents=True, exist_ok=True)
    with open(args.out, "wb") as f:
        f.write(pair.to_pem())
    args.out.chmod(0o600)

    record_path = args.out.with_suffix(".pub.json")
    write_json(record_path, pair.public.to_record())

    print(f"Private key written to: {args.out}")
    print(f"Public key record written to: {record_path}")
    print(f"Key ID: {pair.key_id}")
    return 0


def cmd_sign_keyset(args: argparse.Namespace) -> int:
    root_pairs = [load_key_pair(path, KeyRole.ROOT) for path in args.root_key]

    release_keys: List[Key] = []
    for path in args.release_key_record:
        with open(path) as f:
            key = Key.from_record(json.load(f))
        if key.role is not KeyRole.RELEASE:
            print(f"ERROR: {path} is not a release key record", file=sys.stderr)
            return 1
        release_keys.append(key)

    document = sign_release_key_set(
        release_keys,
        threshold=args.threshold,
        signers=root_pairs,
        revoked=args.revoke,
    )
    write_json(args.output, document)

    print(f"Authorized {len(release_keys)} release keys (threshold {args.threshold})")
    for key in release_keys:
        print(f"  - {key.key_id}")
    print(f"Signed by {len(root_pairs)} root keys")
    print(f"Key set written to: {args.output}")
    return 0


def cmd_sign_manifest(args: argparse.Namespace) -> int:
    with open(args.keyset) as f:
        keyset = json.load(f)

    release_pairs = [load_key_pair(path, KeyRole.RELEASE) for path in args.release_key]
    url_prefix = args.url_prefix or f"artifacts/{args.product}/{args.version}"
    artifacts = [describe_artifact(path, url_prefix) for path in args.artifact]

    for artifact in artifacts:
        print(f"  - {artifact.name} ({artifact.format}, {artifact.size} bytes, sha256:{artifact.sha256[:16]}...)")

    document = sign_manifest(
        args.product,
        args.version,
        artifacts,
        keyset,
        signers=release_pairs,
    )
    write_json(args.output, document)

    print(f"Manifest for {args.product} {args.version} signed by {len(release_pairs)} release keys")
    print(f"Manifest written to: {args.output}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sign release key sets and manifests")
    subparsers = parser.add_subparsers(dest="command", required=True)

    genkey = subparsers.add_parser("genkey", help="Generate a P-256 key pair")
    genkey.add_argument("--role", choices=[r.value for r in KeyRole], required=True)
    genkey.add_argument("--out", type=Path, required=True, help="Private key PEM path")
    genkey.add_argument("--expiry", help="Key expiry (ISO-8601)")

    keyset = subparsers.add_parser("sign-keyset", help="Authorize release keys with root keys")
    keyset.add_argument("--root-key", type=Path, action="append", required=True)
    keyset.add_argument("--release-key-record", type=Path, action="append", required=True)
    keyset.add_argument("--threshold", type=int, default=1)
    keyset.add_argument("--revoke", action="append", default=[], help="Key ID to revoke")
    keyset.add_argument("--output", type=Path, required=True)

    manifest = subparsers.add_parser("sign-manifest", help="Sign a release manifest")
    manifest.add_argument("--product", required=True)
    manifest.add_argument("--version", required=True)
    manifest.add_argument("--keyset", type=Path, required=True)
    manifest.add_argument("--release-key", type=Path, action="append", required=True)
    manifest.add_argument("--artifact", type=Path, action="append", required=True)
    manifest.add_argument("--url-prefix", help="Artifact URL prefix (default: artifacts/<product>/<version>)")
    manifest.add_argument("--output", type=Path, required=True)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        if args.command == "genkey":
            return cmd_genkey(args)
        if args.command == "sign-keyset":
            return cmd_sign_keyset(args)
        return cmd_sign_manifest(args)
    except (OSError, ValueError, TrustshipError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
