"""
Trustship - Test Configuration

Repo root discovery plus fixtures that build throwaway trust roots, signed
manifests and an in-memory release server.
"""

import hashlib
import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest


def discover_repo_root() -> Path:
    """
    Discover the repository root.

    Priority:
    1. TRUSTSHIP_REPO_ROOT environment variable
    2. Git rev-parse --show-toplevel
    3. Path traversal from conftest.py location
    """
    env_root = os.environ.get("TRUSTSHIP_REPO_ROOT")
    if env_root:
        root = Path(env_root)
        if root.is_dir() and (root / "pyproject.toml").is_file():
            return root

    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=Path(__file__).parent,
        )
        git_root = Path(result.stdout.strip())
        if git_root.is_dir() and (git_root / "pyproject.toml").is_file():
            return git_root
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass

    current = Path(__file__).resolve().parent
    for _ in range(10):
        if (current / "pyproject.toml").is_file():
            return current
        parent = current.parent
        if parent == current:
            break
        current = parent

    raise RuntimeError(
        "Could not discover repo root. Set TRUSTSHIP_REPO_ROOT environment variable "
        "or ensure tests are run from within the repository."
    )


REPO_ROOT = discover_repo_root()

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


from trustship.core.config import Config  # noqa: E402
from trustship.install import InstallationManager  # noqa: E402
from trustship.trust import (  # noqa: E402
    Artifact,
    Keyring,
    KeyRole,
    LocalKeyPair,
    TrustRoot,
    sign_manifest,
    sign_release_key_set,
)


WIDGET_PAYLOAD = b"widget 1.0.0 release payload\n" * 64


def widget_artifact(payload: bytes = WIDGET_PAYLOAD, **overrides: Any) -> Artifact:
    fields = {
        "name": "widget-1.0.0.pkg",
        "url": "artifacts/widget/1.0.0/widget-1.0.0.pkg",
        "sha256": hashlib.sha256(payload).hexdigest(),
        "size": len(payload),
        "format": "file",
    }
    fields.update(overrides)
    return Artifact(**fields)


@pytest.fixture(scope="session")
def repo_root() -> Path:
    """Fixture providing the repository root path."""
    return REPO_ROOT


@pytest.fixture
def root_keys() -> List[LocalKeyPair]:
    """Three throwaway root key pairs."""
    return [LocalKeyPair.generate(KeyRole.ROOT) for _ in range(3)]


@pytest.fixture
def release_key() -> LocalKeyPair:
    return LocalKeyPair.generate(KeyRole.RELEASE)


@pytest.fixture
def trust_root(root_keys) -> TrustRoot:
    """2-of-3 root trust, release floor of 1."""
    return TrustRoot.from_keys([k.public for k in root_keys], root_threshold=2)


@pytest.fixture
def keyring(trust_root) -> Keyring:
    return Keyring(trust_root)


@pytest.fixture
def make_manifest(root_keys, release_key) -> Callable[..., Dict[str, Any]]:
    """
    Factory for signed manifest documents.

    Defaults to widget 1.0.0 with one artifact, a key set authorizing
    ``release_key`` signed by two of the three root keys, and the manifest
    signed by ``release_key``.
    """

    def factory(
        product: str = "widget",
        version: str = "1.0.0",
        artifacts: Optional[Iterable[Artifact]] = None,
        authorized: Optional[Iterable[Any]] = None,
        release_threshold: int = 1,
        revoked: Optional[Iterable[str]] = None,
        root_signers: Optional[Iterable[LocalKeyPair]] = None,
        release_signers: Optional[Iterable[LocalKeyPair]] = None,
    ) -> Dict[str, Any]:
        authorized_keys = [
            getattr(k, "public", k) for k in (authorized if authorized is not None else [release_key])
        ]
        key_set = sign_release_key_set(
            authorized_keys,
            threshold=release_threshold,
            signers=list(root_signers) if root_signers is not None else root_keys[:2],
            revoked=revoked,
        )
        return sign_manifest(
            product,
            version,
            list(artifacts) if artifacts is not None else [widget_artifact()],
            key_set,
            signers=list(release_signers) if release_signers is not None else [release_key],
        )

    return factory


class FakeReleaseServer:
    """In-memory stand-in for the download client that counts fetches."""

    def __init__(self):
        self.manifests: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.blobs: Dict[str, bytes] = {}
        self.manifest_fetches = 0
        self.artifact_fetches = 0

    def publish(self, document: Dict[str, Any], blobs: Optional[Dict[str, bytes]] = None) -> None:
        body = document["signed"]
        self.manifests[(body["product"], body["version"])] = document
        for name, data in (blobs or {}).items():
            self.blobs[name] = data

    async def fetch_manifest(self, product: str, version: str) -> bytes:
        from trustship.core.exceptions import DownloadFailedError

        self.manifest_fetches += 1
        document = self.manifests.get((product, version))
        if document is None:
            raise DownloadFailedError(f"No release {product} {version}", status=404, attempts=1)
        return json.dumps(document).encode("utf-8")

    async def fetch_artifacts(self, artifacts: Iterable[Artifact]) -> Dict[str, bytes]:
        payloads = {}
        for artifact in artifacts:
            self.artifact_fetches += 1
            payloads[artifact.name] = self.blobs[artifact.name]
        return payloads


@pytest.fixture
def release_server() -> FakeReleaseServer:
    return FakeReleaseServer()


@pytest.fixture
def config(tmp_path) -> Config:
    """Configuration rooted in a temporary directory with short waits."""
    return Config.from_dict({
        "paths": {"root": str(tmp_path / "root")},
        "lock": {"timeout_seconds": 0.3, "poll_interval_seconds": 0.05},
        "network": {
            "base_url": "http://releases.invalid",
            "max_attempts": 3,
            "backoff_base_seconds": 0.01,
            "backoff_max_seconds": 0.02,
        },
    })


@pytest.fixture
def manager(config, trust_root, release_server) -> InstallationManager:
    return InstallationManager(
        config,
        trust_root=trust_root,
        client=release_server,
        is_process_alive=lambda pid: True,
    )
