"""
Staging

Checksum verification of downloaded artifacts and their layout into a
temporary directory under the installation root. Staged content only becomes
an installation when the manager commits it.
"""

import hashlib
import io
import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import List

from ..core.exceptions import ChecksumMismatchError, FilesystemError
from ..trust.manifest import Artifact

logger = logging.getLogger(__name__)


_TAR_MODES = {
    "tar.xz": "r:xz",
    "tar.gz": "r:gz",
    "tar": "r:",
}


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def verify_artifact(artifact: Artifact, data: bytes) -> str:
    """
    Check downloaded bytes against the manifest declaration.

    Args:
        artifact: Declared artifact
        data: Downloaded bytes

    Returns:
        The verified hex digest

    Raises:
        ChecksumMismatchError: If the size or SHA-256 digest differs
    """
    actual_hash = sha256_hex(data)

    if len(data) != artifact.size or actual_hash != artifact.sha256:
        raise ChecksumMismatchError(
            f"Artifact {artifact.name} does not match its manifest entry",
            artifact=artifact.name,
            expected_hash=artifact.sha256,
            actual_hash=actual_hash,
            expected_size=artifact.size,
            actual_size=len(data),
        )

    logger.debug(f"Verified {artifact.name}: sha256={actual_hash[:16]}... size={len(data)}")
    return actual_hash


def _inside(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def _check_members(archive: tarfile.TarFile, destination: Path, artifact: Artifact) -> None:
    for member in archive.getmembers():
        target = destination / member.name
        if os.path.isabs(member.name) or not _inside(destination, target):
            raise FilesystemError(
                f"Archive {artifact.name} member escapes the staging directory: {member.name}",
                str(destination),
                "extract",
            )
        if member.issym() or member.islnk():
            link_base = target.parent if member.issym() else destination
            if os.path.isabs(member.linkname) or not _inside(destination, link_base / member.linkname):
                raise FilesystemError(
                    f"Archive {artifact.name} link escapes the staging directory: {member.name}",
                    str(destination),
                    "extract",
                )
        if member.isdev():
            raise FilesystemError(
                f"Archive {artifact.name} contains a device file: {member.name}",
                str(destination),
                "extract",
            )


class StagingArea:
    """Temporary directories for content awaiting commit."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def create(self, product: str, version: str) -> Path:
        """Create a fresh, uniquely named staging directory."""
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=f"{product}-{version}-", dir=str(self._root)))
        except OSError as e:
            raise FilesystemError(f"Cannot create staging directory: {e}", str(self._root), "stage")
        os.chmod(path, 0o755)
        logger.debug(f"Created staging directory {path}")
        return path

    def extract(self, artifact: Artifact, data: bytes, destination: Path) -> List[str]:
        """
        Lay out one verified artifact inside ``destination``.

        Archives are unpacked; plain files are written under the artifact name.

        Returns:
            Relative paths of the regular files written
        """
        if artifact.format == "file":
            target = destination / artifact.name
            try:
                with open(target, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise FilesystemError(f"Cannot stage {artifact.name}: {e}", str(target), "extract")
            return [artifact.name]

        mode = _TAR_MODES.get(artifact.format)
        if mode is None:
            raise FilesystemError(
                f"Unsupported artifact format {artifact.format!r} for {artifact.name}",
                str(destination),
                "extract",
            )

        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode=mode) as archive:
                _check_members(archive, destination, artifact)
                archive.extractall(str(destination), filter="data")
                files = [m.name for m in archive.getmembers() if m.isfile()]
        except (tarfile.TarError, EOFError) as e:
            raise FilesystemError(f"Cannot unpack {artifact.name}: {e}", str(destination), "extract")
        except OSError as e:
            raise FilesystemError(f"Cannot extract {artifact.name}: {e}", str(destination), "extract")

        logger.info(f"Extracted {artifact.name}: {len(files)} files")
        return files

    def discard(self, path: Path) -> None:
        """Remove a staging directory if it still exists."""
        if not path.exists():
            return
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Discarded staging directory {path}")

    def purge(self) -> int:
        """Remove every staging directory; only safe while holding the lock."""
        if not self._root.exists():
            return 0
        count = 0
        for entry in self._root.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink()
            count += 1
        if count:
            logger.warning(f"Purged {count} leftover staging entries from {self._root}")
        return count
