"""
Installation State Store

Durable record of committed installations plus the commit journal used to
recover from a crash inside the commit step.

Files are never modified in place: every write goes to a temporary file in
the same directory, is fsynced, and replaces the previous file with
``os.replace``. A reader therefore always sees a complete snapshot, which is
why listing needs no lock. Mutations require an active lock guard.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import FilesystemError
from ..trust.keys import parse_timestamp

logger = logging.getLogger(__name__)


STATE_FORMAT_VERSION = 1


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Write ``data`` as JSON to ``path`` atomically.

    Raises:
        FilesystemError: If the file cannot be written or replaced
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as e:
        raise FilesystemError(f"Cannot create temp file for {path}: {e}", str(path), "write")

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except OSError as e:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise FilesystemError(f"Failed to write {path}: {e}", str(path), "write")
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise

    _fsync_dir(path.parent)


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file, returning None when it does not exist."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FilesystemError(f"Corrupt JSON file {path}: {e}", str(path), "read")
    except OSError as e:
        raise FilesystemError(f"Cannot read {path}: {e}", str(path), "read")


@dataclass(frozen=True)
class InstalledEntry:
    """A fully committed product version."""
    product: str
    version: str
    install_path: str
    installed_at: datetime
    manifest_digest: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.product, self.version)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product,
            "version": self.version,
            "install_path": self.install_path,
            "installed_at": self.installed_at.isoformat(),
            "manifest_digest": self.manifest_digest,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstalledEntry":
        return cls(
            product=data["product"],
            version=data["version"],
            install_path=data["install_path"],
            installed_at=parse_timestamp(data["installed_at"]),
            manifest_digest=data["manifest_digest"],
        )

    @classmethod
    def create(
        cls,
        product: str,
        version: str,
        install_path: Path,
        manifest_digest: str,
        installed_at: Optional[datetime] = None,
    ) -> "InstalledEntry":
        return cls(
            product=product,
            version=version,
            install_path=str(install_path),
            installed_at=installed_at or datetime.now(timezone.utc),
            manifest_digest=manifest_digest,
        )


def _require_guard(guard: Any) -> None:
    if guard is None or not getattr(guard, "active", False):
        raise FilesystemError(
            "State mutation attempted without holding the installation lock",
            operation="write",
        )


class StateStore:
    """Reads and atomically rewrites the installation state file."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[Tuple[str, str], InstalledEntry]:
        """
        Load all committed entries.

        Returns:
            Mapping of (product, version) to entry; empty if no state exists

        Raises:
            FilesystemError: If the state file is unreadable or corrupt
        """
        data = read_json(self._path)
        if data is None:
            return {}

        if not isinstance(data, dict) or not isinstance(data.get("installed"), list):
            raise FilesystemError(f"Malformed state file {self._path}", str(self._path), "read")

        entries: Dict[Tuple[str, str], InstalledEntry] = {}
        for record in data["installed"]:
            try:
                entry = InstalledEntry.from_dict(record)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise FilesystemError(
                    f"Malformed state entry in {self._path}: {e}",
                    str(self._path),
                    "read",
                )
            entries[entry.key] = entry
        return entries

    def get(self, product: str, version: str) -> Optional[InstalledEntry]:
        return self.load().get((product, version))

    def list_entries(self) -> List[InstalledEntry]:
        return sorted(self.load().values(), key=lambda e: e.key)

    def _write(self, entries: Dict[Tuple[str, str], InstalledEntry]) -> None:
        atomic_write_json(
            self._path,
            {
                "version": STATE_FORMAT_VERSION,
                "installed": [entries[k].to_dict() for k in sorted(entries)],
            },
        )

    def put(self, entry: InstalledEntry, guard: Any) -> None:
        """Insert or replace an entry. Requires an active lock guard."""
        _require_guard(guard)
        entries = self.load()
        entries[entry.key] = entry
        self._write(entries)
        logger.info(f"Recorded installation {entry.product} {entry.version}")

    def remove(self, product: str, version: str, guard: Any) -> Optional[InstalledEntry]:
        """Remove an entry, returning it if it existed. Requires an active lock guard."""
        _require_guard(guard)
        entries = self.load()
        removed = entries.pop((product, version), None)
        if removed is not None:
            self._write(entries)
            logger.info(f"Removed installation record {product} {version}")
        return removed


@dataclass
class CommitRecord:
    """A commit in flight: staged content about to become an installation."""
    product: str
    version: str
    staged_path: str
    install_path: str
    manifest_digest: str
    displaced_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product,
            "version": self.version,
            "staged_path": self.staged_path,
            "install_path": self.install_path,
            "manifest_digest": self.manifest_digest,
            "displaced_path": self.displaced_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommitRecord":
        return cls(
            product=data["product"],
            version=data["version"],
            staged_path=data["staged_path"],
            install_path=data["install_path"],
            manifest_digest=data["manifest_digest"],
            displaced_path=data.get("displaced_path"),
        )


class CommitJournal:
    """Single-slot journal describing the commit currently in progress."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, record: CommitRecord, guard: Any) -> None:
        _require_guard(guard)
        atomic_write_json(self._path, record.to_dict())

    def read(self) -> Optional[CommitRecord]:
        data = read_json(self._path)
        if data is None:
            return None
        try:
            return CommitRecord.from_dict(data)
        except (KeyError, TypeError) as e:
            raise FilesystemError(f"Malformed commit journal {self._path}: {e}", str(self._path), "read")

    def clear(self, guard: Any) -> None:
        _require_guard(guard)
        try:
            self._path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise FilesystemError(f"Cannot clear commit journal: {e}", str(self._path), "delete")
        _fsync_dir(self._path.parent)
