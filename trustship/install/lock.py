"""
Installation Lock

Serializes state-mutating operations against one installation root.

The lock file holds a JSON LockRecord (pid, hostname, acquisition time). It is
created by hard-linking a fully written temp file onto the lock path, so the
lock path either does not exist or holds a complete record.

A lock whose holder is confirmed dead is reclaimed. Reclaims are serialized by
an flock on the ``<lock>.reclaim`` sidecar, and the lock file is only deleted
after re-reading it under that flock. Liveness is an injected capability
(``is_process_alive(pid) -> bool``); holders on another host are always
treated as alive.
"""

import asyncio
import fcntl
import json
import logging
import os
import socket
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from ..core.exceptions import FilesystemError, LockBusyError
from ..trust.keys import parse_timestamp

logger = logging.getLogger(__name__)


ProcessProbe = Callable[[int], bool]


def is_process_alive(pid: int) -> bool:
    """Default liveness probe: signal 0 to the pid."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass(frozen=True)
class LockRecord:
    """Identity of the lock holder."""
    pid: int
    hostname: str
    acquired_at: datetime

    @classmethod
    def for_current_process(cls, pid: Optional[int] = None, hostname: Optional[str] = None) -> "LockRecord":
        return cls(
            pid=pid if pid is not None else os.getpid(),
            hostname=hostname or socket.gethostname(),
            acquired_at=datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "acquired_at": self.acquired_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockRecord":
        return cls(
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            acquired_at=parse_timestamp(data["acquired_at"]),
        )


class LockGuard:
    """
    Proof of lock ownership.

    Releases the lock when its ``with`` block exits, on any exit path.
    """

    def __init__(self, lock: "InstallationLock", record: LockRecord):
        self._lock = lock
        self.record = record
        self.active = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._lock._release(self.record)

    def __enter__(self) -> "LockGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class InstallationLock:
    """File-based mutual exclusion with stale-holder reclaim."""

    def __init__(
        self,
        path: Path,
        is_process_alive: ProcessProbe = is_process_alive,
        poll_interval: float = 0.25,
        pid: Optional[int] = None,
        hostname: Optional[str] = None,
    ):
        self._path = Path(path)
        self._is_process_alive = is_process_alive
        self._poll_interval = poll_interval
        self._pid = pid
        self._hostname = hostname or socket.gethostname()

    @property
    def path(self) -> Path:
        return self._path

    def read_holder(self) -> Optional[LockRecord]:
        """
        Return the current holder, or None if the lock is free.

        Raises:
            ValueError: If the lock file exists but holds no valid record
        """
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise FilesystemError(f"Cannot read lock file: {e}", str(self._path), "read")
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt lock file: {e}")

        try:
            return LockRecord.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Invalid lock record: {e}")

    def _create(self, record: LockRecord) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._path.parent),
            prefix=f".{self._path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.link(tmp_path, str(self._path))
            return True
        except FileExistsError:
            return False
        except OSError as e:
            raise FilesystemError(f"Cannot create lock file: {e}", str(self._path), "lock")
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    def _holder_is_dead(self, holder: LockRecord) -> bool:
        if holder.hostname != self._hostname:
            return False
        return not self._is_process_alive(holder.pid)

    @property
    def reclaim_path(self) -> Path:
        return self._path.with_name(f"{self._path.name}.reclaim")

    @contextmanager
    def _reclaim_guard(self) -> Iterator[bool]:
        """
        Hold the reclaim sidecar exclusively, without waiting.

        Yields False when another process is reclaiming. The kernel drops the
        flock if the holder dies, so the sidecar never goes stale.
        """
        try:
            handle = open(self.reclaim_path, "a+", encoding="utf-8")
        except OSError as e:
            raise FilesystemError(f"Cannot open reclaim file: {e}", str(self.reclaim_path), "lock")

        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                yield False
                return
            try:
                yield True
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _reclaim(self, stale: Optional[LockRecord]) -> bool:
        """
        Delete a stale lock file.

        Runs under the reclaim sidecar and re-reads the holder first, so only
        the exact record judged stale is ever removed. ``stale`` is None for a
        corrupt lock file.

        Returns:
            True if the lock path is now free, False if another process is
            reclaiming or the lock changed hands
        """
        with self._reclaim_guard() as exclusive:
            if not exclusive:
                return False

            try:
                current = self.read_holder()
            except ValueError:
                current = None
            else:
                if current is None:
                    return True

            if current != stale:
                return False

            try:
                self._path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise FilesystemError(f"Cannot reclaim lock file: {e}", str(self._path), "lock")

        logger.warning(
            f"Reclaimed stale installation lock"
            + (f" held by pid {stale.pid} since {stale.acquired_at.isoformat()}" if stale else "")
        )
        return True

    def try_acquire(self) -> Optional[LockGuard]:
        """Make one attempt to take the lock, reclaiming it if the holder is dead."""
        record = LockRecord.for_current_process(self._pid, self._hostname)
        if self._create(record):
            return LockGuard(self, record)

        try:
            holder = self.read_holder()
        except ValueError as e:
            # Lock files are created complete; an invalid one has no live owner.
            logger.warning(f"Ignoring invalid lock file {self._path}: {e}")
            holder = None
            if not self._reclaim(None):
                return None
        else:
            if holder is not None and not self._holder_is_dead(holder):
                return None
            if holder is not None and not self._reclaim(holder):
                return None

        if self._create(record):
            return LockGuard(self, record)
        return None

    async def acquire(self, timeout: float) -> LockGuard:
        """
        Acquire the lock, waiting up to ``timeout`` seconds.

        Args:
            timeout: Maximum seconds to wait for a live holder to release

        Returns:
            LockGuard to be used as a context manager

        Raises:
            LockBusyError: If a live process still holds the lock after the wait
        """
        started = time.monotonic()
        while True:
            guard = self.try_acquire()
            if guard is not None:
                logger.debug(f"Acquired installation lock {self._path}")
                return guard

            waited = time.monotonic() - started
            if waited >= timeout:
                try:
                    holder = self.read_holder()
                except ValueError:
                    holder = None
                raise LockBusyError(
                    f"Installation lock is held by another process: {self._path}",
                    lock_path=str(self._path),
                    holder=holder.to_dict() if holder else None,
                    waited_seconds=round(waited, 3),
                )
            await asyncio.sleep(min(self._poll_interval, timeout - waited))

    def _release(self, record: LockRecord) -> None:
        try:
            holder = self.read_holder()
        except ValueError:
            holder = None

        if holder != record:
            logger.warning(f"Installation lock {self._path} is no longer ours; leaving it")
            return

        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FilesystemError(f"Cannot release lock file: {e}", str(self._path), "unlock")
        logger.debug(f"Released installation lock {self._path}")
