"""
Tests for the Installation Lock

- A live holder makes acquisition fail with LockBusyError after the wait
- A dead holder's lock is reclaimed
- The guard releases on every exit path
"""

import fcntl
import json
import os
import socket
from datetime import datetime, timezone

import pytest

from trustship.core.exceptions import LockBusyError
from trustship.install.lock import InstallationLock, LockRecord, is_process_alive


def write_foreign_lock(path, pid=999999, hostname=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    record = LockRecord(
        pid=pid,
        hostname=hostname or socket.gethostname(),
        acquired_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    path.write_text(json.dumps(record.to_dict()))
    return record


class TestInstallationLock:

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, tmp_path):
        lock = InstallationLock(tmp_path / "install.lock")

        guard = await lock.acquire(timeout=0.1)
        with guard:
            holder = lock.read_holder()
            assert holder.pid == os.getpid()
            assert holder.hostname == socket.gethostname()
            assert guard.active

        assert not guard.active
        assert not lock.path.exists()

    @pytest.mark.asyncio
    async def test_released_on_exception(self, tmp_path):
        lock = InstallationLock(tmp_path / "install.lock")

        with pytest.raises(RuntimeError):
            with await lock.acquire(timeout=0.1):
                raise RuntimeError("boom")

        assert not lock.path.exists()

    @pytest.mark.asyncio
    async def test_busy_when_holder_alive(self, tmp_path):
        path = tmp_path / "install.lock"
        foreign = write_foreign_lock(path, pid=4242)
        lock = InstallationLock(path, is_process_alive=lambda pid: True, poll_interval=0.02)

        with pytest.raises(LockBusyError) as exc_info:
            await lock.acquire(timeout=0.1)

        assert exc_info.value.holder["pid"] == 4242
        assert exc_info.value.waited_seconds >= 0.1
        assert lock.read_holder() == foreign

    @pytest.mark.asyncio
    async def test_second_acquirer_waits_for_first(self, tmp_path):
        path = tmp_path / "install.lock"
        first = InstallationLock(path, is_process_alive=lambda pid: True)
        second = InstallationLock(path, is_process_alive=lambda pid: True, poll_interval=0.02)

        with await first.acquire(timeout=0.1):
            with pytest.raises(LockBusyError):
                await second.acquire(timeout=0.05)

        with await second.acquire(timeout=0.1) as guard:
            assert guard.active

    @pytest.mark.asyncio
    async def test_stale_lock_reclaimed(self, tmp_path):
        path = tmp_path / "install.lock"
        write_foreign_lock(path, pid=4242)
        probed = []

        def dead(pid):
            probed.append(pid)
            return False

        lock = InstallationLock(path, is_process_alive=dead)

        with await lock.acquire(timeout=0.1):
            assert lock.read_holder().pid == os.getpid()

        assert probed == [4242]
        assert not path.exists()
        assert [p.name for p in tmp_path.iterdir()] == ["install.lock.reclaim"]

    @pytest.mark.asyncio
    async def test_foreign_host_never_reclaimed(self, tmp_path):
        path = tmp_path / "install.lock"
        write_foreign_lock(path, pid=4242, hostname="some-other-host")
        lock = InstallationLock(path, is_process_alive=lambda pid: False, poll_interval=0.02)

        with pytest.raises(LockBusyError):
            await lock.acquire(timeout=0.05)

    @pytest.mark.asyncio
    async def test_corrupt_lock_reclaimed(self, tmp_path):
        path = tmp_path / "install.lock"
        path.write_text("{garbage")
        lock = InstallationLock(path, is_process_alive=lambda pid: True)

        with await lock.acquire(timeout=0.1) as guard:
            assert guard.active

    @pytest.mark.asyncio
    async def test_release_leaves_foreign_lock(self, tmp_path):
        path = tmp_path / "install.lock"
        lock = InstallationLock(path)
        guard = await lock.acquire(timeout=0.1)

        # Another process took over after a reclaim.
        path.unlink()
        foreign = write_foreign_lock(path, pid=4242)
        guard.release()

        assert lock.read_holder() == foreign

    def test_late_reclaimer_leaves_new_holder(self, tmp_path):
        path = tmp_path / "install.lock"
        stale = write_foreign_lock(path, pid=4242)
        live = {1001, 1002}
        first = InstallationLock(path, is_process_alive=lambda pid: pid in live, pid=1001)
        second = InstallationLock(path, is_process_alive=lambda pid: pid in live, pid=1002)

        # Both saw the same stale record; the first one reclaims and takes over.
        assert second.read_holder() == stale
        guard = first.try_acquire()
        assert guard is not None

        assert not second._reclaim(stale)
        assert second.try_acquire() is None
        assert first.read_holder().pid == 1001

        guard.release()
        assert not path.exists()

    def test_reclaim_waits_for_concurrent_reclaimer(self, tmp_path):
        path = tmp_path / "install.lock"
        stale = write_foreign_lock(path, pid=4242)
        lock = InstallationLock(path, is_process_alive=lambda pid: False)

        with open(lock.reclaim_path, "a+") as other:
            fcntl.flock(other.fileno(), fcntl.LOCK_EX)
            assert lock.try_acquire() is None
            assert lock.read_holder() == stale
            fcntl.flock(other.fileno(), fcntl.LOCK_UN)

        guard = lock.try_acquire()
        assert guard is not None
        guard.release()

    def test_default_probe(self):
        assert is_process_alive(os.getpid())
        assert not is_process_alive(0)
