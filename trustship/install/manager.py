"""
Installation Manager

Drives one product version through fetch, trust verification, download,
checksum verification, staging and commit.

Nothing is downloaded unless the manifest is trusted, nothing is staged
unless every artifact matches its declared digest and size, and the state
store only learns about an installation once its content is in place.

Commit protocol (all under the installation lock):

1. Write the commit journal describing the pending commit.
2. Move any existing install directory aside into the trash.
3. Rename the staging directory onto the install path.
4. Write the state entry.
5. Clear the journal and delete the displaced directory.

The rename in step 3 is the commit point. Recovery rolls a pending journal
back when the staging directory still exists or the install path is missing,
and forward otherwise.
"""

import logging
import os
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..core.config import Config
from ..core.exceptions import (
    FilesystemError,
    ManifestFormatError,
    NotInstalledError,
    TrustshipError,
)
from ..trust.evaluator import ManifestTrustEvaluator, TrustEvaluation
from ..trust.keys import Keyring, TrustRoot
from ..trust.manifest import ReleaseManifest
from .download import DownloadClient
from .lifecycle import (
    InstallOptions,
    InstallOutcome,
    InstallResult,
    InstallRun,
    InstallState,
    RemoveResult,
)
from .lock import InstallationLock, LockGuard, ProcessProbe, is_process_alive
from .staging import StagingArea, verify_artifact
from .state import CommitJournal, CommitRecord, InstalledEntry, StateStore

logger = logging.getLogger(__name__)


class InstallationManager:
    """
    Installs and removes signed product releases under one installation root.

    Args:
        config: Trustship configuration
        trust_root: Root of trust (built from ``config.trust`` when omitted)
        client: Download client to use; when omitted one is opened per call
        is_process_alive: Liveness probe used to detect stale locks
        evaluator: Manifest trust evaluator
    """

    def __init__(
        self,
        config: Config,
        trust_root: Optional[TrustRoot] = None,
        client: Optional[DownloadClient] = None,
        is_process_alive: ProcessProbe = is_process_alive,
        evaluator: Optional[ManifestTrustEvaluator] = None,
    ):
        self._config = config
        self._paths = config.paths
        self._trust_root = trust_root
        self._keyring: Optional[Keyring] = None
        self._evaluator = evaluator or ManifestTrustEvaluator()
        self._client = client

        self._state = StateStore(self._paths.state_file)
        self._journal = CommitJournal(self._paths.journal_file)
        self._staging = StagingArea(self._paths.staging_dir)
        self._lock = InstallationLock(
            self._paths.lock_file,
            is_process_alive=is_process_alive,
            poll_interval=config.lock.poll_interval_seconds,
        )

    @property
    def keyring(self) -> Keyring:
        """Keyring for this invocation, built from the trust root on first use."""
        if self._keyring is None:
            if self._trust_root is None:
                self._trust_root = TrustRoot.from_config(self._config.trust)
            self._keyring = Keyring(self._trust_root)
        return self._keyring

    @property
    def state_store(self) -> StateStore:
        return self._state

    @property
    def lock(self) -> InstallationLock:
        return self._lock

    @asynccontextmanager
    async def _open_client(self) -> AsyncIterator[Any]:
        if self._client is not None:
            yield self._client
            return
        async with DownloadClient(self._config.network) as client:
            yield client

    async def _acquire(self, timeout: Optional[float]) -> LockGuard:
        if timeout is None:
            timeout = self._config.lock.timeout_seconds
        return await self._lock.acquire(timeout)

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    def list_installed(self) -> List[InstalledEntry]:
        """Committed installations, sorted by product and version. Takes no lock."""
        return self._state.list_entries()

    def verify_manifest(
        self,
        manifest: Union[ReleaseManifest, Dict[str, Any], str, Path],
    ) -> TrustEvaluation:
        """
        Evaluate a manifest without locking, downloading or writing anything.

        Args:
            manifest: Parsed manifest, decoded document, or path to a manifest file

        Returns:
            TrustEvaluation (callers decide what to do with a rejection)
        """
        if isinstance(manifest, (str, Path)):
            manifest = ReleaseManifest.from_file(Path(manifest))
        elif isinstance(manifest, dict):
            manifest = ReleaseManifest.from_document(manifest)
        return self._evaluator.evaluate(manifest, self.keyring)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def install(
        self,
        product: str,
        version: str,
        options: Optional[InstallOptions] = None,
    ) -> InstallResult:
        """
        Install a product version.

        Args:
            product: Product name
            version: Exact version
            options: Force reinstall and lock wait overrides

        Returns:
            InstallResult with outcome INSTALLED or ALREADY_INSTALLED

        Raises:
            LockBusyError: Another live invocation holds the lock
            ManifestTrustError: The manifest failed the trust chain
            DownloadFailedError: An artifact could not be fetched
            ChecksumMismatchError: An artifact's bytes do not match the manifest
            FilesystemError: Staging or commit failed
        """
        options = options or InstallOptions()
        run = InstallRun(product, version)
        staged: Optional[Path] = None

        try:
            run.transition(InstallState.FETCHING_MANIFEST)
            guard = await self._acquire(options.lock_timeout)
            with guard:
                self._recover_locked(guard)

                async with self._open_client() as client:
                    raw = await client.fetch_manifest(product, version)

                    run.transition(InstallState.VERIFYING_MANIFEST)
                    manifest = ReleaseManifest.from_json(raw)
                    if (manifest.product, manifest.version) != (product, version):
                        raise ManifestFormatError(
                            f"Server returned manifest for {manifest.product} "
                            f"{manifest.version}, expected {product} {version}"
                        )
                    evaluation = self._evaluator.evaluate(manifest, self.keyring)
                    evaluation.raise_for_verdict()

                    run.transition(InstallState.RESOLVING_ARTIFACTS)
                    existing = self._state.get(product, version)
                    if (
                        existing is not None
                        and existing.manifest_digest == manifest.digest
                        and not options.force
                    ):
                        run.transition(InstallState.DONE)
                        logger.info(f"{product} {version} is already installed at {existing.install_path}")
                        return InstallResult(
                            product=product,
                            version=version,
                            outcome=InstallOutcome.ALREADY_INSTALLED,
                            install_path=existing.install_path,
                            manifest_digest=existing.manifest_digest,
                            evaluation=evaluation,
                            history=[s.value for s in run.history],
                        )

                    run.transition(InstallState.DOWNLOADING)
                    payloads = await client.fetch_artifacts(manifest.artifacts)

                run.transition(InstallState.VERIFYING_ARTIFACTS)
                for artifact in manifest.artifacts:
                    verify_artifact(artifact, payloads[artifact.name])

                run.transition(InstallState.STAGING)
                staged = self._staging.create(product, version)
                for artifact in manifest.artifacts:
                    self._staging.extract(artifact, payloads[artifact.name], staged)

                run.transition(InstallState.COMMITTING)
                install_path = self._commit(manifest, staged, guard)

                run.transition(InstallState.DONE)
                return InstallResult(
                    product=product,
                    version=version,
                    outcome=InstallOutcome.INSTALLED,
                    install_path=str(install_path),
                    manifest_digest=manifest.digest,
                    evaluation=evaluation,
                    history=[s.value for s in run.history],
                )

        except TrustshipError as e:
            e.details.setdefault("failed_state", run.state.value)
            if not run.terminal:
                run.transition(InstallState.FAILED)
            raise
        except BaseException:
            if not run.terminal:
                run.transition(InstallState.FAILED)
            raise
        finally:
            if staged is not None:
                self._staging.discard(staged)

    def _commit(self, manifest: ReleaseManifest, staged: Path, guard: LockGuard) -> Path:
        install_path = self._paths.install_path(manifest.product, manifest.version)
        displaced: Optional[Path] = None
        if install_path.exists() or install_path.is_symlink():
            displaced = self._paths.trash_dir / f"{manifest.product}-{manifest.version}-{uuid.uuid4().hex}"

        record = CommitRecord(
            product=manifest.product,
            version=manifest.version,
            staged_path=str(staged),
            install_path=str(install_path),
            manifest_digest=manifest.digest,
            displaced_path=str(displaced) if displaced else None,
        )
        self._journal.write(record, guard)

        try:
            install_path.parent.mkdir(parents=True, exist_ok=True)
            if displaced is not None:
                displaced.parent.mkdir(parents=True, exist_ok=True)
                os.rename(install_path, displaced)
            os.rename(staged, install_path)
        except OSError as e:
            self._roll_back(record, guard)
            raise FilesystemError(f"Cannot move staged content into place: {e}", str(install_path), "commit")

        self._finalize(record, guard)
        return install_path

    def _finalize(self, record: CommitRecord, guard: LockGuard) -> None:
        entry = InstalledEntry.create(
            record.product,
            record.version,
            Path(record.install_path),
            record.manifest_digest,
        )
        self._state.put(entry, guard)
        self._journal.clear(guard)
        if record.displaced_path:
            shutil.rmtree(record.displaced_path, ignore_errors=True)

    def _roll_back(self, record: CommitRecord, guard: LockGuard) -> None:
        install_path = Path(record.install_path)
        if record.displaced_path:
            displaced = Path(record.displaced_path)
            if displaced.exists() and not install_path.exists():
                try:
                    os.rename(displaced, install_path)
                except OSError as e:
                    raise FilesystemError(
                        f"Cannot restore previous installation: {e}",
                        str(install_path),
                        "rollback",
                    )
        self._staging.discard(Path(record.staged_path))
        self._journal.clear(guard)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _recover_locked(self, guard: LockGuard) -> Optional[str]:
        record = self._journal.read()
        outcome = None

        if record is not None:
            if Path(record.staged_path).exists() or not Path(record.install_path).exists():
                self._roll_back(record, guard)
                outcome = "rolled_back"
            else:
                self._finalize(record, guard)
                outcome = "rolled_forward"
            logger.warning(f"Recovered interrupted commit of {record.product} {record.version}: {outcome}")

        self._staging.purge()
        trash = self._paths.trash_dir
        if trash.exists():
            for entry in trash.iterdir():
                shutil.rmtree(entry, ignore_errors=True)

        return outcome

    async def recover(self, lock_timeout: Optional[float] = None) -> Optional[str]:
        """
        Resolve a commit left pending by an interrupted invocation.

        Returns:
            "rolled_back", "rolled_forward", or None if nothing was pending
        """
        guard = await self._acquire(lock_timeout)
        with guard:
            return self._recover_locked(guard)

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------

    async def remove(
        self,
        product: str,
        version: str,
        lock_timeout: Optional[float] = None,
    ) -> RemoveResult:
        """
        Remove an installed product version.

        The state entry is dropped before the directory is deleted, so an
        interruption can leave an orphaned directory but never an entry
        pointing at missing content.

        Raises:
            NotInstalledError: If the version has no committed entry
            LockBusyError: Another live invocation holds the lock
        """
        guard = await self._acquire(lock_timeout)
        with guard:
            self._recover_locked(guard)

            entry = self._state.get(product, version)
            if entry is None:
                raise NotInstalledError(product, version)

            self._state.remove(product, version, guard)

            install_path = Path(entry.install_path)
            if install_path.exists():
                doomed = self._paths.trash_dir / f"{product}-{version}-{uuid.uuid4().hex}"
                try:
                    doomed.parent.mkdir(parents=True, exist_ok=True)
                    os.rename(install_path, doomed)
                except OSError as e:
                    raise FilesystemError(f"Cannot remove {install_path}: {e}", str(install_path), "remove")
                shutil.rmtree(doomed, ignore_errors=True)

            product_dir = install_path.parent
            try:
                product_dir.rmdir()
            except OSError:
                pass

        logger.info(f"Removed {product} {version}")
        return RemoveResult(product=product, version=version, install_path=entry.install_path)
