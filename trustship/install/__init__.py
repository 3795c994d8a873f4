"""
Trustship - Install Module

Installation state machine, state store, lock, downloads and staging.
"""

from .download import DownloadClient, RetryPolicy
from .lifecycle import (
    InstallOptions,
    InstallOutcome,
    InstallResult,
    InstallRun,
    InstallState,
    RemoveResult,
)
from .lock import InstallationLock, LockGuard, LockRecord, is_process_alive
from .manager import InstallationManager
from .staging import StagingArea, verify_artifact
from .state import CommitJournal, CommitRecord, InstalledEntry, StateStore

__all__ = [
    "DownloadClient",
    "RetryPolicy",
    "InstallOptions",
    "InstallOutcome",
    "InstallResult",
    "InstallRun",
    "InstallState",
    "RemoveResult",
    "InstallationLock",
    "LockGuard",
    "LockRecord",
    "is_process_alive",
    "InstallationManager",
    "StagingArea",
    "verify_artifact",
    "CommitJournal",
    "CommitRecord",
    "InstalledEntry",
    "StateStore",
]
