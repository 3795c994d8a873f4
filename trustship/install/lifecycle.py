"""
Installation Lifecycle

States, legal transitions and result records for one install run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.exceptions import InvalidTransitionError
from ..trust.evaluator import TrustEvaluation

logger = logging.getLogger(__name__)


class InstallState(Enum):
    """Installation pipeline states."""
    IDLE = "idle"
    FETCHING_MANIFEST = "fetching_manifest"
    VERIFYING_MANIFEST = "verifying_manifest"
    RESOLVING_ARTIFACTS = "resolving_artifacts"
    DOWNLOADING = "downloading"
    VERIFYING_ARTIFACTS = "verifying_artifacts"
    STAGING = "staging"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS = {
    InstallState.IDLE: {InstallState.FETCHING_MANIFEST},
    InstallState.FETCHING_MANIFEST: {InstallState.VERIFYING_MANIFEST},
    InstallState.VERIFYING_MANIFEST: {InstallState.RESOLVING_ARTIFACTS},
    InstallState.RESOLVING_ARTIFACTS: {InstallState.DOWNLOADING, InstallState.DONE},
    InstallState.DOWNLOADING: {InstallState.VERIFYING_ARTIFACTS},
    InstallState.VERIFYING_ARTIFACTS: {InstallState.STAGING},
    InstallState.STAGING: {InstallState.COMMITTING},
    InstallState.COMMITTING: {InstallState.DONE},
    InstallState.DONE: set(),
    InstallState.FAILED: set(),
}

TERMINAL_STATES = frozenset({InstallState.DONE, InstallState.FAILED})


class InstallOutcome(Enum):
    """Successful install outcomes."""
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already_installed"


@dataclass
class InstallOptions:
    """Per-call install options."""
    force: bool = False
    lock_timeout: Optional[float] = None


@dataclass
class InstallRun:
    """Tracks one pass through the installation state machine."""
    product: str
    version: str
    state: InstallState = InstallState.IDLE
    history: List[InstallState] = field(default_factory=lambda: [InstallState.IDLE])
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, target: InstallState) -> bool:
        if target is InstallState.FAILED:
            return not self.terminal
        return target in TRANSITIONS[self.state]

    def transition(self, target: InstallState) -> None:
        """
        Move to ``target``.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current state
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(self.state.value, target.value)

        log = logger.error if target is InstallState.FAILED else logger.info
        log(f"{self.product} {self.version}: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product,
            "version": self.version,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class InstallResult:
    """Outcome of a successful install call."""
    product: str
    version: str
    outcome: InstallOutcome
    install_path: str
    manifest_digest: str
    evaluation: Optional[TrustEvaluation] = None
    history: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product,
            "version": self.version,
            "outcome": self.outcome.value,
            "install_path": self.install_path,
            "manifest_digest": self.manifest_digest,
            "history": list(self.history),
        }


@dataclass
class RemoveResult:
    """Outcome of a successful remove call."""
    product: str
    version: str
    install_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product,
            "version": self.version,
            "install_path": self.install_path,
        }
