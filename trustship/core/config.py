"""
Trustship Configuration Management

Centralized configuration for trust, network, paths and locking.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import ConfigError


DEFAULT_USER_AGENT = "trustship/1.0.0"


@dataclass
class TrustConfig:
    """Root of trust configuration."""
    root_keys: List[Dict[str, Any]] = field(default_factory=list)
    root_threshold: int = 1
    release_threshold: int = 1
    revoked_keys: List[str] = field(default_factory=list)


@dataclass
class NetworkConfig:
    """Download server and retry configuration."""
    base_url: str = "https://releases.example.com"
    attempt_timeout_seconds: float = 30.0
    max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    max_concurrent_downloads: int = 4
    auth_token: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT


@dataclass
class PathsConfig:
    """Installation root layout."""
    root: str = "~/.local/share/trustship"

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()

    @property
    def state_dir(self) -> Path:
        return self.root_path / "state"

    @property
    def state_file(self) -> Path:
        return self.state_dir / "installed.json"

    @property
    def journal_file(self) -> Path:
        return self.state_dir / "commit.json"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "install.lock"

    @property
    def staging_dir(self) -> Path:
        return self.root_path / "staging"

    @property
    def products_dir(self) -> Path:
        return self.root_path / "products"

    @property
    def trash_dir(self) -> Path:
        return self.root_path / "trash"

    def install_path(self, product: str, version: str) -> Path:
        """Final install location of a product version."""
        return self.products_dir / product / version


@dataclass
class LockConfig:
    """Installation lock configuration."""
    timeout_seconds: float = 10.0
    poll_interval_seconds: float = 0.25


@dataclass
class Config:
    """
    Main configuration class for Trustship.

    Aggregates all subsystem configurations.
    """
    trust: TrustConfig = field(default_factory=TrustConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    lock: LockConfig = field(default_factory=LockConfig)

    # Operational settings
    log_level: str = "INFO"

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object

        Raises:
            ConfigError: If the file is missing or not valid YAML
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {e}")

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        try:
            if "trust" in data:
                config.trust = TrustConfig(**data["trust"])
            if "network" in data:
                config.network = NetworkConfig(**data["network"])
            if "paths" in data:
                config.paths = PathsConfig(**data["paths"])
            if "lock" in data:
                config.lock = LockConfig(**data["lock"])
        except TypeError as e:
            raise ConfigError(f"Unknown configuration field: {e}")

        if "log_level" in data:
            config.log_level = data["log_level"]

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "trust": {
                "root_keys": list(self.trust.root_keys),
                "root_threshold": self.trust.root_threshold,
                "release_threshold": self.trust.release_threshold,
                "revoked_keys": list(self.trust.revoked_keys),
            },
            "network": {
                "base_url": self.network.base_url,
                "attempt_timeout_seconds": self.network.attempt_timeout_seconds,
                "max_attempts": self.network.max_attempts,
                "backoff_base_seconds": self.network.backoff_base_seconds,
                "backoff_max_seconds": self.network.backoff_max_seconds,
                "max_concurrent_downloads": self.network.max_concurrent_downloads,
                "auth_token": self.network.auth_token,
                "user_agent": self.network.user_agent,
            },
            "paths": {
                "root": self.paths.root,
            },
            "lock": {
                "timeout_seconds": self.lock.timeout_seconds,
                "poll_interval_seconds": self.lock.poll_interval_seconds,
            },
            "log_level": self.log_level,
        }

    def validate(self, require_trust: bool = True) -> List[str]:
        """
        Validate configuration.

        Args:
            require_trust: Whether root keys are required. Commands that never
                evaluate a manifest (list, remove, recover) run without them.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if require_trust and not self.trust.root_keys:
            errors.append("At least one root key must be configured")

        if self.trust.root_threshold < 1:
            errors.append("Root threshold must be at least 1")
        elif (require_trust or self.trust.root_keys) and self.trust.root_threshold > len(self.trust.root_keys):
            errors.append(
                f"Root threshold {self.trust.root_threshold} exceeds the "
                f"{len(self.trust.root_keys)} configured root keys"
            )

        if self.trust.release_threshold < 1:
            errors.append("Release threshold must be at least 1")

        if self.network.max_attempts < 1:
            errors.append("Network max attempts must be at least 1")

        if self.network.attempt_timeout_seconds <= 0:
            errors.append("Network attempt timeout must be positive")

        if self.network.backoff_base_seconds < 0:
            errors.append("Backoff base must be non-negative")

        if self.network.max_concurrent_downloads < 1:
            errors.append("Max concurrent downloads must be at least 1")

        if self.lock.timeout_seconds < 0:
            errors.append("Lock timeout must be non-negative")

        if self.lock.poll_interval_seconds <= 0:
            errors.append("Lock poll interval must be positive")

        return errors
