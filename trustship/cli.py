"""
Trustship CLI

Command-line interface for installing signed product releases.

Exit codes:
    0  success
    1  generic failure
    2  manifest rejected by the trust chain
    3  artifact integrity failure
    4  installation lock busy
    5  network failure
    6  product version not installed
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .core.config import Config
from .core.exceptions import (
    CanonicalizationError,
    ChecksumMismatchError,
    ConfigError,
    DownloadFailedError,
    KeyValidationError,
    LockBusyError,
    ManifestFormatError,
    ManifestTrustError,
    NetworkError,
    NotInstalledError,
    TrustshipError,
    UnsupportedAlgorithmError,
)
from .install import InstallationManager, InstallOptions

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TRUST = 2
EXIT_INTEGRITY = 3
EXIT_LOCK_BUSY = 4
EXIT_NETWORK = 5
EXIT_NOT_INSTALLED = 6

# Commands that evaluate manifests and so need a configured root of trust.
TRUST_COMMANDS = ("install", "verify-manifest")

_EXIT_CODES = [
    (ManifestTrustError, EXIT_TRUST),
    (ManifestFormatError, EXIT_TRUST),
    (CanonicalizationError, EXIT_TRUST),
    (KeyValidationError, EXIT_TRUST),
    (UnsupportedAlgorithmError, EXIT_TRUST),
    (ChecksumMismatchError, EXIT_INTEGRITY),
    (LockBusyError, EXIT_LOCK_BUSY),
    (DownloadFailedError, EXIT_NETWORK),
    (NetworkError, EXIT_NETWORK),
    (NotInstalledError, EXIT_NOT_INSTALLED),
]


def exit_code_for(error: TrustshipError) -> int:
    """Map an error to its process exit code."""
    for error_type, code in _EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return EXIT_ERROR


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_config(config_path: Optional[str], require_trust: bool = True) -> Config:
    """
    Load configuration from file or use defaults, then validate it.

    Raises:
        ConfigError: If the file cannot be loaded or fails validation
    """
    config = Config.from_file(config_path) if config_path else Config()

    errors = config.validate(require_trust=require_trust)
    if errors:
        raise ConfigError(f"Invalid configuration: {'; '.join(errors)}", errors=errors)
    return config


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="trustship",
        description="Trustship - signature-gated software installation",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (overrides the configuration file)",
    )
    parser.add_argument(
        "--root",
        help="Installation root (overrides the configuration file)",
        default=None,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    install_parser = subparsers.add_parser("install", help="Install a product version")
    install_parser.add_argument("product", help="Product name")
    install_parser.add_argument("version", help="Exact version")
    install_parser.add_argument(
        "--force",
        action="store_true",
        help="Reinstall even if the same manifest is already installed",
    )
    install_parser.add_argument(
        "--lock-timeout",
        dest="lock_timeout",
        type=float,
        default=None,
        help="Seconds to wait for the installation lock",
    )

    remove_parser = subparsers.add_parser("remove", help="Remove an installed product version")
    remove_parser.add_argument("product", help="Product name")
    remove_parser.add_argument("version", help="Exact version")

    list_parser = subparsers.add_parser("list", help="List installed product versions")
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    verify_parser = subparsers.add_parser(
        "verify-manifest",
        help="Check a manifest file against the trust root",
    )
    verify_parser.add_argument("manifest", help="Path to manifest JSON")
    verify_parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    subparsers.add_parser("recover", help="Resolve an interrupted commit")

    subparsers.add_parser("version", help="Show version")

    return parser


async def cmd_install(args: argparse.Namespace, manager: InstallationManager) -> int:
    """Install a product version."""
    result = await manager.install(
        args.product,
        args.version,
        InstallOptions(force=args.force, lock_timeout=args.lock_timeout),
    )
    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK


async def cmd_remove(args: argparse.Namespace, manager: InstallationManager) -> int:
    """Remove a product version."""
    result = await manager.remove(args.product, args.version)
    print(f"Removed {result.product} {result.version} from {result.install_path}")
    return EXIT_OK


def cmd_list(args: argparse.Namespace, manager: InstallationManager) -> int:
    """List installed product versions."""
    entries = manager.list_installed()

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return EXIT_OK

    if not entries:
        print("Nothing installed")
        return EXIT_OK

    for entry in entries:
        print(f"{entry.product} {entry.version}  {entry.install_path}  {entry.installed_at.isoformat()}")
    return EXIT_OK


def cmd_verify_manifest(args: argparse.Namespace, manager: InstallationManager) -> int:
    """Evaluate a manifest file without installing anything."""
    evaluation = manager.verify_manifest(args.manifest)

    if args.json:
        print(json.dumps(evaluation.to_dict(), indent=2))
    else:
        print(f"Manifest: {evaluation.product} {evaluation.version}")
        print(f"Digest: {evaluation.manifest_digest}")
        print(f"Verdict: {evaluation.verdict.value}")
        print(f"Root signatures: {len(evaluation.root_signers)}/{evaluation.root_threshold}")
        print(f"Release signatures: {len(evaluation.release_signers)}/{evaluation.release_threshold}")
        if evaluation.exclusions:
            print(f"\nExcluded signatures: {len(evaluation.exclusions)}")
            for exclusion in evaluation.exclusions:
                print(f"  - {exclusion.level} {exclusion.key_id}: {exclusion.reason.value}")

    return EXIT_OK if evaluation.trusted else EXIT_TRUST


async def cmd_recover(args: argparse.Namespace, manager: InstallationManager) -> int:
    """Resolve an interrupted commit."""
    outcome = await manager.recover()
    print(f"Recovery: {outcome or 'nothing pending'}")
    return EXIT_OK


def cmd_version() -> int:
    """Show version."""
    from . import __version__

    print(f"Trustship v{__version__}")
    return EXIT_OK


async def async_main(args: argparse.Namespace, config: Config) -> int:
    """Async main entry point."""
    logger = logging.getLogger(__name__)
    manager = InstallationManager(config)

    try:
        if args.command == "install":
            return await cmd_install(args, manager)

        elif args.command == "remove":
            return await cmd_remove(args, manager)

        elif args.command == "list":
            return cmd_list(args, manager)

        elif args.command == "verify-manifest":
            return cmd_verify_manifest(args, manager)

        elif args.command == "recover":
            return await cmd_recover(args, manager)

        else:
            print("No command specified. Use --help for usage.")
            return EXIT_ERROR

    except TrustshipError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return exit_code_for(e)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        return cmd_version()

    # Load config
    try:
        config = load_config(args.config, require_trust=args.command in TRUST_COMMANDS)
    except TrustshipError as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return EXIT_ERROR

    if args.root:
        config.paths.root = args.root

    # Setup logging
    log_level = "DEBUG" if args.verbose else (args.log_level or config.log_level)
    setup_logging(log_level)

    # Run async main
    return asyncio.run(async_main(args, config))


if __name__ == "__main__":
    sys.exit(main())
