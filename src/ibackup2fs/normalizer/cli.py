"""Command line interface for extracting iOS backups."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ibackup2fs import APP_NAME, __version__
from ibackup2fs.common import ConfigLoader, ConfigurationError, SUPPORTED_ALGORITHMS, setup_logging

from .config import NormalizerConfig
from .coordinator import ExtractionCoordinator
from .device_info import read_device_info
from .errors import RunInProgressError
from .models import RunState, RunSummary

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def exit_code_for(summary: Optional[RunSummary]) -> int:
    """Map a run summary to a process exit code."""
    if summary is None:
        return EXIT_ERROR
    if summary.state is RunState.CANCELLED:
        return EXIT_CANCELLED
    if summary.state is RunState.COMPLETED and summary.failed == 0:
        return EXIT_OK
    return EXIT_ERROR


def extract_command(
    config: NormalizerConfig,
    backup_dir_override: Optional[Path] = None,
    output_dir_override: Optional[Path] = None,
    digests_override: Optional[List[str]] = None,
) -> int:
    """Extract a backup into a filesystem tree.

    Args:
        config: Configuration object
        backup_dir_override: Optional override for the backup directory
        output_dir_override: Optional override for the output directory
        digests_override: Optional override for digest algorithms ([] = none)

    Returns:
        Exit code (0 for success)
    """
    backup_dir = backup_dir_override or (Path(config.extraction.backup_dir) if config.extraction.backup_dir else None)
    output_dir = output_dir_override or (Path(config.extraction.output_dir) if config.extraction.output_dir else None)

    if backup_dir is None or output_dir is None:
        logger.error("Both a backup directory and an output directory are required")
        return EXIT_USAGE

    logger.info(f"Backup directory: {backup_dir}")
    logger.info(f"Output directory: {output_dir}")

    coordinator = ExtractionCoordinator(config)

    try:
        started = coordinator.start(backup_dir, output_dir, digests_override)
    except RunInProgressError as e:
        logger.error(str(e))
        return EXIT_ERROR

    if started and coordinator.device_info is not None:
        device = coordinator.device_info
        logger.info(f"Device: {device.device_name} ({device.product_type}, iOS {device.ios_version})")

    try:
        summary = coordinator.wait()
    except KeyboardInterrupt:
        logger.warning("Interrupted, cancelling extraction...")
        coordinator.cancel()
        summary = coordinator.wait()

    if summary is not None:
        if summary.reason and summary.state is RunState.FAILED:
            logger.error(f"Extraction failed: {summary.reason}")
        if summary.audit_log_path:
            logger.info(f"Audit log: {summary.audit_log_path}")
        logger.info(
            f"Result: {summary.outcome} - {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.processed}/{summary.total} processed"
        )

    return exit_code_for(summary)


def info_command(backup_dir: Path) -> int:
    """Print device metadata for a backup as JSON.

    Returns:
        Exit code (0 for success)
    """
    device = read_device_info(backup_dir)
    if device is None:
        logger.error(f"No Info.plist or Manifest.plist found in {backup_dir}")
        return EXIT_ERROR

    print(json.dumps(device.to_dict(), indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Rebuild an iOS device filesystem tree from an iTunes/Finder backup"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a config.toml file"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Log level (overrides config)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    extract = subparsers.add_parser("extract", help="Extract a backup into a filesystem tree")
    extract.add_argument(
        "--backup-dir",
        type=Path,
        help="Backup directory containing Manifest.db (overrides config)"
    )
    extract.add_argument(
        "--output-dir",
        type=Path,
        help="Output root for the reconstructed tree (overrides config)"
    )
    digests = extract.add_mutually_exclusive_group()
    digests.add_argument(
        "--digest",
        action="append",
        choices=list(SUPPORTED_ALGORITHMS),
        type=str.lower,
        help="Digest to compute; repeat for several (default: config)"
    )
    digests.add_argument(
        "--no-digest",
        action="store_true",
        help="Copy without computing digests"
    )
    extract.add_argument(
        "--workers",
        type=int,
        help="Copy worker threads, 0 = auto (overrides config)"
    )
    extract.add_argument(
        "--resume",
        action="store_true",
        help="Skip files completed by an earlier interrupted run"
    )
    extract.add_argument(
        "--no-sanitize",
        action="store_true",
        help="Keep path segments verbatim (only separators are translated)"
    )

    info = subparsers.add_parser("info", help="Show device information for a backup")
    info.add_argument("--backup-dir", type=Path, required=True, help="Backup directory")

    return parser


def _overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.log_level:
        overrides.setdefault("logging", {})["level"] = args.log_level

    if args.command == "extract":
        extraction: Dict[str, Any] = {}
        if args.workers is not None:
            extraction["workers"] = args.workers
        if args.resume:
            extraction["enable_resume"] = True
        if args.no_sanitize:
            extraction["sanitize_paths"] = False
        if extraction:
            overrides["extraction"] = extraction
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    loader = ConfigLoader(app_name=APP_NAME, config_class=NormalizerConfig)
    try:
        config = loader.load(config_path=args.config, overrides=_overrides_from_args(args))
    except ConfigurationError as e:
        setup_logging(level="ERROR")
        logger.error(str(e))
        return EXIT_USAGE

    config.logging.apply()

    if args.command == "info":
        return info_command(args.backup_dir)

    digests_override = [] if args.no_digest else args.digest
    return extract_command(
        config=config,
        backup_dir_override=args.backup_dir,
        output_dir_override=args.output_dir,
        digests_override=digests_override,
    )


if __name__ == "__main__":
    sys.exit(main())
