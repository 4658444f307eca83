"""
Command-line interface for raidmount.
Parses arguments, loads config, sets up logging and runs the orchestrator.
"""
import argparse
import logging
import sys
from typing import List, Optional

from . import __version__
from .config_manager import ConfigManager
from .errors import ConfigError
from .logging_setup import init_logging
from .orchestrator import EXIT_FAILURE, Orchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="raidmount",
        description="Assemble disk image files into a software RAID array and mount it.",
        epilog="Use the absent marker (default: 'missing') in place of a disk to simulate a failed member.",
    )
    ap.add_argument("-l", "--level", required=True, help="RAID level: 0, 1, 4, 5, 6 or 10")
    ap.add_argument("-d", "--mount-dir", required=True, help="directory to mount the array on")
    ap.add_argument("disks", nargs="+", metavar="DISK", help="image file path or absent marker, in slot order")
    ap.add_argument("-c", "--config", default=None, help="config file (.json, .yaml/.yml or KEY=value)")
    ap.add_argument("-o", "--cleanup-script", default=None,
                    help="teardown script path (default: <cleanup_script_dir>/raidmount-teardown-<mdN>.sh)")
    ap.add_argument("--absent-marker", default=None, help="token marking an absent disk")
    ap.add_argument("--read-only", action="store_true", help="attach images read-only and mount ro")
    ap.add_argument("--dry-run", action="store_true", help="log commands without executing them")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    ap.add_argument("--log-format", choices=("text", "json"), default=None, help="log output format")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = ConfigManager(args.config).apply_overrides({
            'absent_marker': args.absent_marker,
            'read_only': True if args.read_only else None,
            'log_level': args.log_level,
            'log_format': args.log_format,
        })
    except ConfigError as e:
        init_logging()
        logger.error(e.message)
        return EXIT_FAILURE

    init_logging(config.log_level, config.log_format)

    orchestrator = Orchestrator(config, dry_run=args.dry_run)
    return orchestrator.run(args.level, args.disks, args.mount_dir, args.cleanup_script)


if __name__ == "__main__":
    sys.exit(main())
