#!/usr/bin/env python3
"""
Analytics Stack Deployer - Command Line Interface

Interactive deploy and teardown of a self-hosted analytics stack.

Usage:
    python -m analytics_deployer deploy [--base-dir DIR] [-v]
    python -m analytics_deployer cleanup [--base-dir DIR] [-v]
    analytics-deploy
    analytics-cleanup
"""

import argparse
import logging
import sys
from typing import List, Optional

from .config import StackConfig
from .console import StatusReporter
from .core import run_deploy
from .exceptions import ConfigurationError
from .prompts import Questioner
from .teardown import run_cleanup

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def _load_config(args, reporter: StatusReporter) -> Optional[StackConfig]:
    try:
        return StackConfig.from_environment(args.base_dir)
    except ConfigurationError as e:
        reporter.error(f"Invalid configuration: {e}")
        return None


def cmd_deploy(args):
    """Handle deploy command."""
    reporter = StatusReporter()
    config = _load_config(args, reporter)
    if config is None:
        return 1
    return run_deploy(config, Questioner(reporter.console), reporter)


def cmd_cleanup(args):
    """Handle cleanup command."""
    reporter = StatusReporter()
    config = _load_config(args, reporter)
    if config is None:
        return 1
    return run_cleanup(config, Questioner(reporter.console), reporter)


COMMANDS = {
    "deploy": cmd_deploy,
    "cleanup": cmd_cleanup,
}


def _add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("--base-dir", help="Directory holding the generated files "
                                           "(default: current directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Analytics Stack Deployer - Self-hosted web analytics and monitoring"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    deploy_parser = subparsers.add_parser("deploy", help="Deploy the analytics stack")
    _add_common_arguments(deploy_parser)

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Remove every container, volume, network and file of the stack"
    )
    _add_common_arguments(cleanup_parser)

    return parser


def _dispatch(args, parser: argparse.ArgumentParser) -> int:
    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    configure_logging(args.verbose)
    logger.debug(f"Running {args.command} in {args.base_dir or 'the current directory'}")
    try:
        return handler(args) or 0
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args, parser)


def deploy_main() -> int:
    """Entry point for ``analytics-deploy``."""
    return main(["deploy", *sys.argv[1:]])


def cleanup_main() -> int:
    """Entry point for ``analytics-cleanup``."""
    return main(["cleanup", *sys.argv[1:]])


if __name__ == "__main__":
    sys.exit(main())
