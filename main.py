#!/usr/bin/env python3
"""
portmap Main Entry Point
"""

import asyncio
import logging
import sys

from app import PortmapApplication
from bridge import TrafficDump
from cli_utils import create_argument_parser, validate_configuration
from config_manager import ConfigurationError, example_config_text
from safe_logger import get_safe_logger, setup_safe_logging

logger = get_safe_logger(__name__)


def main(argv=None) -> int:
    """Main entry point, returns the process exit code"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == 'example':
        print(example_config_text())
        return 0

    if args.command == 'validate':
        return 0 if validate_configuration(args.config) else 1

    # Until the config says otherwise
    setup_safe_logging(
        enabled=True,
        level=logging.DEBUG if args.debug else logging.WARNING
    )

    app = PortmapApplication(
        args.config,
        debug=args.debug,
        traffic=TrafficDump(enabled=args.verbose, plain=args.plain, name=args.name),
        testfor=args.testfor
    )

    try:
        asyncio.run(app.start())
    except ConfigurationError as e:
        logger.error(f"exit in error [{e}]")
        print(f"Configuration error: {e}", file=sys.stderr)
        print("Example configuration:", file=sys.stderr)
        print(example_config_text(), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

    return 0


def run():
    sys.exit(main())


if __name__ == '__main__':
    run()
