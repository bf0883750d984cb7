#!/usr/bin/env python3
"""
CLI Utilities for portmap
Command line argument parsing and configuration checks
"""

import argparse

from config_manager import ConfigManager, ConfigurationError
from registry import create_forwards
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

VERSION = '0.1.0'


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser"""
    parser = argparse.ArgumentParser(
        prog='portmap',
        description='portmap - a TCP/UDP port forwarding tool',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s start                                  # Use ./config.json
  %(prog)s start -c forwards.yaml -d              # Other config, debug logging
  %(prog)s start -V -p -n mysql                   # Dump mysql traffic as text
  %(prog)s validate -c config.json                # Validate config only
  %(prog)s example > config.json                  # Write an example config
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'portmap {VERSION}'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='command')

    start = subparsers.add_parser('start', help='Start forwarding every enabled mapping')
    start.add_argument(
        '-c', '--config',
        help='Configuration file path (default: config.json)'
    )
    start.add_argument(
        '-d', '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    start.add_argument(
        '-V', '--verbose',
        action='store_true',
        help='Print every relayed message'
    )
    start.add_argument(
        '-p', '--plain',
        action='store_true',
        help='Print relayed data as plain text (with --verbose)'
    )
    start.add_argument(
        '-n', '--name',
        help='Only print messages of this mapping (with --verbose)'
    )
    start.add_argument(
        '--testfor',
        type=int,
        metavar='SECONDS',
        help='Maximum execution time in seconds before clean exit'
    )

    validate = subparsers.add_parser('validate', help='Validate configuration and exit')
    validate.add_argument(
        '-c', '--config',
        help='Configuration file path (default: config.json)'
    )

    subparsers.add_parser('example', help='Print an example configuration')

    return parser


def validate_configuration(config_file: str = None) -> bool:
    """Validate configuration file, including duplicate mapping names"""
    try:
        config_manager = ConfigManager()
        config = config_manager.load_config(config_file)
        registry = create_forwards(config.forwards, config.bridge)

        print("✓ Configuration is valid")
        print(f"  File: {config_manager.config_file}")
        print(f"  Forwards: {len(registry)} enabled, {len(config.forwards) - len(registry)} disabled")
        for bridge in registry:
            print(f"    {bridge.name}: {bridge.listen_uri} -> {bridge.remote}")
        print(f"  Status server: {'enabled' if config.monitoring.enabled else 'disabled'}")

        return True

    except ConfigurationError as e:
        print(f"✗ Configuration validation failed: {e}")
        return False
