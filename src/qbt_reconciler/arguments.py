"""
Argument parsing for the qbt-reconciler command line
"""

import os
import argparse
from pathlib import Path
from typing import Optional

from qbt_reconciler.__version__ import __version__, __description__
from qbt_reconciler.free_space import VIEW_ELIGIBLE, VIEW_NEEDED
from qbt_reconciler.logging import get_logger
from qbt_reconciler.preview import DEFAULT_PREVIEW_LIMIT


def smart_config_default() -> str:
    """
    Determine smart default for config directory

    Returns ./config if it exists (bare metal), otherwise /config (Docker)
    """
    local_config = Path('./config')
    if local_config.exists() and local_config.is_dir():
        return './config'
    return '/config'


def create_parser() -> argparse.ArgumentParser:
    """
    Create the qbt-reconciler argument parser

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog='qbt-reconciler',
        description=f'qbt-reconciler - {__description__}',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Reconcile every instance once and exit
  qbt-reconciler --once

  # Run the scheduler in the foreground
  qbt-reconciler --serve

  # Show what rule 3 would delete on instance "seedbox"
  qbt-reconciler --instance seedbox --preview 3 --view eligible

  # Simulate one rule end to end without touching the client
  qbt-reconciler --instance seedbox --dry-run-rule "Movies ratio"

  # Show recent activity
  qbt-reconciler --activity --limit 20
        '''
    )

    # Modes
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        '--once',
        action='store_true',
        help='Run every instance once and exit (default when no other mode is given)'
    )
    mode.add_argument(
        '--serve',
        action='store_true',
        help='Run the scheduler until interrupted'
    )
    mode.add_argument(
        '--preview',
        metavar='RULE',
        help='Preview the torrents a rule would delete (rule id or name)'
    )
    mode.add_argument(
        '--dry-run-rule',
        metavar='RULE',
        help='Simulate one rule against live data without changing anything (rule id or name)'
    )
    mode.add_argument(
        '--activity',
        action='store_true',
        help='List recent activity records and exit'
    )

    # Targeting and paging
    parser.add_argument(
        '--instance',
        help='Restrict to one qBittorrent instance (default: all, or the only one for previews)'
    )
    parser.add_argument(
        '--force',
        action='store_true',
        help='Ignore rule intervals and the recently-processed skip window'
    )
    parser.add_argument(
        '--view',
        choices=[VIEW_NEEDED, VIEW_ELIGIBLE],
        default=VIEW_NEEDED,
        help='Free-space preview view (default: needed)'
    )
    parser.add_argument(
        '--limit',
        type=int,
        default=DEFAULT_PREVIEW_LIMIT,
        help=f'Page size for --preview and --activity (default: {DEFAULT_PREVIEW_LIMIT})'
    )
    parser.add_argument(
        '--offset',
        type=int,
        default=0,
        help='Page offset for --preview and --activity'
    )

    # Common configuration arguments
    parser.add_argument(
        '--config-dir',
        type=Path,
        default=None,
        help=f'Path to configuration directory (default: {smart_config_default()} or CONFIG_DIR env var)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Simulate changes without making them'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Set logging verbosity (default: from config or INFO)'
    )
    parser.add_argument(
        '--trace',
        action='store_true',
        help='Enable trace mode with detailed logging (module/function/line)'
    )

    # Utility arguments
    parser.add_argument(
        '--version',
        action='version',
        version=f'qbt-reconciler v{__version__}'
    )
    parser.add_argument(
        '--validate',
        action='store_true',
        help='Validate configuration and rules files without running'
    )
    parser.add_argument(
        '--list-rules',
        action='store_true',
        help='List all rules in priority order and exit'
    )

    return parser


def process_args(args: argparse.Namespace) -> Path:
    """
    Process parsed arguments and set environment variables

    Args:
        args: Parsed arguments from argparse

    Returns:
        Path to configuration directory
    """
    if args.dry_run:
        os.environ['DRY_RUN'] = 'true'

    if args.log_level:
        os.environ['LOG_LEVEL'] = args.log_level

    if args.trace:
        os.environ['TRACE_MODE'] = 'true'

    if args.config_dir:
        return Path(args.config_dir)
    if 'CONFIG_DIR' in os.environ:
        return Path(os.environ['CONFIG_DIR'])
    return Path(smart_config_default())


def describe_selector(rule) -> str:
    """Short tracker/instance scope of a rule for listings"""
    scope = rule.tracker_pattern or '*'
    if rule.instances:
        scope += f" @ {','.join(rule.instances)}"
    return scope


def handle_utility_args(args: argparse.Namespace, config) -> bool:
    """
    Handle utility arguments (--validate, --list-rules)

    Args:
        args: Parsed arguments
        config: Loaded configuration object

    Returns:
        True if a utility argument was handled (should exit), False otherwise

    Raises:
        RuleValidationError: If a rule is malformed
        ConfigurationError: If the configuration is invalid
    """
    from qbt_reconciler.rules import RuleStore
    logger = get_logger(__name__)

    if args.validate:
        logger.info("Validating configuration and rules...")

        instances = config.get_instances()
        for instance in instances:
            state = 'enabled' if instance.enabled else 'disabled'
            logger.info(f"✓ Instance '{instance.name}': {instance.host} ({state})")

        settings = config.get_engine_settings()
        logger.info(
            f"✓ Engine: scan every {settings.scan_interval}s, skip window {settings.skip_within}s, "
            f"batches of {settings.max_batch_hashes}"
        )

        store = RuleStore.from_config(config)
        rules = store.all()
        if not rules:
            logger.warning("No rules defined in rules.yml")
        else:
            logger.info(f"✓ Loaded {len(rules)} rules")
            for rule in rules:
                if not rule.actions.enabled():
                    logger.warning(f"  ⚠ '{rule.name}': No enabled actions")
                else:
                    logger.info(f"  ✓ '{rule.name}'")

        logger.info("\nValidation complete! Configuration is valid.")
        return True

    if args.list_rules:
        rules = RuleStore.from_config(config).all()

        if not rules:
            logger.info("No rules defined in rules.yml")
            return True

        logger.info(f"\nRules ({len(rules)} total, later rules win on conflicts):\n")
        logger.info(f"{'ID':<6} {'Enabled':<9} {'Dry run':<9} {'Scope':<24} {'Actions':<30} {'Name'}")
        logger.info("-" * 100)

        for rule in rules:
            enabled = '✓' if rule.enabled else '✗'
            dry_run = '✓' if rule.dry_run else '-'
            actions = ','.join(name for name, _ in rule.actions.enabled()) or '-'
            logger.info(
                f"{rule.id:<6} {enabled:<9} {dry_run:<9} {describe_selector(rule):<24} {actions:<30} {rule.name}"
            )

        logger.info("")
        return True

    return False


def pick_instance(requested: Optional[str], available) -> str:
    """
    Choose the instance a single-instance command runs against

    Args:
        requested: Value of --instance, if given
        available: Names of enabled instances

    Returns:
        Instance name

    Raises:
        ValueError: If no instance was given and the choice is ambiguous
    """
    names = list(available)
    if requested:
        return requested
    if len(names) == 1:
        return names[0]
    raise ValueError(f"--instance is required when several instances are configured: {', '.join(sorted(names))}")
