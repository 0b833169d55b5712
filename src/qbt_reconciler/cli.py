#!/usr/bin/env python3
"""
qbt-reconciler CLI

Modes:
1. --once (default): reconcile every instance once and exit
2. --serve: run the scheduler until interrupted
3. --preview RULE / --dry-run-rule RULE: simulate one rule
4. --activity: list recent audit records

Utility commands: --validate, --list-rules
"""

import sys
import json
import signal
import time

from qbt_reconciler.arguments import create_parser, process_args, handle_utility_args, pick_instance
from qbt_reconciler.config import load_config
from qbt_reconciler.errors import RuleValidationError, handle_errors
from qbt_reconciler.logging import setup_logging, get_logger

logger = None  # Set after logging is configured


def find_rule(engine, id_or_name: str):
    """Look up a rule by id or name, enabled or not"""
    rule = engine.rule_store.get(id_or_name)
    if rule is None:
        raise RuleValidationError(str(id_or_name), "no rule with this id or name")
    return rule


def run_once_mode(args, engine) -> int:
    """
    Reconcile once

    Returns:
        Process exit code (1 if any instance aborted)
    """
    if args.instance:
        stats = [engine.run_instance(args.instance, force=args.force)]
        engine.prune()
    else:
        stats = engine.run(force=args.force)

    failed = 0 if args.instance else len(engine.clients) - len(stats)
    return 1 if failed else 0


def run_serve_mode(args, engine):
    """Run the scheduler in the foreground until SIGINT/SIGTERM"""
    from qbt_reconciler.scheduler import Scheduler

    logger.info("=" * 60)
    logger.info("Starting qbt-reconciler scheduler")
    logger.info("=" * 60)
    logger.info(f"Instances: {', '.join(engine.clients) or 'none'}")
    if engine.dry_run:
        logger.info("DRY RUN mode: no changes will be made")

    scheduler = Scheduler(engine, scan_interval=engine.settings.scan_interval)

    def shutdown(signum, frame):
        logger.info(f"\nReceived signal {signum}, shutting down...")
        scheduler.stop()

    signal.signal(signal.SIGTERM, shutdown)
    scheduler.start()
    logger.info("Press Ctrl+C to stop")

    try:
        while scheduler.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("\nShutting down...")
        scheduler.stop()

    logger.info("Scheduler stopped")


def preview_command(args, engine):
    """Print the torrents a rule's delete action would remove"""
    instance = pick_instance(args.instance, engine.clients)
    rule = find_rule(engine, args.preview)

    result = engine.preview_delete_rule(instance, rule, limit=args.limit, offset=args.offset, view=args.view)

    logger.info(f"\nRule '{rule.name}' on '{instance}' ({args.view}): {result.total_matches} torrents would be removed\n")
    if not result.examples:
        return

    logger.info(f"{'Size (GiB)':>11} {'Ratio':>7} {'Seeding (h)':>12} {'Tracker':<22} {'Unreg':<6} {'Name'}")
    logger.info("-" * 100)
    for row in result.examples:
        logger.info(
            f"{row.size / 1024 ** 3:>11.2f} {row.ratio:>7.2f} {row.seeding_time / 3600:>12.1f} "
            f"{row.tracker[:22]:<22} {('yes' if row.is_unregistered else '-'):<6} {row.name}"
        )

    shown_to = args.offset + len(result.examples)
    if shown_to < result.total_matches:
        logger.info(f"\n... {result.total_matches - shown_to} more (use --offset {shown_to})")


def dry_run_rule_command(args, engine):
    """Simulate one rule and print the resulting activity"""
    instance = pick_instance(args.instance, engine.clients)
    rule = find_rule(engine, args.dry_run_rule)

    stats = engine.dry_run_rule(instance, rule, force=True)
    logger.info(
        f"\n[DRY RUN] '{rule.name}' on '{instance}': {stats.rules_matched} matches, "
        f"{stats.actions_dry_run} batches would run"
    )


def activity_command(args, config):
    """List recent audit records"""
    from qbt_reconciler.activity_backends import create_activity_store

    store = create_activity_store(**config.get_activity_config())
    try:
        records = store.list(instance=args.instance, limit=args.limit, offset=args.offset)
    finally:
        store.close()

    if not records:
        logger.info("No activity recorded")
        return

    for record in records:
        summary = f"{record.created_at.strftime('%Y-%m-%d %H:%M:%S')} [{record.instance}] {record.action} {record.outcome}"
        if record.rule_name:
            summary += f" rule='{record.rule_name}'"
        if record.torrent_name:
            summary += f" torrent='{record.torrent_name}'"
        if record.reason:
            summary += f" ({record.reason})"
        logger.info(summary)
        if record.details:
            logger.debug(f"    {json.dumps(record.details, sort_keys=True)}")


@handle_errors
def main():
    """Main entry point for qbt-reconciler CLI"""
    global logger

    parser = create_parser()
    args = parser.parse_args()

    config_dir = process_args(args)
    config = load_config(config_dir)

    trace_mode = config.get_trace_mode()
    setup_logging(config, trace_mode)
    logger = get_logger(__name__)

    if handle_utility_args(args, config):
        sys.exit(0)

    if args.activity:
        activity_command(args, config)
        sys.exit(0)

    from qbt_reconciler.engine import RulesEngine
    engine = RulesEngine.from_config(config, dry_run=True if args.dry_run else None)

    exit_code = 0
    try:
        if args.serve:
            run_serve_mode(args, engine)
        elif args.preview:
            preview_command(args, engine)
        elif args.dry_run_rule:
            dry_run_rule_command(args, engine)
        else:
            exit_code = run_once_mode(args, engine)
    except ValueError as e:
        logger.error(str(e))
        exit_code = 2
    finally:
        engine.close()

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
