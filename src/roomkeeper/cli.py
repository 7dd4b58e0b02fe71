"""CLI interface for running and administering roomkeeper."""

import argparse
import asyncio
import sys
from pathlib import Path

from . import db
from .config import load_config
from .daemon import Services, run_daemon
from .driver import seed_config_sources
from .logging_setup import setup_logging


def cmd_run(args, config):
    """Run the bot until interrupted."""
    return run_daemon(config)


def cmd_init_db(args, config):
    """Initialize the job store."""
    db.init_db(config.db_path)
    count = seed_config_sources(db.JobStore(config.db_path), config)
    print(f"Store initialized at {config.db_path} ({count} subscription(s) from config)")
    return 0


def cmd_reminders(args, config):
    """List reminders."""
    store = db.JobStore(config.db_path)
    status = None if args.all else db.ReminderStatus.PENDING
    records = db.list_reminders(store, status=status)
    if not records:
        print("No reminders.")
        return 0
    for record in records:
        print(
            f"#{record.id:<5} {record.status.value:<9} {record.due_at.isoformat()}  "
            f"{record.room}  {record.who}: {record.message}"
        )
        if record.last_error:
            print(f"       {record.attempts} attempt(s), last error: {record.last_error}")
    return 0


def cmd_sources(args, config):
    """List subscriptions with their polling state."""
    store = db.JobStore(config.db_path)

    def _read(txn):
        return db.list_subscriptions(txn), db.list_task_states(txn)

    subscriptions, states = store.transaction(_read)
    if not subscriptions:
        print("No subscriptions.")
        return 0
    for subscription in subscriptions:
        state = states.get((subscription.kind, subscription.source_id))
        origin = "config" if subscription.from_config else "chat"
        print(f"{subscription.kind:<7} {subscription.label}  -> {subscription.room}  [{origin}]")
        if state is None:
            print("        never polled")
            continue
        next_run = state.next_eligible_run.isoformat() if state.next_eligible_run else "now"
        print(f"        next run {next_run}, rate-limit skips {state.consecutive_rate_limit_skips}")
        if state.last_error:
            print(f"        last error: {state.last_error}")
    return 0


async def _poll_once(config) -> int:
    services = Services(config)
    services.store.init()
    seed_config_sources(services.store, config)
    await services.client.login()
    outcomes = await services.driver.run_due()
    for outcome in outcomes:
        print(f"{outcome.subscription.kind:<7} {outcome.subscription.label}: {outcome.status.value}, {outcome.sent} sent")
    return 0


def cmd_poll_once(args, config):
    """Fire every due recurring task once and exit."""
    return asyncio.run(_poll_once(config))


def main():
    parser = argparse.ArgumentParser(description="roomkeeper Matrix bot")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the bot as a daemon")
    subparsers.add_parser("init-db", help="Initialize the job store")

    reminders_parser = subparsers.add_parser("reminders", help="List reminders")
    reminders_parser.add_argument("--all", action="store_true", help="Include delivered and cancelled")

    subparsers.add_parser("sources", help="List subscriptions and their state")
    subparsers.add_parser("poll-once", help="Poll every due subscription once")

    args = parser.parse_args()

    config = load_config(Path(args.config) if args.config else None)
    setup_logging(config, verbose=args.verbose, daemon_mode=args.command == "run")

    commands = {
        "run": cmd_run,
        "init-db": cmd_init_db,
        "reminders": cmd_reminders,
        "sources": cmd_sources,
        "poll-once": cmd_poll_once,
    }
    try:
        sys.exit(commands[args.command](args, config))
    except db.StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
