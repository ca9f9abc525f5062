"""Command-line entry point for the calendar mirror."""
import argparse
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from gcal.errors import AuthenticationError
from lambda_function import Components, build_components, setup_logging
from sync.cleanup import delete_remote_events, description_search_window, find_synced_events
from sync.config import ConfigurationError, Settings
from sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

FEED_WATCH_SECONDS = 60


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='calendar-mirror',
        description='Mirror iCalendar feeds into a Google Calendar.'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('run', help='Sync continuously until interrupted')
    subparsers.add_parser('sync', help='Run a single sync pass')
    subparsers.add_parser('authorize', help='Run the browser authorization flow')

    cleanup = subparsers.add_parser('cleanup', help='Delete every mirrored event')
    cleanup.add_argument(
        '--by-description',
        action='store_true',
        help='Also match events by the sync marker in their description'
    )

    subparsers.add_parser('stats', help='Show sync record counts per calendar')

    prune = subparsers.add_parser('prune', help='Remove sync records older than N days')
    prune.add_argument('--days', type=int, required=True)
    return parser


def prepare_store(components: Components, settings: Settings) -> None:
    """Create the table if needed and import any legacy records file."""
    components.store.ensure_table()
    migrated = components.store.migrate_from_legacy_file(settings.legacy_records_file)
    if migrated:
        logger.info(f"Imported {migrated} legacy sync records")


def cmd_run(settings: Settings, components: Components) -> int:
    scheduler = SyncScheduler(components.engine, settings.sync_interval_seconds)
    components.source.subscribe(lambda: scheduler.trigger('source change'))
    scheduler.start()
    components.source.start_watching(FEED_WATCH_SECONDS)
    print(f"Syncing every {settings.sync_interval_seconds} seconds, press Ctrl-C to stop")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("Stopping...")
    finally:
        components.source.stop_watching()
        scheduler.stop()
    return 0


def cmd_sync(settings: Settings, components: Components) -> int:
    try:
        result = components.engine.run_pass()
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"Sync pass failed: {e}", exc_info=True)
        return 1

    print(f"Sync complete: {result.summary()}")
    for error in result.errors:
        print(f"  {error}")
    return 0


def cmd_authorize(settings: Settings, components: Components) -> int:
    if components.token_manager is None:
        print("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set to authorize")
        return 1
    components.credential_store.ensure_table()
    try:
        components.token_manager.authorize()
    except AuthenticationError as e:
        print(f"Authorization failed: {e}")
        return 1
    print("Authorization complete, tokens saved")
    return 0


def remove_records_for(store, remote_ids: List[str]) -> int:
    """Remove the sync records pointing at the given remote events."""
    deleted = set(remote_ids)
    removed = 0
    for record in store.get_all():
        if record.remote_id in deleted:
            store.remove(record.occurrence_key)
            removed += 1
    return removed


def cmd_cleanup(
    settings: Settings,
    components: Components,
    by_description: bool,
    input_fn: Callable[[str], str]
) -> int:
    if components.client is None:
        print("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set to clean up")
        return 1

    time_min = time_max = None
    if by_description:
        time_min, time_max = description_search_window()

    events = find_synced_events(components.client, by_description, time_min, time_max)
    print(f"Found {len(events)} synced events on calendar '{settings.calendar_id}'")
    if not events:
        components.store.clear()
        return 0

    answer = input_fn(f"Type 'yes' to delete {len(events)} events: ")
    if answer.strip().lower() != 'yes':
        print("Cleanup cancelled")
        return 0

    deleted_ids, errors = delete_remote_events(components.client, [event.id for event in events])
    if errors:
        removed = remove_records_for(components.store, deleted_ids)
        print(
            f"Deleted {len(deleted_ids)} remote events and removed {removed} sync records, "
            f"keeping records of events that could not be deleted"
        )
    else:
        cleared = components.store.clear()
        print(f"Deleted {len(deleted_ids)} remote events and cleared {cleared} sync records")
    for error in errors:
        print(f"  {error}")
    return 1 if errors else 0


def cmd_stats(settings: Settings, components: Components) -> int:
    total, by_calendar = components.store.get_statistics()
    print(f"Total sync records: {total}")
    for name, count in sorted(by_calendar.items()):
        print(f"  {name}: {count}")
    return 0


def cmd_prune(settings: Settings, components: Components, days: int) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    removed = components.store.cleanup_old_records(cutoff)
    print(f"Removed {removed} sync records older than {days} days")
    return 0


def main(argv: Optional[List[str]] = None, input_fn: Callable[[str], str] = input) -> int:
    """
    Parse arguments and dispatch to a command.

    Args:
        argv: Arguments to parse instead of sys.argv
        input_fn: Prompt function used for confirmations

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == 'prune' and args.days < 0:
        parser.error('--days must not be negative')

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level)

    components = build_components(settings, interactive=True)
    if args.command != 'authorize':
        prepare_store(components, settings)

    if args.command == 'run':
        return cmd_run(settings, components)
    if args.command == 'sync':
        return cmd_sync(settings, components)
    if args.command == 'authorize':
        return cmd_authorize(settings, components)
    if args.command == 'cleanup':
        return cmd_cleanup(settings, components, args.by_description, input_fn)
    if args.command == 'stats':
        return cmd_stats(settings, components)
    if args.command == 'prune':
        return cmd_prune(settings, components, args.days)
    return 2


if __name__ == '__main__':
    sys.exit(main())
