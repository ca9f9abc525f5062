"""Teardown helpers for removing mirrored events from the remote calendar."""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from gcal.errors import CalendarAPIError
from processor.event_processor import SYNC_MARKER
from processor.models import RemoteEvent

logger = logging.getLogger(__name__)

DESCRIPTION_SEARCH_YEARS = 5
DELETE_BATCH_SIZE = 100


def description_search_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Window used when matching events by their description marker."""
    now = now or datetime.now(timezone.utc)
    span = timedelta(days=365 * DESCRIPTION_SEARCH_YEARS)
    return now - span, now + span


def find_synced_events(
    client,
    by_description: bool = False,
    time_min: Optional[datetime] = None,
    time_max: Optional[datetime] = None
) -> List[RemoteEvent]:
    """
    Find remote events created by the sync.

    Events carrying the occurrence key private property always match. With
    by_description, events whose description holds the sync marker match too.

    Args:
        client: CalendarClient
        by_description: Also match on the description marker
        time_min: Lower bound of the listing window
        time_max: Upper bound of the listing window

    Returns:
        Matching remote events
    """
    matches = []
    for event in client.list(time_min, time_max):
        if event.occurrence_key:
            matches.append(event)
        elif by_description and event.description and SYNC_MARKER in event.description:
            matches.append(event)

    logger.info(f"Found {len(matches)} synced events on the remote calendar")
    return matches


def delete_remote_events(
    client,
    remote_ids: List[str],
    delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep
) -> Tuple[List[str], List[str]]:
    """
    Delete remote events in batches, pausing before each batch.

    Args:
        client: CalendarClient
        remote_ids: Remote event ids to delete
        delay: Pause in seconds before each batch
        sleep: Sleep function

    Returns:
        Tuple of (ids actually deleted, error messages)
    """
    deleted = []
    errors = []
    for offset in range(0, len(remote_ids), DELETE_BATCH_SIZE):
        batch = remote_ids[offset:offset + DELETE_BATCH_SIZE]
        if delay:
            sleep(delay)
        try:
            result = client.batch_delete(batch)
        except CalendarAPIError as e:
            errors.extend(f"Delete failed for {remote_id}: {e}" for remote_id in batch)
            continue

        deleted.extend(batch[index] for index in sorted(result.succeeded))
        for index, error in sorted(result.failed.items()):
            errors.append(f"Delete failed for {batch[index]}: {error}")
        logger.info(f"Deleted {len(deleted)}/{len(remote_ids)} remote events")

    return deleted, errors
