"""Reconciliation engine: mirrors source events onto the remote calendar."""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional

from gcal.client import BatchResult
from gcal.errors import (
    AuthenticationError,
    BatchItemError,
    CalendarAPIError,
    NotFoundError,
    RateLimitedError,
)
from processor.event_processor import EventProcessor
from processor.models import SourceEvent, SyncRecord, SyncResult

logger = logging.getLogger(__name__)


def base_id_of(occurrence_key: str) -> str:
    """Strip the occurrence start suffix from an occurrence key."""
    return occurrence_key.rsplit('_', 1)[0]


class SyncAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    TOUCH = "touch"
    NOOP = "noop"


def classify(record: Optional[SyncRecord], event: SourceEvent, fingerprint: str) -> SyncAction:
    """
    Decide what a pass must do for one occurrence.

    The fingerprint decides whether remote content changes; the source
    modification time only distinguishes a timestamp refresh from a no-op.

    Args:
        record: Stored record for the occurrence, if any
        event: Current source occurrence
        fingerprint: Fingerprint of the current occurrence

    Returns:
        The action to take
    """
    if record is None:
        return SyncAction.CREATE
    if fingerprint != record.fingerprint:
        return SyncAction.UPDATE

    modified = event.last_modified
    if modified is not None and (record.source_modified is None or modified > record.source_modified):
        return SyncAction.TOUCH
    return SyncAction.NOOP


@dataclass
class PendingChange:
    """Occurrence queued for a remote create or update."""
    occurrence_key: str
    event: SourceEvent
    fingerprint: str
    record: Optional[SyncRecord] = None


def _chunks(items: list, size: int) -> List[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class ReconciliationEngine:
    """Runs sync passes from an event source to the remote calendar."""

    MAX_BATCH_SIZE = 100
    RETRY_DELAYS = (30, 60, 120)
    DELETE_BATCH_DELAY = 1.0

    def __init__(
        self,
        source,
        store,
        processor: EventProcessor,
        client=None,
        token_manager=None,
        calendar_selector: Callable[[List[str]], List[str]] = list,
        past_days: int = 7,
        future_days: int = 30,
        retry_delays=RETRY_DELAYS,
        delete_batch_delay: float = DELETE_BATCH_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """
        Initialize the engine with its collaborators.

        Args:
            source: EventSource to mirror
            store: FingerprintStore holding sync records
            processor: EventProcessor for keys, fingerprints and conversion
            client: CalendarClient; None runs passes read-only
            token_manager: TokenManager checked before remote work starts
            calendar_selector: Picks the calendars to sync from those available
            past_days: Days before now included in the sync window
            future_days: Days after now included in the sync window
            retry_delays: Delays before each retry of a rate-limited batch
            delete_batch_delay: Pause before each delete batch
            sleep: Sleep function
            clock: Returns the current aware UTC time
        """
        self.source = source
        self.store = store
        self.processor = processor
        self.client = client
        self.token_manager = token_manager
        self.calendar_selector = calendar_selector
        self.past_days = past_days
        self.future_days = future_days
        self.retry_delays = tuple(retry_delays)
        self.delete_batch_delay = delete_batch_delay
        self._sleep = sleep
        self._clock = clock

    @property
    def read_only(self) -> bool:
        return self.client is None

    def run_pass(self) -> SyncResult:
        """
        Execute one sync pass.

        Returns:
            SyncResult with counts and per-item errors

        Raises:
            AuthenticationError: If no bearer token can be obtained
        """
        result = SyncResult()

        calendars = self.calendar_selector(self.source.list_calendars())
        if not calendars:
            logger.warning("No target calendars found, skipping sync pass")
            result.skipped = True
            return result
        logger.info(f"Syncing {len(calendars)} calendar(s): {', '.join(calendars)}")

        if not self.read_only and self.token_manager is not None:
            self.token_manager.get_access_token()

        now = self._clock()
        window_start = now - timedelta(days=self.past_days)
        window_end = now + timedelta(days=self.future_days)
        raw_events = self.source.fetch_events(window_start, window_end, calendars)
        events = self.processor.deduplicate(raw_events)
        result.skipped_duplicates = len(raw_events) - len(events)

        records = {record.occurrence_key: record for record in self.store.get_all()}
        present = set()
        creates: List[PendingChange] = []
        updates: List[PendingChange] = []

        for event in events:
            key = self.processor.occurrence_key(event)
            present.add(key)
            fingerprint = self.processor.fingerprint(event)
            record = records.get(key)
            action = classify(record, event, fingerprint)

            if action is SyncAction.CREATE:
                creates.append(PendingChange(key, event, fingerprint))
            elif action is SyncAction.UPDATE:
                updates.append(PendingChange(key, event, fingerprint, record))
            elif action is SyncAction.TOUCH:
                if not self.read_only:
                    self.store.touch(key, event.last_modified, fingerprint)
                result.touched += 1
            else:
                result.unchanged += 1

        unreadable = set(self.source.unreadable_base_ids)
        deletions = []
        held_back = 0
        for calendar in calendars:
            for record in self.store.get_by_calendar(calendar):
                if record.occurrence_key in present:
                    continue
                if base_id_of(record.occurrence_key) in unreadable:
                    held_back += 1
                    continue
                deletions.append(record)
        if held_back:
            logger.warning(
                f"Keeping {held_back} remote events whose source definitions failed to parse"
            )

        logger.info(
            f"Sync plan: {len(creates)} to create, {len(updates)} to update, "
            f"{len(deletions)} to delete, {result.touched} touched, "
            f"{result.unchanged} unchanged"
        )

        if self.read_only:
            logger.warning("Remote calendar not configured, read-only pass makes no changes")
            return result

        self._process_creates(creates, result)
        self._process_updates(updates, result)
        self._process_deletions(deletions, result)

        logger.info(f"Sync pass complete: {result.summary()}")
        for error in result.errors:
            logger.error(error)
        return result

    def _process_creates(self, creates: List[PendingChange], result: SyncResult) -> None:
        batches = _chunks(creates, self.MAX_BATCH_SIZE)
        for batch_number, batch in enumerate(batches, start=1):
            label = f"create batch {batch_number}/{len(batches)}"
            remote_events = [self.processor.to_remote_event(change.event) for change in batch]
            batch_result = self._run_batch(
                partial(self.client.batch_create, remote_events), len(batch), label
            )

            for index, remote_id in sorted(batch_result.succeeded.items()):
                change = batch[index]
                self.store.upsert(
                    change.occurrence_key,
                    remote_id,
                    change.fingerprint,
                    change.event.last_modified,
                    change.event.calendar_name
                )
                result.created += 1

            for index, error in sorted(batch_result.failed.items()):
                result.errors.append(
                    f"Create failed for {batch[index].occurrence_key} ({label}, {error})"
                )
            logger.info(
                f"{label}: {len(batch_result.succeeded)} created, "
                f"{len(batch_result.failed)} failed"
            )

    def _process_updates(self, updates: List[PendingChange], result: SyncResult) -> None:
        for change in updates:
            remote_event = self.processor.to_remote_event(change.event)
            remote_id = change.record.remote_id
            try:
                self.client.update(remote_id, remote_event)
            except NotFoundError:
                logger.warning(
                    f"Remote event {remote_id} for {change.occurrence_key} no longer exists, recreating"
                )
                try:
                    remote_id = self.client.create(remote_event)
                except AuthenticationError:
                    raise
                except CalendarAPIError as e:
                    result.errors.append(f"Recreate failed for {change.occurrence_key}: {e}")
                    continue
                result.recreated += 1
            except AuthenticationError:
                raise
            except CalendarAPIError as e:
                result.errors.append(f"Update failed for {change.occurrence_key}: {e}")
                continue
            else:
                result.updated += 1

            self.store.upsert(
                change.occurrence_key,
                remote_id,
                change.fingerprint,
                change.event.last_modified,
                change.event.calendar_name
            )

    def _process_deletions(self, deletions: List[SyncRecord], result: SyncResult) -> None:
        batches = _chunks(deletions, self.MAX_BATCH_SIZE)
        for batch_number, batch in enumerate(batches, start=1):
            label = f"delete batch {batch_number}/{len(batches)}"
            if self.delete_batch_delay:
                self._sleep(self.delete_batch_delay)

            remote_ids = [record.remote_id for record in batch]
            batch_result = self._run_batch(
                partial(self.client.batch_delete, remote_ids), len(batch), label
            )

            for index in sorted(batch_result.succeeded):
                self.store.remove(batch[index].occurrence_key)
                result.deleted += 1

            for index, error in sorted(batch_result.failed.items()):
                result.errors.append(
                    f"Delete failed for {batch[index].occurrence_key} ({label}, {error})"
                )
            logger.info(
                f"{label}: {len(batch_result.succeeded)} deleted, "
                f"{len(batch_result.failed)} failed"
            )

    def _run_batch(self, call: Callable[[], BatchResult], size: int, label: str) -> BatchResult:
        """
        Run a batch call, retrying the whole batch while it fails only on rate limits.

        Args:
            call: Performs the batch request
            size: Number of items in the batch
            label: Batch description for logs

        Returns:
            BatchResult of the final attempt
        """
        attempts = len(self.retry_delays) + 1
        for attempt in range(attempts):
            if attempt > 0:
                delay = self.retry_delays[attempt - 1]
                logger.warning(
                    f"{label}: rate limit hit, waiting {delay} seconds before "
                    f"retry {attempt}/{len(self.retry_delays)}"
                )
                self._sleep(delay)

            try:
                batch_result = call()
            except AuthenticationError:
                raise
            except RateLimitedError as e:
                batch_result = self._failed_batch(size, e)
            except CalendarAPIError as e:
                logger.error(f"{label} failed: {e}")
                return self._failed_batch(size, e)

            if not batch_result.all_rate_limited:
                return batch_result

        logger.error(f"{label} failed after {len(self.retry_delays)} retries due to rate limiting")
        return batch_result

    @staticmethod
    def _failed_batch(size: int, error: CalendarAPIError) -> BatchResult:
        failed: Dict[int, BatchItemError] = {
            index: BatchItemError(index, error.status, error.message)
            for index in range(size)
        }
        return BatchResult(failed=failed)
