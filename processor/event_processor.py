"""Event processor for normalizing and fingerprinting source events."""
import logging
from datetime import datetime, timezone
from typing import List

from processor.models import (
    OCCURRENCE_KEY_PROPERTY,
    SOURCE_CALENDAR_PROPERTY,
    EventTime,
    RemoteEvent,
    SourceEvent,
)

logger = logging.getLogger(__name__)

FNV_OFFSET_BASIS = 0xcbf29ce484222325
FNV_PRIME = 0x100000001b3
FNV_MASK = 0xffffffffffffffff

FIELD_SEPARATOR = '|'
SYNC_MARKER = '[Synced from source calendar'


def fnv1a_64(data: bytes) -> int:
    """
    Fold a byte sequence with 64-bit FNV-1a.

    Args:
        data: Bytes to hash

    Returns:
        Unsigned 64-bit hash value
    """
    value = FNV_OFFSET_BASIS
    for byte in data:
        value ^= byte
        value = (value * FNV_PRIME) & FNV_MASK
    return value


def format_utc(moment: datetime) -> str:
    """Render an aware datetime as ISO-8601 UTC without fractional seconds."""
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


class EventProcessor:
    """Maps source events to remote representations and content fingerprints."""

    DEFAULT_TITLE = "Untitled Event"
    DEFAULT_LOCATION_PREFIX = "Location: "

    def __init__(
        self,
        include_location_in_description: bool = False,
        location_prefix: str = DEFAULT_LOCATION_PREFIX
    ):
        """
        Initialize the processor.

        Args:
            include_location_in_description: Prepend the location to the description
            location_prefix: Label placed before the location in the description
        """
        self.include_location_in_description = include_location_in_description
        self.location_prefix = location_prefix

    def occurrence_key(self, event: SourceEvent) -> str:
        """
        Build the key that identifies one occurrence of a (possibly recurring) event.

        Args:
            event: Source event occurrence

        Returns:
            "<base id>_<occurrence start in UTC>"
        """
        return f"{event.base_id}_{format_utc(event.occurrence_start)}"

    def fingerprint(self, event: SourceEvent) -> str:
        """
        Generate a stable content fingerprint over the sync-relevant fields.

        Args:
            event: Source event occurrence

        Returns:
            16-character lowercase hex string
        """
        start, end = self._normalized_bounds(event)
        composite = FIELD_SEPARATOR.join([
            event.title or '',
            start,
            end,
            'true' if event.all_day else 'false',
            event.location or '',
            event.notes or '',
        ])
        return f"{fnv1a_64(composite.encode('utf-8')):016x}"

    def deduplicate(self, events: List[SourceEvent]) -> List[SourceEvent]:
        """
        Drop repeated occurrences, keeping the first one seen.

        Args:
            events: Source events in enumeration order

        Returns:
            Events with unique occurrence keys
        """
        seen = set()
        unique = []
        for event in events:
            key = self.occurrence_key(event)
            if key in seen:
                logger.info(f"Skipping duplicate occurrence: {event.title} ({key})")
                continue
            seen.add(key)
            unique.append(event)
        return unique

    def to_remote_event(self, event: SourceEvent) -> RemoteEvent:
        """
        Convert a source event into the remote event resource.

        Args:
            event: Source event occurrence

        Returns:
            RemoteEvent carrying provenance in its private properties
        """
        if event.all_day:
            start = EventTime(date=event.start.strftime('%Y-%m-%d'))
            end = EventTime(date=event.end.strftime('%Y-%m-%d'))
        else:
            zone = event.timezone or 'UTC'
            start = EventTime(date_time=event.start.isoformat(timespec='seconds'), time_zone=zone)
            end = EventTime(date_time=event.end.isoformat(timespec='seconds'), time_zone=zone)

        return RemoteEvent(
            summary=event.title or self.DEFAULT_TITLE,
            description=self._build_description(event),
            location=event.location,
            start=start,
            end=end,
            private_properties={
                OCCURRENCE_KEY_PROPERTY: self.occurrence_key(event),
                SOURCE_CALENDAR_PROPERTY: event.calendar_name,
            }
        )

    def _build_description(self, event: SourceEvent) -> str:
        description = ''
        if self.include_location_in_description and event.location:
            description += f"{self.location_prefix}{event.location}\n\n"
        if event.notes:
            description += f"{event.notes}\n\n"
        description += f"{SYNC_MARKER}: {event.calendar_name}]"
        return description

    def _normalized_bounds(self, event: SourceEvent) -> tuple[str, str]:
        # All-day bounds are calendar dates, never shifted through UTC
        if event.all_day:
            return event.start.strftime('%Y-%m-%d'), event.end.strftime('%Y-%m-%d')
        return format_utc(event.start), format_utc(event.end)
