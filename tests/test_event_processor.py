"""Unit tests for EventProcessor."""
import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from processor.event_processor import EventProcessor, fnv1a_64, format_utc
from processor.models import SourceEvent


@pytest.fixture
def timed_event():
    """Create a timed source event."""
    start = datetime(2024, 3, 9, 9, 0, tzinfo=ZoneInfo('America/New_York'))
    return SourceEvent(
        title="Team Offsite",
        start=start,
        end=start + timedelta(hours=2),
        all_day=False,
        timezone='America/New_York',
        calendar_name='Work',
        base_id='offsite-uid',
        occurrence_start=start,
        location='Conference Room B',
        notes='Bring laptops',
        last_modified=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    )


@pytest.fixture
def all_day_event():
    """Create an all-day source event."""
    start = datetime(2024, 7, 4, tzinfo=ZoneInfo('America/Los_Angeles'))
    return SourceEvent(
        title="Holiday",
        start=start,
        end=start + timedelta(days=1),
        all_day=True,
        timezone='America/Los_Angeles',
        calendar_name='Family',
        base_id='holiday-uid',
        occurrence_start=start
    )


class TestFnv1a:
    """Test cases for the FNV-1a hash."""

    def test_empty_input_is_offset_basis(self):
        assert fnv1a_64(b"") == 0xcbf29ce484222325

    def test_known_vector(self):
        assert fnv1a_64(b"a") == 0xaf63dc4c8601ec8c

    def test_result_fits_in_64_bits(self):
        assert 0 <= fnv1a_64(b"x" * 1000) < 2 ** 64


class TestFingerprint:
    """Test cases for content fingerprints."""

    def test_fingerprint_is_16_hex_chars(self, timed_event):
        fingerprint = EventProcessor().fingerprint(timed_event)

        assert len(fingerprint) == 16
        assert fingerprint == fingerprint.lower()
        int(fingerprint, 16)

    def test_fingerprint_is_deterministic(self, timed_event):
        processor = EventProcessor()
        copy = replace(timed_event)

        assert processor.fingerprint(timed_event) == processor.fingerprint(copy)
        assert EventProcessor().fingerprint(timed_event) == processor.fingerprint(timed_event)

    def test_fingerprint_ignores_last_modified(self, timed_event):
        processor = EventProcessor()
        later = replace(timed_event, last_modified=timed_event.last_modified + timedelta(days=1))

        assert processor.fingerprint(timed_event) == processor.fingerprint(later)

    @pytest.mark.parametrize('changes', [
        {'title': 'Team Offsite (moved)'},
        {'location': 'Conference Room C'},
        {'notes': 'Bring chargers'},
        {'all_day': True},
        {'location': None},
    ])
    def test_fingerprint_changes_with_content(self, timed_event, changes):
        processor = EventProcessor()
        changed = replace(timed_event, **changes)

        assert processor.fingerprint(timed_event) != processor.fingerprint(changed)

    def test_fingerprint_changes_with_times(self, timed_event):
        processor = EventProcessor()
        moved = replace(timed_event, end=timed_event.end + timedelta(minutes=30))

        assert processor.fingerprint(timed_event) != processor.fingerprint(moved)

    def test_same_instant_in_other_zone_has_same_fingerprint(self, timed_event):
        processor = EventProcessor()
        utc_copy = replace(
            timed_event,
            start=timed_event.start.astimezone(timezone.utc),
            end=timed_event.end.astimezone(timezone.utc)
        )

        assert processor.fingerprint(timed_event) == processor.fingerprint(utc_copy)

    def test_no_collisions_across_distinct_events(self, timed_event):
        processor = EventProcessor()
        fingerprints = {
            processor.fingerprint(replace(timed_event, title=f"Event {i}"))
            for i in range(10000)
        }

        assert len(fingerprints) == 10000


class TestOccurrenceKey:
    """Test cases for occurrence keys."""

    def test_key_uses_utc_occurrence_start(self, timed_event):
        key = EventProcessor().occurrence_key(timed_event)

        assert key == 'offsite-uid_2024-03-09T14:00:00Z'

    def test_recurring_occurrences_have_distinct_keys(self, timed_event):
        processor = EventProcessor()
        next_week = timed_event.occurrence_start + timedelta(days=7)
        second = replace(
            timed_event,
            start=next_week,
            end=next_week + timedelta(hours=2),
            occurrence_start=next_week
        )

        assert processor.occurrence_key(timed_event) != processor.occurrence_key(second)
        assert processor.occurrence_key(second).startswith('offsite-uid_')

    def test_format_utc_drops_fractional_seconds(self):
        moment = datetime(2024, 1, 2, 3, 4, 5, 678900, tzinfo=timezone.utc)

        assert format_utc(moment) == '2024-01-02T03:04:05Z'


class TestDeduplicate:
    """Test cases for duplicate removal."""

    def test_keeps_first_occurrence(self, timed_event):
        duplicate = replace(timed_event, title='Second copy')

        unique = EventProcessor().deduplicate([timed_event, duplicate])

        assert unique == [timed_event]

    def test_keeps_distinct_occurrences(self, timed_event, all_day_event):
        unique = EventProcessor().deduplicate([timed_event, all_day_event])

        assert len(unique) == 2


class TestToRemoteEvent:
    """Test cases for remote event conversion."""

    def test_timed_event_conversion(self, timed_event):
        remote = EventProcessor().to_remote_event(timed_event)
        body = remote.to_body()

        assert body['summary'] == 'Team Offsite'
        assert body['location'] == 'Conference Room B'
        assert body['start'] == {
            'dateTime': '2024-03-09T09:00:00-05:00',
            'timeZone': 'America/New_York'
        }
        assert body['end']['dateTime'] == '2024-03-09T11:00:00-05:00'
        assert body['extendedProperties']['private'] == {
            'occurrenceKey': 'offsite-uid_2024-03-09T14:00:00Z',
            'sourceCalendar': 'Work'
        }
        assert body['description'] == 'Bring laptops\n\n[Synced from source calendar: Work]'

    def test_all_day_event_uses_dates(self, all_day_event):
        body = EventProcessor().to_remote_event(all_day_event).to_body()

        assert body['start'] == {'date': '2024-07-04'}
        assert body['end'] == {'date': '2024-07-05'}
        assert 'location' not in body
        assert body['description'] == '[Synced from source calendar: Family]'

    def test_missing_title_uses_default(self, timed_event):
        remote = EventProcessor().to_remote_event(replace(timed_event, title=''))

        assert remote.summary == 'Untitled Event'

    def test_location_in_description(self, timed_event):
        processor = EventProcessor(include_location_in_description=True, location_prefix='Where: ')

        remote = processor.to_remote_event(timed_event)

        assert remote.description.startswith('Where: Conference Room B\n\nBring laptops\n\n')
        assert remote.occurrence_key == 'offsite-uid_2024-03-09T14:00:00Z'
