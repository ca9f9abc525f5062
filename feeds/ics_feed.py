"""Event source reading iCalendar feeds from URLs or local files."""
import hashlib
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from datetime import time as dt_time
from pathlib import Path
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import requests
from dateutil.rrule import rrulestr
from icalendar import Calendar

from feeds.base import EventSource
from processor.models import SourceEvent

logger = logging.getLogger(__name__)


def _to_aware(value, zone: ZoneInfo) -> datetime:
    """Promote a date or naive datetime to an aware datetime in the given zone."""
    if not isinstance(value, datetime):
        return datetime.combine(value, dt_time.min, tzinfo=zone)
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value


def _utc_key(value, zone: ZoneInfo) -> datetime:
    return _to_aware(value, zone).astimezone(timezone.utc)


class IcsFeedSource(EventSource):
    """Source calendars backed by iCalendar (.ics) feeds."""

    def __init__(
        self,
        feeds: Dict[str, str],
        timeout: int = 30,
        default_timezone: str = 'UTC',
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the feed source.

        Args:
            feeds: Calendar name to feed location (http(s) URL or file path)
            timeout: HTTP request timeout in seconds (default: 30)
            default_timezone: Zone applied to floating times and all-day dates
            max_retries: Fetch attempts per feed
            base_delay: First backoff delay in seconds
            sleep: Sleep function used between attempts
        """
        super().__init__()
        self.feeds = dict(feeds)
        self.timeout = timeout
        self.default_timezone = default_timezone
        self.zone = ZoneInfo(default_timezone)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._digest = None
        self._watch_stop = threading.Event()
        self._watch_thread = None

    def list_calendars(self) -> List[str]:
        return list(self.feeds)

    def fetch_events(
        self,
        start: datetime,
        end: datetime,
        calendars: List[str]
    ) -> List[SourceEvent]:
        """
        Fetch event occurrences from the selected feeds.

        Args:
            start: Window start (aware)
            end: Window end (aware)
            calendars: Calendar names to read

        Returns:
            List of SourceEvent occurrences overlapping the window
        """
        events = []
        self.unreadable_base_ids = set()
        for name in calendars:
            location = self.feeds.get(name)
            if location is None:
                logger.warning(f"Unknown calendar requested: {name}")
                continue
            text = self._read_feed(location)
            calendar_events = self._parse_events(text, name, start, end)
            logger.info(f"Read {len(calendar_events)} occurrences from calendar '{name}'")
            events.extend(calendar_events)
        return events

    def check_for_changes(self) -> bool:
        """
        Re-read every feed and notify subscribers when the content changed.

        Returns:
            True if a change was detected since the previous check
        """
        digest = hashlib.sha256()
        for name in sorted(self.feeds):
            digest.update(name.encode('utf-8'))
            digest.update(self._read_feed(self.feeds[name]).encode('utf-8'))
        current = digest.hexdigest()

        changed = self._digest is not None and current != self._digest
        self._digest = current
        if changed:
            logger.info("Feed content changed, notifying listeners")
            self.notify_changed()
        return changed

    def start_watching(self, interval_seconds: float) -> None:
        """Poll the feeds for changes on a background thread."""
        if self._watch_thread is not None:
            return
        self._watch_stop.clear()
        self._watch_thread = threading.Thread(
            target=self._watch_loop,
            args=(interval_seconds,),
            name='ics-feed-watcher',
            daemon=True
        )
        self._watch_thread.start()

    def stop_watching(self) -> None:
        if self._watch_thread is None:
            return
        self._watch_stop.set()
        self._watch_thread.join()
        self._watch_thread = None

    def _watch_loop(self, interval_seconds: float) -> None:
        while not self._watch_stop.wait(interval_seconds):
            try:
                self.check_for_changes()
            except (requests.RequestException, OSError) as e:
                logger.warning(f"Feed change check failed: {e}")

    def _read_feed(self, location: str) -> str:
        if location.startswith(('http://', 'https://')):
            return self._fetch_feed_text(location)
        return Path(location).expanduser().read_text(encoding='utf-8')

    def _fetch_feed_text(self, url: str) -> str:
        """
        Fetch feed text with retry logic.

        Args:
            url: Feed URL

        Returns:
            Feed body as string

        Raises:
            requests.RequestException: If all retry attempts fail
        """
        for attempt in range(self.max_retries):
            try:
                logger.info(f"Fetching feed {url} (attempt {attempt + 1}/{self.max_retries})")
                response = requests.get(url, timeout=self.timeout)
                response.raise_for_status()
                return response.text

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    self._sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise

    def _parse_events(
        self,
        text: str,
        calendar_name: str,
        start: datetime,
        end: datetime
    ) -> List[SourceEvent]:
        """
        Parse and expand VEVENTs into occurrences within the window.

        Args:
            text: iCalendar document
            calendar_name: Calendar the feed belongs to
            start: Window start
            end: Window end

        Returns:
            List of SourceEvent occurrences
        """
        calendar = Calendar.from_ical(text)
        masters = []
        overrides = {}

        for component in calendar.walk('VEVENT'):
            if component.get('recurrence-id') is not None:
                key = (
                    str(component.get('uid')),
                    _utc_key(component.decoded('recurrence-id'), self.zone)
                )
                overrides[key] = component
            else:
                masters.append(component)

        events = []
        for component in masters:
            try:
                events.extend(
                    self._expand_component(component, overrides, calendar_name, start, end)
                )
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                uid = component.get('uid')
                if uid is not None:
                    self.unreadable_base_ids.add(str(uid))
                logger.warning(
                    f"Failed to parse event '{component.get('summary', '')}' "
                    f"in calendar '{calendar_name}': {e}"
                )
                continue
        return events

    def _expand_component(self, component, overrides, calendar_name, start, end) -> List[SourceEvent]:
        if str(component.get('status', '')).upper() == 'CANCELLED':
            return []

        uid = str(component['uid'])
        dtstart = component.decoded('dtstart')
        duration = self._duration(component, dtstart)

        if 'rrule' not in component:
            event = self._build_event(component, uid, calendar_name, dtstart, duration)
            return [event] if event.start < end and event.end > start else []

        excluded = self._excluded_starts(component)
        # Rule expansion stays naive for floating times and all-day dates
        floating = not isinstance(dtstart, datetime) or dtstart.tzinfo is None
        rule_start = dtstart if isinstance(dtstart, datetime) else datetime.combine(dtstart, dt_time.min)
        rule = rrulestr(component['rrule'].to_ical().decode('utf-8'), dtstart=rule_start)

        window_start = start - duration
        window_end = end
        if floating:
            window_start = window_start.astimezone(self.zone).replace(tzinfo=None)
            window_end = window_end.astimezone(self.zone).replace(tzinfo=None)

        events = []
        for occurrence in rule.between(window_start, window_end, inc=True):
            key = _utc_key(occurrence, self.zone)
            if key in excluded:
                continue

            override = overrides.get((uid, key))
            if override is not None:
                if str(override.get('status', '')).upper() == 'CANCELLED':
                    continue
                override_start = override.decoded('dtstart')
                event = self._build_event(
                    override, uid, calendar_name, override_start,
                    self._duration(override, override_start)
                )
            else:
                value = occurrence.date() if not isinstance(dtstart, datetime) else occurrence
                event = self._build_event(component, uid, calendar_name, value, duration)

            if event.start < end and event.end > start:
                events.append(event)
        return events

    def _build_event(self, component, uid: str, calendar_name: str, dtstart, duration: timedelta) -> SourceEvent:
        all_day = not isinstance(dtstart, datetime)
        event_start = _to_aware(dtstart, self.zone)
        event_end = event_start + duration

        return SourceEvent(
            title=str(component.get('summary', '')),
            start=event_start,
            end=event_end,
            all_day=all_day,
            timezone=self._zone_name(event_start),
            location=self._optional_text(component, 'location'),
            notes=self._optional_text(component, 'description'),
            calendar_name=calendar_name,
            last_modified=self._last_modified(component),
            base_id=uid,
            occurrence_start=event_start
        )

    def _duration(self, component, dtstart) -> timedelta:
        if component.get('dtend') is not None:
            dtend = component.decoded('dtend')
            if isinstance(dtstart, datetime) != isinstance(dtend, datetime):
                raise ValueError("DTSTART and DTEND value types differ")
            if isinstance(dtstart, datetime):
                return _to_aware(dtend, self.zone) - _to_aware(dtstart, self.zone)
            return dtend - dtstart
        if component.get('duration') is not None:
            return component.decoded('duration')
        return timedelta(0) if isinstance(dtstart, datetime) else timedelta(days=1)

    def _excluded_starts(self, component) -> set:
        excluded = set()
        exdates = component.get('exdate')
        if exdates is None:
            return excluded
        if not isinstance(exdates, list):
            exdates = [exdates]
        for exdate in exdates:
            for value in exdate.dts:
                excluded.add(_utc_key(value.dt, self.zone))
        return excluded

    def _last_modified(self, component) -> Optional[datetime]:
        if component.get('last-modified') is None:
            return None
        return _to_aware(component.decoded('last-modified'), timezone.utc)

    def _zone_name(self, moment: datetime) -> str:
        tzinfo = moment.tzinfo
        name = getattr(tzinfo, 'key', None) or getattr(tzinfo, 'zone', None)
        if name:
            return name
        if moment.utcoffset() == timedelta(0):
            return 'UTC'
        return self.default_timezone

    @staticmethod
    def _optional_text(component, name: str) -> Optional[str]:
        value = component.get(name)
        if value is None:
            return None
        text = str(value)
        return text or None

