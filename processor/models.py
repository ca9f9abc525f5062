"""Data models for calendar synchronization."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


# Keys stored in extendedProperties.private on every mirrored remote event
OCCURRENCE_KEY_PROPERTY = 'occurrenceKey'
SOURCE_CALENDAR_PROPERTY = 'sourceCalendar'


@dataclass
class SourceEvent:
    """Event occurrence observed in a source calendar."""
    title: str
    start: datetime
    end: datetime
    all_day: bool
    timezone: str
    calendar_name: str
    base_id: str
    occurrence_start: datetime
    location: Optional[str] = None
    notes: Optional[str] = None
    last_modified: Optional[datetime] = None


@dataclass
class EventTime:
    """Start or end of a remote event: a date for all-day events, else date-time + zone."""
    date: Optional[str] = None
    date_time: Optional[str] = None
    time_zone: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        if self.date is not None:
            return {'date': self.date}
        result = {'dateTime': self.date_time}
        if self.time_zone:
            result['timeZone'] = self.time_zone
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EventTime':
        data = data or {}
        if 'date' in data:
            return cls(date=data['date'])
        return cls(date_time=data.get('dateTime'), time_zone=data.get('timeZone'))


@dataclass
class RemoteEvent:
    """Remote calendar event resource."""
    summary: str
    start: EventTime
    end: EventTime
    description: Optional[str] = None
    location: Optional[str] = None
    id: Optional[str] = None
    private_properties: Dict[str, str] = field(default_factory=dict)
    updated: Optional[str] = None

    @property
    def occurrence_key(self) -> Optional[str]:
        return self.private_properties.get(OCCURRENCE_KEY_PROPERTY)

    def to_body(self) -> Dict[str, Any]:
        """Render the JSON request body for create/update calls."""
        body = {
            'summary': self.summary,
            'start': self.start.to_dict(),
            'end': self.end.to_dict(),
        }
        if self.description is not None:
            body['description'] = self.description
        if self.location:
            body['location'] = self.location
        if self.private_properties:
            body['extendedProperties'] = {
                'private': dict(self.private_properties)
            }
        return body

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> 'RemoteEvent':
        """Build a RemoteEvent from an API event resource."""
        extended = item.get('extendedProperties') or {}
        return cls(
            id=item.get('id'),
            summary=item.get('summary', ''),
            description=item.get('description'),
            location=item.get('location'),
            start=EventTime.from_dict(item.get('start')),
            end=EventTime.from_dict(item.get('end')),
            private_properties=dict(extended.get('private') or {}),
            updated=item.get('updated')
        )


@dataclass
class SyncRecord:
    """Persisted mapping of one source occurrence to its remote event."""
    occurrence_key: str
    remote_id: str
    fingerprint: str
    last_synced_at: datetime
    source_modified: Optional[datetime]
    source_calendar: str


@dataclass
class StoredCredential:
    """Bearer credential pair persisted between runs."""
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass
class SyncResult:
    """Result of one sync pass."""
    created: int = 0
    updated: int = 0
    recreated: int = 0
    deleted: int = 0
    touched: int = 0
    unchanged: int = 0
    skipped_duplicates: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    def summary(self) -> str:
        parts = []
        if self.created:
            parts.append(f"{self.created} created")
        if self.updated:
            parts.append(f"{self.updated} updated")
        if self.recreated:
            parts.append(f"{self.recreated} recreated")
        if self.deleted:
            parts.append(f"{self.deleted} deleted")
        if self.touched:
            parts.append(f"{self.touched} touched")
        if self.unchanged:
            parts.append(f"{self.unchanged} unchanged")
        if self.errors:
            parts.append(f"{len(self.errors)} errors")
        return ", ".join(parts) if parts else "No changes"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'events_created': self.created,
            'events_updated': self.updated,
            'events_recreated': self.recreated,
            'events_deleted': self.deleted,
            'events_touched': self.touched,
            'events_unchanged': self.unchanged,
            'duplicates_skipped': self.skipped_duplicates,
            'skipped': self.skipped,
        }
