"""Google Calendar API client with batch support."""
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from gcal.batch import (
    BatchRequestPart,
    MultipartPart,
    boundary_from_content_type,
    correlate_parts,
    encode_batch_request,
    new_boundary,
    parse_multipart,
)
from gcal.errors import (
    BatchItemError,
    DecodeError,
    InvalidArgumentError,
    NotFoundError,
    RateLimitedError,
    TransportError,
    error_for_status,
)
from processor.event_processor import format_utc
from processor.models import RemoteEvent

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Per-index outcome of a batch request."""
    succeeded: Dict[int, Optional[str]] = field(default_factory=dict)
    failed: Dict[int, BatchItemError] = field(default_factory=dict)

    @property
    def all_rate_limited(self) -> bool:
        """True when nothing succeeded and every failure is a rate-limit failure."""
        return (
            not self.succeeded and
            bool(self.failed) and
            all(error.rate_limited for error in self.failed.values())
        )


class CalendarClient:
    """Client for the remote calendar events API."""

    API_BASE = "https://www.googleapis.com/calendar/v3"
    API_PATH = "/calendar/v3"
    BATCH_URL = "https://www.googleapis.com/batch/calendar/v3"
    MAX_BATCH_SIZE = 100
    PAGE_SIZE = 2500

    def __init__(
        self,
        token_provider,
        calendar_id: str = 'primary',
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the client.

        Args:
            token_provider: Object exposing get_access_token()
            calendar_id: Remote calendar to operate on
            timeout: HTTP request timeout in seconds
            max_retries: Retries for rate-limited single-item calls
            base_delay: First backoff delay in seconds
            session: Optional requests session
            sleep: Sleep function used between retries
        """
        self.token_provider = token_provider
        self.calendar_id = calendar_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.session = session or requests.Session()
        self._sleep = sleep

    # Single-item operations

    def create(self, event: RemoteEvent) -> str:
        """
        Create an event.

        Args:
            event: Event to create

        Returns:
            Remote id assigned to the new event
        """
        response = self._request('POST', self._events_url(), json=event.to_body())
        payload = self._decode(response)
        if 'id' not in payload:
            raise DecodeError("Created event has no id", response.status_code)
        return payload['id']

    def update(self, remote_id: str, event: RemoteEvent) -> None:
        """
        Replace an existing event.

        Raises:
            NotFoundError: If the remote event no longer exists
        """
        self._request('PUT', self._event_url(remote_id), json=event.to_body())

    def delete(self, remote_id: str) -> None:
        """Delete an event; an already missing event counts as deleted."""
        try:
            self._request('DELETE', self._event_url(remote_id))
        except NotFoundError:
            logger.info(f"Event {remote_id} already absent, treating delete as success")

    def list(
        self,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> List[RemoteEvent]:
        """
        List events, following pagination.

        Args:
            time_min: Lower bound on event end time
            time_max: Upper bound on event start time

        Returns:
            All events in the window
        """
        params = {
            'singleEvents': 'true',
            'maxResults': str(self.PAGE_SIZE),
        }
        if time_min is not None:
            params['timeMin'] = format_utc(time_min)
        if time_max is not None:
            params['timeMax'] = format_utc(time_max)

        events = []
        while True:
            response = self._request('GET', self._events_url(), params=params)
            payload = self._decode(response)
            events.extend(RemoteEvent.from_api(item) for item in payload.get('items', []))
            page_token = payload.get('nextPageToken')
            if not page_token:
                break
            params['pageToken'] = page_token

        logger.info(f"Listed {len(events)} remote events")
        return events

    # Batch operations

    def batch_create(self, events: List[RemoteEvent]) -> BatchResult:
        """
        Create up to MAX_BATCH_SIZE events in one request.

        Args:
            events: Events to create

        Returns:
            BatchResult with remote ids for successful indexes
        """
        path = f"{self.API_PATH}/calendars/{quote(self.calendar_id, safe='')}/events"
        requests_ = [BatchRequestPart('POST', path, event.to_body()) for event in events]
        parts = self._send_batch(requests_)

        result = BatchResult()
        for index in range(len(events)):
            part = parts.get(index)
            if part is None:
                result.failed[index] = BatchItemError(index, None, "No response part for item")
                continue
            error = self._part_error(index, part)
            if error is not None:
                result.failed[index] = error
                continue
            try:
                result.succeeded[index] = part.json()['id']
            except (ValueError, KeyError, TypeError) as e:
                result.failed[index] = BatchItemError(
                    index, part.status, f"Undecodable create response: {e}"
                )
        return result

    def batch_delete(self, remote_ids: List[str]) -> BatchResult:
        """
        Delete up to MAX_BATCH_SIZE events in one request.

        404 and 410 responses count as success.

        Args:
            remote_ids: Remote ids to delete

        Returns:
            BatchResult with None values for successful indexes
        """
        requests_ = [
            BatchRequestPart('DELETE', self._event_path(remote_id))
            for remote_id in remote_ids
        ]
        parts = self._send_batch(requests_)

        result = BatchResult()
        for index in range(len(remote_ids)):
            part = parts.get(index)
            if part is None:
                result.failed[index] = BatchItemError(index, None, "No response part for item")
                continue
            error = self._part_error(index, part)
            if error is None or error.not_found:
                result.succeeded[index] = None
            else:
                result.failed[index] = error
        return result

    def _send_batch(self, requests_: List[BatchRequestPart]) -> Dict[int, MultipartPart]:
        if len(requests_) > self.MAX_BATCH_SIZE:
            raise InvalidArgumentError(
                f"Batch of {len(requests_)} items exceeds limit of {self.MAX_BATCH_SIZE}"
            )
        if not requests_:
            return {}

        boundary = new_boundary()
        response = self._request(
            'POST',
            self.BATCH_URL,
            data=encode_batch_request(requests_, boundary),
            headers={'Content-Type': f'multipart/mixed; boundary={boundary}'},
            retry=False
        )

        response_boundary = boundary_from_content_type(response.headers.get('Content-Type'))
        if not response_boundary:
            raise DecodeError("Batch response has no multipart boundary", response.status_code)

        parts = correlate_parts(parse_multipart(response.text, response_boundary))
        logger.info(f"Batch of {len(requests_)} requests returned {len(parts)} correlated parts")
        return parts

    def _part_error(self, index: int, part: MultipartPart) -> Optional[BatchItemError]:
        """Return the failure carried by a response part, or None for success."""
        if part.status is not None and part.status >= 400:
            message, reason = self._error_details(part.body)
            return BatchItemError(index, part.status, message or f"HTTP {part.status}", reason)
        if not part.body:
            return None
        try:
            payload = part.json()
        except ValueError:
            return BatchItemError(index, part.status, f"Undecodable part body: {part.body[:200]}")
        if isinstance(payload, dict) and 'error' in payload:
            message, reason = self._error_details(part.body)
            status = payload['error'].get('code') if isinstance(payload['error'], dict) else None
            return BatchItemError(index, status or part.status, message, reason)
        return None

    @staticmethod
    def _error_details(body: str) -> tuple[str, Optional[str]]:
        try:
            error = json.loads(body).get('error', {})
        except (ValueError, AttributeError):
            return body.strip(), None
        if not isinstance(error, dict):
            return str(error), None
        reasons = [item.get('reason') for item in error.get('errors', []) if item.get('reason')]
        return error.get('message', ''), (reasons[0] if reasons else None)

    # HTTP plumbing

    def _request(self, method: str, url: str, retry: bool = True, **kwargs) -> requests.Response:
        """
        Perform an authorized request, retrying rate-limited responses.

        Raises:
            CalendarAPIError subclass matching the failure
        """
        attempts = self.max_retries + 1 if retry else 1
        extra_headers = kwargs.pop('headers', None) or {}
        for attempt in range(attempts):
            headers = dict(extra_headers)
            headers['Authorization'] = f"Bearer {self.token_provider.get_access_token()}"
            try:
                response = self.session.request(
                    method, url, headers=headers, timeout=self.timeout, **kwargs
                )
            except requests.RequestException as e:
                raise TransportError(f"{method} {url} failed: {e}") from e

            if response.status_code < 400:
                return response

            error = error_for_status(response.status_code, response.text)
            if isinstance(error, RateLimitedError) and attempt < attempts - 1:
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Rate limited on {method} {url} (attempt {attempt + 1}/{attempts}). "
                    f"Retrying in {delay} seconds..."
                )
                self._sleep(delay)
                continue
            raise error

    @staticmethod
    def _decode(response: requests.Response) -> dict:
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"Invalid JSON response: {e}", response.status_code) from e

    def _events_url(self) -> str:
        return f"{self.API_BASE}/calendars/{quote(self.calendar_id, safe='')}/events"

    def _event_url(self, remote_id: str) -> str:
        return f"{self._events_url()}/{quote(remote_id, safe='')}"

    def _event_path(self, remote_id: str) -> str:
        return (
            f"{self.API_PATH}/calendars/{quote(self.calendar_id, safe='')}"
            f"/events/{quote(remote_id, safe='')}"
        )
