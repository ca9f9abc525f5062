"""Abstract event source."""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Set

from processor.models import SourceEvent

logger = logging.getLogger(__name__)


class EventSource(ABC):
    """Source of truth for the events mirrored to the remote calendar."""

    def __init__(self):
        self._listeners: List[Callable[[], None]] = []
        # Base ids whose definitions could not be read during the last fetch_events
        self.unreadable_base_ids: Set[str] = set()

    @abstractmethod
    def list_calendars(self) -> List[str]:
        """Names of the calendars this source can enumerate."""
        ...

    @abstractmethod
    def fetch_events(
        self,
        start: datetime,
        end: datetime,
        calendars: List[str]
    ) -> List[SourceEvent]:
        """Enumerate event occurrences overlapping [start, end) in the given calendars."""
        ...

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Register a callback fired when the source may have changed."""
        self._listeners.append(callback)

    def notify_changed(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Change listener failed: {e}", exc_info=True)
