"""In-process event source with fixed sample events."""
import logging
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

from processor.models import CanonicalEvent, FetchResult, SourceDescriptor
from scraper.registry import BaseEventSource

logger = logging.getLogger(__name__)


class StaticSource(BaseEventSource):
    """Serves sample events dated relative to today, for demos and tests."""

    descriptor = SourceDescriptor(prefix='test', name='Test Events', url=None)

    def __init__(self, now: Optional[datetime] = None):
        self.now = now

    def fetch(
        self,
        source_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> FetchResult:
        events = self.sample_events()
        logger.info(f"Serving {len(events)} sample events for '{source_id or 'default'}'")
        return FetchResult(
            events=events,
            source=self.source_metadata(source_id, total_count=len(events))
        )

    def sample_events(self) -> List[CanonicalEvent]:
        now = self.now or datetime.now(timezone.utc)
        today = now.date()

        def at(days: int, hour: int) -> datetime:
            return datetime.combine(today + timedelta(days=days), time(hour), tzinfo=timezone.utc)

        rows = [
            ('event-today-sf', 'Today Event SF', 'Event happening today in San Francisco',
             'San Francisco, CA', 0, 14, 16),
            ('event-tomorrow-berkeley', 'Tomorrow Event Berkeley', 'Event tomorrow in Berkeley',
             'Berkeley, CA', 1, 10, 12),
            ('event-weekend-oakland', 'Weekend Event Oakland', 'Weekend event in Oakland',
             'Oakland, CA', 5, 18, 22),
            ('event-oakland-followup', 'Oakland Followup', 'Second event at the same place',
             'Oakland, CA', 6, 12, 14),
            ('event-unresolved', 'Unresolved Location Event', 'Event with unresolved location',
             'gibberish123', 0, 20, 22),
            ('event-online', 'Online Event', 'Streamed at https://example.com/stream',
             '', 2, 17, 18),
        ]

        events = []
        for event_id, name, description, location, days, start_hour, end_hour in rows:
            events.append(CanonicalEvent(
                id=event_id,
                name=name,
                start=at(days, start_hour),
                end=at(days, end_hour),
                description=description,
                description_urls=self.extract_urls(description),
                original_url=f"https://example.com/{event_id}",
                location=location,
                tz='UTC'
            ))
        return events
