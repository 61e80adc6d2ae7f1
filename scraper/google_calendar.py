"""Event source for public Google Calendars."""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

from processor.errors import ConfigurationError
from processor.models import CanonicalEvent, FetchResult, SourceDescriptor
from scraper.http_client import get_with_retry
from scraper.registry import BaseEventSource

logger = logging.getLogger(__name__)


class GoogleCalendarSource(BaseEventSource):
    """Fetches events from the Google Calendar v3 API."""

    API_BASE = "https://www.googleapis.com/calendar/v3/calendars"
    PUBLIC_URL_BASE = "https://calendar.google.com/calendar/embed?src="
    MAX_RESULTS = 2500

    descriptor = SourceDescriptor(prefix='gc', name='Google Calendar', url=PUBLIC_URL_BASE)

    def __init__(self, api_key: Optional[str], timeout: int = 30):
        """
        Initialize the Google Calendar source.

        Args:
            api_key: Google Calendar API key
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.api_key = api_key
        self.timeout = timeout
        if not api_key:
            logger.warning("Google Calendar API key is not configured")

    def fetch(
        self,
        source_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> FetchResult:
        """
        Fetch events for one calendar.

        Args:
            source_id: Calendar id (e.g., "team@group.calendar.google.com")
            time_min: Start of window (default: one month ago)
            time_max: End of window (default: three months ahead)

        Returns:
            FetchResult with canonical events

        Raises:
            ConfigurationError: If no API key is configured
            requests.RequestException: If the API cannot be reached
        """
        if not self.api_key:
            raise ConfigurationError("Google Calendar API key is not configured")

        calendar = self._fetch_calendar(source_id, time_min, time_max)

        events = []
        errors = []
        for item in calendar.get('items', []):
            try:
                event = self._to_canonical_event(item)
                if event:
                    events.append(event)
            except (KeyError, ValueError) as e:
                logger.warning(f"Failed to convert calendar item '{item.get('id')}': {e}")
                errors.append(f"{item.get('id')}: {e}")

        logger.info(f"Converted {len(events)} events from calendar {source_id}")

        return FetchResult(
            events=events,
            source=self.source_metadata(
                source_id,
                total_count=len(events),
                errors=errors,
                name=f"Google Calendar: {calendar.get('summary', source_id)}",
                url=f"{self.PUBLIC_URL_BASE}{quote(source_id)}"
            )
        )

    def _fetch_calendar(
        self,
        calendar_id: str,
        time_min: Optional[datetime],
        time_max: Optional[datetime]
    ) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        params = {
            'key': self.api_key,
            'timeMin': _rfc3339(time_min or now - timedelta(days=30)),
            'timeMax': _rfc3339(time_max or now + timedelta(days=90)),
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': self.MAX_RESULTS
        }
        url = f"{self.API_BASE}/{quote(calendar_id, safe='')}/events"

        logger.info(
            f"Fetching Google Calendar {calendar_id} "
            f"from {params['timeMin']} to {params['timeMax']}"
        )
        response = get_with_retry(url, params=params, timeout=self.timeout)
        return response.json()

    def _to_canonical_event(self, item: Dict[str, Any]) -> Optional[CanonicalEvent]:
        """
        Convert one API item to a CanonicalEvent.

        All-day events carry a 'date' instead of a 'dateTime'. Cancelled
        items are skipped.
        """
        if item.get('status') == 'cancelled':
            return None

        start = _parse_api_time(item['start'])
        end = _parse_api_time(item['end']) if item.get('end') else start
        description = item.get('description') or ''

        return CanonicalEvent(
            id=item['id'],
            name=item.get('summary') or '',
            start=start,
            end=max(start, end),
            description=description,
            description_urls=self.extract_urls(description),
            original_url=item.get('htmlLink') or '',
            location=item.get('location') or '',
            tz=item['start'].get('timeZone')
        )


def _parse_api_time(value: Dict[str, str]) -> datetime:
    if value.get('dateTime'):
        parsed = datetime.fromisoformat(value['dateTime'].replace('Z', '+00:00'))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    day_value = date.fromisoformat(value['date'])
    return datetime.combine(day_value, time.min, tzinfo=timezone.utc)


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
