"""Event source for the 19hz.info electronic music listings."""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, NamedTuple, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from processor.date_range import parse_date_range
from processor.errors import UpstreamFetchError
from processor.facet_filter import date_overlap
from processor.models import CanonicalEvent, DateRange, FetchResult, SourceDescriptor
from scraper.http_client import get_with_retry
from scraper.registry import BaseEventSource

logger = logging.getLogger(__name__)


class CityInfo(NamedTuple):
    name: str
    timezone: str
    state: str


CITIES: Dict[str, CityInfo] = {
    'BayArea': CityInfo('Bay Area', 'America/Los_Angeles', 'CA'),
    'LosAngeles': CityInfo('Los Angeles', 'America/Los_Angeles', 'CA'),
    'Chicago': CityInfo('Chicago', 'America/Chicago', 'IL'),
    'PNW': CityInfo('Pacific Northwest', 'America/Los_Angeles', 'WA'),
    'Texas': CityInfo('Texas', 'America/Chicago', 'TX'),
    'Miami': CityInfo('Miami', 'America/New_York', 'FL'),
    'Atlanta': CityInfo('Atlanta', 'America/New_York', 'GA'),
    'Denver': CityInfo('Denver', 'America/Denver', 'CO'),
}

DEFAULT_CITY = 'BayArea'

TITLE_RE = re.compile(r'^(.+?)\s*@\s*([^(]+?)(?:\s*\(([^)]+)\))?$')
CITY_STATE_RE = re.compile(r'^(.+?),\s*([A-Z]{2})$')


class ParsedRow(NamedTuple):
    date_text: str
    title: str
    url: str
    tags: str
    price_age: str
    organizers: str
    links: str


class NineteenHzSource(BaseEventSource):
    """Scraper for the 19hz.info regional event tables."""

    BASE_URL = "https://19hz.info"
    DAYS_AHEAD = 90

    descriptor = SourceDescriptor(prefix='19hz', name='19hz Music Events', url='https://19hz.info/')

    def __init__(self, timeout: int = 30):
        """
        Initialize the 19hz source.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.timeout = timeout

    def listing_url(self, city_code: str) -> str:
        return f"{self.BASE_URL}/eventlisting_{city_code}.php"

    def fetch(
        self,
        source_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> FetchResult:
        """
        Fetch and parse one region's listing page.

        Args:
            source_id: Region code (e.g., "BayArea"), default region if empty
            time_min: Start of window (default: now)
            time_max: End of window (default: 90 days ahead)

        Returns:
            FetchResult with events inside the window

        Raises:
            UpstreamFetchError: If the region code is unknown
            requests.RequestException: If the page cannot be fetched
        """
        city_code = source_id or DEFAULT_CITY
        city = CITIES.get(city_code)
        if city is None:
            raise UpstreamFetchError(f"Unknown 19hz region: {city_code}")

        now = datetime.now(timezone.utc)
        window = DateRange(
            start=time_min or now,
            end=time_max or now + timedelta(days=self.DAYS_AHEAD)
        )

        url = self.listing_url(city_code)
        logger.info(f"Fetching events from {city.name} ({url})")
        html_content = get_with_retry(url, timeout=self.timeout).text

        soup = BeautifulSoup(html_content, 'html.parser')
        venues = self._parse_venues(soup)

        events: List[CanonicalEvent] = []
        errors: List[str] = []
        seen_ids = set()

        for row in soup.select('table tbody tr'):
            try:
                parsed = self._parse_row(row)
                if parsed is None:
                    continue
                event = self._to_canonical_event(parsed, city, venues)
            except (ValueError, AttributeError) as e:
                logger.warning(f"Failed to parse event row: {e}")
                errors.append(str(e))
                continue

            if not date_overlap(event, window):
                logger.debug(f"Skipping event outside date range: {event.id}")
                continue

            event.id = _unique_id(event.id, seen_ids)
            seen_ids.add(event.id)
            events.append(event)

        logger.info(f"Successfully parsed {len(events)} events from {city.name}")

        return FetchResult(
            events=events,
            source=self.source_metadata(
                city_code,
                total_count=len(events),
                errors=errors,
                name=f"{self.descriptor.name} - {city.name}",
                url=url
            )
        )

    def _parse_venues(self, soup: BeautifulSoup) -> Dict[str, str]:
        """
        Build a venue name to address lookup from the page's venue list.

        Entries look like: <a href="...">Venue Name</a> - 123 Main St, City<br/>
        """
        venues = {}
        anchor = soup.find(id='venueList')
        if anchor is None or anchor.parent is None:
            return venues

        for link in anchor.parent.find_all('a'):
            name = link.get_text(strip=True)
            address = link.next_sibling
            if not name or not isinstance(address, str):
                continue
            address = address.strip().lstrip('-').strip()
            if address:
                venues[name.lower()] = address

        logger.info(f"Built venue lookup with {len(venues)} venues")
        return venues

    def _parse_row(self, row) -> Optional[ParsedRow]:
        cells = row.find_all('td')
        if len(cells) < 6:
            return None

        link = cells[1].find('a')
        links = ', '.join(
            f"{a.get_text(strip=True)}: {a.get('href')}"
            for a in cells[5].find_all('a')
            if a.get_text(strip=True) and a.get('href')
        )

        return ParsedRow(
            date_text=cells[0].get_text(' ', strip=True),
            title=cells[1].get_text(' ', strip=True),
            url=link.get('href', '') if link else '',
            tags=cells[2].get_text(' ', strip=True),
            price_age=cells[3].get_text(' ', strip=True),
            organizers=cells[4].get_text(' ', strip=True),
            links=links
        )

    def _to_canonical_event(
        self,
        parsed: ParsedRow,
        city: CityInfo,
        venues: Dict[str, str]
    ) -> CanonicalEvent:
        dates = parse_date_range(parsed.date_text, tz=city.timezone)
        if dates['recurring']:
            logger.debug(f"Recurring event detected: {parsed.date_text}")

        description_parts = [
            parsed.title,
            f"Tags: {parsed.tags}" if parsed.tags else '',
            f"Price/Age: {parsed.price_age}" if parsed.price_age else '',
            f"Organizers: {parsed.organizers}" if parsed.organizers else '',
            f"Links: {parsed.links}" if parsed.links else '',
        ]
        description = ' | '.join(part for part in description_parts if part)
        if dates['recurring']:
            description += ' (Recurring)'

        title_match = TITLE_RE.match(parsed.title)
        name = title_match.group(1).strip() if title_match else parsed.title

        return CanonicalEvent(
            id=_event_id(parsed.url, name),
            name=name,
            start=datetime.fromisoformat(dates['start']),
            end=datetime.fromisoformat(dates['end']),
            description=description,
            description_urls=self.extract_urls(description),
            original_url=parsed.url,
            location=extract_location(parsed.title, city, venues),
            tz=city.timezone
        )


def extract_location(title: str, city: CityInfo, venues: Dict[str, str]) -> str:
    """
    Build a geocodable location from an "Event @ Venue (City)" title.

    Args:
        title: Event title cell text
        city: Region the listing belongs to
        venues: Venue name to address lookup

    Returns:
        Location text, empty if the title names no venue
    """
    match = TITLE_RE.match(title)
    if not match:
        return ''

    venue = match.group(2).strip()
    city_text = (match.group(3) or '').strip()

    address = venues.get(venue.lower())
    if address:
        return f"{venue}, {address}"

    if city_text:
        city_state = CITY_STATE_RE.match(city_text)
        if city_state:
            location = f"{venue}, {city_state.group(1).strip()}, {city_state.group(2)}"
        else:
            location = f"{venue}, {city_text}, {city.state}"
    else:
        location = f"{venue}, {city.name}, {city.state}"

    location = re.sub(r'\s+', ' ', location)
    location = re.sub(r'\s+,', ',', location)
    return re.sub(r',+', ',', location).strip()


def _event_id(url: str, name: str) -> str:
    if url:
        parsed = urlparse(url)
        if parsed.hostname:
            host = re.sub(r'[^a-zA-Z0-9-]', '', parsed.hostname.replace('.', '-'))
            path = '-'.join(part for part in parsed.path.split('/') if part)
            path = re.sub(r'[^a-zA-Z0-9-]', '', path)
            return f"{host}-{path}" if path else host
    return re.sub(r'[^a-zA-Z0-9]', '', name).lower()


def _unique_id(base_id: str, seen_ids: set) -> str:
    unique_id = base_id
    suffix = 2
    while unique_id in seen_ids:
        unique_id = f"{base_id}-{suffix}"
        suffix += 1
    return unique_id
