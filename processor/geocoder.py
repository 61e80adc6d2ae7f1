"""Geocoding of free-text event locations with a write-through cache."""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Protocol

import requests

from processor.errors import GeocodingError
from processor.models import RESOLVED, UNRESOLVED, CanonicalEvent, ResolvedLocation
from storage.cache_store import CacheStore

logger = logging.getLogger(__name__)

LOCATION_KEY_PREFIX = 'location:'


class GeocodingClient(Protocol):
    """Upstream geocoding provider."""

    def geocode(self, text: str) -> Optional[Dict]:
        """Return {formatted_address, lat, lng}, None if not found, or raise."""
        ...


class GoogleGeocodingClient:
    """Client for the Google Maps Geocoding API."""

    API_URL = "https://maps.googleapis.com/maps/api/geocode/json"

    def __init__(self, api_key: Optional[str], timeout: int = 10):
        """
        Initialize the geocoding client.

        Args:
            api_key: Google Maps API key
            timeout: HTTP request timeout in seconds (default: 10)
        """
        self.api_key = api_key
        self.timeout = timeout
        if not api_key:
            logger.warning("Google Maps API key is not configured, locations will not resolve")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def geocode(self, text: str) -> Optional[Dict]:
        """
        Geocode one location.

        Args:
            text: Free-text location

        Returns:
            Dict with formatted_address, lat and lng, or None if the
            provider found nothing

        Raises:
            GeocodingError: If the provider rejects the request
            requests.RequestException: On network errors and timeouts
        """
        response = requests.get(
            self.API_URL,
            params={'address': text, 'key': self.api_key},
            timeout=self.timeout
        )
        response.raise_for_status()
        data = response.json()

        status = data.get('status')
        if status == 'ZERO_RESULTS':
            return None
        if status != 'OK' or not data.get('results'):
            raise GeocodingError(f"Geocoding failed with status {status}: {data.get('error_message', '')}")

        result = data['results'][0]
        return {
            'formatted_address': result.get('formatted_address'),
            'lat': result['geometry']['location']['lat'],
            'lng': result['geometry']['location']['lng']
        }


class GeocodeResolver:
    """Resolves location texts through the cache, then the provider."""

    def __init__(
        self,
        client: GeocodingClient,
        cache: CacheStore,
        resolved_ttl: int = 7776000,
        unresolved_ttl: int = 86400,
        max_workers: int = 4
    ):
        """
        Initialize the resolver.

        Args:
            client: Geocoding provider
            cache: Cache store for resolved and unresolved results
            resolved_ttl: Cache TTL in seconds for resolved locations (default: 90 days)
            unresolved_ttl: Cache TTL in seconds for not-found locations (default: 1 day)
            max_workers: Maximum concurrent provider lookups (default: 4)
        """
        self.client = client
        self.cache = cache
        self.resolved_ttl = resolved_ttl
        self.unresolved_ttl = unresolved_ttl
        self.max_workers = max(1, max_workers)

    def resolve(self, text: str) -> Optional[ResolvedLocation]:
        """Resolve a single location, None for blank text."""
        results = self.resolve_batch([text])
        return results[0] if results else None

    def resolve_batch(self, location_texts: Iterable[str]) -> List[ResolvedLocation]:
        """
        Resolve many locations with one cache round trip.

        Args:
            location_texts: Location strings, duplicates and blanks allowed

        Returns:
            One ResolvedLocation per unique non-blank text, in order of
            first occurrence
        """
        unique_texts = list(dict.fromkeys(
            text for text in location_texts
            if isinstance(text, str) and text.strip()
        ))
        if not unique_texts:
            return []

        results: Dict[str, ResolvedLocation] = {}
        cached = self.cache.mget(unique_texts, LOCATION_KEY_PREFIX) or [None] * len(unique_texts)
        for text, value in zip(unique_texts, cached):
            location = self._from_cache(text, value)
            if location is not None:
                results[text] = location

        misses = [text for text in unique_texts if text not in results]
        logger.info(
            f"Geocoding {len(unique_texts)} locations: "
            f"{len(results)} cached, {len(misses)} to look up"
        )

        if misses:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(misses))) as executor:
                looked_up = list(executor.map(self._lookup, misses))

            to_cache: Dict[int, List[ResolvedLocation]] = {}
            for text, (location, cacheable) in zip(misses, looked_up):
                results[text] = location
                if cacheable:
                    ttl = self.resolved_ttl if location.is_resolved else self.unresolved_ttl
                    to_cache.setdefault(ttl, []).append(location)

            for ttl, locations in to_cache.items():
                self.cache.mset(
                    [location.original_location for location in locations],
                    [location.to_dict() for location in locations],
                    LOCATION_KEY_PREFIX,
                    ttl
                )

        resolved_count = sum(results[text].is_resolved for text in unique_texts)
        logger.info(f"Resolved {resolved_count} of {len(unique_texts)} locations")
        return [results[text] for text in unique_texts]

    def _lookup(self, text: str):
        """
        Geocode one text upstream.

        Returns:
            Tuple of (ResolvedLocation, whether the result may be cached)
        """
        if getattr(self.client, 'configured', True) is False:
            return ResolvedLocation(original_location=text, status=UNRESOLVED), False

        try:
            found = self.client.geocode(text)
        except (requests.RequestException, GeocodingError) as e:
            logger.warning(f"Geocoding failed for '{text}': {e}")
            return ResolvedLocation(original_location=text, status=UNRESOLVED), False
        except Exception as e:
            # Provider failures never reach the caller
            logger.error(
                f"Unexpected geocoding error for '{text}': {e}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return ResolvedLocation(original_location=text, status=UNRESOLVED), False

        if not found:
            logger.debug(f"No geocoding result for '{text}'")
            return ResolvedLocation(original_location=text, status=UNRESOLVED), True

        try:
            location = ResolvedLocation(
                original_location=text,
                status=RESOLVED,
                formatted_address=found.get('formatted_address'),
                lat=found.get('lat'),
                lng=found.get('lng')
            )
        except ValueError as e:
            logger.warning(f"Discarding invalid geocoding result for '{text}': {e}")
            return ResolvedLocation(original_location=text, status=UNRESOLVED), False
        return location, True

    @staticmethod
    def _from_cache(text: str, value) -> Optional[ResolvedLocation]:
        if not isinstance(value, dict):
            return None
        try:
            location = ResolvedLocation.from_dict(value)
        except ValueError as e:
            logger.warning(f"Ignoring bad cached location for '{text}': {e}")
            return None
        if location.original_location != text:
            return None
        return location


def attach_locations(
    events: List[CanonicalEvent],
    locations: List[ResolvedLocation]
) -> int:
    """
    Attach resolved locations to events with exactly matching location text.

    Args:
        events: Events to update in place
        locations: Results from GeocodeResolver.resolve_batch()

    Returns:
        Number of events left without a resolved location
    """
    by_text = {location.original_location: location for location in locations}
    for event in events:
        if event.location and event.location in by_text:
            event.resolved_location = by_text[event.location]
    return sum(not event.has_resolved_location for event in events)
