"""Aggregates events from composite source ids."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from processor.errors import AggregationError, UnsupportedSourceError
from processor.geocoder import GeocodeResolver, attach_locations
from processor.models import AggregateResult, CanonicalEvent, FetchResult
from scraper.registry import SourceRegistry
from storage.cache_store import CacheStore

logger = logging.getLogger(__name__)

EVENTS_KEY_PREFIX = 'events:'


class Aggregator:
    """
    Fetches every piece of a composite source id and merges the events.

    A composite id is a comma-separated list of "<prefix>:<id>" tokens,
    e.g. "gc:team@example.com,19hz:BayArea". Pieces are fetched
    independently; a failing piece is reported in metadata['errors'] and
    does not affect the others.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        resolver: GeocodeResolver,
        max_workers: int = 4,
        cache: Optional[CacheStore] = None,
        cache_ttl: int = 600
    ):
        """
        Initialize the aggregator.

        Args:
            registry: Source registry used to resolve each piece
            resolver: Geocode resolver for event locations
            max_workers: Maximum pieces fetched concurrently (default: 4)
            cache: Optional cache for whole aggregation results
            cache_ttl: Result cache TTL in seconds (default: 10 minutes)
        """
        self.registry = registry
        self.resolver = resolver
        self.max_workers = max(1, max_workers)
        self.cache = cache
        self.cache_ttl = cache_ttl

    def fetch(
        self,
        composite_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> AggregateResult:
        """
        Fetch, merge and geocode events for a composite source id.

        Args:
            composite_id: Comma-separated source ids
            time_min: Optional start of the time window
            time_max: Optional end of the time window

        Returns:
            AggregateResult with merged events and metadata

        Raises:
            UnsupportedSourceError: If no piece has a registered prefix
            AggregationError: If every piece failed
        """
        start_time = time.perf_counter()
        pieces = split_composite_id(composite_id)
        if not pieces:
            raise UnsupportedSourceError(f"No event source in id: {composite_id!r}")

        cache_key = result_cache_key(composite_id, time_min, time_max)
        cached = self._cached_result(cache_key)
        if cached is not None:
            return cached

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pieces))) as executor:
            outcomes = list(executor.map(
                lambda piece: self._fetch_piece(piece, time_min, time_max),
                pieces
            ))

        events: List[CanonicalEvent] = []
        sources: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        for index, (piece, outcome) in enumerate(zip(pieces, outcomes)):
            if isinstance(outcome, Exception):
                errors.append(_error_record(piece, outcome))
                continue
            for event in outcome.events:
                event.source_index = index
                events.append(event)
            sources.append({**outcome.source, 'source_index': index})

        if not sources:
            self._raise_total_failure(pieces, outcomes, errors)

        _namespace_colliding_ids(events)

        resolved = self.resolver.resolve_batch(event.location for event in events)
        unknown_count = attach_locations(events, resolved)

        duration_ms = round((time.perf_counter() - start_time) * 1000)
        logger.info(
            f"Aggregated {len(events)} events from {len(sources)}/{len(pieces)} sources "
            f"in {duration_ms}ms",
            extra={
                'composite_id': composite_id,
                'errors': len(errors),
                'unknown_locations_count': unknown_count
            }
        )

        result = AggregateResult(
            events=events,
            metadata={
                'sources': sources,
                'errors': errors,
                'total_count': len(events),
                'unknown_locations_count': unknown_count
            }
        )
        self._store_result(cache_key, result)
        return result

    def _fetch_piece(
        self,
        piece: str,
        time_min: Optional[datetime],
        time_max: Optional[datetime]
    ):
        """Fetch one piece, returning the FetchResult or the exception raised."""
        try:
            result = self.registry.fetch(piece, time_min, time_max)
            if not isinstance(result, FetchResult):
                raise TypeError(f"Source returned {type(result).__name__}, expected FetchResult")
            logger.info(f"Fetched {len(result.events)} events from {piece}")
            return result
        except Exception as e:
            # Any failure is confined to this piece
            logger.error(
                f"Failed to fetch events from {piece}: {e}",
                extra={'error_type': type(e).__name__},
                exc_info=not isinstance(e, UnsupportedSourceError)
            )
            return e

    def _raise_total_failure(
        self,
        pieces: List[str],
        outcomes: List[Any],
        errors: List[Dict[str, Any]]
    ) -> None:
        prefixes = [_prefix(piece) for piece in pieces]
        if all(isinstance(outcome, UnsupportedSourceError) for outcome in outcomes):
            raise UnsupportedSourceError(
                f"Unsupported event source: {', '.join(prefixes)}",
                prefixes=prefixes
            )
        raise AggregationError(
            f"All event sources failed: {', '.join(prefixes)}",
            prefixes=prefixes,
            errors=errors
        )

    def _cached_result(self, cache_key: str) -> Optional[AggregateResult]:
        if self.cache is None:
            return None
        cached = self.cache.get(cache_key, EVENTS_KEY_PREFIX)
        if not isinstance(cached, dict):
            logger.info(f"Cache miss for {cache_key}")
            return None
        try:
            result = AggregateResult.from_dict(cached)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring bad cached result for {cache_key}: {e}")
            return None
        logger.info(f"Cache hit for {cache_key}")
        return result

    def _store_result(self, cache_key: str, result: AggregateResult) -> None:
        if self.cache is None:
            return
        self.cache.set(cache_key, result.to_dict(), EVENTS_KEY_PREFIX, self.cache_ttl)


def split_composite_id(composite_id: str) -> List[str]:
    """Split a composite source id into trimmed, non-empty pieces."""
    if not composite_id:
        return []
    return [piece.strip() for piece in composite_id.split(',') if piece.strip()]


def result_cache_key(
    composite_id: str,
    time_min: Optional[datetime],
    time_max: Optional[datetime]
) -> str:
    """Cache key for an aggregation, with the window rounded down to the hour."""
    return f"{composite_id}-{_round_to_hour(time_min)}-{_round_to_hour(time_max)}"


def _round_to_hour(value: Optional[datetime]) -> str:
    if value is None:
        return ''
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0).isoformat()


def _namespace_colliding_ids(events: List[CanonicalEvent]) -> None:
    """Prefix ids that appear in more than one source with the source index."""
    owners: Dict[str, set] = {}
    for event in events:
        owners.setdefault(event.id, set()).add(event.source_index)

    for event in events:
        if len(owners[event.id]) > 1:
            event.id = f"{event.source_index}:{event.id}"


def _prefix(piece: str) -> str:
    return piece.partition(':')[0]


def _error_record(piece: str, error: Exception) -> Dict[str, Any]:
    return {
        'source_id': piece,
        'prefix': _prefix(piece),
        'error_type': type(error).__name__,
        'message': str(error)
    }
