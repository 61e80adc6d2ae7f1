"""AWS Lambda handler and outward API for the event engine."""
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from processor.aggregator import Aggregator
from processor.errors import AggregationError, UnsupportedSourceError
from processor.facet_filter import FacetFilterEngine
from processor.geocoder import GeocodeResolver, GoogleGeocodingClient
from processor.models import CanonicalEvent, DateRange, MapBounds
from scraper.google_calendar import GoogleCalendarSource
from scraper.nineteen_hz import NineteenHzSource
from scraper.registry import SourceRegistry
from scraper.static_source import StaticSource
from settings import Settings
from storage.cache_store import CacheStore, build_cache_store

logger = logging.getLogger(__name__)


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    RESERVED = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any extra fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in self.RESERVED and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Services:
    """Components shared by the outward API functions."""
    registry: SourceRegistry
    cache: CacheStore
    resolver: GeocodeResolver
    aggregator: Aggregator


def build_registry(settings: Settings) -> SourceRegistry:
    """Create a registry with every bundled event source."""
    registry = SourceRegistry()
    sources = [
        GoogleCalendarSource(settings.google_calendar_api_key, timeout=settings.timeout_seconds),
        NineteenHzSource(timeout=settings.timeout_seconds),
        StaticSource(),
    ]
    for source in sources:
        registry.register(source.descriptor, source)
    return registry


def build_services(settings: Optional[Settings] = None) -> Services:
    """
    Construct the registry, cache, geocoder and aggregator.

    Args:
        settings: Settings to use (default: read from the environment)

    Returns:
        Services bundle
    """
    settings = settings or Settings.from_env()
    registry = build_registry(settings)
    cache = build_cache_store(settings)
    resolver = GeocodeResolver(
        GoogleGeocodingClient(settings.google_maps_api_key, timeout=settings.timeout_seconds),
        cache,
        resolved_ttl=settings.cache_ttl_geocode,
        unresolved_ttl=settings.cache_ttl_geocode_unresolved,
        max_workers=settings.max_workers
    )
    aggregator = Aggregator(
        registry,
        resolver,
        max_workers=settings.max_workers,
        cache=cache,
        cache_ttl=settings.cache_ttl_events
    )
    return Services(registry=registry, cache=cache, resolver=resolver, aggregator=aggregator)


def get_events(
    source_id: str,
    time_min: Optional[str] = None,
    time_max: Optional[str] = None,
    services: Optional[Services] = None
) -> Dict[str, Any]:
    """
    Fetch, merge and geocode events for a composite source id.

    Args:
        source_id: Comma-separated source ids (e.g., "gc:abc@example.com,19hz:BayArea")
        time_min: Optional ISO 8601 start of the time window
        time_max: Optional ISO 8601 end of the time window
        services: Components to use (default: built from the environment)

    Returns:
        Dict with 'events' and 'metadata'

    Raises:
        UnsupportedSourceError: If no piece has a registered prefix
        AggregationError: If every piece failed
    """
    services = services or build_services()
    result = services.aggregator.fetch(
        source_id,
        time_min=_parse_instant(time_min, 'timeMin'),
        time_max=_parse_instant(time_max, 'timeMax')
    )
    return result.to_dict()


def get_visible_events(
    events: List[Union[CanonicalEvent, Dict[str, Any]]],
    filters: Optional[Dict[str, Any]] = None,
    viewport_bounds: Optional[Dict[str, float]] = None
) -> Dict[str, Any]:
    """
    Apply filters to an event set.

    Args:
        events: CanonicalEvent objects or dicts as returned by get_events()
        filters: Optional dict with 'date_range' ({start, end} ISO strings),
            'search_query', 'map_bounds' ({north, south, east, west}) and
            'unknown_locations_only'
        viewport_bounds: Optional bounds overriding map_bounds

    Returns:
        Dict with 'visible_events' and 'hidden_counts'
    """
    filters = filters or {}
    engine = FacetFilterEngine([
        event if isinstance(event, CanonicalEvent) else CanonicalEvent.from_dict(event)
        for event in events
    ])

    date_range = filters.get('date_range')
    if date_range:
        range_start = _parse_instant(date_range.get('start'), 'date_range.start')
        range_end = _parse_instant(date_range.get('end'), 'date_range.end')
        if range_start and range_end:
            engine.set_date_range(DateRange(start=range_start, end=range_end))
    engine.set_search_query(filters.get('search_query'))
    engine.set_map_bounds(_bounds(filters.get('map_bounds')))
    engine.set_unknown_locations_only(bool(filters.get('unknown_locations_only')))

    result = engine.get_visible(_bounds(viewport_bounds))
    return {
        'visible_events': [event.to_dict() for event in result.visible_events],
        'hidden_counts': result.hidden_counts.to_dict()
    }


def lambda_handler(event: Dict[str, Any], context: Any, services: Optional[Services] = None) -> Dict[str, Any]:
    """
    Lambda entry point returning events for a composite source id.

    Reads 'id', 'timeMin' and 'timeMax' from the query string parameters.

    Args:
        event: API Gateway event payload
        context: Lambda context object
        services: Components to use (default: built from the environment)

    Returns:
        Response dict with statusCode and JSON body
    """
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    start_time = time.time()
    params = event.get('queryStringParameters') or {}
    source_id = params.get('id')

    if not source_id:
        logger.info("Missing event source ID in request")
        return _response(400, {'error': 'Event source ID is required'})

    logger.info("Lambda execution started", extra={'source_id': source_id})

    try:
        body = get_events(
            source_id,
            time_min=params.get('timeMin'),
            time_max=params.get('timeMax'),
            services=services or build_services(settings)
        )
    except UnsupportedSourceError as e:
        logger.info(f"No handler found for event source: {source_id}")
        return _response(400, {
            'error': 'Unsupported event source type',
            'prefixes': e.prefixes
        })
    except AggregationError as e:
        logger.error(
            f"All event sources failed: {e}",
            extra={'prefixes': e.prefixes, 'errors': e.errors}
        )
        return _response(502, {
            'error': str(e),
            'prefixes': e.prefixes,
            'errors': e.errors
        })
    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'error': 'Internal server error',
            'error_type': type(e).__name__
        })

    duration = time.time() - start_time
    logger.info(
        "Lambda execution completed successfully",
        extra={
            'duration_seconds': round(duration, 2),
            'total_count': body['metadata'].get('total_count'),
            'errors': len(body['metadata'].get('errors', []))
        }
    )
    return _response(200, body)


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _parse_instant(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Ignoring invalid {name}: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _bounds(value: Optional[Dict[str, float]]) -> Optional[MapBounds]:
    if not value:
        return None
    try:
        return MapBounds(
            north=float(value['north']),
            south=float(value['south']),
            east=float(value['east']),
            west=float(value['west'])
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Ignoring invalid map bounds {value}: {e}")
        return None
