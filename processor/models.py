"""Data models for event aggregation and filtering."""
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


RESOLVED = 'resolved'
UNRESOLVED = 'unresolved'
PENDING = 'pending'
LOCATION_STATUSES = (RESOLVED, UNRESOLVED, PENDING)


@dataclass
class ResolvedLocation:
    """Result of geocoding a free-text location."""
    original_location: str
    status: str = UNRESOLVED
    formatted_address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    def __post_init__(self):
        if self.status not in LOCATION_STATUSES:
            raise ValueError(f"Unknown location status: {self.status}")
        if self.status == RESOLVED and not (
            _is_finite(self.lat) and _is_finite(self.lng)
        ):
            raise ValueError(
                f"Resolved location '{self.original_location}' needs finite lat/lng"
            )

    @property
    def is_resolved(self) -> bool:
        return self.status == RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'original_location': self.original_location,
            'status': self.status
        }
        # Coordinates only make sense for resolved locations
        if self.formatted_address:
            data['formatted_address'] = self.formatted_address
        if self.lat is not None and self.lng is not None:
            data['lat'] = self.lat
            data['lng'] = self.lng
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResolvedLocation':
        return cls(
            original_location=data.get('original_location', ''),
            status=data.get('status', UNRESOLVED),
            formatted_address=data.get('formatted_address'),
            lat=data.get('lat'),
            lng=data.get('lng')
        )


@dataclass
class CanonicalEvent:
    """Normalized, source-agnostic event."""
    id: str
    name: str
    start: datetime
    end: datetime
    description: str = ''
    description_urls: List[str] = field(default_factory=list)
    original_url: str = ''
    location: str = ''
    tz: Optional[str] = None
    resolved_location: Optional[ResolvedLocation] = None
    source_index: int = 0

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(
                f"Event '{self.id}' ends before it starts: {self.start} > {self.end}"
            )

    @property
    def has_resolved_location(self) -> bool:
        return (
            self.resolved_location is not None and
            self.resolved_location.is_resolved
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert event to a JSON-serializable dictionary.

        Returns:
            Dictionary with ISO 8601 start and end times
        """
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'description_urls': list(self.description_urls),
            'original_event_url': self.original_url,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'location': self.location,
            'source_index': self.source_index
        }
        if self.tz:
            data['tz'] = self.tz
        if self.resolved_location is not None:
            data['resolved_location'] = self.resolved_location.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CanonicalEvent':
        """
        Build an event from a dictionary produced by to_dict().

        Args:
            data: Event dictionary

        Returns:
            CanonicalEvent object
        """
        resolved = data.get('resolved_location')
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            description=data.get('description', ''),
            description_urls=list(data.get('description_urls', [])),
            original_url=data.get('original_event_url', ''),
            start=datetime.fromisoformat(data['start']),
            end=datetime.fromisoformat(data['end']),
            location=data.get('location', ''),
            tz=data.get('tz'),
            resolved_location=ResolvedLocation.from_dict(resolved) if resolved else None,
            source_index=int(data.get('source_index', 0))
        )


@dataclass(frozen=True)
class SourceDescriptor:
    """Identifies one event source adapter."""
    prefix: str
    name: str
    url: Optional[str] = None


@dataclass
class FetchResult:
    """Events produced by one source adapter plus its metadata."""
    events: List[CanonicalEvent]
    source: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AggregateResult:
    """Merged events from a composite source id."""
    events: List[CanonicalEvent]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'events': [event.to_dict() for event in self.events],
            'metadata': self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AggregateResult':
        return cls(
            events=[CanonicalEvent.from_dict(item) for item in data.get('events', [])],
            metadata=data.get('metadata', {})
        )


@dataclass(frozen=True)
class DateRange:
    """Inclusive time window."""
    start: datetime
    end: datetime


@dataclass(frozen=True)
class MapBounds:
    """Geographic bounding box in degrees."""
    north: float
    south: float
    east: float
    west: float

    def contains(self, lat: float, lng: float) -> bool:
        return (
            self.south <= lat <= self.north and
            self.west <= lng <= self.east
        )


@dataclass
class FilterState:
    """Active filters, owned by a FacetFilterEngine."""
    date_range: Optional[DateRange] = None
    search_query: Optional[str] = None
    map_bounds: Optional[MapBounds] = None
    unknown_locations_only: bool = False


@dataclass
class HiddenCounts:
    """Number of events each facet excludes on its own."""
    by_date: int = 0
    by_search: int = 0
    by_map: int = 0
    by_unknown_locations: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class FacetResult:
    """Visible events and per-facet hidden counts."""
    visible_events: List[CanonicalEvent]
    hidden_counts: HiddenCounts


def _is_finite(value: Optional[float]) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False
