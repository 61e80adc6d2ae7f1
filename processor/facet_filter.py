"""Faceted filtering of canonical events.

Each facet (date, search, map bounds, unknown locations) is a predicate over
a single event. get_visible() returns the events passing every active facet,
and for each facet the number of events in the full set that facet rejects
on its own. Those counts are independent of one another and of the other
active facets, so they may overlap and need not add up to the number of
hidden events.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from processor.models import (
    CanonicalEvent,
    DateRange,
    FacetResult,
    FilterState,
    HiddenCounts,
    MapBounds,
)

logger = logging.getLogger(__name__)


def date_overlap(event: CanonicalEvent, date_range: Optional[DateRange]) -> bool:
    """True if the event overlaps the range, or no range is set."""
    if date_range is None:
        return True
    start = _aware(event.start)
    end = _aware(event.end)
    return not (end < _aware(date_range.start) or start > _aware(date_range.end))


def search_match(event: CanonicalEvent, query: Optional[str]) -> bool:
    """
    Case-insensitive substring match over name, location, geocoded address
    and description.
    """
    if not query or not query.strip():
        return True
    needle = query.strip().lower()
    address = event.resolved_location.formatted_address if event.resolved_location else None
    return any(
        needle in (text or '').lower()
        for text in (event.name, event.location, address, event.description)
    )


def bounds_contains(event: CanonicalEvent, bounds: Optional[MapBounds]) -> bool:
    """True if the event's resolved coordinates fall inside the bounds."""
    if bounds is None:
        return True
    if not event.has_resolved_location:
        return False
    location = event.resolved_location
    return bounds.contains(location.lat, location.lng)


def unknown_location_only(event: CanonicalEvent, enabled: bool) -> bool:
    """When enabled, only events without a resolved location pass."""
    if not enabled:
        return True
    return not event.has_resolved_location


class FacetFilterEngine:
    """
    Holds an event set and the active filters for one filtering session.

    Not thread-safe: setters and get_visible() must be called from one
    logical session at a time.
    """

    def __init__(self, events: Optional[List[CanonicalEvent]] = None):
        self._events: List[CanonicalEvent] = list(events or [])
        self._filters = FilterState()
        logger.info(f"FacetFilterEngine initialized with {len(self._events)} events")

    @property
    def events(self) -> List[CanonicalEvent]:
        return list(self._events)

    @property
    def filters(self) -> FilterState:
        """Copy of the active filter state."""
        return FilterState(
            date_range=self._filters.date_range,
            search_query=self._filters.search_query,
            map_bounds=self._filters.map_bounds,
            unknown_locations_only=self._filters.unknown_locations_only
        )

    @property
    def events_with_locations(self) -> List[CanonicalEvent]:
        return [event for event in self._events if event.has_resolved_location]

    @property
    def events_unknown_locations(self) -> List[CanonicalEvent]:
        return [event for event in self._events if not event.has_resolved_location]

    def set_events(self, events: List[CanonicalEvent]) -> None:
        self._events = list(events)
        logger.info(f"set_events({len(self._events)})")

    def set_date_range(self, date_range: Optional[DateRange]) -> None:
        self._filters.date_range = date_range
        logger.info(f"Filter updated: date_range={date_range}")

    def set_search_query(self, search_query: Optional[str]) -> None:
        self._filters.search_query = search_query
        logger.info(f"Filter updated: search_query={search_query!r}")

    def set_map_bounds(self, map_bounds: Optional[MapBounds]) -> None:
        self._filters.map_bounds = map_bounds
        logger.info(f"Filter updated: map_bounds={map_bounds}")

    def set_unknown_locations_only(self, enabled: bool) -> None:
        self._filters.unknown_locations_only = bool(enabled)
        logger.info(f"Filter updated: unknown_locations_only={bool(enabled)}")

    def reset_filters(self) -> None:
        self._filters = FilterState()
        logger.info("All filters reset")

    def reset(self) -> None:
        """Drop both the events and the filters."""
        self._events = []
        self.reset_filters()
        logger.info("FacetFilterEngine fully reset (events and filters)")

    def get_visible(self, viewport_bounds: Optional[MapBounds] = None) -> FacetResult:
        """
        Compute visible events and per-facet hidden counts.

        Args:
            viewport_bounds: Bounds overriding the stored map bounds for
                this call only

        Returns:
            FacetResult recomputed from the full event set
        """
        filters = self._filters
        bounds = viewport_bounds if viewport_bounds is not None else filters.map_bounds

        visible = []
        counts = HiddenCounts()

        for event in self._events:
            passes_date = date_overlap(event, filters.date_range)
            passes_search = search_match(event, filters.search_query)
            passes_map = bounds_contains(event, bounds)
            passes_unknown = unknown_location_only(event, filters.unknown_locations_only)

            counts.by_date += not passes_date
            counts.by_search += not passes_search
            counts.by_map += not passes_map
            counts.by_unknown_locations += not passes_unknown

            if passes_date and passes_search and passes_map and passes_unknown:
                visible.append(event)

        logger.debug(
            f"get_visible: {len(visible)} of {len(self._events)} events shown, "
            f"hidden counts {counts.to_dict()}"
        )
        return FacetResult(visible_events=visible, hidden_counts=counts)

    def get_filter_stats(self, viewport_bounds: Optional[MapBounds] = None) -> Dict[str, Any]:
        """Summary counts for displaying filter chips."""
        result = self.get_visible(viewport_bounds)
        stats = result.hidden_counts.to_dict()
        stats.update({
            'total_shown': len(result.visible_events),
            'total_hidden': len(self._events) - len(result.visible_events),
            'total_events': len(self._events)
        })
        return stats


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
