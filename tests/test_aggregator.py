"""Unit tests for the composite source aggregator."""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from processor.aggregator import (
    EVENTS_KEY_PREFIX,
    Aggregator,
    result_cache_key,
    split_composite_id,
)
from processor.errors import AggregationError, UnsupportedSourceError
from processor.geocoder import GeocodeResolver
from processor.models import CanonicalEvent, FetchResult, SourceDescriptor
from scraper.registry import SourceRegistry
from scraper.static_source import StaticSource
from storage.cache_store import MemoryCacheStore

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

KNOWN = {
    'San Francisco, CA': {'formatted_address': 'San Francisco, CA, USA', 'lat': 37.7749, 'lng': -122.4194},
    'Oakland, CA': {'formatted_address': 'Oakland, CA, USA', 'lat': 37.8044, 'lng': -122.2712},
}


def make_adapter(prefix, events=None, error=None):
    """Create a mock adapter returning events or raising an error."""
    adapter = Mock()
    adapter.descriptor = SourceDescriptor(prefix=prefix, name=f"{prefix} source")
    if error is not None:
        adapter.fetch.side_effect = error
    else:
        adapter.fetch.return_value = FetchResult(
            events=events or [],
            source={'prefix': prefix, 'name': f"{prefix} source", 'total_count': len(events or [])}
        )
    return adapter


def make_event(event_id, location=''):
    return CanonicalEvent(
        id=event_id,
        name=f"Event {event_id}",
        start=NOW,
        end=NOW + timedelta(hours=2),
        location=location
    )


@pytest.fixture
def client():
    client = Mock()
    client.geocode.side_effect = lambda text: KNOWN.get(text)
    return client


@pytest.fixture
def cache():
    return MemoryCacheStore()


@pytest.fixture
def registry():
    registry = SourceRegistry()
    static = StaticSource(now=NOW)
    registry.register(static.descriptor, static)
    return registry


@pytest.fixture
def aggregator(registry, client, cache):
    resolver = GeocodeResolver(client, cache)
    return Aggregator(registry, resolver, max_workers=4)


class TestAggregator:
    """Test cases for Aggregator class."""

    def test_single_source(self, aggregator):
        """Test fetching one source."""
        result = aggregator.fetch('test:')

        assert len(result.events) == 6
        assert result.metadata['total_count'] == 6
        assert result.metadata['errors'] == []
        assert len(result.metadata['sources']) == 1
        assert result.metadata['sources'][0]['prefix'] == 'test'
        assert result.metadata['sources'][0]['source_index'] == 0

    def test_locations_attached(self, aggregator, client):
        """Test that each unique location is geocoded once and attached."""
        result = aggregator.fetch('test:')

        events = {event.id: event for event in result.events}
        assert events['event-today-sf'].has_resolved_location
        assert events['event-weekend-oakland'].resolved_location.lat == 37.8044
        assert events['event-oakland-followup'].resolved_location.lat == 37.8044
        assert not events['event-tomorrow-berkeley'].has_resolved_location
        assert not events['event-unresolved'].has_resolved_location
        assert events['event-online'].resolved_location is None

        # Berkeley, gibberish and the online event
        assert result.metadata['unknown_locations_count'] == 3
        assert client.geocode.call_count == 4

    def test_partial_failure(self, registry, aggregator):
        """Test that one failing piece does not affect the others."""
        registry.register(
            SourceDescriptor(prefix='broken', name='Broken'),
            make_adapter('broken', error=RuntimeError('upstream exploded'))
        )

        result = aggregator.fetch('broken:abc,test:')

        assert len(result.events) == 6
        assert all(event.source_index == 1 for event in result.events)
        assert result.metadata['sources'][0]['source_index'] == 1
        assert result.metadata['errors'] == [{
            'source_id': 'broken:abc',
            'prefix': 'broken',
            'error_type': 'RuntimeError',
            'message': 'upstream exploded'
        }]

    def test_unsupported_piece_is_reported(self, aggregator):
        """Test that an unknown prefix alongside a good piece is an error entry."""
        result = aggregator.fetch('test:,nope:123')

        assert len(result.events) == 6
        assert len(result.metadata['errors']) == 1
        assert result.metadata['errors'][0]['prefix'] == 'nope'
        assert result.metadata['errors'][0]['error_type'] == 'UnsupportedSourceError'

    def test_all_unsupported(self, aggregator):
        """Test that only unknown prefixes raise UnsupportedSourceError."""
        with pytest.raises(UnsupportedSourceError) as exc_info:
            aggregator.fetch('a:1,b:2')

        assert exc_info.value.prefixes == ['a', 'b']

    def test_all_failed(self, registry, aggregator):
        """Test that all pieces failing raises AggregationError."""
        registry.register(
            SourceDescriptor(prefix='broken', name='Broken'),
            make_adapter('broken', error=ConnectionError('refused'))
        )

        with pytest.raises(AggregationError) as exc_info:
            aggregator.fetch('broken:1,nope:2')

        assert exc_info.value.prefixes == ['broken', 'nope']
        assert [e['error_type'] for e in exc_info.value.errors] == [
            'ConnectionError', 'UnsupportedSourceError'
        ]

    def test_geocoding_failure_keeps_events(self, registry, cache):
        """Test that a failing geocoder leaves events unresolved instead of failing the fetch."""
        client = Mock()
        client.geocode.side_effect = ConnectionError('reset')
        adapter = make_adapter('x', events=[make_event('x-1', 'Oakland, CA')])
        registry.register(adapter.descriptor, adapter)
        aggregator = Aggregator(registry, GeocodeResolver(client, cache))

        result = aggregator.fetch('x:1')

        assert [event.id for event in result.events] == ['x-1']
        assert result.events[0].resolved_location.status == 'unresolved'
        assert result.metadata['unknown_locations_count'] == 1
        assert result.metadata['errors'] == []

    def test_empty_id(self, aggregator):
        """Test that an id without pieces is unsupported."""
        with pytest.raises(UnsupportedSourceError):
            aggregator.fetch(' , ')

    def test_colliding_ids_are_namespaced(self, aggregator):
        """Test that ids shared across sources get the source index prefix."""
        result = aggregator.fetch('test:one,test:two')

        ids = [event.id for event in result.events]
        assert len(ids) == 12
        assert len(set(ids)) == 12
        assert '0:event-today-sf' in ids
        assert '1:event-today-sf' in ids

    def test_unique_ids_unchanged(self, registry, aggregator):
        """Test that ids unique across sources are kept as-is."""
        registry.register(
            SourceDescriptor(prefix='x', name='X'),
            make_adapter('x', events=[make_event('x-1'), make_event('x-2')])
        )

        result = aggregator.fetch('x:1,test:')

        ids = {event.id for event in result.events}
        assert {'x-1', 'x-2', 'event-today-sf'} <= ids

    def test_result_cache(self, registry, client, cache):
        """Test that a repeat request within the hour is served from cache."""
        adapter = make_adapter('x', events=[make_event('x-1', 'Oakland, CA')])
        registry.register(adapter.descriptor, adapter)
        aggregator = Aggregator(registry, GeocodeResolver(client, cache), cache=cache, cache_ttl=600)

        first = aggregator.fetch('x:1', NOW.replace(minute=15), NOW + timedelta(days=7))
        second = aggregator.fetch('x:1', NOW.replace(minute=45), NOW + timedelta(days=7))

        assert adapter.fetch.call_count == 1
        assert second.to_dict() == first.to_dict()
        assert second.events[0].has_resolved_location

        key = result_cache_key('x:1', NOW, NOW + timedelta(days=7))
        assert f"{EVENTS_KEY_PREFIX}{key}" in cache.entries

    def test_window_passed_to_sources(self, registry, aggregator):
        """Test that the time window reaches each adapter."""
        adapter = make_adapter('x')
        registry.register(adapter.descriptor, adapter)
        time_max = NOW + timedelta(days=1)

        aggregator.fetch('x:abc', NOW, time_max)

        adapter.fetch.assert_called_once_with('abc', NOW, time_max)


class TestHelpers:
    """Test cases for module helpers."""

    def test_split_composite_id(self):
        """Test splitting and trimming composite ids."""
        assert split_composite_id('gc:a@b.com, 19hz:BayArea ,,test:') == [
            'gc:a@b.com', '19hz:BayArea', 'test:'
        ]
        assert split_composite_id('') == []
        assert split_composite_id(None) == []

    def test_result_cache_key_rounds_to_hour(self):
        """Test that times within the same hour share a key."""
        a = result_cache_key('test:', NOW.replace(minute=1), None)
        b = result_cache_key('test:', NOW.replace(minute=59, second=30), None)

        assert a == b
        assert a == 'test:-2026-10-18T12:00:00+00:00-'
        assert result_cache_key('test:', NOW.replace(hour=13), None) != a
