"""Integration tests for Lambda handler and outward API."""
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest

from lambda_function import (
    JsonFormatter,
    build_registry,
    build_services,
    get_events,
    get_visible_events,
    lambda_handler,
    setup_logging,
)
from processor.models import RESOLVED, ResolvedLocation
from scraper.static_source import StaticSource
from settings import Settings


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'CACHE_BACKEND': 'memory',
        'LOG_LEVEL': 'INFO',
        'TIMEOUT_SECONDS': '5',
        'MAX_WORKERS': '2'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def services():
    """Services with an in-memory cache and no API keys."""
    return build_services(Settings(cache_backend='memory'))


def request(**params):
    return {'queryStringParameters': params or None}


class TestLambdaHandler:
    """Test cases for lambda_handler."""

    def test_success(self, mock_env, mock_context, services):
        """Test a successful request for the sample source."""
        response = lambda_handler(request(id='test:'), mock_context, services=services)

        assert response['statusCode'] == 200
        assert response['headers']['Content-Type'] == 'application/json'

        body = json.loads(response['body'])
        assert len(body['events']) == 6
        assert body['metadata']['total_count'] == 6
        assert body['metadata']['errors'] == []
        # No geocoding key, so nothing resolves
        assert body['metadata']['unknown_locations_count'] == 6

    def test_missing_id(self, mock_env, mock_context, services):
        """Test that a request without an id is rejected."""
        response = lambda_handler(request(), mock_context, services=services)

        assert response['statusCode'] == 400
        assert json.loads(response['body']) == {'error': 'Event source ID is required'}

    def test_unsupported_source(self, mock_env, mock_context, services):
        """Test that unknown prefixes are a client error."""
        response = lambda_handler(request(id='nope:1,other:2'), mock_context, services=services)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['error'] == 'Unsupported event source type'
        assert body['prefixes'] == ['nope', 'other']

    def test_all_sources_failed(self, mock_env, mock_context, services):
        """Test that every piece failing is a bad gateway."""
        response = lambda_handler(request(id='gc:team@example.com'), mock_context, services=services)

        assert response['statusCode'] == 502
        body = json.loads(response['body'])
        assert body['prefixes'] == ['gc']
        assert body['errors'][0]['error_type'] == 'ConfigurationError'

    def test_partial_failure(self, mock_env, mock_context, services):
        """Test that a failing piece is reported alongside good events."""
        response = lambda_handler(
            request(id='test:,gc:team@example.com'), mock_context, services=services
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert len(body['events']) == 6
        assert body['metadata']['errors'][0]['source_id'] == 'gc:team@example.com'

    def test_unexpected_error(self, mock_env, mock_context):
        """Test that unexpected errors return a 500."""
        broken = Mock()
        broken.aggregator.fetch.side_effect = RuntimeError('boom')

        response = lambda_handler(request(id='test:'), mock_context, services=broken)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['error'] == 'Internal server error'
        assert body['error_type'] == 'RuntimeError'

    def test_invalid_time_window_is_ignored(self, mock_env, mock_context, services):
        """Test that an unparseable timeMin does not fail the request."""
        response = lambda_handler(
            request(id='test:', timeMin='not-a-date', timeMax='2030-01-01T00:00:00Z'),
            mock_context,
            services=services
        )

        assert response['statusCode'] == 200

    def test_time_window_passed_through(self, mock_env, mock_context):
        """Test that timeMin and timeMax reach the aggregator as datetimes."""
        fake = Mock()
        fake.aggregator.fetch.return_value.to_dict.return_value = {
            'events': [], 'metadata': {'total_count': 0, 'errors': []}
        }

        lambda_handler(
            request(id='test:', timeMin='2026-10-01T00:00:00Z', timeMax='2026-10-31T00:00:00'),
            mock_context,
            services=fake
        )

        _, kwargs = fake.aggregator.fetch.call_args
        assert kwargs['time_min'].isoformat() == '2026-10-01T00:00:00+00:00'
        assert kwargs['time_max'].isoformat() == '2026-10-31T00:00:00+00:00'


class TestGetVisibleEvents:
    """Test cases for get_visible_events."""

    @pytest.fixture
    def event_dicts(self, services):
        return get_events('test:', services=services)['events']

    def test_no_filters(self, event_dicts):
        """Test that all events are visible without filters."""
        result = get_visible_events(event_dicts)

        assert len(result['visible_events']) == 6
        assert result['hidden_counts'] == {
            'by_date': 0, 'by_search': 0, 'by_map': 0, 'by_unknown_locations': 0
        }

    def test_search_filter(self, event_dicts):
        """Test filtering dicts by search text."""
        result = get_visible_events(event_dicts, {'search_query': 'oakland'})

        assert [e['id'] for e in result['visible_events']] == [
            'event-weekend-oakland', 'event-oakland-followup'
        ]
        assert result['hidden_counts']['by_search'] == 4

    def test_map_filter_hides_unresolved(self, event_dicts):
        """Test that bounds hide events without coordinates."""
        bounds = {'north': 38.2, 'south': 37.2, 'east': -121.8, 'west': -122.8}

        result = get_visible_events(event_dicts, {'map_bounds': bounds})

        assert result['visible_events'] == []
        assert result['hidden_counts']['by_map'] == 6

    @pytest.mark.parametrize('bounds', [
        {'north': 38.2, 'south': 37.2, 'east': -121.8},
        {'north': 'up', 'south': 37.2, 'east': -121.8, 'west': -122.8},
        {'north': None, 'south': 37.2, 'east': -121.8, 'west': -122.8},
    ])
    def test_invalid_bounds_are_ignored(self, event_dicts, bounds):
        """Test that incomplete or non-numeric bounds do not filter."""
        result = get_visible_events(event_dicts, {'map_bounds': bounds}, viewport_bounds=bounds)

        assert len(result['visible_events']) == 6
        assert result['hidden_counts']['by_map'] == 0

    def test_viewport_bounds_with_canonical_events(self):
        """Test viewport bounds over CanonicalEvent input."""
        events = StaticSource().sample_events()
        events[0].resolved_location = ResolvedLocation(
            'San Francisco, CA', RESOLVED, 'San Francisco, CA, USA', 37.7749, -122.4194
        )
        bounds = {'north': 38.2, 'south': 37.2, 'east': -121.8, 'west': -122.8}

        result = get_visible_events(events, viewport_bounds=bounds)

        assert [e['id'] for e in result['visible_events']] == ['event-today-sf']
        assert result['visible_events'][0]['resolved_location']['lat'] == 37.7749

    def test_date_range_filter(self, event_dicts):
        """Test the date range filter with ISO strings."""
        today = event_dicts[0]['start'][:10]

        result = get_visible_events(event_dicts, {
            'date_range': {'start': f"{today}T00:00:00Z", 'end': f"{today}T23:59:59Z"}
        })

        assert {e['id'] for e in result['visible_events']} == {'event-today-sf', 'event-unresolved'}
        assert result['hidden_counts']['by_date'] == 4

    def test_unknown_locations_only(self, event_dicts):
        """Test the unknown locations filter flag."""
        result = get_visible_events(event_dicts, {'unknown_locations_only': True})

        assert len(result['visible_events']) == 6
        assert result['hidden_counts']['by_unknown_locations'] == 0


class TestSetup:
    """Test cases for logging and service construction."""

    def test_setup_logging(self):
        """Test logging setup installs the JSON formatter."""
        setup_logging('DEBUG')

        root_logger = logging.getLogger()
        assert root_logger.level == logging.DEBUG
        assert isinstance(root_logger.handlers[0].formatter, JsonFormatter)

        setup_logging('INFO')
        assert root_logger.level == logging.INFO

    def test_json_formatter_includes_extra(self):
        """Test that extra fields appear in the JSON output."""
        record = logging.LogRecord('test', logging.INFO, __file__, 1, 'Fetched %d events', (3,), None)
        record.source_id = 'test:'

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'Fetched 3 events'
        assert data['level'] == 'INFO'
        assert data['logger'] == 'test'
        assert data['source_id'] == 'test:'
        assert 'args' not in data

    def test_build_registry(self):
        """Test that every bundled source is registered."""
        registry = build_registry(Settings())

        assert [d.prefix for d in registry.descriptors] == ['gc', '19hz', 'test']

    def test_build_services_memory_cache(self, services):
        """Test service wiring."""
        assert services.aggregator.registry is services.registry
        assert services.resolver.cache is services.cache
        assert services.aggregator.cache is services.cache
