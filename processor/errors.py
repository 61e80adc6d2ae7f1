"""Exceptions raised by the event engine."""
from typing import Any, Dict, List, Optional


class EventEngineError(Exception):
    """Base class for event engine errors."""


class ConfigurationError(EventEngineError):
    """A backend or provider is not configured."""


class UpstreamFetchError(EventEngineError):
    """An event source could not be fetched."""


class GeocodingError(EventEngineError):
    """The geocoding provider returned an error."""


class CacheError(EventEngineError):
    """The cache backend could not be reached."""


class UnsupportedSourceError(EventEngineError):
    """No adapter is registered for a source prefix."""

    def __init__(self, message: str, prefixes: Optional[List[str]] = None):
        super().__init__(message)
        self.prefixes = prefixes or []


class AggregationError(EventEngineError):
    """
    Every piece of a composite source id failed.

    Attributes:
        prefixes: Source prefixes that were attempted
        errors: Per-piece error records
    """

    def __init__(
        self,
        message: str,
        prefixes: List[str],
        errors: List[Dict[str, Any]]
    ):
        super().__init__(message)
        self.prefixes = prefixes
        self.errors = errors
