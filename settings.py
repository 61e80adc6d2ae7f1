"""Configuration read from environment variables."""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Runtime settings for the event engine."""
    cache_backend: str = 'dynamodb'
    cache_table_name: Optional[str] = None
    aws_region: str = 'us-east-1'
    google_maps_api_key: Optional[str] = None
    google_calendar_api_key: Optional[str] = None
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    max_workers: int = 4
    cache_ttl_events: int = 600  # 10 minutes
    cache_ttl_geocode: int = 7776000  # 90 days
    cache_ttl_geocode_unresolved: int = 86400  # 1 day

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Settings object; invalid numbers fall back to their defaults
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            cache_backend=env.get('CACHE_BACKEND', defaults.cache_backend).lower(),
            cache_table_name=env.get('CACHE_TABLE_NAME') or None,
            aws_region=env.get('AWS_REGION', defaults.aws_region),
            google_maps_api_key=env.get('GOOGLE_MAPS_API_KEY') or None,
            google_calendar_api_key=env.get('GOOGLE_CALENDAR_API_KEY') or None,
            log_level=env.get('LOG_LEVEL', defaults.log_level),
            timeout_seconds=_int(env, 'TIMEOUT_SECONDS', defaults.timeout_seconds),
            max_workers=max(1, _int(env, 'MAX_WORKERS', defaults.max_workers)),
            cache_ttl_events=_int(env, 'CACHE_TTL_API_EVENTSOURCE', defaults.cache_ttl_events),
            cache_ttl_geocode=_int(env, 'CACHE_TTL_API_GEOCODE', defaults.cache_ttl_geocode),
            cache_ttl_geocode_unresolved=_int(
                env, 'CACHE_TTL_GEOCODE_UNRESOLVED', defaults.cache_ttl_geocode_unresolved
            )
        )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid {name}: \"{value}\", using default: {default}")
        return default
