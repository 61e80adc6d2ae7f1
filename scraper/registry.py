"""Registry mapping source id prefixes to event source adapters."""
import logging
import re
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from processor.errors import UnsupportedSourceError
from processor.models import FetchResult, SourceDescriptor

logger = logging.getLogger(__name__)

URL_RE = re.compile(r'https?://[^\s<>"]+')


class SourceAdapter(Protocol):
    """Capability every event source provides."""

    descriptor: SourceDescriptor

    def fetch(
        self,
        source_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> FetchResult:
        ...


class BaseEventSource:
    """Helpers shared by the bundled event sources."""

    descriptor: SourceDescriptor

    def extract_urls(self, text: str) -> List[str]:
        """
        Extract URLs from free text.

        Args:
            text: Text to search

        Returns:
            List of URLs in order of appearance
        """
        if not text:
            return []
        return [url.rstrip('.,;)') for url in URL_RE.findall(text)]

    def source_metadata(
        self,
        source_id: str,
        total_count: int,
        errors: Optional[List[str]] = None,
        **overrides
    ) -> Dict:
        """Build the metadata dict returned alongside fetched events."""
        errors = errors or []
        metadata = {
            'prefix': self.descriptor.prefix,
            'name': self.descriptor.name,
            'url': self.descriptor.url,
            'id': source_id,
            'total_count': total_count,
            'status': 'partial' if errors else 'ok',
            'errors': errors
        }
        metadata.update(overrides)
        return metadata


class SourceRegistry:
    """Lookup table of event source adapters keyed by prefix."""

    def __init__(self):
        self._adapters: Dict[str, SourceAdapter] = {}

    def register(self, descriptor: SourceDescriptor, adapter: SourceAdapter) -> bool:
        """
        Register an adapter under its descriptor's prefix.

        Args:
            descriptor: Source descriptor with a unique prefix
            adapter: Adapter implementing fetch()

        Returns:
            True if registered, False if the prefix was already taken
        """
        existing = self._adapters.get(descriptor.prefix)
        if existing is not None:
            logger.error(
                f"Prefix {descriptor.prefix} already registered for "
                f"\"{existing.descriptor.name}\", not registering \"{descriptor.name}\""
            )
            return False

        self._adapters[descriptor.prefix] = adapter
        logger.info(f"Registered event source: {descriptor.prefix}: \"{descriptor.name}\"")
        return True

    def resolve(self, source_id: str) -> Optional[Tuple[SourceAdapter, str]]:
        """
        Find the adapter for a source id such as "gc:calendar@example.com".

        Args:
            source_id: Source id, prefix before the first colon

        Returns:
            Tuple of (adapter, id without prefix) or None if unsupported
        """
        prefix, _, rest = source_id.partition(':')
        adapter = self._adapters.get(prefix.strip())
        if adapter is None:
            return None
        return adapter, rest.strip()

    def fetch(
        self,
        source_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> FetchResult:
        """
        Fetch events for a single source id.

        Raises:
            UnsupportedSourceError: If no adapter matches the prefix
        """
        resolved = self.resolve(source_id)
        if resolved is None:
            prefix = source_id.partition(':')[0]
            raise UnsupportedSourceError(
                f"No handler available for event source: {source_id}",
                prefixes=[prefix]
            )

        adapter, rest = resolved
        logger.info(f"Fetching events from \"{adapter.descriptor.name}\" with id: {rest}")
        return adapter.fetch(rest, time_min, time_max)

    @property
    def descriptors(self) -> List[SourceDescriptor]:
        return [adapter.descriptor for adapter in self._adapters.values()]
