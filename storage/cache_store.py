"""Key-value cache with TTL and batch operations."""
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import CacheError

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60 * 60 * 24 * 30  # 30 days

# (serialized value, expires_at epoch seconds or None)
StoredEntry = Tuple[str, Optional[int]]


class CacheStore:
    """
    Base cache store.

    Handles key prefixing, TTL policy, argument validation and error
    handling; subclasses only move serialized entries in and out of a
    backend through _read() and _write().

    A store whose backend is not configured never touches it: reads return
    None and writes do nothing. Backend failures are logged and treated as
    cache misses.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    @property
    def configured(self) -> bool:
        return True

    def get(self, key: str, prefix: str = '') -> Optional[Any]:
        """
        Get a single value.

        Args:
            key: Cache key
            prefix: Optional prefix prepended to the key

        Returns:
            Cached value or None if missing, expired or unavailable
        """
        if not self.configured or not key:
            return None

        values = self._read_values([f"{prefix}{key}"])
        return values[0] if values else None

    def mget(self, keys: Sequence[str], prefix: str = '') -> Optional[List[Any]]:
        """
        Get several values at once.

        Args:
            keys: Cache keys
            prefix: Optional prefix prepended to every key

        Returns:
            List aligned with keys, None for each miss; None if keys is
            empty or the cache is unconfigured
        """
        if not self.configured or not keys:
            return None

        values = self._read_values([f"{prefix}{key}" for key in keys])
        if values is None:
            return [None] * len(keys)
        return values

    def set(self, key: str, value: Any, prefix: str = '', ttl: Optional[int] = DEFAULT_TTL) -> None:
        """
        Store a single value.

        Args:
            key: Cache key
            value: JSON-serializable value
            prefix: Optional prefix prepended to the key
            ttl: Seconds until expiry (default: 30 days); None or a
                non-positive value never expires
        """
        if not self.configured or not key or value is None:
            return

        self._write_values([(f"{prefix}{key}", value)], ttl)

    def mset(
        self,
        keys: Sequence[str],
        values: Sequence[Any],
        prefix: str = '',
        ttl: Optional[int] = DEFAULT_TTL
    ) -> None:
        """
        Store several values. Not atomic across keys.

        Args:
            keys: Cache keys
            values: Values aligned with keys; None values are skipped
            prefix: Optional prefix prepended to every key
            ttl: Seconds until expiry (default: 30 days)
        """
        if not self.configured or not keys or not values:
            return

        if len(keys) != len(values):
            logger.warning(
                f"mset called with {len(keys)} keys and {len(values)} values, "
                f"storing the first {min(len(keys), len(values))}"
            )

        pairs = [
            (f"{prefix}{key}", value)
            for key, value in zip(keys, values)
            if key and value is not None
        ]
        if pairs:
            self._write_values(pairs, ttl)

    def expires_at(self, ttl: Optional[int]) -> Optional[int]:
        if ttl is None or ttl <= 0:
            return None
        return int(self.clock()) + int(ttl)

    def _read_values(self, full_keys: List[str]) -> Optional[List[Any]]:
        start = time.perf_counter()
        try:
            entries = self._read(list(dict.fromkeys(full_keys)))
        except CacheError as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

        now = self.clock()
        values = []
        for key in full_keys:
            entry = entries.get(key)
            if entry is None:
                values.append(None)
                continue

            serialized, expires_at = entry
            if expires_at is not None and expires_at <= now:
                values.append(None)
                continue

            try:
                values.append(json.loads(serialized))
            except (TypeError, ValueError) as e:
                logger.warning(f"Discarding unreadable cache entry {key}: {e}")
                values.append(None)

        hits = sum(value is not None for value in values)
        elapsed_ms = round((time.perf_counter() - start) * 1000)
        logger.info(f"Cache read {hits}/{len(full_keys)} hits in {elapsed_ms}ms {_describe(full_keys)}")
        return values

    def _write_values(self, pairs: List[Tuple[str, Any]], ttl: Optional[int]) -> None:
        start = time.perf_counter()
        expires_at = self.expires_at(ttl)
        try:
            entries = {key: (json.dumps(value), expires_at) for key, value in pairs}
            self._write(entries)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache value is not serializable: {e}")
            return
        except CacheError as e:
            logger.warning(f"Cache write failed: {e}")
            return

        elapsed_ms = round((time.perf_counter() - start) * 1000)
        logger.info(
            f"Cache wrote {len(pairs)} entries TTL={ttl}s in {elapsed_ms}ms "
            f"{_describe([key for key, _ in pairs])}"
        )

    def _read(self, full_keys: List[str]) -> Dict[str, StoredEntry]:
        raise NotImplementedError

    def _write(self, entries: Dict[str, StoredEntry]) -> None:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    """Process-local cache store, for development and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.entries: Dict[str, StoredEntry] = {}

    def _read(self, full_keys: List[str]) -> Dict[str, StoredEntry]:
        return {key: self.entries[key] for key in full_keys if key in self.entries}

    def _write(self, entries: Dict[str, StoredEntry]) -> None:
        self.entries.update(entries)


class DynamoDBCacheStore(CacheStore):
    """
    Cache store backed by a DynamoDB table.

    The table is keyed on 'cache_key' (string). Values are stored as JSON
    strings in 'value' and expiry as epoch seconds in 'ttl', the attribute
    DynamoDB's TTL sweeper should be configured with. The sweeper runs
    lazily, so reads check 'ttl' themselves.
    """

    BATCH_SIZE = 25  # DynamoDB batch write limit
    READ_BATCH_SIZE = 100  # DynamoDB batch get limit

    def __init__(
        self,
        table_name: Optional[str],
        region_name: Optional[str] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table, None disables caching
            region_name: AWS region (default: from the environment)
            clock: Time source returning epoch seconds
        """
        super().__init__(clock)
        self.table_name = table_name
        self.dynamodb = None
        self.table = None

        if not table_name:
            logger.warning("Cache table is not configured, caching disabled")
            return

        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBCacheStore for table: {table_name}")

    @property
    def configured(self) -> bool:
        return self.table is not None

    def _read(self, full_keys: List[str]) -> Dict[str, StoredEntry]:
        entries = {}
        for i in range(0, len(full_keys), self.READ_BATCH_SIZE):
            chunk = full_keys[i:i + self.READ_BATCH_SIZE]
            for item in self._batch_get(chunk):
                try:
                    entries[item['cache_key']] = self._item_to_entry(item)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed cache item {item.get('cache_key')}: {e}")
        return entries

    def _batch_get(self, keys: List[str]) -> List[dict]:
        request = {self.table_name: {'Keys': [{'cache_key': key} for key in keys]}}
        items = []
        try:
            # Unprocessed keys get one retry, the rest count as misses
            for _ in range(2):
                response = self.dynamodb.batch_get_item(RequestItems=request)
                items.extend(response.get('Responses', {}).get(self.table_name, []))
                request = response.get('UnprocessedKeys') or {}
                if not request:
                    break
        except (ClientError, BotoCoreError) as e:
            raise CacheError(f"Error reading from {self.table_name}: {e}") from e

        if request:
            logger.warning(f"{len(request[self.table_name]['Keys'])} cache keys left unprocessed")
        return items

    def _write(self, entries: Dict[str, StoredEntry]) -> None:
        items = [self._entry_to_item(key, entry) for key, entry in entries.items()]
        batch_count = (len(items) + self.BATCH_SIZE - 1) // self.BATCH_SIZE
        failed_batches = 0

        for i in range(0, len(items), self.BATCH_SIZE):
            batch = items[i:i + self.BATCH_SIZE]
            try:
                with self.table.batch_writer(overwrite_by_pkeys=['cache_key']) as writer:
                    for item in batch:
                        writer.put_item(Item=item)
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Error writing cache batch {i // self.BATCH_SIZE + 1}: {e}")
                failed_batches += 1
                # Continue processing remaining batches
                continue

        if batch_count and failed_batches == batch_count:
            raise CacheError(f"All cache writes to {self.table_name} failed")

    @staticmethod
    def _entry_to_item(key: str, entry: StoredEntry) -> dict:
        serialized, expires_at = entry
        item = {'cache_key': key, 'value': serialized}
        if expires_at is not None:
            item['ttl'] = expires_at
        return item

    @staticmethod
    def _item_to_entry(item: dict) -> StoredEntry:
        expires_at = item.get('ttl')
        return item['value'], int(expires_at) if expires_at is not None else None


def _describe(keys: List[str]) -> str:
    joined = ','.join(keys)
    return joined if len(joined) <= 100 else f"{joined[:100]}..."


def build_cache_store(settings) -> CacheStore:
    """
    Create the cache store selected by settings.

    Args:
        settings: Settings with cache_backend, cache_table_name and aws_region

    Returns:
        MemoryCacheStore for the 'memory' backend, otherwise a
        DynamoDBCacheStore (unconfigured when no table name is set)
    """
    if settings.cache_backend == 'memory':
        logger.info("Using in-memory cache store")
        return MemoryCacheStore()
    return DynamoDBCacheStore(settings.cache_table_name, region_name=settings.aws_region)
