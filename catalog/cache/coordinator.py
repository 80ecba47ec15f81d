"""
Read-through cache coordination with single-flight fetches and tag invalidation.
"""
import threading
import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from config.settings import Settings, settings as default_settings

from ..errors import CacheUnavailableError, InvalidationFailure
from ..query import QueryDescriptor
from ..schemas import ResultSet
from ..store import RecordStoreClient
from .backends import CacheClient
from .coalescer import RequestCoalescer
from .core import CacheEntry, CacheMeta, CacheSource
from .tags import TagRegistry
from .ttl_policies import (
    COLLECTION_TAG,
    cache_key_for,
    get_ttl_for_kind,
    known_keys_for_tag,
    record_tag,
    tags_for,
    ttl_config,
)

logger = logging.getLogger("cache.coordinator")


class CacheCoordinator:
    """
    Single authority for read-through caching and invalidation:
    - Cache keys derived from normalized query descriptors
    - TTL per query kind, enforced on read even if the backend keeps the entry
    - Single-flight store fetches per key
    - Tag registry with generations so fetches racing an invalidation never
      write (or serve) a pre-invalidation result
    - Degrades to direct store reads when the cache is unreachable
    """

    def __init__(
        self,
        store: RecordStoreClient,
        cache: Optional[CacheClient],
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        coalescer: Optional[RequestCoalescer] = None,
        registry: Optional[TagRegistry] = None,
    ):
        """
        Args:
            store: Record store client (source of truth)
            cache: Cache client, or None to always read from the store
            settings: TTLs and single-flight timeout
            clock: Time source for entry timestamps and expiry
            coalescer: Single-flight coordinator (built from settings if omitted)
            registry: Tag registry (built from settings if omitted)
        """
        self._settings = settings or default_settings
        self._store = store
        self._cache = cache if self._settings.cache_enabled else None
        self._clock = clock
        self._timeout = self._settings.single_flight_timeout
        self._coalescer = coalescer or RequestCoalescer(
            timeout=self._timeout,
            max_workers=self._settings.fetch_workers,
        )
        # Stamps outlive every entry and every fetch they could affect
        self._registry = registry or TagRegistry(
            retention=max(ttl_config(self._settings).values()) + self._timeout,
            clock=clock,
        )

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "expired": 0,
            "stale_rejected": 0,
            "store_fetches": 0,
            "discarded_writes": 0,
            "cache_errors": 0,
            "invalidations": 0,
        }

    @property
    def registry(self) -> TagRegistry:
        return self._registry

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    def cache_key(self, descriptor: QueryDescriptor) -> str:
        return cache_key_for(descriptor)

    # ===== READS =====

    def fetch(self, descriptor: QueryDescriptor) -> ResultSet:
        """Serve a descriptor from cache, or from the store on a miss."""
        result, _ = self.fetch_with_meta(descriptor)
        return result

    def fetch_with_meta(self, descriptor: QueryDescriptor) -> Tuple[ResultSet, CacheMeta]:
        """
        Get a result set from cache or store.

        Returns:
            (result, cache_meta) tuple

        Raises:
            StoreError: the store fetch failed (shared by every waiter)
            FetchTimeoutError: this caller gave up waiting on the store
        """
        key = cache_key_for(descriptor)
        tags = tags_for(descriptor)
        ttl = get_ttl_for_kind(descriptor.kind, self._settings)
        # Taken before the lookup: anything invalidated after this point is newer
        generation = self._registry.generation

        if self._cache is None:
            result = self._single_flight(key, tags, lambda: self._load(descriptor, key, tags, generation, ttl))
            return result, CacheMeta(CacheSource.BYPASS.value, key)

        entry = self._read_entry(key)
        if entry is not None:
            now = self._clock()
            if entry.is_expired(now):
                logger.info(f"CACHE EXPIRED: {key} [age={entry.age_seconds(now):.1f}s]")
                self._bump("expired")
            elif entry.epoch == self._registry.epoch and not self._registry.is_current(
                entry.tags, entry.generation
            ):
                logger.info(f"CACHE STALE: {key} [generation={entry.generation}]")
                self._bump("stale_rejected")
            else:
                try:
                    result = ResultSet.from_bytes(entry.value)
                except ValueError as e:
                    logger.warning(f"Unreadable cached value for {key}: {e}")
                else:
                    logger.debug(f"CACHE HIT: {key} [age={entry.age_seconds(now):.1f}s]")
                    self._bump("hits")
                    return result, CacheMeta(
                        CacheSource.HIT.value, key, entry.ttl_seconds, entry.age_seconds(now)
                    )

        logger.info(f"CACHE MISS: {key}")
        self._bump("misses")
        result = self._single_flight(key, tags, lambda: self._load(descriptor, key, tags, generation, ttl))
        return result, CacheMeta(CacheSource.MISS.value, key, ttl, 0.0)

    def _single_flight(self, key: str, tags: Tuple[str, ...], load: Callable[[], ResultSet]) -> ResultSet:
        # A fetch started before the latest invalidation of these tags is not joinable
        flight_key = f"{key}@{self._registry.tags_generation(tags)}"
        return self._coalescer.get_or_fetch(flight_key, load, timeout=self._timeout)

    def _load(
        self,
        descriptor: QueryDescriptor,
        key: str,
        tags: Tuple[str, ...],
        generation: int,
        ttl: int,
    ) -> ResultSet:
        """Store fetch plus cache population. Runs once per single-flight group."""
        try:
            result = self._store.find(descriptor)
        except Exception as e:
            logger.error(f"Store fetch failed for {key}: {e}")
            raise
        self._bump("store_fetches")
        if self._cache is not None:
            self._populate(key, tags, generation, ttl, result)
        return result

    def _populate(
        self,
        key: str,
        tags: Tuple[str, ...],
        generation: int,
        ttl: int,
        result: ResultSet,
    ) -> None:
        """Write a fresh entry unless one of its tags was invalidated since the fetch began."""
        if not self._registry.register(key, tags, generation):
            logger.info(f"Discarding write for {key}: invalidated during fetch")
            self._bump("discarded_writes")
            return

        entry = CacheEntry(
            key=key,
            value=result.to_bytes(),
            created_at=self._clock(),
            ttl_seconds=ttl,
            generation=generation,
            tags=tags,
            epoch=self._registry.epoch,
        )
        try:
            self._cache.set(key, entry.to_bytes(), ttl)
        except CacheUnavailableError as e:
            logger.warning(f"Cache unavailable, result for {key} not cached: {e}")
            self._bump("cache_errors")
            return

        # An invalidation may have landed between register and set
        if not self._registry.is_current(tags, generation):
            logger.info(f"Discarding write for {key}: invalidated while writing")
            self._bump("discarded_writes")
            try:
                self._cache.delete(key)
            except CacheUnavailableError as e:
                logger.warning(f"Could not remove superseded entry {key}: {e}")
                self._bump("cache_errors")

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = self._cache.get(key)
        except CacheUnavailableError as e:
            logger.warning(f"Cache unavailable, reading {key} from store: {e}")
            self._bump("cache_errors")
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_bytes(raw)
        except ValueError as e:
            logger.warning(f"Ignoring malformed cache entry {key}: {e}")
            return None

    # ===== INVALIDATION =====

    def invalidate(self, tag: str) -> int:
        """
        Remove every entry registered under tag.

        The registry advances first, so even if the cache delete fails, this
        process will not serve the old entries again.

        Returns:
            Number of keys deleted

        Raises:
            InvalidationFailure: some keys could not be deleted from the cache
        """
        keys = self._registry.invalidate(tag) | known_keys_for_tag(tag)
        self._bump("invalidations")
        logger.info(f"Invalidated tag '{tag}' ({len(keys)} keys)")
        return self._delete_keys(keys, tag)

    def invalidate_record(self, record_id: str) -> int:
        """
        Invalidate the record's own tag, then the collection tag.

        Both are attempted even if the first fails.
        """
        deleted = 0
        failures = []
        for tag in (record_tag(record_id), COLLECTION_TAG):
            try:
                deleted += self.invalidate(tag)
            except InvalidationFailure as e:
                failures.append(e)
        if failures:
            keys = [key for failure in failures for key in failure.details.get("keys", [])]
            raise InvalidationFailure(
                f"Invalidation for movie {record_id} incomplete",
                {"id": record_id, "keys": keys},
            )
        return deleted

    def clear(self) -> int:
        """
        Drop every registered entry.

        Returns:
            Number of entries cleared
        """
        keys = self._registry.clear()
        count = self._delete_keys(keys, "*")
        logger.info(f"Cleared {count} cache entries")
        return count

    def _delete_keys(self, keys, tag: str) -> int:
        if self._cache is None:
            return 0
        failed = []
        for key in sorted(keys):
            try:
                self._cache.delete(key)
            except CacheUnavailableError:
                failed.append(key)
        if failed:
            self._bump("cache_errors")
            logger.warning(f"Could not delete {len(failed)} keys for tag '{tag}'")
            raise InvalidationFailure(
                f"Cache delete failed for tag '{tag}'",
                {"tag": tag, "keys": failed},
            )
        return len(keys)

    # ===== STATS =====

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        total_requests = stats["hits"] + stats["misses"]
        hit_rate = (stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        return {
            **stats,
            "enabled": self._cache is not None,
            "hit_rate_percent": round(hit_rate, 1),
            "registry": self._registry.get_stats(),
            "coalescer": self._coalescer.get_stats(),
        }

    def close(self) -> None:
        self._coalescer.shutdown()
