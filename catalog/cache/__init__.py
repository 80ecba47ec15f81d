"""
Read-through caching with per-kind TTL, request coalescing and tag invalidation.
"""
from .core import CacheEntry, CacheMeta, CacheSource
from .ttl_policies import (
    COLLECTION_TAG,
    cache_key_for,
    get_ttl_for_kind,
    record_tag,
    tags_for,
    ttl_config,
)
from .backends import CacheClient, InMemoryCacheClient, RedisCacheClient
from .coalescer import RequestCoalescer
from .tags import TagRegistry
from .coordinator import CacheCoordinator

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CacheSource",
    # TTL, keys and tags
    "COLLECTION_TAG",
    "cache_key_for",
    "get_ttl_for_kind",
    "record_tag",
    "tags_for",
    "ttl_config",
    # Backends
    "CacheClient",
    "InMemoryCacheClient",
    "RedisCacheClient",
    # Coalescing
    "RequestCoalescer",
    # Invalidation
    "TagRegistry",
    # Coordinator
    "CacheCoordinator",
]
