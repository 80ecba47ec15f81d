"""
TTL configuration, cache keys and invalidation tags per query kind.
"""
import hashlib
from typing import Dict, Optional, Set, Tuple

from config.settings import Settings, settings as default_settings

from ..query import OperationKind, QueryDescriptor

KEY_PREFIX = "catalog"

# Every collection-level result carries this tag
COLLECTION_TAG = "movies"
RECORD_TAG_PREFIX = "movie:"

# Fixed keys for the global featured lists
POPULAR_KEY = f"{KEY_PREFIX}:popular"
RECOMMENDATIONS_KEY = f"{KEY_PREFIX}:recommendations"


def ttl_config(settings: Optional[Settings] = None) -> Dict[OperationKind, int]:
    """TTL in seconds for each query kind."""
    settings = settings or default_settings
    return {
        OperationKind.LIST: settings.cache_ttl_list,
        OperationKind.SEARCH: settings.cache_ttl_search,
        OperationKind.POPULAR: settings.cache_ttl_popular,
        OperationKind.RECOMMENDATIONS: settings.cache_ttl_recommendations,
        OperationKind.GET: settings.cache_ttl_get,
    }


def get_ttl_for_kind(kind: OperationKind, settings: Optional[Settings] = None) -> int:
    """TTL for one query kind (at least one second)."""
    return max(1, ttl_config(settings)[kind])


def record_tag(record_id: str) -> str:
    return f"{RECORD_TAG_PREFIX}{record_id}"


def record_key(record_id: str) -> str:
    return f"{KEY_PREFIX}:movie:{record_id}"


def cache_key_for(descriptor: QueryDescriptor) -> str:
    """
    Derive the cache key for a descriptor.

    Featured lists and single records have readable fixed keys; pages of
    list/search results are keyed by a hash of the canonical encoding.
    """
    if descriptor.kind is OperationKind.GET:
        return record_key(descriptor.record_id)
    if descriptor.kind is OperationKind.POPULAR:
        return POPULAR_KEY
    if descriptor.kind is OperationKind.RECOMMENDATIONS:
        return RECOMMENDATIONS_KEY
    digest = hashlib.sha256(descriptor.encode()).hexdigest()
    return f"{KEY_PREFIX}:{descriptor.kind.value}:{digest}"


def tags_for(descriptor: QueryDescriptor) -> Tuple[str, ...]:
    """Invalidation tags a cached result for this descriptor is registered under."""
    if descriptor.kind is OperationKind.GET:
        return (COLLECTION_TAG, record_tag(descriptor.record_id))
    return (COLLECTION_TAG,)


def known_keys_for_tag(tag: str) -> Set[str]:
    """
    Keys that are always affected by a tag, even if another process wrote them.
    """
    if tag == COLLECTION_TAG:
        return {POPULAR_KEY, RECOMMENDATIONS_KEY}
    if tag.startswith(RECORD_TAG_PREFIX):
        return {record_key(tag[len(RECORD_TAG_PREFIX):])}
    return set()
