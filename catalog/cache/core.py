"""
Core cache data structures.
"""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class CacheSource(Enum):
    """Where a result came from."""
    HIT = "hit"         # Served from cache within TTL
    MISS = "miss"       # Fetched from the record store
    BYPASS = "bypass"   # Caching disabled or cache unreachable


@dataclass
class CacheEntry:
    """
    A cached result set plus the metadata needed to decide whether it may be served.

    `generation` is the tag-registry generation observed when the fetch that
    produced this entry began. The entry is stale once any of its tags has
    been invalidated at a later generation.
    `epoch` names the registry that issued the generation; generations from
    another process are not comparable, so only TTL applies to those entries.
    """
    key: str
    value: bytes
    created_at: float
    ttl_seconds: int
    generation: int
    tags: Tuple[str, ...] = field(default_factory=tuple)
    epoch: str = ""

    def age_seconds(self, now: float) -> float:
        """Seconds since the entry was written."""
        return max(0.0, now - self.created_at)

    def is_expired(self, now: float) -> bool:
        """Past TTL, whether or not the backend has evicted it yet."""
        return now >= self.created_at + self.ttl_seconds

    def to_bytes(self) -> bytes:
        return json.dumps(
            {
                "key": self.key,
                "value": self.value.decode("utf-8"),
                "created_at": self.created_at,
                "ttl": self.ttl_seconds,
                "generation": self.generation,
                "tags": list(self.tags),
                "epoch": self.epoch,
            },
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CacheEntry":
        """
        Raises:
            ValueError: raw is not a valid entry envelope
        """
        try:
            data = json.loads(raw)
            return cls(
                key=data["key"],
                value=data["value"].encode("utf-8"),
                created_at=float(data["created_at"]),
                ttl_seconds=int(data["ttl"]),
                generation=int(data["generation"]),
                tags=tuple(data.get("tags", ())),
                epoch=str(data.get("epoch", "")),
            )
        except (KeyError, TypeError, AttributeError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed cache entry: {e}") from e


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, surfaced in API responses.
    """
    cache_source: str  # "hit", "miss" or "bypass"
    cache_key: str
    ttl_seconds: Optional[int] = None
    age_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "cacheSource": self.cache_source,
            "cacheKey": self.cache_key,
            "ttl": self.ttl_seconds,
            "age": round(self.age_seconds, 1) if self.age_seconds is not None else None,
        }
