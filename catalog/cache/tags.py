"""
Invalidation tag registry.

Maps each tag to the cache keys currently registered under it, and keeps a
monotonic generation counter. Every invalidation bumps the counter and stamps
the tag with the new value, so an entry (or an in-flight fetch) that started
at generation G is stale as soon as any of its tags carries a generation > G.

Stamps older than the retention window are folded into a floor that applies
to every tag. Folding only ever makes old entries look staler, and with a
retention of at least the longest TTL plus the fetch timeout, every entry it
affects has expired already.
"""
import threading
import time
import uuid
from collections import OrderedDict, defaultdict
from typing import Callable, Dict, Iterable, Optional, Set, Tuple


class TagRegistry:
    """
    Thread-safe tag -> keys registry with per-tag generations.

    Mutations take the lock. Generation reads do not; a reader may see a
    slightly old value, which only makes it more conservative.
    """

    def __init__(
        self,
        retention: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            retention: Seconds a tag stamp is kept before folding into the
                floor (None keeps every stamp)
            clock: Time source for stamp ages
        """
        self._lock = threading.Lock()
        self._retention = retention
        self._clock = clock
        # Generations are only comparable within one registry
        self.epoch = uuid.uuid4().hex
        self._generation = 0
        # Every tag counts as invalidated at this generation
        self._floor = 0
        # tag -> (generation, invalidated_at), oldest first
        self._stamps: "OrderedDict[str, Tuple[int, float]]" = OrderedDict()
        self._tag_keys: Dict[str, Set[str]] = defaultdict(set)
        self._key_tags: Dict[str, Tuple[str, ...]] = {}

    @property
    def generation(self) -> int:
        """Current global generation."""
        return self._generation

    def tag_generation(self, tag: str) -> int:
        """Generation at which tag was last invalidated (0 if never)."""
        stamp = self._stamps.get(tag)
        return max(self._floor, stamp[0] if stamp else 0)

    def tags_generation(self, tags: Iterable[str]) -> int:
        """Latest invalidation generation across tags."""
        return max((self.tag_generation(tag) for tag in tags), default=self._floor)

    def is_current(self, tags: Iterable[str], generation: int) -> bool:
        """True if none of tags was invalidated after generation."""
        return self.tags_generation(tags) <= generation

    def register(self, key: str, tags: Iterable[str], generation: int) -> bool:
        """
        Register key under tags, unless one of the tags was invalidated
        after generation.

        Returns:
            True if registered, False if the write should be discarded
        """
        tags = tuple(tags)
        with self._lock:
            if not self.is_current(tags, generation):
                return False
            previous = self._key_tags.get(key, ())
            for tag in previous:
                if tag not in tags:
                    self._discard(tag, key)
            for tag in tags:
                self._tag_keys[tag].add(key)
            self._key_tags[key] = tags
            return True

    def invalidate(self, tag: str) -> Set[str]:
        """
        Bump the generation for tag and drop every key registered under it.

        Idempotent: invalidating an unknown or empty tag just advances its
        generation.

        Returns:
            The keys that were registered under tag
        """
        with self._lock:
            now = self._clock()
            self._generation += 1
            # Re-inserting keeps _stamps ordered by generation
            self._stamps.pop(tag, None)
            self._stamps[tag] = (self._generation, now)
            self._prune(now)
            keys = self._tag_keys.pop(tag, set())
            for key in keys:
                for other in self._key_tags.pop(key, ()):
                    if other != tag:
                        self._discard(other, key)
            return keys

    def clear(self) -> Set[str]:
        """Invalidate every tag at once. Returns all registered keys."""
        with self._lock:
            self._generation += 1
            self._floor = self._generation
            self._stamps.clear()
            keys = set(self._key_tags)
            self._tag_keys.clear()
            self._key_tags.clear()
            return keys

    def keys_for(self, tag: str) -> Set[str]:
        with self._lock:
            return set(self._tag_keys.get(tag, ()))

    def _prune(self, now: float) -> None:
        # Caller holds the lock
        if self._retention is None:
            return
        cutoff = now - self._retention
        while self._stamps:
            tag, (generation, invalidated_at) = next(iter(self._stamps.items()))
            if invalidated_at > cutoff:
                break
            del self._stamps[tag]
            self._floor = max(self._floor, generation)

    def _discard(self, tag: str, key: str) -> None:
        # Caller holds the lock
        keys = self._tag_keys.get(tag)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._tag_keys[tag]

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "generation": self._generation,
                "floor": self._floor,
                "tags": len(self._tag_keys),
                "keys": len(self._key_tags),
                "stamps": len(self._stamps),
            }
