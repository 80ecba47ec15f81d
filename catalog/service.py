"""
Catalog service: writes against the record store followed by cache invalidation,
plus the read entry points used by the HTTP layer.
"""
import logging
from typing import Any, Mapping, Optional, Tuple

from config.settings import Settings, settings as default_settings

from .cache import CacheCoordinator, CacheMeta
from .errors import CacheUnavailableError, InvalidationFailure, RecordNotFoundError
from .query import OperationKind, QueryDescriptor, normalize
from .schemas import MovieCreate, MovieRecord, MovieUpdate, ResultSet
from .store import RecordStoreClient

logger = logging.getLogger("catalog.service")


class CatalogService:
    """
    Orchestrates movie writes and reads.

    Every mutation goes to the store first; only after the store has
    acknowledged it are the record's tag and the collection tag invalidated.
    A failed invalidation is logged and does not fail the write: stale
    entries are then bounded by their TTL.
    """

    def __init__(
        self,
        store: RecordStoreClient,
        coordinator: CacheCoordinator,
        settings: Optional[Settings] = None,
    ):
        self._store = store
        self._coordinator = coordinator
        self._settings = settings or default_settings

    # ===== WRITES =====

    def create(self, movie: MovieCreate) -> MovieRecord:
        record = self._store.insert(movie)
        self._invalidate(record.id)
        return record

    def update(self, record_id: str, changes: MovieUpdate) -> MovieRecord:
        """
        Raises:
            RecordNotFoundError: no movie with record_id
        """
        record = self._store.update(record_id, changes)
        self._invalidate(record_id)
        return record

    def delete(self, record_id: str) -> None:
        """
        Raises:
            RecordNotFoundError: no movie with record_id
        """
        self._store.delete(record_id)
        self._invalidate(record_id)

    def _invalidate(self, record_id: str) -> None:
        try:
            self._coordinator.invalidate_record(record_id)
        except (InvalidationFailure, CacheUnavailableError) as e:
            logger.warning(
                f"Invalidation after write to movie {record_id} failed; "
                f"stale reads possible until TTL expiry: {e}"
            )

    # ===== READS =====

    def get(self, record_id: str) -> MovieRecord:
        """
        Raises:
            RecordNotFoundError: no movie with record_id
        """
        record, _ = self.get_with_meta(record_id)
        return record

    def get_with_meta(self, record_id: str) -> Tuple[MovieRecord, CacheMeta]:
        descriptor = self.describe({"kind": OperationKind.GET.value, "id": record_id})
        result, meta = self._coordinator.fetch_with_meta(descriptor)
        if not result.items:
            raise RecordNotFoundError(record_id)
        return result.items[0], meta

    def describe(self, raw_params: Mapping[str, Any]) -> QueryDescriptor:
        return normalize(raw_params, self._settings)

    def query(self, kind: OperationKind, raw_params: Mapping[str, Any]) -> Tuple[ResultSet, CacheMeta]:
        """Normalize raw params for kind and read through the cache."""
        descriptor = self.describe({**raw_params, "kind": kind.value})
        return self._coordinator.fetch_with_meta(descriptor)

    def list_movies(self, raw_params: Mapping[str, Any]) -> ResultSet:
        return self.query(OperationKind.LIST, raw_params)[0]

    def search(self, raw_params: Mapping[str, Any]) -> ResultSet:
        return self.query(OperationKind.SEARCH, raw_params)[0]

    def popular(self) -> ResultSet:
        return self.query(OperationKind.POPULAR, {})[0]

    def recommendations(self) -> ResultSet:
        return self.query(OperationKind.RECOMMENDATIONS, {})[0]
