"""
Shared fixtures: in-memory SQLite store, controllable fakes for the store,
cache and clock, and coordinator/service builders.
"""
import threading
import time

import pytest

from catalog.cache import CacheCoordinator, InMemoryCacheClient
from catalog.db import init_db, make_engine, make_session_factory
from catalog.errors import CacheUnavailableError
from catalog.query import normalize
from catalog.schemas import MovieCreate, ResultSet
from catalog.service import CatalogService
from catalog.store import SqlRecordStore
from config.settings import Settings


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingStore:
    """
    Wraps a record store, counting find() calls.

    `gate` (threading.Event) holds every find until set; `error` is raised
    from find instead of returning.
    """

    def __init__(self, inner):
        self.inner = inner
        self.find_calls = 0
        self.gate = None
        self.error = None
        self._lock = threading.Lock()

    def find(self, descriptor) -> ResultSet:
        with self._lock:
            self.find_calls += 1
        if self.gate is not None:
            assert self.gate.wait(timeout=10), "gate never opened"
        if self.error is not None:
            raise self.error
        return self.inner.find(descriptor)

    def get(self, record_id):
        return self.inner.get(record_id)

    def insert(self, movie):
        return self.inner.insert(movie)

    def update(self, record_id, changes):
        return self.inner.update(record_id, changes)

    def delete(self, record_id):
        return self.inner.delete(record_id)


class StubStore:
    """Returns an empty page whose `total` is the current `version`."""

    def __init__(self):
        self.version = 1

    def find(self, descriptor) -> ResultSet:
        return ResultSet(items=[], total=self.version, offset=descriptor.offset, limit=descriptor.limit)


class FlakyCache(InMemoryCacheClient):
    """In-memory cache that raises CacheUnavailableError while `down` is set."""

    def __init__(self, clock=time.time):
        super().__init__(clock=clock)
        self.down = False

    def _check(self, key):
        if self.down:
            raise CacheUnavailableError(f"cache down ({key})")

    def get(self, key):
        self._check(key)
        return super().get(key)

    def set(self, key, value, ttl):
        self._check(key)
        super().set(key, value, ttl)

    def delete(self, key):
        self._check(key)
        super().delete(key)


def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll until predicate() is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(
        database_url="sqlite://",
        redis_url=None,
        cache_enabled=True,
        cache_ttl_list=60,
        cache_ttl_search=30,
        cache_ttl_popular=300,
        cache_ttl_recommendations=600,
        cache_ttl_get=120,
        max_page_limit=50,
        default_page_limit=10,
        max_search_length=40,
        featured_size=5,
        single_flight_timeout=5.0,
        fetch_workers=8,
        store_retry_attempts=1,
        store_retry_backoff=0.0,
    )


@pytest.fixture
def sql_store(settings):
    """Fresh in-memory SQLite record store."""
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield SqlRecordStore(make_session_factory(engine), retry_attempts=1, retry_backoff=0.0)
    engine.dispose()


@pytest.fixture
def store(sql_store):
    return CountingStore(sql_store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return FlakyCache(clock=clock)


@pytest.fixture
def make_coordinator(settings, store, cache, clock):
    """Build a coordinator; keyword overrides replace the defaults."""
    built = []

    def _make(**overrides):
        kwargs = {"store": store, "cache": cache, "settings": settings, "clock": clock}
        kwargs.update(overrides)
        coordinator = CacheCoordinator(**kwargs)
        built.append(coordinator)
        return coordinator

    yield _make
    for coordinator in built:
        coordinator.close()


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def service(store, coordinator, settings):
    return CatalogService(store, coordinator, settings=settings)


@pytest.fixture
def describe(settings):
    """normalize() bound to the test settings."""
    return lambda **params: normalize(params, settings)


@pytest.fixture
def seed_movies(sql_store):
    """A small catalog written straight to the store."""
    movies = [
        MovieCreate(title="Dune", genres=["Sci-Fi", "Adventure"], year=2021, rating=8.0,
                    description="Spice, sand and a desert planet.", popularity=95.0),
        MovieCreate(title="Arrival", genres=["Sci-Fi", "Drama"], year=2016, rating=7.9,
                    description="Linguist meets heptapods.", popularity=70.0),
        MovieCreate(title="Heat", genres=["Crime", "Drama"], year=1995, rating=8.3,
                    description="Los Angeles heist story.", popularity=60.0),
        MovieCreate(title="Paddington 2", genres=["Comedy", "Family"], year=2017, rating=7.8,
                    description="A bear, a pop-up book and a prison.", popularity=40.0),
        MovieCreate(title="Blade Runner", genres=["Sci-Fi"], year=1982, rating=8.1,
                    description="Replicants in the rain.", popularity=80.0),
    ]
    return [sql_store.insert(movie) for movie in movies]


@pytest.fixture
def wait():
    return wait_for


@pytest.fixture
def stub():
    """Counting wrapper around a StubStore."""
    return CountingStore(StubStore())
