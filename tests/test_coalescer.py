"""
Tests for request coalescing (single-flight).
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from catalog.cache import RequestCoalescer
from catalog.errors import FetchTimeoutError, StoreError


@pytest.fixture
def coalescer():
    c = RequestCoalescer(timeout=5.0, max_workers=4)
    yield c
    c.shutdown()


def test_concurrent_callers_share_one_call(coalescer, wait):
    """Test that concurrent callers for one key share a single call"""
    gate = threading.Event()
    calls = []

    def fetch():
        calls.append(1)
        gate.wait(timeout=5)
        return {"value": 42}

    with ThreadPoolExecutor(max_workers=6) as pool:
        futures = [pool.submit(coalescer.get_or_fetch, "k", fetch) for _ in range(6)]
        wait(lambda: coalescer.waiters("k") == 5)
        gate.set()
        results = [f.result(timeout=5) for f in futures]

    assert len(calls) == 1
    assert all(r is results[0] for r in results)
    wait(lambda: coalescer.active_requests == 0)
    assert coalescer.get_stats()["coalesced"] == 5


def test_failure_reaches_every_waiter(coalescer, wait):
    """Test that an exception is raised to every waiter"""
    gate = threading.Event()
    calls = []

    def fetch():
        calls.append(1)
        gate.wait(timeout=5)
        raise StoreError("boom")

    with ThreadPoolExecutor(max_workers=3) as pool:
        futures = [pool.submit(coalescer.get_or_fetch, "k", fetch) for _ in range(3)]
        wait(lambda: coalescer.waiters("k") == 2)
        gate.set()
        for f in futures:
            with pytest.raises(StoreError):
                f.result(timeout=5)

    assert len(calls) == 1


def test_timeout_does_not_cancel_the_fetch(coalescer, wait):
    """The waiter gives up; the fetch still finishes in the background"""
    gate = threading.Event()
    finished = threading.Event()

    def fetch():
        gate.wait(timeout=5)
        finished.set()
        return "late"

    with pytest.raises(FetchTimeoutError):
        coalescer.get_or_fetch("k", fetch, timeout=0.05)

    gate.set()
    assert finished.wait(timeout=5)
    wait(lambda: coalescer.active_requests == 0)
    assert coalescer.get_stats()["timeouts"] == 1


def test_new_fetch_after_completion(coalescer, wait):
    """Completed fetches are not reused"""
    counter = iter(range(10))
    assert coalescer.get_or_fetch("k", lambda: next(counter)) == 0
    wait(lambda: coalescer.active_requests == 0)
    assert coalescer.get_or_fetch("k", lambda: next(counter)) == 1
