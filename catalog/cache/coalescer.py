"""
Request coalescing to prevent duplicate record store fetches.

When multiple concurrent requests ask for the same data, only one
store call is made and all requesters share the result.
"""
import threading
import time
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..errors import FetchTimeoutError

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress store fetch."""
    future: Future
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one store fetch.

    Pattern:
    - First request for a key submits the fetch to a worker pool
    - Subsequent requests for the same key join the same Future
    - Every caller, the initiator included, waits with its own timeout
    - A caller that times out gets FetchTimeoutError; the fetch itself keeps
      running and its result still reaches anyone still waiting
    - The lock only guards the in-flight map, never the fetch

    Usage:
        coalescer = RequestCoalescer(timeout=10.0)
        result = coalescer.get_or_fetch(
            key="catalog:list:...",
            fetch_fn=lambda: store.find(descriptor),
        )
    """

    def __init__(self, timeout: float = 30.0, max_workers: int = 8):
        """
        Initialize the coalescer.

        Args:
            timeout: Default max seconds a caller waits for a fetch
            max_workers: Size of the pool running store fetches
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="cache-fetch",
        )
        self._stats = {
            "initiated": 0,
            "coalesced": 0,
            "timeouts": 0,
        }

    def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Either join an existing in-flight fetch or initiate a new one.

        Args:
            key: Unique key for this fetch
            fetch_fn: Function to call if we need to fetch
            timeout: Override for the default wait timeout

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            FetchTimeoutError: If waiting for the fetch times out
            Exception: Any error from fetch_fn is propagated to every caller
        """
        timeout = self._timeout if timeout is None else timeout

        with self._lock:
            in_flight = self._in_flight.get(key)
            # A finished fetch awaiting release is not joinable
            if in_flight is not None and not in_flight.future.done():
                # Join existing request
                in_flight.waiter_count += 1
                self._stats["coalesced"] += 1
                is_initiator = False
                logger.debug(
                    f"Coalescing request for {key} "
                    f"(waiters: {in_flight.waiter_count})"
                )
            else:
                # Start new request
                in_flight = InFlightRequest(future=self._pool.submit(fetch_fn))
                self._in_flight[key] = in_flight
                self._stats["initiated"] += 1
                is_initiator = True
                logger.debug(f"Initiating fetch for {key}")

        if is_initiator:
            # May run inline if the fetch already finished, so outside the lock
            in_flight.future.add_done_callback(
                lambda future: self._release(key, future)
            )

        try:
            return in_flight.future.result(timeout=timeout)
        except FuturesTimeoutError:
            with self._lock:
                self._stats["timeouts"] += 1
            logger.error(f"Timeout waiting for fetch: {key}")
            raise FetchTimeoutError(
                f"Fetch for {key} timed out after {timeout}s",
                {"key": key, "timeout": timeout},
            )

    def _release(self, key: str, future: Future) -> None:
        """Drop the in-flight record once its fetch completes."""
        error = future.exception() if not future.cancelled() else None
        if error is not None:
            logger.warning(f"Fetch failed for {key}: {error}")
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None and in_flight.future is future:
                del self._in_flight[key]

    def waiters(self, key: str) -> int:
        """Callers that joined the in-flight fetch for key (initiator not counted)."""
        with self._lock:
            in_flight = self._in_flight.get(key)
            return in_flight.waiter_count if in_flight is not None else 0

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                **self._stats,
            }

    def shutdown(self) -> None:
        """Stop accepting fetches; running ones finish in the background."""
        self._pool.shutdown(wait=False)
