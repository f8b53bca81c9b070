import logging
import threading
import time
from typing import Any, Callable

import config
from pricing.base import Price, PriceProvider

logger = logging.getLogger(__name__)


class _Call:
    """An in-flight fetch that concurrent callers wait on."""

    def __init__(self):
        self.done = threading.Event()
        self.value: Any = None
        self.error: BaseException | None = None


class PriceCache:
    """TTL cache with single-flight fetches.

    The first caller for a missing or expired key runs the fetch; callers
    arriving while it runs wait for the same result. Errors are handed to
    every waiter and never cached, so the next call fetches again.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        current_ttl_s: float | None = None,
        future_ttl_s: float | None = None,
    ):
        self._clock = clock
        self.current_ttl_s = current_ttl_s if current_ttl_s is not None else config.price_cache.current_ttl_s
        self.future_ttl_s = future_ttl_s if future_ttl_s is not None else config.price_cache.future_ttl_s
        self._lock = threading.Lock()
        self._entries: dict[tuple, tuple[float, Any]] = {}
        self._inflight: dict[tuple, _Call] = {}

    def get_or_fetch(self, key: tuple, ttl_s: float, fetch: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() < entry[0]:
                return entry[1]
            call = self._inflight.get(key)
            leader = call is None
            if leader:
                call = _Call()
                self._inflight[key] = call

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.value

        logger.debug("Price cache miss for %s", key)
        try:
            call.value = fetch()
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                if call.error is None:
                    self._entries[key] = (self._clock() + ttl_s, call.value)
                del self._inflight[key]
            call.done.set()
        return call.value

    def invalidate(self, key: tuple | None = None):
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


class CachedPriceProvider(PriceProvider):
    """Shares current/future price fetches for one provider across sites."""

    def __init__(self, provider: PriceProvider, cache: PriceCache):
        self.provider = provider
        self.cache = cache
        self.name = provider.name

    def get_current_price(self, deadline=None) -> Price:
        return self.cache.get_or_fetch(
            (self.name, "current"), self.cache.current_ttl_s,
            lambda: self.provider.get_current_price(deadline),
        )

    def get_future_prices(self, deadline=None) -> list[Price]:
        prices = self.cache.get_or_fetch(
            (self.name, "future"), self.cache.future_ttl_s,
            lambda: self.provider.get_future_prices(deadline),
        )
        return list(prices)

    def get_confirmed_prices(self, start, end, deadline=None) -> list[Price]:
        # Confirmed prices are only used for backfill, which runs once per batch.
        return self.provider.get_confirmed_prices(start, end, deadline)
