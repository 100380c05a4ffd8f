from __future__ import annotations

import time
from collections.abc import Callable

from .config import ThrottleConfig
from .errors import RateLimitedError


class TokenBucket:
    """
    Per-minute bucket that refills continuously.

    A size of 0 means unlimited. Unlike a waiting limiter, `try_consume`
    never sleeps: it either takes the tokens or reports how long until it could.
    """

    def __init__(self, size: int = 0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._maximum_size = max(0, int(size))
        self._current_size = float(self._maximum_size)
        self._fill_per_second = (self._maximum_size / 60) if self._maximum_size > 0 else 0.0
        self._last_fill_time = clock()
        self.last_used = self._last_fill_time

    @property
    def size(self) -> int:
        return self._maximum_size

    def wait_time(self, amount: int = 1) -> float:
        """Seconds until `amount` tokens are available; 0.0 if they are now."""
        if amount == 0 or self._maximum_size == 0:
            return 0.0
        if amount > self._maximum_size:
            raise ValueError("Amount exceeds bucket size.")

        self._refill()
        self.last_used = self._last_fill_time
        if amount > self._current_size:
            return (amount - self._current_size) / self._fill_per_second
        return 0.0

    def try_consume(self, amount: int = 1) -> float:
        """Return 0.0 on success, else the seconds until `amount` is available."""
        wait = self.wait_time(amount)
        if wait == 0.0 and self._maximum_size > 0:
            self._current_size -= amount
        return wait

    def idle_for(self, now: float) -> float:
        return now - self.last_used

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_fill_time)
        self._current_size = min(float(self._maximum_size), self._current_size + elapsed * self._fill_per_second)
        self._last_fill_time = now


class RequestThrottle:
    """
    Two bucket families: a coarse budget per caller address, and a tighter
    budget on the metered endpoint keyed by project id (falling back to the
    address when no project id is presented).
    """

    # Buckets idle longer than this are dropped; a full refill takes 60 s.
    IDLE_WINDOW_SECONDS = 60.0

    def __init__(
        self,
        config: ThrottleConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ThrottleConfig()
        self._clock = clock
        self._address_buckets: dict[str, TokenBucket] = {}
        self._metered_buckets: dict[str, TokenBucket] = {}
        self._last_prune = clock()

    def check(self, address: str, *, project_id: str | None = None, metered: bool = False) -> None:
        """
        Charge one request. Raises RateLimitedError when either budget is
        exhausted; a rejected request consumes nothing from the other bucket.
        """
        if not self.config.enabled:
            return
        self._maybe_prune()

        address = address or "unknown"
        address_bucket = self._bucket(self._address_buckets, address, self.config.requests_per_minute)
        metered_bucket = None
        if metered:
            key = project_id or address
            metered_bucket = self._bucket(self._metered_buckets, key, self.config.relay_requests_per_minute)

        # Both budgets are checked before either is charged.
        wait = address_bucket.wait_time(1)
        if wait > 0:
            raise RateLimitedError(retry_after=wait, scope="address")
        if metered_bucket is not None:
            wait = metered_bucket.wait_time(1)
            if wait > 0:
                raise RateLimitedError(
                    "Too many transaction requests, please slow down",
                    retry_after=wait,
                    scope="metered",
                )
            metered_bucket.try_consume(1)
        address_bucket.try_consume(1)

    def tracked(self) -> int:
        return len(self._address_buckets) + len(self._metered_buckets)

    def prune(self) -> int:
        now = self._clock()
        removed = 0
        for buckets in (self._address_buckets, self._metered_buckets):
            for key in [k for k, b in buckets.items() if b.idle_for(now) > self.IDLE_WINDOW_SECONDS]:
                del buckets[key]
                removed += 1
        self._last_prune = now
        return removed

    def _maybe_prune(self) -> None:
        if self._clock() - self._last_prune > self.IDLE_WINDOW_SECONDS:
            self.prune()

    def _bucket(self, buckets: dict[str, TokenBucket], key: str, size: int) -> TokenBucket:
        bucket = buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(size, clock=self._clock)
            buckets[key] = bucket
        return bucket


__all__ = ["TokenBucket", "RequestThrottle"]
