"""Fixed-window per-client rate limiting."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

log = logging.getLogger("chat_api")

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateBucket:
    reset_at: float
    count: int = 0


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_s: int = 0


class RateLimiter:
    """
    Fixed-window counter keyed by client identity.

    A bucket lives for `window_s` seconds from the first request that created
    it; once its window has passed the next request replaces it with a fresh
    one. `max_requests <= 0` or `window_s <= 0` disables limiting.

    Expired buckets are swept opportunistically once the mapping grows beyond
    `sweep_threshold` entries.
    """

    def __init__(
        self,
        max_requests: int,
        window_s: float,
        *,
        sweep_threshold: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max_requests
        self._window_s = window_s
        self._sweep_threshold = sweep_threshold
        self._clock = clock
        self._buckets: Dict[str, RateBucket] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._max > 0 and self._window_s > 0

    def __len__(self) -> int:
        return len(self._buckets)

    def bucket(self, identity: str) -> Optional[RateBucket]:
        return self._buckets.get(identity)

    def check(self, identity: str, now: Optional[float] = None) -> RateDecision:
        """Count one request for `identity` and decide whether it may proceed."""
        if not self.enabled:
            return RateDecision(allowed=True)

        if now is None:
            now = self._clock()

        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is None or now > bucket.reset_at:
                bucket = RateBucket(reset_at=now + self._window_s)
                self._buckets[identity] = bucket

            bucket.count += 1
            if bucket.count > self._max:
                retry_after = max(0, math.ceil(bucket.reset_at - now))
                return RateDecision(allowed=False, retry_after_s=retry_after)

            if len(self._buckets) > self._sweep_threshold:
                self._sweep(now)

        return RateDecision(allowed=True)

    def _sweep(self, now: float) -> None:
        expired = [k for k, v in self._buckets.items() if now > v.reset_at]
        for k in expired:
            del self._buckets[k]
        if expired:
            log.debug("Rate limiter swept %d expired buckets, %d left", len(expired), len(self._buckets))


def client_identity(headers: Mapping[str, str], peer: Optional[str]) -> str:
    """
    Resolve the rate-limit identity of a request.

    Order: cf-connecting-ip, first x-forwarded-for entry, transport peer.
    Requests with no determinable identity all share the "unknown" bucket.
    """
    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip

    xff = headers.get("x-forwarded-for") or ""
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first

    return peer or UNKNOWN_CLIENT
