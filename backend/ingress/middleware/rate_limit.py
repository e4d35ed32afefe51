"""
Ingress — Request Throttle
============================

What:  Per-client fixed-window request counter that rejects clients over
       their budget.
How:   A ThrottleStore keeps one record per client key: a counter and the
       start of the current window. Every request increments the counter;
       once the window has elapsed the record restarts at 1. RequestThrottle
       turns the count into an allow/reject decision and ThrottleStage plugs
       it into the pipeline, keyed on the trusted client address.
When:  After the security headers and before any sanitization or router work.

Algorithm: Fixed Window Counter
    1. increment(client): start a new window if none exists or it expired
    2. count > max_requests → reject with 429 and Retry-After
    3. otherwise admit, reporting X-RateLimit-* headers on the response

Concurrency:
    increment() never awaits, so on the event loop the read-modify-write on a
    record is a single step relative to other in-flight requests.
    The in-memory store is per process; a multi-process deployment needs a
    shared store implementing the same interface.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.exceptions import RateLimitExceededError
from ingress.middleware.base import HeaderInjector, Stage

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Too many requests from this IP, please try again in an hour!"

Clock = Callable[[], float]


@dataclass(frozen=True)
class WindowCount:
    """Counter value after an increment, and when its window ends."""

    count: int
    resets_at: float


@dataclass
class _Record:
    count: int
    window_start: float


class ThrottleStore(ABC):
    """
    Keyed counter storage for the throttle.

    Contract:
        - increment() counts one request for `key` in the current window,
          starting a fresh window when the previous one has elapsed
        - reset() forgets `key` entirely
    """

    @abstractmethod
    def increment(self, key: str) -> WindowCount:
        ...

    @abstractmethod
    def reset(self, key: str) -> None:
        ...


class MemoryThrottleStore(ThrottleStore):
    """
    In-process store. Expired records are pruned every PRUNE_EVERY increments
    so that clients seen once do not accumulate forever.
    """

    PRUNE_EVERY = 1000

    def __init__(self, window_seconds: float, clock: Clock = time.time):
        self.window = window_seconds
        self.clock = clock
        self._records: Dict[str, _Record] = {}
        self._increments = 0

    def increment(self, key: str) -> WindowCount:
        now = self.clock()
        record = self._records.get(key)
        if record is None or now >= record.window_start + self.window:
            record = _Record(count=0, window_start=now)
            self._records[key] = record
        record.count += 1

        self._increments += 1
        if self._increments % self.PRUNE_EVERY == 0:
            self.prune(now)

        return WindowCount(count=record.count, resets_at=record.window_start + self.window)

    def reset(self, key: str) -> None:
        self._records.pop(key, None)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop records whose window has elapsed. Returns how many were removed."""
        now = self.clock() if now is None else now
        expired = [
            key for key, record in self._records.items()
            if now >= record.window_start + self.window
        ]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("Pruned %d expired throttle records", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    limit: int
    count: int
    resets_at: float
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.resets_at)),
        }


class RequestThrottle:
    """
    admit(client_id) → ThrottleDecision

    Every call counts, rejected ones included, so a client hammering the API
    stays rejected until its window ends.
    """

    def __init__(
        self,
        store: ThrottleStore,
        max_requests: int = 100,
        message: str = DEFAULT_MESSAGE,
        clock: Clock = time.time,
    ):
        self.store = store
        self.max_requests = max_requests
        self.message = message
        self.clock = clock

    def admit(self, client_id: str) -> ThrottleDecision:
        hit = self.store.increment(client_id)
        retry_after = max(math.ceil(hit.resets_at - self.clock()), 0)
        return ThrottleDecision(
            allowed=hit.count <= self.max_requests,
            limit=self.max_requests,
            count=hit.count,
            resets_at=hit.resets_at,
            retry_after=retry_after,
        )


class ThrottleStage(Stage):
    name = "throttle"

    def __init__(self, throttle: RequestThrottle, exempt_paths: Iterable[str] = ()):
        self.throttle = throttle
        self.exempt_paths = frozenset(exempt_paths)

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        if envelope.path in self.exempt_paths:
            return None

        decision = self.throttle.admit(envelope.client_ip)
        envelope.rate_limit = decision
        if not decision.allowed:
            logger.warning(
                "[%s] Rate limit exceeded for %s: %d requests (limit %d), retry in %ds",
                envelope.request_id,
                envelope.client_ip,
                decision.count,
                decision.limit,
                decision.retry_after,
            )
            raise RateLimitExceededError(
                self.throttle.message,
                retry_after=decision.retry_after,
                headers=decision.headers(),
                context={"client": envelope.client_ip, "count": decision.count},
            )
        return None

    def wrap(self, app: ASGIApp, envelope: RequestEnvelope) -> ASGIApp:
        decision = envelope.rate_limit
        if decision is None:
            return app
        return HeaderInjector(app, decision.headers())


def build_throttle(
    window_seconds: float,
    max_requests: int,
    message: str = DEFAULT_MESSAGE,
    store: Optional[ThrottleStore] = None,
    clock: Clock = time.time,
) -> RequestThrottle:
    """Throttle backed by `store`, or by a fresh in-memory store sharing `clock`."""
    if store is None:
        store = MemoryThrottleStore(window_seconds, clock=clock)
    return RequestThrottle(store, max_requests=max_requests, message=message, clock=clock)
