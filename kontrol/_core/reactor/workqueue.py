"""
The work queue: a deduplicating, rate-limited queue of the reconciliation keys.

The keys are added by the observers (synchronously, in the cache-updating loop)
and are consumed by the workers (asynchronously). Every key goes through
these sets:

* **dirty**: the key needs processing (queued or re-queued while in-flight).
* **processing**: the key is being processed by exactly one worker.
* **queue**: the keys ready to be taken by the workers, in the order of addition.

A key added while it is queued is ignored. A key added while it is in-flight
is only marked dirty, and is re-queued when the worker is done with it.
So the same key is never processed by two workers at the same time,
and the changes during the processing are never lost.

The retries are delayed by the rate limiters: per-key exponential backoff,
and an overall token bucket, usually combined (the maximum of their delays).
"""
import asyncio
import collections
import logging
import time
from collections.abc import Callable, Hashable
from typing import Generic, Protocol, TypeVar

from kontrol._cogs.configs import configuration

logger = logging.getLogger(__name__)

_K = TypeVar('_K', bound=Hashable)


class RateLimiter(Protocol):

    def when(self, key: Hashable) -> float:
        """ Get the delay for the key's next retry (and count the retry). """
        ...

    def forget(self, key: Hashable) -> None:
        """ Stop tracking the key (e.g. after a success): the delays start over. """
        ...

    def num_requeues(self, key: Hashable) -> int:
        ...


class ItemExponentialFailureRateLimiter:
    """
    The per-key exponential backoff: ``base_delay * 2 ** failures``, capped.
    """

    def __init__(self, base_delay: float, max_delay: float) -> None:
        super().__init__()
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}

    def when(self, key: Hashable) -> float:
        exp = self._failures.get(key, 0)
        self._failures[key] = exp + 1
        try:
            delay = self.base_delay * 2 ** exp
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)


class BucketRateLimiter:
    """
    The overall token bucket: at most ``burst`` keys at once, then ``qps`` keys per second.

    The keys are not tracked individually: the delays only grow when
    many retries happen at the same time, regardless of which keys.
    """

    def __init__(
            self,
            qps: float,
            burst: int,
            *,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        if qps <= 0:
            raise ValueError(f"The rate must be positive, got {qps!r}.")
        self.qps = qps
        self.burst = burst
        self.clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, key: Hashable) -> float:
        now = self.clock()
        # Rounded to absorb the float residue of the refills (e.g. 5.7e-15 instead of 0).
        self._tokens = round(min(float(self.burst), self._tokens + (now - self._last) * self.qps), 9)
        self._last = now

        # Reserve a token; if there are none, go into debt and wait until it is repaid.
        self._tokens -= 1
        return 0 if self._tokens >= 0 else -self._tokens / self.qps

    def forget(self, key: Hashable) -> None:
        pass

    def num_requeues(self, key: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """ The combination of the rate limiters: the longest of their delays wins. """

    def __init__(self, *limiters: RateLimiter) -> None:
        super().__init__()
        self.limiters = limiters

    def when(self, key: Hashable) -> float:
        return max((limiter.when(key) for limiter in self.limiters), default=0)

    def forget(self, key: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return max((limiter.num_requeues(key) for limiter in self.limiters), default=0)


def default_rate_limiter(
        settings: configuration.OperatorSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
) -> RateLimiter:
    per_key = ItemExponentialFailureRateLimiter(
        base_delay=settings.queueing.base_delay,
        max_delay=settings.queueing.max_delay,
    )
    if settings.queueing.qps is None:
        return per_key
    overall = BucketRateLimiter(qps=settings.queueing.qps, burst=settings.queueing.burst, clock=clock)
    return MaxOfRateLimiter(per_key, overall)


class WorkQueue(Generic[_K]):

    def __init__(
            self,
            *,
            name: str | None = None,
            rate_limiter: RateLimiter | None = None,
    ) -> None:
        super().__init__()
        self.name = name
        self.rate_limiter: RateLimiter = (
            rate_limiter if rate_limiter is not None else
            default_rate_limiter(configuration.OperatorSettings())
        )
        self._queue: collections.deque[_K] = collections.deque()
        self._dirty: set[_K] = set()
        self._processing: set[_K] = set()
        self._delayed: dict[_K, tuple[float, asyncio.TimerHandle]] = {}
        self._changed = asyncio.Event()
        self._shutting_down = False

    def __repr__(self) -> str:
        return (f'<{self.__class__.__name__}: {self.name!r}: '
                f'{len(self._queue)} queued, {len(self._processing)} processing>')

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, key: object) -> bool:
        return key in self._dirty

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def processing(self) -> frozenset[_K]:
        return frozenset(self._processing)

    def add(self, key: _K) -> None:
        if self._shutting_down:
            return
        if key in self._dirty:
            return  # already queued, or re-queued while in-flight.
        self._dirty.add(key)
        if key in self._processing:
            return  # will be re-queued when done.
        self._queue.append(key)
        self._changed.set()

    def add_after(self, key: _K, delay: float) -> None:
        """
        Add the key after a delay. Only the earliest of the pending delays is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay
        if key in self._delayed:
            existing_ready_at, existing_handle = self._delayed[key]
            if existing_ready_at <= ready_at:
                return
            existing_handle.cancel()
        handle = loop.call_later(delay, self._add_delayed, key)
        self._delayed[key] = (ready_at, handle)

    def add_rate_limited(self, key: _K) -> None:
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: _K) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: _K) -> int:
        return self.rate_limiter.num_requeues(key)

    async def get(self) -> tuple[_K | None, bool]:
        """
        Wait for the next key, and mark it as being processed.

        Returns the key and the shutdown flag. Once the queue is shut down,
        the already queued keys are still delivered, and then ``(None, True)``.
        """
        while True:
            if self._queue or self._shutting_down:
                break
            self._changed.clear()
            await self._changed.wait()

        if not self._queue:
            return None, True

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key, False

    def done(self, key: _K) -> None:
        """ Mark the key as processed; re-queue it if it was added meanwhile. """
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._changed.set()

    def shut_down(self) -> None:
        """ Stop accepting new keys; wake up all the waiting workers. """
        self._shutting_down = True
        for _, handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._changed.set()

    def _add_delayed(self, key: _K) -> None:
        self._delayed.pop(key, None)
        self.add(key)
