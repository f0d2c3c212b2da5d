"""
Error throttling: the growing delays between the retries of failing operations.

The throttler remembers the position in a sequence of delays between calls:
every next error leads to the next delay; the last delay is repeated forever
once the sequence is exhausted; a success resets it back to the beginning.
"""
import asyncio
import dataclasses
from collections.abc import Awaitable, Callable, Iterable, Iterator

from kontrol._cogs.aiokits import aiotime

# An injectable sleep: takes a delay and an optional wake-up event, returns the unslept time.
Sleeper = Callable[[float, asyncio.Event | None], Awaitable[float | None]]


async def sleep(delay: float, wakeup: asyncio.Event | None = None) -> float | None:
    """ The default (real) sleep: interruptible by the wake-up event. """
    return await aiotime.sleep(delay, wakeup=wakeup)


@dataclasses.dataclass(frozen=False)
class Throttler:
    """ A state of throttling for one specific purpose (there can be a few). """
    source_of_delays: Iterator[float] | None = None
    last_used_delay: float | None = None

    @property
    def active(self) -> bool:
        return self.source_of_delays is not None

    def next_delay(self, delays: Iterable[float]) -> float | None:
        """
        Activate (or continue) the throttling and choose the next delay.

        If there are no delays at all, ``None`` is returned: no throttling.
        """
        if self.source_of_delays is None:
            self.source_of_delays = iter(delays)
        delay = next(self.source_of_delays, self.last_used_delay)
        if delay is not None:
            self.last_used_delay = delay
        return delay

    def reset(self) -> None:
        # Release the iterator to keep the memory free during the normal run.
        self.source_of_delays = self.last_used_delay = None
