import asyncio

import pytest

from kontrol._core.actions.throttlers import Throttler, sleep


def test_remains_inactive_until_used():
    throttler = Throttler()
    assert not throttler.active
    assert throttler.source_of_delays is None
    assert throttler.last_used_delay is None


def test_delays_go_in_order_and_the_last_one_repeats():
    throttler = Throttler()
    delays = [throttler.next_delay([1, 2, 3]) for _ in range(5)]
    assert delays == [1, 2, 3, 3, 3]
    assert throttler.active


def test_delays_are_taken_from_the_first_sequence_only():
    throttler = Throttler()
    assert throttler.next_delay([1, 2]) == 1
    assert throttler.next_delay([100, 200]) == 2


def test_no_delays_mean_no_throttling():
    throttler = Throttler()
    assert throttler.next_delay([]) is None
    assert throttler.next_delay([]) is None


def test_reset_starts_over():
    throttler = Throttler()
    throttler.next_delay([1, 2])
    throttler.next_delay([1, 2])
    throttler.reset()
    assert not throttler.active
    assert throttler.next_delay([1, 2]) == 1


def test_generators_are_consumed_once():
    throttler = Throttler()
    delays = (delay for delay in [5, 6])
    assert [throttler.next_delay(delays) for _ in range(3)] == [5, 6, 6]


@pytest.mark.parametrize('delay', [0, -1])
async def test_default_sleep_skips_nonpositive_delays(delay):
    assert await asyncio.wait_for(sleep(delay), timeout=0.01) is None


async def test_default_sleep_is_interruptible():
    event = asyncio.Event()
    event.set()
    unslept = await asyncio.wait_for(sleep(10, event), timeout=1)
    assert unslept is not None
