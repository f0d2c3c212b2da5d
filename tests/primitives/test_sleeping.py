import asyncio

import pytest

from kontrol._cogs.aiokits.aiotime import sleep


async def test_the_only_delay_is_awaited():
    loop = asyncio.get_running_loop()
    started = loop.time()
    unslept = await asyncio.wait_for(sleep(0.05), timeout=1.0)
    assert loop.time() - started >= 0.05
    assert unslept is None


async def test_the_shortest_delay_is_awaited():
    loop = asyncio.get_running_loop()
    started = loop.time()
    unslept = await asyncio.wait_for(sleep([0.05, 10]), timeout=1.0)
    assert loop.time() - started < 1
    assert unslept is None


@pytest.mark.parametrize('delays', [
    pytest.param(0, id='zero'),
    pytest.param(-10, id='negative'),
    pytest.param([], id='empty-list'),
    pytest.param([None], id='list-of-none'),
])
async def test_no_delays_skip_sleeping(delays):
    unslept = await asyncio.wait_for(sleep(delays), timeout=0.01)
    assert unslept is None


async def test_by_event_set_before_time_comes():
    event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, event.set)
    unslept = await asyncio.wait_for(sleep(10, event), timeout=1.0)
    assert unslept is not None
    assert 9 < unslept < 10


async def test_with_event_initially_set():
    event = asyncio.Event()
    event.set()
    unslept = await asyncio.wait_for(sleep(10, event), timeout=1.0)
    assert unslept is not None
    assert 9 < unslept <= 10
