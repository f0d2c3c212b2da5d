import logging

import aiohttp.web
import pytest

from kontrol._cogs.clients.api import call, iter_jsonlines, request
from kontrol._cogs.clients.errors import APINotFoundError, APIServerError

logger = logging.getLogger(__name__)


async def test_relative_urls_are_resolved_against_the_server(
        resp_mocker, aresponses, hostname, remote, settings):
    get_mock = resp_mocker(return_value=aiohttp.web.json_response({'a': 'b'}))
    aresponses.add(hostname, '/some/path', 'get', get_mock)

    result = await call('get', '/some/path', context=remote.context, settings=settings, logger=logger)

    assert result == {'a': 'b'}
    assert get_mock.call_count == 1


async def test_server_errors_are_retried(
        resp_mocker, aresponses, hostname, remote, settings, assert_logs):
    error_mock = resp_mocker(return_value=aresponses.Response(status=500))
    success_mock = resp_mocker(return_value=aiohttp.web.json_response({'a': 'b'}))
    aresponses.add(hostname, '/', 'get', error_mock)
    aresponses.add(hostname, '/', 'get', success_mock)

    result = await call('get', '/', context=remote.context, settings=settings, logger=logger)

    assert result == {'a': 'b'}
    assert error_mock.call_count == 1
    assert success_mock.call_count == 1
    assert_logs([
        r"Request attempt #1/3 failed; will retry: GET http://fake-host/ -> APIServerError",
        r"Request attempt #2/3: GET http://fake-host/",
        r"Request attempt #2/3 succeeded: GET http://fake-host/",
    ])


async def test_server_errors_escalate_when_retries_are_exhausted(
        resp_mocker, aresponses, hostname, remote, settings, assert_logs):
    # A response cannot be sent twice: every attempt gets its own route and response.
    error_mock = resp_mocker(side_effect=[aresponses.Response(status=503) for _ in range(3)])
    for _ in range(3):
        aresponses.add(hostname, '/', 'get', error_mock)

    with pytest.raises(APIServerError):
        await request('get', '/', context=remote.context, settings=settings, logger=logger)

    assert error_mock.call_count == 3
    assert_logs([
        r"Request attempt #1/3 failed; will retry",
        r"Request attempt #2/3 failed; will retry",
        r"Request attempt #3/3 failed; escalating",
    ])


async def test_a_single_backoff_is_accepted(
        resp_mocker, aresponses, hostname, remote, settings):
    settings.networking.error_backoffs = 0
    error_mock = resp_mocker(side_effect=[aresponses.Response(status=500) for _ in range(2)])
    for _ in range(2):
        aresponses.add(hostname, '/', 'get', error_mock)

    with pytest.raises(APIServerError):
        await request('get', '/', context=remote.context, settings=settings, logger=logger)

    assert error_mock.call_count == 2


async def test_client_errors_are_not_retried(
        resp_mocker, aresponses, hostname, remote, settings):
    error_mock = resp_mocker(return_value=aresponses.Response(status=404))
    aresponses.add(hostname, '/', 'get', error_mock)

    with pytest.raises(APINotFoundError):
        await request('get', '/', context=remote.context, settings=settings, logger=logger)

    assert error_mock.call_count == 1


async def test_payloads_are_sent_as_json(
        resp_mocker, aresponses, hostname, remote, settings):
    post_mock = resp_mocker(return_value=aiohttp.web.json_response({}))
    aresponses.add(hostname, '/', 'post', post_mock)

    await call('post', '/', payload={'x': [1, 2]},
               context=remote.context, settings=settings, logger=logger)

    req = post_mock.call_args_list[0][0][0]
    assert req.data == {'x': [1, 2]}


async def collect(chunks):
    async def iter_chunked(n: int):
        for chunk in chunks:
            yield chunk

    class Content:
        pass

    content = Content()
    content.iter_chunked = iter_chunked
    return [line async for line in iter_jsonlines(content)]


async def test_empty_content():
    assert await collect([]) == []


async def test_empty_chunk():
    assert await collect([b'']) == []


async def test_one_chunk_one_line():
    assert await collect([b'hello']) == [b'hello']


async def test_one_chunk_two_lines():
    assert await collect([b'hello\nworld']) == [b'hello', b'world']


async def test_one_chunk_with_empty_lines():
    assert await collect([b'\n\nhello\n\nworld\n\n']) == [b'hello', b'world']


async def test_few_chunks_split_mid_line():
    assert await collect([b'hel', b'lo\nwo', b'rld\n']) == [b'hello', b'world']


async def test_long_lines_are_not_limited():
    long_line = b'x' * (2 ** 20)
    chunks = [long_line[i:i + 1000] for i in range(0, len(long_line), 1000)]
    assert await collect(chunks) == [long_line]
