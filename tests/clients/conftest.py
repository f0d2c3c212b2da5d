import json

import pytest

from kontrol._cogs.clients.auth import ConnectionInfo
from kontrol._cogs.clients.remote import RemoteSource


@pytest.fixture()
def hostname():
    """ A fake hostname to be used in all aiohttp/aresponses tests. """
    return 'fake-host'


@pytest.fixture()
def settings(settings):
    settings.networking.error_backoffs = [0, 0]
    return settings


@pytest.fixture()
async def remote(hostname, settings):
    source = RemoteSource(ConnectionInfo(server=f'http://{hostname}', token='xyz'), settings=settings)
    try:
        yield source
    finally:
        await source.close()


@pytest.fixture()
def resp_mocker(mocker, aresponses):
    """
    A factory of server-side callbacks for `aresponses` with mocking/spying.

    The value of the fixture is a function, which return a coroutine mock.
    That coroutine mock should be passed to `aresponses.add` as a response
    callback function. When called, it calls the mock defined by the function's
    arguments (specifically, return_value or side_effects).

    Sample usage::

        def test_me(resp_mocker):
            response = aiohttp.web.json_response({'a': 'b'})
            callback = resp_mocker(return_value=response)
            aresponses.add(hostname, '/path/', 'get', callback)
            do_something()
            assert callback.called
            assert callback.call_count == 1
    """
    def resp_maker(*args, **kwargs):
        actual_response = mocker.MagicMock(*args, **kwargs)

        async def resp_mock_effect(request):
            # The request's content can be read inside of the handler only. We preserve
            # the data into a conventional field, so that they could be asserted later.
            text = await request.text()
            try:
                request.data = json.loads(text) if text else None
            except json.JSONDecodeError:
                request.data = text

            # Get a response/error as it was intended (via return_value/side_effect).
            return actual_response()

        return mocker.AsyncMock(side_effect=resp_mock_effect)
    return resp_maker
