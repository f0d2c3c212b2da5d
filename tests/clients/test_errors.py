import aiohttp
import pytest

from kontrol._cogs.clients.errors import APIConflictError, APIError, APIForbiddenError, \
                                         APIGoneError, APINotFoundError, APIServerError, \
                                         APIUnauthorizedError, FATAL_ERRORS, \
                                         ResourceVersionTooOldError, check_response, \
                                         error_class, from_status


async def get_it(url, *, context):
    response = await context.session.get(url)
    await check_response(response)
    return await response.json()


def test_aiohttp_is_not_leaked_outside():
    assert not issubclass(APIError, aiohttp.ClientError)


def test_exception_without_payload():
    exc = APIError(None, status=456)
    assert exc.status == 456
    assert exc.code is None
    assert exc.reason is None
    assert exc.message is None
    assert exc.details is None


def test_exception_with_payload():
    exc = APIError({"message": "msg", "code": 123, "reason": "Why", "details": {"a": "b"}}, status=456)
    assert exc.status == 456
    assert exc.code == 123
    assert exc.reason == "Why"
    assert exc.message == "msg"
    assert exc.details == {"a": "b"}


@pytest.mark.parametrize('status, exctype', [
    (400, APIError),
    (401, APIUnauthorizedError),
    (403, APIForbiddenError),
    (404, APINotFoundError),
    (409, APIConflictError),
    (410, APIGoneError),
    (500, APIServerError),
    (503, APIServerError),
    (422, APIError),
])
def test_error_classes_by_status(status, exctype):
    assert error_class(status) is exctype


def test_expired_versions_are_gone():
    assert ResourceVersionTooOldError is APIGoneError


def test_only_authorization_errors_are_fatal():
    assert set(FATAL_ERRORS) == {APIUnauthorizedError, APIForbiddenError}


def test_from_a_status_payload():
    exc = from_status({'kind': 'Status', 'code': 410, 'reason': 'Expired', 'message': 'too old'})
    assert isinstance(exc, APIGoneError)
    assert exc.status == 410
    assert exc.reason == 'Expired'
    assert exc.message == 'too old'


def test_from_a_status_payload_without_code():
    exc = from_status({'kind': 'Status', 'message': 'something'})
    assert isinstance(exc, APIServerError)
    assert exc.status == 500


@pytest.mark.parametrize('reason, expected', [
    ('AlreadyExists', True),
    ('Conflict', False),
    (None, False),
])
def test_conflicts_know_the_existing_objects(reason, expected):
    exc = APIConflictError({'reason': reason} if reason else None, status=409)
    assert exc.already_exists is expected


@pytest.mark.parametrize('status', [200, 202, 300, 304])
async def test_no_error_on_success(
        resp_mocker, aresponses, hostname, remote, status):

    resp = aresponses.Response(
        status=status,
        headers={'Content-Type': 'application/json'},
        text='{"kind": "Status", "code": "xxx", "message": "msg"}',
    )
    aresponses.add(hostname, '/', 'get', resp_mocker(return_value=resp))

    await get_it(f"http://{hostname}/", context=remote.context)


@pytest.mark.parametrize('status, exctype', [
    (400, APIError),
    (401, APIUnauthorizedError),
    (403, APIForbiddenError),
    (404, APINotFoundError),
    (409, APIConflictError),
    (410, APIGoneError),
    (500, APIServerError),
    (666, APIServerError),
])
async def test_error_with_payload(
        resp_mocker, aresponses, hostname, remote, status, exctype):

    resp = aresponses.Response(
        status=status,
        headers={'Content-Type': 'application/json'},
        text='{"kind": "Status", "code": 123, "message": "msg", "details": {"a": "b"}}',
    )
    aresponses.add(hostname, '/', 'get', resp_mocker(return_value=resp))

    with pytest.raises(APIError) as err:
        await get_it(f"http://{hostname}/", context=remote.context)

    assert not isinstance(err.value, aiohttp.ClientResponseError)
    assert isinstance(err.value, exctype)
    assert err.value.status == status
    assert err.value.code == 123
    assert err.value.message == 'msg'
    assert err.value.details == {'a': 'b'}


@pytest.mark.parametrize('status', [400, 500, 666])
async def test_error_with_nonstatus_payload_is_hidden(
        resp_mocker, aresponses, hostname, remote, status):

    resp = aresponses.Response(
        status=status,
        headers={'Content-Type': 'application/json'},
        text='{"kind": "NotStatus", "secret": "data"}',
    )
    aresponses.add(hostname, '/', 'get', resp_mocker(return_value=resp))

    with pytest.raises(APIError) as err:
        await get_it(f"http://{hostname}/", context=remote.context)

    assert err.value.status == status
    assert err.value.code is None
    assert err.value.message is None
    assert err.value.details is None


@pytest.mark.parametrize('status', [400, 500, 666])
async def test_error_with_text_payload(
        resp_mocker, aresponses, hostname, remote, status):

    resp = aresponses.Response(status=status, text='boo!')
    aresponses.add(hostname, '/', 'get', resp_mocker(return_value=resp))

    with pytest.raises(APIError) as err:
        await get_it(f"http://{hostname}/", context=remote.context)

    assert err.value.status == status
    assert err.value.message is None
