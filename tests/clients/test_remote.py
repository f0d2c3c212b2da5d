import json

import aiohttp.web
import pytest

from kontrol._cogs.clients.errors import APIConflictError, APIGoneError
from kontrol._cogs.clients.remote import EVENTS
from kontrol._cogs.structs.bodies import build_object_reference
from kontrol._cogs.structs.references import ObjectKey

OBJ_URL = '/apis/apps.myorg.io/v1alpha1/namespaces/ns/customdeployments/foo'
LIST_URL = '/apis/apps.myorg.io/v1alpha1/namespaces/ns/customdeployments'
EVENTS_URL = '/api/v1/namespaces/ns/events'


async def test_listing_fills_the_kinds_and_returns_the_version(
        resp_mocker, aresponses, hostname, remote, resource):
    result = {'apiVersion': 'apps.myorg.io/v1alpha1', 'kind': 'CustomDeploymentList',
              'metadata': {'resourceVersion': '123'},
              'items': [{'metadata': {'name': 'foo'}}, {'metadata': {'name': 'bar'}}]}
    list_mock = resp_mocker(return_value=aiohttp.web.json_response(result))
    aresponses.add(hostname, LIST_URL, 'get', list_mock)

    items, rv = await remote.list(resource, namespace='ns')

    assert rv == '123'
    assert [item['metadata']['name'] for item in items] == ['foo', 'bar']
    assert all(item['kind'] == 'CustomDeployment' for item in items)
    assert all(item['apiVersion'] == 'apps.myorg.io/v1alpha1' for item in items)


async def test_requests_are_authorized(
        resp_mocker, aresponses, hostname, remote, resource):
    list_mock = resp_mocker(return_value=aiohttp.web.json_response({'items': []}))
    aresponses.add(hostname, LIST_URL, 'get', list_mock)

    await remote.list(resource, namespace='ns')

    req = list_mock.call_args_list[0][0][0]
    assert req.headers['Authorization'] == 'Bearer xyz'
    assert req.headers['User-Agent'] == 'kontrol'


async def test_watching_streams_the_events(
        resp_mocker, aresponses, hostname, remote, resource, settings):
    settings.watching.server_timeout = 60
    events = [
        {'type': 'ADDED', 'object': {'metadata': {'name': 'foo'}}},
        {'type': 'BOOKMARK', 'object': {'metadata': {'resourceVersion': '5'}}},
    ]
    stream_text = '\n'.join(json.dumps(event) for event in events)
    stream_mock = resp_mocker(return_value=aresponses.Response(text=stream_text))
    aresponses.add(hostname, LIST_URL, 'get', stream_mock)

    received = [event async for event in remote.watch(resource, namespace='ns', since='4')]

    assert received == events
    req = stream_mock.call_args_list[0][0][0]
    assert req.query['watch'] == 'true'
    assert req.query['allowWatchBookmarks'] == 'true'
    assert req.query['resourceVersion'] == '4'
    assert req.query['timeoutSeconds'] == '60'


async def test_watching_without_a_version_starts_from_now(
        resp_mocker, aresponses, hostname, remote, resource):
    stream_mock = resp_mocker(return_value=aresponses.Response(text=''))
    aresponses.add(hostname, LIST_URL, 'get', stream_mock)

    received = [event async for event in remote.watch(resource, namespace='ns')]

    assert received == []
    req = stream_mock.call_args_list[0][0][0]
    assert 'resourceVersion' not in req.query
    assert 'timeoutSeconds' not in req.query


async def test_watching_escalates_the_expired_versions(
        resp_mocker, aresponses, hostname, remote, resource):
    status = {'kind': 'Status', 'code': 410, 'reason': 'Expired', 'message': 'too old'}
    stream_mock = resp_mocker(return_value=aiohttp.web.json_response(status, status=410))
    aresponses.add(hostname, LIST_URL, 'get', stream_mock)

    with pytest.raises(APIGoneError) as err:
        [event async for event in remote.watch(resource, namespace='ns', since='1')]

    assert err.value.status == 410
    assert err.value.message == 'too old'


async def test_getting_an_existing_object(
        resp_mocker, aresponses, hostname, remote, resource):
    body = {'metadata': {'namespace': 'ns', 'name': 'foo'}}
    get_mock = resp_mocker(return_value=aiohttp.web.json_response(body))
    aresponses.add(hostname, OBJ_URL, 'get', get_mock)

    result = await remote.get(resource, ObjectKey('ns', 'foo'))

    assert result == body


async def test_getting_an_absent_object(
        resp_mocker, aresponses, hostname, remote, resource):
    status = {'kind': 'Status', 'code': 404, 'reason': 'NotFound'}
    get_mock = resp_mocker(return_value=aiohttp.web.json_response(status, status=404))
    aresponses.add(hostname, OBJ_URL, 'get', get_mock)

    result = await remote.get(resource, ObjectKey('ns', 'foo'))

    assert result is None


async def test_creating_posts_to_the_namespace(
        resp_mocker, aresponses, hostname, remote, resource):
    body = {'metadata': {'namespace': 'ns', 'name': 'foo'}, 'spec': {'x': 1}}
    post_mock = resp_mocker(return_value=aiohttp.web.json_response(dict(body, status={})))
    aresponses.add(hostname, LIST_URL, 'post', post_mock)

    result = await remote.create(resource, body)

    assert result == dict(body, status={})
    req = post_mock.call_args_list[0][0][0]
    assert req.method == 'POST'
    assert req.data == body


async def test_creating_an_existing_object_conflicts(
        resp_mocker, aresponses, hostname, remote, resource):
    status = {'kind': 'Status', 'code': 409, 'reason': 'AlreadyExists'}
    post_mock = resp_mocker(return_value=aiohttp.web.json_response(status, status=409))
    aresponses.add(hostname, LIST_URL, 'post', post_mock)

    with pytest.raises(APIConflictError) as err:
        await remote.create(resource, {'metadata': {'namespace': 'ns', 'name': 'foo'}})

    assert err.value.already_exists


async def test_updating_puts_the_whole_object(
        resp_mocker, aresponses, hostname, remote, resource):
    body = {'metadata': {'namespace': 'ns', 'name': 'foo', 'resourceVersion': '7'}}
    put_mock = resp_mocker(return_value=aiohttp.web.json_response(body))
    aresponses.add(hostname, OBJ_URL, 'put', put_mock)

    await remote.update(resource, body)

    req = put_mock.call_args_list[0][0][0]
    assert req.method == 'PUT'
    assert req.data == body


async def test_updating_the_status_puts_to_the_subresource(
        resp_mocker, aresponses, hostname, remote, resource):
    body = {'metadata': {'namespace': 'ns', 'name': 'foo'}, 'status': {'ready': True}}
    put_mock = resp_mocker(return_value=aiohttp.web.json_response(body))
    aresponses.add(hostname, f'{OBJ_URL}/status', 'put', put_mock)

    await remote.update_status(resource, body)

    assert put_mock.called
    req = put_mock.call_args_list[0][0][0]
    assert req.data == body


async def test_deleting_propagates_in_background(
        resp_mocker, aresponses, hostname, remote, resource):
    delete_mock = resp_mocker(return_value=aiohttp.web.json_response({}))
    aresponses.add(hostname, OBJ_URL, 'delete', delete_mock)

    await remote.delete(resource, ObjectKey('ns', 'foo'))

    req = delete_mock.call_args_list[0][0][0]
    assert req.method == 'DELETE'
    assert req.data == {'propagationPolicy': 'Background'}


async def test_posting_an_event(
        resp_mocker, aresponses, hostname, remote):
    post_mock = resp_mocker(return_value=aiohttp.web.json_response({}))
    aresponses.add(hostname, EVENTS_URL, 'post', post_mock)

    obj = {'apiVersion': 'group/version',
           'kind': 'kind',
           'metadata': {'namespace': 'ns',
                        'name': 'name',
                        'uid': 'uid'}}
    ref = build_object_reference(obj)
    await remote.post_event(ref=ref, type='type', reason='reason', message='message')

    assert post_mock.called
    assert post_mock.call_count == 1

    req = post_mock.call_args_list[0][0][0]  # [callidx][args/kwargs][argidx]
    assert req.method == 'POST'

    data = req.data
    assert data['type'] == 'type'
    assert data['reason'] == 'reason'
    assert data['message'] == 'message'
    assert data['source']['component'] == 'kontrol'
    assert data['reportingComponent'] == 'kontrol'
    assert data['metadata']['generateName'] == 'kontrol-event-'
    assert data['involvedObject']['apiVersion'] == 'group/version'
    assert data['involvedObject']['kind'] == 'kind'
    assert data['involvedObject']['namespace'] == 'ns'
    assert data['involvedObject']['name'] == 'name'
    assert data['involvedObject']['uid'] == 'uid'


async def test_no_events_for_events(
        resp_mocker, aresponses, hostname, remote):
    post_mock = resp_mocker(return_value=aiohttp.web.json_response({}))
    aresponses.add(hostname, EVENTS_URL, 'post', post_mock)

    obj = {'apiVersion': 'v1',
           'kind': 'Event',
           'metadata': {'namespace': 'ns',
                        'name': 'name',
                        'uid': 'uid'}}
    ref = build_object_reference(obj)
    await remote.post_event(ref=ref, type='type', reason='reason', message='message')

    assert not post_mock.called


async def test_events_of_cluster_objects_go_to_the_default_namespace(
        resp_mocker, aresponses, hostname, remote):
    post_mock = resp_mocker(return_value=aiohttp.web.json_response({}))
    aresponses.add(hostname, EVENTS.get_url(namespace='default'), 'post', post_mock)

    ref = build_object_reference({'apiVersion': 'v1', 'kind': 'Node', 'metadata': {'name': 'n1'}})
    await remote.post_event(ref=ref, type='type', reason='reason', message='message')

    assert post_mock.called
    req = post_mock.call_args_list[0][0][0]
    assert req.data['involvedObject']['namespace'] == 'default'


async def test_long_messages_are_cut(
        resp_mocker, aresponses, hostname, remote):
    post_mock = resp_mocker(return_value=aiohttp.web.json_response({}))
    aresponses.add(hostname, EVENTS_URL, 'post', post_mock)

    ref = build_object_reference({'metadata': {'namespace': 'ns', 'name': 'name'}})
    await remote.post_event(ref=ref, type='type', reason='reason', message='start' + 'x' * 2000 + 'end')

    req = post_mock.call_args_list[0][0][0]
    message = req.data['message']
    assert len(message) == 1024
    assert message.startswith('start')
    assert message.endswith('end')
    assert '...' in message


async def test_event_posting_failures_are_only_logged(
        resp_mocker, aresponses, hostname, remote, assert_logs):
    status = {'kind': 'Status', 'code': 403, 'message': 'not allowed'}
    post_mock = resp_mocker(return_value=aiohttp.web.json_response(status, status=403))
    aresponses.add(hostname, EVENTS_URL, 'post', post_mock)

    ref = build_object_reference({'metadata': {'namespace': 'ns', 'name': 'name'}})
    await remote.post_event(ref=ref, type='type', reason='reason', message='message')

    assert post_mock.called
    assert_logs([r"Failed to post an event. .* Code: 403. Message: not allowed"])
