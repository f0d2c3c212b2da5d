import pytest

from kontrol._cogs.structs.references import ObjectKey, Resource, key_of, parse_key


def test_resource_api_version_with_group():
    resource = Resource('apps', 'v1', 'deployments')
    assert resource.api_version == 'apps/v1'


def test_resource_api_version_of_core():
    resource = Resource('', 'v1', 'pods')
    assert resource.api_version == 'v1'


def test_resource_equality_ignores_kind():
    resource1 = Resource('apps', 'v1', 'deployments', kind='Deployment')
    resource2 = Resource('apps', 'v1', 'deployments')
    assert resource1 == resource2
    assert hash(resource1) == hash(resource2)


@pytest.mark.parametrize('kwargs, expected', [
    (dict(), '/apis/apps/v1/deployments'),
    (dict(namespace='ns'), '/apis/apps/v1/namespaces/ns/deployments'),
    (dict(namespace='ns', name='foo'), '/apis/apps/v1/namespaces/ns/deployments/foo'),
    (dict(namespace='ns', name='foo', subresource='status'),
     '/apis/apps/v1/namespaces/ns/deployments/foo/status'),
    (dict(params={'watch': 'true'}), '/apis/apps/v1/deployments?watch=true'),
    (dict(server='https://host/'), 'https://host/apis/apps/v1/deployments'),
])
def test_url_of_namespaced_resource(kwargs, expected):
    resource = Resource('apps', 'v1', 'deployments')
    assert resource.get_url(**kwargs) == expected


def test_url_of_core_resource():
    resource = Resource('', 'v1', 'pods')
    assert resource.get_url(namespace='ns', name='pod') == '/api/v1/namespaces/ns/pods/pod'


def test_url_of_cluster_resource_rejects_namespaces():
    resource = Resource('apps.myorg.io', 'v1', 'things', namespaced=False)
    with pytest.raises(ValueError):
        resource.get_url(namespace='ns')


def test_url_of_namespaced_object_requires_namespace():
    resource = Resource('apps', 'v1', 'deployments')
    with pytest.raises(ValueError):
        resource.get_url(name='foo')


def test_url_of_subresource_requires_name():
    resource = Resource('apps', 'v1', 'deployments')
    with pytest.raises(ValueError):
        resource.get_url(namespace='ns', subresource='status')


def test_key_of_namespaced_object():
    key = key_of({'metadata': {'namespace': 'ns', 'name': 'foo'}})
    assert key == ObjectKey('ns', 'foo')
    assert str(key) == 'ns/foo'


def test_key_of_cluster_object():
    key = key_of({'metadata': {'name': 'foo'}})
    assert key == ObjectKey(None, 'foo')
    assert str(key) == 'foo'


def test_key_of_nameless_object_fails():
    with pytest.raises(ValueError):
        key_of({'metadata': {'namespace': 'ns'}})


@pytest.mark.parametrize('value, expected', [
    ('ns/foo', ObjectKey('ns', 'foo')),
    ('foo', ObjectKey(None, 'foo')),
])
def test_parse_key(value, expected):
    assert parse_key(value) == expected
    assert str(parse_key(value)) == value


@pytest.mark.parametrize('value', ['', 'ns/', '/foo'])
def test_parse_key_fails_on_garbage(value):
    with pytest.raises(ValueError):
        parse_key(value)
