import typing

import pytest

from kontrol._cogs.structs.references import ObjectKey
from kontrol._core.reactor.indexing import Indexer, by_controller_uid, by_namespace


def obj(name, namespace='ns', rv='1', labels=None, owner_uid=None):
    body = {'metadata': {'namespace': namespace, 'name': name, 'resourceVersion': rv}}
    if labels is not None:
        body['metadata']['labels'] = labels
    if owner_uid is not None:
        body['metadata']['ownerReferences'] = [{'uid': owner_uid, 'controller': True}]
    return body


def by_app(body):
    app = body.get('metadata', {}).get('labels', {}).get('app')
    return [app] if app else []


def test_get_of_absent_key():
    indexer = Indexer()
    assert indexer.get(ObjectKey('ns', 'foo')) is None
    assert ObjectKey('ns', 'foo') not in indexer


def test_upsert_and_get():
    indexer = Indexer()
    old = indexer.upsert(obj('foo', rv='1'))
    assert old is None
    old = indexer.upsert(obj('foo', rv='2'))
    assert old['metadata']['resourceVersion'] == '1'
    assert indexer.get(ObjectKey('ns', 'foo'))['metadata']['resourceVersion'] == '2'
    assert len(indexer) == 1


def test_reads_are_copies():
    indexer = Indexer()
    indexer.upsert(obj('foo'))
    body = indexer.get(ObjectKey('ns', 'foo'))
    body['metadata']['name'] = 'hacked'
    [listed] = indexer.list()
    listed['metadata']['name'] = 'hacked'
    assert indexer.get(ObjectKey('ns', 'foo'))['metadata']['name'] == 'foo'


def test_writes_are_copies():
    indexer = Indexer()
    body = obj('foo')
    indexer.upsert(body)
    body['metadata']['name'] = 'hacked'
    assert indexer.get(ObjectKey('ns', 'foo'))['metadata']['name'] == 'foo'


def test_delete_returns_the_last_state():
    indexer = Indexer()
    indexer.upsert(obj('foo', rv='7'))
    old = indexer.delete(ObjectKey('ns', 'foo'))
    assert old['metadata']['resourceVersion'] == '7'
    assert indexer.delete(ObjectKey('ns', 'foo')) is None
    assert len(indexer) == 0


def test_secondary_index_follows_updates():
    indexer = Indexer({'app': by_app})
    indexer.upsert(obj('a', labels={'app': 'x'}))
    indexer.upsert(obj('b', labels={'app': 'x'}))
    assert indexer.index_keys('app', 'x') == {ObjectKey('ns', 'a'), ObjectKey('ns', 'b')}

    indexer.upsert(obj('a', labels={'app': 'y'}))
    assert indexer.index_keys('app', 'x') == {ObjectKey('ns', 'b')}
    assert [o['metadata']['name'] for o in indexer.by_index('app', 'y')] == ['a']

    indexer.delete(ObjectKey('ns', 'b'))
    assert indexer.index_keys('app', 'x') == set()
    assert sorted(indexer.index_values('app')) == ['y']


def test_unknown_index_fails():
    indexer = Indexer()
    with pytest.raises(KeyError, match='nonexistent'):
        indexer.by_index('nonexistent', 'x')


def test_duplicate_index_fails():
    indexer = Indexer({'app': by_app})
    with pytest.raises(ValueError):
        indexer.add_indexers({'app': by_app})


def test_added_index_covers_the_cached_objects():
    indexer = Indexer()
    indexer.upsert(obj('a', namespace='ns1'))
    indexer.upsert(obj('b', namespace='ns2'))
    indexer.add_indexers({'namespace': by_namespace})
    assert indexer.has_index('namespace')
    assert indexer.index_keys('namespace', 'ns1') == {ObjectKey('ns1', 'a')}


def test_index_by_controller_uid():
    indexer = Indexer({'owner': by_controller_uid})
    indexer.upsert(obj('a', owner_uid='uid1'))
    indexer.upsert(obj('b'))
    assert indexer.index_keys('owner', 'uid1') == {ObjectKey('ns', 'a')}


def test_replace_rebuilds_everything():
    indexer = Indexer({'app': by_app})
    indexer.upsert(obj('a', labels={'app': 'x'}))
    indexer.replace([obj('b', labels={'app': 'y'})])
    assert set(indexer.list_keys()) == {ObjectKey('ns', 'b')}
    assert indexer.index_keys('app', 'x') == set()
    assert indexer.index_keys('app', 'y') == {ObjectKey('ns', 'b')}


@pytest.mark.parametrize('deltas', [
    [('upsert', '1'), ('upsert', '2'), ('upsert', '3')],
    [('upsert', '1'), ('delete', None), ('upsert', '3')],
    [('upsert', '1'), ('upsert', '2'), ('delete', None)],
    [('delete', None), ('upsert', '1')],
])
def test_incremental_state_equals_replacement_with_the_last_state(deltas):
    incremental = Indexer({'app': by_app})
    last = None
    for op, rv in deltas:
        if op == 'upsert':
            last = obj('foo', rv=rv, labels={'app': f'v{rv}'})
            incremental.upsert(last)
        else:
            last = None
            incremental.delete(ObjectKey('ns', 'foo'))

    replaced = Indexer({'app': by_app})
    replaced.replace([last] if last is not None else [])

    assert incremental.list() == replaced.list()
    assert sorted(incremental.index_values('app')) == sorted(replaced.index_values('app'))


@pytest.mark.parametrize('method', ['get', 'list', 'list_keys', 'index_keys', 'by_index', 'index_values'])
def test_method_annotations_refer_to_builtins(method):
    hints = typing.get_type_hints(getattr(Indexer, method))
    assert 'return' in hints
