"""
The local cache: a read-only mirror of the source of truth, with secondary indices.

The cache is mutated only by the informer's single consumer of the delta queue,
so there are no concurrent writes. The reads can happen from any coroutine
(and thread): they return the deep copies of the cached objects, so that
the readers can modify what they got without corrupting the cache.

The secondary indices are maintained incrementally on every upsert/deletion.
They are rebuilt from scratch only on the full replacement of the cache.
"""
import copy
from collections.abc import Callable, Collection, Iterable, Iterator, Mapping, Sequence
from typing import Any

from kontrol._cogs.structs import bodies, references

# An index function returns the values under which the object is indexed (zero or more).
IndexFn = Callable[[Mapping[str, Any]], Iterable[str]]


def by_namespace(body: Mapping[str, Any]) -> Iterable[str]:
    namespace = body.get('metadata', {}).get('namespace')
    return [namespace] if namespace else []


def by_controller_uid(body: Mapping[str, Any]) -> Iterable[str]:
    ref = bodies.get_controller_of(body)
    uid = ref.get('uid') if ref is not None else None
    return [uid] if uid else []


class Index:
    """
    One secondary index: from the indexed values to the keys of the objects.

    The forward index points from the values to the keys of the objects.
    The reverse index points from the keys to the values they are indexed by,
    thus reducing the updates/deletions from O(K) to O(k), where "K" is
    the number of all values, "k" is the number of values per object.
    """

    def __init__(self, fn: IndexFn) -> None:
        super().__init__()
        self.fn = fn
        self._forward: dict[str, set[references.ObjectKey]] = {}
        self._reverse: dict[references.ObjectKey, set[str]] = {}

    def __repr__(self) -> str:
        return repr(self._forward)

    def __iter__(self) -> Iterator[str]:
        return iter(self._forward)

    def __contains__(self, value: object) -> bool:
        return value in self._forward

    def keys_of(self, value: str) -> set[references.ObjectKey]:
        return set(self._forward.get(value, set()))

    def discard(self, key: references.ObjectKey) -> None:
        for value in self._reverse.pop(key, set()):
            keys = self._forward[value]
            keys.discard(key)
            if not keys:
                del self._forward[value]

    def replace(self, key: references.ObjectKey, obj: Mapping[str, Any]) -> None:
        new_values = set(self.fn(obj))
        old_values = self._reverse.get(key, set())

        # Minimise the dict updates for no need: only touch the changed values.
        for value in old_values - new_values:
            keys = self._forward[value]
            keys.discard(key)
            if not keys:
                del self._forward[value]
        for value in new_values - old_values:
            self._forward.setdefault(value, set()).add(key)

        if new_values:
            self._reverse[key] = new_values
        else:
            self._reverse.pop(key, None)

    def clear(self) -> None:
        self._forward.clear()
        self._reverse.clear()


class Indexer:
    """
    The cache of the objects of one resource kind, keyed by their object keys.
    """

    def __init__(
            self,
            indexers: Mapping[str, IndexFn] | None = None,
            *,
            key_fn: Callable[[Mapping[str, Any]], references.ObjectKey] = references.key_of,
    ) -> None:
        super().__init__()
        self._key_fn = key_fn
        self._items: dict[references.ObjectKey, Mapping[str, Any]] = {}
        self._indices: dict[str, Index] = {}
        self.add_indexers(indexers or {})

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {len(self._items)} objects, indices={list(self._indices)}>'

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def add_indexers(self, indexers: Mapping[str, IndexFn]) -> None:
        """ Add more indices; the already cached objects are indexed immediately. """
        for name, fn in indexers.items():
            if name in self._indices:
                raise ValueError(f"The index {name!r} already exists.")
            index = self._indices[name] = Index(fn)
            for key, obj in self._items.items():
                index.replace(key, obj)

    def has_index(self, index_name: str) -> bool:
        return index_name in self._indices

    # Reading: from any coroutine, always the copies.

    def get(self, key: references.ObjectKey) -> bodies.RawBody | None:
        obj = self._items.get(key)
        return copy.deepcopy(obj) if obj is not None else None  # type: ignore[return-value]

    def list(self) -> list[bodies.RawBody]:
        return [copy.deepcopy(obj) for obj in self._items.values()]  # type: ignore[misc]

    def list_keys(self) -> Collection[references.ObjectKey]:
        return list(self._items)

    def index_keys(self, index_name: str, value: str) -> set[references.ObjectKey]:
        return self._index(index_name).keys_of(value)

    def by_index(self, index_name: str, value: str) -> Sequence[bodies.RawBody]:
        keys = self._index(index_name).keys_of(value)
        return [copy.deepcopy(self._items[key]) for key in keys]  # type: ignore[misc]

    def index_values(self, index_name: str) -> Sequence[str]:
        return list(self._index(index_name))

    # Writing: only from the informer's cache-updating loop, never concurrently.

    def upsert(self, obj: Mapping[str, Any]) -> Mapping[str, Any] | None:
        """ Store the object, return the previously stored state (not a copy!). """
        key = self._key_fn(obj)
        old = self._items.get(key)
        self._items[key] = copy.deepcopy(obj)
        for index in self._indices.values():
            index.replace(key, obj)
        return old

    def delete(self, key: references.ObjectKey) -> Mapping[str, Any] | None:
        """ Forget the object, return the previously stored state (not a copy!). """
        old = self._items.pop(key, None)
        for index in self._indices.values():
            index.discard(key)
        return old

    def replace(self, objs: Iterable[Mapping[str, Any]]) -> None:
        """ Replace the whole cache with a new snapshot; rebuild the indices from scratch. """
        self._items = {self._key_fn(obj): copy.deepcopy(obj) for obj in objs}
        for index in self._indices.values():
            index.clear()
            for key, obj in self._items.items():
                index.replace(key, obj)

    def _index(self, index_name: str) -> Index:
        try:
            return self._indices[index_name]
        except KeyError:
            raise KeyError(f"The index {index_name!r} does not exist.") from None
