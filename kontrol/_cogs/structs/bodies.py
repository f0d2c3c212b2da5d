"""
All the structures coming from/to the API of the source of truth.

The objects are plain JSON-decoded dicts ("raw" bodies) everywhere in the
framework: in the watch-streams, in the cache, in the reconcilers.
For strict type-checking, they are detailed to the per-field level
(i.e. `TypedDict` instead of just ``Mapping[Any, Any]``) -- as used by the
framework. The operators can use arbitrary fields at runtime,
which are not declared in the type definitions at type-checking time.
"""
from collections.abc import Mapping
from typing import Any

from typing_extensions import Literal, TypedDict

from kontrol._cogs.structs import references

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

RawInputType = Literal['ADDED', 'MODIFIED', 'DELETED', 'BOOKMARK', 'ERROR']
RawEventType = Literal['ADDED', 'MODIFIED', 'DELETED']


class OwnerReference(TypedDict, total=False):
    apiVersion: str
    kind: str
    name: str
    uid: str
    controller: bool
    blockOwnerDeletion: bool


class ObjectReference(TypedDict, total=False):
    apiVersion: str
    kind: str
    namespace: str | None
    name: str
    uid: str


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    namespace: str
    labels: Labels
    annotations: Annotations
    finalizers: list[str]
    ownerReferences: list[OwnerReference]
    resourceVersion: str
    generation: int
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]


# A special payload for type==ERROR (this is not a connection or client error).
class RawError(TypedDict, total=False):
    apiVersion: str
    kind: str
    code: int
    reason: str
    status: str
    message: str


# As received from the stream before processing the errors and special cases.
class RawInput(TypedDict, total=True):
    type: RawInputType
    object: RawBody | RawError


# As passed to the framework after processing the errors and special cases.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


def get_resource_version(body: Mapping[str, Any]) -> str | None:
    return body.get('metadata', {}).get('resourceVersion')


def get_uid(body: Mapping[str, Any]) -> str | None:
    return body.get('metadata', {}).get('uid')


def get_owner_references(body: Mapping[str, Any]) -> list[OwnerReference]:
    return list(body.get('metadata', {}).get('ownerReferences', []) or [])


def get_controller_of(body: Mapping[str, Any]) -> OwnerReference | None:
    """ Get the controlling owner's reference, if any (there can be at most one). """
    for ref in get_owner_references(body):
        if ref.get('controller'):
            return ref
    return None


def build_object_reference(
        body: Mapping[str, Any],
) -> ObjectReference:
    """
    Construct an object reference for the events.

    Keep in sync with :func:`build_owner_reference` (but not the same).
    """
    return ObjectReference(
        apiVersion=body.get('apiVersion', ''),
        kind=body.get('kind', ''),
        name=body.get('metadata', {}).get('name', ''),
        uid=body.get('metadata', {}).get('uid', ''),
        namespace=body.get('metadata', {}).get('namespace'),
    )


def build_owner_reference(
        body: Mapping[str, Any],
        *,
        controller: bool | None = True,
        block_owner_deletion: bool | None = True,
) -> OwnerReference:
    """
    Construct an owner reference object for the parent-children relationships.

    The structure is needed to link the children objects to the current object
    as a parent, so that the source of truth could garbage-collect them
    when the parent is deleted.

    Keep in sync with :func:`build_object_reference` (but not the same).
    """
    ref = OwnerReference(
        apiVersion=body.get('apiVersion', ''),
        kind=body.get('kind', ''),
        name=body.get('metadata', {}).get('name', ''),
        uid=body.get('metadata', {}).get('uid', ''),
    )
    if controller is not None:
        ref['controller'] = controller
    if block_owner_deletion is not None:
        ref['blockOwnerDeletion'] = block_owner_deletion
    return ref


def owner_key(
        ref: OwnerReference,
        dependent: Mapping[str, Any],
        *,
        resource: references.Resource,
) -> references.ObjectKey:
    """
    Get the key of the owner as referred from a dependent object.

    The owner references carry no namespaces: by the API's rules, the owners
    of namespaced objects are in the same namespace or are cluster-scoped.
    """
    namespace = dependent.get('metadata', {}).get('namespace') if resource.namespaced else None
    return references.ObjectKey(namespace=namespace or None, name=ref['name'])
