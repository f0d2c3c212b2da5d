"""
All the functions to manipulate the object finalization and deletion.

Finalizers are used to block the actual deletion until the finalizers
are removed, meaning that the controller has done all its duties
to "release" the object (e.g. the teardown of the dependents).

The functions never modify the cached objects: they are applied to copies,
which are then sent to the source of truth as whole-object updates.
"""
from collections.abc import Mapping
from typing import Any

from kontrol._cogs.structs import bodies


def is_deletion_ongoing(
        body: Mapping[str, Any],
) -> bool:
    return body.get('metadata', {}).get('deletionTimestamp', None) is not None


def is_deletion_blocked(
        body: Mapping[str, Any],
        finalizer: str,
) -> bool:
    finalizers = body.get('metadata', {}).get('finalizers', []) or []
    return finalizer in finalizers


def block_deletion(body: bodies.RawBody, finalizer: str) -> None:
    finalizers = body.get('metadata', {}).get('finalizers', []) or []
    if finalizer not in finalizers:
        body.setdefault('metadata', {})['finalizers'] = list(finalizers) + [finalizer]


def allow_deletion(body: bodies.RawBody, finalizer: str) -> None:
    finalizers = body.get('metadata', {}).get('finalizers', []) or []
    if finalizer in finalizers:
        body['metadata']['finalizers'] = [f for f in finalizers if f != finalizer]
