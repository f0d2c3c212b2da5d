"""
All the functions to properly build the object hierarchies.

The dependents are linked to their owners with the owner references.
At most one owner reference of a dependent can be the controlling one:
the source of truth garbage-collects the dependents when their controlling
owner is deleted. The framework only sets the references properly,
it does not implement the garbage collection itself.
"""
from collections.abc import Mapping
from typing import Any

from kontrol._cogs.structs import bodies


class AlreadyOwnedError(Exception):
    """ Raised when a dependent is already controlled by another owner. """


def is_controlled_by(
        dependent: Mapping[str, Any],
        owner: Mapping[str, Any],
) -> bool:
    ref = bodies.get_controller_of(dependent)
    return ref is not None and ref.get('uid') == bodies.get_uid(owner)


def append_owner_reference(
        obj: bodies.RawBody,
        owner: Mapping[str, Any],
        *,
        controller: bool = True,
) -> None:
    """
    Append an owner reference to the object, if it is not yet there.

    Note: the owned objects are usually not the one being processed,
    so the whole body can be modified, no patches are needed.
    """
    owner_ref = bodies.build_owner_reference(owner, controller=controller)
    refs = obj.setdefault('metadata', {}).setdefault('ownerReferences', [])
    if controller:
        existing = bodies.get_controller_of(obj)
        if existing is not None and existing.get('uid') != owner_ref['uid']:
            raise AlreadyOwnedError(f"The object is already controlled by {existing!r}.")
    if not any(ref.get('uid') == owner_ref['uid'] for ref in refs):
        refs.append(owner_ref)


def remove_owner_reference(
        obj: bodies.RawBody,
        owner: Mapping[str, Any],
) -> None:
    """
    Remove an owner reference to the object, if it is there.
    """
    uid = bodies.get_uid(owner)
    refs = obj.setdefault('metadata', {}).setdefault('ownerReferences', [])
    if any(ref.get('uid') == uid for ref in refs):
        refs[:] = [ref for ref in refs if ref.get('uid') != uid]
