from kontrol._cogs.structs.deltas import Delta, DeletedFinalStateUnknown, DeltaType, coalesce
from kontrol._cogs.structs.references import ObjectKey

OBJ1 = {'metadata': {'name': 'foo', 'resourceVersion': '1'}}
OBJ2 = {'metadata': {'name': 'foo', 'resourceVersion': '2'}}
OBJ3 = {'metadata': {'name': 'foo', 'resourceVersion': '3'}}


def test_first_delta_is_kept():
    deltas = coalesce((), Delta(DeltaType.ADDED, OBJ1))
    assert deltas == (Delta(DeltaType.ADDED, OBJ1),)


def test_addition_is_not_merged_with_updates():
    deltas = coalesce((Delta(DeltaType.ADDED, OBJ1),), Delta(DeltaType.UPDATED, OBJ2))
    assert [d.type for d in deltas] == [DeltaType.ADDED, DeltaType.UPDATED]


def test_adjacent_updates_are_merged_into_the_latest():
    deltas = (Delta(DeltaType.ADDED, OBJ1),)
    deltas = coalesce(deltas, Delta(DeltaType.UPDATED, OBJ2))
    deltas = coalesce(deltas, Delta(DeltaType.UPDATED, OBJ3))
    assert deltas == (Delta(DeltaType.ADDED, OBJ1), Delta(DeltaType.UPDATED, OBJ3))


def test_update_is_not_downgraded_to_sync():
    deltas = coalesce((Delta(DeltaType.UPDATED, OBJ1),), Delta(DeltaType.SYNC, OBJ2))
    assert deltas == (Delta(DeltaType.UPDATED, OBJ2),)


def test_syncs_remain_syncs():
    deltas = coalesce((Delta(DeltaType.SYNC, OBJ1),), Delta(DeltaType.SYNC, OBJ2))
    assert deltas == (Delta(DeltaType.SYNC, OBJ2),)


def test_deletion_after_update_is_kept():
    deltas = coalesce((Delta(DeltaType.UPDATED, OBJ1),), Delta(DeltaType.DELETED, OBJ2))
    assert [d.type for d in deltas] == [DeltaType.UPDATED, DeltaType.DELETED]


def test_double_deletion_prefers_the_known_final_state():
    unknown = DeletedFinalStateUnknown(ObjectKey(None, 'foo'), OBJ1)
    deltas = coalesce((Delta(DeltaType.DELETED, OBJ2),), Delta(DeltaType.DELETED, unknown))
    assert deltas == (Delta(DeltaType.DELETED, OBJ2),)


def test_double_deletion_replaces_the_unknown_final_state():
    unknown = DeletedFinalStateUnknown(ObjectKey(None, 'foo'), OBJ1)
    deltas = coalesce((Delta(DeltaType.DELETED, unknown),), Delta(DeltaType.DELETED, OBJ2))
    assert deltas == (Delta(DeltaType.DELETED, OBJ2),)


def test_body_unwraps_the_unknown_final_state():
    unknown = DeletedFinalStateUnknown(ObjectKey(None, 'foo'), OBJ1)
    assert Delta(DeltaType.DELETED, unknown).body is OBJ1
    assert Delta(DeltaType.DELETED, OBJ2).body is OBJ2
