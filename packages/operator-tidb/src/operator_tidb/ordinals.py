"""
Ordinal arithmetic for StatefulSets with delete slots.

A StatefulSet's live pods are identified by ordinals. Without delete slots
the live range is ``0..replicas-1``. A delete slot punches a hole in that
range: the ordinal is skipped and the range grows by one past the tail so
the pod count still equals ``replicas``. This is what lets a parallel
StatefulSet drop a non-tail ordinal.

Delete slots travel on the StatefulSet as a JSON list in the
``delete-slots`` annotation.

All functions that return a StatefulSet return a new object; inputs are
never modified.
"""

import copy
import json
from dataclasses import dataclass, field

from kubernetes_asyncio.client import V1StatefulSet

from operator_tidb.labels import ANN_DELETE_SLOTS


@dataclass
class ScaleStep:
    """
    The single-ordinal move computed by scale_one().

    Attributes:
        scaling: +1 to add an ordinal, -1 to remove one, 0 when the ordinal
            sets already agree.
        ordinal: The ordinal to add or remove, -1 when scaling is 0.
        replicas: Replica count after the move.
        delete_slots: Delete slots after the move.
    """

    scaling: int
    ordinal: int
    replicas: int
    delete_slots: set[int] = field(default_factory=set)


def parse_delete_slots(value: str | None) -> set[int]:
    """Parse a JSON list of ordinals. Empty or missing values mean no slots."""
    if not value:
        return set()
    slots = json.loads(value)
    if not isinstance(slots, list):
        raise ValueError(f"delete slots must be a JSON list, got {value!r}")
    return {int(s) for s in slots}


def format_delete_slots(slots: set[int]) -> str:
    return json.dumps(sorted(slots))


def max_replica_count_and_delete_slots(replicas: int, delete_slots: set[int]) -> tuple[int, set[int]]:
    """
    Return the exclusive upper bound of the live range and the effective slots.

    Slots beyond the grown range have no effect and are dropped.
    """
    count = replicas
    effective = set()
    for slot in sorted(delete_slots):
        if slot < 0:
            continue
        if slot < count:
            count += 1
            effective.add(slot)
    return count, effective


def pod_ordinals(replicas: int, delete_slots: set[int]) -> set[int]:
    """Return the live ordinals for a replica count and a set of delete slots."""
    upper, slots = max_replica_count_and_delete_slots(replicas, delete_slots)
    return {i for i in range(upper) if i not in slots}


def delete_slots(stateful_set: V1StatefulSet) -> set[int]:
    annotations = stateful_set.metadata.annotations or {}
    return parse_delete_slots(annotations.get(ANN_DELETE_SLOTS))


def replicas(stateful_set: V1StatefulSet) -> int:
    return stateful_set.spec.replicas or 0


def stateful_set_ordinals(stateful_set: V1StatefulSet) -> set[int]:
    return pod_ordinals(replicas(stateful_set), delete_slots(stateful_set))


def scale_one(actual: V1StatefulSet, desired: V1StatefulSet) -> ScaleStep:
    """
    Compute the single ordinal to add or remove to move actual toward desired.

    Additions are handled before deletions so that capacity never dips
    while both are pending. The lowest missing ordinal is added first; the
    highest surplus ordinal is removed first.
    """
    actual_ordinals = stateful_set_ordinals(actual)
    desired_ordinals = stateful_set_ordinals(desired)
    additions = desired_ordinals - actual_ordinals
    deletions = actual_ordinals - desired_ordinals

    count = replicas(actual)
    slots = set(delete_slots(actual))
    desired_slots = delete_slots(desired)

    if additions:
        ordinal = min(additions)
        if ordinal not in desired_slots:
            slots.discard(ordinal)
        return ScaleStep(scaling=1, ordinal=ordinal, replicas=count + 1, delete_slots=slots)
    if deletions:
        ordinal = max(deletions)
        if ordinal in desired_slots:
            slots.add(ordinal)
        return ScaleStep(scaling=-1, ordinal=ordinal, replicas=count - 1, delete_slots=slots)
    return ScaleStep(scaling=0, ordinal=-1, replicas=count, delete_slots=slots)


def with_replicas_and_delete_slots(
    stateful_set: V1StatefulSet, count: int, slots: set[int]
) -> V1StatefulSet:
    """Return a copy of the StatefulSet with replicas and delete slots set."""
    result = copy.deepcopy(stateful_set)
    result.spec.replicas = count
    annotations = dict(result.metadata.annotations or {})
    if slots:
        annotations[ANN_DELETE_SLOTS] = format_delete_slots(slots)
    else:
        annotations.pop(ANN_DELETE_SLOTS, None)
    result.metadata.annotations = annotations
    return result


def reset_replicas(new: V1StatefulSet, old: V1StatefulSet) -> V1StatefulSet:
    """Return a copy of ``new`` carrying ``old``'s replicas and delete slots."""
    return with_replicas_and_delete_slots(new, replicas(old), delete_slots(old))
