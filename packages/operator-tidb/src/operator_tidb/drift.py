"""
Drift resolvers: compare desired and observed objects and apply the difference.

Equality is decided against the last-applied annotation the operator wrote
on the previous apply, not against the live object, so server-assigned and
server-defaulted fields never register as drift. An object without the
annotation is always considered drifted.
"""

import copy
import json
import logging
from typing import Any

from kubernetes_asyncio.client import ApiException, V1ConfigMap, V1Service, V1StatefulSet

from operator_protocols import PlatformClientProtocol
from operator_tidb.errors import is_not_found
from operator_tidb.labels import ANN_LAST_APPLIED_CONFIG

logger = logging.getLogger(__name__)


def canonical(model: Any) -> Any:
    """Plain JSON-compatible form of a client model, for comparison and storage."""
    if model is None:
        return None
    raw = model.to_dict() if hasattr(model, "to_dict") else model
    return json.loads(json.dumps(raw, sort_keys=True, default=str))


def last_applied(obj: V1Service | V1StatefulSet) -> dict[str, Any] | None:
    annotations = obj.metadata.annotations or {}
    raw = annotations.get(ANN_LAST_APPLIED_CONFIG)
    if raw is None:
        return None
    return json.loads(raw)


def set_last_applied(obj: V1Service | V1StatefulSet) -> None:
    """Record the object's spec in its last-applied annotation."""
    annotations = dict(obj.metadata.annotations or {})
    annotations[ANN_LAST_APPLIED_CONFIG] = json.dumps(canonical(obj.spec), sort_keys=True)
    obj.metadata.annotations = annotations


def service_equal(new: V1Service, old: V1Service) -> bool:
    applied = last_applied(old)
    if applied is None:
        return False
    return applied == canonical(new.spec)


def stateful_set_equal(new: V1StatefulSet, old: V1StatefulSet) -> bool:
    """
    True when replicas, template and update strategy match the last apply
    and the StatefulSet annotations are unchanged.
    """
    old_annotations = {
        k: v for k, v in (old.metadata.annotations or {}).items() if k != ANN_LAST_APPLIED_CONFIG
    }
    if (new.metadata.annotations or {}) != old_annotations:
        return False
    applied = last_applied(old)
    if applied is None:
        return False
    wanted = canonical(new.spec)
    return all(applied.get(key) == wanted.get(key) for key in ("replicas", "template", "update_strategy"))


def template_equal(new: V1StatefulSet, old: V1StatefulSet) -> bool:
    """True when the pod spec of ``new`` matches the one last applied to ``old``."""
    applied = last_applied(old)
    if applied is None:
        return False
    applied_spec = (applied.get("template") or {}).get("spec")
    return applied_spec == canonical(new.spec.template.spec)


async def sync_service(
    platform: PlatformClientProtocol, new: V1Service, preserve_cluster_ip: bool
) -> None:
    """
    Create the service if absent, otherwise update it when it drifted.

    On update the live object keeps its labels and, when asked, its
    assigned cluster IP. Annotations are merged with the new values winning.
    """
    ns = new.metadata.namespace
    name = new.metadata.name
    try:
        old = await platform.get_service(ns, name)
    except ApiException as err:
        if not is_not_found(err):
            raise
        set_last_applied(new)
        logger.info(f"Creating service {ns}/{name}")
        await platform.create_service(new)
        return

    if service_equal(new, old):
        return

    svc = copy.deepcopy(old)
    svc.spec = copy.deepcopy(new.spec)
    set_last_applied(svc)
    if preserve_cluster_ip:
        svc.spec.cluster_ip = old.spec.cluster_ip
    annotations = dict(svc.metadata.annotations or {})
    annotations.update(new.metadata.annotations or {})
    svc.metadata.annotations = annotations
    logger.info(f"Updating service {ns}/{name}")
    await platform.update_service(svc)


async def create_or_update_config_map(
    platform: PlatformClientProtocol, new: V1ConfigMap
) -> V1ConfigMap:
    """Create the config map if absent, otherwise update its data and labels."""
    ns = new.metadata.namespace
    name = new.metadata.name
    try:
        old = await platform.get_config_map(ns, name)
    except ApiException as err:
        if not is_not_found(err):
            raise
        logger.info(f"Creating config map {ns}/{name}")
        return await platform.create_config_map(new)

    merged_labels = {**(old.metadata.labels or {}), **(new.metadata.labels or {})}
    if old.data == new.data and merged_labels == (old.metadata.labels or {}):
        return old

    cm = copy.deepcopy(old)
    cm.data = dict(new.data or {})
    cm.metadata.labels = merged_labels
    cm.metadata.owner_references = new.metadata.owner_references
    logger.info(f"Updating config map {ns}/{name}")
    return await platform.update_config_map(cm)


async def create_stateful_set(
    platform: PlatformClientProtocol, new: V1StatefulSet
) -> V1StatefulSet:
    created = copy.deepcopy(new)
    set_last_applied(created)
    logger.info(f"Creating statefulset {new.metadata.namespace}/{new.metadata.name}")
    return await platform.create_stateful_set(created)


def _is_orphan(stateful_set: V1StatefulSet) -> bool:
    refs = stateful_set.metadata.owner_references or []
    return not any(ref.controller for ref in refs)


async def update_stateful_set(
    platform: PlatformClientProtocol, new: V1StatefulSet, old: V1StatefulSet
) -> V1StatefulSet:
    """
    Apply ``new`` on top of the live ``old`` StatefulSet.

    Only the template, replicas, update strategy and annotations are taken
    from ``new``; everything else is kept from the server copy. Nothing is
    sent when the two already agree.
    """
    orphan = _is_orphan(old)
    if stateful_set_equal(new, old) and not orphan:
        return old

    sts = copy.deepcopy(old)
    sts.spec.template = copy.deepcopy(new.spec.template)
    sts.spec.replicas = new.spec.replicas
    sts.spec.update_strategy = copy.deepcopy(new.spec.update_strategy)
    sts.metadata.annotations = dict(new.metadata.annotations or {})
    if orphan:
        sts.metadata.owner_references = new.metadata.owner_references
        sts.metadata.labels = new.metadata.labels
    set_last_applied(sts)
    logger.info(
        f"Updating statefulset {old.metadata.namespace}/{old.metadata.name} "
        f"(replicas: {sts.spec.replicas})"
    )
    return await platform.update_stateful_set(sts)
