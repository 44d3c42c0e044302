"""Small helpers for reading pod objects."""

from kubernetes_asyncio.client import V1Container, V1PersistentVolumeClaim, V1Pod

from operator_tidb.labels import CONTROLLER_REVISION_HASH_LABEL_KEY, POD_NAME_LABEL_KEY


def is_pod_ready(pod: V1Pod) -> bool:
    """True when the pod reports a Ready condition with status True."""
    if pod.status is None:
        return False
    for condition in pod.status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def find_container(pod_spec, name: str) -> V1Container | None:
    for container in pod_spec.containers or []:
        if container.name == name:
            return container
    return None


def pod_revision(pod: V1Pod) -> str | None:
    return (pod.metadata.labels or {}).get(CONTROLLER_REVISION_HASH_LABEL_KEY)


def ordinal_from_pod_name(pod_name: str) -> int:
    """Parse the trailing ordinal of a StatefulSet pod name."""
    _, _, ordinal = pod_name.rpartition("-")
    return int(ordinal)


def claims_of_pod(claims: list[V1PersistentVolumeClaim], pod_name: str) -> list[V1PersistentVolumeClaim]:
    """
    Pick the claims of one pod.

    A claim belongs to the pod when it carries the pod-name label or when it
    is named ``{template}-{pod}`` by the StatefulSet controller.
    """
    return [
        c
        for c in claims
        if (c.metadata.labels or {}).get(POD_NAME_LABEL_KEY) == pod_name
        or c.metadata.name.endswith(f"-{pod_name}")
    ]


async def pod_claims(
    platform, namespace: str, selector: dict[str, str], pod_name: str
) -> list[V1PersistentVolumeClaim]:
    """List the claims of one pod among those matching ``selector``."""
    return claims_of_pod(await platform.list_pvcs(namespace, selector), pod_name)
