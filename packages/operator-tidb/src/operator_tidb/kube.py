"""
Kubernetes adapters.

KubePlatformClient implements PlatformClientProtocol on top of the
kubernetes_asyncio API clients. KubeClusterSource lists TidbCluster and
DMCluster custom resources and writes their status back.

Example:
    platform = await KubePlatformClient.from_config(in_cluster=False)
    try:
        pods = await platform.list_pods("default", {"app.kubernetes.io/instance": "basic"})
    finally:
        await platform.close()
"""

import logging
from typing import Any, Awaitable, Callable

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from operator_protocols import Selector
from operator_tidb.manifest import dump_status, parse_cluster
from operator_tidb.types import Cluster, ClusterKind

logger = logging.getLogger(__name__)

GROUP = "pingcap.com"
VERSION = "v1alpha1"
PLURALS = {
    ClusterKind.TIDB_CLUSTER: "tidbclusters",
    ClusterKind.DM_CLUSTER: "dmclusters",
}


def label_selector(selector: Selector) -> str:
    """Render a selector mapping in the API's ``k=v,k=v`` form."""
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def is_conflict(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 409


def conflict_retrying() -> AsyncRetrying:
    return AsyncRetrying(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception(is_conflict),
        reraise=True,
    )


async def replace_with_retry(
    read: Callable[[str, str], Awaitable[Any]],
    replace: Callable[[str, str, Any], Awaitable[Any]],
    obj: Any,
) -> Any:
    """
    Replace ``obj``, refreshing its resource version after a conflict.

    The desired content is kept as is; only the optimistic-lock version is
    taken from the latest server copy.
    """
    ns = obj.metadata.namespace
    name = obj.metadata.name
    async for attempt in conflict_retrying():
        with attempt:
            try:
                return await replace(name, ns, obj)
            except ApiException as err:
                if is_conflict(err):
                    logger.debug(f"Conflict updating {ns}/{name}, retrying with latest resource version")
                    latest = await read(name, ns)
                    obj.metadata.resource_version = latest.metadata.resource_version
                raise


class KubePlatformClient:
    """
    Platform object store backed by the Kubernetes API.

    Attributes:
        volumes_accessible: False when the service account may not touch
            cluster-scoped persistent volumes.
    """

    def __init__(self, api_client: client.ApiClient, volumes_accessible: bool = True) -> None:
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.storage = client.StorageV1Api(api_client)
        self.volumes_accessible = volumes_accessible

    @classmethod
    async def from_config(cls, in_cluster: bool = True, volumes_accessible: bool = True) -> "KubePlatformClient":
        if in_cluster:
            config.load_incluster_config()
        else:
            await config.load_kube_config()
        return cls(client.ApiClient(), volumes_accessible=volumes_accessible)

    async def close(self) -> None:
        await self.api_client.close()

    # Services -----------------------------------------------------------

    async def get_service(self, namespace: str, name: str) -> client.V1Service:
        return await self.core.read_namespaced_service(name, namespace)

    async def create_service(self, service: client.V1Service) -> client.V1Service:
        return await self.core.create_namespaced_service(service.metadata.namespace, service)

    async def update_service(self, service: client.V1Service) -> client.V1Service:
        return await replace_with_retry(
            self.core.read_namespaced_service, self.core.replace_namespaced_service, service
        )

    async def get_endpoints(self, namespace: str, name: str) -> client.V1Endpoints:
        return await self.core.read_namespaced_endpoints(name, namespace)

    # Config maps --------------------------------------------------------

    async def get_config_map(self, namespace: str, name: str) -> client.V1ConfigMap:
        return await self.core.read_namespaced_config_map(name, namespace)

    async def create_config_map(self, config_map: client.V1ConfigMap) -> client.V1ConfigMap:
        return await self.core.create_namespaced_config_map(config_map.metadata.namespace, config_map)

    async def update_config_map(self, config_map: client.V1ConfigMap) -> client.V1ConfigMap:
        return await replace_with_retry(
            self.core.read_namespaced_config_map, self.core.replace_namespaced_config_map, config_map
        )

    # StatefulSets -------------------------------------------------------

    async def get_stateful_set(self, namespace: str, name: str) -> client.V1StatefulSet:
        return await self.apps.read_namespaced_stateful_set(name, namespace)

    async def create_stateful_set(self, stateful_set: client.V1StatefulSet) -> client.V1StatefulSet:
        return await self.apps.create_namespaced_stateful_set(stateful_set.metadata.namespace, stateful_set)

    async def update_stateful_set(self, stateful_set: client.V1StatefulSet) -> client.V1StatefulSet:
        return await replace_with_retry(
            self.apps.read_namespaced_stateful_set, self.apps.replace_namespaced_stateful_set, stateful_set
        )

    # Pods ---------------------------------------------------------------

    async def get_pod(self, namespace: str, name: str) -> client.V1Pod:
        return await self.core.read_namespaced_pod(name, namespace)

    async def list_pods(self, namespace: str, selector: Selector) -> list[client.V1Pod]:
        result = await self.core.list_namespaced_pod(namespace, label_selector=label_selector(selector))
        return list(result.items)

    async def delete_pod(self, namespace: str, name: str) -> None:
        await self.core.delete_namespaced_pod(name, namespace)

    # Volumes ------------------------------------------------------------

    async def list_pvcs(self, namespace: str, selector: Selector) -> list[client.V1PersistentVolumeClaim]:
        result = await self.core.list_namespaced_persistent_volume_claim(
            namespace, label_selector=label_selector(selector)
        )
        return list(result.items)

    async def patch_pvc(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> client.V1PersistentVolumeClaim:
        return await self.core.patch_namespaced_persistent_volume_claim(name, namespace, body)

    async def delete_pvc(self, namespace: str, name: str) -> None:
        await self.core.delete_namespaced_persistent_volume_claim(name, namespace)

    async def get_pv(self, name: str) -> client.V1PersistentVolume:
        return await self.core.read_persistent_volume(name)

    async def patch_pv(self, name: str, body: dict[str, Any]) -> client.V1PersistentVolume:
        return await self.core.patch_persistent_volume(name, body)

    async def get_storage_class(self, name: str) -> client.V1StorageClass:
        return await self.storage.read_storage_class(name)


class KubeClusterSource:
    """
    Reads clusters from their custom resources and persists their status.

    Objects that fail to parse are logged and skipped so one bad resource
    does not stall every other cluster.
    """

    def __init__(self, api_client: client.ApiClient) -> None:
        self.custom = client.CustomObjectsApi(api_client)

    async def list_clusters(self) -> list[Cluster]:
        clusters = []
        for kind, plural in PLURALS.items():
            result = await self.custom.list_cluster_custom_object(GROUP, VERSION, plural)
            for obj in result.get("items", []):
                obj.setdefault("kind", kind.value)
                meta = obj.get("metadata", {})
                try:
                    clusters.append(parse_cluster(obj))
                except Exception:
                    logger.error(
                        f"Failed to parse {kind.value} {meta.get('namespace')}/{meta.get('name')}",
                        exc_info=True,
                    )
        return clusters

    async def update_status(self, cluster: Cluster) -> None:
        plural = PLURALS[cluster.kind]
        status = dump_status(cluster)
        async for attempt in conflict_retrying():
            with attempt:
                obj = await self.custom.get_namespaced_custom_object(
                    GROUP, VERSION, cluster.namespace, plural, cluster.name
                )
                obj["status"] = status
                await self.custom.replace_namespaced_custom_object_status(
                    GROUP, VERSION, cluster.namespace, plural, cluster.name, obj
                )
        logger.debug(f"Updated status of {cluster.kind.value} {cluster.namespace}/{cluster.name}")
