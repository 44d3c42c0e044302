"""
Platform protocol definition.

The PlatformClientProtocol is the reconciliation core's window onto the
container orchestration platform: a read-through object store for
services, config maps, StatefulSets, pods, volume claims, volumes and
storage classes.

Reads may be served from an eventually consistent cache, so an object that
was just created can still come back as "not found". Implementations raise
``kubernetes_asyncio.client.ApiException`` with ``status == 404`` in that
case and let every other failure propagate unchanged.

List operations take a label selector as a plain ``{key: value}`` mapping;
an object matches when all pairs are present in its labels.
"""

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from kubernetes_asyncio.client import (
        V1ConfigMap,
        V1Endpoints,
        V1PersistentVolume,
        V1PersistentVolumeClaim,
        V1Pod,
        V1Service,
        V1StatefulSet,
        V1StorageClass,
    )


Selector = dict[str, str]


@runtime_checkable
class PlatformClientProtocol(Protocol):
    """
    Protocol for the platform object store.

    Attributes:
        volumes_accessible: False when the operator runs without
            cluster-scoped permissions and therefore cannot read or patch
            persistent volumes.
    """

    volumes_accessible: bool

    # Services -----------------------------------------------------------

    async def get_service(self, namespace: str, name: str) -> "V1Service": ...

    async def create_service(self, service: "V1Service") -> "V1Service": ...

    async def update_service(self, service: "V1Service") -> "V1Service": ...

    async def get_endpoints(self, namespace: str, name: str) -> "V1Endpoints": ...

    # Config maps --------------------------------------------------------

    async def get_config_map(self, namespace: str, name: str) -> "V1ConfigMap": ...

    async def create_config_map(self, config_map: "V1ConfigMap") -> "V1ConfigMap": ...

    async def update_config_map(self, config_map: "V1ConfigMap") -> "V1ConfigMap": ...

    # StatefulSets -------------------------------------------------------

    async def get_stateful_set(self, namespace: str, name: str) -> "V1StatefulSet": ...

    async def create_stateful_set(self, stateful_set: "V1StatefulSet") -> "V1StatefulSet": ...

    async def update_stateful_set(self, stateful_set: "V1StatefulSet") -> "V1StatefulSet": ...

    # Pods ---------------------------------------------------------------

    async def get_pod(self, namespace: str, name: str) -> "V1Pod": ...

    async def list_pods(self, namespace: str, selector: Selector) -> list["V1Pod"]: ...

    async def delete_pod(self, namespace: str, name: str) -> None: ...

    # Volumes ------------------------------------------------------------

    async def list_pvcs(
        self, namespace: str, selector: Selector
    ) -> list["V1PersistentVolumeClaim"]: ...

    async def patch_pvc(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> "V1PersistentVolumeClaim": ...

    async def delete_pvc(self, namespace: str, name: str) -> None: ...

    async def get_pv(self, name: str) -> "V1PersistentVolume": ...

    async def patch_pv(self, name: str, body: dict[str, Any]) -> "V1PersistentVolume": ...

    async def get_storage_class(self, name: str) -> "V1StorageClass": ...
