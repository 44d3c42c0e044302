"""
Custom resource parsing.

Pydantic models for the TidbCluster and DMCluster custom resources as the
API server returns them (camelCase keys), converted to and from the
internal dataclasses in types.py.

Example:
    cluster = load_cluster(open("basic.yaml").read())
    body = {"status": dump_status(cluster)}
"""

import tomllib
from datetime import datetime
from typing import Any

import yaml
from kubernetes_asyncio.client import V1StatefulSetStatus
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from operator_tidb.errors import UnsupportedKindError
from operator_tidb.types import (
    API_VERSION,
    Cluster,
    ClusterKind,
    ClusterSpec,
    ClusterStatus,
    ComponentSpec,
    ComponentStatus,
    FailureMember,
    MemberPhase,
    MemberStatus,
    MemberType,
    ServiceSpec,
    StorageClaim,
    StorageComponent,
    StorageSpec,
    StorageVolume,
    StoreState,
    StoreStatus,
    UnjoinedMember,
)

# Spec/status key of each component in the custom resource
COMPONENT_KEYS: dict[MemberType, str] = {
    MemberType.PD: "pd",
    MemberType.TIKV: "tikv",
    MemberType.TIFLASH: "tiflash",
    MemberType.DM_MASTER: "master",
}

# Components whose only reconciled objects are their volume claims
STORAGE_COMPONENT_KEYS: dict[StorageComponent, str] = {
    StorageComponent.TIDB: "tidb",
    StorageComponent.TICDC: "ticdc",
    StorageComponent.PUMP: "pump",
    StorageComponent.DM_WORKER: "worker",
}


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# =============================================================================
# Spec
# =============================================================================


class StorageVolumeModel(_Model):
    name: str
    storage_size: str = ""
    storage_class_name: str | None = None
    mount_path: str = ""


class ResourcesModel(_Model):
    requests: dict[str, str] = Field(default_factory=dict)


class StorageClaimModel(_Model):
    resources: ResourcesModel = Field(default_factory=ResourcesModel)
    storage_class_name: str | None = None


class ServiceModel(_Model):
    type: str = "ClusterIP"
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    cluster_ip: str | None = Field(default=None, alias="clusterIP")
    port_name: str | None = None
    load_balancer_ip: str | None = Field(default=None, alias="loadBalancerIP")
    load_balancer_source_ranges: list[str] = Field(default_factory=list)
    external_traffic_policy: str | None = None


class ComponentModel(_Model):
    """
    One component section (``spec.pd``, ``spec.tikv``, ``spec.master`` ...).

    The primary volume size comes from ``requests.storage``, or from
    ``storageSize`` as DMCluster spells it. ``config`` is either a mapping
    or a TOML document.
    """

    replicas: int = 0
    base_image: str = ""
    version: str | None = None
    requests: dict[str, str] = Field(default_factory=dict)
    storage_size: str = ""
    storage_class_name: str | None = None
    storage_volumes: list[StorageVolumeModel] = Field(default_factory=list)
    storage_claims: list[StorageClaimModel] = Field(default_factory=list)
    config: dict[str, Any] | str | None = None
    service: ServiceModel | None = None
    max_failover_count: int | None = None
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)

    def to_spec(self) -> ComponentSpec:
        config = self.config or {}
        if isinstance(config, str):
            config = tomllib.loads(config)
        return ComponentSpec(
            replicas=self.replicas,
            base_image=self.base_image,
            version=self.version,
            storage_size=self._primary_size(),
            storage_class_name=self.storage_class_name,
            storage_volumes=self._volumes(),
            storage_claims=[
                StorageClaim(
                    storage_size=c.resources.requests.get("storage", ""),
                    storage_class_name=c.storage_class_name,
                )
                for c in self.storage_claims
            ],
            config=config,
            service=ServiceSpec(**self.service.model_dump()) if self.service else None,
            max_failover_count=self.max_failover_count,
            annotations=dict(self.annotations),
            labels=dict(self.labels),
        )

    def to_storage_spec(self) -> StorageSpec:
        return StorageSpec(
            storage_size=self._primary_size(),
            storage_class_name=self.storage_class_name,
            storage_volumes=self._volumes(),
        )

    def _primary_size(self) -> str:
        return self.requests.get("storage") or self.storage_size

    def _volumes(self) -> list[StorageVolume]:
        return [
            StorageVolume(
                name=v.name,
                storage_size=v.storage_size,
                storage_class_name=v.storage_class_name,
                mount_path=v.mount_path,
            )
            for v in self.storage_volumes
        ]


class TLSClusterModel(_Model):
    enabled: bool = False


class ClusterSpecModel(_Model):
    version: str = ""
    paused: bool = False
    pv_reclaim_policy: str = "Retain"
    enable_pv_reclaim: bool = Field(default=False, alias="enablePVReclaim")
    tls_cluster: TLSClusterModel | None = None
    timezone: str = "UTC"
    pd: ComponentModel | None = None
    tikv: ComponentModel | None = None
    tiflash: ComponentModel | None = None
    master: ComponentModel | None = None
    tidb: ComponentModel | None = None
    ticdc: ComponentModel | None = None
    pump: ComponentModel | None = None
    worker: ComponentModel | None = None


class MetadataModel(_Model):
    name: str
    namespace: str = "default"
    uid: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Status
# =============================================================================


class MemberStatusModel(_Model):
    name: str
    id: str = ""
    client_url: str = Field(default="", alias="clientURL")
    health: bool = False
    last_transition_time: datetime | None = None


class StoreStatusModel(_Model):
    id: str
    pod_name: str
    ip: str = ""
    state: str = StoreState.UP.value
    last_transition_time: datetime | None = None


class FailureMemberModel(_Model):
    pod_name: str
    member_id: str = Field(default="", alias="memberID")
    store_id: str = Field(default="", alias="storeID")
    pvc_uid_set: dict[str, Any] = Field(default_factory=dict, alias="pvcUIDSet")
    member_deleted: bool = False
    created_at: datetime | None = None


class UnjoinedMemberModel(_Model):
    pod_name: str
    pvc_uid_set: dict[str, Any] = Field(default_factory=dict, alias="pvcUIDSet")
    created_at: datetime | None = None


class ComponentStatusModel(_Model):
    phase: str = MemberPhase.NORMAL.value
    synced: bool = False
    stateful_set: dict[str, Any] | None = None
    members: dict[str, MemberStatusModel] = Field(default_factory=dict)
    leader: MemberStatusModel | None = None
    failure_members: dict[str, FailureMemberModel] = Field(default_factory=dict)
    failure_stores: dict[str, FailureMemberModel] = Field(default_factory=dict)
    unjoined_members: dict[str, UnjoinedMemberModel] = Field(default_factory=dict)
    stores: dict[str, StoreStatusModel] = Field(default_factory=dict)
    tombstone_stores: dict[str, StoreStatusModel] = Field(default_factory=dict)
    image: str = ""


class ClusterStatusModel(_Model):
    pd: ComponentStatusModel | None = None
    tikv: ComponentStatusModel | None = None
    tiflash: ComponentStatusModel | None = None
    master: ComponentStatusModel | None = None


class ClusterResource(_Model):
    api_version: str = API_VERSION
    kind: str
    metadata: MetadataModel
    spec: ClusterSpecModel
    status: ClusterStatusModel | None = None


# =============================================================================
# Conversion
# =============================================================================


def model_to_dict(model: Any) -> Any:
    """Serialize a kubernetes client model to its camelCase wire form."""
    if isinstance(model, list):
        return [model_to_dict(item) for item in model]
    if isinstance(model, dict):
        return {k: model_to_dict(v) for k, v in model.items()}
    if isinstance(model, datetime):
        return model.isoformat()
    if hasattr(model, "openapi_types"):
        return {
            model.attribute_map[attr]: model_to_dict(getattr(model, attr))
            for attr in model.openapi_types
            if getattr(model, attr) is not None
        }
    return model


def stateful_set_status_from_dict(data: dict[str, Any]) -> V1StatefulSetStatus:
    """Rebuild the scalar fields of a StatefulSet status from its wire form."""
    kwargs = {
        attr: data[key]
        for attr, key in V1StatefulSetStatus.attribute_map.items()
        if key in data and attr != "conditions"
    }
    kwargs.setdefault("replicas", 0)
    return V1StatefulSetStatus(**kwargs)


def _component_status(model: ComponentStatusModel, mt: MemberType) -> ComponentStatus:
    def member(m: MemberStatusModel) -> MemberStatus:
        return MemberStatus(
            name=m.name,
            id=m.id,
            client_url=m.client_url,
            health=m.health,
            last_transition_time=m.last_transition_time,
        )

    def store(s: StoreStatusModel) -> StoreStatus:
        return StoreStatus(
            id=s.id,
            pod_name=s.pod_name,
            ip=s.ip,
            state=StoreState(s.state),
            last_transition_time=s.last_transition_time,
        )

    failures = model.failure_stores if mt.holds_stores else model.failure_members
    return ComponentStatus(
        phase=MemberPhase(model.phase),
        synced=model.synced,
        stateful_set=stateful_set_status_from_dict(model.stateful_set) if model.stateful_set else None,
        members={name: member(m) for name, m in model.members.items()},
        leader=member(model.leader) if model.leader else None,
        failure_members={
            name: FailureMember(
                pod_name=f.pod_name,
                member_id=f.member_id,
                store_id=f.store_id,
                pvc_uids=sorted(f.pvc_uid_set),
                member_deleted=f.member_deleted,
                created_at=f.created_at,
            )
            for name, f in failures.items()
        },
        unjoined_members={
            name: UnjoinedMember(pod_name=u.pod_name, pvc_uids=sorted(u.pvc_uid_set), created_at=u.created_at)
            for name, u in model.unjoined_members.items()
        },
        stores={sid: store(s) for sid, s in model.stores.items()},
        tombstone_stores={sid: store(s) for sid, s in model.tombstone_stores.items()},
        image=model.image,
    )


def parse_cluster(obj: dict[str, Any]) -> Cluster:
    """
    Convert a TidbCluster or DMCluster object into a Cluster.

    Raises:
        UnsupportedKindError: The object is of another kind.
        pydantic.ValidationError: The object is malformed.
    """
    kind = obj.get("kind", "")
    if kind not in (ClusterKind.TIDB_CLUSTER.value, ClusterKind.DM_CLUSTER.value):
        raise UnsupportedKindError(kind)
    resource = ClusterResource.model_validate(obj)
    spec_model = resource.spec

    components: dict[MemberType, ComponentSpec] = {}
    statuses: dict[MemberType, ComponentStatus] = {}
    for mt, key in COMPONENT_KEYS.items():
        component = getattr(spec_model, key)
        if component is not None:
            components[mt] = component.to_spec()
        component_status = getattr(resource.status, key) if resource.status else None
        if component_status is not None:
            statuses[mt] = _component_status(component_status, mt)
    storage_components = {
        sc: component.to_storage_spec()
        for sc, key in STORAGE_COMPONENT_KEYS.items()
        if (component := getattr(spec_model, key)) is not None
    }

    return Cluster(
        name=resource.metadata.name,
        namespace=resource.metadata.namespace,
        kind=ClusterKind(kind),
        uid=resource.metadata.uid,
        annotations=dict(resource.metadata.annotations),
        spec=ClusterSpec(
            version=spec_model.version,
            paused=spec_model.paused,
            pv_reclaim_policy=spec_model.pv_reclaim_policy,
            enable_pv_reclaim=spec_model.enable_pv_reclaim,
            tls_cluster=bool(spec_model.tls_cluster and spec_model.tls_cluster.enabled),
            timezone=spec_model.timezone,
            components=components,
            storage_components=storage_components,
        ),
        status=ClusterStatus(components=statuses),
    )


def load_cluster(text: str) -> Cluster:
    """Parse a YAML (or JSON) custom resource document."""
    return parse_cluster(yaml.safe_load(text))


def _dump_component_status(status: ComponentStatus, mt: MemberType) -> dict[str, Any]:
    def member(m: MemberStatus) -> MemberStatusModel:
        return MemberStatusModel(
            name=m.name,
            id=m.id,
            client_url=m.client_url,
            health=m.health,
            last_transition_time=m.last_transition_time,
        )

    def store(s: StoreStatus) -> StoreStatusModel:
        return StoreStatusModel(
            id=s.id,
            pod_name=s.pod_name,
            ip=s.ip,
            state=s.state.value,
            last_transition_time=s.last_transition_time,
        )

    failures = {
        name: FailureMemberModel(
            pod_name=f.pod_name,
            member_id=f.member_id,
            store_id=f.store_id,
            pvc_uid_set={uid: {} for uid in f.pvc_uids},
            member_deleted=f.member_deleted,
            created_at=f.created_at,
        )
        for name, f in status.failure_members.items()
    }
    model = ComponentStatusModel(
        phase=status.phase.value,
        synced=status.synced,
        stateful_set=model_to_dict(status.stateful_set) if status.stateful_set else None,
        members={name: member(m) for name, m in status.members.items()},
        leader=member(status.leader) if status.leader else None,
        failure_members={} if mt.holds_stores else failures,
        failure_stores=failures if mt.holds_stores else {},
        unjoined_members={
            name: UnjoinedMemberModel(
                pod_name=u.pod_name, pvc_uid_set={uid: {} for uid in u.pvc_uids}, created_at=u.created_at
            )
            for name, u in status.unjoined_members.items()
        },
        stores={sid: store(s) for sid, s in status.stores.items()},
        tombstone_stores={sid: store(s) for sid, s in status.tombstone_stores.items()},
        image=status.image,
    )
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def dump_status(cluster: Cluster) -> dict[str, Any]:
    """The ``status`` subresource body for a cluster, in wire form."""
    return {
        COMPONENT_KEYS[mt]: _dump_component_status(status, mt)
        for mt, status in cluster.status.components.items()
    }
