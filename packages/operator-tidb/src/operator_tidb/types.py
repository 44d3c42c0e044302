"""
Cluster data model for the reconciliation core.

These are internal types: the declared spec and the observed status of a
TidbCluster or DMCluster as the core sees them during one reconciliation
pass. Platform objects (StatefulSets, pods, claims) stay as
kubernetes_asyncio client models and are never copied into this model.

All types use @dataclass. Pydantic models are reserved for API responses,
settings and manifest parsing (see api_types.py and manifest.py).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from kubernetes_asyncio.client import V1OwnerReference, V1StatefulSetStatus

from operator_tidb import labels
from operator_tidb.ordinals import parse_delete_slots, pod_ordinals

API_VERSION = "pingcap.com/v1alpha1"


class MemberType(str, Enum):
    """A reconciled component, valued by its component label."""

    PD = "pd"
    TIKV = "tikv"
    TIFLASH = "tiflash"
    DM_MASTER = "dm-master"

    @property
    def holds_stores(self) -> bool:
        """True for components whose replicas own data shards (stores)."""
        return self in (MemberType.TIKV, MemberType.TIFLASH)

    @property
    def has_client_service(self) -> bool:
        """True for components fronted by a ClusterIP client service."""
        return self in (MemberType.PD, MemberType.DM_MASTER)


class StorageComponent(str, Enum):
    """
    A component whose pods the core does not reconcile but whose volumes
    it still grows.
    """

    TIDB = "tidb"
    TICDC = "ticdc"
    PUMP = "pump"
    DM_WORKER = "dm-worker"

    @property
    def data_claim_name(self) -> str | None:
        """Claim template of the primary data volume, None when there is none."""
        if self is StorageComponent.PUMP:
            return "data"
        if self is StorageComponent.DM_WORKER:
            return "dm-worker"
        return None


class ClusterKind(str, Enum):
    """
    The closed set of owner kinds whose volumes the core manages.

    Each variant knows how to select its own objects and where its
    reclaim settings live, so callers never branch on kind strings.
    """

    TIDB_CLUSTER = "TidbCluster"
    DM_CLUSTER = "DMCluster"
    TIDB_MONITOR = "TidbMonitor"
    TIDB_NG_MONITORING = "TidbNGMonitoring"

    def selector(self, instance: str) -> dict[str, str]:
        if self is ClusterKind.TIDB_CLUSTER:
            return labels.selector(labels.TIDB_CLUSTER_NAME, instance)
        if self is ClusterKind.DM_CLUSTER:
            return labels.selector(labels.DM_CLUSTER_NAME, instance)
        if self is ClusterKind.TIDB_MONITOR:
            return labels.selector(labels.TIDB_CLUSTER_NAME, instance, labels.MONITOR_COMPONENT)
        return labels.selector(labels.NG_MONITORING_NAME, instance)

    def reclaim_enabled(self, owner: "Cluster | TidbMonitor") -> bool:
        """Whether claims marked for deferred deletion are reclaimed on scale in."""
        if self in (ClusterKind.TIDB_CLUSTER, ClusterKind.DM_CLUSTER):
            return owner.spec.enable_pv_reclaim
        return False

    def reclaim_policy(self, owner: "Cluster | TidbMonitor") -> str:
        if self in (ClusterKind.TIDB_CLUSTER, ClusterKind.DM_CLUSTER):
            return owner.spec.pv_reclaim_policy
        return owner.pv_reclaim_policy

    @property
    def managed_components(self) -> frozenset[str] | None:
        """Component labels whose volumes follow the policy, None for all."""
        if self is ClusterKind.TIDB_CLUSTER:
            return frozenset({"pd", "tidb", "tikv", "tiflash", "pump"})
        return None


class MemberPhase(str, Enum):
    NORMAL = "Normal"
    SCALE = "Scale"
    UPGRADE = "Upgrade"


class StoreState(str, Enum):
    UP = "Up"
    OFFLINE = "Offline"
    DOWN = "Down"
    TOMBSTONE = "Tombstone"


# =============================================================================
# Spec
# =============================================================================


@dataclass
class StorageVolume:
    """
    A secondary volume of a component, e.g. a separate raft log disk.

    The claim template is named ``{component}-{name}``.
    """

    name: str
    storage_size: str
    storage_class_name: str | None = None
    mount_path: str = ""


@dataclass
class StorageClaim:
    """One TiFlash data disk; the i-th claim template is named ``data{i}``."""

    storage_size: str
    storage_class_name: str | None = None


@dataclass
class ServiceSpec:
    """Overrides for a component's client service."""

    type: str = "ClusterIP"
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)

    cluster_ip: str | None = None
    port_name: str | None = None
    load_balancer_ip: str | None = None
    load_balancer_source_ranges: list[str] = field(default_factory=list)
    external_traffic_policy: str | None = None


@dataclass
class ComponentSpec:
    """
    Declared state of one component.

    Attributes:
        replicas: Desired number of healthy replicas.
        base_image: Image repository without tag.
        version: Image tag; falls back to the cluster version when None.
        storage_size: Requested size of the primary data volume. Empty
            means the component default.
        storage_class_name: Storage class of the primary data volume.
        storage_volumes: Secondary volumes with their own sizes.
        storage_claims: TiFlash data disks, in mount order.
        config: Component configuration rendered to TOML.
        service: Client service overrides.
        max_failover_count: Cap on failure members; None means the
            configured default.
    """

    replicas: int
    base_image: str = ""
    version: str | None = None
    storage_size: str = ""
    storage_class_name: str | None = None
    storage_volumes: list[StorageVolume] = field(default_factory=list)
    storage_claims: list[StorageClaim] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    service: ServiceSpec | None = None
    max_failover_count: int | None = None
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class StorageSpec:
    """Declared volumes of a StorageComponent."""

    storage_size: str = ""
    storage_class_name: str | None = None
    storage_volumes: list[StorageVolume] = field(default_factory=list)


@dataclass
class ClusterSpec:
    version: str = ""
    paused: bool = False
    pv_reclaim_policy: str = "Retain"
    enable_pv_reclaim: bool = False
    tls_cluster: bool = False
    timezone: str = "UTC"
    components: dict[MemberType, ComponentSpec] = field(default_factory=dict)
    storage_components: dict[StorageComponent, StorageSpec] = field(default_factory=dict)


# =============================================================================
# Status
# =============================================================================


@dataclass
class MemberStatus:
    """
    Observed state of one consensus member.

    ``last_transition_time`` moves only when ``health`` flips.
    """

    name: str
    id: str
    client_url: str
    health: bool
    last_transition_time: datetime | None = None


@dataclass
class StoreStatus:
    """
    Observed state of one store.

    ``last_transition_time`` moves only when ``state`` changes.
    """

    id: str
    pod_name: str
    ip: str
    state: StoreState
    last_transition_time: datetime | None = None


@dataclass
class FailureMember:
    """
    An ordinal that failed health checks and is being replaced.

    Attributes:
        pod_name: Pod the failure was observed on.
        member_id: Member ID (member-based components).
        store_id: Store ID (store-based components).
        pvc_uids: UIDs of the claims bound to the pod when it was marked.
        member_deleted: True once the member, pod and claims were removed.
        created_at: When the failure was recorded.
    """

    pod_name: str
    member_id: str = ""
    store_id: str = ""
    pvc_uids: list[str] = field(default_factory=list)
    member_deleted: bool = False
    created_at: datetime | None = None


@dataclass
class UnjoinedMember:
    """A pod that exists but has not joined the membership yet."""

    pod_name: str
    pvc_uids: list[str] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class ComponentStatus:
    phase: MemberPhase = MemberPhase.NORMAL
    synced: bool = False
    stateful_set: V1StatefulSetStatus | None = None
    members: dict[str, MemberStatus] = field(default_factory=dict)
    leader: MemberStatus | None = None
    failure_members: dict[str, FailureMember] = field(default_factory=dict)
    unjoined_members: dict[str, UnjoinedMember] = field(default_factory=dict)
    stores: dict[str, StoreStatus] = field(default_factory=dict)
    tombstone_stores: dict[str, StoreStatus] = field(default_factory=dict)
    image: str = ""

    def pod_healthy(self, pod_name: str) -> bool:
        """True when the pod's member is healthy or its store is Up."""
        member = self.members.get(pod_name)
        if member is not None:
            return member.health
        return any(
            s.pod_name == pod_name and s.state == StoreState.UP
            for s in self.stores.values()
        )


@dataclass
class ClusterStatus:
    components: dict[MemberType, ComponentStatus] = field(default_factory=dict)


# =============================================================================
# Owners
# =============================================================================


@dataclass
class TidbMonitor:
    """A monitoring owner, reconciled only for its volume reclaim policy."""

    name: str
    namespace: str
    pv_reclaim_policy: str = "Retain"
    kind: ClusterKind = ClusterKind.TIDB_MONITOR


@dataclass
class Cluster:
    """
    A TidbCluster or DMCluster as seen by one reconciliation pass.

    ``spec`` is read-only within a pass. ``status`` is mutated in place by
    the status projector and the failover controller and persisted by the
    caller afterwards.
    """

    name: str
    namespace: str
    spec: ClusterSpec
    kind: ClusterKind = ClusterKind.TIDB_CLUSTER
    uid: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    status: ClusterStatus = field(default_factory=ClusterStatus)

    @property
    def instance_name(self) -> str:
        return self.name

    @property
    def paused(self) -> bool:
        return self.spec.paused

    @property
    def scheme(self) -> str:
        return "https" if self.spec.tls_cluster else "http"

    @property
    def is_force_upgrade(self) -> bool:
        return self.annotations.get(labels.ANN_FORCE_UPGRADE) == "true"

    @property
    def owner_reference(self) -> V1OwnerReference:
        return V1OwnerReference(
            api_version=API_VERSION,
            kind=self.kind.value,
            name=self.name,
            uid=self.uid,
            controller=True,
            block_owner_deletion=True,
        )

    def selector(self, mt: MemberType | None = None) -> dict[str, str]:
        """Label selector for this cluster's objects, optionally one component."""
        result = self.kind.selector(self.instance_name)
        if mt is not None:
            result[labels.COMPONENT_LABEL_KEY] = mt.value
        return result

    def component(self, mt: MemberType) -> ComponentSpec:
        try:
            return self.spec.components[mt]
        except KeyError:
            raise KeyError(f"{self.kind.value} {self.namespace}/{self.name} has no {mt.value} spec") from None

    def component_status(self, mt: MemberType) -> ComponentStatus:
        return self.status.components.setdefault(mt, ComponentStatus())

    def image(self, mt: MemberType) -> str:
        spec = self.component(mt)
        version = spec.version or self.spec.version
        return f"{spec.base_image}:{version}" if version else spec.base_image

    def max_failover_count(self, mt: MemberType, default: int) -> int:
        count = self.component(mt).max_failover_count
        return default if count is None else count

    def failure_replicas(self, mt: MemberType) -> int:
        """
        Extra replicas kept alive to replace failed ordinals.

        A member-based replacement is only added once the failed member has
        been deleted; a store-based replacement is added as soon as the
        store is marked.
        """
        failures = self.component_status(mt).failure_members.values()
        if mt.holds_stores:
            return len(failures)
        return sum(1 for f in failures if f.member_deleted)

    def delete_slots(self, mt: MemberType) -> set[int]:
        return parse_delete_slots(self.annotations.get(labels.cluster_delete_slots_annotation(mt.value)))

    def sts_desired_replicas(self, mt: MemberType) -> int:
        return self.component(mt).replicas + self.failure_replicas(mt)

    def sts_desired_ordinals(self, mt: MemberType, exclude_failover: bool = False) -> set[int]:
        count = self.component(mt).replicas if exclude_failover else self.sts_desired_replicas(mt)
        return pod_ordinals(count, self.delete_slots(mt))

    def sts_actual_replicas(self, mt: MemberType) -> int:
        sts = self.component_status(mt).stateful_set
        if sts is None:
            return 0
        return sts.replicas or 0

    def all_pods_started(self, mt: MemberType) -> bool:
        return self.sts_desired_replicas(mt) == self.sts_actual_replicas(mt)

    def all_members_ready(self, mt: MemberType) -> bool:
        """True when every desired replica is a healthy member or an Up store."""
        status = self.component_status(mt)
        if mt.holds_stores:
            if len(status.stores) != self.sts_desired_replicas(mt):
                return False
            return all(s.state == StoreState.UP for s in status.stores.values())
        if len(status.members) != self.sts_desired_replicas(mt):
            return False
        return all(m.health for m in status.members.values())

    def auto_failovering(self, mt: MemberType) -> bool:
        """True while a member-based failure is still waiting to be cleaned up."""
        if mt.holds_stores:
            return False
        return any(not f.member_deleted for f in self.component_status(mt).failure_members.values())
