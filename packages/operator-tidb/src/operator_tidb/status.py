"""
Status projection.

StatusProjector turns the live StatefulSet plus the membership API's answer
into the component's observed status: the StatefulSet mirror, the phase,
per-member health (or per-store state), and the pods that have not joined
yet.

Projection is best-effort. The pipeline logs a failure here and carries on;
the component is left with ``synced=False`` so that phases gated on a
synced status (member scale in, upgrade, failover) wait.
"""

import copy
import logging

from kubernetes_asyncio.client import ApiException, V1Pod, V1StatefulSet, V1StatefulSetStatus

from operator_tidb import labels
from operator_tidb.dependencies import Dependencies
from operator_tidb.errors import StatusSyncError
from operator_tidb.ordinals import replicas
from operator_tidb.podutil import claims_of_pod, find_container, pod_revision
from operator_tidb.types import (
    Cluster,
    MemberPhase,
    MemberStatus,
    MemberType,
    StoreState,
    StoreStatus,
    UnjoinedMember,
)

logger = logging.getLogger(__name__)

# PD store states that have no direct counterpart in StoreState
_STORE_STATE_ALIASES = {
    "Disconnected": StoreState.UP,
    "Preparing": StoreState.UP,
    "Serving": StoreState.UP,
    "Removing": StoreState.OFFLINE,
    "Removed": StoreState.TOMBSTONE,
}


def parse_store_state(name: str) -> StoreState:
    try:
        return StoreState(name)
    except ValueError:
        if name in _STORE_STATE_ALIASES:
            return _STORE_STATE_ALIASES[name]
        raise


def stateful_set_is_upgrading(sts: V1StatefulSet) -> bool:
    """True while the StatefulSet controller is still rolling a revision out."""
    status = sts.status
    if status is None:
        return False
    if status.current_revision != status.update_revision:
        return True
    generation = sts.metadata.generation or 0
    observed = status.observed_generation or 0
    return generation > observed and replicas(sts) == (status.replicas or 0)


def store_pod_name(address: str) -> str:
    """The pod name is the first DNS label of a store address."""
    host = address.rsplit(":", 1)[0]
    return host.split(".", 1)[0]


def store_ip(address: str) -> str:
    return address.rsplit(":", 1)[0]


class StatusProjector:
    """
    Projects observed state into ``cluster.status`` for one component.

    Example:
        projector = StatusProjector(deps)
        await projector.project(cluster, MemberType.PD, sts)
        print(cluster.component_status(MemberType.PD).phase)
    """

    def __init__(self, deps: Dependencies) -> None:
        self.deps = deps

    async def project(self, cluster: Cluster, mt: MemberType, sts: V1StatefulSet | None) -> None:
        if sts is None:
            return

        status = cluster.component_status(mt)
        status.stateful_set = copy.deepcopy(sts.status) if sts.status else V1StatefulSetStatus(replicas=0)

        pods = await self.deps.platform.list_pods(cluster.namespace, self._pod_selector(sts))
        upgrading = self._is_upgrading(sts, pods)

        # Scaling takes precedence over upgrading
        if cluster.sts_desired_replicas(mt) != replicas(sts):
            status.phase = MemberPhase.SCALE
        elif upgrading:
            status.phase = MemberPhase.UPGRADE
        else:
            status.phase = MemberPhase.NORMAL

        container = find_container(sts.spec.template.spec, mt.value)
        status.image = container.image if container else ""

        if mt.holds_stores:
            joined = await self._sync_stores(cluster, mt)
        else:
            joined = await self._sync_members(cluster, mt)

        await self._collect_unjoined(cluster, mt, pods, joined)

    def _pod_selector(self, sts: V1StatefulSet) -> dict[str, str]:
        return dict(sts.spec.selector.match_labels or {})

    def _is_upgrading(self, sts: V1StatefulSet, pods: list[V1Pod]) -> bool:
        if stateful_set_is_upgrading(sts):
            return True
        update_revision = sts.status.update_revision if sts.status else None
        for pod in pods:
            revision = pod_revision(pod)
            if revision is None:
                return False
            if revision != update_revision:
                return True
        return False

    async def _sync_members(self, cluster: Cluster, mt: MemberType) -> set[str]:
        status = cluster.component_status(mt)
        client = self.deps.clients.membership(cluster, mt)
        try:
            members = await client.get_members()
            leader = await client.get_leader()
        except Exception as err:
            status.synced = False
            raise await self._sync_error(cluster, mt, err) from err

        now = self.deps.clock()
        projected: dict[str, MemberStatus] = {}
        for member in members:
            if not member.name:
                logger.warning(
                    f"{mt.value} member {member.id} of {cluster.namespace}/{cluster.name} "
                    f"has no name, client urls: {member.client_urls}"
                )
                continue
            old = status.members.get(member.name)
            transition = now
            if old is not None and old.health == member.alive:
                transition = old.last_transition_time
            projected[member.name] = MemberStatus(
                name=member.name,
                id=member.id,
                client_url=member.client_urls[0] if member.client_urls else "",
                health=member.alive,
                last_transition_time=transition,
            )

        status.synced = True
        status.members = projected
        status.leader = projected.get(leader.name)
        return set(projected)

    async def _sync_error(self, cluster: Cluster, mt: MemberType, err: Exception) -> StatusSyncError:
        """Describe a membership failure, noting when the service has no endpoints."""
        ns = cluster.namespace
        name = labels.member_name(cluster.name, mt.value)
        try:
            endpoints = await self.deps.platform.get_endpoints(ns, name)
        except ApiException as ep_err:
            return StatusSyncError(f"failed to get endpoints {ns}/{name}: {err}, endpoints error: {ep_err}")
        if not endpoints.subsets:
            return StatusSyncError(f"{err}, service {ns}/{name} has no endpoints")
        return StatusSyncError(f"failed to query {mt.value} members of {ns}/{cluster.name}: {err}")

    async def _sync_stores(self, cluster: Cluster, mt: MemberType) -> set[str]:
        status = cluster.component_status(mt)
        client = self.deps.clients.stores(cluster)
        try:
            live = await client.get_stores()
            tombstones = await client.get_tombstone_stores()
        except Exception as err:
            status.synced = False
            raise StatusSyncError(
                f"failed to get {mt.value} stores of {cluster.namespace}/{cluster.name}: {err}"
            ) from err

        prefix = f"{labels.member_name(cluster.name, mt.value)}-"
        now = self.deps.clock()
        stores: dict[str, StoreStatus] = {}
        tombstone_stores: dict[str, StoreStatus] = {}

        for store in [*live, *tombstones]:
            pod_name = store_pod_name(store.address)
            if not pod_name.startswith(prefix) or not pod_name[len(prefix):].isdigit():
                continue
            state = parse_store_state(store.state)
            target = tombstone_stores if state == StoreState.TOMBSTONE else stores
            old = status.stores.get(store.id) or status.tombstone_stores.get(store.id)
            transition = now
            if old is not None and old.state == state:
                transition = old.last_transition_time
            target[store.id] = StoreStatus(
                id=store.id,
                pod_name=pod_name,
                ip=store_ip(store.address),
                state=state,
                last_transition_time=transition,
            )

        status.synced = True
        status.stores = stores
        status.tombstone_stores = tombstone_stores
        return {s.pod_name for s in stores.values()} | {s.pod_name for s in tombstone_stores.values()}

    async def _collect_unjoined(
        self, cluster: Cluster, mt: MemberType, pods: list[V1Pod], joined: set[str]
    ) -> None:
        """
        Track pods with no membership entry.

        A pod keeps the timestamp of when it was first seen unjoined, and
        loses its entry as soon as it shows up in the membership or the pod
        itself is gone.
        """
        status = cluster.component_status(mt)
        joined_lower = {name.lower() for name in joined}
        unjoined = [pod for pod in pods if pod.metadata.name.lower() not in joined_lower]
        unjoined_names = {pod.metadata.name for pod in unjoined}
        for name in set(status.unjoined_members) - unjoined_names:
            del status.unjoined_members[name]
        if not unjoined:
            return

        all_claims = await self.deps.platform.list_pvcs(cluster.namespace, cluster.selector(mt))
        now = self.deps.clock()
        for pod in unjoined:
            name = pod.metadata.name
            claims = claims_of_pod(all_claims, name)
            existing = status.unjoined_members.get(name)
            status.unjoined_members[name] = UnjoinedMember(
                pod_name=name,
                pvc_uids=sorted(c.metadata.uid for c in claims if c.metadata.uid),
                created_at=existing.created_at if existing else now,
            )
