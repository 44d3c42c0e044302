"""
Failover and recovery.

Failover only edits the component status. A recorded failure member adds a
failure replica to the desired StatefulSet on the next pass, and the scaler
walks that replica in like any other scale out. Recovery clears the
failure members once every desired ordinal is healthy again, which lets
the scaler shrink the StatefulSet back.
"""

import logging

from kubernetes_asyncio.client import ApiException

from operator_tidb import labels
from operator_tidb.dependencies import Dependencies
from operator_tidb.errors import RequeueError, is_not_found
from operator_tidb.podutil import is_pod_ready, ordinal_from_pod_name, pod_claims
from operator_tidb.types import Cluster, FailureMember, MemberType, StoreState

logger = logging.getLogger(__name__)


class Failover:
    """Recovery logic shared by member and store failover."""

    def __init__(self, deps: Dependencies, mt: MemberType) -> None:
        self.deps = deps
        self.mt = mt

    async def failover(self, cluster: Cluster) -> None:
        raise NotImplementedError

    async def should_recover(self, cluster: Cluster) -> bool:
        """
        True when failures are recorded and every desired ordinal, failover
        replicas excluded, runs a ready pod with healthy membership.
        """
        status = cluster.component_status(self.mt)
        if not status.failure_members:
            return False
        for ordinal in sorted(cluster.sts_desired_ordinals(self.mt, exclude_failover=True)):
            name = labels.ordinal_pod_name(cluster.name, self.mt.value, ordinal)
            try:
                pod = await self.deps.platform.get_pod(cluster.namespace, name)
            except ApiException as err:
                if not is_not_found(err):
                    raise
                logger.debug(f"Pod {cluster.namespace}/{name} does not exist, not recovering")
                return False
            if not is_pod_ready(pod) or not status.pod_healthy(name):
                return False
        return True

    def recover(self, cluster: Cluster) -> None:
        status = cluster.component_status(self.mt)
        if status.failure_members:
            logger.info(
                f"All {self.mt.value} replicas of {cluster.namespace}/{cluster.name} are healthy, "
                f"clearing {len(status.failure_members)} failure member(s)"
            )
        status.failure_members = {}

    def is_pod_desired(self, cluster: Cluster, pod_name: str) -> bool:
        prefix = f"{labels.member_name(cluster.name, self.mt.value)}-"
        if not pod_name.startswith(prefix):
            return False
        ordinal = ordinal_from_pod_name(pod_name)
        return ordinal in cluster.sts_desired_ordinals(self.mt, exclude_failover=True)


class MemberFailover(Failover):
    """
    Failover for consensus members (PD, dm-master).

    One step per pass: either mark one unhealthy member as failed, or clean
    up one failed member (leave the group, delete the pod and its claims).
    """

    async def failover(self, cluster: Cluster) -> None:
        ns = cluster.namespace
        status = cluster.component_status(self.mt)
        if not status.synced:
            raise RequeueError(f"{self.mt.value} status of {ns}/{cluster.name} is not synced, can't failover")

        healthy = sum(1 for m in status.members.values() if m.health)
        if healthy <= len(status.members) // 2:
            raise RequeueError(
                f"{ns}/{cluster.name}: {healthy}/{len(status.members)} {self.mt.value} members are healthy, "
                f"not in quorum, can't failover"
            )

        deleted = sum(1 for f in status.failure_members.values() if f.member_deleted)
        limit = cluster.max_failover_count(self.mt, self.deps.settings.max_failover_count)
        if deleted >= limit:
            logger.error(
                f"{self.mt.value} failover replicas of {ns}/{cluster.name} reached the limit "
                f"({deleted}/{limit}), skip failover"
            )
            return

        if deleted == len(status.failure_members):
            await self._mark_failure(cluster)
        else:
            await self._delete_failure_member(cluster)

    async def _mark_failure(self, cluster: Cluster) -> None:
        ns = cluster.namespace
        status = cluster.component_status(self.mt)
        now = self.deps.clock()
        period = self.deps.settings.failover_period(self.mt)
        for name, member in status.members.items():
            if member.last_transition_time is None:
                continue
            pod_name = name.split(".")[0]
            if not self.is_pod_desired(cluster, pod_name):
                continue
            if member.health or now < member.last_transition_time + period or name in status.failure_members:
                continue

            claims = await pod_claims(self.deps.platform, ns, cluster.selector(self.mt), pod_name)
            status.failure_members[name] = FailureMember(
                pod_name=pod_name,
                member_id=member.id,
                pvc_uids=sorted(c.metadata.uid for c in claims if c.metadata.uid),
                member_deleted=False,
                created_at=now,
            )
            logger.info(f"Marked {self.mt.value} member {name} of {ns}/{cluster.name} as failure")
            raise RequeueError(f"marking pod {ns}/{pod_name} {self.mt.value} member {name} as failure")

    async def _delete_failure_member(self, cluster: Cluster) -> None:
        ns = cluster.namespace
        status = cluster.component_status(self.mt)
        name, failure = next((n, f) for n, f in status.failure_members.items() if not f.member_deleted)

        await self.deps.clients.membership(cluster, self.mt).delete_member(name)
        logger.info(f"Deleted failed {self.mt.value} member {name} of {ns}/{cluster.name}")

        # The new pod may start before the old claim is gone and reuse it, so
        # delete both every time until the member is flagged deleted.
        try:
            pod = await self.deps.platform.get_pod(ns, failure.pod_name)
        except ApiException as err:
            if not is_not_found(err):
                raise
            logger.info(f"Failed pod {ns}/{failure.pod_name} is already gone")
        else:
            if pod.metadata.deletion_timestamp is None:
                await self.deps.platform.delete_pod(ns, failure.pod_name)
                logger.info(f"Deleted failed pod {ns}/{failure.pod_name}")

        for claim in await pod_claims(self.deps.platform, ns, cluster.selector(self.mt), failure.pod_name):
            if claim.metadata.deletion_timestamp is not None:
                continue
            if claim.metadata.uid not in failure.pvc_uids:
                continue
            try:
                await self.deps.platform.delete_pvc(ns, claim.metadata.name)
            except ApiException as err:
                if not is_not_found(err):
                    raise
            logger.info(f"Deleted pvc {ns}/{claim.metadata.name} of failed pod {failure.pod_name}")

        failure.member_deleted = True


class StoreFailover(Failover):
    """
    Failover for store-based components (TiKV, TiFlash).

    A store that stayed Down longer than the failover period is recorded.
    Nothing is deleted: the store keeps its data until an operator or PD
    removes it, and the failure replica takes over its load.
    """

    async def failover(self, cluster: Cluster) -> None:
        ns = cluster.namespace
        status = cluster.component_status(self.mt)
        now = self.deps.clock()
        period = self.deps.settings.failover_period(self.mt)
        limit = cluster.max_failover_count(self.mt, self.deps.settings.max_failover_count)

        for store_id, store in status.stores.items():
            if store.last_transition_time is None:
                continue
            if not self.is_pod_desired(cluster, store.pod_name):
                continue
            if store.state != StoreState.DOWN or now <= store.last_transition_time + period:
                continue
            if any(f.pod_name == store.pod_name for f in status.failure_members.values()):
                continue
            if limit <= 0:
                continue
            if len(status.failure_members) >= limit:
                logger.warning(
                    f"{ns}/{cluster.name} {self.mt.value} failure stores count reached the limit: {limit}"
                )
                return
            status.failure_members[store_id] = FailureMember(
                pod_name=store.pod_name,
                store_id=store_id,
                created_at=now,
            )
            logger.info(f"{self.mt.value} store {store_id} of {ns}/{cluster.name} is Down, marked as failure")


def new_failover(deps: Dependencies, mt: MemberType) -> Failover:
    if mt.holds_stores:
        return StoreFailover(deps, mt)
    return MemberFailover(deps, mt)
