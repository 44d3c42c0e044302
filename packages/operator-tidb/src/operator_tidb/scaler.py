"""
Scaling state machine.

A scaler moves a StatefulSet exactly one ordinal toward the desired ordinal
set per pass. Adding capacity is always allowed. Removing an ordinal is
gated:

- store-based components (TiKV, TiFlash) must see the ordinal's store
  reach Tombstone, or be sure the pod never joined, before the replica
  count shrinks;
- member-based components (PD, dm-master) need a synced status and leave
  the consensus group before the replica count shrinks.

Claims of a removed ordinal are not deleted. They are annotated for
deferred deletion, and the annotation is cleared together with the claim
if the ordinal is added back before reclamation.
"""

import logging

from kubernetes_asyncio.client import ApiException, V1StatefulSet

from operator_tidb import labels
from operator_tidb.dependencies import Dependencies
from operator_tidb.errors import RequeueError, StoreNotFoundError, is_not_found
from operator_tidb.ordinals import ScaleStep, scale_one, with_replicas_and_delete_slots
from operator_tidb.podutil import is_pod_ready, pod_claims
from operator_tidb.types import Cluster, MemberType, StoreState

logger = logging.getLogger(__name__)


class GeneralScaler:
    """
    Scale logic shared by every component.

    Subclasses override scale_in() to add the component's safety gate and
    finish with _commit_scale_in().
    """

    def __init__(self, deps: Dependencies, mt: MemberType) -> None:
        self.deps = deps
        self.mt = mt

    async def scale(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> V1StatefulSet:
        """
        Return ``new`` adjusted to be at most one ordinal away from ``old``.

        Raises:
            RequeueError: The next ordinal cannot be removed yet.
            StoreNotFoundError: A ready pod has no store to drain.
        """
        step = scale_one(old, new)
        if step.scaling > 0:
            return await self.scale_out(cluster, old, new, step)
        if step.scaling < 0:
            return await self.scale_in(cluster, old, new, step)
        return new

    async def scale_out(
        self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet, step: ScaleStep
    ) -> V1StatefulSet:
        logger.info(
            f"Scaling out {self.mt.value} statefulset {old.metadata.namespace}/{old.metadata.name}, "
            f"ordinal: {step.ordinal} (replicas: {step.replicas}, delete slots: {sorted(step.delete_slots)})"
        )
        await self._delete_defer_deleting_claims(cluster, step.ordinal)
        return with_replicas_and_delete_slots(new, step.replicas, step.delete_slots)

    async def scale_in(
        self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet, step: ScaleStep
    ) -> V1StatefulSet:
        raise NotImplementedError

    def pod_name(self, cluster: Cluster, ordinal: int) -> str:
        return labels.ordinal_pod_name(cluster.name, self.mt.value, ordinal)

    async def _commit_scale_in(
        self, cluster: Cluster, new: V1StatefulSet, step: ScaleStep
    ) -> V1StatefulSet:
        await self._mark_defer_deleting_claims(cluster, step.ordinal)
        return with_replicas_and_delete_slots(new, step.replicas, step.delete_slots)

    async def _mark_defer_deleting_claims(self, cluster: Cluster, ordinal: int) -> None:
        ns = cluster.namespace
        pod_name = self.pod_name(cluster, ordinal)
        stamp = self.deps.clock().strftime("%Y-%m-%dT%H:%M:%SZ")
        for claim in await pod_claims(self.deps.platform, ns, cluster.selector(self.mt), pod_name):
            if labels.ANN_PVC_DEFER_DELETING in (claim.metadata.annotations or {}):
                continue
            body = {"metadata": {"annotations": {labels.ANN_PVC_DEFER_DELETING: stamp}}}
            await self.deps.platform.patch_pvc(ns, claim.metadata.name, body)
            logger.info(f"Marked pvc {ns}/{claim.metadata.name} of pod {pod_name} for deferred deletion")

    async def _delete_defer_deleting_claims(self, cluster: Cluster, ordinal: int) -> None:
        ns = cluster.namespace
        pod_name = self.pod_name(cluster, ordinal)
        for claim in await pod_claims(self.deps.platform, ns, cluster.selector(self.mt), pod_name):
            if labels.ANN_PVC_DEFER_DELETING not in (claim.metadata.annotations or {}):
                continue
            try:
                await self.deps.platform.delete_pvc(ns, claim.metadata.name)
            except ApiException as err:
                if not is_not_found(err):
                    raise
            logger.info(f"Deleted deferred-deletion pvc {ns}/{claim.metadata.name} of pod {pod_name}")


class StoreScaler(GeneralScaler):
    """Scaler for components whose replicas own stores (TiKV, TiFlash)."""

    async def scale_in(
        self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet, step: ScaleStep
    ) -> V1StatefulSet:
        ns = cluster.namespace
        pod_name = self.pod_name(cluster, step.ordinal)
        logger.info(
            f"Scaling in {self.mt.value} statefulset {ns}/{old.metadata.name}, ordinal: {step.ordinal} "
            f"(replicas: {step.replicas}, delete slots: {sorted(step.delete_slots)})"
        )
        pod = await self.deps.platform.get_pod(ns, pod_name)
        status = cluster.component_status(self.mt)

        for store in status.stores.values():
            if store.pod_name != pod_name:
                continue
            if store.state != StoreState.OFFLINE:
                await self.deps.clients.stores(cluster).delete_store(int(store.id))
                logger.info(f"Deleted store {store.id} for {self.mt.value} {ns}/{pod_name}")
            raise RequeueError(
                f"{self.mt.value} {ns}/{pod_name} store {store.id} is still in cluster, "
                f"state: {store.state.value}"
            )

        pod_store_id = (pod.metadata.labels or {}).get(labels.STORE_ID_LABEL_KEY)
        for store_id, store in status.tombstone_stores.items():
            if store.pod_name == pod_name and pod_store_id == store_id:
                logger.info(f"{self.mt.value} {ns}/{pod_name} store {store_id} became tombstone")
                return await self._commit_scale_in(cluster, new, step)

        # No store for this pod. Either it joined and the status has not
        # caught up, or it never joined; only time tells them apart.
        if not is_pod_ready(pod):
            window = self.deps.settings.scale_in_grace_window
            created = pod.metadata.creation_timestamp or self.deps.clock()
            if self.deps.clock() < created + window:
                raise RequeueError(
                    f"{self.mt.value} {ns}/{pod_name} is not ready, "
                    f"wait for some resync periods to sync its status"
                )
            logger.info(
                f"Pod {ns}/{pod_name} not ready for more than {window} and no store for it, scale in it"
            )
            return await self._commit_scale_in(cluster, new, step)

        raise StoreNotFoundError(ns, pod_name)


class MemberScaler(GeneralScaler):
    """Scaler for consensus-member components (PD, dm-master)."""

    async def scale_in(
        self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet, step: ScaleStep
    ) -> V1StatefulSet:
        ns = cluster.namespace
        status = cluster.component_status(self.mt)
        if not status.synced:
            raise RequeueError(
                f"{self.mt.value} status of {ns}/{cluster.name} is not synced, can't scale in now"
            )

        pod_name = self.pod_name(cluster, step.ordinal)
        logger.info(
            f"Scaling in {self.mt.value} statefulset {ns}/{old.metadata.name}, ordinal: {step.ordinal} "
            f"(replicas: {step.replicas}, delete slots: {sorted(step.delete_slots)})"
        )
        await self.deps.clients.membership(cluster, self.mt).delete_member(pod_name)
        logger.info(f"Removed {self.mt.value} member {pod_name} of {ns}/{cluster.name}")
        return await self._commit_scale_in(cluster, new, step)


def new_scaler(deps: Dependencies, mt: MemberType) -> GeneralScaler:
    if mt.holds_stores:
        return StoreScaler(deps, mt)
    return MemberScaler(deps, mt)
