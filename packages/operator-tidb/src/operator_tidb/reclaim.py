"""
Reclaim-policy syncer.

Keeps the reclaim policy of every bound persistent volume in line with its
owner's declared policy. Volumes are cluster-scoped, so the sync is skipped
when the operator runs without permission to read them.
"""

import logging

from operator_tidb import labels
from operator_tidb.dependencies import Dependencies
from operator_tidb.types import Cluster, ClusterKind, TidbMonitor

logger = logging.getLogger(__name__)


class ReclaimPolicyManager:
    def __init__(self, deps: Dependencies) -> None:
        self.deps = deps

    async def sync(self, cluster: Cluster) -> None:
        await self.sync_kind(ClusterKind.TIDB_CLUSTER, cluster)

    async def sync_dm(self, dc: Cluster) -> None:
        await self.sync_kind(ClusterKind.DM_CLUSTER, dc)

    async def sync_monitor(self, monitor: TidbMonitor) -> None:
        await self.sync_kind(monitor.kind, monitor)

    async def sync_kind(self, kind: ClusterKind, owner: Cluster | TidbMonitor) -> None:
        """Patch the reclaim policy of each bound volume owned by ``owner``."""
        ns = owner.namespace
        if not self.deps.platform.volumes_accessible:
            logger.debug(
                f"Persistent volumes are not accessible, skip syncing reclaim policy for "
                f"{kind.value} {ns}/{owner.name}"
            )
            return

        policy = kind.reclaim_policy(owner)
        reclaim_enabled = kind.reclaim_enabled(owner)
        components = kind.managed_components
        claims = await self.deps.platform.list_pvcs(ns, kind.selector(owner.name))
        for claim in claims:
            volume_name = claim.spec.volume_name if claim.spec else None
            if not volume_name:
                continue
            if components is not None:
                component = (claim.metadata.labels or {}).get(labels.COMPONENT_LABEL_KEY)
                if component not in components:
                    continue
            if reclaim_enabled and (claim.metadata.annotations or {}).get(labels.ANN_PVC_DEFER_DELETING):
                continue

            pv = await self.deps.platform.get_pv(volume_name)
            if pv.spec.persistent_volume_reclaim_policy == policy:
                continue
            await self.deps.platform.patch_pv(
                volume_name, {"spec": {"persistentVolumeReclaimPolicy": policy}}
            )
            logger.info(
                f"Set reclaim policy of PV {volume_name} (PVC {ns}/{claim.metadata.name}) to {policy}"
            )
