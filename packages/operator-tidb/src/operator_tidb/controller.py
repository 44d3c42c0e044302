"""
Cluster reconciler.

The entry points callers use: one pass over a TidbCluster (``sync`` then
``resize``) or a DMCluster (``sync_dm`` then ``resize_dm``). Each entry
point is idempotent and either returns, raises RequeueError, or raises a
fatal error.
"""

import logging

from operator_tidb.dependencies import Dependencies
from operator_tidb.errors import UnsupportedKindError
from operator_tidb.pipeline import MemberManager
from operator_tidb.reclaim import ReclaimPolicyManager
from operator_tidb.resizer import DM_CLUSTER_COMPONENTS, TIDB_CLUSTER_COMPONENTS, PVCResizer
from operator_tidb.types import Cluster, ClusterKind, MemberType

logger = logging.getLogger(__name__)


class ClusterReconciler:
    """
    Example:
        reconciler = ClusterReconciler(deps)
        try:
            await reconciler.reconcile(cluster)
        except RequeueError as e:
            print(f"retry later: {e.reason}")
    """

    def __init__(
        self, deps: Dependencies, managers: dict[MemberType, MemberManager] | None = None
    ) -> None:
        self.deps = deps
        self.reclaim = ReclaimPolicyManager(deps)
        self.resizer = PVCResizer(deps)
        self.managers = managers or {mt: MemberManager(deps, mt) for mt in MemberType}

    async def sync(self, cluster: Cluster) -> None:
        """Reconcile a TidbCluster's PD, TiKV and TiFlash, in that order."""
        self._check_kind(cluster, ClusterKind.TIDB_CLUSTER)
        await self.reclaim.sync(cluster)
        await self._sync_components(cluster, TIDB_CLUSTER_COMPONENTS)

    async def sync_dm(self, dc: Cluster) -> None:
        self._check_kind(dc, ClusterKind.DM_CLUSTER)
        await self.reclaim.sync_dm(dc)
        await self._sync_components(dc, DM_CLUSTER_COMPONENTS)

    async def resize(self, cluster: Cluster) -> None:
        self._check_kind(cluster, ClusterKind.TIDB_CLUSTER)
        await self.resizer.resize(cluster)

    async def resize_dm(self, dc: Cluster) -> None:
        self._check_kind(dc, ClusterKind.DM_CLUSTER)
        await self.resizer.resize_dm(dc)

    async def reconcile(self, cluster: Cluster) -> None:
        """One full pass, dispatched on the cluster kind."""
        if cluster.kind is ClusterKind.TIDB_CLUSTER:
            await self.sync(cluster)
            await self.resize(cluster)
        elif cluster.kind is ClusterKind.DM_CLUSTER:
            await self.sync_dm(cluster)
            await self.resize_dm(cluster)
        else:
            raise UnsupportedKindError(cluster.kind.value)

    async def _sync_components(self, cluster: Cluster, components: tuple[MemberType, ...]) -> None:
        for mt in components:
            if mt not in cluster.spec.components:
                continue
            await self.managers[mt].sync(cluster)

    def _check_kind(self, cluster: Cluster, kind: ClusterKind) -> None:
        if cluster.kind is not kind:
            raise UnsupportedKindError(cluster.kind.value)
