"""
Tests for ReclaimPolicyManager.
"""

import pytest
from kubernetes_asyncio.client import V1ObjectMeta, V1PersistentVolumeClaim, V1PersistentVolumeClaimSpec

from factories import make_cluster, make_deps, make_pv, make_pvc
from fakes import FakePlatformClient
from operator_tidb.labels import ANN_PVC_DEFER_DELETING, COMPONENT_LABEL_KEY
from operator_tidb.reclaim import ReclaimPolicyManager
from operator_tidb.types import ClusterKind, MemberType, TidbMonitor

TIKV = MemberType.TIKV


def policy(platform: FakePlatformClient, pv: str) -> str:
    return platform.pvs[pv].spec.persistent_volume_reclaim_policy


@pytest.fixture
def platform():
    return FakePlatformClient()


@pytest.fixture
def cluster():
    return make_cluster({TIKV: 3})


class TestClusterReclaimPolicy:
    """Tests for ReclaimPolicyManager.sync()."""

    @pytest.mark.asyncio
    async def test_patches_volumes_with_another_policy(self, platform, cluster):
        platform.seed(
            make_pvc(cluster, TIKV, 0, volume_name="pv-0"),
            make_pvc(cluster, TIKV, 1, volume_name="pv-1"),
            make_pv("pv-0", policy="Delete"),
            make_pv("pv-1", policy="Retain"),
        )

        await ReclaimPolicyManager(make_deps(platform=platform)).sync(cluster)

        assert policy(platform, "pv-0") == "Retain"
        assert platform.writes("patch") == [("patch", "pv pv-0")]

    @pytest.mark.asyncio
    async def test_follows_declared_policy(self, platform):
        cluster = make_cluster({TIKV: 1}, pv_reclaim_policy="Delete")
        platform.seed(make_pvc(cluster, TIKV, 0, volume_name="pv-0"), make_pv("pv-0", policy="Retain"))

        await ReclaimPolicyManager(make_deps(platform=platform)).sync(cluster)

        assert policy(platform, "pv-0") == "Delete"

    @pytest.mark.asyncio
    async def test_unbound_claims_are_skipped(self, platform, cluster):
        platform.seed(make_pvc(cluster, TIKV, 0))

        await ReclaimPolicyManager(make_deps(platform=platform)).sync(cluster)

        assert platform.writes() == []

    @pytest.mark.asyncio
    async def test_unmanaged_component_is_skipped(self, platform, cluster):
        claim = V1PersistentVolumeClaim(
            metadata=V1ObjectMeta(
                name="data-basic-ticdc-0",
                namespace="default",
                labels={**cluster.selector(), COMPONENT_LABEL_KEY: "ticdc"},
            ),
            spec=V1PersistentVolumeClaimSpec(volume_name="pv-cdc"),
        )
        platform.seed(claim, make_pv("pv-cdc"))

        await ReclaimPolicyManager(make_deps(platform=platform)).sync(cluster)

        assert policy(platform, "pv-cdc") == "Delete"

    @pytest.mark.asyncio
    async def test_deferred_claims_are_left_to_reclaim(self, platform):
        cluster = make_cluster({TIKV: 1}, enable_pv_reclaim=True)
        platform.seed(
            make_pvc(cluster, TIKV, 0, volume_name="pv-0", annotations={ANN_PVC_DEFER_DELETING: "now"}),
            make_pv("pv-0"),
        )

        await ReclaimPolicyManager(make_deps(platform=platform)).sync(cluster)

        assert policy(platform, "pv-0") == "Delete"

    @pytest.mark.asyncio
    async def test_deferred_claims_follow_policy_without_reclaim(self, platform, cluster):
        platform.seed(
            make_pvc(cluster, TIKV, 0, volume_name="pv-0", annotations={ANN_PVC_DEFER_DELETING: "now"}),
            make_pv("pv-0"),
        )

        await ReclaimPolicyManager(make_deps(platform=platform)).sync(cluster)

        assert policy(platform, "pv-0") == "Retain"

    @pytest.mark.asyncio
    async def test_without_volume_access_nothing_is_read(self, cluster):
        platform = FakePlatformClient(volumes_accessible=False)
        platform.seed(make_pvc(cluster, TIKV, 0, volume_name="pv-0"), make_pv("pv-0"))

        await ReclaimPolicyManager(make_deps(platform=platform)).sync(cluster)

        assert policy(platform, "pv-0") == "Delete"


class TestOtherOwners:
    @pytest.mark.asyncio
    async def test_dm_cluster_manages_every_component(self, platform):
        dc = make_cluster(kind=ClusterKind.DM_CLUSTER, pv_reclaim_policy="Retain")
        platform.seed(make_pvc(dc, MemberType.DM_MASTER, 0, volume_name="pv-dm"), make_pv("pv-dm"))

        await ReclaimPolicyManager(make_deps(platform=platform)).sync_dm(dc)

        assert policy(platform, "pv-dm") == "Retain"

    @pytest.mark.asyncio
    async def test_monitor_policy_is_on_the_owner(self, platform):
        monitor = TidbMonitor(name="mon", namespace="default", pv_reclaim_policy="Retain")
        claim = V1PersistentVolumeClaim(
            metadata=V1ObjectMeta(
                name="monitor-data",
                namespace="default",
                labels=ClusterKind.TIDB_MONITOR.selector("mon"),
            ),
            spec=V1PersistentVolumeClaimSpec(volume_name="pv-mon"),
        )
        platform.seed(claim, make_pv("pv-mon"))

        await ReclaimPolicyManager(make_deps(platform=platform)).sync_monitor(monitor)

        assert policy(platform, "pv-mon") == "Retain"
