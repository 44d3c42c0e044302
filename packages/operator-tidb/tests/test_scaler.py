"""
Tests for the scaling state machine.

Covers the store drain protocol (draining, tombstone, never joined), the
member-based scale in and the deferred deletion of claims.
"""

from datetime import timedelta

import pytest

from factories import NOW, make_cluster, make_deps, make_pod, make_pvc, make_stateful_set, pod_name
from fakes import FakePDClient, FakePlatformClient
from operator_tidb.errors import RequeueError, StoreNotFoundError
from operator_tidb.labels import ANN_PVC_DEFER_DELETING
from operator_tidb.ordinals import delete_slots, replicas
from operator_tidb.scaler import MemberScaler, StoreScaler, new_scaler
from operator_tidb.types import MemberType, StoreState, StoreStatus

TIKV = MemberType.TIKV


def store_status(cluster, ordinal: int, store_id: str, state: StoreState) -> StoreStatus:
    return StoreStatus(
        id=store_id,
        pod_name=pod_name(cluster, TIKV, ordinal),
        ip=f"10.0.0.{ordinal}",
        state=state,
        last_transition_time=NOW,
    )


@pytest.fixture
def cluster():
    """TiKV cluster scaled from 3 to 2 replicas."""
    return make_cluster({TIKV: 2})


@pytest.fixture
def platform():
    return FakePlatformClient()


@pytest.fixture
def pd():
    return FakePDClient()


@pytest.fixture
def scaler(platform, pd):
    return StoreScaler(make_deps(platform=platform, pd=pd), TIKV)


class TestNewScaler:
    """Tests for scaler selection."""

    def test_store_components_get_store_scaler(self):
        assert isinstance(new_scaler(make_deps(), MemberType.TIKV), StoreScaler)
        assert isinstance(new_scaler(make_deps(), MemberType.TIFLASH), StoreScaler)

    def test_member_components_get_member_scaler(self):
        assert isinstance(new_scaler(make_deps(), MemberType.PD), MemberScaler)
        assert isinstance(new_scaler(make_deps(), MemberType.DM_MASTER), MemberScaler)


class TestStoreScaleIn:
    """Tests for StoreScaler scale in."""

    @pytest.mark.asyncio
    async def test_up_store_is_deleted_and_pass_requeued(self, cluster, platform, pd, scaler):
        """An Up store is asked to drain; replicas stay at 3."""
        platform.seed(make_pod(cluster, TIKV, 2))
        cluster.component_status(TIKV).stores = {"7": store_status(cluster, 2, "7", StoreState.UP)}
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        with pytest.raises(RequeueError) as exc_info:
            await scaler.scale(cluster, old, new)

        assert pd.deleted_stores == [7]
        assert "still in cluster" in exc_info.value.reason
        assert platform.writes() == []

    @pytest.mark.asyncio
    async def test_offline_store_is_not_deleted_again(self, cluster, platform, pd, scaler):
        platform.seed(make_pod(cluster, TIKV, 2))
        cluster.component_status(TIKV).stores = {"7": store_status(cluster, 2, "7", StoreState.OFFLINE)}
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        with pytest.raises(RequeueError):
            await scaler.scale(cluster, old, new)

        assert pd.deleted_stores == []

    @pytest.mark.asyncio
    async def test_tombstone_store_commits_and_defers_claim_deletion(self, cluster, platform, scaler):
        """A Tombstone store matched by the pod's store-id label lets the ordinal go."""
        platform.seed(make_pod(cluster, TIKV, 2, store_id="7"), make_pvc(cluster, TIKV, 2))
        cluster.component_status(TIKV).tombstone_stores = {
            "7": store_status(cluster, 2, "7", StoreState.TOMBSTONE)
        }
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        result = await scaler.scale(cluster, old, new)

        assert replicas(result) == 2
        claim = platform.pvcs[("default", "tikv-basic-tikv-2")]
        assert claim.metadata.annotations[ANN_PVC_DEFER_DELETING] == "2024-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_tombstone_of_another_store_id_does_not_count(self, cluster, platform, scaler):
        """A ready pod whose store id differs from the tombstone is inconsistent."""
        platform.seed(make_pod(cluster, TIKV, 2, store_id="8"))
        cluster.component_status(TIKV).tombstone_stores = {
            "7": store_status(cluster, 2, "7", StoreState.TOMBSTONE)
        }
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        with pytest.raises(StoreNotFoundError):
            await scaler.scale(cluster, old, new)

    @pytest.mark.asyncio
    async def test_not_ready_pod_within_grace_window_waits(self, cluster, platform, scaler):
        platform.seed(make_pod(cluster, TIKV, 2, ready=False, created=NOW - timedelta(seconds=10)))
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        with pytest.raises(RequeueError):
            await scaler.scale(cluster, old, new)

    @pytest.mark.asyncio
    async def test_not_ready_pod_past_grace_window_never_joined(self, cluster, platform, scaler):
        """Past 5 resync periods a pod without a store is treated as never joined."""
        platform.seed(
            make_pod(cluster, TIKV, 2, ready=False, created=NOW - timedelta(seconds=151)),
            make_pvc(cluster, TIKV, 2),
        )
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        result = await scaler.scale(cluster, old, new)

        assert replicas(result) == 2
        assert ("patch", "pvc default/tikv-basic-tikv-2") in platform.actions

    @pytest.mark.asyncio
    async def test_grace_window_follows_settings(self, cluster, platform, pd):
        platform.seed(make_pod(cluster, TIKV, 2, ready=False, created=NOW - timedelta(seconds=61)))
        deps = make_deps(platform=platform, pd=pd, resync_duration_seconds=30, scale_in_grace_periods=2)
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        result = await StoreScaler(deps, TIKV).scale(cluster, old, new)

        assert replicas(result) == 2

    @pytest.mark.asyncio
    async def test_ready_pod_without_store_is_fatal(self, cluster, platform, scaler):
        platform.seed(make_pod(cluster, TIKV, 2, ready=True))
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        with pytest.raises(StoreNotFoundError):
            await scaler.scale(cluster, old, new)

    @pytest.mark.asyncio
    async def test_scale_in_through_delete_slot(self, platform, scaler):
        """A delete slot removes a middle ordinal instead of the tail."""
        cluster = make_cluster({TIKV: 2})
        cluster.annotations["tikv.tidb.pingcap.com/delete-slots"] = "[1]"
        platform.seed(make_pod(cluster, TIKV, 1, store_id="4"))
        cluster.component_status(TIKV).tombstone_stores = {
            "4": store_status(cluster, 1, "4", StoreState.TOMBSTONE)
        }
        old = make_stateful_set(cluster, TIKV, replicas=3, slots=set())
        new = make_stateful_set(cluster, TIKV)

        result = await scaler.scale(cluster, old, new)

        assert replicas(result) == 2
        assert delete_slots(result) == {1}


class TestScaleOut:
    """Tests for scale out."""

    @pytest.mark.asyncio
    async def test_adds_one_ordinal_at_a_time(self, platform, scaler):
        cluster = make_cluster({TIKV: 5})
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        result = await scaler.scale(cluster, old, new)

        assert replicas(result) == 4
        assert replicas(new) == 5

    @pytest.mark.asyncio
    async def test_deletes_deferred_claim_of_the_added_ordinal(self, platform, scaler):
        cluster = make_cluster({TIKV: 4})
        platform.seed(
            make_pvc(cluster, TIKV, 3, annotations={ANN_PVC_DEFER_DELETING: "2023-12-31T00:00:00Z"}),
            make_pvc(cluster, TIKV, 0),
        )
        old = make_stateful_set(cluster, TIKV, replicas=3)
        new = make_stateful_set(cluster, TIKV)

        await scaler.scale(cluster, old, new)

        assert ("default", "tikv-basic-tikv-3") not in platform.pvcs
        assert ("default", "tikv-basic-tikv-0") in platform.pvcs

    @pytest.mark.asyncio
    async def test_no_change_returns_desired(self, platform, scaler):
        cluster = make_cluster({TIKV: 3})
        old = make_stateful_set(cluster, TIKV)
        new = make_stateful_set(cluster, TIKV)

        assert await scaler.scale(cluster, old, new) is new


class TestMemberScaleIn:
    """Tests for MemberScaler scale in."""

    @pytest.mark.asyncio
    async def test_unsynced_status_waits(self, platform, pd):
        cluster = make_cluster({MemberType.PD: 2})
        old = make_stateful_set(cluster, MemberType.PD, replicas=3)
        new = make_stateful_set(cluster, MemberType.PD)
        scaler = MemberScaler(make_deps(platform=platform, pd=pd), MemberType.PD)

        with pytest.raises(RequeueError):
            await scaler.scale(cluster, old, new)

        assert pd.deleted_members == []

    @pytest.mark.asyncio
    async def test_removes_member_then_commits(self, platform, pd):
        cluster = make_cluster({MemberType.PD: 2})
        cluster.component_status(MemberType.PD).synced = True
        platform.seed(make_pvc(cluster, MemberType.PD, 2))
        old = make_stateful_set(cluster, MemberType.PD, replicas=3)
        new = make_stateful_set(cluster, MemberType.PD)
        scaler = MemberScaler(make_deps(platform=platform, pd=pd), MemberType.PD)

        result = await scaler.scale(cluster, old, new)

        assert pd.deleted_members == ["basic-pd-2"]
        assert replicas(result) == 2
        claim = platform.pvcs[("default", "pd-basic-pd-2")]
        assert ANN_PVC_DEFER_DELETING in claim.metadata.annotations
