"""
Tests for the member reconciliation pipeline.

These drive MemberManager.sync() end to end against the in-memory platform
and membership fakes.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import make_cluster, make_deps, make_pod, make_stateful_set, pd_members, tikv_store
from fakes import FakePDClient, FakePlatformClient
from operator_tidb.errors import RequeueError
from operator_tidb.labels import ANN_FORCE_UPGRADE
from operator_tidb.ordinals import replicas
from operator_tidb.pipeline import DECISIONS, MemberManager
from operator_tidb.types import MemberPhase, MemberType

PD = MemberType.PD
TIKV = MemberType.TIKV


def stored_sts(platform: FakePlatformClient, name: str):
    return platform.stateful_sets[("default", name)]


@pytest.fixture
def platform():
    return FakePlatformClient()


class TestDecisionTable:
    def test_order_and_terminal_rows(self):
        assert [d.name for d in DECISIONS] == ["force upgrade", "scale", "failover", "upgrade"]
        assert [d.terminal for d in DECISIONS] == [True, False, False, False]


class TestFirstSync:
    """Tests for a pass over a cluster with no objects yet."""

    @pytest.mark.asyncio
    async def test_creates_objects_and_waits(self, platform):
        """A new cluster gets its StatefulSet and the pass requeues."""
        cluster = make_cluster({PD: 3})
        manager = MemberManager(make_deps(platform=platform), PD)

        with pytest.raises(RequeueError, match="waiting for pd cluster running"):
            await manager.sync(cluster)

        assert replicas(stored_sts(platform, "basic-pd")) == 3
        assert ("default", "basic-pd") in platform.services
        assert ("default", "basic-pd-peer") in platform.services
        assert len(platform.config_maps) == 1
        assert cluster.component_status(PD).stateful_set.replicas == 0

    @pytest.mark.asyncio
    async def test_store_component_has_no_client_service(self, platform):
        cluster = make_cluster({TIKV: 3})
        manager = MemberManager(make_deps(platform=platform), TIKV)

        with pytest.raises(RequeueError):
            await manager.sync(cluster)

        assert ("default", "basic-tikv") not in platform.services
        assert ("default", "basic-tikv-peer") in platform.services

    @pytest.mark.asyncio
    async def test_second_pass_on_converged_cluster_writes_nothing(self, platform):
        cluster = make_cluster({PD: 3})
        manager = MemberManager(make_deps(platform=platform), PD)
        with pytest.raises(RequeueError):
            await manager.sync(cluster)
        platform.actions.clear()

        await manager.sync(cluster)

        assert platform.writes() == []

    @pytest.mark.asyncio
    async def test_cluster_ip_is_preserved_on_update(self, platform):
        cluster = make_cluster({PD: 3})
        manager = MemberManager(make_deps(platform=platform), PD)
        with pytest.raises(RequeueError):
            await manager.sync(cluster)
        assigned = platform.services[("default", "basic-pd")].spec.cluster_ip

        # Without the last-applied annotation the service counts as drifted
        platform.services[("default", "basic-pd")].metadata.annotations = {}
        await manager.sync(cluster)

        assert ("update", "service default/basic-pd") in platform.actions
        assert platform.services[("default", "basic-pd")].spec.cluster_ip == assigned


class TestPaused:
    @pytest.mark.asyncio
    async def test_paused_cluster_only_syncs_services(self, platform):
        cluster = make_cluster({PD: 3}, paused=True)
        manager = MemberManager(make_deps(platform=platform), PD)

        await manager.sync(cluster)

        assert platform.stateful_sets == {}
        assert platform.config_maps == {}
        assert ("default", "basic-pd") in platform.services


class TestScaling:
    @pytest.mark.asyncio
    async def test_scale_out_applies_one_more_replica(self, platform):
        cluster = make_cluster({TIKV: 5})
        platform.seed(make_stateful_set(cluster, TIKV, replicas=3))
        pd = FakePDClient(stores=[tikv_store(cluster, i, str(i + 1)) for i in range(3)])
        manager = MemberManager(make_deps(platform=platform, pd=pd), TIKV)

        await manager.sync(cluster)

        assert replicas(stored_sts(platform, "basic-tikv")) == 4
        assert cluster.component_status(TIKV).phase is MemberPhase.SCALE

    @pytest.mark.asyncio
    async def test_draining_store_keeps_replicas(self, platform):
        cluster = make_cluster({TIKV: 2})
        platform.seed(make_stateful_set(cluster, TIKV, replicas=3), make_pod(cluster, TIKV, 2))
        pd = FakePDClient(stores=[tikv_store(cluster, i, str(i + 1)) for i in range(3)])
        manager = MemberManager(make_deps(platform=platform, pd=pd), TIKV)

        with pytest.raises(RequeueError, match="still in cluster"):
            await manager.sync(cluster)

        assert pd.deleted_stores == [3]
        assert replicas(stored_sts(platform, "basic-tikv")) == 3


class TestForceUpgrade:
    """Tests for the force upgrade row of the decision table."""

    @pytest.mark.asyncio
    async def test_unsynced_force_upgrade_opens_partition(self, platform):
        cluster = make_cluster({PD: 5})
        cluster.annotations[ANN_FORCE_UPGRADE] = "true"
        cluster.component(PD).base_image = "pingcap/pd-hotfix"
        platform.seed(make_stateful_set(make_cluster({PD: 3}), PD))
        pd = FakePDClient()
        pd.error = RuntimeError("pd unreachable")
        scaler = MagicMock()
        scaler.scale = AsyncMock()
        manager = MemberManager(make_deps(platform=platform, pd=pd), PD, scaler=scaler)

        with pytest.raises(RequeueError, match="force upgrade"):
            await manager.sync(cluster)

        sts = stored_sts(platform, "basic-pd")
        assert sts.spec.update_strategy.rolling_update.partition == 0
        assert sts.spec.template.spec.containers[0].image == "pingcap/pd-hotfix:v7.5.0"
        assert replicas(sts) == 3
        assert cluster.component_status(PD).phase is MemberPhase.UPGRADE
        scaler.scale.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_synced_status_ignores_annotation(self, platform):
        cluster = make_cluster({PD: 3})
        cluster.annotations[ANN_FORCE_UPGRADE] = "true"
        platform.seed(make_stateful_set(cluster, PD))
        manager = MemberManager(make_deps(platform=platform, pd=FakePDClient(members=pd_members(cluster, 3))), PD)

        await manager.sync(cluster)

        assert platform.writes("update") == []


class TestStatusFailure:
    @pytest.mark.asyncio
    async def test_projection_failure_does_not_stop_the_pass(self, platform, caplog):
        cluster = make_cluster({PD: 3})
        platform.seed(make_stateful_set(cluster, PD))
        pd = FakePDClient()
        pd.error = RuntimeError("pd unreachable")
        manager = MemberManager(make_deps(platform=platform, pd=pd, auto_failover=False), PD)

        await manager.sync(cluster)

        assert not cluster.component_status(PD).synced
        assert "Failed to sync pd status of default/basic" in caplog.text


class TestFailoverGate:
    """Tests for when the failover row runs."""

    @staticmethod
    def failover_mock():
        failover = MagicMock()
        failover.should_recover = AsyncMock(return_value=False)
        failover.failover = AsyncMock()
        return failover

    @pytest.mark.asyncio
    async def test_unhealthy_member_triggers_failover(self, platform):
        cluster = make_cluster({PD: 3})
        platform.seed(make_stateful_set(cluster, PD))
        members = pd_members(cluster, 3)
        members[2].alive = False
        failover = self.failover_mock()
        manager = MemberManager(make_deps(platform=platform, pd=FakePDClient(members=members)), PD, failover=failover)

        await manager.sync(cluster)

        failover.failover.assert_awaited_once_with(cluster)

    @pytest.mark.asyncio
    async def test_healthy_cluster_does_not_fail_over(self, platform):
        cluster = make_cluster({PD: 3})
        platform.seed(make_stateful_set(cluster, PD))
        failover = self.failover_mock()
        pd = FakePDClient(members=pd_members(cluster, 3))
        manager = MemberManager(make_deps(platform=platform, pd=pd), PD, failover=failover)

        await manager.sync(cluster)

        failover.should_recover.assert_awaited_once()
        failover.failover.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_auto_failover_skips_the_row(self, platform):
        cluster = make_cluster({PD: 3})
        platform.seed(make_stateful_set(cluster, PD))
        failover = self.failover_mock()
        deps = make_deps(platform=platform, pd=FakePDClient(members=pd_members(cluster, 3)), auto_failover=False)
        manager = MemberManager(deps, PD, failover=failover)

        await manager.sync(cluster)

        failover.should_recover.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovery_clears_failures(self, platform):
        cluster = make_cluster({PD: 3})
        platform.seed(make_stateful_set(cluster, PD))
        failover = self.failover_mock()
        failover.should_recover.return_value = True
        manager = MemberManager(
            make_deps(platform=platform, pd=FakePDClient(members=pd_members(cluster, 3))), PD, failover=failover
        )

        await manager.sync(cluster)

        failover.recover.assert_called_once_with(cluster)
        failover.failover.assert_not_awaited()


class TestUpgrade:
    @pytest.mark.asyncio
    async def test_template_change_is_applied_with_closed_partition(self, platform):
        cluster = make_cluster({PD: 3})
        platform.seed(make_stateful_set(cluster, PD))
        cluster.component(PD).config = {"log": {"level": "warn"}}
        pd = FakePDClient(members=pd_members(cluster, 3))
        manager = MemberManager(make_deps(platform=platform, pd=pd), PD)

        await manager.sync(cluster)

        sts = stored_sts(platform, "basic-pd")
        assert sts.spec.update_strategy.rolling_update.partition == 3
        assert cluster.component_status(PD).phase is MemberPhase.UPGRADE
        assert len(platform.config_maps) == 1
        config_volume = next(v for v in sts.spec.template.spec.volumes if v.name == "config")
        assert ("default", config_volume.config_map.name) in platform.config_maps
