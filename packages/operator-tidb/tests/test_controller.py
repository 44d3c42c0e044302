"""
Tests for ClusterReconciler dispatch.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import make_cluster, make_deps
from fakes import FakePlatformClient
from operator_tidb.controller import ClusterReconciler
from operator_tidb.errors import RequeueError, UnsupportedKindError
from operator_tidb.types import ClusterKind, MemberType


def mock_managers(calls: list) -> dict:
    managers = {}
    for mt in MemberType:
        manager = MagicMock()
        manager.sync = AsyncMock(side_effect=lambda cluster, mt=mt: calls.append(mt))
        managers[mt] = manager
    return managers


class TestSync:
    """Tests for component ordering."""

    @pytest.mark.asyncio
    async def test_components_run_in_order(self):
        calls = []
        cluster = make_cluster({MemberType.TIFLASH: 1, MemberType.TIKV: 3, MemberType.PD: 3})
        reconciler = ClusterReconciler(make_deps(), managers=mock_managers(calls))

        await reconciler.sync(cluster)

        assert calls == [MemberType.PD, MemberType.TIKV, MemberType.TIFLASH]

    @pytest.mark.asyncio
    async def test_missing_components_are_skipped(self):
        calls = []
        reconciler = ClusterReconciler(make_deps(), managers=mock_managers(calls))

        await reconciler.sync(make_cluster({MemberType.PD: 3}))

        assert calls == [MemberType.PD]

    @pytest.mark.asyncio
    async def test_requeue_stops_later_components(self):
        calls = []
        managers = mock_managers(calls)
        managers[MemberType.PD].sync = AsyncMock(side_effect=RequeueError("pd not ready"))
        reconciler = ClusterReconciler(make_deps(), managers=managers)

        with pytest.raises(RequeueError):
            await reconciler.sync(make_cluster({MemberType.PD: 3, MemberType.TIKV: 3}))

        assert calls == []

    @pytest.mark.asyncio
    async def test_dm_cluster_syncs_dm_master(self):
        calls = []
        reconciler = ClusterReconciler(make_deps(), managers=mock_managers(calls))

        await reconciler.sync_dm(make_cluster(kind=ClusterKind.DM_CLUSTER))

        assert calls == [MemberType.DM_MASTER]


class TestKindChecks:
    @pytest.mark.asyncio
    async def test_sync_rejects_dm_cluster(self):
        reconciler = ClusterReconciler(make_deps(), managers=mock_managers([]))

        with pytest.raises(UnsupportedKindError):
            await reconciler.sync(make_cluster(kind=ClusterKind.DM_CLUSTER))

    @pytest.mark.asyncio
    async def test_resize_dm_rejects_tidb_cluster(self):
        reconciler = ClusterReconciler(make_deps(), managers=mock_managers([]))

        with pytest.raises(UnsupportedKindError):
            await reconciler.resize_dm(make_cluster())

    @pytest.mark.asyncio
    async def test_reconcile_rejects_monitor_kind(self):
        reconciler = ClusterReconciler(make_deps(), managers=mock_managers([]))

        with pytest.raises(UnsupportedKindError):
            await reconciler.reconcile(make_cluster(kind=ClusterKind.TIDB_MONITOR, components={}))


class TestReconcile:
    @pytest.mark.asyncio
    async def test_dispatches_sync_then_resize(self):
        reconciler = ClusterReconciler(make_deps(), managers=mock_managers([]))
        reconciler.sync_dm = AsyncMock()
        reconciler.resize_dm = AsyncMock()
        dc = make_cluster(kind=ClusterKind.DM_CLUSTER)

        await reconciler.reconcile(dc)

        reconciler.sync_dm.assert_awaited_once_with(dc)
        reconciler.resize_dm.assert_awaited_once_with(dc)

    @pytest.mark.asyncio
    async def test_first_pass_of_new_cluster_waits(self):
        platform = FakePlatformClient()
        reconciler = ClusterReconciler(make_deps(platform=platform))

        with pytest.raises(RequeueError, match="waiting for pd cluster running"):
            await reconciler.reconcile(make_cluster({MemberType.PD: 3, MemberType.TIKV: 3}))

        assert list(platform.stateful_sets) == [("default", "basic-pd")]
