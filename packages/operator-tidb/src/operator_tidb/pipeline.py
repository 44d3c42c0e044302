"""
Member reconciliation pipeline.

One MemberManager reconciles one component of a cluster per pass:

    services -> status projection -> (paused?) -> config map
        -> desired StatefulSet -> create if absent
        -> DECISIONS (force upgrade, scale, failover, upgrade)
        -> apply

Each decision takes the desired StatefulSet produced so far and returns a
new one. The first terminal decision ends the evaluation; a terminal
decision is applied and the pass is requeued.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from kubernetes_asyncio.client import ApiException, V1StatefulSet, V1StatefulSetStatus

from operator_tidb import builders, drift, labels
from operator_tidb.dependencies import Dependencies
from operator_tidb.errors import RequeueError, is_not_found
from operator_tidb.failover import Failover, new_failover
from operator_tidb.ordinals import reset_replicas
from operator_tidb.scaler import GeneralScaler, new_scaler
from operator_tidb.status import StatusProjector
from operator_tidb.types import Cluster, MemberPhase, MemberType
from operator_tidb.upgrader import RollingUpgrader, set_partition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """
    One row of the decision table.

    Attributes:
        name: Short name used in logs and requeue reasons.
        applies: Whether the decision runs for this (old, new) pair.
        run: Returns the adjusted desired StatefulSet, or raises.
        terminal: Stop evaluating, apply and requeue after this decision.
    """

    name: str
    applies: Callable[["MemberManager", Cluster, V1StatefulSet, V1StatefulSet], bool]
    run: Callable[["MemberManager", Cluster, V1StatefulSet, V1StatefulSet], Awaitable[V1StatefulSet]]
    terminal: bool = False


class MemberManager:
    """
    Reconciles one component (PD, TiKV, TiFlash or dm-master) of a cluster.

    Example:
        manager = MemberManager(deps, MemberType.TIKV)
        await manager.sync(cluster)
    """

    def __init__(
        self,
        deps: Dependencies,
        mt: MemberType,
        scaler: GeneralScaler | None = None,
        failover: Failover | None = None,
        upgrader: RollingUpgrader | None = None,
    ) -> None:
        self.deps = deps
        self.mt = mt
        self.projector = StatusProjector(deps)
        self.scaler = scaler or new_scaler(deps, mt)
        self.failover = failover or new_failover(deps, mt)
        self.upgrader = upgrader or RollingUpgrader(deps)

    async def sync(self, cluster: Cluster) -> None:
        """
        Run one reconciliation pass for this component.

        Raises:
            RequeueError: The component is not ready for the next step.
            ApiException: A platform call failed with anything but 404.
        """
        ns = cluster.namespace
        if self.mt.has_client_service:
            await drift.sync_service(
                self.deps.platform, builders.new_service(cluster, self.mt), preserve_cluster_ip=True
            )
        await drift.sync_service(
            self.deps.platform, builders.new_headless_service(cluster, self.mt), preserve_cluster_ip=False
        )

        old = await self._get_stateful_set(cluster)

        try:
            await self.projector.project(cluster, self.mt, old)
        except Exception:
            logger.error(
                f"Failed to sync {self.mt.value} status of {ns}/{cluster.name}", exc_info=True
            )

        if cluster.paused:
            logger.debug(f"{cluster.kind.value} {ns}/{cluster.name} is paused, skip syncing {self.mt.value}")
            return

        config_map = await drift.create_or_update_config_map(
            self.deps.platform, builders.new_config_map(cluster, self.mt)
        )
        new = builders.new_stateful_set(cluster, self.mt, config_map)

        if old is None:
            await drift.create_stateful_set(self.deps.platform, new)
            cluster.component_status(self.mt).stateful_set = V1StatefulSetStatus(replicas=0)
            raise RequeueError(f"{ns}/{cluster.name}: waiting for {self.mt.value} cluster running")

        for decision in DECISIONS:
            if not decision.applies(self, cluster, old, new):
                continue
            new = await decision.run(self, cluster, old, new)
            if decision.terminal:
                await drift.update_stateful_set(self.deps.platform, new, old)
                raise RequeueError(f"{ns}/{cluster.name}: {self.mt.value} {decision.name} in progress")

        await drift.update_stateful_set(self.deps.platform, new, old)

    async def _get_stateful_set(self, cluster: Cluster) -> V1StatefulSet | None:
        name = labels.member_name(cluster.name, self.mt.value)
        try:
            sts = await self.deps.platform.get_stateful_set(cluster.namespace, name)
        except ApiException as err:
            if is_not_found(err):
                return None
            raise
        return copy.deepcopy(sts)

    # Decisions ------------------------------------------------------------

    def wants_force_upgrade(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> bool:
        return not cluster.component_status(self.mt).synced and cluster.is_force_upgrade

    async def force_upgrade(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> V1StatefulSet:
        logger.info(f"Force upgrading {self.mt.value} of {cluster.namespace}/{cluster.name}")
        cluster.component_status(self.mt).phase = MemberPhase.UPGRADE
        # Replica count changes wait for a synced status
        return set_partition(reset_replicas(new, old), 0)

    def always(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> bool:
        return True

    async def scale(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> V1StatefulSet:
        return await self.scaler.scale(cluster, old, new)

    def wants_failover(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> bool:
        return self.deps.settings.auto_failover

    async def failover_or_recover(
        self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet
    ) -> V1StatefulSet:
        if await self.failover.should_recover(cluster):
            self.failover.recover(cluster)
        elif (
            cluster.all_pods_started(self.mt) and not cluster.all_members_ready(self.mt)
        ) or cluster.auto_failovering(self.mt):
            await self.failover.failover(cluster)
        return new

    def wants_upgrade(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> bool:
        if cluster.component_status(self.mt).phase == MemberPhase.UPGRADE:
            return True
        return not drift.template_equal(new, old)

    async def upgrade(self, cluster: Cluster, old: V1StatefulSet, new: V1StatefulSet) -> V1StatefulSet:
        return await self.upgrader.upgrade(cluster, self.mt, old, new)


DECISIONS: tuple[Decision, ...] = (
    Decision("force upgrade", MemberManager.wants_force_upgrade, MemberManager.force_upgrade, terminal=True),
    Decision("scale", MemberManager.always, MemberManager.scale),
    Decision("failover", MemberManager.wants_failover, MemberManager.failover_or_recover),
    Decision("upgrade", MemberManager.wants_upgrade, MemberManager.upgrade),
)
