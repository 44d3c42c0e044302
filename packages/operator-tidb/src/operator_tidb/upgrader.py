"""
Rolling upgrade driver.

The StatefulSet controller rolls pods whose ordinal is at or above the
rolling update partition. The upgrader lowers the partition one ordinal at
a time, from the highest live ordinal down, and only after every pod
already on the new revision is healthy again.
"""

import copy
import logging

from kubernetes_asyncio.client import ApiException, V1StatefulSet

from operator_tidb import labels
from operator_tidb.dependencies import Dependencies
from operator_tidb.drift import template_equal
from operator_tidb.errors import RequeueError, is_not_found
from operator_tidb.ordinals import stateful_set_ordinals
from operator_tidb.podutil import pod_revision
from operator_tidb.types import Cluster, MemberPhase, MemberType

logger = logging.getLogger(__name__)


def set_partition(sts: V1StatefulSet, partition: int) -> V1StatefulSet:
    result = copy.deepcopy(sts)
    result.spec.update_strategy.rolling_update.partition = partition
    return result


class RollingUpgrader:
    def __init__(self, deps: Dependencies) -> None:
        self.deps = deps

    async def upgrade(
        self, cluster: Cluster, mt: MemberType, old: V1StatefulSet, new: V1StatefulSet
    ) -> V1StatefulSet:
        """
        Return ``new`` with a partition exposing the ordinals to update now.

        Raises:
            RequeueError: Status is not synced, or an upgraded pod is not
                healthy yet.
        """
        ns = cluster.namespace
        status = cluster.component_status(mt)
        if not status.synced:
            raise RequeueError(f"{mt.value} status of {ns}/{cluster.name} is not synced, can't upgrade")

        if status.phase == MemberPhase.SCALE:
            logger.info(f"{mt.value} of {ns}/{cluster.name} is scaling, postpone upgrade")
            result = copy.deepcopy(new)
            result.spec.template = copy.deepcopy(old.spec.template)
            return result

        status.phase = MemberPhase.UPGRADE

        # Apply the new template first; the revision shows up on the next pass
        if not template_equal(new, old):
            return new

        sts_status = status.stateful_set
        if sts_status is None or sts_status.update_revision == sts_status.current_revision:
            return new

        strategy = old.spec.update_strategy
        if strategy is None or strategy.type == "OnDelete" or strategy.rolling_update is None:
            logger.warning(
                f"{mt.value} statefulset {ns}/{old.metadata.name} uses OnDelete, "
                f"pods must be deleted manually to upgrade"
            )
            result = copy.deepcopy(new)
            result.spec.update_strategy = copy.deepcopy(strategy)
            return result

        result = set_partition(new, strategy.rolling_update.partition or 0)
        for ordinal in sorted(stateful_set_ordinals(old), reverse=True):
            pod_name = labels.ordinal_pod_name(cluster.name, mt.value, ordinal)
            try:
                pod = await self.deps.platform.get_pod(ns, pod_name)
            except ApiException as err:
                if not is_not_found(err):
                    raise
                raise RequeueError(f"{mt.value} pod {ns}/{pod_name} does not exist yet") from err

            revision = pod_revision(pod)
            if revision is None:
                raise RequeueError(
                    f"{mt.value} pod {ns}/{pod_name} has no label {labels.CONTROLLER_REVISION_HASH_LABEL_KEY}"
                )
            if revision == sts_status.update_revision:
                if not status.pod_healthy(pod_name):
                    raise RequeueError(f"{mt.value} upgraded pod {ns}/{pod_name} is not healthy yet")
                continue

            logger.info(f"Upgrading {mt.value} pod {ns}/{pod_name}, partition: {ordinal}")
            return set_partition(result, ordinal)
        return result
