"""
Storage resizer.

Grows volume claims toward the sizes declared in the cluster spec. Every
claim template of every component is handled on its own: the primary data
volume, secondary storage volumes and TiFlash data disks each carry their
own desired size. TiDB, TiCDC, Pump and DM-worker pods are not reconciled
here, but their claims are grown the same way.

A claim is never shrunk. Claims whose storage class cannot expand are left
alone.
"""

import logging
import re

from kubernetes.utils import parse_quantity
from kubernetes_asyncio.client import ApiException, V1PersistentVolumeClaim, V1StorageClass

from operator_tidb import builders, labels
from operator_tidb.dependencies import Dependencies
from operator_tidb.errors import InvalidQuantityError, raise_collected
from operator_tidb.types import Cluster, MemberType, StorageComponent

logger = logging.getLogger(__name__)

TIDB_CLUSTER_COMPONENTS = (MemberType.PD, MemberType.TIKV, MemberType.TIFLASH)
DM_CLUSTER_COMPONENTS = (MemberType.DM_MASTER,)
TIDB_CLUSTER_STORAGE_COMPONENTS = (StorageComponent.TIDB, StorageComponent.TICDC, StorageComponent.PUMP)
DM_CLUSTER_STORAGE_COMPONENTS = (StorageComponent.DM_WORKER,)


def quantity(value: str):
    try:
        return parse_quantity(value)
    except ValueError as err:
        raise InvalidQuantityError(value, str(err)) from err


def _claim_patterns(
    cluster_name: str, component: str, sizes: dict[str, tuple[str, str | None]]
) -> list[tuple[re.Pattern[str], str]]:
    """Match claims named {template}-{cluster}-{component}-{ordinal}."""
    set_name = labels.member_name(cluster_name, component)
    patterns = []
    for template, (size, _) in sizes.items():
        quantity(size)
        patterns.append((re.compile(rf"^{re.escape(template)}-{re.escape(set_name)}-\d+$"), size))
    return patterns


class PVCResizer:
    """
    Example:
        resizer = PVCResizer(deps)
        await resizer.resize(cluster)
    """

    def __init__(self, deps: Dependencies) -> None:
        self.deps = deps

    async def resize(self, cluster: Cluster) -> None:
        await self._resize(cluster, TIDB_CLUSTER_COMPONENTS, TIDB_CLUSTER_STORAGE_COMPONENTS)

    async def resize_dm(self, dc: Cluster) -> None:
        await self._resize(dc, DM_CLUSTER_COMPONENTS, DM_CLUSTER_STORAGE_COMPONENTS)

    async def _resize(
        self,
        cluster: Cluster,
        components: tuple[MemberType, ...],
        storage_components: tuple[StorageComponent, ...],
    ) -> None:
        """
        Raises:
            InvalidQuantityError: A desired size does not parse.
            ApiException: A referenced storage class does not exist, or a
                platform call failed. Several failures are raised together
                as an AggregateError.
        """
        ns = cluster.namespace
        patterns: list[tuple[re.Pattern[str], str]] = []
        for mt in components:
            if mt not in cluster.spec.components:
                continue
            patterns += _claim_patterns(cluster.name, mt.value, builders.claim_sizes(cluster, mt))
        for sc in storage_components:
            spec = cluster.spec.storage_components.get(sc)
            if spec is None:
                continue
            patterns += _claim_patterns(cluster.name, sc.value, builders.storage_only_claim_sizes(sc, spec))
        if not patterns:
            return

        claims = await self.deps.platform.list_pvcs(ns, cluster.selector())
        classes: dict[str, V1StorageClass] = {}
        errors: list[Exception] = []
        for claim in claims:
            for pattern, size in patterns:
                if not pattern.match(claim.metadata.name):
                    continue
                try:
                    await self._resize_claim(ns, claim, size, classes)
                except (ApiException, InvalidQuantityError) as err:
                    errors.append(err)
                break
        raise_collected(errors)

    async def _resize_claim(
        self, ns: str, claim: V1PersistentVolumeClaim, size: str, classes: dict[str, V1StorageClass]
    ) -> None:
        name = claim.metadata.name
        class_name = claim.spec.storage_class_name
        if not class_name:
            logger.warning(f"PVC {ns}/{name} has no storage class, skipped")
            return

        storage_class = classes.get(class_name)
        if storage_class is None:
            storage_class = await self.deps.platform.get_storage_class(class_name)
            classes[class_name] = storage_class
        if not storage_class.allow_volume_expansion:
            logger.debug(f"Storage class {class_name} of PVC {ns}/{name} does not support expansion")
            return

        requests = (claim.spec.resources.requests or {}) if claim.spec.resources else {}
        current = requests.get("storage")
        if current is None:
            logger.warning(f"PVC {ns}/{name} storage request is empty, skipped")
            return

        if quantity(size) <= quantity(current):
            logger.debug(f"PVC {ns}/{name} requests {current}, desired {size}, nothing to grow")
            return

        body = {"spec": {"resources": {"requests": {"storage": size}}}}
        await self.deps.platform.patch_pvc(ns, name, body)
        logger.info(f"Resized PVC {ns}/{name} from {current} to {size}")
