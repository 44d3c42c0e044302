"""
Collaborators shared by every manager in the reconciliation core.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import httpx

from operator_protocols import MembershipClientProtocol, PlatformClientProtocol, StoreClientProtocol
from operator_tidb import labels
from operator_tidb.builders import PROFILES
from operator_tidb.config import Settings, settings as default_settings
from operator_tidb.dm_client import DMMasterClient
from operator_tidb.pd_client import PDClient
from operator_tidb.types import Cluster, MemberType


class ClientRegistry:
    """
    Hands out membership API clients, one per cluster.

    PD answers for the whole TidbCluster (PD members and TiKV/TiFlash
    stores); dm-master answers for a DMCluster. Each client wraps a cached
    httpx.AsyncClient pointed at the component's client service.

    Example:
        registry = ClientRegistry.from_settings(settings)
        members = await registry.pd(cluster).get_members()
        await registry.close()
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._http: dict[str, httpx.AsyncClient] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClientRegistry":
        return cls(timeout=settings.membership_timeout_seconds)

    def _http_client(self, cluster: Cluster, mt: MemberType) -> httpx.AsyncClient:
        name = labels.member_name(cluster.name, mt.value)
        base_url = f"{cluster.scheme}://{name}.{cluster.namespace}:{PROFILES[mt].client_port}"
        http = self._http.get(base_url)
        if http is None:
            http = httpx.AsyncClient(base_url=base_url, timeout=self.timeout)
            self._http[base_url] = http
        return http

    def pd(self, cluster: Cluster) -> PDClient:
        return PDClient(http=self._http_client(cluster, MemberType.PD))

    def dm_master(self, cluster: Cluster) -> DMMasterClient:
        return DMMasterClient(http=self._http_client(cluster, MemberType.DM_MASTER))

    def membership(self, cluster: Cluster, mt: MemberType) -> MembershipClientProtocol:
        if mt is MemberType.DM_MASTER:
            return self.dm_master(cluster)
        return self.pd(cluster)

    def stores(self, cluster: Cluster) -> StoreClientProtocol:
        return self.pd(cluster)

    async def close(self) -> None:
        for http in self._http.values():
            await http.aclose()
        self._http.clear()


@dataclass
class Dependencies:
    """
    Attributes:
        platform: The platform object store.
        clients: Membership API clients per cluster.
        settings: Operator settings.
        clock: Returns the current time; replaced in tests.
    """

    platform: PlatformClientProtocol
    clients: ClientRegistry
    settings: Settings = field(default_factory=lambda: default_settings)
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, platform: PlatformClientProtocol, settings: Settings = default_settings) -> "Dependencies":
        """Wire the production collaborators around a platform client."""
        return cls(platform=platform, clients=ClientRegistry.from_settings(settings), settings=settings)
