"""
PD API client for membership and store management.

This module provides the PDClient class for the Placement Driver (PD) HTTP
API: member health, the current leader, stores, and the two retirement
operations the reconciliation core needs (delete a store, delete a member).

PDClient receives an injected httpx.AsyncClient with base_url set to the PD
client service. All methods are async and fail loudly on HTTP errors.

PD API Documentation:
- https://docs.pingcap.com/tidb/stable/pd-control
- https://docs.pingcap.com/tidb/stable/tidb-monitoring-api/
"""

from dataclasses import dataclass

import httpx

from operator_protocols.types import Leader, Member, Store
from operator_tidb.api_types import (
    PDLeaderResponse,
    PDMemberHealth,
    PDStoresResponse,
)

# PD store state filter value for Tombstone
TOMBSTONE_STATE = 2


@dataclass
class PDClient:
    """
    PD API client with injected httpx client.

    Implements MembershipClientProtocol and StoreClientProtocol.

    Attributes:
        http: Pre-configured httpx.AsyncClient with base_url set to PD server.

    Example:
        async with httpx.AsyncClient(base_url="http://basic-pd:2379") as http:
            client = PDClient(http=http)
            for member in await client.get_members():
                print(f"{member.name}: alive={member.alive}")
    """

    http: httpx.AsyncClient

    async def get_members(self) -> list[Member]:
        """
        Get all PD members with their health.

        Calls GET /pd/api/v1/health, which reports every member of the PD
        cluster together with a health flag.

        Raises:
            httpx.HTTPStatusError: On HTTP errors (4xx, 5xx responses).
            pydantic.ValidationError: On malformed response data.
        """
        response = await self.http.get("/pd/api/v1/health")
        response.raise_for_status()

        items = [PDMemberHealth.model_validate(item) for item in response.json()]

        return [
            Member(
                id=str(item.member_id),
                name=item.name,
                client_urls=item.client_urls,
                alive=item.health,
            )
            for item in items
        ]

    async def get_leader(self) -> Leader:
        """
        Get the current PD leader.

        Calls GET /pd/api/v1/leader.

        Raises:
            httpx.HTTPStatusError: On HTTP errors (4xx, 5xx responses).
            pydantic.ValidationError: On malformed response data.
        """
        response = await self.http.get("/pd/api/v1/leader")
        response.raise_for_status()

        data = PDLeaderResponse.model_validate(response.json())
        return Leader(name=data.name)

    async def get_stores(self) -> list[Store]:
        """
        Get all stores that have not reached Tombstone.

        Calls GET /pd/api/v1/stores.

        Raises:
            httpx.HTTPStatusError: On HTTP errors (4xx, 5xx responses).
            pydantic.ValidationError: On malformed response data.

        Note:
            Store IDs are converted from int (PD API) to str.
        """
        return await self._list_stores("/pd/api/v1/stores")

    async def get_tombstone_stores(self) -> list[Store]:
        """
        Get stores that completed removal.

        Calls GET /pd/api/v1/stores?state=2.
        """
        return await self._list_stores("/pd/api/v1/stores", params={"state": TOMBSTONE_STATE})

    async def _list_stores(self, path: str, params: dict | None = None) -> list[Store]:
        response = await self.http.get(path, params=params)
        response.raise_for_status()

        data = PDStoresResponse.model_validate(response.json())

        return [
            Store(
                id=str(entry.store.id),
                address=entry.store.address,
                state=entry.store.state_name,
            )
            for entry in data.stores
        ]

    async def delete_store(self, store_id: int) -> None:
        """
        Ask PD to retire a store.

        Calls DELETE /pd/api/v1/store/{id}. PD moves the store to Offline,
        relocates its regions and eventually marks it Tombstone.

        Args:
            store_id: The store to retire.

        Raises:
            httpx.HTTPStatusError: On HTTP errors (4xx, 5xx responses).

        Note:
            Fire-and-forget: Returns when PD accepts the request.
            Does not wait for the store to become Tombstone.
        """
        response = await self.http.delete(f"/pd/api/v1/store/{store_id}")
        response.raise_for_status()

    async def delete_member(self, name: str) -> None:
        """
        Remove a member from the PD cluster by name.

        Calls DELETE /pd/api/v1/members/name/{name}. A 404 means the member
        is already gone and is not an error.

        Raises:
            httpx.HTTPStatusError: On HTTP errors other than 404.
        """
        response = await self.http.delete(f"/pd/api/v1/members/name/{name}")
        if response.status_code == 404:
            return
        response.raise_for_status()
