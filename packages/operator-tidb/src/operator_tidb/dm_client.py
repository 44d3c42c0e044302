"""
DM-master API client.

DMMasterClient speaks the DM-master OpenAPI (``/apis/v1alpha1``) and
implements MembershipClientProtocol. DM has no store concept, so it does
not implement StoreClientProtocol.
"""

from dataclasses import dataclass

import httpx

from operator_protocols.types import Leader, Member
from operator_tidb.api_types import DMMembersResponse, DMResult


class DMAPIError(Exception):
    """DM-master answered with result=false."""


@dataclass
class DMMasterClient:
    """
    DM-master API client with injected httpx client.

    Attributes:
        http: Pre-configured httpx.AsyncClient with base_url set to the
            dm-master client service.
    """

    http: httpx.AsyncClient

    async def _members(self, params: dict[str, str]) -> DMMembersResponse:
        response = await self.http.get("/apis/v1alpha1/members", params=params)
        response.raise_for_status()
        data = DMMembersResponse.model_validate(response.json())
        if not data.result:
            raise DMAPIError(f"dm-master members query failed: {data.msg}")
        return data

    async def get_members(self) -> list[Member]:
        """
        List dm-master members.

        Calls GET /apis/v1alpha1/members?master=true.

        Raises:
            httpx.HTTPStatusError: On HTTP errors (4xx, 5xx responses).
            pydantic.ValidationError: On malformed response data.
            DMAPIError: When dm-master reports result=false.
        """
        data = await self._members({"master": "true"})
        members = []
        for entry in data.members:
            if entry.master is None:
                continue
            for master in entry.master.masters:
                members.append(
                    Member(
                        id=master.member_id,
                        name=master.name,
                        client_urls=master.client_urls,
                        alive=master.alive,
                    )
                )
        return members

    async def get_leader(self) -> Leader:
        """Calls GET /apis/v1alpha1/members?leader=true."""
        data = await self._members({"leader": "true"})
        for entry in data.members:
            if entry.leader is not None:
                return Leader(name=entry.leader.name)
        raise DMAPIError("dm-master reported no leader")

    async def delete_member(self, name: str) -> None:
        """
        Remove a dm-master from the group.

        Calls DELETE /apis/v1alpha1/members/master/{name}. A 404 means the
        member is already gone.
        """
        response = await self.http.delete(f"/apis/v1alpha1/members/master/{name}")
        if response.status_code == 404:
            return
        response.raise_for_status()
        data = DMResult.model_validate(response.json())
        if not data.result:
            raise DMAPIError(f"failed to delete dm-master {name}: {data.msg}")
