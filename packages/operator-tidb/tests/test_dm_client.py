"""
Tests for DMMasterClient against a mocked DM-master OpenAPI.
"""

import httpx
import pytest

from operator_protocols import StoreClientProtocol
from operator_tidb.dm_client import DMAPIError, DMMasterClient

MASTERS = {
    "result": True,
    "msg": "",
    "members": [
        {
            "master": {
                "msg": "",
                "masters": [
                    {"name": "basic-dm-master-0", "memberID": "1", "alive": True, "clientURLs": ["http://a:8261"]},
                    {"name": "basic-dm-master-1", "memberID": "2", "alive": False},
                ],
            }
        }
    ],
}

LEADER = {"result": True, "members": [{"leader": {"name": "basic-dm-master-0", "addr": "a:8261"}}]}


def make_client(handler) -> DMMasterClient:
    return DMMasterClient(
        http=httpx.AsyncClient(base_url="http://basic-dm-master:8261", transport=httpx.MockTransport(handler))
    )


class TestMembers:
    @pytest.mark.asyncio
    async def test_get_members(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/apis/v1alpha1/members"
            assert request.url.params["master"] == "true"
            return httpx.Response(200, json=MASTERS)

        members = await make_client(handler).get_members()

        assert [(m.name, m.id, m.alive) for m in members] == [
            ("basic-dm-master-0", "1", True),
            ("basic-dm-master-1", "2", False),
        ]
        assert members[0].client_urls == ["http://a:8261"]

    @pytest.mark.asyncio
    async def test_get_leader(self):
        leader = await make_client(lambda request: httpx.Response(200, json=LEADER)).get_leader()
        assert leader.name == "basic-dm-master-0"

    @pytest.mark.asyncio
    async def test_result_false_is_an_error(self):
        client = make_client(lambda request: httpx.Response(200, json={"result": False, "msg": "no leader"}))

        with pytest.raises(DMAPIError, match="no leader"):
            await client.get_members()

    @pytest.mark.asyncio
    async def test_missing_leader_is_an_error(self):
        client = make_client(lambda request: httpx.Response(200, json={"result": True, "members": []}))

        with pytest.raises(DMAPIError):
            await client.get_leader()


class TestDeleteMember:
    @pytest.mark.asyncio
    async def test_delete_member(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            return httpx.Response(200, json={"result": True})

        await make_client(handler).delete_member("basic-dm-master-2")

        assert seen == [("DELETE", "/apis/v1alpha1/members/master/basic-dm-master-2")]

    @pytest.mark.asyncio
    async def test_missing_member_is_not_an_error(self):
        await make_client(lambda request: httpx.Response(404)).delete_member("basic-dm-master-9")

    @pytest.mark.asyncio
    async def test_rejected_delete_is_an_error(self):
        client = make_client(lambda request: httpx.Response(200, json={"result": False, "msg": "not found"}))

        with pytest.raises(DMAPIError):
            await client.delete_member("basic-dm-master-2")

    def test_has_no_store_surface(self):
        client = make_client(lambda request: httpx.Response(200))

        assert not hasattr(client, "delete_store")
        assert not isinstance(client, StoreClientProtocol)
