"""
Pydantic response types for the membership APIs.

Wire formats of the two membership APIs the core talks to:
- PD API (Placement Driver): member health, leader, stores
- DM-master OpenAPI: masters and leader

Clients validate bodies against these models and convert them to the
Member, Leader and Store dataclasses of operator_protocols.types.
"""

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# PD API Response Types
# =============================================================================


class PDMemberHealth(BaseModel):
    """
    Single entry from GET /pd/api/v1/health.

    Example entry:
    {"name": "basic-pd-0", "member_id": 1234, "client_urls": ["http://..."], "health": true}
    """

    name: str
    member_id: int
    client_urls: list[str] = Field(default_factory=list)
    health: bool = False


class PDLeaderResponse(BaseModel):
    """Response from GET /pd/api/v1/leader."""

    name: str
    member_id: int = 0
    client_urls: list[str] = Field(default_factory=list)


class PDStoreMeta(BaseModel):
    """The "store" half of a PD store entry. The sibling "status" half is ignored."""

    id: int
    address: str
    state_name: str
    version: str = ""


class PDStoreEntry(BaseModel):
    store: PDStoreMeta


class PDStoresResponse(BaseModel):
    """
    Response from GET /pd/api/v1/stores (with ``?state=2`` for tombstones).

    Example response:
    {
        "count": 1,
        "stores": [
            {
                "store": {"id": 1, "address": "basic-tikv-0.basic-tikv-peer.default.svc:20160", "state_name": "Up"},
                "status": {"capacity": "100GiB"}
            }
        ]
    }
    """

    count: int = 0
    stores: list[PDStoreEntry] = Field(default_factory=list)


# =============================================================================
# DM-master API Response Types
# =============================================================================
# DM wraps every listing in {"result": bool, "msg": str, "members": [...]}
# where each element holds exactly one of "master" / "leader".


class DMMasterInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    member_id: str = Field(default="", alias="memberID")
    alive: bool = False
    client_urls: list[str] = Field(default_factory=list, alias="clientURLs")
    peer_urls: list[str] = Field(default_factory=list, alias="peerURLs")


class DMMasterList(BaseModel):
    msg: str = ""
    masters: list[DMMasterInfo] = Field(default_factory=list)


class DMLeaderInfo(BaseModel):
    msg: str = ""
    name: str
    addr: str = ""


class DMMemberEntry(BaseModel):
    master: DMMasterList | None = None
    leader: DMLeaderInfo | None = None


class DMMembersResponse(BaseModel):
    """
    Response from GET /apis/v1alpha1/members.

    Example response (?master=true):
    {
        "result": true,
        "msg": "",
        "members": [{"master": {"msg": "", "masters": [{"name": "basic-dm-master-0", "alive": true}]}}]
    }
    """

    result: bool
    msg: str = ""
    members: list[DMMemberEntry] = Field(default_factory=list)


class DMResult(BaseModel):
    """Generic DM response carrying only a result flag and a message."""

    result: bool
    msg: str = ""
