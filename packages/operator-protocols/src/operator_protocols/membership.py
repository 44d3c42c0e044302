"""
Membership protocol definitions.

The MembershipClientProtocol is the reconciliation core's view of a
cluster's own membership API. The core never speaks HTTP (or gRPC) itself;
it asks this collaborator who the members are, who leads, and to remove a
member.

StoreClientProtocol is the extra surface offered by placement services
that track data-holding stores separately from consensus members: listing
stores and retiring one.
"""

from typing import Protocol, runtime_checkable

from operator_protocols.types import Leader, Member, Store


@runtime_checkable
class MembershipClientProtocol(Protocol):
    """
    Protocol for a cluster membership API.

    Implementations must raise on transport or HTTP errors rather than
    returning partial data; the caller decides whether the failure is
    fatal for the pass.
    """

    async def get_members(self) -> list[Member]:
        """
        List the current members with their liveness.

        Returns:
            All members known to the group, healthy or not.
        """
        ...

    async def get_leader(self) -> Leader:
        """
        Return the current leader of the group.
        """
        ...

    async def delete_member(self, name: str) -> None:
        """
        Remove a member from the consensus group by name.

        Args:
            name: Member name (usually the pod name).
        """
        ...


@runtime_checkable
class StoreClientProtocol(Protocol):
    """Protocol for placement services that report data-holding stores."""

    async def get_stores(self) -> list[Store]:
        """Return all stores that are not yet Tombstone."""
        ...

    async def get_tombstone_stores(self) -> list[Store]:
        """Return stores that have completed removal."""
        ...

    async def delete_store(self, store_id: int) -> None:
        """
        Ask the placement service to retire a store.

        The call is a request, not a completion: the store goes Offline,
        its data is relocated, and only then does it become Tombstone.
        Calling it for a store that is already Offline must be harmless.

        Args:
            store_id: Numeric ID of the store to retire.
        """
        ...
