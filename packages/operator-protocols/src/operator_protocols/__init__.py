"""
Protocol definitions for the operator reconciliation core.

This package provides the Protocol definitions for the collaborators the
reconciliation core consumes but does not implement. It has zero
dependencies on other operator-* packages.

Key protocols:
- PlatformClientProtocol: Object store of the orchestration platform
- MembershipClientProtocol: A cluster's own membership API
- StoreClientProtocol: Store listing offered by placement services

Key types:
- Member: A consensus group member with liveness
- Leader: The current consensus leader
- Store: A data shard owner
- StoreId: Type alias for store identifiers
"""

from operator_protocols.membership import MembershipClientProtocol, StoreClientProtocol
from operator_protocols.platform import PlatformClientProtocol, Selector
from operator_protocols.types import Leader, Member, Store, StoreId

__all__ = [
    # Protocols
    "PlatformClientProtocol",
    "MembershipClientProtocol",
    "StoreClientProtocol",
    # Data types
    "Member",
    "Leader",
    "Store",
    "StoreId",
    "Selector",
]
