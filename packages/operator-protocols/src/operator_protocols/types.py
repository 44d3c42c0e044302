"""
Generic types returned by membership collaborators.

This module defines the data structures a membership API (PD, DM-master,
or any other consensus group that exposes its members) hands back to the
reconciliation core. They are transport-agnostic: HTTP
clients parse their own wire formats and convert to these types.

All types use @dataclass for simplicity.
"""

from dataclasses import dataclass, field


# Type aliases for common patterns
StoreId = str
"""Unique identifier for a data-holding store.

Membership APIs usually report numeric IDs; they are kept as strings here
so they can be used as mapping keys and label values without conversion.
"""


@dataclass
class Member:
    """
    A member of a consensus group as reported by the membership API.

    Attributes:
        id: Member identifier assigned by the group.
        name: Member name. For replicas managed by a StatefulSet this is
            the pod name (e.g. "basic-pd-0").
        client_urls: URLs clients use to reach this member. The first one
            is recorded in the observed status.
        alive: Whether the group currently considers the member healthy.
    """

    id: str
    name: str
    client_urls: list[str] = field(default_factory=list)
    alive: bool = False


@dataclass
class Leader:
    """
    The current leader of a consensus group.

    Attributes:
        name: Name of the leading member.
    """

    name: str


@dataclass
class Store:
    """
    A data shard owner registered with the placement service.

    Attributes:
        id: Unique store identifier.
        address: Network address in format "host:port"
            (e.g., "basic-tikv-0.basic-tikv-peer.default.svc:20160").
        state: Current store state - one of:
            - "Up": Store is healthy and serving requests
            - "Down": Store is unreachable
            - "Offline": Store is being drained
            - "Tombstone": Store has been removed from the cluster
    """

    id: StoreId
    address: str
    state: str
