"""
Reconciliation core for TiDB clusters on Kubernetes.

This package drives TidbCluster (PD, TiKV, TiFlash) and DMCluster
(dm-master) components toward their declared state. It includes:

- ClusterReconciler: sync/resize entry points per cluster kind
- MemberManager: the per-component reconciliation pipeline
- Scalers with the store-drain protocol, failover and rolling upgrade
- PVCResizer and ReclaimPolicyManager for storage
- PD and DM-master HTTP clients
- Kubernetes adapters and in-memory fakes of every collaborator
"""

from operator_tidb.config import Settings, settings, setup_logging
from operator_tidb.controller import ClusterReconciler
from operator_tidb.dependencies import ClientRegistry, Dependencies
from operator_tidb.dm_client import DMAPIError, DMMasterClient
from operator_tidb.errors import (
    AggregateError,
    InvalidQuantityError,
    ReconcileError,
    RequeueError,
    StatusSyncError,
    StoreNotFoundError,
    UnsupportedKindError,
)
from operator_tidb.failover import MemberFailover, StoreFailover
from operator_tidb.manifest import dump_status, load_cluster, parse_cluster
from operator_tidb.pd_client import PDClient
from operator_tidb.pipeline import DECISIONS, Decision, MemberManager
from operator_tidb.reclaim import ReclaimPolicyManager
from operator_tidb.resizer import PVCResizer
from operator_tidb.scaler import GeneralScaler, MemberScaler, StoreScaler
from operator_tidb.status import StatusProjector
from operator_tidb.types import (
    Cluster,
    ClusterKind,
    ClusterSpec,
    ClusterStatus,
    ComponentSpec,
    ComponentStatus,
    FailureMember,
    MemberPhase,
    MemberStatus,
    MemberType,
    StoreState,
    StoreStatus,
    TidbMonitor,
    UnjoinedMember,
)
from operator_tidb.upgrader import RollingUpgrader
from operator_tidb.worker import ClusterSource, ReconcileResult, ReconcileWorker

__all__ = [
    # Entry points
    "ClusterReconciler",
    "ReconcileWorker",
    "ReconcileResult",
    "ClusterSource",
    # Pipeline
    "MemberManager",
    "Decision",
    "DECISIONS",
    "StatusProjector",
    "GeneralScaler",
    "StoreScaler",
    "MemberScaler",
    "MemberFailover",
    "StoreFailover",
    "RollingUpgrader",
    "PVCResizer",
    "ReclaimPolicyManager",
    # Collaborators
    "Dependencies",
    "ClientRegistry",
    "PDClient",
    "DMMasterClient",
    "DMAPIError",
    # Configuration
    "Settings",
    "settings",
    "setup_logging",
    # Manifests
    "parse_cluster",
    "load_cluster",
    "dump_status",
    # Errors
    "RequeueError",
    "ReconcileError",
    "UnsupportedKindError",
    "StoreNotFoundError",
    "InvalidQuantityError",
    "StatusSyncError",
    "AggregateError",
    # Data model
    "Cluster",
    "ClusterKind",
    "ClusterSpec",
    "ClusterStatus",
    "ComponentSpec",
    "ComponentStatus",
    "FailureMember",
    "MemberPhase",
    "MemberStatus",
    "MemberType",
    "StoreState",
    "StoreStatus",
    "TidbMonitor",
    "UnjoinedMember",
]
