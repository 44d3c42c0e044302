"""
Label, annotation and naming vocabulary shared by the reconciliation core.

Everything the operator writes onto platform objects, or reads back from
them, is spelled here once. Selectors are plain ``{key: value}`` mappings;
an object matches when all pairs appear in its labels.
"""

# Label keys
NAME_LABEL_KEY = "app.kubernetes.io/name"
MANAGED_BY_LABEL_KEY = "app.kubernetes.io/managed-by"
INSTANCE_LABEL_KEY = "app.kubernetes.io/instance"
COMPONENT_LABEL_KEY = "app.kubernetes.io/component"
USED_BY_LABEL_KEY = "app.kubernetes.io/used-by"
POD_NAME_LABEL_KEY = "tidb.pingcap.com/pod-name"
STORE_ID_LABEL_KEY = "tidb.pingcap.com/store-id"
MEMBER_ID_LABEL_KEY = "tidb.pingcap.com/member-id"
CONTROLLER_REVISION_HASH_LABEL_KEY = "controller-revision-hash"

# Label values
TIDB_OPERATOR = "tidb-operator"
TIDB_CLUSTER_NAME = "tidb-cluster"
DM_CLUSTER_NAME = "dm-cluster"
NG_MONITORING_NAME = "tidb-ng-monitoring"
MONITOR_COMPONENT = "monitor"
USED_BY_END_USER = "end-user"
USED_BY_PEER = "peer"

# Annotation keys
ANN_PVC_DEFER_DELETING = "tidb.pingcap.com/pvc-defer-deleting"
ANN_FORCE_UPGRADE = "tidb.pingcap.com/force-upgrade"
ANN_LAST_APPLIED_CONFIG = "pingcap.com/last-applied-configuration"
ANN_DELETE_SLOTS = "delete-slots"
ANN_DELETE_SLOTS_SUFFIX = ".tidb.pingcap.com/delete-slots"
ANN_PROM_SCRAPE = "prometheus.io/scrape"
ANN_PROM_PORT = "prometheus.io/port"
ANN_PROM_PATH = "prometheus.io/path"


def selector(name: str, instance: str, component: str | None = None) -> dict[str, str]:
    """Build the label selector for objects owned by one cluster instance."""
    labels = {
        NAME_LABEL_KEY: name,
        MANAGED_BY_LABEL_KEY: TIDB_OPERATOR,
        INSTANCE_LABEL_KEY: instance,
    }
    if component:
        labels[COMPONENT_LABEL_KEY] = component
    return labels


def matches(labels: dict[str, str] | None, wanted: dict[str, str]) -> bool:
    """Return True when every pair of ``wanted`` is present in ``labels``."""
    labels = labels or {}
    return all(labels.get(k) == v for k, v in wanted.items())


def cluster_delete_slots_annotation(component: str) -> str:
    """Cluster annotation holding the delete slots of one component."""
    return f"{component}{ANN_DELETE_SLOTS_SUFFIX}"


def member_name(cluster_name: str, component: str) -> str:
    """Name shared by a component's StatefulSet and its client service."""
    return f"{cluster_name}-{component}"


def peer_member_name(cluster_name: str, component: str) -> str:
    """Name of a component's headless peer-discovery service."""
    return f"{cluster_name}-{component}-peer"


def ordinal_pod_name(cluster_name: str, component: str, ordinal: int) -> str:
    return f"{member_name(cluster_name, component)}-{ordinal}"


def ordinal_pvc_name(template: str, set_name: str, ordinal: int) -> str:
    return f"{template}-{set_name}-{ordinal}"
