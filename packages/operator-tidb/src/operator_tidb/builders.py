"""
Desired-object builders.

Pure functions from a Cluster to the platform objects the operator wants to
exist: the client and peer services, the config map and the StatefulSet of
one component. Nothing here talks to the platform; the drift resolvers
decide whether and how to apply what is built.
"""

import hashlib
import json
from dataclasses import dataclass

import tomli_w
from kubernetes_asyncio.client import (
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1EnvVar,
    V1EnvVarSource,
    V1KeyToPath,
    V1LabelSelector,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1PodSpec,
    V1PodTemplateSpec,
    V1RollingUpdateStatefulSetStrategy,
    V1SecretVolumeSource,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1StatefulSetUpdateStrategy,
    V1Volume,
    V1VolumeMount,
    V1VolumeResourceRequirements,
)

from operator_tidb import labels
from operator_tidb.ordinals import format_delete_slots
from operator_tidb.types import Cluster, MemberType, StorageComponent, StorageSpec

CONFIG_FILE_KEY = "config-file"
STARTUP_SCRIPT_KEY = "startup-script"
CLUSTER_CERT_DIR = "/var/lib/cluster-tls"


@dataclass(frozen=True)
class ComponentProfile:
    """Static facts about how one component runs."""

    client_port: int
    peer_port: int
    port_name: str
    peer_port_name: str
    data_dir: str
    default_storage: str
    metrics_port: int
    start_command: str

    def config_file(self, mt: MemberType) -> str:
        return f"{mt.value}.toml"


PROFILES: dict[MemberType, ComponentProfile] = {
    MemberType.PD: ComponentProfile(
        client_port=2379,
        peer_port=2380,
        port_name="client",
        peer_port_name="peer",
        data_dir="/var/lib/pd",
        default_storage="1Gi",
        metrics_port=2379,
        start_command="/pd-server",
    ),
    MemberType.TIKV: ComponentProfile(
        client_port=20160,
        peer_port=20160,
        port_name="server",
        peer_port_name="peer",
        data_dir="/var/lib/tikv",
        default_storage="100Gi",
        metrics_port=20180,
        start_command="/tikv-server",
    ),
    MemberType.TIFLASH: ComponentProfile(
        client_port=3930,
        peer_port=3930,
        port_name="flash",
        peer_port_name="tiflash",
        data_dir="/data0",
        default_storage="100Gi",
        metrics_port=8234,
        start_command="/tiflash/tiflash server",
    ),
    MemberType.DM_MASTER: ComponentProfile(
        client_port=8261,
        peer_port=8291,
        port_name="dm-master",
        peer_port_name="dm-master-peer",
        data_dir="/var/lib/dm-master",
        default_storage="10Gi",
        metrics_port=8261,
        start_command="/dm-master",
    ),
}

STARTUP_SCRIPT = """#!/bin/sh
set -uo pipefail
ANNOTATIONS="/etc/podinfo/annotations"
if [ -f $ANNOTATIONS ] && grep -q 'runmode="debug"' $ANNOTATIONS; then
    echo "entering debug mode."
    tail -f /dev/null
fi
POD_NAME=${{POD_NAME:-$HOSTNAME}}
ADVERTISE="${{POD_NAME}}.${{PEER_SERVICE_NAME}}.${{NAMESPACE}}.svc"
exec {command} \\
    --data-dir={data_dir} \\
    --advertise-addr={scheme}://${{ADVERTISE}}:{port} \\
    --config=/etc/{component}/{config_file}
"""


def component_selector(cluster: Cluster, mt: MemberType) -> dict[str, str]:
    return cluster.selector(mt)


def data_claim_name(mt: MemberType) -> str:
    """Claim template name of a component's primary data volume."""
    return mt.value


def storage_volume_claim_name(mt: MemberType, volume_name: str) -> str:
    return f"{mt.value}-{volume_name}"


def storage_claim_name(index: int) -> str:
    return f"data{index}"


def claim_sizes(cluster: Cluster, mt: MemberType) -> dict[str, tuple[str, str | None]]:
    """
    Map each claim template of a component to its desired size and class.

    Includes the primary data volume (or the TiFlash data disks) and every
    secondary storage volume.
    """
    spec = cluster.component(mt)
    profile = PROFILES[mt]
    sizes: dict[str, tuple[str, str | None]] = {}
    if mt is MemberType.TIFLASH:
        claims = spec.storage_claims
        if not claims:
            sizes[storage_claim_name(0)] = (spec.storage_size or profile.default_storage, spec.storage_class_name)
        for i, claim in enumerate(claims):
            sizes[storage_claim_name(i)] = (claim.storage_size, claim.storage_class_name)
    else:
        sizes[data_claim_name(mt)] = (spec.storage_size or profile.default_storage, spec.storage_class_name)
    for volume in spec.storage_volumes:
        storage_class = volume.storage_class_name or spec.storage_class_name
        sizes[storage_volume_claim_name(mt, volume.name)] = (volume.storage_size, storage_class)
    return sizes


def storage_only_claim_sizes(sc: StorageComponent, spec: StorageSpec) -> dict[str, tuple[str, str | None]]:
    """Claim sizes of a component whose pods are managed elsewhere. Volumes without a size are omitted."""
    sizes: dict[str, tuple[str, str | None]] = {}
    if sc.data_claim_name and spec.storage_size:
        sizes[sc.data_claim_name] = (spec.storage_size, spec.storage_class_name)
    for volume in spec.storage_volumes:
        if volume.storage_size:
            storage_class = volume.storage_class_name or spec.storage_class_name
            sizes[f"{sc.value}-{volume.name}"] = (volume.storage_size, storage_class)
    return sizes


# =============================================================================
# Services
# =============================================================================


def new_service(cluster: Cluster, mt: MemberType) -> V1Service:
    """Build the ClusterIP client service, applying user overrides."""
    profile = PROFILES[mt]
    selector = component_selector(cluster, mt)
    svc_labels = {**selector, labels.USED_BY_LABEL_KEY: labels.USED_BY_END_USER}
    port = V1ServicePort(
        name=profile.port_name,
        port=profile.client_port,
        target_port=profile.client_port,
        protocol="TCP",
    )
    svc = V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=labels.member_name(cluster.name, mt.value),
            namespace=cluster.namespace,
            labels=svc_labels,
            owner_references=[cluster.owner_reference],
        ),
        spec=V1ServiceSpec(type="ClusterIP", ports=[port], selector=selector),
    )

    override = cluster.component(mt).service
    if override is not None:
        if override.type:
            svc.spec.type = override.type
        svc.metadata.annotations = dict(override.annotations)
        svc.metadata.labels = {**svc_labels, **override.labels}
        if override.type == "LoadBalancer":
            if override.load_balancer_ip is not None:
                svc.spec.load_balancer_ip = override.load_balancer_ip
            if override.load_balancer_source_ranges:
                svc.spec.load_balancer_source_ranges = list(override.load_balancer_source_ranges)
        if override.external_traffic_policy is not None:
            svc.spec.external_traffic_policy = override.external_traffic_policy
        if override.cluster_ip is not None:
            svc.spec.cluster_ip = override.cluster_ip
        if override.port_name is not None:
            port.name = override.port_name
    return svc


def new_headless_service(cluster: Cluster, mt: MemberType) -> V1Service:
    """Build the headless peer-discovery service."""
    profile = PROFILES[mt]
    selector = component_selector(cluster, mt)
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=labels.peer_member_name(cluster.name, mt.value),
            namespace=cluster.namespace,
            labels={**selector, labels.USED_BY_LABEL_KEY: labels.USED_BY_PEER},
            owner_references=[cluster.owner_reference],
        ),
        spec=V1ServiceSpec(
            cluster_ip="None",
            ports=[
                V1ServicePort(
                    name=profile.peer_port_name,
                    port=profile.peer_port,
                    target_port=profile.peer_port,
                    protocol="TCP",
                )
            ],
            selector=selector,
            publish_not_ready_addresses=True,
        ),
    )


# =============================================================================
# Config map
# =============================================================================


def render_config(cluster: Cluster, mt: MemberType) -> str:
    """Render the component config to TOML, pointing TLS at the cluster certs."""
    config = json.loads(json.dumps(cluster.component(mt).config))
    if cluster.spec.tls_cluster:
        ca = f"{CLUSTER_CERT_DIR}/ca.crt"
        cert = f"{CLUSTER_CERT_DIR}/tls.crt"
        key = f"{CLUSTER_CERT_DIR}/tls.key"
        if mt is MemberType.DM_MASTER:
            config.update({"ssl-ca": ca, "ssl-cert": cert, "ssl-key": key})
        else:
            security = config.setdefault("security", {})
            security.update({"ca-path": ca, "cert-path": cert, "key-path": key})
    return tomli_w.dumps(config)


def render_startup_script(cluster: Cluster, mt: MemberType) -> str:
    profile = PROFILES[mt]
    return STARTUP_SCRIPT.format(
        command=profile.start_command,
        data_dir=profile.data_dir,
        scheme=cluster.scheme,
        port=profile.client_port,
        component=mt.value,
        config_file=profile.config_file(mt),
    )


def config_digest(data: dict[str, str]) -> str:
    raw = json.dumps(data, sort_keys=True).encode()
    return hashlib.sha256(raw).hexdigest()[:8]


def new_config_map(cluster: Cluster, mt: MemberType) -> V1ConfigMap:
    """
    Build the config map of a component.

    The name carries a digest of the content, so a content change yields a
    new config map and a new pod template reference, which rolls the pods.
    """
    data = {
        CONFIG_FILE_KEY: render_config(cluster, mt),
        STARTUP_SCRIPT_KEY: render_startup_script(cluster, mt),
    }
    name = f"{labels.member_name(cluster.name, mt.value)}-{config_digest(data)}"
    return V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(
            name=name,
            namespace=cluster.namespace,
            labels=component_selector(cluster, mt),
            owner_references=[cluster.owner_reference],
        ),
        data=data,
    )


# =============================================================================
# StatefulSet
# =============================================================================


def _claim_template(
    name: str, size: str, storage_class: str | None, selector: dict[str, str]
) -> V1PersistentVolumeClaim:
    return V1PersistentVolumeClaim(
        metadata=V1ObjectMeta(name=name, labels=dict(selector)),
        spec=V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=storage_class,
            resources=V1VolumeResourceRequirements(requests={"storage": size}),
        ),
    )


def _env(cluster: Cluster, mt: MemberType) -> list[V1EnvVar]:
    return [
        V1EnvVar(
            name="NAMESPACE",
            value_from=V1EnvVarSource(field_ref=V1ObjectFieldSelector(field_path="metadata.namespace")),
        ),
        V1EnvVar(name="PEER_SERVICE_NAME", value=labels.peer_member_name(cluster.name, mt.value)),
        V1EnvVar(name="SERVICE_NAME", value=labels.member_name(cluster.name, mt.value)),
        V1EnvVar(name="SET_NAME", value=labels.member_name(cluster.name, mt.value)),
        V1EnvVar(name="TZ", value=cluster.spec.timezone),
    ]


def stateful_set_annotations(cluster: Cluster, mt: MemberType) -> dict[str, str]:
    """Carry the cluster's delete slots for this component onto the StatefulSet."""
    slots = cluster.delete_slots(mt)
    if not slots:
        return {}
    return {labels.ANN_DELETE_SLOTS: format_delete_slots(slots)}


def new_stateful_set(cluster: Cluster, mt: MemberType, config_map: V1ConfigMap) -> V1StatefulSet:
    """
    Build the desired StatefulSet of a component.

    Replicas include failure replicas. The rolling update partition starts
    above every live ordinal, so nothing rolls until the upgrader lowers it.
    """
    spec = cluster.component(mt)
    profile = PROFILES[mt]
    set_name = labels.member_name(cluster.name, mt.value)
    selector = component_selector(cluster, mt)
    replicas = cluster.sts_desired_replicas(mt)
    slots = cluster.delete_slots(mt)

    mounts = [
        V1VolumeMount(name="config", mount_path=f"/etc/{mt.value}", read_only=True),
        V1VolumeMount(name="startup-script", mount_path="/usr/local/bin", read_only=True),
    ]
    volumes = [
        V1Volume(
            name="config",
            config_map=V1ConfigMapVolumeSource(
                name=config_map.metadata.name,
                items=[V1KeyToPath(key=CONFIG_FILE_KEY, path=profile.config_file(mt))],
            ),
        ),
        V1Volume(
            name="startup-script",
            config_map=V1ConfigMapVolumeSource(
                name=config_map.metadata.name,
                items=[V1KeyToPath(key=STARTUP_SCRIPT_KEY, path=f"{mt.value}_start_script.sh")],
            ),
        ),
    ]
    if cluster.spec.tls_cluster:
        mounts.append(V1VolumeMount(name="cluster-tls", mount_path=CLUSTER_CERT_DIR, read_only=True))
        volumes.append(
            V1Volume(
                name="cluster-tls",
                secret=V1SecretVolumeSource(secret_name=f"{set_name}-cluster-secret"),
            )
        )

    claim_templates = []
    for name, (size, storage_class) in claim_sizes(cluster, mt).items():
        claim_templates.append(_claim_template(name, size, storage_class, selector))
        if name == data_claim_name(mt):
            mount_path = profile.data_dir
        elif mt is MemberType.TIFLASH and name.startswith("data") and name[4:].isdigit():
            mount_path = f"/{name}"
        else:
            volume = next(v for v in spec.storage_volumes if storage_volume_claim_name(mt, v.name) == name)
            mount_path = volume.mount_path or f"{profile.data_dir}/{volume.name}"
        mounts.append(V1VolumeMount(name=name, mount_path=mount_path))

    ports = [V1ContainerPort(name=profile.port_name, container_port=profile.client_port, protocol="TCP")]
    if profile.peer_port != profile.client_port:
        ports.append(V1ContainerPort(name="peer", container_port=profile.peer_port, protocol="TCP"))

    container = V1Container(
        name=mt.value,
        image=cluster.image(mt),
        image_pull_policy="IfNotPresent",
        command=["/bin/sh", f"/usr/local/bin/{mt.value}_start_script.sh"],
        ports=ports,
        volume_mounts=mounts,
        env=_env(cluster, mt),
    )

    pod_annotations = {
        labels.ANN_PROM_SCRAPE: "true",
        labels.ANN_PROM_PORT: str(profile.metrics_port),
        labels.ANN_PROM_PATH: "/metrics",
        **spec.annotations,
    }

    return V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=V1ObjectMeta(
            name=set_name,
            namespace=cluster.namespace,
            labels=dict(selector),
            annotations=stateful_set_annotations(cluster, mt),
            owner_references=[cluster.owner_reference],
        ),
        spec=V1StatefulSetSpec(
            replicas=replicas,
            selector=V1LabelSelector(match_labels=dict(selector)),
            service_name=labels.peer_member_name(cluster.name, mt.value),
            pod_management_policy="Parallel",
            update_strategy=V1StatefulSetUpdateStrategy(
                type="RollingUpdate",
                rolling_update=V1RollingUpdateStatefulSetStrategy(partition=replicas + len(slots)),
            ),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels={**selector, **spec.labels}, annotations=pod_annotations),
                spec=V1PodSpec(containers=[container], volumes=volumes),
            ),
            volume_claim_templates=claim_templates,
        ),
    )
