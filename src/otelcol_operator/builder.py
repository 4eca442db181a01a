"""
Desired-state builder

Maps a collector instance and the operator configuration to the child
objects that should exist for it. Nothing in here talks to the cluster.
"""

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiClient
from kubernetes.client.models import (
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1DaemonSet,
    V1DaemonSetSpec,
    V1Deployment,
    V1DeploymentSpec,
    V1KeyToPath,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)

from otelcol_operator._version import default_collector_image
from otelcol_operator.config import OperatorConfig
from otelcol_operator.exceptions import SpecValidationError
from otelcol_operator.kinds import (
    CHILD_KINDS,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_NAME,
    MANAGED_BY,
    MONITORING_GROUP,
    MONITORING_PORT,
    MONITORING_PORT_NAME,
    MONITORING_VERSION,
    ResourceKind,
)
from otelcol_operator.models import CollectorInstance, CollectorMode, ServicePortSpec

logger = logging.getLogger(__name__)

COLLECTOR_CONTAINER = "opentelemetry-collector"
CONFIG_VOLUME = "otc-internal"
CONFIG_MOUNT_PATH = "/conf"
CONFIG_MAP_ENTRY = "collector.yaml"
CONFIG_PATH = f"{CONFIG_MOUNT_PATH}/{CONFIG_MAP_ENTRY}"
CONFIG_ARG = "config"

DEFAULT_PORTS = (
    ServicePortSpec(name="otlp-grpc", port=4317),
    ServicePortSpec(name="otlp-http", port=4318),
)

_serializer = ApiClient()


@dataclass(frozen=True)
class DesiredObject:
    """A child object this pass wants to exist"""

    kind: ResourceKind
    manifest: dict[str, Any]

    @property
    def metadata(self) -> dict[str, Any]:
        return self.manifest.get("metadata") or {}

    @property
    def name(self) -> str:
        return str(self.metadata["name"])

    @property
    def namespace(self) -> str:
        return str(self.metadata["namespace"])

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.get("annotations") or {}


def collector_name(instance: CollectorInstance) -> str:
    """Name shared by the primary children of an instance"""
    return f"{instance.name}-collector"


def monitoring_service_name(instance: CollectorInstance) -> str:
    return f"{collector_name(instance)}-monitoring"


def common_labels(instance: CollectorInstance) -> dict[str, str]:
    """Ownership markers carried by every child of an instance"""
    return {
        LABEL_INSTANCE: instance.instance_label,
        LABEL_MANAGED_BY: MANAGED_BY,
    }


def labels_for(instance: CollectorInstance, name: str) -> dict[str, str]:
    """
    Custom labels overlaid on the common labels; markers and name always win.

    Besides the name label, the instance and managed-by markers are re-applied
    after the overlay. A user label overriding either would take the object
    out of the ownership selector, and the engine would stop updating or
    garbage-collecting it.
    """
    labels = dict(instance.labels)
    labels.update(common_labels(instance))
    labels[LABEL_NAME] = name
    return labels


def resolve_image(instance: CollectorInstance, config: OperatorConfig) -> str:
    """Spec image, then the configured override, then the compiled-in default"""
    for candidate in (instance.spec.image, config.default_image_override, default_collector_image()):
        if candidate:
            return candidate
    raise SpecValidationError(
        f"no collector image could be resolved for {instance.ref}", str(instance.ref)
    )


def container_args(instance: CollectorInstance) -> list[str]:
    """Render argument overrides, injecting the canonical config path if not overridden."""
    args = dict(instance.spec.args)
    args.setdefault(CONFIG_ARG, CONFIG_PATH)

    rendered = []
    for key in sorted(args):
        value = args[key]
        rendered.append(f"--{key}={value}" if value else f"--{key}")
    return rendered


def _metadata(instance: CollectorInstance, name: str) -> V1ObjectMeta:
    return V1ObjectMeta(
        name=name,
        namespace=instance.namespace,
        labels=labels_for(instance, name),
        annotations=dict(instance.annotations),
    )


def _service_ports(instance: CollectorInstance) -> list[ServicePortSpec]:
    return list(instance.spec.ports) if instance.spec.ports else list(DEFAULT_PORTS)


def build_config_map(instance: CollectorInstance) -> V1ConfigMap:
    """ConfigMap holding the raw collector configuration"""
    return V1ConfigMap(
        api_version=ResourceKind.CONFIG_MAP.api_version,
        kind=ResourceKind.CONFIG_MAP.value,
        metadata=_metadata(instance, collector_name(instance)),
        data={CONFIG_MAP_ENTRY: instance.spec.config or ""},
    )


def build_services(instance: CollectorInstance) -> list[V1Service]:
    """Collector Service plus the Service exposing the collector's own metrics"""
    selector = common_labels(instance)

    collector = V1Service(
        api_version=ResourceKind.SERVICE.api_version,
        kind=ResourceKind.SERVICE.value,
        metadata=_metadata(instance, collector_name(instance)),
        spec=V1ServiceSpec(
            selector=selector,
            ports=[
                V1ServicePort(
                    name=port.name,
                    port=port.port,
                    protocol=port.protocol,
                    target_port=port.targetPort if port.targetPort is not None else port.port,
                )
                for port in _service_ports(instance)
            ],
        ),
    )

    monitoring = V1Service(
        api_version=ResourceKind.SERVICE.api_version,
        kind=ResourceKind.SERVICE.value,
        metadata=_metadata(instance, monitoring_service_name(instance)),
        spec=V1ServiceSpec(
            selector=selector,
            ports=[
                V1ServicePort(
                    name=MONITORING_PORT_NAME,
                    port=MONITORING_PORT,
                    protocol="TCP",
                    target_port=MONITORING_PORT,
                )
            ],
        ),
    )

    return [collector, monitoring]


def _pod_template(instance: CollectorInstance, config: OperatorConfig) -> V1PodTemplateSpec:
    name = collector_name(instance)

    container_ports = [
        V1ContainerPort(
            name=port.name,
            container_port=port.targetPort if isinstance(port.targetPort, int) else port.port,
            protocol=port.protocol,
        )
        for port in _service_ports(instance)
    ]
    container_ports.append(
        V1ContainerPort(name=MONITORING_PORT_NAME, container_port=MONITORING_PORT, protocol="TCP")
    )

    return V1PodTemplateSpec(
        metadata=V1ObjectMeta(
            labels=labels_for(instance, name),
            annotations=dict(instance.annotations),
        ),
        spec=V1PodSpec(
            containers=[
                V1Container(
                    name=COLLECTOR_CONTAINER,
                    image=resolve_image(instance, config),
                    args=container_args(instance),
                    ports=container_ports,
                    volume_mounts=[
                        V1VolumeMount(name=CONFIG_VOLUME, mount_path=CONFIG_MOUNT_PATH)
                    ],
                )
            ],
            volumes=[
                V1Volume(
                    name=CONFIG_VOLUME,
                    config_map=V1ConfigMapVolumeSource(
                        name=name,
                        items=[V1KeyToPath(key=CONFIG_MAP_ENTRY, path=CONFIG_MAP_ENTRY)],
                    ),
                )
            ],
        ),
    )


def build_deployment(instance: CollectorInstance, config: OperatorConfig) -> V1Deployment:
    """Replica-controlled collector workload"""
    replicas = instance.spec.replicas if instance.spec.replicas is not None else 1
    return V1Deployment(
        api_version=ResourceKind.DEPLOYMENT.api_version,
        kind=ResourceKind.DEPLOYMENT.value,
        metadata=_metadata(instance, collector_name(instance)),
        spec=V1DeploymentSpec(
            replicas=replicas,
            selector=V1LabelSelector(match_labels=common_labels(instance)),
            template=_pod_template(instance, config),
        ),
    )


def build_deployments(instance: CollectorInstance, config: OperatorConfig) -> list[V1Deployment]:
    if instance.spec.mode is not CollectorMode.DEPLOYMENT:
        return []
    return [build_deployment(instance, config)]


def build_daemon_set(instance: CollectorInstance, config: OperatorConfig) -> V1DaemonSet:
    """Collector workload with one pod per node"""
    return V1DaemonSet(
        api_version=ResourceKind.DAEMON_SET.api_version,
        kind=ResourceKind.DAEMON_SET.value,
        metadata=_metadata(instance, collector_name(instance)),
        spec=V1DaemonSetSpec(
            selector=V1LabelSelector(match_labels=common_labels(instance)),
            template=_pod_template(instance, config),
        ),
    )


def build_daemon_sets(instance: CollectorInstance, config: OperatorConfig) -> list[V1DaemonSet]:
    if instance.spec.mode is not CollectorMode.DAEMONSET:
        return []
    return [build_daemon_set(instance, config)]


def build_service_monitor(instance: CollectorInstance) -> dict[str, Any]:
    """ServiceMonitor scraping the monitoring Service"""
    name = collector_name(instance)
    selector = common_labels(instance)
    selector[LABEL_NAME] = monitoring_service_name(instance)

    return {
        "apiVersion": f"{MONITORING_GROUP}/{MONITORING_VERSION}",
        "kind": ResourceKind.SERVICE_MONITOR.value,
        "metadata": {
            "name": name,
            "namespace": instance.namespace,
            "labels": labels_for(instance, name),
            "annotations": dict(instance.annotations),
        },
        "spec": {
            "selector": {"matchLabels": selector},
            "endpoints": [{"port": MONITORING_PORT_NAME}],
        },
    }


def build_service_monitors(instance: CollectorInstance) -> list[dict[str, Any]]:
    return [build_service_monitor(instance)]


def to_manifest(obj: Any) -> dict[str, Any]:
    """Serialize a kubernetes client model (or plain dict) to its JSON form"""
    manifest = _serializer.sanitize_for_serialization(obj)
    if not isinstance(manifest, dict):
        raise TypeError(f"cannot serialize {type(obj).__name__} to a manifest")
    return manifest


def build_for_kind(
    kind: ResourceKind, instance: CollectorInstance, config: OperatorConfig
) -> list[DesiredObject]:
    """Desired objects of one child kind"""
    if kind is ResourceKind.CONFIG_MAP:
        objects: list[Any] = [build_config_map(instance)]
    elif kind is ResourceKind.SERVICE:
        objects = build_services(instance)
    elif kind is ResourceKind.DEPLOYMENT:
        objects = build_deployments(instance, config)
    elif kind is ResourceKind.DAEMON_SET:
        objects = build_daemon_sets(instance, config)
    elif kind is ResourceKind.SERVICE_MONITOR:
        objects = build_service_monitors(instance)
    else:
        raise ValueError(f"{kind.value} is not a child kind")

    return [DesiredObject(kind=kind, manifest=to_manifest(obj)) for obj in objects]


def build(instance: CollectorInstance, config: OperatorConfig) -> list[DesiredObject]:
    """
    Build every desired child object for an instance.

    Returns:
        Ordered list: ConfigMap, Services, Deployment or DaemonSet, ServiceMonitor

    Raises:
        SpecValidationError: If the instance cannot be rendered
    """
    desired = []
    for kind in CHILD_KINDS:
        desired.extend(build_for_kind(kind, instance, config))

    logger.debug("Built %d desired objects for %s", len(desired), instance.ref)
    return desired
