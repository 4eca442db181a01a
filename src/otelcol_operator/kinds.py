"""
Resource kinds managed by the OpenTelemetry Collector operator
"""

from enum import Enum

API_GROUP = "opentelemetry.io"
API_VERSION = "v1alpha1"
COLLECTOR_PLURAL = "opentelemetrycollectors"

MONITORING_GROUP = "monitoring.coreos.com"
MONITORING_VERSION = "v1"
SERVICE_MONITOR_PLURAL = "servicemonitors"

# Common labels
LABEL_NAME = "app.kubernetes.io/name"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
MANAGED_BY = "otelcol-operator"

# Digest of the payload the operator last wrote to a child
ANNOTATION_APPLIED_HASH = "otelcol-operator/applied-hash"

# Port the collector exposes its own metrics on
MONITORING_PORT = 8888
MONITORING_PORT_NAME = "monitoring"


class ResourceKind(str, Enum):
    """Kinds of objects read from or written to the resource store"""

    COLLECTOR = "OpenTelemetryCollector"
    CONFIG_MAP = "ConfigMap"
    SERVICE = "Service"
    DEPLOYMENT = "Deployment"
    DAEMON_SET = "DaemonSet"
    SERVICE_MONITOR = "ServiceMonitor"

    @property
    def api_version(self) -> str:
        return _API_VERSIONS[self]

    @property
    def payload_fields(self) -> tuple[str, ...]:
        """Top-level fields replaced wholesale on update."""
        if self is ResourceKind.CONFIG_MAP:
            return ("data",)
        return ("spec",)


_API_VERSIONS = {
    ResourceKind.COLLECTOR: f"{API_GROUP}/{API_VERSION}",
    ResourceKind.CONFIG_MAP: "v1",
    ResourceKind.SERVICE: "v1",
    ResourceKind.DEPLOYMENT: "apps/v1",
    ResourceKind.DAEMON_SET: "apps/v1",
    ResourceKind.SERVICE_MONITOR: f"{MONITORING_GROUP}/{MONITORING_VERSION}",
}

# Child kinds in reconciliation order
CHILD_KINDS: tuple[ResourceKind, ...] = (
    ResourceKind.CONFIG_MAP,
    ResourceKind.SERVICE,
    ResourceKind.DEPLOYMENT,
    ResourceKind.DAEMON_SET,
    ResourceKind.SERVICE_MONITOR,
)
