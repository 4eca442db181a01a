"""
Resource store backed by the Kubernetes API
"""

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client

from otelcol_operator.exceptions import handle_kubernetes_errors
from otelcol_operator.kinds import (
    API_GROUP,
    API_VERSION,
    COLLECTOR_PLURAL,
    MONITORING_GROUP,
    MONITORING_VERSION,
    SERVICE_MONITOR_PLURAL,
    ResourceKind,
)
from otelcol_operator.store import kind_of

logger = logging.getLogger(__name__)

# Built-in kinds: (API attribute, method suffix)
_TYPED_KINDS: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.CONFIG_MAP: ("core", "config_map"),
    ResourceKind.SERVICE: ("core", "service"),
    ResourceKind.DEPLOYMENT: ("apps", "deployment"),
    ResourceKind.DAEMON_SET: ("apps", "daemon_set"),
}

# Custom kinds: (group, version, plural)
_CUSTOM_KINDS: dict[ResourceKind, tuple[str, str, str]] = {
    ResourceKind.COLLECTOR: (API_GROUP, API_VERSION, COLLECTOR_PLURAL),
    ResourceKind.SERVICE_MONITOR: (MONITORING_GROUP, MONITORING_VERSION, SERVICE_MONITOR_PLURAL),
}


def format_label_selector(label_selector: Mapping[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(label_selector.items()))


class KubernetesStore:
    """ResourceStore implementation using the official kubernetes client"""

    def __init__(self, api_client: client.ApiClient | None = None) -> None:
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    def _to_dict(self, kind: ResourceKind, obj: Any) -> dict[str, Any]:
        """Convert a typed API response to its JSON form"""
        manifest = self.api_client.sanitize_for_serialization(obj)
        # List items come back without apiVersion/kind
        manifest.setdefault("apiVersion", kind.api_version)
        manifest.setdefault("kind", kind.value)
        return dict(manifest)

    def _typed(self, kind: ResourceKind, verb: str) -> Any:
        api_attr, suffix = _TYPED_KINDS[kind]
        return getattr(getattr(self, api_attr), f"{verb}_namespaced_{suffix}")

    @handle_kubernetes_errors("get")
    def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        if kind in _CUSTOM_KINDS:
            group, version, plural = _CUSTOM_KINDS[kind]
            return dict(
                self.custom.get_namespaced_custom_object(group, version, namespace, plural, name)
            )
        return self._to_dict(kind, self._typed(kind, "read")(name=name, namespace=namespace))

    @handle_kubernetes_errors("create")
    def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        kind = kind_of(manifest)
        namespace = manifest["metadata"]["namespace"]
        if kind in _CUSTOM_KINDS:
            group, version, plural = _CUSTOM_KINDS[kind]
            return dict(
                self.custom.create_namespaced_custom_object(
                    group, version, namespace, plural, body=manifest
                )
            )
        created = self._typed(kind, "create")(namespace=namespace, body=manifest)
        return self._to_dict(kind, created)

    @handle_kubernetes_errors("update")
    def update(self, manifest: dict[str, Any], expected_version: str | None) -> dict[str, Any]:
        kind = kind_of(manifest)
        metadata = manifest["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]

        # The API server rejects the replace with 409 if the version moved on
        body = dict(manifest)
        body["metadata"] = {**metadata, "resourceVersion": expected_version}

        if kind in _CUSTOM_KINDS:
            group, version, plural = _CUSTOM_KINDS[kind]
            return dict(
                self.custom.replace_namespaced_custom_object(
                    group, version, namespace, plural, name, body
                )
            )
        replaced = self._typed(kind, "replace")(name=name, namespace=namespace, body=body)
        return self._to_dict(kind, replaced)

    @handle_kubernetes_errors("delete")
    def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        # Children of the deleted object are collected in the background
        options = client.V1DeleteOptions(propagation_policy="Background")
        if kind in _CUSTOM_KINDS:
            group, version, plural = _CUSTOM_KINDS[kind]
            self.custom.delete_namespaced_custom_object(
                group, version, namespace, plural, name, body=options
            )
        else:
            self._typed(kind, "delete")(name=name, namespace=namespace, body=options)
        logger.debug("Deleted %s %s/%s", kind.value, namespace, name)

    @handle_kubernetes_errors("list")
    def list(
        self, kind: ResourceKind, namespace: str, label_selector: Mapping[str, str]
    ) -> list[dict[str, Any]]:
        selector = format_label_selector(label_selector)
        if kind in _CUSTOM_KINDS:
            group, version, plural = _CUSTOM_KINDS[kind]
            response = self.custom.list_namespaced_custom_object(
                group, version, namespace, plural, label_selector=selector
            )
            return [dict(item) for item in response.get("items", [])]

        response = self._typed(kind, "list")(namespace=namespace, label_selector=selector)
        return [self._to_dict(kind, item) for item in response.items]
