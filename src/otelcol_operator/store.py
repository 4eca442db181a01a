"""
Managed resource store

The reconciler only talks to the cluster through the ResourceStore protocol.
KubernetesStore (kube_store.py) is the production implementation; the
in-memory store here backs tests and dry runs.

Store Protocol:
- get(kind, namespace, name) -> dict, raises NotFoundError
- list(kind, namespace, label_selector) -> list[dict]
- create(manifest) -> dict, raises AlreadyExistsError
- update(manifest, expected_version) -> dict, raises ConflictError / NotFoundError
- delete(kind, namespace, name) -> None, raises NotFoundError
"""

import copy
import logging
import threading
import uuid
from collections.abc import Mapping
from typing import Any, Protocol

from otelcol_operator.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from otelcol_operator.kinds import ResourceKind

logger = logging.getLogger(__name__)


class ResourceStore(Protocol):
    """Protocol defining the resource store interface."""

    def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        """Read one object."""
        ...

    def list(
        self, kind: ResourceKind, namespace: str, label_selector: Mapping[str, str]
    ) -> list[dict[str, Any]]:
        """List objects of a kind whose labels match every selector entry."""
        ...

    def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create an object."""
        ...

    def update(self, manifest: dict[str, Any], expected_version: str | None) -> dict[str, Any]:
        """Replace an object, failing if its version is not `expected_version`."""
        ...

    def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        """Delete an object."""
        ...


def kind_of(manifest: Mapping[str, Any]) -> ResourceKind:
    return ResourceKind(manifest.get("kind"))


def matches_selector(manifest: Mapping[str, Any], label_selector: Mapping[str, str]) -> bool:
    labels = (manifest.get("metadata") or {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in label_selector.items())


class InMemoryStore:
    """Versioned, thread-safe object store kept in a dict"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[tuple[ResourceKind, str, str], dict[str, Any]] = {}
        self._version = 0
        # (operation, kind, namespace/name) for every successful write
        self.operations: list[tuple[str, ResourceKind, str]] = []

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _record(self, operation: str, kind: ResourceKind, namespace: str, name: str) -> None:
        self.operations.append((operation, kind, f"{namespace}/{name}"))
        logger.debug("store %s %s %s/%s", operation, kind.value, namespace, name)

    @staticmethod
    def _key(manifest: Mapping[str, Any]) -> tuple[ResourceKind, str, str]:
        metadata = manifest.get("metadata") or {}
        return kind_of(manifest), str(metadata.get("namespace")), str(metadata.get("name"))

    def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        with self._lock:
            obj = self._objects.get((kind, namespace, name))
            if obj is None:
                raise NotFoundError(
                    f"{kind.value} '{namespace}/{name}' not found", "get", f"{namespace}/{name}"
                )
            return copy.deepcopy(obj)

    def objects(self, kind: ResourceKind, namespace: str | None = None) -> list[dict[str, Any]]:
        """Snapshot of every stored object of a kind"""
        with self._lock:
            return [
                copy.deepcopy(obj)
                for (obj_kind, obj_namespace, _), obj in sorted(
                    self._objects.items(), key=lambda item: item[0][2]
                )
                if obj_kind is kind and (namespace is None or obj_namespace == namespace)
            ]

    def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        key = self._key(manifest)
        kind, namespace, name = key
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(
                    f"{kind.value} '{namespace}/{name}' already exists",
                    "create",
                    f"{namespace}/{name}",
                )
            stored = copy.deepcopy(manifest)
            metadata = stored.setdefault("metadata", {})
            metadata["uid"] = str(uuid.uuid4())
            metadata["resourceVersion"] = self._next_version()
            self._objects[key] = stored
            self._record("create", kind, namespace, name)
            return copy.deepcopy(stored)

    def update(self, manifest: dict[str, Any], expected_version: str | None) -> dict[str, Any]:
        key = self._key(manifest)
        kind, namespace, name = key
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(
                    f"{kind.value} '{namespace}/{name}' not found", "update", f"{namespace}/{name}"
                )
            current_version = current["metadata"]["resourceVersion"]
            if expected_version is not None and expected_version != current_version:
                raise ConflictError(
                    f"{kind.value} '{namespace}/{name}' is at version {current_version}, "
                    f"expected {expected_version}",
                    "update",
                    f"{namespace}/{name}",
                )
            stored = copy.deepcopy(manifest)
            metadata = stored.setdefault("metadata", {})
            metadata["uid"] = current["metadata"]["uid"]
            metadata["resourceVersion"] = self._next_version()
            self._objects[key] = stored
            self._record("update", kind, namespace, name)
            return copy.deepcopy(stored)

    def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        with self._lock:
            if self._objects.pop((kind, namespace, name), None) is None:
                raise NotFoundError(
                    f"{kind.value} '{namespace}/{name}' not found", "delete", f"{namespace}/{name}"
                )
            self._record("delete", kind, namespace, name)

    def list(
        self, kind: ResourceKind, namespace: str, label_selector: Mapping[str, str]
    ) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(obj)
                for (obj_kind, obj_namespace, _), obj in sorted(
                    self._objects.items(), key=lambda item: item[0][2]
                )
                if obj_kind is kind
                and obj_namespace == namespace
                and matches_selector(obj, label_selector)
            ]
