"""
Reconciliation engine

One pass loads a collector, builds its desired children and converges the
store towards them kind by kind: create what is missing, update what drifted,
delete owned objects that are no longer desired. A pass keeps no state of its
own, so it is safe to run again at any time and from any partial state.
"""

import copy
import hashlib
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from otelcol_operator import builder, ownership
from otelcol_operator.builder import DesiredObject
from otelcol_operator.config import OperatorConfig
from otelcol_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    KindReconcileError,
    NotFoundError,
    OwnershipError,
    ReconcilePassError,
)
from otelcol_operator.kinds import ANNOTATION_APPLIED_HASH, CHILD_KINDS, ResourceKind
from otelcol_operator.models import CollectorInstance, InstanceRef
from otelcol_operator.store import ResourceStore

logger = logging.getLogger(__name__)

Logger = logging.Logger | logging.LoggerAdapter

# Fields assigned by the API server that a full spec replace must carry over
SERVER_MANAGED_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.SERVICE: ("clusterIP", "clusterIPs", "ipFamilies", "ipFamilyPolicy"),
}

# Fields the API server fills in when left unset; their presence alone is not drift
SERVER_DEFAULTED_FIELDS = frozenset(
    {
        # Deployment and DaemonSet
        "progressDeadlineSeconds",
        "revisionHistoryLimit",
        "strategy",
        "updateStrategy",
        # Pod template
        "creationTimestamp",
        "dnsPolicy",
        "restartPolicy",
        "schedulerName",
        "securityContext",
        "terminationGracePeriodSeconds",
        # Container
        "imagePullPolicy",
        "resources",
        "terminationMessagePath",
        "terminationMessagePolicy",
        # Ports and volumes
        "protocol",
        "defaultMode",
        # Service
        "clusterIP",
        "clusterIPs",
        "internalTrafficPolicy",
        "ipFamilies",
        "ipFamilyPolicy",
        "sessionAffinity",
        "type",
    }
)


@dataclass
class KindResult:
    """Outcome of reconciling one child kind"""

    kind: ResourceKind
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    error: KindReconcileError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)


@dataclass
class ReconcileReport:
    """Per-kind outcomes of one reconciliation pass"""

    instance: str
    results: dict[ResourceKind, KindResult] = field(default_factory=dict)

    @property
    def errors(self) -> list[KindReconcileError]:
        return [r.error for r in self.results.values() if r.error is not None]

    @property
    def changed(self) -> bool:
        return any(r.changed for r in self.results.values())

    def summary(self) -> dict[str, Any]:
        return {
            kind.value: {
                "created": len(result.created),
                "updated": len(result.updated),
                "deleted": len(result.deleted),
                "unchanged": len(result.unchanged),
                "error": str(result.error) if result.error else None,
            }
            for kind, result in self.results.items()
        }


@contextmanager
def _step(kind: ResourceKind, operation: str) -> Iterator[None]:
    """Wrap any failure inside the block with the kind and operation"""
    try:
        yield
    except KindReconcileError:
        raise
    except Exception as e:
        raise KindReconcileError(kind, operation, e) from e


def _is_empty(value: Any) -> bool:
    return value is None or value == {} or value == []


def digest(value: Any) -> str:
    """Stable SHA-256 of a JSON-compatible value"""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


def stamp(desired: DesiredObject) -> DesiredObject:
    """Record the digest of the desired payload in an annotation on a copy of `desired`."""
    manifest = copy.deepcopy(desired.manifest)
    payload = {name: manifest.get(name) for name in desired.kind.payload_fields}
    annotations = manifest.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[ANNOTATION_APPLIED_HASH] = digest(payload)
    return DesiredObject(kind=desired.kind, manifest=manifest)


def matches(observed: Any, wanted: Any) -> bool:
    """
    Whether `observed` holds exactly what `wanted` describes.

    Keys missing from `wanted` are tolerated only when empty or listed in
    SERVER_DEFAULTED_FIELDS; any other extra key is drift. Lists must match
    element by element.
    """
    if isinstance(wanted, dict):
        if not isinstance(observed, dict):
            return _is_empty(wanted) and _is_empty(observed)
        for key, value in wanted.items():
            if key in observed:
                if not matches(observed[key], value):
                    return False
            elif not _is_empty(value):
                return False
        return all(
            key in wanted or key in SERVER_DEFAULTED_FIELDS or _is_empty(value)
            for key, value in observed.items()
        )
    if isinstance(wanted, list):
        if _is_empty(wanted):
            return _is_empty(observed)
        if not isinstance(observed, list) or len(observed) != len(wanted):
            return False
        return all(matches(o, w) for o, w in zip(observed, wanted, strict=True))
    return bool(observed == wanted)


def merge(existing: dict[str, Any], desired: DesiredObject) -> dict[str, Any]:
    """
    Overlay a desired object on the observed one.

    Store metadata (version, uid, ...) is kept, payload fields are replaced,
    labels and annotations are unioned with desired values winning, and the
    controller owner reference is re-applied.
    """
    merged = copy.deepcopy(existing)
    metadata = merged.setdefault("metadata", {})
    desired_metadata = desired.metadata

    metadata["labels"] = {**(metadata.get("labels") or {}), **desired.labels}
    metadata["annotations"] = {**(metadata.get("annotations") or {}), **desired.annotations}

    references = [
        ref for ref in metadata.get("ownerReferences") or [] if not ref.get("controller")
    ]
    references.extend(copy.deepcopy(desired_metadata.get("ownerReferences") or []))
    metadata["ownerReferences"] = references

    for payload_field in desired.kind.payload_fields:
        previous = merged.get(payload_field)
        merged[payload_field] = copy.deepcopy(desired.manifest.get(payload_field))

        preserved = SERVER_MANAGED_FIELDS.get(desired.kind, ())
        if preserved and isinstance(previous, dict) and isinstance(merged[payload_field], dict):
            for server_field in preserved:
                if server_field in previous and server_field not in merged[payload_field]:
                    merged[payload_field][server_field] = previous[server_field]

    return merged


def differs(existing: dict[str, Any], merged: dict[str, Any], kind: ResourceKind) -> bool:
    """Whether writing `merged` would observably change `existing`"""
    existing_metadata = existing.get("metadata") or {}
    merged_metadata = merged.get("metadata") or {}
    for key in ("labels", "annotations", "ownerReferences"):
        if (existing_metadata.get(key) or None) != (merged_metadata.get(key) or None):
            return True

    if kind is ResourceKind.CONFIG_MAP:
        return (existing.get("data") or {}) != (merged.get("data") or {})

    return not all(
        matches(existing.get(payload_field), merged.get(payload_field))
        for payload_field in kind.payload_fields
    )


class Reconciler:
    """Drives the children of collector instances towards their desired state"""

    def __init__(self, store: ResourceStore, config: OperatorConfig) -> None:
        self.store = store
        self.config = config

    def reconcile(self, ref: InstanceRef, log: Logger | None = None) -> ReconcileReport:
        """
        Run one reconciliation pass for a collector.

        Raises:
            SpecValidationError: If the collector specification is malformed
            ReconcilePassError: If one or more child kinds failed
            StoreError: If the collector itself could not be read
        """
        log = log or logger

        try:
            manifest = self.store.get(ResourceKind.COLLECTOR, ref.namespace, ref.name)
        except NotFoundError:
            # Deleted; the store cascades to the children
            log.info("Collector %s not found, nothing to reconcile", ref)
            return ReconcileReport(instance=str(ref))

        instance = CollectorInstance.from_manifest(manifest)
        return self.reconcile_instance(instance, log)

    def reconcile_instance(
        self, instance: CollectorInstance, log: Logger | None = None
    ) -> ReconcileReport:
        """Reconcile every child kind of an already loaded collector."""
        log = log or logger

        # Validation errors surface here, before any child is touched
        desired = builder.build(instance, self.config)

        report = ReconcileReport(instance=str(instance.ref))
        for kind in CHILD_KINDS:
            objects = [obj for obj in desired if obj.kind is kind]
            report.results[kind] = self.reconcile_kind(kind, instance, objects, log)

        if report.errors:
            raise ReconcilePassError(report.errors, report)

        log.info("Collector %s reconciled (changed=%s)", instance.ref, report.changed)
        return report

    def reconcile_kind(
        self,
        kind: ResourceKind,
        instance: CollectorInstance,
        desired: list[DesiredObject],
        log: Logger | None = None,
    ) -> KindResult:
        """Converge one child kind; failures are recorded on the result, not raised."""
        log = log or logger
        result = KindResult(kind=kind)

        if kind is ResourceKind.SERVICE_MONITOR and not self.config.monitoring_available:
            log.debug("ServiceMonitor type is not registered, expecting no service monitors")
            desired = []

        try:
            with _step(kind, "tag"):
                tagged = [
                    stamp(
                        DesiredObject(kind=obj.kind, manifest=ownership.tag(obj.manifest, instance))
                    )
                    for obj in desired
                ]

            for obj in tagged:
                self._apply(obj, instance, result, log)

            self._delete_extra(kind, instance, tagged, result, log)

        except KindReconcileError as e:
            log.error("Failed to reconcile %s for %s: %s", kind.value, instance.ref, e)
            result.error = e

        return result

    def _get_or_none(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return self.store.get(kind, namespace, name)
        except NotFoundError:
            return None

    def _apply(
        self, desired: DesiredObject, instance: CollectorInstance, result: KindResult, log: Logger
    ) -> None:
        kind, namespace, name = desired.kind, desired.namespace, desired.name

        with _step(kind, "get"):
            existing = self._get_or_none(kind, namespace, name)

        if existing is None:
            with _step(kind, "create"):
                try:
                    self.store.create(desired.manifest)
                    result.created.append(name)
                    log.info("Created %s %s/%s", kind.value, namespace, name)
                    return
                except AlreadyExistsError:
                    log.info(
                        "%s %s/%s was created concurrently, updating instead",
                        kind.value,
                        namespace,
                        name,
                    )

            with _step(kind, "get"):
                existing = self._get_or_none(kind, namespace, name)
                if existing is None:
                    raise ConflictError(
                        f"{kind.value} '{namespace}/{name}' vanished after a create conflict",
                        "create",
                        f"{namespace}/{name}",
                    )

        with _step(kind, "update"):
            self._update(desired, existing, instance, result, log)

    def _update(
        self,
        desired: DesiredObject,
        existing: dict[str, Any],
        instance: CollectorInstance,
        result: KindResult,
        log: Logger,
    ) -> None:
        kind, namespace, name = desired.kind, desired.namespace, desired.name

        if not ownership.is_owned_by(existing, instance):
            raise OwnershipError(
                f"{kind.value} '{namespace}/{name}' exists but is not managed by {instance.ref}",
                "update",
                f"{namespace}/{name}",
            )

        merged = merge(existing, desired)
        if not differs(existing, merged, kind):
            result.unchanged.append(name)
            log.debug("%s %s/%s is up to date", kind.value, namespace, name)
            return

        version = (existing.get("metadata") or {}).get("resourceVersion")
        try:
            self.store.update(merged, version)
        except NotFoundError:
            # Gone since we read it; the next pass recreates it
            log.info("%s %s/%s disappeared before update", kind.value, namespace, name)
            result.unchanged.append(name)
            return

        result.updated.append(name)
        log.info("Updated %s %s/%s", kind.value, namespace, name)

    def _delete_extra(
        self,
        kind: ResourceKind,
        instance: CollectorInstance,
        desired: list[DesiredObject],
        result: KindResult,
        log: Logger,
    ) -> None:
        with _step(kind, "list"):
            try:
                existing = self.store.list(
                    kind, instance.namespace, ownership.ownership_selector(instance)
                )
            except NotFoundError:
                # The kind itself is not served by the cluster
                existing = []

        keep = {obj.name for obj in desired}
        for obj in existing:
            name = (obj.get("metadata") or {}).get("name")
            if name in keep:
                continue
            if not ownership.is_owned_by(obj, instance):
                log.debug(
                    "Skipping %s %s/%s, not owned by this collector",
                    kind.value,
                    instance.namespace,
                    name,
                )
                continue

            with _step(kind, "delete"):
                try:
                    self.store.delete(kind, instance.namespace, name)
                except NotFoundError:
                    log.debug("%s %s/%s already deleted", kind.value, instance.namespace, name)
                    continue

            result.deleted.append(name)
            log.info("Deleted %s %s/%s", kind.value, instance.namespace, name)
