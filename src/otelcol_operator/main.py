#!/usr/bin/env python3
"""
OpenTelemetry Collector Operator for Kubernetes
"""

import logging
import os
import threading
from datetime import UTC, datetime
from typing import Any

import kopf
from kubernetes import client, config

from otelcol_operator import probe
from otelcol_operator._version import __version__
from otelcol_operator.config import OperatorConfig, load_config, resync_interval_from_env
from otelcol_operator.exceptions import (
    OperatorError,
    ReconcilePassError,
    SpecValidationError,
    StoreError,
)
from otelcol_operator.kinds import (
    API_GROUP,
    API_VERSION,
    COLLECTOR_PLURAL,
    LABEL_MANAGED_BY,
    MANAGED_BY,
    ResourceKind,
)
from otelcol_operator.kube_store import KubernetesStore
from otelcol_operator.models import InstanceRef
from otelcol_operator.reconciler import Reconciler, ReconcileReport, digest

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RETRY_DELAY = 30

# Initialized by the startup handler
reconciler: Reconciler | None = None
operator_config: OperatorConfig | None = None

# Child event handlers run outside kopf's per-collector serialization
_pass_locks: dict[InstanceRef, threading.Lock] = {}
_pass_locks_guard = threading.Lock()

# Fingerprint of the last seen non-status content of each child, by uid
_child_fingerprints: dict[str, str] = {}


def _initialize_kubernetes_clients() -> client.ApiClient:
    """Load Kubernetes config and return a shared API client."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")

    return client.ApiClient()


def _condition(status: str, reason: str, message: str) -> dict[str, Any]:
    return {
        "type": "Ready",
        "status": status,
        "lastTransitionTime": datetime.now(UTC).isoformat(),
        "reason": reason,
        "message": message,
    }


def _ready_status(name: str, report: ReconcileReport) -> dict[str, Any]:
    return {
        "phase": "Running",
        "children": report.summary(),
        "conditions": [
            _condition("True", "Reconciled", f"Collector {name} reconciled successfully")
        ],
    }


def _failed_status(reason: str, error: OperatorError) -> dict[str, Any]:
    return {
        "phase": "Failed",
        "conditions": [_condition("False", reason, error.message)],
    }


def pass_lock(ref: InstanceRef) -> threading.Lock:
    """Lock serializing reconciliation passes of one collector"""
    with _pass_locks_guard:
        return _pass_locks.setdefault(ref, threading.Lock())


def reconcile_collector(name: str, namespace: str, logger: Any) -> dict[str, Any]:
    """
    Run one reconciliation pass and translate the outcome for kopf.

    Retryable failures raise kopf.TemporaryError so kopf re-invokes the
    handler later; permanent ones are reported in the returned status.
    """
    if reconciler is None:
        raise kopf.TemporaryError("Operator is not initialized yet", delay=5)

    ref = InstanceRef(namespace=namespace, name=name)
    try:
        with pass_lock(ref):
            report = reconciler.reconcile(ref, log=logger)

    except SpecValidationError as e:
        logger.error(f"Invalid collector specification {ref}: {e.message}")
        return _failed_status("InvalidSpec", e)

    except ReconcilePassError as e:
        for error in e.errors:
            logger.warning(f"{error.kind.value} failed during {error.operation}: {error.cause}")
        if e.retryable:
            raise kopf.TemporaryError(e.message, delay=RETRY_DELAY) from e
        return _failed_status("ReconcileFailed", e)

    except StoreError as e:
        if e.retryable:
            raise kopf.TemporaryError(e.message, delay=RETRY_DELAY) from e
        logger.error(f"Failed to read collector {ref}: {e.message}")
        return _failed_status("ReadFailed", e)

    return _ready_status(name, report)


@kopf.on.startup()
async def startup_handler(settings: kopf.OperatorSettings, **_kwargs: Any) -> None:
    """Probe cluster capabilities and build the reconciler."""
    global reconciler, operator_config

    logger.info("Starting OpenTelemetry Collector Operator %s", __version__)

    # Handlers run in threads; keep the pool small, passes are short
    settings.execution.max_workers = 4
    settings.posting.level = logging.WARNING

    api_client = _initialize_kubernetes_clients()
    operator_config = load_config(monitoring_available=probe.monitoring_available(api_client))
    reconciler = Reconciler(KubernetesStore(api_client), operator_config)


@kopf.on.create(API_GROUP, API_VERSION, COLLECTOR_PLURAL)
@kopf.on.update(API_GROUP, API_VERSION, COLLECTOR_PLURAL)
@kopf.on.resume(API_GROUP, API_VERSION, COLLECTOR_PLURAL)
def collector_changed(name, namespace, logger, **_kwargs):  # type: ignore
    """Handle collector creation, updates and operator restarts"""
    logger.info(f"Reconciling OpenTelemetryCollector: {name} in namespace: {namespace}")
    return reconcile_collector(name, namespace, logger)


@kopf.timer(API_GROUP, API_VERSION, COLLECTOR_PLURAL, interval=resync_interval_from_env())
def collector_resync(name, namespace, logger, **_kwargs):  # type: ignore
    """Periodic resync, catches drift that produced no watch event"""
    return reconcile_collector(name, namespace, logger)


@kopf.on.delete(API_GROUP, API_VERSION, COLLECTOR_PLURAL, optional=True)
def collector_deleted(name, namespace, logger, **_kwargs):  # type: ignore
    """Children are removed by the API server through their owner references"""
    logger.info(
        f"OpenTelemetryCollector {namespace}/{name} deleted, children will be garbage-collected"
    )


def owning_collector(body: Any) -> str | None:
    """Name of the collector that controls a child object, if any"""
    for ref in body.get("metadata", {}).get("ownerReferences") or []:
        if (
            ref.get("controller")
            and ref.get("kind") == ResourceKind.COLLECTOR.value
            and ref.get("apiVersion", "").split("/")[0] == API_GROUP
        ):
            return str(ref.get("name"))
    return None


def child_fingerprint(body: Any) -> str:
    """Digest of everything in a child except its status and bookkeeping metadata"""
    metadata = body.get("metadata", {})
    content = {key: value for key, value in body.items() if key not in ("metadata", "status")}
    content["metadata"] = {
        key: metadata.get(key) for key in ("labels", "annotations", "ownerReferences")
    }
    return digest(content)


@kopf.on.event("apps", "v1", "deployments", labels={LABEL_MANAGED_BY: MANAGED_BY})
@kopf.on.event("apps", "v1", "daemonsets", labels={LABEL_MANAGED_BY: MANAGED_BY})
@kopf.on.event("", "v1", "services", labels={LABEL_MANAGED_BY: MANAGED_BY})
@kopf.on.event("", "v1", "configmaps", labels={LABEL_MANAGED_BY: MANAGED_BY})
def child_changed(event, body, namespace, logger, **_kwargs):  # type: ignore
    """Re-reconcile the owning collector when one of its children drifts or disappears"""
    uid = body.get("metadata", {}).get("uid")
    if event.get("type") == "DELETED":
        _child_fingerprints.pop(uid, None)
    else:
        fingerprint = child_fingerprint(body)
        previous = _child_fingerprints.get(uid)
        _child_fingerprints[uid] = fingerprint
        # Initial listing and ADDED only record; status-only updates are not drift
        if event.get("type") != "MODIFIED" or previous == fingerprint:
            return

    owner = owning_collector(body)
    if owner is None:
        return

    logger.debug(f"Child changed ({event['type']}), reconciling collector {namespace}/{owner}")
    try:
        reconcile_collector(owner, namespace, logger)
    except kopf.TemporaryError as e:
        # The collector's own handlers and the resync timer retry
        logger.warning(f"Drift reconciliation for {namespace}/{owner} failed: {e}")


def main() -> None:
    """Main entry point for the operator."""

    logger.info("Starting OpenTelemetry Collector Operator...")
    namespace = os.getenv("WATCH_NAMESPACE")
    if namespace:
        logger.info("Watching namespace %s", namespace)

    # Run with health endpoints enabled
    kopf.run(
        clusterwide=not namespace,
        namespaces=[namespace] if namespace else (),
        # Enable built-in health endpoints
        liveness_endpoint="http://0.0.0.0:8080/healthz",
    )


if __name__ == "__main__":
    main()
