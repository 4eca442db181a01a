"""Test configuration and fixtures."""

import os
from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import pytest

from otelcol_operator.config import OperatorConfig
from otelcol_operator.kinds import ResourceKind
from otelcol_operator.models import CollectorInstance, InstanceRef
from otelcol_operator.reconciler import Reconciler
from otelcol_operator.store import InMemoryStore

COLLECTOR_NAME = "my-col"
COLLECTOR_NAMESPACE = "observability"


def collector_manifest(
    name: str = COLLECTOR_NAME,
    namespace: str = COLLECTOR_NAMESPACE,
    spec: dict[str, Any] | None = None,
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Collector manifest as a user would submit it"""
    return {
        "apiVersion": ResourceKind.COLLECTOR.api_version,
        "kind": ResourceKind.COLLECTOR.value,
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "spec": spec if spec is not None else {"config": "receivers:\n  otlp: {}\n"},
    }


@pytest.fixture(autouse=True)
def clean_env() -> Generator[None, None, None]:
    """Keep operator environment variables out of every test."""
    with patch.dict(os.environ, {}, clear=False):
        for key in (
            "OTELCOL_IMAGE",
            "OTELCOL_RESYNC_INTERVAL",
            "OTELCOL_SVC_MONITOR_AVAILABLE",
            "WATCH_NAMESPACE",
        ):
            os.environ.pop(key, None)
        yield


@pytest.fixture
def make_collector() -> Any:
    """Factory for collector manifests."""
    return collector_manifest


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def operator_config() -> OperatorConfig:
    """Configuration of a cluster with the ServiceMonitor type registered."""
    return OperatorConfig(monitoring_available=True)


@pytest.fixture
def reconciler(store: InMemoryStore, operator_config: OperatorConfig) -> Reconciler:
    return Reconciler(store, operator_config)


@pytest.fixture
def ref() -> InstanceRef:
    return InstanceRef(namespace=COLLECTOR_NAMESPACE, name=COLLECTOR_NAME)


@pytest.fixture
def collector(store: InMemoryStore) -> dict[str, Any]:
    """A collector seeded into the store, with its store-assigned uid."""
    return store.create(collector_manifest())


@pytest.fixture
def instance(collector: dict[str, Any]) -> CollectorInstance:
    return CollectorInstance.from_manifest(collector)
