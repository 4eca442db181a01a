"""Tests for the reconciliation engine."""

from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from otelcol_operator import ownership
from otelcol_operator.builder import DesiredObject
from otelcol_operator.config import OperatorConfig
from otelcol_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OwnershipError,
    ReconcilePassError,
    SpecValidationError,
    StoreError,
)
from otelcol_operator.kinds import (
    ANNOTATION_APPLIED_HASH,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    MANAGED_BY,
    ResourceKind,
)
from otelcol_operator.models import CollectorInstance, InstanceRef
from otelcol_operator.reconciler import Reconciler, differs, matches, merge
from otelcol_operator.store import InMemoryStore


def names(store: InMemoryStore, kind: ResourceKind) -> list[str]:
    return [obj["metadata"]["name"] for obj in store.objects(kind)]


def set_spec(store: InMemoryStore, collector: dict[str, Any], **spec: Any) -> None:
    current = store.get(
        ResourceKind.COLLECTOR,
        collector["metadata"]["namespace"],
        collector["metadata"]["name"],
    )
    current["spec"] = {**current.get("spec", {}), **spec}
    store.update(current, current["metadata"]["resourceVersion"])


class TestMatches:
    def test_server_defaulted_keys_ignored(self) -> None:
        assert matches({"a": 1, "imagePullPolicy": "Always"}, {"a": 1}) is True

    def test_extra_keys_are_drift(self) -> None:
        assert matches({"a": 1, "command": ["/bin/sh"]}, {"a": 1}) is False

    def test_extra_empty_keys_ignored(self) -> None:
        assert matches({"a": 1, "env": []}, {"a": 1}) is True

    def test_changed_value(self) -> None:
        assert matches({"a": 1}, {"a": 2}) is False

    def test_missing_key(self) -> None:
        assert matches({}, {"a": 1}) is False

    def test_missing_key_with_empty_value(self) -> None:
        assert matches({}, {"a": {}}) is True

    def test_lists_compared_elementwise(self) -> None:
        observed = [{"name": "x", "protocol": "TCP"}, {"name": "y"}]
        assert matches(observed, [{"name": "x"}, {"name": "y"}]) is True
        assert matches(observed, [{"name": "x"}]) is False


class TestMerge:
    def test_labels_unioned_and_spec_replaced(self) -> None:
        existing = {
            "kind": "Service",
            "metadata": {
                "name": "svc",
                "resourceVersion": "7",
                "labels": {"external": "kept", "shared": "old"},
            },
            "spec": {"clusterIP": "10.0.0.1", "ports": [{"port": 1}], "stale": True},
        }
        desired = DesiredObject(
            kind=ResourceKind.SERVICE,
            manifest={
                "kind": "Service",
                "metadata": {"name": "svc", "labels": {"shared": "new"}},
                "spec": {"ports": [{"port": 2}]},
            },
        )

        merged = merge(existing, desired)

        assert merged["metadata"]["labels"] == {"external": "kept", "shared": "new"}
        assert merged["metadata"]["resourceVersion"] == "7"
        assert merged["spec"] == {"ports": [{"port": 2}], "clusterIP": "10.0.0.1"}
        assert existing["spec"]["stale"] is True

    def test_unchanged_object_does_not_differ(self) -> None:
        manifest = {"kind": "ConfigMap", "metadata": {"name": "cm"}, "data": {"k": "v"}}
        desired = DesiredObject(kind=ResourceKind.CONFIG_MAP, manifest=manifest)
        existing = {**manifest, "metadata": {"name": "cm", "resourceVersion": "3"}}

        assert differs(existing, merge(existing, desired), ResourceKind.CONFIG_MAP) is False


class TestReconcile:
    """End-to-end passes against the in-memory store."""

    def test_creates_children(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        report = reconciler.reconcile(ref)

        assert report.changed is True
        assert names(store, ResourceKind.CONFIG_MAP) == ["my-col-collector"]
        assert names(store, ResourceKind.SERVICE) == [
            "my-col-collector",
            "my-col-collector-monitoring",
        ]
        assert names(store, ResourceKind.DEPLOYMENT) == ["my-col-collector"]
        assert names(store, ResourceKind.DAEMON_SET) == []
        assert names(store, ResourceKind.SERVICE_MONITOR) == ["my-col-collector"]

    def test_children_are_owned(
        self,
        reconciler: Reconciler,
        store: InMemoryStore,
        ref: InstanceRef,
        instance: CollectorInstance,
    ) -> None:
        reconciler.reconcile(ref)

        deployment = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        assert ownership.is_owned_by(deployment, instance)
        assert deployment["metadata"]["ownerReferences"][0]["uid"] == instance.uid

    def test_second_pass_is_a_no_op(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        writes = len(store.operations)

        report = reconciler.reconcile(ref)

        assert report.changed is False
        assert len(store.operations) == writes
        assert all(r.ok for r in report.results.values())

    def test_missing_collector(self, reconciler: Reconciler, store: InMemoryStore) -> None:
        report = reconciler.reconcile(InstanceRef(namespace="observability", name="gone"))

        assert report.results == {}
        assert store.operations == []

    def test_mode_switch_replaces_workload(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        set_spec(store, collector, mode="daemonset")

        report = reconciler.reconcile(ref)

        assert names(store, ResourceKind.DEPLOYMENT) == []
        assert names(store, ResourceKind.DAEMON_SET) == ["my-col-collector"]
        assert report.results[ResourceKind.DEPLOYMENT].deleted == ["my-col-collector"]
        assert report.results[ResourceKind.DAEMON_SET].created == ["my-col-collector"]

    def test_spec_change_updates_child(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        set_spec(store, collector, replicas=3)

        report = reconciler.reconcile(ref)

        deployment = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        assert deployment["spec"]["replicas"] == 3
        assert report.results[ResourceKind.DEPLOYMENT].updated == ["my-col-collector"]
        assert report.results[ResourceKind.CONFIG_MAP].unchanged == ["my-col-collector"]

    def test_manual_drift_is_reverted(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        config_map = store.get(ResourceKind.CONFIG_MAP, "observability", "my-col-collector")
        original = config_map["data"]
        config_map["data"] = {"collector.yaml": "tampered"}
        store.update(config_map, config_map["metadata"]["resourceVersion"])

        reconciler.reconcile(ref)

        restored = store.get(ResourceKind.CONFIG_MAP, "observability", "my-col-collector")
        assert restored["data"] == original

    def test_extra_config_map_key_is_removed(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        config_map = store.get(ResourceKind.CONFIG_MAP, "observability", "my-col-collector")
        original = dict(config_map["data"])
        config_map["data"]["injected.yaml"] = "exporters: {}"
        store.update(config_map, config_map["metadata"]["resourceVersion"])

        report = reconciler.reconcile(ref)

        restored = store.get(ResourceKind.CONFIG_MAP, "observability", "my-col-collector")
        assert restored["data"] == original
        assert report.results[ResourceKind.CONFIG_MAP].updated == ["my-col-collector"]

    def test_extra_container_field_is_removed(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        deployment = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        deployment["spec"]["template"]["spec"]["containers"][0]["command"] = ["/bin/sh"]
        deployment["spec"]["template"]["spec"]["nodeSelector"] = {"disk": "ssd"}
        store.update(deployment, deployment["metadata"]["resourceVersion"])

        report = reconciler.reconcile(ref)

        restored = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        pod_spec = restored["spec"]["template"]["spec"]
        assert "command" not in pod_spec["containers"][0]
        assert "nodeSelector" not in pod_spec
        assert report.results[ResourceKind.DEPLOYMENT].updated == ["my-col-collector"]

    def test_server_defaults_are_not_drift(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        deployment = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        deployment["spec"]["revisionHistoryLimit"] = 10
        deployment["spec"]["strategy"] = {"type": "RollingUpdate"}
        pod_spec = deployment["spec"]["template"]["spec"]
        pod_spec["dnsPolicy"] = "ClusterFirst"
        pod_spec["restartPolicy"] = "Always"
        pod_spec["containers"][0]["imagePullPolicy"] = "IfNotPresent"
        pod_spec["containers"][0]["terminationMessagePath"] = "/dev/termination-log"
        pod_spec["volumes"][0]["configMap"]["defaultMode"] = 420
        store.update(deployment, deployment["metadata"]["resourceVersion"])
        writes = len(store.operations)

        report = reconciler.reconcile(ref)

        assert len(store.operations) == writes
        assert report.results[ResourceKind.DEPLOYMENT].unchanged == ["my-col-collector"]

    def test_applied_hash_tracks_payload(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        before = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        set_spec(store, collector, replicas=2)

        reconciler.reconcile(ref)

        after = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        before_hash = before["metadata"]["annotations"][ANNOTATION_APPLIED_HASH]
        assert after["metadata"]["annotations"][ANNOTATION_APPLIED_HASH] != before_hash
        assert len(before_hash) == 64

    def test_deleted_child_is_recreated(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        store.delete(ResourceKind.SERVICE, "observability", "my-col-collector-monitoring")

        report = reconciler.reconcile(ref)

        assert report.results[ResourceKind.SERVICE].created == ["my-col-collector-monitoring"]

    def test_extra_owned_object_is_deleted(
        self,
        reconciler: Reconciler,
        store: InMemoryStore,
        ref: InstanceRef,
        instance: CollectorInstance,
    ) -> None:
        reconciler.reconcile(ref)
        extra = ownership.tag(
            {
                "apiVersion": "v1",
                "kind": "Service",
                "metadata": {
                    "name": "leftover",
                    "namespace": "observability",
                    "labels": ownership.ownership_selector(instance),
                },
                "spec": {},
            },
            instance,
        )
        store.create(extra)

        report = reconciler.reconcile(ref)

        assert report.results[ResourceKind.SERVICE].deleted == ["leftover"]
        assert "leftover" not in names(store, ResourceKind.SERVICE)

    def test_unowned_objects_are_left_alone(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        # Carries the markers but no controller reference
        store.create(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": "hand-made",
                    "namespace": "observability",
                    "labels": {
                        LABEL_INSTANCE: "observability.my-col",
                        LABEL_MANAGED_BY: MANAGED_BY,
                    },
                },
                "data": {},
            }
        )

        reconciler.reconcile(ref)

        assert "hand-made" in names(store, ResourceKind.CONFIG_MAP)

    def test_other_instance_children_untouched(
        self,
        reconciler: Reconciler,
        store: InMemoryStore,
        ref: InstanceRef,
        collector: Any,
        make_collector: Any,
    ) -> None:
        store.create(make_collector(name="other"))
        reconciler.reconcile(InstanceRef(namespace="observability", name="other"))
        writes = len(store.operations)

        reconciler.reconcile(ref)

        assert "other-collector" in names(store, ResourceKind.DEPLOYMENT)
        assert not any(
            op == "delete" for op, _, _ in store.operations[writes:]
        )

    def test_foreign_object_at_derived_name(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        store.create(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "my-col-collector", "namespace": "observability"},
                "data": {"collector.yaml": "foreign"},
            }
        )

        with pytest.raises(ReconcilePassError) as exc_info:
            reconciler.reconcile(ref)

        error = exc_info.value
        assert error.retryable is False
        assert error.first.kind is ResourceKind.CONFIG_MAP
        assert isinstance(error.first.cause, OwnershipError)
        # Other kinds still converge
        assert names(store, ResourceKind.DEPLOYMENT) == ["my-col-collector"]
        untouched = store.get(ResourceKind.CONFIG_MAP, "observability", "my-col-collector")
        assert untouched["data"] == {"collector.yaml": "foreign"}

    def test_external_labels_are_retained(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        deployment = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        deployment["metadata"]["labels"]["added-by"] = "someone"
        store.update(deployment, deployment["metadata"]["resourceVersion"])
        writes = len(store.operations)

        reconciler.reconcile(ref)

        kept = store.get(ResourceKind.DEPLOYMENT, "observability", "my-col-collector")
        assert kept["metadata"]["labels"]["added-by"] == "someone"
        assert len(store.operations) == writes

    def test_service_cluster_ip_is_preserved(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        service = store.get(ResourceKind.SERVICE, "observability", "my-col-collector")
        service["spec"]["clusterIP"] = "10.96.0.10"
        store.update(service, service["metadata"]["resourceVersion"])
        set_spec(store, collector, ports=[{"name": "otlp-grpc", "port": 4317}])

        reconciler.reconcile(ref)

        updated = store.get(ResourceKind.SERVICE, "observability", "my-col-collector")
        assert updated["spec"]["clusterIP"] == "10.96.0.10"
        assert len(updated["spec"]["ports"]) == 1

    def test_invalid_spec_touches_nothing(
        self, reconciler: Reconciler, store: InMemoryStore, make_collector: Any
    ) -> None:
        store.create(make_collector(name="broken", spec={"mode": "sidecar"}))
        writes = len(store.operations)

        with pytest.raises(SpecValidationError):
            reconciler.reconcile(InstanceRef(namespace="observability", name="broken"))

        assert len(store.operations) == writes


class TestServiceMonitorGating:
    def test_not_created_when_unavailable(
        self, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler = Reconciler(store, OperatorConfig(monitoring_available=False))

        report = reconciler.reconcile(ref)

        assert names(store, ResourceKind.SERVICE_MONITOR) == []
        assert report.results[ResourceKind.SERVICE_MONITOR].ok

    def test_existing_removed_when_unavailable(
        self, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        Reconciler(store, OperatorConfig(monitoring_available=True)).reconcile(ref)
        assert names(store, ResourceKind.SERVICE_MONITOR) == ["my-col-collector"]

        report = Reconciler(store, OperatorConfig(monitoring_available=False)).reconcile(ref)

        assert names(store, ResourceKind.SERVICE_MONITOR) == []
        assert report.results[ResourceKind.SERVICE_MONITOR].deleted == ["my-col-collector"]

    def test_kind_not_served(self, store: InMemoryStore, ref: InstanceRef, collector: Any) -> None:
        """Listing a kind the cluster does not serve counts as empty."""
        reconciler = Reconciler(store, OperatorConfig(monitoring_available=False))
        original_list = store.list

        def list_without_monitors(kind: ResourceKind, *args: Any) -> list[dict[str, Any]]:
            if kind is ResourceKind.SERVICE_MONITOR:
                raise NotFoundError("servicemonitors not served", "list")
            return original_list(kind, *args)

        with patch.object(store, "list", side_effect=list_without_monitors):
            report = reconciler.reconcile(ref)

        assert report.results[ResourceKind.SERVICE_MONITOR].ok


class TestStoreFailures:
    """Failures reported by the store."""

    def test_create_race_falls_back_to_update(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        original_get = store.get
        hidden = {"done": False}

        # First lookup misses, as if a concurrent writer created it right after
        def racing_get(kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
            if kind is ResourceKind.CONFIG_MAP and not hidden["done"]:
                hidden["done"] = True
                raise NotFoundError("not yet", "get")
            return original_get(kind, namespace, name)

        reconciler.reconcile(ref)
        with patch.object(store, "get", side_effect=racing_get):
            report = reconciler.reconcile(ref)

        assert report.results[ResourceKind.CONFIG_MAP].ok
        assert report.results[ResourceKind.CONFIG_MAP].unchanged == ["my-col-collector"]

    def test_conflict_is_retryable(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        set_spec(store, collector, replicas=5)

        with patch.object(
            store, "update", side_effect=ConflictError("version moved", "update")
        ):
            with pytest.raises(ReconcilePassError) as exc_info:
                reconciler.reconcile(ref)

        assert exc_info.value.retryable is True
        assert exc_info.value.first.kind is ResourceKind.DEPLOYMENT
        assert exc_info.value.first.operation == "update"

    def test_vanished_before_update_is_unchanged(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        reconciler.reconcile(ref)
        set_spec(store, collector, replicas=3)

        with patch.object(store, "update", side_effect=NotFoundError("gone", "update")):
            report = reconciler.reconcile(ref)

        result = report.results[ResourceKind.DEPLOYMENT]
        assert result.ok
        assert result.updated == []
        assert result.unchanged == ["my-col-collector"]

    def test_vanished_before_delete_is_skipped(
        self,
        reconciler: Reconciler,
        store: InMemoryStore,
        ref: InstanceRef,
        instance: CollectorInstance,
    ) -> None:
        reconciler.reconcile(ref)
        store.create(
            ownership.tag(
                {
                    "apiVersion": "v1",
                    "kind": "Service",
                    "metadata": {
                        "name": "leftover",
                        "namespace": "observability",
                        "labels": ownership.ownership_selector(instance),
                    },
                    "spec": {},
                },
                instance,
            )
        )

        with patch.object(store, "delete", side_effect=NotFoundError("gone", "delete")):
            report = reconciler.reconcile(ref)

        result = report.results[ResourceKind.SERVICE]
        assert result.ok
        assert result.deleted == []

    def test_failing_kind_does_not_block_others(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        original_create = store.create

        def failing_create(manifest: dict[str, Any]) -> dict[str, Any]:
            if manifest["kind"] == "Service":
                raise StoreError("server unavailable", "create", retryable=True)
            return original_create(manifest)

        with patch.object(store, "create", side_effect=failing_create):
            with pytest.raises(ReconcilePassError) as exc_info:
                reconciler.reconcile(ref)

        report = exc_info.value.report
        assert not report.results[ResourceKind.SERVICE].ok
        assert report.results[ResourceKind.DEPLOYMENT].created == ["my-col-collector"]
        assert names(store, ResourceKind.SERVICE_MONITOR) == ["my-col-collector"]

        # The next pass completes what the failed one left behind
        assert reconciler.reconcile(ref).results[ResourceKind.SERVICE].created == [
            "my-col-collector",
            "my-col-collector-monitoring",
        ]

    def test_mixed_failures_are_not_retryable(
        self, reconciler: Reconciler, store: InMemoryStore, ref: InstanceRef, collector: Any
    ) -> None:
        original_create = store.create

        def failing_create(manifest: dict[str, Any]) -> dict[str, Any]:
            if manifest["kind"] == "Service":
                raise StoreError("server unavailable", "create", retryable=True)
            if manifest["kind"] == "ConfigMap":
                raise StoreError("forbidden", "create", retryable=False)
            return original_create(manifest)

        with patch.object(store, "create", side_effect=failing_create):
            with pytest.raises(ReconcilePassError) as exc_info:
                reconciler.reconcile(ref)

        assert len(exc_info.value.errors) == 2
        assert exc_info.value.retryable is False

    def test_vanished_after_create_conflict(
        self, reconciler: Reconciler, instance: CollectorInstance
    ) -> None:
        mock_store = MagicMock()
        mock_store.get.side_effect = NotFoundError("missing", "get")
        mock_store.create.side_effect = AlreadyExistsError("exists", "create")
        mock_store.list.return_value = []
        reconciler.store = mock_store

        result = reconciler.reconcile_kind(
            ResourceKind.CONFIG_MAP,
            instance,
            [
                DesiredObject(
                    kind=ResourceKind.CONFIG_MAP,
                    manifest={
                        "apiVersion": "v1",
                        "kind": "ConfigMap",
                        "metadata": {"name": "my-col-collector", "namespace": "observability"},
                        "data": {},
                    },
                )
            ],
        )

        assert result.error is not None
        assert isinstance(result.error.cause, ConflictError)
        assert result.error.retryable is True
