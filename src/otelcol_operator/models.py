"""
Data models for the OpenTelemetry Collector operator
"""

from enum import Enum
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from otelcol_operator.exceptions import SpecValidationError
from otelcol_operator.kinds import MONITORING_PORT, MONITORING_PORT_NAME, ResourceKind


class CollectorMode(str, Enum):
    """How the collector workload is run"""

    DEPLOYMENT = "deployment"
    DAEMONSET = "daemonset"


class ServicePortSpec(BaseModel):
    """Port exposed by the collector Service"""

    name: str = Field(..., description="Port name", pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    port: int = Field(..., description="Service port", ge=1, le=65535)
    protocol: str = Field(default="TCP", description="Port protocol")
    targetPort: int | str | None = Field(
        default=None, description="Container port, defaults to the service port"
    )


class CollectorSpec(BaseModel):
    """OpenTelemetryCollector specification"""

    model_config = ConfigDict(extra="ignore")

    mode: CollectorMode = Field(default=CollectorMode.DEPLOYMENT, description="Deployment mode")
    image: str | None = Field(default=None, description="Container image override")
    args: dict[str, str] = Field(
        default_factory=dict, description="Command-line argument overrides"
    )
    replicas: int | None = Field(
        default=None, description="Replica count in deployment mode", ge=0
    )
    ports: list[ServicePortSpec] | None = Field(
        default=None, description="Ports exposed by the collector Service"
    )
    config: str | None = Field(default=None, description="Raw collector configuration (YAML)")

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("args", mode="before")
    @classmethod
    def _stringify_args(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("config")
    @classmethod
    def _config_is_yaml(cls, value: str | None) -> str | None:
        if value:
            try:
                yaml.safe_load(value)
            except yaml.YAMLError as e:
                raise ValueError(f"config is not valid YAML: {e}") from e
        return value

    @model_validator(mode="after")
    def _ports_do_not_collide(self) -> "CollectorSpec":
        """The metrics port is always added to the pod; user ports must stay clear of it."""
        seen: set[str] = set()
        for port in self.ports or []:
            if port.name == MONITORING_PORT_NAME:
                raise ValueError(f"port name '{MONITORING_PORT_NAME}' is reserved")
            if MONITORING_PORT in (port.port, port.targetPort):
                raise ValueError(f"port {MONITORING_PORT} is reserved")
            if port.name in seen:
                raise ValueError(f"duplicate port name '{port.name}'")
            seen.add(port.name)
        return self


class InstanceRef(BaseModel):
    """Reference to one collector instance"""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class CollectorInstance(BaseModel):
    """A collector resource as read from the store"""

    apiVersion: str = Field(default=ResourceKind.COLLECTOR.api_version)
    kind: str = Field(default=ResourceKind.COLLECTOR.value)
    name: str = Field(..., min_length=1)
    namespace: str = Field(..., min_length=1)
    uid: str | None = Field(default=None, description="Store-assigned unique ID")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    spec: CollectorSpec = Field(default_factory=CollectorSpec)

    @property
    def ref(self) -> InstanceRef:
        return InstanceRef(namespace=self.namespace, name=self.name)

    @property
    def instance_label(self) -> str:
        return f"{self.namespace}.{self.name}"

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> "CollectorInstance":
        """Parse a collector manifest, raising SpecValidationError when malformed."""
        metadata = manifest.get("metadata") or {}
        resource = f"{metadata.get('namespace')}/{metadata.get('name')}"
        try:
            return cls(
                apiVersion=manifest.get("apiVersion") or ResourceKind.COLLECTOR.api_version,
                kind=manifest.get("kind") or ResourceKind.COLLECTOR.value,
                name=metadata.get("name"),
                namespace=metadata.get("namespace"),
                uid=metadata.get("uid"),
                labels=metadata.get("labels") or {},
                annotations=metadata.get("annotations") or {},
                spec=manifest.get("spec") or {},
            )
        except ValidationError as e:
            raise SpecValidationError(
                f"invalid collector specification {resource}: {e}", resource
            ) from e

    def to_owner_body(self) -> dict[str, Any]:
        """Minimal body accepted by kopf's owner-reference helpers."""
        return {
            "apiVersion": self.apiVersion,
            "kind": self.kind,
            "metadata": {"name": self.name, "namespace": self.namespace, "uid": self.uid},
        }
