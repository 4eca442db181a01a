"""
Process-wide operator configuration
"""

import logging
import os

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class OperatorConfig(BaseModel):
    """Override configuration, loaded once at startup and passed to each pass"""

    model_config = ConfigDict(frozen=True)

    default_image_override: str | None = Field(
        default=None, description="Collector image used when a collector sets none"
    )
    monitoring_available: bool = Field(
        default=False, description="Whether the ServiceMonitor type is registered"
    )
    resync_interval: float = Field(default=60.0, description="Periodic resync in seconds", gt=0)
    operator_namespace: str | None = Field(
        default=None, description="Only watch this namespace; cluster-wide when unset"
    )


def _parse_bool(value: str) -> bool | None:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


DEFAULT_RESYNC_INTERVAL = 60.0


def resync_interval_from_env() -> float:
    """Periodic resync interval from OTELCOL_RESYNC_INTERVAL, in seconds"""
    value = os.getenv("OTELCOL_RESYNC_INTERVAL", "")
    if not value:
        return DEFAULT_RESYNC_INTERVAL
    try:
        interval = float(value)
    except ValueError:
        interval = 0.0
    if interval <= 0:
        logger.warning("Ignoring invalid OTELCOL_RESYNC_INTERVAL value: %s", value)
        return DEFAULT_RESYNC_INTERVAL
    return interval


def load_config(monitoring_available: bool = False) -> OperatorConfig:
    """
    Load operator configuration from the environment.

    Args:
        monitoring_available: Result of the startup capability probe; the
            OTELCOL_SVC_MONITOR_AVAILABLE variable overrides it when set.
    """
    forced = os.getenv("OTELCOL_SVC_MONITOR_AVAILABLE", "")
    if forced:
        parsed = _parse_bool(forced)
        if parsed is None:
            logger.warning("Ignoring invalid OTELCOL_SVC_MONITOR_AVAILABLE value: %s", forced)
        else:
            monitoring_available = parsed

    config = OperatorConfig(
        default_image_override=os.getenv("OTELCOL_IMAGE") or None,
        monitoring_available=monitoring_available,
        resync_interval=resync_interval_from_env(),
        operator_namespace=os.getenv("WATCH_NAMESPACE") or None,
    )
    logger.info(
        "Loaded operator config: image override=%s, service monitors=%s, resync=%ss",
        config.default_image_override,
        config.monitoring_available,
        config.resync_interval,
    )
    return config
