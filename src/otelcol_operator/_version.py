"""Version information for otelcol-operator."""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("otelcol-operator")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.1.0+dev"

# Collector release the operator was built against
COLLECTOR_VERSION = "0.2.0"

COLLECTOR_IMAGE_REPOSITORY = "quay.io/opentelemetry/opentelemetry-collector"


def default_collector_image() -> str:
    """Compiled-in collector image used when nothing overrides it."""
    return f"{COLLECTOR_IMAGE_REPOSITORY}:{COLLECTOR_VERSION}"
