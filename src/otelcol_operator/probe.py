"""
Startup probes for optional cluster capabilities
"""

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from otelcol_operator.kinds import MONITORING_GROUP, MONITORING_VERSION, SERVICE_MONITOR_PLURAL

logger = logging.getLogger(__name__)


def monitoring_available(api_client: client.ApiClient | None = None) -> bool:
    """
    Check whether the cluster serves the ServiceMonitor type.

    Looks up the monitoring.coreos.com group through API discovery and then
    the resources of its v1 version. Any failure counts as unavailable.
    """
    api_client = api_client or client.ApiClient()

    try:
        groups = client.ApisApi(api_client).get_api_versions()
    except (ApiException, HTTPError) as e:
        logger.warning("Could not list API groups, assuming no ServiceMonitor support: %s", e)
        return False

    group = next((g for g in groups.groups or [] if g.name == MONITORING_GROUP), None)
    if group is None:
        logger.info("API group %s is not registered", MONITORING_GROUP)
        return False

    versions = {v.version for v in group.versions or []}
    if MONITORING_VERSION not in versions:
        logger.info("API group %s does not serve %s", MONITORING_GROUP, MONITORING_VERSION)
        return False

    try:
        resources = client.CustomObjectsApi(api_client).get_api_resources(
            MONITORING_GROUP, MONITORING_VERSION
        )
    except (ApiException, HTTPError) as e:
        logger.warning("Could not list %s resources: %s", MONITORING_GROUP, e)
        return False

    available = any(r.name == SERVICE_MONITOR_PLURAL for r in resources.resources or [])
    logger.info("ServiceMonitor support detected: %s", available)
    return available
