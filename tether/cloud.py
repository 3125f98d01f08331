"""
Read-only Google Cloud lookups for the cloud-resource driver.

Every lookup returns an observed descriptor, or None when the API says
the resource does not exist. Any other failure is a ResourceLookupError.
"""

import logging
import subprocess
from typing import Any, Dict, Optional

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import compute_v1, container_v1, service_usage_v1

from .errors import CommandError, ResourceLookupError

logger = logging.getLogger(__name__)


class CloudInventory:
    """Looks up addresses, clusters, node pools and enabled APIs."""

    def __init__(self, project: str, region: str, zone: str):
        self.project = project
        self.region = region
        self.zone = zone
        self._addresses = None
        self._clusters = None
        self._services = None

    def _address_client(self):
        if self._addresses is None:
            self._addresses = compute_v1.AddressesClient()
        return self._addresses

    def _cluster_client(self):
        if self._clusters is None:
            self._clusters = container_v1.ClusterManagerClient()
        return self._clusters

    def _service_client(self):
        if self._services is None:
            self._services = service_usage_v1.ServiceUsageClient()
        return self._services

    def _lookup(self, resource: str, call):
        try:
            return call()
        except NotFound:
            return None
        except (GoogleAPIError, GoogleAuthError) as e:
            raise ResourceLookupError(resource, str(e)) from e

    def address(self, name: str) -> Optional[Dict[str, Any]]:
        """Regional static address, e.g. the ingress IP."""
        found = self._lookup(
            f"address {name}",
            lambda: self._address_client().get(project=self.project, region=self.region, address=name),
        )
        if found is None:
            return None
        return {
            "name": found.name,
            "address": found.address,
            "address_type": found.address_type,
            "region": self.region,
            "status": found.status,
        }

    def cluster(self, name: str) -> Optional[Dict[str, Any]]:
        path = f"projects/{self.project}/locations/{self.zone}/clusters/{name}"
        found = self._lookup(f"cluster {name}", lambda: self._cluster_client().get_cluster(name=path))
        if found is None:
            return None
        return {
            "name": found.name,
            "location": found.location,
            "endpoint": found.endpoint,
            "status": container_v1.Cluster.Status(found.status).name,
        }

    def node_pool(self, cluster: str, name: str) -> Optional[Dict[str, Any]]:
        path = f"projects/{self.project}/locations/{self.zone}/clusters/{cluster}/nodePools/{name}"
        found = self._lookup(f"node pool {name}", lambda: self._cluster_client().get_node_pool(name=path))
        if found is None:
            return None
        return {
            "name": found.name,
            "node_count": found.initial_node_count,
            "machine_type": found.config.machine_type,
        }

    def service(self, service: str) -> Optional[Dict[str, Any]]:
        """Project API; a disabled API counts as absent."""
        path = f"projects/{self.project}/services/{service}"
        found = self._lookup(f"service {service}", lambda: self._service_client().get_service(name=path))
        if found is None or found.state != service_usage_v1.State.ENABLED:
            return None
        return {"service": service, "state": "ENABLED"}


def get_credentials(project: str, zone: str, cluster: str) -> None:
    """
    Write kubeconfig credentials for the cluster (used by kubectl, helm
    and the kubernetes client alike).

    Raises:
        CommandError: If gcloud fails
    """
    command = [
        "gcloud", "container", "clusters", "get-credentials", cluster,
        "--zone", zone, "--project", project,
    ]
    result = subprocess.run(command, capture_output=True, text=True)
    if result.returncode != 0:
        raise CommandError(command, result.returncode, result.stderr.splitlines()[-40:])
    logger.info(f"Credentials configured for cluster {cluster}")
