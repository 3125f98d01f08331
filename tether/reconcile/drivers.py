"""
Drivers: per-backing-store read and mutate operations for managed resources.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..cloud import CloudInventory
from ..helm import Helm
from ..kube import ClusterClient
from ..models import ManagedResource
from ..storage import BucketManager
from ..terraform import Terraform

logger = logging.getLogger(__name__)

DIGEST_ANNOTATION = "tether.io/digest"


class ResourceDriver(ABC):
    """
    Read/mutate interface for one backing-store flavour.

    Drivers whose store keeps its own record (Kubernetes, Helm, GCS) leave
    tracks_state False: whatever the store reports is the recorded state.
    Drivers with separate local state (Terraform) set it True and
    implement adopt().
    """

    tracks_state = False
    # in-place updates never replace the underlying resource
    safe_update = True

    @abstractmethod
    def observe(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        """Descriptor reported by the backing store, or None if absent."""

    def recorded(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        """Descriptor recorded in local state, or None if untracked."""
        return self.observe(resource)

    @abstractmethod
    def create(self, resource: ManagedResource) -> None:
        pass

    def adopt(self, resource: ManagedResource, identity: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} has no separate state to import into")

    def update(self, resource: ManagedResource) -> None:
        self.create(resource)

    @abstractmethod
    def destroy(self, resource: ManagedResource) -> None:
        pass


class TerraformDriver(ResourceDriver):
    """Cloud resources managed by terraform, observed through Google Cloud APIs."""

    tracks_state = True
    safe_update = False

    def __init__(self, terraform: Terraform, inventory: CloudInventory):
        self.terraform = terraform
        self.inventory = inventory

    def observe(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        spec = resource.spec
        if resource.kind == "google_project_service":
            return self.inventory.service(spec["service"])
        if resource.kind == "google_compute_address":
            return self.inventory.address(spec["name"])
        if resource.kind == "google_container_cluster":
            return self.inventory.cluster(spec["name"])
        if resource.kind == "google_container_node_pool":
            return self.inventory.node_pool(spec["cluster"], spec["name"])
        raise ValueError(f"Unsupported cloud resource kind: {resource.kind}")

    def recorded(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        return self.terraform.recorded(resource.address)

    def create(self, resource: ManagedResource) -> None:
        self.terraform.apply([resource.address])

    def adopt(self, resource: ManagedResource, identity: str) -> None:
        logger.info(f"Importing {identity} as {resource.address}")
        self.terraform.import_resource(resource.address, identity)

    def update(self, resource: ManagedResource) -> None:
        self.terraform.apply([resource.address])

    def destroy(self, resource: ManagedResource) -> None:
        self.terraform.destroy([resource.address])


class NamespaceDriver(ResourceDriver):
    def __init__(self, kube: ClusterClient):
        self.kube = kube

    def observe(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        return self.kube.namespace(resource.spec["name"])

    def create(self, resource: ManagedResource) -> None:
        desired = resource.desired
        self.kube.create_namespace(resource.spec["name"], desired.get("labels"), desired.get("annotations"))

    def update(self, resource: ManagedResource) -> None:
        # Existing namespaces are relabelled so Helm treats them as its own
        desired = resource.desired
        self.kube.label_namespace(resource.spec["name"], desired.get("labels", {}), desired.get("annotations", {}))

    def destroy(self, resource: ManagedResource) -> None:
        self.kube.delete_namespace(resource.spec["name"])


class SecretDriver(ResourceDriver):
    """Opaque secrets; content drift is detected through a digest annotation."""

    def __init__(self, kube: ClusterClient):
        self.kube = kube

    def observe(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        found = self.kube.secret(resource.spec["namespace"], resource.spec["name"])
        if found is None:
            return None
        return {
            "type": found["type"],
            "keys": found["keys"],
            "digest": found.get("annotations", {}).get(DIGEST_ANNOTATION),
        }

    def create(self, resource: ManagedResource) -> None:
        self.kube.apply_secret(
            resource.spec["namespace"],
            resource.spec["name"],
            resource.spec["data"],
            annotations={DIGEST_ANNOTATION: resource.desired.get("digest", "")},
        )

    def destroy(self, resource: ManagedResource) -> None:
        self.kube.delete_secret(resource.spec["namespace"], resource.spec["name"])


class TlsSecretDriver(ResourceDriver):
    """
    TLS secret materialized by the certificate provisioner.

    The desired descriptor is empty, so an existing secret is never
    rewritten.
    """

    def __init__(self, kube: ClusterClient, provisioner):
        self.kube = kube
        self.provisioner = provisioner

    def observe(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        found = self.kube.secret(resource.spec["namespace"], resource.spec["name"])
        if found is None:
            return None
        return {"type": found["type"]}

    def create(self, resource: ManagedResource) -> None:
        spec = resource.spec
        bundle = self.provisioner.ensure_certificate(spec["domain"])
        self.provisioner.materialize(bundle, spec["namespace"], spec["name"])

    def destroy(self, resource: ManagedResource) -> None:
        self.kube.delete_secret(resource.spec["namespace"], resource.spec["name"])


class HelmReleaseDriver(ResourceDriver):
    def __init__(self, helm: Helm):
        self.helm = helm
        self._repos_ready = set()

    def observe(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        spec = resource.spec
        status = self.helm.status(spec["release"], spec["namespace"])
        if status is None:
            return None
        return {
            "status": status.get("info", {}).get("status"),
            "values": self.helm.get_values(spec["release"], spec["namespace"]),
        }

    def create(self, resource: ManagedResource) -> None:
        spec = resource.spec
        repo = spec.get("repo")
        if repo and repo["name"] not in self._repos_ready:
            self.helm.repo_add(repo["name"], repo["url"])
            self.helm.repo_update()
            self._repos_ready.add(repo["name"])

        self.helm.upgrade_install(
            spec["release"],
            spec["chart"],
            spec["namespace"],
            values=resource.desired.get("values", {}),
            create_namespace=spec.get("create_namespace", True),
            wait=spec.get("wait", False),
            timeout=spec.get("timeout", "5m"),
            version=spec.get("version"),
        )

    def destroy(self, resource: ManagedResource) -> None:
        self.helm.uninstall(resource.spec["release"], resource.spec["namespace"])


class BucketDriver(ResourceDriver):
    def __init__(self, buckets: BucketManager):
        self.buckets = buckets

    def observe(self, resource: ManagedResource) -> Optional[Dict[str, Any]]:
        return self.buckets.describe(resource.spec["name"])

    def create(self, resource: ManagedResource) -> None:
        spec = resource.spec
        self.buckets.create(spec["name"], spec["location"])
        self.update(resource)

    def update(self, resource: ManagedResource) -> None:
        self.buckets.configure(resource.spec["name"], resource.desired["retention_days"])

    def destroy(self, resource: ManagedResource) -> None:
        self.buckets.delete(resource.spec["name"])


def data_digest(data: Dict[str, str]) -> str:
    """Stable digest of secret content."""
    payload = json.dumps(data, sort_keys=True).encode()
    return hashlib.sha256(payload).hexdigest()[:16]
