"""
Kubernetes API access through the official Python client.
"""

import base64
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError

from .errors import ResourceLookupError

logger = logging.getLogger(__name__)

HELM_MANAGED_LABEL = "app.kubernetes.io/managed-by"
MISSING_MARKER = "__TETHER_MISSING__"


def load_kube_config() -> None:
    """Load in-cluster config when running in a pod, kubeconfig otherwise."""
    try:
        config.load_incluster_config()
        logger.debug("Using in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.debug("Using local kubeconfig")


class ClusterClient:
    """Namespaces, secrets, deployments and pods of one cluster."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        if api_client is None:
            load_kube_config()
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.autoscaling = client.AutoscalingV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    def _read(self, what: str, call):
        try:
            return call()
        except ApiException as e:
            if e.status == 404:
                return None
            raise ResourceLookupError(what, f"{e.status} {e.reason}") from e
        except HTTPError as e:
            raise ResourceLookupError(what, str(e)) from e

    # Namespaces

    def namespace(self, name: str) -> Optional[Dict[str, Any]]:
        ns = self._read(f"namespace {name}", lambda: self.core.read_namespace(name))
        if ns is None:
            return None
        return {
            "labels": dict(ns.metadata.labels or {}),
            "annotations": dict(ns.metadata.annotations or {}),
        }

    def create_namespace(self, name: str, labels: Optional[Dict[str, str]] = None,
                         annotations: Optional[Dict[str, str]] = None) -> None:
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, labels=labels, annotations=annotations)
        )
        try:
            self.core.create_namespace(body)
        except ApiException as e:
            if e.status != 409:
                raise
            logger.info(f"Namespace {name} already exists")

    def label_namespace(self, name: str, labels: Dict[str, str], annotations: Dict[str, str]) -> None:
        patch = {"metadata": {"labels": labels, "annotations": annotations}}
        self.core.patch_namespace(name, patch)

    def delete_namespace(self, name: str) -> None:
        try:
            self.core.delete_namespace(name)
        except ApiException as e:
            if e.status != 404:
                raise

    # Secrets

    def secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        found = self._read(
            f"secret {namespace}/{name}",
            lambda: self.core.read_namespaced_secret(name, namespace),
        )
        if found is None:
            return None
        return {
            "type": found.type,
            "keys": sorted((found.data or {}).keys()),
            "annotations": dict(found.metadata.annotations or {}),
        }

    def create_tls_secret(self, namespace: str, name: str, certificate: bytes, private_key: bytes) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            type="kubernetes.io/tls",
            data={
                "tls.crt": base64.b64encode(certificate).decode(),
                "tls.key": base64.b64encode(private_key).decode(),
            },
        )
        self.core.create_namespaced_secret(namespace=namespace, body=body)

    def apply_secret(self, namespace: str, name: str, string_data: Dict[str, str],
                     annotations: Optional[Dict[str, str]] = None) -> None:
        """Create an Opaque secret, replacing it if it already exists."""
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, annotations=annotations),
            type="Opaque",
            string_data=string_data,
        )
        try:
            self.core.create_namespaced_secret(namespace=namespace, body=body)
        except ApiException as e:
            if e.status != 409:
                raise
            self.core.replace_namespaced_secret(name=name, namespace=namespace, body=body)

    def delete_secret(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise

    # Workloads

    def delete_hpa(self, namespace: str, name: str) -> bool:
        try:
            self.autoscaling.delete_namespaced_horizontal_pod_autoscaler(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def scale_deployment(self, namespace: str, name: str, replicas: int) -> bool:
        try:
            self.apps.patch_namespaced_deployment_scale(name, namespace, {"spec": {"replicas": replicas}})
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def pods(self, namespace: str, selector: str) -> List[Any]:
        found = self._read(
            f"pods {namespace}/{selector}",
            lambda: self.core.list_namespaced_pod(namespace, label_selector=selector),
        )
        return list(found.items) if found is not None else []

    def find_pod(self, namespace: str, selector: str) -> Optional[str]:
        """Name of a running pod matching selector, else any matching pod."""
        pods = self.pods(namespace, selector)
        running = [p for p in pods if p.status and p.status.phase == "Running"]
        chosen = (running or pods)[:1]
        return chosen[0].metadata.name if chosen else None

    def wait_pods_ready(self, namespace: str, selector: str, timeout: int, interval: float = 5.0) -> bool:
        """
        Poll until every matching pod reports Ready.

        Returns:
            True if ready before the timeout, False otherwise
        """
        deadline = time.monotonic() + timeout
        while True:
            pods = self.pods(namespace, selector)
            if pods and all(_pod_ready(p) for p in pods):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)

    def read_file(self, namespace: str, pod: str, path: str, container: Optional[str] = None) -> Optional[bytes]:
        """
        Copy a file out of a pod.

        Returns:
            File bytes, b"" for an empty file, None if the file does not exist
        """
        script = f'if [ -f "{path}" ]; then base64 "{path}"; else echo {MISSING_MARKER}; fi'
        kwargs = {"container": container} if container else {}
        output = stream(
            self.core.connect_get_namespaced_pod_exec,
            pod,
            namespace,
            command=["sh", "-c", script],
            stderr=False, stdin=False, stdout=True, tty=False,
            **kwargs,
        )
        output = (output or "").strip()
        if output == MISSING_MARKER:
            return None
        return base64.b64decode("".join(output.split()))

    def pod_logs(self, namespace: str, pod: str, container: Optional[str] = None) -> Optional[str]:
        try:
            return self.core.read_namespaced_pod_log(pod, namespace, container=container)
        except ApiException as e:
            logger.debug(f"Logs unavailable for {pod}/{container}: {e.status}")
            return None

    # Custom resources

    def apply_manifest(self, path: Path) -> List[str]:
        """
        Apply cluster-scoped custom objects (e.g. a cert-manager ClusterIssuer).

        Returns:
            Names of the applied objects
        """
        applied = []
        with open(path) as f:
            documents = [d for d in yaml.safe_load_all(f) if d]

        for doc in documents:
            group, _, version = doc["apiVersion"].partition("/")
            plural = doc["kind"].lower() + "s"
            name = doc["metadata"]["name"]
            try:
                self.custom.create_cluster_custom_object(group, version, plural, doc)
            except ApiException as e:
                if e.status != 409:
                    raise
                self.custom.patch_cluster_custom_object(group, version, plural, name, doc)
            applied.append(f"{doc['kind']}/{name}")
        return applied


def _pod_ready(pod) -> bool:
    for condition in (pod.status.conditions or []) if pod.status else []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False
