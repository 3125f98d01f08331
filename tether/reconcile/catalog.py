"""
Desired resource sets for one environment, built from Settings.
"""

import secrets
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..config import Settings
from ..kube import HELM_MANAGED_LABEL
from ..models import BackingStore, LifecyclePolicy, ManagedResource
from .drivers import data_digest

INGRESS_NAMESPACE = "ingress-nginx"
CERT_MANAGER_NAMESPACE = "cert-manager"
CERT_MANAGER_VERSION = "v1.13.0"

# terraform addresses expected in the configuration under terraform_dir
IP_ADDRESS = "google_compute_address.ingress_ip"
CLUSTER_ADDRESS = "google_container_cluster.cluster"
NODE_POOL_ADDRESS = "google_container_node_pool.primary"
SERVICE_ADDRESS = 'google_project_service.apis["{service}"]'


def infrastructure_resources(settings: Settings) -> List[ManagedResource]:
    """
    Project APIs, static ingress IP, cluster and node pool.

    The static IP is persistent-protected: it outlives cluster teardown so
    DNS keeps pointing at the same address.
    """
    settings.require("project_id")
    project, region, zone = settings.project_id, settings.region, settings.zone
    cluster = settings.cluster_name

    apis = []
    for service in settings.services:
        apis.append(ManagedResource(
            name=f"api:{service}",
            kind="google_project_service",
            store=BackingStore.CLOUD,
            identity=f"{project}/{service}",
            desired={"service": service},
            address=SERVICE_ADDRESS.format(service=service),
            spec={"service": service},
        ))
    api_names = [a.name for a in apis]

    ingress_ip = ManagedResource(
        name="ingress-ip",
        kind="google_compute_address",
        store=BackingStore.CLOUD,
        identity=f"projects/{project}/regions/{region}/addresses/{settings.ip_name}",
        desired={"name": settings.ip_name, "region": region},
        policy=LifecyclePolicy.PROTECTED,
        depends_on=api_names,
        address=IP_ADDRESS,
        spec={"name": settings.ip_name},
    )

    gke = ManagedResource(
        name="cluster",
        kind="google_container_cluster",
        store=BackingStore.CLOUD,
        identity=f"projects/{project}/locations/{zone}/clusters/{cluster}",
        desired={"name": cluster, "location": zone},
        depends_on=api_names,
        address=CLUSTER_ADDRESS,
        spec={"name": cluster},
    )

    node_pool = ManagedResource(
        name="node-pool",
        kind="google_container_node_pool",
        store=BackingStore.CLOUD,
        identity=f"projects/{project}/locations/{zone}/clusters/{cluster}/nodePools/{settings.node_pool_name}",
        desired={
            "name": settings.node_pool_name,
            "node_count": settings.node_count,
            "node_config": {"machine_type": settings.machine_type},
        },
        depends_on=["cluster"],
        address=NODE_POOL_ADDRESS,
        spec={"cluster": cluster, "name": settings.node_pool_name},
    )

    return apis + [ingress_ip, gke, node_pool]


def bucket_resources(settings: Settings) -> List[ManagedResource]:
    """The backup bucket; it holds snapshots and certificates, so it is protected."""
    return [ManagedResource(
        name="backup-bucket",
        kind="gcs_bucket",
        store=BackingStore.STORAGE,
        identity=settings.backup_bucket,
        desired={
            "location": settings.region.lower(),
            "versioning": True,
            "uniform_access": True,
            "retention_days": settings.retention_days,
        },
        policy=LifecyclePolicy.PROTECTED,
        spec={"name": settings.backup_bucket, "location": settings.region},
    )]


def application_resources(settings: Settings, static_ip: str, app_values: Dict[str, Any]) -> List[ManagedResource]:
    """
    Namespace, secrets and Helm releases, in the order they must converge.

    Args:
        settings: Environment settings
        static_ip: Address handed to the ingress load balancer
        app_values: Helm values for the application release
    """
    settings.require("domain")
    ns = settings.namespace

    namespace = ManagedResource(
        name="namespace",
        kind="namespace",
        store=BackingStore.CLUSTER,
        identity=ns,
        desired={
            "labels": {HELM_MANAGED_LABEL: "Helm"},
            "annotations": {
                "meta.helm.sh/release-name": settings.release,
                "meta.helm.sh/release-namespace": ns,
            },
        },
        spec={"name": ns},
    )
    resources = [namespace]
    app_deps = ["namespace"]

    if settings.gcp_sa_key:
        data = {"key.json": settings.gcp_sa_key}
        resources.append(ManagedResource(
            name="sa-secret",
            kind="secret",
            store=BackingStore.CLUSTER,
            identity=f"{ns}/{settings.sa_secret}",
            desired={"type": "Opaque", "keys": ["key.json"], "digest": data_digest(data)},
            depends_on=["namespace"],
            spec={"namespace": ns, "name": settings.sa_secret, "data": data},
        ))
        app_deps.append("sa-secret")

    resources.append(ManagedResource(
        name="tls-secret",
        kind="tls_secret",
        store=BackingStore.CLUSTER,
        identity=f"{ns}/{settings.tls_secret}",
        desired={},
        depends_on=["namespace"],
        spec={"namespace": ns, "name": settings.tls_secret, "domain": settings.domain},
    ))
    app_deps.append("tls-secret")

    resources.append(_release(
        name="ingress-nginx",
        release="ingress-nginx",
        chart="ingress-nginx/ingress-nginx",
        namespace=INGRESS_NAMESPACE,
        values=ingress_values(static_ip),
        repo={"name": "ingress-nginx", "url": "https://kubernetes.github.io/ingress-nginx"},
        wait=True,
    ))
    resources.append(_release(
        name="cert-manager",
        release="cert-manager",
        chart="jetstack/cert-manager",
        namespace=CERT_MANAGER_NAMESPACE,
        values={"installCRDs": True},
        repo={"name": "jetstack", "url": "https://charts.jetstack.io"},
        version=CERT_MANAGER_VERSION,
    ))
    app_deps += ["ingress-nginx", "cert-manager"]

    resources.append(_release(
        name="app",
        release=settings.release,
        chart=str(settings.chart_dir),
        namespace=ns,
        values=app_values,
        depends_on=app_deps,
    ))
    return resources


def _release(name: str, release: str, chart: str, namespace: str, values: Dict[str, Any],
             repo: Optional[Dict[str, str]] = None, version: Optional[str] = None,
             wait: bool = False, depends_on: Optional[List[str]] = None) -> ManagedResource:
    return ManagedResource(
        name=name,
        kind="helm_release",
        store=BackingStore.CLUSTER,
        identity=f"{namespace}/{release}",
        desired={"status": "deployed", "values": values},
        depends_on=depends_on or [],
        spec={
            "release": release,
            "chart": chart,
            "namespace": namespace,
            "repo": repo,
            "version": version,
            "wait": wait,
        },
    )


def ingress_values(static_ip: str) -> Dict[str, Any]:
    return {
        "controller": {
            "service": {
                "type": "LoadBalancer",
                "loadBalancerIP": static_ip,
                "annotations": {"cloud.google.com/load-balancer-type": "External"},
            }
        }
    }


def application_values(settings: Settings, deployed: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Helm values for the application release.

    The WebUI secret key is reused from the deployed release so sessions
    survive redeploys and repeated runs stay idempotent.

    Args:
        settings: Environment settings
        deployed: Values of the currently deployed release, if any

    Returns:
        Values dict
    """
    values: Dict[str, Any] = {}
    values_file = Path(settings.values_file)
    if values_file.exists():
        with open(values_file) as f:
            values = yaml.safe_load(f) or {}

    if settings.openrouter_api_key:
        values["openrouterApiKey"] = settings.openrouter_api_key

    deployed = deployed or {}
    values["webuiSecretKey"] = (
        deployed.get("webuiSecretKey") or values.get("webuiSecretKey") or secrets.token_hex(32)
    )

    backup = values.setdefault("backup", {})
    backup["restoreOnDeploy"] = True
    backup["gcsBucket"] = settings.backup_bucket
    if settings.gcp_sa_key:
        backup["gcpServiceAccount"] = settings.sa_secret

    return values
