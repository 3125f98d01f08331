"""
Pipeline: ordered phases for deploy, destroy and bucket setup.

Each phase reports success, warning or fatal. A fatal phase aborts the
phases after it; a partial run leaves resources the next run converges.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
import urllib3
from kubernetes.config import ConfigException

from .backup import BackupCoordinator
from .certs import CertificateProvisioner
from .cloud import CloudInventory, get_credentials
from .config import Settings
from .errors import TetherError
from .events import emit_event, EventTypes
from .helm import Helm
from .ids import new_run_id
from .kube import ClusterClient
from .models import PhaseResult, PhaseStatus, ReconcileResult
from .reconcile import (
    Locator, Reconciler, TerraformDriver, NamespaceDriver, SecretDriver,
    TlsSecretDriver, HelmReleaseDriver, BucketDriver,
)
from .reconcile.catalog import (
    CERT_MANAGER_NAMESPACE, infrastructure_resources, bucket_resources,
    application_resources, application_values,
)
from .state import create_run_dir, write_run_json, write_report_json
from .storage import ObjectStore, BucketManager
from .terraform import Terraform

logger = logging.getLogger(__name__)

Phase = Tuple[str, Callable[[PhaseResult], None]]

TERRAFORM_KINDS = (
    "google_project_service",
    "google_compute_address",
    "google_container_cluster",
    "google_container_node_pool",
)


class Environment:
    """Clients for one settings object, built on first use."""

    def __init__(self, settings: Settings, run_id: Optional[str] = None):
        self.settings = settings
        self.run_id = run_id
        self._terraform = None
        self._inventory = None
        self._helm = None
        self._kube = None
        self._store = None
        self._buckets = None
        self._provisioner = None

    @property
    def terraform(self) -> Terraform:
        if self._terraform is None:
            self._terraform = Terraform(
                self.settings.terraform_dir,
                variables=self.settings.terraform_vars(),
                run_id=self.run_id,
            )
        return self._terraform

    @property
    def inventory(self) -> CloudInventory:
        if self._inventory is None:
            s = self.settings
            self._inventory = CloudInventory(s.project_id, s.region, s.zone)
        return self._inventory

    @property
    def helm(self) -> Helm:
        if self._helm is None:
            self._helm = Helm(run_id=self.run_id)
        return self._helm

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = ObjectStore(self.settings.backup_bucket, project=self.settings.project_id)
        return self._store

    @property
    def buckets(self) -> BucketManager:
        if self._buckets is None:
            self._buckets = BucketManager(self.settings.project_id)
        return self._buckets

    @property
    def kube(self) -> ClusterClient:
        if self._kube is None:
            raise TetherError("Cluster credentials not configured; run the credentials phase first")
        return self._kube

    @property
    def connected(self) -> bool:
        return self._kube is not None

    def connect_cluster(self) -> ClusterClient:
        """Fetch kubeconfig credentials for the cluster and build the client."""
        s = self.settings
        get_credentials(s.project_id, s.zone, s.cluster_name)
        self._kube = ClusterClient()
        return self._kube

    @property
    def provisioner(self) -> CertificateProvisioner:
        if self._provisioner is None:
            self._provisioner = CertificateProvisioner(
                self.store,
                self.settings.certs_dir,
                kube=self._kube,
                run_id=self.run_id,
            )
        elif self._provisioner.kube is None:
            self._provisioner.kube = self._kube
        return self._provisioner

    def locator(self) -> Locator:
        terraform_driver = TerraformDriver(self.terraform, self.inventory)
        drivers = {kind: terraform_driver for kind in TERRAFORM_KINDS}
        drivers["gcs_bucket"] = BucketDriver(self.buckets)
        if self._kube is not None:
            drivers["namespace"] = NamespaceDriver(self._kube)
            drivers["secret"] = SecretDriver(self._kube)
            drivers["tls_secret"] = TlsSecretDriver(self._kube, self.provisioner)
            drivers["helm_release"] = HelmReleaseDriver(self.helm)
        return Locator(drivers, retries=self.settings.lookup_retries)

    def reconciler(self) -> Reconciler:
        return Reconciler(self.locator(), run_id=self.run_id)


def run_phases(run_id: str, phases: List[Phase]) -> List[PhaseResult]:
    """
    Run phases in order; stop after the first fatal one.

    Args:
        run_id: Run ID for events
        phases: (name, callable) pairs; the callable fills in its PhaseResult

    Returns:
        Results of the phases that ran
    """
    results = []
    for index, (name, step) in enumerate(phases):
        result = PhaseResult(name)
        emit_event(run_id, EventTypes.PHASE_START, {"phase": name})
        logger.info(f"Phase {name} started")

        try:
            step(result)
        except Exception as e:
            result.fail(e)
            logger.error(f"Phase {name} failed: {e}")
            emit_event(run_id, EventTypes.ERROR, {"phase": name, "reason": str(e)})

        for warning in result.warnings:
            logger.warning(f"[{name}] {warning}")
        emit_event(run_id, EventTypes.PHASE_DONE, {
            "phase": name,
            "status": result.status.value,
            "actions": len(result.actions),
            "warnings": len(result.warnings),
        })
        results.append(result)

        if result.status is PhaseStatus.FATAL:
            skipped = [n for n, _ in phases[index + 1:]]
            emit_event(run_id, EventTypes.ABORTED, {"phase": name, "skipped": skipped})
            break

    return results


def absorb(result: PhaseResult, outcome: ReconcileResult) -> None:
    """Copy reconcile actions and warnings into a phase result; errors are fatal."""
    for action in outcome.applied + outcome.skipped:
        result.record(action.resource, action.action.value, action.detail)
    for warning in outcome.warnings:
        result.warn(warning)
    if outcome.errors:
        first = outcome.errors[0]
        if len(outcome.errors) > 1:
            for other in outcome.errors[1:]:
                result.warn(f"{other.resource}: {other.error}")
        raise first.error


def finish(run_id: str, command: str, results: List[PhaseResult],
           extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Write report.json and the closing event; return the report."""
    statuses = [r.status for r in results]
    if PhaseStatus.FATAL in statuses:
        status = "failed"
        failed = next(r for r in results if r.status is PhaseStatus.FATAL)
        emit_event(run_id, EventTypes.FAILED, {"command": command, "phase": failed.phase, "error": failed.error})
    elif PhaseStatus.WARNING in statuses:
        status = "converged_with_warnings"
        emit_event(run_id, EventTypes.DONE_WITH_WARNINGS, {"command": command})
    else:
        status = "converged"
        emit_event(run_id, EventTypes.DONE, {"command": command})

    report = {
        "run_id": run_id,
        "command": command,
        "status": status,
        "phases": [r.to_dict() for r in results],
    }
    if extra:
        report.update(extra)
    write_report_json(run_id, report)
    return report


def start_run(command: str, settings: Settings, run_id: Optional[str] = None) -> str:
    run_id = run_id or new_run_id()
    create_run_dir(run_id)
    write_run_json(run_id, command, settings.redacted())
    emit_event(run_id, EventTypes.INIT, {"run_id": run_id, "command": command})
    return run_id


# Phases


def infrastructure_phase(env: Environment) -> Callable[[PhaseResult], None]:
    def step(result: PhaseResult) -> None:
        env.terraform.ensure_init()
        absorb(result, env.reconciler().reconcile(infrastructure_resources(env.settings)))
    return step


def credentials_phase(env: Environment) -> Callable[[PhaseResult], None]:
    def step(result: PhaseResult) -> None:
        env.connect_cluster()
        result.record(env.settings.cluster_name, "credentials")
    return step


def resolve_static_ip(env: Environment) -> str:
    """Static ingress IP from terraform outputs, falling back to the cloud API."""
    ip = env.terraform.output("ingress_ip")
    if ip:
        return ip
    logger.info("Could not get IP from terraform output, checking GCP")
    found = env.inventory.address(env.settings.ip_name)
    if not found or not found.get("address"):
        raise TetherError(f"Static IP {env.settings.ip_name} not found; run the infrastructure phase first")
    return found["address"]


def application_phase(env: Environment) -> Callable[[PhaseResult], None]:
    def step(result: PhaseResult) -> None:
        s = env.settings
        s.require("domain")
        if not s.openrouter_api_key:
            result.warn("OPENROUTER_API_KEY is not set; the application starts without a model provider")

        static_ip = resolve_static_ip(env)
        logger.info(f"Using static ingress IP {static_ip}")

        deployed = {}
        if env.helm.status(s.release, s.namespace) is not None:
            deployed = env.helm.get_values(s.release, s.namespace)
        values = application_values(s, deployed)

        provisioner = env.provisioner
        provisioner.warnings.clear()
        try:
            absorb(result, env.reconciler().reconcile(application_resources(s, static_ip, values)))
        finally:
            for warning in provisioner.warnings:
                result.warn(warning)
    return step


def post_deploy_phase(env: Environment) -> Callable[[PhaseResult], None]:
    def step(result: PhaseResult) -> None:
        s = env.settings
        kube = env.kube
        selector = f"app.kubernetes.io/name={s.release}"

        if kube.wait_pods_ready(CERT_MANAGER_NAMESPACE, "app.kubernetes.io/instance=cert-manager",
                                timeout=s.cert_manager_timeout):
            result.record("cert-manager", "ready")
        else:
            result.warn(f"cert-manager pods not ready after {s.cert_manager_timeout}s")

        issuer = Path(s.cluster_issuer)
        if issuer.exists():
            for applied in kube.apply_manifest(issuer):
                result.record(applied, "apply")
        else:
            result.warn(f"Cluster issuer manifest {issuer} not found, skipping")

        # single replica: the SQLite volume is ReadWriteOnce
        if kube.delete_hpa(s.namespace, s.release):
            result.record(f"hpa/{s.release}", "destroy")
        if kube.scale_deployment(s.namespace, s.release, 1):
            result.record(f"deployment/{s.release}", "scale", "replicas=1")

        ready = kube.wait_pods_ready(s.namespace, selector, timeout=s.pod_ready_timeout)
        pod = kube.find_pod(s.namespace, selector)
        if pod is None:
            result.warn("Application pod not found yet; restore will run when it starts")
            return

        restore_log = kube.pod_logs(s.namespace, pod, container="restore-database")
        if restore_log:
            last = restore_log.strip().splitlines()[-1] if restore_log.strip() else ""
            result.record(pod, "restore", last)
            if "restore-failed" in restore_log:
                result.warn(f"Database restore failed in {pod}; serving with the existing database")
        else:
            result.warn("Restore init container logs not available yet")

        if not ready:
            ready = kube.wait_pods_ready(s.namespace, selector, timeout=s.restore_verify_timeout)
        if not ready:
            result.warn(f"Application pod {pod} not ready after {s.pod_ready_timeout + s.restore_verify_timeout}s")
            return

        probe = probe_health(s.domain)
        if probe:
            result.warn(probe)
        else:
            result.record(f"https://{s.domain}/health", "probe", "ok")
    return step


def probe_health(domain: str, timeout: float = 10.0) -> Optional[str]:
    """
    GET https://<domain>/health.

    Returns:
        None if healthy, else a warning message
    """
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    url = f"https://{domain}/health"
    try:
        # the certificate may be self-signed until cert-manager issues one
        response = requests.get(url, timeout=timeout, verify=False)
    except requests.RequestException as e:
        return f"Health probe {url} failed: {e}"
    if response.status_code != 200:
        return f"Health probe {url} returned {response.status_code}"
    return None


def backup_phase(env: Environment) -> Callable[[PhaseResult], None]:
    def step(result: PhaseResult) -> None:
        s = env.settings
        if not env.connected:
            try:
                if env.inventory.cluster(s.cluster_name) is None:
                    result.warn(f"Cluster {s.cluster_name} not found, nothing to back up")
                    return
                env.connect_cluster()
            except (TetherError, OSError, ConfigException) as e:
                result.warn(f"Backup skipped, cluster {s.cluster_name} unreachable: {e}")
                return

        coordinator = BackupCoordinator(
            env.store, kube=env.kube, target=s.target, db_path=s.db_path, run_id=env.run_id,
        )
        outcome = coordinator.backup()
        if outcome.snapshot:
            result.record(outcome.snapshot.key, "backup", f"{outcome.snapshot.size} bytes")
        if outcome.warning:
            result.warn(outcome.warning)
    return step


def teardown_phase(env: Environment, preserve_ip: bool) -> Callable[[PhaseResult], None]:
    def step(result: PhaseResult) -> None:
        env.terraform.ensure_init()
        resources = infrastructure_resources(env.settings)
        keep = []
        if preserve_ip:
            # the preserved address still needs the compute API
            keep = [r.name for r in resources if r.kind == "google_project_service"]
            resources = [r for r in resources if r.name not in keep]
        absorb(result, env.reconciler().destroy(resources, override_protection=not preserve_ip))
        if preserve_ip:
            for name in keep:
                result.record(name, "skip", "kept for the preserved IP")
    return step


def bucket_phase(env: Environment) -> Callable[[PhaseResult], None]:
    def step(result: PhaseResult) -> None:
        absorb(result, env.reconciler().reconcile(bucket_resources(env.settings)))
    return step


# Commands


def deploy(settings: Settings, run_id: Optional[str] = None, env: Optional[Environment] = None,
           infrastructure_only: bool = False) -> Dict[str, Any]:
    """
    Converge infrastructure, then the application on top of it.

    Args:
        settings: Environment settings
        run_id: Optional run ID (generated if not provided)
        env: Prebuilt clients (tests)
        infrastructure_only: Stop after the infrastructure phase

    Returns:
        Run report
    """
    command = "infra" if infrastructure_only else "deploy"
    run_id = start_run(command, settings, run_id)
    env = env or Environment(settings, run_id)

    phases = [("infrastructure", infrastructure_phase(env))]
    if not infrastructure_only:
        phases += [
            ("credentials", credentials_phase(env)),
            ("application", application_phase(env)),
            ("post-deploy", post_deploy_phase(env)),
        ]

    results = run_phases(run_id, phases)
    return finish(run_id, command, results, {"domain": settings.domain})


def destroy(settings: Settings, run_id: Optional[str] = None, env: Optional[Environment] = None,
            skip_backup: bool = False) -> Dict[str, Any]:
    """
    Back up the database, then tear down non-protected infrastructure.

    The static IP survives unless settings.preserve_ip is False.
    """
    run_id = start_run("destroy", settings, run_id)
    env = env or Environment(settings, run_id)

    phases = []
    if not skip_backup:
        phases.append(("backup", backup_phase(env)))
    phases.append(("teardown", teardown_phase(env, settings.preserve_ip)))

    results = run_phases(run_id, phases)
    return finish(run_id, "destroy", results, {"preserve_ip": settings.preserve_ip})


def backup(settings: Settings, run_id: Optional[str] = None, env: Optional[Environment] = None) -> Dict[str, Any]:
    run_id = start_run("backup", settings, run_id)
    env = env or Environment(settings, run_id)
    results = run_phases(run_id, [("backup", backup_phase(env))])
    return finish(run_id, "backup", results)


def setup_bucket(settings: Settings, run_id: Optional[str] = None, env: Optional[Environment] = None) -> Dict[str, Any]:
    """Create and configure the backup bucket (lifecycle, versioning, uniform access)."""
    run_id = start_run("setup-bucket", settings, run_id)
    env = env or Environment(settings, run_id)
    results = run_phases(run_id, [("bucket", bucket_phase(env))])
    return finish(run_id, "setup-bucket", results, {"bucket": f"gs://{settings.backup_bucket}"})
