"""
Settings for every tether phase.

All knobs that the deployment scripts used to read from the shell
environment live here, with their defaults enumerated once.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import ConfigurationError
from .models import DeploymentTarget

# field -> environment variables, first non-empty wins
ENV_SOURCES: Dict[str, List[str]] = {
    "project_id": ["TF_VAR_project_id", "GCP_PROJECT_ID"],
    "region": ["TF_VAR_region", "GCP_REGION"],
    "zone": ["TF_VAR_zone", "GCP_ZONE"],
    "cluster_name": ["TF_VAR_cluster_name", "CLUSTER_NAME"],
    "node_pool_name": ["NODE_POOL_NAME"],
    "node_count": ["NODE_COUNT"],
    "machine_type": ["MACHINE_TYPE"],
    "services": ["GCP_SERVICES"],
    "backup_bucket": ["BACKUP_BUCKET"],
    "domain": ["DOMAIN"],
    "namespace": ["NAMESPACE"],
    "release": ["RELEASE_NAME"],
    "tls_secret": ["TLS_SECRET_NAME"],
    "sa_secret": ["SA_SECRET_NAME"],
    "openrouter_api_key": ["OPENROUTER_API_KEY"],
    "gcp_sa_key": ["GCP_SA_KEY"],
    "preserve_ip": ["PRESERVE_IP"],
    "terraform_dir": ["TERRAFORM_DIR"],
    "chart_dir": ["CHART_DIR"],
    "values_file": ["VALUES_FILE"],
    "certs_dir": ["CERTS_DIR"],
    "cluster_issuer": ["CLUSTER_ISSUER_MANIFEST"],
    "db_path": ["DB_PATH"],
    "retention_days": ["BACKUP_RETENTION_DAYS"],
    "cert_manager_timeout": ["CERT_MANAGER_TIMEOUT"],
    "pod_ready_timeout": ["POD_READY_TIMEOUT"],
    "restore_verify_timeout": ["RESTORE_VERIFY_TIMEOUT"],
    "lookup_retries": ["LOOKUP_RETRIES"],
}

SECRET_FIELDS = {"openrouter_api_key", "gcp_sa_key"}


class Settings(BaseModel):
    """Configuration shared by the reconciler, provisioner and coordinator."""

    project_id: Optional[str] = None
    region: str = "europe-west1"
    zone: str = "europe-west1-b"
    cluster_name: str = "open-webui-cluster"
    node_pool_name: str = "primary-pool"
    node_count: int = 1
    machine_type: str = "e2-standard-2"
    services: List[str] = Field(
        default_factory=lambda: ["compute.googleapis.com", "container.googleapis.com"]
    )

    backup_bucket: str = "open-webui-backups"
    domain: Optional[str] = None

    namespace: str = "ai"
    release: str = "open-webui"
    tls_secret: str = "open-webui-tls"
    sa_secret: str = "gcp-sa-key"
    openrouter_api_key: str = ""
    gcp_sa_key: str = ""

    preserve_ip: bool = True

    terraform_dir: Path = Path("terraform")
    chart_dir: Path = Path("helm/open-webui")
    values_file: Path = Path("helm/open-webui/values.yaml.example")
    certs_dir: Path = Path("ssl-certs")
    cluster_issuer: Path = Path("bootstrap/cluster-issuer.yaml")

    db_path: str = "/app/backend/data/webui.db"
    retention_days: int = 90

    cert_manager_timeout: int = 300
    pod_ready_timeout: int = 60
    restore_verify_timeout: int = 300
    lookup_retries: int = 2

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, **overrides: Any) -> "Settings":
        """
        Build settings from environment variables, then apply overrides.

        Args:
            env: Mapping to read instead of os.environ
            **overrides: Explicit values (e.g. CLI flags); None values are ignored

        Returns:
            Settings instance
        """
        env = os.environ if env is None else env
        values: Dict[str, Any] = {}

        for field_name, names in ENV_SOURCES.items():
            for name in names:
                raw = env.get(name)
                if raw:
                    values[field_name] = _coerce(field_name, raw)
                    break

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def ip_name(self) -> str:
        return f"{self.cluster_name}-ingress-ip"

    @property
    def target(self) -> DeploymentTarget:
        return DeploymentTarget(self.cluster_name, self.namespace, self.release)

    def require(self, *fields: str) -> None:
        """Raise ConfigurationError if any named field is empty."""
        missing = [f for f in fields if not getattr(self, f)]
        if missing:
            env_hint = ", ".join(ENV_SOURCES.get(f, [f.upper()])[-1] for f in missing)
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)} (set {env_hint})")

    def terraform_vars(self) -> Dict[str, str]:
        """Variables exported to terraform as TF_VAR_*."""
        return {
            "project_id": self.project_id or "",
            "region": self.region,
            "zone": self.zone,
            "cluster_name": self.cluster_name,
        }

    def redacted(self) -> Dict[str, Any]:
        """Settings as JSON-safe dict with secrets masked."""
        data = self.model_dump(mode="json")
        for name in SECRET_FIELDS:
            if data.get(name):
                data[name] = "[REDACTED]"
        return data


def _coerce(field_name: str, raw: str) -> Any:
    if field_name == "services":
        return [s.strip() for s in raw.split(",") if s.strip()]
    if field_name == "preserve_ip":
        return raw.strip().lower() not in ("false", "0", "no")
    return raw
