"""
Tests for settings loading.
"""

from pathlib import Path

import pytest

from tether.config import Settings
from tether.errors import ConfigurationError


class TestFromEnv:
    def test_defaults(self):
        settings = Settings.from_env(env={})

        assert settings.project_id is None
        assert settings.region == "europe-west1"
        assert settings.zone == "europe-west1-b"
        assert settings.cluster_name == "open-webui-cluster"
        assert settings.backup_bucket == "open-webui-backups"
        assert settings.namespace == "ai"
        assert settings.preserve_ip is True
        assert settings.retention_days == 90
        assert settings.services == ["compute.googleapis.com", "container.googleapis.com"]
        assert settings.terraform_dir == Path("terraform")

    def test_terraform_vars_take_precedence(self):
        env = {"TF_VAR_project_id": "from-tf", "GCP_PROJECT_ID": "from-gcp", "GCP_REGION": "us-central1"}

        settings = Settings.from_env(env=env)

        assert settings.project_id == "from-tf"
        assert settings.region == "us-central1"

    def test_empty_values_ignored(self):
        settings = Settings.from_env(env={"TF_VAR_project_id": "", "GCP_PROJECT_ID": "demo"})
        assert settings.project_id == "demo"

    def test_coercion(self):
        env = {
            "NODE_COUNT": "3",
            "PRESERVE_IP": "false",
            "GCP_SERVICES": "compute.googleapis.com, container.googleapis.com,storage.googleapis.com",
            "BACKUP_RETENTION_DAYS": "30",
        }

        settings = Settings.from_env(env=env)

        assert settings.node_count == 3
        assert settings.preserve_ip is False
        assert settings.services[-1] == "storage.googleapis.com"
        assert settings.retention_days == 30

    def test_overrides_beat_environment(self):
        settings = Settings.from_env(env={"DOMAIN": "env.example.com"}, domain="cli.example.com", region=None)

        assert settings.domain == "cli.example.com"
        assert settings.region == "europe-west1"

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            Settings.from_env(env={"NODE_COUNT": "many"})


class TestSettings:
    def test_ip_name(self):
        assert Settings(cluster_name="demo").ip_name == "demo-ingress-ip"

    def test_require(self):
        with pytest.raises(ConfigurationError, match="GCP_PROJECT_ID"):
            Settings().require("project_id")
        Settings(project_id="demo").require("project_id")

    def test_redacted(self):
        settings = Settings(openrouter_api_key="sk-or-secret", gcp_sa_key='{"type": "service_account"}')

        data = settings.redacted()

        assert data["openrouter_api_key"] == "[REDACTED]"
        assert data["gcp_sa_key"] == "[REDACTED]"
        assert data["terraform_dir"] == "terraform"

    def test_terraform_vars(self):
        tf_vars = Settings(project_id="demo").terraform_vars()
        assert tf_vars == {
            "project_id": "demo",
            "region": "europe-west1",
            "zone": "europe-west1-b",
            "cluster_name": "open-webui-cluster",
        }
