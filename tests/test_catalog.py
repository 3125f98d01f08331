"""
Tests for the desired resource sets.
"""

import pytest
import yaml

from tether.config import Settings
from tether.errors import ConfigurationError
from tether.models import LifecyclePolicy
from tether.reconcile import order_by_dependencies
from tether.reconcile.catalog import (
    application_resources, application_values, bucket_resources, infrastructure_resources,
)


@pytest.fixture
def settings(tmp_path):
    values_file = tmp_path / "values.yaml"
    values_file.write_text(yaml.safe_dump({"image": {"tag": "0.6.5"}, "persistence": {"size": "5Gi"}}))
    return Settings(project_id="demo", domain="ai.example.com", values_file=values_file)


class TestInfrastructure:
    def test_requires_project(self):
        with pytest.raises(ConfigurationError):
            infrastructure_resources(Settings())

    def test_ip_is_protected_and_others_ephemeral(self, settings):
        resources = {r.name: r for r in infrastructure_resources(settings)}

        assert resources["ingress-ip"].policy is LifecyclePolicy.PROTECTED
        assert resources["cluster"].policy is LifecyclePolicy.EPHEMERAL
        assert resources["node-pool"].policy is LifecyclePolicy.EPHEMERAL

    def test_order_and_identities(self, settings):
        ordered = [r.name for r in order_by_dependencies(infrastructure_resources(settings))]
        assert ordered.index("ingress-ip") < ordered.index("cluster") < ordered.index("node-pool")

        resources = {r.name: r for r in infrastructure_resources(settings)}
        assert resources["ingress-ip"].identity == (
            "projects/demo/regions/europe-west1/addresses/open-webui-cluster-ingress-ip"
        )
        assert resources["node-pool"].address == "google_container_node_pool.primary"
        assert resources["api:compute.googleapis.com"].address == (
            'google_project_service.apis["compute.googleapis.com"]'
        )


class TestBucket:
    def test_bucket_is_protected(self, settings):
        (bucket,) = bucket_resources(settings)

        assert bucket.protected
        assert bucket.desired["retention_days"] == 90
        assert bucket.desired["location"] == "europe-west1"


class TestApplication:
    def test_requires_domain(self):
        with pytest.raises(ConfigurationError):
            application_resources(Settings(project_id="demo"), "34.76.1.20", {})

    def test_resources_in_dependency_order(self, settings):
        resources = application_resources(settings, "34.76.1.20", {})
        names = [r.name for r in order_by_dependencies(resources)]

        assert names == ["namespace", "tls-secret", "ingress-nginx", "cert-manager", "app"]
        ingress = next(r for r in resources if r.name == "ingress-nginx")
        assert ingress.desired["values"]["controller"]["service"]["loadBalancerIP"] == "34.76.1.20"
        cert_manager = next(r for r in resources if r.name == "cert-manager")
        assert cert_manager.spec["version"] == "v1.13.0"

    def test_sa_secret_included_when_key_present(self, settings):
        settings = settings.model_copy(update={"gcp_sa_key": '{"type": "service_account"}'})

        resources = {r.name: r for r in application_resources(settings, "34.76.1.20", {})}

        assert "sa-secret" in resources
        assert "sa-secret" in resources["app"].depends_on
        assert "key.json" in resources["sa-secret"].spec["data"]


class TestApplicationValues:
    def test_values_file_merged_with_backup_section(self, settings):
        values = application_values(settings)

        assert values["image"]["tag"] == "0.6.5"
        assert values["backup"] == {"restoreOnDeploy": True, "gcsBucket": "open-webui-backups"}
        assert len(values["webuiSecretKey"]) == 64

    def test_secret_key_reused_from_deployed_release(self, settings):
        values = application_values(settings, deployed={"webuiSecretKey": "kept"})
        assert values["webuiSecretKey"] == "kept"

    def test_values_stable_across_runs(self, settings):
        first = application_values(settings)
        second = application_values(settings, deployed=first)
        assert first == second

    def test_api_key_and_service_account(self, settings):
        settings = settings.model_copy(update={"openrouter_api_key": "sk-or-1", "gcp_sa_key": "{}"})

        values = application_values(settings)

        assert values["openrouterApiKey"] == "sk-or-1"
        assert values["backup"]["gcpServiceAccount"] == "gcp-sa-key"

    def test_missing_values_file(self, tmp_path):
        settings = Settings(values_file=tmp_path / "absent.yaml")
        assert application_values(settings)["backup"]["restoreOnDeploy"] is True
