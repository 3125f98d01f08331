"""
Tests for the terraform wrapper.
"""

import json
from unittest.mock import MagicMock, Mock, patch

import pytest

from tether.errors import CommandError
from tether.events import read_events
from tether.ids import new_run_id
from tether.state import create_run_dir, get_run_dir
from tether.terraform import Terraform, parse_show_json

SHOW_JSON = {
    "format_version": "1.0",
    "values": {
        "root_module": {
            "resources": [
                {
                    "address": "google_compute_address.ingress_ip",
                    "mode": "managed",
                    "values": {"name": "open-webui-cluster-ingress-ip", "address": "34.76.1.20"},
                },
                {
                    "address": "data.google_client_config.current",
                    "mode": "data",
                    "values": {"project": "demo"},
                },
            ],
            "child_modules": [
                {
                    "resources": [
                        {
                            "address": "module.gke.google_container_cluster.cluster",
                            "mode": "managed",
                            "values": {"name": "open-webui-cluster"},
                        }
                    ]
                }
            ],
        }
    },
}


def fake_popen(lines, returncode=0):
    process = MagicMock()
    process.stdout = iter(line + "\n" for line in lines)
    process.returncode = returncode
    return process


class TestParseShowJson:
    def test_managed_resources_including_child_modules(self):
        resources = parse_show_json(json.dumps(SHOW_JSON))

        assert set(resources) == {
            "google_compute_address.ingress_ip",
            "module.gke.google_container_cluster.cluster",
        }
        assert resources["google_compute_address.ingress_ip"]["address"] == "34.76.1.20"

    def test_empty_state(self):
        assert parse_show_json("") == {}
        assert parse_show_json(json.dumps({"format_version": "1.0"})) == {}


class TestTerraform:
    @patch("tether.terraform.subprocess.run")
    def test_recorded_reads_and_caches_state(self, mock_run, tmp_path):
        mock_run.return_value = Mock(returncode=0, stdout=json.dumps(SHOW_JSON), stderr="")
        tf = Terraform(tmp_path)

        assert tf.recorded("google_compute_address.ingress_ip")["name"] == "open-webui-cluster-ingress-ip"
        assert tf.recorded("google_container_cluster.cluster") is None
        assert mock_run.call_count == 1
        assert mock_run.call_args[0][0] == ["terraform", "show", "-json", "-no-color"]

    @patch("tether.terraform.subprocess.run")
    def test_variables_exported(self, mock_run, tmp_path):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
        tf = Terraform(tmp_path, variables={"project_id": "demo", "region": "europe-west1"})

        tf.resources()

        env = mock_run.call_args.kwargs["env"]
        assert env["TF_VAR_project_id"] == "demo"
        assert env["TF_VAR_region"] == "europe-west1"

    @patch("tether.terraform.subprocess.Popen")
    def test_targeted_apply(self, mock_popen, tmp_path):
        mock_popen.return_value = fake_popen(["Apply complete!"])
        tf = Terraform(tmp_path)

        tf.apply(["google_container_cluster.cluster"])

        args = mock_popen.call_args[0][0]
        assert args[:2] == ["terraform", "apply"]
        assert "-auto-approve" in args
        assert "-lock-timeout=5m" in args
        assert args[-1] == "-target=google_container_cluster.cluster"

    @patch("tether.terraform.subprocess.Popen")
    def test_import(self, mock_popen, tmp_path):
        mock_popen.return_value = fake_popen(["Import successful!"])
        tf = Terraform(tmp_path)

        tf.import_resource("google_compute_address.ingress_ip", "projects/demo/regions/europe-west1/addresses/ip")

        args = mock_popen.call_args[0][0]
        assert args[1] == "import"
        assert args[-2:] == ["google_compute_address.ingress_ip", "projects/demo/regions/europe-west1/addresses/ip"]

    @patch("tether.terraform.subprocess.Popen")
    def test_failure_raises_with_last_lines(self, mock_popen, tmp_path):
        mock_popen.return_value = fake_popen(["Error: quota exceeded"], returncode=1)
        tf = Terraform(tmp_path)

        with pytest.raises(CommandError) as exc:
            tf.destroy(["google_container_node_pool.primary"])

        assert exc.value.returncode == 1
        assert exc.value.last_lines == ["Error: quota exceeded"]

    @patch("tether.terraform.subprocess.Popen")
    def test_output_logged_and_event_emitted(self, mock_popen, tmp_path):
        run_id = new_run_id()
        create_run_dir(run_id)
        mock_popen.return_value = fake_popen(["Apply complete! Resources: 1 added."])
        tf = Terraform(tmp_path, run_id=run_id)

        tf.apply(["google_compute_address.ingress_ip"])

        log = (get_run_dir(run_id) / "terraform.log").read_text()
        assert "Apply complete!" in log
        event = read_events(run_id)[-1]
        assert event["type"] == "TF_COMMAND"
        assert event["data"] == {"args": ["apply", "-target=google_compute_address.ingress_ip"], "ok": True}

    @patch("tether.terraform.subprocess.Popen")
    def test_mutation_invalidates_cache(self, mock_popen, tmp_path):
        mock_popen.return_value = fake_popen([])
        tf = Terraform(tmp_path)
        tf._state_cache = {"stale": {}}

        tf.apply()

        assert tf._state_cache is None

    @patch("tether.terraform.subprocess.Popen")
    def test_init_skipped_when_initialized(self, mock_popen, tmp_path):
        (tmp_path / ".terraform").mkdir()
        assert Terraform(tmp_path).ensure_init() is False
        mock_popen.assert_not_called()

    @patch("tether.terraform.subprocess.run")
    def test_missing_output_is_none(self, mock_run, tmp_path):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="Output not found")
        assert Terraform(tmp_path).output("ingress_ip") is None

    @patch("tether.terraform.subprocess.run")
    def test_output_value(self, mock_run, tmp_path):
        mock_run.return_value = Mock(returncode=0, stdout="34.76.1.20\n", stderr="")
        assert Terraform(tmp_path).output("ingress_ip") == "34.76.1.20"
        assert mock_run.call_args[0][0] == ["terraform", "output", "-raw", "ingress_ip"]
