"""
Tests for the click CLI.
"""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from conftest import FakeObjectStore, SQLITE_DB
from tether.backup import LATEST_KEY
from tether.cli import main
from tether.events import emit_event, EventTypes
from tether.ids import new_run_id
from tether.state import create_run_dir, write_run_json


def report(status="converged", phase_status="success"):
    return {
        "run_id": "r-20250101-120000-abcd",
        "command": "deploy",
        "status": status,
        "phases": [{
            "phase": "infrastructure",
            "status": phase_status,
            "actions": [{"resource": "cluster", "action": "create", "detail": ""}],
            "warnings": [],
            "error": None,
        }],
    }


def last_json(output):
    """The JSON document printed last (log lines may precede it)."""
    return json.loads(output.strip().splitlines()[-1])


@pytest.fixture
def runner():
    return CliRunner()


class TestDeployCommands:
    @patch("tether.cli.pipeline.deploy")
    def test_deploy_success_exit_zero(self, mock_deploy, runner):
        mock_deploy.return_value = report()

        result = runner.invoke(main, ["deploy", "--project", "demo", "--domain", "ai.example.com"])

        assert result.exit_code == 0
        assert "CONVERGED" in result.output
        settings = mock_deploy.call_args[0][0]
        assert settings.project_id == "demo"
        assert settings.domain == "ai.example.com"

    @patch("tether.cli.pipeline.deploy")
    def test_deploy_failure_exit_one(self, mock_deploy, runner):
        mock_deploy.return_value = report(status="failed", phase_status="fatal")

        result = runner.invoke(main, ["deploy", "--project", "demo"])

        assert result.exit_code == 1

    @patch("tether.cli.pipeline.deploy")
    def test_warnings_exit_zero(self, mock_deploy, runner):
        mock_deploy.return_value = report(status="converged_with_warnings", phase_status="warning")

        result = runner.invoke(main, ["--json", "infra", "--project", "demo"])

        assert result.exit_code == 0
        assert last_json(result.output)["status"] == "converged_with_warnings"
        assert mock_deploy.call_args.kwargs["infrastructure_only"] is True

    @patch("tether.cli.pipeline.destroy")
    def test_destroy_no_preserve_ip(self, mock_destroy, runner):
        mock_destroy.return_value = report()

        result = runner.invoke(main, ["destroy", "--project", "demo", "--no-preserve-ip", "--yes"])

        assert result.exit_code == 0
        assert mock_destroy.call_args[0][0].preserve_ip is False

    @patch("tether.cli.pipeline.destroy")
    def test_destroy_asks_for_confirmation(self, mock_destroy, runner):
        result = runner.invoke(main, ["destroy", "--project", "demo"], input="n\n")

        assert result.exit_code == 1
        mock_destroy.assert_not_called()


class TestRestoreCommand:
    def test_restore_latest(self, runner, tmp_path):
        store = FakeObjectStore()
        store.put(LATEST_KEY, SQLITE_DB)
        target = tmp_path / "webui.db"

        with patch("tether.cli.ObjectStore", return_value=store):
            result = runner.invoke(main, ["restore", "--target", str(target)])

        assert result.exit_code == 0
        assert target.read_bytes() == SQLITE_DB

    def test_no_snapshot_is_not_an_error(self, runner, tmp_path):
        with patch("tether.cli.ObjectStore", return_value=FakeObjectStore()):
            result = runner.invoke(main, ["restore", "--target", str(tmp_path / "webui.db"), "--strict"])

        assert result.exit_code == 0
        assert "ready:" in result.output

    def test_strict_corrupt_snapshot_fails(self, runner, tmp_path):
        store = FakeObjectStore()
        store.put(LATEST_KEY, b"garbage")

        with patch("tether.cli.ObjectStore", return_value=store):
            lenient = runner.invoke(main, ["restore", "--target", str(tmp_path / "a.db")])
            strict = runner.invoke(main, ["restore", "--target", str(tmp_path / "b.db"), "--strict"])

        assert lenient.exit_code == 0
        assert strict.exit_code == 1


class TestRunCommands:
    def _run(self, *events):
        run_id = new_run_id()
        create_run_dir(run_id)
        write_run_json(run_id, "deploy", {"project_id": "demo"})
        for event_type, data in events:
            emit_event(run_id, event_type, data)
        return run_id

    def test_status(self, runner):
        run_id = self._run((EventTypes.INIT, {}), (EventTypes.DONE, {}))

        result = runner.invoke(main, ["status", run_id])

        assert result.exit_code == 0
        assert "CONVERGED" in result.output

    def test_status_unknown_run(self, runner):
        result = runner.invoke(main, ["status", "r-20250101-120000-zzzz"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_status_invalid_id(self, runner):
        result = runner.invoke(main, ["status", "bogus"])
        assert result.exit_code == 1

    def test_runs_json(self, runner):
        run_id = self._run((EventTypes.INIT, {}))

        result = runner.invoke(main, ["--json", "runs"])

        assert last_json(result.output)["runs"] == [{"run_id": run_id, "status": "queued"}]

    def test_logs(self, runner):
        run_id = self._run((EventTypes.PHASE_START, {"phase": "infrastructure"}),
                           (EventTypes.WARN, {"message": "slow start"}))

        result = runner.invoke(main, ["logs", run_id])

        assert "PHASE_START: infrastructure" in result.output
        assert "WARN: slow start" in result.output


class TestCertCommand:
    def test_requires_domain(self, runner):
        result = runner.invoke(main, ["cert"])
        assert result.exit_code == 1
        assert "domain" in result.output

    def test_resolves_certificate(self, runner, tmp_path, monkeypatch):
        monkeypatch.setenv("CERTS_DIR", str(tmp_path / "certs"))
        store = FakeObjectStore()

        with patch("tether.pipeline.ObjectStore", return_value=store):
            result = runner.invoke(main, ["--json", "cert", "--domain", "ai.example.com"])

        assert result.exit_code == 0
        data = last_json(result.output)
        assert data["source"] == "generated"
        assert data["subject_alt_names"] == ["ai.example.com"]
        assert data["secret_created"] is None
