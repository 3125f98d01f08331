"""
Helm CLI wrapper for release installs and lookups.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import CommandError
from .events import emit_event, EventTypes
from .state import get_run_dir

logger = logging.getLogger(__name__)


class Helm:
    """Thin wrapper around the helm binary."""

    def __init__(self, run_id: Optional[str] = None, binary: str = "helm"):
        self.run_id = run_id
        self.binary = binary

    def _run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        command = [self.binary] + args
        logger.debug(f"Running {' '.join(command)}")

        result = subprocess.run(command, capture_output=True, text=True)

        if self.run_id:
            with open(get_run_dir(self.run_id) / "helm.log", "a") as log_file:
                log_file.write(f"=== {' '.join(command)} ===\n")
                log_file.write(result.stdout)
                log_file.write(result.stderr)
            if args and args[0] in ("upgrade", "repo"):
                emit_event(self.run_id, EventTypes.HELM_COMMAND, {
                    "args": args[:3],
                    "ok": result.returncode == 0,
                })

        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stderr.splitlines()[-40:])
        return result

    def repo_add(self, name: str, url: str) -> None:
        # --force-update makes re-adding an existing repo a no-op
        self._run(["repo", "add", name, url, "--force-update"])

    def repo_update(self) -> None:
        self._run(["repo", "update"])

    def status(self, release: str, namespace: str) -> Optional[Dict[str, Any]]:
        """
        Release status, or None if the release does not exist.

        Raises:
            CommandError: If helm fails for another reason than "not found"
        """
        result = self._run(["status", release, "-n", namespace, "-o", "json"], check=False)
        if result.returncode != 0:
            if "not found" in result.stderr.lower():
                return None
            raise CommandError([self.binary, "status", release], result.returncode,
                               result.stderr.splitlines()[-40:])
        return json.loads(result.stdout)

    def get_values(self, release: str, namespace: str) -> Dict[str, Any]:
        result = self._run(["get", "values", release, "-n", namespace, "-o", "json"])
        return json.loads(result.stdout or "{}") or {}

    def upgrade_install(
        self,
        release: str,
        chart: str,
        namespace: str,
        values: Optional[Dict[str, Any]] = None,
        values_file: Optional[Path] = None,
        create_namespace: bool = True,
        wait: bool = False,
        timeout: str = "5m",
        version: Optional[str] = None,
    ) -> None:
        """
        Install or upgrade a release.

        Args:
            release: Release name
            chart: Chart reference (repo/chart or local directory)
            namespace: Target namespace
            values: Values written to a file next to the run records
            values_file: Existing values file to pass instead
            create_namespace: Pass --create-namespace
            wait: Pass --wait
            timeout: Helm timeout
            version: Chart version
        """
        args = ["upgrade", "--install", release, chart, "-n", namespace, "--timeout", timeout]
        if version:
            args += ["--version", version]
        if create_namespace:
            args.append("--create-namespace")
        if wait:
            args.append("--wait")

        if values is not None and values_file is None:
            values_file = self.write_values(release, values)
        if values_file is not None:
            args += ["-f", str(values_file)]

        self._run(args)

    def uninstall(self, release: str, namespace: str) -> None:
        self._run(["uninstall", release, "-n", namespace])

    def write_values(self, release: str, values: Dict[str, Any]) -> Path:
        """Write values to <run dir>/<release>-values.yaml."""
        if self.run_id:
            target = get_run_dir(self.run_id) / f"{release}-values.yaml"
        else:
            target = Path(f"{release}-values.yaml")
        with open(target, "w") as f:
            yaml.safe_dump(values, f, default_flow_style=False, sort_keys=False)
        target.chmod(0o600)
        return target
