"""
Terraform wrapper used by the cloud-resource driver.
"""

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import CommandError
from .events import emit_event, EventTypes
from .state import get_run_dir

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = "5m"


class Terraform:
    """
    Runs terraform in a fixed working directory.

    State mutations go through terraform itself, so concurrent runs are
    serialized by its state lock.
    """

    def __init__(self, working_dir: Path, variables: Optional[Dict[str, str]] = None,
                 run_id: Optional[str] = None, binary: str = "terraform"):
        self.working_dir = Path(working_dir)
        self.variables = variables or {}
        self.run_id = run_id
        self.binary = binary
        self._state_cache: Optional[Dict[str, Dict[str, Any]]] = None

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        for key, value in self.variables.items():
            env[f"TF_VAR_{key}"] = str(value)
        env["TF_IN_AUTOMATION"] = "1"
        return env

    def _log_path(self) -> Optional[Path]:
        if not self.run_id:
            return None
        return get_run_dir(self.run_id) / "terraform.log"

    def _run(self, args: List[str], capture: bool = False) -> str:
        """
        Run a terraform command.

        Args:
            args: Arguments after the terraform binary
            capture: Return stdout only (no log streaming), for JSON/raw outputs

        Returns:
            Command output

        Raises:
            CommandError: If terraform exits non-zero
        """
        command = [self.binary] + args
        logger.debug(f"Running {' '.join(command)} in {self.working_dir}")

        if capture:
            result = subprocess.run(
                command,
                cwd=self.working_dir,
                env=self._env(),
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                raise CommandError(command, result.returncode, result.stderr.splitlines()[-40:])
            return result.stdout

        process = subprocess.Popen(
            command,
            cwd=self.working_dir,
            env=self._env(),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )

        output_lines = []
        log_path = self._log_path()
        log_file = open(log_path, "a") if log_path else None
        try:
            if log_file:
                log_file.write(f"=== {' '.join(command)} ===\n")
            for line in process.stdout:
                line = line.rstrip()
                output_lines.append(line)
                if log_file:
                    log_file.write(line + "\n")
                    log_file.flush()
            process.wait()
        finally:
            if log_file:
                log_file.close()

        if self.run_id:
            emit_event(self.run_id, EventTypes.TF_COMMAND, {
                "args": args[:1] + [a for a in args[1:] if a.startswith("-target")],
                "ok": process.returncode == 0,
            })

        if process.returncode != 0:
            raise CommandError(command, process.returncode, output_lines[-40:])

        return "\n".join(output_lines)

    def ensure_init(self) -> bool:
        """
        Run terraform init if the working directory was never initialized.

        Returns:
            True if init ran
        """
        if (self.working_dir / ".terraform").exists():
            return False
        self._run(["init", "-input=false", "-no-color"])
        return True

    def resources(self) -> Dict[str, Dict[str, Any]]:
        """
        Recorded resources keyed by address, from `terraform show -json`.

        Returns:
            Mapping of address to recorded attribute values
        """
        if self._state_cache is None:
            raw = self._run(["show", "-json", "-no-color"], capture=True)
            self._state_cache = parse_show_json(raw)
        return self._state_cache

    def recorded(self, address: str) -> Optional[Dict[str, Any]]:
        return self.resources().get(address)

    def import_resource(self, address: str, import_id: str) -> None:
        self._run(["import", "-input=false", "-no-color", f"-lock-timeout={LOCK_TIMEOUT}", address, import_id])
        self._state_cache = None

    def apply(self, targets: Optional[List[str]] = None) -> None:
        args = ["apply", "-auto-approve", "-input=false", "-no-color", f"-lock-timeout={LOCK_TIMEOUT}"]
        args += [f"-target={t}" for t in targets or []]
        self._run(args)
        self._state_cache = None

    def destroy(self, targets: Optional[List[str]] = None) -> None:
        args = ["destroy", "-auto-approve", "-input=false", "-no-color", f"-lock-timeout={LOCK_TIMEOUT}"]
        args += [f"-target={t}" for t in targets or []]
        self._run(args)
        self._state_cache = None

    def output(self, name: str) -> Optional[str]:
        """Raw value of one output, or None if it does not exist."""
        try:
            value = self._run(["output", "-raw", name], capture=True).strip()
        except CommandError:
            return None
        return value or None


def parse_show_json(raw: str) -> Dict[str, Dict[str, Any]]:
    """
    Flatten `terraform show -json` output into {address: values}.

    Args:
        raw: JSON document printed by terraform show

    Returns:
        Recorded resources, including those of child modules
    """
    if not raw.strip():
        return {}

    document = json.loads(raw)
    root = document.get("values", {}).get("root_module", {})

    resources: Dict[str, Dict[str, Any]] = {}
    pending = [root]
    while pending:
        module = pending.pop()
        for resource in module.get("resources", []):
            if resource.get("mode", "managed") == "managed":
                resources[resource["address"]] = resource.get("values") or {}
        pending.extend(module.get("child_modules", []))

    return resources
