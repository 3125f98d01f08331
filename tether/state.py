"""
Run directories: one per tether invocation, holding its records.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .ids import is_valid_run_id


def get_tether_home() -> Path:
    """
    Get the tether home directory.

    Returns:
        Path: tether home directory
    """
    return Path(os.environ.get("TETHER_HOME", ".tether")).resolve()


def get_run_dir(run_id: str) -> Path:
    """
    Get the directory for a specific run.

    Args:
        run_id: Run ID

    Returns:
        Path: Run directory

    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")

    return get_tether_home() / run_id


def create_run_dir(run_id: str) -> Path:
    """Create run directory and return its path."""
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def write_run_json(run_id: str, command: str, settings: Dict[str, Any]) -> None:
    """
    Write the run's command and (redacted) settings to run.json.

    Args:
        run_id: Run ID
        command: CLI command that started the run
        settings: Redacted settings dictionary
    """
    run_data = {
        "command": command,
        "settings": settings,
        "created_at": datetime.now().isoformat(),
    }

    with open(get_run_dir(run_id) / "run.json", "w") as f:
        json.dump(run_data, f, indent=2)


def write_report_json(run_id: str, report: Dict[str, Any]) -> None:
    """Write the per-phase report of a finished run."""
    with open(get_run_dir(run_id) / "report.json", "w") as f:
        json.dump(report, f, indent=2, default=str)


def read_report_json(run_id: str) -> Optional[Dict[str, Any]]:
    report_file = get_run_dir(run_id) / "report.json"

    if not report_file.exists():
        return None

    with open(report_file, "r") as f:
        return json.load(f)


def list_runs() -> list[str]:
    """
    List all run IDs, most recent first.
    """
    home = get_tether_home()

    if not home.exists():
        return []

    runs = [item.name for item in home.iterdir() if item.is_dir() and is_valid_run_id(item.name)]
    return sorted(runs, reverse=True)


def run_exists(run_id: str) -> bool:
    run_dir = get_run_dir(run_id)
    return run_dir.exists() and (run_dir / "run.json").exists()
