"""
Run event stream: one JSON object per line in the run's logs.ndjson.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, Optional

from .state import get_run_dir


class EventTypes:
    INIT = "INIT"
    PHASE_START = "PHASE_START"
    PHASE_DONE = "PHASE_DONE"
    LOCATE = "LOCATE"
    ACTION = "ACTION"
    TF_COMMAND = "TF_COMMAND"
    HELM_COMMAND = "HELM_COMMAND"
    WARN = "WARN"
    ERROR = "ERROR"
    ABORTED = "ABORTED"
    FAILED = "FAILED"
    DONE = "DONE"
    DONE_WITH_WARNINGS = "DONE_WITH_WARNINGS"
    # Certificates
    CERT_RESOLVED = "CERT_RESOLVED"
    CERT_SECRET = "CERT_SECRET"
    # Backup/restore
    BACKUP_DONE = "BACKUP_DONE"
    RESTORE_DONE = "RESTORE_DONE"


# Events that settle a run's status; any other known event means it is still going.
# ABORTED is followed by FAILED once the report is written.
TERMINAL_STATUS = {
    EventTypes.INIT: "queued",
    EventTypes.DONE: "converged",
    EventTypes.DONE_WITH_WARNINGS: "converged_with_warnings",
    EventTypes.FAILED: "failed",
    EventTypes.ABORTED: "aborted",
}


def _events_file(run_id: str):
    return get_run_dir(run_id) / "logs.ndjson"


def _parse(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            continue  # partial write


def emit_event(run_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Append an event to the run's event stream.

    Args:
        run_id: Run ID
        event_type: One of EventTypes
        data: Event payload; never carries secret values
    """
    event = {"ts": datetime.now().isoformat(), "type": event_type, "data": data}
    with open(_events_file(run_id), "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()


def read_events(run_id: str) -> list[Dict[str, Any]]:
    logs_file = _events_file(run_id)
    if not logs_file.exists():
        return []
    with open(logs_file, "r") as f:
        return list(_parse(f))


def get_last_event(run_id: str) -> Optional[Dict[str, Any]]:
    events = read_events(run_id)
    return events[-1] if events else None


def get_status_from_events(run_id: str) -> str:
    """
    Derive a run's status from its last event.

    A PHASE_DONE event reports "<phase>_done" so a stalled run shows how far
    it got.

    Args:
        run_id: Run ID

    Returns:
        Status string, "unknown" for a run without events
    """
    last_event = get_last_event(run_id)
    if not last_event:
        return "unknown"

    event_type = last_event.get("type", "")
    if event_type == EventTypes.PHASE_DONE:
        phase = last_event.get("data", {}).get("phase", "")
        return f"{phase}_done" if phase else "running"
    if event_type in TERMINAL_STATUS:
        return TERMINAL_STATUS[event_type]
    if event_type in vars(EventTypes).values():
        return "running"
    return "unknown"


def tail_events(run_id: str, follow: bool = False):
    """
    Yield events as they are written.

    Args:
        run_id: Run ID
        follow: Keep polling for new events until interrupted

    Yields:
        Event dictionaries
    """
    logs_file = _events_file(run_id)
    if not logs_file.exists():
        return

    offset = 0
    while True:
        try:
            if logs_file.stat().st_size > offset:
                with open(logs_file, "rb") as f:
                    f.seek(offset)
                    chunk = f.read()
                # a trailing line without its newline is still being written
                complete = chunk.rfind(b"\n") + 1
                if complete:
                    yield from _parse(chunk[:complete].decode("utf-8").splitlines())
                    offset += complete
            if not follow:
                return
            time.sleep(0.1)
        except (FileNotFoundError, KeyboardInterrupt):
            break
