"""
Backup/restore coordinator for the application's SQLite database.

Snapshots are stored twice: under a timestamped key in backups/ (expired
by the bucket lifecycle rule) and under the fixed latest/ key that
restores read from.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from kubernetes.client.rest import ApiException

from ..errors import ResourceLookupError, RestoreDataMissing, RestoreIntegrityError
from ..events import emit_event, EventTypes
from ..kube import ClusterClient
from ..models import BackupSnapshot, DeploymentTarget
from ..storage import ObjectStore, timestamp_key
from .states import CoordinatorState, StateMachine

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"
DB_FILENAME = "webui.db"
BACKUP_PREFIX = "backups"
LATEST_KEY = f"latest/{DB_FILENAME}"


@dataclass
class BackupOutcome:
    state: CoordinatorState
    snapshot: Optional[BackupSnapshot] = None
    warning: Optional[str] = None


@dataclass
class RestoreOutcome:
    state: CoordinatorState
    snapshot: Optional[BackupSnapshot] = None
    warning: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def restored(self) -> bool:
        return self.state is CoordinatorState.READY and self.snapshot is not None


class BackupCoordinator:
    """Copies the database out of the running pod, and back into fresh volumes."""

    def __init__(
        self,
        store: ObjectStore,
        kube: Optional[ClusterClient] = None,
        target: Optional[DeploymentTarget] = None,
        db_path: str = "/app/backend/data/webui.db",
        run_id: Optional[str] = None,
    ):
        self.store = store
        self.kube = kube
        self.target = target or DeploymentTarget("open-webui-cluster", "ai", "open-webui")
        self.db_path = db_path
        self.run_id = run_id
        self.machine = StateMachine()

    @property
    def state(self) -> CoordinatorState:
        return self.machine.state

    def _emit(self, event_type: str, data) -> None:
        if self.run_id:
            emit_event(self.run_id, event_type, data)

    def backup(self) -> BackupOutcome:
        """
        Snapshot the database of the running application pod.

        A missing pod, a missing or empty database, or an upload failure
        ends back in idle with a warning: first deployments have no data yet.

        Returns:
            BackupOutcome with the uploaded snapshot, or a warning
        """
        self.machine.transition(CoordinatorState.BACKING_UP)
        outcome = BackupOutcome(CoordinatorState.IDLE)
        try:
            outcome.snapshot = self._backup()
        except _Skip as e:
            outcome.warning = str(e)
        except (ResourceLookupError, ApiException, GoogleAPIError, GoogleAuthError, OSError) as e:
            outcome.warning = f"Backup failed: {e}"
        finally:
            self.machine.transition(CoordinatorState.IDLE)

        if outcome.warning:
            logger.warning(outcome.warning)
            self._emit(EventTypes.WARN, {"phase": "backup", "message": outcome.warning})
        self._emit(EventTypes.BACKUP_DONE, {
            "key": outcome.snapshot.key if outcome.snapshot else None,
            "size": outcome.snapshot.size if outcome.snapshot else 0,
        })
        return outcome

    def _backup(self) -> BackupSnapshot:
        if self.kube is None:
            raise _Skip("No cluster connection, skipping backup")

        target = self.target
        pod = self.kube.find_pod(target.namespace, f"app.kubernetes.io/name={target.release}")
        if pod is None:
            raise _Skip(f"No {target.release} pod in {target.namespace} on {target.cluster}, nothing to back up")

        data = self.kube.read_file(target.namespace, pod, self.db_path)
        if data is None:
            raise _Skip(f"Database {self.db_path} not found in {pod}, nothing to back up")
        if not data:
            raise _Skip(f"Database {self.db_path} in {pod} is empty, nothing to back up")
        if not data.startswith(SQLITE_HEADER):
            raise _Skip(f"{self.db_path} in {pod} is not a SQLite database, skipping backup")

        when = datetime.utcnow()
        key = timestamp_key(BACKUP_PREFIX, DB_FILENAME, when)
        metadata = {"source_pod": pod, "created": when.isoformat() + "Z"}

        self.store.put(key, data, metadata=metadata)
        self.store.put(LATEST_KEY, data, metadata=dict(metadata, snapshot=key))
        logger.info(f"Backed up {len(data)} bytes from {pod} to {key}")

        return BackupSnapshot(
            timestamp=when,
            size=len(data),
            key=key,
            retention_class="rolling",
            sha256=hashlib.sha256(data).hexdigest(),
        )

    def restore(self, target: Path) -> RestoreOutcome:
        """
        Restore the latest snapshot into target before the app starts.

        No snapshot means a cold start (ready, empty database). A corrupt
        or partial download leaves target untouched and ends in
        restore-failed.

        Args:
            target: Database path on the freshly provisioned volume

        Returns:
            RestoreOutcome
        """
        target = Path(target)
        self.machine.transition(CoordinatorState.RESTORING)

        try:
            snapshot = self._restore(target)
        except RestoreDataMissing as e:
            outcome = RestoreOutcome(CoordinatorState.READY, warning=str(e), error=e)
        except (RestoreIntegrityError, ResourceLookupError, GoogleAPIError, GoogleAuthError, OSError) as e:
            outcome = RestoreOutcome(
                CoordinatorState.RESTORE_FAILED,
                warning=f"Restore failed, starting with the existing database: {e}",
                error=e,
            )
        else:
            outcome = RestoreOutcome(CoordinatorState.READY, snapshot=snapshot)

        self.machine.transition(outcome.state)
        if outcome.warning:
            logger.warning(outcome.warning)
            self._emit(EventTypes.WARN, {"phase": "restore", "message": outcome.warning})
        self._emit(EventTypes.RESTORE_DONE, {
            "state": outcome.state.value,
            "key": outcome.snapshot.key if outcome.snapshot else None,
        })
        return outcome

    def _restore(self, target: Path) -> BackupSnapshot:
        info = self.store.stat(LATEST_KEY)
        if info is None:
            raise RestoreDataMissing(f"gs://{self.store.bucket_name}/{LATEST_KEY}")

        data = self.store.get(LATEST_KEY)
        if data is None:
            raise RestoreDataMissing(f"gs://{self.store.bucket_name}/{LATEST_KEY}")

        digest = hashlib.sha256(data).hexdigest()
        verify_snapshot(data, expected_size=info.get("size"), expected_sha256=info["metadata"].get("sha256"))

        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".restore-tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, target)
        finally:
            if tmp.exists():
                tmp.unlink()

        logger.info(f"Restored {len(data)} bytes into {target}")
        return BackupSnapshot(
            timestamp=info.get("updated") or datetime.utcnow(),
            size=len(data),
            key=LATEST_KEY,
            retention_class="pinned",
            sha256=digest,
        )

    def list_snapshots(self) -> List[BackupSnapshot]:
        """Timestamped snapshots, newest first."""
        snapshots = []
        for item in self.store.list(f"{BACKUP_PREFIX}/"):
            if not item["key"].endswith(f"/{DB_FILENAME}"):
                continue
            snapshots.append(BackupSnapshot(
                timestamp=item["updated"],
                size=item["size"] or 0,
                key=item["key"],
                retention_class="rolling",
                sha256=item["metadata"].get("sha256"),
            ))
        return sorted(snapshots, key=lambda s: s.key, reverse=True)

    def latest_snapshot(self) -> Optional[BackupSnapshot]:
        info = self.store.stat(LATEST_KEY)
        if info is None:
            return None
        return BackupSnapshot(
            timestamp=info["updated"],
            size=info["size"] or 0,
            key=LATEST_KEY,
            retention_class="pinned",
            sha256=info["metadata"].get("sha256"),
        )


class _Skip(Exception):
    """Nothing to back up; reported as a warning."""


def verify_snapshot(data: bytes, expected_size: Optional[int] = None, expected_sha256: Optional[str] = None) -> None:
    """
    Reject truncated or corrupt snapshots.

    Raises:
        RestoreIntegrityError: If size, digest or SQLite header do not match
    """
    if expected_size is not None and len(data) != expected_size:
        raise RestoreIntegrityError(f"Snapshot truncated: got {len(data)} of {expected_size} bytes")
    if expected_sha256 and hashlib.sha256(data).hexdigest() != expected_sha256:
        raise RestoreIntegrityError("Snapshot digest mismatch")
    if not data.startswith(SQLITE_HEADER):
        raise RestoreIntegrityError("Snapshot is not a SQLite database")
