"""
Data models for managed resources, reconciliation results and phase reports.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class BackingStore(Enum):
    """Where a managed resource lives."""
    CLOUD = "cloud-resource"
    CLUSTER = "cluster-object"
    STORAGE = "storage-object"


class LifecyclePolicy(Enum):
    EPHEMERAL = "ephemeral"
    PROTECTED = "persistent-protected"


class Presence(Enum):
    """Three-way lookup result."""
    ABSENT = "absent"
    PRESENT_EXTERNAL = "present-external"
    PRESENT_IN_STATE = "present-in-state"


class ActionKind(Enum):
    ADOPT = "adopt"
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    SKIP = "skip"


class PhaseStatus(Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FATAL = "fatal"


@dataclass
class ManagedResource:
    """A resource the reconciler converges."""
    name: str                   # logical name, unique within a desired set
    kind: str                   # "google_compute_address", "namespace", "helm_release", ...
    store: BackingStore
    identity: str               # cloud path, "namespace/name", bucket name
    desired: Dict[str, Any] = field(default_factory=dict)
    policy: LifecyclePolicy = LifecyclePolicy.EPHEMERAL
    depends_on: List[str] = field(default_factory=list)
    address: Optional[str] = None   # terraform address, cloud resources only
    spec: Dict[str, Any] = field(default_factory=dict)  # driver inputs not compared for drift

    @property
    def protected(self) -> bool:
        return self.policy is LifecyclePolicy.PROTECTED


@dataclass
class Location:
    """Result of locating a resource."""
    presence: Presence
    identity: Optional[str] = None
    recorded: Optional[Dict[str, Any]] = None

    @classmethod
    def absent(cls) -> "Location":
        return cls(Presence.ABSENT)

    @classmethod
    def external(cls, identity: str, observed: Optional[Dict[str, Any]] = None) -> "Location":
        return cls(Presence.PRESENT_EXTERNAL, identity, observed)

    @classmethod
    def in_state(cls, identity: str, recorded: Optional[Dict[str, Any]] = None) -> "Location":
        return cls(Presence.PRESENT_IN_STATE, identity, recorded or {})


@dataclass
class ResourceAction:
    resource: str
    action: ActionKind
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"resource": self.resource, "action": self.action.value, "detail": self.detail}


@dataclass
class ResourceError:
    resource: str
    error: Exception
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "error": type(self.error).__name__,
            "message": str(self.error),
            "retryable": self.retryable,
        }


@dataclass
class ReconcileResult:
    applied: List[ResourceAction] = field(default_factory=list)
    errors: List[ResourceError] = field(default_factory=list)
    skipped: List[ResourceAction] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    halted: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and not self.halted

    def actions_for(self, name: str) -> List[ActionKind]:
        return [a.action for a in self.applied if a.resource == name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": [a.to_dict() for a in self.applied],
            "skipped": [a.to_dict() for a in self.skipped],
            "errors": [e.to_dict() for e in self.errors],
            "warnings": self.warnings,
            "halted": self.halted,
        }


@dataclass
class DeploymentTarget:
    cluster: str
    namespace: str
    release: str


@dataclass
class CertificateBundle:
    domain: str
    certificate: bytes          # PEM
    private_key: bytes          # PEM
    source: str                 # "cache" | "local" | "generated"
    expiry: Optional[datetime] = None
    subject_alt_names: List[str] = field(default_factory=list)


@dataclass
class BackupSnapshot:
    timestamp: datetime
    size: int
    key: str
    retention_class: str        # "rolling" | "pinned"
    sha256: Optional[str] = None


@dataclass
class PhaseResult:
    """Outcome of one pipeline phase."""
    phase: str
    status: PhaseStatus = PhaseStatus.SUCCESS
    actions: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        if self.status is PhaseStatus.SUCCESS:
            self.status = PhaseStatus.WARNING

    def record(self, resource: str, action: str, detail: str = "") -> None:
        self.actions.append({"resource": resource, "action": action, "detail": detail})

    def fail(self, error: Exception) -> None:
        self.status = PhaseStatus.FATAL
        self.error = f"{type(error).__name__}: {error}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "status": self.status.value,
            "actions": self.actions,
            "warnings": self.warnings,
            "error": self.error,
        }
