"""
Typed errors for reconciliation, certificate and backup phases.
"""

from typing import List, Optional


class TetherError(Exception):
    """Base class for all tether errors."""

    retryable = False
    fatal = True


class ConfigurationError(TetherError):
    """A required setting is missing or invalid."""


class ResourceLookupError(TetherError):
    """A backing store could not be queried (network, auth, quota)."""

    retryable = True

    def __init__(self, resource: str, reason: str):
        super().__init__(f"Lookup failed for {resource}: {reason}")
        self.resource = resource
        self.reason = reason


class DependencyUnresolved(TetherError):
    """A prerequisite resource did not converge in this run."""

    def __init__(self, resource: str, missing: List[str]):
        super().__init__(
            f"Cannot apply {resource}: unresolved dependencies {', '.join(missing)}"
        )
        self.resource = resource
        self.missing = missing


class ProtectedResourceViolation(TetherError):
    """A destructive action targeted a persistent-protected resource."""

    def __init__(self, resource: str):
        super().__init__(
            f"Refusing to destroy persistent-protected resource {resource} "
            "(pass the protection override to allow it)"
        )
        self.resource = resource


class RestoreDataMissing(TetherError):
    """No snapshot exists yet; the application starts with an empty database."""

    fatal = False

    def __init__(self, key: str):
        super().__init__(f"No snapshot found at {key}, starting cold")
        self.key = key


class RestoreIntegrityError(TetherError):
    """A downloaded snapshot is truncated or corrupt."""

    fatal = False


class CertificateSourceUnavailable(TetherError):
    """A certificate source could not supply a bundle."""

    def __init__(self, domain: str, reasons: Optional[List[str]] = None):
        self.domain = domain
        self.reasons = reasons or []
        detail = "; ".join(self.reasons) if self.reasons else "no source available"
        super().__init__(f"No certificate for {domain}: {detail}")


class CommandError(TetherError):
    """An external CLI (terraform, helm, gcloud) exited non-zero."""

    def __init__(self, command: List[str], returncode: int, last_lines: Optional[List[str]] = None):
        self.command = command
        self.returncode = returncode
        self.last_lines = last_lines or []
        super().__init__(f"Command failed ({returncode}): {' '.join(command)}")
