"""
State reconciler: converges a desired set of managed resources.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from ..errors import DependencyUnresolved, ProtectedResourceViolation, TetherError
from ..events import emit_event, EventTypes
from ..models import (
    ActionKind, Location, ManagedResource, Presence, ReconcileResult,
    ResourceAction, ResourceError,
)
from .locator import Locator

logger = logging.getLogger(__name__)


class Reconciler:
    """Create-or-adopt decisions for each resource, in dependency order."""

    def __init__(self, locator: Locator, run_id: Optional[str] = None):
        self.locator = locator
        self.run_id = run_id

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.run_id:
            emit_event(self.run_id, event_type, data)

    def _record(self, result: ReconcileResult, action: ResourceAction) -> None:
        if action.action is ActionKind.SKIP:
            result.skipped.append(action)
        else:
            result.applied.append(action)
        logger.info(f"{action.action.value:>7} {action.resource} {action.detail}".rstrip())
        self._emit(EventTypes.ACTION, action.to_dict())

    def reconcile(self, desired: List[ManagedResource]) -> ReconcileResult:
        """
        Converge every resource in desired.

        Dependencies outside the set are assumed satisfied by an earlier
        phase. The run halts at the first resource with an unresolved
        dependency and reports what it applied so far.

        Args:
            desired: Resources to converge

        Returns:
            ReconcileResult with applied, skipped and errors
        """
        result = ReconcileResult()
        names = {r.name for r in desired}
        converged = set()

        for resource in order_by_dependencies(desired):
            missing = [d for d in resource.depends_on if d in names and d not in converged]
            if missing:
                error = DependencyUnresolved(resource.name, missing)
                result.errors.append(ResourceError(resource.name, error))
                result.halted = True
                logger.error(str(error))
                self._emit(EventTypes.ERROR, {"resource": resource.name, "reason": str(error)})
                break

            try:
                self._converge(resource, result)
            except Exception as e:
                retryable = isinstance(e, TetherError) and e.retryable
                result.errors.append(ResourceError(resource.name, e, retryable))
                logger.error(f"Failed to converge {resource.name}: {e}")
                self._emit(EventTypes.ERROR, {
                    "resource": resource.name,
                    "reason": str(e),
                    "retryable": retryable,
                })
                continue

            converged.add(resource.name)

        return result

    def _converge(self, resource: ManagedResource, result: ReconcileResult) -> None:
        driver = self.locator.driver_for(resource)
        location = self.locator.locate(resource)
        self._emit(EventTypes.LOCATE, {"resource": resource.name, "presence": location.presence.value})

        if location.presence is Presence.PRESENT_EXTERNAL:
            # Import first so the resource is never destroyed and recreated
            driver.adopt(resource, location.identity)
            self._record(result, ResourceAction(resource.name, ActionKind.ADOPT, location.identity))
            location = self.locator.locate(resource)
            if location.presence is not Presence.PRESENT_IN_STATE:
                raise TetherError(f"{resource.name} still untracked after import")
            self._check_drift(resource, location, driver, result, adopted=True)
            return

        if location.presence is Presence.ABSENT:
            driver.create(resource)
            self._record(result, ResourceAction(resource.name, ActionKind.CREATE))
            return

        self._check_drift(resource, location, driver, result)

    def _check_drift(self, resource, location: Location, driver, result: ReconcileResult,
                     adopted: bool = False) -> None:
        drift = diverging_keys(resource.desired, location.recorded or {})
        if not drift:
            if not adopted:
                self._record(result, ResourceAction(resource.name, ActionKind.SKIP, "up to date"))
            return

        if resource.protected and not driver.safe_update:
            message = f"{resource.name} is persistent-protected; drift in {', '.join(drift)} left untouched"
            result.warnings.append(message)
            self._emit(EventTypes.WARN, {"resource": resource.name, "message": message})
            self._record(result, ResourceAction(resource.name, ActionKind.SKIP, "protected, drift ignored"))
            return

        driver.update(resource)
        self._record(result, ResourceAction(resource.name, ActionKind.UPDATE, ", ".join(drift)))

    def plan_destroy(
        self,
        resources: List[ManagedResource],
        keep: Iterable[str] = (),
        override_protection: bool = False,
    ) -> List[ResourceAction]:
        """
        Destroy actions for present resources, dependents first.

        Persistent-protected resources are never part of the plan unless
        override_protection is set.

        Args:
            resources: Candidate resources
            keep: Names to leave alone
            override_protection: Allow protected resources in the plan

        Returns:
            Ordered destroy actions
        """
        keep = set(keep)
        plan = []
        for resource in reversed(order_by_dependencies(resources)):
            if resource.name in keep:
                continue
            if resource.protected and not override_protection:
                continue
            if self.locator.locate(resource).presence is Presence.PRESENT_IN_STATE:
                plan.append(ResourceAction(resource.name, ActionKind.DESTROY))
        return plan

    def plan_prune(self, known: List[ManagedResource], desired: List[ManagedResource]) -> List[ResourceAction]:
        """Destroy actions for known resources the desired set no longer names."""
        return self.plan_destroy(known, keep=[r.name for r in desired])

    def destroy(
        self,
        resources: List[ManagedResource],
        names: Optional[Iterable[str]] = None,
        override_protection: bool = False,
    ) -> ReconcileResult:
        """
        Destroy resources (all of them, or only those named).

        Protected resources are preserved and reported as skipped. Naming a
        protected resource explicitly without the override is an error.

        Raises:
            ProtectedResourceViolation: Named protected resource without override
        """
        by_name = {r.name: r for r in resources}
        if names is not None:
            names = list(names)
            for name in names:
                if name not in by_name:
                    raise ValueError(f"Unknown resource: {name}")
                if by_name[name].protected and not override_protection:
                    raise ProtectedResourceViolation(name)
            resources = [by_name[n] for n in names]

        result = ReconcileResult()
        for resource in resources:
            if resource.protected and not override_protection:
                self._record(result, ResourceAction(resource.name, ActionKind.SKIP, "persistent-protected, preserved"))

        for action in self.plan_destroy(resources, override_protection=override_protection):
            resource = by_name[action.resource]
            try:
                self.locator.driver_for(resource).destroy(resource)
            except Exception as e:
                result.errors.append(ResourceError(resource.name, e))
                result.halted = True
                logger.error(f"Failed to destroy {resource.name}: {e}")
                self._emit(EventTypes.ERROR, {"resource": resource.name, "reason": str(e)})
                break
            self._record(result, action)

        return result


def order_by_dependencies(resources: List[ManagedResource]) -> List[ManagedResource]:
    """
    Topological order; ties keep declaration order.

    Dependencies on names outside the list are ignored.

    Raises:
        ValueError: On a dependency cycle
    """
    names = {r.name for r in resources}
    remaining = list(resources)
    placed: List[ManagedResource] = []
    placed_names = set()

    while remaining:
        for index, resource in enumerate(remaining):
            if all(d in placed_names or d not in names for d in resource.depends_on):
                placed.append(resource)
                placed_names.add(resource.name)
                del remaining[index]
                break
        else:
            cycle = ", ".join(r.name for r in remaining)
            raise ValueError(f"Dependency cycle among: {cycle}")

    return placed


def diverging_keys(desired: Dict[str, Any], recorded: Dict[str, Any], prefix: str = "") -> List[str]:
    """
    Keys of desired whose value differs from recorded.

    Only keys present in desired are compared. Nested dicts are compared
    key by key; a recorded single-element list of dicts (terraform's block
    encoding) is unwrapped.
    """
    drift = []
    for key, want in desired.items():
        have = recorded.get(key)
        path = f"{prefix}{key}"
        if isinstance(want, dict):
            if isinstance(have, list) and len(have) == 1 and isinstance(have[0], dict):
                have = have[0]
            if not isinstance(have, dict):
                drift.append(path)
                continue
            drift.extend(diverging_keys(want, have, prefix=f"{path}."))
        elif want != have:
            drift.append(path)
    return drift
