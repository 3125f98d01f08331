"""
Resource locator: typed presence lookups across backing stores.
"""

import logging
import time
from typing import Dict

from ..errors import ResourceLookupError
from ..models import Location, ManagedResource
from .drivers import ResourceDriver

logger = logging.getLogger(__name__)


class Locator:
    """
    Answers "does this resource exist, and where is it known?".

    locate() never mutates anything. A store that reports "not found"
    yields Location.absent(); transport or auth failures are retried and
    finally raised as ResourceLookupError.
    """

    def __init__(self, drivers: Dict[str, ResourceDriver], retries: int = 2, backoff: float = 2.0):
        self.drivers = drivers
        self.retries = retries
        self.backoff = backoff

    def driver_for(self, resource: ManagedResource) -> ResourceDriver:
        try:
            return self.drivers[resource.kind]
        except KeyError:
            raise ValueError(f"No driver registered for {resource.kind} ({resource.name})")

    def locate(self, resource: ManagedResource) -> Location:
        attempt = 0
        while True:
            try:
                return self._locate_once(resource)
            except ResourceLookupError as e:
                if attempt >= self.retries:
                    raise
                attempt += 1
                logger.warning(f"{e}; retrying ({attempt}/{self.retries})")
                time.sleep(self.backoff * attempt)

    def _locate_once(self, resource: ManagedResource) -> Location:
        driver = self.driver_for(resource)

        recorded = driver.recorded(resource)
        if recorded is not None:
            return Location.in_state(resource.identity, recorded)

        if driver.tracks_state:
            observed = driver.observe(resource)
            if observed is not None:
                return Location.external(resource.identity, observed)

        return Location.absent()
