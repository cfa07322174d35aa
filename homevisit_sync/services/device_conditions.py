"""
Device preconditions gating sync runs (network reachability, battery).

Unmet preconditions defer a run; they never count as a failed run.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..core.config import settings
from .remote_client import HttpRemoteAuthority

logger = logging.getLogger(__name__)


class DeviceConditions:
    """What the host platform knows about connectivity and power."""

    def is_connected(self) -> bool:
        return True

    def battery_level(self) -> Optional[int]:
        """Battery charge in percent, or None when unknown / on mains power."""
        return None

    def is_battery_low(self, threshold: Optional[int] = None) -> bool:
        level = self.battery_level()
        threshold = settings.BATTERY_LOW_THRESHOLD if threshold is None else threshold
        return level is not None and level <= threshold


class StaticConditions(DeviceConditions):
    """Conditions pushed by the host (platform callbacks, tests)."""

    def __init__(self, connected: bool = True, battery: Optional[int] = None):
        self._connected = connected
        self._battery = battery
        self._lock = threading.Lock()

    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    def battery_level(self) -> Optional[int]:
        with self._lock:
            return self._battery

    def set_connected(self, connected: bool) -> None:
        with self._lock:
            self._connected = connected

    def set_battery_level(self, level: Optional[int]) -> None:
        with self._lock:
            self._battery = level


class ConnectivityMonitor(DeviceConditions):
    """Reachability check against the backend, cached for ``check_interval`` seconds."""

    CHECK_INTERVAL = 30  # seconds

    def __init__(
        self,
        client: Optional[HttpRemoteAuthority] = None,
        url: Optional[str] = None,
        battery_provider: Optional[Callable[[], Optional[int]]] = None,
        check_interval: Optional[float] = None,
    ):
        self.client = client or HttpRemoteAuthority()
        self.url = url or settings.CONNECTIVITY_CHECK_URL or self.client.base_url
        self.battery_provider = battery_provider
        self.check_interval = self.CHECK_INTERVAL if check_interval is None else check_interval
        self._lock = threading.Lock()
        self._last_check = 0.0
        self._online = False

    def is_connected(self) -> bool:
        with self._lock:
            if self._last_check and time.monotonic() - self._last_check < self.check_interval:
                return self._online
        # The ping runs unlocked; concurrent callers may each ping once
        online = self.client.ping(self.url)
        with self._lock:
            if online != self._online:
                logger.info("Connectivity changed: %s", "online" if online else "offline")
            self._online = online
            self._last_check = time.monotonic()
        return online

    def battery_level(self) -> Optional[int]:
        if self.battery_provider is None:
            return None
        return self.battery_provider()


@dataclass(frozen=True)
class SyncConstraints:
    require_network: bool = True
    require_battery_not_low: bool = False

    def unmet(self, conditions: DeviceConditions) -> List[str]:
        """Reasons the run cannot start now; empty when it may start."""
        reasons = []
        if self.require_network and not conditions.is_connected():
            reasons.append("no network")
        if self.require_battery_not_low and conditions.is_battery_low():
            reasons.append("battery low")
        return reasons


ONE_SHOT_CONSTRAINTS = SyncConstraints(require_network=True)
PERIODIC_CONSTRAINTS = SyncConstraints(
    require_network=True,
    require_battery_not_low=settings.SYNC_REQUIRE_BATTERY_NOT_LOW,
)
