"""
Provider health tracking for the storage cascade.

Each provider is either healthy or unhealthy:
- healthy -> unhealthy after ``failure_threshold`` consecutive failures
- unhealthy -> healthy on the next observed success, or passively once
  ``recovery_seconds`` have passed since the last observation

There is no background prober: the first request after the quiet period
acts as the probe. State is per instance and process-local.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

from .logging_utils import vault_log


logger = logging.getLogger("shelfvault.storage.health")


DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RECOVERY_SECONDS = 5 * 60.0


@dataclass
class ProviderHealth:
    provider_id: str
    healthy: bool = True
    consecutive_failures: int = 0
    last_observation: float = 0.0


class ProviderHealthTracker:
    """Consecutive-failure counter with time-boxed auto recovery.

    ``clock`` returns seconds and defaults to ``time.monotonic``; tests pass a
    fake clock to exercise the recovery window.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_seconds: float = DEFAULT_RECOVERY_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.recovery_seconds = float(recovery_seconds)
        self._clock = clock or time.monotonic
        self._records: Dict[str, ProviderHealth] = {}
        self._lock = threading.Lock()

    def observe(self, provider_id: str, success: bool) -> ProviderHealth:
        with self._lock:
            record = self._records.get(provider_id)
            if record is None:
                record = ProviderHealth(provider_id=provider_id)
                self._records[provider_id] = record

            was_healthy = record.healthy
            record.last_observation = self._clock()
            if success:
                record.healthy = True
                record.consecutive_failures = 0
            else:
                record.consecutive_failures += 1
                if record.consecutive_failures >= self.failure_threshold:
                    record.healthy = False
            snapshot = ProviderHealth(**asdict(record))

        if was_healthy != snapshot.healthy:
            state = "healthy" if snapshot.healthy else "unhealthy"
            logger.warning("storage provider %s is now %s", provider_id, state)
            vault_log(
                "storage",
                "info" if snapshot.healthy else "warn",
                "provider_health_changed",
                component="health",
                provider=provider_id,
                healthy=snapshot.healthy,
                consecutive_failures=snapshot.consecutive_failures,
            )
        return snapshot

    def is_healthy(self, provider_id: str) -> bool:
        with self._lock:
            record = self._records.get(provider_id)
            if record is None:
                return True
            quiet = self._clock() - record.last_observation
            if quiet <= self.recovery_seconds:
                return record.healthy
            # Passive recovery: the quiet period resets the provider.
            recovered = not record.healthy
            record.healthy = True
            record.consecutive_failures = 0

        if recovered:
            logger.warning("storage provider %s is now healthy (quiet for %.0fs)", provider_id, quiet)
            vault_log(
                "storage",
                "info",
                "provider_health_changed",
                component="health",
                provider=provider_id,
                healthy=True,
                consecutive_failures=0,
                reason="passive_recovery",
            )
        return True

    def record(self, provider_id: str) -> Optional[ProviderHealth]:
        with self._lock:
            record = self._records.get(provider_id)
            if record is None:
                return None
            return ProviderHealth(**asdict(record))

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {pid: asdict(rec) for pid, rec in sorted(self._records.items())}

    def reset(self, provider_id: Optional[str] = None) -> None:
        with self._lock:
            if provider_id is None:
                self._records.clear()
            else:
                self._records.pop(provider_id, None)
