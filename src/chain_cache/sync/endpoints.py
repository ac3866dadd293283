from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from chain_cache.core.errors import SourceUnavailable
from chain_cache.core.models import EndpointHealth, EndpointSnapshot, SourceEndpoint

logger = logging.getLogger(__name__)

TransitionListener = Callable[[SourceEndpoint, EndpointHealth, str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EndpointPool:
    """
    Ranked endpoints for one source with failure counting and cooldown.

    Selection walks the endpoints in priority order and returns the first one
    that is healthy or whose cooldown has elapsed. An endpoint past its
    cooldown is retried with live traffic: one success restores it to healthy,
    one failure sends it back into a (doubled) cooldown as unhealthy.
    """

    def __init__(
        self,
        endpoints: list[SourceEndpoint],
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        max_cooldown_seconds: float = 900.0,
        clock: Callable[[], datetime] = _utcnow,
        on_transition: TransitionListener | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one endpoint must be configured.")
        self.endpoints = [ep.model_copy(deep=True) for ep in sorted(endpoints, key=lambda ep: ep.priority)]
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self.max_cooldown_seconds = max(self.cooldown_seconds, float(max_cooldown_seconds))
        self.clock = clock
        self.on_transition = on_transition
        self._lock = threading.Lock()
        self._cooldowns: dict[str, float] = {}
        self._current: SourceEndpoint | None = None

    def select(self) -> SourceEndpoint:
        now = self.clock()
        with self._lock:
            for endpoint in self.endpoints:
                if endpoint.health is EndpointHealth.HEALTHY:
                    self._current = endpoint
                    return endpoint
                if endpoint.cooldown_until is None or endpoint.cooldown_until <= now:
                    self._current = endpoint
                    return endpoint
        soonest = min((ep.cooldown_until for ep in self.endpoints if ep.cooldown_until), default=None)
        raise SourceUnavailable(
            "no healthy endpoint available"
            + (f"; next retry at {soonest.isoformat()}" if soonest else "")
        )

    def record_success(self, endpoint: SourceEndpoint) -> None:
        with self._lock:
            previous = endpoint.health
            endpoint.consecutive_failures = 0
            endpoint.health = EndpointHealth.HEALTHY
            endpoint.cooldown_until = None
            self._cooldowns.pop(endpoint.url, None)
        if previous is not EndpointHealth.HEALTHY:
            self._notify(endpoint, previous, "request succeeded")

    def record_failure(self, endpoint: SourceEndpoint, reason: str) -> None:
        now = self.clock()
        with self._lock:
            previous = endpoint.health
            endpoint.consecutive_failures += 1
            endpoint.last_failure_at = now
            if previous is EndpointHealth.HEALTHY:
                if endpoint.consecutive_failures < self.failure_threshold:
                    return
                cooldown = self.cooldown_seconds
                endpoint.health = EndpointHealth.COOLING_DOWN
            else:
                # failed its post-cooldown trial request
                cooldown = min(self._cooldowns.get(endpoint.url, self.cooldown_seconds) * 2, self.max_cooldown_seconds)
                endpoint.health = EndpointHealth.UNHEALTHY
            self._cooldowns[endpoint.url] = cooldown
            endpoint.cooldown_until = now + timedelta(seconds=cooldown)
        self._notify(endpoint, previous, reason)

    @property
    def current(self) -> SourceEndpoint | None:
        return self._current

    def has_selectable(self) -> bool:
        now = self.clock()
        return any(
            ep.health is EndpointHealth.HEALTHY or ep.cooldown_until is None or ep.cooldown_until <= now
            for ep in self.endpoints
        )

    def snapshot(self) -> list[EndpointSnapshot]:
        with self._lock:
            return [
                EndpointSnapshot(
                    url=ep.url,
                    priority=ep.priority,
                    health=ep.health,
                    consecutive_failures=ep.consecutive_failures,
                    last_failure_at=ep.last_failure_at,
                    cooldown_until=ep.cooldown_until,
                )
                for ep in self.endpoints
            ]

    def _notify(self, endpoint: SourceEndpoint, previous: EndpointHealth, reason: str) -> None:
        logger.log(
            logging.INFO if endpoint.health is EndpointHealth.HEALTHY else logging.WARNING,
            "Endpoint %s health %s -> %s (failures=%s): %s",
            endpoint.url,
            previous.value,
            endpoint.health.value,
            endpoint.consecutive_failures,
            reason,
        )
        if self.on_transition is None:
            return
        try:
            self.on_transition(endpoint, previous, reason)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Endpoint transition listener failed: %s", exc)
