from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from chain_cache.core.models import SourceHealthSnapshot
from chain_cache.sync.dispatcher import SourceActivity

logger = logging.getLogger(__name__)

ReconnectRequest = Callable[[str, str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Watch:
    activity: SourceActivity
    stall_threshold_seconds: float
    describe: Callable[[], SourceHealthSnapshot] | None
    started_at: datetime
    last_trigger_at: datetime | None = None
    stalls: int = 0
    paused: bool = False


class HealthMonitor:
    """
    Heartbeat over every watched source.

    A source is stalled when neither an event nor a head advance was seen
    within its threshold. A quiet contract on a live chain keeps advancing
    the head, so it never counts as stalled.
    """

    def __init__(
        self,
        request_reconnect: ReconnectRequest,
        *,
        tick_seconds: float = 15.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.request_reconnect = request_reconnect
        self.tick_seconds = max(0.01, float(tick_seconds))
        self.clock = clock
        self._watches: dict[str, _Watch] = {}
        self._running = False

    def watch(
        self,
        source_id: str,
        activity: SourceActivity,
        *,
        stall_threshold_seconds: float,
        describe: Callable[[], SourceHealthSnapshot] | None = None,
    ) -> None:
        self._watches[source_id] = _Watch(
            activity=activity,
            stall_threshold_seconds=stall_threshold_seconds,
            describe=describe,
            started_at=self.clock(),
        )

    def pause(self, source_id: str, paused: bool = True) -> None:
        watch = self._watches.get(source_id)
        if watch is not None:
            watch.paused = paused
            if not paused:
                watch.started_at = self.clock()

    async def run_forever(self) -> None:
        self._running = True
        while self._running:
            self.tick()
            await asyncio.sleep(self.tick_seconds)

    async def stop(self) -> None:
        self._running = False

    def tick(self) -> list[str]:
        now = self.clock()
        stalled: list[str] = []
        for source_id, watch in self._watches.items():
            if watch.paused:
                continue
            last = watch.activity.last_activity() or watch.started_at
            last = max(last, watch.started_at)
            idle = (now - last).total_seconds()
            if idle < watch.stall_threshold_seconds:
                continue
            if (
                watch.last_trigger_at is not None
                and (now - watch.last_trigger_at).total_seconds() < watch.stall_threshold_seconds
            ):
                continue
            watch.last_trigger_at = now
            watch.stalls += 1
            stalled.append(source_id)
            logger.warning("%s: no activity for %.0fs, requesting reconnect", source_id, idle)
            self._request(source_id, f"stalled for {idle:.0f}s")
        return stalled

    def on_connection_lost(self, source_id: str, reason: str) -> None:
        logger.warning("%s: connection lost: %s", source_id, reason)
        watch = self._watches.get(source_id)
        if watch is not None:
            watch.last_trigger_at = self.clock()
        self._request(source_id, f"connection lost: {reason}")

    def snapshots(self) -> list[SourceHealthSnapshot]:
        out: list[SourceHealthSnapshot] = []
        for source_id, watch in self._watches.items():
            if watch.describe is not None:
                out.append(watch.describe())
                continue
            data = watch.activity.snapshot()
            out.append(SourceHealthSnapshot(source_id=source_id, state="watching", **data))
        return out

    def _request(self, source_id: str, reason: str) -> None:
        try:
            self.request_reconnect(source_id, reason)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s: reconnect request failed: %s", source_id, exc)
