from __future__ import annotations

import asyncio
import logging
import random
from contextlib import suppress
from typing import Callable

from chain_cache.cache.cursor_store import CursorStore
from chain_cache.cache.entity_store import EntityStore
from chain_cache.core.config import Settings
from chain_cache.core.errors import CursorStoreUnavailable, skippable
from chain_cache.core.models import (
    EndpointHealth,
    RangeSyncResult,
    RawEvent,
    SourceConfig,
    SourceEndpoint,
    SourceHealthSnapshot,
    SyncCursor,
)
from chain_cache.journal.service import SyncJournal
from chain_cache.sync.adapter import ClientFactory, EventSourceAdapter
from chain_cache.sync.backoff import backoff_delay
from chain_cache.sync.dispatcher import EventDispatcher, SourceActivity
from chain_cache.sync.health import HealthMonitor
from chain_cache.sync.projector import Projector
from chain_cache.sync.recovery import RecoveryScanner
from chain_cache.sync.schema import event_names
from chain_cache.sync.subscription import ConnectionLost, HeadAdvanced, LogSubscription

logger = logging.getLogger(__name__)


class SourcePipeline:
    """
    Recover-then-follow loop for one source.

    Each cycle reads the head, replays everything after the cursor, then
    follows the live subscription until it ends. Between cycles the pipeline
    waits with exponential backoff; too many failed cycles in a row mark the
    source degraded and end the loop without affecting other sources.
    """

    def __init__(
        self,
        source: SourceConfig,
        adapter: EventSourceAdapter,
        dispatcher: EventDispatcher,
        scanner: RecoveryScanner,
        cursor_store: CursorStore,
        *,
        journal: SyncJournal | None = None,
        reconnect_base_delay_seconds: float = 5.0,
        reconnect_max_delay_seconds: float = 300.0,
        max_reconnect_attempts: int = 5,
        rng: random.Random | None = None,
    ) -> None:
        self.source = source
        self.adapter = adapter
        self.dispatcher = dispatcher
        self.scanner = scanner
        self.cursor_store = cursor_store
        self.journal = journal
        self.reconnect_base_delay_seconds = reconnect_base_delay_seconds
        self.reconnect_max_delay_seconds = reconnect_max_delay_seconds
        self.max_reconnect_attempts = max(1, int(max_reconnect_attempts))
        self.rng = rng or random.Random()
        self.on_connection_lost: Callable[[str, str], None] | None = None

        self.state = "idle"
        self.degraded_reason: str | None = None
        self.cursor: SyncCursor | None = None
        self.reconnects = 0
        self.subscription: LogSubscription | None = None
        self._stopping = False
        self._wake: asyncio.Event | None = None

    @property
    def source_id(self) -> str:
        return self.source.source_id

    @property
    def activity(self) -> SourceActivity:
        return self.dispatcher.activity

    @property
    def degraded(self) -> bool:
        return self.state == "degraded"

    async def run(self) -> None:
        self._wake = asyncio.Event()
        self.state = "starting"
        try:
            self.cursor = await asyncio.to_thread(self.cursor_store.get, self.source_id)
        except CursorStoreUnavailable as exc:
            self._degrade(str(exc))
            return

        failures = 0
        while not self._stopping:
            reason = ""
            try:
                healthy, reason = await self._cycle()
                failures = 0 if healthy else failures + 1
            except Exception as exc:  # noqa: BLE001
                failures += 1
                reason = f"{type(exc).__name__}: {exc}"
                logger.warning("%s: sync cycle failed (%s in a row): %s", self.source_id, failures, reason)
            finally:
                self._dispose_subscription()
            if self._stopping:
                break
            if failures > self.max_reconnect_attempts:
                self._degrade(f"gave up after {failures} failed reconnects: {reason}")
                return
            self.reconnects += 1
            delay = backoff_delay(
                max(1, failures),
                base_seconds=self.reconnect_base_delay_seconds,
                max_seconds=self.reconnect_max_delay_seconds,
                rng=self.rng,
            )
            self.state = "reconnecting"
            logger.info("%s: reconnecting in %.1fs (%s)", self.source_id, delay, reason)
            if self.journal is not None:
                self.journal.log(
                    self.source_id,
                    event_type="pipeline",
                    action="reconnect",
                    status="ERROR" if failures else "OK",
                    payload={"reason": reason[:500], "delay_seconds": round(delay, 3), "failures": failures},
                )
            await self._sleep(delay)
        self.state = "stopped"

    async def _cycle(self) -> tuple[bool, str]:
        self.state = "recovering"
        head = await asyncio.to_thread(self.adapter.head_height)
        await asyncio.to_thread(self.dispatcher.on_new_head, head)
        self.cursor = await asyncio.to_thread(
            self.scanner.recover,
            self.cursor,
            head,
            should_stop=lambda: self._stopping,
        )
        if self._stopping:
            return True, "stopping"
        if self.cursor is not None:
            from_block = self.cursor.block_number + 1
        else:
            from_block = max(self.source.start_block, head + 1)
        self.subscription = self.adapter.subscribe(event_names(), from_block)
        self.state = "live"
        logger.info("%s: live from block %s", self.source_id, from_block)
        return await self._consume(self.subscription)

    async def _consume(self, subscription: LogSubscription) -> tuple[bool, str]:
        saw_head = False
        last_position: tuple[int, int] | None = None
        async for item in subscription:
            if isinstance(item, RawEvent):
                error = await asyncio.to_thread(self.dispatcher.handle, item)
                if error is not None and not skippable(error):
                    # cursor stays before this event; the next cycle refetches it
                    return False, f"{item.event_name} at {item.block_number}:{item.log_index} not projected: {error}"
                last_position = item.position
            elif isinstance(item, HeadAdvanced):
                saw_head = True
                await asyncio.to_thread(self.dispatcher.on_new_head, item.height)
                log_index = last_position[1] if last_position and last_position[0] == item.height else -1
                self.cursor = await asyncio.to_thread(
                    self.cursor_store.advance, self.source_id, item.height, log_index
                )
            elif isinstance(item, ConnectionLost):
                if self.on_connection_lost is not None:
                    self.on_connection_lost(self.source_id, item.reason)
                return saw_head, item.reason
        return True, "subscription closed"

    def request_reconnect(self, reason: str) -> bool:
        if self.subscription is None or self.subscription.disposed:
            logger.debug("%s: reconnect requested while %s: %s", self.source_id, self.state, reason)
            return False
        logger.info("%s: reconnect requested: %s", self.source_id, reason)
        self._dispose_subscription()
        return True

    def stop(self) -> None:
        self._stopping = True
        self._dispose_subscription()
        if self._wake is not None:
            self._wake.set()

    def snapshot(self) -> SourceHealthSnapshot:
        return SourceHealthSnapshot(
            source_id=self.source_id,
            state=self.state,
            degraded=self.degraded,
            degraded_reason=self.degraded_reason,
            cursor_block=self.cursor.block_number if self.cursor else None,
            reconnects=self.reconnects,
            current_endpoint=self.adapter.current_endpoint(),
            endpoints=self.adapter.endpoint_snapshot(),
            **self.activity.snapshot(),
        )

    def _dispose_subscription(self) -> None:
        if self.subscription is not None:
            self.subscription.dispose()

    def _degrade(self, reason: str) -> None:
        self.state = "degraded"
        self.degraded_reason = reason
        logger.error("%s: source degraded: %s", self.source_id, reason)
        if self.journal is not None:
            self.journal.log(
                self.source_id,
                event_type="pipeline",
                action="degraded",
                status="ERROR",
                payload={"reason": reason[:500]},
            )

    async def _sleep(self, seconds: float) -> None:
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)


class SyncCoordinator:
    """Owns one independent pipeline per configured source plus the health monitor."""

    def __init__(
        self,
        sources: list[SourceConfig],
        *,
        settings: Settings,
        cursor_store: CursorStore,
        entity_store: EntityStore,
        client_factory: ClientFactory,
        journal: SyncJournal | None = None,
    ) -> None:
        self.settings = settings
        self.cursor_store = cursor_store
        self.entity_store = entity_store
        self.journal = journal
        self.shutdown_grace_seconds = settings.shutdown_grace_seconds
        self.monitor = HealthMonitor(self.request_reconnect, tick_seconds=settings.health_tick_seconds)
        self.pipelines: dict[str, SourcePipeline] = {}
        for source in sources:
            if source.source_id in self.pipelines:
                raise ValueError(f"duplicate source_id: {source.source_id}")
            pipeline = self._build_pipeline(source, client_factory)
            pipeline.on_connection_lost = self.monitor.on_connection_lost
            self.monitor.watch(
                source.source_id,
                pipeline.activity,
                stall_threshold_seconds=source.stall_threshold_seconds,
                describe=pipeline.snapshot,
            )
            self.pipelines[source.source_id] = pipeline
        self._tasks: dict[str, asyncio.Task] = {}
        self._monitor_task: asyncio.Task | None = None

    def _build_pipeline(self, source: SourceConfig, client_factory: ClientFactory) -> SourcePipeline:
        settings = self.settings
        adapter = EventSourceAdapter(
            source,
            client_factory,
            failure_threshold=settings.endpoint_failure_threshold,
            cooldown_seconds=settings.endpoint_cooldown_seconds,
            max_cooldown_seconds=settings.endpoint_max_cooldown_seconds,
            attempts_per_call=settings.request_attempts_per_call,
            retry_base_delay_seconds=settings.request_retry_base_delay_seconds,
            retry_max_delay_seconds=settings.request_retry_max_delay_seconds,
            on_transition=self._transition_listener(source.source_id),
        )
        projector = Projector(
            self.entity_store,
            depth=source.required_depth,
            max_parked_per_entity=settings.parked_events_per_entity,
            max_parked_entities=settings.parked_entities_max,
        )
        dispatcher = EventDispatcher(source, projector, self.entity_store, adapter, journal=self.journal)
        scanner = RecoveryScanner(source, adapter, dispatcher, self.cursor_store)
        return SourcePipeline(
            source,
            adapter,
            dispatcher,
            scanner,
            self.cursor_store,
            journal=self.journal,
            reconnect_base_delay_seconds=settings.reconnect_base_delay_seconds,
            reconnect_max_delay_seconds=settings.reconnect_max_delay_seconds,
            max_reconnect_attempts=settings.max_reconnect_attempts,
        )

    def _transition_listener(self, source_id: str) -> Callable[[SourceEndpoint, EndpointHealth, str], None]:
        def _listener(endpoint: SourceEndpoint, previous: EndpointHealth, reason: str) -> None:
            if self.journal is not None:
                self.journal.endpoint_transition(source_id, endpoint, previous, reason)

        return _listener

    def pipeline(self, source_id: str) -> SourcePipeline:
        try:
            return self.pipelines[source_id]
        except KeyError:
            raise KeyError(f"unknown source: {source_id}") from None

    async def run_forever(self) -> None:
        if not self.pipelines:
            logger.warning("No sync sources configured; coordinator idle.")
            return
        self._tasks = {
            source_id: asyncio.create_task(pipeline.run(), name=f"sync:{source_id}")
            for source_id, pipeline in self.pipelines.items()
        }
        self._monitor_task = asyncio.create_task(self.monitor.run_forever(), name="sync-health-monitor")
        results = await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        for source_id, result in zip(self._tasks, results):
            if isinstance(result, Exception):
                logger.error("%s: pipeline crashed: %s", source_id, result)
        await self.monitor.stop()
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._monitor_task

    async def stop(self) -> None:
        for pipeline in self.pipelines.values():
            pipeline.stop()
        await self.monitor.stop()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_seconds)
            for task in pending:
                logger.warning("%s did not stop within %.1fs, cancelling", task.get_name(), self.shutdown_grace_seconds)
                task.cancel()
            for task in pending:
                with suppress(asyncio.CancelledError):
                    await task

    def request_reconnect(self, source_id: str, reason: str) -> None:
        pipeline = self.pipeline(source_id)
        if pipeline.degraded:
            self.monitor.pause(source_id)
            return
        pipeline.request_reconnect(reason)

    def health_snapshot(self) -> list[SourceHealthSnapshot]:
        return self.monitor.snapshots()

    def sync_range(self, source_id: str, from_block: int, to_block: int | None = None) -> RangeSyncResult:
        """Re-project a block range for one source without moving its cursor."""
        pipeline = self.pipeline(source_id)
        if to_block is None:
            to_block = pipeline.adapter.head_height()
        if pipeline.dispatcher.activity.head_height is None:
            pipeline.dispatcher.on_new_head(pipeline.adapter.head_height())
        return pipeline.scanner.replay_range(from_block, to_block)

    def adapter(self, source_id: str) -> EventSourceAdapter:
        return self.pipeline(source_id).adapter

    def projector(self, source_id: str) -> Projector:
        return self.pipeline(source_id).dispatcher.projector

    def degraded_sources(self) -> list[str]:
        return [source_id for source_id, p in self.pipelines.items() if p.degraded]


