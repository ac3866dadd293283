from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from chain_cache.cache.entity_store import EntityStore
from chain_cache.core.errors import ErrorCategory, SyncError, classify_error
from chain_cache.core.models import ProjectionOutcome, RawEvent, SourceConfig, SyncStatus
from chain_cache.journal.service import SyncJournal
from chain_cache.sync.adapter import EventSourceAdapter
from chain_cache.sync.confirmation import confirmed_through
from chain_cache.sync.projector import ProjectionResult, Projector
from chain_cache.sync.schema import event_names

logger = logging.getLogger(__name__)

Handler = Callable[[RawEvent], ProjectionResult]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LogThrottle:
    """Lets one message per key through every ``interval_seconds``."""

    def __init__(self, interval_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._last: dict[str, float] = {}
        self._suppressed: dict[str, int] = {}

    def allow(self, key: str) -> bool:
        now = self.clock()
        last = self._last.get(key)
        if last is not None and now - last < self.interval_seconds:
            self._suppressed[key] = self._suppressed.get(key, 0) + 1
            return False
        self._last[key] = now
        return True

    def take_suppressed(self, key: str) -> int:
        return self._suppressed.pop(key, 0)


class SourceActivity:
    """Counters for one source, written by the pipeline and read by the health monitor."""

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        self._lock = threading.Lock()
        self.last_event_at: datetime | None = None
        self.last_head_at: datetime | None = None
        self.head_height: int | None = None
        self.events_dispatched = 0
        self.errors_by_category: dict[str, int] = {}

    def record_event(self, at: datetime | None = None) -> None:
        with self._lock:
            self.last_event_at = at or _utcnow()
            self.events_dispatched += 1

    def record_head(self, height: int, at: datetime | None = None) -> None:
        with self._lock:
            self.head_height = height
            self.last_head_at = at or _utcnow()

    def record_error(self, category: ErrorCategory) -> None:
        with self._lock:
            self.errors_by_category[category.value] = self.errors_by_category.get(category.value, 0) + 1

    def last_activity(self) -> datetime | None:
        with self._lock:
            stamps = [ts for ts in (self.last_event_at, self.last_head_at) if ts is not None]
        return max(stamps) if stamps else None

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "last_event_at": self.last_event_at,
                "last_head_at": self.last_head_at,
                "head_height": self.head_height,
                "events_dispatched": self.events_dispatched,
                "error_count": sum(self.errors_by_category.values()),
                "errors_by_category": dict(self.errors_by_category),
            }


class EventDispatcher:
    """
    Routes one source's events to their handlers, strictly in arrival order.

    Handler failures are counted and logged (throttled per category and event
    name) and returned to the caller instead of raised, so a bad event never
    stops ingestion.
    """

    def __init__(
        self,
        source: SourceConfig,
        projector: Projector,
        store: EntityStore,
        adapter: EventSourceAdapter | None = None,
        *,
        journal: SyncJournal | None = None,
        activity: SourceActivity | None = None,
        throttle: LogThrottle | None = None,
    ) -> None:
        self.source = source
        self.projector = projector
        self.store = store
        self.adapter = adapter
        self.journal = journal
        self.activity = activity or SourceActivity(source.source_id)
        self.throttle = throttle or LogThrottle()
        self.handlers: dict[str, Handler] = {name: self._project for name in event_names()}

    @property
    def source_id(self) -> str:
        return self.source.source_id

    def register(self, event_name: str, handler: Handler) -> None:
        self.handlers[event_name] = handler

    def handle(self, event: RawEvent) -> Exception | None:
        handler = self.handlers.get(event.event_name)
        if handler is None:
            if self.throttle.allow(f"unknown:{event.event_name}"):
                logger.info("%s: no handler for event %s, skipping", self.source_id, event.event_name)
            return None
        try:
            result = handler(event)
        except Exception as exc:  # noqa: BLE001
            category = classify_error(exc)
            self.activity.record_error(category)
            key = f"{category.value}:{event.event_name}"
            if self.throttle.allow(key):
                suppressed = self.throttle.take_suppressed(key)
                logger.warning(
                    "%s: %s at %s:%s failed (%s): %s%s",
                    self.source_id,
                    event.event_name,
                    event.block_number,
                    event.log_index,
                    category.value,
                    exc,
                    f" ({suppressed} similar suppressed)" if suppressed else "",
                )
            return exc
        self.activity.record_event()
        if result.outcome is ProjectionOutcome.FLAGGED and self.journal is not None:
            self.journal.log(
                self.source_id,
                event_type="reorg",
                action="removed_log",
                status="ERROR",
                payload={
                    "entity_id": result.entity.entity_id if result.entity else None,
                    "block_number": event.block_number,
                    "log_index": event.log_index,
                    "transaction_hash": event.transaction_hash,
                },
            )
        return None

    def on_new_head(self, head: int) -> int:
        """
        Promote pending rows that reached the confirmation depth at ``head``.

        Rows carrying a block hash are checked against the canonical chain
        first; a mismatch marks the row ``error`` for reconciliation. Returns
        the number of rows promoted to synced.
        """
        previous = self.activity.head_height
        if previous is not None and head < previous:
            logger.warning("%s: head went back from %s to %s, possible reorg", self.source_id, previous, head)
            if self.journal is not None:
                self.journal.log(
                    self.source_id,
                    event_type="reorg",
                    action="head_regression",
                    status="ERROR",
                    payload={"previous_head": previous, "head": head},
                )
        self.activity.record_head(head)

        through = confirmed_through(head, self.source.required_depth)
        if through < 0:
            return 0
        promoted = 0
        canonical: dict[int, str | None] = {}
        for row in self.store.list_pending(self.source_id, confirmed_through=through):
            status, error = SyncStatus.SYNCED, None
            if row.last_block_hash and self.adapter is not None:
                if row.last_block not in canonical:
                    try:
                        canonical[row.last_block] = self.adapter.block_hash(row.last_block)
                    except SyncError as exc:
                        logger.warning("%s: block hash check deferred: %s", self.source_id, exc)
                        break
                expected = canonical[row.last_block]
                if expected and expected.lower() != row.last_block_hash.lower():
                    status = SyncStatus.ERROR
                    error = f"block {row.last_block} hash {row.last_block_hash} replaced by {expected}"
            if self.store.mark_status(
                self.source_id,
                row.entity_id,
                status,
                error=error,
                expected_block=row.last_block,
            ):
                if status is SyncStatus.SYNCED:
                    promoted += 1
                else:
                    self._flag_reorg(row.entity_id, error or "")
        return promoted

    def _project(self, event: RawEvent) -> ProjectionResult:
        return self.projector.project(event, head=self.activity.head_height)

    def _flag_reorg(self, entity_id: str, reason: str) -> None:
        logger.warning("%s %s flagged for reconciliation: %s", self.source_id, entity_id, reason)
        if self.journal is not None:
            self.journal.log(
                self.source_id,
                event_type="reorg",
                action="hash_mismatch",
                status="ERROR",
                payload={"entity_id": entity_id, "reason": reason[:500]},
            )
