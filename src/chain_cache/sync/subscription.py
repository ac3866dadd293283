from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from chain_cache.core.errors import SyncError, to_sync_error
from chain_cache.core.models import RawEvent

if TYPE_CHECKING:
    from chain_cache.sync.adapter import EventSourceAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeadAdvanced:
    height: int


@dataclass(frozen=True)
class ConnectionLost:
    reason: str


SubscriptionItem = Union[RawEvent, HeadAdvanced, ConnectionLost]

_CLOSED = object()


class LogSubscription:
    """
    Live event feed for one source, polled over the adapter.

    Every poll queues the new events of the schema in order, followed by a
    ``HeadAdvanced`` marker for the head they were fetched up to. A failed
    poll queues ``ConnectionLost`` and ends the feed. ``dispose`` is safe to
    call any number of times and ends iteration immediately; events still
    queued at that point are dropped and refetched by the next recovery.
    """

    def __init__(
        self,
        adapter: "EventSourceAdapter",
        *,
        event_names: list[str],
        from_block: int,
        poll_interval_seconds: float,
    ) -> None:
        self.adapter = adapter
        self.event_names = set(event_names)
        self.next_block = max(0, int(from_block))
        self.poll_interval_seconds = poll_interval_seconds
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._disposed = False
        self._last_head: int | None = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def start(self) -> None:
        if self._task is None and not self._disposed:
            self._task = asyncio.create_task(self._poll(), name=f"subscription:{self.adapter.source_id}")

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "LogSubscription":
        return self

    async def __anext__(self) -> SubscriptionItem:
        if self._disposed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._disposed:
            raise StopAsyncIteration
        return item

    async def _poll(self) -> None:
        while not self._disposed:
            try:
                await self._poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                err = exc if isinstance(exc, SyncError) else to_sync_error(exc)
                logger.warning("%s: subscription poll failed: %s", self.adapter.source_id, err)
                self._queue.put_nowait(ConnectionLost(f"{err.category.value}: {err}"))
                self._queue.put_nowait(_CLOSED)
                return
            await asyncio.sleep(self.poll_interval_seconds)

    async def _poll_once(self) -> None:
        head = await asyncio.to_thread(self.adapter.head_height)
        if head >= self.next_block:
            events = await asyncio.to_thread(self.adapter.logs_in_range, self.next_block, head)
            for event in events:
                if event.event_name in self.event_names:
                    self._queue.put_nowait(event)
            self.next_block = head + 1
        if head != self._last_head:
            self._last_head = head
            self._queue.put_nowait(HeadAdvanced(head))
