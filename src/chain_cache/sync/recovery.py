from __future__ import annotations

import logging
from typing import Callable

from chain_cache.cache.cursor_store import CursorStore
from chain_cache.core.errors import ProjectionFailed, skippable
from chain_cache.core.models import RangeSyncResult, SourceConfig, SyncCursor
from chain_cache.sync.adapter import EventSourceAdapter
from chain_cache.sync.dispatcher import EventDispatcher

logger = logging.getLogger(__name__)


def _never() -> bool:
    return False


class RecoveryScanner:
    """
    Replays historical logs between the stored cursor and the head.

    Chunks are fetched in ascending order and each one is fully dispatched
    before the cursor moves to its last block, so an interrupted scan resumes
    at the first chunk that was not completed. Malformed events are skipped;
    any other handler failure raises ``ProjectionFailed`` with the cursor
    left where it was.
    """

    def __init__(
        self,
        source: SourceConfig,
        adapter: EventSourceAdapter,
        dispatcher: EventDispatcher,
        cursor_store: CursorStore,
    ) -> None:
        self.source = source
        self.adapter = adapter
        self.dispatcher = dispatcher
        self.cursor_store = cursor_store

    def scan_bounds(self, cursor: SyncCursor | None, head: int) -> tuple[int, int] | None:
        if cursor is not None:
            start = cursor.block_number + 1
        else:
            start = max(self.source.start_block, head - self.source.recovery_window_blocks + 1)
        if start > head:
            return None
        return start, head

    def recover(
        self,
        cursor: SyncCursor | None,
        head: int,
        *,
        should_stop: Callable[[], bool] = _never,
    ) -> SyncCursor | None:
        bounds = self.scan_bounds(cursor, head)
        if bounds is None:
            logger.info("%s: cursor at %s, nothing to recover", self.source.source_id, cursor.block_number if cursor else None)
            return cursor
        start, end = bounds
        logger.info("%s: recovering blocks %s-%s", self.source.source_id, start, end)
        step = self.source.max_log_range
        handled = failed = 0
        for chunk_start in range(start, end + 1, step):
            if should_stop():
                logger.info("%s: recovery interrupted before block %s", self.source.source_id, chunk_start)
                break
            chunk_end = min(chunk_start + step - 1, end)
            events = self.adapter.logs_in_range(chunk_start, chunk_end)
            for event in events:
                handled += 1
                error = self.dispatcher.handle(event)
                if error is None:
                    continue
                if not skippable(error):
                    raise ProjectionFailed(
                        f"{self.source.source_id}: {event.event_name} at {event.block_number}:{event.log_index} "
                        f"not projected, cursor held at {cursor.block_number if cursor else None}: {error}",
                        event.position,
                    ) from error
                failed += 1
            last_index = max((e.log_index for e in events if e.block_number == chunk_end), default=-1)
            cursor = self.cursor_store.advance(self.source.source_id, chunk_end, last_index)
        logger.info(
            "%s: recovery done at block %s (%s events, %s failed)",
            self.source.source_id,
            cursor.block_number if cursor else None,
            handled,
            failed,
        )
        return cursor

    def replay_range(self, from_block: int, to_block: int) -> RangeSyncResult:
        """Re-project a block range without touching the cursor."""
        if to_block < from_block:
            raise ValueError(f"to_block {to_block} is before from_block {from_block}")
        result = RangeSyncResult(source_id=self.source.source_id, from_block=from_block, to_block=to_block)
        for event in self.adapter.logs_in_range(from_block, to_block):
            result.fetched += 1
            if self.dispatcher.handle(event) is None:
                result.applied += 1
            else:
                result.failed += 1
        logger.info(
            "%s: range %s-%s replayed: fetched=%s applied=%s failed=%s",
            self.source.source_id,
            from_block,
            to_block,
            result.fetched,
            result.applied,
            result.failed,
        )
        return result
