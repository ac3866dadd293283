"""
Order-tolerant projection of task events into cache rows.

Every transition is a pure function of (current row, event). Each field group
remembers the chain position that last wrote it, so a replayed or older event
is recognised and dropped without a write. Events that are not legal yet
(an update before the create, a restore before the delete) are parked per
entity and retried whenever that entity changes, which makes any delivery
order of the same event set converge to the same row.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from chain_cache.core.models import (
    ConfirmationState,
    EventKind,
    ProjectedEntity,
    ProjectionOutcome,
    RawEvent,
    SyncStatus,
)
from chain_cache.cache.entity_store import EntityStore
from chain_cache.sync.confirmation import confirmation_state
from chain_cache.sync.schema import ENTITY_ID_FIELD, EVENT_KINDS, require_args

logger = logging.getLogger(__name__)

Parked = tuple[RawEvent, dict[str, Any]]


@dataclass
class ProjectionResult:
    outcome: ProjectionOutcome
    entity: ProjectedEntity | None = None
    reason: str = ""
    replayed: int = 0


def _chain_time(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _stamp(entity: ProjectedEntity, event: RawEvent, ts: datetime) -> None:
    if event.position >= entity.last_position:
        entity.last_block = event.block_number
        entity.last_log_index = event.log_index
        entity.last_block_hash = event.block_hash
        entity.updated_at = ts


def _older(pos: tuple[int, int], than: tuple[int, int] | None) -> str | None:
    """Return 'duplicate' / 'stale' when ``pos`` does not move past ``than``."""
    if than is None or pos > than:
        return None
    return "duplicate" if pos == than else "stale"


def transition(
    entity: ProjectedEntity | None,
    event: RawEvent,
    args: dict[str, Any],
) -> tuple[ProjectionOutcome, ProjectedEntity | None, str]:
    """
    Apply one validated event to a row without touching storage.

    Returns the outcome, the resulting row (a new object when applied, the
    input otherwise) and a short reason for non-applied outcomes.
    """
    kind = EVENT_KINDS[event.event_name]
    pos = event.position
    ts = _chain_time(args["timestamp"])

    if kind is EventKind.CREATED:
        if entity is not None:
            return ProjectionOutcome.DUPLICATE, entity, "already created"
        created = ProjectedEntity(
            source_id=event.source_id,
            entity_id=args[ENTITY_ID_FIELD],
            owner=args["owner"],
            description=args["description"],
            transaction_hash=event.transaction_hash,
            created_at=ts,
            updated_at=ts,
            content_block=event.block_number,
            content_log_index=event.log_index,
            last_block=event.block_number,
            last_log_index=event.log_index,
            last_block_hash=event.block_hash,
        )
        return ProjectionOutcome.APPLIED, created, ""

    if entity is None:
        return ProjectionOutcome.PARKED, None, "entity not created yet"

    if kind is EventKind.UPDATED:
        older = _older(pos, entity.content_position)
        if older:
            return _no_op(older), entity, f"{older} update"
        if entity.deleted and (entity.deleted_position or (-1, -1)) < pos:
            return ProjectionOutcome.PARKED, entity, "update of deleted entity"
        out = entity.model_copy()
        out.description = args["description"]
        out.content_block, out.content_log_index = pos
        _stamp(out, event, ts)
        return ProjectionOutcome.APPLIED, out, ""

    if kind is EventKind.COMPLETED:
        if entity.completed:
            older = _older(pos, entity.completed_position) or "duplicate"
            return _no_op(older), entity, "already completed"
        if entity.deleted and (entity.deleted_position or (-1, -1)) < pos:
            return ProjectionOutcome.PARKED, entity, "completion of deleted entity"
        out = entity.model_copy()
        out.completed = True
        out.completed_at = ts
        out.completed_block, out.completed_log_index = pos
        _stamp(out, event, ts)
        return ProjectionOutcome.APPLIED, out, ""

    # deleted / restored share the deletion position
    older = _older(pos, entity.deleted_position)
    if older:
        return _no_op(older), entity, f"{older} {kind.value}"
    if kind is EventKind.DELETED:
        if entity.deleted:
            return ProjectionOutcome.PARKED, entity, "delete of deleted entity"
        out = entity.model_copy()
        out.deleted = True
        out.deleted_at = ts
    else:
        if not entity.deleted:
            return ProjectionOutcome.PARKED, entity, "restore of active entity"
        out = entity.model_copy()
        out.deleted = False
        out.deleted_at = None
    out.deleted_block, out.deleted_log_index = pos
    _stamp(out, event, ts)
    return ProjectionOutcome.APPLIED, out, ""


def _no_op(kind: str) -> ProjectionOutcome:
    return ProjectionOutcome.DUPLICATE if kind == "duplicate" else ProjectionOutcome.STALE


def drain(
    entity: ProjectedEntity | None,
    parked: list[Parked],
) -> tuple[ProjectedEntity | None, list[Parked], int]:
    """Retry parked events in chain order until none of them makes progress."""
    remaining = sorted(parked, key=lambda item: item[0].position)
    applied = 0
    progress = True
    while progress and remaining:
        progress = False
        still: list[Parked] = []
        for event, args in remaining:
            outcome, entity, _ = transition(entity, event, args)
            if outcome is ProjectionOutcome.APPLIED:
                applied += 1
                progress = True
            elif outcome is ProjectionOutcome.PARKED:
                still.append((event, args))
        remaining = still
    return entity, remaining, applied


def resolve_status(entity: ProjectedEntity, head: int | None, depth: int) -> SyncStatus:
    if entity.sync_status is SyncStatus.ERROR:
        return SyncStatus.ERROR
    if confirmation_state(entity.last_block, head, depth) is ConfirmationState.CONFIRMED:
        return SyncStatus.SYNCED
    return SyncStatus.PENDING


def rebuild(
    events: list[RawEvent],
    *,
    head: int | None,
    depth: int,
) -> tuple[ProjectedEntity | None, list[Parked]]:
    """
    Fold a full event history into a fresh row. Malformed and removed logs
    are skipped. Returns the row (None if no creation was seen) and whatever
    could not be applied.
    """
    parked: list[Parked] = []
    for event in events:
        if event.removed:
            continue
        try:
            parked.append((event, require_args(event)))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skipping malformed %s at %s:%s: %s", event.event_name, event.block_number, event.log_index, exc)
    entity, leftover, _ = drain(None, parked)
    if entity is not None:
        entity.sync_status = resolve_status(entity, head, depth)
        entity.sync_error = None
        entity.last_synced_at = datetime.now(timezone.utc)
    return entity, leftover


@dataclass
class RebuildResult:
    entity: ProjectedEntity | None
    previous: ProjectedEntity | None
    events: int
    leftover: list[Parked]
    head: int


class Projector:
    """
    Applies events for one source to the entity store.

    Parked events are bounded twice: per entity, and by the number of
    entities holding any. The entity parked least recently is dropped first;
    if it already has a row, the row is marked ``error`` so reconciliation
    picks it up.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        depth: int,
        max_parked_per_entity: int = 32,
        max_parked_entities: int = 1_000,
    ) -> None:
        self.store = store
        self.depth = depth
        self.max_parked_per_entity = max(1, int(max_parked_per_entity))
        self.max_parked_entities = max(1, int(max_parked_entities))
        self._parked: OrderedDict[tuple[str, str], OrderedDict[tuple[int, int], Parked]] = OrderedDict()
        self._lock = threading.Lock()

    def parked_count(self, source_id: str | None = None) -> int:
        with self._lock:
            return sum(len(v) for k, v in self._parked.items() if source_id is None or k[0] == source_id)

    def parked_entities(self) -> int:
        with self._lock:
            return len(self._parked)

    def project(self, event: RawEvent, *, head: int | None = None) -> ProjectionResult:
        if event.removed:
            return self._flag_removed(event)
        args = require_args(event)
        key = (event.source_id, args[ENTITY_ID_FIELD])
        with self._lock:
            current = self.store.get(*key)
            outcome, entity, reason = transition(current, event, args)
            if outcome is ProjectionOutcome.PARKED:
                self._park(key, event, args, reason)
                return ProjectionResult(outcome, current, reason)
            if outcome is not ProjectionOutcome.APPLIED:
                logger.debug("%s %s %s at %s:%s: %s", key[0], key[1], outcome.value, event.block_number, event.log_index, reason)
                return ProjectionResult(outcome, current, reason)
            if entity is None:
                raise RuntimeError(f"{event.event_name} at {event.block_number}:{event.log_index} applied without a row")

            replayed = 0
            parked = self._parked.pop(key, None)
            if parked:
                entity, leftover, replayed = drain(entity, list(parked.values()))
                if leftover:
                    self._parked[key] = OrderedDict((e.position, (e, a)) for e, a in leftover)
            entity.sync_status = resolve_status(entity, head, self.depth)
            entity.last_synced_at = datetime.now(timezone.utc)
            if current is None:
                if not self.store.insert_if_absent(entity):
                    return ProjectionResult(ProjectionOutcome.DUPLICATE, self.store.get(*key), "already created")
            else:
                self.store.save(entity)
            return ProjectionResult(ProjectionOutcome.APPLIED, entity, "", replayed)

    def replace(
        self,
        source_id: str,
        entity_id: str,
        load_history: Callable[[], tuple[list[RawEvent], int]],
    ) -> RebuildResult:
        """
        Rebuild one row from ``load_history()`` -> (events, head) and store it.

        History is loaded while the projection lock is held, so a live event
        for the same source waits and then lands on top of the rebuilt row.
        Parked events for the entity are discarded; the history covers them.
        """
        key = (source_id, entity_id)
        with self._lock:
            events, head = load_history()
            entity, leftover = rebuild(events, head=head, depth=self.depth)
            previous = self.store.get(*key)
            if entity is not None:
                self._parked.pop(key, None)
                self.store.save(entity)
            return RebuildResult(entity, previous, len(events), leftover, head)

    def _park(self, key: tuple[str, str], event: RawEvent, args: dict[str, Any], reason: str) -> None:
        bucket = self._parked.get(key)
        if bucket is None:
            bucket = self._parked[key] = OrderedDict()
        self._parked.move_to_end(key)
        if event.position in bucket:
            return
        bucket[event.position] = (event, args)
        logger.info(
            "%s %s: parked %s at %s:%s (%s)",
            key[0],
            key[1],
            event.event_name,
            event.block_number,
            event.log_index,
            reason,
        )
        dropped: list[RawEvent] = []
        while len(bucket) > self.max_parked_per_entity:
            _, (evicted, _) = bucket.popitem(last=False)
            dropped.append(evicted)
        if dropped:
            self._drop(key, dropped, "parked buffer full")
        while len(self._parked) > self.max_parked_entities:
            old_key, old_bucket = self._parked.popitem(last=False)
            self._drop(old_key, [e for e, _ in old_bucket.values()], "too many entities waiting")

    def _drop(self, key: tuple[str, str], events: list[RawEvent], why: str) -> None:
        for evicted in events:
            logger.warning(
                "%s %s: %s, dropped %s at %s:%s",
                key[0],
                key[1],
                why,
                evicted.event_name,
                evicted.block_number,
                evicted.log_index,
            )
        reason = f"{len(events)} parked events dropped ({why})"
        if self.store.mark_status(key[0], key[1], SyncStatus.ERROR, error=reason):
            logger.warning("%s %s flagged for reconciliation: %s", key[0], key[1], reason)

    def _flag_removed(self, event: RawEvent) -> ProjectionResult:
        entity_id = event.args.get(ENTITY_ID_FIELD)
        reason = f"log removed by reorg at {event.block_number}:{event.log_index}"
        if entity_id is None:
            return ProjectionResult(ProjectionOutcome.FLAGGED, None, reason)
        entity_id = str(entity_id)
        self.store.mark_status(event.source_id, entity_id, SyncStatus.ERROR, error=reason)
        logger.warning("%s %s flagged for reconciliation: %s", event.source_id, entity_id, reason)
        return ProjectionResult(ProjectionOutcome.FLAGGED, self.store.get(event.source_id, entity_id), reason)
