from __future__ import annotations

import logging
from typing import Callable

from chain_cache.core.errors import EntityNotFound
from chain_cache.core.models import ProjectedEntity, RawEvent, SourceConfig
from chain_cache.journal.service import SyncJournal
from chain_cache.sync.adapter import EventSourceAdapter
from chain_cache.sync.projector import Projector

logger = logging.getLogger(__name__)


class EntityReconciler:
    """Rebuilds one cache row from the entity's full on-chain history."""

    def __init__(
        self,
        adapter_for: Callable[[str], EventSourceAdapter],
        projector_for: Callable[[str], Projector],
        *,
        journal: SyncJournal | None = None,
    ) -> None:
        self.adapter_for = adapter_for
        self.projector_for = projector_for
        self.journal = journal

    def reconcile(self, source_id: str, entity_id: str) -> ProjectedEntity:
        adapter = self.adapter_for(source_id)
        projector = self.projector_for(source_id)
        source: SourceConfig = adapter.source
        entity_id = str(int(entity_id))

        def _history() -> tuple[list[RawEvent], int]:
            head = adapter.head_height()
            return adapter.logs_for_entity(entity_id, source.start_block, head), head

        result = projector.replace(source_id, entity_id, _history)
        entity = result.entity
        if entity is None:
            raise EntityNotFound(f"{source_id}/{entity_id} has no creation event on chain")
        if result.leftover:
            logger.warning(
                "%s %s: %s events could not be applied during reconciliation",
                source_id,
                entity_id,
                len(result.leftover),
            )
        logger.info(
            "%s %s reconciled from %s events: status=%s",
            source_id,
            entity_id,
            result.events,
            entity.sync_status.value,
        )
        if self.journal is not None:
            self.journal.log(
                source_id,
                event_type="reconcile",
                action="rebuild",
                payload={
                    "entity_id": entity_id,
                    "events": result.events,
                    "unapplied": len(result.leftover),
                    "previous_status": result.previous.sync_status.value if result.previous else None,
                    "status": entity.sync_status.value,
                    "head": result.head,
                },
            )
        return entity
