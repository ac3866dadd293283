from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from chain_cache.core.models import (
    EndpointHealth,
    JournalEntryCreate,
    JournalEntryRecord,
    JournalTally,
    SourceEndpoint,
)
from chain_cache.journal.store import SyncJournalStore

logger = logging.getLogger(__name__)


class SyncJournal:
    """
    Diagnostics trail for operators: endpoint transitions, reconnects,
    degradations, reorg flags and reconciliations. Writing never fails the
    caller; a broken journal only costs the entry.
    """

    def __init__(self, store: SyncJournalStore) -> None:
        self.store = store

    def log(self, source_id: str, event_type: str, action: str, payload: dict, status: str = "OK") -> int:
        try:
            return self.store.append(
                JournalEntryCreate(
                    source_id=source_id,
                    event_type=event_type,
                    action=action,
                    payload=payload,
                    status=status,
                )
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to write journal entry %s/%s for %s: %s", event_type, action, source_id, exc)
            return -1

    def endpoint_transition(
        self,
        source_id: str,
        endpoint: SourceEndpoint,
        previous: EndpointHealth,
        reason: str,
    ) -> int:
        return self.log(
            source_id,
            event_type="endpoint",
            action=f"{previous.value}->{endpoint.health.value}",
            status="OK" if endpoint.health is EndpointHealth.HEALTHY else "ERROR",
            payload={
                "url": endpoint.url,
                "priority": endpoint.priority,
                "consecutive_failures": endpoint.consecutive_failures,
                "cooldown_until": endpoint.cooldown_until.isoformat() if endpoint.cooldown_until else None,
                "reason": reason[:500],
            },
        )

    def query(
        self,
        *,
        source_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[JournalEntryRecord]:
        return self.store.recent(source_id=source_id, event_type=event_type, status=status, limit=limit)

    def summary(self, source_id: str | None = None) -> list[JournalTally]:
        return self.store.tally(source_id)

    def prune(self, retention_days: int) -> int:
        if retention_days <= 0:
            return 0
        removed = self.store.prune(datetime.now(timezone.utc) - timedelta(days=retention_days))
        if removed:
            logger.info("Pruned %s journal entries older than %s days", removed, retention_days)
        return removed
