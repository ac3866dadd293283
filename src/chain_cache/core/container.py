from __future__ import annotations

import logging
from functools import lru_cache

from chain_cache.cache.cursor_store import CursorStore
from chain_cache.cache.entity_store import EntityStore
from chain_cache.core.config import get_settings
from chain_cache.core.models import SourceConfig
from chain_cache.journal.service import SyncJournal
from chain_cache.journal.store import SyncJournalStore
from chain_cache.sync.coordinator import SyncCoordinator
from chain_cache.sync.reconciler import EntityReconciler
from chain_cache.sync.web3_client import web3_client_factory

logger = logging.getLogger(__name__)


@lru_cache
def get_sources() -> tuple[SourceConfig, ...]:
    sources = get_settings().load_sources()
    if not sources:
        logger.warning("No sync sources configured. Set SYNC_SOURCES_FILE or SYNC_SOURCES_JSON.")
    return tuple(sources)


@lru_cache
def get_cursor_store() -> CursorStore:
    return CursorStore(get_settings().cache_db_path)


@lru_cache
def get_entity_store() -> EntityStore:
    return EntityStore(get_settings().cache_db_path)


@lru_cache
def get_sync_journal() -> SyncJournal:
    settings = get_settings()
    journal = SyncJournal(store=SyncJournalStore(settings.journal_db_path))
    journal.prune(settings.journal_retention_days)
    return journal


@lru_cache
def get_sync_coordinator() -> SyncCoordinator:
    settings = get_settings()
    return SyncCoordinator(
        list(get_sources()),
        settings=settings,
        cursor_store=get_cursor_store(),
        entity_store=get_entity_store(),
        client_factory=web3_client_factory(settings.rpc_request_timeout_seconds),
        journal=get_sync_journal(),
    )


@lru_cache
def get_entity_reconciler() -> EntityReconciler:
    return EntityReconciler(
        get_sync_coordinator().adapter,
        get_sync_coordinator().projector,
        journal=get_sync_journal(),
    )
