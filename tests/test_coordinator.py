import asyncio
import sqlite3
from pathlib import Path

from chain_cache.cache.cursor_store import CursorStore
from chain_cache.cache.entity_store import EntityStore
from chain_cache.core.config import Settings
from chain_cache.core.errors import CursorStoreUnavailable
from chain_cache.core.models import SyncStatus
from chain_cache.journal.service import SyncJournal
from chain_cache.journal.store import SyncJournalStore
from chain_cache.sync.coordinator import SyncCoordinator

from conftest import FakeChain, FakeEndpointClient, client_factory_for, make_event, make_source


class BrokenCursorStore(CursorStore):
    def get(self, source_id: str):
        raise CursorStoreUnavailable(f"cursor store offline for {source_id}")


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        cache_db_path=str(tmp_path / "cache.db"),
        journal_db_path=str(tmp_path / "journal.db"),
        health_tick_seconds=0.05,
        reconnect_base_delay_seconds=0.01,
        reconnect_max_delay_seconds=0.05,
        max_reconnect_attempts=2,
        shutdown_grace_seconds=2,
        request_retry_base_delay_seconds=0,
    )


def _coordinator(tmp_path: Path, sources, clients, *, cursor_store: CursorStore | None = None) -> SyncCoordinator:
    settings = _settings(tmp_path)
    return SyncCoordinator(
        sources,
        settings=settings,
        cursor_store=cursor_store or CursorStore(settings.cache_db_path),
        entity_store=EntityStore(settings.cache_db_path),
        client_factory=client_factory_for(clients),
        journal=SyncJournal(SyncJournalStore(settings.journal_db_path)),
    )


async def _wait_for(condition, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_pipeline_recovers_then_follows_live_events(tmp_path: Path) -> None:
    chain = FakeChain(head=20)
    chain.add(make_event("TaskCreated", 1, 5), make_event("TaskCompleted", 1, 15))
    coordinator = _coordinator(
        tmp_path,
        [make_source(max_log_range=10)],
        {"http://primary": FakeEndpointClient("http://primary", chain)},
    )
    pipeline = coordinator.pipeline("src")
    store = coordinator.entity_store

    async def _scenario() -> None:
        task = asyncio.create_task(coordinator.run_forever())
        await _wait_for(lambda: pipeline.state == "live")
        assert pipeline.cursor.block_number == 20
        assert store.get("src", "1").completed is True

        chain.add(make_event("TaskCreated", 2, 22, description="live task"))
        chain.head = 25
        await _wait_for(lambda: pipeline.cursor.block_number == 25)
        await _wait_for(lambda: store.get("src", "2") is not None)
        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_scenario())

    row = store.get("src", "2")
    assert row.description == "live task"
    assert row.sync_status is SyncStatus.SYNCED
    assert pipeline.state == "stopped"
    (snapshot,) = coordinator.health_snapshot()
    assert snapshot.head_height == 25
    assert snapshot.cursor_block == 25
    assert snapshot.current_endpoint == "http://primary"
    assert snapshot.degraded is False


def test_failing_source_degrades_without_stopping_others(tmp_path: Path) -> None:
    good_chain = FakeChain(head=12)
    good_chain.add(make_event("TaskCreated", 7, 10, source_id="good"))
    bad_chain = FakeChain(head=12)
    clients = {
        "http://good": FakeEndpointClient("http://good", good_chain),
        "http://bad": FakeEndpointClient("http://bad", bad_chain, fail_with=ConnectionError("connection refused")),
    }
    coordinator = _coordinator(
        tmp_path,
        [make_source("good", urls=("http://good",)), make_source("bad", urls=("http://bad",))],
        clients,
    )

    async def _scenario() -> None:
        task = asyncio.create_task(coordinator.run_forever())
        await _wait_for(lambda: coordinator.pipeline("bad").degraded)
        await _wait_for(lambda: coordinator.pipeline("good").state == "live")
        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_scenario())

    assert coordinator.degraded_sources() == ["bad"]
    assert "gave up" in (coordinator.pipeline("bad").degraded_reason or "")
    assert coordinator.entity_store.get("good", "7") is not None
    degraded = coordinator.journal.query(source_id="bad", event_type="pipeline")
    assert degraded[0].action == "degraded"


def test_unreachable_cursor_store_degrades_source(tmp_path: Path) -> None:
    client = FakeEndpointClient("http://primary", FakeChain(head=5))
    settings = _settings(tmp_path)
    coordinator = _coordinator(
        tmp_path,
        [make_source()],
        {"http://primary": client},
        cursor_store=BrokenCursorStore(settings.cache_db_path),
    )

    asyncio.run(coordinator.run_forever())

    pipeline = coordinator.pipeline("src")
    assert pipeline.degraded
    assert "offline" in pipeline.degraded_reason
    assert client.calls == []


def test_reconnect_request_disposes_and_resubscribes(tmp_path: Path) -> None:
    chain = FakeChain(head=3)
    client = FakeEndpointClient("http://primary", chain)
    coordinator = _coordinator(tmp_path, [make_source()], {"http://primary": client})
    pipeline = coordinator.pipeline("src")

    async def _scenario() -> None:
        task = asyncio.create_task(coordinator.run_forever())
        await _wait_for(lambda: pipeline.state == "live")
        first = pipeline.subscription
        coordinator.request_reconnect("src", "manual")
        assert first.disposed
        await _wait_for(lambda: pipeline.reconnects == 1 and pipeline.state == "live")
        assert pipeline.subscription is not first
        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_scenario())
    entries = coordinator.journal.query(source_id="src", event_type="pipeline")
    assert entries[0].action == "reconnect"


def test_sync_range_does_not_move_cursor(tmp_path: Path) -> None:
    chain = FakeChain(head=60)
    chain.add(make_event("TaskCreated", 3, 41), make_event("TaskUpdated", 3, 44, description="replayed"))
    coordinator = _coordinator(tmp_path, [make_source()], {"http://primary": FakeEndpointClient("http://primary", chain)})
    coordinator.cursor_store.advance("src", 30)

    result = coordinator.sync_range("src", 40, 50)

    assert (result.fetched, result.applied, result.failed) == (2, 2, 0)
    assert coordinator.cursor_store.get("src").block_number == 30
    row = coordinator.entity_store.get("src", "3")
    assert row.description == "replayed"
    assert row.sync_status is SyncStatus.SYNCED


class FlakyEntityStore(EntityStore):
    def __init__(self, db_path: str) -> None:
        super().__init__(db_path)
        self.failures_left = 0

    def insert_if_absent(self, entity) -> bool:
        if self.failures_left:
            self.failures_left -= 1
            raise sqlite3.OperationalError("database is locked")
        return super().insert_if_absent(entity)


def test_live_event_is_refetched_after_failed_write(tmp_path: Path) -> None:
    chain = FakeChain(head=20)
    settings = _settings(tmp_path)
    store = FlakyEntityStore(settings.cache_db_path)
    coordinator = SyncCoordinator(
        [make_source()],
        settings=settings,
        cursor_store=CursorStore(settings.cache_db_path),
        entity_store=store,
        client_factory=client_factory_for({"http://primary": FakeEndpointClient("http://primary", chain)}),
    )
    pipeline = coordinator.pipeline("src")

    async def _scenario() -> None:
        task = asyncio.create_task(coordinator.run_forever())
        await _wait_for(lambda: pipeline.state == "live")
        store.failures_left = 1
        chain.add(make_event("TaskCreated", 9, 22, description="written on retry"))
        chain.head = 25
        await _wait_for(lambda: store.get("src", "9") is not None)
        await _wait_for(lambda: pipeline.cursor.block_number == 25)
        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_scenario())

    assert pipeline.reconnects >= 1
    assert store.get("src", "9").description == "written on retry"
    assert pipeline.activity.snapshot()["errors_by_category"] == {"unknown": 1}
