from datetime import datetime, timezone
from pathlib import Path

import pytest

from chain_cache.cache.cursor_store import CursorStore
from chain_cache.cache.entity_store import EntityStore
from chain_cache.core.errors import CursorStoreUnavailable
from chain_cache.core.models import ProjectedEntity, SyncStatus

from conftest import OTHER_OWNER, OWNER


def _entity(entity_id: str, **kwargs) -> ProjectedEntity:
    data = {
        "source_id": "src",
        "entity_id": entity_id,
        "owner": OWNER,
        "description": f"task {entity_id}",
        "created_at": datetime(2024, 1, int(entity_id), tzinfo=timezone.utc),
        "last_block": 100 + int(entity_id),
    }
    data.update(kwargs)
    return ProjectedEntity(**data)


def test_cursor_advance_is_monotonic(tmp_path: Path) -> None:
    store = CursorStore(str(tmp_path / "cache.db"))
    assert store.get("src") is None

    assert store.advance("src", 100, 2).position == (100, 2)
    assert store.advance("src", 90).position == (100, 2)
    assert store.advance("src", 100, 1).position == (100, 2)
    assert store.advance("src", 100, 5).position == (100, 5)
    assert store.advance("src", 120).position == (120, -1)
    assert store.get("src").position == (120, -1)


def test_cursor_rewind_is_explicit(tmp_path: Path) -> None:
    store = CursorStore(str(tmp_path / "cache.db"))
    store.advance("src", 500, 3)
    store.advance("other", 7)
    assert store.rewind("src", 450).position == (450, -1)
    assert [c.source_id for c in store.list_all()] == ["other", "src"]


def test_cursor_store_unavailable_is_typed(tmp_path: Path) -> None:
    store = CursorStore(str(tmp_path / "cache.db"))
    store.db_path = tmp_path / "missing-dir" / "nested" / "cache.db"
    with pytest.raises(CursorStoreUnavailable):
        store.get("src")
    with pytest.raises(CursorStoreUnavailable):
        store.ping()


def test_entity_store_keeps_one_row_per_key(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    assert store.insert_if_absent(_entity("1")) is True
    assert store.insert_if_absent(_entity("1", description="again")) is False
    assert store.get("src", "1").description == "task 1"

    store.save(_entity("1", description="saved", completed=True))
    row = store.get("src", "1")
    assert row.description == "saved"
    assert row.completed is True
    assert store.count_by_status() == {"pending": 1}


def test_entity_store_lists_by_owner(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    store.save(_entity("1"))
    store.save(_entity("2", completed=True))
    store.save(_entity("3", deleted=True))
    store.save(_entity("4", owner=OTHER_OWNER))
    store.save(_entity("5", source_id="other"))

    assert [e.entity_id for e in store.list_by_owner(OWNER.upper().replace("0X", "0x"))] == ["5", "2", "1"]
    assert [e.entity_id for e in store.list_by_owner(OWNER, source_id="src")] == ["2", "1"]
    assert [e.entity_id for e in store.list_by_owner(OWNER, include_completed=False, include_deleted=True)] == [
        "5",
        "3",
        "1",
    ]


def test_mark_status_respects_expected_block(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    store.save(_entity("1"))
    assert [e.entity_id for e in store.list_pending("src", confirmed_through=101)] == ["1"]
    assert store.list_pending("src", confirmed_through=100) == []

    assert store.mark_status("src", "1", SyncStatus.SYNCED, expected_block=99) is False
    assert store.get("src", "1").sync_status is SyncStatus.PENDING
    assert store.mark_status("src", "1", SyncStatus.SYNCED, expected_block=101) is True
    row = store.get("src", "1")
    assert row.sync_status is SyncStatus.SYNCED
    assert row.last_synced_at is not None
