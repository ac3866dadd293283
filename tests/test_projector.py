import random
from pathlib import Path

from chain_cache.cache.entity_store import EntityStore
from chain_cache.core.models import ProjectionOutcome, SyncStatus
from chain_cache.sync.projector import Projector, rebuild, transition
from chain_cache.sync.schema import require_args

from conftest import make_event

_VOLATILE = {"last_synced_at"}


def _lifecycle():
    return [
        make_event("TaskCreated", 1, 10, description="buy milk"),
        make_event("TaskUpdated", 1, 11, description="buy oat milk"),
        make_event("TaskCompleted", 1, 12),
        make_event("TaskDeleted", 1, 13),
        make_event("TaskRestored", 1, 14),
        make_event("TaskDeleted", 1, 15, 2),
    ]


def _project_all(tmp_path: Path, name: str, events, head: int = 100):
    store = EntityStore(str(tmp_path / f"{name}.db"))
    projector = Projector(store, depth=3)
    outcomes = [projector.project(event, head=head).outcome for event in events]
    return store, projector, outcomes


def test_duplicate_completion_is_a_no_op(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    projector = Projector(store, depth=3)
    projector.project(make_event("TaskCreated", 1, 100), head=100)
    completion = make_event("TaskCompleted", 1, 101, 1, timestamp=1_700_000_500)

    first = projector.project(completion, head=101)
    row_after_first = store.get("src", "1")
    second = projector.project(completion, head=101)
    row_after_second = store.get("src", "1")

    assert first.outcome is ProjectionOutcome.APPLIED
    assert second.outcome is ProjectionOutcome.DUPLICATE
    assert row_after_second.completed is True
    assert row_after_second.completed_at == row_after_first.completed_at
    assert row_after_second.last_synced_at == row_after_first.last_synced_at


def test_lifecycle_converges_under_any_delivery_order(tmp_path: Path) -> None:
    events = _lifecycle()
    expected_store, _, _ = _project_all(tmp_path, "ordered", events)
    expected = expected_store.get("src", "1").model_dump(exclude=_VOLATILE)
    assert expected["completed"] is True
    assert expected["deleted"] is True
    assert expected["description"] == "buy oat milk"
    assert (expected["last_block"], expected["last_log_index"]) == (15, 2)

    orders = [list(reversed(events))]
    rng = random.Random(7)
    for _ in range(5):
        shuffled = list(events)
        rng.shuffle(shuffled)
        orders.append(shuffled)
    for idx, order in enumerate(orders):
        store, projector, _ = _project_all(tmp_path, f"order{idx}", order)
        assert store.get("src", "1").model_dump(exclude=_VOLATILE) == expected
        assert projector.parked_count() == 0


def test_replaying_everything_twice_changes_nothing(tmp_path: Path) -> None:
    events = _lifecycle()
    store, projector, _ = _project_all(tmp_path, "replay", events)
    before = store.get("src", "1").model_dump()

    replay = [projector.project(event, head=100).outcome for event in events]

    assert all(outcome in (ProjectionOutcome.DUPLICATE, ProjectionOutcome.STALE) for outcome in replay)
    assert store.get("src", "1").model_dump() == before


def test_update_of_deleted_task_waits_for_restore(tmp_path: Path) -> None:
    store, projector, outcomes = _project_all(
        tmp_path,
        "parked",
        [
            make_event("TaskCreated", 1, 10),
            make_event("TaskDeleted", 1, 11),
            make_event("TaskUpdated", 1, 13, description="after restore"),
        ],
    )
    assert outcomes[-1] is ProjectionOutcome.PARKED
    assert store.get("src", "1").description == "write the sync engine"

    result = projector.project(make_event("TaskRestored", 1, 12), head=100)

    assert result.outcome is ProjectionOutcome.APPLIED
    assert result.replayed == 1
    row = store.get("src", "1")
    assert row.deleted is False
    assert row.description == "after restore"


def test_parked_events_are_bounded_per_entity(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    projector = Projector(store, depth=3, max_parked_per_entity=2)
    for block in (20, 21, 22):
        outcome = projector.project(make_event("TaskUpdated", 9, block, description=f"v{block}"), head=100).outcome
        assert outcome is ProjectionOutcome.PARKED
    assert projector.parked_count("src") == 2

    projector.project(make_event("TaskCreated", 9, 5), head=100)
    assert store.get("src", "9").description == "v22"


def test_status_follows_confirmation_depth(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    projector = Projector(store, depth=3)
    projector.project(make_event("TaskCreated", 1, 100), head=101)
    assert store.get("src", "1").sync_status is SyncStatus.PENDING
    projector.project(make_event("TaskCreated", 2, 100), head=103)
    assert store.get("src", "2").sync_status is SyncStatus.SYNCED
    projector.project(make_event("TaskCreated", 3, 100), head=None)
    assert store.get("src", "3").sync_status is SyncStatus.PENDING


def test_removed_log_flags_entity_and_error_is_sticky(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    projector = Projector(store, depth=3)
    projector.project(make_event("TaskCreated", 1, 100), head=200)

    flagged = projector.project(make_event("TaskCompleted", 1, 101, removed=True), head=200)
    assert flagged.outcome is ProjectionOutcome.FLAGGED
    row = store.get("src", "1")
    assert row.sync_status is SyncStatus.ERROR
    assert "removed" in (row.sync_error or "")

    projector.project(make_event("TaskUpdated", 1, 150, description="later"), head=200)
    row = store.get("src", "1")
    assert row.description == "later"
    assert row.sync_status is SyncStatus.ERROR


def test_transition_rejects_older_content() -> None:
    _, created, _ = transition(None, make_event("TaskCreated", 1, 10), _args("TaskCreated", 10))
    outcome, updated, _ = transition(created, make_event("TaskUpdated", 1, 20), _args("TaskUpdated", 20, "new"))
    assert outcome is ProjectionOutcome.APPLIED
    outcome, same, reason = transition(updated, make_event("TaskUpdated", 1, 15), _args("TaskUpdated", 15, "old"))
    assert outcome is ProjectionOutcome.STALE
    assert same.description == "new"
    assert "stale" in reason


def test_rebuild_folds_history_and_skips_bad_logs() -> None:
    events = [
        make_event("TaskCompleted", 4, 30),
        make_event("TaskCreated", 4, 20),
        make_event("TaskUpdated", 4, 25, removed=True, description="reorged away"),
        make_event("TaskUpdated", 4, 26).model_copy(update={"args": {"taskId": 4}}),
    ]
    entity, leftover = rebuild(events, head=100, depth=3)
    assert entity is not None
    assert entity.completed is True
    assert entity.description == "write the sync engine"
    assert entity.sync_status is SyncStatus.SYNCED
    assert leftover == []

    missing, _ = rebuild([make_event("TaskCompleted", 5, 30)], head=100, depth=3)
    assert missing is None


def _args(name: str, block: int, description: str = "write the sync engine") -> dict:
    return require_args(make_event(name, 1, block, description=description))


def test_parked_entities_are_capped_and_oldest_dropped(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    projector = Projector(store, depth=3, max_parked_per_entity=2, max_parked_entities=50)
    for task_id in range(1, 501):
        projector.project(make_event("TaskCompleted", task_id, 100 + task_id), head=1_000)

    assert projector.parked_entities() == 50
    assert projector.parked_count("src") == 50

    projector.project(make_event("TaskCreated", 500, 10), head=1_000)
    assert store.get("src", "500").completed is True
    projector.project(make_event("TaskCreated", 1, 10), head=1_000)
    assert store.get("src", "1").completed is False


def test_dropping_parked_events_flags_existing_row(tmp_path: Path) -> None:
    store = EntityStore(str(tmp_path / "cache.db"))
    projector = Projector(store, depth=3, max_parked_entities=1)
    projector.project(make_event("TaskCreated", 1, 10), head=100)
    projector.project(make_event("TaskRestored", 1, 20), head=100)

    projector.project(make_event("TaskCompleted", 2, 30), head=100)

    row = store.get("src", "1")
    assert row.sync_status is SyncStatus.ERROR
    assert "dropped" in row.sync_error
    assert projector.parked_entities() == 1
