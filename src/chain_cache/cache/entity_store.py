from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from chain_cache.core.models import ProjectedEntity, SyncStatus

_COLUMNS = (
    "source_id",
    "entity_id",
    "owner",
    "description",
    "completed",
    "deleted",
    "transaction_hash",
    "created_at",
    "updated_at",
    "completed_at",
    "deleted_at",
    "content_block",
    "content_log_index",
    "completed_block",
    "completed_log_index",
    "deleted_block",
    "deleted_log_index",
    "last_block",
    "last_log_index",
    "last_block_hash",
    "sync_status",
    "sync_error",
    "last_synced_at",
)

_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM projected_entities"


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc).isoformat()
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class EntityStore:
    """Cache rows projected from chain events, unique on (source_id, entity_id)."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS projected_entities (
                    source_id TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    owner TEXT,
                    description TEXT,
                    completed INTEGER NOT NULL DEFAULT 0,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    transaction_hash TEXT NOT NULL DEFAULT '',
                    created_at TEXT,
                    updated_at TEXT,
                    completed_at TEXT,
                    deleted_at TEXT,
                    content_block INTEGER,
                    content_log_index INTEGER,
                    completed_block INTEGER,
                    completed_log_index INTEGER,
                    deleted_block INTEGER,
                    deleted_log_index INTEGER,
                    last_block INTEGER NOT NULL DEFAULT 0,
                    last_log_index INTEGER NOT NULL DEFAULT 0,
                    last_block_hash TEXT,
                    sync_status TEXT NOT NULL,
                    sync_error TEXT,
                    last_synced_at TEXT,
                    PRIMARY KEY (source_id, entity_id)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_projected_entities_owner
                ON projected_entities(owner, deleted, completed)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_projected_entities_sync
                ON projected_entities(sync_status, last_synced_at)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_projected_entities_pending
                ON projected_entities(source_id, sync_status, last_block)
                """
            )

    def get(self, source_id: str, entity_id: str) -> ProjectedEntity | None:
        with self._conn() as conn:
            row = conn.execute(
                f"{_SELECT} WHERE source_id = ? AND entity_id = ?",
                (source_id, str(entity_id)),
            ).fetchone()
        return self._to_entity(row) if row else None

    def insert_if_absent(self, entity: ProjectedEntity) -> bool:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._conn() as conn:
            cur = conn.execute(
                f"INSERT OR IGNORE INTO projected_entities({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                self._to_params(entity),
            )
            return cur.rowcount > 0

    def save(self, entity: ProjectedEntity) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in _COLUMNS[2:])
        with self._conn() as conn:
            conn.execute(
                f"""
                INSERT INTO projected_entities({', '.join(_COLUMNS)}) VALUES ({placeholders})
                ON CONFLICT(source_id, entity_id) DO UPDATE SET {updates}
                """,
                self._to_params(entity),
            )

    def list_by_owner(
        self,
        owner: str,
        *,
        source_id: str | None = None,
        include_completed: bool = True,
        include_deleted: bool = False,
        limit: int = 200,
    ) -> list[ProjectedEntity]:
        limit = max(1, min(limit, 2000))
        sql = f"{_SELECT} WHERE owner = ?"
        params: list[object] = [owner.lower()]
        if not include_deleted:
            sql += " AND deleted = 0"
        if not include_completed:
            sql += " AND completed = 0"
        if source_id:
            sql += " AND source_id = ?"
            params.append(source_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_entity(row) for row in rows]

    def list_pending(self, source_id: str, *, confirmed_through: int, limit: int = 500) -> list[ProjectedEntity]:
        """Pending rows whose latest applied block is at or below ``confirmed_through``."""
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                {_SELECT}
                WHERE source_id = ? AND sync_status = ? AND last_block <= ?
                ORDER BY last_block ASC, last_log_index ASC
                LIMIT ?
                """,
                (source_id, SyncStatus.PENDING.value, int(confirmed_through), max(1, limit)),
            ).fetchall()
        return [self._to_entity(row) for row in rows]

    def mark_status(
        self,
        source_id: str,
        entity_id: str,
        status: SyncStatus,
        *,
        error: str | None = None,
        expected_block: int | None = None,
    ) -> bool:
        """
        Set ``sync_status`` for one row.

        When ``expected_block`` is given the row is only touched if its latest
        applied block still matches, so a confirmation computed for an older
        event never overrides a newer pending one.
        """
        sql = """
            UPDATE projected_entities
            SET sync_status = ?, sync_error = ?, last_synced_at = ?
            WHERE source_id = ? AND entity_id = ?
        """
        params: list[object] = [
            status.value,
            error,
            datetime.now(timezone.utc).isoformat(),
            source_id,
            str(entity_id),
        ]
        if expected_block is not None:
            sql += " AND last_block = ?"
            params.append(int(expected_block))
        with self._conn() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount > 0

    def count_by_status(self, source_id: str | None = None) -> dict[str, int]:
        sql = "SELECT sync_status, COUNT(*) AS n FROM projected_entities"
        params: list[object] = []
        if source_id:
            sql += " WHERE source_id = ?"
            params.append(source_id)
        sql += " GROUP BY sync_status"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {str(row["sync_status"]): int(row["n"]) for row in rows}

    @staticmethod
    def _to_params(entity: ProjectedEntity) -> tuple[object, ...]:
        return (
            entity.source_id,
            str(entity.entity_id),
            entity.owner.lower() if entity.owner else None,
            entity.description,
            1 if entity.completed else 0,
            1 if entity.deleted else 0,
            entity.transaction_hash,
            _to_iso(entity.created_at),
            _to_iso(entity.updated_at),
            _to_iso(entity.completed_at),
            _to_iso(entity.deleted_at),
            entity.content_block,
            entity.content_log_index,
            entity.completed_block,
            entity.completed_log_index,
            entity.deleted_block,
            entity.deleted_log_index,
            entity.last_block,
            entity.last_log_index,
            entity.last_block_hash,
            entity.sync_status.value,
            entity.sync_error,
            _to_iso(entity.last_synced_at),
        )

    @staticmethod
    def _to_entity(row: sqlite3.Row) -> ProjectedEntity:
        return ProjectedEntity(
            source_id=str(row["source_id"]),
            entity_id=str(row["entity_id"]),
            owner=row["owner"],
            description=row["description"],
            completed=bool(row["completed"]),
            deleted=bool(row["deleted"]),
            transaction_hash=str(row["transaction_hash"] or ""),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            completed_at=_from_iso(row["completed_at"]),
            deleted_at=_from_iso(row["deleted_at"]),
            content_block=row["content_block"],
            content_log_index=row["content_log_index"],
            completed_block=row["completed_block"],
            completed_log_index=row["completed_log_index"],
            deleted_block=row["deleted_block"],
            deleted_log_index=row["deleted_log_index"],
            last_block=int(row["last_block"]),
            last_log_index=int(row["last_log_index"]),
            last_block_hash=row["last_block_hash"],
            sync_status=SyncStatus(str(row["sync_status"])),
            sync_error=row["sync_error"],
            last_synced_at=_from_iso(row["last_synced_at"]),
        )
