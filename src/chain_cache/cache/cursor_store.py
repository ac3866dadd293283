from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from chain_cache.core.errors import CursorStoreUnavailable
from chain_cache.core.models import SyncCursor


class CursorStore:
    """One persisted sync cursor row per source."""

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
                CREATE TABLE IF NOT EXISTS sync_cursors (
                    source_id TEXT PRIMARY KEY,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def ping(self) -> None:
        try:
            with self._conn() as conn:
                conn.execute("SELECT 1 FROM sync_cursors LIMIT 1").fetchall()
        except sqlite3.Error as exc:
            raise CursorStoreUnavailable(f"cursor store {self.db_path} unavailable: {exc}") from exc

    def get(self, source_id: str) -> SyncCursor | None:
        try:
            with self._conn() as conn:
                row = conn.execute(
                    "SELECT source_id, block_number, log_index, updated_at FROM sync_cursors WHERE source_id = ?",
                    (source_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise CursorStoreUnavailable(f"cursor store {self.db_path} unavailable: {exc}") from exc
        return self._to_cursor(row) if row else None

    def advance(self, source_id: str, block_number: int, log_index: int = -1) -> SyncCursor:
        """Move the cursor forward; positions at or behind the stored one are ignored."""
        now = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO sync_cursors(source_id, block_number, log_index, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    block_number = excluded.block_number,
                    log_index = excluded.log_index,
                    updated_at = excluded.updated_at
                WHERE excluded.block_number > sync_cursors.block_number
                   OR (excluded.block_number = sync_cursors.block_number
                       AND excluded.log_index > sync_cursors.log_index)
                """,
                (source_id, int(block_number), int(log_index), now),
            )
            row = conn.execute(
                "SELECT source_id, block_number, log_index, updated_at FROM sync_cursors WHERE source_id = ?",
                (source_id,),
            ).fetchone()
        return self._to_cursor(row)

    def rewind(self, source_id: str, block_number: int) -> SyncCursor:
        """Explicitly move the cursor back, used only for operator-driven reorg handling."""
        now = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO sync_cursors(source_id, block_number, log_index, updated_at)
                VALUES (?, ?, -1, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    block_number = excluded.block_number,
                    log_index = -1,
                    updated_at = excluded.updated_at
                """,
                (source_id, max(0, int(block_number)), now),
            )
            row = conn.execute(
                "SELECT source_id, block_number, log_index, updated_at FROM sync_cursors WHERE source_id = ?",
                (source_id,),
            ).fetchone()
        return self._to_cursor(row)

    def list_all(self) -> list[SyncCursor]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT source_id, block_number, log_index, updated_at FROM sync_cursors ORDER BY source_id"
            ).fetchall()
        return [self._to_cursor(row) for row in rows]

    @staticmethod
    def _to_cursor(row: sqlite3.Row) -> SyncCursor:
        return SyncCursor(
            source_id=str(row["source_id"]),
            block_number=int(row["block_number"]),
            log_index=int(row["log_index"]),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
        )
