from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from chain_cache.core.models import JournalEntryCreate, JournalEntryRecord, JournalTally

_COLUMNS = "id, logged_at, source_id, event_type, action, status, payload"


class SyncJournalStore:
    """Append-only table of sync diagnostics; rows are only ever added or pruned by age."""

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
                CREATE TABLE IF NOT EXISTS sync_journal (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    logged_at TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sync_journal_lookup ON sync_journal(source_id, event_type, id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_journal_logged ON sync_journal(logged_at)")

    def append(self, entry: JournalEntryCreate) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO sync_journal(logged_at, source_id, event_type, action, status, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    datetime.now(timezone.utc).isoformat(),
                    entry.source_id,
                    entry.event_type,
                    entry.action,
                    entry.status,
                    json.dumps(entry.payload, ensure_ascii=False),
                ),
            )
            return int(cur.lastrowid)

    def recent(
        self,
        *,
        source_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[JournalEntryRecord]:
        filters = {"source_id": source_id, "event_type": event_type, "status": status}
        clauses = [f"{column} = ?" for column, value in filters.items() if value]
        params: list[object] = [value for value in filters.values() if value]
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(int(limit), 1000)))
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM sync_journal {where} ORDER BY id DESC LIMIT ?",
                params,
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def tally(self, source_id: str | None = None) -> list[JournalTally]:
        where, params = ("WHERE source_id = ?", [source_id]) if source_id else ("", [])
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT source_id, event_type, status, COUNT(*) AS entries, MAX(logged_at) AS last_at
                FROM sync_journal {where}
                GROUP BY source_id, event_type, status
                ORDER BY source_id, event_type, status
                """,
                params,
            ).fetchall()
        return [
            JournalTally(
                source_id=row["source_id"],
                event_type=row["event_type"],
                status=row["status"],
                entries=int(row["entries"]),
                last_at=datetime.fromisoformat(row["last_at"]),
            )
            for row in rows
        ]

    def prune(self, before: datetime) -> int:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM sync_journal WHERE logged_at < ?", (before.isoformat(),))
            return int(cur.rowcount)

    @staticmethod
    def _to_record(row: sqlite3.Row) -> JournalEntryRecord:
        return JournalEntryRecord(
            id=int(row["id"]),
            event_time=datetime.fromisoformat(row["logged_at"]),
            source_id=row["source_id"],
            event_type=row["event_type"],
            action=row["action"],
            status=row["status"],
            payload=json.loads(row["payload"]),
        )
