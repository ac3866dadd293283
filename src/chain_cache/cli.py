from __future__ import annotations

import argparse
import asyncio
import json
import signal
from contextlib import suppress

import uvicorn

from chain_cache.core.config import get_settings
from chain_cache.core.container import (
    get_cursor_store,
    get_entity_reconciler,
    get_entity_store,
    get_sync_coordinator,
    get_sync_journal,
)
from chain_cache.core.logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chain cache sync CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run every source pipeline until interrupted")

    serve = sub.add_parser("serve", help="Serve the HTTP API; pipelines run inside it when SYNC_ENABLED is set")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    sync_range = sub.add_parser("sync-range", help="Re-project a block range without moving the cursor")
    sync_range.add_argument("source_id")
    sync_range.add_argument("from_block", type=int)
    sync_range.add_argument("to_block", type=int, nargs="?", default=None, help="Defaults to the current head")

    rewind = sub.add_parser("rewind", help="Move a source cursor back so the next run re-scans from BLOCK + 1")
    rewind.add_argument("source_id")
    rewind.add_argument("block", type=int)

    reconcile = sub.add_parser("reconcile", help="Rebuild one entity from its on-chain history")
    reconcile.add_argument("source_id")
    reconcile.add_argument("entity_id")

    status = sub.add_parser("status", help="Show cursors, row counts and journal activity")
    status.add_argument("--journal-limit", type=int, default=20)
    return parser


async def _run() -> None:
    coordinator = get_sync_coordinator()
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    task = asyncio.create_task(coordinator.run_forever(), name="sync-coordinator")
    waiter = asyncio.create_task(stop.wait())
    await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    await coordinator.stop()
    waiter.cancel()
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


def _status(journal_limit: int) -> dict:
    journal = get_sync_journal()
    return {
        "cursors": [cursor.model_dump() for cursor in get_cursor_store().list_all()],
        "rows_by_status": get_entity_store().count_by_status(),
        "journal_summary": [tally.model_dump() for tally in journal.summary()],
        "recent_journal": [entry.model_dump() for entry in journal.query(limit=journal_limit)],
    }


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    settings = get_settings()
    setup_logging(settings.log_level)
    if args.command == "run":
        asyncio.run(_run())
        return
    if args.command == "serve":
        uvicorn.run("chain_cache.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
        return
    if args.command == "sync-range":
        result = get_sync_coordinator().sync_range(args.source_id, args.from_block, args.to_block)
        print(json.dumps(result.model_dump(), ensure_ascii=False, indent=2, default=str))
    elif args.command == "rewind":
        cursor = get_cursor_store().rewind(args.source_id, args.block)
        print(json.dumps(cursor.model_dump(), ensure_ascii=False, indent=2, default=str))
    elif args.command == "reconcile":
        entity = get_entity_reconciler().reconcile(args.source_id, args.entity_id)
        print(json.dumps(entity.model_dump(), ensure_ascii=False, indent=2, default=str))
    elif args.command == "status":
        print(json.dumps(_status(args.journal_limit), ensure_ascii=False, indent=2, default=str))


if __name__ == "__main__":
    main()
