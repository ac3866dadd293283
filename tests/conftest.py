from __future__ import annotations

from typing import Callable

import pytest

from chain_cache.core.models import RawEvent, SourceConfig, SourceEndpoint
from chain_cache.sync.base import EndpointClient

OWNER = "0x" + "ab" * 20
OTHER_OWNER = "0x" + "cd" * 20

_FIELDS = {
    "TaskCreated": ("taskId", "owner", "description", "timestamp"),
    "TaskUpdated": ("taskId", "owner", "description", "timestamp"),
    "TaskCompleted": ("taskId", "owner", "timestamp"),
    "TaskDeleted": ("taskId", "owner", "timestamp"),
    "TaskRestored": ("taskId", "owner", "timestamp"),
}


def make_event(
    name: str,
    task_id: int | str,
    block: int,
    log_index: int = 0,
    *,
    source_id: str = "src",
    owner: str = OWNER,
    description: str = "write the sync engine",
    timestamp: int | None = None,
    removed: bool = False,
    block_hash: str | None = None,
) -> RawEvent:
    values = {
        "taskId": int(task_id),
        "owner": owner,
        "description": description,
        "timestamp": timestamp if timestamp is not None else 1_700_000_000 + block * 12 + log_index,
    }
    return RawEvent(
        source_id=source_id,
        event_name=name,
        args={field: values[field] for field in _FIELDS.get(name, ("taskId",))},
        block_number=block,
        log_index=log_index,
        transaction_hash=f"0x{block:032x}{log_index:032x}",
        block_hash=block_hash if block_hash is not None else f"0x{block:064x}",
        removed=removed,
    )


class FakeChain:
    """In-memory chain shared by every fake endpoint of a source."""

    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.logs: list[RawEvent] = []
        self.hashes: dict[int, str] = {}

    def add(self, *events: RawEvent) -> None:
        self.logs.extend(events)

    def block_hash(self, block: int) -> str:
        return self.hashes.get(block, f"0x{block:064x}")


class FakeEndpointClient(EndpointClient):
    def __init__(
        self,
        url: str,
        chain: FakeChain,
        *,
        fail_with: Exception | None = None,
        max_range: int | None = None,
    ) -> None:
        self.url = url
        self.chain = chain
        self.fail_with = fail_with
        self.max_range = max_range
        self.calls: list[tuple] = []

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def block_number(self) -> int:
        self.calls.append(("block_number",))
        self._check()
        return self.chain.head

    def get_logs(self, from_block: int, to_block: int, *, entity_id: str | None = None) -> list[RawEvent]:
        self.calls.append(("get_logs", from_block, to_block, entity_id))
        self._check()
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise ValueError(f"query returned more than 10000 results; max is {self.max_range} blocks")
        return [
            event.model_copy(deep=True)
            for event in self.chain.logs
            if from_block <= event.block_number <= to_block
            and (entity_id is None or str(event.args.get("taskId")) == str(entity_id))
        ]

    def block_hash(self, block_number: int) -> str | None:
        self.calls.append(("block_hash", block_number))
        self._check()
        return self.chain.block_hash(block_number)

    def log_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] == "get_logs"]


def make_source(
    source_id: str = "src",
    *,
    urls: tuple[str, ...] = ("http://primary",),
    depth: int = 3,
    max_log_range: int = 10,
    recovery_window_blocks: int = 5_000,
    start_block: int = 0,
    poll_interval_seconds: float = 0.01,
    stall_threshold_seconds: float = 300.0,
) -> SourceConfig:
    return SourceConfig(
        source_id=source_id,
        chain_id=31337,
        contract_address="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        endpoints=[SourceEndpoint(url=url, priority=idx) for idx, url in enumerate(urls)],
        confirmation_depth=depth,
        max_log_range=max_log_range,
        recovery_window_blocks=recovery_window_blocks,
        start_block=start_block,
        poll_interval_seconds=poll_interval_seconds,
        stall_threshold_seconds=stall_threshold_seconds,
    )


def client_factory_for(clients: dict[str, FakeEndpointClient]) -> Callable[[SourceConfig, SourceEndpoint], EndpointClient]:
    def _factory(source: SourceConfig, endpoint: SourceEndpoint) -> EndpointClient:
        _ = source
        return clients[endpoint.url]

    return _factory


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(head=0)
