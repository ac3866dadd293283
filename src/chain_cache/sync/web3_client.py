from __future__ import annotations

import logging
from typing import Any, Callable

from web3 import Web3

from chain_cache.core.models import RawEvent, SourceConfig, SourceEndpoint
from chain_cache.sync.base import EndpointClient
from chain_cache.sync.schema import EVENT_ABIS, EVENT_FIELDS

logger = logging.getLogger(__name__)


def _signature(abi: dict[str, Any]) -> str:
    types = ",".join(item["type"] for item in abi["inputs"])
    return f"{abi['name']}({types})"


TOPIC_TO_ABI: dict[str, dict[str, Any]] = {
    Web3.to_hex(Web3.keccak(text=_signature(abi))): abi for abi in EVENT_ABIS
}


def entity_topic(entity_id: str) -> str:
    return "0x" + int(entity_id).to_bytes(32, "big").hex()


class Web3EndpointClient(EndpointClient):
    def __init__(self, source: SourceConfig, endpoint: SourceEndpoint, *, timeout_seconds: float = 30.0) -> None:
        if not source.contract_address:
            raise ValueError(f"source {source.source_id} has no contract_address")
        self.source_id = source.source_id
        self.url = endpoint.url
        self.w3 = Web3(Web3.HTTPProvider(endpoint.url, request_kwargs={"timeout": timeout_seconds}))
        self.address = Web3.to_checksum_address(source.contract_address)
        self.contract = self.w3.eth.contract(address=self.address, abi=EVENT_ABIS)

    def block_number(self) -> int:
        return int(self.w3.eth.block_number)

    def block_hash(self, block_number: int) -> str | None:
        block = self.w3.eth.get_block(block_number)
        return Web3.to_hex(block["hash"]) if block and block.get("hash") is not None else None

    def get_logs(self, from_block: int, to_block: int, *, entity_id: str | None = None) -> list[RawEvent]:
        topics: list[Any] = [list(TOPIC_TO_ABI)]
        if entity_id is not None:
            topics.append(entity_topic(entity_id))
        logs = self.w3.eth.get_logs(
            {
                "fromBlock": int(from_block),
                "toBlock": int(to_block),
                "address": self.address,
                "topics": topics,
            }
        )
        events = [self._decode(log) for log in logs]
        return [event for event in events if event is not None]

    def _decode(self, log: Any) -> RawEvent | None:
        topics = log.get("topics") or []
        if not topics:
            return None
        abi = TOPIC_TO_ABI.get(Web3.to_hex(topics[0]))
        if abi is None:
            return None
        args: dict[str, Any] = {}
        try:
            decoded = getattr(self.contract.events, abi["name"])().process_log(log)
            raw_args = dict(decoded["args"])
            args = {name: raw_args.get(name) for name in EVENT_FIELDS[abi["name"]] if name in raw_args}
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Could not decode %s log at block %s index %s: %s",
                abi["name"],
                log.get("blockNumber"),
                log.get("logIndex"),
                exc,
            )
        block_hash = log.get("blockHash")
        return RawEvent(
            source_id=self.source_id,
            event_name=abi["name"],
            args=args,
            block_number=int(log["blockNumber"]),
            log_index=int(log.get("logIndex") or 0),
            transaction_hash=Web3.to_hex(log["transactionHash"]) if log.get("transactionHash") is not None else "",
            block_hash=Web3.to_hex(block_hash) if block_hash is not None else None,
            removed=bool(log.get("removed", False)),
        )


def web3_client_factory(timeout_seconds: float = 30.0) -> Callable[[SourceConfig, SourceEndpoint], EndpointClient]:
    def _factory(source: SourceConfig, endpoint: SourceEndpoint) -> EndpointClient:
        return Web3EndpointClient(source, endpoint, timeout_seconds=timeout_seconds)

    return _factory
