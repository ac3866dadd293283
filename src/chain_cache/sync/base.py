from __future__ import annotations

from abc import ABC, abstractmethod

from chain_cache.core.models import RawEvent


class EndpointClient(ABC):
    """One upstream endpoint of a source chain."""

    url: str

    @abstractmethod
    def block_number(self) -> int:
        """
        Return the current head height seen by this endpoint.
        """

    @abstractmethod
    def get_logs(self, from_block: int, to_block: int, *, entity_id: str | None = None) -> list[RawEvent]:
        """
        Return decoded schema events in the inclusive block range, optionally
        restricted to one entity id. Logs that fail to decode are returned with
        empty args so the dispatcher can count and skip them.
        """

    def block_hash(self, block_number: int) -> str | None:
        """
        Optional method.
        Return the canonical hash of a block, used to verify confirmed events.
        """
        _ = block_number
        return None
