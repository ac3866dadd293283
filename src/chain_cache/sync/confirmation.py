from __future__ import annotations

from chain_cache.core.models import ConfirmationState


def confirmations(block_number: int, head: int) -> int:
    return max(0, int(head) - int(block_number))


def confirmation_state(block_number: int, head: int | None, depth: int) -> ConfirmationState:
    """An event is confirmed once the head is at least ``depth`` blocks past it."""
    if head is None:
        return ConfirmationState.PENDING
    if confirmations(block_number, head) >= max(0, int(depth)):
        return ConfirmationState.CONFIRMED
    return ConfirmationState.PENDING


def confirmed_through(head: int, depth: int) -> int:
    """Highest block number that is confirmed at ``head``."""
    return int(head) - max(0, int(depth))
