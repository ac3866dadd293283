from __future__ import annotations

from typing import Any

from chain_cache.core.errors import MalformedEventError
from chain_cache.core.models import EventKind, RawEvent


def _event_abi(name: str, inputs: list[tuple[str, str, bool]]) -> dict[str, Any]:
    return {
        "anonymous": False,
        "inputs": [
            {"indexed": indexed, "internalType": typ, "name": field, "type": typ}
            for field, typ, indexed in inputs
        ],
        "name": name,
        "type": "event",
    }


TASK_CREATED_ABI = _event_abi(
    "TaskCreated",
    [("taskId", "uint256", True), ("owner", "address", True), ("description", "string", False), ("timestamp", "uint256", False)],
)
TASK_UPDATED_ABI = _event_abi(
    "TaskUpdated",
    [("taskId", "uint256", True), ("owner", "address", True), ("description", "string", False), ("timestamp", "uint256", False)],
)
TASK_COMPLETED_ABI = _event_abi(
    "TaskCompleted",
    [("taskId", "uint256", True), ("owner", "address", True), ("timestamp", "uint256", False)],
)
TASK_DELETED_ABI = _event_abi(
    "TaskDeleted",
    [("taskId", "uint256", True), ("owner", "address", True), ("timestamp", "uint256", False)],
)
TASK_RESTORED_ABI = _event_abi(
    "TaskRestored",
    [("taskId", "uint256", True), ("owner", "address", True), ("timestamp", "uint256", False)],
)

EVENT_ABIS: list[dict[str, Any]] = [
    TASK_CREATED_ABI,
    TASK_UPDATED_ABI,
    TASK_COMPLETED_ABI,
    TASK_DELETED_ABI,
    TASK_RESTORED_ABI,
]

# event name -> ordered field list
EVENT_FIELDS: dict[str, tuple[str, ...]] = {
    abi["name"]: tuple(item["name"] for item in abi["inputs"]) for abi in EVENT_ABIS
}

EVENT_KINDS: dict[str, EventKind] = {
    "TaskCreated": EventKind.CREATED,
    "TaskUpdated": EventKind.UPDATED,
    "TaskCompleted": EventKind.COMPLETED,
    "TaskDeleted": EventKind.DELETED,
    "TaskRestored": EventKind.RESTORED,
}

ENTITY_ID_FIELD = "taskId"
MAX_DESCRIPTION_LENGTH = 500


def event_names() -> list[str]:
    return list(EVENT_FIELDS)


def require_args(event: RawEvent) -> dict[str, Any]:
    """Check the event carries every field of its schema and normalize the values."""
    fields = EVENT_FIELDS.get(event.event_name)
    if fields is None:
        raise MalformedEventError(f"no schema for event {event.event_name}")
    missing = [name for name in fields if event.args.get(name) is None]
    if missing:
        raise MalformedEventError(
            f"{event.event_name} at {event.block_number}:{event.log_index} missing fields {', '.join(missing)}"
        )
    args = {name: event.args[name] for name in fields}
    try:
        args[ENTITY_ID_FIELD] = str(int(args[ENTITY_ID_FIELD]))
        args["timestamp"] = int(args["timestamp"])
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"{event.event_name} has non-integer field: {exc}") from exc
    owner = str(args["owner"]).strip().lower()
    if not owner.startswith("0x") or len(owner) != 42:
        raise MalformedEventError(f"{event.event_name} has invalid owner address {args['owner']!r}")
    args["owner"] = owner
    if "description" in args:
        description = str(args["description"]).strip()
        if not description:
            raise MalformedEventError(f"{event.event_name} has empty description")
        args["description"] = description[:MAX_DESCRIPTION_LENGTH]
    return args
