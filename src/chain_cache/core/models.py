from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from chain_cache.core.defaults import default_confirmations


class EndpointHealth(str, Enum):
    HEALTHY = "healthy"
    COOLING_DOWN = "cooling-down"
    UNHEALTHY = "unhealthy"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class ConfirmationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class EventKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    DELETED = "deleted"
    RESTORED = "restored"


class ProjectionOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    PARKED = "parked"
    FLAGGED = "flagged"


class SourceEndpoint(BaseModel):
    url: str
    priority: int = Field(default=0, ge=0)
    health: EndpointHealth = EndpointHealth.HEALTHY
    consecutive_failures: int = Field(default=0, ge=0)
    last_failure_at: datetime | None = None
    cooldown_until: datetime | None = None

    @field_validator("url")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("endpoint url must not be empty")
        return text


class SourceConfig(BaseModel):
    source_id: str = Field(..., min_length=1)
    chain_id: int | None = None
    contract_address: str | None = None
    endpoints: list[SourceEndpoint] = Field(..., min_length=1)
    confirmation_depth: int | None = Field(default=None, ge=0)
    recovery_window_blocks: int = Field(default=5_000, ge=1)
    start_block: int = Field(default=0, ge=0)
    poll_interval_seconds: float = Field(default=4.0, gt=0)
    max_log_range: int = Field(default=2_000, ge=1)
    stall_threshold_seconds: float = Field(default=300.0, gt=0)

    @model_validator(mode="after")
    def _resolve_defaults(self) -> "SourceConfig":
        if self.confirmation_depth is None:
            self.confirmation_depth = default_confirmations(self.chain_id)
        self.endpoints = sorted(self.endpoints, key=lambda ep: ep.priority)
        return self

    @property
    def required_depth(self) -> int:
        return int(self.confirmation_depth or 0)


class RawEvent(BaseModel):
    source_id: str
    event_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    block_number: int = Field(..., ge=0)
    log_index: int = Field(default=0, ge=0)
    transaction_hash: str = ""
    block_hash: str | None = None
    removed: bool = False

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class SyncCursor(BaseModel):
    source_id: str
    block_number: int = Field(..., ge=0)
    log_index: int = -1
    updated_at: datetime | None = None

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class ProjectedEntity(BaseModel):
    source_id: str
    entity_id: str
    owner: str | None = None
    description: str | None = None
    completed: bool = False
    deleted: bool = False
    transaction_hash: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    deleted_at: datetime | None = None
    content_block: int | None = None
    content_log_index: int | None = None
    completed_block: int | None = None
    completed_log_index: int | None = None
    deleted_block: int | None = None
    deleted_log_index: int | None = None
    last_block: int = 0
    last_log_index: int = 0
    last_block_hash: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: str | None = None
    last_synced_at: datetime | None = None

    @property
    def last_position(self) -> tuple[int, int]:
        return (self.last_block, self.last_log_index)

    @property
    def content_position(self) -> tuple[int, int] | None:
        if self.content_block is None:
            return None
        return (self.content_block, int(self.content_log_index or 0))

    @property
    def completed_position(self) -> tuple[int, int] | None:
        if self.completed_block is None:
            return None
        return (self.completed_block, int(self.completed_log_index or 0))

    @property
    def deleted_position(self) -> tuple[int, int] | None:
        if self.deleted_block is None:
            return None
        return (self.deleted_block, int(self.deleted_log_index or 0))


class EndpointSnapshot(BaseModel):
    url: str
    priority: int
    health: EndpointHealth
    consecutive_failures: int
    last_failure_at: datetime | None = None
    cooldown_until: datetime | None = None


class SourceHealthSnapshot(BaseModel):
    source_id: str
    state: str
    degraded: bool = False
    degraded_reason: str | None = None
    last_event_at: datetime | None = None
    last_head_at: datetime | None = None
    head_height: int | None = None
    cursor_block: int | None = None
    events_dispatched: int = 0
    error_count: int = 0
    errors_by_category: dict[str, int] = Field(default_factory=dict)
    reconnects: int = 0
    current_endpoint: str | None = None
    endpoints: list[EndpointSnapshot] = Field(default_factory=list)


class RangeSyncResult(BaseModel):
    source_id: str
    from_block: int
    to_block: int
    fetched: int = 0
    applied: int = 0
    failed: int = 0


class JournalEntryCreate(BaseModel):
    source_id: str
    event_type: str
    action: str
    payload: dict[str, str | int | float | bool | None]
    status: str = "OK"


class JournalEntryRecord(BaseModel):
    id: int
    event_time: datetime
    source_id: str
    event_type: str
    action: str
    status: str
    payload: dict[str, str | int | float | bool | None]


class JournalTally(BaseModel):
    source_id: str
    event_type: str
    status: str
    entries: int
    last_at: datetime
