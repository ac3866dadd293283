from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path

from pydantic import Field, TypeAdapter, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chain_cache.core.models import SourceConfig

_SOURCES_ADAPTER = TypeAdapter(list[SourceConfig])


class Settings(BaseSettings):
    app_name: str = Field(default="Chain Cache Sync Service")
    env: str = Field(default="dev")
    log_level: str = Field(default="INFO")

    cache_db_path: str = Field(default="data/chain_cache.db")
    journal_db_path: str = Field(default="data/sync_journal.db")
    journal_retention_days: int = Field(default=30, ge=0)

    sync_enabled: bool = Field(default=True)
    sync_sources_file: str = Field(default="config/sources.json")
    sync_sources_json: str = Field(
        default="",
        description="Inline JSON list of source configs; takes precedence over SYNC_SOURCES_FILE.",
    )

    health_tick_seconds: float = Field(default=15.0, gt=0)
    reconnect_base_delay_seconds: float = Field(default=5.0, gt=0)
    reconnect_max_delay_seconds: float = Field(default=300.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=1)
    endpoint_failure_threshold: int = Field(default=5, ge=1)
    endpoint_cooldown_seconds: float = Field(default=60.0, ge=0)
    endpoint_max_cooldown_seconds: float = Field(default=900.0, ge=0)
    request_attempts_per_call: int = Field(default=3, ge=1)
    request_retry_base_delay_seconds: float = Field(default=0.25, ge=0)
    request_retry_max_delay_seconds: float = Field(default=2.0, ge=0)
    rpc_request_timeout_seconds: float = Field(default=30.0, gt=0)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)
    parked_events_per_entity: int = Field(default=32, ge=1)
    parked_entities_max: int = Field(default=1_000, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _strip_string_values(cls, data):
        if not isinstance(data, dict):
            return data
        normalized: dict[str, object] = {}
        for key, value in data.items():
            if isinstance(value, str):
                normalized[key] = value.strip()
            else:
                normalized[key] = value
        return normalized

    def load_sources(self) -> list[SourceConfig]:
        if self.sync_sources_json:
            raw = json.loads(self.sync_sources_json)
        else:
            path = Path(self.sync_sources_file)
            if not path.exists():
                return []
            raw = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = raw.get("sources", [])
        sources = _SOURCES_ADAPTER.validate_python(raw)
        seen: set[str] = set()
        for source in sources:
            if source.source_id in seen:
                raise ValueError(f"duplicate source_id in sync sources: {source.source_id}")
            seen.add(source.source_id)
        return sources


@lru_cache
def get_settings() -> Settings:
    return Settings()
