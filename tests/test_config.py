import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from chain_cache.core.config import Settings
from chain_cache.core.defaults import default_confirmations
from chain_cache.core.models import SourceConfig


def test_load_sources_from_file(tmp_path: Path) -> None:
    path = tmp_path / "sources.json"
    path.write_text(
        json.dumps(
            {
                "sources": [
                    {
                        "source_id": "polygon-todo",
                        "chain_id": 137,
                        "contract_address": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
                        "endpoints": [
                            {"url": " https://backup.example ", "priority": 5},
                            {"url": "https://main.example", "priority": 1},
                        ],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    settings = Settings(sync_sources_file=str(path), sync_sources_json="")

    (source,) = settings.load_sources()

    assert source.required_depth == 128
    assert [ep.url for ep in source.endpoints] == ["https://main.example", "https://backup.example"]
    assert source.max_log_range == 2_000


def test_inline_sources_take_precedence_and_reject_duplicates(tmp_path: Path) -> None:
    entry = {"source_id": "local", "chain_id": 31337, "endpoints": [{"url": "http://127.0.0.1:8545"}]}
    settings = Settings(sync_sources_file=str(tmp_path / "missing.json"), sync_sources_json=json.dumps([entry]))
    (source,) = settings.load_sources()
    assert source.required_depth == 1

    settings = Settings(sync_sources_json=json.dumps([entry, entry]))
    with pytest.raises(ValueError, match="duplicate source_id"):
        settings.load_sources()


def test_missing_sources_file_means_no_sources(tmp_path: Path) -> None:
    settings = Settings(sync_sources_file=str(tmp_path / "nope.json"), sync_sources_json="")
    assert settings.load_sources() == []


def test_source_config_validation() -> None:
    with pytest.raises(ValidationError):
        SourceConfig(source_id="x", endpoints=[])
    explicit = SourceConfig(source_id="x", chain_id=1, confirmation_depth=0, endpoints=[{"url": "http://a"}])
    assert explicit.required_depth == 0


def test_default_confirmations_per_chain() -> None:
    assert default_confirmations(1) == 12
    assert default_confirmations(80001) == 128
    assert default_confirmations(42161) == 1
    assert default_confirmations(999_999) == 12
    assert default_confirmations(None) == 12
