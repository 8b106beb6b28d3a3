"""Environment parsing for AssistantConfig."""

from __future__ import annotations

from pathlib import Path

import pytest

from personal_shopper.config import DEFAULT_INDEX_MAPPINGS, AssistantConfig


_ENV_NAMES = (
    "PS_DB_PATH",
    "PS_CACHE_TTL_SECONDS",
    "PS_HITS_PER_PAGE",
    "PS_BRANCH_TIMEOUT_SECONDS",
    "PS_PRICE_LEARNING",
    "PS_INDEX_MAPPINGS",
    "PS_SEARCH_BRIDGE_COMMAND",
    "PS_SEARCH_APP_ID",
    "PS_SEARCH_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path: Path):
    config = AssistantConfig.from_env(tmp_path)
    assert config.db_path == tmp_path / "data" / "personal_shopper.db"
    assert config.cache_ttl_seconds == 300.0
    assert config.hits_per_page == 20
    assert config.price_learning is False
    assert config.index_mappings == DEFAULT_INDEX_MAPPINGS
    assert config.bridge_command == ()


def test_overrides(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("PS_DB_PATH", str(tmp_path / "custom.db"))
    monkeypatch.setenv("PS_CACHE_TTL_SECONDS", "60")
    monkeypatch.setenv("PS_HITS_PER_PAGE", "12")
    monkeypatch.setenv("PS_PRICE_LEARNING", "yes")
    monkeypatch.setenv("PS_SEARCH_BRIDGE_COMMAND", "npx -y search-mcp --verbose")
    monkeypatch.setenv("PS_SEARCH_APP_ID", " app ")

    config = AssistantConfig.from_env(tmp_path)
    assert config.db_path == tmp_path / "custom.db"
    assert config.cache_ttl_seconds == 60.0
    assert config.hits_per_page == 12
    assert config.price_learning is True
    assert config.bridge_command == ("npx", "-y", "search-mcp", "--verbose")
    assert config.search_app_id == "app"


@pytest.mark.parametrize("raw", ["abc", "-5", "0"])
def test_invalid_numbers_fall_back(tmp_path: Path, monkeypatch, raw):
    monkeypatch.setenv("PS_CACHE_TTL_SECONDS", raw)
    monkeypatch.setenv("PS_HITS_PER_PAGE", raw)
    config = AssistantConfig.from_env(tmp_path)
    assert config.cache_ttl_seconds == 300.0
    assert config.hits_per_page == 20


def test_index_mappings_from_json(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("PS_INDEX_MAPPINGS", '{"Fashion": "prod_fashion", "toys": "prod_toys", "": "x"}')
    assert AssistantConfig.from_env(tmp_path).index_mappings == {"fashion": "prod_fashion", "toys": "prod_toys"}


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", "{}"])
def test_bad_index_mappings_use_defaults(tmp_path: Path, monkeypatch, raw):
    monkeypatch.setenv("PS_INDEX_MAPPINGS", raw)
    assert AssistantConfig.from_env(tmp_path).index_mappings == DEFAULT_INDEX_MAPPINGS
