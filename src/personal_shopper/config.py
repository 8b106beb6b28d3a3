"""Environment-driven settings for the search, personalization and bridge layers."""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_INDEX_MAPPINGS: dict[str, str] = {
    "fashion": "shopping_fashion",
    "electronics": "shopping_electronics",
    "books": "shopping_books",
    "home": "shopping_home",
    "sports": "shopping_sports",
    "beauty": "shopping_beauty",
    "food": "shopping_food",
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except Exception:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except Exception:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_index_mappings(name: str) -> dict[str, str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return dict(DEFAULT_INDEX_MAPPINGS)
    try:
        parsed = json.loads(raw)
    except Exception:
        return dict(DEFAULT_INDEX_MAPPINGS)
    if not isinstance(parsed, dict):
        return dict(DEFAULT_INDEX_MAPPINGS)
    mappings = {
        str(category).strip().lower(): str(index_name).strip()
        for category, index_name in parsed.items()
        if str(category).strip() and str(index_name).strip()
    }
    return mappings or dict(DEFAULT_INDEX_MAPPINGS)


@dataclass(frozen=True)
class AssistantConfig:
    db_path: Path
    cache_ttl_seconds: float = 300.0
    hits_per_page: int = 20
    branch_timeout_seconds: float = 10.0
    image_timeout_seconds: float = 30.0
    search_workers: int = 4
    price_learning: bool = False
    index_mappings: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_INDEX_MAPPINGS))
    bridge_command: tuple[str, ...] = ()
    search_app_id: str = ""
    search_api_key: str = ""
    bridge_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls, root_dir: Path | None = None) -> "AssistantConfig":
        base_dir = root_dir or Path.cwd()
        db_raw = os.getenv("PS_DB_PATH", "").strip()
        db_path = Path(db_raw) if db_raw else base_dir / "data" / "personal_shopper.db"
        return cls(
            db_path=db_path,
            cache_ttl_seconds=_env_float("PS_CACHE_TTL_SECONDS", 300.0),
            hits_per_page=_env_int("PS_HITS_PER_PAGE", 20),
            branch_timeout_seconds=_env_float("PS_BRANCH_TIMEOUT_SECONDS", 10.0),
            image_timeout_seconds=_env_float("PS_IMAGE_TIMEOUT_SECONDS", 30.0),
            search_workers=_env_int("PS_SEARCH_WORKERS", 4),
            price_learning=_env_bool("PS_PRICE_LEARNING", False),
            index_mappings=_env_index_mappings("PS_INDEX_MAPPINGS"),
            bridge_command=tuple(shlex.split(os.getenv("PS_SEARCH_BRIDGE_COMMAND", ""))),
            search_app_id=os.getenv("PS_SEARCH_APP_ID", "").strip(),
            search_api_key=os.getenv("PS_SEARCH_API_KEY", "").strip(),
            bridge_timeout_seconds=_env_float("PS_BRIDGE_TIMEOUT_SECONDS", 30.0),
        )
