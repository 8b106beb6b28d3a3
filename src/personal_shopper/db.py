"""SQLite access layer for saved products, interaction events, the user profile, and search logs."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from personal_shopper.catalog import Product


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ShoppingDB:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS saved_products (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    product_id TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT,
                    price REAL,
                    image_url TEXT,
                    url TEXT,
                    category TEXT,
                    brand TEXT,
                    source_index TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ml_training_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    weight REAL NOT NULL,
                    context TEXT,
                    timestamp INTEGER NOT NULL,
                    source TEXT NOT NULL DEFAULT 'standalone-app',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_ml_events_product_id ON ml_training_events(product_id);
                CREATE INDEX IF NOT EXISTS idx_ml_events_timestamp ON ml_training_events(timestamp);
                CREATE INDEX IF NOT EXISTS idx_ml_events_type ON ml_training_events(event_type);

                CREATE TABLE IF NOT EXISTS user_profile (
                    id INTEGER PRIMARY KEY,
                    category_scores TEXT,
                    price_preference TEXT,
                    style_preference TEXT,
                    brand_affinity TEXT,
                    interaction_history TEXT,
                    confidence_level REAL NOT NULL DEFAULT 0.0,
                    last_updated INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS search_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    search_query TEXT NOT NULL,
                    inferred_categories TEXT,
                    search_results_count INTEGER NOT NULL DEFAULT 0,
                    selected_product_id TEXT,
                    selected_product_index INTEGER,
                    source_index TEXT,
                    response_time_ms INTEGER,
                    image_keywords TEXT,
                    image_category TEXT,
                    image_provided INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_search_logs_created ON search_logs(created_at);

                CREATE TABLE IF NOT EXISTS user_settings (
                    setting_key TEXT PRIMARY KEY,
                    setting_value TEXT,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._ensure_column(conn, "saved_products", "brand", "TEXT")
            self._ensure_column(conn, "saved_products", "source_index", "TEXT")

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
        rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        return {str(row[1]) for row in rows}

    def _ensure_column(
        self,
        conn: sqlite3.Connection,
        table_name: str,
        column_name: str,
        declaration: str,
    ) -> None:
        if column_name in self._table_columns(conn, table_name):
            return
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {declaration}")

    # Saved products

    def save_product(self, product: Product) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO saved_products (
                    product_id, name, description, price, image_url, url,
                    category, brand, source_index, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(product_id) DO UPDATE SET
                    name=excluded.name,
                    description=excluded.description,
                    price=excluded.price,
                    image_url=excluded.image_url,
                    url=excluded.url,
                    category=excluded.category,
                    brand=excluded.brand,
                    source_index=excluded.source_index
                """,
                (
                    product.id,
                    product.name,
                    product.description,
                    product.price,
                    product.image,
                    product.url,
                    json.dumps(product.categories),
                    product.brand,
                    product.source_index,
                    _utc_now(),
                ),
            )

    def get_saved_products(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT product_id, name, description, price, image_url, url,
                       category, brand, source_index, created_at
                FROM saved_products
                ORDER BY created_at DESC, id DESC
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def get_saved_product(self, product_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT product_id, name, description, price, image_url, url,
                       category, brand, source_index, created_at
                FROM saved_products
                WHERE product_id = ?
                """,
                (product_id,),
            ).fetchone()
        return dict(row) if row else None

    def remove_saved_product(self, product_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM saved_products WHERE product_id = ?", (product_id,))
        return cursor.rowcount > 0

    # Interaction events

    def append_event(
        self,
        *,
        event_type: str,
        product_id: str,
        weight: float,
        context: dict[str, Any],
        timestamp: int,
        source: str,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ml_training_events
                    (event_type, product_id, weight, context, timestamp, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (event_type, product_id, weight, json.dumps(context), timestamp, source, _utc_now()),
            )

    def list_profile_events(self, *, source: str, limit: int = 1000) -> list[dict[str, Any]]:
        """Most recent events of one source, joined with the saved product they touched."""
        safe_limit = max(1, int(limit))
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT e.id,
                       e.event_type,
                       e.product_id,
                       e.weight,
                       e.context,
                       e.timestamp,
                       sp.category AS product_category,
                       sp.brand AS product_brand,
                       sp.price AS product_price
                FROM ml_training_events e
                LEFT JOIN saved_products sp ON sp.product_id = e.product_id
                WHERE e.source = ?
                ORDER BY e.timestamp DESC, e.id DESC
                LIMIT ?
                """,
                (source, safe_limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def product_interaction_totals(self, product_id: str, *, source: str) -> tuple[float, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(weight), 0.0) AS total_weight, COUNT(*) AS count
                FROM ml_training_events
                WHERE product_id = ? AND source = ?
                """,
                (product_id, source),
            ).fetchone()
        if not row:
            return 0.0, 0
        return float(row["total_weight"] or 0.0), int(row["count"] or 0)

    def count_events(self, *, source: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM ml_training_events WHERE source = ?",
                (source,),
            ).fetchone()
        return int(row["count"]) if row else 0

    def list_search_contexts(self, *, limit: int = 10) -> list[str]:
        """Most frequent raw contexts of search events."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT context, COUNT(*) AS frequency
                FROM ml_training_events
                WHERE event_type = 'search' AND context IS NOT NULL
                GROUP BY context
                ORDER BY frequency DESC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()
        return [str(row["context"]) for row in rows]

    # Profile

    def upsert_profile(self, row: dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_profile (
                    id, category_scores, price_preference, style_preference, brand_affinity,
                    interaction_history, confidence_level, last_updated, updated_at
                ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    category_scores=excluded.category_scores,
                    price_preference=excluded.price_preference,
                    style_preference=excluded.style_preference,
                    brand_affinity=excluded.brand_affinity,
                    interaction_history=excluded.interaction_history,
                    confidence_level=excluded.confidence_level,
                    last_updated=excluded.last_updated,
                    updated_at=excluded.updated_at
                """,
                (
                    row["category_scores"],
                    row["price_preference"],
                    row["style_preference"],
                    row["brand_affinity"],
                    row["interaction_history"],
                    float(row["confidence_level"]),
                    int(row["last_updated"]),
                    _utc_now(),
                ),
            )

    def get_profile_row(self) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT category_scores, price_preference, style_preference, brand_affinity,
                       interaction_history, confidence_level, last_updated, updated_at
                FROM user_profile
                WHERE id = 1
                """
            ).fetchone()
        return dict(row) if row else None

    # Search logs

    def log_search(
        self,
        *,
        search_query: str,
        inferred_categories: list[str],
        results_count: int,
        response_time_ms: int,
        image_keywords: list[str] | None = None,
        image_category: str | None = None,
        image_provided: bool = False,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO search_logs (
                    search_query, inferred_categories, search_results_count, response_time_ms,
                    image_keywords, image_category, image_provided, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    search_query,
                    json.dumps(inferred_categories),
                    int(results_count),
                    int(response_time_ms),
                    json.dumps(image_keywords) if image_keywords else None,
                    image_category or None,
                    1 if image_provided else 0,
                    _utc_now(),
                ),
            )
        return int(cursor.lastrowid)

    def log_product_selection(
        self,
        *,
        search_log_id: int,
        product_id: str,
        product_index: int,
        source_index: str | None,
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE search_logs
                SET selected_product_id = ?, selected_product_index = ?, source_index = ?
                WHERE id = ?
                """,
                (product_id, int(product_index), source_index, int(search_log_id)),
            )
        return cursor.rowcount > 0

    def get_search_log(self, search_log_id: int) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM search_logs WHERE id = ?", (int(search_log_id),)).fetchone()
        return dict(row) if row else None

    def get_search_patterns(self, *, limit: int = 50, days: int = 30) -> list[dict[str, Any]]:
        """Recent searches that led to a selected product, most frequent first."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=max(1, int(days)))).isoformat()
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT search_query,
                       inferred_categories,
                       image_keywords,
                       image_category,
                       COUNT(*) AS frequency,
                       MAX(created_at) AS last_seen
                FROM search_logs
                WHERE created_at > ?
                  AND selected_product_id IS NOT NULL
                GROUP BY search_query, inferred_categories, image_keywords, image_category
                ORDER BY frequency DESC, last_seen DESC
                LIMIT ?
                """,
                (cutoff, max(1, int(limit))),
            ).fetchall()

        patterns: list[dict[str, Any]] = []
        for row in rows:
            try:
                keywords = json.loads(row["image_keywords"]) if row["image_keywords"] else []
                categories = json.loads(row["inferred_categories"]) if row["inferred_categories"] else []
            except (TypeError, ValueError):
                continue
            patterns.append(
                {
                    "query": str(row["search_query"]),
                    "keywords": [str(value) for value in keywords if str(value).strip()],
                    "categories": [str(value) for value in categories if str(value).strip()],
                    "category": str(row["image_category"] or "general"),
                    "frequency": int(row["frequency"]),
                }
            )
        return patterns

    # Settings

    def save_setting(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_settings (setting_key, setting_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value=excluded.setting_value,
                    updated_at=excluded.updated_at
                """,
                (key, value, _utc_now()),
            )

    def get_setting(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT setting_value FROM user_settings WHERE setting_key = ?", (key,)).fetchone()
        return str(row["setting_value"]) if row and row["setting_value"] is not None else None

    # Maintenance

    def reset_ml_data(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                DELETE FROM ml_training_events;
                DELETE FROM user_profile;
                DELETE FROM search_logs;
                """
            )

    def stats(self) -> dict[str, Any]:
        with self._connect() as conn:
            counts = conn.execute(
                """
                SELECT
                  (SELECT COUNT(*) FROM saved_products) AS saved_product_count,
                  (SELECT COUNT(*) FROM ml_training_events) AS event_count,
                  (SELECT COUNT(*) FROM search_logs) AS search_count,
                  (SELECT COUNT(*) FROM user_profile) AS profile_count
                """
            ).fetchone()
        return (
            dict(counts)
            if counts
            else {"saved_product_count": 0, "event_count": 0, "search_count": 0, "profile_count": 0}
        )
