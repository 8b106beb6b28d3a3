"""Interaction tracking, profile derivation and personalized product scoring.

The profile is a pure function of the most recent standalone events in the event
log: recomputing it twice over the same log yields the same profile. Events that
arrive from the read-only integration are never persisted and never influence
scores.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np

from personal_shopper.catalog import Product
from personal_shopper.db import ShoppingDB


_LOGGER = logging.getLogger(__name__)

STANDALONE_SOURCE = "standalone-app"
READ_ONLY_SOURCE = "read-only-integration"

EVENT_WEIGHTS: dict[str, float] = {
    "search": 0.2,
    "view": 0.3,
    "click": 0.5,
    "save": 1.0,
    "remove": -0.8,
}
HISTORY_COUNTERS: dict[str, str] = {
    "search": "total_searches",
    "view": "total_views",
    "click": "total_clicks",
    "save": "total_saves",
    "remove": "total_removes",
}

# Added to a view for every 10 seconds spent on the product.
TIME_SPENT_WEIGHT = 0.1

PROFILE_EVENT_WINDOW = 1000
FULL_CONFIDENCE_EVENTS = 10

BASE_SCORE = 0.5
CATEGORY_WEIGHT = 0.5
COLD_START_CATEGORY_BOOST = 1.2
BRAND_WEIGHT = 0.6
INTERACTION_CAP = 0.6
INTERACTION_SCALE = 0.4
REPEAT_BONUS_PER_EVENT = 0.02
REPEAT_BONUS_CAP = 0.1
PRICE_WEIGHT = 0.3
MIN_CONFIDENCE_MULTIPLIER = 0.5
RERANK_CONFIDENCE_THRESHOLD = 0.1

MIN_PRICED_EVENTS = 3
MIN_FLEXIBILITY = 0.1
MAX_FLEXIBILITY = 1.0


def compute_weight(event_type: str, context: dict[str, Any] | None = None) -> float:
    if event_type not in EVENT_WEIGHTS:
        raise ValueError(f"Unknown interaction event type: {event_type}")
    weight = EVENT_WEIGHTS[event_type]
    if event_type == "view" and context:
        try:
            time_spent = float(context.get("timeSpent") or 0.0)
        except (TypeError, ValueError):
            time_spent = 0.0
        if time_spent > 0:
            weight += (time_spent / 10.0) * TIME_SPENT_WEIGHT
    return weight


@dataclass(frozen=True)
class InteractionEvent:
    event_type: str
    product_id: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    source: str = STANDALONE_SOURCE

    @classmethod
    def create(
        cls,
        event_type: str,
        product_id: str,
        context: dict[str, Any] | None = None,
        *,
        source: str = STANDALONE_SOURCE,
    ) -> "InteractionEvent":
        return cls(
            event_type=event_type,
            product_id=str(product_id),
            context=dict(context or {}),
            timestamp=int(time.time() * 1000),
            source=source,
        )

    @property
    def weight(self) -> float:
        return compute_weight(self.event_type, self.context)


@dataclass
class PricePreference:
    min: float = 0.0
    max: float = 1000.0
    sweet_spot: float = 100.0
    flexibility: float = 0.3


@dataclass
class UserProfile:
    category_scores: dict[str, float] = field(default_factory=dict)
    brand_affinity: dict[str, float] = field(default_factory=dict)
    price_preference: PricePreference = field(default_factory=PricePreference)
    style_preference: dict[str, dict[str, float]] = field(
        default_factory=lambda: {"colors": {}, "materials": {}, "occasions": {}}
    )
    interaction_history: dict[str, float] = field(
        default_factory=lambda: {
            "total_searches": 0,
            "total_views": 0,
            "total_clicks": 0,
            "total_saves": 0,
            "total_removes": 0,
            "avg_time_per_product": 0.0,
        }
    )
    confidence_level: float = 0.0
    data_points: int = 0
    last_updated: int = 0

    def has_data(self) -> bool:
        return self.data_points > 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_row(self) -> dict[str, Any]:
        history = dict(self.interaction_history)
        history["data_points"] = self.data_points
        return {
            "category_scores": json.dumps(self.category_scores, sort_keys=True),
            "price_preference": json.dumps(asdict(self.price_preference), sort_keys=True),
            "style_preference": json.dumps(self.style_preference, sort_keys=True),
            "brand_affinity": json.dumps(self.brand_affinity, sort_keys=True),
            "interaction_history": json.dumps(history, sort_keys=True),
            "confidence_level": self.confidence_level,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "UserProfile":
        profile = cls()

        def load(column: str, default: Any) -> Any:
            raw = row.get(column)
            if not raw:
                return default
            try:
                parsed = json.loads(raw)
            except (TypeError, ValueError):
                _LOGGER.warning("Ignoring malformed profile column %s.", column)
                return default
            return parsed if isinstance(parsed, type(default)) else default

        profile.category_scores = {str(k): float(v) for k, v in load("category_scores", {}).items()}
        profile.brand_affinity = {str(k): float(v) for k, v in load("brand_affinity", {}).items()}
        price = load("price_preference", {})
        profile.price_preference = PricePreference(
            min=float(price.get("min", 0.0)),
            max=float(price.get("max", 1000.0)),
            sweet_spot=float(price.get("sweet_spot", 100.0)),
            flexibility=float(price.get("flexibility", 0.3)),
        )
        style = load("style_preference", {})
        for key in ("colors", "materials", "occasions"):
            if isinstance(style.get(key), dict):
                profile.style_preference[key] = {str(k): float(v) for k, v in style[key].items()}
        history = load("interaction_history", {})
        profile.data_points = int(history.pop("data_points", 0) or 0)
        profile.interaction_history.update(history)
        profile.confidence_level = float(row.get("confidence_level") or 0.0)
        profile.last_updated = int(row.get("last_updated") or 0)
        return profile


def _parse_categories(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(value).strip() for value in raw if str(value).strip()]
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return [part.strip() for part in str(raw).split(",") if part.strip()]
    if isinstance(parsed, list):
        return [str(value).strip() for value in parsed if str(value).strip()]
    if isinstance(parsed, str) and parsed.strip():
        return [parsed.strip()]
    return []


def _bump(bucket: dict[str, float], key: Any, weight: float) -> None:
    name = str(key or "").strip()
    if name:
        bucket[name] = bucket.get(name, 0.0) + weight


def learn_price_preference(prices: list[float], weights: list[float]) -> PricePreference:
    """Weighted sweet spot and spread of the prices a shopper engaged with positively."""
    if len(prices) < MIN_PRICED_EVENTS:
        return PricePreference()
    values = np.asarray(prices, dtype=float)
    w = np.asarray(weights, dtype=float)
    sweet_spot = float(np.average(values, weights=w))
    variance = float(np.average((values - sweet_spot) ** 2, weights=w))
    cv = math.sqrt(variance) / sweet_spot if sweet_spot > 0 else MAX_FLEXIBILITY
    return PricePreference(
        min=float(values.min()),
        max=float(values.max()),
        sweet_spot=round(sweet_spot, 2),
        flexibility=round(min(MAX_FLEXIBILITY, max(MIN_FLEXIBILITY, cv)), 4),
    )


def price_preference_score(price: float, preference: PricePreference) -> float:
    if price <= 0:
        return 0.5
    sweet_spot = max(preference.sweet_spot, 1.0)
    flexibility = max(preference.flexibility, MIN_FLEXIBILITY)
    distance = abs(price - sweet_spot) / sweet_spot
    score = 1.0 / (1.0 + distance / flexibility)

    if price < preference.min:
        score -= 0.5 * (preference.min - price) / max(preference.min, 1.0)
    elif price > preference.max:
        score -= 0.5 * (price - preference.max) / max(preference.max, 1.0)
    return max(0.0, min(1.0, score))


class PersonalizationEngine:
    def __init__(self, db: ShoppingDB, *, price_learning: bool = False) -> None:
        self.db = db
        self.price_learning = price_learning
        self._recompute_lock = threading.Lock()

    def track_interaction(self, event: InteractionEvent) -> InteractionEvent | None:
        """Persist a standalone event and refresh the stored profile.

        Returns ``None`` for read-only events, which are ignored entirely.
        """
        if event.source == READ_ONLY_SOURCE:
            _LOGGER.debug("Skipping read-only %s event for %s.", event.event_type, event.product_id)
            return None

        weight = event.weight
        self.db.append_event(
            event_type=event.event_type,
            product_id=event.product_id,
            weight=weight,
            context=event.context,
            timestamp=event.timestamp or int(time.time() * 1000),
            source=event.source,
        )
        self.update_profile()
        return event

    def update_profile(self) -> UserProfile:
        with self._recompute_lock:
            profile = self.calculate_user_profile()
            self.db.upsert_profile(profile.to_row())
        return profile

    def calculate_user_profile(self) -> UserProfile:
        events = self.db.list_profile_events(source=STANDALONE_SOURCE, limit=PROFILE_EVENT_WINDOW)
        profile = UserProfile()
        if not events:
            return profile

        category_weights: dict[str, float] = {}
        brand_weights: dict[str, float] = {}
        total_weight = 0.0
        view_times: list[float] = []
        prices: list[float] = []
        price_weights: list[float] = []

        for event in events:
            weight = float(event.get("weight") or 0.0)
            event_type = str(event.get("event_type") or "")
            total_weight += abs(weight)

            counter = HISTORY_COUNTERS.get(event_type)
            if counter:
                profile.interaction_history[counter] += 1

            context: dict[str, Any] = {}
            if event.get("context"):
                try:
                    parsed = json.loads(event["context"])
                    if isinstance(parsed, dict):
                        context = parsed
                except (TypeError, ValueError):
                    _LOGGER.debug("Skipping malformed context on event %s.", event.get("id"))

            categories = _parse_categories(event.get("product_category")) or _parse_categories(
                context.get("category")
            )
            for category in categories:
                _bump(category_weights, category.lower(), weight)

            _bump(brand_weights, event.get("product_brand") or context.get("brand"), weight)

            features = context.get("imageFeatures")
            if isinstance(features, dict):
                self._process_style_features(features, weight, profile.style_preference)

            if event_type == "view":
                try:
                    spent = float(context.get("timeSpent") or 0.0)
                except (TypeError, ValueError):
                    spent = 0.0
                if spent > 0:
                    view_times.append(spent)

            if self.price_learning and weight > 0:
                try:
                    price = float(event.get("product_price") or context.get("price") or 0.0)
                except (TypeError, ValueError):
                    price = 0.0
                if price > 0:
                    prices.append(price)
                    price_weights.append(weight)

        if total_weight > 0:
            profile.category_scores = {cat: w / total_weight for cat, w in category_weights.items()}
        profile.brand_affinity = dict(brand_weights)
        if view_times:
            profile.interaction_history["avg_time_per_product"] = round(sum(view_times) / len(view_times), 2)
        if self.price_learning:
            profile.price_preference = learn_price_preference(prices, price_weights)

        profile.data_points = len(events)
        profile.confidence_level = min(1.0, len(events) / FULL_CONFIDENCE_EVENTS)
        profile.last_updated = max(int(event.get("timestamp") or 0) for event in events)
        return profile

    @staticmethod
    def _process_style_features(
        features: dict[str, Any],
        weight: float,
        style_preference: dict[str, dict[str, float]],
    ) -> None:
        for color in features.get("colors") or []:
            _bump(style_preference["colors"], str(color).lower(), weight)
        for material in features.get("materials") or []:
            _bump(style_preference["materials"], str(material).lower(), weight)
        occasion = features.get("occasion")
        if isinstance(occasion, str):
            _bump(style_preference["occasions"], occasion.lower(), weight)

    def get_profile(self) -> UserProfile:
        row = self.db.get_profile_row()
        if not row:
            return UserProfile()
        return UserProfile.from_row(row)

    def score_product(self, product: Product, profile: UserProfile | None = None) -> float:
        try:
            return self._score_product(product, profile or self.get_profile())
        except Exception:
            _LOGGER.warning("Scoring failed for product %s; using neutral score.", product.id, exc_info=True)
            return BASE_SCORE

    def _score_product(self, product: Product, profile: UserProfile) -> float:
        if not profile.has_data():
            return BASE_SCORE

        total_weight, count = self.db.product_interaction_totals(product.id, source=STANDALONE_SOURCE)
        score = BASE_SCORE

        if product.categories:
            category_score = sum(profile.category_scores.get(cat.lower(), 0.0) for cat in product.categories) / len(
                product.categories
            )
            category_weight = CATEGORY_WEIGHT * (COLD_START_CATEGORY_BOOST if count == 0 else 1.0)
            score += category_score * category_weight

        if product.brand and product.brand in profile.brand_affinity:
            score += profile.brand_affinity[product.brand] * BRAND_WEIGHT

        if count > 0 and total_weight:
            magnitude = min(INTERACTION_CAP, math.log10(1.0 + abs(total_weight)) * INTERACTION_SCALE)
            score += math.copysign(magnitude, total_weight)
            if count > 1:
                score += min(REPEAT_BONUS_CAP, count * REPEAT_BONUS_PER_EVENT)

        if self.price_learning and product.price > 0:
            score += (price_preference_score(product.price, profile.price_preference) - 0.5) * PRICE_WEIGHT

        multiplier = max(MIN_CONFIDENCE_MULTIPLIER, profile.confidence_level)
        adjusted = BASE_SCORE + (score - BASE_SCORE) * multiplier
        return max(0.0, min(1.0, adjusted))

    @staticmethod
    def should_rerank(profile: UserProfile) -> bool:
        return profile.confidence_level > RERANK_CONFIDENCE_THRESHOLD

    def export_summary(self) -> dict[str, Any]:
        """Read-only view of the profile for external assistants."""
        profile = self.get_profile()
        ranked_categories = sorted(profile.category_scores.items(), key=lambda pair: pair[1], reverse=True)
        ranked_colors = sorted(profile.style_preference["colors"].items(), key=lambda pair: pair[1], reverse=True)
        ranked_brands = sorted(profile.brand_affinity.items(), key=lambda pair: pair[1], reverse=True)
        return {
            "user_profile": {
                "category_preferences": [
                    {"category": category, "affinity": round(score, 4)} for category, score in ranked_categories[:5]
                ],
                "color_preferences": [color for color, _ in ranked_colors[:3]],
                "occasion_history": dict(profile.style_preference["occasions"]),
                "brand_affinities": [{"brand": brand, "affinity": round(score, 4)} for brand, score in ranked_brands],
            },
            "search_optimization": {
                "common_keywords": self._common_search_keywords(),
                "preferred_categories": [category for category, score in ranked_categories if score > 0.1][:5],
            },
            "metadata": {
                "confidence_level": profile.confidence_level,
                "data_points": self.db.count_events(source=STANDALONE_SOURCE),
                "last_updated": profile.last_updated,
                "price_learning": self.price_learning,
            },
        }

    def _common_search_keywords(self, limit: int = 5) -> list[str]:
        keywords: list[str] = []
        for raw in self.db.list_search_contexts(limit=10):
            try:
                context = json.loads(raw)
            except (TypeError, ValueError):
                continue
            if not isinstance(context, dict):
                continue
            for word in str(context.get("searchQuery") or "").lower().split():
                if len(word) > 2 and word not in keywords:
                    keywords.append(word)
        return keywords[:limit]

    def reset(self) -> None:
        with self._recompute_lock:
            self.db.reset_ml_data()
        _LOGGER.info("Interaction events, profile and search logs were reset.")
