"""Serendipity injection: replaces part of a ranked list with deliberately different products."""

from __future__ import annotations

from dataclasses import replace
import logging
import math
import random
from typing import Callable

from personal_shopper.catalog import KNOWN_BRANDS, Product, detect_brand, detect_product_type
from personal_shopper.retrieval import RetrievalGateway, SearchParams


_LOGGER = logging.getLogger(__name__)

REASON_DIFFERENT_CATEGORY = "different_category"
REASON_PRICE_RANGE = "price_range"
REASON_TRENDING_BRAND = "trending_brand"

ALTERNATIVE_TYPES: dict[str, tuple[str, ...]] = {
    "shoes": ("boots", "sandals"),
    "sneakers": ("boots", "sandals"),
    "boots": ("sneakers", "sandals"),
    "sandals": ("sneakers", "heels"),
    "heels": ("sandals", "boots"),
    "shirt": ("sweater", "hoodie"),
    "tshirt": ("hoodie", "shirt"),
    "pants": ("jeans", "shorts"),
    "jeans": ("pants", "skirt"),
    "shorts": ("pants", "skirt"),
    "skirt": ("dress", "shorts"),
    "dress": ("skirt", "jacket"),
    "jacket": ("coat", "hoodie"),
    "coat": ("jacket", "sweater"),
    "hoodie": ("sweater", "jacket"),
    "sweater": ("hoodie", "coat"),
    "phone": ("tablet", "watch"),
    "smartphone": ("tablet", "watch"),
    "laptop": ("tablet", "monitor"),
    "computer": ("laptop", "monitor"),
    "tablet": ("laptop", "phone"),
    "tv": ("speaker", "monitor"),
    "television": ("speaker", "monitor"),
    "monitor": ("keyboard", "laptop"),
    "camera": ("headphones", "phone"),
    "headphones": ("speaker", "earbuds"),
    "earbuds": ("headphones", "speaker"),
    "speaker": ("headphones", "earbuds"),
    "watch": ("sunglasses", "jewelry"),
    "bag": ("backpack", "accessories"),
    "backpack": ("bag", "accessories"),
    "book": ("novel",),
    "novel": ("book",),
    "lamp": ("chair", "sofa"),
    "sofa": ("chair", "lamp"),
    "chair": ("sofa", "lamp"),
    "lipstick": ("perfume",),
    "perfume": ("lipstick",),
}

# A representative query per category, used when exploring a category the shopper did not ask for.
CATEGORY_SEED_QUERIES: dict[str, str] = {
    "fashion": "jacket",
    "electronics": "headphones",
    "books": "novel",
    "home": "lamp",
    "sports": "yoga",
    "beauty": "perfume",
    "food": "coffee",
}

TRENDING_QUERY = "trending"
LOW_PRICE_BAND = 50.0
HIGH_PRICE_BAND = 200.0
EXPENSIVE_AVERAGE = 100.0


def discovery_count(total: int, percentage: int) -> int:
    if total <= 0 or percentage <= 0:
        return 0
    return min(total, math.ceil(total * min(100, percentage) / 100))


def discovery_positions(total: int, count: int) -> list[int]:
    """Output slots for ``count`` discovery items spread evenly across ``total`` slots."""
    if count <= 0 or total <= 0:
        return []
    return [math.ceil((i + 1) * total / count) - 1 for i in range(count)]


def _is_well_formed(product: Product) -> bool:
    if not product.name.strip():
        return False
    try:
        return float(product.price) >= 0 and not math.isnan(float(product.price))
    except (TypeError, ValueError):
        return False


class DiscoveryInjector:
    def __init__(self, gateway: RetrievalGateway, *, rng: random.Random | None = None, hits_per_page: int = 20) -> None:
        self.gateway = gateway
        self.rng = rng or random.Random()
        self.hits_per_page = hits_per_page

    def inject(
        self,
        ranked: list[Product],
        percentage: int,
        *,
        query: str,
        categories: list[str] | None = None,
        total_slots: int | None = None,
    ) -> list[Product]:
        total = min(total_slots, len(ranked)) if total_slots else len(ranked)
        wanted = discovery_count(total, percentage)
        if wanted == 0:
            return list(ranked[:total])

        regular_count = total - wanted
        regular = list(ranked[:regular_count])
        # Backfill may draw on any ranked item.
        found = self._find_candidates(regular, ranked, wanted, query=query, categories=list(categories or []))

        # Regular items cover any discovery slots that could not be filled.
        shortfall = wanted - len(found)
        if shortfall > 0:
            regular.extend(ranked[regular_count : regular_count + shortfall])

        discoveries = [
            replace(product, is_discovery=True, discovery_reason=self._reason(product, regular)) for product in found
        ]
        return self._interleave(regular, discoveries)

    def _find_candidates(
        self,
        regular: list[Product],
        excluded: list[Product],
        wanted: int,
        *,
        query: str,
        categories: list[str],
    ) -> list[Product]:
        seen_ids = {product.id for product in excluded if product.id}
        seen_names = {product.name for product in excluded}

        strategies: list[tuple[str, Callable[[], list[Product]]]] = [
            ("alternative_type", lambda: self._alternative_type(query, categories)),
            ("different_category", lambda: self._different_category(categories)),
            ("price_band", lambda: self._different_price_band(query, categories, regular)),
            ("different_brand", lambda: self._different_brand(query, categories)),
            ("trending", lambda: self.gateway.search_many(TRENDING_QUERY, None, self._params())),
        ]
        for name, strategy in strategies:
            try:
                candidates = strategy()
            except Exception as exc:
                _LOGGER.warning("Discovery strategy %s failed: %s", name, exc)
                continue

            usable: list[Product] = []
            for candidate in candidates:
                if not _is_well_formed(candidate):
                    continue
                if candidate.id:
                    if candidate.id in seen_ids:
                        continue
                    seen_ids.add(candidate.id)
                elif candidate.name in seen_names:
                    continue
                else:
                    seen_names.add(candidate.name)
                usable.append(candidate)

            if usable:
                _LOGGER.debug("Discovery strategy %s produced %d candidates.", name, len(usable))
                self.rng.shuffle(usable)
                return usable[:wanted]
        return []

    def _params(self, **overrides) -> SearchParams:
        return SearchParams(hits_per_page=self.hits_per_page, **overrides)

    def _alternative_type(self, query: str, categories: list[str]) -> list[Product]:
        product_type = detect_product_type(query)
        alternatives = ALTERNATIVE_TYPES.get(product_type or "", ())
        if not alternatives:
            return []
        return self.gateway.search_many(self.rng.choice(alternatives), categories or None, self._params())

    def _different_category(self, categories: list[str]) -> list[Product]:
        others = [category for category in self.gateway.categories if category not in categories]
        if not others:
            return []
        category = self.rng.choice(others)
        seed = CATEGORY_SEED_QUERIES.get(category, category)
        return self.gateway.search_many(seed, [category], self._params())

    def _different_price_band(self, query: str, categories: list[str], regular: list[Product]) -> list[Product]:
        prices = [product.price for product in regular if product.price > 0]
        average = sum(prices) / len(prices) if prices else 0.0
        cheaper = average > EXPENSIVE_AVERAGE
        numeric = [f"price < {int(LOW_PRICE_BAND)}"] if cheaper else [f"price > {int(HIGH_PRICE_BAND)}"]
        found = self.gateway.search_many(query, categories or None, self._params(numeric_filters=numeric))
        if cheaper:
            return [product for product in found if product.price < LOW_PRICE_BAND]
        return [product for product in found if product.price > HIGH_PRICE_BAND]

    def _different_brand(self, query: str, categories: list[str]) -> list[Product]:
        brand = detect_brand(query, KNOWN_BRANDS)
        if not brand:
            return []
        product_type = detect_product_type(query) or query.lower().replace(brand.lower(), " ").strip()
        if not product_type:
            return []
        found = self.gateway.search_many(
            product_type,
            categories or None,
            self._params(facet_filters=[f"brand:-{brand}"]),
        )
        return [product for product in found if product.brand.casefold() != brand.casefold()]

    @staticmethod
    def _reason(product: Product, regular: list[Product]) -> str:
        regular_categories = {cat.casefold() for item in regular for cat in item.categories}
        product_categories = {cat.casefold() for cat in product.categories}
        if product_categories and regular_categories and not product_categories & regular_categories:
            return REASON_DIFFERENT_CATEGORY

        prices = [item.price for item in regular if item.price > 0]
        if prices and product.price > 0:
            average = sum(prices) / len(prices)
            if product.price < average * 0.5 or product.price > average * 2:
                return REASON_PRICE_RANGE
        return REASON_TRENDING_BRAND

    @staticmethod
    def _interleave(regular: list[Product], discoveries: list[Product]) -> list[Product]:
        total = len(regular) + len(discoveries)
        slots = set(discovery_positions(total, len(discoveries)))
        regular_iter = iter(regular)
        discovery_iter = iter(discoveries)
        return [next(discovery_iter) if position in slots else next(regular_iter) for position in range(total)]
