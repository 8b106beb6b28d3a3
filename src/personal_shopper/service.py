"""Search orchestration: intent inference, fallback retrieval, filtering, personalization and discovery."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
import random
import re
import time
from typing import Any, Callable

from personal_shopper.cache import CachedSearch, ResultCache
from personal_shopper.catalog import (
    CATEGORY_KEYWORDS,
    KNOWN_BRANDS,
    Product,
    detect_brand,
    detect_product_type,
    has_valid_urls,
    map_image_category,
)
from personal_shopper.cohere_utils import CohereConfig, analyze_product_image, decode_image_payload, make_client
from personal_shopper.config import AssistantConfig
from personal_shopper.constraints import GENDER_TERMS, SIMILAR_STYLE, ConstraintParser, ParsedConstraints
from personal_shopper.db import ShoppingDB
from personal_shopper.discovery import DiscoveryInjector
from personal_shopper.personalization import InteractionEvent, PersonalizationEngine, STANDALONE_SOURCE
from personal_shopper.retrieval import RetrievalGateway, SearchBackend, SearchParams
from personal_shopper.search_client import SearchBridgeClient, SearchBridgeError


_LOGGER = logging.getLogger(__name__)
_IMAGE_EXECUTOR = ThreadPoolExecutor(max_workers=2, thread_name_prefix="image-analysis")

DISCOVERY_SETTING_KEY = "discovery_percentage"
IMAGE_SEARCH_PRODUCT_ID = "image-search"
MAX_ENRICHMENT_KEYWORDS = 3
MAX_SYNONYMS_PER_TERM = 2

FOLLOW_UP_PHRASES: tuple[str, ...] = (
    "under",
    "cheaper",
    "less expensive",
    "less than",
    "below",
    "over",
    "above",
    "more than",
    "show me",
    "only",
    "instead",
    "in black",
    "in white",
    "in red",
    "in blue",
    "in green",
    "in brown",
    "in grey",
    "in gray",
    "in pink",
    "any in",
    "what about",
    "different color",
)

COMPARISON_TERMS: tuple[str, ...] = ("similar", "like", "same as", "matching")

SYNONYMS: dict[str, tuple[str, ...]] = {
    "shoes": ("sneakers", "footwear"),
    "sneakers": ("shoes", "trainers"),
    "boots": ("booties", "footwear"),
    "shirt": ("top", "tee"),
    "tshirt": ("tee", "top"),
    "pants": ("trousers", "slacks"),
    "jeans": ("denim", "pants"),
    "jacket": ("coat", "outerwear"),
    "hoodie": ("sweatshirt", "pullover"),
    "sweater": ("pullover", "knitwear"),
    "bag": ("handbag", "purse"),
    "phone": ("smartphone", "mobile"),
    "smartphone": ("phone", "mobile"),
    "laptop": ("notebook", "computer"),
    "tv": ("television", "display"),
    "headphones": ("headset", "earphones"),
    "earbuds": ("earphones", "headphones"),
    "speaker": ("soundbar", "audio"),
    "watch": ("smartwatch", "timepiece"),
    "sofa": ("couch", "loveseat"),
    "lamp": ("light", "lighting"),
    "book": ("novel", "paperback"),
    "perfume": ("fragrance", "cologne"),
    "coffee": ("espresso", "beans"),
}

_MODEL_NUMBER = re.compile(r"^(?:\d+|(?=[a-z0-9-]*\d)(?=[a-z0-9-]*[a-z])[a-z0-9-]{3,})$", re.IGNORECASE)


def _has_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"(?<![\w']){re.escape(phrase)}(?![\w'])", text, re.IGNORECASE) is not None


@dataclass
class SearchResult:
    query: str
    products: list[Product] = field(default_factory=list)
    effective_query: str = ""
    categories: list[str] = field(default_factory=list)
    total_before_filter: int = 0
    total_after_filter: int = 0
    filtering: dict[str, int] = field(default_factory=dict)
    constraints: dict[str, Any] | None = None
    image_analysis: dict[str, Any] | None = None
    feedback: str = ""
    ladder_step: str | None = None
    follow_up: bool = False
    personalized: bool = False
    cache_key: str | None = None
    search_log_id: int | None = None
    response_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "effective_query": self.effective_query,
            "categories": list(self.categories),
            "products": [product.to_public() for product in self.products],
            "total_before_filter": self.total_before_filter,
            "total_after_filter": self.total_after_filter,
            "filtering": dict(self.filtering),
            "constraints": self.constraints,
            "image_analysis": self.image_analysis,
            "feedback": self.feedback,
            "ladder_step": self.ladder_step,
            "follow_up": self.follow_up,
            "personalized": self.personalized,
            "cache_key": self.cache_key,
            "search_log_id": self.search_log_id,
            "response_time_ms": self.response_time_ms,
        }


@dataclass
class _SearchContext:
    raw_query: str
    constraints: ParsedConstraints
    effective_query: str
    categories: list[str]
    brand: str | None
    product_type: str | None
    strict: bool
    attempted: set[tuple[Any, ...]] = field(default_factory=set)


class _UnconfiguredBackend:
    def search(self, index_name: str, query: str, params: dict[str, Any]) -> dict[str, Any]:
        raise SearchBridgeError("PS_SEARCH_BRIDGE_COMMAND is not set.")


class ShoppingAssistantService:
    def __init__(
        self,
        config: AssistantConfig | None = None,
        *,
        backend: SearchBackend | None = None,
        image_analyzer: Callable[[bytes, str, str], dict[str, Any]] | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or AssistantConfig.from_env(Path(__file__).resolve().parents[2])
        self.db = ShoppingDB(self.config.db_path)

        if backend is None:
            if self.config.bridge_command:
                backend = SearchBridgeClient(
                    self.config.bridge_command,
                    app_id=self.config.search_app_id,
                    api_key=self.config.search_api_key,
                    timeout_seconds=self.config.bridge_timeout_seconds,
                )
            else:
                _LOGGER.warning("No search bridge configured; searches will return empty results.")
                backend = _UnconfiguredBackend()
        self.backend = backend

        self.gateway = RetrievalGateway(
            backend=backend,
            index_mappings=dict(self.config.index_mappings),
            max_workers=self.config.search_workers,
            branch_timeout_seconds=self.config.branch_timeout_seconds,
        )
        self.parser = ConstraintParser()
        self.personalization = PersonalizationEngine(self.db, price_learning=self.config.price_learning)
        self.discovery = DiscoveryInjector(self.gateway, rng=rng, hits_per_page=self.config.hits_per_page)
        self.cache = ResultCache(self.config.cache_ttl_seconds, clock=clock)

        self.cohere_cfg = CohereConfig.from_env()
        self.client = None
        self.image_analyzer = image_analyzer or self._analyze_with_cohere

    @property
    def ai_enabled(self) -> bool:
        return bool(os.getenv("COHERE_API_KEY", "").strip())

    def _ensure_client(self):
        if not self.ai_enabled:
            raise RuntimeError("COHERE_API_KEY is not set.")
        if self.client is None:
            self.client = make_client()
        return self.client

    def _analyze_with_cohere(self, image_bytes: bytes, mime_type: str, query_hint: str) -> dict[str, Any]:
        return analyze_product_image(
            self._ensure_client(),
            image_bytes=image_bytes,
            model=self.cohere_cfg.vision_model,
            query_hint=query_hint,
            mime_type=mime_type,
        )

    def _run_with_timeout(self, operation: str, fn, timeout_seconds: float):
        safe_timeout = max(1.0, float(timeout_seconds))
        future = _IMAGE_EXECUTOR.submit(fn)
        try:
            return future.result(timeout=safe_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise RuntimeError(f"{operation} timed out after {int(round(safe_timeout))}s.") from exc
        except Exception as exc:
            raise RuntimeError(f"{operation} failed: {exc}") from exc

    # Search

    def search(
        self,
        query: str,
        *,
        image: bytes | str | None = None,
        discovery_percentage: int | None = None,
    ) -> SearchResult:
        started = time.perf_counter()
        raw_query = str(query or "").strip()
        try:
            result = self._search(raw_query, image, discovery_percentage)
        except Exception:
            _LOGGER.exception("Search pipeline failed for %r; returning an empty result.", raw_query)
            result = SearchResult(
                query=raw_query,
                effective_query=raw_query,
                feedback="Something went wrong while searching. Please try again.",
            )
        result.response_time_ms = int((time.perf_counter() - started) * 1000)
        return result

    def _search(self, raw_query: str, image: bytes | str | None, discovery_percentage: int | None) -> SearchResult:
        started = time.perf_counter()
        self.cache.purge_expired()
        constraints = self.parser.parse(raw_query)

        if image is None:
            cached = self._follow_up_source(raw_query, constraints)
            if cached is not None:
                return self._refine_cached(raw_query, constraints, cached, started)

        analysis = self._analyze_image(image, raw_query) if image is not None else None
        effective_query = self._effective_query(raw_query, constraints, analysis)
        categories = self._infer_categories(raw_query, effective_query, analysis)
        effective_query = self._enrich_from_history(effective_query, categories)

        brand = detect_brand(raw_query, KNOWN_BRANDS)
        ctx = _SearchContext(
            raw_query=raw_query,
            constraints=constraints,
            effective_query=effective_query,
            categories=categories,
            brand=brand,
            product_type=detect_product_type(effective_query) or detect_product_type(raw_query),
            strict=brand is not None,
        )

        products = self._attempt(ctx, effective_query, categories, strict=ctx.strict)
        ladder_step = None
        if not products:
            ladder_step, products = self._run_fallback_ladder(ctx)

        result = SearchResult(
            query=raw_query,
            effective_query=effective_query,
            categories=categories,
            constraints=constraints.to_dict() or None,
            image_analysis=analysis,
            ladder_step=ladder_step,
        )

        if not products:
            result.feedback = f'No products found for "{raw_query or effective_query}". Try different keywords.'
            result.search_log_id = self._log_search(result, analysis, started)
            return result

        validated = self._validate(products)
        result.total_before_filter = len(validated)
        filtered, stages = self._apply_filters(validated, constraints)
        stages["validation"] = len(products) - len(validated)
        result.filtering = stages
        result.total_after_filter = len(filtered)

        profile = self.personalization.get_profile()
        if filtered and self.personalization.should_rerank(profile):
            for product in filtered:
                product.score = self.personalization.score_product(product, profile)
            filtered.sort(key=lambda product: product.score or 0.0, reverse=True)
            result.personalized = True

        result.products = filtered
        result.feedback = self._feedback(result)
        result.search_log_id = self._log_search(result, analysis, started)

        percentage = self.get_discovery_percentage() if discovery_percentage is None else int(discovery_percentage)
        if percentage > 0 and filtered:
            try:
                result.products = self.discovery.inject(
                    filtered,
                    percentage,
                    query=effective_query,
                    categories=categories,
                )
            except Exception as exc:
                _LOGGER.warning("Discovery injection failed; keeping ranked results: %s", exc)

        # Follow-ups refine the ranked list without discovery items.
        result.cache_key = self.cache.put(raw_query, filtered, categories)
        return result

    # Step 1: follow-up refinement over cached results

    def _follow_up_source(self, raw_query: str, constraints: ParsedConstraints) -> CachedSearch | None:
        if not any(_has_phrase(raw_query, phrase) for phrase in FOLLOW_UP_PHRASES):
            return None
        cached = self.cache.latest()
        if cached is None:
            return None
        previous = cached.query.lower()
        if any(not _has_phrase(previous, keyword) for keyword in constraints.product_keywords or []):
            return None
        return cached

    def _refine_cached(
        self,
        raw_query: str,
        constraints: ParsedConstraints,
        cached: CachedSearch,
        started: float,
    ) -> SearchResult:
        products = list(cached.products)
        stages = {"price": 0, "color": 0}

        price_range = dict(constraints.price_range or {})
        if not price_range and _has_phrase(raw_query, "cheaper"):
            prices = [product.price for product in products if product.price > 0]
            if prices:
                price_range = {"max": sum(prices) / len(prices)}

        if price_range:
            kept = [product for product in products if self._price_matches(product, price_range)]
            stages["price"] = len(products) - len(kept)
            products = kept
        if constraints.colors:
            kept = [product for product in products if self._color_matches(product, constraints.colors)]
            stages["color"] = len(products) - len(kept)
            products = kept

        applied = constraints.to_dict()
        if price_range:
            applied["price_range"] = price_range

        result = SearchResult(
            query=raw_query,
            products=products,
            effective_query=cached.query,
            categories=list(cached.categories),
            total_before_filter=len(cached.products),
            total_after_filter=len(products),
            filtering=stages,
            constraints=applied or None,
            follow_up=True,
            cache_key=cached.key,
        )
        if products:
            result.feedback = f"Refined your previous {len(cached.products)} results to {len(products)}."
        else:
            result.feedback = "None of the previous results match that refinement. Try a new search."
        result.search_log_id = self._log_search(result, None, started)
        return result

    # Steps 3-6: query construction

    def _analyze_image(self, image: bytes | str, raw_query: str) -> dict[str, Any] | None:
        try:
            image_bytes, mime_type = decode_image_payload(image)
            analysis = self._run_with_timeout(
                "Image analysis request",
                lambda: self.image_analyzer(image_bytes, mime_type, raw_query),
                self.config.image_timeout_seconds,
            )
        except Exception as exc:
            _LOGGER.warning("Image analysis unavailable; continuing with text-only search: %s", exc)
            return None
        if not isinstance(analysis, dict) or not analysis.get("search_keywords"):
            _LOGGER.warning("Image analysis returned no keywords; continuing with text-only search.")
            return None
        return analysis

    def _effective_query(
        self,
        raw_query: str,
        constraints: ParsedConstraints,
        analysis: dict[str, Any] | None,
    ) -> str:
        if analysis:
            keywords = " ".join(str(value) for value in analysis.get("search_keywords", []))
            comparison = any(_has_phrase(raw_query, term) for term in COMPARISON_TERMS)
            if raw_query and (constraints.has_refinement_signal() or comparison):
                return f"{keywords} {raw_query}".strip()
            return keywords
        if constraints.product_keywords:
            return " ".join(constraints.product_keywords)
        return self.parser.clean_query(raw_query, constraints)

    def _infer_categories(self, raw_query: str, effective_query: str, analysis: dict[str, Any] | None) -> list[str]:
        categories: list[str] = []
        if analysis:
            mapped = map_image_category(analysis.get("category"))
            if mapped and mapped in self.gateway.index_mappings:
                categories.append(mapped)

        text = f"{raw_query} {effective_query}".lower()
        for category, keywords in CATEGORY_KEYWORDS.items():
            if category in categories or category not in self.gateway.index_mappings:
                continue
            if any(_has_phrase(text, keyword) for keyword in keywords):
                categories.append(category)

        if len(categories) > 1:
            profile = self.personalization.get_profile()
            if profile.has_data():
                scores = profile.category_scores
                categories.sort(key=lambda category: scores.get(category, 0.0), reverse=True)
        return categories

    def _enrich_from_history(self, effective_query: str, categories: list[str]) -> str:
        try:
            patterns = self.db.get_search_patterns(limit=20)
        except Exception as exc:
            _LOGGER.warning("Could not load search patterns: %s", exc)
            return effective_query

        present = set(effective_query.lower().split())
        additions: list[str] = []
        for pattern in patterns:
            overlaps = pattern["category"] in categories or bool(set(pattern["categories"]) & set(categories))
            overlaps = overlaps or bool(present & {keyword.lower() for keyword in pattern["keywords"]})
            if not overlaps:
                continue
            for keyword in pattern["keywords"]:
                token = keyword.lower()
                if token in present or token in additions:
                    continue
                additions.append(token)
                if len(additions) >= MAX_ENRICHMENT_KEYWORDS:
                    break
            if len(additions) >= MAX_ENRICHMENT_KEYWORDS:
                break

        if not additions:
            return effective_query
        _LOGGER.debug("Enriched query %r with %s.", effective_query, additions)
        return " ".join([effective_query, *additions]).strip()

    # Steps 7-8: retrieval and the zero-result ladder

    def _attempt(
        self,
        ctx: _SearchContext,
        query: str,
        categories: list[str] | None,
        *,
        strict: bool = False,
        facet_filters: list[str] | None = None,
    ) -> list[Product]:
        signature = (query.strip().lower(), tuple(categories or ()), strict, tuple(facet_filters or ()))
        if signature in ctx.attempted:
            return []
        ctx.attempted.add(signature)
        params = SearchParams(hits_per_page=self.config.hits_per_page, strict=strict, facet_filters=facet_filters)
        return self.gateway.search_many(query, categories or None, params)

    def _fallback_ladder(self, ctx: _SearchContext) -> list[tuple[str, Callable[[], list[Product]]]]:
        def brand_and_type() -> list[Product]:
            parts = [part for part in (ctx.brand, ctx.product_type) if part]
            if not parts:
                return []
            return self._attempt(ctx, " ".join(parts), ctx.categories, strict=ctx.strict)

        def first_keywords() -> list[Product]:
            words = ctx.effective_query.split()
            if len(words) <= 3:
                return []
            return self._attempt(ctx, " ".join(words[:3]), ctx.categories)

        def without_model_numbers() -> list[Product]:
            words = ctx.effective_query.split()
            kept = [word for word in words if not _MODEL_NUMBER.match(word)]
            if not kept or len(kept) == len(words):
                return []
            return self._attempt(ctx, " ".join(kept), ctx.categories)

        def brand_only() -> list[Product]:
            if not ctx.brand:
                return []
            found = self._attempt(ctx, ctx.brand, ctx.categories, strict=True)
            if found:
                return found
            remainder = re.sub(re.escape(ctx.brand), " ", ctx.effective_query, flags=re.IGNORECASE)
            return self._attempt(ctx, " ".join(remainder.split()), ctx.categories, facet_filters=[f"brand:{ctx.brand}"])

        def broad() -> list[Product]:
            return self._attempt(ctx, ctx.effective_query, ctx.categories, strict=False)

        def category_only() -> list[Product]:
            if not ctx.categories:
                return []
            return self._attempt(ctx, ctx.raw_query, ctx.categories)

        def synonyms() -> list[Product]:
            expanded = self._expand_synonyms(ctx.effective_query, ctx.brand)
            if not expanded:
                return []
            return self._attempt(ctx, expanded, ctx.categories)

        def unrestricted() -> list[Product]:
            return self._attempt(ctx, ctx.raw_query, None)

        return [
            ("brand_and_type", brand_and_type),
            ("first_keywords", first_keywords),
            ("without_model_numbers", without_model_numbers),
            ("brand_only", brand_only),
            ("broad", broad),
            ("category_only", category_only),
            ("synonyms", synonyms),
            ("unrestricted", unrestricted),
        ]

    def _run_fallback_ladder(self, ctx: _SearchContext) -> tuple[str | None, list[Product]]:
        for name, step in self._fallback_ladder(ctx):
            products = step()
            if products:
                _LOGGER.info("Fallback step %s recovered %d products for %r.", name, len(products), ctx.raw_query)
                return name, products
        _LOGGER.info("All fallback steps returned nothing for %r.", ctx.raw_query)
        return None, []

    @staticmethod
    def _expand_synonyms(query: str, brand: str | None) -> str:
        text = query
        if brand:
            text = re.sub(re.escape(brand), " ", text, flags=re.IGNORECASE)
        words = text.lower().split()
        expanded: list[str] = []
        added = False
        for word in words:
            expanded.append(word)
            for synonym in SYNONYMS.get(word, ())[:MAX_SYNONYMS_PER_TERM]:
                if synonym not in expanded and synonym not in words:
                    expanded.append(synonym)
                    added = True
        if not added:
            return ""
        return " ".join(([brand] if brand else []) + expanded)

    # Steps 9-10: validation and constraint filters

    @staticmethod
    def _validate(products: list[Product]) -> list[Product]:
        seen: set[str] = set()
        valid: list[Product] = []
        for product in products:
            if not has_valid_urls(product):
                continue
            if product.id:
                if product.id in seen:
                    continue
                seen.add(product.id)
            valid.append(product)
        return valid

    @staticmethod
    def _price_matches(product: Product, price_range: dict[str, float]) -> bool:
        if "min" in price_range and product.price < price_range["min"]:
            return False
        if "max" in price_range and product.price > price_range["max"]:
            return False
        return True

    @staticmethod
    def _color_matches(product: Product, colors: list[str]) -> bool:
        blob = product.search_blob()
        for color in colors:
            if _has_phrase(blob, color) or _has_phrase(blob, color.split()[-1]):
                return True
        return False

    @staticmethod
    def _gender_matches(product: Product, gender: str) -> bool:
        declared = product.gender.strip().lower()
        if declared:
            aliases = dict(GENDER_TERMS).get(gender, ())
            return declared == gender or declared in aliases or declared == "unisex" or gender == "unisex"
        if gender == "unisex":
            return True
        blob = product.search_blob()
        for other, terms in GENDER_TERMS:
            if other in (gender, "unisex"):
                continue
            if any(_has_phrase(blob, term) for term in terms):
                return False
        return True

    def _apply_filters(
        self,
        products: list[Product],
        constraints: ParsedConstraints,
    ) -> tuple[list[Product], dict[str, int]]:
        stages = {"price": 0, "color": 0, "gender": 0, "style": 0}

        if constraints.price_range:
            kept = [product for product in products if self._price_matches(product, constraints.price_range)]
            stages["price"] = len(products) - len(kept)
            products = kept
        if constraints.colors:
            kept = [product for product in products if self._color_matches(product, constraints.colors)]
            stages["color"] = len(products) - len(kept)
            products = kept
        if constraints.gender:
            kept = [product for product in products if self._gender_matches(product, constraints.gender)]
            stages["gender"] = len(products) - len(kept)
            products = kept
        if constraints.styles and SIMILAR_STYLE not in constraints.styles:
            kept = [
                product
                for product in products
                if any(_has_phrase(product.search_blob(), style) for style in constraints.styles)
            ]
            # Style words are rarely in catalog text, so only narrow when something matches.
            if kept:
                stages["style"] = len(products) - len(kept)
                products = kept
        return products, stages

    @staticmethod
    def _feedback(result: SearchResult) -> str:
        if not result.products:
            return (
                f"Found {result.total_before_filter} products but none matched your filters. "
                "Try relaxing price, color or gender."
            )
        message = f'Found {len(result.products)} products for "{result.effective_query or result.query}".'
        if result.ladder_step:
            message += " The search was broadened to find these."
        return message

    # Step 12: logging

    def _log_search(self, result: SearchResult, analysis: dict[str, Any] | None, started: float) -> int | None:
        if analysis:
            try:
                self.personalization.track_interaction(
                    InteractionEvent.create(
                        "search",
                        IMAGE_SEARCH_PRODUCT_ID,
                        {
                            "searchQuery": result.effective_query,
                            "category": result.categories,
                            "imageFeatures": {
                                "colors": analysis.get("colors") or [],
                                "materials": analysis.get("materials") or [],
                                "occasion": analysis.get("occasion") or "",
                            },
                        },
                    )
                )
            except Exception as exc:
                _LOGGER.warning("Could not record image search event: %s", exc)

        try:
            return self.db.log_search(
                search_query=result.query,
                inferred_categories=result.categories,
                results_count=len(result.products),
                response_time_ms=int((time.perf_counter() - started) * 1000),
                image_keywords=list(analysis.get("search_keywords") or []) if analysis else None,
                image_category=str(analysis.get("category") or "") if analysis else None,
                image_provided=analysis is not None,
            )
        except Exception as exc:
            _LOGGER.warning("Could not write search log: %s", exc)
            return None

    # Library and tracking

    def _saved_context(self, product_id: str) -> dict[str, Any]:
        saved = self.db.get_saved_product(product_id)
        if not saved:
            return {}
        return {
            "category": self._parse_saved_categories(saved.get("category")),
            "price": saved.get("price"),
            "brand": saved.get("brand"),
            "url": saved.get("url"),
        }

    @staticmethod
    def _parse_saved_categories(raw: Any) -> list[str]:
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return [part.strip() for part in str(raw).split(",") if part.strip()]
        return [str(value) for value in parsed] if isinstance(parsed, list) else []

    def _public_saved(self, row: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row["product_id"],
            "name": row["name"],
            "description": row.get("description") or "",
            "price": float(row.get("price") or 0.0),
            "image": row.get("image_url") or "",
            "url": row.get("url") or "",
            "categories": self._parse_saved_categories(row.get("category")),
            "brand": row.get("brand") or "",
            "source_index": row.get("source_index") or "",
            "saved_at": row.get("created_at"),
        }

    def track_product_view(self, product_id: str, time_spent: float = 0.0, *, source: str = STANDALONE_SOURCE) -> bool:
        context = self._saved_context(product_id)
        if time_spent and time_spent > 0:
            context["timeSpent"] = float(time_spent)
        event = self.personalization.track_interaction(InteractionEvent.create("view", product_id, context, source=source))
        return event is not None

    def track_product_click(self, product_id: str, url: str = "", *, source: str = STANDALONE_SOURCE) -> bool:
        context = self._saved_context(product_id)
        if url:
            context["url"] = url
        event = self.personalization.track_interaction(InteractionEvent.create("click", product_id, context, source=source))
        return event is not None

    def save_product(self, product: Product | dict[str, Any]) -> dict[str, Any]:
        item = product if isinstance(product, Product) else Product.from_dict(product)
        if not item.id or not item.name:
            raise ValueError("Saved products need an id and a name.")
        self.db.save_product(item)
        self.personalization.track_interaction(
            InteractionEvent.create(
                "save",
                item.id,
                {"category": item.categories, "price": item.price, "brand": item.brand, "url": item.url},
            )
        )
        saved = self.db.get_saved_product(item.id)
        if saved is None:
            raise RuntimeError(f"Product {item.id} was not persisted.")
        return self._public_saved(saved)

    def remove_product(self, product_id: str) -> None:
        if self.db.get_saved_product(product_id) is None:
            raise KeyError(f"Saved product {product_id} not found.")
        self.personalization.track_interaction(
            InteractionEvent.create("remove", product_id, self._saved_context(product_id))
        )
        self.db.remove_saved_product(product_id)
        # The removed row no longer joins, so refresh from event contexts.
        self.personalization.update_profile()

    def list_saved_products(self) -> list[dict[str, Any]]:
        return [self._public_saved(row) for row in self.db.get_saved_products()]

    def log_product_selection(
        self,
        *,
        search_log_id: int,
        product_id: str,
        product_index: int,
        source_index: str | None = None,
    ) -> None:
        if not self.db.log_product_selection(
            search_log_id=search_log_id,
            product_id=product_id,
            product_index=product_index,
            source_index=source_index,
        ):
            raise KeyError(f"Search log {search_log_id} not found.")

    def get_personalization_profile(self) -> dict[str, Any]:
        profile = self.personalization.get_profile()
        payload = profile.to_dict()
        payload["should_rerank"] = self.personalization.should_rerank(profile)
        return payload

    def export_profile(self) -> dict[str, Any]:
        return self.personalization.export_summary()

    def reset_ml_data(self) -> None:
        self.personalization.reset()

    def get_discovery_percentage(self) -> int:
        raw = self.db.get_setting(DISCOVERY_SETTING_KEY)
        try:
            value = int(raw) if raw is not None else 0
        except ValueError:
            _LOGGER.warning("Ignoring malformed discovery setting %r.", raw)
            return 0
        return max(0, min(100, value))

    def set_discovery_percentage(self, percentage: int) -> int:
        value = int(percentage)
        if value < 0 or value > 100:
            raise ValueError("Discovery percentage must be between 0 and 100.")
        self.db.save_setting(DISCOVERY_SETTING_KEY, str(value))
        return value

    def stats(self) -> dict[str, Any]:
        profile = self.personalization.get_profile()
        return {
            **self.db.stats(),
            "cached_searches": len(self.cache),
            "confidence_level": profile.confidence_level,
            "indices": dict(self.gateway.index_mappings),
            "discovery_percentage": self.get_discovery_percentage(),
            "ai_enabled": self.ai_enabled,
        }
