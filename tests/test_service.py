"""Search orchestrator end to end over a scripted backend and a temporary SQLite store."""

from __future__ import annotations

import sqlite3

import pytest

from conftest import StubBackend, make_hit
from personal_shopper.catalog import PLACEHOLDER_IMAGE_URL
from personal_shopper.personalization import READ_ONLY_SOURCE, STANDALONE_SOURCE
from personal_shopper.service import ShoppingAssistantService


IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-body"

SNEAKER_ANALYSIS = {
    "search_keywords": ["white", "sneakers"],
    "category": "fashion",
    "confidence": 0.9,
    "colors": ["white"],
    "materials": ["leather"],
    "occasion": "casual",
    "style": "sporty",
    "description": "White leather sneakers.",
}


def _fashion_only(hits):
    return lambda index, query, params: hits if index == "shopping_fashion" else []


# =============================================================================
# Retrieval path
# =============================================================================


class TestPrimaryRetrieval:
    def test_brand_query_uses_strict_matching(self, make_service):
        backend = StubBackend(_fashion_only([make_hit("n1", "Nike Pegasus", brand="Nike", categories=["shoes"])]))
        service = make_service(backend)

        result = service.search("nike running shoes")

        assert [product.id for product in result.products] == ["n1"]
        assert result.effective_query == "shoes Nike"
        assert result.categories == ["fashion", "sports"]
        assert result.ladder_step is None
        assert {index for index, _, _ in backend.calls} == {"shopping_fashion", "shopping_sports"}
        assert all(params["matchStrictness"] == "strict" for _, _, params in backend.calls)
        assert result.search_log_id is not None

    def test_plain_query_is_fuzzy_over_inferred_category(self, make_service):
        backend = StubBackend(lambda index, query, params: [make_hit("l1", "Desk lamp")])
        result = make_service(backend).search("lamp")
        assert [index for index, _, _ in backend.calls] == ["shopping_home"]
        assert backend.calls[0][2]["matchStrictness"] == "fuzzy"
        assert [product.id for product in result.products] == ["l1"]

    def test_result_serializes(self, make_service):
        backend = StubBackend(lambda index, query, params: [make_hit("l1", "Desk lamp")])
        payload = make_service(backend).search("lamp").to_dict()
        assert payload["products"][0]["id"] == "l1"
        assert payload["follow_up"] is False
        assert payload["cache_key"]

    def test_missing_bridge_degrades_to_empty(self, config):
        service = ShoppingAssistantService(config)
        try:
            result = service.search("nike shoes")
        finally:
            service.gateway.shutdown()
        assert result.products == []
        assert result.feedback


# =============================================================================
# Zero-result ladder
# =============================================================================


class TestFallbackLadder:
    def test_terminates_with_image_analysis_attached(self, make_service):
        backend = StubBackend()
        service = make_service(backend, image_analyzer=lambda data, mime, hint: dict(SNEAKER_ANALYSIS))

        result = service.search("", image=IMAGE_BYTES)

        assert result.products == []
        assert result.ladder_step is None
        assert result.image_analysis["search_keywords"] == ["white", "sneakers"]
        assert "No products found" in result.feedback
        assert 0 < len(backend.calls) <= 30
        assert service.db.get_search_log(result.search_log_id)["image_provided"] == 1

    def test_every_rung_is_tried_in_order(self, make_service):
        backend = StubBackend()
        result = make_service(backend).search("nike running shoes")

        assert result.products == []
        queries = backend.queries
        assert queries[0] == "shoes Nike"
        assert "Nike shoes" in queries
        assert "Nike shoes sneakers footwear" in queries
        assert any(params.get("facetFilters") == ["brand:Nike"] for _, _, params in backend.calls)
        assert queries.index("Nike shoes") < queries.index("Nike shoes sneakers footwear")
        # The last rung searches every index with the raw query.
        assert {index for index, query, _ in backend.calls[-7:] if query == "nike running shoes"} == {
            "shopping_fashion",
            "shopping_electronics",
            "shopping_books",
            "shopping_home",
            "shopping_sports",
            "shopping_beauty",
            "shopping_food",
        }

    def test_model_numbers_removed(self, make_service):
        def responder(index, query, params):
            if query == "pegasus trail" and index == "shopping_sports":
                return [make_hit("p1", "Pegasus Trail")]
            return []

        result = make_service(StubBackend(responder)).search("pegasus 40 xr-500 trail")
        assert result.ladder_step == "without_model_numbers"
        assert [product.id for product in result.products] == ["p1"]
        assert "broadened" in result.feedback

    def test_synonym_expansion(self, make_service):
        def responder(index, query, params):
            return [make_hit("c1", "Velvet couch")] if query == "sofa couch loveseat" else []

        backend = StubBackend(responder)
        result = make_service(backend).search("sofa")
        assert result.ladder_step == "synonyms"
        assert [product.id for product in result.products] == ["c1"]
        # Identical requests are not repeated down the ladder.
        assert backend.queries.count("sofa") == 1


# =============================================================================
# Follow-up refinement and cache
# =============================================================================


SHOES = [
    make_hit("s1", "Trail runner", price=40, color="black"),
    make_hit("s2", "Court shoe", price=80, color="white"),
    make_hit("s3", "Road racer", price=120, color="black"),
]


class TestFollowUp:
    def test_price_refinement_reuses_cached_results(self, make_service):
        backend = StubBackend(_fashion_only(SHOES))
        service = make_service(backend)
        first = service.search("running shoes")
        calls = len(backend.calls)

        refined = service.search("show me under $100")

        assert refined.follow_up is True
        assert [product.id for product in refined.products] == ["s1", "s2"]
        assert refined.cache_key == first.cache_key
        assert refined.filtering["price"] == 1
        assert len(backend.calls) == calls

    def test_cheaper_caps_at_average_price(self, make_service):
        service = make_service(StubBackend(_fashion_only(SHOES)))
        service.search("running shoes")
        refined = service.search("cheaper")
        assert refined.constraints["price_range"] == {"max": pytest.approx(80.0)}
        assert [product.id for product in refined.products] == ["s1", "s2"]

    def test_color_refinement(self, make_service):
        service = make_service(StubBackend(_fashion_only(SHOES)))
        service.search("running shoes")
        refined = service.search("in black")
        assert [product.id for product in refined.products] == ["s1", "s3"]

    def test_new_product_keyword_starts_fresh_search(self, make_service):
        backend = StubBackend(_fashion_only(SHOES))
        service = make_service(backend)
        service.search("running shoes")
        calls = len(backend.calls)

        result = service.search("show me a laptop under $500")
        assert result.follow_up is False
        assert len(backend.calls) > calls

    def test_expired_cache_is_not_used_and_is_purged(self, make_service, clock):
        backend = StubBackend(_fashion_only(SHOES))
        service = make_service(backend)
        first = service.search("running shoes")

        clock.advance(301)
        result = service.search("show me under $100")

        assert result.follow_up is False
        assert service.cache.get(first.cache_key) is None
        assert len(service.cache) == 1

    def test_cache_still_live_inside_ttl(self, make_service, clock):
        service = make_service(StubBackend(_fashion_only(SHOES)))
        service.search("running shoes")
        clock.advance(299)
        assert service.search("show me under $100").follow_up is True

    def test_image_query_never_treated_as_follow_up(self, make_service):
        service = make_service(
            StubBackend(_fashion_only(SHOES)),
            image_analyzer=lambda data, mime, hint: dict(SNEAKER_ANALYSIS),
        )
        service.search("running shoes")
        assert service.search("show me under $100", image=IMAGE_BYTES).follow_up is False


# =============================================================================
# Validation and filters
# =============================================================================


class TestValidationAndFilters:
    def test_invalid_urls_and_duplicates_dropped(self, make_service):
        hits = [
            make_hit("ok", "Good lamp"),
            make_hit("ph", "Placeholder", image=PLACEHOLDER_IMAGE_URL),
            make_hit("lh", "Local", url="http://localhost:3000/p/lh"),
            make_hit("tp", "Temp path", image="https://cdn.example.com/tmp/tp.jpg"),
            make_hit("te", "Temp ext", image="https://cdn.example.com/te.tmp"),
            make_hit("nu", "No url", url=""),
            make_hit("ok", "Good lamp again"),
        ]
        result = make_service(StubBackend(lambda index, query, params: hits)).search("lamp")
        assert [product.id for product in result.products] == ["ok"]
        assert result.filtering["validation"] == 6
        assert result.total_before_filter == 1

    def test_price_color_gender_filters(self, make_service):
        hits = [
            make_hit("a", "Runner", price=80, color="black", gender="women"),
            make_hit("b", "Boot", price=150, color="black", gender="women"),
            make_hit("c", "Court", price=50, color="white", gender="women"),
            make_hit("d", "Oxford", price=60, color="black", gender="men"),
            make_hit("e", "Trail", price=70, color="black", description="Men's trail shoe"),
            make_hit("f", "Slip-on", price=65, color="black", gender="unisex"),
        ]
        result = make_service(StubBackend(_fashion_only(hits))).search("black shoes for women under $100")

        assert [product.id for product in result.products] == ["a", "f"]
        assert result.filtering == {"price": 1, "color": 1, "gender": 2, "style": 0, "validation": 0}
        assert result.total_before_filter == 6
        assert result.total_after_filter == 2

    def test_style_filter_is_permissive(self, make_service):
        hits = [make_hit("a", "Runner"), make_hit("b", "Court")]
        result = make_service(StubBackend(_fashion_only(hits))).search("casual shoes")
        assert [product.id for product in result.products] == ["a", "b"]
        assert result.filtering["style"] == 0

    def test_style_filter_narrows_when_something_matches(self, make_service):
        hits = [make_hit("a", "Runner"), make_hit("b", "Court", description="A casual everyday shoe")]
        result = make_service(StubBackend(_fashion_only(hits))).search("casual shoes")
        assert [product.id for product in result.products] == ["b"]
        assert result.filtering["style"] == 1

    def test_similar_style_is_a_wildcard(self, make_service):
        hits = [make_hit("a", "Runner"), make_hit("b", "Court", description="casual")]
        result = make_service(StubBackend(_fashion_only(hits))).search("similar style shoes")
        assert [product.id for product in result.products] == ["a", "b"]


# =============================================================================
# Personalization
# =============================================================================


class TestPersonalizedRanking:
    HITS = [
        make_hit("p1", "Gadget", categories=["electronics"]),
        make_hit("p2", "Sneaker", categories=["fashion"]),
    ]

    def test_reranks_when_confident(self, make_service):
        service = make_service(StubBackend(_fashion_only(self.HITS)))
        service.save_product(self.HITS[1] | {"id": "p2"})
        service.track_product_view("p2", 10)
        service.track_product_click("p2")

        result = service.search("sneakers")

        assert result.personalized is True
        assert [product.id for product in result.products] == ["p2", "p1"]
        assert result.products[0].score > result.products[1].score

    def test_keeps_retrieval_order_with_thin_profile(self, make_service):
        service = make_service(StubBackend(_fashion_only(self.HITS)))
        service.save_product(self.HITS[1] | {"id": "p2"})

        result = service.search("sneakers")

        assert result.personalized is False
        assert [product.id for product in result.products] == ["p1", "p2"]

    def test_categories_reordered_by_affinity(self, make_service):
        service = make_service(StubBackend())
        service.save_product({"id": "e1", "name": "Headset", "categories": ["electronics"], "price": 99})
        service.track_product_view("e1")

        result = service.search("nike headphones")
        assert result.categories == ["electronics", "fashion"]

    def test_history_enrichment(self, make_service):
        backend = StubBackend(_fashion_only([make_hit("b1", "Chelsea boot")]))
        service = make_service(backend)
        log_id = service.db.log_search(
            search_query="",
            inferred_categories=["fashion"],
            results_count=3,
            response_time_ms=12,
            image_keywords=["leather", "chelsea"],
            image_category="fashion",
            image_provided=True,
        )
        service.log_product_selection(search_log_id=log_id, product_id="b0", product_index=0)

        result = service.search("boots")
        assert result.effective_query == "boots leather chelsea"
        assert backend.queries[0] == "boots leather chelsea"


# =============================================================================
# Image branch
# =============================================================================


class TestImageBranch:
    def test_keywords_replace_vague_text(self, make_service):
        backend = StubBackend(_fashion_only([make_hit("w1", "White sneaker", color="white")]))
        service = make_service(backend, image_analyzer=lambda data, mime, hint: dict(SNEAKER_ANALYSIS))

        result = service.search("this one please", image=IMAGE_BYTES)

        assert result.effective_query == "white sneakers"
        assert result.categories == ["fashion"]
        assert service.db.count_events(source=STANDALONE_SOURCE) == 1
        assert service.db.get_search_log(result.search_log_id)["image_category"] == "fashion"

    def test_constraint_text_is_kept(self, make_service):
        service = make_service(StubBackend(), image_analyzer=lambda data, mime, hint: dict(SNEAKER_ANALYSIS))
        result = service.search("under $100", image=IMAGE_BYTES)
        assert result.effective_query == "white sneakers under $100"

    def test_comparison_language_is_kept(self, make_service):
        service = make_service(StubBackend(), image_analyzer=lambda data, mime, hint: dict(SNEAKER_ANALYSIS))
        result = service.search("something like this", image=IMAGE_BYTES)
        assert result.effective_query == "white sneakers something like this"

    def test_analysis_failure_falls_back_to_text(self, make_service):
        def broken(data, mime, hint):
            raise RuntimeError("vision service down")

        backend = StubBackend(_fashion_only([make_hit("n1", "Nike shoe")]))
        result = make_service(backend, image_analyzer=broken).search("nike shoes", image=IMAGE_BYTES)
        assert result.image_analysis is None
        assert [product.id for product in result.products] == ["n1"]

    def test_invalid_payload_falls_back_to_text(self, make_service):
        seen = []
        service = make_service(
            StubBackend(_fashion_only([make_hit("n1", "Nike shoe")])),
            image_analyzer=lambda data, mime, hint: seen.append(data) or dict(SNEAKER_ANALYSIS),
        )
        result = service.search("nike shoes", image="%%% not base64 %%%")
        assert seen == []
        assert result.image_analysis is None
        assert [product.id for product in result.products] == ["n1"]

    def test_base64_payload_is_decoded(self, make_service):
        seen = []
        service = make_service(
            StubBackend(),
            image_analyzer=lambda data, mime, hint: seen.append((data, mime)) or dict(SNEAKER_ANALYSIS),
        )
        service.search("", image="data:image/png;base64,iVBORw0KGgo=")
        assert seen == [(b"\x89PNG\r\n\x1a\n", "image/png")]


# =============================================================================
# Failure isolation
# =============================================================================


class TestFailureIsolation:
    def test_search_log_failure_does_not_fail_search(self, make_service, monkeypatch):
        service = make_service(StubBackend(lambda index, query, params: [make_hit("l1", "Lamp")]))

        def broken(**kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(service.db, "log_search", broken)
        result = service.search("lamp")
        assert [product.id for product in result.products] == ["l1"]
        assert result.search_log_id is None

    def test_unexpected_error_becomes_empty_result(self, make_service, monkeypatch):
        service = make_service(StubBackend(lambda index, query, params: [make_hit("l1", "Lamp")]))

        def broken(query):
            raise RuntimeError("parser exploded")

        monkeypatch.setattr(service.parser, "parse", broken)
        result = service.search("lamp")
        assert result.products == []
        assert "went wrong" in result.feedback


# =============================================================================
# Discovery through the orchestrator
# =============================================================================


class TestDiscovery:
    def test_setting_drives_injection(self, make_service):
        regular = [make_hit(f"s{i}", f"Shoe {i}", categories=["shoes"]) for i in range(20)]
        alternatives = [make_hit(f"d{i}", f"Boot {i}", categories=["boots"]) for i in range(3)]

        def responder(index, query, params):
            if index != "shopping_fashion":
                return []
            if query == "shoes":
                return regular
            if query in {"boots", "sandals"}:
                return alternatives
            return []

        service = make_service(StubBackend(responder))
        service.set_discovery_percentage(10)
        result = service.search("shoes")

        assert len(result.products) == 20
        flagged = [index for index, product in enumerate(result.products) if product.is_discovery]
        assert flagged == [9, 19]
        assert {result.products[i].id for i in flagged} <= {"d0", "d1", "d2"}

    def test_follow_up_drops_discovery_items(self, make_service):
        regular = [make_hit(f"s{i}", f"Shoe {i}", price=50, categories=["shoes"]) for i in range(20)]
        alternatives = [make_hit(f"d{i}", f"Boot {i}", price=60, categories=["boots"]) for i in range(3)]

        def responder(index, query, params):
            if index != "shopping_fashion":
                return []
            return regular if query == "shoes" else alternatives

        service = make_service(StubBackend(responder))
        service.set_discovery_percentage(10)
        first = service.search("shoes")
        assert any(product.is_discovery for product in first.products)

        refined = service.search("show me under $100")
        assert refined.follow_up is True
        assert [product.id for product in refined.products] == [f"s{i}" for i in range(20)]
        assert not any(product.is_discovery or product.discovery_reason for product in refined.products)

    def test_explicit_zero_overrides_setting(self, make_service):
        service = make_service(StubBackend(lambda index, query, params: [make_hit("l1", "Lamp")]))
        service.set_discovery_percentage(50)
        result = service.search("lamp", discovery_percentage=0)
        assert not any(product.is_discovery for product in result.products)


# =============================================================================
# Library, tracking and settings
# =============================================================================


class TestLibraryOperations:
    def test_save_list_remove(self, make_service):
        service = make_service()
        saved = service.save_product(
            {"id": "p1", "name": "Boot", "price": 99.5, "categories": ["shoes"], "brand": "Acme"}
        )
        assert saved["id"] == "p1"
        assert saved["categories"] == ["shoes"]
        assert [row["id"] for row in service.list_saved_products()] == ["p1"]

        service.remove_product("p1")
        assert service.list_saved_products() == []
        profile = service.get_personalization_profile()
        assert profile["interaction_history"]["total_saves"] == 1
        assert profile["interaction_history"]["total_removes"] == 1
        assert profile["category_scores"]["shoes"] == pytest.approx((1.0 - 0.8) / 1.8)

    def test_remove_missing_raises(self, make_service):
        with pytest.raises(KeyError):
            make_service().remove_product("nope")

    def test_save_requires_id_and_name(self, make_service):
        with pytest.raises(ValueError):
            make_service().save_product({"name": "No id"})

    def test_read_only_tracking_is_ignored(self, make_service):
        service = make_service()
        assert service.track_product_view("p1", 30, source=READ_ONLY_SOURCE) is False
        assert service.track_product_click("p1", source=READ_ONLY_SOURCE) is False
        assert service.stats()["event_count"] == 0

    def test_product_selection_logging(self, make_service):
        service = make_service(StubBackend(lambda index, query, params: [make_hit("l1", "Lamp")]))
        result = service.search("lamp")
        service.log_product_selection(
            search_log_id=result.search_log_id, product_id="l1", product_index=0, source_index="shopping_home"
        )
        row = service.db.get_search_log(result.search_log_id)
        assert row["selected_product_id"] == "l1"
        with pytest.raises(KeyError):
            service.log_product_selection(search_log_id=9999, product_id="x", product_index=0)

    def test_discovery_setting_bounds(self, make_service):
        service = make_service()
        assert service.get_discovery_percentage() == 0
        assert service.set_discovery_percentage(10) == 10
        assert service.get_discovery_percentage() == 10
        with pytest.raises(ValueError):
            service.set_discovery_percentage(101)

    def test_reset_and_stats(self, make_service):
        service = make_service()
        service.track_product_view("p1", 5)
        assert service.stats()["event_count"] == 1
        service.reset_ml_data()
        stats = service.stats()
        assert stats["event_count"] == 0
        assert stats["confidence_level"] == 0.0
        assert set(stats["indices"]) == {"fashion", "electronics", "books", "home", "sports", "beauty", "food"}

    def test_export_profile(self, make_service):
        service = make_service()
        service.save_product({"id": "p1", "name": "Boot", "categories": ["shoes"]})
        export = service.export_profile()
        assert export["user_profile"]["category_preferences"][0]["category"] == "shoes"
