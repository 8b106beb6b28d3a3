"""Per-index and multi-index product retrieval over the search backend."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Protocol

from personal_shopper.catalog import Product


_LOGGER = logging.getLogger(__name__)


class SearchBackend(Protocol):
    def search(self, index_name: str, query: str, params: dict[str, Any]) -> dict[str, Any]:
        ...


@dataclass
class SearchParams:
    hits_per_page: int = 20
    page: int = 0
    facet_filters: list[Any] | None = None
    numeric_filters: list[str] | None = None
    filters: str | None = None
    attributes_to_retrieve: list[str] | None = None
    strict: bool = False

    def to_request(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "hitsPerPage": self.hits_per_page,
            "page": self.page,
            "matchStrictness": "strict" if self.strict else "fuzzy",
        }
        if self.facet_filters:
            payload["facetFilters"] = list(self.facet_filters)
        if self.numeric_filters:
            payload["numericFilters"] = list(self.numeric_filters)
        if self.filters:
            payload["filters"] = self.filters
        if self.attributes_to_retrieve:
            payload["attributesToRetrieve"] = list(self.attributes_to_retrieve)
        return payload


@dataclass
class RetrievalGateway:
    backend: SearchBackend
    index_mappings: dict[str, str]
    max_workers: int = 4
    branch_timeout_seconds: float = 10.0
    _executor: ThreadPoolExecutor = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, self.max_workers), thread_name_prefix="index-search")

    @property
    def categories(self) -> list[str]:
        return list(self.index_mappings)

    def resolve_indices(self, categories: list[str] | None) -> list[str]:
        known = [self.index_mappings[cat] for cat in (categories or []) if cat in self.index_mappings]
        indices = known or list(self.index_mappings.values())
        return list(dict.fromkeys(indices))

    def search_one(self, index_name: str, query: str, params: SearchParams | None = None) -> list[Product]:
        request = (params or SearchParams()).to_request()
        started = time.perf_counter()
        response = self.backend.search(index_name, query, request)
        hits = response.get("hits") if isinstance(response, dict) else None
        products = [
            Product.from_hit(hit, index_name)
            for hit in (hits if isinstance(hits, list) else [])
            if isinstance(hit, dict)
        ]
        _LOGGER.debug(
            "Index %s returned %d hits for %r in %.0fms.",
            index_name,
            len(products),
            query,
            (time.perf_counter() - started) * 1000,
        )
        return products

    def search_many(
        self,
        query: str,
        categories: list[str] | None = None,
        params: SearchParams | None = None,
    ) -> list[Product]:
        """Search every mapped index concurrently and concatenate the hits in index order.

        A branch that errors or exceeds ``branch_timeout_seconds`` contributes nothing.
        """
        indices = self.resolve_indices(categories)
        futures = [(index, self._executor.submit(self.search_one, index, query, params)) for index in indices]
        deadline = time.monotonic() + self.branch_timeout_seconds

        products: list[Product] = []
        for index, future in futures:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                products.extend(future.result(timeout=remaining))
            except FutureTimeoutError:
                future.cancel()
                _LOGGER.warning(
                    "Search on index %s timed out after %ss; treating as empty.",
                    index,
                    int(round(self.branch_timeout_seconds)),
                )
            except Exception as exc:
                _LOGGER.warning("Search on index %s failed; treating as empty: %s", index, exc)
        return products

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
