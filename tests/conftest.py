"""Shared fixtures: temporary SQLite stores, a scripted search backend and a service factory."""

from __future__ import annotations

from pathlib import Path
import random
from typing import Any, Callable

import pytest

from personal_shopper.config import AssistantConfig
from personal_shopper.db import ShoppingDB
from personal_shopper.service import ShoppingAssistantService


def make_hit(
    object_id: str,
    name: str,
    *,
    price: float = 50.0,
    brand: str = "",
    categories: list[str] | None = None,
    color: str = "",
    gender: str = "",
    description: str = "",
    image: str | None = None,
    url: str | None = None,
) -> dict[str, Any]:
    return {
        "objectID": object_id,
        "name": name,
        "price": price,
        "brand": brand,
        "categories": categories or [],
        "color": color,
        "gender": gender,
        "description": description,
        "image": f"https://cdn.example.com/{object_id}.jpg" if image is None else image,
        "url": f"https://shop.example.com/p/{object_id}" if url is None else url,
    }


class StubBackend:
    """Records every call and answers through ``responder(index, query, params)``."""

    def __init__(self, responder: Callable[[str, str, dict[str, Any]], list[dict[str, Any]]] | None = None) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.responder = responder or (lambda index, query, params: [])

    def search(self, index_name: str, query: str, params: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((index_name, query, dict(params)))
        return {"hits": list(self.responder(index_name, query, params))}

    @property
    def queries(self) -> list[str]:
        return [query for _, query, _ in self.calls]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db(tmp_path: Path) -> ShoppingDB:
    return ShoppingDB(tmp_path / "shopper.db")


@pytest.fixture
def config(tmp_path: Path) -> AssistantConfig:
    return AssistantConfig(
        db_path=tmp_path / "service.db",
        cache_ttl_seconds=300.0,
        hits_per_page=20,
        branch_timeout_seconds=5.0,
        image_timeout_seconds=5.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_service(config: AssistantConfig, clock: FakeClock):
    created: list[ShoppingAssistantService] = []

    def factory(
        backend: StubBackend | None = None,
        *,
        image_analyzer: Callable[[bytes, str, str], dict[str, Any]] | None = None,
        cfg: AssistantConfig | None = None,
    ) -> ShoppingAssistantService:
        service = ShoppingAssistantService(
            cfg or config,
            backend=backend or StubBackend(),
            image_analyzer=image_analyzer,
            rng=random.Random(7),
            clock=clock,
        )
        created.append(service)
        return service

    yield factory
    for service in created:
        service.gateway.shutdown()
