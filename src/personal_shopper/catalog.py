"""Product model, shared vocabularies and result-URL validation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse


PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/300x300?text=No+Image"

KNOWN_BRANDS: tuple[str, ...] = (
    "Nike",
    "Adidas",
    "Apple",
    "Samsung",
    "Sony",
    "Microsoft",
    "Dell",
    "HP",
    "Canon",
    "Nikon",
    "LG",
    "Panasonic",
    "Reebok",
    "Puma",
    "New Balance",
    "Levi's",
    "Zara",
    "Uniqlo",
    "Bose",
    "Lenovo",
)

PRODUCT_TYPE_TERMS: tuple[str, ...] = (
    "shoes",
    "sneakers",
    "boots",
    "sandals",
    "heels",
    "shirt",
    "tshirt",
    "pants",
    "jeans",
    "shorts",
    "skirt",
    "jacket",
    "coat",
    "hoodie",
    "sweater",
    "dress",
    "phone",
    "smartphone",
    "laptop",
    "computer",
    "tablet",
    "tv",
    "television",
    "monitor",
    "camera",
    "headphones",
    "earbuds",
    "speaker",
    "keyboard",
    "watch",
    "bag",
    "backpack",
    "accessories",
    "jewelry",
    "sunglasses",
    "book",
    "novel",
    "lamp",
    "sofa",
    "chair",
    "lipstick",
    "perfume",
    "coffee",
)

FOOTWEAR_TERMS = frozenset({"shoes", "shoe", "sneakers", "sneaker", "boots", "boot", "sandals", "heels", "trainers"})

# Keyword -> category hints used when inferring which indices to search.
CATEGORY_KEYWORDS: dict[str, frozenset[str]] = {
    "fashion": frozenset(
        {
            "shoes", "sneakers", "boots", "sandals", "heels", "shirt", "tshirt", "pants", "jeans",
            "shorts", "skirt", "jacket", "coat", "hoodie", "sweater", "dress", "bag", "backpack",
            "jewelry", "sunglasses", "nike", "adidas", "reebok", "puma", "zara", "uniqlo", "levi's",
            "new balance", "clothing", "outfit",
        }
    ),
    "electronics": frozenset(
        {
            "phone", "smartphone", "iphone", "laptop", "computer", "tablet", "tv", "television",
            "monitor", "camera", "headphones", "earbuds", "speaker", "keyboard", "apple", "samsung",
            "sony", "microsoft", "dell", "hp", "canon", "nikon", "lg", "panasonic", "bose", "lenovo",
        }
    ),
    "books": frozenset({"book", "books", "novel", "paperback", "hardcover", "ebook", "cookbook"}),
    "home": frozenset({"lamp", "sofa", "chair", "table", "bedding", "pillow", "rug", "kitchen", "furniture"}),
    "sports": frozenset({"yoga", "fitness", "running", "bicycle", "bike", "tennis", "football", "golf", "gym"}),
    "beauty": frozenset({"lipstick", "perfume", "makeup", "skincare", "shampoo", "moisturizer", "cosmetics"}),
    "food": frozenset({"coffee", "tea", "snack", "snacks", "chocolate", "organic", "grocery"}),
}

# Labels the image analysis service may return, mapped onto index categories.
IMAGE_CATEGORY_ALIASES: dict[str, str] = {
    "fashion": "fashion",
    "clothing": "fashion",
    "apparel": "fashion",
    "shoes": "fashion",
    "footwear": "fashion",
    "accessories": "fashion",
    "electronics": "electronics",
    "tech": "electronics",
    "books": "books",
    "book": "books",
    "home": "home",
    "furniture": "home",
    "sports": "sports",
    "fitness": "sports",
    "beauty": "beauty",
    "cosmetics": "beauty",
    "food": "food",
    "grocery": "food",
}

_INVALID_URL_PATTERNS = (
    re.compile(r"^(?:https?://)?(?:localhost|127\.0\.0\.1|0\.0\.0\.0)(?::\d+)?(?:/|$)", re.IGNORECASE),
    re.compile(r"^file://", re.IGNORECASE),
    re.compile(r"(?:^|/)(?:tmp|temp)/", re.IGNORECASE),
    re.compile(r"\.(?:tmp|temp)(?:\?|$)", re.IGNORECASE),
)
_PLACEHOLDER_MARKERS = ("via.placeholder.com", "placeholder.com", "placehold.it", "no+image", "no_image")


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_categories(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(part).strip() for part in value if str(part).strip()]
    return []


@dataclass
class Product:
    id: str
    name: str
    price: float = 0.0
    image: str = ""
    url: str = ""
    description: str = ""
    brand: str = ""
    categories: list[str] = field(default_factory=list)
    source_index: str = ""
    domain: str = ""
    color: str = ""
    gender: str = ""
    score: float | None = None
    is_discovery: bool = False
    discovery_reason: str | None = None

    @classmethod
    def from_hit(cls, hit: dict[str, Any], index_name: str) -> "Product":
        url = str(hit.get("url") or "").strip()
        domain = ""
        if url:
            try:
                domain = (urlparse(url).hostname or "").replace("www.", "")
            except ValueError:
                domain = ""
        price = hit.get("price")
        if price in (None, ""):
            price = hit.get("salePrice")
        return cls(
            id=str(hit.get("objectID") or hit.get("id") or "").strip(),
            name=str(hit.get("name") or "Unknown Product").strip(),
            price=_as_float(price),
            image=str(hit.get("image") or "").strip() or PLACEHOLDER_IMAGE_URL,
            url=url,
            description=str(hit.get("description") or "").strip(),
            brand=str(hit.get("brand") or "").strip(),
            categories=_as_categories(hit.get("categories")),
            source_index=index_name,
            domain=domain,
            color=str(hit.get("color") or "").strip(),
            gender=str(hit.get("gender") or "").strip(),
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Product":
        return cls(
            id=str(payload.get("id") or "").strip(),
            name=str(payload.get("name") or "").strip(),
            price=_as_float(payload.get("price")),
            image=str(payload.get("image") or "").strip(),
            url=str(payload.get("url") or "").strip(),
            description=str(payload.get("description") or "").strip(),
            brand=str(payload.get("brand") or "").strip(),
            categories=_as_categories(payload.get("categories")),
            source_index=str(payload.get("source_index") or "").strip(),
            domain=str(payload.get("domain") or "").strip(),
            color=str(payload.get("color") or "").strip(),
            gender=str(payload.get("gender") or "").strip(),
        )

    def search_blob(self) -> str:
        """Lower-cased text used by constraint filters."""
        parts = [self.name, self.description, self.brand, self.color, self.gender, " ".join(self.categories)]
        return " ".join(part for part in parts if part).lower()

    def to_public(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "image": self.image,
            "url": self.url,
            "description": self.description,
            "brand": self.brand,
            "categories": list(self.categories),
            "source_index": self.source_index,
            "domain": self.domain,
        }
        if self.color:
            payload["color"] = self.color
        if self.gender:
            payload["gender"] = self.gender
        if self.score is not None:
            payload["score"] = round(self.score, 4)
        if self.is_discovery:
            payload["is_discovery"] = True
            payload["discovery_reason"] = self.discovery_reason
        return payload


def is_valid_result_url(value: str | None) -> bool:
    url = str(value or "").strip()
    if not url:
        return False
    lowered = url.lower()
    if any(marker in lowered for marker in _PLACEHOLDER_MARKERS):
        return False
    return not any(pattern.search(url) for pattern in _INVALID_URL_PATTERNS)


def has_valid_urls(product: Product) -> bool:
    return is_valid_result_url(product.image) and is_valid_result_url(product.url)


def map_image_category(label: str | None) -> str | None:
    key = str(label or "").strip().lower()
    if not key:
        return None
    if key in CATEGORY_KEYWORDS:
        return key
    return IMAGE_CATEGORY_ALIASES.get(key)


def detect_brand(text: str, brands: tuple[str, ...] = KNOWN_BRANDS) -> str | None:
    lowered = f" {str(text or '').lower()} "
    # Longest first so "New Balance" wins over shorter overlaps.
    for brand in sorted(brands, key=len, reverse=True):
        if re.search(rf"(?<![\w']){re.escape(brand.lower())}(?![\w'])", lowered):
            return brand
    return None


def detect_product_type(text: str, terms: tuple[str, ...] = PRODUCT_TYPE_TERMS) -> str | None:
    tokens = re.findall(r"[a-z0-9']+", str(text or "").lower())
    for token in tokens:
        if token in terms:
            return token
    return None
