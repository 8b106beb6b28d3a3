"""Natural-language shopping constraint extraction.

Each constraint type has its own matcher; ``ConstraintParser.parse`` runs them in
sequence and only sets the fields a matcher produced. Nothing here performs I/O
and no input makes the parser raise.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable

from personal_shopper.catalog import FOOTWEAR_TERMS, KNOWN_BRANDS, PRODUCT_TYPE_TERMS


BASE_COLORS: tuple[str, ...] = (
    "white",
    "black",
    "red",
    "blue",
    "green",
    "yellow",
    "purple",
    "pink",
    "gray",
    "grey",
    "brown",
    "orange",
    "navy",
    "beige",
    "cream",
    "tan",
    "gold",
    "silver",
    "metallic",
    "multicolor",
)

STYLE_TERMS: tuple[str, ...] = (
    "similar style",
    "casual",
    "formal",
    "sporty",
    "sport",
    "athletic",
    "elegant",
    "classic",
    "modern",
    "vintage",
    "retro",
    "minimalist",
    "luxury",
    "professional",
    "comfortable",
    "stylish",
    "trendy",
    "traditional",
)

SIMILAR_STYLE = "similar style"

SIZE_TERMS: tuple[str, ...] = ("xs", "small", "medium", "large", "xl", "xxl")

# Checked in this order; the first group with a whole-word hit decides the gender.
GENDER_TERMS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("men", ("men", "mens", "men's", "male", "guy", "guys", "boys")),
    ("women", ("women", "womens", "women's", "female", "ladies", "girls")),
    ("unisex", ("unisex", "both", "anyone")),
)

QUALITY_TERMS: tuple[str, ...] = ("quality", "durable", "premium", "cheap", "affordable", "budget")

FILLER_WORDS: tuple[str, ...] = (
    "for",
    "with",
    "that",
    "has",
    "have",
    "similar",
    "like",
    "style",
    "looking",
    "i'm",
    "find",
    "one",
    "can",
    "you",
    "some",
    "me",
    "a",
    "an",
    "the",
    "in",
    "of",
)

_UPPER_PRICE = re.compile(r"\b(?:under|less than|below|cheaper than|maximum|max)\s*\$?\s*(\d+)", re.IGNORECASE)
_LOWER_PRICE = re.compile(r"\b(?:over|more than|above|minimum|min|at least)\s*\$?\s*(\d+)", re.IGNORECASE)
_RANGE_PRICE = re.compile(r"\$?\s*(\d+)\s*(?:-|to)\s*\$?\s*(\d+)", re.IGNORECASE)
_BETWEEN_PRICE = re.compile(r"\bbetween\s*\$?\s*(\d+)\s*and\s*\$?\s*(\d+)", re.IGNORECASE)
_APPROX_PRICE = re.compile(r"\b(?:around|about|approximately)\s*\$?\s*(\d+)", re.IGNORECASE)

_PRICE_PHRASES = (
    re.compile(
        r"\b(?:under|less than|below|cheaper than|maximum|max|over|more than|above|minimum|min|at least|"
        r"around|about|approximately|between)\s*\$?\s*\d+(?:\s*(?:and|to|-)\s*\$?\s*\d+)?",
        re.IGNORECASE,
    ),
    re.compile(r"\$\s*\d+(?:\s*(?:to|-)\s*\$?\s*\d+)?", re.IGNORECASE),
)
_SIZE_PHRASE = re.compile(r"\bsize\s+(\S+)", re.IGNORECASE)
_NUMERIC_SIZE = re.compile(r"(?<![\w$.])(\d{1,2}(?:\.\d)?)(?![\w.])")
_COMPOUND_COLOR = re.compile(r"\b(?:dark|light|bright)\s+(?:" + "|".join(BASE_COLORS) + r")\b", re.IGNORECASE)
_TOKEN = re.compile(r"[a-z0-9']+")


def _tokens(text: str) -> list[str]:
    return _TOKEN.findall(text.lower())


def _dedupe(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for value in values:
        key = value.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(value)
    return out


def _contains_word(text: str, term: str) -> bool:
    return re.search(rf"(?<![\w']){re.escape(term)}(?![\w'])", text, re.IGNORECASE) is not None


def _strip_price_phrases(text: str) -> str:
    for pattern in _PRICE_PHRASES:
        text = pattern.sub(" ", text)
    return text


@dataclass
class ParsedConstraints:
    price_range: dict[str, float] | None = None
    colors: list[str] | None = None
    styles: list[str] | None = None
    sizes: list[str] | None = None
    gender: str | None = None
    product_keywords: list[str] | None = None
    other_constraints: list[str] | None = None

    def is_empty(self) -> bool:
        return not any(
            [
                self.price_range,
                self.colors,
                self.styles,
                self.sizes,
                self.gender,
                self.product_keywords,
                self.other_constraints,
            ]
        )

    def has_refinement_signal(self) -> bool:
        """True when the query narrows by price, color or style."""
        return bool(self.price_range or self.colors or self.styles)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key in ("price_range", "colors", "styles", "sizes", "gender", "product_keywords", "other_constraints"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload


def match_price(query: str) -> dict[str, float] | None:
    min_price: float | None = None
    max_price: float | None = None

    upper = _UPPER_PRICE.search(query)
    if upper:
        max_price = float(upper.group(1))

    lower = _LOWER_PRICE.search(query)
    if lower:
        min_price = float(lower.group(1))

    ranged = _RANGE_PRICE.search(query) or _BETWEEN_PRICE.search(query)
    if ranged:
        min_price = float(ranged.group(1))
        max_price = float(ranged.group(2))

    approx = _APPROX_PRICE.search(query)
    if approx and min_price is None and max_price is None:
        value = float(approx.group(1))
        min_price = float(math.floor(round(value * 0.8, 6)))
        max_price = float(math.ceil(round(value * 1.2, 6)))

    if min_price is None and max_price is None:
        return None
    price_range: dict[str, float] = {}
    if min_price is not None:
        price_range["min"] = min_price
    if max_price is not None:
        price_range["max"] = max_price
    return price_range


def match_colors(query: str) -> list[str]:
    colors = [token for token in _tokens(query) if token in BASE_COLORS]
    colors.extend(match.group(0).lower() for match in _COMPOUND_COLOR.finditer(query))
    colors = [" ".join(color.split()) for color in colors]
    return _dedupe(colors)


def match_styles(query: str) -> list[str]:
    lowered = query.lower()
    return [style for style in STYLE_TERMS if _contains_word(lowered, style)]


def match_sizes(query: str) -> list[str]:
    sizes: list[str] = []
    for match in _SIZE_PHRASE.finditer(query):
        value = match.group(1).strip(".,!?").lower()
        if value:
            sizes.append(value)

    tokens = _tokens(query)
    sizes.extend(token for token in tokens if token in SIZE_TERMS)

    # Bare numbers only count as sizes for footwear queries.
    if any(token in FOOTWEAR_TERMS for token in tokens):
        for match in _NUMERIC_SIZE.finditer(_strip_price_phrases(query)):
            if 4 <= float(match.group(1)) <= 15:
                sizes.append(match.group(1))
    return _dedupe(sizes)


def match_gender(query: str) -> str | None:
    for gender, terms in GENDER_TERMS:
        if any(_contains_word(query, term) for term in terms):
            return gender
    return None


def match_product_keywords(
    query: str,
    *,
    product_terms: tuple[str, ...] = PRODUCT_TYPE_TERMS,
    brands: tuple[str, ...] = KNOWN_BRANDS,
) -> list[str]:
    keywords = [token for token in _tokens(query) if token in product_terms]
    keywords.extend(brand for brand in brands if _contains_word(query, brand))
    return _dedupe(keywords)


def match_other(query: str, *, brands: tuple[str, ...] = KNOWN_BRANDS) -> list[str]:
    constraints = [term for term in QUALITY_TERMS if _contains_word(query, term)]

    without_brands = query
    for brand in brands:
        without_brands = re.sub(rf"(?<![\w']){re.escape(brand)}(?![\w'])", " ", without_brands, flags=re.IGNORECASE)
    for condition in ("new", "used", "refurbished"):
        if _contains_word(without_brands, condition):
            constraints.append(condition)
            break

    if _contains_word(query, "free shipping"):
        constraints.append("free shipping")
    elif _contains_word(query, "fast shipping"):
        constraints.append("fast shipping")
    return constraints


class ConstraintParser:
    def __init__(
        self,
        *,
        product_terms: tuple[str, ...] = PRODUCT_TYPE_TERMS,
        brands: tuple[str, ...] = KNOWN_BRANDS,
    ) -> None:
        self.product_terms = tuple(term.lower() for term in product_terms) or PRODUCT_TYPE_TERMS
        self.brands = tuple(brands) or KNOWN_BRANDS
        self._matchers: tuple[tuple[str, Callable[[str], Any]], ...] = (
            ("price_range", match_price),
            ("colors", match_colors),
            ("styles", match_styles),
            ("sizes", match_sizes),
            ("gender", match_gender),
            (
                "product_keywords",
                lambda q: match_product_keywords(q, product_terms=self.product_terms, brands=self.brands),
            ),
            ("other_constraints", lambda q: match_other(q, brands=self.brands)),
        )

    def parse(self, query: str) -> ParsedConstraints:
        lowered = str(query or "").lower()
        result = ParsedConstraints()
        for name, matcher in self._matchers:
            value = matcher(lowered)
            if value:
                setattr(result, name, value)
        return result

    def clean_query(self, query: str, constraints: ParsedConstraints) -> str:
        cleaned = _strip_price_phrases(str(query or ""))
        cleaned = _SIZE_PHRASE.sub(" ", cleaned)

        terms: list[str] = []
        terms.extend(constraints.colors or [])
        terms.extend(constraints.styles or [])
        terms.extend(constraints.sizes or [])
        terms.extend(constraints.other_constraints or [])
        if constraints.gender:
            for gender, gender_terms in GENDER_TERMS:
                if gender == constraints.gender:
                    terms.extend(gender_terms)
        terms.extend(FILLER_WORDS)

        for term in sorted(set(terms), key=len, reverse=True):
            cleaned = re.sub(rf"(?<![\w']){re.escape(term)}(?![\w'])", " ", cleaned, flags=re.IGNORECASE)

        cleaned = re.sub(r"[.,!?]", "", cleaned)
        return " ".join(cleaned.split())
