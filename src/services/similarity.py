"""Normalized text similarity for the `enhanced` correlation tier.

The engine only depends on the ``TextSimilarity`` interface, so the scoring
algorithm (token overlap, edit distance, ...) can be swapped via settings
without touching the matching control flow.
"""
from __future__ import annotations

import re
import unicodedata
from abc import ABC, abstractmethod
from difflib import SequenceMatcher
from typing import Optional

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")

# Spanish/English filler that carries no product signal
_STOPWORDS = {
    "de", "del", "la", "el", "los", "las", "y", "para", "con", "en", "por", "un", "una",
    "the", "and", "for", "with", "of", "a",
}


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    stripped = _NON_ALNUM.sub(" ", stripped)
    return _SPACES.sub(" ", stripped).strip()


def normalize_city(value: Optional[str]) -> str:
    return normalize_text(value)


def tokens(value: Optional[str]) -> set[str]:
    return {t for t in normalize_text(value).split() if t not in _STOPWORDS}


class TextSimilarity(ABC):
    """Scores how well a ClickLog's product text agrees with an order item title."""

    name: str

    @abstractmethod
    def score(self, product_ref: str, item_title: str) -> float:
        """Return a similarity in [0.0, 1.0]."""
        ...

    def matches(self, product_ref: str, item_title: str, threshold: float) -> bool:
        if not product_ref or not item_title:
            return False
        return self.score(product_ref, item_title) >= threshold


class TokenOverlapSimilarity(TextSimilarity):
    """Substring containment scores 1.0; otherwise the share of product tokens
    found in the item title."""

    name = "token_overlap"

    def score(self, product_ref: str, item_title: str) -> float:
        product, title = normalize_text(product_ref), normalize_text(item_title)
        if not product or not title:
            return 0.0
        if product in title or title in product:
            return 1.0
        product_tokens, title_tokens = tokens(product), tokens(title)
        if not product_tokens:
            return 0.0
        return len(product_tokens & title_tokens) / len(product_tokens)


class SequenceRatioSimilarity(TextSimilarity):
    """Edit-distance style ratio (difflib) over normalized text."""

    name = "sequence_ratio"

    def score(self, product_ref: str, item_title: str) -> float:
        product, title = normalize_text(product_ref), normalize_text(item_title)
        if not product or not title:
            return 0.0
        if product in title:
            return 1.0
        return SequenceMatcher(None, product, title).ratio()


SIMILARITY_BACKENDS: dict[str, type[TextSimilarity]] = {
    TokenOverlapSimilarity.name: TokenOverlapSimilarity,
    SequenceRatioSimilarity.name: SequenceRatioSimilarity,
}


def get_similarity(name: str = "token_overlap") -> TextSimilarity:
    try:
        return SIMILARITY_BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown similarity backend: {name!r}") from None
